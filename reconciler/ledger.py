"""Per-record event watermark.

Every successful mutation stores the full provider event object in the
record's ``raw_data`` together with ``lastProcessedEventId`` and
``lastProcessedAt``. A redelivered event carrying the same ID is then a
no-op, without a separate dedup table.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from reconciler.models import utcnow

EVENT_ID_KEY = "lastProcessedEventId"
PROCESSED_AT_KEY = "lastProcessedAt"


@dataclass(frozen=True)
class EventWatermark:
    last_event_id: Optional[str]
    last_event_at: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)


def read_watermark(raw_data: Optional[Dict[str, Any]]) -> EventWatermark:
    if not isinstance(raw_data, dict):
        return EventWatermark(None, None, {})
    payload = {k: v for k, v in raw_data.items() if k not in (EVENT_ID_KEY, PROCESSED_AT_KEY)}
    return EventWatermark(raw_data.get(EVENT_ID_KEY), raw_data.get(PROCESSED_AT_KEY), payload)


def stamp(payload: Optional[Dict[str, Any]], event_id: str, now: Optional[datetime] = None, **extra) -> Dict[str, Any]:
    """Return a new raw_data dict: the event object plus the watermark fields."""
    processed_at = (now or utcnow()).isoformat()
    return {**(payload or {}), **extra, EVENT_ID_KEY: event_id, PROCESSED_AT_KEY: processed_at}


def already_applied(raw_data: Optional[Dict[str, Any]], event_id: str) -> bool:
    return read_watermark(raw_data).last_event_id == event_id
