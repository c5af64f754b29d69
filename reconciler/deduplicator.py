"""In-process coalescing of concurrent executions of the same logical operation.

Only one execution per key is in flight at a time; concurrent callers
await that execution's result instead of starting their own. A completed
entry stays cached until it has lived ``ttl_seconds`` so near-duplicate
deliveries that land shortly after still coalesce. Failed entries are
dropped immediately so a later retry runs for real.

This is process-local. Several instances behind a load balancer need a
database or external lock instead.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 120.0


def make_key(namespace: str, resource_id: str, operation: str) -> str:
    """Compose a collision-safe key such as ``payment:<id>:webhook``."""
    for part in (namespace, resource_id, operation):
        if not part:
            raise ValueError("deduplication key parts must be non-empty")
    return f"{namespace}:{resource_id}:{operation}"


@dataclass
class _Entry:
    future: asyncio.Future
    created_at: float
    evict_handle: Optional[asyncio.TimerHandle] = None


class RequestDeduplicator:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, log_duplicates: bool = True):
        self.ttl_seconds = ttl_seconds
        self.log_duplicates = log_duplicates
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def deduplicate(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        entry = self._entries.get(key)
        if entry is not None:
            if self.log_duplicates:
                logger.info("Duplicate request suppressed for %s", key)
            return await asyncio.shield(entry.future)

        loop = asyncio.get_running_loop()
        future = asyncio.ensure_future(operation())
        entry = _Entry(future=future, created_at=loop.time())
        self._entries[key] = entry
        future.add_done_callback(lambda fut: self._on_done(key, entry, fut))
        return await asyncio.shield(future)

    def _on_done(self, key: str, entry: _Entry, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            self._evict(key, entry)
            return
        loop = asyncio.get_running_loop()
        remaining = entry.created_at + self.ttl_seconds - loop.time()
        if remaining <= 0:
            self._evict(key, entry)
        else:
            entry.evict_handle = loop.call_later(remaining, self._evict, key, entry)

    def _evict(self, key: str, entry: _Entry) -> None:
        # a newer entry may already sit under the same key
        if self._entries.get(key) is entry:
            del self._entries[key]

    def clear_all(self) -> None:
        for entry in self._entries.values():
            if entry.evict_handle is not None:
                entry.evict_handle.cancel()
        self._entries.clear()
