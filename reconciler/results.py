import enum
from dataclasses import dataclass
from typing import Optional


class Outcome(enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class SkipReason(enum.Enum):
    DUPLICATE_EVENT = "duplicate_event"
    NO_CHANGE = "no_change"
    ORDER_NOT_FOUND = "order_not_found"
    PAYMENT_NOT_FOUND = "payment_not_found"
    CATERING_ORDER = "catering_order"
    INVALID_PAYLOAD = "invalid_payload"
    UNMAPPED_STATE = "unmapped_state"
    UNHANDLED_EVENT_TYPE = "unhandled_event_type"


@dataclass(frozen=True)
class HandlerResult:
    """What a webhook handler did with one event.

    The transport decides redelivery from ``outcome``; handlers never raise
    to ask for a retry.
    """

    outcome: Outcome
    reason: Optional[SkipReason] = None
    detail: Optional[str] = None

    @classmethod
    def applied(cls, detail: Optional[str] = None) -> "HandlerResult":
        return cls(Outcome.APPLIED, detail=detail)

    @classmethod
    def skipped(cls, reason: SkipReason, detail: Optional[str] = None) -> "HandlerResult":
        return cls(Outcome.SKIPPED, reason=reason, detail=detail)

    @classmethod
    def transient(cls, detail: str) -> "HandlerResult":
        return cls(Outcome.TRANSIENT_FAILURE, detail=detail)

    @classmethod
    def permanent(cls, detail: str) -> "HandlerResult":
        return cls(Outcome.PERMANENT_FAILURE, detail=detail)

    @property
    def should_retry(self) -> bool:
        return self.outcome is Outcome.TRANSIENT_FAILURE

    def as_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }
