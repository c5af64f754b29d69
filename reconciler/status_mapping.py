"""Translation of Square order/payment/fulfillment states into local statuses.

Everything here is pure. Unknown or missing states never raise; they fall
back to the most non-committal local status.
"""

import logging
from typing import Optional

from reconciler.models import CateringStatus, FulfillmentType, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

_ORDER_STATES = {
    # OPEN means the order is waiting for payment, not being worked on.
    "OPEN": OrderStatus.PENDING,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "DRAFT": OrderStatus.PENDING,
}

_PAYMENT_STATES = {
    "COMPLETED": PaymentStatus.PAID,
    "FAILED": PaymentStatus.FAILED,
    "CANCELED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.REFUNDED,
    "PENDING": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.PENDING,
}

_FULFILLMENT_STATES = {
    "PROPOSED": OrderStatus.PROCESSING,
    "RESERVED": OrderStatus.PROCESSING,
    "PREPARED": OrderStatus.READY,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELED": OrderStatus.CANCELLED,
}

_SHIPPING_FULFILLMENT_STATES = {
    **_FULFILLMENT_STATES,
    "PREPARED": OrderStatus.SHIPPING,
    "COMPLETED": OrderStatus.DELIVERED,
}

# payment status -> (catering payment status, catering order status)
_CATERING_PAYMENT_STATES = {
    "COMPLETED": (PaymentStatus.PAID, CateringStatus.CONFIRMED),
    "FAILED": (PaymentStatus.FAILED, CateringStatus.CANCELLED),
    "CANCELED": (PaymentStatus.FAILED, CateringStatus.CANCELLED),
    "REFUNDED": (PaymentStatus.REFUNDED, CateringStatus.CANCELLED),
}

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.COMPLETED, OrderStatus.DELIVERED})

_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAYMENT_FAILED: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.FULFILLMENT_UPDATED: 1,
    OrderStatus.READY: 2,
    OrderStatus.SHIPPING: 2,
    OrderStatus.COMPLETED: 3,
    OrderStatus.DELIVERED: 3,
    OrderStatus.CANCELLED: 3,
}


def _normalize(state: Optional[str]) -> str:
    return (state or "").strip().upper()


def map_order_state_to_status(state: Optional[str]) -> OrderStatus:
    normalized = _normalize(state)
    status = _ORDER_STATES.get(normalized)
    if status is None:
        logger.warning("Unhandled Square order state %r, defaulting to PENDING", state)
        return OrderStatus.PENDING
    return status


def map_payment_state_to_status(state: Optional[str]) -> PaymentStatus:
    return _PAYMENT_STATES.get(_normalize(state), PaymentStatus.PENDING)


def map_fulfillment_state_to_status(
    state: Optional[str], fulfillment_type: Optional[str] = None
) -> Optional[OrderStatus]:
    """Return the local status for a fulfillment state, or None when unresolved."""
    table = _FULFILLMENT_STATES
    if fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING.value:
        table = _SHIPPING_FULFILLMENT_STATES
    return table.get(_normalize(state))


def map_catering_payment_state(state: Optional[str]) -> tuple:
    """(PaymentStatus, CateringStatus or None) for a catering order's payment event."""
    return _CATERING_PAYMENT_STATES.get(_normalize(state), (PaymentStatus.PENDING, None))


def is_status_downgrade(current: OrderStatus, proposed: OrderStatus) -> bool:
    if current == proposed:
        return False
    if current in TERMINAL_ORDER_STATUSES:
        return not (current is OrderStatus.COMPLETED and proposed is OrderStatus.DELIVERED)
    return _STATUS_RANK[proposed] < _STATUS_RANK[current]
