"""Materialize orders that Square knows about but this database does not.

Payment and fulfillment events have no "create" event of their own, so for
orders placed outside the storefront checkout (point of sale, dashboard)
the order is fetched from Square and stored locally, tagged with
``source: provider_api`` in ``raw_data``.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler import repository
from reconciler.models import (
    PLACEHOLDER_EMAIL,
    PLACEHOLDER_NAME,
    PLACEHOLDER_PHONE,
    FulfillmentType,
    Order,
)
from reconciler.money import cents_to_decimal
from reconciler.square_client import SquareClient
from reconciler.status_mapping import map_order_state_to_status

logger = logging.getLogger(__name__)

BACKFILL_SOURCE = "provider_api"

_FULFILLMENT_TYPES = {
    "PICKUP": FulfillmentType.PICKUP.value,
    "DELIVERY": FulfillmentType.LOCAL_DELIVERY.value,
    "SHIPMENT": FulfillmentType.NATIONWIDE_SHIPPING.value,
}


def _fulfillment_type(square_order: dict) -> Optional[str]:
    fulfillments = square_order.get("fulfillments") or []
    if not fulfillments:
        return None
    return _FULFILLMENT_TYPES.get((fulfillments[0].get("type") or "").upper())


def _total(square_order: dict) -> Decimal:
    amount = (square_order.get("total_money") or {}).get("amount")
    return cents_to_decimal(amount) if amount is not None else Decimal("0.00")


class BackfillFetcher:
    def __init__(self, session_factory: async_sessionmaker, square_client: SquareClient):
        self.session_factory = session_factory
        self.square_client = square_client

    async def backfill_order(self, square_order_id: str, sync_reason: str) -> Optional[str]:
        """Create the local order from Square. Returns its internal ID, or None on failure."""
        try:
            square_order = await self.square_client.retrieve_order(square_order_id)
        except Exception as e:
            logger.error("Backfill lookup of Square order %s failed: %s", square_order_id, e)
            return None

        # no event watermark: the triggering event still has to be applied to this row
        raw_data = {"source": BACKFILL_SOURCE, "syncReason": sync_reason, "squareOrder": square_order}
        order = Order(
            square_order_id=square_order_id,
            status=map_order_state_to_status(square_order.get("state")),
            total=_total(square_order),
            customer_name=PLACEHOLDER_NAME,
            email=PLACEHOLDER_EMAIL,
            phone=PLACEHOLDER_PHONE,
            fulfillment_type=_fulfillment_type(square_order),
            raw_data=raw_data,
        )

        try:
            async with self.session_factory() as session:
                session.add(order)
                await session.commit()
        except IntegrityError:
            # another delivery backfilled the same order first
            async with self.session_factory() as session:
                existing = await repository.find_order_by_square_id(session, square_order_id)
            if existing is not None:
                return existing.id
            logger.error("Backfill of Square order %s hit a conflict but no row exists", square_order_id)
            return None
        except Exception:
            logger.exception("Could not store backfilled Square order %s", square_order_id)
            return None

        logger.info("Backfilled Square order %s as local order %s (%s)", square_order_id, order.id, sync_reason)
        return order.id
