"""Shipping label purchase through Shippo, guarded by a lease on the order row.

Two deliveries that both observe the PENDING -> PAID transition (or two
processes) must never buy two labels. Whoever wins the conditional UPDATE
on ``label_lock_holder`` buys; everyone else gets ``blocked_by_concurrent``.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.models import Order, OrderStatus, new_id, utcnow
from reconciler.status_mapping import TERMINAL_ORDER_STATUSES

logger = logging.getLogger(__name__)

SHIPPO_API_URL = "https://api.goshippo.com"
LABEL_FILE_TYPE = "PDF_4x6"


@dataclass(frozen=True)
class LabelPurchaseResult:
    success: bool
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    blocked_by_concurrent: bool = False
    error: Optional[str] = None


class ShippingLabelService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        http_client: httpx.AsyncClient,
        api_key: str,
        lease_seconds: int = 60,
        base_url: str = SHIPPO_API_URL,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.api_key = api_key
        self.lease_seconds = lease_seconds
        self.base_url = base_url.rstrip("/")

    async def has_label(self, order_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(Order.tracking_number).where(Order.id == order_id))
            return bool(result.scalar_one_or_none())

    async def purchase_label(self, order_id: str, rate_id: str) -> LabelPurchaseResult:
        if not self.api_key:
            return LabelPurchaseResult(success=False, error="SHIPPO_API_KEY is not configured")

        holder = new_id()
        if not await self._acquire_lease(order_id, holder):
            return await self._lease_denied(order_id)

        try:
            transaction = await self._create_transaction(rate_id)
        except httpx.HTTPError as e:
            await self._release_lease(order_id, holder)
            logger.error("Label purchase for order %s could not reach Shippo: %s", order_id, e)
            return LabelPurchaseResult(success=False, error=f"transport error: {e}")

        if transaction.get("status") != "SUCCESS":
            await self._release_lease(order_id, holder)
            error = _transaction_error(transaction)
            logger.error("Label purchase for order %s failed: %s", order_id, error)
            return LabelPurchaseResult(success=False, error=error)

        tracking_number = transaction.get("tracking_number")
        label_url = transaction.get("label_url")
        async with self.session_factory() as session:
            await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.label_lock_holder == holder)
                .values(
                    tracking_number=tracking_number,
                    label_url=label_url,
                    # an order cancelled or completed meanwhile keeps its status
                    status=case(
                        (Order.status.in_(TERMINAL_ORDER_STATUSES), Order.status),
                        else_=OrderStatus.SHIPPING,
                    ),
                    label_lock_holder=None,
                    label_lock_expires_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info("Purchased label for order %s, tracking %s", order_id, tracking_number)
        return LabelPurchaseResult(success=True, tracking_number=tracking_number, label_url=label_url)

    async def _acquire_lease(self, order_id: str, holder: str) -> bool:
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.tracking_number.is_(None),
                    or_(Order.label_lock_holder.is_(None), Order.label_lock_expires_at < now),
                )
                .values(
                    label_lock_holder=holder,
                    label_lock_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def _lease_denied(self, order_id: str) -> LabelPurchaseResult:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
        if order is None:
            return LabelPurchaseResult(success=False, error=f"order {order_id} not found")
        if order.tracking_number:
            # bought earlier; nothing to do
            return LabelPurchaseResult(
                success=True, tracking_number=order.tracking_number, label_url=order.label_url
            )
        logger.info("Label purchase for order %s already in progress elsewhere", order_id)
        return LabelPurchaseResult(success=False, blocked_by_concurrent=True)

    async def _release_lease(self, order_id: str, holder: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.label_lock_holder == holder)
                .values(label_lock_holder=None, label_lock_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _create_transaction(self, rate_id: str) -> dict:
        response = await self.http_client.post(
            f"{self.base_url}/transactions/",
            json={"rate": rate_id, "label_file_type": LABEL_FILE_TYPE, "async": False},
            headers={"Authorization": f"ShippoToken {self.api_key}"},
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            return {"status": "ERROR", "messages": [{"text": f"HTTP {response.status_code}: {response.text}"}]}
        return body


def _transaction_error(transaction: dict) -> str:
    messages = [m.get("text") for m in transaction.get("messages") or [] if m.get("text")]
    return "; ".join(messages) or f"transaction status {transaction.get('status')}"
