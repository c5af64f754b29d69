"""Admin and customer notifications with an audit row per email.

Each send persists an ``EmailAlert`` in PENDING, hands the message to the
mail provider, then marks the row SENT (with the provider message ID) or
FAILED (with the error, incrementing ``retry_count``). ``retry_failed_alerts``
re-sends FAILED rows once their backoff delay has elapsed.

Every method opens its own session; none of them may be called from inside
a reconciliation transaction.
"""

import html
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from reconciler.config import Settings
from reconciler.mail import MailClient, MailMessage
from reconciler.models import (
    AlertPriority,
    AlertStatus,
    AlertType,
    EmailAlert,
    Order,
    OrderStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

ADMIN_STATUS_NOTIFICATIONS = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.READY, OrderStatus.COMPLETED, OrderStatus.DELIVERED}
)

STATUS_LABELS = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.PROCESSING: "Processing",
    OrderStatus.READY: "Ready for Pickup",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.CANCELLED: "Cancelled",
    OrderStatus.FULFILLMENT_UPDATED: "Fulfillment Updated",
    OrderStatus.SHIPPING: "Shipping",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.PAYMENT_FAILED: "Payment Failed",
}


@dataclass(frozen=True)
class AlertResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


def retry_delay(retry_count: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: base * 2^retry_count, capped."""
    return min(base_seconds * (2 ** retry_count), max_seconds)


def format_status(status: OrderStatus) -> str:
    return STATUS_LABELS.get(status, status.value)


def _money(value) -> str:
    return f"${Decimal(value or 0):.2f}"


def _render(title: str, *lines: str) -> str:
    body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    return f"<div style=\"font-family: Arial, sans-serif;\"><h2>{html.escape(title)}</h2>{body}</div>"


class AlertService:
    def __init__(self, session_factory: async_sessionmaker, mail_client: MailClient, settings: Settings):
        self.session_factory = session_factory
        self.mail_client = mail_client
        self.settings = settings

    @property
    def _admin_sender(self) -> str:
        return f"{self.settings.shop_name} Alerts <{self.settings.from_email}>"

    @property
    def _customer_sender(self) -> str:
        return f"{self.settings.shop_name} <{self.settings.from_email}>"

    async def send_new_order_alert(self, order: Order) -> AlertResult:
        subject = f"New Order #{order.id} - {_money(order.total)}"
        body = _render(
            "New order received",
            f"Order: {order.id}",
            f"Customer: {order.customer_name} ({order.email})",
            f"Total: {_money(order.total)}",
            f"Fulfillment: {order.fulfillment_type or 'unknown'}",
        )
        return await self._deliver(
            AlertType.NEW_ORDER, AlertPriority.HIGH, self.settings.admin_email, subject, body,
            sender=self._admin_sender, order_id=order.id,
        )

    async def send_customer_order_confirmation(self, order: Order) -> AlertResult:
        subject = f"Order Confirmation #{order.id} - {self.settings.shop_name}"
        body = _render(
            f"Thank you for your order, {order.customer_name}!",
            f"Order number: {order.id}",
            f"Total paid: {_money(order.total)}",
            "We will let you know as soon as your order moves along.",
        )
        return await self._deliver(
            AlertType.CUSTOMER_ORDER_CONFIRMATION, AlertPriority.MEDIUM, order.email, subject, body,
            sender=self._customer_sender, order_id=order.id,
        )

    async def send_order_status_change_alert(self, order: Order, previous_status: OrderStatus) -> AlertResult:
        """Notify the customer, and the admin for statuses worth a look."""
        subject = f"Order #{order.id} Status Update: {format_status(order.status)}"
        lines = (
            f"Order: {order.id}",
            f"Previous status: {format_status(previous_status)}",
            f"New status: {format_status(order.status)}",
        )
        metadata = {"previousStatus": previous_status.value, "newStatus": order.status.value}
        result = await self._deliver(
            AlertType.ORDER_STATUS_CHANGE, AlertPriority.MEDIUM, order.email, subject,
            _render("Your order status changed", *lines),
            sender=self._customer_sender, order_id=order.id, metadata=metadata,
        )
        if order.status in ADMIN_STATUS_NOTIFICATIONS:
            await self._deliver(
                AlertType.ORDER_STATUS_CHANGE, AlertPriority.MEDIUM, self.settings.admin_email,
                f"Admin Alert: {subject}", _render("Order status changed", *lines),
                sender=self._admin_sender, order_id=order.id, metadata=metadata,
            )
        return result

    async def send_payment_failed_alert(self, order: Order, error_message: str) -> AlertResult:
        subject = f"Payment Failed - Order #{order.id}"
        body = _render(
            "Payment failed",
            f"Order: {order.id}",
            f"Customer: {order.customer_name} ({order.email})",
            f"Error: {error_message}",
        )
        return await self._deliver(
            AlertType.PAYMENT_FAILED, AlertPriority.CRITICAL, self.settings.admin_email, subject, body,
            sender=self._admin_sender, order_id=order.id,
        )

    async def send_system_error_alert(self, error: str, context: dict) -> AlertResult:
        subject = f"System Error: {error[:80]}"
        lines = [f"Error: {error}"] + [f"{key}: {value}" for key, value in context.items()]
        return await self._deliver(
            AlertType.SYSTEM_ERROR, AlertPriority.CRITICAL, self.settings.admin_email, subject,
            _render("System error", *lines),
            sender=self._admin_sender, metadata={"context": {k: str(v) for k, v in context.items()}},
        )

    async def retry_failed_alerts(self) -> int:
        """Re-send FAILED alerts whose backoff has elapsed. Returns how many were attempted."""
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmailAlert)
                .where(
                    EmailAlert.status == AlertStatus.FAILED,
                    EmailAlert.retry_count < self.settings.alert_max_retries,
                )
                .order_by(EmailAlert.created_at)
            )
            candidates = result.scalars().all()

        attempted = 0
        for alert in candidates:
            delay = retry_delay(
                alert.retry_count, self.settings.alert_retry_base_seconds, self.settings.alert_retry_max_delay_seconds
            )
            if alert.failed_at is not None and alert.failed_at + timedelta(seconds=delay) > now:
                continue
            attempted += 1
            try:
                await self._retry_alert(alert.id)
            except Exception:
                logger.exception("Failed to retry alert %s", alert.id)
        return attempted

    async def _retry_alert(self, alert_id: str) -> None:
        async with self.session_factory() as session:
            alert = await session.get(EmailAlert, alert_id)
            if alert is None or alert.status is not AlertStatus.FAILED:
                return
            stored = (alert.alert_metadata or {}).get("message")
            if not stored:
                logger.warning("Alert %s has no stored message, cannot retry", alert_id)
                return
            alert.status = AlertStatus.RETRYING
            await session.commit()

        message = MailMessage(
            sender=stored["from"], to=stored["to"], subject=stored["subject"], html=stored["html"]
        )
        result = await self.mail_client.send(message)
        if result.ok:
            await self._mark_sent(alert_id, result.id)
            logger.info("Retried alert %s delivered", alert_id)
        else:
            await self._mark_failed(alert_id, result.error)
            logger.warning("Retry of alert %s failed: %s", alert_id, result.error)

    async def _deliver(
        self,
        alert_type: AlertType,
        priority: AlertPriority,
        recipient: str,
        subject: str,
        body: str,
        sender: str,
        order_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AlertResult:
        message = MailMessage(sender=sender, to=[recipient], subject=subject, html=body)
        stored = {"from": message.sender, "to": message.to, "subject": message.subject, "html": message.html}
        alert_id = await self._create_alert_record(
            alert_type, priority, recipient, subject, order_id, {**(metadata or {}), "message": stored}
        )

        result = await self.mail_client.send(message)
        if result.ok:
            await self._mark_sent(alert_id, result.id)
            logger.info("%s alert sent to %s (order %s)", alert_type.value, recipient, order_id)
            return AlertResult(success=True, message_id=result.id)

        await self._mark_failed(alert_id, result.error)
        logger.error("%s alert to %s failed: %s", alert_type.value, recipient, result.error)
        return AlertResult(success=False, error=result.error, retryable=True)

    async def _create_alert_record(self, alert_type, priority, recipient, subject, order_id, metadata) -> str:
        async with self.session_factory() as session:
            alert = EmailAlert(
                type=alert_type,
                priority=priority,
                status=AlertStatus.PENDING,
                recipient_email=recipient,
                subject=subject,
                related_order_id=order_id,
                alert_metadata=metadata,
            )
            session.add(alert)
            await session.commit()
            return alert.id

    async def _mark_sent(self, alert_id: str, message_id: Optional[str]) -> None:
        async with self.session_factory() as session:
            alert = await session.get(EmailAlert, alert_id)
            alert.status = AlertStatus.SENT
            alert.message_id = message_id
            alert.error_message = None
            alert.sent_at = utcnow()
            await session.commit()

    async def _mark_failed(self, alert_id: str, error: Optional[str]) -> None:
        async with self.session_factory() as session:
            alert = await session.get(EmailAlert, alert_id)
            alert.status = AlertStatus.FAILED
            alert.error_message = error
            alert.retry_count = (alert.retry_count or 0) + 1
            alert.failed_at = utcnow()
            await session.commit()
