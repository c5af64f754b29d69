"""Square webhook reconciliation.

``WebhookReconciler.process`` routes one delivery to the handler for its
event type and always returns a ``HandlerResult``. Handlers follow the same
shape:

* look the record up inside a single transaction (order rows ``FOR UPDATE``);
* stop if the record's watermark already holds this event ID;
* compute the target state and stop if nothing would change;
* write, stamp the watermark and commit;
* only then hand notifications and label purchases to the dispatcher.

Checkout is the only creator of storefront orders. Order-level events for
an unknown order wait for ``order.created``; payment and fulfillment events
backfill the order from Square because they have no create event of their
own.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from functools import partial
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler import repository
from reconciler.alerts import AlertService
from reconciler.backfill import BackfillFetcher
from reconciler.config import Settings
from reconciler.deduplicator import RequestDeduplicator, make_key
from reconciler.dispatcher import SideEffectDispatcher
from reconciler.errors import TransientError
from reconciler.labels import ShippingLabelService
from reconciler.ledger import already_applied, read_watermark, stamp
from reconciler.models import (
    PLACEHOLDER_EMAIL,
    PLACEHOLDER_NAME,
    PLACEHOLDER_PHONE,
    Order,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from reconciler.money import cents_to_decimal
from reconciler.results import HandlerResult, SkipReason
from reconciler.retry import is_transient_error, run_with_db_retry
from reconciler.schemas import SquarePayment, WebhookPayload
from reconciler.status_mapping import (
    is_status_downgrade,
    map_catering_payment_state,
    map_fulfillment_state_to_status,
    map_order_state_to_status,
    map_payment_state_to_status,
)

logger = logging.getLogger(__name__)

# order statuses order.updated is allowed to write
ORDER_UPDATE_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.COMPLETED})

# raw_data markers that survive later events
_KEPT_MARKERS = ("source", "syncReason")

_PLACEHOLDERS = {
    "customer_name": PLACEHOLDER_NAME,
    "email": PLACEHOLDER_EMAIL,
    "phone": PLACEHOLDER_PHONE,
}


def _stamped(raw_data: Optional[dict], payload: WebhookPayload) -> dict:
    previous = read_watermark(raw_data).payload
    kept = {key: previous[key] for key in _KEPT_MARKERS if key in previous}
    return stamp(payload.model_dump(mode="json"), payload.event_id, **kept)


def _money(money) -> Optional[Decimal]:
    if money is None or money.amount is None:
        return None
    return cents_to_decimal(money.amount)


def _is_placeholder(value: Optional[str], placeholder: str) -> bool:
    return value is None or value.strip().lower() == placeholder.lower()


def buyer_contact(payment: SquarePayment) -> dict:
    """Best-effort customer contact details from a Square payment."""
    buyer = payment.buyer
    email = payment.buyer_email_address or payment.receipt_email or (buyer.email_address if buyer else None)
    addresses = [a for a in (payment.billing_address, payment.shipping_address) if a is not None]
    name = next((a.full_name for a in addresses if a.full_name), None)
    phone = (buyer.phone_number if buyer else None) or next(
        (a.phone_number for a in addresses if a.phone_number), None
    )
    return {"customer_name": name, "email": email, "phone": phone}


def placeholder_updates(order: Order, payment: SquarePayment) -> dict:
    """Contact fields to write: only those still holding a placeholder."""
    contact = buyer_contact(payment)
    updates = {}
    for field, placeholder in _PLACEHOLDERS.items():
        value = contact[field]
        if value and _is_placeholder(getattr(order, field), placeholder):
            updates[field] = value
    return updates


class WebhookReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        alerts: AlertService,
        labels: ShippingLabelService,
        backfill: BackfillFetcher,
        deduplicator: RequestDeduplicator,
        dispatcher: SideEffectDispatcher,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.alerts = alerts
        self.labels = labels
        self.backfill = backfill
        self.deduplicator = deduplicator
        self.dispatcher = dispatcher
        self.settings = settings
        self._handlers = {
            "order.created": self.handle_order_created,
            "order.updated": self.handle_order_updated,
            "order.fulfillment.updated": self.handle_fulfillment_updated,
            "payment.created": self.handle_payment_created,
            "payment.updated": self.handle_payment_updated,
            "refund.created": self.handle_refund,
            "refund.updated": self.handle_refund,
        }

    async def process(self, payload: WebhookPayload) -> HandlerResult:
        handler = self._handlers.get(payload.type)
        if handler is None:
            logger.info("Ignoring unhandled webhook type %s (event %s)", payload.type, payload.event_id)
            return HandlerResult.skipped(SkipReason.UNHANDLED_EVENT_TYPE, payload.type)

        try:
            result = await handler(payload)
        except Exception as e:
            detail = f"{type(e).__name__}: {e}"
            if is_transient_error(e):
                logger.warning("Transient failure handling %s event %s: %s", payload.type, payload.event_id, detail)
                return HandlerResult.transient(detail)
            logger.exception("Unexpected error handling %s event %s", payload.type, payload.event_id)
            context = {"eventId": payload.event_id, "eventType": payload.type, "resourceId": payload.data.id}
            self.dispatcher.fire(
                f"system-error:{payload.event_id}", partial(self.alerts.send_system_error_alert, detail, context)
            )
            return HandlerResult.permanent(detail)

        logger.info(
            "%s event %s: %s%s",
            payload.type,
            payload.event_id,
            result.outcome.value,
            f" ({result.reason.value})" if result.reason else "",
        )
        return result

    async def _run(self, unit_of_work: Callable[[], Awaitable]):
        return await run_with_db_retry(unit_of_work, self.settings.db_retry_attempts)

    async def _is_catering(self, session: AsyncSession, square_order_id: str, guard_window: bool = False) -> bool:
        if await repository.find_catering_order_by_square_id(session, square_order_id) is not None:
            return True
        window = self.settings.catering_guard_window_seconds
        if guard_window and window > 0:
            since = utcnow() - timedelta(seconds=window)
            if await repository.has_recent_unlinked_catering_order(session, since):
                logger.info("Skipping Square order %s: a catering order was placed in the last %ss", square_order_id, window)
                return True
        return False

    async def _with_backfill(
        self, square_order_id: str, sync_reason: str, apply: Callable[[], Awaitable[Optional[HandlerResult]]]
    ) -> HandlerResult:
        """Run ``apply``; if it finds no order, backfill from Square and run it once more.

        ``apply`` returns None when the order does not exist locally. A failed
        backfill raises TransientError.
        """
        result = await self._run(apply)
        if result is not None:
            return result

        logger.warning("Square order %s unknown locally, backfilling (%s)", square_order_id, sync_reason)
        order_id = await self.backfill.backfill_order(square_order_id, sync_reason)
        if order_id is None:
            raise TransientError(f"backfill of Square order {square_order_id} failed")

        result = await self._run(apply)
        if result is None:
            raise TransientError(f"Square order {square_order_id} still missing after backfill")
        return result

    # order.created

    async def handle_order_created(self, payload: WebhookPayload) -> HandlerResult:
        change = payload.order_state_change("order_created")
        square_order_id = change.order_id or payload.data.id
        if not square_order_id:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, "order.created without order_id")
        target = map_order_state_to_status(change.state)

        async def apply() -> HandlerResult:
            async with self.session_factory() as session:
                if await self._is_catering(session, square_order_id, guard_window=True):
                    return HandlerResult.skipped(SkipReason.CATERING_ORDER, square_order_id)

                order = await repository.find_order_by_square_id(session, square_order_id, for_update=True)
                if order is None:
                    # checkout creates orders; a webhook never does
                    logger.warning("order.created for unknown Square order %s, not creating it", square_order_id)
                    return HandlerResult.skipped(SkipReason.ORDER_NOT_FOUND, square_order_id)
                if already_applied(order.raw_data, payload.event_id):
                    return HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

                if order.status != target and not is_status_downgrade(order.status, target):
                    logger.info("Order %s status %s -> %s", order.id, order.status.value, target.value)
                    order.status = target
                order.raw_data = _stamped(order.raw_data, payload)
                await session.commit()
                return HandlerResult.applied(order.id)

        return await self._run(apply)

    # order.updated

    async def handle_order_updated(self, payload: WebhookPayload) -> HandlerResult:
        change = payload.order_state_change("order_updated")
        square_order_id = change.order_id or payload.data.id
        if not square_order_id:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, "order.updated without order_id")
        target = map_order_state_to_status(change.state)

        async def apply() -> HandlerResult:
            async with self.session_factory() as session:
                if await self._is_catering(session, square_order_id):
                    return HandlerResult.skipped(SkipReason.CATERING_ORDER, square_order_id)

                order = await repository.find_order_by_square_id(session, square_order_id, for_update=True)
                if order is None:
                    logger.warning("order.updated for unknown Square order %s, waiting for order.created", square_order_id)
                    return HandlerResult.skipped(SkipReason.ORDER_NOT_FOUND, square_order_id)
                if already_applied(order.raw_data, payload.event_id):
                    return HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

                # finer-grained statuses come from payment and fulfillment events
                if (
                    target not in ORDER_UPDATE_STATUSES
                    or order.status == target
                    or (order.status is OrderStatus.DELIVERED and target is OrderStatus.COMPLETED)
                ):
                    return HandlerResult.skipped(SkipReason.NO_CHANGE)

                previous = order.status
                order.status = target
                if target is OrderStatus.CANCELLED:
                    order.payment_status = PaymentStatus.REFUNDED
                order.raw_data = _stamped(order.raw_data, payload)
                await session.commit()

            logger.info("Order %s status %s -> %s", order.id, previous.value, target.value)
            self._notify_status_change(order, previous)
            return HandlerResult.applied(order.id)

        return await self._run(apply)

    # order.fulfillment.updated

    async def handle_fulfillment_updated(self, payload: WebhookPayload) -> HandlerResult:
        change = payload.fulfillment_change()
        square_order_id = change.order_id or payload.data.id
        if not square_order_id:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, "fulfillment update without order_id")
        new_state = change.fulfillment_update[-1].new_state if change.fulfillment_update else None
        if not new_state:
            return HandlerResult.skipped(SkipReason.UNMAPPED_STATE, "fulfillment update without new_state")

        async def apply() -> Optional[HandlerResult]:
            async with self.session_factory() as session:
                if await self._is_catering(session, square_order_id):
                    return HandlerResult.skipped(SkipReason.CATERING_ORDER, square_order_id)

                order = await repository.find_order_by_square_id(session, square_order_id, for_update=True)
                if order is None:
                    return None
                if already_applied(order.raw_data, payload.event_id):
                    return HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

                target = map_fulfillment_state_to_status(new_state, order.fulfillment_type)
                if target is None:
                    return HandlerResult.skipped(SkipReason.UNMAPPED_STATE, new_state)
                if order.status == target:
                    return HandlerResult.skipped(SkipReason.NO_CHANGE)
                if is_status_downgrade(order.status, target):
                    logger.info(
                        "Ignoring fulfillment %s for order %s: would move %s back to %s",
                        new_state, order.id, order.status.value, target.value,
                    )
                    order.raw_data = _stamped(order.raw_data, payload)
                    await session.commit()
                    return HandlerResult.skipped(SkipReason.NO_CHANGE, "status downgrade")

                previous = order.status
                order.status = target
                order.raw_data = _stamped(order.raw_data, payload)
                await session.commit()

            logger.info("Order %s fulfillment %s: %s -> %s", order.id, new_state, previous.value, target.value)
            self._notify_status_change(order, previous)
            return HandlerResult.applied(order.id)

        return await self._with_backfill(square_order_id, "fulfillment_update", apply)

    # payment.created

    async def handle_payment_created(self, payload: WebhookPayload) -> HandlerResult:
        payment = payload.payment()
        payment_id = payment.id or payload.data.id
        square_order_id = payment.order_id
        if not square_order_id:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, f"payment {payment_id} without order_id")
        amount = _money(payment.amount_money)
        if amount is None:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, f"payment {payment_id} without amount")
        tip = _money(payment.tip_money)

        mapped = map_payment_state_to_status(payment.status)
        # a created payment counts as paid unless Square says otherwise
        row_status = mapped if mapped in (PaymentStatus.FAILED, PaymentStatus.REFUNDED) else PaymentStatus.PAID

        async def apply() -> HandlerResult:
            async with self.session_factory() as session:
                if await self._is_catering(session, square_order_id):
                    return HandlerResult.skipped(SkipReason.CATERING_ORDER, square_order_id)

                order = await repository.find_order_by_square_id(session, square_order_id, for_update=True)
                if order is None:
                    logger.warning(
                        "Payment %s references unknown Square order %s, waiting for order.created",
                        payment_id, square_order_id,
                    )
                    return HandlerResult.skipped(SkipReason.ORDER_NOT_FOUND, square_order_id)
                existing = await repository.find_payment_by_square_id(session, payment_id)
                if existing is not None and already_applied(existing.raw_data, payload.event_id):
                    return HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

                await repository.upsert_payment(
                    session,
                    payment_id,
                    order.id,
                    amount=amount,
                    tip_amount=tip or Decimal("0.00"),
                    status=row_status,
                    raw_data=stamp(payload.data.object, payload.event_id),
                )

                became_paid = row_status is PaymentStatus.PAID and order.payment_status is not PaymentStatus.PAID
                if became_paid:
                    order.payment_status = PaymentStatus.PAID
                    if not is_status_downgrade(order.status, OrderStatus.PROCESSING):
                        order.status = OrderStatus.PROCESSING
                    if tip:
                        order.gratuity_amount = tip
                for field, value in placeholder_updates(order, payment).items():
                    logger.info("Order %s %s replaced placeholder from payment %s", order.id, field, payment_id)
                    setattr(order, field, value)
                await session.commit()

            if became_paid:
                logger.info("Order %s paid via payment %s", order.id, payment_id)
                self._dispatch_paid_side_effects(order)
            return HandlerResult.applied(order.id)

        return await self._run(apply)

    # payment.updated

    async def handle_payment_updated(self, payload: WebhookPayload) -> HandlerResult:
        payment = payload.payment()
        payment_id = payment.id or payload.data.id
        if not payment.order_id:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, f"payment {payment_id} without order_id")
        status_tag = (payment.status or "UNKNOWN").upper()
        key = make_key("payment", payment_id, f"webhook-{status_tag}")
        return await self.deduplicator.deduplicate(key, partial(self._reconcile_payment, payload, payment, payment_id))

    async def _reconcile_payment(
        self, payload: WebhookPayload, payment: SquarePayment, payment_id: str
    ) -> HandlerResult:
        square_order_id = payment.order_id

        async def apply() -> Optional[HandlerResult]:
            async with self.session_factory() as session:
                catering = await repository.find_catering_order_by_square_id(session, square_order_id, for_update=True)
                if catering is not None:
                    return await self._apply_catering_payment(session, catering, payment)

                order = await repository.find_order_by_square_id(session, square_order_id, for_update=True)
                if order is None:
                    return None
                return await self._apply_order_payment(session, order, payload, payment, payment_id)

        return await self._with_backfill(square_order_id, "payment_update", apply)

    async def _apply_catering_payment(self, session: AsyncSession, catering, payment: SquarePayment) -> HandlerResult:
        payment_status, catering_status = map_catering_payment_state(payment.status)
        if catering.payment_status == payment_status and (catering_status is None or catering.status == catering_status):
            return HandlerResult.skipped(SkipReason.NO_CHANGE, "catering order")

        catering.payment_status = payment_status
        if catering_status is not None:
            catering.status = catering_status
        await session.commit()
        logger.info("Catering order %s payment status -> %s", catering.id, payment_status.value)
        return HandlerResult.applied(catering.id)

    async def _apply_order_payment(
        self, session: AsyncSession, order: Order, payload: WebhookPayload, payment: SquarePayment, payment_id: str
    ) -> HandlerResult:
        existing = await repository.find_payment_by_square_id(session, payment_id)
        if already_applied(order.raw_data, payload.event_id) or (
            existing is not None and already_applied(existing.raw_data, payload.event_id)
        ):
            return HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

        mapped = map_payment_state_to_status(payment.status)
        current_payment_status = order.payment_status
        # once paid, only a refund moves the payment status
        if current_payment_status is PaymentStatus.PAID and mapped is not PaymentStatus.REFUNDED:
            target_payment_status = PaymentStatus.PAID
        else:
            target_payment_status = mapped
        became_paid = current_payment_status is not PaymentStatus.PAID and target_payment_status is PaymentStatus.PAID

        target_status = order.status
        if became_paid and not is_status_downgrade(order.status, OrderStatus.PROCESSING):
            target_status = OrderStatus.PROCESSING

        tip = _money(payment.tip_money)
        new_tip = tip is not None and tip > 0 and tip != order.gratuity_amount
        contact = placeholder_updates(order, payment)

        row_status = mapped
        if existing is not None and existing.status is PaymentStatus.PAID and mapped is not PaymentStatus.REFUNDED:
            row_status = PaymentStatus.PAID
        row_changed = existing is None or existing.status != row_status

        if (
            target_payment_status == current_payment_status
            and target_status == order.status
            and not new_tip
            and not contact
            and not row_changed
        ):
            return HandlerResult.skipped(SkipReason.NO_CHANGE)

        previous_status = order.status
        order.payment_status = target_payment_status
        order.status = target_status
        if new_tip:
            order.gratuity_amount = tip
        for field, value in contact.items():
            setattr(order, field, value)
        order.raw_data = _stamped(order.raw_data, payload)

        amount = _money(payment.amount_money)
        if amount is None:
            amount = existing.amount if existing is not None else Decimal("0.00")
        await repository.upsert_payment(
            session,
            payment_id,
            order.id,
            amount=amount,
            tip_amount=tip or (existing.tip_amount if existing is not None else Decimal("0.00")),
            status=row_status,
            raw_data=stamp(payload.data.object, payload.event_id),
        )
        await session.commit()

        logger.info(
            "Order %s payment %s -> %s, status %s -> %s",
            order.id, current_payment_status.value, target_payment_status.value,
            previous_status.value, target_status.value,
        )
        if became_paid:
            self._dispatch_paid_side_effects(order)
        elif target_payment_status is PaymentStatus.FAILED and current_payment_status is not PaymentStatus.FAILED:
            self.dispatcher.fire(
                f"payment-failed:{order.id}",
                partial(self.alerts.send_payment_failed_alert, order, f"Square payment {payment_id} is {payment.status}"),
            )
        return HandlerResult.applied(order.id)

    # refund.created / refund.updated

    async def handle_refund(self, payload: WebhookPayload) -> HandlerResult:
        refund = payload.refund()
        refund_id = refund.id or payload.data.id
        if not refund.payment_id:
            return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, f"refund {refund_id} without payment_id")
        refund_status = (refund.status or "PENDING").upper()

        async def apply() -> HandlerResult:
            async with self.session_factory() as session:
                payment = await repository.find_payment_by_square_id(session, refund.payment_id)
                if payment is None:
                    logger.warning("Refund %s references unknown payment %s", refund_id, refund.payment_id)
                    return HandlerResult.skipped(SkipReason.PAYMENT_NOT_FOUND, refund.payment_id)

                existing = await repository.find_refund_by_square_id(session, refund_id)
                if existing is not None and already_applied(existing.raw_data, payload.event_id):
                    return HandlerResult.skipped(SkipReason.DUPLICATE_EVENT)

                amount = _money(refund.amount_money)
                if amount is None:
                    if existing is None:
                        return HandlerResult.skipped(SkipReason.INVALID_PAYLOAD, f"refund {refund_id} without amount")
                    amount = existing.amount
                reason = refund.reason if refund.reason is not None else (existing.reason if existing else None)

                await repository.upsert_refund(
                    session,
                    refund_id,
                    payment.id,
                    amount=amount,
                    status=refund_status,
                    reason=reason,
                    raw_data=stamp(payload.data.object, payload.event_id),
                )
                if refund_status == "COMPLETED":
                    order = await session.get(Order, payment.order_id, with_for_update=True)
                    if order is not None and order.payment_status is not PaymentStatus.REFUNDED:
                        logger.info("Order %s refunded via refund %s", order.id, refund_id)
                        order.payment_status = PaymentStatus.REFUNDED
                await session.commit()
                return HandlerResult.applied(refund_id)

        return await self._run(apply)

    # side effects

    def _notify_status_change(self, order: Order, previous: OrderStatus) -> None:
        self.dispatcher.fire(
            f"status-change:{order.id}", partial(self.alerts.send_order_status_change_alert, order, previous)
        )

    def _dispatch_paid_side_effects(self, order: Order) -> None:
        self.dispatcher.fire(f"new-order-alert:{order.id}", partial(self.alerts.send_new_order_alert, order))
        self.dispatcher.fire(
            f"order-confirmation:{order.id}", partial(self.alerts.send_customer_order_confirmation, order)
        )
        if order.is_shipping and order.shipping_rate_id:
            self.dispatcher.fire(
                f"label-purchase:{order.id}", partial(self._purchase_label, order.id, order.shipping_rate_id)
            )

    async def _purchase_label(self, order_id: str, rate_id: str) -> None:
        result = await self.labels.purchase_label(order_id, rate_id)
        if result.success:
            logger.info("Label ready for order %s, tracking %s", order_id, result.tracking_number)
        elif result.blocked_by_concurrent:
            logger.info("Label purchase for order %s owned elsewhere, verifying later", order_id)
            self.dispatcher.fire_later(
                self.settings.label_verify_delay_seconds,
                f"label-verify:{order_id}",
                partial(self._verify_label, order_id),
            )
        else:
            logger.error("Automatic label purchase failed for order %s: %s", order_id, result.error)

    async def _verify_label(self, order_id: str) -> None:
        if not await self.labels.has_label(order_id):
            logger.error("Order %s still has no shipping label after a concurrent purchase; needs manual follow-up", order_id)
