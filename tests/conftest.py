from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from reconciler import models  # noqa: F401
from reconciler.alerts import AlertService
from reconciler.backfill import BackfillFetcher
from reconciler.config import Settings
from reconciler.database import Base, create_session_factory
from reconciler.deduplicator import RequestDeduplicator
from reconciler.dispatcher import SideEffectDispatcher
from reconciler.handlers import WebhookReconciler
from reconciler.labels import LabelPurchaseResult, ShippingLabelService
from reconciler.models import FulfillmentType, Order, OrderStatus, Payment, PaymentStatus
from reconciler.schemas import WebhookPayload


class WriteCounter:
    """Counts INSERT/UPDATE/DELETE statements sent to the database."""

    def __init__(self):
        self.statements = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()


class Events:
    """Builders for Square webhook deliveries."""

    @staticmethod
    def envelope(event_type: str, event_id: str, object_type: str, object_id: str, obj: dict) -> WebhookPayload:
        return WebhookPayload.model_validate(
            {
                "merchant_id": "MERCHANT_1",
                "type": event_type,
                "event_id": event_id,
                "created_at": "2026-10-18T12:00:00Z",
                "data": {"type": object_type, "id": object_id, "object": obj},
            }
        )

    @classmethod
    def order(cls, event_type, event_id, square_order_id="sq_order_1", state="OPEN"):
        key = "order_created" if event_type == "order.created" else "order_updated"
        obj = {key: {"order_id": square_order_id, "state": state, "version": 1}}
        return cls.envelope(event_type, event_id, "order", square_order_id, obj)

    @classmethod
    def fulfillment(cls, event_id, new_state, square_order_id="sq_order_1", old_state="PROPOSED"):
        obj = {
            "order_fulfillment_updated": {
                "order_id": square_order_id,
                "state": "OPEN",
                "fulfillment_update": [{"fulfillment_uid": "ful_1", "old_state": old_state, "new_state": new_state}],
            }
        }
        return cls.envelope("order.fulfillment.updated", event_id, "order_fulfillment_updated", square_order_id, obj)

    @classmethod
    def payment(
        cls,
        event_id,
        event_type="payment.updated",
        payment_id="pay_1",
        square_order_id="sq_order_1",
        status="COMPLETED",
        amount=2500,
        tip=None,
        **fields,
    ):
        payment = {"id": payment_id, "order_id": square_order_id, "status": status}
        if amount is not None:
            payment["amount_money"] = {"amount": amount, "currency": "USD"}
        if tip is not None:
            payment["tip_money"] = {"amount": tip, "currency": "USD"}
        payment.update(fields)
        return cls.envelope(event_type, event_id, "payment", payment_id, {"payment": payment})

    @classmethod
    def refund(cls, event_id, event_type="refund.created", refund_id="ref_1", payment_id="pay_1", status="PENDING", amount=1000):
        refund = {"id": refund_id, "payment_id": payment_id, "status": status, "reason": "Customer request"}
        if amount is not None:
            refund["amount_money"] = {"amount": amount, "currency": "USD"}
        return cls.envelope(event_type, event_id, "refund", refund_id, {"refund": refund})


@pytest.fixture
def events():
    return Events


@pytest.fixture
def settings():
    return Settings(
        resend_api_key="re_test",
        shippo_api_key="shippo_test",
        admin_email="admin@shop.test",
        from_email="orders@shop.test",
        shop_name="Test Shop",
        db_retry_attempts=1,
        label_verify_delay_seconds=0.01,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def write_counter(engine):
    counter = WriteCounter()
    event.listen(engine.sync_engine, "before_cursor_execute", counter)
    yield counter
    event.remove(engine.sync_engine, "before_cursor_execute", counter)


@pytest.fixture
def alerts():
    return AsyncMock(spec=AlertService)


@pytest.fixture
def labels():
    labels = AsyncMock(spec=ShippingLabelService)
    labels.purchase_label.return_value = LabelPurchaseResult(success=True, tracking_number="TRACK123")
    labels.has_label.return_value = True
    return labels


@pytest.fixture
def backfill():
    backfill = AsyncMock(spec=BackfillFetcher)
    backfill.backfill_order.return_value = None
    return backfill


@pytest.fixture
def dispatcher():
    return SideEffectDispatcher()


@pytest.fixture
def deduplicator():
    return RequestDeduplicator(ttl_seconds=120)


@pytest.fixture
def reconciler(session_factory, alerts, labels, backfill, deduplicator, dispatcher, settings):
    return WebhookReconciler(session_factory, alerts, labels, backfill, deduplicator, dispatcher, settings)


@pytest.fixture
def create_order(session_factory):
    async def _create(**values) -> Order:
        fields = {
            "square_order_id": "sq_order_1",
            "status": OrderStatus.PENDING,
            "payment_status": PaymentStatus.PENDING,
            "total": Decimal("25.00"),
            "gratuity_amount": Decimal("0.00"),
            "customer_name": "Ada Lovelace",
            "email": "ada@example.com",
            "phone": "+15550100",
            "fulfillment_type": FulfillmentType.PICKUP.value,
        }
        fields.update(values)
        async with session_factory() as session:
            order = Order(**fields)
            session.add(order)
            await session.commit()
            return order

    return _create


@pytest.fixture
def create_payment(session_factory):
    async def _create(order_id: str, **values) -> Payment:
        fields = {
            "square_payment_id": "pay_1",
            "order_id": order_id,
            "amount": Decimal("25.00"),
            "tip_amount": Decimal("0.00"),
            "status": PaymentStatus.PENDING,
        }
        fields.update(values)
        async with session_factory() as session:
            payment = Payment(**fields)
            session.add(payment)
            await session.commit()
            return payment

    return _create


@pytest.fixture
def load(session_factory):
    """Fresh read of a row by primary key."""

    async def _load(model, pk):
        async with session_factory() as session:
            return await session.get(model, pk)

    return _load
