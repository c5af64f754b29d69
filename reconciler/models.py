import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship, validates

from reconciler.database import Base
from reconciler.errors import OrderIdentityError

PLACEHOLDER_NAME = "Pending"
PLACEHOLDER_EMAIL = "pending@example.com"
PLACEHOLDER_PHONE = "pending"


def utcnow() -> datetime:
    # Naive UTC, matching what the columns store.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class OrderStatus(enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    SHIPPING = "SHIPPING"
    DELIVERED = "DELIVERED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    FULFILLMENT_UPDATED = "FULFILLMENT_UPDATED"


class PaymentStatus(enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class CateringStatus(enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class FulfillmentType(str, enum.Enum):
    PICKUP = "pickup"
    LOCAL_DELIVERY = "local_delivery"
    NATIONWIDE_SHIPPING = "nationwide_shipping"


class AlertType(enum.Enum):
    NEW_ORDER = "NEW_ORDER"
    ORDER_STATUS_CHANGE = "ORDER_STATUS_CHANGE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    CUSTOMER_ORDER_CONFIRMATION = "CUSTOMER_ORDER_CONFIRMATION"


class AlertPriority(enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertStatus(enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    square_order_id = Column(String, unique=True, index=True, nullable=True)
    status = Column(Enum(OrderStatus, name="order_status"), default=OrderStatus.PENDING, nullable=False)
    payment_status = Column(
        Enum(PaymentStatus, name="payment_status"), default=PaymentStatus.PENDING, nullable=False
    )
    total = Column(Numeric(10, 2), default=0, nullable=False)
    gratuity_amount = Column(Numeric(10, 2), default=0, nullable=False)

    customer_name = Column(String, default=PLACEHOLDER_NAME, nullable=False)
    email = Column(String, default=PLACEHOLDER_EMAIL, nullable=False)
    phone = Column(String, default=PLACEHOLDER_PHONE, nullable=False)

    fulfillment_type = Column(String, nullable=True)
    shipping_rate_id = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    label_url = Column(String, nullable=True)
    shipping_carrier = Column(String, nullable=True)
    label_lock_holder = Column(String, nullable=True)
    label_lock_expires_at = Column(DateTime, nullable=True)

    # last processed provider event plus the dedup watermark
    raw_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    payments = relationship("Payment", back_populates="order")

    @validates("square_order_id")
    def _validate_square_order_id(self, key, value):
        current = self.square_order_id
        if current is not None and value != current:
            raise OrderIdentityError(f"Order {self.id} is already linked to Square order {current}")
        return value

    @property
    def is_shipping(self) -> bool:
        return self.fulfillment_type == FulfillmentType.NATIONWIDE_SHIPPING.value


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    square_payment_id = Column(String, unique=True, index=True, nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    tip_amount = Column(Numeric(10, 2), default=0, nullable=False)
    status = Column(Enum(PaymentStatus, name="payment_status"), default=PaymentStatus.PENDING, nullable=False)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment")


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=new_id)
    square_refund_id = Column(String, unique=True, index=True, nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id"), index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    payment = relationship("Payment", back_populates="refunds")


class CateringOrder(Base):
    """Owned by the catering pipeline; read here to keep the two streams apart."""

    __tablename__ = "catering_orders"

    id = Column(String(36), primary_key=True, default=new_id)
    square_order_id = Column(String, unique=True, index=True, nullable=True)
    status = Column(Enum(CateringStatus, name="catering_status"), default=CateringStatus.PENDING, nullable=False)
    payment_status = Column(
        Enum(PaymentStatus, name="payment_status"), default=PaymentStatus.PENDING, nullable=False
    )
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    raw_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class EmailAlert(Base):
    __tablename__ = "email_alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    type = Column(Enum(AlertType, name="alert_type"), nullable=False)
    priority = Column(Enum(AlertPriority, name="alert_priority"), default=AlertPriority.MEDIUM, nullable=False)
    status = Column(Enum(AlertStatus, name="alert_status"), default=AlertStatus.PENDING, nullable=False)
    recipient_email = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    message_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    # "metadata" is reserved on declarative classes
    alert_metadata = Column("metadata", JSON, nullable=True)
    related_order_id = Column(String(36), ForeignKey("orders.id"), index=True, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
