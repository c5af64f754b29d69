"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

order_status = postgresql.ENUM(
    "PENDING", "PROCESSING", "READY", "COMPLETED", "CANCELLED", "SHIPPING", "DELIVERED",
    "PAYMENT_FAILED", "FULFILLMENT_UPDATED",
    name="order_status", create_type=False,
)
payment_status = postgresql.ENUM("PENDING", "PAID", "FAILED", "REFUNDED", name="payment_status", create_type=False)
catering_status = postgresql.ENUM(
    "PENDING", "CONFIRMED", "PREPARING", "COMPLETED", "CANCELLED", name="catering_status", create_type=False
)
alert_type = postgresql.ENUM(
    "NEW_ORDER", "ORDER_STATUS_CHANGE", "PAYMENT_FAILED", "SYSTEM_ERROR", "CUSTOMER_ORDER_CONFIRMATION",
    name="alert_type", create_type=False,
)
alert_priority = postgresql.ENUM("LOW", "MEDIUM", "HIGH", "CRITICAL", name="alert_priority", create_type=False)
alert_status = postgresql.ENUM("PENDING", "SENT", "FAILED", "RETRYING", name="alert_status", create_type=False)

ENUMS = (order_status, payment_status, catering_status, alert_type, alert_priority, alert_status)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("square_order_id", sa.String(), nullable=True),
        sa.Column("status", order_status, nullable=False),
        sa.Column("payment_status", payment_status, nullable=False),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("gratuity_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("customer_name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=False),
        sa.Column("fulfillment_type", sa.String(), nullable=True),
        sa.Column("shipping_rate_id", sa.String(), nullable=True),
        sa.Column("tracking_number", sa.String(), nullable=True),
        sa.Column("label_url", sa.String(), nullable=True),
        sa.Column("shipping_carrier", sa.String(), nullable=True),
        sa.Column("label_lock_holder", sa.String(), nullable=True),
        sa.Column("label_lock_expires_at", sa.DateTime(), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_square_order_id", "orders", ["square_order_id"], unique=True)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("square_payment_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("tip_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", payment_status, nullable=False),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_square_payment_id", "payments", ["square_payment_id"], unique=True)
    op.create_index("ix_payments_order_id", "payments", ["order_id"])

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("square_refund_id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(36), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_refunds_square_refund_id", "refunds", ["square_refund_id"], unique=True)
    op.create_index("ix_refunds_payment_id", "refunds", ["payment_id"])

    op.create_table(
        "catering_orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("square_order_id", sa.String(), nullable=True),
        sa.Column("status", catering_status, nullable=False),
        sa.Column("payment_status", payment_status, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_catering_orders_square_order_id", "catering_orders", ["square_order_id"], unique=True)

    op.create_table(
        "email_alerts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", alert_type, nullable=False),
        sa.Column("priority", alert_priority, nullable=False),
        sa.Column("status", alert_status, nullable=False),
        sa.Column("recipient_email", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("related_order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_email_alerts_related_order_id", "email_alerts", ["related_order_id"])
    op.create_index("ix_email_alerts_status_retry", "email_alerts", ["status", "retry_count"])


def downgrade() -> None:
    op.drop_table("email_alerts")
    op.drop_table("catering_orders")
    op.drop_table("refunds")
    op.drop_table("payments")
    op.drop_table("orders")
    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
