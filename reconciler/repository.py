from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models import CateringOrder, Order, Payment, Refund, new_id, utcnow


def _insert_for(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upsert is not supported on {dialect}")


async def find_order_by_square_id(
    session: AsyncSession, square_order_id: str, for_update: bool = False
) -> Optional[Order]:
    stmt = select(Order).where(Order.square_order_id == square_order_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_catering_order_by_square_id(
    session: AsyncSession, square_order_id: str, for_update: bool = False
) -> Optional[CateringOrder]:
    stmt = select(CateringOrder).where(CateringOrder.square_order_id == square_order_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def has_recent_unlinked_catering_order(session: AsyncSession, since: datetime) -> bool:
    stmt = (
        select(CateringOrder.id)
        .where(CateringOrder.square_order_id.is_(None), CateringOrder.created_at >= since)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.first() is not None


async def find_payment_by_square_id(session: AsyncSession, square_payment_id: str) -> Optional[Payment]:
    result = await session.execute(select(Payment).where(Payment.square_payment_id == square_payment_id))
    return result.scalar_one_or_none()


async def find_refund_by_square_id(session: AsyncSession, square_refund_id: str) -> Optional[Refund]:
    result = await session.execute(select(Refund).where(Refund.square_refund_id == square_refund_id))
    return result.scalar_one_or_none()


async def upsert_payment(session: AsyncSession, square_payment_id: str, order_id: str, **values) -> None:
    """Create-or-update keyed by the Square payment ID; safe under duplicate delivery."""
    now = utcnow()
    stmt = _insert_for(session, Payment).values(
        id=new_id(),
        square_payment_id=square_payment_id,
        order_id=order_id,
        created_at=now,
        updated_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Payment.square_payment_id],
        set_={**values, "updated_at": now},
    )
    await session.execute(stmt)


async def upsert_refund(session: AsyncSession, square_refund_id: str, payment_id: str, **values) -> None:
    now = utcnow()
    stmt = _insert_for(session, Refund).values(
        id=new_id(),
        square_refund_id=square_refund_id,
        payment_id=payment_id,
        created_at=now,
        updated_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Refund.square_refund_id],
        set_={**values, "updated_at": now},
    )
    await session.execute(stmt)
