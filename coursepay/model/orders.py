# model/orders.py
"""
Order snapshot writer and the order state transitions.

Every function here runs on the caller's session and inside the caller's
transaction; transaction boundaries belong to the checkout and
reconciliation flows.
"""
from __future__ import annotations
from typing import Optional, Sequence

from sqlalchemy import bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import OrderNotFound
from ..helpers import now_ms, now_ts
from .db import (
    Order, OrderHistory, OrderItem, OrderStatus, OrderType,
    TERMINAL_STATUS_VALUES, User, USER_ACTIVE,
)
from .pricing import PricedItem

CONTEXT_BUY_NOW = "BUY_NOW"
CONTEXT_CART = "CART"

_last_ms = 0


def make_order_number(context: str, user_id: int) -> str:
    # millis never repeat within the process, so a double click from the
    # same buyer cannot collide on the unique order_number
    global _last_ms
    ms = max(now_ms(), _last_ms + 1)
    _last_ms = ms
    return f"{context}_{user_id}_{ms}"


async def is_active_user(db: AsyncSession, user_id: int) -> bool:
    status = (await db.execute(
        select(User.status).where(User.id == user_id)
    )).scalar_one_or_none()
    return status == USER_ACTIVE


async def create_order_snapshot(
    db: AsyncSession,
    *,
    user_id: int,
    context: str,
    items: Sequence[PricedItem],
    currency: str,
) -> Order:
    """
    Persist a Draft order and its items.

    Totals are summed from the items once, here, and never recomputed:
        total = subtotal - discount + tax + fee   (tax = fee = 0)
    """
    subtotal = sum(i.original for i in items)
    discount = sum(i.discount for i in items)
    tax = 0
    fee = 0
    ts = now_ts()

    order = Order(
        order_number=make_order_number(context, user_id),
        user_id=user_id,
        subtotal_amount=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        fee_amount=fee,
        total_amount=subtotal - discount + tax + fee,
        currency=currency,
        status=OrderStatus.DRAFT.value,
        order_type=OrderType.PURCHASE.value,
        created_at=ts,
        updated_at=ts,
        items=[
            OrderItem(
                course_id=it.course_id,
                course_title=it.title,
                course_thumbnail=it.thumbnail,
                original_price=it.original,
                discount_amount=it.discount,
                discounted_price=it.original - it.discount,
                final_price=it.original - it.discount,
            )
            for it in items
        ],
    )
    db.add(order)
    await db.flush()
    db.add(OrderHistory(
        order_id=order.id,
        status=OrderStatus.DRAFT.value,
        note=f"{context} order created ({len(items)} items)",
        created_at=ts,
    ))
    await db.flush()
    return order


async def find_order(
    db: AsyncSession, order_number: str
) -> Optional[Order]:
    return (await db.execute(
        select(Order).where(Order.order_number == order_number)
    )).scalar_one_or_none()


async def load_order_or_raise(db: AsyncSession, order_number: str) -> Order:
    order = await find_order(db, order_number)
    if order is None:
        raise OrderNotFound()
    return order


async def current_status(db: AsyncSession, order_id: int) -> OrderStatus:
    status = (await db.execute(
        select(Order.status).where(Order.id == order_id)
    )).scalar_one()
    return OrderStatus(status)


async def mark_pending(
    db: AsyncSession,
    order_id: int,
    *,
    payment_method: str,
    payment_reference: Optional[str],
) -> bool:
    ts = now_ts()
    row = (await db.execute(text("""
        UPDATE orders
        SET status = :pending, payment_method = :method,
            payment_reference = :ref, ordered_at = :ts, updated_at = :ts
        WHERE id = :id AND status = :draft
        RETURNING id
    """), {
        "pending": OrderStatus.PENDING.value,
        "draft": OrderStatus.DRAFT.value,
        "method": payment_method,
        "ref": payment_reference,
        "ts": ts,
        "id": order_id,
    })).first()
    if row is None:
        return False
    db.add(OrderHistory(
        order_id=order_id,
        status=OrderStatus.PENDING.value,
        note=f"{payment_method} session created (ref={payment_reference})",
        created_at=ts,
    ))
    await db.flush()
    return True


_SQL_CLAIM_TERMINAL = text("""
    UPDATE orders
    SET status = :status,
        payment_method = COALESCE(:method, payment_method),
        payment_reference = COALESCE(:ref, payment_reference),
        admin_notes = COALESCE(:note, admin_notes),
        paid_at = COALESCE(:paid_at, paid_at),
        updated_at = :ts
    WHERE id = :id AND status NOT IN :terminal
    RETURNING id
""").bindparams(bindparam("terminal", expanding=True))


async def claim_terminal(
    db: AsyncSession,
    order_id: int,
    status: OrderStatus,
    *,
    payment_reference: Optional[str] = None,
    payment_method: Optional[str] = None,
    note: Optional[str] = None,
) -> bool:
    """
    Move a non-terminal order to `status` in a single statement.

    Returns False when the order already was terminal; the row lock taken by
    the UPDATE serializes concurrent callers, so at most one of them sees
    True for a given order.
    """
    ts = now_ts()
    row = (await db.execute(_SQL_CLAIM_TERMINAL, {
        "status": status.value,
        "paid_at": ts if status is OrderStatus.PAID else None,
        "method": payment_method,
        "ref": payment_reference or None,
        "note": note,
        "ts": ts,
        "id": order_id,
        "terminal": list(TERMINAL_STATUS_VALUES),
    })).first()
    if row is None:
        return False
    db.add(OrderHistory(
        order_id=order_id, status=status.value, note=note, created_at=ts,
    ))
    await db.flush()
    return True
