# model/fulfillment.py
"""
Grant course access for a paid order.

`fulfill_order` only runs after `claim_terminal(..., PAID)` returned True on
the same session and transaction, so a crash anywhere in here rolls the
Paid status back together with the enrollments.
"""
from __future__ import annotations
from typing import Optional

from sqlalchemy import bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .cart import clear_cart
from .db import (
    ACTIVE_ENROLL_STATUSES, EnrollmentStatus, Order, OrderHistory,
    OrderItem, OrderStatus, PurchaseHistory,
)

# a live enrollment is left as is; a cancelled or soft-deleted one comes back
_SQL_UPSERT_ENROLLMENT = text("""
    INSERT INTO enrollments(
        user_id, course_id, status, is_delete, enrolled_at, created_by_id
    ) VALUES (
        :user_id, :course_id, :status, false, :ts, :user_id
    )
    ON CONFLICT (user_id, course_id) DO UPDATE SET
        status = EXCLUDED.status,
        is_delete = false,
        enrolled_at = EXCLUDED.enrolled_at
    WHERE enrollments.is_delete OR enrollments.status NOT IN :active
""").bindparams(bindparam("active", expanding=True))


async def upsert_enrollment(
    db: AsyncSession, user_id: int, course_id: int
) -> None:
    await db.execute(_SQL_UPSERT_ENROLLMENT, {
        "user_id": user_id,
        "course_id": course_id,
        "status": EnrollmentStatus.NOT_STARTED.value,
        "ts": now_ts(),
        "active": list(ACTIVE_ENROLL_STATUSES),
    })


async def fulfill_order(
    db: AsyncSession,
    order: Order,
    *,
    currency: str,
    payment_method: Optional[str],
) -> int:
    """Enroll the buyer in every ordered course; returns the item count."""
    ts = now_ts()
    items = (await db.execute(
        select(OrderItem)
        .where(OrderItem.order_id == order.id)
        .order_by(OrderItem.id)
    )).scalars().all()

    for it in items:
        await upsert_enrollment(db, order.user_id, it.course_id)
        db.add(PurchaseHistory(
            user_id=order.user_id,
            order_id=order.id,
            order_number=order.order_number,
            course_id=it.course_id,
            course_title=it.course_title,
            course_thumbnail=it.course_thumbnail,
            original_price=it.original_price,
            final_price=it.final_price,
            discount_amount=it.discount_amount,
            currency=currency,
            order_status=OrderStatus.PAID.value,
            payment_method=payment_method,
            ordered_at=order.ordered_at or ts,
            paid_at=ts,
            access_granted_at=ts,
            access_status="Active",
        ))

    await clear_cart(db, order.user_id, [it.course_id for it in items])

    titles = ", ".join(it.course_title for it in items)
    db.add(OrderHistory(
        order_id=order.id,
        status=OrderStatus.PAID.value,
        note=f"Access granted to {len(items)} course(s): {titles}",
        created_at=ts,
    ))
    await db.flush()
    return len(items)
