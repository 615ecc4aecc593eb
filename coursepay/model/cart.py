# model/cart.py
from __future__ import annotations
from typing import List, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import CartItem


async def cart_course_ids(db: AsyncSession, user_id: int) -> List[int]:
    rows = (await db.execute(
        select(CartItem.course_id)
        .where(CartItem.user_id == user_id, CartItem.deleted_at.is_(None))
        .order_by(CartItem.created_at, CartItem.id)
    )).scalars().all()
    # first occurrence wins
    return list(dict.fromkeys(rows))


async def clear_cart(
    db: AsyncSession, user_id: int, course_ids: Sequence[int]
) -> None:
    if not course_ids:
        return
    await db.execute(
        delete(CartItem).where(
            CartItem.user_id == user_id,
            CartItem.course_id.in_(list(course_ids)),
        ).execution_options(synchronize_session=False)
    )
