"""
Checkout initiators: buy-now (one course) and cart checkout.

Both end the same way: a Draft order snapshot, a gateway payment session,
and Draft -> Pending once the gateway has confirmed the session.
"""
from __future__ import annotations
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import (
    CourseAlreadyFree, EmptyCart, InactiveUser, NothingToCharge,
    internal_errors,
)
from .gateway import PaymentAdapter
from .infra.sql import Gated
from .infra.timings import timeit
from .model.cart import cart_course_ids
from .model.fulfillment import upsert_enrollment
from .model.orders import (
    CONTEXT_BUY_NOW, CONTEXT_CART, create_order_snapshot, is_active_user,
    mark_pending,
)
from .model.pricing import (
    PricingOracle, ensure_not_owned, find_approved_course, prepare_items,
    price_course,
)
from .schemas import PaymentInitOut

logger = logging.getLogger(__name__)


@internal_errors("buy-now checkout")
async def buy_now(
    db: AsyncSession,
    *,
    gated: Gated,
    gateway: PaymentAdapter,
    oracle: PricingOracle,
    settings: Settings,
    user_id: int,
    course_id: int,
    coupon_code: Optional[str] = None,
) -> PaymentInitOut:
    # the snapshot is written in the transaction that read the course, so
    # it never prices a catalog row that has changed underneath it
    order = None
    async with gated():
        async with timeit("db.snapshot"):
            async with db.begin():
                if not await is_active_user(db, user_id):
                    raise InactiveUser()
                course = await find_approved_course(db, course_id)
                await ensure_not_owned(db, user_id, course_id)
                if course.is_free:
                    await upsert_enrollment(db, user_id, course_id)
                else:
                    item = await price_course(
                        oracle, user_id, course, coupon_code
                    )
                    if item.final <= 0:
                        raise NothingToCharge()
                    order = await create_order_snapshot(
                        db,
                        user_id=user_id,
                        context=CONTEXT_BUY_NOW,
                        items=[item],
                        currency=settings.currency,
                    )

    # raised only after the enrollment above has committed
    if order is None:
        logger.info("free course %s enrolled for user=%s", course_id, user_id)
        raise CourseAlreadyFree()

    # no DB transaction held while talking to the gateway; on failure the
    # order simply stays Draft
    async with timeit("gateway.create"):
        session = await gateway.create_session(
            order.order_number, order.total_amount,
            f"Buy course #{course_id}",
        )

    async with gated():
        async with timeit("db.pending"):
            async with db.begin():
                await mark_pending(
                    db, order.id,
                    payment_method=settings.payment_method,
                    payment_reference=session["request_id"],
                )

    return PaymentInitOut(
        pay_url=session["pay_url"], order_number=order.order_number
    )


@internal_errors("cart checkout")
async def cart_checkout(
    db: AsyncSession,
    *,
    gated: Gated,
    gateway: PaymentAdapter,
    oracle: PricingOracle,
    settings: Settings,
    user_id: int,
) -> PaymentInitOut:
    # one transaction from reading the cart to Pending: a concurrent cart
    # edit cannot produce an order the buyer never saw
    async with gated():
        async with timeit("db.cart_checkout"):
            async with db.begin():
                if not await is_active_user(db, user_id):
                    raise InactiveUser()
                course_ids = await cart_course_ids(db, user_id)
                if not course_ids:
                    raise EmptyCart()

                items = await prepare_items(db, oracle, user_id, course_ids)
                order = await create_order_snapshot(
                    db,
                    user_id=user_id,
                    context=CONTEXT_CART,
                    items=items,
                    currency=settings.currency,
                )
                if order.total_amount <= 0:
                    raise NothingToCharge()

                async with timeit("gateway.create"):
                    session = await gateway.create_session(
                        order.order_number, order.total_amount,
                        f"Checkout cart ({len(items)} items)",
                    )
                await mark_pending(
                    db, order.id,
                    payment_method=settings.payment_method,
                    payment_reference=session["request_id"],
                )

    return PaymentInitOut(
        pay_url=session["pay_url"], order_number=order.order_number
    )
