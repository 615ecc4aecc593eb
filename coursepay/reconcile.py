"""
Payment callback reconciliation.

The IPN (server-to-server) and the return redirect (browser) carry the same
fields and run through the same `reconcile` core, so they cannot disagree.

    authenticate -> resolve order -> terminal? report it : classify outcome
                                                           -> claim terminal
                                                           -> fulfill (Paid)

The terminal check up front is only a fast path. The guard that matters is
`claim_terminal`: one conditional UPDATE, in the same transaction as the
fulfillment writes, so two racing callbacks cannot both apply.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Union

from sqlalchemy.ext.asyncio import AsyncSession

from .config import Settings
from .errors import InvalidCallback, internal_errors
from .helpers import to_price
from .gateway import PaymentAdapter
from .infra.sql import Gated
from .infra.timings import timeit
from .model.db import OrderStatus, is_terminal
from .model.fulfillment import fulfill_order
from .model.orders import claim_terminal, current_status, load_order_or_raise
from .schemas import MomoCallback

logger = logging.getLogger(__name__)

SOURCE_IPN = "ipn"
SOURCE_RETURN = "return"


# ----------------------------
# Outcome: closed set of what a result code can mean
# ----------------------------
@dataclass(frozen=True)
class Success:
    code: int
    message: str


@dataclass(frozen=True)
class UserCancelled:
    code: int
    message: str


@dataclass(frozen=True)
class OtherFailure:
    code: int
    message: str


Outcome = Union[Success, UserCancelled, OtherFailure]


def classify(result_code: int, message: str, settings: Settings) -> Outcome:
    if result_code == settings.success_code:
        return Success(result_code, message)
    if result_code == settings.cancelled_code:
        return UserCancelled(result_code, message)
    return OtherFailure(result_code, message)


def target_status(outcome: Outcome) -> OrderStatus:
    if isinstance(outcome, Success):
        return OrderStatus.PAID
    if isinstance(outcome, UserCancelled):
        return OrderStatus.CANCELLED
    return OrderStatus.FAILED


@dataclass(frozen=True)
class Reconciled:
    order_number: str
    status: OrderStatus
    applied: bool  # False: nothing changed, status is what was already there


@internal_errors("payment callback")
async def reconcile(
    db: AsyncSession,
    cb: MomoCallback,
    *,
    gated: Gated,
    gateway: PaymentAdapter,
    settings: Settings,
    source: str = SOURCE_IPN,
) -> Reconciled:
    if not gateway.verify_callback(cb.signable()):
        logger.warning("rejected %s callback with bad signature: orderId=%s",
                       source, cb.order_id)
        raise InvalidCallback()

    async with gated():
        async with db.begin():
            order = await load_order_or_raise(db, cb.order_id)

    if is_terminal(order.status):
        logger.info("%s replay for order=%s, already %s",
                    source, order.order_number, order.status)
        return Reconciled(order.order_number, OrderStatus(order.status), False)

    if source == SOURCE_RETURN and not settings.return_applies:
        return Reconciled(order.order_number, OrderStatus(order.status), False)

    message = cb.message or ""
    outcome = classify(cb.result_code, message, settings)
    status = target_status(outcome)
    # callback reference wins over the one stored at session creation
    ref = cb.payment_ref or order.payment_reference
    note = f"MoMo {source}: {message} (code={cb.result_code})"

    if isinstance(outcome, Success) and \
            to_price(cb.amount) != order.total_amount:
        logger.warning("amount mismatch for order=%s: paid %s, expected %s",
                       order.order_number, cb.amount, order.total_amount)

    async with gated():
        async with timeit("db.reconcile"):
            async with db.begin():
                applied = await claim_terminal(
                    db, order.id, status,
                    payment_reference=ref,
                    payment_method=settings.payment_method,
                    note=note,
                )
                if applied and status is OrderStatus.PAID:
                    await fulfill_order(
                        db, order,
                        currency=order.currency,
                        payment_method=settings.payment_method,
                    )
                if not applied:
                    status = await current_status(db, order.id)

    if not applied:
        logger.info("%s lost the race for order=%s, now %s",
                    source, order.order_number, status.value)
    elif status is OrderStatus.PAID:
        logger.info("order=%s paid, ref=%s", order.order_number, ref)
    else:
        logger.warning("MoMo payment %s for order=%s: %s (code=%s)",
                       status.value.lower(), order.order_number,
                       message, cb.result_code)

    return Reconciled(order.order_number, status, applied)
