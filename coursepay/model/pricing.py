# model/pricing.py
"""
Pricing snapshot builder.

Validates that each target course can be bought by the user and asks the
pricing oracle for its price. Runs on the caller's session, inside the
caller's transaction, and never writes.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyOwned, CouponNotFound, CourseUnavailable
from ..helpers import now_ts, to_price
from .db import ACTIVE_ENROLL_STATUSES, Course, CourseStatus, Enrollment

PERCENT = "PERCENT"
AMOUNT = "AMOUNT"


@dataclass(frozen=True)
class Pricing:
    original: int
    discount: int
    final: int


@dataclass(frozen=True)
class PricedItem:
    course_id: int
    title: str
    thumbnail: Optional[str]
    original: int
    discount: int
    final: int


class PricingOracle(Protocol):
    async def price(
        self, course: Course, user_id: int,
        coupon_code: Optional[str] = None,
    ) -> Pricing: ...


# ----------------------------
# Default oracle: list price plus an explicit coupon book
# ----------------------------
@dataclass(frozen=True)
class Coupon:
    code: str
    kind: str  # PERCENT | AMOUNT
    value: int
    course_id: Optional[int] = None  # None: any course
    expires_at: Optional[float] = None


def normalize_coupon_kind(kind: str) -> str:
    s = str(kind).lower()
    if s in ("percent", "percentage"):
        return PERCENT
    if s in ("amount", "fixed"):
        return AMOUNT
    raise ValueError(f"Invalid discount type: {kind}")


def calc_discount_amount(price: int, kind: str, value: int) -> int:
    if price <= 0:
        return 0
    if normalize_coupon_kind(kind) == PERCENT:
        return (price * value) // 100
    return min(price, int(value))


def build_pricing(original: int, discount: int) -> Pricing:
    return Pricing(original, discount, max(0, original - discount))


class CatalogPricingOracle:
    def __init__(self, coupons: Optional[Sequence[Coupon]] = None):
        self.coupons: Dict[str, Coupon] = {c.code: c for c in coupons or ()}

    def _applicable(self, code: str, course_id: int) -> Optional[Coupon]:
        c = self.coupons.get(code)
        if c is None:
            return None
        if c.course_id is not None and c.course_id != course_id:
            return None
        if c.expires_at is not None and c.expires_at < now_ts():
            return None
        return c

    async def price(
        self, course: Course, user_id: int,
        coupon_code: Optional[str] = None,
    ) -> Pricing:
        base = 0 if course.is_free else to_price(course.price)
        discount = 0
        if base > 0 and coupon_code:
            c = self._applicable(coupon_code, course.id)
            off = calc_discount_amount(base, c.kind, c.value) if c else 0
            if off <= 0:
                raise CouponNotFound()
            discount = off
        return build_pricing(base, discount)


# ----------------------------
# Eligibility checks (run inside the caller's transaction)
# ----------------------------
async def find_approved_course(db: AsyncSession, course_id: int) -> Course:
    course = (await db.execute(
        select(Course).where(
            Course.id == course_id,
            Course.status == CourseStatus.APPROVED.value,
            Course.deleted_at.is_(None),
            Course.is_delete.is_(False),
        ).with_for_update(read=True)
    )).scalar_one_or_none()
    if course is None:
        raise CourseUnavailable()
    return course


async def ensure_not_owned(
    db: AsyncSession, user_id: int, course_id: int
) -> None:
    owned = (await db.execute(
        select(Enrollment.id).where(
            Enrollment.user_id == user_id,
            Enrollment.course_id == course_id,
            Enrollment.is_delete.is_(False),
            Enrollment.status.in_(ACTIVE_ENROLL_STATUSES),
        )
    )).first()
    if owned is not None:
        raise AlreadyOwned()


async def price_course(
    oracle: PricingOracle,
    user_id: int,
    course: Course,
    coupon_code: Optional[str] = None,
) -> PricedItem:
    pricing = await oracle.price(course, user_id, coupon_code)
    return PricedItem(
        course_id=course.id,
        title=course.title,
        thumbnail=course.thumbnail,
        original=pricing.original,
        discount=pricing.discount,
        final=pricing.final,
    )


async def prepare_items(
    db: AsyncSession,
    oracle: PricingOracle,
    user_id: int,
    course_ids: Sequence[int],
    coupon_code: Optional[str] = None,
) -> List[PricedItem]:
    # one session runs one statement at a time
    items: List[PricedItem] = []
    for course_id in course_ids:
        course = await find_approved_course(db, course_id)
        await ensure_not_owned(db, user_id, course_id)
        items.append(
            await price_course(oracle, user_id, course, coupon_code)
        )
    return items
