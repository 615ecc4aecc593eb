import pytest
import pytest_asyncio
from sqlalchemy import func, select

from coursepay.config import Settings
from coursepay.gateway import MockMomo
from coursepay.helpers import now_ts
from coursepay.infra.sql import make_async_engine
from coursepay.model.db import (
    CartItem, Course, CourseStatus, Enrollment, Order, OrderStatus, User,
    create_schema,
)
from coursepay.model.pricing import AMOUNT, PERCENT, CatalogPricingOracle, Coupon
from coursepay.schemas import MomoIpn

BUYER = 7
OTHER_BUYER = 9
BANNED = 8

PAID_COURSE = 42      # 100_000
FREE_COURSE = 43
DRAFT_COURSE = 44
DELETED_COURSE = 45
CHEAP_COURSE = 46     # 50_000
ZERO_PRICE_COURSE = 47


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path}/coursepay.db",
        momo_redirect_url="http://testserver/orders/momo/return",
        momo_ipn_url="http://testserver/orders/momo/ipn",
    )


@pytest_asyncio.fixture
async def db(settings):
    bundle = make_async_engine(
        settings.database_url, gate_limit=settings.db_gate_limit
    )
    async with bundle.engine.begin() as conn:
        await create_schema(conn)
    yield bundle
    await bundle.engine.dispose()


@pytest.fixture
def gateway(settings):
    return MockMomo(settings)


@pytest.fixture
def oracle():
    return CatalogPricingOracle([
        Coupon("SALE10", PERCENT, 10),
        Coupon("C42OFF", AMOUNT, 30_000, course_id=PAID_COURSE),
        Coupon("ALLFREE", PERCENT, 100),
        Coupon("OLD", AMOUNT, 5_000, expires_at=1.0),
    ])


@pytest_asyncio.fixture
async def catalog(db):
    async with db.SessionAsync() as s:
        async with s.begin():
            s.add_all([
                User(id=BUYER, email="buyer@example.com"),
                User(id=OTHER_BUYER, email="other@example.com"),
                User(id=BANNED, email="banned@example.com", status="BANNED"),
                Course(id=PAID_COURSE, title="Async Python",
                       thumbnail="py.png", price=100_000,
                       status=CourseStatus.APPROVED.value),
                Course(id=FREE_COURSE, title="Intro", price=0, is_free=True,
                       status=CourseStatus.APPROVED.value),
                Course(id=DRAFT_COURSE, title="Unreleased", price=10_000,
                       status=CourseStatus.DRAFT.value),
                Course(id=DELETED_COURSE, title="Gone", price=10_000,
                       status=CourseStatus.APPROVED.value, is_delete=True,
                       deleted_at=now_ts()),
                Course(id=CHEAP_COURSE, title="SQL Basics", price=50_000,
                       status=CourseStatus.APPROVED.value),
                Course(id=ZERO_PRICE_COURSE, title="Promo", price=0,
                       status=CourseStatus.APPROVED.value),
            ])
    return db


@pytest.fixture
def engine_kw(db, gateway, oracle, settings):
    return {
        "gated": db.gated,
        "gateway": gateway,
        "oracle": oracle,
        "settings": settings,
    }


@pytest.fixture
def reconcile_kw(db, gateway, settings):
    return {"gated": db.gated, "gateway": gateway, "settings": settings}


# ---- helpers used across test modules

async def add_to_cart(db, user_id, *course_ids):
    async with db.SessionAsync() as s:
        async with s.begin():
            for i, cid in enumerate(course_ids):
                s.add(CartItem(user_id=user_id, course_id=cid,
                               created_at=now_ts() + i))


async def get_order(db, order_number) -> Order:
    async with db.SessionAsync() as s:
        async with s.begin():
            return (await s.execute(
                select(Order).where(Order.order_number == order_number)
            )).scalar_one()


async def count_orders(db, status: OrderStatus = None) -> int:
    q = select(func.count()).select_from(Order)
    if status is not None:
        q = q.where(Order.status == status.value)
    async with db.SessionAsync() as s:
        async with s.begin():
            return (await s.execute(q)).scalar_one()


async def enrollments(db, user_id, course_id=None):
    q = select(Enrollment).where(Enrollment.user_id == user_id)
    if course_id is not None:
        q = q.where(Enrollment.course_id == course_id)
    async with db.SessionAsync() as s:
        async with s.begin():
            return (await s.execute(q)).scalars().all()


def signed_ipn(gateway, order_number, kind="succeeded", **overrides):
    fields = gateway.build_callback(order_number, kind)
    if overrides:
        fields.update(overrides)
        fields["signature"] = gateway.sign_callback(fields)
    return MomoIpn.model_validate(fields)
