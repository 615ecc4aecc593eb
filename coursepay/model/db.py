from __future__ import annotations
from enum import Enum

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()


# ----------------------------
# Enumerations (stored as their string value)
# ----------------------------
class OrderStatus(str, Enum):
    DRAFT = "Draft"
    PENDING = "Pending"
    PROCESSING = "Processing"
    PAID = "Paid"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"
    PARTIAL_REFUND = "PartialRefund"
    EXPIRED = "Expired"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
    OrderStatus.PARTIAL_REFUND,
    OrderStatus.EXPIRED,
})


class OrderType(str, Enum):
    PURCHASE = "Purchase"


class CourseStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class EnrollmentStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


ACTIVE_ENROLL_STATUSES = (
    EnrollmentStatus.NOT_STARTED.value,
    EnrollmentStatus.IN_PROGRESS.value,
    EnrollmentStatus.COMPLETED.value,
)

USER_ACTIVE = "ACTIVE"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=USER_ACTIVE)


class Course(Base):
    __tablename__ = "courses"
    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    thumbnail = Column(String, nullable=True)
    price = Column(Integer, nullable=False, default=0)  # whole VND
    is_free = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default=CourseStatus.DRAFT.value)
    is_delete = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(Float, nullable=True)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollment"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    course_id = Column(Integer, nullable=False)
    status = Column(
        String, nullable=False, default=EnrollmentStatus.NOT_STARTED.value
    )
    is_delete = Column(Boolean, nullable=False, default=False)
    enrolled_at = Column(Float, nullable=False)
    created_by_id = Column(Integer, nullable=True)


class CartItem(Base):
    __tablename__ = "carts"
    __table_args__ = (
        Index("idx_carts_user", "user_id", "deleted_at"),
    )
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    course_id = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)
    deleted_at = Column(Float, nullable=True)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    # {context}_{userId}_{millis}; join key with gateway callbacks
    order_number = Column(String, nullable=False, unique=True)
    user_id = Column(Integer, nullable=False)

    subtotal_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    fee_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)

    status = Column(String, nullable=False, default=OrderStatus.DRAFT.value)
    order_type = Column(
        String, nullable=False, default=OrderType.PURCHASE.value
    )
    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    admin_notes = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    ordered_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)
    updated_at = Column(Float, nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    course_id = Column(Integer, nullable=False)
    # snapshot of the catalog at order time
    course_title = Column(String, nullable=False)
    course_thumbnail = Column(String, nullable=True)

    original_price = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False)
    discounted_price = Column(Integer, nullable=False)
    final_price = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class OrderHistory(Base):
    __tablename__ = "order_history"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    status = Column(String, nullable=False)
    note = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class PurchaseHistory(Base):
    __tablename__ = "purchase_history"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    order_number = Column(String, nullable=False)
    course_id = Column(Integer, nullable=False)
    course_title = Column(String, nullable=False)
    course_thumbnail = Column(String, nullable=True)
    original_price = Column(Integer, nullable=False)
    final_price = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    order_status = Column(String, nullable=False)
    payment_method = Column(String, nullable=True)
    ordered_at = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=False)
    access_granted_at = Column(Float, nullable=False)
    access_status = Column(String, nullable=False, default="Active")


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


def is_terminal(status: str | OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_ORDER_STATUSES


TERMINAL_STATUS_VALUES = tuple(
    sorted(s.value for s in TERMINAL_ORDER_STATUSES)
)
