"""
Domain errors raised by checkout and reconciliation.

Every class carries the HTTP status and a stable code string; the app maps
them to `{"detail": ..., "code": ...}` responses. Anything that is not a
`CheckoutError` is wrapped into `InternalError` at the service boundary.
"""
import functools
import logging

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    pass


class CheckoutError(Exception):
    status_code = 400
    code = "CHECKOUT_ERROR"
    message = "Checkout failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


# ---- validation / eligibility
class CourseUnavailable(CheckoutError):
    code = "COURSE_UNAVAILABLE"
    message = "Course unavailable"


class AlreadyOwned(CheckoutError):
    status_code = 409
    code = "ALREADY_OWNED"
    message = "You already own this course"


class CourseAlreadyFree(CheckoutError):
    code = "COURSE_FREE_ENROLLED"
    message = "This course is free and has been enrolled already"


class NothingToCharge(CheckoutError):
    code = "NOTHING_TO_CHARGE"
    message = "Nothing to charge"


class EmptyCart(CheckoutError):
    code = "EMPTY_CART"
    message = "Cart is empty"


class CouponNotFound(CheckoutError):
    status_code = 404
    code = "COUPON_NOT_FOUND"
    message = "Coupon not found"


class InactiveUser(CheckoutError):
    status_code = 403
    code = "INACTIVE_USER"
    message = "User is not active"


# ---- callbacks
class InvalidCallback(CheckoutError):
    code = "INVALID_CALLBACK"
    message = "Invalid MoMo signature"


class OrderNotFound(CheckoutError):
    status_code = 404
    code = "ORDER_NOT_FOUND"
    message = "Order not found"


# ---- gateway
class GatewayError(CheckoutError):
    status_code = 502
    code = "GATEWAY_ERROR"
    message = "Failed to create MoMo payment"


class InternalError(CheckoutError):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"


def internal_errors(what: str):
    """
    Let domain errors through untouched; log anything else with its
    traceback and replace it with a generic InternalError.
    """
    def deco(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except CheckoutError:
                raise
            except Exception as e:
                logger.exception("%s failed", what)
                raise InternalError() from e
        return wrapper
    return deco
