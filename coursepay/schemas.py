from __future__ import annotations
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

COUPON_MAX_LENGTH = 64


# ----------------------------
# Checkout
# ----------------------------
class BuyNowIn(BaseModel):
    """Buy-now: the client sends only the course (+ coupon); price is ours."""
    model_config = ConfigDict(
        extra="forbid", populate_by_name=True, str_strip_whitespace=True
    )

    course_id: int = Field(alias="courseId", gt=0)
    coupon_code: Optional[str] = Field(
        default=None, alias="couponCode",
        min_length=1, max_length=COUPON_MAX_LENGTH,
    )


class CartCheckoutIn(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PaymentInitOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pay_url: str = Field(alias="payUrl")
    order_number: str = Field(alias="orderNumber")


# ----------------------------
# Gateway callbacks
# ----------------------------
class MomoCallback(BaseModel):
    """Fields shared by the IPN body and the return query string."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    partner_code: str = Field(alias="partnerCode")
    order_id: str = Field(alias="orderId")  # our orderNumber
    request_id: str = Field(alias="requestId")
    order_info: str = Field(alias="orderInfo")
    order_type: Optional[str] = Field(default=None, alias="orderType")
    result_code: int = Field(alias="resultCode")
    pay_type: Optional[str] = Field(default=None, alias="payType")
    extra_data: Optional[str] = Field(default=None, alias="extraData")
    signature: str

    def signable(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @property
    def payment_ref(self) -> Optional[str]:
        ref = getattr(self, "trans_id", None)
        if ref is None or ref == "":
            ref = self.request_id
        return str(ref) if ref not in (None, "") else None


class MomoIpn(MomoCallback):
    amount: float = Field(ge=0, allow_inf_nan=False)
    trans_id: Optional[int] = Field(default=None, alias="transId")
    message: str
    response_time: Optional[int] = Field(default=None, alias="responseTime")


class MomoReturn(MomoCallback):
    # query-string transport: numbers arrive as text and are signed as such
    amount: str = Field(pattern=r"^\d+(\.\d+)?$")
    trans_id: Optional[str] = Field(default=None, alias="transId")
    message: Optional[str] = None
    response_time: Optional[str] = Field(default=None, alias="responseTime")


class CallbackOut(BaseModel):
    status: str


class ReturnOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    order_number: str = Field(alias="orderNumber")
