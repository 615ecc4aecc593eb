from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, TypedDict
from urllib.parse import urlsplit
import hashlib
import hmac
import logging

import httpx

from .config import Settings
from .errors import GatewayError
from .helpers import ct_equal, now_ms

logger = logging.getLogger(__name__)

DEFAULT_ORDER_TYPE = "momo_wallet"
MOCK_FAILURE_CODE = 1001

# MoMo signs "key=value" pairs joined by '&' in this exact order; the order
# is part of the contract and must not be sorted or changed.
CREATE_SIGNATURE_KEYS = (
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)
CALLBACK_SIGNATURE_KEYS = (
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
    "orderType", "partnerCode", "payType", "requestId", "responseTime",
    "resultCode", "transId",
)


def _fmt(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v)


def raw_signature(keys, fields: Mapping[str, Any]) -> str:
    return "&".join(f"{k}={_fmt(fields.get(k))}" for k in keys)


def hmac_sha256_hex(secret: str, raw: str) -> str:
    return hmac.new(
        secret.encode(), raw.encode(), hashlib.sha256
    ).hexdigest()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class SessionResult(TypedDict):
    pay_url: str
    request_id: str


class PaymentAdapter(ABC):
    def __init__(self, settings: Settings):
        self.settings = settings

    @abstractmethod
    async def create_session(
        self, order_number: str, amount: int, order_info: str
    ) -> SessionResult: ...

    def sign_callback(self, fields: Mapping[str, Any]) -> str:
        f = dict(fields)
        f["accessKey"] = self.settings.momo_access_key
        if f.get("orderType") is None:
            f["orderType"] = DEFAULT_ORDER_TYPE
        raw = raw_signature(CALLBACK_SIGNATURE_KEYS, f)
        return hmac_sha256_hex(self.settings.momo_secret_key, raw)

    def verify_callback(self, fields: Mapping[str, Any]) -> bool:
        sig = fields.get("signature")
        if not sig:
            return False
        return ct_equal(self.sign_callback(fields), str(sig))

    def _create_request(
        self, order_number: str, amount: int, order_info: str
    ) -> Dict[str, Any]:
        # MoMo expects whole VND
        amt = max(0, int(amount))
        if amt <= 0:
            raise GatewayError("Invalid amount for MoMo payment")
        s = self.settings
        payload = {
            "partnerCode": s.momo_partner_code,
            "accessKey": s.momo_access_key,
            "requestId": f"{s.momo_partner_code}_{now_ms()}",
            "amount": str(amt),
            "orderId": order_number,
            "orderInfo": order_info,
            "redirectUrl": s.momo_redirect_url,
            "ipnUrl": s.momo_ipn_url,
            "extraData": "",
            "requestType": s.momo_request_type,
            "lang": s.momo_lang,
        }
        payload["signature"] = hmac_sha256_hex(
            s.momo_secret_key, raw_signature(CREATE_SIGNATURE_KEYS, payload)
        )
        return payload


# ----------------------------
# MoMo implementation
# ----------------------------
class MomoGateway(PaymentAdapter):
    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        super().__init__(settings)
        self.http = http

    async def create_session(
        self, order_number: str, amount: int, order_info: str
    ) -> SessionResult:
        payload = self._create_request(order_number, amount, order_info)
        try:
            r = await self.http.post(
                self.settings.momo_create_url,
                json=payload,
                timeout=self.settings.momo_timeout,
            )
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("MoMo create failed for order=%s: %r",
                         order_number, e)
            raise GatewayError() from e

        if not isinstance(data, dict) or not data.get("payUrl"):
            logger.error("MoMo create error for order=%s: %s",
                         order_number, data)
            raise GatewayError()

        logger.info("MoMo payment created: orderId=%s requestId=%s",
                    data.get("orderId"), data.get("requestId"))
        return {
            "pay_url": data["payUrl"],
            "request_id": data.get("requestId") or payload["requestId"],
        }


# ----------------------------
# MockMomo implementation
# ----------------------------
class MockMomo(PaymentAdapter):
    """
    Local stand-in for the wallet: signs like MoMo, never leaves the process.
    The pay URL points at /mockpay/{orderNumber}, where the buyer picks an
    outcome that is then delivered as IPN and as return redirect.
    """

    def __init__(self, settings: Settings, base_url: Optional[str] = None):
        super().__init__(settings)
        if base_url is None:
            parts = urlsplit(settings.momo_redirect_url)
            base_url = f"{parts.scheme}://{parts.netloc}"
        self.base_url = base_url.rstrip("/")
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def create_session(
        self, order_number: str, amount: int, order_info: str
    ) -> SessionResult:
        payload = self._create_request(order_number, amount, order_info)
        self.sessions[order_number] = {
            "requestId": payload["requestId"],
            "amount": int(payload["amount"]),
            "orderInfo": order_info,
        }
        return {
            "pay_url": f"{self.base_url}/mockpay/{order_number}",
            "request_id": payload["requestId"],
        }

    def result_code_for(self, kind: str) -> int:
        if kind == "succeeded":
            return self.settings.success_code
        if kind == "canceled":
            return self.settings.cancelled_code
        return MOCK_FAILURE_CODE

    def build_callback(self, order_number: str, kind: str) -> Dict[str, Any]:
        ps = self.sessions[order_number]
        code = self.result_code_for(kind)
        fields: Dict[str, Any] = {
            "partnerCode": self.settings.momo_partner_code,
            "orderId": order_number,
            "requestId": ps["requestId"],
            "amount": ps["amount"],
            "orderInfo": ps["orderInfo"],
            "orderType": DEFAULT_ORDER_TYPE,
            "transId": now_ms(),
            "resultCode": code,
            "message": (
                "Successful." if kind == "succeeded" else f"Mock {kind}"
            ),
            "payType": "qr",
            "responseTime": now_ms(),
            "extraData": "",
        }
        fields["signature"] = self.sign_callback(fields)
        return fields
