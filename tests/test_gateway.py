import hashlib
import hmac
import json

import httpx
import pytest

from coursepay.config import Settings
from coursepay.errors import ConfigError, GatewayError
from coursepay.gateway import (
    CALLBACK_SIGNATURE_KEYS, CREATE_SIGNATURE_KEYS, MockMomo, MomoGateway,
    raw_signature,
)
from coursepay.schemas import MomoIpn, MomoReturn

MOMO_ENV = {
    "PAYMENT_GATEWAY": "momo",
    "MOMO_PARTNER_CODE": "MOMOTEST",
    "MOMO_ACCESS_KEY": "ak",
    "MOMO_SECRET_KEY": "sk",
    "MOMO_CREATE_URL": "https://momo.test/v2/gateway/api/create",
    "MOMO_REDIRECT_URL": "https://shop.test/orders/momo/return",
    "MOMO_IPN_URL": "https://shop.test/orders/momo/ipn",
}


def test_callback_raw_signature_order():
    fields = {
        "accessKey": "ak", "amount": 100000.0, "extraData": "",
        "message": "Successful.", "orderId": "BUY_NOW_7_1", "orderInfo": "x",
        "orderType": "momo_wallet", "partnerCode": "P", "payType": "qr",
        "requestId": "P_1", "responseTime": 5, "resultCode": 0,
        "transId": 99, "ignored": "zzz",
    }
    assert raw_signature(CALLBACK_SIGNATURE_KEYS, fields) == (
        "accessKey=ak&amount=100000&extraData=&message=Successful."
        "&orderId=BUY_NOW_7_1&orderInfo=x&orderType=momo_wallet"
        "&partnerCode=P&payType=qr&requestId=P_1&responseTime=5"
        "&resultCode=0&transId=99"
    )


def test_missing_fields_sign_as_empty():
    raw = raw_signature(("a", "b"), {"a": None})
    assert raw == "a=&b="


def test_signature_is_hmac_sha256_hex(settings):
    gw = MockMomo(settings)
    fields = {"orderId": "o", "amount": 10, "resultCode": 0}
    expected = hmac.new(
        settings.momo_secret_key.encode(),
        raw_signature(CALLBACK_SIGNATURE_KEYS, {
            **fields, "accessKey": settings.momo_access_key,
            "orderType": "momo_wallet",
        }).encode(),
        hashlib.sha256,
    ).hexdigest()
    assert gw.sign_callback(fields) == expected


async def test_mock_callback_verifies_as_ipn_and_return(settings):
    gw = MockMomo(settings)
    await gw.create_session("BUY_NOW_7_1", 100_000, "Buy course #42")
    fields = gw.build_callback("BUY_NOW_7_1", "succeeded")

    ipn = MomoIpn.model_validate(fields)
    assert gw.verify_callback(ipn.signable())

    ret = MomoReturn.model_validate({k: str(v) for k, v in fields.items()})
    assert gw.verify_callback(ret.signable())


async def test_tampered_or_unsigned_callback_fails(settings):
    gw = MockMomo(settings)
    await gw.create_session("BUY_NOW_7_1", 100_000, "Buy course #42")
    fields = gw.build_callback("BUY_NOW_7_1", "failed")

    assert not gw.verify_callback({**fields, "resultCode": 0})
    assert not gw.verify_callback({**fields, "signature": ""})

    other = MockMomo(Settings(momo_secret_key="another"))
    assert not other.verify_callback(fields)


async def test_mock_session(settings):
    gw = MockMomo(settings)
    res = await gw.create_session("CART_7_5", 150_000, "Checkout cart (2 items)")
    assert res["pay_url"] == "http://testserver/mockpay/CART_7_5"
    assert res["request_id"].startswith("MOMOMOCK_")
    assert gw.sessions["CART_7_5"]["amount"] == 150_000

    assert gw.build_callback("CART_7_5", "canceled")["resultCode"] == 1006
    assert gw.build_callback("CART_7_5", "failed")["resultCode"] == 1001


# ----------------------------
# MoMo create over HTTP
# ----------------------------
def momo_settings():
    return Settings.from_env(MOMO_ENV)


async def test_momo_create_session_signs_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "payUrl": "https://pay.momo.test/abc",
            "orderId": seen["body"]["orderId"],
            "requestId": seen["body"]["requestId"],
            "resultCode": 0,
        })

    s = momo_settings()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
        res = await MomoGateway(s, c).create_session(
            "BUY_NOW_7_1", 100_000, "Buy course #42"
        )

    body = seen["body"]
    assert seen["url"] == s.momo_create_url
    assert res["pay_url"] == "https://pay.momo.test/abc"
    assert res["request_id"] == body["requestId"]
    assert body["amount"] == "100000"
    assert body["requestType"] == "captureWallet"
    assert body["ipnUrl"] == s.momo_ipn_url
    expected = hmac.new(
        b"sk", raw_signature(CREATE_SIGNATURE_KEYS, body).encode(),
        hashlib.sha256,
    ).hexdigest()
    assert body["signature"] == expected


@pytest.mark.parametrize("handler", [
    lambda r: httpx.Response(200, json={"resultCode": 11, "message": "no"}),
    lambda r: httpx.Response(500, text="<html>oops</html>"),
])
async def test_momo_create_rejected(handler):
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as c:
        with pytest.raises(GatewayError):
            await MomoGateway(momo_settings(), c).create_session(
                "BUY_NOW_7_1", 100_000, "x"
            )


async def test_momo_create_transport_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
        with pytest.raises(GatewayError):
            await MomoGateway(momo_settings(), c).create_session(
                "BUY_NOW_7_1", 100_000, "x"
            )


async def test_zero_amount_never_reaches_momo(settings):
    with pytest.raises(GatewayError):
        await MockMomo(settings).create_session("BUY_NOW_7_1", 0, "x")


# ----------------------------
# Settings
# ----------------------------
def test_momo_env_complete():
    s = momo_settings()
    assert s.gateway == "momo"
    assert s.momo_partner_code == "MOMOTEST"
    assert s.success_code == 0 and s.cancelled_code == 1006


def test_momo_env_incomplete():
    env = dict(MOMO_ENV)
    del env["MOMO_SECRET_KEY"]
    with pytest.raises(ConfigError, match="MOMO_SECRET_KEY"):
        Settings.from_env(env)


def test_unknown_gateway():
    with pytest.raises(ConfigError):
        Settings.from_env({"PAYMENT_GATEWAY": "paypal"})


def test_mock_defaults_and_flags():
    s = Settings.from_env({
        "MOMO_RETURN_APPLIES": "no",
        "MOMO_CANCELLED_CODE": "49",
        "LOG_LEVEL": "debug",
    })
    assert s.gateway == "mock"
    assert s.momo_secret_key == "supersecret"
    assert not s.return_applies
    assert s.cancelled_code == 49
    assert s.log_level == "DEBUG"
    assert not s.redirects_to_frontend


def test_db_gate_limit_from_env():
    assert Settings.from_env({}).db_gate_limit is None
    assert Settings.from_env({"DB_GATE_LIMIT": "3"}).db_gate_limit == 3
