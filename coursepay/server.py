from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.status import HTTP_201_CREATED, HTTP_303_SEE_OTHER

from . import checkout
from .config import Settings
from .errors import CheckoutError, OrderNotFound
from .gateway import MockMomo, MomoGateway, PaymentAdapter
from .helpers import to_iso
from .infra.sql import DB, make_async_engine
from .infra.timings import aggregates
from .model.db import OrderStatus, create_schema
from .model.orders import find_order
from .model.pricing import CatalogPricingOracle, PricingOracle
from .reconcile import SOURCE_IPN, SOURCE_RETURN, reconcile
from .schemas import (
    BuyNowIn, CallbackOut, CartCheckoutIn, MomoIpn, MomoReturn,
    PaymentInitOut, ReturnOut,
)

logger = logging.getLogger(__name__)

MOCK_KINDS = ("succeeded", "failed", "canceled")

templates = Jinja2Templates(directory=Path(__file__).parent / "templates")


def _with_query(base: str, params: dict) -> str:
    parts = urlsplit(base)
    query = dict(parse_qsl(parts.query))
    query.update({k: str(v) for k, v in params.items()})
    return urlunsplit(parts._replace(query=urlencode(query)))


def create_app(
    settings: Optional[Settings] = None,
    *,
    db: Optional[DB] = None,
    gateway: Optional[PaymentAdapter] = None,
    oracle: Optional[PricingOracle] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db = db or make_async_engine(
        settings.database_url, gate_limit=settings.db_gate_limit
    )
    http = httpx.AsyncClient(
        timeout=settings.momo_timeout,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )
    if gateway is None:
        if settings.gateway == "momo":
            gateway = MomoGateway(settings, http)
        else:
            gateway = MockMomo(settings)

    app = FastAPI(
        title="CoursePay",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.db = db
    app.state.http = http
    app.state.gateway = gateway
    app.state.oracle = oracle or CatalogPricingOracle()

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        logger.info("=" * 50)
        logger.info("CoursePay is starting up...")
        logger.info("   - Database: %s", db.engine.url.get_backend_name())
        logger.info("   - Payment gateway: %s", type(gateway).__name__)
        logger.info("=" * 50)

    @app.on_event("startup")
    async def _db_init():
        async with db.engine.begin() as conn:
            await create_schema(conn)

    @app.on_event("shutdown")
    async def _http_client_stop():
        await app.state.http.aclose()

    @app.on_event("shutdown")
    async def _db_stop():
        await db.engine.dispose()

    @app.exception_handler(CheckoutError)
    async def _checkout_error(request: Request, exc: CheckoutError):
        return ORJSONResponse(
            {"detail": exc.detail, "code": exc.code},
            status_code=exc.status_code,
        )

    # ----------------------------
    # Dependencies
    # ----------------------------
    async def get_db() -> AsyncIterator[AsyncSession]:
        async with db.SessionAsync() as session:
            yield session

    def current_user_id(
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> int:
        # set by the authentication layer in front of us
        try:
            user_id = int(x_user_id or "")
        except ValueError:
            user_id = 0
        if user_id <= 0:
            raise HTTPException(401, detail="authentication required")
        return user_id

    def engine_kw() -> dict:
        return {
            "gated": db.gated,
            "gateway": app.state.gateway,
            "settings": settings,
        }

    # ----------------------------
    # Checkout
    # ----------------------------
    @app.post("/orders/buy-now", status_code=HTTP_201_CREATED,
              response_model=PaymentInitOut)
    async def buy_now(
        payload: BuyNowIn,
        user_id: int = Depends(current_user_id),
        session: AsyncSession = Depends(get_db),
    ):
        return await checkout.buy_now(
            session,
            oracle=app.state.oracle,
            user_id=user_id,
            course_id=payload.course_id,
            coupon_code=payload.coupon_code,
            **engine_kw(),
        )

    @app.post("/orders/cart-checkout", status_code=HTTP_201_CREATED,
              response_model=PaymentInitOut)
    async def cart_checkout(
        payload: CartCheckoutIn,
        user_id: int = Depends(current_user_id),
        session: AsyncSession = Depends(get_db),
    ):
        return await checkout.cart_checkout(
            session,
            oracle=app.state.oracle,
            user_id=user_id,
            **engine_kw(),
        )

    # ----------------------------
    # Gateway callbacks
    # ----------------------------
    @app.post("/orders/momo/ipn", response_model=CallbackOut)
    async def momo_ipn(
        payload: MomoIpn,
        session: AsyncSession = Depends(get_db),
    ):
        res = await reconcile(session, payload, source=SOURCE_IPN,
                              **engine_kw())
        return {"status": res.status.value}

    @app.get("/orders/momo/return", response_model=ReturnOut,
             responses={303: {"description": "redirect to the frontend"}})
    async def momo_return(
        request: Request,
        session: AsyncSession = Depends(get_db),
    ):
        try:
            q = MomoReturn.model_validate(dict(request.query_params))
        except ValidationError:
            raise HTTPException(422, detail="invalid return parameters")

        res = await reconcile(session, q, source=SOURCE_RETURN,
                              **engine_kw())

        if settings.redirects_to_frontend:
            if res.status is OrderStatus.PAID:
                url = _with_query(settings.frontend_success_url,
                                  {"orderNumber": res.order_number})
            else:
                url = _with_query(settings.frontend_fail_url, {
                    "orderNumber": res.order_number,
                    "status": res.status.value,
                })
            return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

        return ReturnOut(
            status=res.status.value, order_number=res.order_number
        )

    # ----------------------------
    # Order status (support tools, success page polling)
    # ----------------------------
    @app.get("/api/orders/{order_number}")
    async def get_order(
        order_number: str, session: AsyncSession = Depends(get_db),
    ):
        async with db.gated():
            async with session.begin():
                order = await find_order(session, order_number)
                if order is None:
                    raise OrderNotFound()
        return {
            "orderNumber": order.order_number,
            "status": order.status,
            "paymentMethod": order.payment_method,
            "paymentReference": order.payment_reference,
            "currency": order.currency,
            "subtotalAmount": order.subtotal_amount,
            "discountAmount": order.discount_amount,
            "taxAmount": order.tax_amount,
            "feeAmount": order.fee_amount,
            "totalAmount": order.total_amount,
            "createdAt": to_iso(order.created_at),
            "orderedAt": to_iso(order.ordered_at),
            "paidAt": to_iso(order.paid_at),
            "items": [
                {
                    "courseId": it.course_id,
                    "courseTitle": it.course_title,
                    "courseThumbnail": it.course_thumbnail,
                    "originalPrice": it.original_price,
                    "discountAmount": it.discount_amount,
                    "discountedPrice": it.discounted_price,
                    "finalPrice": it.final_price,
                }
                for it in order.items
            ],
        }

    @app.get("/api/timings")
    async def get_timings():
        return {"items": aggregates()}

    # ----------------------------
    # MockMomo screens (mock gateway only)
    # ----------------------------
    if isinstance(gateway, MockMomo):
        mock: MockMomo = gateway

        @app.get("/mockpay/{order_number}", response_class=HTMLResponse)
        async def mockpay_screen(request: Request, order_number: str):
            ps = mock.sessions.get(order_number)
            if ps is None:
                raise HTTPException(404, "payment session not found")
            return templates.TemplateResponse(request, "mockpay.html", {
                "order_number": order_number,
                "request_id": ps["requestId"],
                "order_info": ps["orderInfo"],
                "amount_vnd": f"{ps['amount']:,}",
                "kinds": MOCK_KINDS,
                "ipn_url": settings.momo_ipn_url,
            })

        @app.post("/mockpay/{order_number}/emit")
        async def mockpay_emit(order_number: str, t: str):
            if t not in MOCK_KINDS:
                raise HTTPException(400, detail="invalid kind")
            if order_number not in mock.sessions:
                raise HTTPException(404, "payment session not found")

            fields = mock.build_callback(order_number, t)
            client_http: httpx.AsyncClient = app.state.http
            try:
                await client_http.post(settings.momo_ipn_url, json=fields)
            except httpx.HTTPError as e:
                # the buyer still gets redirected; the return path can
                # reconcile on its own
                logger.warning("Mock IPN delivery failed: %r", e)

            return RedirectResponse(
                url=_with_query(settings.momo_redirect_url, fields),
                status_code=HTTP_303_SEE_OTHER,
            )

    return app


def main() -> None:
    import uvicorn
    uvicorn.run(
        "coursepay.server:create_app",
        factory=True,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
