from __future__ import annotations
import sys

import asyncio
import json
import os
from typing import Optional, AsyncIterator, List

import httpx
from loguru import logger
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from starlette.status import HTTP_303_SEE_OTHER
import redis.asyncio as redis

from .auth import SessionUser, current_user, optional_user, require_admin
from .errors import DomainError, ErrorKind, Invalid, NotFound
from .errors import UpstreamFailure, UpstreamTimeout
from .helpers import now_ts, format_cents
from .infra.log import setup_logging
from .infra.sql import GatedAsyncSession, make_database
from .infra.timings import timeit, aggregates
from .mercadopago import MercadoPago
from .mockpay import PaymentAdapter, MockPay, MOCK_SECRET, sign
from . import notify
from .model import catalog, checkout, discounts, orders, reservations
from .model.db import Base
from .model.orders import SeatItem, SeatsItem, ProductItem
from .model.paymentsession import (
        PaymentSessionStore, new_store, BACKEND as PAYSESSION_BACKEND
)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    logger.error("NEED DATABASE_URL! e.g. sqlite:///./cinefans.db")
    sys.exit(1)

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "")
PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
PAYMENT_HTTP_TIMEOUT = float(os.environ.get("PAYMENT_HTTP_TIMEOUT", "5"))
RESERVATION_SWEEP_SECONDS = float(
    os.environ.get("RESERVATION_SWEEP_SECONDS", "30")
)
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "512"))

MOCKPAY_OUTCOMES = {"approved", "rejected", "cancelled"}

HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.UPSTREAM_FAILURE: 502,
    ErrorKind.UPSTREAM_TIMEOUT: 504,
}


database = make_database(DATABASE_URL)
engine = database.engine


async def get_db() -> AsyncIterator[GatedAsyncSession]:
    async with database.session() as db:
        yield db


app = FastAPI(
    title="CineFans",
    default_response_class=ORJSONResponse,
)


async def paymentsessions() -> AsyncIterator[PaymentSessionStore]:
    if PAYSESSION_BACKEND == "redis":
        yield new_store(r=app.state.redis)
    else:
        async with database.session() as db:
            yield new_store(db=db)


def base_url_for(request: Request) -> str:
    return (PUBLIC_BASE_URL or str(request.base_url)).rstrip("/")


async def payment_adapter(
    request: Request,
    rs: PaymentSessionStore = Depends(paymentsessions),
) -> PaymentAdapter:
    if PAYMENT_PROVIDER == "mercadopago":
        return MercadoPago(app.state.http)
    return MockPay(rs, base_url=base_url_for(request), secret=MOCK_SECRET)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    logger.info("CineFans is starting up...")
    logger.info("   - Payment provider:          {}", PAYMENT_PROVIDER)
    logger.info("   - Payment sessions backend:  {}", PAYSESSION_BACKEND)
    logger.info("   - Seat hold window:          {}s",
                reservations.HOLD_WINDOW_SECONDS)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if PAYSESSION_BACKEND != "redis":
            from .model.paymentsession._sql import create_schema
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=PAYMENT_HTTP_TIMEOUT,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if PAYSESSION_BACKEND == "redis":
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


async def _sweep_forever():
    while True:
        await asyncio.sleep(RESERVATION_SWEEP_SECONDS)
        try:
            async with database.session() as db:
                async with timeit("reservations.sweep"):
                    await orders.sweep(db)
        except asyncio.CancelledError:
            raise
        except Exception:
            # keep sweeping; expiry never depends on this loop
            logger.exception("reservation sweep failed")


@app.on_event("startup")
async def _sweeper_start():
    if RESERVATION_SWEEP_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(_sweep_forever())


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    await database.dispose()


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    status = HTTP_STATUS.get(exc.kind, 400)
    if status >= 500:
        logger.error("{} {} -> {}", request.method, request.url.path, exc)
    return ORJSONResponse(
        status_code=status,
        content={"error": {"code": exc.code, "reason": exc.reason}},
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.opt(exception=exc).error(
        "unhandled error on {} {}", request.method, request.url.path
    )
    return ORJSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL",
                           "reason": "Something went wrong"}},
    )


# ----------------------------
# Request bodies
# ----------------------------
class ReserveBody(BaseModel):
    seat_id: Optional[str] = None
    seat_ids: Optional[List[str]] = None
    event_id: Optional[str] = None
    order_id: Optional[str] = None


class CartItemBody(BaseModel):
    seat_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class QuantityBody(BaseModel):
    quantity: int = Field(..., ge=0)


class DiscountBody(BaseModel):
    code: str
    membership_id: Optional[str] = None


class CheckoutBody(BaseModel):
    order_id: Optional[str] = None


class PushSubscribeBody(BaseModel):
    endpoint: str
    keys: dict = Field(default_factory=dict)


class PushSendBody(BaseModel):
    title: str
    body: str
    url: Optional[str] = None


# ----------------------------
# Helpers
# ----------------------------
async def _cart_view(db: GatedAsyncSession, order_id: str,
                     user: SessionUser) -> dict:
    async with timeit("db.get_order"):
        return await orders.get_order(db, order_id, user.user_id)


async def _pending_order_id(db: GatedAsyncSession, user: SessionUser) -> str:
    view = await orders.get_pending_order(db, user.user_id)
    if view is None:
        raise NotFound("You have no open order")
    return view["order_id"]


async def _broadcast_sale():
    async with database.session() as db:
        await notify.broadcast(
            db,
            app.state.http,
            "Tickets sold",
            "Another order was just confirmed. Seats are going fast!",
        )


async def _announce_paid(order) -> None:
    notify.fire_and_forget(_broadcast_sale(), "push.broadcast")


# ----------------------------
# Catalog
# ----------------------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/api/events")
async def api_events(past: bool = False,
                     db: GatedAsyncSession = Depends(get_db)):
    return {"items": await catalog.list_events(db, upcoming_only=not past)}


@app.get("/api/events/{event_id}")
async def api_event(event_id: str, db: GatedAsyncSession = Depends(get_db)):
    return await catalog.get_event(db, event_id)


@app.get("/api/products")
async def api_products(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await catalog.list_products(db)}


# ----------------------------
# Reservations / cart
# ----------------------------
@app.post("/api/reservations", status_code=201)
async def api_reserve(
    payload: ReserveBody,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    if bool(payload.seat_id) == bool(payload.seat_ids):
        raise Invalid("Send either seat_id or seat_ids")
    if payload.seat_ids:
        item = SeatsItem(tuple(payload.seat_ids), payload.event_id)
    else:
        item = SeatItem(payload.seat_id)
    async with timeit("orders.add_seat"):
        order = await orders.add_item(
            db, user.user_id, item, order_id=payload.order_id
        )
    return await _cart_view(db, order.id, user)


@app.delete("/api/reservations/{reservation_id}")
async def api_release(
    reservation_id: str,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("reservations.release"):
        res = await reservations.release(db, reservation_id, user.user_id)
    out = {"reservation_id": res.id, "status": res.status, "order": None}
    if res.order_id:
        await orders.recompute(db, res.order_id)
        out["order"] = await _cart_view(db, res.order_id, user)
    return out


@app.get("/api/cart")
async def api_cart(
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    return {"order": await orders.get_pending_order(db, user.user_id)}


@app.post("/api/cart/items", status_code=201)
async def api_cart_add(
    payload: CartItemBody,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    if bool(payload.seat_id) == bool(payload.product_id):
        raise Invalid("Send either seat_id or product_id")
    if payload.seat_id:
        item = SeatItem(payload.seat_id)
    else:
        item = ProductItem(payload.product_id, payload.quantity)
    async with timeit("orders.add_item"):
        order = await orders.add_item(db, user.user_id, item)
    return await _cart_view(db, order.id, user)


@app.patch("/api/cart/items/{item_id}")
async def api_cart_update(
    item_id: str,
    payload: QuantityBody,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    order_id = await _pending_order_id(db, user)
    order = await orders.update_quantity(
        db, user.user_id, order_id, item_id, payload.quantity
    )
    return await _cart_view(db, order.id, user)


@app.delete("/api/cart/items/{item_id}")
async def api_cart_remove(
    item_id: str,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    order_id = await _pending_order_id(db, user)
    order = await orders.remove_item(db, user.user_id, order_id, item_id)
    return await _cart_view(db, order.id, user)


@app.post("/api/cart/recompute")
async def api_cart_recompute(
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    order_id = await _pending_order_id(db, user)
    total = await orders.recompute(db, order_id)
    return {"order_id": order_id, "total": total}


# ----------------------------
# Discounts
# ----------------------------
@app.post("/api/discounts/validate")
async def api_discount_validate(
    payload: DiscountBody,
    user: Optional[SessionUser] = Depends(optional_user),
    db: GatedAsyncSession = Depends(get_db),
):
    membership_id = payload.membership_id
    if membership_id is None and user is not None:
        membership_id = user.membership_id
    info = await discounts.resolve(db, payload.code, membership_id)
    return {"valid": True, "discount": info.as_dict()}


@app.post("/api/cart/discount")
async def api_cart_discount(
    payload: DiscountBody,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    order_id = await _pending_order_id(db, user)
    order = await orders.apply_discount(
        db, user.user_id, order_id, payload.code, user.membership_id
    )
    return await _cart_view(db, order.id, user)


@app.delete("/api/cart/discount")
async def api_cart_discount_clear(
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    order_id = await _pending_order_id(db, user)
    order = await orders.clear_discount(db, user.user_id, order_id)
    return await _cart_view(db, order.id, user)


# ----------------------------
# Checkout
# ----------------------------
@app.post("/api/checkout")
async def api_checkout(
    request: Request,
    payload: CheckoutBody,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
):
    order_id = payload.order_id or await _pending_order_id(db, user)
    async with timeit("checkout.initiate"):
        return await checkout.initiate(
            db, adapter, user.user_id, user.email, order_id,
            base_url_for(request), on_paid=_announce_paid,
        )


# ----------------------------
# API: Order status (polled by the success page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def api_order(
    order_id: str,
    user: SessionUser = Depends(current_user),
    db: GatedAsyncSession = Depends(get_db),
):
    async with timeit("db.get_order"):
        return await orders.get_order(
            db, order_id, user.user_id, is_admin=user.is_admin
        )


# ----------------------------
# Webhook endpoint (shared for MockPay / MercadoPago)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = adapter.verify_webhook(payload, headers)
    if adapter.event_kind(event) != "payment":
        return {"ok": True, "ignored": True}
    payment_id, idem = adapter.event_ids(event)
    if not payment_id:
        raise Invalid("Missing payment id")

    async with timeit("paymentsession.mark_event"):
        fresh = await rs.mark_event_seen(idem)
    if not fresh:
        return {"ok": True, "idempotent": True}

    try:
        async with timeit("checkout.reconcile"):
            order = await checkout.reconcile(
                db, adapter, payment_id, on_paid=_announce_paid
            )
    except (UpstreamFailure, UpstreamTimeout):
        # let the provider's retry through
        await rs.forget_event(idem)
        raise
    except DomainError:
        # final answer for this event; a retry would get the same
        raise
    except Exception:
        # locked database, deadlock, dropped connection...
        await rs.forget_event(idem)
        raise
    return {"ok": True, "order_id": order.id, "order_status": order.status}


@app.get("/payments/return")
async def payments_return(
    outcome: Optional[str] = None,
    payment_id: Optional[str] = None,
    collection_id: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(payment_adapter),
):
    pid = payment_id or collection_id
    if not pid or pid == "null":
        return {"outcome": outcome or "unknown", "order_id": None,
                "order_status": None}
    async with timeit("checkout.reconcile"):
        order = await checkout.reconcile(
            db, adapter, pid, on_paid=_announce_paid
        )
    return {
        "outcome": outcome or "unknown",
        "order_id": order.id,
        "order_status": order.status,
    }


# ----------------------------
# MockPay (hosted checkout stand-in)
# ----------------------------
@app.get("/mockpay/{psid}")
async def mockpay_screen(
    psid: str,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    async with timeit("paymentsession.get"):
        ps = await rs.get_payment_session(psid)
    if not ps:
        raise NotFound("Payment session not found")
    return {
        "psid": psid,
        "order_id": ps["order_id"],
        "title": ps.get("title") or "",
        "amount": int(ps["amount"]),
        "amount_display": format_cents(ps["amount"]),
        "currency": ps.get("currency") or "eur",
        "status": ps.get("status") or "pending",
        "emit_url": f"/mockpay/{psid}/emit",
        "outcomes": sorted(MOCKPAY_OUTCOMES),
    }


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    t: str = Form(...),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    if t not in MOCKPAY_OUTCOMES:
        raise Invalid("Outcome must be approved, rejected or cancelled")

    async with timeit("paymentsession.get"):
        ps = await rs.get_payment_session(psid)
    if not ps:
        raise NotFound("Payment session not found")

    await rs.set_status(psid, t)
    await rs.remove_pending(psid)

    mock = MockPay(rs, secret=MOCK_SECRET)
    payload = json.dumps(mock.build_event(psid)).encode()
    webhook_url = ps.get("notification_url") or MOCK_WEBHOOK_URL

    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(
            webhook_url,
            content=payload,
            headers={
                "x-mockpay-signature": sign(payload, MOCK_SECRET),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the back URL reconciles too; the buyer is not blocked on this
        logger.warning("mockpay webhook delivery failed: {}", e)

    back = ps.get("success_url") if t == "approved" \
        else ps.get("failure_url")
    back = back or "/payments/return?outcome=" + (
        "success" if t == "approved" else "failure"
    )
    sep = "&" if "?" in back else "?"
    return RedirectResponse(
        url=(f"{back}{sep}payment_id={psid}&status={t}"
             f"&external_reference={ps['order_id']}"),
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# Push notifications
# ----------------------------
@app.post("/api/push/subscribe", status_code=201)
async def api_push_subscribe(
    payload: PushSubscribeBody,
    db: GatedAsyncSession = Depends(get_db),
):
    sub_id = await notify.subscribe(db, payload.endpoint, payload.keys)
    return {"ok": True, "id": sub_id}


@app.post("/api/push/send")
async def api_push_send(
    payload: PushSendBody,
    _admin: SessionUser = Depends(require_admin),
    db: GatedAsyncSession = Depends(get_db),
):
    return await notify.broadcast(
        db, app.state.http, payload.title, payload.body, payload.url
    )


# ----------------------------
# Admin JSON feeds
# ----------------------------
@app.get("/api/admin/orders")
async def api_admin_orders(
    limit: int = 200,
    _admin: SessionUser = Depends(require_admin),
    db: GatedAsyncSession = Depends(get_db),
):
    items = await orders.list_orders(db, limit)
    return {"items": items, "limit": limit}


@app.get("/api/admin/pending")
async def api_admin_pending(
    limit: int = 100,
    _admin: SessionUser = Depends(require_admin),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    total, items = await rs.get_recent_payment_sessions(limit=limit)
    return {"items": items, "enabled": True, "limit": limit, "total": total}


@app.post("/api/admin/sweep")
async def api_admin_sweep(
    _admin: SessionUser = Depends(require_admin),
    db: GatedAsyncSession = Depends(get_db),
):
    out = await orders.sweep(db)
    out["at"] = now_ts()
    return out


@app.get("/api/admin/timings")
async def api_admin_timings(_admin: SessionUser = Depends(require_admin)):
    return {"items": aggregates()}
