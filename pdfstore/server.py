from __future__ import annotations
import sys

import logging
import os
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import auth, checkout
from .auth import SessionUser
from .downloads import issue_link
from .errors import (
    AuthenticationError, AuthorizationError, NotFoundError, RateLimitError,
    StoreError, ValidationError,
)
from .gateways import (
    CARD_BACKEND, PIX_BACKEND, CardGateway, PixGateway, new_card_gateway,
    new_pix_gateway,
)
from .helpers import ct_equal, get_client_ip
from .infra.ratelimit import RATE_LIMIT_BACKEND, RateLimiter, new_limiter
from .infra.sql import create_schema, make_async_engine
from .model import coupons, orders
from .model.catalog import (
    list_catalog, parse_cart_items, price_lines, subtotal_of,
)
from .model.coupons import NOT_FOUND, coupon_as_api
from .model.orders import is_paid, order_as_api
from .money import ZERO, as_float
from .notify import (
    EMAIL_BACKEND, Notifier, new_notifier, send_order_confirmation,
)
from .reconcile import reconcile, refresh_from_provider
from .storage import STORAGE_BACKEND, SignedUrlProvider, new_storage

logger = logging.getLogger("pdfstore")

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./pdfstore.db")
    sys.exit(1)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# one PIX creation per client per window
PIX_RATE_LIMIT_MS = 2000


engine, SessionAsync = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


app = FastAPI(
    title="pdfstore",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path,
                     exc.message)
    return ORJSONResponse({"error": exc.message},
                          status_code=exc.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("pdfstore is starting up: card=%s pix=%s storage=%s "
                "email=%s ratelimit=%s", CARD_BACKEND, PIX_BACKEND,
                STORAGE_BACKEND, EMAIL_BACKEND, RATE_LIMIT_BACKEND)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )
    app.state.card = new_card_gateway(app.state.http)
    app.state.pix = new_pix_gateway(app.state.http)
    app.state.notifier = new_notifier(app.state.http)
    app.state.storage = new_storage(SESSION_SECRET)


@app.on_event("startup")
async def _redis_start():
    r = None
    if RATE_LIMIT_BACKEND == "redis":
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.redis = r
    app.state.limiter = new_limiter(r)


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
        await r.aclose()
        app.state.redis = None


# ----------------------------
# Dependencies
# ----------------------------
def card_gateway(request: Request) -> CardGateway:
    return request.app.state.card


def pix_gateway(request: Request) -> PixGateway:
    return request.app.state.pix


def object_storage(request: Request) -> SignedUrlProvider:
    return request.app.state.storage


def notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def optional_user(request: Request) -> Optional[SessionUser]:
    return auth.session_user(request)


def require_user(
    user: Optional[SessionUser] = Depends(optional_user),
) -> SessionUser:
    if user is None:
        raise AuthenticationError("Login required")
    return user


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise AuthenticationError("Admin login required")


def _str_field(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{key} is required")
    return value.strip()


# ----------------------------
# Catalog & coupons
# ----------------------------
@app.get("/products")
async def products(db: AsyncSession = Depends(get_db)):
    return {"items": await list_catalog(db)}


@app.post("/coupon/validate")
async def coupon_validate(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    user: Optional[SessionUser] = Depends(optional_user),
):
    code = payload.get("code")
    cart_items = payload.get("cartItems")
    if not code or not cart_items:
        raise ValidationError("code and cartItems are required")

    lines = await price_lines(db, parse_cart_items(cart_items))
    subtotal = subtotal_of(lines)
    client_total = payload.get("cartTotal")
    if client_total is not None:
        logger.debug("coupon preview: client total %s, server subtotal %s",
                     client_total, subtotal)

    evaluation = await coupons.evaluate(
        db, code, lines, subtotal, user_id=user.id if user else None
    )
    if not evaluation.ok:
        if evaluation.error_code == NOT_FOUND:
            raise NotFoundError(evaluation.error, evaluation.error_code)
        raise ValidationError(evaluation.error, evaluation.error_code)

    c = evaluation.coupon
    return {
        "success": True,
        "coupon": {
            "id": c.id, "code": c.code, "type": c.ctype,
            "value": as_float(c.value),
        },
        "discount": as_float(evaluation.discount),
        "newTotal": as_float(max(ZERO, subtotal - evaluation.discount)),
        "originalTotal": as_float(subtotal),
    }


# ----------------------------
# Checkout
# ----------------------------
@app.post("/payment-intent")
async def payment_intent(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
    card: CardGateway = Depends(card_gateway),
    user: Optional[SessionUser] = Depends(optional_user),
):
    return await checkout.create_card_intent(
        db, card,
        items=payload.get("items"),
        coupon_code=payload.get("couponCode"),
        user=user,
        email=payload.get("email"),
        idempotency_key=request.headers.get("idempotency-key"),
    )


@app.get("/resume-payment")
async def resume_payment(
    orderId: str,
    db: AsyncSession = Depends(get_db),
    card: CardGateway = Depends(card_gateway),
    user: Optional[SessionUser] = Depends(optional_user),
):
    return await checkout.resume_card_payment(db, card, orderId, user)


@app.post("/pix")
async def pix_create(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
    pix: PixGateway = Depends(pix_gateway),
    limiter: RateLimiter = Depends(rate_limiter),
    user: SessionUser = Depends(require_user),
):
    if not await limiter.hit(f"pix:{get_client_ip(request)}",
                             PIX_RATE_LIMIT_MS):
        raise RateLimitError("Too many requests. Try again in a moment.")
    return await checkout.create_pix_payment(
        db, pix,
        items=payload.get("items"),
        user=user,
        description=payload.get("description"),
        coupon_code=payload.get("couponCode"),
        idempotency_key=request.headers.get("idempotency-key"),
    )


@app.post("/pix/regenerate")
async def pix_regenerate(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    pix: PixGateway = Depends(pix_gateway),
    user: SessionUser = Depends(require_user),
):
    order_id = _str_field(payload, "orderId")
    return await checkout.regenerate_pix(db, pix, order_id, user)


# ----------------------------
# Webhooks
# ----------------------------
@app.post("/payment-webhook")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    card: CardGateway = Depends(card_gateway),
    storage: SignedUrlProvider = Depends(object_storage),
    mailer: Notifier = Depends(notifier),
):
    payload = await request.body()
    headers = dict(request.headers)

    event = card.parse_event(card.verify_webhook(payload, headers))
    if event is None:
        return {"received": True}
    outcome = await reconcile(db, event, notifier=mailer, storage=storage)
    return {
        "received": True,
        "orderId": outcome.order_id,
        "status": outcome.status,
        "idempotent": outcome.replay,
    }


@app.post("/pix/webhook")
async def pix_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    pix: PixGateway = Depends(pix_gateway),
    storage: SignedUrlProvider = Depends(object_storage),
    mailer: Notifier = Depends(notifier),
):
    payload = await request.body()
    headers = dict(request.headers)

    payment_id = pix.verify_webhook(payload, headers)
    if not payment_id:
        return {"received": True}
    # the notification only says "something changed"; the provider's
    # record is authoritative for status and amount
    payment = await pix.get_payment(payment_id)
    outcome = await reconcile(
        db, pix.payment_event(payment), notifier=mailer, storage=storage
    )
    return {
        "received": True,
        "orderId": outcome.order_id,
        "status": outcome.status,
    }


@app.get("/payment-status")
async def payment_status(
    id: str,
    db: AsyncSession = Depends(get_db),
    card: CardGateway = Depends(card_gateway),
    pix: PixGateway = Depends(pix_gateway),
    storage: SignedUrlProvider = Depends(object_storage),
    mailer: Notifier = Depends(notifier),
):
    order = await orders.find_order(db, id)
    if order is None:
        raise NotFoundError("Order not found")
    order = await refresh_from_provider(
        db, order, card=card, pix=pix, notifier=mailer, storage=storage
    )
    return {
        "orderId": order.id,
        "status": order.status,
        "paymentStatus": order.payment_status,
    }


# ----------------------------
# Orders
# ----------------------------
@app.post("/order/cancel")
async def order_cancel(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    card: CardGateway = Depends(card_gateway),
    user: Optional[SessionUser] = Depends(optional_user),
):
    order_id = _str_field(payload, "orderId")
    message = await orders.cancel_order(
        db, order_id, card, user.id if user else None
    )
    return {"success": True, "message": message}


@app.post("/order/send-confirmation")
async def order_send_confirmation(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    storage: SignedUrlProvider = Depends(object_storage),
    mailer: Notifier = Depends(notifier),
    user: SessionUser = Depends(require_user),
):
    order_id = _str_field(payload, "orderId")
    order = await orders.find_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id and order.user_id != user.id:
        raise AuthorizationError("You cannot access this order")
    if not is_paid(order):
        raise ValidationError("Order has not been paid")
    await send_order_confirmation(db, order, storage, mailer)
    return {"success": True}


@app.get("/orders/mine")
async def my_orders(
    db: AsyncSession = Depends(get_db),
    user: SessionUser = Depends(require_user),
):
    items = await orders.list_orders(db, user_id=user.id)
    return {"items": [order_as_api(o) for o in items]}


@app.get("/orders/{order_id}")
async def order_detail(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    user: Optional[SessionUser] = Depends(optional_user),
):
    order = await orders.find_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.user_id and (user is None or user.id != order.user_id):
        raise AuthorizationError("You cannot access this order")
    return order_as_api(order)


# ----------------------------
# Downloads
# ----------------------------
@app.post("/download/generate-link")
async def download_link(
    payload: dict,
    request: Request,
    db: AsyncSession = Depends(get_db),
    storage: SignedUrlProvider = Depends(object_storage),
    user: SessionUser = Depends(require_user),
):
    item_id = _str_field(payload, "orderItemId")
    return await issue_link(
        db, storage,
        item_id=item_id,
        requester=user,
        order_ref=payload.get("orderId") or None,
        ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


# ----------------------------
# Accounts
# ----------------------------
@app.post("/auth/register")
async def auth_register(
    payload: dict, request: Request, db: AsyncSession = Depends(get_db),
):
    user = await auth.register_user(
        db, payload.get("email"), payload.get("password"),
        payload.get("name") or "",
    )
    su = auth.login_session(request, user)
    return {"id": su.id, "email": su.email}


@app.post("/auth/login")
async def auth_login(
    payload: dict, request: Request, db: AsyncSession = Depends(get_db),
):
    user = await auth.authenticate(
        db, payload.get("email") or "", payload.get("password") or ""
    )
    su = auth.login_session(request, user)
    return {"id": su.id, "email": su.email}


@app.post("/auth/logout")
async def auth_logout(request: Request):
    request.session.pop("user", None)
    return {"success": True}


@app.get("/auth/me")
async def auth_me(user: SessionUser = Depends(require_user)):
    return {"id": user.id, "email": user.email, "role": user.role}


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin/orders"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=(next or "/admin/orders"),
            status_code=HTTP_303_SEE_OTHER
        )
    logger.warning("failed admin login for %r", username)
    raise AuthenticationError("Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.pop("admin_user", None)
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.get("/admin/orders", dependencies=[Depends(require_admin)])
async def admin_orders(
    status: Optional[str] = None,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
):
    if status is not None and status not in orders.ORDER_STATUSES:
        raise ValidationError(f"unknown status {status!r}")
    items = await orders.list_orders(db, status=status, limit=limit)
    return {
        "items": [order_as_api(o, with_items=False) for o in items],
        "limit": limit,
    }


@app.get("/admin/coupons", dependencies=[Depends(require_admin)])
async def admin_coupons(
    active: Optional[bool] = None, db: AsyncSession = Depends(get_db),
):
    items = await coupons.list_coupons(db, active=active)
    return {"items": [coupon_as_api(c) for c in items]}


@app.post("/admin/coupons", status_code=201,
          dependencies=[Depends(require_admin)])
async def admin_coupon_create(
    payload: dict, db: AsyncSession = Depends(get_db),
):
    return coupon_as_api(await coupons.create_coupon(db, payload))


@app.get("/admin/coupons/{coupon_id}", dependencies=[Depends(require_admin)])
async def admin_coupon_get(
    coupon_id: str, db: AsyncSession = Depends(get_db),
):
    return coupon_as_api(await coupons.get_coupon(db, coupon_id))


@app.put("/admin/coupons/{coupon_id}", dependencies=[Depends(require_admin)])
async def admin_coupon_update(
    coupon_id: str, payload: dict, db: AsyncSession = Depends(get_db),
):
    return coupon_as_api(await coupons.update_coupon(db, coupon_id, payload))


@app.delete("/admin/coupons/{coupon_id}",
            dependencies=[Depends(require_admin)])
async def admin_coupon_delete(
    coupon_id: str, db: AsyncSession = Depends(get_db),
):
    await coupons.delete_coupon(db, coupon_id)
    return {"success": True}
