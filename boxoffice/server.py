from __future__ import annotations
import asyncio
import contextlib
import uuid
from typing import Mapping, Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from .cart import CartStore, new_store
from .config import Settings
from .errors import CheckoutError, ValidationError
from .fees import FeeRuleEngine
from .infra.log import configure_logging
from .infra.sql import make_async_engine
from .infra.timings import snapshot, timeit
from .inventory import InventoryValidator
from .messages import localize, pick_locale
from .methods import SavedMethodStore
from .model.db import create_schema
from .notifications import (
    LogNotificationSink, NotificationSink, WebhookNotificationSink,
)
from .orders import (
    AuthenticatedOrderCreator, GuestOrderCreator, Principal, load_order,
)
from .payments import (
    FxQuoteService, MockPay, PaymentGateway, PaymentProvider, new_providers,
)
from .reconciliation import PaymentReconciler, policy_for
from .schemas import (
    CartIn, CartLineIn, CheckoutIn, FeeQuoteIn, FxQuoteIn, GuestCheckoutIn,
    VerifyIn,
)

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def current_principal(request: Request) -> Optional[Principal]:
    # identity is established elsewhere and carried in the signed session
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    return Principal(user_id=user_id, email=request.session.get("email"))


def cart_owner(request: Request) -> str:
    owner = request.session.get("user_id") or request.session.get("cart_id")
    if not owner:
        owner = uuid.uuid4().hex
        request.session["cart_id"] = owner
    return owner


def get_carts(request: Request) -> CartStore:
    return request.app.state.carts


def get_mockpay(request: Request) -> MockPay:
    provider = request.app.state.gateway.by_name.get(MockPay.name)
    if not isinstance(provider, MockPay):
        raise HTTPException(404, detail="sandbox provider not enabled")
    return provider


# ----------------------------
# API: fees & checkout
# ----------------------------
@router.post("/api/fees")
async def calculate_fees(body: FeeQuoteIn, request: Request):
    fees: FeeRuleEngine = request.app.state.fees
    async with timeit("api.fees"):
        result = await fees.calculate_fees(body.event_id,
                                           body.to_selections())
    return result.as_dict()


@router.post("/api/fx/quote")
async def fx_quote(body: FxQuoteIn, request: Request):
    fx: FxQuoteService = request.app.state.fx
    async with timeit("api.fx_quote"):
        quote = await fx.quote(body.xof_amount_minor, body.margin_bps)
    return quote.as_dict()


@router.post("/api/checkout")
async def create_checkout(
    body: CheckoutIn, request: Request,
    principal: Optional[Principal] = Depends(current_principal),
):
    creator: AuthenticatedOrderCreator = request.app.state.auth_orders
    async with timeit("orders.create"):
        result = await creator.create_order(
            principal, body.event_id, body.quantities, body.payment_method,
            body.payment_details.to_details(),
        )
    return result.as_dict()


@router.post("/api/guest/checkout")
async def create_guest_checkout(body: GuestCheckoutIn, request: Request):
    creator: GuestOrderCreator = request.app.state.guest_orders
    async with timeit("orders.create_guest"):
        result = await creator.create_guest_order(
            body.guest(), body.event_id, body.quantities,
            body.payment_method, body.payment_details.to_details(),
        )
    return result.as_dict()


# ----------------------------
# API: verification & callbacks
# ----------------------------
@router.post("/api/payments/verify")
async def verify_payment(
    body: VerifyIn, request: Request,
    owner: str = Depends(cart_owner),
    carts: CartStore = Depends(get_carts),
):
    if not (body.token or "").strip():
        raise ValidationError("payment token required", code="token_required")
    reconciler: PaymentReconciler = request.app.state.reconciler
    async with timeit("payments.verify"):
        result = await reconciler.verify_with_retry(
            body.token.strip(), order_id=body.order_id,
            save_method=body.save_method,
            payment_details=body.payment_details,
        )
    if result.success and result.clear_cart_event_id:
        await carts.clear(owner, result.clear_cart_event_id)
    return result.as_dict()


@router.post("/payments/{provider}/callback")
async def payments_callback(provider: str, request: Request):
    gateway: PaymentGateway = request.app.state.gateway
    impl: Optional[PaymentProvider] = gateway.by_name.get(provider)
    if impl is None:
        raise HTTPException(404, detail="unknown payment provider")

    payload = await request.body()
    headers = dict(request.headers)
    token = impl.parse_callback(payload, headers)
    if not token:
        # events we do not act on are acknowledged so they are not resent
        return {"ok": True, "ignored": True}

    reconciler: PaymentReconciler = request.app.state.reconciler
    async with timeit("payments.callback"):
        result = await reconciler.verify_payment(token)
    return {"ok": True, "status": result.status,
            "order_id": result.order_id}


# ----------------------------
# API: orders
# ----------------------------
@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: str, request: Request,
    principal: Optional[Principal] = Depends(current_principal),
):
    # guests read their orders through /api/guest/orders/{token}
    if principal is None:
        raise ValidationError("not authenticated", code="not_authenticated")
    s = request.app.state
    async with timeit("db.get_order"):
        return await load_order(s.sessions, s.gated, order_id,
                                user_id=principal.user_id)


@router.get("/api/guest/orders/{token}")
async def get_guest_order(token: str, request: Request):
    creator: GuestOrderCreator = request.app.state.guest_orders
    out = await creator.verify_guest_order(token)
    out["tickets"] = await creator.get_guest_tickets(token)
    return out


# ----------------------------
# API: carts
# ----------------------------
@router.get("/api/carts")
async def list_carts(owner: str = Depends(cart_owner),
                     carts: CartStore = Depends(get_carts)):
    summary = await carts.summary(owner)
    return {"carts": await carts.all_carts(owner), **summary}


@router.delete("/api/carts")
async def clear_carts(owner: str = Depends(cart_owner),
                      carts: CartStore = Depends(get_carts)):
    await carts.clear_all(owner)
    return {"ok": True}


@router.get("/api/carts/{event_id}")
async def get_cart(event_id: str, owner: str = Depends(cart_owner),
                   carts: CartStore = Depends(get_carts)):
    return {"event_id": event_id,
            "selections": await carts.get(owner, event_id)}


@router.put("/api/carts/{event_id}")
async def put_cart(event_id: str, body: CartIn,
                   owner: str = Depends(cart_owner),
                   carts: CartStore = Depends(get_carts)):
    selections = await carts.set(owner, event_id, body.selections)
    return {"event_id": event_id, "selections": selections}


@router.patch("/api/carts/{event_id}")
async def patch_cart(event_id: str, body: CartLineIn,
                     owner: str = Depends(cart_owner),
                     carts: CartStore = Depends(get_carts)):
    selections = await carts.update_quantity(owner, event_id,
                                             body.ticket_type_id,
                                             body.quantity)
    return {"event_id": event_id, "selections": selections}


@router.delete("/api/carts/{event_id}")
async def delete_cart(event_id: str, owner: str = Depends(cart_owner),
                      carts: CartStore = Depends(get_carts)):
    await carts.clear(owner, event_id)
    return {"ok": True}


# ----------------------------
# API: inventory, pending payments, admin
# ----------------------------
@router.get("/api/inventory/{event_id}")
async def get_inventory(event_id: str, request: Request):
    inventory: InventoryValidator = request.app.state.inventory
    return {"event_id": event_id,
            "items": await inventory.inventory_view(event_id)}


@router.get("/api/pending")
async def api_pending(request: Request, limit: int = 100):
    reconciler: PaymentReconciler = request.app.state.reconciler
    limit = max(1, min(limit, 500))
    total, items = await reconciler.recent_pending(limit=limit)
    return {"items": items, "enabled": True, "limit": limit, "total": total}


@router.post("/api/admin/reconcile")
async def api_admin_reconcile(request: Request, older_than: float = 0):
    s = request.app.state
    counts = await s.reconciler.reconcile_pending(
        older_than_seconds=older_than
    )
    cancelled = await s.reconciler.cancel_stale_orders(
        s.settings.stale_order_seconds
    )
    renotified = await s.reconciler.notify_unconfirmed(
        older_than_seconds=older_than
    )
    return {"reconciled": counts, "cancelled_stale": cancelled,
            "renotified": renotified}


@router.get("/api/admin/timings")
async def api_admin_timings():
    return snapshot()


# ----------------------------
# MockPay sandbox
# ----------------------------
@router.get("/mockpay/{token}")
async def mockpay_screen(token: str, request: Request,
                         mock: MockPay = Depends(get_mockpay)):
    session = mock.sessions.get(token)
    if session is None:
        raise HTTPException(404, detail="payment session not found")
    return {
        "token": token,
        "order_id": session["order_id"],
        "amount": session["amount"],
        "currency": session["currency"],
        "method": session["method"],
        "outcomes": ["succeeded", "failed", "canceled"],
        "emit_url": f"/mockpay/{token}/emit",
        "webhook_url": request.app.state.settings.mock_webhook_url,
    }


@router.post("/mockpay/{token}/emit")
async def mockpay_emit(token: str, request: Request,
                       t: str = Form(...),
                       mock: MockPay = Depends(get_mockpay)):
    payload, sig = mock.emit(token, t)
    order_id = mock.sessions[token]["order_id"]

    client_http: httpx.AsyncClient = request.app.state.http
    delivered = False
    try:
        resp = await client_http.post(
            request.app.state.settings.mock_webhook_url,
            content=payload,
            headers={
                "x-mockpay-signature": sig,
                "content-type": "application/json",
            },
        )
        delivered = resp.status_code < 400
    except httpx.HTTPError as e:
        # the outcome is recorded; verification still picks it up
        logger.warning("mockpay webhook delivery failed: {}", e)
    return {"ok": True, "order_id": order_id, "kind": t,
            "delivered": delivered}


# ----------------------------
# Errors
# ----------------------------
async def checkout_error_handler(request: Request, exc: CheckoutError):
    if exc.status_code >= 500:
        logger.error("{} {}: {}", request.method, request.url.path,
                     exc.message)
    locale = pick_locale(request.headers.get("accept-language"))
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": localize(exc, locale)},
    )


# ----------------------------
# App factory
# ----------------------------
async def _reconcile_loop(app: FastAPI) -> None:
    s = app.state
    interval = s.settings.reconcile_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await s.reconciler.reconcile_pending(older_than_seconds=interval)
            await s.reconciler.cancel_stale_orders(
                s.settings.stale_order_seconds
            )
            await s.reconciler.notify_unconfirmed(older_than_seconds=interval)
        except (CheckoutError, SQLAlchemyError) as e:
            logger.error("reconcile loop: {}", e)


def create_app(settings: Optional[Settings] = None, *,
               providers: Optional[Mapping[str, PaymentProvider]] = None,
               notifier: Optional[NotificationSink] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="Boxoffice",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.include_router(router)
    app.state.settings = settings

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        configure_logging(settings.log_level)
        engine, sessions, gated = make_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            gate_limit=settings.db_gate_limit,
        )
        await create_schema(engine)
        app.state.engine = engine
        app.state.sessions = sessions
        app.state.gated = gated

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=512, max_keepalive_connections=512
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if settings.cart_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _services_start():
        s = app.state
        policy = policy_for(settings)
        s.fx = fx = FxQuoteService(
            s.sessions, s.gated,
            fallback_xof_per_usd=settings.fx_fallback_xof_per_usd,
            default_margin_bps=settings.fx_margin_bps,
            ttl_seconds=settings.fx_quote_ttl_seconds,
        )
        provs = providers if providers is not None else \
            new_providers(settings, s.http, fx)
        s.gateway = PaymentGateway(s.sessions, s.gated, provs)
        s.inventory = InventoryValidator(s.sessions, s.gated)
        s.fees = FeeRuleEngine(
            s.sessions, s.gated,
            default_rate=settings.default_fee_rate,
            max_quantity=settings.max_quantity_per_type,
        )
        args = (s.sessions, s.gated, s.inventory, s.fees, s.gateway)
        s.auth_orders = AuthenticatedOrderCreator(
            *args, max_quantity=settings.max_quantity_per_type
        )
        s.guest_orders = GuestOrderCreator(
            *args, max_quantity=settings.max_quantity_per_type
        )
        s.carts = new_store(settings.cart_backend, sessions=s.sessions,
                            gated=s.gated, r=s.redis,
                            ttl_seconds=settings.cart_ttl_seconds)
        sink = notifier
        if sink is None and settings.notify_webhook_url:
            sink = WebhookNotificationSink(s.http,
                                           settings.notify_webhook_url)
        elif sink is None:
            sink = LogNotificationSink()
        s.reconciler = PaymentReconciler(
            s.sessions, s.gated, s.gateway, policy,
            notifier=sink,
            methods=SavedMethodStore(s.sessions, s.gated),
            timeout_seconds=settings.verify_timeout_seconds,
            attempts=settings.verify_attempts,
            backoff_seconds=settings.verify_backoff_seconds,
        )

        logger.info("=" * 50)
        logger.info("Boxoffice is starting up...")
        logger.info("   - Database:     {}", s.engine.url.render_as_string(
            hide_password=True))
        logger.info("   - Cart backend: {}", settings.cart_backend)
        logger.info("   - Providers:    {} ({})", settings.payment_providers,
                    ", ".join(sorted(s.gateway.by_name)))
        logger.info("   - Acceptance:   {}", policy.name)
        logger.info("=" * 50)

    @app.on_event("startup")
    async def _reconcile_start():
        app.state.reconcile_task = None
        if settings.reconcile_interval_seconds > 0:
            app.state.reconcile_task = asyncio.create_task(
                _reconcile_loop(app)
            )

    @app.on_event("shutdown")
    async def _reconcile_stop():
        task = getattr(app.state, "reconcile_task", None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            app.state.reconcile_task = None
        reconciler = getattr(app.state, "reconciler", None)
        if reconciler is not None:
            await reconciler.drain(settings.verify_timeout_seconds)

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

    @app.on_event("shutdown")
    async def _db_stop():
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()
            app.state.engine = None

    return app


app = create_app()
