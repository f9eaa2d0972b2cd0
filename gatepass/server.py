from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from loguru import logger
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .catalog import CatalogStatus, EventCatalog, ValidationError
from .checkout import CheckoutRequest, CheckoutService, CheckoutStatus
from .config import (
    ADMIN_PASSWORD, ADMIN_USERNAME, BOOKING_BACKEND, CURRENCY, DATABASE_URL,
    MOCK_WEBHOOK_URL, PAYMENT_GATEWAY, REDIS_MAX_CONN, REDIS_URL,
    SESSION_SECRET,
)
from .gateway import GatewayError, MockPay, PaymentAdapter, new_gateway
from .helpers import ct_equal, to_iso
from .infra.sql import open_sql
from .log import setup_logging
from .model.booking import Booking, PaymentStatus
from .model.bookings import BookingStore, new_store
from .model.results import StoreUnavailable
from .reconcile import PaymentReconciler, ReconcileStatus
from .redemption import RedemptionService
from .tokens import TicketCodec, render_qr_svg

templates = Jinja2Templates(directory=Path(__file__).parent / "templates")

app = FastAPI(
    title="GatePass",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    B = "SQL" if BOOKING_BACKEND == "pg" else "Redis"
    logger.info("GatePass is starting up...")
    logger.info("   - Booking Backend: {}", B)
    logger.info("   - Payment Gateway: {}", PAYMENT_GATEWAY)


@app.on_event("startup")
async def _store_start():
    if BOOKING_BACKEND == "pg":
        engine, SessionAsync, gated = open_sql(DATABASE_URL)
        app.state.engine = engine
        store = new_store(engine=engine, sessions=SessionAsync, gated=gated,
                          backend="pg")
    else:
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
        store = new_store(r=app.state.redis, backend="redis")
    await store.init_schema()
    app.state.store = store


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _services_start():
    store = app.state.store
    gateway = new_gateway(PAYMENT_GATEWAY)
    app.state.gateway = gateway
    app.state.codec = TicketCodec()
    app.state.catalog = EventCatalog(store)
    app.state.checkout = CheckoutService(store, gateway)
    app.state.reconciler = PaymentReconciler(store, gateway)
    app.state.redemption = RedemptionService(store, app.state.codec)


@app.on_event("shutdown")
async def _gateway_stop():
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await gateway.aclose()
        app.state.gateway = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _store_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


@app.exception_handler(StoreUnavailable)
async def _store_unavailable(request: Request, exc: StoreUnavailable):
    logger.warning("{} {}: store unavailable: {}",
                   request.method, request.url.path, exc)
    return ORJSONResponse({"detail": "booking store unavailable"},
                          status_code=503)


# ----------------------------
# Dependencies
# ----------------------------
def get_store(request: Request) -> BookingStore:
    return request.app.state.store


def get_gateway(request: Request) -> PaymentAdapter:
    return request.app.state.gateway


def get_catalog(request: Request) -> EventCatalog:
    return request.app.state.catalog


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_reconciler(request: Request) -> PaymentReconciler:
    return request.app.state.reconciler


def get_redemption(request: Request) -> RedemptionService:
    return request.app.state.redemption


def get_codec(request: Request) -> TicketCodec:
    return request.app.state.codec


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="login required")
    return request.session["admin_user"]


def booking_public(b: Booking) -> Dict[str, Any]:
    return {
        "booking_id": b.id,
        "event_id": b.event_id,
        "tier_id": b.tier_id,
        "buyer_name": b.buyer_name,
        "quantity": b.quantity,
        "ticket_amount": b.ticket_amount,
        "service_fee": b.service_fee,
        "total_amount": b.total_amount,
        "currency": CURRENCY,
        "payment_status": b.status.value,
        "payment_ref": b.payment_ref,
        "created_at": to_iso(b.created_at),
        "completed_at": to_iso(b.completed_at),
        "failed_at": to_iso(b.failed_at),
        "failure_reason": b.failure_reason,
        "redeemed": b.redeemed,
        "redeemed_at": to_iso(b.redeemed_at),
    }


def _catalog_error(status: CatalogStatus) -> None:
    if status is CatalogStatus.NOT_FOUND:
        raise HTTPException(404, detail="event not found")
    if status is CatalogStatus.NOT_OWNER:
        raise HTTPException(403, detail="event belongs to another organizer")


# ----------------------------
# API: Events
# ----------------------------
@app.get("/api/events")
async def list_events(limit: int = 200,
                      catalog: EventCatalog = Depends(get_catalog)):
    limit = max(1, min(limit, 500))
    events = await catalog.list_events(limit=limit)
    return {"items": [ev.to_dict() for ev in events], "limit": limit}


@app.get("/api/events/{event_id}")
async def get_event(event_id: str,
                    catalog: EventCatalog = Depends(get_catalog)):
    view = await catalog.view(event_id)
    if view is None:
        raise HTTPException(404, detail="event not found")
    return view.to_dict()


@app.post("/api/admin/events")
async def create_event(payload: dict,
                       admin: str = Depends(require_admin),
                       catalog: EventCatalog = Depends(get_catalog)):
    try:
        ev = await catalog.create(admin, payload)
    except ValidationError as e:
        raise HTTPException(422, detail=e.errors)
    return ev.to_dict()


@app.put("/api/admin/events/{event_id}")
async def update_event(event_id: str, payload: dict,
                       admin: str = Depends(require_admin),
                       catalog: EventCatalog = Depends(get_catalog)):
    try:
        res = await catalog.update(admin, event_id, payload)
    except ValidationError as e:
        raise HTTPException(422, detail=e.errors)
    _catalog_error(res.status)
    return res.event.to_dict()


@app.delete("/api/admin/events/{event_id}")
async def delete_event(event_id: str,
                       admin: str = Depends(require_admin),
                       catalog: EventCatalog = Depends(get_catalog)):
    res = await catalog.delete(admin, event_id)
    _catalog_error(res.status)
    return {"ok": True, "event_id": event_id}


# ----------------------------
# API: Checkout
# ----------------------------
_CHECKOUT_ERRORS = {
    CheckoutStatus.NOT_FOUND: (404, "event or ticket tier not found"),
    CheckoutStatus.SOLD_OUT: (409, "sold out"),
    CheckoutStatus.CONFLICT: (409, "too much contention, try again"),
    CheckoutStatus.GATEWAY_UNAVAILABLE: (503, "payment gateway unavailable"),
    CheckoutStatus.STORE_UNAVAILABLE: (503, "booking store unavailable"),
}


@app.post("/api/checkout")
async def create_checkout(
    payload: dict,
    checkout: CheckoutService = Depends(get_checkout),
):
    req = CheckoutRequest(
        event_id=str(payload.get("event_id") or ""),
        tier_id=str(payload.get("tier_id") or ""),
        quantity=payload.get("quantity", 1),
        buyer_name=payload.get("name"),
        phone=payload.get("phone"),
        email=payload.get("email"),
    )
    out = await checkout.checkout(req)
    if out.status is CheckoutStatus.INVALID:
        raise HTTPException(400, detail=out.errors)
    if out.status in _CHECKOUT_ERRORS:
        code, detail = _CHECKOUT_ERRORS[out.status]
        if out.status is CheckoutStatus.SOLD_OUT and out.availability:
            raise HTTPException(code, detail={
                "error": detail,
                "availability": out.availability.to_dict(),
            })
        raise HTTPException(code, detail=detail)

    b = out.booking
    return {
        "booking_id": b.id,
        "event_id": b.event_id,
        "payment_ref": b.payment_ref,
        "payment_session_id": out.session.session_ref,
        "redirect_url": out.session.redirect_url,
        "mode": out.session.mode,
        "ticket_amount": b.ticket_amount,
        "service_fee": b.service_fee,
        "amount": b.total_amount,
        "currency": CURRENCY,
    }


# ----------------------------
# API: Payment status (poll and return channels)
# ----------------------------
@app.get("/api/payments/{ref}/status")
async def payment_status(
    ref: str,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    out = await reconciler.poll_once(ref)
    if out.status is ReconcileStatus.NOT_FOUND:
        raise HTTPException(404, detail="payment not found")
    if out.status is ReconcileStatus.GATEWAY_UNAVAILABLE:
        raise HTTPException(503, detail="payment gateway unavailable")
    return {
        "payment_ref": ref,
        "booking_id": out.booking.id,
        "event_id": out.booking.event_id,
        "payment_status": out.booking.status.value,
    }


@app.get("/api/payments/{ref}/return")
async def payment_return(
    ref: str,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    out = await reconciler.on_return(ref)
    if out.status is ReconcileStatus.NOT_FOUND:
        raise HTTPException(404, detail="payment not found")
    status = out.payment_status
    return {
        "payment_ref": ref,
        "booking_id": out.booking.id if out.booking else None,
        "event_id": out.booking.event_id if out.booking else None,
        "payment_status": status.value if status else None,
        "success": status is PaymentStatus.COMPLETED,
        "timed_out": out.status is ReconcileStatus.TIMED_OUT,
    }


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)

    out = await reconciler.on_webhook(payload, headers)
    if out.status is ReconcileStatus.BAD_PAYLOAD:
        raise HTTPException(400, detail="unreadable webhook payload")
    if out.status is ReconcileStatus.NOT_FOUND:
        raise HTTPException(404, detail="payment not found")
    if out.status is ReconcileStatus.GATEWAY_UNAVAILABLE:
        # not settled; a 5xx makes the gateway deliver again
        raise HTTPException(503, detail="payment gateway unavailable")
    status = out.payment_status
    return {
        "ok": True,
        "verified": out.verified,
        "idempotent": out.status is ReconcileStatus.NOOP,
        "payment_status": status.value if status else None,
    }


# ----------------------------
# API: Bookings and tickets
# ----------------------------
@app.get("/api/bookings/{event_id}/{booking_id}")
async def get_booking(event_id: str, booking_id: str,
                      store: BookingStore = Depends(get_store)):
    b = await store.get_booking(event_id, booking_id)
    if b is None:
        raise HTTPException(404, detail="booking not found")
    return booking_public(b)


@app.get("/api/tickets/{event_id}/{booking_id}")
async def get_ticket(event_id: str, booking_id: str,
                     store: BookingStore = Depends(get_store),
                     codec: TicketCodec = Depends(get_codec)):
    b = await store.get_booking(event_id, booking_id)
    if b is None:
        raise HTTPException(404, detail="booking not found")
    if b.status is not PaymentStatus.COMPLETED:
        raise HTTPException(409, detail="payment not completed")
    credential = codec.mint(b.id, b.event_id)
    return {
        "booking": booking_public(b),
        "credential": credential,
        "qr_svg": render_qr_svg(credential),
    }


# ----------------------------
# API: Redemption
# ----------------------------
@app.post("/api/admin/redeem")
async def redeem(payload: dict,
                 admin: str = Depends(require_admin),
                 redemption: RedemptionService = Depends(get_redemption)):
    credential = payload.get("credential")
    if not isinstance(credential, str) or not credential.strip():
        raise HTTPException(400, detail="credential is required")
    res = await redemption.redeem(credential)
    return res.to_dict()


@app.post("/api/admin/redeem/sync")
async def redeem_sync(payload: dict,
                      admin: str = Depends(require_admin),
                      redemption: RedemptionService = Depends(get_redemption)):
    scans = payload.get("scans")
    if not isinstance(scans, list):
        raise HTTPException(400, detail="scans must be a list")
    station = payload.get("station_id", "?")
    results = []
    for s in scans:
        try:
            bid, eid = str(s["booking_id"]), str(s["event_id"])
            scanned_at = float(s["scanned_at"])
        except (KeyError, TypeError, ValueError):
            raise HTTPException(400, detail="malformed scan")
        res = await redemption.redeem_ids(eid, bid, now=scanned_at)
        results.append(res.to_dict())
    logger.info("station {} synced {} scans", station, len(results))
    return {"results": results}


@app.get("/api/admin/events/{event_id}/redemption-export")
async def redemption_export(
    event_id: str,
    admin: str = Depends(require_admin),
    catalog: EventCatalog = Depends(get_catalog),
    redemption: RedemptionService = Depends(get_redemption),
):
    _catalog_error((await catalog.owned(admin, event_id)).status)
    items = await redemption.export(event_id)
    return {"event_id": event_id, "items": items, "count": len(items)}


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
def _mockpay(gateway: PaymentAdapter) -> MockPay:
    if not isinstance(gateway, MockPay):
        raise HTTPException(404, detail="mockpay is not enabled")
    return gateway


@app.get("/mockpay/{ref}", response_class=HTMLResponse)
async def mockpay_screen(request: Request, ref: str,
                         gateway: PaymentAdapter = Depends(get_gateway)):
    ps = _mockpay(gateway).session(ref)
    if not ps:
        raise HTTPException(404, "payment session not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "ref": ref,
        "buyer": ps["buyer"].name,
        "amount": f"{int(ps['amount']) / 100:.2f}",
        "currency": CURRENCY,
        "webhook_url": MOCK_WEBHOOK_URL,
    })


@app.post("/mockpay/{ref}/emit")
async def mockpay_emit(
    ref: str, request: Request,
    gateway: PaymentAdapter = Depends(get_gateway),
):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    try:
        payload, headers = _mockpay(gateway).emit(ref, kind)
    except GatewayError:
        raise HTTPException(404, "payment session not found")

    client_http: httpx.AsyncClient = request.app.state.http
    try:
        await client_http.post(MOCK_WEBHOOK_URL, content=payload,
                               headers=headers)
    except httpx.HTTPError as e:
        # the return page polls, so a lost webhook is recoverable
        logger.warning("webhook delivery for {} failed: {}", ref, e)

    return RedirectResponse(url=f"/api/payments/{ref}/return",
                            status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Admin login
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request,
                          next: Optional[str] = "/api/events"):
    return templates.TemplateResponse(
        request, "login.html",
        {"next": next or "/api/events", "error": None},
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/events"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local paths
        dest = next if next.startswith("/") and not next.startswith("//") \
            else "/api/events"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    # auth failed
    return templates.TemplateResponse(
        request, "login.html",
        {"next": next, "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/api/events", status_code=HTTP_303_SEE_OTHER)
