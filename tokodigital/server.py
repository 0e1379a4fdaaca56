from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from . import config
from .errors import (
    GatewayError, InvalidTransition, OrderNotFound, ProductUnavailable,
)
from .fulfillment import FulfillmentEngine
from .helpers import ct_equal, to_iso
from .infra.sql import Database, is_postgres, open_database
from .infra.timings import snapshot, timeit
from .model.catalog import Catalog
from .model.credentials import CredentialStore
from .model.db import FULFILLED, ORDER_STATUSES, Product, init_models
from .model.ledger import OrderLedger
from .notify import Notifier, new_notifier
from .payment import PROVIDERS, PaymentGateway, all_gateways, new_gateway
from .sweeper import ReconciliationSweeper, run_periodic
from .throttle import new_store
from .webhooks import WebhookHandler, WebhookNormalizer

log = logging.getLogger(__name__)


# ----------------------------
# Wiring
# ----------------------------
@dataclass
class Services:
    db: Database
    catalog: Catalog
    credentials: CredentialStore
    ledger: OrderLedger
    gateway: PaymentGateway
    notifier: Notifier
    engine: FulfillmentEngine
    sweeper: ReconciliationSweeper
    webhooks: WebhookHandler
    cooldown: object


def build_services(
    db: Database, *, gateway: PaymentGateway,
    verifiers: Dict[str, PaymentGateway], notifier: Notifier,
    cooldown, retain_failed: bool = config.RETAIN_FAILED_ORDERS,
    sweep_delay: float = config.SWEEP_DELAY_SECONDS,
    stale_delay: float = config.STALE_DELAY_SECONDS,
) -> Services:
    catalog = Catalog(db)
    credentials = CredentialStore(db)
    ledger = OrderLedger(db, credentials, retain_failed=retain_failed)
    engine = FulfillmentEngine(ledger, catalog, notifier)
    sweeper = ReconciliationSweeper(
        ledger, catalog, gateway, engine, notifier,
        delay=sweep_delay, stale_delay=stale_delay,
    )
    webhooks = WebhookHandler(
        WebhookNormalizer(verifiers), ledger, engine, sweeper
    )
    return Services(
        db=db, catalog=catalog, credentials=credentials, ledger=ledger,
        gateway=gateway, notifier=notifier, engine=engine, sweeper=sweeper,
        webhooks=webhooks, cooldown=cooldown,
    )


app = FastAPI(
    title="TokoDigital",
    default_response_class=ORJSONResponse,
)


def services(request: Request) -> Services:
    svc = getattr(request.app.state, "services", None)
    if svc is None:
        raise RuntimeError("services not initialized")
    return svc


def require_admin(request: Request) -> None:
    auth = request.headers.get("authorization", "")
    token = auth[7:] if auth.lower().startswith("bearer ") else ""
    if not token or not ct_equal(token, config.ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="admin token required")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    config.setup_logging()
    db = "PostgreSQL" if is_postgres(config.DATABASE_URL) else "SQLite"
    log.info("=" * 50)
    log.info("TokoDigital is starting up...")
    log.info("   - Payment provider: %s", config.PAYMENT_PROVIDER)
    log.info("   - Database: %s", db)
    log.info("   - Cooldown store: %s", config.THROTTLE_BACKEND)
    log.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    app.state.db = open_database(config.DATABASE_URL)
    await init_models(app.state.db.engine)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=config.GATEWAY_TIMEOUT,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=16),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if config.THROTTLE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _services_start():
    http = app.state.http
    app.state.services = build_services(
        app.state.db,
        gateway=new_gateway(http),
        verifiers=all_gateways(http),
        notifier=new_notifier(http),
        cooldown=new_store(r=app.state.redis),
    )


@app.on_event("startup")
async def _sweepers_start():
    app.state.tasks = []
    if not config.ENABLE_SWEEPERS:
        log.info("background sweepers disabled")
        return
    sw = app.state.services.sweeper
    app.state.tasks = [
        asyncio.create_task(run_periodic(
            sw.sweep, config.SWEEP_INTERVAL_SECONDS, "payment sweep"
        )),
        asyncio.create_task(run_periodic(
            sw.sweep_stale, config.STALE_SWEEP_INTERVAL_SECONDS, "stale sweep"
        )),
    ]


@app.on_event("shutdown")
async def _sweepers_stop():
    tasks = getattr(app.state, "tasks", [])
    for t in tasks:
        t.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    app.state.tasks = []


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
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()
        app.state.db = None


# ----------------------------
# Webhook endpoints (shared + per provider)
# ----------------------------
@app.post("/payment/webhook")
async def payment_webhook(request: Request,
                          svc: Services = Depends(services)):
    payload = await request.body()
    async with timeit("webhook"):
        status, body = await svc.webhooks.handle(payload, request.headers)
    return ORJSONResponse(body, status_code=status)


@app.post("/payment/webhook/{provider}")
async def provider_webhook(provider: str, request: Request,
                           svc: Services = Depends(services)):
    if provider not in PROVIDERS:
        raise HTTPException(404, detail="unknown provider")
    payload = await request.body()
    async with timeit("webhook"):
        status, body = await svc.webhooks.handle(
            payload, request.headers, provider=provider
        )
    return ORJSONResponse(body, status_code=status)


# ----------------------------
# Buyer API (called by the bot)
# ----------------------------
OUT_OF_STOCK = "out of stock"


async def _purchasable(svc: Services, product_id: int) -> Product:
    product = await svc.catalog.get(product_id)
    if product is None or not product.is_active:
        raise ProductUnavailable(product_id, "not available")
    if await svc.credentials.count_unused(product_id) <= 0:
        raise ProductUnavailable(product_id, OUT_OF_STOCK)
    return product


@app.post("/api/checkout")
async def create_checkout(payload: dict, svc: Services = Depends(services)):
    buyer_id = str(payload.get("buyer_id") or "").strip()
    method = (payload.get("method") or "qris").lower()
    try:
        product_id = int(payload.get("product_id"))
    except (TypeError, ValueError):
        raise HTTPException(400, detail="product_id is required")
    if not buyer_id:
        raise HTTPException(400, detail="buyer_id is required")
    if method not in ("qris", "link"):
        raise HTTPException(400, detail="method must be 'qris' or 'link'")

    try:
        product = await _purchasable(svc, product_id)
    except ProductUnavailable as e:
        if e.reason == OUT_OF_STOCK:
            raise HTTPException(409, detail="Stok produk kosong")
        raise HTTPException(400, detail="Produk tidak ditemukan / tidak aktif")

    # double taps on "buy" reuse the open order
    recent = await svc.ledger.find_recent_pending(
        buyer_id, product_id, config.PENDING_REUSE_SECONDS
    )
    if recent is not None and (recent.payment_url or recent.qr_string):
        return {"reused": True, **recent.as_dict(with_payload=False)}

    order = recent or await svc.ledger.create(
        buyer_id, product_id, product.price_idr
    )
    callback_url = config.PUBLIC_BASE_URL + config.WEBHOOK_PATH
    try:
        async with timeit("gateway.create"):
            if method == "qris":
                link = await svc.gateway.create_qris(
                    order.order_id, order.price_idr, callback_url
                )
            else:
                link = await svc.gateway.create_pay_link(
                    order.order_id, order.price_idr,
                    {
                        "name": str(payload.get("buyer_name") or ""),
                        "item_name": product.name,
                    },
                    callback_url,
                )
    except GatewayError as e:
        log.error("payment creation failed for %s: %s", order.order_id, e)
        # the gateway never saw this order; don't leave it for the sweeper
        await svc.ledger.delete(order.order_id)
        raise HTTPException(502, detail="Gagal membuat pembayaran")

    await svc.ledger.attach_payment(
        order.order_id, link.reference,
        link.checkout_url or link.qr_url, link.qr_string,
    )
    return {
        "reused": False,
        "order_id": order.order_id,
        "status": order.status,
        "price_idr": order.price_idr,
        "payment_ref": link.reference,
        "payment_url": link.checkout_url or link.qr_url,
        "qr_string": link.qr_string,
    }


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, buyer_id: Optional[str] = None,
                    svc: Services = Depends(services)):
    order = await svc.ledger.find_by_order_id(order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")
    # the credential is only shown to its buyer
    owner = buyer_id is not None and ct_equal(str(buyer_id), order.buyer_id)
    out = order.as_dict(with_payload=owner and order.status == FULFILLED)
    out["created_at_iso"] = to_iso(order.created_at)
    out["paid_at_iso"] = to_iso(order.paid_at)
    return out


@app.post("/api/orders/{order_id}/check")
async def check_order(order_id: str, payload: dict,
                      svc: Services = Depends(services)):
    buyer_id = str(payload.get("buyer_id") or "").strip()
    order = await svc.ledger.find_by_order_id(order_id)
    if order is None or not buyer_id or order.buyer_id != buyer_id:
        raise HTTPException(404, detail="Pesanan tidak ditemukan")

    if await svc.cooldown.hit(f"check:{buyer_id}",
                              config.CHECK_COOLDOWN_SECONDS):
        raise HTTPException(429, detail="Tunggu sebentar sebelum cek lagi")

    try:
        res = await svc.sweeper.check_order(order, delete_unknown=False)
    except GatewayError as e:
        log.warning("manual check for %s failed: %s", order_id, e)
        # no answer from the gateway, the buyer may retry right away
        await svc.cooldown.clear(f"check:{buyer_id}")
        raise HTTPException(502, detail="Gagal mengecek status pembayaran")
    except InvalidTransition as e:
        raise HTTPException(409, detail=str(e))

    out = {"order_id": order_id, **res.as_dict()}
    if res.fulfillment is not None and res.fulfillment.credential:
        out["credential"] = res.fulfillment.credential
    return out


@app.get("/api/products/{product_id}/stock")
async def product_stock(product_id: int, svc: Services = Depends(services)):
    product = await svc.catalog.get(product_id)
    if product is None:
        raise HTTPException(404, detail="product not found")
    return {
        "product_id": product_id,
        "unused": await svc.credentials.count_unused(product_id),
    }


# ----------------------------
# Admin JSON feed
# ----------------------------
@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def api_admin_orders(limit: int = 200, status: Optional[str] = None,
                           svc: Services = Depends(services)):
    if status is not None and status not in ORDER_STATUSES:
        raise HTTPException(400, detail="invalid status")
    orders = await svc.ledger.list_recent(limit=limit, status=status)
    return {
        "items": [o.as_dict(with_payload=False) for o in orders],
        "counts": await svc.ledger.status_counts(),
        "limit": limit,
    }


@app.get("/api/admin/stock", dependencies=[Depends(require_admin)])
async def api_admin_stock(svc: Services = Depends(services)):
    return {"items": await svc.credentials.stock_summary()}


@app.post("/api/admin/products", dependencies=[Depends(require_admin)])
async def api_admin_add_product(payload: dict,
                                svc: Services = Depends(services)):
    slug = (payload.get("slug") or "").strip()
    name = (payload.get("name") or "").strip()
    if not slug or not name:
        raise HTTPException(400, detail="slug and name are required")
    if await svc.catalog.get_by_slug(slug) is not None:
        raise HTTPException(409, detail="slug already exists")
    try:
        product = await svc.catalog.add(
            slug, name, int(payload.get("price_idr") or 0),
            is_active=bool(payload.get("is_active", True)),
        )
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    return {"product_id": product.id, "slug": product.slug}


@app.post("/api/admin/products/{product_id}/credentials",
          dependencies=[Depends(require_admin)])
async def api_admin_add_credentials(product_id: int, payload: dict,
                                    svc: Services = Depends(services)):
    items = payload.get("payloads")
    if items is None:
        # one credential per line, as pasted into the dashboard
        items = str(payload.get("text") or "").splitlines()
    if not isinstance(items, list):
        raise HTTPException(400, detail="payloads must be a list")
    try:
        added = await svc.credentials.add_bulk(
            product_id, [str(i) for i in items]
        )
    except LookupError:
        raise HTTPException(404, detail="product not found")
    return {
        "added": added,
        "unused": await svc.credentials.count_unused(product_id),
    }


@app.post("/api/admin/orders/{order_id}/resend",
          dependencies=[Depends(require_admin)])
async def api_admin_resend(order_id: str, svc: Services = Depends(services)):
    try:
        sent = await svc.engine.resend(order_id)
    except OrderNotFound:
        raise HTTPException(404, detail="order not found")
    except InvalidTransition as e:
        raise HTTPException(409, detail=str(e))
    return {"ok": sent}


@app.post("/api/admin/sweep", dependencies=[Depends(require_admin)])
async def api_admin_sweep(svc: Services = Depends(services)):
    main = await svc.sweeper.sweep()
    stale = await svc.sweeper.sweep_stale()
    return {"sweep": main.as_dict(), "stale": stale.as_dict()}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": snapshot()}
