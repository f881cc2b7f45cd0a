"""
Progress Sync — FastAPI entry point

Commands (POST/DELETE) mutate orders and items through the lifecycle state
machine and publish row changes on Redis. Queries (GET) read the order views,
which the realtime subscriber keeps fresh through the debounced dispatcher.

┌─────────────┐  webhook  ┌────────────┐ commit ┌──────────┐
│ ERP (Zoho)  │ ────────▶ │ Reconciler │ ─────▶ │ Postgres │
└─────────────┘           └────────────┘        └──────────┘
┌─────────────┐ commands  ┌────────────┐ publish ┌───────────────┐
│  Admin UI   │ ────────▶ │  commands  │ ──────▶ │ Redis Pub/Sub │
└─────────────┘           └────────────┘         └───────┬───────┘
        ▲                                                │ order_changes
        │ /queries/views   ┌────────────┐  debounced  ┌──▼─────────┐
        └───────────────── │   views    │ ◀────────── │ subscriber │
                           └────────────┘             └────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries, schema
from .aggregate import OrderStatus, ProgressStage, StockStatus, Urgency
from .dispatcher import ChangeDispatcher
from .errors import (
    ItemNotFound,
    OrderNotFound,
    PreconditionFailed,
    PurchaseOrderLinkNotFound,
)
from .projections import ActivityFeed, ViewRegistry
from .reconciler import Reconciler
from .subscriber import RealtimeSubscriber
from .webhook import WebhookHandler, read_payload

logger = logging.getLogger(__name__)


def configure(
    app: FastAPI,
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    dispatcher: ChangeDispatcher | None = None,
) -> None:
    """Wire the service components onto ``app.state``."""
    dispatcher = dispatcher or ChangeDispatcher()
    reconciler = Reconciler(session_factory, redis)
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.dispatcher = dispatcher
    app.state.views = ViewRegistry(session_factory, dispatcher)
    app.state.activity = ActivityFeed(dispatcher)
    app.state.reconciler = reconciler
    app.state.webhook = WebhookHandler(session_factory, redis, reconciler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the realtime subscriber and view refreshers; tear them down on exit."""
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await schema.create_all(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)

    configure(app, session_factory, redis_pool)
    app.state.views.start()
    app.state.activity.start()

    subscriber = RealtimeSubscriber(
        lambda: aioredis.from_url(config.REDIS_URL, decode_responses=True),
        app.state.dispatcher,
        on_subscribed=app.state.views.schedule_full_refresh,
    )
    app.state.subscriber = subscriber
    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(subscriber.run(shutdown_event))
    logger.info("Progress sync started, listening on %s", config.CHANGES_CHANNEL)
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await app.state.dispatcher.close()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Progress Sync Service", lifespan=lifespan)


# ── Error mapping ────────────────────────────────

@app.exception_handler(PreconditionFailed)
async def precondition_failed(request: Request, exc: PreconditionFailed):
    return JSONResponse(status_code=409, content={"detail": exc.reason})


@app.exception_handler(OrderNotFound)
@app.exception_handler(ItemNotFound)
@app.exception_handler(PurchaseOrderLinkNotFound)
async def not_found(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# ── Request Models ───────────────────────────────

class ItemRequest(BaseModel):
    name: str
    code: str | None = None
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    order_number: str
    items: list[ItemRequest] = Field(default_factory=list)
    reference: str | None = None
    company_id: str | None = None
    urgency: Urgency = Urgency.NORMAL


class StageRequest(BaseModel):
    stage: ProgressStage
    admin_override: bool = False


class DeliveryRequest(BaseModel):
    delivered: int


class StockRequest(BaseModel):
    stock_status: StockStatus


class QuantityRequest(BaseModel):
    quantity: int


class StatusRequest(BaseModel):
    status: OrderStatus
    admin_override: bool = False


class PurchaseOrderRequest(BaseModel):
    purchase_order_number: str
    supplier_id: str | None = None
    notes: str | None = None


# ── Command Endpoints ────────────────────────────

@app.post("/commands/orders")
async def cmd_create_order(req: CreateOrderRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.create_order(
            session, state.redis,
            req.order_number,
            [item.model_dump() for item in req.items],
            reference=req.reference,
            company_id=req.company_id,
            urgency=req.urgency.value,
        )
    return queries.order_to_dict(agg)


@app.post("/commands/orders/{order_id}/status")
async def cmd_set_order_status(order_id: str, req: StatusRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.set_order_status(
            session, state.redis, order_id, req.status.value, req.admin_override
        )
    return queries.order_to_dict(agg)


@app.post("/commands/orders/{order_id}/complete")
async def cmd_complete_order(order_id: str, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.complete_order(session, state.redis, order_id)
    return queries.order_to_dict(agg)


@app.delete("/commands/orders/{order_id}")
async def cmd_delete_order(order_id: str, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        await commands.delete_order(session, state.redis, order_id)
    state.views.evict(order_id)
    return {"order_id": order_id, "deleted": True}


@app.post("/commands/orders/{order_id}/import-description")
async def cmd_import_description(order_id: str, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.import_description(session, state.redis, order_id)
    return queries.order_to_dict(agg)


@app.post("/commands/orders/{order_id}/purchase-orders")
async def cmd_link_purchase_order(order_id: str, req: PurchaseOrderRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        record = await commands.link_purchase_order(
            session, state.redis, order_id,
            req.purchase_order_number, req.supplier_id, req.notes,
        )
    return {**record, "created_at": record["created_at"].isoformat()}


@app.delete("/commands/purchase-orders/{link_id}")
async def cmd_unlink_purchase_order(link_id: str, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        await commands.unlink_purchase_order(session, state.redis, link_id)
    return {"id": link_id, "deleted": True}


@app.post("/commands/items/{item_id}/stage")
async def cmd_advance_item_stage(item_id: str, req: StageRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.advance_item_stage(
            session, state.redis, item_id, req.stage.value, req.admin_override
        )
    return queries.order_to_dict(agg)


@app.post("/commands/items/{item_id}/delivery")
async def cmd_record_delivery(item_id: str, req: DeliveryRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.record_delivery(session, state.redis, item_id, req.delivered)
    return queries.order_to_dict(agg)


@app.post("/commands/items/{item_id}/stock")
async def cmd_set_stock_status(item_id: str, req: StockRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.set_stock_status(
            session, state.redis, item_id, req.stock_status.value
        )
    return queries.order_to_dict(agg)


@app.post("/commands/items/{item_id}/quantity")
async def cmd_update_item_quantity(item_id: str, req: QuantityRequest, request: Request):
    state = request.app.state
    async with state.session_factory() as session:
        agg = await commands.update_item_quantity(session, state.redis, item_id, req.quantity)
    return queries.order_to_dict(agg)


# ── Integration Webhook ──────────────────────────

@app.post("/webhooks/erp")
async def erp_webhook(request: Request):
    """ERP webhook: invoices advance items, sales orders create orders."""
    payload = await read_payload(request)
    status_code, body = await request.app.state.webhook.handle(payload)
    return JSONResponse(status_code=status_code, content=body)


# ── Query Endpoints ──────────────────────────────

@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, request: Request):
    async with request.app.state.session_factory() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/queries/views/{view}")
async def query_view(view: str, request: Request):
    """Cached order list of one UI view (orders, progress, processing, ...)."""
    views = request.app.state.views
    if view not in views.views:
        raise HTTPException(404, f"Unknown view: {view}")
    orders = await views.get(view)
    refreshed_at = views.views[view].refreshed_at
    return {
        "view": view,
        "refreshed_at": refreshed_at.isoformat() if refreshed_at else None,
        "orders": orders,
    }


@app.get("/queries/summary")
async def query_summary(request: Request):
    async with request.app.state.session_factory() as session:
        return await queries.lifecycle_summary(session)


@app.get("/sync-log")
async def get_sync_log(request: Request, limit: int = 50):
    async with request.app.state.session_factory() as session:
        return await queries.list_sync_log(session, limit)


@app.get("/activity")
async def get_activity(request: Request):
    return list(request.app.state.activity.entries)


@app.get("/health")
async def health(request: Request):
    subscriber = getattr(request.app.state, "subscriber", None)
    return {
        "status": "ok",
        "service": "progress-sync",
        "realtime": subscriber.state.value if subscriber else None,
    }
