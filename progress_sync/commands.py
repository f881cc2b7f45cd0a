"""
Progress Sync — command handlers (CQRS write side)

Each command:
    1. loads the order aggregate
    2. snapshots it
    3. applies one transition (PreconditionFailed leaves everything untouched)
    4. writes every changed row and commits once
    5. publishes raw row-change notifications on Redis for the view refreshers

Composite writes (item + rendered order description, item stage + order
status, cascade delete) share the one commit, so a failure in between leaves
no drift.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import codec, config, queries
from .aggregate import (
    OrderAggregate,
    OrderItemState,
    ProgressStage,
    Urgency,
)
from .errors import (
    ItemNotFound,
    OrderNotFound,
    PreconditionFailed,
    PurchaseOrderLinkNotFound,
)
from .schema import companies, order_items, order_purchase_orders, orders

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = (
    "id", "order_number", "status", "urgency", "description", "reference",
    "company_id", "completed_date", "created_at", "updated_at",
)
_ITEM_COLUMNS = (
    "id", "order_id", "name", "code", "quantity", "delivered", "stock_status",
    "progress_stage", "completed_at", "created_at", "updated_at",
)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def order_snapshot(agg: OrderAggregate) -> dict[str, Any]:
    return {column: _plain(getattr(agg, column)) for column in _ORDER_COLUMNS}


def item_snapshot(item: OrderItemState) -> dict[str, Any]:
    return {column: _plain(getattr(item, column)) for column in _ITEM_COLUMNS}


def _change(
    table: str,
    operation: str,
    record: dict | None,
    old_record: dict | None = None,
) -> dict:
    return {"table": table, "type": operation, "record": record, "old_record": old_record}


async def publish_changes(redis: aioredis.Redis | None, changes: list[dict]) -> None:
    """Publish committed row changes. A lost notification only delays view refreshes."""
    if redis is None or not changes:
        return
    try:
        for change in changes:
            await redis.publish(config.CHANGES_CHANNEL, json.dumps(change, default=str))
    except RedisError:
        logger.exception("Failed to publish %d change notification(s)", len(changes))


# ── Loading and saving aggregates ────────────────

class Tracked:
    """Row snapshots of an aggregate taken before a transition."""

    def __init__(self, agg: OrderAggregate) -> None:
        self.order = order_snapshot(agg)
        self.items = {item.id: item_snapshot(item) for item in agg.items}


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate:
    agg = await queries.load_aggregate(session, order_id)
    if agg is None:
        raise OrderNotFound(order_id)
    return agg


async def load_order_for_item(session: AsyncSession, item_id: str) -> OrderAggregate:
    agg = await queries.load_aggregate_for_item(session, item_id)
    if agg is None:
        raise ItemNotFound(item_id)
    return agg


async def save_aggregate(
    session: AsyncSession, agg: OrderAggregate, tracked: Tracked
) -> list[dict]:
    """
    Write every row that differs from its snapshot. Re-renders the order
    description when the item lines changed. Does not commit; returns the
    change notifications to publish after the commit.
    """
    changes: list[dict] = []
    for item in agg.items:
        old = tracked.items.get(item.id)
        new = item_snapshot(item)
        if old is None or old == new:
            continue
        values = {k: v for k, v in new.items() if k not in ("id", "order_id", "created_at")}
        await session.execute(
            update(order_items).where(order_items.c.id == item.id).values(**values)
        )
        changes.append(_change("order_items", "UPDATE", new, old))

    description = agg.render_description()
    if changes and description != agg.description:
        agg.description = description
        agg.updated_at = datetime.now(timezone.utc)

    new_order = order_snapshot(agg)
    if new_order != tracked.order:
        values = {k: v for k, v in new_order.items() if k not in ("id", "created_at")}
        await session.execute(update(orders).where(orders.c.id == agg.id).values(**values))
        changes.append(_change("orders", "UPDATE", new_order, tracked.order))
    return changes


async def _commit(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
    tracked: Tracked,
) -> OrderAggregate:
    changes = await save_aggregate(session, agg, tracked)
    await session.commit()
    await publish_changes(redis, changes)
    return agg


# ── Order commands ───────────────────────────────

async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_number: str,
    items: list[dict],
    reference: str | None = None,
    company_id: str | None = None,
    urgency: str = Urgency.NORMAL.value,
) -> OrderAggregate:
    """
    Create an order in "pending" with its items in "awaiting-stock".

    ``items``: dicts with ``name``, ``quantity`` and optional ``code``.
    """
    existing = await session.execute(
        select(orders.c.id).where(orders.c.order_number == order_number)
    )
    if existing.scalar_one_or_none() is not None:
        raise PreconditionFailed(f"Order number {order_number} already exists")
    for item in items:
        if int(item.get("quantity") or 0) < 1:
            raise PreconditionFailed(f"Item {item.get('name')!r} needs a positive quantity")

    now = datetime.now(timezone.utc)
    agg = OrderAggregate()
    agg.id = str(uuid4())
    agg.order_number = order_number
    agg.urgency = Urgency(urgency)
    agg.reference = reference
    agg.company_id = company_id
    agg.created_at = agg.updated_at = now
    agg.items = [
        OrderItemState(
            id=str(uuid4()),
            order_id=agg.id,
            name=item["name"],
            code=item.get("code"),
            quantity=int(item["quantity"]),
            created_at=now,
            updated_at=now,
        )
        for item in items
    ]
    agg.description = agg.render_description()

    await session.execute(insert(orders).values(**order_snapshot(agg)))
    item_records = [item_snapshot(item) for item in agg.items]
    if item_records:
        await session.execute(insert(order_items), item_records)
    await session.commit()

    changes = [_change("orders", "INSERT", order_snapshot(agg))]
    changes.extend(_change("order_items", "INSERT", record) for record in item_records)
    await publish_changes(redis, changes)
    logger.info("Created order %s with %d item(s)", order_number, len(agg.items))
    return agg


async def set_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    status: str,
    admin_override: bool = False,
) -> OrderAggregate:
    agg = await load_order(session, order_id)
    tracked = Tracked(agg)
    agg.set_status(status, admin_override=admin_override)
    return await _commit(session, redis, agg, tracked)


async def complete_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
) -> OrderAggregate:
    """Admin confirmation of delivery; every item must be complete."""
    agg = await load_order(session, order_id)
    tracked = Tracked(agg)
    agg.complete()
    await _commit(session, redis, agg, tracked)
    logger.info("Order %s completed", agg.order_number)
    return agg


async def delete_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
) -> None:
    """Delete an order with its items and purchase-order links. No state guard."""
    agg = await load_order(session, order_id)
    po_rows = (
        await session.execute(
            select(order_purchase_orders).where(order_purchase_orders.c.order_id == order_id)
        )
    ).mappings().all()

    await session.execute(delete(order_items).where(order_items.c.order_id == order_id))
    await session.execute(
        delete(order_purchase_orders).where(order_purchase_orders.c.order_id == order_id)
    )
    await session.execute(delete(orders).where(orders.c.id == order_id))
    await session.commit()

    changes = [_change("order_items", "DELETE", None, item_snapshot(i)) for i in agg.items]
    changes.extend(_change("order_purchase_orders", "DELETE", None, dict(r)) for r in po_rows)
    changes.append(_change("orders", "DELETE", None, order_snapshot(agg)))
    await publish_changes(redis, changes)
    logger.info("Deleted order %s", agg.order_number)


async def import_description(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
) -> OrderAggregate:
    """
    Migrate a legacy order: decode its description into item rows.
    Only orders without item rows can be imported.
    """
    agg = await load_order(session, order_id)
    if agg.items:
        raise PreconditionFailed(f"Order {agg.order_number} already has item rows")

    lines, issues = codec.decode_with_issues(agg.description)
    if issues:
        logger.warning(
            "Order %s: %d progress line(s) recovered during import",
            agg.order_number, len(issues),
        )
    now = datetime.now(timezone.utc)
    agg.items = [
        OrderItemState(
            id=str(uuid4()),
            order_id=agg.id,
            name=line.name,
            quantity=line.quantity,
            delivered=line.delivered,
            stock_status=line.stock_status,
            progress_stage=(
                ProgressStage.COMPLETED if line.completed else ProgressStage.AWAITING_STOCK
            ),
            completed_at=now if line.completed else None,
            created_at=now,
            updated_at=now,
        )
        for line in lines
    ]
    item_records = [item_snapshot(item) for item in agg.items]
    if item_records:
        await session.execute(insert(order_items), item_records)
    await session.commit()

    await publish_changes(
        redis, [_change("order_items", "INSERT", record) for record in item_records]
    )
    logger.info("Imported %d item(s) for order %s", len(agg.items), agg.order_number)
    return agg


# ── Item commands ────────────────────────────────

async def advance_item_stage(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    stage: str,
    admin_override: bool = False,
) -> OrderAggregate:
    agg = await load_order_for_item(session, item_id)
    tracked = Tracked(agg)
    agg.advance_item_stage(item_id, stage, admin_override=admin_override)
    return await _commit(session, redis, agg, tracked)


async def record_delivery(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    delivered: int,
) -> OrderAggregate:
    agg = await load_order_for_item(session, item_id)
    tracked = Tracked(agg)
    agg.record_delivery(item_id, delivered)
    return await _commit(session, redis, agg, tracked)


async def set_stock_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    stock_status: str,
) -> OrderAggregate:
    agg = await load_order_for_item(session, item_id)
    tracked = Tracked(agg)
    agg.set_stock_status(item_id, stock_status)
    return await _commit(session, redis, agg, tracked)


async def update_item_quantity(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    item_id: str,
    quantity: int,
) -> OrderAggregate:
    """Change an item quantity and re-render the order description in one transaction."""
    agg = await load_order_for_item(session, item_id)
    tracked = Tracked(agg)
    agg.update_item_quantity(item_id, quantity)
    return await _commit(session, redis, agg, tracked)


# ── Purchase-order links ─────────────────────────

async def link_purchase_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    purchase_order_number: str,
    supplier_id: str | None = None,
    notes: str | None = None,
) -> dict:
    await load_order(session, order_id)
    record = {
        "id": str(uuid4()),
        "order_id": order_id,
        "purchase_order_number": purchase_order_number,
        "supplier_id": supplier_id,
        "notes": notes,
        "created_at": datetime.now(timezone.utc),
    }
    await session.execute(insert(order_purchase_orders).values(**record))
    await session.commit()
    await publish_changes(redis, [_change("order_purchase_orders", "INSERT", record)])
    return record


async def unlink_purchase_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    purchase_order_id: str,
) -> None:
    result = await session.execute(
        select(order_purchase_orders).where(order_purchase_orders.c.id == purchase_order_id)
    )
    row = result.mappings().first()
    if row is None:
        raise PurchaseOrderLinkNotFound(purchase_order_id)
    await session.execute(
        delete(order_purchase_orders).where(order_purchase_orders.c.id == purchase_order_id)
    )
    await session.commit()
    await publish_changes(redis, [_change("order_purchase_orders", "DELETE", None, dict(row))])


# ── Companies ────────────────────────────────────

def _address(address: Any) -> str | None:
    if not isinstance(address, dict):
        return None
    parts = [address.get(key) for key in ("address", "street2", "city", "state", "zip", "country")]
    return ", ".join(str(part) for part in parts if part) or None


def _contact_person(customer: dict) -> str | None:
    contacts = customer.get("contact_person_details")
    if not isinstance(contacts, list) or not contacts or not isinstance(contacts[0], dict):
        return None
    first = contacts[0].get("first_name")
    if not first:
        return None
    return f"{first} {contacts[0].get('last_name') or ''}".strip()


async def match_or_create_company(session: AsyncSession, customer: dict) -> str | None:
    """
    Company id for an ERP customer: matched by name, then by email (both
    case-insensitive), otherwise created. Returns None when the customer has
    no name. The caller commits.
    """
    name = customer.get("customer_name")
    if not isinstance(name, str) or not name.strip():
        return None
    name = name.strip()
    email = customer.get("email") if isinstance(customer.get("email"), str) else None

    result = await session.execute(
        select(companies.c.id).where(func.lower(companies.c.name) == name.lower()).limit(1)
    )
    company_id = result.scalar_one_or_none()
    if company_id is None and email:
        result = await session.execute(
            select(companies.c.id)
            .where(func.lower(companies.c.email) == email.strip().lower())
            .limit(1)
        )
        company_id = result.scalar_one_or_none()
    if company_id is not None:
        return company_id

    customer_id = customer.get("customer_id")
    suffix = str(customer_id) if customer_id else name[:10].upper().replace(" ", "")
    phone = customer.get("phone") or customer.get("mobile")
    company_id = str(uuid4())
    await session.execute(insert(companies).values(
        id=company_id,
        code=f"ZOHO-{suffix}",
        name=name,
        email=email,
        phone=str(phone) if phone else None,
        contact_person=_contact_person(customer),
        address=_address(customer.get("billing_address")),
        created_at=datetime.now(timezone.utc),
    ))
    logger.info("Created company %s for ERP customer %s", company_id, name)
    return company_id
