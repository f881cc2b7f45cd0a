"""
Progress Sync — query handlers (CQRS read side)

Orders are read together with their items and rebuilt into the aggregate, so
every view gets its percentages from the state machine instead of a stored
column.
"""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate, OrderItemState
from .schema import order_items, order_purchase_orders, orders, sync_log


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ── Aggregate loading ────────────────────────────

async def load_aggregate(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.mappings().first()
    if not row:
        return None
    items = await session.execute(
        select(order_items)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.created_at, order_items.c.id)
    )
    return OrderAggregate.from_rows(row, list(items.mappings().all()))


async def load_aggregate_for_item(
    session: AsyncSession, item_id: str
) -> OrderAggregate | None:
    result = await session.execute(
        select(order_items.c.order_id).where(order_items.c.id == item_id)
    )
    order_id = result.scalar_one_or_none()
    if order_id is None:
        return None
    return await load_aggregate(session, order_id)


async def load_aggregates(
    session: AsyncSession,
    statuses: Iterable[str] | None = None,
    newest_completed_first: bool = False,
) -> list[OrderAggregate]:
    """Load orders (optionally filtered by status) with all of their items."""
    stmt = select(orders)
    if statuses is not None:
        stmt = stmt.where(orders.c.status.in_(list(statuses)))
    if newest_completed_first:
        stmt = stmt.order_by(orders.c.completed_date.desc(), orders.c.created_at.desc())
    else:
        stmt = stmt.order_by(orders.c.created_at.desc())
    order_rows = list((await session.execute(stmt)).mappings().all())
    if not order_rows:
        return []

    ids = [row["id"] for row in order_rows]
    item_rows = (
        await session.execute(
            select(order_items)
            .where(order_items.c.order_id.in_(ids))
            .order_by(order_items.c.created_at, order_items.c.id)
        )
    ).mappings().all()
    by_order: dict[str, list] = {order_id: [] for order_id in ids}
    for item in item_rows:
        by_order[item["order_id"]].append(item)
    return [OrderAggregate.from_rows(row, by_order[row["id"]]) for row in order_rows]


async def find_order_ids_by_reference(
    session: AsyncSession, candidates: Iterable[str]
) -> list[str]:
    candidates = [c for c in candidates if c]
    if not candidates:
        return []
    result = await session.execute(
        select(orders.c.id)
        .where(orders.c.reference.in_(candidates))
        .order_by(orders.c.created_at)
    )
    return list(result.scalars().all())


async def find_order_ids_by_number(
    session: AsyncSession, candidates: Iterable[str]
) -> list[str]:
    candidates = [c for c in candidates if c]
    if not candidates:
        return []
    result = await session.execute(
        select(orders.c.id)
        .where(orders.c.order_number.in_(candidates))
        .order_by(orders.c.created_at)
    )
    return list(result.scalars().all())


# ── Serialization ────────────────────────────────

def item_to_dict(item: OrderItemState) -> dict:
    return {
        "id": item.id,
        "order_id": item.order_id,
        "name": item.name,
        "code": item.code,
        "quantity": item.quantity,
        "delivered": item.delivered,
        "stock_status": item.stock_status.value,
        "progress_stage": item.progress_stage.value,
        "percentage": item.percentage,
        "completed": item.completed,
        "completed_at": _iso(item.completed_at),
        "updated_at": _iso(item.updated_at),
    }


def order_to_dict(agg: OrderAggregate) -> dict:
    return {
        "id": agg.id,
        "order_number": agg.order_number,
        "status": agg.status.value,
        "urgency": agg.urgency.value,
        "reference": agg.reference,
        "company_id": agg.company_id,
        "description": agg.description,
        "percentage": agg.percentage,
        "completed_date": _iso(agg.completed_date),
        "created_at": _iso(agg.created_at),
        "updated_at": _iso(agg.updated_at),
        "items": [item_to_dict(i) for i in agg.items],
    }


# ── Query handlers ───────────────────────────────

async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    agg = await load_aggregate(session, order_id)
    if agg is None:
        return None
    order = order_to_dict(agg)
    order["purchase_orders"] = await list_purchase_orders(session, order_id)
    return order


async def list_purchase_orders(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(order_purchase_orders)
        .where(order_purchase_orders.c.order_id == order_id)
        .order_by(order_purchase_orders.c.created_at)
    )
    return [
        {
            "id": row["id"],
            "purchase_order_number": row["purchase_order_number"],
            "supplier_id": row["supplier_id"],
            "notes": row["notes"],
            "created_at": _iso(row["created_at"]),
        }
        for row in result.mappings().all()
    ]


async def lifecycle_summary(session: AsyncSession) -> dict:
    """Order counts per status and item counts per stage (read-only, for reports)."""
    by_status = await session.execute(
        select(orders.c.status, func.count()).group_by(orders.c.status)
    )
    by_stage = await session.execute(
        select(order_items.c.progress_stage, func.count()).group_by(
            order_items.c.progress_stage
        )
    )
    statuses = {status: count for status, count in by_status.all()}
    stages = {stage: count for stage, count in by_stage.all()}
    return {
        "orders_by_status": statuses,
        "items_by_stage": stages,
        "total_orders": sum(statuses.values()),
        "awaiting_delivery": stages.get("ready-for-delivery", 0) + stages.get("delivery", 0),
    }


async def list_sync_log(session: AsyncSession, limit: int = 50) -> list[dict]:
    result = await session.execute(
        select(sync_log).order_by(sync_log.c.id.desc()).limit(limit)
    )
    return [
        {
            "id": row["id"],
            "sync_type": row["sync_type"],
            "status": row["status"],
            "items_synced": row["items_synced"],
            "error_message": row["error_message"],
            "completed_at": _iso(row["completed_at"]),
        }
        for row in result.mappings().all()
    ]
