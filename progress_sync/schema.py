"""
Progress Sync — table definitions

order_items carries typed progress columns and is the system of record;
orders.description is only a rendered copy for legacy consumers.
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(64), nullable=False, unique=True),
    Column("status", String(32), nullable=False, default="pending"),
    Column("urgency", String(16), nullable=False, default="normal"),
    Column("description", Text),
    Column("reference", String(128), index=True),
    Column("company_id", String(36)),
    Column("completed_date", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("name", String(255), nullable=False),
    Column("code", String(64), index=True),
    Column("quantity", Integer, nullable=False),
    Column("delivered", Integer, nullable=False, default=0),
    Column("stock_status", String(16), nullable=False, default="awaiting"),
    Column("progress_stage", String(32), nullable=False, default="awaiting-stock"),
    Column("completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_purchase_orders = Table(
    "order_purchase_orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("purchase_order_number", String(64), nullable=False),
    Column("supplier_id", String(36)),
    Column("notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

companies = Table(
    "companies",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("code", String(64), nullable=False),
    Column("name", String(255), nullable=False, index=True),
    Column("email", String(255)),
    Column("phone", String(64)),
    Column("contact_person", String(255)),
    Column("address", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

sync_log = Table(
    "sync_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sync_type", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("items_synced", Integer, nullable=False, default=0),
    Column("error_message", Text),
    Column("completed_at", DateTime(timezone=True), nullable=False),
)


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
