import pytest
from sqlalchemy import select

from progress_sync import commands, config, queries
from progress_sync.errors import (
    ItemNotFound,
    OrderNotFound,
    PreconditionFailed,
    PurchaseOrderLinkNotFound,
)
from progress_sync.schema import order_items, orders

from .conftest import make_order


async def load(session_factory, order_id):
    async with session_factory() as session:
        return await queries.load_aggregate(session, order_id)


async def test_create_order_starts_pending(session_factory, redis):
    agg = await make_order(session_factory, redis, reference="SO-00042")

    stored = await load(session_factory, agg.id)
    assert stored.status.value == "pending"
    assert stored.reference == "SO-00042"
    assert [i.progress_stage.value for i in stored.items] == ["awaiting-stock"]
    assert stored.description == "Bolt M8 (Qty: 5) [Stock: awaiting]"

    published = redis.changes()
    assert [(c["table"], c["type"]) for c in published] == [
        ("orders", "INSERT"),
        ("order_items", "INSERT"),
    ]
    assert all(channel == config.CHANGES_CHANNEL for channel, _ in redis.published)


async def test_create_order_rejects_duplicate_number(session_factory, redis):
    await make_order(session_factory, redis)

    with pytest.raises(PreconditionFailed):
        await make_order(session_factory, redis)


async def test_create_order_rejects_non_positive_quantity(session_factory, redis):
    with pytest.raises(PreconditionFailed):
        await make_order(session_factory, redis, items=[{"name": "Bolt", "quantity": 0}])


async def test_stage_change_publishes_before_and_after(session_factory, redis):
    agg = await make_order(session_factory, redis)
    item_id = agg.items[0].id
    redis.clear()

    async with session_factory() as session:
        await commands.advance_item_stage(session, redis, item_id, "packing")

    (item_change,) = redis.changes("order_items")
    assert item_change["type"] == "UPDATE"
    assert item_change["old_record"]["progress_stage"] == "awaiting-stock"
    assert item_change["record"]["progress_stage"] == "packing"


async def test_completing_every_item_moves_order_to_processing(session_factory, redis):
    agg = await make_order(session_factory, redis, items=[
        {"name": "Bolt", "code": "B1", "quantity": 2},
        {"name": "Nut", "code": "N1", "quantity": 2},
    ])
    first, second = (i.id for i in agg.items)

    async with session_factory() as session:
        await commands.advance_item_stage(session, redis, first, "completed")
    assert (await load(session_factory, agg.id)).status.value == "pending"

    async with session_factory() as session:
        await commands.advance_item_stage(session, redis, second, "completed")
    stored = await load(session_factory, agg.id)
    assert stored.status.value == "processing"
    assert stored.percentage == 100


async def test_complete_order_requires_delivered_items(session_factory, redis):
    agg = await make_order(session_factory, redis)
    item_id = agg.items[0].id
    async with session_factory() as session:
        await commands.advance_item_stage(session, redis, item_id, "completed")

    async with session_factory() as session:
        with pytest.raises(PreconditionFailed):
            await commands.complete_order(session, redis, agg.id)
    assert (await load(session_factory, agg.id)).status.value == "processing"

    async with session_factory() as session:
        await commands.record_delivery(session, redis, item_id, 5)
    async with session_factory() as session:
        await commands.complete_order(session, redis, agg.id)

    stored = await load(session_factory, agg.id)
    assert stored.status.value == "completed"
    assert stored.completed_date is not None
    assert "[Status: completed]" in stored.description


async def test_rejected_transition_writes_nothing(session_factory, redis):
    agg = await make_order(session_factory, redis)
    item_id = agg.items[0].id
    async with session_factory() as session:
        await commands.advance_item_stage(session, redis, item_id, "packing")
    redis.clear()

    async with session_factory() as session:
        with pytest.raises(PreconditionFailed):
            await commands.advance_item_stage(session, redis, item_id, "in-stock")
        with pytest.raises(PreconditionFailed):
            await commands.record_delivery(session, redis, item_id, 6)

    stored = await load(session_factory, agg.id)
    assert stored.items[0].progress_stage.value == "packing"
    assert stored.items[0].delivered == 0
    assert redis.published == []


async def test_quantity_update_rerenders_description(session_factory, redis):
    agg = await make_order(session_factory, redis)
    redis.clear()

    async with session_factory() as session:
        await commands.update_item_quantity(session, redis, agg.items[0].id, 8)

    stored = await load(session_factory, agg.id)
    assert stored.items[0].quantity == 8
    assert stored.description == "Bolt M8 (Qty: 8) [Stock: awaiting]"
    assert [c["table"] for c in redis.changes()] == ["order_items", "orders"]


async def test_stock_status(session_factory, redis):
    agg = await make_order(session_factory, redis)

    async with session_factory() as session:
        await commands.set_stock_status(session, redis, agg.items[0].id, "ordered")

    stored = await load(session_factory, agg.id)
    assert stored.items[0].stock_status.value == "ordered"
    assert "[Stock: ordered]" in stored.description


async def test_set_order_status(session_factory, redis):
    agg = await make_order(session_factory, redis)

    async with session_factory() as session:
        await commands.set_order_status(session, redis, agg.id, "received")
    async with session_factory() as session:
        with pytest.raises(PreconditionFailed):
            await commands.set_order_status(session, redis, agg.id, "pending")
    async with session_factory() as session:
        await commands.set_order_status(session, redis, agg.id, "pending", admin_override=True)

    assert (await load(session_factory, agg.id)).status.value == "pending"


async def test_delete_order_cascades(session_factory, redis):
    agg = await make_order(session_factory, redis)
    async with session_factory() as session:
        await commands.link_purchase_order(session, redis, agg.id, "PO-1")
    redis.clear()

    async with session_factory() as session:
        await commands.delete_order(session, redis, agg.id)

    async with session_factory() as session:
        remaining = await session.execute(
            select(order_items).where(order_items.c.order_id == agg.id)
        )
        assert remaining.first() is None
        assert await queries.list_purchase_orders(session, agg.id) == []
    assert await load(session_factory, agg.id) is None
    assert [(c["table"], c["type"]) for c in redis.changes()] == [
        ("order_items", "DELETE"),
        ("order_purchase_orders", "DELETE"),
        ("orders", "DELETE"),
    ]


async def test_unknown_ids(session_factory, redis):
    async with session_factory() as session:
        with pytest.raises(OrderNotFound):
            await commands.complete_order(session, redis, "missing")
        with pytest.raises(ItemNotFound):
            await commands.advance_item_stage(session, redis, "missing", "packing")
        with pytest.raises(PurchaseOrderLinkNotFound):
            await commands.unlink_purchase_order(session, redis, "missing")


async def test_purchase_order_links(session_factory, redis):
    agg = await make_order(session_factory, redis)

    async with session_factory() as session:
        link = await commands.link_purchase_order(session, redis, agg.id, "PO-77", notes="rush")
    async with session_factory() as session:
        assert [p["purchase_order_number"] for p in await queries.list_purchase_orders(session, agg.id)] == ["PO-77"]
        await commands.unlink_purchase_order(session, redis, link["id"])
        assert await queries.list_purchase_orders(session, agg.id) == []


async def test_import_legacy_description(session_factory, redis):
    agg = await make_order(session_factory, redis, order_number="LEGACY-1", items=[])
    async with session_factory() as session:
        await session.execute(
            orders.update().where(orders.c.id == agg.id).values(
                description=(
                    "Bolt (Qty: 10) [Delivered: 4] [Stock: ordered]\n"
                    "Washer (Qty: 2) [Delivered: 2] [Stock: in-stock] [Status: completed]\n"
                    "call customer before shipping"
                )
            )
        )
        await session.commit()

    async with session_factory() as session:
        await commands.import_description(session, redis, agg.id)

    stored = await load(session_factory, agg.id)
    by_name = {i.name: i for i in stored.items}
    assert by_name["Bolt"].delivered == 4
    assert by_name["Bolt"].stock_status.value == "ordered"
    assert by_name["Washer"].completed
    assert by_name["call customer before shipping"].quantity == 1

    async with session_factory() as session:
        with pytest.raises(PreconditionFailed):
            await commands.import_description(session, redis, agg.id)


async def test_publish_failure_does_not_undo_commit(session_factory, caplog):
    from redis.exceptions import ConnectionError as RedisConnectionError

    class DownRedis:
        async def publish(self, channel, message):
            raise RedisConnectionError("redis down")

    agg = await make_order(session_factory, DownRedis())

    assert await load(session_factory, agg.id) is not None
    assert "Failed to publish" in caplog.text


async def test_stock_arrival_advances_item_stage(session_factory, redis):
    agg = await make_order(session_factory, redis)
    redis.clear()

    async with session_factory() as session:
        await commands.set_stock_status(session, redis, agg.items[0].id, "in-stock")

    stored = await load(session_factory, agg.id)
    assert stored.items[0].stock_status.value == "in-stock"
    assert stored.items[0].progress_stage.value == "in-stock"
    (item_change,) = redis.changes("order_items")
    assert item_change["old_record"]["progress_stage"] == "awaiting-stock"
    assert item_change["record"]["progress_stage"] == "in-stock"
