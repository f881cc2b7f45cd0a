import asyncio

from progress_sync import commands, queries
from progress_sync.events import ExternalEvent
from progress_sync.reconciler import FAILED, NOTHING_TO_DO, UPDATED, Reconciler

from .conftest import make_order


def shipped(sku, quantity):
    return ExternalEvent(business_key=sku, quantity=quantity, source_document_id="INV-1")


async def packing_order(session_factory, redis, order_number="SO-1001", reference="SO-00042", items=None):
    agg = await make_order(session_factory, redis, order_number=order_number, reference=reference, items=items)
    for item in agg.items:
        async with session_factory() as session:
            await commands.advance_item_stage(session, redis, item.id, "packing")
    return agg


async def stage_of(session_factory, order_id, index=0):
    async with session_factory() as session:
        agg = await queries.load_aggregate(session, order_id)
    return agg.items[index].progress_stage.value


async def test_matching_event_advances_item(session_factory, redis):
    agg = await packing_order(session_factory, redis)
    reconciler = Reconciler(session_factory, redis)

    result = await reconciler.reconcile(["SO-00042"], [shipped("sku1", 5)])

    assert result.matched_by == "reference"
    assert result.items_updated == 1
    assert result.outcomes[0].status == UPDATED
    assert await stage_of(session_factory, agg.id) == "ready-for-delivery"


async def test_replayed_event_is_a_noop(session_factory, redis):
    agg = await packing_order(session_factory, redis)
    reconciler = Reconciler(session_factory, redis)
    await reconciler.reconcile(["SO-00042"], [shipped("SKU1", 5)])
    redis.clear()

    result = await reconciler.reconcile(["SO-00042"], [shipped("SKU1", 5)])

    assert result.items_updated == 0
    (outcome,) = result.outcomes
    assert outcome.status == NOTHING_TO_DO
    assert [s.reason for s in outcome.skipped] == ["already-advanced"]
    assert await stage_of(session_factory, agg.id) == "ready-for-delivery"
    assert redis.published == []


async def test_completed_item_is_never_regressed(session_factory, redis):
    agg = await packing_order(session_factory, redis)
    async with session_factory() as session:
        await commands.advance_item_stage(session, redis, agg.items[0].id, "completed")

    result = await Reconciler(session_factory, redis).reconcile(["SO-00042"], [shipped("SKU1", 5)])

    assert result.items_updated == 0
    assert await stage_of(session_factory, agg.id) == "completed"


async def test_quantity_mismatch_is_skipped(session_factory, redis, caplog):
    agg = await packing_order(session_factory, redis)

    result = await Reconciler(session_factory, redis).reconcile(["SO-00042"], [shipped("SKU1", 3)])

    assert result.warning is None
    assert result.items_updated == 0
    (skip,) = result.outcomes[0].skipped
    assert skip.reason == "quantity-mismatch"
    assert "item has 5, event has 3" in skip.detail
    assert await stage_of(session_factory, agg.id) == "packing"
    assert "Quantity mismatch for SKU1" in caplog.text


async def test_no_matching_order_is_a_warning(session_factory, redis):
    await packing_order(session_factory, redis)

    result = await Reconciler(session_factory, redis).reconcile(["SO-99999"], [shipped("SKU1", 5)])

    assert result.outcomes == []
    assert "SO-99999" in result.warning


async def test_falls_back_to_order_number(session_factory, redis):
    agg = await packing_order(session_factory, redis, reference=None)

    result = await Reconciler(session_factory, redis).reconcile(["SO-1001"], [shipped("SKU1", 5)])

    assert result.matched_by == "order_number"
    assert await stage_of(session_factory, agg.id) == "ready-for-delivery"


async def test_unknown_sku_is_reported(session_factory, redis):
    await packing_order(session_factory, redis)

    result = await Reconciler(session_factory, redis).reconcile(["SO-00042"], [shipped("SKU404", 5)])

    assert result.outcomes[0].unmatched_skus == ["SKU404"]
    assert result.outcomes[0].status == NOTHING_TO_DO


async def test_one_event_advances_every_identical_item(session_factory, redis):
    agg = await packing_order(session_factory, redis, items=[
        {"name": "Bolt", "code": "SKU1", "quantity": 5},
        {"name": "Bolt (spare)", "code": "SKU1", "quantity": 5},
    ])
    reconciler = Reconciler(session_factory, redis)

    first = await reconciler.reconcile(["SO-00042"], [shipped("SKU1", 5)])
    redis.clear()
    replay = await reconciler.reconcile(["SO-00042"], [shipped("SKU1", 5)])

    assert first.items_updated == 2
    assert replay.items_updated == 0
    assert [s.reason for s in replay.outcomes[0].skipped] == ["already-advanced"] * 2
    assert redis.published == []
    assert await stage_of(session_factory, agg.id, 0) == "ready-for-delivery"
    assert await stage_of(session_factory, agg.id, 1) == "ready-for-delivery"


async def test_every_matched_order_gets_an_outcome(session_factory, redis):
    await packing_order(session_factory, redis, order_number="SO-1", reference="SO-00042")
    await packing_order(session_factory, redis, order_number="SO-2", reference="SO-00042", items=[
        {"name": "Nut", "code": "SKU2", "quantity": 1},
    ])

    result = await Reconciler(session_factory, redis).reconcile(
        ["SO-00042"], [shipped("SKU1", 5), shipped("SKU2", 1)]
    )

    assert sorted(o.order_number for o in result.outcomes) == ["SO-1", "SO-2"]
    assert all(o.status == UPDATED for o in result.outcomes)
    assert result.items_updated == 2


async def test_slow_order_times_out_without_blocking_others(session_factory, redis, monkeypatch):
    slow = await packing_order(session_factory, redis, order_number="SO-1", reference="SO-00042")
    await packing_order(session_factory, redis, order_number="SO-2", reference="SO-00042")
    reconciler = Reconciler(session_factory, redis, timeout=0.2)
    real_apply = reconciler._apply

    async def apply(order_id, events):
        if order_id == slow.id:
            await asyncio.sleep(1)
        return await real_apply(order_id, events)

    monkeypatch.setattr(reconciler, "_apply", apply)

    result = await reconciler.reconcile(["SO-00042"], [shipped("SKU1", 5)])

    statuses = {o.order_id: o.status for o in result.outcomes}
    assert statuses[slow.id] == FAILED
    assert sorted(statuses.values()) == [FAILED, UPDATED]


async def test_duplicate_invoice_lines_do_not_double_count(session_factory, redis):
    await packing_order(session_factory, redis, items=[
        {"name": "Bolt", "code": "SKU1", "quantity": 5},
        {"name": "Bolt (spare)", "code": "SKU1", "quantity": 5},
        {"name": "Bolt (short)", "code": "SKU1", "quantity": 2},
    ])

    result = await Reconciler(session_factory, redis).reconcile(
        ["SO-00042"], [shipped("SKU1", 5), shipped("SKU1", 5)]
    )

    assert result.items_updated == 2
    reasons = sorted(s.reason for s in result.outcomes[0].skipped)
    assert reasons == ["already-advanced", "already-advanced", "quantity-mismatch", "quantity-mismatch"]
