from progress_sync.events import ChangeKind, EntityType, Operation
from progress_sync.normalizer import describe, normalize


def order_row(**overrides):
    row = {"id": "o-1", "order_number": "SO-1", "status": "received"}
    row.update(overrides)
    return row


def test_status_change_is_distinct_from_plain_update():
    event = normalize({
        "table": "orders",
        "type": "UPDATE",
        "record": order_row(status="processing"),
        "old_record": order_row(),
    })

    assert event.kind == ChangeKind.STATUS_CHANGED
    assert event.operation == Operation.UPDATE
    assert event.order_id == "o-1"
    assert describe(event) == "Order SO-1 status changed from received to processing."


def test_field_edit_is_plain_update():
    event = normalize({
        "table": "orders",
        "type": "UPDATE",
        "record": order_row(description="Bolt (Qty: 2)"),
        "old_record": order_row(),
    })

    assert event.kind == ChangeKind.UPDATED


def test_update_without_old_snapshot_is_plain_update():
    event = normalize({"table": "orders", "type": "UPDATE", "record": order_row()})

    assert event.kind == ChangeKind.UPDATED
    assert event.before is None


def test_item_stage_change_uses_alternate_keys():
    event = normalize({
        "table": "order_items",
        "eventType": "update",
        "new": {"id": "i-1", "order_id": "o-1", "name": "Bolt", "progress_stage": "packing"},
        "old": {"id": "i-1", "order_id": "o-1", "name": "Bolt", "progress_stage": "in-stock"},
    })

    assert event.entity_type == EntityType.ITEM
    assert event.kind == ChangeKind.STATUS_CHANGED
    assert event.entity_id == "i-1"
    assert event.order_id == "o-1"
    assert describe(event) == "Item Bolt moved to packing."


def test_delete_takes_old_row():
    event = normalize({
        "table": "order_purchase_orders",
        "type": "DELETE",
        "record": None,
        "old_record": {"id": "po-1", "order_id": "o-1", "purchase_order_number": "PO-7"},
    })

    assert event.kind == ChangeKind.DELETED
    assert event.after is None
    assert event.order_id == "o-1"
    assert describe(event) == "Purchase order PO-7 deleted."


def test_delete_with_row_in_record():
    event = normalize({"table": "orders", "type": "DELETE", "record": order_row()})

    assert event.kind == ChangeKind.DELETED
    assert event.before["id"] == "o-1"
    assert describe(event) == "Order SO-1 has been deleted."


def test_insert():
    event = normalize({"table": "orders", "type": "INSERT", "record": order_row()})

    assert event.kind == ChangeKind.INSERTED
    assert describe(event) == "Order SO-1 has been created."


def test_malformed_payloads_are_dropped(caplog):
    assert normalize(None) is None
    assert normalize(["orders"]) is None
    assert normalize({"table": "invoices", "type": "INSERT", "record": {"id": "x"}}) is None
    assert normalize({"table": "orders", "type": "TRUNCATE", "record": order_row()}) is None
    assert normalize({"table": "orders", "type": "INSERT", "record": {"status": "pending"}}) is None
    assert normalize({"table": "orders", "type": "INSERT"}) is None
    assert "without an entity id" in caplog.text


def test_non_scalar_table_or_id_is_dropped(caplog):
    assert normalize({"table": ["orders"], "type": "INSERT", "record": order_row()}) is None
    assert normalize({"table": {"name": "orders"}, "type": "INSERT", "record": order_row()}) is None
    assert normalize({"table": "orders", "type": "INSERT", "record": order_row(id=["o-1"])}) is None
    assert normalize({"table": "orders", "type": "INSERT", "record": order_row(id={"v": 1})}) is None
    assert "unknown table" in caplog.text


def test_nested_order_id_on_item_is_ignored():
    event = normalize({
        "table": "order_items",
        "type": "INSERT",
        "record": {"id": "i-1", "order_id": {"id": "o-1"}, "name": "Bolt"},
    })

    assert event.entity_id == "i-1"
    assert event.order_id is None


def test_integer_ids_are_stringified():
    event = normalize({"table": "orders", "type": "INSERT", "record": order_row(id=42)})

    assert event.entity_id == "42"
    assert event.order_id == "42"
