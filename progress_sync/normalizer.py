"""
Progress Sync — change event normalizer

Turns a raw row-change notification into a ChangeEvent. Accepted shapes:

    {"table": "orders", "type": "UPDATE", "record": {...}, "old_record": {...}}
    {"table": "orders", "eventType": "UPDATE", "new": {...}, "old": {...}}

An update that changes the status field (orders.status,
order_items.progress_stage) becomes STATUS_CHANGED so consumers can treat it
apart from plain field edits.

Never raises: payloads that cannot be normalized are dropped with a warning.
"""

import logging
from typing import Any

from .events import TABLE_ENTITIES, ChangeEvent, ChangeKind, EntityType, Operation

logger = logging.getLogger(__name__)

STATUS_FIELDS = {
    EntityType.ORDER: "status",
    EntityType.ITEM: "progress_stage",
}

_OPERATION_KEYS = ("type", "eventType", "event_type", "operation")
_AFTER_KEYS = ("record", "new")
_BEFORE_KEYS = ("old_record", "old")


def _first(payload: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value:
            return value
    return None


def _snapshot(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) and value else None


def _identifier(value: Any) -> str | None:
    # row ids are scalars; nested objects are not usable as keys
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) or None


def normalize(payload: Any) -> ChangeEvent | None:
    """Build a ChangeEvent from a raw notification, or None when it must be dropped."""
    if not isinstance(payload, dict):
        logger.warning("Dropping non-object change payload: %r", payload)
        return None

    table = payload.get("table")
    entity_type = TABLE_ENTITIES.get(table) if isinstance(table, str) else None
    if entity_type is None:
        logger.warning("Dropping change for unknown table: %r", table)
        return None

    raw_operation = _first(payload, _OPERATION_KEYS)
    try:
        operation = Operation(str(raw_operation).lower())
    except ValueError:
        logger.warning("Dropping %s change with unknown operation: %r", table, raw_operation)
        return None

    after = _snapshot(_first(payload, _AFTER_KEYS))
    before = _snapshot(_first(payload, _BEFORE_KEYS))
    if operation == Operation.DELETE:
        # a delete carries no new row; some senders put the old row in "record"
        before = before or after
        after = None

    entity_id = _identifier((after or {}).get("id") or (before or {}).get("id"))
    if not entity_id:
        logger.warning("Dropping %s %s change without an entity id", table, operation.value)
        return None

    record = after or before or {}
    if entity_type == EntityType.ORDER:
        order_id = entity_id
    else:
        order_id = _identifier(record.get("order_id") or (before or {}).get("order_id"))

    return ChangeEvent(
        table=table,
        entity_type=entity_type,
        operation=operation,
        kind=_classify(entity_type, operation, before, after),
        entity_id=str(entity_id),
        order_id=order_id,
        before=before,
        after=after,
    )


def _classify(
    entity_type: EntityType,
    operation: Operation,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> ChangeKind:
    if operation == Operation.INSERT:
        return ChangeKind.INSERTED
    if operation == Operation.DELETE:
        return ChangeKind.DELETED

    field = STATUS_FIELDS.get(entity_type)
    # without both snapshots a status change cannot be told apart
    if field and before and after and field in before and field in after:
        if before[field] != after[field]:
            return ChangeKind.STATUS_CHANGED
    return ChangeKind.UPDATED


def describe(event: ChangeEvent) -> str:
    """Human-readable activity message for a change."""
    record = event.record
    if event.entity_type == EntityType.ORDER:
        label = f"Order {record.get('order_number') or event.entity_id}"
        if event.kind == ChangeKind.INSERTED:
            return f"{label} has been created."
        if event.kind == ChangeKind.DELETED:
            return f"{label} has been deleted."
        if event.kind == ChangeKind.STATUS_CHANGED:
            old = (event.before or {}).get("status") or "pending"
            return f"{label} status changed from {old} to {record.get('status')}."
        return f"{label} has been updated."

    if event.entity_type == EntityType.ITEM:
        label = f"Item {record.get('name') or event.entity_id}"
        if event.kind == ChangeKind.STATUS_CHANGED:
            return f"{label} moved to {record.get('progress_stage')}."
        return f"{label} {event.kind.value}."

    label = f"Purchase order {record.get('purchase_order_number') or event.entity_id}"
    return f"{label} {event.kind.value}."
