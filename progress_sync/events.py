"""
Progress Sync — event definitions

ChangeEvent: canonical description of one row change, produced by the
normalizer and broadcast by the dispatcher. It lives only inside the
dispatch pipeline and is never persisted.

ExternalEvent: one ERP line (SKU + quantity) to reconcile against order
items. Never stored verbatim.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel


class EntityType(str, Enum):
    ORDER = "order"
    ITEM = "item"
    PURCHASE_ORDER = "purchase_order"


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeKind(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    DELETED = "deleted"


TABLE_ENTITIES = {
    "orders": EntityType.ORDER,
    "order_items": EntityType.ITEM,
    "order_purchase_orders": EntityType.PURCHASE_ORDER,
}


class ChangeEvent(BaseModel):
    """A row of orders / order_items / order_purchase_orders changed."""
    table: str
    entity_type: EntityType
    operation: Operation
    kind: ChangeKind
    entity_id: str
    order_id: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    @property
    def record(self) -> dict[str, Any]:
        """The most recent snapshot available for the row."""
        return self.after or self.before or {}


class ExternalEvent(BaseModel):
    """An ERP document line shipped for a SKU."""
    business_key: str
    quantity: int
    source_document_id: str | None = None
