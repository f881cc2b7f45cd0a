"""
Progress Sync — order lifecycle state machine

The order aggregate is rebuilt from its row and item rows, mutated through
the transition methods below, then written back by the command handlers.
Every transition validates first and mutates afterwards, so a rejected
transition leaves the aggregate untouched.

Order status:
    pending → received → in-progress → processing → completed (terminal)

Item progress stage:
    awaiting-stock → in-stock → packing → delivery / ready-for-delivery → completed

When every item reaches "completed" the order moves to "processing", not
"completed": an admin confirms delivery before the order itself completes.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from . import codec
from .errors import ItemNotFound, PreconditionFailed


class OrderStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    IN_PROGRESS = "in-progress"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ProgressStage(str, Enum):
    AWAITING_STOCK = "awaiting-stock"
    IN_STOCK = "in-stock"
    PACKING = "packing"
    DELIVERY = "delivery"
    READY_FOR_DELIVERY = "ready-for-delivery"
    COMPLETED = "completed"


class StockStatus(str, Enum):
    AWAITING = "awaiting"
    ORDERED = "ordered"
    IN_STOCK = "in-stock"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


ORDER_STATUS_RANK = {status: rank for rank, status in enumerate(OrderStatus)}

# delivery and ready-for-delivery are the same lifecycle position
STAGE_RANK = {
    ProgressStage.AWAITING_STOCK: 0,
    ProgressStage.IN_STOCK: 1,
    ProgressStage.PACKING: 2,
    ProgressStage.DELIVERY: 3,
    ProgressStage.READY_FOR_DELIVERY: 3,
    ProgressStage.COMPLETED: 4,
}

STAGE_PERCENTAGE = {
    ProgressStage.AWAITING_STOCK: 25,
    ProgressStage.IN_STOCK: 50,
    ProgressStage.PACKING: 50,
    ProgressStage.DELIVERY: 75,
    ProgressStage.READY_FOR_DELIVERY: 75,
    ProgressStage.COMPLETED: 100,
}


def stage_percentage(stage: ProgressStage | str) -> int:
    """Display percentage for a stage. Derived on every read, never stored."""
    return STAGE_PERCENTAGE[ProgressStage(stage)]


def is_forward(current: ProgressStage, target: ProgressStage) -> bool:
    return STAGE_RANK[target] > STAGE_RANK[current]


def is_at_or_past(current: ProgressStage, target: ProgressStage) -> bool:
    return STAGE_RANK[current] >= STAGE_RANK[target]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderItemState:
    """One order line with its own stock and progress tracking."""

    def __init__(
        self,
        id: str,
        order_id: str,
        name: str,
        quantity: int,
        code: str | None = None,
        delivered: int = 0,
        stock_status: StockStatus = StockStatus.AWAITING,
        progress_stage: ProgressStage = ProgressStage.AWAITING_STOCK,
        completed_at: datetime | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.order_id = order_id
        self.name = name
        self.code = code
        self.quantity = quantity
        self.delivered = delivered
        self.stock_status = StockStatus(stock_status)
        self.progress_stage = ProgressStage(progress_stage)
        self.completed_at = completed_at
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def completed(self) -> bool:
        return (
            self.delivered >= self.quantity
            and self.progress_stage == ProgressStage.COMPLETED
        )

    @property
    def percentage(self) -> int:
        return stage_percentage(self.progress_stage)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderItemState":
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            name=row["name"],
            code=row.get("code"),
            quantity=row["quantity"],
            delivered=row.get("delivered") or 0,
            stock_status=row.get("stock_status") or StockStatus.AWAITING,
            progress_stage=row.get("progress_stage") or ProgressStage.AWAITING_STOCK,
            completed_at=row.get("completed_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_progress_line(self) -> codec.ProgressLine:
        return codec.ProgressLine(
            name=self.name,
            quantity=self.quantity,
            delivered=self.delivered,
            stock_status=self.stock_status.value,
            completed=self.completed,
        )


class OrderAggregate:
    """An order and its items, with the lifecycle transitions."""

    def __init__(self) -> None:
        self.id: str | None = None
        self.order_number: str = ""
        self.status: OrderStatus = OrderStatus.PENDING
        self.urgency: Urgency = Urgency.NORMAL
        self.description: str | None = None
        self.reference: str | None = None
        self.company_id: str | None = None
        self.completed_date: datetime | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.items: list[OrderItemState] = []

    @classmethod
    def from_rows(
        cls,
        order_row: Mapping[str, Any],
        item_rows: list[Mapping[str, Any]],
    ) -> "OrderAggregate":
        agg = cls()
        agg.id = order_row["id"]
        agg.order_number = order_row["order_number"]
        agg.status = OrderStatus(order_row.get("status") or OrderStatus.PENDING)
        agg.urgency = Urgency(order_row.get("urgency") or Urgency.NORMAL)
        agg.description = order_row.get("description")
        agg.reference = order_row.get("reference")
        agg.company_id = order_row.get("company_id")
        agg.completed_date = order_row.get("completed_date")
        agg.created_at = order_row.get("created_at")
        agg.updated_at = order_row.get("updated_at")
        agg.items = [OrderItemState.from_row(row) for row in item_rows]
        return agg

    # ── Derived state ────────────────────────────────

    @property
    def percentage(self) -> int:
        """Mean of the item stage percentages, 0 for an order without items."""
        if not self.items:
            return 0
        return round(sum(i.percentage for i in self.items) / len(self.items))

    @property
    def all_items_at_completed_stage(self) -> bool:
        return bool(self.items) and all(
            i.progress_stage == ProgressStage.COMPLETED for i in self.items
        )

    @property
    def all_items_complete(self) -> bool:
        return bool(self.items) and all(i.completed for i in self.items)

    def item(self, item_id: str) -> OrderItemState:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ItemNotFound(item_id)

    def render_description(self) -> str:
        """Legacy free-text rendering of the items for the description column."""
        return codec.encode([i.to_progress_line() for i in self.items])

    # ── Item transitions ─────────────────────────────

    def advance_item_stage(
        self,
        item_id: str,
        target: ProgressStage | str,
        *,
        admin_override: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """
        Move an item to ``target``.

        Only forward moves are allowed unless ``admin_override`` is set.
        Returns False when the item is already at ``target``.
        """
        item = self.item(item_id)
        target = ProgressStage(target)
        if item.progress_stage == target:
            return False
        if not admin_override and not is_forward(item.progress_stage, target):
            raise PreconditionFailed(
                f"Item {item.name!r} cannot move from {item.progress_stage.value} "
                f"to {target.value}"
            )

        now = now or _utcnow()
        item.progress_stage = target
        item.updated_at = now
        if target == ProgressStage.COMPLETED:
            item.completed_at = now
        else:
            item.completed_at = None

        if (
            self.all_items_at_completed_stage
            and ORDER_STATUS_RANK[self.status] < ORDER_STATUS_RANK[OrderStatus.PROCESSING]
        ):
            self._move_status(OrderStatus.PROCESSING, now)
        return True

    def record_delivery(
        self, item_id: str, delivered: int, now: datetime | None = None
    ) -> None:
        item = self.item(item_id)
        if delivered < 0:
            raise PreconditionFailed("Delivered quantity cannot be negative")
        if delivered > item.quantity:
            raise PreconditionFailed(
                f"Delivered quantity {delivered} exceeds ordered quantity "
                f"{item.quantity} for {item.name!r}"
            )
        item.delivered = delivered
        item.updated_at = now or _utcnow()

    def update_item_quantity(
        self, item_id: str, quantity: int, now: datetime | None = None
    ) -> None:
        item = self.item(item_id)
        if quantity < 1:
            raise PreconditionFailed("Quantity must be a positive integer")
        if quantity < item.delivered:
            raise PreconditionFailed(
                f"Quantity {quantity} is below the {item.delivered} already delivered"
            )
        item.quantity = quantity
        item.updated_at = now or _utcnow()

    def set_stock_status(
        self, item_id: str, stock_status: StockStatus | str, now: datetime | None = None
    ) -> None:
        """
        Set the stock column. Stock arriving for an item still awaiting it
        moves the item to the in-stock stage as well.
        """
        item = self.item(item_id)
        stock_status = StockStatus(stock_status)
        received = stock_status == StockStatus.IN_STOCK and item.stock_status != StockStatus.IN_STOCK
        now = now or _utcnow()
        item.stock_status = stock_status
        item.updated_at = now
        if received and item.progress_stage == ProgressStage.AWAITING_STOCK:
            self.advance_item_stage(item_id, ProgressStage.IN_STOCK, now=now)

    # ── Order transitions ────────────────────────────

    def set_status(
        self,
        target: OrderStatus | str,
        *,
        admin_override: bool = False,
        now: datetime | None = None,
    ) -> bool:
        target = OrderStatus(target)
        if target == self.status:
            return False
        if not admin_override:
            if ORDER_STATUS_RANK[target] < ORDER_STATUS_RANK[self.status]:
                raise PreconditionFailed(
                    f"Order {self.order_number} cannot move back from "
                    f"{self.status.value} to {target.value}"
                )
            if target == OrderStatus.COMPLETED:
                self._check_completable()
        self._move_status(target, now or _utcnow())
        return True

    def complete(self, now: datetime | None = None) -> None:
        """Admin confirmation that every item has been delivered."""
        if self.status == OrderStatus.COMPLETED:
            raise PreconditionFailed(f"Order {self.order_number} is already completed")
        self._check_completable()
        self._move_status(OrderStatus.COMPLETED, now or _utcnow())

    def _check_completable(self) -> None:
        if not self.items:
            raise PreconditionFailed(f"Order {self.order_number} has no items")
        pending = [i.name for i in self.items if not i.completed]
        if pending:
            raise PreconditionFailed(
                f"Order {self.order_number} has incomplete items: {', '.join(pending)}"
            )

    def _move_status(self, target: OrderStatus, now: datetime) -> None:
        self.status = target
        self.updated_at = now
        # completed_date is set exactly while the order is completed
        self.completed_date = now if target == OrderStatus.COMPLETED else None
