"""
Progress Sync — order view projections

Each page of the admin UI is a view over the same orders: Orders, Progress,
Processing, Completed, Files, Delivery Notes and the item board. A view keeps
its order list in memory, keyed by order id, and registers one refresh
callback with the dispatcher. On refresh it re-reads its orders through the
aggregate, so percentages are always derived from the item stages.

┌──────────────┐  ChangeEvent  ┌────────────┐  debounced  ┌──────────────┐
│  Subscriber  │ ────────────▶ │ Dispatcher │ ──────────▶ │ OrderView ×7 │
└──────────────┘               └────────────┘             └──────┬───────┘
                                                                 │ re-query
                                                          ┌──────▼───────┐
                                                          │   orders DB  │
                                                          └──────────────┘
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import queries
from .dispatcher import ChangeDispatcher
from .errors import TransientIOFailure
from .events import ChangeEvent, ChangeKind, EntityType
from .normalizer import describe

logger = logging.getLogger(__name__)

ALL_TABLES = ("orders", "order_items", "order_purchase_orders")


class OrderView:
    """One denormalized order list."""

    def __init__(
        self,
        name: str,
        statuses: tuple[str, ...] | None,
        tables: tuple[str, ...] = ALL_TABLES,
        newest_completed_first: bool = False,
    ) -> None:
        self.name = name
        self.statuses = statuses
        self.tables = tables
        self.newest_completed_first = newest_completed_first
        self.orders: dict[str, dict] = {}
        self.refreshed_at: datetime | None = None
        self.refresh_count = 0

    def evict(self, order_id: str) -> bool:
        return self.orders.pop(order_id, None) is not None


def default_views() -> list[OrderView]:
    return [
        OrderView("orders", ("pending", "received", "in-progress", "processing")),
        OrderView("progress", ("received", "in-progress")),
        OrderView("processing", ("processing",)),
        OrderView("completed", ("completed",), newest_completed_first=True),
        OrderView("delivery-notes", ("completed",), newest_completed_first=True),
        OrderView("files", None, tables=("orders",)),
        OrderView(
            "item-board",
            ("received", "in-progress", "processing"),
            tables=("orders", "order_items"),
        ),
    ]


class ViewRegistry:
    """Owns the views and binds their refreshes to the dispatcher."""

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: ChangeDispatcher,
        views: list[OrderView] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.views = {view.name: view for view in (views or default_views())}
        self._background: set[asyncio.Task] = set()

    def start(self) -> None:
        for view in self.views.values():
            self.dispatcher.register(view.name, self._refresher(view), tables=view.tables)

    def stop(self) -> None:
        for name in self.views:
            self.dispatcher.unregister(name)

    def _refresher(self, view: OrderView):
        async def refresh(events: list[ChangeEvent]) -> None:
            for event in events:
                if event.entity_type == EntityType.ORDER and event.kind == ChangeKind.DELETED:
                    view.evict(event.entity_id)
            await self.refresh(view.name)

        return refresh

    async def refresh(self, name: str) -> list[dict]:
        """Re-read a view from the store and replace its cached orders."""
        view = self.views[name]
        try:
            async with self.session_factory() as session:
                aggregates = await queries.load_aggregates(
                    session,
                    statuses=view.statuses,
                    newest_completed_first=view.newest_completed_first,
                )
        except (SQLAlchemyError, OSError) as e:
            raise TransientIOFailure(f"Refreshing view {name} failed: {e}") from e

        view.orders = {agg.id: queries.order_to_dict(agg) for agg in aggregates}
        view.refreshed_at = datetime.now(timezone.utc)
        view.refresh_count += 1
        logger.info("View %s refreshed: %d order(s)", name, len(view.orders))
        return list(view.orders.values())

    async def get(self, name: str) -> list[dict]:
        """Cached order list of a view, loading it on first access."""
        view = self.views[name]
        if view.refreshed_at is None:
            return await self.refresh(name)
        return list(view.orders.values())

    def evict(self, order_id: str) -> None:
        """Drop every cached entry of a deleted order."""
        for view in self.views.values():
            view.evict(order_id)

    async def refresh_all(self) -> None:
        for name in self.views:
            try:
                await self.refresh(name)
            except TransientIOFailure as e:
                logger.warning("%s", e)

    def schedule_full_refresh(self) -> None:
        """Refresh every view in the background, e.g. after a realtime reconnect."""
        task = asyncio.get_running_loop().create_task(self.refresh_all())
        self._background.add(task)
        task.add_done_callback(self._background.discard)


class ActivityFeed:
    """
    Recent change messages for the admin activity sidebar.

    Status changes are announced at info level, plain edits only at debug
    level.
    """

    def __init__(self, dispatcher: ChangeDispatcher, size: int = 100) -> None:
        self.dispatcher = dispatcher
        self.entries: deque[dict] = deque(maxlen=size)

    def start(self) -> None:
        self.dispatcher.register("activity", self.record)

    def stop(self) -> None:
        self.dispatcher.unregister("activity")

    async def record(self, events: list[ChangeEvent]) -> None:
        for event in events:
            message = describe(event)
            if event.kind == ChangeKind.UPDATED:
                logger.debug("%s", message)
            else:
                logger.info("%s", message)
            self.entries.appendleft(
                {
                    "message": message,
                    "kind": event.kind.value,
                    "entity_type": event.entity_type.value,
                    "order_id": event.order_id,
                    "at": datetime.now(timezone.utc).isoformat(),
                }
            )
