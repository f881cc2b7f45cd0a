"""
Progress Sync — external event reconciler

Applies ERP document lines (e.g. "invoice shipped SKU X, qty N") to order
items by business key instead of primary key:

    1. resolve orders by reference (ERP sales-order number, invoice
       reference); fall back to the human-facing order number
    2. within each order, items whose code equals the SKU (case-insensitive)
    3. every item whose quantity equals the event quantity exactly and that
       is still below the target stage is advanced; mismatches and already
       advanced items are skipped and logged, never partially applied
    4. advance those items to the target stage (ready-for-delivery by default)

Replaying the same document is a no-op: everything it matched is already at
the target stage.

Every matched order is reconciled in its own transaction with a timeout, so
one failing order never blocks the others. The result lists an outcome per
order instead of a single pass/fail flag.
"""

import asyncio
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries
from .aggregate import OrderAggregate, ProgressStage, is_at_or_past
from .errors import NoMatch, QuantityMismatch
from .events import ExternalEvent

logger = logging.getLogger(__name__)

UPDATED = "updated"
NOTHING_TO_DO = "nothing-to-do"
FAILED = "failed"


class ItemSkip(BaseModel):
    item_id: str
    sku: str
    reason: str
    detail: str


class OrderOutcome(BaseModel):
    order_id: str
    order_number: str | None = None
    status: str = NOTHING_TO_DO
    items_updated: int = 0
    skipped: list[ItemSkip] = Field(default_factory=list)
    unmatched_skus: list[str] = Field(default_factory=list)
    error: str | None = None


class ReconcileResult(BaseModel):
    matched_by: str | None = None
    outcomes: list[OrderOutcome] = Field(default_factory=list)
    warning: str | None = None

    @property
    def items_updated(self) -> int:
        return sum(o.items_updated for o in self.outcomes)


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis | None,
        target_stage: str = config.RECONCILE_TARGET_STAGE,
        timeout: float = config.RECONCILE_TIMEOUT,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.target_stage = ProgressStage(target_stage)
        self.timeout = timeout

    async def reconcile(
        self,
        candidates: list[str],
        events: list[ExternalEvent],
    ) -> ReconcileResult:
        """Apply ``events`` to the orders identified by ``candidates``."""
        matched_by, order_ids = await asyncio.wait_for(
            self._resolve_orders(candidates), timeout=self.timeout
        )
        if not order_ids:
            no_match = NoMatch(f"No order matches references {candidates}")
            logger.warning("%s", no_match)
            return ReconcileResult(warning=str(no_match))

        result = ReconcileResult(matched_by=matched_by)
        for order_id in order_ids:
            result.outcomes.append(await self._reconcile_order(order_id, events))
        return result

    async def _resolve_orders(self, candidates: list[str]) -> tuple[str | None, list[str]]:
        async with self.session_factory() as session:
            order_ids = await queries.find_order_ids_by_reference(session, candidates)
            if order_ids:
                return "reference", order_ids
            order_ids = await queries.find_order_ids_by_number(session, candidates)
            if order_ids:
                return "order_number", order_ids
        return None, []

    async def _reconcile_order(
        self, order_id: str, events: list[ExternalEvent]
    ) -> OrderOutcome:
        try:
            outcome, changes = await asyncio.wait_for(
                self._apply(order_id, events), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Reconciling order %s timed out after %.1fs", order_id, self.timeout)
            return OrderOutcome(order_id=order_id, status=FAILED, error="timed out")
        except (SQLAlchemyError, OSError) as e:
            logger.exception("Reconciling order %s failed", order_id)
            return OrderOutcome(order_id=order_id, status=FAILED, error=str(e))

        await commands.publish_changes(self.redis, changes)
        if outcome.items_updated:
            logger.info(
                "Order %s: %d item(s) advanced to %s",
                outcome.order_number, outcome.items_updated, self.target_stage.value,
            )
        elif outcome.status == NOTHING_TO_DO:
            logger.info(
                "Order %s matched but nothing to update (%d skipped, %d unmatched SKU)",
                outcome.order_number, len(outcome.skipped), len(outcome.unmatched_skus),
            )
        return outcome

    async def _apply(
        self, order_id: str, events: list[ExternalEvent]
    ) -> tuple[OrderOutcome, list[dict]]:
        async with self.session_factory() as session:
            agg = await queries.load_aggregate(session, order_id)
            if agg is None:
                return OrderOutcome(order_id=order_id, status=FAILED, error="order vanished"), []

            tracked = commands.Tracked(agg)
            outcome = OrderOutcome(order_id=order_id, order_number=agg.order_number)
            for event in events:
                self._apply_event(agg, event, outcome)

            changes = await commands.save_aggregate(session, agg, tracked)
            await session.commit()

        outcome.status = UPDATED if outcome.items_updated else NOTHING_TO_DO
        return outcome, changes

    def _apply_event(
        self,
        agg: OrderAggregate,
        event: ExternalEvent,
        outcome: OrderOutcome,
    ) -> None:
        sku = event.business_key.strip().lower()
        candidates = [
            item for item in agg.items
            if item.code and item.code.strip().lower() == sku
        ]
        if not candidates:
            outcome.unmatched_skus.append(event.business_key)
            logger.info("Order %s has no item with code %s", agg.order_number, event.business_key)
            return

        skips: list[ItemSkip] = []
        advanced = 0
        for item in candidates:
            if item.quantity != event.quantity:
                mismatch = QuantityMismatch(event.business_key, item.quantity, event.quantity)
                skips.append(ItemSkip(
                    item_id=item.id, sku=event.business_key,
                    reason="quantity-mismatch", detail=str(mismatch),
                ))
                continue
            if is_at_or_past(item.progress_stage, self.target_stage):
                skips.append(ItemSkip(
                    item_id=item.id, sku=event.business_key, reason="already-advanced",
                    detail=f"item is already at {item.progress_stage.value}",
                ))
                continue

            agg.advance_item_stage(item.id, self.target_stage)
            advanced += 1

        outcome.items_updated += advanced
        for skip in skips:
            logger.warning("Order %s: skipped %s (%s)", agg.order_number, skip.sku, skip.detail)
        outcome.skipped.extend(skips)
