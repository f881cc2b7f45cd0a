"""
Progress Sync — Redis Pub/Sub realtime subscriber

Subscribes once per process to the change channel, normalizes each raw
notification and hands it to the dispatcher. The number of views never
changes the number of transport subscriptions.

Binding state:

    UNSUBSCRIBED ─▶ SUBSCRIBING ─▶ SUBSCRIBED ─(error)─▶ RECONNECTING ─▶ SUBSCRIBED
          ▲                                                   │
          └──────────────── shutdown ◀────────────────────────┘

Failed subscriptions are retried with exponential backoff, capped at
RECONNECT_MAX_DELAY. Redis Pub/Sub is fire-and-forget: notifications sent
while disconnected are lost, so every successful (re)subscription triggers a
full refresh of the views.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from enum import Enum

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import config
from .dispatcher import ChangeDispatcher
from .events import ChangeEvent
from .normalizer import normalize

logger = logging.getLogger(__name__)


class BindingState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"


class RealtimeSubscriber:
    def __init__(
        self,
        redis_factory: Callable[[], aioredis.Redis],
        dispatcher: ChangeDispatcher,
        channel: str = config.CHANGES_CHANNEL,
        initial_delay: float = config.RECONNECT_INITIAL_DELAY,
        max_delay: float = config.RECONNECT_MAX_DELAY,
        on_subscribed: Callable[[], None] | None = None,
    ) -> None:
        self.redis_factory = redis_factory
        self.dispatcher = dispatcher
        self.channel = channel
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.on_subscribed = on_subscribed
        self.state = BindingState.UNSUBSCRIBED
        self.history: list[BindingState] = [self.state]
        self.failures = 0

    def _set_state(self, state: BindingState) -> None:
        if state != self.state:
            logger.info("Realtime binding %s → %s", self.state.value, state.value)
            self.state = state
            self.history.append(state)

    def next_delay(self, attempt: int) -> float:
        """Backoff before reconnect attempt ``attempt`` (1-based)."""
        return min(self.initial_delay * 2 ** (attempt - 1), self.max_delay)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Keep the channel subscribed until ``shutdown_event`` is set."""
        attempt = 0
        while not shutdown_event.is_set():
            if self.state == BindingState.UNSUBSCRIBED:
                self._set_state(BindingState.SUBSCRIBING)

            redis_conn = None
            pubsub = None
            try:
                redis_conn = self.redis_factory()
                pubsub = redis_conn.pubsub()
                await pubsub.subscribe(self.channel)
                self._set_state(BindingState.SUBSCRIBED)
                attempt = 0
                logger.info("Subscribed to %s channel", self.channel)
                if self.on_subscribed:
                    self.on_subscribed()
                await self._listen(pubsub, shutdown_event)
            except (RedisError, OSError) as e:
                self.failures += 1
                attempt += 1
                delay = self.next_delay(attempt)
                self._set_state(BindingState.RECONNECTING)
                logger.warning(
                    "Realtime subscription failed (attempt %d), retrying in %.1fs: %s",
                    attempt, delay, e,
                )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
            finally:
                await self._close(redis_conn, pubsub)

        self._set_state(BindingState.UNSUBSCRIBED)

    async def _listen(self, pubsub, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                try:
                    self.handle_message(message["data"])
                except Exception:
                    # a bad notification is dropped; the subscription stays up
                    logger.exception("Failed to handle change notification: %r", message["data"])
            else:
                await asyncio.sleep(0.1)

    async def _close(self, redis_conn, pubsub) -> None:
        # the connection may already be broken
        with contextlib.suppress(RedisError, OSError):
            if pubsub is not None:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
            if redis_conn is not None:
                await redis_conn.aclose()

    def handle_message(self, data: str | bytes) -> ChangeEvent | None:
        """Normalize one raw notification and dispatch it."""
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable change notification: %r", data)
            return None

        event = normalize(payload)
        if event is None:
            return None
        scheduled = self.dispatcher.dispatch(event)
        logger.debug(
            "Dispatched %s %s %s to %d view(s)",
            event.table, event.kind.value, event.entity_id, scheduled,
        )
        return event
