"""
Progress Sync — debounced fan-out dispatcher

The single in-process event bus. The realtime subscriber hands every
normalized ChangeEvent to ``dispatch``; each registered view gets its refresh
callback scheduled after a quiet period measured from the *last* event of a
burst (trailing debounce). A steady stream of events keeps postponing the
refresh until the stream pauses.

    ChangeEvent ──▶ dispatch ──┬──▶ [timer: progress]   ──▶ refresh(events)
                               ├──▶ [timer: processing] ──▶ refresh(events)
                               └──▶ [timer: completed]  ──▶ refresh(events)

- one timer per destination; rescheduling cancels the pending one
- at most one refresh running per destination
- unregistering cancels the pending timer and the running refresh
- a refresh failing with TransientIOFailure is retried with backoff
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from . import config
from .errors import TransientIOFailure
from .events import ChangeEvent

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[list[ChangeEvent]], Awaitable[None]]


class Subscription:
    """A registered refresh destination."""

    def __init__(
        self,
        dispatcher: "ChangeDispatcher",
        name: str,
        callback: RefreshCallback,
        tables: Iterable[str] | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.name = name
        self.callback = callback
        self.tables = frozenset(tables) if tables else None
        self.closed = False
        self.pending_events: list[ChangeEvent] = []
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    def wants(self, event: ChangeEvent) -> bool:
        return self.tables is None or event.table in self.tables

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def close(self) -> None:
        self.dispatcher.unregister(self.name)


class ChangeDispatcher:
    def __init__(
        self,
        quiet_period: float = config.DEBOUNCE_SECONDS,
        max_attempts: int = config.REFRESH_MAX_ATTEMPTS,
        retry_delay: float = 0.1,
    ) -> None:
        self.quiet_period = quiet_period
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._subscriptions: dict[str, Subscription] = {}
        self._closed = False

    @property
    def subscriptions(self) -> dict[str, Subscription]:
        return dict(self._subscriptions)

    # ── Registration ────────────────────────────────

    def register(
        self,
        name: str,
        callback: RefreshCallback,
        tables: Iterable[str] | None = None,
    ) -> Subscription:
        """
        Register a refresh destination. Registering an existing name replaces
        the previous destination so a view never holds two subscriptions.
        """
        if name in self._subscriptions:
            logger.info("Replacing existing subscription %s", name)
            self.unregister(name)
        sub = Subscription(self, name, callback, tables)
        self._subscriptions[name] = sub
        logger.info("Registered view refresh %s", name)
        return sub

    def unregister(self, name: str) -> None:
        sub = self._subscriptions.pop(name, None)
        if sub is None:
            return
        sub.closed = True
        if sub._timer is not None:
            sub._timer.cancel()
            sub._timer = None
        if sub.running:
            sub._task.cancel()
        sub.pending_events.clear()
        logger.info("Unregistered view refresh %s", name)

    async def close(self) -> None:
        """Cancel every timer and running refresh; later events are ignored."""
        self._closed = True
        tasks = [s._task for s in self._subscriptions.values() if s.running]
        for name in list(self._subscriptions):
            self.unregister(name)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Dispatch ────────────────────────────────────

    def dispatch(self, event: ChangeEvent) -> int:
        """Schedule a refresh for every interested destination. Returns their count."""
        if self._closed:
            return 0
        scheduled = 0
        for sub in self._subscriptions.values():
            if sub.wants(event):
                sub.pending_events.append(event)
                self._schedule(sub)
                scheduled += 1
        return scheduled

    def _schedule(self, sub: Subscription) -> None:
        if sub._timer is not None:
            sub._timer.cancel()
        loop = asyncio.get_running_loop()
        sub._timer = loop.call_later(self.quiet_period, self._fire, sub)

    def _fire(self, sub: Subscription) -> None:
        sub._timer = None
        if sub.closed:
            return
        if sub.running:
            # wait for the running refresh, then refresh again with the new events
            self._schedule(sub)
            return
        events, sub.pending_events = sub.pending_events, []
        sub._task = asyncio.get_running_loop().create_task(self._run(sub, events))

    async def _run(self, sub: Subscription, events: list[ChangeEvent]) -> None:
        for attempt in range(1, self.max_attempts + 1):
            if sub.closed:
                return
            try:
                await sub.callback(events)
                logger.debug("Refreshed %s after %d change(s)", sub.name, len(events))
                return
            except asyncio.CancelledError:
                raise
            except TransientIOFailure as e:
                if attempt == self.max_attempts:
                    logger.error(
                        "Refresh %s failed after %d attempts: %s", sub.name, attempt, e
                    )
                    return
                delay = self.retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Refresh %s failed (attempt %d), retrying in %.2fs: %s",
                    sub.name, attempt, delay, e,
                )
                await asyncio.sleep(delay)
            except Exception:
                logger.exception("Refresh %s failed", sub.name)
                return
