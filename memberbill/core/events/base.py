"""Domain events and the in-process bus they are published on.

Routing publishes ``RevenueRiskAlert``; the pause batch publishes
``PauseStarted``, ``PauseCreditApplied`` and ``PauseBatchCompleted``.
Handlers are notification or reporting hooks and must never be able to fail
a routing decision or a credit, so their errors are logged and dropped.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple
from uuid import UUID, uuid4

from memberbill.utils.datetime import utc_now
from memberbill.utils.logging import get_logger

logger = get_logger("events")

Handler = Callable[["BaseEvent"], Any]


@dataclass(frozen=True)
class BaseEvent:
    """Immutable event; ``event_id`` and ``occurred_at`` are stamped on creation."""

    event_id: UUID = field(default_factory=uuid4, init=False)
    occurred_at: datetime = field(default_factory=utc_now, init=False)
    context: dict[str, Any] | None = field(default=None, kw_only=True)


class _Subscription(NamedTuple):
    priority: int
    handler: Handler

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class GlobalEventBus:
    """Publish/subscribe keyed on event class.

    A handler subscribed to a class also receives its subclasses. Higher
    ``priority`` runs first; equal priorities run in subscription order.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[type[BaseEvent], list[_Subscription]] = defaultdict(list)
        self._published: Counter[str] = Counter()

    def subscribe(self, event_type: type[BaseEvent], handler: Handler, priority: int = 0) -> None:
        self._subscriptions[event_type].append(_Subscription(priority, handler))
        logger.debug("event_handler_subscribed", event_type=event_type.__name__, priority=priority)

    def unsubscribe(self, event_type: type[BaseEvent], handler: Handler) -> None:
        remaining = [s for s in self._subscriptions.get(event_type, []) if s.handler != handler]
        if remaining:
            self._subscriptions[event_type] = remaining
        else:
            self._subscriptions.pop(event_type, None)

    def clear(self) -> None:
        self._subscriptions.clear()
        self._published.clear()

    def _matching(self, event: BaseEvent) -> list[_Subscription]:
        found = [
            sub
            for event_type in type(event).__mro__
            for sub in self._subscriptions.get(event_type, ())
        ]
        return sorted(found, key=lambda sub: -sub.priority)

    def _announce(self, event: BaseEvent) -> list[_Subscription]:
        name = type(event).__name__
        self._published[name] += 1
        logger.info("event_published", event_type=name, event_id=str(event.event_id))
        return self._matching(event)

    def _handler_failed(self, sub: _Subscription, event: BaseEvent, error: Exception) -> None:
        logger.error(
            "event_handler_failed",
            event_type=type(event).__name__,
            handler=sub.name,
            error_type=type(error).__name__,
            error=str(error),
            exc_info=True,
        )

    async def _guarded(self, sub: _Subscription, event: BaseEvent) -> None:
        try:
            result = sub.handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._handler_failed(sub, event, e)

    def publish(self, event: BaseEvent) -> None:
        """Run sync handlers now; schedule async ones on the running loop, if any."""
        for sub in self._announce(event):
            if inspect.iscoroutinefunction(sub.handler):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    logger.warning(
                        "async_event_handler_skipped",
                        event_type=type(event).__name__,
                        handler=sub.name,
                    )
                    continue
                loop.create_task(self._guarded(sub, event))
                continue
            try:
                sub.handler(event)
            except Exception as e:
                self._handler_failed(sub, event, e)

    async def publish_async(self, event: BaseEvent) -> None:
        """Run every handler, sync or async, and wait for all of them."""
        pending: list[Awaitable[None]] = [
            self._guarded(sub, event) for sub in self._announce(event)
        ]
        await asyncio.gather(*pending)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_handlers": sum(len(subs) for subs in self._subscriptions.values()),
            "events_published": dict(self._published),
            "total_events": sum(self._published.values()),
        }


_bus: GlobalEventBus | None = None


def get_global_event_bus() -> GlobalEventBus:
    """Process-wide bus used when a service is not given its own."""
    global _bus
    if _bus is None:
        _bus = GlobalEventBus()
    return _bus
