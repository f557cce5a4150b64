"""Session event fan-out from the service to the host.

Handlers are plain callables registered per event type. Every
subscription is explicit and must be closed when the host no longer
cares, so ended sessions are never kept alive by a forgotten listener.

Usage:
    bus = SessionEventBus()
    sub = bus.subscribe(SessionEnded, lambda event: print(event.final_state))
    ...
    sub.close()
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from agentorchestrator.models.events import SessionEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


class Subscription:
    """Handle returned by :meth:`SessionEventBus.subscribe`."""

    def __init__(self, bus: SessionEventBus, event_type: type | None, handler: EventHandler) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._bus.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SessionEventBus:
    """Synchronous observer registry keyed by event class.

    Subscribing with ``event_type=None`` receives every event. Handlers run
    in the emitting task, in subscription order; one failing handler is
    logged and does not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[type | None, list[Subscription]] = defaultdict(list)

    def subscribe(self, event_type: type | None, handler: EventHandler) -> Subscription:
        subscription = Subscription(self, event_type, handler)
        self._subscriptions[event_type].append(subscription)
        logger.debug(
            "Subscribed to %s (total: %d)",
            event_type.__name__ if event_type else "all events",
            len(self._subscriptions[event_type]),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription. Safe to call more than once."""
        subscription.closed = True
        subs = self._subscriptions.get(subscription.event_type, [])
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            del self._subscriptions[subscription.event_type]

    @property
    def subscriber_count(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    def emit(self, event: SessionEvent) -> int:
        """Deliver ``event``; returns how many handlers ran without error."""
        targets = [
            *self._subscriptions.get(type(event), ()),
            *self._subscriptions.get(None, ()),
        ]
        delivered = 0
        for subscription in targets:
            if subscription.closed:
                continue
            try:
                subscription.handler(event)
                delivered += 1
            except Exception:
                logger.warning(
                    "Event handler %r failed for %s",
                    subscription.handler, type(event).__name__, exc_info=True,
                )
        return delivered
