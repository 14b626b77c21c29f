"""Handler registry with unsubscribe handles.

Handlers are plain callables run synchronously, in subscription order, to
completion. A handler unsubscribed while a dispatch is in progress is not
called for the rest of that dispatch.
"""
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by every ``on*`` registration."""

    def __init__(self, bus: "EventBus", event: str, handler: Handler) -> None:
        self._bus = bus
        self.event = event
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Remove the handler. Safe to call more than once."""
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)


class EventBus:
    """Ordered fan-out of named events to subscribed handlers."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        subscription = Subscription(self, event, handler)
        self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def dispatch(self, event: str, data: Any = None) -> int:
        """Call every handler of ``event`` with ``data``.

        A failing handler is logged and does not stop delivery to the others.

        Returns:
            Number of handlers called.
        """
        called = 0
        for subscription in list(self._subscriptions.get(event, [])):
            if not subscription.active:
                continue
            called += 1
            try:
                subscription.handler(data)
            except Exception:
                logger.exception(f"[{self.name or 'EventBus'}] Handler for '{event}' failed")
        return called

    def handler_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, []))

    def clear(self) -> None:
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription._active = False
        self._subscriptions.clear()

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.event)
        if subscriptions and subscription in subscriptions:
            subscriptions.remove(subscription)
            if not subscriptions:
                del self._subscriptions[subscription.event]
