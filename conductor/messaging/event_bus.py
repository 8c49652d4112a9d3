"""
In-process notification bus.

Carries plugin lifecycle notifications, plugin-scoped events
(``plugin:<id>:<event>``) and UI registration requests to whatever part of
the host subscribes: the web shell, the learning module, tests.
"""

import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class NotificationBus:
    """Subject-keyed pub/sub with sequential, failure-isolated delivery."""

    def __init__(self) -> None:
        self._subs: Dict[str, List[Callable[..., Any]]] = {}

    def subscribe(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it."""
        self._subs.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event, handler)

        return unsubscribe

    def unsubscribe(self, event: str, handler: Callable[..., Any]) -> None:
        handlers = self._subs.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._subs[event]

    def listener_count(self, event: str) -> int:
        return len(self._subs.get(event, []))

    async def publish(self, event: str, *args: Any) -> int:
        """Deliver to every handler in subscription order.

        Returns:
            Number of handlers that completed without raising
        """
        delivered = 0
        for handler in list(self._subs.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:  # noqa: BLE001
                logger.exception("Notification handler error for %s: %s", event, e)
        return delivered

    def clear(self) -> None:
        self._subs.clear()
