"""Synchronous event bus used for diagnostics.

Handlers run on the publishing thread; a failing handler is logged and
never interrupts the publisher.
"""

from __future__ import annotations

import threading
import traceback
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from capsulekit.core.logging import get_logger

_logger = get_logger(__name__)

EventHandler = Callable[[dict[str, Any]], None]
AnyEventHandler = Callable[[str, dict[str, Any]], None]


class EventBus:
    """Simple event bus.

    Example:
        bus = EventBus()
        bus.subscribe("operation.end", lambda data: print(data["status"]))
        bus.publish("operation.end", {"status": "succeeded"})
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._all_subscribers: list[AnyEventHandler] = []

    def subscribe(self, event: str, callback: EventHandler) -> None:
        with self._lock:
            self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: EventHandler) -> None:
        with self._lock:
            if callback in self._subscribers.get(event, []):
                self._subscribers[event].remove(callback)

    def subscribe_all(self, callback: AnyEventHandler) -> None:
        with self._lock:
            self._all_subscribers.append(callback)

    def unsubscribe_all(self, callback: AnyEventHandler) -> None:
        with self._lock:
            if callback in self._all_subscribers:
                self._all_subscribers.remove(callback)

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        data = data or {}
        with self._lock:
            exact = list(self._subscribers.get(event, []))
            every = list(self._all_subscribers)

        for cb_event in exact:
            try:
                cb_event(data)
            except Exception as e:
                _logger.error(
                    f"Error in event handler for '{event}': {type(e).__name__}: {e}\n"
                    f"{traceback.format_exc()}"
                )

        for cb_all in every:
            try:
                cb_all(event, data)
            except Exception as e:
                _logger.error(
                    f"Error in all-event handler (event='{event}'): {type(e).__name__}: {e}\n"
                    f"{traceback.format_exc()}"
                )

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._all_subscribers.clear()


_global_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get global event bus instance."""
    global _global_bus
    if _global_bus is None:
        _global_bus = EventBus()
    return _global_bus
