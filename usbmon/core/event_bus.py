"""EventBus — pub/sub channel from the event delivery context to the monitor."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Callable

from usbmon.core.events import Event, EventType

logger = logging.getLogger(__name__)


class EventBus:
    """Lightweight synchronous pub/sub bus.

    Handlers run on the publisher's thread; subscriptions may change from
    any thread.
    """

    def __init__(self):
        self._handlers: dict[EventType, list[Callable[[Event], None]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        """Register a handler for an event type."""
        with self._lock:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], None]) -> None:
        """Remove a previously registered handler."""
        with self._lock:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

    def publish(self, event: Event) -> None:
        """Dispatch event to all registered handlers synchronously."""
        with self._lock:
            handlers = list(self._handlers.get(event.type, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("EventBus handler error for %s", event.type)
