"""In-process event bus for best-effort dashboard notifications."""

from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

TRADE_UPDATED = "trade:updated"
RECEIPT_LINKED = "receipt:linked"

Handler = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """
    Fan-out of named events to subscribers.

    Delivery is synchronous and best-effort: a failing subscriber is logged
    and never affects the emitter or other subscribers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = Lock()
        self._emitted: Dict[str, int] = defaultdict(int)

    def subscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, []))
            self._emitted[event] += 1
        for handler in handlers:
            try:
                handler(event, payload)
            except Exception as exc:
                logger.warning("Event handler for %s failed: %s", event, exc)

    def emitted_count(self, event: str) -> int:
        with self._lock:
            return self._emitted.get(event, 0)


__all__ = ["EventBus", "TRADE_UPDATED", "RECEIPT_LINKED"]
