"""
Keyed advisory locks.

Replaces ad-hoc "currently processing" sets with an explicit table of named
locks. A key is held for the duration of one operation and always released,
even when the operation raises. Acquisition never blocks: a second caller for
the same key is told to skip.

Usage:
    locks = KeyedLockTable()
    with locks.hold(f"start:{trade_id}") as acquired:
        if not acquired:
            return  # another poller is already on it
        ...
"""

import logging
import time
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, List

logger = logging.getLogger(__name__)


class KeyedLockTable:
    """Non-blocking per-key mutual exclusion shared by all pollers."""

    def __init__(self, name: str = "locks"):
        self.name = name
        self._held: Dict[str, float] = {}  # key -> monotonic acquire time
        self._lock = Lock()
        self._contended = 0

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                self._contended += 1
                return False
            self._held[key] = time.monotonic()
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._held.pop(key, None)

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        """Yield True if the key was acquired; release on exit when we own it."""
        acquired = self.try_acquire(key)
        if not acquired:
            logger.debug("%s: key %s busy, skipping", self.name, key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held

    def held(self) -> List[str]:
        with self._lock:
            return sorted(self._held)

    def stats(self) -> Dict[str, float]:
        now = time.monotonic()
        with self._lock:
            oldest = max((now - started for started in self._held.values()), default=0.0)
            return {
                "held": len(self._held),
                "contended_total": self._contended,
                "oldest_hold_seconds": oldest,
            }
