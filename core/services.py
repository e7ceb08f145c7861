"""
Injected desk services: exchange rate source and receipt-inbox allocation.

Both are constructed once at startup and handed to the components that need
them; nothing here is module-level state.
"""

import logging
from itertools import cycle
from threading import Lock
from typing import Dict, List, Optional

from core.clients import RateProvider

logger = logging.getLogger(__name__)


class StaticRateProvider(RateProvider):
    """Rate read from configuration; None disables the rate line in chat."""

    def __init__(self, rate: Optional[float] = None):
        self._rate = float(rate) if rate else None

    def get_rate(self) -> Optional[float]:
        return self._rate


class EmailAllocator:
    """
    Hands out receipt-delivery addresses from a configured pool.

    Allocation is sticky per trade: asking twice for the same trade returns
    the same address, so a re-sent details message never points the
    counterparty at a different inbox.
    """

    def __init__(self, addresses: List[str]):
        cleaned = [address.strip() for address in addresses if address and address.strip()]
        if not cleaned:
            raise ValueError("EmailAllocator requires at least one address")
        self._addresses = cleaned
        self._cycle = cycle(cleaned)
        self._assigned: Dict[str, str] = {}
        self._lock = Lock()

    def allocate(self, trade_id: str) -> str:
        with self._lock:
            address = self._assigned.get(trade_id)
            if address is None:
                address = next(self._cycle)
                self._assigned[trade_id] = address
                logger.info("Allocated receipt inbox %s to trade %s", address, trade_id)
            return address

    def restore(self, trade_id: str, address: str) -> None:
        """Re-register an allocation persisted before a restart."""
        with self._lock:
            self._assigned[trade_id] = address

    @property
    def addresses(self) -> List[str]:
        return list(self._addresses)
