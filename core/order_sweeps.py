"""
Background sweeps that keep local trades and listings consistent with the
marketplace: system cancellation notices in chat, and listings left active
after their trade already received an order.
"""

import logging
from typing import Iterable, Optional

from core.clients import MarketplaceClient
from core.listings import ListingManager
from core.models import (
    CANCEL_SWEEP_EXCLUDED,
    TERMINAL_TRADE_STATUSES,
    Trade,
    TradeStatus,
    utcnow,
)
from core.store import DeskStore
from infra.events import TRADE_UPDATED, EventBus
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

CANCELLATION_PHRASES = (
    "Your order has been canceled. The seller is not allowed to appeal after the order is canceled.",
    "Ваш заказ был отменен",
    "Your order has been cancelled",
    "Order cancelled",
    "Заказ отменен",
    "订单已取消",
)


def find_cancellation_phrase(texts: Iterable[str]) -> Optional[str]:
    for text in texts:
        for phrase in CANCELLATION_PHRASES:
            if phrase in (text or ""):
                return phrase
    return None


class CancelledOrderDetector:
    """Marks trades cancelled when the marketplace posted a cancellation notice in chat."""

    def __init__(
        self,
        store: DeskStore,
        marketplace: MarketplaceClient,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.marketplace = marketplace
        self.events = events
        self.metrics = metrics

    def run_cycle(self) -> int:
        cancelled = 0
        for trade in self.store.list_trades_with_orders(exclude_statuses=CANCEL_SWEEP_EXCLUDED):
            try:
                if self.check_trade(trade):
                    cancelled += 1
            except Exception as exc:
                logger.warning("Cancellation check for order %s failed: %s", trade.order_id, exc)
        return cancelled

    def check_trade(self, trade: Trade) -> bool:
        stored = [message.content for message in self.store.list_chat_messages(trade.id)]
        phrase = find_cancellation_phrase(stored)

        if phrase is None and not trade.is_test_order():
            ad = self.store.get_advertisement(trade.advertisement_id)
            if ad is not None:
                remote = self.marketplace.get_chat_messages(ad.account_id, trade.order_id)
                phrase = find_cancellation_phrase(message.content for message in remote)

        if phrase is None:
            return False

        open_statuses = [s.value for s in TradeStatus if s.value not in TERMINAL_TRADE_STATUSES]
        open_statuses.append(TradeStatus.CANCELLED_BY_COUNTERPARTY.value)
        moved = self.store.transition_trade(
            trade.id,
            open_statuses,
            TradeStatus.CANCELLED.value,
            failure_reason=f"Order cancelled by system: {phrase}",
            cancelled_at=trade.cancelled_at or utcnow(),
        )
        if moved:
            logger.info("Trade %s (order %s) cancelled: system notice in chat", trade.id, trade.order_id)
            if self.metrics is not None:
                self.metrics.record_trade_event(TradeStatus.CANCELLED.value)
            if self.events is not None:
                self.events.emit(TRADE_UPDATED, {"trade_id": trade.id, "status": TradeStatus.CANCELLED.value})
        return moved


class AdvertisementReconciler:
    """Retires listings that are still active although their trade already has an order."""

    def __init__(self, store: DeskStore, listings: ListingManager):
        self.store = store
        self.listings = listings

    def run_cycle(self) -> int:
        retired = 0
        for ad in self.store.list_active_advertisements_with_orders():
            if self.listings.retire(ad):
                retired += 1
        if retired:
            logger.info("Advertisement reconciler retired %s listings", retired)
        return retired
