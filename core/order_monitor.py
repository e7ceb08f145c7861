"""
P2P Desk Core: Order & Chat Monitor

The polling loop that discovers marketplace orders, ties them to listings
and trades, mirrors chat threads into the store and hands each trade to the
conversational state machine.

One cycle:
1. enumerate active marketplace accounts
2. re-check tracked orders; missing or cancelled ones end their trade
3. list active orders (10/20); find, link or materialize their trades
4. pull each order's chat; store unseen messages once
5. hand off to ChatAutomation (process_pending or start)
6. keep one fast chat poller per open order
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.chat_automation import ChatAutomation
from core.clients import MarketplaceAccount, MarketplaceClient, MarketplaceOrder
from core.exceptions import DataInconsistency
from core.models import (
    ACTIVE_ORDER_STATUSES,
    SENDER_COUNTERPARTY,
    SENDER_US,
    TERMINAL_TRADE_STATUSES,
    MarketplaceOrderStatus,
    Trade,
    TradeStatus,
    describe_order_status,
    utcnow,
)
from core.store import DeskStore
from infra.events import TRADE_UPDATED, EventBus
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

DEFAULT_CHAT_POLL_INTERVAL = 1.5


@dataclass
class MonitorCycleResult:
    accounts: int = 0
    orders_seen: int = 0
    trades_created: int = 0
    trades_linked: int = 0
    messages_stored: int = 0
    cancellations: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class ChatPoller:
    """Fast per-order chat sync; ends once the trade is terminal or on stop()."""

    def __init__(self, monitor: "OrderMonitor", account: MarketplaceAccount, trade_id: str, order_id: str, interval: float):
        self.monitor = monitor
        self.account = account
        self.trade_id = trade_id
        self.order_id = order_id
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"chat-poller-{self.order_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> bool:
        """One sync + handoff. Returns False when the poller should end."""
        trade = self.monitor.store.get_trade(self.trade_id)
        if trade is None or trade.is_terminal():
            return False
        self.monitor.sync_chat(self.account, trade)
        self.monitor.handoff(trade.id)
        return True

    def _run(self) -> None:
        logger.info("Chat poller started for order %s", self.order_id)
        while not self._stop.is_set():
            try:
                if not self.tick():
                    break
            except Exception as exc:
                logger.warning("Chat poll for order %s failed: %s", self.order_id, exc)
            self._stop.wait(self.interval)
        self.monitor._poller_finished(self.order_id)
        logger.info("Chat poller stopped for order %s", self.order_id)


class OrderMonitor:
    def __init__(
        self,
        store: DeskStore,
        marketplace: MarketplaceClient,
        chat: ChatAutomation,
        locks: KeyedLockTable,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        chat_poll_interval: float = DEFAULT_CHAT_POLL_INTERVAL,
        start_chat_pollers: bool = True,
    ):
        self.store = store
        self.marketplace = marketplace
        self.chat = chat
        self.locks = locks
        self.events = events
        self.metrics = metrics
        self.chat_poll_interval = float(chat_poll_interval)
        self.start_chat_pollers = start_chat_pollers

        self._pollers: Dict[str, ChatPoller] = {}
        self._pollers_lock = threading.Lock()
        self._stopped = False

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> MonitorCycleResult:
        started = time.monotonic()
        result = MonitorCycleResult()

        try:
            accounts = self.marketplace.get_active_accounts()
        except Exception as exc:
            logger.error("Failed to enumerate marketplace accounts: %s", exc)
            result.errors += 1
            result.duration_seconds = time.monotonic() - started
            return result
        result.accounts = len(accounts)
        by_id = {account.account_id: account for account in accounts}

        self.check_tracked_orders(by_id, result)

        for account in accounts:
            try:
                orders = self.marketplace.list_orders(account.account_id, ACTIVE_ORDER_STATUSES)
            except Exception as exc:
                logger.error("Failed to list orders for account %s: %s", account.account_id, exc)
                result.errors += 1
                continue

            for order in orders:
                result.orders_seen += 1
                try:
                    trade = self.process_active_order(account, order, result)
                    if trade is None:
                        continue
                    result.messages_stored += self.sync_chat(account, trade)
                    self.handoff(trade.id)
                    self.ensure_chat_poller(account, trade)
                except DataInconsistency as exc:
                    logger.warning("Order %s skipped: %s", order.order_id, exc)
                except Exception as exc:
                    logger.error("Failed to process order %s: %s", order.order_id, exc)
                    result.errors += 1

        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Monitor cycle: accounts=%s orders=%s created=%s linked=%s messages=%s cancelled=%s errors=%s",
            result.accounts, result.orders_seen, result.trades_created, result.trades_linked,
            result.messages_stored, result.cancellations, result.errors,
        )
        return result

    def check_tracked_orders(self, accounts: Dict[str, MarketplaceAccount], result: MonitorCycleResult) -> None:
        """Trades whose order vanished or was cancelled become cancelled_by_counterparty."""
        for trade in self.store.list_trades_with_orders(exclude_statuses=TERMINAL_TRADE_STATUSES):
            if trade.is_test_order():
                continue
            ad = self.store.get_advertisement(trade.advertisement_id)
            if ad is None or ad.account_id not in accounts:
                continue
            try:
                order = self.marketplace.get_order(ad.account_id, trade.order_id)
            except Exception as exc:
                logger.warning("Failed to check order %s: %s", trade.order_id, exc)
                result.errors += 1
                continue

            if order is None:
                reason = "Order no longer exists on marketplace"
            elif order.status == MarketplaceOrderStatus.CANCELLED:
                reason = f"Order {describe_order_status(order.status)} on marketplace"
            else:
                continue

            if self.cancel_trade(trade, TradeStatus.CANCELLED_BY_COUNTERPARTY.value, reason):
                result.cancellations += 1

    def cancel_trade(self, trade: Trade, status: str, reason: str) -> bool:
        open_statuses = [s.value for s in TradeStatus if s.value not in TERMINAL_TRADE_STATUSES]
        moved = self.store.transition_trade(
            trade.id,
            open_statuses,
            status,
            failure_reason=reason,
            cancelled_at=utcnow(),
        )
        if moved:
            logger.info("Trade %s (order %s) -> %s: %s", trade.id, trade.order_id, status, reason)
            if self.metrics is not None:
                self.metrics.record_trade_event(status)
            if self.events is not None:
                self.events.emit(TRADE_UPDATED, {"trade_id": trade.id, "status": status, "reason": reason})
        return moved

    def process_active_order(
        self,
        account: MarketplaceAccount,
        order: MarketplaceOrder,
        result: Optional[MonitorCycleResult] = None,
    ) -> Optional[Trade]:
        """
        Find, link or create the trade for an active order.

        Raises:
            DataInconsistency: the order's listing is unknown locally
        """
        with self.locks.hold(f"order:{order.order_id}") as acquired:
            if not acquired:
                return None

            trade = self.store.get_trade_by_order_id(order.order_id)
            if trade is not None:
                return trade

            item_id = order.item_id
            if not item_id:
                detail = self.marketplace.get_order(account.account_id, order.order_id)
                item_id = detail.item_id if detail else None
            if not item_id:
                raise DataInconsistency(f"Order {order.order_id} has no listing id")

            ad = self.store.get_advertisement_by_item_id(item_id)
            if ad is None:
                raise DataInconsistency(f"Listing {item_id} for order {order.order_id} is not tracked")

            trade = self.store.find_unlinked_trade_for_advertisement(ad.id)
            if trade is not None:
                self.store.update_trade(
                    trade.id,
                    order_id=order.order_id,
                    payout_id=trade.payout_id or ad.payout_id,
                )
                logger.info("Order %s linked to trade %s (listing %s)", order.order_id, trade.id, item_id)
                if result is not None:
                    result.trades_linked += 1
                if self.metrics is not None:
                    self.metrics.record_trade_event("linked")
                return self.store.get_trade(trade.id)

            if not ad.payout_id:
                raise DataInconsistency(f"Listing {item_id} has no payout; cannot open trade for {order.order_id}")

            trade = self.store.create_trade(ad.id, payout_id=ad.payout_id, order_id=order.order_id)
            logger.info(
                "Trade %s created for order %s (%s, listing %s)",
                trade.id, order.order_id, describe_order_status(order.status), item_id,
            )
            if result is not None:
                result.trades_created += 1
            if self.metrics is not None:
                self.metrics.record_trade_event("created")
            if self.events is not None:
                self.events.emit(TRADE_UPDATED, {"trade_id": trade.id, "status": trade.status})
            return trade

    def sync_chat(self, account: MarketplaceAccount, trade: Trade) -> int:
        """Store unseen chat messages. Returns how many were new."""
        if trade.is_test_order() or not trade.order_id:
            return 0
        stored = 0
        for message in self.marketplace.get_chat_messages(account.account_id, trade.order_id):
            content = (message.content or "").strip()
            if not content:
                continue
            sender = SENDER_US if account.user_id and message.user_id == account.user_id else SENDER_COUNTERPARTY
            saved = self.store.add_chat_message(
                trade.id,
                message.message_id,
                sender,
                content,
                message_type=message.message_type,
                sent_at=message.created_at,
            )
            if saved is not None:
                stored += 1
        return stored

    def handoff(self, trade_id: str) -> None:
        """
        Feed the state machine.

        Unprocessed counterparty messages go through process_pending (which
        starts the conversation when still at step 0, consuming the message
        that triggered it); a silent trade without any outbound message gets
        the opening question.
        """
        trade = self.store.get_trade(trade_id)
        if trade is None or trade.is_terminal():
            return
        if self.store.list_unprocessed_counterparty_messages(trade_id):
            self.chat.process_pending(trade_id)
        elif not self.store.has_outbound_message(trade_id):
            self.chat.start(trade_id)

    # ------------------------------------------------------------------
    # Chat pollers
    # ------------------------------------------------------------------

    def ensure_chat_poller(self, account: MarketplaceAccount, trade: Trade) -> bool:
        """Start a chat poller for the order unless one is running. Returns True if started."""
        if not self.start_chat_pollers or self._stopped or not trade.order_id:
            return False
        with self._pollers_lock:
            if trade.order_id in self._pollers:
                return False
            poller = ChatPoller(self, account, trade.id, trade.order_id, self.chat_poll_interval)
            self._pollers[trade.order_id] = poller
        poller.start()
        return True

    def _poller_finished(self, order_id: str) -> None:
        with self._pollers_lock:
            self._pollers.pop(order_id, None)

    def active_pollers(self) -> List[str]:
        with self._pollers_lock:
            return sorted(self._pollers)

    def stop(self) -> None:
        self._stopped = True
        with self._pollers_lock:
            pollers = list(self._pollers.values())
        for poller in pollers:
            poller.stop()
        logger.info("Order monitor stopped (%s chat pollers signalled)", len(pollers))
