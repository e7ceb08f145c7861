"""
Tests for the order & chat monitor.

A cycle must be safe to repeat: the same marketplace snapshot never creates
a second trade or sends a second message.
"""
from unittest.mock import patch

from core.chat_automation import DEFAULT_QUESTION
from core.models import (
    CHAT_STEP_QUESTION_ASKED,
    SENDER_COUNTERPARTY,
    TradeStatus,
)
from core.order_monitor import ChatPoller, OrderMonitor
from tests.helpers import seed_trade


def _listing_with_payout(store, item_id="item-1", gate_payout_id="gp-1"):
    payout = store.create_payout(gate_payout_id, "+79123456789", {"643": 5000.0}, status=5)
    return store.create_advertisement(item_id, "main", payout_id=payout.id), payout


class TestNewOrders:
    def test_new_order_creates_trade_and_asks(self, desk):
        ad, payout = _listing_with_payout(desk.store)
        desk.marketplace.add_order("order-1", "item-1")

        result = desk.monitor.run_cycle()

        assert result.trades_created == 1
        assert result.errors == 0
        trade = desk.store.get_trade_by_order_id("order-1")
        assert trade.advertisement_id == ad.id
        assert trade.payout_id == payout.id
        assert trade.chat_step == CHAT_STEP_QUESTION_ASKED
        assert desk.marketplace.texts_sent("order-1") == [DEFAULT_QUESTION]
        assert desk.metrics.count("trade:created") == 1

    def test_repeated_cycles_are_idempotent(self, desk):
        _listing_with_payout(desk.store)
        desk.marketplace.add_order("order-1", "item-1")

        desk.monitor.run_cycle()
        second = desk.monitor.run_cycle()

        assert second.trades_created == 0
        assert len(desk.store.list_trades_with_orders()) == 1
        assert desk.marketplace.texts_sent() == [DEFAULT_QUESTION]

    def test_unlinked_trade_is_linked(self, desk):
        """A trade prepared for the listing before the order arrived receives the order id"""
        ad, payout = _listing_with_payout(desk.store)
        prepared = desk.store.create_trade(ad.id, payout_id=payout.id)
        desk.marketplace.add_order("order-1", "item-1")

        result = desk.monitor.run_cycle()

        assert result.trades_linked == 1
        assert result.trades_created == 0
        assert desk.store.get_trade_by_order_id("order-1").id == prepared.id

    def test_unknown_listing_skipped(self, desk):
        desk.marketplace.add_order("order-9", "item-unknown")

        result = desk.monitor.run_cycle()

        assert result.orders_seen == 1
        assert result.errors == 0
        assert desk.store.get_trade_by_order_id("order-9") is None
        assert desk.marketplace.texts_sent() == []

    def test_listing_without_payout_skipped(self, desk):
        desk.store.create_advertisement("item-bare", "main")
        desk.marketplace.add_order("order-2", "item-bare")

        desk.monitor.run_cycle()

        assert desk.store.get_trade_by_order_id("order-2") is None

    def test_completed_orders_not_listed(self, desk):
        _listing_with_payout(desk.store)
        desk.marketplace.add_order("order-1", "item-1", status=30)

        result = desk.monitor.run_cycle()

        assert result.orders_seen == 0


class TestTrackedOrders:
    def test_missing_order_cancels_trade(self, desk):
        seeded = seed_trade(desk.store)

        result = desk.monitor.run_cycle()

        trade = desk.store.get_trade(seeded.trade.id)
        assert result.cancellations == 1
        assert trade.status == TradeStatus.CANCELLED_BY_COUNTERPARTY.value
        assert trade.failure_reason == "Order no longer exists on marketplace"
        assert trade.cancelled_at is not None

    def test_cancelled_order_cancels_trade(self, desk):
        seeded = seed_trade(desk.store)
        desk.marketplace.add_order("order-1", "item-1", status=40)

        desk.monitor.run_cycle()

        trade = desk.store.get_trade(seeded.trade.id)
        assert trade.status == TradeStatus.CANCELLED_BY_COUNTERPARTY.value
        assert trade.failure_reason == "Order Cancelled on marketplace"

    def test_lookup_failure_leaves_trade_alone(self, desk):
        seeded = seed_trade(desk.store)
        desk.marketplace.add_order("order-1", "item-1")
        desk.marketplace.fail_order_lookup = True

        result = desk.monitor.run_cycle()

        assert result.errors == 1
        assert desk.store.get_trade(seeded.trade.id).status != TradeStatus.CANCELLED_BY_COUNTERPARTY.value

    def test_test_orders_never_checked_remotely(self, desk):
        seeded = seed_trade(desk.store, order_id="test_1")

        desk.monitor.run_cycle()

        assert desk.store.get_trade(seeded.trade.id).status == TradeStatus.PENDING.value

    def test_terminal_trades_ignored(self, desk):
        seeded = seed_trade(desk.store, status=TradeStatus.COMPLETED.value)

        result = desk.monitor.run_cycle()

        assert result.cancellations == 0
        assert desk.store.get_trade(seeded.trade.id).status == TradeStatus.COMPLETED.value

    def test_account_listing_failure(self, desk):
        with patch.object(desk.marketplace, "get_active_accounts", side_effect=RuntimeError("boom")):
            result = desk.monitor.run_cycle()
        assert result.errors == 1
        assert result.accounts == 0


class TestChatSync:
    def test_sender_classified_by_user_id(self, desk):
        seeded = seed_trade(desk.store, chat_step=CHAT_STEP_QUESTION_ASKED)
        desk.marketplace.add_order("order-1", "item-1")
        desk.marketplace.counterparty_says("order-1", "Да", message_id="cp-x")
        desk.marketplace.counterparty_says("order-1", "   ", message_id="cp-empty")
        account = desk.marketplace.accounts[0]

        stored = desk.monitor.sync_chat(account, seeded.trade)

        assert stored == 1
        messages = desk.store.list_chat_messages(seeded.trade.id)
        assert [(m.message_id, m.sender) for m in messages] == [("cp-x", SENDER_COUNTERPARTY)]
        assert desk.monitor.sync_chat(account, seeded.trade) == 0

    def test_handoff_prefers_pending_messages(self, desk):
        trade = seed_trade(desk.store).trade
        desk.store.add_chat_message(trade.id, "cp-1", SENDER_COUNTERPARTY, "Здравствуйте")

        with patch.object(desk.chat, "process_pending") as process, patch.object(desk.chat, "start") as start:
            desk.monitor.handoff(trade.id)

        process.assert_called_once_with(trade.id)
        start.assert_not_called()

    def test_handoff_skips_terminal(self, desk):
        trade = seed_trade(desk.store, status=TradeStatus.STUPID.value).trade

        with patch.object(desk.chat, "start") as start:
            desk.monitor.handoff(trade.id)

        start.assert_not_called()


class TestChatPollers:
    def _monitor(self, desk):
        return OrderMonitor(desk.store, desk.marketplace, desk.chat, desk.locks, chat_poll_interval=0.01)

    def test_one_poller_per_order(self, desk):
        monitor = self._monitor(desk)
        trade = seed_trade(desk.store).trade
        account = desk.marketplace.accounts[0]

        with patch.object(ChatPoller, "start") as start:
            assert monitor.ensure_chat_poller(account, trade) is True
            assert monitor.ensure_chat_poller(account, trade) is False

        start.assert_called_once()
        assert monitor.active_pollers() == ["order-1"]

    def test_no_pollers_after_stop(self, desk):
        monitor = self._monitor(desk)
        trade = seed_trade(desk.store).trade
        monitor.stop()

        with patch.object(ChatPoller, "start") as start:
            assert monitor.ensure_chat_poller(desk.marketplace.accounts[0], trade) is False
        start.assert_not_called()

    def test_tick_syncs_and_hands_off(self, desk):
        seeded = seed_trade(desk.store, chat_step=CHAT_STEP_QUESTION_ASKED)
        desk.marketplace.add_order("order-1", "item-1")
        desk.marketplace.counterparty_says("order-1", "Да")
        poller = ChatPoller(desk.monitor, desk.marketplace.accounts[0], seeded.trade.id, "order-1", 0.01)

        assert poller.tick() is True
        assert desk.store.list_unprocessed_counterparty_messages(seeded.trade.id) == []
        assert any("Сумма:" in text for text in desk.marketplace.texts_sent("order-1"))

    def test_tick_ends_for_terminal_trade(self, desk):
        seeded = seed_trade(desk.store, status=TradeStatus.CANCELLED.value)
        poller = ChatPoller(desk.monitor, desk.marketplace.accounts[0], seeded.trade.id, "order-1", 0.01)

        assert poller.tick() is False
