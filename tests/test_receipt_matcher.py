"""
Tests for receipt → payout matching and linking.

Rules are tried in order card, phone, name, amount+time; the first rule that
finds a payout wins. Linking drives the owning trade through settlement.
"""
from datetime import timedelta

import pytest

from core.exceptions import ExternalServiceError
from core.models import (
    CHAT_STEP_DETAILS_SENT,
    PayoutStatus,
    TradeStatus,
)
from core.receipt_matcher import (
    MATCH_AMOUNT_TIME,
    MATCH_CARD,
    MATCH_NAME,
    MATCH_PHONE,
    ReceiptMatcher,
    card_fragments,
    normalize_phone,
)
from infra.events import RECEIPT_LINKED
from tests.helpers import add_parsed_receipt, minutes_ago, seed_trade


@pytest.fixture
def matcher(store):
    return ReceiptMatcher(store)


class TestNormalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("+7 (912) 345-67-89", "9123456789"),
            ("89123456789", "9123456789"),
            ("79123456789", "9123456789"),
            ("9123456789", "9123456789"),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_card_fragments(self):
        assert card_fragments("220024******2091") == ("220024", "2091")
        assert card_fragments("2200 24** **** 2091") == ("220024", "2091")
        assert card_fragments("*4207") == ("", "4207")
        assert card_fragments("") is None
        assert card_fragments("******") is None


class TestMatchRules:
    def test_card_beats_phone(self, store, tmp_path, matcher):
        """Receipt matchable by both rules links to the card payout"""
        card_payout = seed_trade(store, gate_payout_id="gp-card", item_id="i-card", order_id="o-card",
                                 wallet="2200241234562091").payout
        seed_trade(store, gate_payout_id="gp-phone", item_id="i-phone", order_id="o-phone",
                   wallet="+79123456789")
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"),
                                     card="220024******2091", phone="+7 (912) 345-67-89")

        result = matcher.match(receipt)

        assert result.rule == MATCH_CARD
        assert result.payout.id == card_payout.id

    def test_phone_match(self, store, tmp_path, matcher):
        payout = seed_trade(store, wallet="+7 912 345-67-89").payout
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), phone="+7 (912) 345-67-89")

        result = matcher.match(receipt)

        assert result.rule == MATCH_PHONE
        assert result.payout.id == payout.id

    def test_tbank_last_four(self, store, tmp_path, matcher):
        payout = seed_trade(store, wallet="5536913812344207").payout
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), card="*4207", recipient_name="Мария К.")

        result = matcher.match(receipt)

        assert result.rule == MATCH_CARD
        assert result.payout.id == payout.id

    def test_name_match(self, store, tmp_path, matcher):
        payout = seed_trade(store, wallet="+79990000000", recipient_name="Анна Сергеевна С.").payout
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), phone="+79123456789",
                                     recipient_name="Анна Сергеевна С.",
                                     transaction_date=minutes_ago(600))

        result = matcher.match(receipt)

        assert result.rule == MATCH_NAME
        assert result.payout.id == payout.id

    def test_amount_and_time_fallback(self, store, tmp_path, matcher):
        payout = seed_trade(store, wallet="4000000000000000", payout_created_at=minutes_ago(10)).payout
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), card="*9999")

        result = matcher.match(receipt)

        assert result.rule == MATCH_AMOUNT_TIME
        assert result.payout.id == payout.id

    def test_amount_and_time_prefers_newest(self, store, tmp_path, matcher):
        """Known approximation: same amount inside the window, the newest payout wins"""
        seed_trade(store, gate_payout_id="older", item_id="i-1", order_id="o-1",
                   wallet="4000000000000001", payout_created_at=minutes_ago(20))
        newer = seed_trade(store, gate_payout_id="newer", item_id="i-2", order_id="o-2",
                           wallet="4000000000000002", payout_created_at=minutes_ago(5)).payout
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), card="*9999")

        assert matcher.match(receipt).payout.id == newer.id

    def test_amount_and_time_window(self, store, tmp_path, matcher):
        seed_trade(store, wallet="4000000000000000", payout_created_at=minutes_ago(90))
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), card="*9999")

        assert matcher.match(receipt) is None

    def test_amount_compared_on_rub_leg(self, store, tmp_path, matcher):
        """The USDT leg of a payout never matches a receipt amount"""
        seed_trade(store, amount=5000.0)
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), amount=52.63, phone="+79123456789")

        assert matcher.match(receipt) is None

    def test_day_window(self, store, tmp_path, matcher):
        seed_trade(store, payout_created_at=minutes_ago(60 * 24 * 3))
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), phone="+79123456789")

        assert matcher.match(receipt) is None

    def test_linked_payout_not_offered_again(self, store, tmp_path, matcher):
        payout = seed_trade(store).payout
        first = add_parsed_receipt(store, str(tmp_path / "r1.pdf"), phone="+79123456789")
        store.link_receipt(first.id, payout.id)
        second = add_parsed_receipt(store, str(tmp_path / "r2.pdf"), phone="+79123456789")

        assert matcher.match(second) is None

    def test_receipt_without_phone_or_card(self, store, tmp_path, matcher):
        seed_trade(store, payout_created_at=minutes_ago(5))
        receipt = add_parsed_receipt(store, str(tmp_path / "r.pdf"), recipient_name="Анна С.")

        assert matcher.match(receipt) is None


class TestLinker:
    def test_link_settles_trade(self, desk, tmp_path):
        seeded = seed_trade(desk.store, status=TradeStatus.WAITING_PAYMENT.value,
                            chat_step=CHAT_STEP_DETAILS_SENT)
        receipt = add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789",
                                     operation_id="A5301")

        result = desk.linker.run_cycle()

        assert (result.examined, result.linked, result.settled, result.errors) == (1, 1, 1, 0)
        assert result.rules == {MATCH_PHONE: 1}

        linked = desk.store.get_receipt(receipt.id)
        assert linked.payout_id == seeded.payout.id
        assert linked.is_processed

        trade = desk.store.get_trade(seeded.trade.id)
        assert trade.status == TradeStatus.RELEASE_MONEY.value
        assert trade.receipt_received_at is not None
        assert trade.approved_at is not None
        assert desk.store.get_payout(seeded.payout.id).status == PayoutStatus.APPROVED_FOR_RELEASE
        assert desk.payments.approvals == [("gp-1", str(tmp_path / "r.pdf"))]

        sent = desk.marketplace.texts_sent("order-1")
        assert any("A5301" in text and "5000" in text for text in sent)
        assert sent[-1] == desk.chat.texts.completion
        assert desk.store.get_advertisement(seeded.ad.id).is_active is False
        assert desk.marketplace.cancelled_items == ["item-1"]
        assert desk.metrics.count("receipt:linked_phone") == 1
        assert desk.events.emitted_count(RECEIPT_LINKED) == 1

    def test_second_cycle_is_noop(self, desk, tmp_path):
        seed_trade(desk.store, status=TradeStatus.WAITING_PAYMENT.value)
        add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789")

        desk.linker.run_cycle()
        result = desk.linker.run_cycle()

        assert result.examined == 0
        assert len(desk.payments.approvals) == 1

    def test_payout_without_trade_is_parked(self, desk, tmp_path):
        payout = desk.store.create_payout("gp-free", "+79123456789", {"643": 5000.0}, status=5)
        receipt = add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789")

        result = desk.linker.run_cycle()

        assert result.linked == 1
        assert result.settled == 0
        assert desk.store.get_receipt(receipt.id).payout_id == payout.id
        assert desk.payments.approvals == []

    def test_terminal_trade_not_settled(self, desk, tmp_path):
        seeded = seed_trade(desk.store, status=TradeStatus.CANCELLED_BY_COUNTERPARTY.value)
        add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789")

        desk.linker.run_cycle()

        assert desk.payments.approvals == []
        assert desk.store.get_trade(seeded.trade.id).status == TradeStatus.CANCELLED_BY_COUNTERPARTY.value

    def test_failed_approval_left_for_sweep(self, desk, tmp_path):
        seeded = seed_trade(desk.store, status=TradeStatus.WAITING_PAYMENT.value)
        add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789")
        desk.payments.error = ExternalServiceError("/payments/payouts/gp-1/approve", RuntimeError("502"))

        result = desk.linker.run_cycle()

        assert result.linked == 1
        assert result.settled == 0
        trade = desk.store.get_trade(seeded.trade.id)
        assert trade.status == TradeStatus.RECEIPT_RECEIVED.value
        assert desk.store.get_payout(seeded.payout.id).status == PayoutStatus.PENDING_REVIEW

        desk.payments.error = None
        sweep = desk.settlement.check_and_release()

        assert sweep.approved == 1
        assert desk.store.get_trade(seeded.trade.id).status == TradeStatus.RELEASE_MONEY.value

    def test_unmatched_receipt_stays_linkable(self, desk, tmp_path):
        seed_trade(desk.store, amount=7000.0)
        receipt = add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789")

        result = desk.linker.run_cycle()

        assert result.linked == 0
        assert [r.id for r in desk.store.list_linkable_receipts()] == [receipt.id]

    def test_receipt_locked_elsewhere_is_skipped(self, desk, tmp_path):
        seed_trade(desk.store)
        receipt = add_parsed_receipt(desk.store, str(tmp_path / "r.pdf"), phone="+79123456789")

        with desk.locks.hold(f"receipt:{receipt.id}"):
            result = desk.linker.run_cycle()

        assert result.linked == 0
        assert desk.store.get_receipt(receipt.id).payout_id is None


def test_window_constant_is_thirty_minutes():
    from core.receipt_matcher import AMOUNT_TIME_WINDOW

    assert AMOUNT_TIME_WINDOW == timedelta(minutes=30)
