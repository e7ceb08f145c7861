"""
Tests for the payout feed: mirroring payouts from the payment platform and
publishing one listing per payout.
"""
import pytest

from core.chat_automation import DEFAULT_QUESTION
from core.clients import MarketplaceAccount, RemotePayout
from core.exceptions import ExternalServiceError
from core.models import PayoutStatus, TradeStatus
from core.payout_feed import ListingCreator, PayoutSyncJob
from core.services import StaticRateProvider
from tests.helpers import minutes_ago, seed_trade


def remote_payout(gate_id="gp-1", status=5, amount=5000.0, **overrides):
    fields = dict(
        gate_payout_id=gate_id,
        status=status,
        wallet="+79123456789",
        amount_trader={"643": amount} if amount is not None else {},
        total_trader={"643": amount} if amount is not None else {},
        bank_name="Сбербанк",
        meta={"courses": {"trader": 95}},
        created_at=minutes_ago(30),
    )
    fields.update(overrides)
    return RemotePayout(**fields)


@pytest.fixture
def sync(desk):
    return PayoutSyncJob(desk.store, desk.payments, metrics=desk.metrics)


@pytest.fixture
def creator(desk):
    return ListingCreator(
        desk.store,
        desk.marketplace,
        desk.locks,
        {"main": {"SBP": "pm-sbp", "Tinkoff": "pm-tinkoff"}},
        events=desk.events,
        metrics=desk.metrics,
    )


class TestPayoutSync:
    def test_new_payouts_are_stored(self, desk, sync):
        desk.payments.remote_payouts = [remote_payout("gp-1"), remote_payout("gp-2", amount=7000.0)]

        result = sync.run_cycle()

        assert (result.fetched, result.created, result.errors) == (2, 2, 0)
        payout = desk.store.get_payout_by_gate_id("gp-2")
        assert payout.status == PayoutStatus.PENDING_REVIEW
        assert payout.settlement_amount() == 7000.0
        assert payout.bank_name == "Сбербанк"
        assert payout.meta == {"courses": {"trader": 95}}
        assert desk.metrics.count("trade:payout_synced") == 2

    def test_second_cycle_is_idempotent(self, desk, sync):
        desk.payments.remote_payouts = [remote_payout("gp-1")]
        sync.run_cycle()

        result = sync.run_cycle()

        assert (result.created, result.updated) == (0, 0)
        assert len(desk.store.list_payouts_created_between()) == 1

    def test_only_requested_statuses_are_fetched(self, desk, sync):
        desk.payments.remote_payouts = [remote_payout("gp-1"), remote_payout("gp-4", status=4)]

        sync.run_cycle()

        assert desk.store.get_payout_by_gate_id("gp-4") is None

    def test_local_approval_is_not_undone(self, desk, sync):
        seeded = seed_trade(desk.store, gate_payout_id="gp-1")
        desk.store.update_payout(seeded.payout.id, status=int(PayoutStatus.APPROVED_FOR_RELEASE))
        desk.payments.remote_payouts = [remote_payout("gp-1", status=5)]

        result = sync.run_cycle()

        assert result.updated == 0
        assert desk.store.get_payout(seeded.payout.id).status == PayoutStatus.APPROVED_FOR_RELEASE

    def test_missing_contact_details_are_filled(self, desk, sync):
        payout = desk.store.create_payout("gp-1", "", {"643": 5000.0}, status=5)
        desk.payments.remote_payouts = [remote_payout("gp-1", recipient_name="Иван П.")]

        result = sync.run_cycle()

        assert result.updated == 1
        stored = desk.store.get_payout(payout.id)
        assert stored.wallet == "+79123456789"
        assert stored.bank_name == "Сбербанк"
        assert stored.recipient_name == "Иван П."

    def test_platform_failure_propagates(self, desk, sync):
        desk.payments.list_error = ExternalServiceError("/payments/payouts", ConnectionError("timeout"))

        with pytest.raises(ExternalServiceError):
            sync.run_cycle()


class TestListingCreator:
    def test_publishes_listing_and_pending_trade(self, desk, creator):
        payout = desk.store.create_payout("gp-1", "+79123456789", {"643": 5000.0}, status=5)

        result = creator.run_cycle()

        assert (result.pending, result.created) == (1, 1)
        account_id, item_id, listing = desk.marketplace.created_listings[0]
        assert account_id == "main"
        assert listing.amount == 5000.0
        assert listing.price == 85.0
        assert listing.quantity == round(5000.0 / 85.0 + 5.0, 2)
        assert listing.payment_method_id == "pm-sbp"

        ad = desk.store.get_advertisement_by_item_id(item_id)
        assert ad.payout_id == payout.id and ad.is_active and ad.payment_method == "SBP"
        trade = desk.store.get_trade_by_payout_id(payout.id)
        assert trade.advertisement_id == ad.id
        assert trade.order_id is None
        assert trade.status == TradeStatus.PENDING.value
        assert desk.metrics.count("trade:listed") == 1

    def test_price_follows_rate_provider(self, desk):
        creator = ListingCreator(
            desk.store, desk.marketplace, desk.locks, {"main": {"SBP": "pm-sbp"}},
            rate_provider=StaticRateProvider(95.0),
        )
        desk.store.create_payout("gp-1", "+79123456789", {"643": 9500.0}, status=5)

        creator.run_cycle()

        listing = desk.marketplace.created_listings[0][2]
        assert listing.price == 95.0
        assert listing.quantity == 105.0

    def test_payment_methods_alternate(self, desk, creator):
        desk.store.create_payout("gp-1", "+79123456789", {"643": 5000.0}, status=5)
        desk.store.create_payout("gp-2", "+79123456780", {"643": 6000.0}, status=5)

        creator.run_cycle()

        methods = [listing.payment_method_id for _, _, listing in desk.marketplace.created_listings]
        assert methods == ["pm-sbp", "pm-tinkoff"]

    def test_full_accounts_defer_payouts(self, desk, creator):
        for index in range(3):
            desk.store.create_payout(f"gp-{index}", "+79123456789", {"643": 1000.0 + index}, status=5)

        result = creator.run_cycle()

        assert (result.created, result.waiting) == (2, 1)
        assert len(desk.marketplace.created_listings) == 2

        ad = desk.store.get_advertisement_by_item_id(desk.marketplace.created_listings[0][1])
        desk.store.set_advertisement_active(ad.id, False)
        result = creator.run_cycle()

        assert (result.pending, result.created, result.waiting) == (1, 1, 0)

    def test_second_account_takes_overflow(self, desk):
        desk.marketplace.accounts.append(MarketplaceAccount(account_id="spare", user_id="1002"))
        creator = ListingCreator(
            desk.store, desk.marketplace, desk.locks,
            {"main": {"SBP": "pm-1"}, "spare": {"SBP": "pm-2"}}, max_per_account=1,
        )
        desk.store.create_payout("gp-1", "+79123456789", {"643": 1000.0}, status=5)
        desk.store.create_payout("gp-2", "+79123456789", {"643": 2000.0}, status=5)

        creator.run_cycle()

        assert [account for account, _, _ in desk.marketplace.created_listings] == ["main", "spare"]

    def test_accounts_without_payment_methods_are_skipped(self, desk):
        creator = ListingCreator(desk.store, desk.marketplace, desk.locks, {})
        desk.store.create_payout("gp-1", "+79123456789", {"643": 1000.0}, status=5)

        result = creator.run_cycle()

        assert (result.created, result.waiting) == (0, 1)
        assert desk.marketplace.created_listings == []

    def test_payout_without_amount_is_skipped(self, desk, creator):
        desk.store.create_payout("gp-1", "+79123456789", {}, status=5)

        result = creator.run_cycle()

        assert (result.skipped, result.created) == (1, 0)
        assert desk.marketplace.created_listings == []

    def test_served_payouts_are_left_alone(self, desk, creator):
        seed_trade(desk.store)
        desk.store.create_payout("gp-4", "+79123456789", {"643": 1000.0}, status=4)

        result = creator.run_cycle()

        assert result.pending == 0
        assert desk.marketplace.created_listings == []

    def test_marketplace_failure_is_retried_next_cycle(self, desk, creator):
        payout = desk.store.create_payout("gp-1", "+79123456789", {"643": 5000.0}, status=5)
        desk.marketplace.create_error = ExternalServiceError("/v5/p2p/item/create retCode=912120022: limit")

        result = creator.run_cycle()

        assert result.errors == 1
        assert desk.store.get_trade_by_payout_id(payout.id) is None

        desk.marketplace.create_error = None
        assert creator.run_cycle().created == 1

    def test_create_for_payout_returns_existing_trade(self, desk, creator):
        seeded = seed_trade(desk.store)

        assert creator.create_for_payout(seeded.payout).id == seeded.trade.id
        assert desk.marketplace.created_listings == []

    def test_create_for_payout_rejects_non_positive_amount(self, desk, creator):
        payout = desk.store.create_payout("gp-1", "+79123456789", {"643": 0.0}, status=5)

        with pytest.raises(ValueError, match="no positive RUB amount"):
            creator.create_for_payout(payout)


def test_synced_payout_reaches_the_chat(desk, sync, creator):
    """Platform payout → listing → incoming order → question in chat"""
    desk.payments.remote_payouts = [remote_payout("gp-1")]
    sync.run_cycle()
    creator.run_cycle()
    item_id = desk.marketplace.created_listings[0][1]

    desk.marketplace.add_order("order-1", item_id)
    desk.monitor.run_cycle()

    trade = desk.store.get_trade_by_order_id("order-1")
    payout = desk.store.get_payout_by_gate_id("gp-1")
    assert trade.payout_id == payout.id
    assert desk.marketplace.texts_sent("order-1") == [DEFAULT_QUESTION]
