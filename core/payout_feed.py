"""
P2P Desk Core: Payout Feed

Front of the pipeline. PayoutSyncJob mirrors accepted payouts from the
payment platform into the store; ListingCreator publishes one sell listing
per mirrored payout and opens the pending trade that the order monitor later
binds to the incoming order.

Listing rules:
- at most `max_per_account` active listings per marketplace account
- when every account is full the payout waits for the next cycle
- an account alternates payment methods between its active listings
- price comes from the rate provider, else the configured default
- quantity covers the payout amount plus a fixed coin buffer
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from core.clients import ListingRequest, MarketplaceClient, PaymentPlatform, RateProvider
from core.models import Advertisement, Payout, PayoutStatus, Trade
from core.store import DeskStore
from infra.events import TRADE_UPDATED, EventBus
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

DEFAULT_LISTING_PRICE = 85.0
QUANTITY_BUFFER = 5.0
MAX_LISTINGS_PER_ACCOUNT = 2


@dataclass
class PayoutSyncResult:
    fetched: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0


class PayoutSyncJob:
    """Upserts payouts listed by the payment platform, keyed by their platform id."""

    def __init__(
        self,
        store: DeskStore,
        payments: PaymentPlatform,
        *,
        statuses: Sequence[int] = (PayoutStatus.PENDING_REVIEW,),
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.payments = payments
        self.statuses = [int(status) for status in statuses]
        self.metrics = metrics

    def run_cycle(self) -> PayoutSyncResult:
        result = PayoutSyncResult()
        remote_payouts = self.payments.list_payouts(self.statuses)
        result.fetched = len(remote_payouts)

        for remote in remote_payouts:
            try:
                payout, outcome = self.store.upsert_payout(
                    remote.gate_payout_id,
                    status=remote.status,
                    wallet=remote.wallet,
                    approved_at=remote.approved_at,
                    amount_trader=remote.amount_trader,
                    total_trader=remote.total_trader,
                    bank_name=remote.bank_name,
                    recipient_name=remote.recipient_name,
                    meta=remote.meta,
                    created_at=remote.created_at,
                )
            except Exception as exc:
                result.errors += 1
                logger.error("Failed to store payout %s: %s", remote.gate_payout_id, exc)
                continue

            if outcome == "created":
                result.created += 1
                logger.info(
                    "Payout %s saved (status %s, %s RUB)",
                    payout.gate_payout_id, payout.status, payout.settlement_amount(),
                )
                if self.metrics is not None:
                    self.metrics.record_trade_event("payout_synced")
            elif outcome == "updated":
                result.updated += 1

        if result.created or result.errors:
            logger.info(
                "Payout sync: %s fetched, %s new, %s errors", result.fetched, result.created, result.errors
            )
        return result


@dataclass
class ListingCycleResult:
    pending: int = 0
    created: int = 0
    waiting: int = 0
    skipped: int = 0
    errors: int = 0


class ListingCreator:
    def __init__(
        self,
        store: DeskStore,
        marketplace: MarketplaceClient,
        locks: KeyedLockTable,
        payment_methods: Dict[str, Dict[str, str]],
        *,
        rate_provider: Optional[RateProvider] = None,
        default_price: float = DEFAULT_LISTING_PRICE,
        quantity_buffer: float = QUANTITY_BUFFER,
        max_per_account: int = MAX_LISTINGS_PER_ACCOUNT,
        remark: str = "",
        payment_period_minutes: int = 15,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.marketplace = marketplace
        self.locks = locks
        # account id -> {payment method name -> marketplace payment id}
        self.payment_methods = {account: dict(methods) for account, methods in payment_methods.items()}
        self.rate_provider = rate_provider
        self.default_price = float(default_price)
        self.quantity_buffer = float(quantity_buffer)
        self.max_per_account = int(max_per_account)
        self.remark = remark
        self.payment_period_minutes = int(payment_period_minutes)
        self.events = events
        self.metrics = metrics

    def run_cycle(self) -> ListingCycleResult:
        result = ListingCycleResult()
        payouts = self.store.list_payouts_without_listing(PayoutStatus.PENDING_REVIEW)
        result.pending = len(payouts)

        for index, payout in enumerate(payouts):
            amount = payout.settlement_amount()
            if not amount or amount <= 0:
                result.skipped += 1
                logger.warning("Payout %s has no positive RUB amount; not listing it", payout.gate_payout_id)
                continue
            try:
                trade = self.create_for_payout(payout)
            except Exception as exc:
                result.errors += 1
                logger.error("Failed to list payout %s: %s", payout.gate_payout_id, exc)
                continue
            if trade is None:
                result.waiting = len(payouts) - index
                logger.info("All marketplace accounts are at capacity; %s payout(s) wait", result.waiting)
                break
            result.created += 1
        return result

    def listing_price(self) -> float:
        rate = self.rate_provider.get_rate() if self.rate_provider is not None else None
        return float(rate) if rate else self.default_price

    def quantity_for(self, amount: float, price: float) -> float:
        return round(amount / price + self.quantity_buffer, 2)

    def pick_slot(self) -> Optional[Tuple[str, str, str]]:
        """(account id, payment method name, payment id) with free capacity, or None."""
        for account in self.marketplace.get_active_accounts():
            methods = self.payment_methods.get(account.account_id)
            if not methods:
                continue
            active = self.store.list_active_advertisements(account.account_id)
            if len(active) >= self.max_per_account:
                continue
            name = self._choose_method(list(methods), active)
            return account.account_id, name, methods[name]
        return None

    @staticmethod
    def _choose_method(names: List[str], active: List[Advertisement]) -> str:
        in_use = {ad.payment_method for ad in active}
        for name in names:
            if name not in in_use:
                return name
        return names[0]

    def create_for_payout(self, payout: Payout) -> Optional[Trade]:
        """
        Publish a listing for the payout and open its pending trade.

        Returns the trade (the existing one when the payout is already
        served), or None when no account has room for another listing.

        Raises:
            ValueError: the payout has no positive RUB amount
        """
        amount = payout.settlement_amount()
        if not amount or amount <= 0:
            raise ValueError(f"Payout {payout.gate_payout_id} has no positive RUB amount")

        with self.locks.hold(f"payout:{payout.id}") as acquired:
            if not acquired:
                return self.store.get_trade_by_payout_id(payout.id)

            existing = self.store.get_trade_by_payout_id(payout.id)
            if existing is not None:
                return existing

            slot = self.pick_slot()
            if slot is None:
                return None
            account_id, method_name, payment_id = slot

            price = self.listing_price()
            listing = ListingRequest(
                amount=amount,
                price=price,
                quantity=self.quantity_for(amount, price),
                payment_method_id=payment_id,
                remark=self.remark,
                payment_period_minutes=self.payment_period_minutes,
            )
            item_id = self.marketplace.create_advertisement(account_id, listing)
            ad = self.store.create_advertisement(
                item_id, account_id, payout_id=payout.id, payment_method=method_name
            )
            trade = self.store.create_trade(ad.id, payout_id=payout.id)

        logger.info(
            "Listing %s (%s, %s) opened for payout %s: %.2f RUB at %.2f, quantity %.2f",
            item_id, account_id, method_name, payout.gate_payout_id, amount, price, listing.quantity,
        )
        if self.metrics is not None:
            self.metrics.record_trade_event("listed")
        if self.events is not None:
            self.events.emit(TRADE_UPDATED, {"trade_id": trade.id, "status": trade.status})
        return trade
