"""
P2P Desk Core: Settlement Workflow

Approves payouts on the payment platform once a receipt is linked, then
releases the marketplace order after a grace delay.

Idempotent: approving an already approved payout yields the same end state
(trade release_money, payout status 7) without raising.
"""

import logging
import os
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from core.clients import MarketplaceClient, PaymentPlatform
from core.exceptions import is_already_approved, is_already_done
from core.models import (
    SETTLEMENT_PAYOUT_STATUSES,
    SETTLEMENT_READY_STATUSES,
    PayoutStatus,
    TradeStatus,
    utcnow,
)
from core.store import DeskStore
from infra.events import TRADE_UPDATED, EventBus
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

DEFAULT_RELEASE_DELAY_SECONDS = 120


@dataclass
class SettlementCycleResult:
    examined: int = 0
    approved: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0


class SettlementWorkflow:
    def __init__(
        self,
        store: DeskStore,
        payments: PaymentPlatform,
        chat,
        locks: KeyedLockTable,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.payments = payments
        self.chat = chat
        self.locks = locks
        self.events = events
        self.metrics = metrics

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_settlement(outcome)

    def approve(self, gate_payout_id: str, receipt_path: str) -> bool:
        """
        Approve one payout with its receipt attached.

        Returns:
            True on success or when the platform reports it already approved
        """
        try:
            self.payments.approve_payout(gate_payout_id, receipt_path)
        except Exception as exc:
            if is_already_approved(exc):
                logger.info("Payout %s already approved (%s)", gate_payout_id, exc)
                self._record("already_approved")
                return True
            logger.error("Approval of payout %s failed: %s", gate_payout_id, exc)
            self._record("failed")
            return False
        logger.info("Payout %s approved", gate_payout_id)
        self._record("approved")
        return True

    def approve_with_receipt(self, trade_id: str, payout_id: str, receipt_path: str) -> bool:
        """Direct entry point used once a receipt is linked to the trade's payout."""
        with self.locks.hold(f"settle:{trade_id}") as acquired:
            if not acquired:
                logger.debug("Settlement for trade %s already in flight", trade_id)
                return False
            return self._settle(trade_id, payout_id, receipt_path)

    def _settle(self, trade_id: str, payout_id: str, receipt_path: str) -> bool:
        trade = self.store.get_trade(trade_id)
        payout = self.store.get_payout(payout_id)
        if trade is None or payout is None:
            logger.warning("Cannot settle trade %s: trade or payout %s missing", trade_id, payout_id)
            return False
        if trade.status in (TradeStatus.RELEASE_MONEY.value, TradeStatus.COMPLETED.value):
            logger.debug("Trade %s already settled (%s)", trade_id, trade.status)
            return True
        if not os.path.exists(receipt_path):
            logger.warning("Receipt file %s for trade %s is missing; will retry", receipt_path, trade_id)
            return False

        if not self.approve(payout.gate_payout_id, receipt_path):
            return False

        now = utcnow()
        self.store.update_trade(trade_id, status=TradeStatus.RELEASE_MONEY.value, approved_at=now)
        self.store.update_payout(payout.id, status=int(PayoutStatus.APPROVED_FOR_RELEASE), approved_at=now)
        logger.info("Trade %s settled: payout %s approved for release", trade_id, payout.gate_payout_id)
        if self.events is not None:
            self.events.emit(TRADE_UPDATED, {"trade_id": trade_id, "status": TradeStatus.RELEASE_MONEY.value})

        try:
            self.chat.send_completion_message(trade_id)
        except Exception as exc:
            logger.error("Failed to send completion message for trade %s: %s", trade_id, exc)
        return True

    def check_and_release(self) -> SettlementCycleResult:
        """Sweep trades holding a receipt whose payout still needs approval."""
        started = time.monotonic()
        result = SettlementCycleResult()
        for trade in self.store.list_trades_by_status(SETTLEMENT_READY_STATUSES):
            result.examined += 1
            if trade.receipt_received_at is None or not trade.payout_id:
                result.skipped += 1
                continue
            payout = self.store.get_payout(trade.payout_id)
            if payout is None or not payout.gate_payout_id or payout.status not in SETTLEMENT_PAYOUT_STATUSES:
                result.skipped += 1
                continue
            receipt = self.store.get_receipt_by_payout_id(payout.id)
            if receipt is None or not receipt.file_path or not os.path.exists(receipt.file_path):
                logger.debug("No receipt file yet for trade %s", trade.id)
                result.skipped += 1
                continue

            if self.approve_with_receipt(trade.id, payout.id, receipt.file_path):
                result.approved += 1
            else:
                result.failed += 1

        result.duration_seconds = time.monotonic() - started
        if result.approved or result.failed:
            logger.info(
                "Settlement sweep: approved=%s failed=%s examined=%s",
                result.approved, result.failed, result.examined,
            )
        return result


class MoneyReleaseJob:
    """Releases marketplace orders whose payout was approved long enough ago."""

    def __init__(
        self,
        store: DeskStore,
        marketplace: MarketplaceClient,
        locks: KeyedLockTable,
        *,
        release_delay_seconds: float = DEFAULT_RELEASE_DELAY_SECONDS,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.marketplace = marketplace
        self.locks = locks
        self.release_delay = timedelta(seconds=float(release_delay_seconds))
        self.events = events
        self.metrics = metrics

    def run_cycle(self) -> int:
        """Returns the number of trades completed this tick."""
        cutoff = utcnow() - self.release_delay
        completed = 0
        for trade in self.store.list_trades_by_status([TradeStatus.RELEASE_MONEY.value]):
            if trade.approved_at is None or trade.approved_at > cutoff or not trade.order_id:
                continue
            with self.locks.hold(f"release:{trade.id}") as acquired:
                if not acquired:
                    continue
                if self._release(trade):
                    completed += 1
        return completed

    def _release(self, trade) -> bool:
        if not trade.is_test_order():
            ad = self.store.get_advertisement(trade.advertisement_id)
            if ad is None:
                logger.warning("Trade %s has no listing; cannot release order %s", trade.id, trade.order_id)
                return False
            try:
                self.marketplace.release_assets(ad.account_id, trade.order_id)
            except Exception as exc:
                if not is_already_done(exc):
                    logger.error("Release of order %s failed: %s", trade.order_id, exc)
                    return False
                logger.info("Order %s already released (%s)", trade.order_id, exc)

        moved = self.store.transition_trade(
            trade.id,
            [TradeStatus.RELEASE_MONEY.value],
            TradeStatus.COMPLETED.value,
            completed_at=utcnow(),
        )
        if moved:
            logger.info("Trade %s completed: order %s released", trade.id, trade.order_id)
            if self.metrics is not None:
                self.metrics.record_trade_event("completed")
            if self.events is not None:
                self.events.emit(TRADE_UPDATED, {"trade_id": trade.id, "status": TradeStatus.COMPLETED.value})
        return moved
