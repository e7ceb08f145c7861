"""
P2P Desk Core: Receipt Matching Engine

Finds the single payout a parsed bank receipt settles, then links them and
hands the trade to settlement.

Rules, first non-empty result wins:
1. card    - visible first-6/last-4 digits are wallet prefix/suffix, same RUB amount, ±1 day
2. phone   - normalized phone contained in wallet, same RUB amount, ±1 day
3. name    - recipient name in payout name/wallet/meta, same RUB amount, ±1 day
4. amount  - same RUB amount within ±30 minutes (approximation: two payouts of
             the same amount inside the window cannot be told apart; the
             newest wins)

A payout already linked to a different receipt is never a candidate.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from core.exceptions import PayoutAlreadyLinked
from core.models import SETTLEMENT_CURRENCY_CODE, Payout, Receipt, TradeStatus, utcnow
from core.store import DeskStore
from infra.events import RECEIPT_LINKED, EventBus
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

DAY_WINDOW = timedelta(days=1)
AMOUNT_TIME_WINDOW = timedelta(minutes=30)
AMOUNT_TOLERANCE = 0.01

# Parser placeholder for card transfers that carry no recipient name
CARD_TRANSFER_PLACEHOLDER = "Card Transfer"

MATCH_CARD = "card"
MATCH_PHONE = "phone"
MATCH_NAME = "name"
MATCH_AMOUNT_TIME = "amount_time"


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only; 11-digit numbers with a 7/8 country prefix lose the first digit."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits[0] in ("7", "8"):
        digits = digits[1:]
    return digits or None


def card_fragments(card: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Visible (first6, last4) digits of a masked card.

    "220024******2091" -> ("220024", "2091"); "*4207" -> ("", "4207").
    """
    if not card:
        return None
    compact = re.sub(r"\s", "", card)
    parts = [part for part in compact.split("*") if part]
    if not parts:
        return None
    if len(parts) == 1:
        digits = re.sub(r"\D", "", parts[0])
        if compact.startswith("*"):
            return ("", digits[-4:]) if digits else None
        return (digits[:6], digits[-4:]) if digits else None
    first = re.sub(r"\D", "", parts[0])[:6]
    last = re.sub(r"\D", "", parts[-1])[-4:]
    if not first and not last:
        return None
    return first, last


def amounts_equal(payout: Payout, amount: float) -> bool:
    """Receipt amount against the payout's RUB leg (or flat amount)."""
    candidates = []
    rub = payout.amount_trader.get(SETTLEMENT_CURRENCY_CODE)
    if rub is not None:
        candidates.append(float(rub))
    if payout.amount is not None:
        candidates.append(float(payout.amount))
    return any(abs(value - float(amount)) < AMOUNT_TOLERANCE for value in candidates)


@dataclass
class MatchResult:
    payout: Payout
    rule: str


class ReceiptMatcher:
    """Pure matching over payouts stored in the DeskStore."""

    def __init__(self, store: DeskStore):
        self.store = store

    def _candidates(self, receipt: Receipt, window: Optional[timedelta]) -> List[Payout]:
        if receipt.transaction_date is not None and window is not None:
            payouts = self.store.list_payouts_created_between(
                receipt.transaction_date - window,
                receipt.transaction_date + window,
            )
        else:
            payouts = self.store.list_payouts_created_between()
        linked = self.store.linked_payout_ids()
        return [
            payout for payout in payouts
            if amounts_equal(payout, receipt.amount)
            and (payout.id not in linked or payout.id == receipt.payout_id)
        ]

    def _first(self, payouts: List[Payout], predicate: Callable[[Payout], bool]) -> Optional[Payout]:
        for payout in payouts:
            if predicate(payout):
                return payout
        return None

    def match_by_card(self, receipt: Receipt) -> Optional[Payout]:
        fragments = card_fragments(receipt.recipient_card)
        if fragments is None:
            return None
        first6, last4 = fragments

        def predicate(payout: Payout) -> bool:
            wallet = re.sub(r"\s", "", payout.wallet or "")
            if not wallet:
                return False
            if first6 and not wallet.startswith(first6):
                return False
            return wallet.endswith(last4)

        return self._first(self._candidates(receipt, DAY_WINDOW), predicate)

    def match_by_phone(self, receipt: Receipt) -> Optional[Payout]:
        phone = normalize_phone(receipt.recipient_phone)
        if not phone:
            return None

        def predicate(payout: Payout) -> bool:
            return phone in re.sub(r"\D", "", payout.wallet or "")

        return self._first(self._candidates(receipt, DAY_WINDOW), predicate)

    def match_by_name(self, receipt: Receipt) -> Optional[Payout]:
        name = (receipt.recipient_name or "").strip()
        if not name or name == CARD_TRANSFER_PLACEHOLDER:
            return None
        needle = name.lower()

        def predicate(payout: Payout) -> bool:
            haystacks = [
                payout.recipient_name or "",
                payout.wallet or "",
                json.dumps(payout.meta, ensure_ascii=False),
            ]
            return any(needle in hay.lower() for hay in haystacks)

        return self._first(self._candidates(receipt, DAY_WINDOW), predicate)

    def match_by_amount_and_time(self, receipt: Receipt) -> Optional[Payout]:
        if receipt.transaction_date is None:
            return None
        candidates = self._candidates(receipt, AMOUNT_TIME_WINDOW)
        for payout in candidates:
            claimed = self.store.get_receipt_by_payout_id(payout.id)
            if claimed is not None and claimed.id != receipt.id:
                continue
            return payout
        return None

    def match(self, receipt: Receipt) -> Optional[MatchResult]:
        if receipt.amount is None:
            return None
        if not (receipt.recipient_phone or receipt.recipient_card):
            logger.debug("Receipt %s has neither phone nor card; not matchable", receipt.id)
            return None

        rules = (
            (MATCH_CARD, self.match_by_card),
            (MATCH_PHONE, self.match_by_phone),
            (MATCH_NAME, self.match_by_name),
            (MATCH_AMOUNT_TIME, self.match_by_amount_and_time),
        )
        for rule, finder in rules:
            payout = finder(receipt)
            if payout is not None:
                return MatchResult(payout=payout, rule=rule)
        return None


@dataclass
class LinkerCycleResult:
    examined: int = 0
    linked: int = 0
    settled: int = 0
    errors: int = 0
    rules: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0


class ReceiptPayoutLinker:
    """
    Periodic receipt → payout linking.

    On link: receipt gets the payout id and is marked processed; the trade
    holding the payout moves to receipt_received, is settled through the
    direct entry point, gets the receipt acknowledgement, and its listing is
    retired.
    """

    def __init__(
        self,
        store: DeskStore,
        matcher: ReceiptMatcher,
        settlement,
        chat,
        listings,
        locks: KeyedLockTable,
        *,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.matcher = matcher
        self.settlement = settlement
        self.chat = chat
        self.listings = listings
        self.locks = locks
        self.events = events
        self.metrics = metrics

    def run_cycle(self) -> LinkerCycleResult:
        started = time.monotonic()
        result = LinkerCycleResult()
        for receipt in self.store.list_linkable_receipts():
            result.examined += 1
            with self.locks.hold(f"receipt:{receipt.id}") as acquired:
                if not acquired:
                    continue
                try:
                    outcome = self.link(receipt)
                except Exception as exc:
                    result.errors += 1
                    logger.error("Failed to link receipt %s: %s", receipt.id, exc)
                    continue
            if outcome is None:
                continue
            rule, settled = outcome
            result.linked += 1
            result.rules[rule] = result.rules.get(rule, 0) + 1
            if settled:
                result.settled += 1
        result.duration_seconds = time.monotonic() - started
        if result.linked:
            logger.info("Receipt linker: linked %s/%s receipts %s", result.linked, result.examined, result.rules)
        return result

    def link(self, receipt: Receipt) -> Optional[Tuple[str, bool]]:
        """
        Match and link one receipt.

        Returns:
            (rule, settled) when linked, None when no payout matched
        """
        match = self.matcher.match(receipt)
        if match is None:
            return None

        payout = match.payout
        try:
            self.store.link_receipt(receipt.id, payout.id)
        except PayoutAlreadyLinked as exc:
            logger.warning("Receipt %s not linked: %s", receipt.id, exc)
            return None

        logger.info(
            "Receipt %s linked to payout %s by %s (amount=%s)",
            receipt.id, payout.gate_payout_id, match.rule, receipt.amount,
        )
        if self.metrics is not None:
            self.metrics.record_receipt_event(f"linked_{match.rule}")
        if self.events is not None:
            self.events.emit(RECEIPT_LINKED, {
                "receipt_id": receipt.id,
                "payout_id": payout.id,
                "gate_payout_id": payout.gate_payout_id,
                "rule": match.rule,
            })

        trade = self.store.get_trade_by_payout_id(payout.id)
        if trade is None:
            logger.info("No trade references payout %s; receipt parked", payout.gate_payout_id)
            return match.rule, False
        if trade.is_terminal():
            logger.warning("Trade %s for payout %s is %s; not settling", trade.id, payout.gate_payout_id, trade.status)
            return match.rule, False

        self.store.transition_trade(
            trade.id,
            [
                TradeStatus.PENDING.value,
                TradeStatus.CHAT_STARTED.value,
                TradeStatus.WAITING_PAYMENT.value,
                TradeStatus.PAYMENT_CONFIRMED.value,
                TradeStatus.APPEAL.value,
            ],
            TradeStatus.RECEIPT_RECEIVED.value,
            receipt_received_at=utcnow(),
        )

        try:
            self.chat.send_receipt_ack(trade.id, receipt)
        except Exception as exc:
            logger.error("Failed to send receipt acknowledgement for trade %s: %s", trade.id, exc)

        settled = False
        if receipt.file_path:
            settled = self.settlement.approve_with_receipt(trade.id, payout.id, receipt.file_path)
            if not settled:
                logger.warning("Direct settlement for trade %s failed; sweep will retry", trade.id)

        try:
            self.listings.retire_for_trade(trade)
        except Exception as exc:
            logger.error("Failed to retire listing for trade %s: %s", trade.id, exc)

        return match.rule, settled
