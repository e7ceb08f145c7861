"""
P2P Desk Core: Domain Model

Records shared by the order monitor, chat automation, receipt matching and
settlement. Rows come out of core.store as these dataclasses; callers mutate
state only through the store's update methods.

Status vocabularies:
- TradeStatus: local lifecycle of one serviced order
- MarketplaceOrderStatus: numeric codes reported by the marketplace
- PayoutStatus: numeric codes reported by the payment platform
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


class TradeStatus(Enum):
    """Trade lifecycle states"""
    PENDING = "pending"
    CHAT_STARTED = "chat_started"
    WAITING_PAYMENT = "waiting_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    RECEIPT_RECEIVED = "receipt_received"
    RELEASE_MONEY = "release_money"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CANCELLED_BY_COUNTERPARTY = "cancelled_by_counterparty"
    FAILED = "failed"
    STUPID = "stupid"                # counterparty refused the terms
    APPEAL = "appeal"
    BLACKLISTED = "blacklisted"


TERMINAL_TRADE_STATUSES = frozenset({
    TradeStatus.COMPLETED.value,
    TradeStatus.CANCELLED.value,
    TradeStatus.CANCELLED_BY_COUNTERPARTY.value,
    TradeStatus.FAILED.value,
    TradeStatus.STUPID.value,
    TradeStatus.BLACKLISTED.value,
})

# Statuses excluded from the "active trades" scan
INACTIVE_TRADE_STATUSES = frozenset({
    TradeStatus.COMPLETED.value,
    TradeStatus.FAILED.value,
    TradeStatus.BLACKLISTED.value,
})

# Trades in these statuses are skipped by the cancelled-order sweep
CANCEL_SWEEP_EXCLUDED = frozenset({
    TradeStatus.COMPLETED.value,
    TradeStatus.CANCELLED.value,
    TradeStatus.FAILED.value,
    TradeStatus.STUPID.value,
})

SETTLEMENT_READY_STATUSES = (
    TradeStatus.PAYMENT_CONFIRMED.value,
    TradeStatus.RECEIPT_RECEIVED.value,
)


class MarketplaceOrderStatus(IntEnum):
    PAYMENT_PROCESSING = 10
    AWAITING_TRANSFER = 20
    COMPLETED = 30
    CANCELLED = 40
    DISPUTED = 50


ACTIVE_ORDER_STATUSES = (
    MarketplaceOrderStatus.PAYMENT_PROCESSING,
    MarketplaceOrderStatus.AWAITING_TRANSFER,
)

_ORDER_STATUS_TEXT = {
    MarketplaceOrderStatus.PAYMENT_PROCESSING: "Payment in processing",
    MarketplaceOrderStatus.AWAITING_TRANSFER: "Waiting for coin transfer",
    MarketplaceOrderStatus.COMPLETED: "Completed",
    MarketplaceOrderStatus.CANCELLED: "Cancelled",
    MarketplaceOrderStatus.DISPUTED: "Disputed",
}


def describe_order_status(code: Any) -> str:
    try:
        return _ORDER_STATUS_TEXT[MarketplaceOrderStatus(int(code))]
    except (TypeError, ValueError, KeyError):
        return f"Unknown ({code})"


class PayoutStatus(IntEnum):
    PENDING = 4
    PENDING_REVIEW = 5
    APPROVED = 6
    APPROVED_FOR_RELEASE = 7


# Payouts in these statuses are picked up by the settlement sweep
SETTLEMENT_PAYOUT_STATUSES = (PayoutStatus.PENDING_REVIEW, PayoutStatus.APPROVED_FOR_RELEASE)

# ISO 4217 numeric code of the settlement currency leg (RUB)
SETTLEMENT_CURRENCY_CODE = "643"

SENDER_US = "us"
SENDER_COUNTERPARTY = "counterparty"

CHAT_STEP_NOT_STARTED = 0
CHAT_STEP_QUESTION_ASKED = 1
CHAT_STEP_DETAILS_SENT = 999


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so stored values compare correctly as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json(value: Optional[str], default: Any) -> Any:
    if value in (None, ""):
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Advertisement:
    id: str
    item_id: str
    account_id: str
    payout_id: Optional[str] = None
    is_active: bool = True
    payment_method: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_placeholder(self) -> bool:
        """Local placeholder listings never reached the marketplace."""
        return self.item_id.startswith("temp_")

    @classmethod
    def from_row(cls, row) -> "Advertisement":
        return cls(
            id=row["id"],
            item_id=row["item_id"],
            account_id=row["account_id"],
            payout_id=row["payout_id"],
            is_active=bool(row["is_active"]),
            payment_method=row["payment_method"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class Payout:
    """
    Pending outbound payment on the payment platform.

    amount_trader maps ISO numeric currency codes to amounts; the "643" leg is
    the RUB amount the counterparty must pay and the one receipts are
    compared against.
    """
    id: str
    gate_payout_id: str
    status: int = PayoutStatus.PENDING
    wallet: str = ""
    bank_name: Optional[str] = None
    amount: Optional[float] = None
    amount_trader: Dict[str, float] = field(default_factory=dict)
    total_trader: Dict[str, float] = field(default_factory=dict)
    recipient_name: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    approved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def settlement_amount(self) -> Optional[float]:
        """RUB leg of the payout, falling back to the flat amount."""
        value = self.amount_trader.get(SETTLEMENT_CURRENCY_CODE)
        if value is None:
            return self.amount
        return float(value)

    @classmethod
    def from_row(cls, row) -> "Payout":
        return cls(
            id=row["id"],
            gate_payout_id=row["gate_payout_id"],
            status=int(row["status"]),
            wallet=row["wallet"] or "",
            bank_name=row["bank_name"],
            amount=row["amount"],
            amount_trader=_load_json(row["amount_trader"], {}),
            total_trader=_load_json(row["total_trader"], {}),
            recipient_name=row["recipient_name"],
            meta=_load_json(row["meta"], {}),
            approved_at=from_iso(row["approved_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class Trade:
    """One marketplace order being serviced end-to-end."""
    id: str
    advertisement_id: Optional[str] = None
    order_id: Optional[str] = None
    payout_id: Optional[str] = None
    status: str = TradeStatus.PENDING.value
    chat_step: int = CHAT_STEP_NOT_STARTED
    failure_reason: Optional[str] = None
    payment_sent_at: Optional[datetime] = None
    receipt_received_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRADE_STATUSES

    def is_test_order(self) -> bool:
        return bool(self.order_id) and self.order_id.startswith("test_")

    @classmethod
    def from_row(cls, row) -> "Trade":
        return cls(
            id=row["id"],
            advertisement_id=row["advertisement_id"],
            order_id=row["order_id"],
            payout_id=row["payout_id"],
            status=row["status"],
            chat_step=int(row["chat_step"]),
            failure_reason=row["failure_reason"],
            payment_sent_at=from_iso(row["payment_sent_at"]),
            receipt_received_at=from_iso(row["receipt_received_at"]),
            approved_at=from_iso(row["approved_at"]),
            completed_at=from_iso(row["completed_at"]),
            cancelled_at=from_iso(row["cancelled_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class ChatMessage:
    id: str
    trade_id: str
    message_id: str
    sender: str
    content: str
    message_type: str = "TEXT"
    is_processed: bool = False
    sent_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "ChatMessage":
        return cls(
            id=row["id"],
            trade_id=row["trade_id"],
            message_id=row["message_id"],
            sender=row["sender"],
            content=row["content"],
            message_type=row["message_type"],
            is_processed=bool(row["is_processed"]),
            sent_at=from_iso(row["sent_at"]),
            created_at=from_iso(row["created_at"]),
        )


@dataclass
class ParsedReceipt:
    """Structured output of the receipt parser."""
    amount: float
    transaction_date: Optional[datetime] = None
    sender_name: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_card: Optional[str] = None
    recipient_bank: Optional[str] = None
    transfer_type: Optional[str] = None
    operation_status: Optional[str] = None
    commission: Optional[float] = None
    total: Optional[float] = None
    operation_id: Optional[str] = None
    raw_text: str = ""


@dataclass
class Receipt:
    id: str
    file_path: Optional[str] = None
    file_hash: Optional[str] = None
    email_id: Optional[str] = None
    email_from: Optional[str] = None
    email_subject: Optional[str] = None
    attachment_name: Optional[str] = None
    amount: Optional[float] = None
    sender_name: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_card: Optional[str] = None
    recipient_bank: Optional[str] = None
    transfer_type: Optional[str] = None
    operation_status: Optional[str] = None
    commission: Optional[float] = None
    total: Optional[float] = None
    operation_id: Optional[str] = None
    transaction_date: Optional[datetime] = None
    reference: Optional[str] = None
    raw_text: Optional[str] = None
    is_parsed: bool = False
    is_processed: bool = False
    parse_error: Optional[str] = None
    payout_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_row(cls, row) -> "Receipt":
        return cls(
            id=row["id"],
            file_path=row["file_path"],
            file_hash=row["file_hash"],
            email_id=row["email_id"],
            email_from=row["email_from"],
            email_subject=row["email_subject"],
            attachment_name=row["attachment_name"],
            amount=row["amount"],
            sender_name=row["sender_name"],
            recipient_name=row["recipient_name"],
            recipient_phone=row["recipient_phone"],
            recipient_card=row["recipient_card"],
            recipient_bank=row["recipient_bank"],
            transfer_type=row["transfer_type"],
            operation_status=row["operation_status"],
            commission=row["commission"],
            total=row["total"],
            operation_id=row["operation_id"],
            transaction_date=from_iso(row["transaction_date"]),
            reference=row["reference"],
            raw_text=row["raw_text"],
            is_parsed=bool(row["is_parsed"]),
            is_processed=bool(row["is_processed"]),
            parse_error=row["parse_error"],
            payout_id=row["payout_id"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
