"""
P2P Desk Core: Collaborator Interfaces

Abstract contracts for the remote services the engine consumes. The engine
only talks to these interfaces; concrete HTTP adapters live in
core.marketplace_client, core.payment_platform and core.inbox_client, and
tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence


@dataclass
class MarketplaceAccount:
    account_id: str
    user_id: Optional[str] = None
    name: Optional[str] = None


@dataclass
class MarketplaceOrder:
    """Order summary or detail as reported by the marketplace."""
    order_id: str
    status: int
    item_id: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    counterparty: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class RemoteChatMessage:
    message_id: str
    user_id: Optional[str]
    content: str
    message_type: str = "TEXT"
    created_at: Optional[datetime] = None


@dataclass
class InboxAttachment:
    attachment_id: str
    name: str
    content_type: str = "application/pdf"

    def is_pdf(self) -> bool:
        return self.content_type == "application/pdf" or self.name.lower().endswith(".pdf")


@dataclass
class InboxMessage:
    message_id: str
    sender: str
    subject: str = ""
    received_at: Optional[datetime] = None
    attachments: List[InboxAttachment] = field(default_factory=list)


@dataclass
class RemotePayout:
    """Payout record as listed by the payment platform."""
    gate_payout_id: str
    status: int
    wallet: str
    amount_trader: dict = field(default_factory=dict)
    total_trader: dict = field(default_factory=dict)
    bank_name: Optional[str] = None
    recipient_name: Optional[str] = None
    meta: dict = field(default_factory=dict)
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class ListingRequest:
    """Parameters of a sell listing sized to one payout."""
    amount: float
    price: float
    quantity: float
    payment_method_id: str
    remark: str = ""
    payment_period_minutes: int = 15


class MarketplaceClient(ABC):
    """P2P marketplace: orders, order chat, listings."""

    @abstractmethod
    def get_active_accounts(self) -> List[MarketplaceAccount]:
        """Accounts the desk is currently trading on."""

    @abstractmethod
    def list_orders(self, account_id: str, statuses: Sequence[int]) -> List[MarketplaceOrder]:
        """Orders of the account whose status is in `statuses`."""

    @abstractmethod
    def get_order(self, account_id: str, order_id: str) -> Optional[MarketplaceOrder]:
        """Order detail, or None when the marketplace no longer knows the order."""

    @abstractmethod
    def get_chat_messages(self, account_id: str, order_id: str) -> List[RemoteChatMessage]:
        """Chat thread of an order (any order, newest or oldest first)."""

    @abstractmethod
    def send_chat_message(self, account_id: str, order_id: str, text: str) -> Optional[str]:
        """Send a text message; returns the marketplace message id when known."""

    @abstractmethod
    def create_advertisement(self, account_id: str, listing: ListingRequest) -> str:
        """Publish a sell listing; returns the marketplace item id."""

    @abstractmethod
    def cancel_advertisement(self, account_id: str, item_id: str) -> None:
        """Take a listing offline."""

    @abstractmethod
    def release_assets(self, account_id: str, order_id: str) -> None:
        """Release escrowed coins to the counterparty."""

    def get_user_id(self, account_id: str) -> Optional[str]:
        """Marketplace user id of our own account (sender of our chat messages)."""
        for account in self.get_active_accounts():
            if account.account_id == account_id:
                return account.user_id
        return None


class PaymentPlatform(ABC):
    """Payout feed and approvals on the payment platform."""

    @abstractmethod
    def list_payouts(self, statuses: Sequence[int]) -> List[RemotePayout]:
        """Payouts whose status is in `statuses`, across all pages."""

    @abstractmethod
    def approve_payout(self, gate_payout_id: str, receipt_path: str) -> dict:
        """Approve a payout, attaching the receipt file as proof of payment."""

    @abstractmethod
    def get_payout_status(self, gate_payout_id: str) -> Optional[int]:
        """Current numeric status of a payout, None if unknown."""


class InboxProvider(ABC):
    """Mailbox that receives bank receipts."""

    @abstractmethod
    def list_messages(self, sender: str, since: Optional[datetime] = None) -> List[InboxMessage]:
        """Messages from `sender`, optionally received after `since`."""

    @abstractmethod
    def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        """Raw attachment content."""


class RateProvider(ABC):
    """Read-only source of the settlement currency exchange rate."""

    @abstractmethod
    def get_rate(self) -> Optional[float]:
        """RUB per unit of the traded asset, None when not configured."""
