"""
Test helpers for desk engine tests.

In-memory stand-ins for the marketplace, payment platform and inbox that
follow the production interfaces in core.clients, plus factories that seed a
store with the listing → payout → trade records every workflow starts from.
"""

import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Tuple

from core.chat_automation import ChatAutomation
from core.clients import (
    InboxMessage,
    InboxProvider,
    ListingRequest,
    MarketplaceAccount,
    MarketplaceClient,
    MarketplaceOrder,
    PaymentPlatform,
    RemoteChatMessage,
    RemotePayout,
)
from core.exceptions import ExternalServiceError
from core.listings import ListingManager
from core.models import Advertisement, ParsedReceipt, Payout, PayoutStatus, Receipt, Trade
from core.order_monitor import OrderMonitor
from core.receipt_matcher import ReceiptMatcher, ReceiptPayoutLinker
from core.services import EmailAllocator, StaticRateProvider
from core.settlement import MoneyReleaseJob, SettlementWorkflow
from core.store import DeskStore
from infra.events import EventBus
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder

OUR_USER_ID = "1001"
COUNTERPARTY_USER_ID = "2002"


class FakeMarketplace(MarketplaceClient):
    """
    Marketplace double.

    Sent messages are echoed into the order's chat thread under our user id
    with the same message id, the way the real chat endpoint returns them.
    """

    def __init__(self, account_id: str = "main", user_id: str = OUR_USER_ID):
        self.accounts = [MarketplaceAccount(account_id=account_id, user_id=user_id)]
        self.orders: Dict[str, MarketplaceOrder] = {}
        self.chats: Dict[str, List[RemoteChatMessage]] = {}
        self.sent: List[Tuple[str, str, str]] = []
        self.cancelled_items: List[str] = []
        self.created_listings: List[Tuple[str, str, ListingRequest]] = []
        self.create_error: Optional[Exception] = None
        self.released_orders: List[str] = []
        self.cancel_error: Optional[Exception] = None
        self.release_error: Optional[Exception] = None
        self.fail_order_lookup = False
        # number of chat sends that succeed before every further send raises
        self.send_limit: Optional[int] = None
        self._ids = itertools.count(1)

    # --- scripting -------------------------------------------------------

    def add_order(self, order_id: str, item_id: str, status: int = 10, amount: float = 5000.0) -> MarketplaceOrder:
        order = MarketplaceOrder(order_id=order_id, status=status, item_id=item_id, amount=amount, currency="RUB")
        self.orders[order_id] = order
        self.chats.setdefault(order_id, [])
        return order

    def counterparty_says(self, order_id: str, text: str, message_id: Optional[str] = None) -> RemoteChatMessage:
        message = RemoteChatMessage(
            message_id=message_id or f"cp-{next(self._ids)}",
            user_id=COUNTERPARTY_USER_ID,
            content=text,
            created_at=datetime.now(timezone.utc),
        )
        self.chats.setdefault(order_id, []).append(message)
        return message

    def texts_sent(self, order_id: Optional[str] = None) -> List[str]:
        return [text for _, oid, text in self.sent if order_id is None or oid == order_id]

    # --- MarketplaceClient -----------------------------------------------

    def get_active_accounts(self) -> List[MarketplaceAccount]:
        return list(self.accounts)

    def list_orders(self, account_id: str, statuses: Sequence[int]) -> List[MarketplaceOrder]:
        wanted = {int(status) for status in statuses}
        return [order for order in self.orders.values() if order.status in wanted]

    def get_order(self, account_id: str, order_id: str) -> Optional[MarketplaceOrder]:
        if self.fail_order_lookup:
            raise ExternalServiceError("/v5/p2p/order/info", ConnectionError("timeout"))
        return self.orders.get(order_id)

    def get_chat_messages(self, account_id: str, order_id: str) -> List[RemoteChatMessage]:
        return list(self.chats.get(order_id, []))

    def send_chat_message(self, account_id: str, order_id: str, text: str) -> Optional[str]:
        if self.send_limit is not None and len(self.sent) >= self.send_limit:
            raise RuntimeError("chat send timed out")
        message_id = f"us-{next(self._ids)}"
        self.sent.append((account_id, order_id, text))
        self.chats.setdefault(order_id, []).append(
            RemoteChatMessage(message_id=message_id, user_id=OUR_USER_ID, content=text,
                              created_at=datetime.now(timezone.utc))
        )
        return message_id

    def create_advertisement(self, account_id: str, listing: ListingRequest) -> str:
        if self.create_error is not None:
            raise self.create_error
        item_id = f"item-{next(self._ids)}"
        self.created_listings.append((account_id, item_id, listing))
        return item_id

    def cancel_advertisement(self, account_id: str, item_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled_items.append(item_id)

    def release_assets(self, account_id: str, order_id: str) -> None:
        if self.release_error is not None:
            raise self.release_error
        self.released_orders.append(order_id)


class FakePaymentPlatform(PaymentPlatform):
    def __init__(self):
        self.approvals: List[Tuple[str, str]] = []
        self.error: Optional[Exception] = None
        self.statuses: Dict[str, int] = {}
        self.remote_payouts: List[RemotePayout] = []
        self.list_error: Optional[Exception] = None

    def list_payouts(self, statuses: Sequence[int]) -> List[RemotePayout]:
        if self.list_error is not None:
            raise self.list_error
        wanted = {int(status) for status in statuses}
        return [payout for payout in self.remote_payouts if payout.status in wanted]

    def approve_payout(self, gate_payout_id: str, receipt_path: str) -> dict:
        if self.error is not None:
            raise self.error
        self.approvals.append((gate_payout_id, receipt_path))
        self.statuses[gate_payout_id] = int(PayoutStatus.APPROVED_FOR_RELEASE)
        return {"id": gate_payout_id, "status": self.statuses[gate_payout_id]}

    def get_payout_status(self, gate_payout_id: str) -> Optional[int]:
        return self.statuses.get(gate_payout_id)


class FakeInbox(InboxProvider):
    def __init__(self):
        self.messages: List[InboxMessage] = []
        self.files: Dict[Tuple[str, str], bytes] = {}
        self.download_errors: Dict[Tuple[str, str], Exception] = {}
        self.list_calls = 0

    def add_message(self, message: InboxMessage, contents: Dict[str, bytes]) -> None:
        self.messages.append(message)
        for attachment_id, content in contents.items():
            self.files[(message.message_id, attachment_id)] = content

    def list_messages(self, sender: str, since: Optional[datetime] = None) -> List[InboxMessage]:
        self.list_calls += 1
        return [message for message in self.messages if message.sender == sender]

    def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        key = (message_id, attachment_id)
        if key in self.download_errors:
            raise self.download_errors[key]
        return self.files[key]


@dataclass
class SeededTrade:
    trade: Trade
    payout: Payout
    ad: Advertisement


def seed_trade(
    store: DeskStore,
    *,
    order_id: Optional[str] = "order-1",
    item_id: str = "item-1",
    account_id: str = "main",
    gate_payout_id: str = "gp-1",
    wallet: str = "+79123456789",
    amount: float = 5000.0,
    payout_status: int = PayoutStatus.PENDING_REVIEW,
    bank_name: str = "Сбербанк",
    recipient_name: Optional[str] = None,
    payout_created_at: Optional[datetime] = None,
    status: Optional[str] = None,
    chat_step: Optional[int] = None,
) -> SeededTrade:
    """Payout + active listing + trade (holding the order when order_id is set)."""
    payout = store.create_payout(
        gate_payout_id,
        wallet,
        {"643": amount, "000001": round(amount / 95.0, 2)},
        status=payout_status,
        bank_name=bank_name,
        recipient_name=recipient_name,
        created_at=payout_created_at,
    )
    ad = store.create_advertisement(item_id, account_id, payout_id=payout.id)
    trade = store.create_trade(ad.id, payout_id=payout.id, order_id=order_id)
    if chat_step is not None:
        store.advance_chat_step(trade.id, chat_step)
    if status is not None:
        store.update_trade(trade.id, status=status)
    return SeededTrade(trade=store.get_trade(trade.id), payout=payout, ad=ad)


def add_parsed_receipt(
    store: DeskStore,
    file_path: str,
    *,
    amount: float = 5000.0,
    phone: Optional[str] = None,
    card: Optional[str] = None,
    recipient_name: Optional[str] = None,
    transaction_date: Optional[datetime] = None,
    operation_id: str = "A1234567890",
    file_hash: Optional[str] = None,
) -> Receipt:
    with open(file_path, "wb") as handle:
        handle.write(b"%PDF-1.4 receipt")
    receipt = store.create_receipt(file_path, file_hash or f"hash-{file_path}")
    parsed = ParsedReceipt(
        amount=amount,
        transaction_date=transaction_date or datetime.now(timezone.utc),
        sender_name="Иван Петров",
        recipient_name=recipient_name or phone or "Card Transfer",
        recipient_phone=phone,
        recipient_card=card,
        operation_status="Успешно",
        operation_id=operation_id,
    )
    store.save_parse_result(receipt.id, parsed, "Иван Петров -> test")
    return store.get_receipt(receipt.id)


def minutes_ago(minutes: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


def build_desk(
    db_path: str,
    *,
    marketplace: Optional[FakeMarketplace] = None,
    payments: Optional[FakePaymentPlatform] = None,
    release_assets_on_refusal: bool = True,
    release_delay_seconds: float = 120,
) -> SimpleNamespace:
    """Wire the engine the way runner.main_loop does, minus threads and HTTP."""
    store = DeskStore(db_path)
    marketplace = marketplace or FakeMarketplace()
    payments = payments or FakePaymentPlatform()
    locks = KeyedLockTable("test")
    events = EventBus()
    metrics = MetricsRecorder(enabled=False)
    listings = ListingManager(store, marketplace)
    chat = ChatAutomation(
        store,
        marketplace,
        locks,
        EmailAllocator(["receipts-1@desk.example", "receipts-2@desk.example"]),
        listings=listings,
        rate_provider=StaticRateProvider(None),
        events=events,
        metrics=metrics,
        release_assets_on_refusal=release_assets_on_refusal,
    )
    settlement = SettlementWorkflow(store, payments, chat, locks, events=events, metrics=metrics)
    linker = ReceiptPayoutLinker(
        store, ReceiptMatcher(store), settlement, chat, listings, locks, events=events, metrics=metrics
    )
    monitor = OrderMonitor(
        store, marketplace, chat, locks, events=events, metrics=metrics, start_chat_pollers=False
    )
    release_job = MoneyReleaseJob(
        store, marketplace, locks, release_delay_seconds=release_delay_seconds, events=events, metrics=metrics
    )
    return SimpleNamespace(
        store=store,
        marketplace=marketplace,
        payments=payments,
        locks=locks,
        events=events,
        metrics=metrics,
        listings=listings,
        chat=chat,
        settlement=settlement,
        linker=linker,
        monitor=monitor,
        release_job=release_job,
    )
