"""
P2P Desk Core: Conversational State Machine

Per-trade negotiation over the order chat.

States (chat_step): 0 (not started) → 1 (question asked) → 999 (payment
details sent). Side exits: status "stupid" on an explicit refusal; "appeal"
and "cancelled_by_counterparty" are set by other components.

Guards:
- keyed locks: one start / one details disclosure / one handler per message
  in flight at a time
- chat_step checks re-read from the store under the lock
- existing outbound messages (start) and details markers (disclosure); a
  disclosure interrupted before its closing instructions is resumed, not skipped
- replies are judged against the chat step their batch was loaded at, and
  messages older than the question are never taken as answers
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from core.clients import MarketplaceClient, RateProvider
from core.exceptions import DataInconsistency
from core.listings import ListingManager
from core.models import (
    CHAT_STEP_DETAILS_SENT,
    CHAT_STEP_NOT_STARTED,
    CHAT_STEP_QUESTION_ASKED,
    SENDER_US,
    ChatMessage,
    Payout,
    Receipt,
    Trade,
    TradeStatus,
    utcnow,
)
from core.services import EmailAllocator
from core.store import DeskStore
from infra.events import TRADE_UPDATED, EventBus
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)


AFFIRMATIVE_ANSWERS = (
    "да", "yes", "ок", "ok", "норм", "хорошо", "конечно", "разумеется",
    "согласен", "согласна", "подтверждаю", "подтвержаю",
)

NEGATIVE_ANSWERS = (
    "нет", "no", "не", "не подтверждаю", "отказываюсь", "не согласен",
    "не согласна", "отказ", "не могу", "не буду",
)

DEFAULT_QUESTION = (
    "Здравствуйте!\n\n"
    "Для быстрого проведения сделки, пожалуйста, ответьте на следующие вопросы:\n\n"
    "1. Оплата будет с Т банка?\n"
    "2. Чек в формате PDF с официальной почты Т банка сможете отправить?\n\n"
    "Просто напишите \"Да\" если согласны со всеми условиями, или \"Нет\" если что-то не подходит.\n\n"
    "Hello! To complete the deal quickly please confirm:\n"
    "1. Will the payment come from T-Bank?\n"
    "2. Can you send a PDF receipt from T-Bank's official email?\n\n"
    "Reply \"Yes\" if you agree with all terms, or \"No\" if something does not suit you."
)

DEFAULT_INSTRUCTIONS = (
    "⚠️ ФИО не спрашивать, реквизиты верные!\n\n"
    "После оплаты отправьте чек в формате PDF на указанный email с официальной почты банка. "
    "После отправки чека, не забудьте прожать кнопку что оплатили, иначе средства будут утерены."
)

DEFAULT_COMPLETION = (
    "Переходи в закрытый чат https://t.me/+nIB6kP22KmhlMmQy\n\n"
    "Всегда есть большой объем ЮСДТ по хорошему курсу, работаем оперативно."
)

DEFAULT_RECEIPT_ACK = (
    "✅ Чек получен и подтвержден!\n\n"
    "Сумма: {amount} RUB\n"
    "Операция: {operation}\n\n"
    "⏱️ В течении двух минут проверю чек и отпущу средства."
)

# Any of these in an outbound message means payment details were disclosed
DETAILS_MARKERS = ("Реквизиты для оплаты", "Сумма:", "⚠️ ФИО не спрашивать")
# The closing part of a disclosure; without it the details went out only partially
DETAILS_COMPLETE_MARKERS = ("Реквизиты для оплаты", "⚠️ ФИО не спрашивать")


class ReplyClass(Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    UNCLEAR = "unclear"


def classify_reply(text: str) -> ReplyClass:
    """Case-insensitive substring match; affirmative vocabulary wins ties."""
    answer = (text or "").lower().strip()
    if not answer:
        return ReplyClass.UNCLEAR
    if any(word in answer for word in AFFIRMATIVE_ANSWERS):
        return ReplyClass.AFFIRMATIVE
    if any(word in answer for word in NEGATIVE_ANSWERS):
        return ReplyClass.NEGATIVE
    return ReplyClass.UNCLEAR


def format_amount(value: Optional[float]) -> str:
    if value is None:
        return "?"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


@dataclass
class ChatTexts:
    question: str = DEFAULT_QUESTION
    instructions: str = DEFAULT_INSTRUCTIONS
    completion: str = DEFAULT_COMPLETION
    receipt_ack: str = DEFAULT_RECEIPT_ACK

    @classmethod
    def from_config(cls, raw_config: Optional[dict]) -> "ChatTexts":
        raw_config = raw_config or {}
        return cls(
            question=raw_config.get("question") or DEFAULT_QUESTION,
            instructions=raw_config.get("instructions") or DEFAULT_INSTRUCTIONS,
            completion=raw_config.get("completion") or DEFAULT_COMPLETION,
            receipt_ack=raw_config.get("receipt_ack") or DEFAULT_RECEIPT_ACK,
        )


class ChatAutomation:
    """
    Drives one trade's negotiation one counterparty message at a time.

    Counterparty messages are marked processed only after their handler
    returned; a raising handler leaves the message for the next poll.
    """

    def __init__(
        self,
        store: DeskStore,
        marketplace: MarketplaceClient,
        locks: KeyedLockTable,
        email_allocator: EmailAllocator,
        *,
        listings: Optional[ListingManager] = None,
        rate_provider: Optional[RateProvider] = None,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        texts: Optional[ChatTexts] = None,
        release_assets_on_refusal: bool = True,
    ):
        self.store = store
        self.marketplace = marketplace
        self.locks = locks
        self.email_allocator = email_allocator
        self.listings = listings or ListingManager(store, marketplace)
        self.rate_provider = rate_provider
        self.events = events
        self.metrics = metrics
        self.texts = texts or ChatTexts()
        self.release_assets_on_refusal = release_assets_on_refusal

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    def send_message(
        self,
        trade: Trade,
        text: str,
        kind: str = "text",
        allow_terminal: bool = False,
    ) -> Optional[ChatMessage]:
        """
        Send one chat message for a trade and store it as processed.

        Test orders (id prefix "test_") are stored locally only.
        """
        if trade.is_terminal() and not allow_terminal:
            logger.info("Trade %s is %s; not sending %s message", trade.id, trade.status, kind)
            return None
        if not trade.order_id:
            raise DataInconsistency(f"Trade {trade.id} has no order id; cannot send chat message")

        stamp = int(time.time() * 1000)
        if trade.is_test_order():
            message_id = f"test_msg_{stamp}_{uuid.uuid4().hex[:8]}"
        else:
            ad = self.store.get_advertisement(trade.advertisement_id)
            if ad is None:
                raise DataInconsistency(f"Trade {trade.id} has no listing; unknown marketplace account")
            remote_id = self.marketplace.send_chat_message(ad.account_id, trade.order_id, text)
            message_id = remote_id or f"sent_{stamp}_{uuid.uuid4().hex[:8]}"

        stored = self.store.add_chat_message(trade.id, message_id, SENDER_US, text, is_processed=True)
        if self.metrics is not None:
            self.metrics.record_message_sent(kind)
        return stored

    def _emit(self, trade_id: str, **payload) -> None:
        if self.events is not None:
            self.events.emit(TRADE_UPDATED, {"trade_id": trade_id, **payload})

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def start(self, trade_id: str) -> bool:
        """
        Ask the qualification question (step 0 → 1).

        Returns:
            True if the question was sent by this call
        """
        with self.locks.hold(f"start:{trade_id}") as acquired:
            if not acquired:
                return False

            trade = self.store.get_trade(trade_id)
            if trade is None or trade.is_terminal():
                return False
            if trade.chat_step > CHAT_STEP_NOT_STARTED:
                logger.debug("Trade %s already at chat step %s", trade_id, trade.chat_step)
                return False
            if self.store.has_outbound_message(trade_id):
                logger.debug("Trade %s already has outbound messages", trade_id)
                return False

            self.send_message(trade, self.texts.question, kind="question")
            self.store.advance_chat_step(
                trade_id, CHAT_STEP_QUESTION_ASKED, status=TradeStatus.CHAT_STARTED.value
            )
            logger.info("Chat automation started for trade %s (order %s)", trade_id, trade.order_id)
            self._emit(trade_id, status=TradeStatus.CHAT_STARTED.value, chat_step=CHAT_STEP_QUESTION_ASKED)
            return True

    def process_pending(self, trade_id: str) -> int:
        """
        Feed unprocessed counterparty messages to the state machine, oldest first.

        Stops at the first failing message so replies are never handled out
        of order; the failed one is retried on the next poll.

        Returns:
            Number of messages marked processed
        """
        trade = self.store.get_trade(trade_id)
        if trade is None:
            return 0
        # Replies are judged against the step the batch was loaded at: messages
        # queued before the question went out never count as answers to it.
        step = trade.chat_step
        asked_at = self.question_sent_at(trade_id)

        processed = 0
        for message in self.store.list_unprocessed_counterparty_messages(trade_id):
            with self.locks.hold(f"message:{message.id}") as acquired:
                if not acquired:
                    continue
                try:
                    self._handle_message(trade_id, message, step, asked_at)
                except Exception as exc:
                    logger.error(
                        "Failed to process message %s for trade %s: %s",
                        message.message_id, trade_id, exc,
                    )
                    break
                self.store.mark_message_processed(message.id)
                processed += 1
        return processed

    def question_sent_at(self, trade_id: str) -> Optional[datetime]:
        """When the qualification question first went out, if it did."""
        for message in self.store.list_chat_messages(trade_id):
            if message.sender == SENDER_US and message.content == self.texts.question:
                return message.sent_at
        return None

    def _handle_message(
        self,
        trade_id: str,
        message: ChatMessage,
        step: int,
        asked_at: Optional[datetime] = None,
    ) -> None:
        trade = self.store.get_trade(trade_id)
        if trade is None:
            raise DataInconsistency(f"Trade {trade_id} disappeared")
        if trade.is_terminal():
            return

        if step == CHAT_STEP_NOT_STARTED:
            self.start(trade_id)
            return

        if step != CHAT_STEP_QUESTION_ASKED or trade.chat_step != CHAT_STEP_QUESTION_ASKED:
            return

        if asked_at is not None and message.sent_at < asked_at:
            logger.info(
                "Trade %s message %s predates the question; not treated as an answer",
                trade_id, message.message_id,
            )
            return

        reply = classify_reply(message.content)
        logger.info("Trade %s reply %r classified as %s", trade_id, message.content, reply.value)

        if reply is ReplyClass.AFFIRMATIVE:
            self.send_payment_details(trade_id)
        elif reply is ReplyClass.NEGATIVE:
            self.handle_refusal(trade, message.content)
        else:
            self.send_message(trade, self.texts.question, kind="question_repeat")

    def compose_payment_details(self, payout: Payout, email: str) -> List[str]:
        bank = payout.bank_name or "банк получателя"
        messages = [
            f"СТРОГО на {bank} {payout.wallet}".strip(),
            f"Сумма: {format_amount(payout.settlement_amount())} RUB",
            email,
        ]
        rate = self.rate_provider.get_rate() if self.rate_provider else None
        if rate:
            messages.append(f"Курс: {format_amount(rate)} RUB/USDT")
        messages.append(self.texts.instructions)
        return messages

    def send_payment_details(self, trade_id: str) -> bool:
        """
        Disclose payment details once (step 1 → 999).

        Returns:
            True if the details were sent by this call
        """
        with self.locks.hold(f"details:{trade_id}") as acquired:
            if not acquired:
                return False

            trade = self.store.get_trade(trade_id)
            if trade is None or trade.is_terminal():
                return False
            if trade.chat_step >= CHAT_STEP_DETAILS_SENT:
                logger.debug("Payment details already sent for trade %s", trade_id)
                return False

            complete_markers = DETAILS_COMPLETE_MARKERS + (self.texts.instructions,)
            if self.store.outbound_contains(trade_id, complete_markers):
                logger.warning(
                    "Trade %s already shows payment details in chat; advancing step without re-sending",
                    trade_id,
                )
                self.store.advance_chat_step(
                    trade_id,
                    CHAT_STEP_DETAILS_SENT,
                    status=TradeStatus.WAITING_PAYMENT.value,
                    payment_sent_at=trade.payment_sent_at or utcnow(),
                )
                return False

            payout = self._payout_for(trade)
            email = self.email_allocator.allocate(trade.id)
            self.store.merge_payout_meta(payout.id, {"receipt_email": email})

            texts = self.compose_payment_details(payout, email)
            if self.store.outbound_contains(trade_id, DETAILS_MARKERS):
                # An earlier attempt stopped midway: send only what is missing
                already_sent = {
                    message.content
                    for message in self.store.list_chat_messages(trade_id)
                    if message.sender == SENDER_US
                }
                texts = [text for text in texts if text not in already_sent]
                logger.warning("Resuming payment details for trade %s (%s parts left)", trade_id, len(texts))

            for text in texts:
                self.send_message(trade, text, kind="payment_details")

            self.store.advance_chat_step(
                trade_id,
                CHAT_STEP_DETAILS_SENT,
                status=TradeStatus.WAITING_PAYMENT.value,
                payment_sent_at=utcnow(),
            )
            logger.info("Payment details sent for trade %s (payout %s)", trade_id, payout.gate_payout_id)
            self._emit(trade_id, status=TradeStatus.WAITING_PAYMENT.value, chat_step=CHAT_STEP_DETAILS_SENT)
            return True

    def _payout_for(self, trade: Trade) -> Payout:
        payout = self.store.get_payout(trade.payout_id)
        if payout is None:
            ad = self.store.get_advertisement(trade.advertisement_id)
            payout = self.store.get_payout(ad.payout_id) if ad else None
            if payout is not None:
                self.store.update_trade(trade.id, payout_id=payout.id)
        if payout is None:
            raise DataInconsistency(f"Trade {trade.id} has no payout; cannot compose payment details")
        return payout

    def handle_refusal(self, trade: Trade, content: str) -> None:
        self.store.update_trade(
            trade.id,
            status=TradeStatus.STUPID.value,
            failure_reason=f"Negative response: {content}",
        )
        logger.info("Trade %s marked stupid after refusal: %r", trade.id, content)
        self._emit(trade.id, status=TradeStatus.STUPID.value)
        if self.metrics is not None:
            self.metrics.record_trade_event("refused")

        try:
            self.listings.teardown_after_refusal(trade, release_assets=self.release_assets_on_refusal)
        except Exception as exc:
            logger.error("Listing teardown failed for trade %s: %s", trade.id, exc)

    # ------------------------------------------------------------------
    # Settlement-side messages
    # ------------------------------------------------------------------

    def send_receipt_ack(self, trade_id: str, receipt: Receipt) -> bool:
        trade = self.store.get_trade(trade_id)
        if trade is None or not trade.order_id:
            return False
        text = self.texts.receipt_ack.format(
            amount=format_amount(receipt.amount),
            operation=receipt.operation_id or "N/A",
        )
        if self.store.outbound_contains(trade_id, [text]):
            return False
        return self.send_message(trade, text, kind="receipt_ack", allow_terminal=True) is not None

    def send_completion_message(self, trade_id: str) -> bool:
        """One-shot closing message after settlement."""
        trade = self.store.get_trade(trade_id)
        if trade is None or not trade.order_id:
            return False
        if self.store.outbound_contains(trade_id, [self.texts.completion]):
            logger.debug("Completion message already sent for trade %s", trade_id)
            return False
        return self.send_message(trade, self.texts.completion, kind="completion", allow_terminal=True) is not None
