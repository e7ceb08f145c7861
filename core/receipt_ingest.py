"""
P2P Desk Core: Receipt ingestion

ReceiptIngestor pulls PDF receipts from the receipt inbox into the receipts
directory (deduplicated by content hash); ReceiptParsingJob turns stored
files into structured receipt records for the matcher.
"""

import hashlib
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from core.clients import InboxMessage, InboxProvider
from core.exceptions import ReceiptParseError
from core.models import utcnow
from core.receipt_parser import ReceiptParser
from core.store import DeskStore
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

DEFAULT_SENDER_FILTER = "noreply@tinkoff.ru"
DEFAULT_LOOKBACK_HOURS = 24
DEFAULT_PARSE_BATCH = 50


def _safe_name(name: str) -> str:
    cleaned = re.sub(r"[^\w.\-]+", "_", name or "receipt.pdf", flags=re.UNICODE).strip("._")
    if not cleaned.lower().endswith(".pdf"):
        cleaned = f"{cleaned or 'receipt'}.pdf"
    return cleaned


@dataclass
class IngestCycleResult:
    messages: int = 0
    attachments: int = 0
    saved: int = 0
    duplicates: int = 0
    errors: int = 0


class ReceiptIngestor:
    def __init__(
        self,
        store: DeskStore,
        inbox: InboxProvider,
        *,
        receipts_dir: str = "data/receipts",
        sender_filter: str = DEFAULT_SENDER_FILTER,
        lookback_hours: float = DEFAULT_LOOKBACK_HOURS,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.inbox = inbox
        self.receipts_dir = receipts_dir
        self.sender_filter = sender_filter
        self.lookback = timedelta(hours=float(lookback_hours))
        self.metrics = metrics
        os.makedirs(self.receipts_dir, exist_ok=True)

    def run_cycle(self) -> IngestCycleResult:
        result = IngestCycleResult()
        since = utcnow() - self.lookback
        try:
            messages = self.inbox.list_messages(self.sender_filter, since)
        except Exception as exc:
            logger.error("Failed to list inbox messages: %s", exc)
            result.errors += 1
            return result

        for message in messages:
            if self.store.is_inbox_message_processed(message.message_id):
                continue
            result.messages += 1
            if self.ingest_message(message, result):
                self.store.mark_inbox_message_processed(message.message_id, len(message.attachments))

        if result.saved:
            logger.info(
                "Receipt ingest: %s new receipts from %s messages (%s duplicates)",
                result.saved, result.messages, result.duplicates,
            )
        return result

    def ingest_message(self, message: InboxMessage, result: IngestCycleResult) -> bool:
        """Save every PDF attachment. Returns True when all of them were handled."""
        complete = True
        for attachment in message.attachments:
            if not attachment.is_pdf():
                continue
            result.attachments += 1
            try:
                content = self.inbox.download_attachment(message.message_id, attachment.attachment_id)
            except Exception as exc:
                logger.error(
                    "Failed to download %s from message %s: %s",
                    attachment.name, message.message_id, exc,
                )
                result.errors += 1
                complete = False
                continue

            file_hash = hashlib.sha256(content).hexdigest()
            if self.store.get_receipt_by_hash(file_hash) is not None:
                result.duplicates += 1
                continue

            file_path = os.path.join(
                self.receipts_dir, f"{int(time.time() * 1000)}_{_safe_name(attachment.name)}"
            )
            with open(file_path, "wb") as handle:
                handle.write(content)

            receipt = self.store.create_receipt(
                file_path,
                file_hash,
                email_id=message.message_id,
                email_from=message.sender,
                email_subject=message.subject,
                attachment_name=attachment.name,
            )
            if receipt is None:
                os.remove(file_path)
                result.duplicates += 1
                continue

            result.saved += 1
            logger.info("Receipt %s saved from message %s (%s)", receipt.id, message.message_id, attachment.name)
            if self.metrics is not None:
                self.metrics.record_receipt_event("ingested")
        return complete


@dataclass
class ParseCycleResult:
    parsed: int = 0
    failed: int = 0
    missing: int = 0


class ReceiptParsingJob:
    """Parses stored receipt files in batches; parse failures are recorded, never retried."""

    def __init__(
        self,
        store: DeskStore,
        parser: ReceiptParser,
        *,
        batch_size: int = DEFAULT_PARSE_BATCH,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.parser = parser
        self.batch_size = int(batch_size)
        self.metrics = metrics

    def run_cycle(self) -> ParseCycleResult:
        result = ParseCycleResult()
        for receipt in self.store.list_unparsed_receipts(self.batch_size):
            if not receipt.file_path or not os.path.exists(receipt.file_path):
                logger.warning("Receipt %s file %s is missing; skipping", receipt.id, receipt.file_path)
                result.missing += 1
                continue
            try:
                parsed = self.parser.parse(receipt.file_path)
            except ReceiptParseError as exc:
                self._fail(receipt.id, str(exc), result)
                continue
            except Exception as exc:
                logger.exception("Unexpected parser error for receipt %s", receipt.id)
                self._fail(receipt.id, f"{type(exc).__name__}: {exc}", result)
                continue

            reference = f"{parsed.sender_name or '?'} -> {parsed.recipient_name or parsed.recipient_phone or '?'}"
            self.store.save_parse_result(receipt.id, parsed, reference)
            result.parsed += 1
            logger.info(
                "Receipt %s parsed: %s RUB %s (%s)",
                receipt.id, parsed.amount, reference, parsed.transfer_type,
            )
            if self.metrics is not None:
                self.metrics.record_receipt_event("parsed")
        return result

    def _fail(self, receipt_id: str, error: str, result: ParseCycleResult) -> None:
        self.store.mark_parse_failed(receipt_id, error)
        result.failed += 1
        logger.warning("Receipt %s could not be parsed: %s", receipt_id, error)
        if self.metrics is not None:
            self.metrics.record_receipt_event("parse_failed")
