"""
P2P Desk Core: Receipt Parser

Turns a bank transfer receipt (PDF) into a ParsedReceipt.

The PDF → text step is injected (default: poppler's `pdftotext`); the text
parser understands the T-Bank receipt layout in both of its renderings:
- sequential: every label is followed by its value
- columns:    all labels first, then all values in the same order

Only successful transfers ("Успешно") are accepted. Transfer kinds:
- "По номеру телефона" (BY_PHONE): recipient phone required
- "Клиенту Т-Банка"    (TO_TBANK): recipient name + last 4 card digits
- "На карту"           (TO_CARD):  masked card 220024******2091
"""

import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from core.exceptions import ReceiptParseError
from core.models import ParsedReceipt

logger = logging.getLogger(__name__)

TRANSFER_BY_PHONE = "BY_PHONE"
TRANSFER_TO_TBANK = "TO_TBANK"
TRANSFER_TO_CARD = "TO_CARD"

CARD_TRANSFER_RECIPIENT = "Card Transfer"
SUCCESS_STATUS = "Успешно"

FIELD_LABELS = (
    "Комиссия",
    "Отправитель",
    "Телефон получателя",
    "Получатель",
    "Банк получателя",
    "Счет списания",
)

_NAME_RE = re.compile(r"^[А-ЯЁ][а-яё]+(?:\s+[А-ЯЁ][а-яё]+)*$")
_DATETIME_PATTERNS = (
    re.compile(r"(\d{2})\s*\.\s*(\d{2})\s*\.\s*(\d{4})\s+(\d{2})\s*:\s*(\d{2})\s*:\s*(\d{2})"),
    re.compile(r"(\d{2})\s*\.\s*(\d{2})\s*\.\s*(\d{4})\s+(\d{2})\s*:\s*(\d{2})"),
)
_DATE_ONLY = re.compile(r"(\d{2})\.(\d{2})\.(\d{4})")
_AMOUNT_PATTERNS = (
    re.compile(r"Сумма\s*\n?\s*(\d+(?:\s+\d+)*)\s*[₽i]"),
    re.compile(r"(\d+(?:\s+\d+)*)\s*[₽i]\s*Сумма"),
)
_TOTAL_RE = re.compile(r"Итого\s*\n\s*(?:[^\n]*\n\s*)?(\d+(?:\s+\d+)*)\s*[₽i]")
_OPERATION_RE = re.compile(r"Идентификатор операции\s+(\S+)")
_TBANK_CARD_RE = re.compile(r"Карта получателя\s*\*(\d{4})")
_MASKED_CARD_RE = re.compile(r"Карта получателя[\s\S]*?(\d{6}\*{6}\d{4})")
_STOP_PREFIXES = ("Идентификатор операции", "СБП", "Квитанция", "Служба")

TextExtractor = Callable[[str], str]


def _to_int(value: str) -> int:
    return int(re.sub(r"\s+", "", value))


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


class PdfTextExtractor:
    """Runs `pdftotext` and returns the document text."""

    def __init__(self, binary: str = "pdftotext", timeout: float = 30.0):
        self.binary = binary
        self.timeout = timeout

    def __call__(self, file_path: str) -> str:
        try:
            completed = subprocess.run(
                [self.binary, "-enc", "UTF-8", file_path, "-"],
                capture_output=True,
                timeout=self.timeout,
                check=True,
            )
        except FileNotFoundError as exc:
            raise ReceiptParseError(f"{self.binary} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise ReceiptParseError(f"Text extraction timed out for {file_path}") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode("utf-8", "replace").strip() if exc.stderr else ""
            raise ReceiptParseError(f"Text extraction failed for {file_path}: {stderr}") from exc
        return completed.stdout.decode("utf-8", "replace")


class ReceiptParser(ABC):
    @abstractmethod
    def parse(self, file_path: str) -> ParsedReceipt:
        """Parse one receipt file; raises ReceiptParseError when it is not usable."""


class TinkoffReceiptParser(ReceiptParser):
    """
    Parser for T-Bank transfer receipts.

    Receipt timestamps are local bank time; tz_offset_hours converts them to
    UTC (Moscow, +3, by default).
    """

    def __init__(self, extractor: Optional[TextExtractor] = None, tz_offset_hours: float = 3.0):
        self.extractor = extractor or PdfTextExtractor()
        self.tz = timezone(timedelta(hours=tz_offset_hours))

    def parse(self, file_path: str) -> ParsedReceipt:
        if not os.path.exists(file_path):
            raise ReceiptParseError(f"Receipt file not found: {file_path}")
        text = self.extractor(file_path)
        if not text or not text.strip():
            raise ReceiptParseError(f"No text extracted from {file_path}")
        return self.parse_text(text)

    def parse_text(self, text: str) -> ParsedReceipt:
        if SUCCESS_STATUS not in text:
            raise ReceiptParseError("Receipt rejected: status 'Успешно' not found")

        lines = _lines(text)
        columnar = self._is_columnar(lines)

        transaction_date = self._extract_datetime(text)
        if transaction_date is None:
            raise ReceiptParseError("Could not extract transaction date")

        amount = self._extract_amount(text)
        if not amount:
            raise ReceiptParseError("Could not extract amount")

        sender = self._extract_sender(lines, columnar)
        if not sender:
            raise ReceiptParseError("Could not extract sender")

        parsed = ParsedReceipt(
            amount=float(amount),
            transaction_date=transaction_date,
            sender_name=sender,
            operation_status=SUCCESS_STATUS,
            raw_text=text,
        )
        total = _TOTAL_RE.search(text)
        if total:
            parsed.total = float(_to_int(total.group(1)))
        operation = _OPERATION_RE.search(text)
        if operation:
            parsed.operation_id = operation.group(1)

        transfer_type = self._detect_transfer_type(text)
        parsed.transfer_type = transfer_type
        if transfer_type == TRANSFER_BY_PHONE:
            self._fill_phone_transfer(parsed, lines, columnar)
        elif transfer_type == TRANSFER_TO_TBANK:
            self._fill_tbank_transfer(parsed, text)
        else:
            self._fill_card_transfer(parsed, text)
        return parsed

    # ------------------------------------------------------------------

    @staticmethod
    def _is_columnar(lines: List[str]) -> bool:
        indices = sorted(lines.index(label) for label in FIELD_LABELS if label in lines)
        if len(indices) < 2:
            return False
        return all(b - a == 1 for a, b in zip(indices, indices[1:]))

    def _extract_datetime(self, text: str) -> Optional[datetime]:
        for pattern in _DATETIME_PATTERNS:
            match = pattern.search(text)
            if match:
                parts = [int(part) for part in match.groups()]
                day, month, year, hour, minute = parts[:5]
                second = parts[5] if len(parts) > 5 else 0
                return self._localize(year, month, day, hour, minute, second)
        match = _DATE_ONLY.search(text)
        if match:
            day, month, year = (int(part) for part in match.groups())
            return self._localize(year, month, day, 12, 0, 0)
        return None

    def _localize(self, year, month, day, hour, minute, second) -> Optional[datetime]:
        try:
            local = datetime(year, month, day, hour, minute, second, tzinfo=self.tz)
        except ValueError:
            return None
        return local.astimezone(timezone.utc)

    @staticmethod
    def _extract_amount(text: str) -> Optional[int]:
        for pattern in _AMOUNT_PATTERNS:
            match = pattern.search(text)
            if match:
                return _to_int(match.group(1))
        return None

    @staticmethod
    def _extract_sender(lines: List[str], columnar: bool) -> Optional[str]:
        if "Отправитель" not in lines:
            return None
        sender_idx = lines.index("Отправитель")

        if columnar:
            present = [label for label in FIELD_LABELS if label in lines]
            value_idx = sender_idx + len(present)
            if value_idx < len(lines) and _NAME_RE.match(lines[value_idx]):
                return lines[value_idx]
            return None

        for line in lines[sender_idx + 1:sender_idx + 5]:
            if line in FIELD_LABELS:
                continue
            if _NAME_RE.match(line):
                return line
        return None

    @staticmethod
    def _detect_transfer_type(text: str) -> str:
        if "По номеру телефона" in text:
            return TRANSFER_BY_PHONE
        if "Клиенту Т-Банка" in text:
            return TRANSFER_TO_TBANK
        if "На карту" in text:
            return TRANSFER_TO_CARD
        raise ReceiptParseError("Unknown transfer type")

    @staticmethod
    def _assign(label: str, value: str, fields: Dict[str, object]) -> bool:
        """Store value under label when it has the expected shape. Returns True if stored."""
        if label == "Комиссия" and "commission" not in fields:
            if value == "Без комиссии":
                fields["commission"] = 0.0
                return True
            if value.isdigit():
                fields["commission"] = float(value)
                return True
        elif label == "Телефон получателя" and "recipient_phone" not in fields:
            if value.startswith("+7"):
                fields["recipient_phone"] = value
                return True
        elif label == "Получатель" and "recipient_name" not in fields:
            if re.match(r"^[А-ЯЁ][а-яё]+", value) and "Банк" not in value and not value.startswith("+7"):
                fields["recipient_name"] = value
                return True
        elif label == "Банк получателя" and "recipient_bank" not in fields:
            if "банк" in value.lower():
                fields["recipient_bank"] = value
                return True
        elif label == "Счет списания" and "sender_account" not in fields:
            if "****" in value:
                fields["sender_account"] = value
                return True
        return False

    def _labelled_fields(self, lines: List[str], columnar: bool) -> Dict[str, object]:
        positions = {label: lines.index(label) for label in FIELD_LABELS if label in lines}
        fields: Dict[str, object] = {}
        if not positions:
            return fields

        if columnar:
            ordered = sorted(positions.items(), key=lambda item: item[1])
            values_start = ordered[-1][1] + 1
            for offset, (label, _) in enumerate(ordered):
                if values_start + offset < len(lines):
                    self._assign(label, lines[values_start + offset], fields)
            return fields

        for label, idx in positions.items():
            for line in lines[idx + 1:idx + 5]:
                if line in FIELD_LABELS:
                    continue
                if line.startswith(_STOP_PREFIXES):
                    break
                if self._assign(label, line, fields):
                    break

        # values rendered after the last label
        for line in lines[max(positions.values()) + 1:]:
            if line.startswith(_STOP_PREFIXES):
                break
            for label in ("Комиссия", "Телефон получателя", "Счет списания", "Банк получателя", "Получатель"):
                if self._assign(label, line, fields):
                    break
        return fields

    def _fill_phone_transfer(self, parsed: ParsedReceipt, lines: List[str], columnar: bool) -> None:
        fields = self._labelled_fields(lines, columnar)
        phone = fields.get("recipient_phone")
        if not phone:
            raise ReceiptParseError("Recipient phone not found")
        parsed.recipient_phone = str(phone)
        parsed.recipient_bank = fields.get("recipient_bank")
        parsed.commission = fields.get("commission")
        parsed.recipient_name = fields.get("recipient_name") or parsed.recipient_phone

    @staticmethod
    def _fill_tbank_transfer(parsed: ParsedReceipt, text: str) -> None:
        recipient = re.search(r"Получатель\s*\n\s*([^\n]+)", text)
        if not recipient:
            raise ReceiptParseError("Recipient not found")
        card = _TBANK_CARD_RE.search(text)
        if not card:
            raise ReceiptParseError("Recipient card not found")
        parsed.recipient_name = recipient.group(1).strip()
        parsed.recipient_card = f"*{card.group(1)}"

    @staticmethod
    def _fill_card_transfer(parsed: ParsedReceipt, text: str) -> None:
        card = _MASKED_CARD_RE.search(text)
        if not card:
            raise ReceiptParseError("Recipient card not found")
        parsed.recipient_card = card.group(1)
        parsed.recipient_name = CARD_TRANSFER_RECIPIENT
        commission = re.search(r"Комиссия\s*(\d+(?:\s+\d+)*)", text)
        if commission:
            parsed.commission = float(_to_int(commission.group(1)))
        elif "Без комиссии" in text:
            parsed.commission = 0.0
