"""
Tests for the T-Bank receipt parser.

Receipt texts below mirror `pdftotext` output for the two layouts the bank
renders: sequential (label, value, label, value) and columnar (all labels,
then all values).
"""
import subprocess
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from core.exceptions import ReceiptParseError
from core.receipt_parser import (
    CARD_TRANSFER_RECIPIENT,
    TRANSFER_BY_PHONE,
    TRANSFER_TO_CARD,
    TRANSFER_TO_TBANK,
    PdfTextExtractor,
    TinkoffReceiptParser,
)

PHONE_SEQUENTIAL = """\
Т-Банк
28.09.2025 14:35:12
Итого
5 000 ₽
Перевод
По номеру телефона
Статус
Успешно
Сумма
5 000 ₽
Комиссия
Без комиссии
Отправитель
Иван Петров
Телефон получателя
+7 (912) 345-67-89
Получатель
Анна С.
Банк получателя
Сбербанк
Счет списания
****1234
Идентификатор операции
A5271123456789
СБП
"""

PHONE_COLUMNAR = """\
Т-Банк
28.09.2025 14:35
Итого
12 500 ₽
Перевод
По номеру телефона
Статус
Успешно
Сумма
12 500 ₽
Комиссия
Отправитель
Телефон получателя
Получатель
Банк получателя
Счет списания
Без комиссии
Иван Петров
+7 (999) 111-22-33
Мария К.
Т-Банк
****5678
Идентификатор операции
B5271000000001
"""

TO_TBANK = """\
28.09.2025 10:00:00
Итого
3 000 ₽
Перевод
Клиенту Т-Банка
Статус
Успешно
Сумма
3 000 ₽
Комиссия
Без комиссии
Отправитель
Иван Петров
Получатель
Мария К.
Карта получателя
*4207
"""

TO_CARD = """\
28.09.2025 10:00:00
Итого
5 030 ₽
Перевод
На карту
Статус
Успешно
Сумма
5 000 ₽
Комиссия
30 ₽
Отправитель
Иван Петров
Карта получателя
220024******2091
"""


@pytest.fixture
def parser():
    return TinkoffReceiptParser(extractor=lambda path: "")


class TestLayouts:
    def test_phone_sequential(self, parser):
        parsed = parser.parse_text(PHONE_SEQUENTIAL)

        assert parsed.transfer_type == TRANSFER_BY_PHONE
        assert parsed.amount == 5000.0
        assert parsed.total == 5000.0
        assert parsed.commission == 0.0
        assert parsed.sender_name == "Иван Петров"
        assert parsed.recipient_phone == "+7 (912) 345-67-89"
        assert parsed.recipient_name == "Анна С."
        assert parsed.recipient_bank == "Сбербанк"
        assert parsed.operation_id == "A5271123456789"
        assert parsed.operation_status == "Успешно"

    def test_phone_columnar(self, parser):
        parsed = parser.parse_text(PHONE_COLUMNAR)

        assert parsed.amount == 12500.0
        assert parsed.sender_name == "Иван Петров"
        assert parsed.recipient_phone == "+7 (999) 111-22-33"
        assert parsed.recipient_name == "Мария К."
        assert parsed.recipient_bank == "Т-Банк"
        assert parsed.commission == 0.0

    def test_tbank_client(self, parser):
        parsed = parser.parse_text(TO_TBANK)

        assert parsed.transfer_type == TRANSFER_TO_TBANK
        assert parsed.recipient_name == "Мария К."
        assert parsed.recipient_card == "*4207"
        assert parsed.recipient_phone is None

    def test_card_transfer(self, parser):
        parsed = parser.parse_text(TO_CARD)

        assert parsed.transfer_type == TRANSFER_TO_CARD
        assert parsed.recipient_card == "220024******2091"
        assert parsed.recipient_name == CARD_TRANSFER_RECIPIENT
        assert parsed.amount == 5000.0
        assert parsed.commission == 30.0
        assert parsed.total == 5030.0

    def test_phone_without_recipient_name_falls_back_to_phone(self, parser):
        text = PHONE_SEQUENTIAL.replace("Получатель\nАнна С.\n", "")

        parsed = parser.parse_text(text)

        assert parsed.recipient_name == "+7 (912) 345-67-89"


class TestTimestamps:
    def test_moscow_time_converted_to_utc(self, parser):
        parsed = parser.parse_text(PHONE_SEQUENTIAL)
        assert parsed.transaction_date == datetime(2025, 9, 28, 11, 35, 12, tzinfo=timezone.utc)

    def test_minutes_precision(self, parser):
        parsed = parser.parse_text(PHONE_COLUMNAR)
        assert parsed.transaction_date == datetime(2025, 9, 28, 11, 35, 0, tzinfo=timezone.utc)

    def test_custom_offset(self):
        parser = TinkoffReceiptParser(extractor=lambda path: "", tz_offset_hours=0)
        parsed = parser.parse_text(PHONE_SEQUENTIAL)
        assert parsed.transaction_date == datetime(2025, 9, 28, 14, 35, 12, tzinfo=timezone.utc)

    def test_date_only_defaults_to_noon(self, parser):
        text = PHONE_SEQUENTIAL.replace("28.09.2025 14:35:12", "28.09.2025")
        parsed = parser.parse_text(text)
        assert parsed.transaction_date == datetime(2025, 9, 28, 9, 0, 0, tzinfo=timezone.utc)


class TestRejections:
    @pytest.mark.parametrize(
        "old, new, message",
        [
            ("Успешно", "Отклонено", "Успешно"),
            ("Сумма\n5 000 ₽\n", "", "amount"),
            ("По номеру телефона", "Между своими счетами", "Unknown transfer type"),
            ("Телефон получателя\n+7 (912) 345-67-89\n", "", "Recipient phone not found"),
            ("Отправитель\nИван Петров\n", "", "sender"),
            ("28.09.2025 14:35:12", "", "date"),
        ],
    )
    def test_rejected(self, parser, old, new, message):
        with pytest.raises(ReceiptParseError, match=message):
            parser.parse_text(PHONE_SEQUENTIAL.replace(old, new))

    def test_card_transfer_without_card(self, parser):
        with pytest.raises(ReceiptParseError, match="card"):
            parser.parse_text(TO_CARD.replace("220024******2091", "нет данных"))


class TestParseFile:
    def test_missing_file(self, parser, tmp_path):
        with pytest.raises(ReceiptParseError, match="not found"):
            parser.parse(str(tmp_path / "missing.pdf"))

    def test_uses_extractor(self, tmp_path):
        path = tmp_path / "receipt.pdf"
        path.write_bytes(b"%PDF-1.4")
        seen = []

        def extractor(file_path):
            seen.append(file_path)
            return TO_CARD

        parsed = TinkoffReceiptParser(extractor=extractor).parse(str(path))

        assert seen == [str(path)]
        assert parsed.recipient_card == "220024******2091"

    def test_blank_text_rejected(self, tmp_path):
        path = tmp_path / "receipt.pdf"
        path.write_bytes(b"%PDF-1.4")

        with pytest.raises(ReceiptParseError, match="No text"):
            TinkoffReceiptParser(extractor=lambda p: "  \n").parse(str(path))


class TestPdfTextExtractor:
    def test_returns_decoded_stdout(self):
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="Успешно".encode("utf-8"))
        with patch("core.receipt_parser.subprocess.run", return_value=completed) as run:
            assert PdfTextExtractor()("r.pdf") == "Успешно"
        assert run.call_args[0][0] == ["pdftotext", "-enc", "UTF-8", "r.pdf", "-"]

    def test_binary_missing(self):
        with patch("core.receipt_parser.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(ReceiptParseError, match="not installed"):
                PdfTextExtractor()("r.pdf")

    def test_extraction_error(self):
        error = subprocess.CalledProcessError(1, ["pdftotext"], stderr=b"Syntax Error: broken xref")
        with patch("core.receipt_parser.subprocess.run", side_effect=error):
            with pytest.raises(ReceiptParseError, match="broken xref"):
                PdfTextExtractor()("r.pdf")

    def test_timeout(self):
        with patch("core.receipt_parser.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(["pdftotext"], 30)):
            with pytest.raises(ReceiptParseError, match="timed out"):
                PdfTextExtractor()("r.pdf")
