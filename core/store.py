"""
P2P Desk Core: Relational Store

Single source of truth shared by every poller. Backed by sqlite3 with one
connection per operation, so any thread may call any method.

Idempotency lives here:
- chat messages are unique per (trade_id, message_id)
- receipts are unique by file hash and by linked payout
- inbox messages are recorded once processed
- chat_step never moves backwards
- status changes can be made conditional on the current status
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.exceptions import ChatStepRegression, PayoutAlreadyLinked
from core.models import (
    INACTIVE_TRADE_STATUSES,
    SENDER_COUNTERPARTY,
    SENDER_US,
    Advertisement,
    ChatMessage,
    ParsedReceipt,
    Payout,
    PayoutStatus,
    Receipt,
    Trade,
    TradeStatus,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS payouts (
        id TEXT PRIMARY KEY,
        gate_payout_id TEXT NOT NULL UNIQUE,
        status INTEGER NOT NULL,
        wallet TEXT,
        bank_name TEXT,
        amount REAL,
        amount_trader TEXT,
        total_trader TEXT,
        recipient_name TEXT,
        meta TEXT,
        approved_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS advertisements (
        id TEXT PRIMARY KEY,
        item_id TEXT NOT NULL UNIQUE,
        account_id TEXT NOT NULL,
        payout_id TEXT REFERENCES payouts(id),
        is_active INTEGER NOT NULL DEFAULT 1,
        payment_method TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trades (
        id TEXT PRIMARY KEY,
        advertisement_id TEXT REFERENCES advertisements(id),
        order_id TEXT UNIQUE,
        payout_id TEXT REFERENCES payouts(id),
        status TEXT NOT NULL,
        chat_step INTEGER NOT NULL DEFAULT 0,
        failure_reason TEXT,
        payment_sent_at TEXT,
        receipt_received_at TEXT,
        approved_at TEXT,
        completed_at TEXT,
        cancelled_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        trade_id TEXT NOT NULL REFERENCES trades(id),
        message_id TEXT NOT NULL,
        sender TEXT NOT NULL,
        content TEXT NOT NULL,
        message_type TEXT NOT NULL DEFAULT 'TEXT',
        is_processed INTEGER NOT NULL DEFAULT 0,
        sent_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (trade_id, message_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS receipts (
        id TEXT PRIMARY KEY,
        email_id TEXT,
        email_from TEXT,
        email_subject TEXT,
        attachment_name TEXT,
        file_path TEXT,
        file_hash TEXT UNIQUE,
        amount REAL,
        sender_name TEXT,
        recipient_name TEXT,
        recipient_phone TEXT,
        recipient_card TEXT,
        recipient_bank TEXT,
        transfer_type TEXT,
        operation_status TEXT,
        commission REAL,
        total REAL,
        operation_id TEXT,
        transaction_date TEXT,
        reference TEXT,
        raw_text TEXT,
        is_parsed INTEGER NOT NULL DEFAULT 0,
        is_processed INTEGER NOT NULL DEFAULT 0,
        parse_error TEXT,
        payout_id TEXT UNIQUE REFERENCES payouts(id),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_inbox_messages (
        message_id TEXT PRIMARY KEY,
        attachments INTEGER NOT NULL DEFAULT 0,
        processed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)",
    "CREATE INDEX IF NOT EXISTS idx_trades_advertisement ON trades(advertisement_id)",
    "CREATE INDEX IF NOT EXISTS idx_trades_payout ON trades(payout_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_trade ON chat_messages(trade_id, is_processed)",
    "CREATE INDEX IF NOT EXISTS idx_receipts_parsed ON receipts(is_parsed, payout_id)",
    "CREATE INDEX IF NOT EXISTS idx_payouts_created ON payouts(created_at)",
]

_TRADE_COLUMNS = {
    "advertisement_id",
    "order_id",
    "payout_id",
    "status",
    "failure_reason",
    "payment_sent_at",
    "receipt_received_at",
    "approved_at",
    "completed_at",
    "cancelled_at",
}

_PAYOUT_COLUMNS = {"status", "wallet", "bank_name", "amount", "recipient_name", "approved_at"}


def _new_id() -> str:
    return uuid.uuid4().hex


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return int(value)
    return value


class DeskStore:
    """
    sqlite3-backed store for trades, listings, payouts, receipts and chat.

    Writes that read-then-modify (chat step, receipt linking, conditional
    status transitions) run under one process-wide lock so concurrent pollers
    see a consistent compare-and-set.
    """

    def __init__(self, db_path: str = "data/desk.db"):
        self.db_file = Path(db_path)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = RLock()
        self._init_schema()
        logger.info(f"DeskStore initialized: {self.db_file}")

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_file), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)

    def _fetch_one(self, sql: str, params: Sequence[Any] = ()):
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def create_payout(
        self,
        gate_payout_id: str,
        wallet: str,
        amount_trader: Optional[Dict[str, float]] = None,
        *,
        status: int = PayoutStatus.PENDING,
        amount: Optional[float] = None,
        bank_name: Optional[str] = None,
        recipient_name: Optional[str] = None,
        total_trader: Optional[Dict[str, float]] = None,
        meta: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Payout:
        now = utcnow()
        payout = Payout(
            id=_new_id(),
            gate_payout_id=str(gate_payout_id),
            status=int(status),
            wallet=wallet or "",
            bank_name=bank_name,
            amount=amount,
            amount_trader=dict(amount_trader or {}),
            total_trader=dict(total_trader or {}),
            recipient_name=recipient_name,
            meta=dict(meta or {}),
            created_at=created_at or now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO payouts (
                    id, gate_payout_id, status, wallet, bank_name, amount,
                    amount_trader, total_trader, recipient_name, meta,
                    approved_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    payout.id, payout.gate_payout_id, payout.status, payout.wallet,
                    payout.bank_name, payout.amount, json.dumps(payout.amount_trader),
                    json.dumps(payout.total_trader), payout.recipient_name,
                    json.dumps(payout.meta, ensure_ascii=False), None,
                    to_iso(payout.created_at), to_iso(payout.updated_at),
                ),
            )
        return payout

    def get_payout(self, payout_id: Optional[str]) -> Optional[Payout]:
        if not payout_id:
            return None
        row = self._fetch_one("SELECT * FROM payouts WHERE id = ?", (payout_id,))
        return Payout.from_row(row) if row else None

    def get_payout_by_gate_id(self, gate_payout_id: str) -> Optional[Payout]:
        row = self._fetch_one("SELECT * FROM payouts WHERE gate_payout_id = ?", (str(gate_payout_id),))
        return Payout.from_row(row) if row else None

    def update_payout(self, payout_id: str, **fields: Any) -> None:
        unknown = set(fields) - _PAYOUT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown payout fields: {sorted(unknown)}")
        if not fields:
            return
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_serialize(value) for value in fields.values()] + [payout_id]
        with self._connect() as conn:
            conn.execute(f"UPDATE payouts SET {assignments} WHERE id = ?", params)

    def merge_payout_meta(self, payout_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self._write_lock:
            payout = self.get_payout(payout_id)
            if payout is None:
                raise KeyError(payout_id)
            meta = dict(payout.meta)
            meta.update(updates)
            with self._connect() as conn:
                conn.execute(
                    "UPDATE payouts SET meta = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(meta, ensure_ascii=False), to_iso(utcnow()), payout_id),
                )
            return meta

    def upsert_payout(
        self,
        gate_payout_id: str,
        *,
        status: int,
        wallet: str,
        approved_at: Optional[datetime] = None,
        **fields: Any,
    ) -> Tuple[Payout, str]:
        """
        Insert a payout reported by the payment platform, or refresh the
        stored copy. Returns (payout, outcome) where outcome is "created",
        "updated" or "unchanged".

        An existing payout's status only moves forward, so a stale remote
        listing cannot undo a local approval. Contact details are filled in
        only where the stored copy has none.
        """
        with self._write_lock:
            existing = self.get_payout_by_gate_id(gate_payout_id)
            if existing is None:
                payout = self.create_payout(gate_payout_id, wallet, status=status, **fields)
                if approved_at is not None:
                    self.update_payout(payout.id, approved_at=approved_at)
                return self.get_payout(payout.id), "created"

            updates: Dict[str, Any] = {}
            if int(status) > existing.status:
                updates["status"] = int(status)
            if wallet and not existing.wallet:
                updates["wallet"] = wallet
            for name in ("bank_name", "recipient_name"):
                if fields.get(name) and not getattr(existing, name):
                    updates[name] = fields[name]
            if approved_at is not None and existing.approved_at is None:
                updates["approved_at"] = approved_at
            if updates:
                self.update_payout(existing.id, **updates)
                return self.get_payout(existing.id), "updated"
            return existing, "unchanged"

    def list_payouts_without_listing(self, status: int) -> List[Payout]:
        """Payouts in `status` that no listing or trade serves yet, oldest first."""
        rows = self._fetch_all(
            """
            SELECT p.* FROM payouts p
            WHERE p.status = ?
              AND NOT EXISTS (SELECT 1 FROM advertisements a WHERE a.payout_id = p.id)
              AND NOT EXISTS (SELECT 1 FROM trades t WHERE t.payout_id = p.id)
            ORDER BY p.created_at
            """,
            (int(status),),
        )
        return [Payout.from_row(row) for row in rows]

    def list_payouts_created_between(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[Payout]:
        """Newest first; open bounds when start/end are None."""
        clauses, params = [], []
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(start))
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(to_iso(end))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch_all(f"SELECT * FROM payouts {where} ORDER BY created_at DESC", params)
        return [Payout.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Advertisements
    # ------------------------------------------------------------------

    def create_advertisement(
        self,
        item_id: str,
        account_id: str,
        payout_id: Optional[str] = None,
        is_active: bool = True,
        payment_method: Optional[str] = None,
    ) -> Advertisement:
        now = utcnow()
        ad = Advertisement(
            id=_new_id(),
            item_id=str(item_id),
            account_id=str(account_id),
            payout_id=payout_id,
            is_active=is_active,
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO advertisements (
                    id, item_id, account_id, payout_id, is_active, payment_method, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (ad.id, ad.item_id, ad.account_id, ad.payout_id, int(ad.is_active),
                 ad.payment_method, to_iso(now), to_iso(now)),
            )
        return ad

    def get_advertisement(self, advertisement_id: Optional[str]) -> Optional[Advertisement]:
        if not advertisement_id:
            return None
        row = self._fetch_one("SELECT * FROM advertisements WHERE id = ?", (advertisement_id,))
        return Advertisement.from_row(row) if row else None

    def get_advertisement_by_item_id(self, item_id: str) -> Optional[Advertisement]:
        row = self._fetch_one("SELECT * FROM advertisements WHERE item_id = ?", (str(item_id),))
        return Advertisement.from_row(row) if row else None

    def set_advertisement_active(self, advertisement_id: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE advertisements SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), to_iso(utcnow()), advertisement_id),
            )

    def list_active_advertisements(self, account_id: str) -> List[Advertisement]:
        rows = self._fetch_all(
            "SELECT * FROM advertisements WHERE account_id = ? AND is_active = 1 ORDER BY created_at",
            (str(account_id),),
        )
        return [Advertisement.from_row(row) for row in rows]

    def list_active_advertisements_with_orders(self) -> List[Advertisement]:
        """Listings that violate the 'order assigned → inactive' invariant."""
        rows = self._fetch_all(
            """
            SELECT DISTINCT a.* FROM advertisements a
            JOIN trades t ON t.advertisement_id = a.id
            WHERE a.is_active = 1 AND t.order_id IS NOT NULL
            """
        )
        return [Advertisement.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def create_trade(
        self,
        advertisement_id: Optional[str],
        payout_id: Optional[str] = None,
        order_id: Optional[str] = None,
        status: str = TradeStatus.PENDING.value,
    ) -> Trade:
        now = utcnow()
        trade = Trade(
            id=_new_id(),
            advertisement_id=advertisement_id,
            order_id=order_id,
            payout_id=payout_id,
            status=status,
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trades (id, advertisement_id, order_id, payout_id, status, chat_step, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (trade.id, advertisement_id, order_id, payout_id, status, to_iso(now), to_iso(now)),
            )
        return trade

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        row = self._fetch_one("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return Trade.from_row(row) if row else None

    def get_trade_by_order_id(self, order_id: str) -> Optional[Trade]:
        row = self._fetch_one("SELECT * FROM trades WHERE order_id = ?", (str(order_id),))
        return Trade.from_row(row) if row else None

    def get_trade_by_payout_id(self, payout_id: str) -> Optional[Trade]:
        row = self._fetch_one(
            "SELECT * FROM trades WHERE payout_id = ? ORDER BY created_at DESC LIMIT 1",
            (payout_id,),
        )
        return Trade.from_row(row) if row else None

    def find_unlinked_trade_for_advertisement(self, advertisement_id: str) -> Optional[Trade]:
        placeholders = ", ".join("?" for _ in INACTIVE_TRADE_STATUSES)
        row = self._fetch_one(
            f"""
            SELECT * FROM trades
            WHERE advertisement_id = ? AND order_id IS NULL AND status NOT IN ({placeholders})
            ORDER BY created_at DESC LIMIT 1
            """,
            (advertisement_id, *sorted(INACTIVE_TRADE_STATUSES)),
        )
        return Trade.from_row(row) if row else None

    def update_trade(self, trade_id: str, **fields: Any) -> None:
        unknown = set(fields) - _TRADE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown trade fields: {sorted(unknown)}")
        if not fields:
            return
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_serialize(value) for value in fields.values()] + [trade_id]
        with self._connect() as conn:
            conn.execute(f"UPDATE trades SET {assignments} WHERE id = ?", params)

    def transition_trade(
        self,
        trade_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set status change.

        Returns:
            True if the trade was in one of from_statuses and was updated,
            False if another poller already moved it.
        """
        allowed = list(from_statuses)
        unknown = set(fields) - _TRADE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown trade fields: {sorted(unknown)}")
        fields = dict(fields, status=to_status, updated_at=utcnow())
        assignments = ", ".join(f"{name} = ?" for name in fields)
        placeholders = ", ".join("?" for _ in allowed)
        params = [_serialize(value) for value in fields.values()] + [trade_id, *allowed]
        with self._write_lock, self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE trades SET {assignments} WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            return cursor.rowcount == 1

    def advance_chat_step(self, trade_id: str, step: int, **fields: Any) -> None:
        """Move chat_step forward (or keep it); lowering it raises ChatStepRegression."""
        with self._write_lock:
            row = self._fetch_one("SELECT chat_step FROM trades WHERE id = ?", (trade_id,))
            if row is None:
                raise KeyError(trade_id)
            current = int(row["chat_step"])
            if step < current:
                raise ChatStepRegression(trade_id, current, step)
            unknown = set(fields) - _TRADE_COLUMNS
            if unknown:
                raise ValueError(f"Unknown trade fields: {sorted(unknown)}")
            fields = dict(fields, chat_step=step, updated_at=utcnow())
            assignments = ", ".join(f"{name} = ?" for name in fields)
            params = [_serialize(value) for value in fields.values()] + [trade_id]
            with self._connect() as conn:
                conn.execute(f"UPDATE trades SET {assignments} WHERE id = ?", params)

    def list_active_trades(self) -> List[Trade]:
        placeholders = ", ".join("?" for _ in INACTIVE_TRADE_STATUSES)
        rows = self._fetch_all(
            f"SELECT * FROM trades WHERE status NOT IN ({placeholders}) ORDER BY created_at",
            sorted(INACTIVE_TRADE_STATUSES),
        )
        return [Trade.from_row(row) for row in rows]

    def list_trades_with_orders(self, exclude_statuses: Iterable[str] = ()) -> List[Trade]:
        excluded = sorted(exclude_statuses)
        sql = "SELECT * FROM trades WHERE order_id IS NOT NULL"
        if excluded:
            sql += f" AND status NOT IN ({', '.join('?' for _ in excluded)})"
        rows = self._fetch_all(sql + " ORDER BY created_at", excluded)
        return [Trade.from_row(row) for row in rows]

    def list_trades_by_status(self, statuses: Iterable[str]) -> List[Trade]:
        wanted = list(statuses)
        placeholders = ", ".join("?" for _ in wanted)
        rows = self._fetch_all(
            f"SELECT * FROM trades WHERE status IN ({placeholders}) ORDER BY created_at",
            wanted,
        )
        return [Trade.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Chat messages
    # ------------------------------------------------------------------

    def add_chat_message(
        self,
        trade_id: str,
        message_id: str,
        sender: str,
        content: str,
        *,
        is_processed: Optional[bool] = None,
        message_type: str = "TEXT",
        sent_at: Optional[datetime] = None,
    ) -> Optional[ChatMessage]:
        """
        Store a chat message once.

        Own messages default to processed. Returns None when a message with
        the same external id already exists for the trade.
        """
        if sender not in (SENDER_US, SENDER_COUNTERPARTY):
            raise ValueError(f"Invalid sender: {sender}")
        if is_processed is None:
            is_processed = sender == SENDER_US
        now = utcnow()
        message = ChatMessage(
            id=_new_id(),
            trade_id=trade_id,
            message_id=str(message_id),
            sender=sender,
            content=content,
            message_type=message_type,
            is_processed=is_processed,
            sent_at=sent_at or now,
            created_at=now,
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO chat_messages (
                    id, trade_id, message_id, sender, content, message_type,
                    is_processed, sent_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (message.id, trade_id, message.message_id, sender, content, message_type,
                 int(is_processed), to_iso(message.sent_at), to_iso(now)),
            )
            if cursor.rowcount == 0:
                return None
        return message

    def list_chat_messages(self, trade_id: str) -> List[ChatMessage]:
        rows = self._fetch_all(
            "SELECT * FROM chat_messages WHERE trade_id = ? ORDER BY sent_at, created_at",
            (trade_id,),
        )
        return [ChatMessage.from_row(row) for row in rows]

    def has_outbound_message(self, trade_id: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 FROM chat_messages WHERE trade_id = ? AND sender = ? LIMIT 1",
            (trade_id, SENDER_US),
        )
        return row is not None

    def outbound_contains(self, trade_id: str, markers: Iterable[str]) -> bool:
        for message in self.list_chat_messages(trade_id):
            if message.sender != SENDER_US:
                continue
            if any(marker in message.content for marker in markers):
                return True
        return False

    def list_unprocessed_counterparty_messages(self, trade_id: str) -> List[ChatMessage]:
        rows = self._fetch_all(
            """
            SELECT * FROM chat_messages
            WHERE trade_id = ? AND sender = ? AND is_processed = 0
            ORDER BY sent_at, created_at
            """,
            (trade_id, SENDER_COUNTERPARTY),
        )
        return [ChatMessage.from_row(row) for row in rows]

    def mark_message_processed(self, message_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE chat_messages SET is_processed = 1 WHERE id = ?", (message_id,))

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def create_receipt(
        self,
        file_path: str,
        file_hash: str,
        *,
        email_id: Optional[str] = None,
        email_from: Optional[str] = None,
        email_subject: Optional[str] = None,
        attachment_name: Optional[str] = None,
    ) -> Optional[Receipt]:
        """Insert a new unparsed receipt; None if the file hash is already stored."""
        now = utcnow()
        receipt = Receipt(
            id=_new_id(),
            file_path=file_path,
            file_hash=file_hash,
            email_id=email_id,
            email_from=email_from,
            email_subject=email_subject,
            attachment_name=attachment_name,
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO receipts (
                    id, email_id, email_from, email_subject, attachment_name,
                    file_path, file_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (receipt.id, email_id, email_from, email_subject, attachment_name,
                 file_path, file_hash, to_iso(now), to_iso(now)),
            )
            if cursor.rowcount == 0:
                return None
        return receipt

    def get_receipt(self, receipt_id: str) -> Optional[Receipt]:
        row = self._fetch_one("SELECT * FROM receipts WHERE id = ?", (receipt_id,))
        return Receipt.from_row(row) if row else None

    def get_receipt_by_hash(self, file_hash: str) -> Optional[Receipt]:
        row = self._fetch_one("SELECT * FROM receipts WHERE file_hash = ?", (file_hash,))
        return Receipt.from_row(row) if row else None

    def get_receipt_by_payout_id(self, payout_id: str) -> Optional[Receipt]:
        row = self._fetch_one("SELECT * FROM receipts WHERE payout_id = ?", (payout_id,))
        return Receipt.from_row(row) if row else None

    def list_unparsed_receipts(self, limit: int = 50) -> List[Receipt]:
        rows = self._fetch_all(
            "SELECT * FROM receipts WHERE is_parsed = 0 ORDER BY created_at LIMIT ?",
            (int(limit),),
        )
        return [Receipt.from_row(row) for row in rows]

    def save_parse_result(self, receipt_id: str, parsed: ParsedReceipt, reference: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE receipts SET
                    amount = ?, sender_name = ?, recipient_name = ?, recipient_phone = ?,
                    recipient_card = ?, recipient_bank = ?, transfer_type = ?,
                    operation_status = ?, commission = ?, total = ?, operation_id = ?,
                    transaction_date = ?, reference = ?, raw_text = ?,
                    is_parsed = 1, parse_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    parsed.amount, parsed.sender_name, parsed.recipient_name,
                    parsed.recipient_phone, parsed.recipient_card, parsed.recipient_bank,
                    parsed.transfer_type, parsed.operation_status, parsed.commission,
                    parsed.total, parsed.operation_id, to_iso(parsed.transaction_date),
                    reference, parsed.raw_text, to_iso(utcnow()), receipt_id,
                ),
            )

    def mark_parse_failed(self, receipt_id: str, error: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE receipts SET is_parsed = 1, parse_error = ?, updated_at = ? WHERE id = ?",
                (error, to_iso(utcnow()), receipt_id),
            )

    def list_linkable_receipts(self) -> List[Receipt]:
        """Parsed, unlinked, error-free receipts with an amount, newest first."""
        rows = self._fetch_all(
            """
            SELECT * FROM receipts
            WHERE is_parsed = 1 AND payout_id IS NULL AND amount IS NOT NULL AND parse_error IS NULL
            ORDER BY created_at DESC
            """
        )
        return [Receipt.from_row(row) for row in rows]

    def link_receipt(self, receipt_id: str, payout_id: str) -> None:
        """
        Attach a receipt to a payout and mark it processed.

        Raises:
            PayoutAlreadyLinked: another receipt already holds this payout
        """
        with self._write_lock:
            existing = self.get_receipt_by_payout_id(payout_id)
            if existing is not None and existing.id != receipt_id:
                raise PayoutAlreadyLinked(payout_id, existing.id)
            try:
                with self._connect() as conn:
                    conn.execute(
                        "UPDATE receipts SET payout_id = ?, is_processed = 1, updated_at = ? WHERE id = ?",
                        (payout_id, to_iso(utcnow()), receipt_id),
                    )
            except sqlite3.IntegrityError as exc:
                raise PayoutAlreadyLinked(payout_id) from exc

    def linked_payout_ids(self) -> set:
        rows = self._fetch_all("SELECT payout_id FROM receipts WHERE payout_id IS NOT NULL")
        return {row["payout_id"] for row in rows}

    # ------------------------------------------------------------------
    # Inbox bookkeeping
    # ------------------------------------------------------------------

    def is_inbox_message_processed(self, message_id: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 FROM processed_inbox_messages WHERE message_id = ?", (str(message_id),)
        )
        return row is not None

    def mark_inbox_message_processed(self, message_id: str, attachments: int = 0) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO processed_inbox_messages (message_id, attachments, processed_at)
                VALUES (?, ?, ?)
                """,
                (str(message_id), int(attachments), to_iso(utcnow())),
            )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def status_counts(self) -> Dict[str, int]:
        rows = self._fetch_all("SELECT status, COUNT(*) AS n FROM trades GROUP BY status")
        return {row["status"]: int(row["n"]) for row in rows}

    def receipt_counts(self) -> Dict[str, int]:
        row = self._fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN is_parsed = 0 THEN 1 ELSE 0 END) AS unparsed,
                SUM(CASE WHEN parse_error IS NOT NULL THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN payout_id IS NOT NULL THEN 1 ELSE 0 END) AS linked
            FROM receipts
            """
        )
        return {key: int(row[key] or 0) for key in ("total", "unparsed", "failed", "linked")}
