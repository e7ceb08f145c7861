"""Shared exception types for the reconciliation engine."""

from typing import Optional


class ExternalServiceError(RuntimeError):
    """Raised when a remote call (marketplace, inbox, payment platform) fails."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class DataInconsistency(RuntimeError):
    """Local records disagree with each other (missing listing, payout, ...)."""


class ReceiptParseError(ValueError):
    """Receipt file could not be turned into a structured record."""


class ChatStepRegression(ValueError):
    """Attempt to move a trade's chat step backwards."""

    def __init__(self, trade_id: str, current: int, requested: int):
        super().__init__(
            f"chat_step for trade {trade_id} cannot move from {current} to {requested}"
        )
        self.trade_id = trade_id
        self.current = current
        self.requested = requested


class PayoutAlreadyLinked(DataInconsistency):
    """Payout is already claimed by a different receipt."""

    def __init__(self, payout_id: str, receipt_id: Optional[str] = None):
        super().__init__(f"Payout {payout_id} already linked to receipt {receipt_id}")
        self.payout_id = payout_id
        self.receipt_id = receipt_id


_ALREADY_DONE_MARKERS = ("already", "not found", "item not found")


def is_already_done(exc: BaseException) -> bool:
    """True when a remote error means the requested change already happened."""
    text = str(exc).lower()
    original = getattr(exc, "original", None)
    if original is not None:
        text = f"{text} {original}".lower()
    return any(marker in text for marker in _ALREADY_DONE_MARKERS)


def is_already_approved(exc: BaseException) -> bool:
    """Narrower check for payout approval: only "already" counts as success."""
    text = str(exc).lower()
    original = getattr(exc, "original", None)
    if original is not None:
        text = f"{text} {original}".lower()
    return "already" in text
