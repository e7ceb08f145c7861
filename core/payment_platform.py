"""
P2P Desk Core: Payment Platform Connector

REST adapter for the payout feed and payout approvals. Approval uploads the
receipt PDF as a multipart attachment; the platform answers
{"success": bool, "response": ...}.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.clients import PaymentPlatform, RemotePayout
from core.exceptions import ExternalServiceError
from core.http_client import ApiClient

logger = logging.getLogger(__name__)


class GatePayoutClient(ApiClient, PaymentPlatform):
    """Payout feed and approvals authenticated with a bearer token."""

    channel = "payments"

    def __init__(self, base_url: str, api_token: str, **kwargs):
        super().__init__(base_url, **kwargs)
        if not api_token:
            raise ValueError("Payment platform API token required")
        self._api_token = api_token

    @classmethod
    def from_config(cls, raw_config: Dict[str, Any], **client_kwargs) -> "GatePayoutClient":
        token = os.getenv(raw_config.get("api_token_env", "PAYMENTS_API_TOKEN"), "")
        return cls(raw_config["base_url"], token, **client_kwargs)

    def _headers(self, method: str, endpoint: str, body_text: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._api_token}",
        }

    @staticmethod
    def _unwrap(endpoint: str, payload: Any) -> Any:
        if isinstance(payload, dict) and payload.get("success") is False:
            error = payload.get("error") or payload.get("message") or "request rejected"
            raise ExternalServiceError(f"{endpoint}: {error}")
        if isinstance(payload, dict) and "response" in payload:
            return payload["response"]
        return payload

    def approve_payout(self, gate_payout_id: str, receipt_path: str) -> dict:
        path = Path(receipt_path)
        content = path.read_bytes()
        endpoint = f"/payments/payouts/{gate_payout_id}/approve"
        payload = self._req(
            "POST",
            endpoint,
            files={"attachments[]": (path.name, content, "application/pdf")},
        )
        result = self._unwrap(endpoint, payload) or {}
        logger.info("Payout %s approved (status=%s)", gate_payout_id, result.get("status"))
        return result

    def get_payout_status(self, gate_payout_id: str) -> Optional[int]:
        endpoint = f"/payments/payouts/{gate_payout_id}"
        result = self._unwrap(endpoint, self._req("GET", endpoint)) or {}
        payout = result.get("payout", result)
        status = payout.get("status")
        return int(status) if status is not None else None

    def list_payouts(self, statuses: Sequence[int], max_pages: int = 20) -> List[RemotePayout]:
        endpoint = "/payments/payouts"
        payouts: List[RemotePayout] = []
        page = 1
        while page <= max_pages:
            params = {"page": page, "filters[status][]": [int(status) for status in statuses]}
            result = self._unwrap(endpoint, self._req("GET", endpoint, params=params)) or {}
            listing = result.get("payouts", result)
            for item in listing.get("data") or []:
                try:
                    payouts.append(_to_remote_payout(item))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed payout %s: %s", item.get("id"), exc)
            last_page = int(listing.get("last_page") or page)
            if not listing.get("next_page_url") or page >= last_page:
                break
            page += 1
        logger.debug("Fetched %s payouts with status %s", len(payouts), list(statuses))
        return payouts


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _currency_legs(value: Any) -> Dict[str, float]:
    """{"643": 5000, "000001": 52.6}; the platform sends [] for a hidden amount."""
    legs = value.get("trader") if isinstance(value, dict) else None
    if not isinstance(legs, dict):
        return {}
    return {str(code): float(amount) for code, amount in legs.items() if amount is not None}


def _bank_label(bank: Any) -> Optional[str]:
    if isinstance(bank, str):
        try:
            bank = json.loads(bank)
        except ValueError:
            return bank or None
    if isinstance(bank, dict):
        return bank.get("label") or bank.get("name")
    return None


def _to_remote_payout(item: Dict[str, Any]) -> RemotePayout:
    meta = item.get("meta") if isinstance(item.get("meta"), dict) else {}
    return RemotePayout(
        gate_payout_id=str(item["id"]),
        status=int(item["status"]),
        wallet=str(item.get("wallet") or ""),
        amount_trader=_currency_legs(item.get("amount")),
        total_trader=_currency_legs(item.get("total")),
        bank_name=_bank_label(item.get("bank")) or meta.get("bank"),
        recipient_name=item.get("recipient_name") or meta.get("recipient_name"),
        meta=meta,
        approved_at=_parse_timestamp(item.get("approved_at")),
        created_at=_parse_timestamp(item.get("created_at")),
    )
