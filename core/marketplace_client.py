"""
P2P Desk Core: Marketplace Connector (Bybit P2P)

HMAC-signed REST adapter for the P2P marketplace. One signed session per
trading account; MarketplaceClient methods route by account id.

Every endpoint answers HTTP 200 with {"retCode", "retMsg", "result"}; a
non-zero retCode is raised as ExternalServiceError so callers handle it like
any other remote failure.
"""

import hashlib
import hmac
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.clients import (
    ListingRequest,
    MarketplaceAccount,
    MarketplaceClient,
    MarketplaceOrder,
    RemoteChatMessage,
)
from core.exceptions import ExternalServiceError
from core.http_client import ApiClient

logger = logging.getLogger(__name__)

BYBIT_BASE = "https://api.bybit.com"
RECV_WINDOW = "5000"

# retMsg fragments meaning "this order does not exist (any more)"
_ORDER_MISSING_MARKERS = ("not exist", "not found", "does not exist")


def _parse_millis(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


class BybitSession(ApiClient):
    """Signed requests for a single marketplace account."""

    channel = "marketplace"

    def __init__(self, account_id: str, api_key: str, api_secret: str, base_url: str = BYBIT_BASE, **kwargs):
        super().__init__(base_url, **kwargs)
        if not api_key or not api_secret:
            raise ValueError(f"API key and secret required for marketplace account {account_id}")
        self.account_id = account_id
        self.api_key = api_key
        self.api_secret = api_secret

    def _headers(self, method: str, endpoint: str, body_text: str) -> Dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        prehash = timestamp + self.api_key + RECV_WINDOW + body_text
        signature = hmac.new(
            self.api_secret.encode(),
            prehash.encode(),
            hashlib.sha256,
        ).hexdigest()
        return {
            "Content-Type": "application/json",
            "X-BAPI-API-KEY": self.api_key,
            "X-BAPI-SIGN": signature,
            "X-BAPI-TIMESTAMP": timestamp,
            "X-BAPI-RECV-WINDOW": RECV_WINDOW,
        }

    def post(self, endpoint: str, body: Optional[dict] = None) -> Any:
        payload = self._req("POST", endpoint, body or {})
        ret_code = payload.get("retCode", payload.get("ret_code", 0))
        if ret_code not in (0, "0"):
            message = payload.get("retMsg") or payload.get("ret_msg") or "unknown error"
            raise ExternalServiceError(f"{endpoint} retCode={ret_code}: {message}")
        return payload.get("result")


class BybitP2PMarketplace(MarketplaceClient):
    """MarketplaceClient backed by one BybitSession per configured account."""

    def __init__(self, sessions: Dict[str, BybitSession], page_size: int = 20):
        self._sessions = dict(sessions)
        self._page_size = int(page_size)
        self._user_ids: Dict[str, str] = {}

    @classmethod
    def from_config(cls, raw_config: Dict[str, Any], **client_kwargs) -> "BybitP2PMarketplace":
        base_url = raw_config.get("base_url", BYBIT_BASE)
        sessions: Dict[str, BybitSession] = {}
        for account in raw_config.get("accounts") or []:
            if not account.get("enabled", True):
                continue
            account_id = str(account["account_id"])
            api_key = os.getenv(account.get("api_key_env", ""), "")
            api_secret = os.getenv(account.get("api_secret_env", ""), "")
            if not api_key or not api_secret:
                logger.warning("Marketplace account %s has no credentials in env; skipping", account_id)
                continue
            sessions[account_id] = BybitSession(account_id, api_key, api_secret, base_url=base_url, **client_kwargs)
        return cls(sessions, page_size=int(raw_config.get("page_size", 20)))

    def _session(self, account_id: str) -> BybitSession:
        try:
            return self._sessions[account_id]
        except KeyError:
            raise ExternalServiceError(f"No marketplace session for account {account_id}")

    def get_user_id(self, account_id: str) -> Optional[str]:
        if account_id not in self._user_ids:
            result = self._session(account_id).post("/v5/p2p/user/personal/info") or {}
            user_id = result.get("userId")
            if user_id is None:
                return None
            self._user_ids[account_id] = str(user_id)
        return self._user_ids[account_id]

    def get_active_accounts(self) -> List[MarketplaceAccount]:
        accounts = []
        for account_id in self._sessions:
            try:
                user_id = self.get_user_id(account_id)
            except Exception as exc:
                logger.warning("Failed to resolve user id for account %s: %s", account_id, exc)
                continue
            accounts.append(MarketplaceAccount(account_id=account_id, user_id=user_id))
        return accounts

    @staticmethod
    def _to_order(item: Dict[str, Any]) -> MarketplaceOrder:
        amount = item.get("amount")
        return MarketplaceOrder(
            order_id=str(item.get("id") or item.get("orderId")),
            status=int(item.get("status", 0)),
            item_id=str(item["itemId"]) if item.get("itemId") else None,
            amount=float(amount) if amount not in (None, "") else None,
            currency=item.get("currencyId"),
            counterparty=item.get("targetNickName"),
            created_at=_parse_millis(item.get("createDate")),
        )

    def list_orders(self, account_id: str, statuses: Sequence[int]) -> List[MarketplaceOrder]:
        result = self._session(account_id).post(
            "/v5/p2p/order/simplifyList", {"page": 1, "size": self._page_size}
        ) or {}
        wanted = {int(status) for status in statuses}
        orders = [self._to_order(item) for item in result.get("items") or []]
        return [order for order in orders if order.status in wanted]

    def get_order(self, account_id: str, order_id: str) -> Optional[MarketplaceOrder]:
        try:
            result = self._session(account_id).post("/v5/p2p/order/info", {"orderId": order_id})
        except ExternalServiceError as exc:
            if any(marker in str(exc).lower() for marker in _ORDER_MISSING_MARKERS):
                return None
            raise
        if not result:
            return None
        return self._to_order(result)

    def get_chat_messages(self, account_id: str, order_id: str) -> List[RemoteChatMessage]:
        result = self._session(account_id).post(
            "/v5/p2p/order/message/listpage", {"orderId": order_id, "size": "50"}
        )
        if isinstance(result, dict):
            items = result.get("result") or result.get("list") or []
        else:
            items = result or []
        messages = []
        for item in items:
            message_id = item.get("msgUuid") or item.get("id")
            if message_id is None:
                continue
            messages.append(
                RemoteChatMessage(
                    message_id=str(message_id),
                    user_id=str(item["userId"]) if item.get("userId") is not None else None,
                    content=item.get("message") or "",
                    message_type=str(item.get("contentType") or item.get("msgType") or "TEXT"),
                    created_at=_parse_millis(item.get("createDate")),
                )
            )
        return messages

    def send_chat_message(self, account_id: str, order_id: str, text: str) -> Optional[str]:
        msg_uuid = uuid.uuid4().hex
        self._session(account_id).post(
            "/v5/p2p/order/message/send",
            {"orderId": order_id, "message": text, "contentType": "str", "msgUuid": msg_uuid},
        )
        return msg_uuid

    def create_advertisement(self, account_id: str, listing: ListingRequest) -> str:
        amount = f"{listing.amount:.2f}"
        body = {
            "tokenId": "USDT",
            "currencyId": "RUB",
            "side": "1",
            "priceType": "0",
            "premium": "",
            "price": f"{listing.price:.2f}",
            "minAmount": amount,
            "maxAmount": amount,
            "quantity": f"{listing.quantity:.2f}",
            "paymentIds": [listing.payment_method_id],
            "remark": listing.remark,
            "paymentPeriod": str(listing.payment_period_minutes),
            "tradingPreferenceSet": {},
        }
        result = self._session(account_id).post("/v5/p2p/item/create", body) or {}
        item_id = result.get("itemId") or result.get("id")
        if not item_id:
            raise ExternalServiceError(f"/v5/p2p/item/create returned no item id: {result}")
        logger.info("Listing %s created on %s for %s RUB", item_id, account_id, amount)
        return str(item_id)

    def cancel_advertisement(self, account_id: str, item_id: str) -> None:
        self._session(account_id).post("/v5/p2p/item/cancel", {"itemId": item_id})

    def release_assets(self, account_id: str, order_id: str) -> None:
        self._session(account_id).post("/v5/p2p/order/finish", {"orderId": order_id})
