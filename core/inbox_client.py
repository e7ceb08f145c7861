"""
P2P Desk Core: Inbox Connector

REST adapter for the hosted mailbox that receives bank receipts. Lists
messages filtered by sender and downloads attachments as raw bytes.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.clients import InboxAttachment, InboxMessage, InboxProvider
from core.http_client import ApiClient
from core.models import from_iso, to_iso

logger = logging.getLogger(__name__)


class HttpInboxClient(ApiClient, InboxProvider):
    channel = "inbox"

    def __init__(self, base_url: str, api_key: str, inbox_id: Optional[str] = None, **kwargs):
        super().__init__(base_url, **kwargs)
        if not api_key:
            raise ValueError("Inbox API key required")
        self._api_key = api_key
        self._inbox_id = inbox_id

    @classmethod
    def from_config(cls, raw_config: Dict[str, Any], **client_kwargs) -> "HttpInboxClient":
        api_key = os.getenv(raw_config.get("api_key_env", "INBOX_API_KEY"), "")
        return cls(raw_config["base_url"], api_key, inbox_id=raw_config.get("inbox_id"), **client_kwargs)

    def _headers(self, method: str, endpoint: str, body_text: str) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-api-key": self._api_key}

    @staticmethod
    def _to_message(item: Dict[str, Any]) -> InboxMessage:
        attachments = [
            InboxAttachment(
                attachment_id=str(att.get("id")),
                name=att.get("name") or f"{att.get('id')}.pdf",
                content_type=att.get("contentType") or "application/octet-stream",
            )
            for att in item.get("attachments") or []
        ]
        received = item.get("receivedAt") or item.get("createdAt")
        return InboxMessage(
            message_id=str(item["id"]),
            sender=item.get("from") or "",
            subject=item.get("subject") or "",
            received_at=from_iso(received) if received else None,
            attachments=attachments,
        )

    def list_messages(self, sender: str, since: Optional[datetime] = None) -> List[InboxMessage]:
        params: Dict[str, Any] = {"from": sender}
        if since is not None:
            params["since"] = to_iso(since)
        if self._inbox_id:
            params["inboxId"] = self._inbox_id
        payload = self._req("GET", "/emails", params=params)
        items = payload.get("content", []) if isinstance(payload, dict) else payload or []
        return [self._to_message(item) for item in items]

    def download_attachment(self, message_id: str, attachment_id: str) -> bytes:
        return self._req("GET", f"/emails/{message_id}/attachments/{attachment_id}", raw=True)
