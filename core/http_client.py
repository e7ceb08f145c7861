"""
P2P Desk Core: HTTP transport shared by the remote service adapters.

Provides the retry/backoff request loop used by the marketplace, payment
platform and inbox clients. Subclasses supply auth headers and decide how a
service-level error inside a 200 response is reported.
"""

import json
import logging
import random
import time
from typing import Any, Dict, Optional, Tuple

import requests

from infra.metrics import MetricsRecorder
from infra.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# (filename, content, mime type)
UploadFile = Tuple[str, bytes, str]


class ApiClient:
    """
    Base class for JSON-over-HTTP service clients.

    Retries on:
    - 429 (rate limit)
    - 5xx (server errors)
    - Network errors (timeout, connection)

    Does NOT retry on:
    - 4xx (except 429) - client errors like 400, 401, 403
    """

    channel = "default"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 20.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.max_retries = max(1, int(max_retries))
        self.backoff_base = float(backoff_base)
        self.rate_limiter = rate_limiter
        self.metrics = metrics

    def _headers(self, method: str, endpoint: str, body_text: str) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _encode_body(self, body: Optional[dict]) -> str:
        if body is None:
            return ""
        return json.dumps(body, separators=(",", ":"), ensure_ascii=False)

    def _req(
        self,
        method: str,
        endpoint: str,
        body: Optional[dict] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, UploadFile]] = None,
        raw: bool = False,
        max_retries: Optional[int] = None,
    ) -> Any:
        """
        Make HTTP request with exponential backoff.

        Args:
            files: multipart uploads; when set, `body` is sent as form fields
            raw: return response bytes instead of decoded JSON
        """
        url = self.base_url + endpoint
        attempts = max_retries or self.max_retries
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            if self.rate_limiter is not None:
                self.rate_limiter.acquire(self.channel, endpoint=endpoint)

            body_text = "" if files else self._encode_body(body)
            headers = self._headers(method, endpoint, body_text)
            if files:
                headers.pop("Content-Type", None)

            started = time.monotonic()
            status = "error"
            try:
                if files:
                    response = requests.request(
                        method,
                        url,
                        headers=headers,
                        params=params,
                        data=body or None,
                        files={key: (name, content, mime) for key, (name, content, mime) in files.items()},
                        timeout=self.timeout,
                    )
                else:
                    response = requests.request(
                        method,
                        url,
                        headers=headers,
                        params=params,
                        data=body_text.encode("utf-8") if body_text else None,
                        timeout=self.timeout,
                    )
                response.raise_for_status()
                status = "ok"
                if raw:
                    return response.content
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code
                status = str(status_code)

                if 400 <= status_code < 500 and status_code != 429:
                    if status_code == 404:
                        logger.debug(f"{self.channel} API 404: {endpoint} - {e.response.text}")
                    else:
                        logger.error(f"{self.channel} API client error: {status_code} - {e.response.text}")
                    raise

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {endpoint}, attempt {attempt + 1}/{attempts}")
                else:
                    logger.warning(f"Server error ({status_code}) on {endpoint}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {endpoint}: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            finally:
                if self.metrics is not None:
                    self.metrics.record_api_call(endpoint, self.channel, time.monotonic() - started, status)

            if attempt < attempts - 1:
                backoff = self.backoff_base * (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {attempts} retries exhausted for {endpoint}")
        if last_exception:
            raise last_exception
        raise requests.exceptions.RequestException(f"Request to {endpoint} failed after {attempts} attempts")
