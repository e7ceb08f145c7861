"""
Rate Limiter with Token Bucket Algorithm

Client-side throttling for the remote services the desk polls. Each call
class (marketplace, payments, inbox) gets its own bucket so a burst of chat
polling never starves payout approvals.

Limits come from config (requests/second per channel); unknown channels fall
back to the default limit.
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Tokens replenish at a fixed rate. Each request consumes one token.
    If bucket is empty, request must wait until tokens replenish.
    """
    capacity: float  # Max tokens (burst capacity)
    refill_rate: float  # Tokens per second
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        self.tokens = self.capacity
        self.last_refill = time.monotonic()

    def refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """Seconds until `tokens` are available (0 if available now)."""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


@dataclass
class ChannelStats:
    total_requests: int = 0
    throttled_requests: int = 0
    total_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0

    def record(self, wait_time_seconds: float) -> None:
        self.total_requests += 1
        if wait_time_seconds > 0:
            self.throttled_requests += 1
            wait_ms = wait_time_seconds * 1000.0
            self.total_wait_time_ms += wait_ms
            self.max_wait_time_ms = max(self.max_wait_time_ms, wait_ms)


class RateLimiter:
    """
    Pre-emptive rate limiter with one bucket per call class.

    Usage:
        limiter = RateLimiter({"marketplace": 5.0, "payments": 2.0})
        limiter.acquire("marketplace", endpoint="/v5/p2p/order/info")
    """

    def __init__(
        self,
        limits: Optional[Dict[str, float]] = None,
        default_limit: float = 5.0,
        burst_multiplier: float = 2.0,
    ):
        self._default_limit = float(default_limit)
        self._burst_multiplier = float(burst_multiplier)
        self._buckets: Dict[str, TokenBucket] = {}
        self._stats: Dict[str, ChannelStats] = defaultdict(ChannelStats)
        self._lock = Lock()

        for channel, limit in (limits or {}).items():
            self._buckets[channel] = self._make_bucket(float(limit))

        logger.info(
            "Initialized RateLimiter: %s (default=%s/s, burst=%sx)",
            {name: bucket.refill_rate for name, bucket in self._buckets.items()},
            self._default_limit,
            self._burst_multiplier,
        )

    def _make_bucket(self, limit: float) -> TokenBucket:
        if limit <= 0:
            raise ValueError(f"Rate limit must be positive, got {limit}")
        return TokenBucket(capacity=limit * self._burst_multiplier, refill_rate=limit)

    def _bucket(self, channel: str) -> TokenBucket:
        bucket = self._buckets.get(channel)
        if bucket is None:
            bucket = self._make_bucket(self._default_limit)
            self._buckets[channel] = bucket
        return bucket

    def acquire(self, channel: str, endpoint: str = "unknown", tokens: float = 1.0) -> float:
        """
        Block until a token is available for `channel`.

        Returns:
            Seconds spent waiting (0 if no wait needed)
        """
        with self._lock:
            bucket = self._bucket(channel)
            wait_time = bucket.wait_time(tokens)
            if wait_time == 0:
                bucket.consume(tokens)
                self._stats[channel].record(0.0)
                return 0.0

            if wait_time > 1.0:
                logger.warning(
                    f"Rate limit throttle: {channel}:{endpoint} waiting {wait_time:.2f}s "
                    f"(tokens={bucket.tokens:.1f}/{bucket.capacity:.1f})"
                )

        # Wait outside lock to avoid blocking other threads
        time.sleep(wait_time)

        with self._lock:
            bucket.consume(tokens)
            self._stats[channel].record(wait_time)
        return wait_time

    def get_stats(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            snapshot = {}
            for channel, stats in self._stats.items():
                bucket = self._buckets.get(channel)
                snapshot[channel] = {
                    "total_requests": stats.total_requests,
                    "throttled_requests": stats.throttled_requests,
                    "max_wait_time_ms": stats.max_wait_time_ms,
                    "current_tokens": bucket.tokens if bucket else 0.0,
                    "capacity": bucket.capacity if bucket else 0.0,
                }
            return snapshot
