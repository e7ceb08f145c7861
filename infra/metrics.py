"""Prometheus-backed metrics hooks for the desk pollers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

try:
    from prometheus_client import Counter, Gauge, Summary, start_http_server
except ImportError:  # pragma: no cover - optional dependency
    Counter = Gauge = Summary = None  # type: ignore
    start_http_server = None  # type: ignore

logger = logging.getLogger(__name__)

METRIC_PREFIX = "desk_"


@dataclass
class TaskStats:
    task: str
    status: str  # "ok" or "error"
    items: int
    duration_seconds: float
    finished_at: Optional[datetime] = None


class MetricsRecorder:
    """
    Expose poller stats via Prometheus if available.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._prom_available = Counter is not None
        self._enabled = bool(enabled) and self._prom_available
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_task_stats: Dict[str, TaskStats] = {}
        self._last_api_event: Optional[Dict[str, str]] = None
        self._counts: Dict[str, int] = {}

        if not self._prom_available and enabled:
            logger.warning(
                "Prometheus client not installed; metrics exporter disabled. "
                "Install `prometheus-client` to enable metrics."
            )

        if not self._enabled:
            self._task_summary = None
            self._task_counter = None
            self._task_items_gauge = None
            self._trades_counter = None
            self._messages_counter = None
            self._receipts_counter = None
            self._settlements_counter = None
            self._api_latency_summary = None
            return

        self._task_summary = Summary(  # type: ignore[assignment]
            f"{METRIC_PREFIX}task_duration_seconds",
            "Duration of one poller tick",
            labelnames=("task",),
        )
        self._task_counter = Counter(  # type: ignore[assignment]
            f"{METRIC_PREFIX}task_runs_total",
            "Poller ticks by task and outcome",
            labelnames=("task", "status"),
        )
        self._task_items_gauge = Gauge(  # type: ignore[assignment]
            f"{METRIC_PREFIX}task_items",
            "Items handled in the last tick of each poller",
            labelnames=("task",),
        )
        self._trades_counter = Counter(  # type: ignore[assignment]
            f"{METRIC_PREFIX}trades_total",
            "Trade lifecycle events (created, linked, cancelled, completed)",
            labelnames=("event",),
        )
        self._messages_counter = Counter(  # type: ignore[assignment]
            f"{METRIC_PREFIX}chat_messages_sent_total",
            "Outbound chat messages by kind",
            labelnames=("kind",),
        )
        self._receipts_counter = Counter(  # type: ignore[assignment]
            f"{METRIC_PREFIX}receipts_total",
            "Receipt pipeline events (ingested, parsed, parse_failed, linked_<rule>)",
            labelnames=("event",),
        )
        self._settlements_counter = Counter(  # type: ignore[assignment]
            f"{METRIC_PREFIX}settlements_total",
            "Payout approval attempts by outcome",
            labelnames=("outcome",),
        )
        self._api_latency_summary = Summary(  # type: ignore[assignment]
            f"{METRIC_PREFIX}api_latency_seconds",
            "Latency of remote API calls",
            labelnames=("endpoint", "channel", "status"),
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._prom_available:
            try:
                from prometheus_client import REGISTRY
                collectors_to_remove = []
                for collector in list(REGISTRY._collector_to_names):
                    names = REGISTRY._collector_to_names.get(collector, set())
                    if any(name.startswith(METRIC_PREFIX) for name in names):
                        collectors_to_remove.append(collector)

                for collector in collectors_to_remove:
                    try:
                        REGISTRY.unregister(collector)
                    except KeyError:
                        pass  # Already unregistered
            except ImportError:
                pass

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        if start_http_server is None:  # pragma: no cover - guarded above
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, key: str) -> None:
        self._counts[key] = self._counts.get(key, 0) + 1

    def observe_task(self, stats: TaskStats) -> None:
        if stats.finished_at is None:
            stats.finished_at = datetime.now(timezone.utc)
        self._last_task_stats[stats.task] = stats
        if self._enabled:
            assert self._task_summary and self._task_counter and self._task_items_gauge
            self._task_summary.labels(task=stats.task).observe(stats.duration_seconds)
            self._task_counter.labels(task=stats.task, status=stats.status).inc()
            self._task_items_gauge.labels(task=stats.task).set(stats.items)

    def record_trade_event(self, event: str) -> None:
        self._bump(f"trade:{event}")
        if self._enabled and self._trades_counter:
            self._trades_counter.labels(event=event).inc()

    def record_message_sent(self, kind: str) -> None:
        self._bump(f"message:{kind}")
        if self._enabled and self._messages_counter:
            self._messages_counter.labels(kind=kind).inc()

    def record_receipt_event(self, event: str) -> None:
        self._bump(f"receipt:{event}")
        if self._enabled and self._receipts_counter:
            self._receipts_counter.labels(event=event).inc()

    def record_settlement(self, outcome: str) -> None:
        self._bump(f"settlement:{outcome}")
        if self._enabled and self._settlements_counter:
            self._settlements_counter.labels(outcome=outcome).inc()

    def record_api_call(self, endpoint: str, channel: str, duration: float, status: str) -> None:
        self._last_api_event = {
            "endpoint": endpoint,
            "channel": channel,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._enabled and self._api_latency_summary:
            self._api_latency_summary.labels(
                endpoint=endpoint,
                channel=channel,
                status=status,
            ).observe(duration)

    def count(self, key: str) -> int:
        """In-process counter value, e.g. count("receipt:linked_card")."""
        return self._counts.get(key, 0)

    def last_task(self, task: str) -> Optional[TaskStats]:
        return self._last_task_stats.get(task)

    def task_snapshot(self) -> Dict[str, TaskStats]:
        return dict(self._last_task_stats)

    def last_api_event(self) -> Optional[Dict[str, str]]:
        return self._last_api_event
