"""HTTP health endpoint reporting per-task poller freshness."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional

from infra.metrics import TaskStats

logger = logging.getLogger(__name__)


def task_health(
    snapshot: Dict[str, TaskStats],
    intervals: Dict[str, float],
    *,
    stale_factor: float = 5.0,
    min_stale_seconds: float = 60.0,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the health payload.

    A task is stale when its last tick finished longer ago than
    max(interval * stale_factor, min_stale_seconds). A task that has not
    ticked yet is reported but does not fail the check. Any stale task, or
    one whose last tick errored, makes "ok" false.
    """
    now = now or datetime.now(timezone.utc)
    tasks: Dict[str, Any] = {}
    ok = True
    for name, interval in sorted(intervals.items()):
        stats = snapshot.get(name)
        if stats is None or stats.finished_at is None:
            tasks[name] = {"status": "pending", "interval_seconds": interval}
            continue
        age = (now - stats.finished_at).total_seconds()
        stale = age > max(interval * stale_factor, min_stale_seconds)
        healthy = not stale and stats.status == "ok"
        ok = ok and healthy
        tasks[name] = {
            "status": stats.status,
            "stale": stale,
            "age_seconds": round(age, 1),
            "items": stats.items,
            "duration_seconds": round(stats.duration_seconds, 3),
            "interval_seconds": interval,
        }
    return {"ok": ok, "tasks": tasks, "checked_at": now.isoformat()}


class HealthServer:
    """JSON health server; status code 503 whenever the payload says not ok."""

    def __init__(self, port: int, status_provider: Callable[[], Dict[str, Any]]):
        self._port = int(port)
        self._status_provider = status_provider
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return
        self._server = HTTPServer(("0.0.0.0", self._port), self._build_handler(self._status_provider))
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on 0.0.0.0:%s", self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down health server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(status_provider: Callable[[], Dict[str, Any]]):
        provider = status_provider

        class HealthHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                if self.path not in ("/", "/health", "/healthz"):
                    self.send_response(404)
                    self.end_headers()
                    return

                try:
                    payload = provider() or {}
                except Exception as exc:
                    logger.error("Health status provider failed: %s", exc)
                    payload = {"ok": False, "error": str(exc)}
                body = json.dumps(payload, default=str).encode("utf-8")

                self.send_response(200 if payload.get("ok", True) else 503)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return HealthHandler


__all__ = ["HealthServer", "task_health"]
