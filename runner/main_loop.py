"""
P2P Desk Runner: Main Loop

Wires the reconciliation engine from config/app.yaml and runs its pollers.

Tasks (each on its own daemon thread, own interval, jittered):
- order_monitor     discover orders, mirror chats, drive the state machine
- receipt_ingest    pull PDF receipts from the inbox
- receipt_parse     turn stored PDFs into structured receipts
- receipt_linker    match receipts to payouts, settle directly
- settlement_sweep  approve payouts the direct path missed
- money_release     release marketplace orders after the grace delay
- cancelled_sweep   detect system cancellation notices in chat
- payout_sync       mirror accepted payouts from the payment platform
- listing_creator   publish a listing and pending trade per unserved payout
- ad_reconciler     retire listings left active after their order arrived

A slow or failing task never blocks another; a failing tick is logged,
counted and alerted, and the task keeps running.
"""

import argparse
import logging
import random
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.chat_automation import ChatAutomation, ChatTexts
from core.clients import InboxProvider, MarketplaceClient, PaymentPlatform
from core.inbox_client import HttpInboxClient
from core.listings import ListingManager
from core.marketplace_client import BybitP2PMarketplace
from core.order_monitor import OrderMonitor
from core.order_sweeps import AdvertisementReconciler, CancelledOrderDetector
from core.payment_platform import GatePayoutClient
from core.payout_feed import ListingCreator, PayoutSyncJob
from core.receipt_ingest import ReceiptIngestor, ReceiptParsingJob
from core.receipt_matcher import ReceiptMatcher, ReceiptPayoutLinker
from core.receipt_parser import PdfTextExtractor, ReceiptParser, TinkoffReceiptParser
from core.services import EmailAllocator, StaticRateProvider
from core.settlement import MoneyReleaseJob, SettlementWorkflow
from core.store import DeskStore
from infra.alerting import AlertService, AlertSeverity
from infra.events import EventBus
from infra.healthcheck import HealthServer, task_health
from infra.instance_lock import check_single_instance
from infra.locks import KeyedLockTable
from infra.metrics import MetricsRecorder, TaskStats
from infra.rate_limiter import RateLimiter
from tools.config_validator import AppSchema, load_yaml_file, validate_all_configs

logger = logging.getLogger(__name__)

TASK_NAMES = (
    "payout_sync",
    "listing_creator",
    "order_monitor",
    "receipt_ingest",
    "receipt_parse",
    "receipt_linker",
    "settlement_sweep",
    "money_release",
    "cancelled_sweep",
    "ad_reconciler",
)


def _count_items(result: Any) -> int:
    """Best-effort "work done" figure for a tick result."""
    if result is None:
        return 0
    if isinstance(result, int):
        return result
    for attr in ("orders_seen", "linked", "approved", "saved", "parsed", "fetched", "created"):
        if hasattr(result, attr):
            return int(getattr(result, attr))
    return 0


@dataclass
class PeriodicTask:
    name: str
    interval: float
    func: Callable[[], Any]


class TaskThread:
    """Runs one PeriodicTask forever with jittered sleeps."""

    def __init__(
        self,
        task: PeriodicTask,
        stop_event: threading.Event,
        *,
        jitter_pct: float,
        metrics: MetricsRecorder,
        alerts: AlertService,
    ):
        self.task = task
        self.stop_event = stop_event
        self.jitter_pct = max(0.0, float(jitter_pct))
        self.metrics = metrics
        self.alerts = alerts
        self.consecutive_failures = 0
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> bool:
        """Run the task once. Returns True on success."""
        started = time.monotonic()
        try:
            result = self.task.func()
        except Exception as exc:
            duration = time.monotonic() - started
            self.consecutive_failures += 1
            logger.exception("Task %s failed", self.task.name)
            self.metrics.observe_task(TaskStats(self.task.name, "error", 0, duration))
            self.alerts.notify(
                AlertSeverity.CRITICAL if self.consecutive_failures >= 3 else AlertSeverity.WARNING,
                f"Desk task {self.task.name} failing",
                f"{type(exc).__name__}: {exc}",
                {"consecutive_failures": self.consecutive_failures},
            )
            return False

        self.consecutive_failures = 0
        self.metrics.observe_task(
            TaskStats(self.task.name, "ok", _count_items(result), time.monotonic() - started)
        )
        return True

    def next_sleep(self, elapsed: float) -> float:
        jitter = random.uniform(-self.jitter_pct, self.jitter_pct) / 100.0 * self.task.interval
        return max(0.1, self.task.interval - elapsed + jitter)

    def _run(self) -> None:
        logger.info("Task %s started (interval=%.1fs, jitter=±%.0f%%)", self.task.name, self.task.interval, self.jitter_pct)
        while not self.stop_event.is_set():
            started = time.monotonic()
            self.tick()
            self.stop_event.wait(self.next_sleep(time.monotonic() - started))
        logger.info("Task %s stopped", self.task.name)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=f"task-{self.task.name}", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class DeskRunner:
    """
    Builds every component from config and runs the periodic tasks.

    Remote collaborators can be injected (tests, sandboxes); otherwise they
    are constructed from the marketplace/payments/inbox config sections.
    """

    def __init__(
        self,
        config_dir: str = "config",
        *,
        marketplace: Optional[MarketplaceClient] = None,
        payments: Optional[PaymentPlatform] = None,
        inbox: Optional[InboxProvider] = None,
        parser: Optional[ReceiptParser] = None,
        configure_logging: bool = True,
        acquire_lock: bool = True,
    ):
        self.config_dir = Path(config_dir)
        self._startup_validations()
        self.config = AppSchema(**load_yaml_file(self.config_dir / "app.yaml"))

        if configure_logging:
            self._configure_logging()

        self.instance_lock = None
        if acquire_lock:
            self.instance_lock = check_single_instance(self.config.app.name, lock_dir=self.config.app.data_dir)
            if not self.instance_lock:
                raise RuntimeError(
                    f"Another {self.config.app.name} instance is running "
                    f"(lock file {self.config.app.data_dir}/{self.config.app.name}.pid)"
                )

        monitoring = self.config.monitoring
        self.metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
        self.alerts = AlertService.from_config(monitoring.alerts_enabled, monitoring.alerts.model_dump())
        self.events = EventBus()
        self.locks = KeyedLockTable("desk")
        limits = self.config.rate_limits
        self.rate_limiter = RateLimiter(
            {"marketplace": limits.marketplace, "payments": limits.payments, "inbox": limits.inbox},
            burst_multiplier=limits.burst_multiplier,
        )

        self.store = DeskStore(self.config.app.db_path)
        self.marketplace = marketplace or self._build_marketplace()
        self.payments = payments or self._build_payments()
        self.inbox = inbox or self._build_inbox()
        self.parser = parser or TinkoffReceiptParser(
            PdfTextExtractor(self.config.receipts.pdftotext_binary),
            tz_offset_hours=self.config.receipts.tz_offset_hours,
        )
        self._build_components()

        self._stop_event = threading.Event()
        self._threads: List[TaskThread] = []
        self.health_server: Optional[HealthServer] = None

        logger.info(
            "Initialized DeskRunner (%s marketplace accounts, %s tasks)",
            len(self.config.marketplace.accounts), len(self.tasks),
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _startup_validations(self) -> None:
        errors = validate_all_configs(str(self.config_dir))
        if errors:
            for error in errors:
                logger.error("Config error: %s", error)
            raise ValueError(f"Invalid configuration in {self.config_dir}: {len(errors)} error(s)")

    def _configure_logging(self) -> None:
        log_path = Path(self.config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, self.config.logging.level.upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
        )

    def _client_kwargs(self, section) -> Dict[str, Any]:
        return {
            "timeout": section.timeout_seconds,
            "max_retries": section.max_retries,
            "backoff_base": section.backoff_base_seconds,
            "rate_limiter": self.rate_limiter,
            "metrics": self.metrics,
        }

    def _build_marketplace(self) -> MarketplaceClient:
        section = self.config.marketplace
        return BybitP2PMarketplace.from_config(section.model_dump(), **self._client_kwargs(section))

    def _build_payments(self) -> PaymentPlatform:
        section = self.config.payments
        return GatePayoutClient.from_config(section.model_dump(), **self._client_kwargs(section))

    def _build_inbox(self) -> InboxProvider:
        section = self.config.inbox
        return HttpInboxClient.from_config(section.model_dump(), **self._client_kwargs(section))

    def _build_components(self) -> None:
        chat_cfg = self.config.chat
        self.email_allocator = EmailAllocator(chat_cfg.receipt_emails)
        self.listings = ListingManager(self.store, self.marketplace)
        self.chat = ChatAutomation(
            self.store,
            self.marketplace,
            self.locks,
            self.email_allocator,
            listings=self.listings,
            rate_provider=StaticRateProvider(chat_cfg.exchange_rate),
            events=self.events,
            metrics=self.metrics,
            texts=ChatTexts.from_config(chat_cfg.texts.model_dump()),
            release_assets_on_refusal=chat_cfg.release_assets_on_refusal,
        )
        self._restore_email_allocations()

        self.settlement = SettlementWorkflow(
            self.store, self.payments, self.chat, self.locks, events=self.events, metrics=self.metrics
        )
        self.linker = ReceiptPayoutLinker(
            self.store,
            ReceiptMatcher(self.store),
            self.settlement,
            self.chat,
            self.listings,
            self.locks,
            events=self.events,
            metrics=self.metrics,
        )
        self.release_job = MoneyReleaseJob(
            self.store,
            self.marketplace,
            self.locks,
            release_delay_seconds=self.config.settlement.release_delay_seconds,
            events=self.events,
            metrics=self.metrics,
        )
        tasks_cfg = self.config.tasks
        self.monitor = OrderMonitor(
            self.store,
            self.marketplace,
            self.chat,
            self.locks,
            events=self.events,
            metrics=self.metrics,
            chat_poll_interval=tasks_cfg.chat_poll,
            start_chat_pollers=tasks_cfg.chat_pollers,
        )
        self.ingestor = ReceiptIngestor(
            self.store,
            self.inbox,
            receipts_dir=self.config.app.receipts_dir,
            sender_filter=self.config.inbox.sender_filter,
            lookback_hours=self.config.inbox.lookback_hours,
            metrics=self.metrics,
        )
        self.parsing_job = ReceiptParsingJob(
            self.store, self.parser, batch_size=self.config.receipts.parse_batch_size, metrics=self.metrics
        )
        self.cancel_detector = CancelledOrderDetector(
            self.store, self.marketplace, events=self.events, metrics=self.metrics
        )
        self.reconciler = AdvertisementReconciler(self.store, self.listings)
        self.payout_sync = PayoutSyncJob(
            self.store, self.payments, statuses=self.config.payments.sync_statuses, metrics=self.metrics
        )
        listings_cfg = self.config.listings
        self.listing_creator = ListingCreator(
            self.store,
            self.marketplace,
            self.locks,
            {
                account.account_id: account.payment_methods
                for account in self.config.marketplace.accounts
                if account.enabled and account.payment_methods
            },
            rate_provider=self.chat.rate_provider,
            default_price=listings_cfg.default_price,
            quantity_buffer=listings_cfg.quantity_buffer,
            max_per_account=listings_cfg.max_per_account,
            remark=listings_cfg.remark,
            payment_period_minutes=listings_cfg.payment_period_minutes,
            events=self.events,
            metrics=self.metrics,
        )

        self.tasks: Dict[str, PeriodicTask] = {
            "payout_sync": PeriodicTask("payout_sync", tasks_cfg.payout_sync, self.payout_sync.run_cycle),
            "listing_creator": PeriodicTask(
                "listing_creator", tasks_cfg.listing_creator, self.listing_creator.run_cycle
            ),
            "order_monitor": PeriodicTask("order_monitor", tasks_cfg.order_monitor, self.monitor.run_cycle),
            "receipt_ingest": PeriodicTask("receipt_ingest", tasks_cfg.receipt_ingest, self.ingestor.run_cycle),
            "receipt_parse": PeriodicTask("receipt_parse", tasks_cfg.receipt_parse, self.parsing_job.run_cycle),
            "receipt_linker": PeriodicTask("receipt_linker", tasks_cfg.receipt_linker, self.linker.run_cycle),
            "settlement_sweep": PeriodicTask(
                "settlement_sweep", tasks_cfg.settlement_sweep, self.settlement.check_and_release
            ),
            "money_release": PeriodicTask("money_release", tasks_cfg.money_release, self.release_job.run_cycle),
            "cancelled_sweep": PeriodicTask(
                "cancelled_sweep", tasks_cfg.cancelled_sweep, self.cancel_detector.run_cycle
            ),
            "ad_reconciler": PeriodicTask("ad_reconciler", tasks_cfg.ad_reconciler, self.reconciler.run_cycle),
        }

    def _restore_email_allocations(self) -> None:
        restored = 0
        for trade in self.store.list_active_trades():
            payout = self.store.get_payout(trade.payout_id) if trade.payout_id else None
            address = payout.meta.get("receipt_email") if payout else None
            if address:
                self.email_allocator.restore(trade.id, address)
                restored += 1
        if restored:
            logger.info("Restored %s receipt inbox allocations", restored)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_status(self) -> Dict[str, Any]:
        payload = task_health(
            self.metrics.task_snapshot(),
            {name: task.interval for name, task in self.tasks.items()},
            stale_factor=self.config.monitoring.stale_factor,
        )
        payload["trades"] = self.store.status_counts()
        payload["receipts"] = self.store.receipt_counts()
        payload["locks"] = self.locks.stats()
        payload["chat_pollers"] = len(self.monitor.active_pollers())
        payload["last_api_event"] = self.metrics.last_api_event()
        return payload

    def _start_health_server(self) -> None:
        monitoring = self.config.monitoring
        if not monitoring.healthcheck_enabled or monitoring.healthcheck_port <= 0:
            return
        server = HealthServer(monitoring.healthcheck_port, self.health_status)
        try:
            server.start()
        except OSError as exc:
            logger.error("Failed to start health server on port %s: %s", monitoring.healthcheck_port, exc)
            return
        self.health_server = server

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _thread_for(self, task: PeriodicTask) -> TaskThread:
        return TaskThread(
            task,
            self._stop_event,
            jitter_pct=self.config.tasks.jitter_pct,
            metrics=self.metrics,
            alerts=self.alerts,
        )

    def run_once(self, task_name: Optional[str] = None) -> Dict[str, bool]:
        """Run every task (or one) a single time, in pipeline order."""
        if task_name is not None and task_name not in self.tasks:
            raise ValueError(f"Unknown task {task_name!r}; choose from {sorted(self.tasks)}")
        names = [task_name] if task_name else list(TASK_NAMES)
        return {name: self._thread_for(self.tasks[name]).tick() for name in names}

    def run_forever(self, task_name: Optional[str] = None) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.metrics.start()
        self._start_health_server()

        names = [task_name] if task_name else list(TASK_NAMES)
        for name in names:
            thread = self._thread_for(self.tasks[name])
            thread.start()
            self._threads.append(thread)

        logger.info("Desk running %s tasks", len(self._threads))
        while not self._stop_event.is_set():
            self._stop_event.wait(1.0)
        self.shutdown()

    def _handle_stop(self, signum, _frame) -> None:
        logger.warning("Signal %s received; stopping desk after current ticks", signum)
        self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()

    def shutdown(self) -> None:
        self._stop_event.set()
        self.monitor.stop()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []
        if self.health_server is not None:
            self.health_server.stop()
            self.health_server = None
        if self.instance_lock is not None:
            self.instance_lock.release()
        logger.info("Desk stopped cleanly.")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="P2P desk reconciliation engine")
    parser.add_argument("--once", action="store_true", help="Run each task once and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--task", choices=TASK_NAMES, help="Run only this task")
    args = parser.parse_args(argv)

    try:
        runner = DeskRunner(config_dir=args.config_dir)
    except (RuntimeError, ValueError) as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Desk failed to start: %s", exc)
        return 1

    if args.once:
        results = runner.run_once(args.task)
        runner.shutdown()
        return 0 if all(results.values()) else 1

    runner.run_forever(args.task)
    return 0


if __name__ == "__main__":
    sys.exit(main())
