"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas before the desk starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    """Process-level settings"""
    name: str = Field(default="p2p-desk", min_length=1, description="Instance name (lock file, logs)")
    data_dir: str = Field(default="data", description="Directory for store, lock and receipts")
    db_path: str = Field(default="data/desk.db", description="SQLite store path")
    receipts_dir: str = Field(default="data/receipts", description="Where ingested receipt PDFs are saved")


class LoggingSection(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/desk.log", description="Log file path")


class HttpClientSection(BaseModel):
    """Shared transport knobs for one remote service"""
    timeout_seconds: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=1.0, ge=0)


class MarketplaceAccountConfig(BaseModel):
    account_id: str = Field(min_length=1)
    api_key_env: str = Field(min_length=1, description="Env var holding the API key")
    api_secret_env: str = Field(min_length=1, description="Env var holding the API secret")
    enabled: bool = True
    payment_methods: Dict[str, str] = Field(
        default_factory=dict, description="Payment method name -> marketplace payment id used on listings"
    )


class MarketplaceSection(HttpClientSection):
    base_url: str = Field(default="https://api.bybit.com")
    page_size: int = Field(default=20, gt=0, le=100)
    accounts: List[MarketplaceAccountConfig] = Field(default_factory=list)

    @field_validator("accounts")
    @classmethod
    def validate_unique_accounts(cls, v: List[MarketplaceAccountConfig]) -> List[MarketplaceAccountConfig]:
        ids = [account.account_id for account in v]
        duplicates = sorted({account_id for account_id in ids if ids.count(account_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate marketplace account ids: {duplicates}")
        return v


class PaymentsSection(HttpClientSection):
    base_url: str = Field(min_length=1)
    api_token_env: str = Field(default="PAYMENTS_API_TOKEN", min_length=1)
    sync_statuses: List[int] = Field(
        default_factory=lambda: [5], min_length=1, description="Payout statuses mirrored into the store"
    )


class InboxSection(HttpClientSection):
    base_url: str = Field(min_length=1)
    api_key_env: str = Field(default="INBOX_API_KEY", min_length=1)
    inbox_id: Optional[str] = None
    sender_filter: str = Field(default="noreply@tinkoff.ru", min_length=1)
    lookback_hours: float = Field(default=24.0, gt=0)


class ReceiptsSection(BaseModel):
    parse_batch_size: int = Field(default=50, gt=0)
    tz_offset_hours: float = Field(default=3.0, ge=-12, le=14, description="Bank local time offset from UTC")
    pdftotext_binary: str = Field(default="pdftotext", min_length=1)


class ChatTextsSection(BaseModel):
    question: Optional[str] = None
    instructions: Optional[str] = None
    completion: Optional[str] = None
    receipt_ack: Optional[str] = None

    @field_validator("receipt_ack")
    @classmethod
    def validate_ack_placeholders(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            v.format(amount="1", operation="x")
        except (KeyError, IndexError) as exc:
            raise ValueError(f"receipt_ack may only use {{amount}} and {{operation}} placeholders: {exc}")
        return v


class ChatSection(BaseModel):
    receipt_emails: List[str] = Field(min_length=1, description="Receipt inbox addresses handed to counterparties")
    exchange_rate: Optional[float] = Field(default=None, gt=0, description="RUB/USDT rate shown with payment details")
    release_assets_on_refusal: bool = Field(default=True)
    texts: ChatTextsSection = Field(default_factory=ChatTextsSection)

    @field_validator("receipt_emails")
    @classmethod
    def validate_emails(cls, v: List[str]) -> List[str]:
        for address in v:
            if "@" not in address:
                raise ValueError(f"Not an email address: {address!r}")
        return v


class ListingsSection(BaseModel):
    """Sell listings published for synced payouts"""
    max_per_account: int = Field(default=2, ge=1)
    default_price: float = Field(default=85.0, gt=0, description="RUB per USDT when no rate is configured")
    quantity_buffer: float = Field(default=5.0, ge=0, description="Coins added on top of the payout amount")
    payment_period_minutes: int = Field(default=15, ge=1)
    remark: str = Field(default="")


class SettlementSection(BaseModel):
    release_delay_seconds: float = Field(default=120.0, ge=0)


class TasksSection(BaseModel):
    """Poll intervals in seconds"""
    order_monitor: float = Field(default=30.0, gt=0)
    chat_poll: float = Field(default=1.5, gt=0)
    receipt_linker: float = Field(default=5.0, gt=0)
    settlement_sweep: float = Field(default=10.0, gt=0)
    money_release: float = Field(default=10.0, gt=0)
    receipt_ingest: float = Field(default=60.0, gt=0)
    receipt_parse: float = Field(default=30.0, gt=0)
    cancelled_sweep: float = Field(default=5.0, gt=0)
    ad_reconciler: float = Field(default=60.0, gt=0)
    payout_sync: float = Field(default=300.0, gt=0)
    listing_creator: float = Field(default=10.0, gt=0)
    jitter_pct: float = Field(default=10.0, ge=0, le=50, description="± jitter applied to every interval")
    chat_pollers: bool = Field(default=True, description="Run fast per-order chat pollers")


class RateLimitsSection(BaseModel):
    """Requests per second per call class"""
    marketplace: float = Field(default=5.0, gt=0)
    payments: float = Field(default=2.0, gt=0)
    inbox: float = Field(default=1.0, gt=0)
    burst_multiplier: float = Field(default=2.0, ge=1)


class AlertsSection(BaseModel):
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="DESK_ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=0, le=65535)
    healthcheck_enabled: bool = False
    healthcheck_port: int = Field(default=8090, ge=0, le=65535)
    stale_factor: float = Field(default=5.0, ge=1)
    alerts_enabled: bool = False
    alerts: AlertsSection = Field(default_factory=AlertsSection)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    marketplace: MarketplaceSection = Field(default_factory=MarketplaceSection)
    payments: PaymentsSection
    inbox: InboxSection
    receipts: ReceiptsSection = Field(default_factory=ReceiptsSection)
    chat: ChatSection
    listings: ListingsSection = Field(default_factory=ListingsSection)
    settlement: SettlementSection = Field(default_factory=SettlementSection)
    tasks: TasksSection = Field(default_factory=TasksSection)
    rate_limits: RateLimitsSection = Field(default_factory=RateLimitsSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None or getattr(mark, "line", None) is None:
        return message

    line, column = mark.line, mark.column
    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def validate_app_config(config_dir: Path) -> List[str]:
    """Validate app.yaml against AppSchema. Returns error messages (empty if valid)."""
    errors = []
    app_path = config_dir / APP_CONFIG_FILE

    try:
        config = load_yaml_file(app_path)
        AppSchema(**config)
        logger.info("✅ %s validation passed", APP_CONFIG_FILE)
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILE}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{APP_CONFIG_FILE}: top level must be a mapping ({e})")

    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-field checks the schema cannot express.

    - chat pollers must tick faster than the order monitor
    - the money release delay should outlast one settlement sweep
    - at least one marketplace account must be enabled
    """
    errors: List[str] = []
    config = AppSchema(**load_yaml_file(config_dir / APP_CONFIG_FILE))

    if config.tasks.chat_pollers and config.tasks.chat_poll >= config.tasks.order_monitor:
        errors.append(
            f"tasks.chat_poll ({config.tasks.chat_poll}s) must be shorter than "
            f"tasks.order_monitor ({config.tasks.order_monitor}s)"
        )
    if config.settlement.release_delay_seconds < config.tasks.settlement_sweep:
        errors.append(
            f"settlement.release_delay_seconds ({config.settlement.release_delay_seconds}s) is shorter than "
            f"tasks.settlement_sweep ({config.tasks.settlement_sweep}s)"
        )
    if not any(account.enabled for account in config.marketplace.accounts):
        errors.append("marketplace.accounts: no enabled account configured")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs schema validation, then sanity checks when the schema passed.
    """
    config_path = Path(config_dir)

    all_errors = validate_app_config(config_path)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error("❌ %s validation error(s) found", len(all_errors))

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    errors = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    print("\n✅ All configuration files are valid!\n")
    sys.exit(0)
