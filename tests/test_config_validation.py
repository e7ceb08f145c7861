"""
Tests for configuration validation.

Validates that config_validator rejects broken app.yaml files with a
readable message and accepts the shipped configuration.
"""
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppSchema,
    ChatSection,
    MarketplaceSection,
    validate_all_configs,
    validate_app_config,
    validate_sanity_checks,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def minimal_config() -> dict:
    return {
        "marketplace": {
            "accounts": [
                {"account_id": "main", "api_key_env": "BYBIT_KEY", "api_secret_env": "BYBIT_SECRET"},
            ],
        },
        "payments": {"base_url": "https://payments.example/api"},
        "inbox": {"base_url": "https://inbox.example"},
        "chat": {"receipt_emails": ["receipts@desk.example"]},
    }


def write_config(config_dir: Path, config: dict) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    with open(config_dir / "app.yaml", "w", encoding="utf-8") as f:
        yaml.safe_dump(config, f, allow_unicode=True)
    return config_dir


class TestAppSchema:
    """Test app.yaml schema validation"""

    def test_shipped_config_is_valid(self):
        """Repository config passes schema and sanity checks"""
        assert validate_all_configs(str(REPO_CONFIG)) == []

    def test_minimal_config_gets_defaults(self):
        config = AppSchema(**minimal_config())

        assert config.tasks.order_monitor == 30.0
        assert config.tasks.chat_poll == 1.5
        assert config.settlement.release_delay_seconds == 120.0
        assert config.receipts.tz_offset_hours == 3.0
        assert config.chat.release_assets_on_refusal is True
        assert config.tasks.payout_sync == 300.0
        assert config.tasks.listing_creator == 10.0
        assert config.payments.sync_statuses == [5]
        assert config.listings.max_per_account == 2
        assert config.listings.default_price == 85.0
        assert config.marketplace.accounts[0].payment_methods == {}

    @pytest.mark.parametrize("section", ["payments", "inbox", "chat"])
    def test_required_sections(self, tmp_path, section):
        config = minimal_config()
        del config[section]

        errors = validate_app_config(write_config(tmp_path, config))

        assert any(section in error for error in errors)

    def test_duplicate_accounts_rejected(self):
        account = {"account_id": "main", "api_key_env": "K", "api_secret_env": "S"}
        with pytest.raises(ValueError, match="Duplicate marketplace account ids"):
            MarketplaceSection(accounts=[account, dict(account)])

    def test_payment_method_ids_must_be_strings(self):
        account = {"account_id": "main", "api_key_env": "K", "api_secret_env": "S"}
        section = MarketplaceSection(accounts=[dict(account, payment_methods={"SBP": "12345"})])
        assert section.accounts[0].payment_methods == {"SBP": "12345"}
        with pytest.raises(ValueError):
            MarketplaceSection(accounts=[dict(account, payment_methods={"SBP": 12345})])

    def test_receipt_email_must_look_like_address(self):
        with pytest.raises(ValueError, match="Not an email address"):
            ChatSection(receipt_emails=["receipts.desk.example"])

    def test_empty_receipt_emails_rejected(self):
        with pytest.raises(ValueError):
            ChatSection(receipt_emails=[])

    def test_receipt_ack_placeholders(self):
        ChatSection(receipt_emails=["r@desk.example"], texts={"receipt_ack": "Получили {amount} ({operation})"})
        with pytest.raises(ValueError, match="receipt_ack"):
            ChatSection(receipt_emails=["r@desk.example"], texts={"receipt_ack": "Получили {sum}"})

    def test_bad_log_level(self, tmp_path):
        config = minimal_config()
        config["logging"] = {"level": "VERBOSE"}

        errors = validate_app_config(write_config(tmp_path, config))

        assert len(errors) == 1
        assert errors[0].startswith("app.yaml: logging -> level")

    def test_missing_file(self, tmp_path):
        errors = validate_app_config(tmp_path)
        assert len(errors) == 1
        assert "Config file not found" in errors[0]

    def test_malformed_yaml_reports_line(self, tmp_path):
        (tmp_path / "app.yaml").write_text("chat:\n  receipt_emails: [a@b\n", encoding="utf-8")

        errors = validate_app_config(tmp_path)

        assert len(errors) == 1
        assert "Invalid YAML" in errors[0]
        assert "line" in errors[0]


class TestSanityChecks:
    """Cross-field rules"""

    def test_minimal_config_passes(self, tmp_path):
        assert validate_sanity_checks(write_config(tmp_path, minimal_config())) == []

    def test_chat_poll_must_be_faster_than_monitor(self, tmp_path):
        config = minimal_config()
        config["tasks"] = {"order_monitor": 5, "chat_poll": 5}

        errors = validate_sanity_checks(write_config(tmp_path, config))

        assert len(errors) == 1
        assert "tasks.chat_poll" in errors[0]

    def test_chat_poll_ignored_without_pollers(self, tmp_path):
        config = minimal_config()
        config["tasks"] = {"order_monitor": 5, "chat_poll": 5, "chat_pollers": False}

        assert validate_sanity_checks(write_config(tmp_path, config)) == []

    def test_release_delay_shorter_than_sweep(self, tmp_path):
        config = minimal_config()
        config["settlement"] = {"release_delay_seconds": 5}

        errors = validate_sanity_checks(write_config(tmp_path, config))

        assert any("release_delay_seconds" in error for error in errors)

    def test_no_enabled_account(self, tmp_path):
        config = minimal_config()
        config["marketplace"]["accounts"][0]["enabled"] = False

        errors = validate_all_configs(str(write_config(tmp_path, config)))

        assert errors == ["marketplace.accounts: no enabled account configured"]

    def test_sanity_skipped_when_schema_fails(self, tmp_path):
        config = minimal_config()
        del config["payments"]
        config["marketplace"]["accounts"] = []

        errors = validate_all_configs(str(write_config(tmp_path, config)))

        assert all("no enabled account" not in error for error in errors)
