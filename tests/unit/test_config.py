"""Unit tests for recurly_rescue.config - Settings loading and validation."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from recurly_rescue.config import (
    ApiSettings,
    DiscoverySettings,
    LoggingSettings,
    RescueSettings,
    RetrySettings,
    Settings,
    format_validation_error,
)
from recurly_rescue.exceptions import ConfigurationError, CredentialError

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env, config.yaml and shell keys out of the tests."""
    monkeypatch.chdir(tmp_path)
    for var in (
        "RECURLY_SANDBOX_API_KEY",
        "RECURLY_PRODUCTION_API_KEY",
        "RECURLY_RESCUE_API__SANDBOX_API_KEY",
        "RECURLY_RESCUE_API__PRODUCTION_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)


# ---- Sub-model defaults ------------------------------------------------------


class TestApiSettings:
    """ApiSettings defaults and constraints."""

    def test_default_values(self) -> None:
        s = ApiSettings()
        assert s.base_url == "https://v3.recurly.com"
        assert s.request_timeout_ms == 30_000
        assert s.rate_limit_threshold == 10
        assert s.sandbox_api_key is None

    def test_zero_timeout_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ApiSettings(request_timeout_ms=0)


class TestRetrySettings:
    """RetrySettings defaults and bounds."""

    def test_default_values(self) -> None:
        s = RetrySettings()
        assert (s.count, s.backoff_base, s.backoff_max_seconds) == (3, 2, 30)

    def test_too_many_retries_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RetrySettings(count=11)


class TestDiscoverySettings:
    """Default window and ordering check."""

    def test_default_window(self) -> None:
        s = DiscoverySettings()
        assert s.start_date == datetime(2025, 11, 16, tzinfo=UTC)
        assert s.end_date == datetime(2026, 1, 20, 23, 59, 59, tzinfo=UTC)
        assert s.page_size == 200

    def test_inverted_window_rejected(self) -> None:
        with pytest.raises(ValidationError, match="start_date"):
            DiscoverySettings(
                start_date=datetime(2026, 2, 1, tzinfo=UTC),
                end_date=datetime(2026, 1, 1, tzinfo=UTC),
            )

    def test_page_size_capped(self) -> None:
        with pytest.raises(ValidationError):
            DiscoverySettings(page_size=500)


class TestRescueSettings:
    """Rescue plan defaults."""

    def test_default_values(self) -> None:
        s = RescueSettings()
        assert s.plan_code == "4weeks-subscription"
        assert s.trial_days == 1
        assert s.confirm_every == 100
        assert s.exclude_accounts == []


class TestLoggingSettings:
    """LoggingSettings format validation."""

    def test_default_format(self) -> None:
        assert LoggingSettings().format == "console"

    def test_invalid_format_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingSettings(format="xml")  # type: ignore[arg-type]


# ---- Settings ----------------------------------------------------------------


class TestSettings:
    """Top-level Settings construction and helpers."""

    def test_default_projects(self) -> None:
        s = Settings()
        assert set(s.projects) == {"eur", "multi"}
        assert s.project("eur").currency == "EUR"
        assert s.project("multi").currency is None

    def test_unknown_project(self) -> None:
        with pytest.raises(ConfigurationError, match="Available projects: eur, multi"):
            Settings().project("gbp")

    def test_nested_env_var_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_RESCUE_RETRY__COUNT", "5")
        assert Settings().retry.count == 5

    def test_prefixed_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_RESCUE_API__SANDBOX_API_KEY", "sb-key")
        assert Settings().api_key_for("sandbox") == "sb-key"

    def test_plain_api_key_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_SANDBOX_API_KEY", "legacy-sb")
        monkeypatch.setenv("RECURLY_PRODUCTION_API_KEY", "legacy-prod")
        s = Settings()
        assert s.api_key_for("sandbox") == "legacy-sb"
        assert s.api_key_for("production") == "legacy-prod"

    def test_prefixed_key_wins_over_plain(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_SANDBOX_API_KEY", "legacy")
        monkeypatch.setenv("RECURLY_RESCUE_API__SANDBOX_API_KEY", "prefixed")
        assert Settings().api_key_for("sandbox") == "prefixed"

    def test_missing_api_key(self) -> None:
        with pytest.raises(CredentialError, match="RECURLY_PRODUCTION_API_KEY"):
            Settings().api_key_for("production")

    def test_blank_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_SANDBOX_API_KEY", "   ")
        with pytest.raises(CredentialError):
            Settings().api_key_for("sandbox")

    def test_unknown_environment(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid environment"):
            Settings().api_key_for("staging")

    def test_api_key_not_in_repr(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_SANDBOX_API_KEY", "super-secret-value")
        assert "super-secret-value" not in repr(Settings())


# ---- File sources ------------------------------------------------------------


class TestFileSources:
    """YAML and .env layers."""

    def test_load_from_custom_yaml(self, tmp_path: Path) -> None:
        yaml_file = tmp_path / "custom.yaml"
        yaml_file.write_text(
            "rescue:\n  confirm_every: 25\n"
            "projects:\n  gbp:\n    id: gbp\n    name: GBP\n    site_id: gbp-site\n"
            "    currency: GBP\n"
        )
        s = Settings.load(config_path=yaml_file)
        assert s.rescue.confirm_every == 25
        assert s.project("gbp").site_id == "gbp-site"

    def test_missing_yaml_uses_defaults(self, tmp_path: Path) -> None:
        s = Settings.load(config_path=tmp_path / "nonexistent.yaml")
        assert s.rescue.confirm_every == 100

    def test_dotenv_file_loaded(self, tmp_path: Path) -> None:
        (tmp_path / ".env").write_text("RECURLY_RESCUE_RETRY__COUNT=1\n")
        assert Settings().retry.count == 1

    def test_env_var_overrides_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        yaml_file = tmp_path / "config.yaml"
        yaml_file.write_text("retry:\n  count: 2\n")
        monkeypatch.setenv("RECURLY_RESCUE_RETRY__COUNT", "4")
        assert Settings.load(config_path=yaml_file).retry.count == 4

    def test_cli_overrides_everything(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RECURLY_RESCUE_RETRY__COUNT", "4")
        s = Settings.load(retry=RetrySettings(count=0))
        assert s.retry.count == 0


# ---- Validation error formatting ---------------------------------------------


class TestFormatValidationError:
    """format_validation_error should produce user-friendly messages."""

    def test_includes_field_path_and_input(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            RetrySettings(count=42)
        msg = format_validation_error(exc_info.value)
        assert msg.startswith("Configuration error:")
        assert "count" in msg
        assert "42" in msg

    def test_hides_api_key_input(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ApiSettings(sandbox_api_key=12345)  # type: ignore[arg-type]
        msg = format_validation_error(exc_info.value)
        assert "sandbox_api_key" in msg
        assert "12345" not in msg
