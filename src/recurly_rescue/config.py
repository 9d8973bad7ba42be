"""Configuration with 4-layer resolution: defaults -> YAML -> env -> CLI.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``RECURLY_RESCUE_`` prefixed env vars, and
nested delimiter ``__`` for overriding sub-model fields. The plain
``RECURLY_SANDBOX_API_KEY`` / ``RECURLY_PRODUCTION_API_KEY`` variables are
honoured as well.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ClassVar, Literal

import structlog
from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from recurly_rescue.exceptions import ConfigurationError, CredentialError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

Environment = Literal["sandbox", "production"]

_LEGACY_KEY_VARS: dict[str, str] = {
    "sandbox_api_key": "RECURLY_SANDBOX_API_KEY",
    "production_api_key": "RECURLY_PRODUCTION_API_KEY",
}


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


class ApiSettings(BaseModel):
    """Recurly API connection settings."""

    base_url: str = "https://v3.recurly.com"
    app_base_url: str = Field(
        default="https://app.recurly.com",
        description="Web console base URL used for account links.",
    )
    sandbox_api_key: SecretStr | None = None
    production_api_key: SecretStr | None = None
    request_timeout_ms: int = Field(default=30_000, gt=0)
    rate_limit_threshold: int = Field(
        default=10,
        ge=0,
        description="Pace requests once remaining calls drop below this.",
    )


class RetrySettings(BaseModel):
    """Retry/backoff policy for transient API failures."""

    count: int = Field(default=3, ge=0, le=10)
    backoff_base: int = Field(default=2, ge=1, le=10)
    backoff_max_seconds: int = Field(default=30, ge=1, le=300)


class DiscoverySettings(BaseModel):
    """Default window and page size for candidate discovery."""

    start_date: datetime = datetime(2025, 11, 16, 0, 0, 0, tzinfo=UTC)
    end_date: datetime = datetime(2026, 1, 20, 23, 59, 59, tzinfo=UTC)
    page_size: int = Field(default=200, ge=1, le=200)

    @model_validator(mode="after")
    def _check_order(self) -> DiscoverySettings:
        if self.start_date > self.end_date:
            raise ValueError("start_date must be before or equal to end_date")
        return self


class StateSettings(BaseModel):
    """Execution state file location."""

    directory: Path = Path(".")


class RescueSettings(BaseModel):
    """Rescue plan and driving-loop settings."""

    plan_code: str = "4weeks-subscription"
    plan_name: str = "4 reports every 4 weeks"
    trial_days: int = Field(default=1, ge=0)
    confirm_every: int = Field(
        default=100,
        ge=0,
        description="Pause for confirmation every N accounts (0 disables).",
    )
    exclude_accounts: list[str] = Field(default_factory=list)
    results_directory: Path = Path(".")


class ProjectConfig(BaseModel):
    """A Recurly site the tool can operate on."""

    id: str
    name: str
    site_id: str
    currency: str | None = Field(
        default=None,
        description="Fixed subscription currency, or None for multi-currency sites.",
    )


def _default_projects() -> dict[str, ProjectConfig]:
    return {
        "eur": ProjectConfig(id="eur", name="EUR Project", site_id="eur-site", currency="EUR"),
        "multi": ProjectConfig(id="multi", name="Multi-Currency Project", site_id="multi-site"),
    }


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level application settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``config.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``RECURLY_RESCUE_``)
        4. CLI overrides (applied programmatically after loading)
    """

    model_config = SettingsConfigDict(
        env_prefix="RECURLY_RESCUE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="config.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    api: ApiSettings = Field(default_factory=ApiSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    state: StateSettings = Field(default_factory=StateSettings)
    rescue: RescueSettings = Field(default_factory=RescueSettings)
    projects: dict[str, ProjectConfig] = Field(default_factory=_default_projects)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    # Plain variable names from the .env files the tool has always used
    legacy_sandbox_api_key: SecretStr | None = Field(
        default=None, validation_alias="RECURLY_SANDBOX_API_KEY", exclude=True
    )
    legacy_production_api_key: SecretStr | None = Field(
        default=None, validation_alias="RECURLY_PRODUCTION_API_KEY", exclude=True
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings (CLI) > env_settings > dotenv (.env) > yaml > defaults

        Args:
            settings_cls: The settings class.
            init_settings: Init / programmatic overrides.
            env_settings: Environment variable source.
            dotenv_settings: Dotenv file source (.env).
            file_secret_settings: Secret file source (unused).

        Returns:
            Ordered tuple of settings sources (first = highest priority).
        """
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "config.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @model_validator(mode="after")
    def _apply_legacy_keys(self) -> Settings:
        if self.api.sandbox_api_key is None:
            self.api.sandbox_api_key = self.legacy_sandbox_api_key
        if self.api.production_api_key is None:
            self.api.production_api_key = self.legacy_production_api_key
        return self

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and CLI overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value CLI overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None

    def api_key_for(self, environment: str) -> str:
        """Return the API key for ``environment``.

        Raises:
            ConfigurationError: If the environment is unknown.
            CredentialError: If no key is configured for it.
        """
        if environment not in ("sandbox", "production"):
            raise ConfigurationError(
                f"Invalid environment: {environment!r}. Must be 'sandbox' or 'production'"
            )
        secret: SecretStr | None = getattr(self.api, f"{environment}_api_key")
        if secret is None or not secret.get_secret_value().strip():
            var = _LEGACY_KEY_VARS[f"{environment}_api_key"]
            raise CredentialError(
                f"Missing API key for {environment}. Set {var} in your .env file."
            )
        return secret.get_secret_value()

    def project(self, project_id: str) -> ProjectConfig:
        """Return the configuration for ``project_id``.

        Raises:
            ConfigurationError: If the project is unknown.
        """
        try:
            return self.projects[project_id]
        except KeyError:
            available = ", ".join(sorted(self.projects))
            raise ConfigurationError(
                f"Unknown project: {project_id!r}. Available projects: {available}"
            ) from None


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None and "api_key" not in loc:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
