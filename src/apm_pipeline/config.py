"""Configuration loading for apm-pipeline."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from apm_pipeline.alerter.classifier import FilterLevel
from apm_pipeline.errors import ConfigError
from apm_pipeline.rules import PipelineRules


@dataclass
class PostgresConfig:
    """Postgres connection configuration."""

    host: str
    port: int
    database: str
    user: str
    password: str

    @property
    def dsn(self) -> str:
        """Return connection string."""
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password}"
        )

    @classmethod
    def from_env(cls) -> "PostgresConfig":
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            database=os.environ.get("POSTGRES_DB", "apm"),
            user=os.environ.get("POSTGRES_USER", "apm"),
            password=os.environ.get("POSTGRES_PASSWORD", ""),
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _filter_level(value: str) -> FilterLevel:
    try:
        return FilterLevel(value.strip().lower())
    except ValueError:
        raise ConfigError(
            f"Invalid filter level {value!r} (expected none, standard or strict)"
        ) from None


@dataclass
class Config:
    """Pipeline configuration."""

    enabled: bool = True
    filter_level: FilterLevel = FilterLevel.STANDARD
    user_id: str | None = None
    sweep_interval: float = 60.0  # seconds between dedup cache sweeps
    idle_timeout: float = 1.0  # seconds before idle work is forced to run
    discord_webhook_url: str | None = None
    ping_critical: bool = True
    postgres: PostgresConfig | None = None
    rules: PipelineRules = field(default_factory=PipelineRules)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables.

        Postgres is only configured when POSTGRES_HOST is set.
        """
        try:
            return cls(
                enabled=_env_bool("APM_ENABLED", True),
                filter_level=_filter_level(os.environ.get("APM_FILTER_LEVEL", "standard")),
                user_id=os.environ.get("APM_USER_ID"),
                sweep_interval=float(os.environ.get("APM_SWEEP_INTERVAL", "60")),
                idle_timeout=float(os.environ.get("APM_IDLE_TIMEOUT", "1.0")),
                discord_webhook_url=os.environ.get("DISCORD_WEBHOOK_URL"),
                ping_critical=_env_bool("APM_PING_CRITICAL", True),
                postgres=PostgresConfig.from_env() if "POSTGRES_HOST" in os.environ else None,
            )
        except ValueError as e:
            raise ConfigError(f"Invalid environment configuration: {e}") from e

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Load configuration from a YAML file, with env var overrides."""
        config = cls.from_env()

        if not path.exists():
            return config

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")

        config._apply_file(data)
        return config

    def _apply_file(self, data: dict[str, Any]) -> None:
        env = os.environ
        try:
            if "enabled" in data and "APM_ENABLED" not in env:
                self.enabled = bool(data["enabled"])
            if "filter_level" in data and "APM_FILTER_LEVEL" not in env:
                self.filter_level = _filter_level(str(data["filter_level"]))
            if "user_id" in data and "APM_USER_ID" not in env:
                self.user_id = str(data["user_id"])
            if "sweep_interval" in data and "APM_SWEEP_INTERVAL" not in env:
                self.sweep_interval = float(data["sweep_interval"])
            if "idle_timeout" in data and "APM_IDLE_TIMEOUT" not in env:
                self.idle_timeout = float(data["idle_timeout"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        notifications = data.get("notifications") or {}
        if "DISCORD_WEBHOOK_URL" not in env:
            self.discord_webhook_url = notifications.get(
                "discord_webhook_url", self.discord_webhook_url
            )
        if "APM_PING_CRITICAL" not in env:
            self.ping_critical = bool(notifications.get("ping_critical", self.ping_critical))

        if "postgres" in data and self.postgres is None:
            pg = data["postgres"] or {}
            defaults = PostgresConfig.from_env()
            self.postgres = PostgresConfig(
                host=pg.get("host", defaults.host),
                port=int(pg.get("port", defaults.port)),
                database=pg.get("database", defaults.database),
                user=pg.get("user", defaults.user),
                password=pg.get("password", defaults.password),
            )

        if "rules" in data:
            self.rules = PipelineRules.from_mapping(data["rules"])
