"""Basic tests for apm-pipeline."""

from pathlib import Path

import pytest

from apm_pipeline import __version__
from apm_pipeline.alerter.classifier import FilterLevel, SignalCategory
from apm_pipeline.config import Config, PostgresConfig
from apm_pipeline.errors import ConfigError
from apm_pipeline.rules import PipelineRules

ENV_VARS = [
    "APM_ENABLED",
    "APM_FILTER_LEVEL",
    "APM_USER_ID",
    "APM_SWEEP_INTERVAL",
    "APM_IDLE_TIMEOUT",
    "APM_PING_CRITICAL",
    "DISCORD_WEBHOOK_URL",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_version() -> None:
    """Test that version is defined."""
    assert __version__ == "0.1.0"


def test_config_defaults() -> None:
    config = Config.from_env()

    assert config.enabled is True
    assert config.filter_level is FilterLevel.STANDARD
    assert config.sweep_interval == 60.0
    assert config.postgres is None
    assert config.discord_webhook_url is None


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test loading config from environment variables."""
    monkeypatch.setenv("APM_ENABLED", "false")
    monkeypatch.setenv("APM_FILTER_LEVEL", "STRICT")
    monkeypatch.setenv("APM_USER_ID", "user-1")
    monkeypatch.setenv("APM_SWEEP_INTERVAL", "30")
    monkeypatch.setenv("POSTGRES_HOST", "testhost")
    monkeypatch.setenv("POSTGRES_PORT", "5433")
    monkeypatch.setenv("POSTGRES_DB", "testdb")
    monkeypatch.setenv("POSTGRES_USER", "testuser")
    monkeypatch.setenv("POSTGRES_PASSWORD", "testpass")
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", "https://discord.test")

    config = Config.from_env()

    assert config.enabled is False
    assert config.filter_level is FilterLevel.STRICT
    assert config.user_id == "user-1"
    assert config.sweep_interval == 30.0
    assert config.postgres.host == "testhost"
    assert config.postgres.port == 5433
    assert config.postgres.database == "testdb"
    assert config.postgres.user == "testuser"
    assert config.postgres.password == "testpass"
    assert config.discord_webhook_url == "https://discord.test"


def test_invalid_filter_level(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APM_FILTER_LEVEL", "paranoid")
    with pytest.raises(ConfigError):
        Config.from_env()


def test_postgres_dsn() -> None:
    """Test PostgresConfig DSN generation."""
    pg = PostgresConfig(
        host="localhost",
        port=5432,
        database="apm",
        user="apm",
        password="secret",
    )

    assert "host=localhost" in pg.dsn
    assert "port=5432" in pg.dsn
    assert "dbname=apm" in pg.dsn
    assert "user=apm" in pg.dsn
    assert "password=secret" in pg.dsn


class TestConfigFile:
    """Tests for YAML configuration."""

    def test_missing_file_uses_env(self, tmp_path: Path) -> None:
        config = Config.from_file(tmp_path / "missing.yaml")
        assert config.filter_level is FilterLevel.STANDARD

    def test_file_values(self, tmp_path: Path) -> None:
        path = tmp_path / "pipeline.yaml"
        path.write_text(
            "filter_level: strict\n"
            "sweep_interval: 15\n"
            "notifications:\n"
            "  discord_webhook_url: https://discord.test/file\n"
            "  ping_critical: false\n"
            "postgres:\n"
            "  host: db.internal\n"
            "  database: telemetry\n"
            "rules:\n"
            "  thresholds:\n"
            "    page_load_time: 2500\n"
        )

        config = Config.from_file(path)

        assert config.filter_level is FilterLevel.STRICT
        assert config.sweep_interval == 15.0
        assert config.discord_webhook_url == "https://discord.test/file"
        assert config.ping_critical is False
        assert config.postgres.host == "db.internal"
        assert config.postgres.database == "telemetry"
        assert config.postgres.port == 5432
        assert config.rules.effective_thresholds()["page_load_time"] == 2500

    def test_env_wins_over_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APM_FILTER_LEVEL", "none")
        path = tmp_path / "pipeline.yaml"
        path.write_text("filter_level: strict\n")

        assert Config.from_file(path).filter_level is FilterLevel.NONE

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "pipeline.yaml"
        path.write_text("filter_level: [unclosed\n")

        with pytest.raises(ConfigError):
            Config.from_file(path)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "pipeline.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError):
            Config.from_file(path)


class TestPipelineRules:
    """Tests for threshold and pattern rules."""

    def test_defaults(self) -> None:
        rules = PipelineRules()
        assert rules.effective_thresholds() == {
            "page_load_time": 3000,
            "memory_usage": 100,
            "error_rate": 5,
            "response_time": 1000,
        }

    def test_extra_pattern_extends_defaults(self) -> None:
        rules = PipelineRules.from_mapping(
            {"known_infra": [{"tag": "upstream_timeout", "pattern": "upstream request timeout"}]}
        )
        classifier = rules.build_classifier()

        custom = classifier.classify("Upstream request timeout after 30s")
        builtin = classifier.classify("Partial response (status code 206) is unsupported")
        assert custom.known_infra == "upstream_timeout"
        assert builtin.known_infra == "partial_response"

    def test_replace_defaults(self) -> None:
        rules = PipelineRules.from_mapping(
            {"replace_defaults": True, "thresholds": {"response_time": 200}}
        )
        classifier = rules.build_classifier()

        assert rules.effective_thresholds() == {"response_time": 200}
        result = classifier.classify("Partial response (status code 206) is unsupported")
        assert result.category is SignalCategory.GENUINE

    @pytest.mark.parametrize(
        "data",
        [
            {"thresholds": {"page_load_time": 0}},
            {"noise": [{"tag": "bad", "pattern": "(unclosed"}]},
            {"noise": [{"tag": "", "pattern": "x"}]},
            {"unknown_section": []},
        ],
    )
    def test_invalid_rules(self, data: dict) -> None:
        with pytest.raises(ConfigError):
            PipelineRules.from_mapping(data)
