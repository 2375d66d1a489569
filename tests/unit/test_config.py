"""
Unit tests for configuration loading.
"""

from unittest.mock import Mock

import pytest

from src.reconciliation.errors import ConfigurationError
from src.utils.config import PipelineConfig, apply_vault_secrets, load_config


@pytest.fixture
def config_file(tmp_path):
    """Write a YAML config file and return its path."""
    def _write(text):
        path = tmp_path / "recon.yml"
        path.write_text(text)
        return str(path)
    return _write


class TestLoadConfig:
    """Test layered configuration."""

    def test_defaults(self):
        """Test defaults with no file and an empty environment."""
        config = load_config(environ={})

        assert config.database.host == "localhost"
        assert config.channel.service_name_pattern == "%Stock%"
        assert config.windows.dispatch_minutes == 5.0
        assert config.windows.correlation_minutes == 10.0
        assert config.alerts.warning_threshold == 95.0
        assert config.timezone == "Asia/Tokyo"
        assert config.skip_past_stays is True

    def test_yaml_file(self, config_file):
        """Test values from a YAML file."""
        path = config_file(
            "database:\n"
            "  host: pms-db.internal\n"
            "  port: 6432\n"
            "channel:\n"
            "  base_url: http://localhost:5000/api/sc\n"
            "windows:\n"
            "  dispatch_minutes: 3\n"
            "cadences:\n"
            "  hourly:\n"
            "    lookback_minutes: 90\n"
            "max_workers: 8\n"
            "dry_run: true\n"
        )

        config = load_config(path, environ={})

        assert config.database.host == "pms-db.internal"
        assert config.database.port == 6432
        assert config.channel.base_url == "http://localhost:5000/api/sc"
        assert config.windows.dispatch_minutes == 3.0
        assert isinstance(config.windows.dispatch_minutes, float)
        assert config.cadences == {"hourly": {"lookback_minutes": 90}}
        assert config.max_workers == 8
        assert config.dry_run is True

    def test_environment_overrides_file(self, config_file):
        """Test that RECON_* variables win over the file."""
        path = config_file("database:\n  host: from-file\n")

        config = load_config(path, environ={
            "RECON_DATABASE_HOST": "from-env",
            "RECON_DATABASE_PORT": "5433",
            "RECON_CHANNEL_MAX_ATTEMPTS": "5",
            "RECON_METRICS_ENABLED": "false",
            "RECON_ALERTS_WEBHOOK_URL": "https://hooks.example.com/x",
            "RECON_SKIP_PAST_STAYS": "no",
            "RECON_RUN_TIMEOUT_SECONDS": "120",
        })

        assert config.database.host == "from-env"
        assert config.database.port == 5433
        assert config.channel.max_attempts == 5
        assert config.metrics.enabled is False
        assert config.alerts.webhook_url == "https://hooks.example.com/x"
        assert config.skip_past_stays is False
        assert config.run_timeout_seconds == 120.0

    @pytest.mark.parametrize("environ,match", [
        ({"RECON_DATABASE_PORT": "abc"}, "RECON_DATABASE_PORT"),
        ({"RECON_DRY_RUN": "maybe"}, "not a boolean"),
        ({"RECON_MAX_WORKERS": "0"}, "max_workers"),
        ({"RECON_CHANNEL_BACKOFF_MIN": "30"}, "backoff_min"),
        ({"RECON_ALERTS_CRITICAL_THRESHOLD": "99"}, "thresholds"),
        ({"RECON_WINDOWS_DISPATCH_MINUTES": "0"}, "windows.dispatch_minutes"),
    ])
    def test_invalid_values(self, environ, match):
        """Test that invalid values raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match=match):
            load_config(environ=environ)

    @pytest.mark.parametrize("text,match", [
        ("database:\n  hostname: x\n", "Unknown setting database.hostname"),
        ("colour: blue\n", "Unknown setting colour"),
        ("database: localhost\n", "must be a mapping"),
        ("- a\n- b\n", "must contain a mapping"),
        ("database: [unclosed\n", "Invalid YAML"),
    ])
    def test_invalid_files(self, config_file, text, match):
        with pytest.raises(ConfigurationError, match=match):
            load_config(config_file(text), environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read config file"):
            load_config(str(tmp_path / "missing.yml"), environ={})

    def test_empty_file(self, config_file):
        assert load_config(config_file(""), environ={}).database.host == "localhost"

    def test_vault_overrides_credentials(self):
        """Test that Vault credentials are applied last."""
        vault = Mock()
        vault.get_audit_db_credentials.return_value = {
            "host": "vault-db",
            "port": "5434",
            "username": "recon",
            "password": "s3cret",
        }
        vault.get_site_controller_token.return_value = "token-1"

        config = load_config(environ={"RECON_DATABASE_HOST": "env-db"}, vault=vault)

        assert config.database.host == "vault-db"
        assert config.database.port == 5434
        assert config.database.user == "recon"
        assert config.database.password == "s3cret"
        assert config.channel.api_token == "token-1"


class TestPipelineConfig:
    """Test PipelineConfig helpers."""

    def test_to_dict_redacts_secrets(self):
        config = PipelineConfig()
        config.channel.api_token = "token-1"

        data = config.to_dict()

        assert data["database"]["password"] == "***"
        assert data["channel"]["api_token"] == "***"
        assert config.to_dict(redact=False)["channel"]["api_token"] == "token-1"

    def test_vault_without_token_keeps_existing(self):
        config = PipelineConfig()
        config.channel.api_token = "from-env"
        vault = Mock()
        vault.get_audit_db_credentials.return_value = {}
        vault.get_site_controller_token.return_value = None

        apply_vault_secrets(config, vault)

        assert config.channel.api_token == "from-env"
        assert config.database.password == "postgres"
