"""
Configuration for the Reconciliation Pipeline

Settings are layered, later layers winning:

    1. dataclass defaults
    2. optional YAML file (--config)
    3. RECON_* environment variables, e.g. RECON_DATABASE_HOST,
       RECON_CHANNEL_BASE_URL, RECON_MAX_WORKERS
    4. Vault secrets (audit-db-credentials, site-controller-credentials)
       when VAULT_ADDR / VAULT_TOKEN are set

Example YAML:

    database:
      host: pms-db.internal
      name: pms
    channel:
      base_url: http://localhost:5000/api/sc
    cadences:
      hourly:
        lookback_minutes: 90
    alerts:
      webhook_url: https://hooks.example.com/recon
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Union, get_args, get_origin

import yaml

from src.reconciliation.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "RECON_"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    name: str = "pms"
    user: str = "postgres"
    password: str = "postgres"
    statement_timeout_ms: int = 30000
    max_connections: int = 8


@dataclass
class ChannelConfig:
    base_url: Optional[str] = None
    service_name_pattern: str = "%Stock%"
    request_timeout: float = 10.0
    max_attempts: int = 3
    backoff_min: float = 1.0
    backoff_max: float = 10.0
    api_token: Optional[str] = None


@dataclass
class WindowConfig:
    """Detection windows, in minutes."""
    dispatch_minutes: float = 5.0
    correlation_minutes: float = 10.0
    silent_skip_lookback_minutes: float = 15.0
    silent_skip_lookahead_minutes: float = 30.0


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    warning_threshold: float = 95.0
    critical_threshold: float = 80.0


@dataclass
class MetricsConfig:
    enabled: bool = True
    port: int = 9090
    pushgateway_url: Optional[str] = None


@dataclass
class PipelineConfig:
    """Complete pipeline configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    windows: WindowConfig = field(default_factory=WindowConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    cadences: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    run_timeout_seconds: float = 300.0
    max_workers: int = 4
    skip_past_stays: bool = True
    dry_run: bool = False
    timezone: str = "Asia/Tokyo"

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigurationError: If a value is out of range
        """
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be >= 1")
        if self.run_timeout_seconds <= 0:
            raise ConfigurationError("run_timeout_seconds must be > 0")
        if self.channel.max_attempts < 1:
            raise ConfigurationError("channel.max_attempts must be >= 1")
        if self.channel.backoff_min > self.channel.backoff_max:
            raise ConfigurationError("channel.backoff_min must not exceed channel.backoff_max")
        if not 0 <= self.alerts.critical_threshold <= self.alerts.warning_threshold <= 100:
            raise ConfigurationError("alert thresholds must satisfy 0 <= critical <= warning <= 100")
        for name, value in vars(self.windows).items():
            if value <= 0:
                raise ConfigurationError(f"windows.{name} must be > 0")

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        """Return the configuration as a dict, with secrets redacted by default."""
        data = {
            "database": dict(vars(self.database)),
            "channel": dict(vars(self.channel)),
            "windows": dict(vars(self.windows)),
            "alerts": dict(vars(self.alerts)),
            "metrics": dict(vars(self.metrics)),
            "cadences": dict(self.cadences),
            "run_timeout_seconds": self.run_timeout_seconds,
            "max_workers": self.max_workers,
            "skip_past_stays": self.skip_past_stays,
            "dry_run": self.dry_run,
            "timezone": self.timezone,
        }
        if redact:
            if data["database"]["password"]:
                data["database"]["password"] = "***"
            if data["channel"]["api_token"]:
                data["channel"]["api_token"] = "***"
        return data


_SECTIONS = ("database", "channel", "windows", "alerts", "metrics")


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    vault: Optional[Any] = None
) -> PipelineConfig:
    """
    Build the pipeline configuration.

    Args:
        path: Optional YAML file
        environ: Environment mapping (os.environ by default)
        vault: Optional VaultClient for credentials

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: If the file or a value is invalid
    """
    environ = os.environ if environ is None else environ
    config = PipelineConfig()

    if path:
        _apply_mapping(config, _read_yaml(path))
        logger.info(f"Loaded configuration from {path}")

    _apply_environment(config, environ)

    if vault is not None:
        apply_vault_secrets(config, vault)

    config.validate()
    return config


def apply_vault_secrets(config: PipelineConfig, vault: Any) -> None:
    """
    Overlay credentials from Vault onto the configuration.

    Args:
        config: Configuration to update in place
        vault: VaultClient
    """
    credentials = vault.get_audit_db_credentials()
    for key, attr in (
        ("host", "host"),
        ("port", "port"),
        ("database", "name"),
        ("user", "user"),
        ("username", "user"),
        ("password", "password"),
    ):
        if credentials.get(key) is not None:
            setattr(config.database, attr, _coerce(config.database, attr, credentials[key], f"vault:{key}"))

    token = vault.get_site_controller_token()
    if token:
        config.channel.api_token = token

    logger.info("Applied credentials from Vault")


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _apply_mapping(config: PipelineConfig, data: Dict[str, Any]) -> None:
    for key, value in data.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section '{key}' must be a mapping")
            section = getattr(config, key)
            for name, item in value.items():
                if not hasattr(section, name):
                    raise ConfigurationError(f"Unknown setting {key}.{name}")
                setattr(section, name, _coerce(section, name, item, f"{key}.{name}"))
        elif key == "cadences":
            if not isinstance(value, dict):
                raise ConfigurationError("Section 'cadences' must be a mapping")
            for name, entry in value.items():
                if not isinstance(entry, dict):
                    raise ConfigurationError(f"Cadence '{name}' must be a mapping")
                config.cadences[name] = {**config.cadences.get(name, {}), **entry}
        elif hasattr(config, key):
            setattr(config, key, _coerce(config, key, value, key))
        else:
            raise ConfigurationError(f"Unknown setting {key}")


def _apply_environment(config: PipelineConfig, environ: Mapping[str, str]) -> None:
    for section_name in _SECTIONS:
        section = getattr(config, section_name)
        for f in fields(section):
            env_key = f"{ENV_PREFIX}{section_name}_{f.name}".upper()
            if env_key in environ:
                setattr(section, f.name, _coerce(section, f.name, environ[env_key], env_key))

    for name in ("run_timeout_seconds", "max_workers", "skip_past_stays", "dry_run", "timezone"):
        env_key = f"{ENV_PREFIX}{name}".upper()
        if env_key in environ:
            setattr(config, name, _coerce(config, name, environ[env_key], env_key))


def _coerce(target: Any, name: str, value: Any, source: str) -> Any:
    """Convert `value` to the declared type of field `name` on `target`."""
    declared = {f.name: f.type for f in fields(target)}[name]
    args = [arg for arg in get_args(declared) if arg is not type(None)]
    kind = args[0] if get_origin(declared) is Union and len(args) == 1 else declared

    if value is None:
        return None

    try:
        if kind is bool:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if kind in (int, float, str):
            return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {source}: {e}") from e

    return value
