"""Configuration management for the provider monitor."""

import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from provider_checks.common_check import (
    DEFAULT_DEGRADED_THRESHOLD_MS,
    DEFAULT_PING_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    PROVIDER_TYPES,
    ProviderConfig,
)
from provider_checks.orchestrator import CheckSettings


logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/monitoring.yaml"

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class MissingSecretError(ValueError):
    """A ``${VAR}`` reference points at an unset environment variable."""

    def __init__(self, names: list[str]):
        super().__init__(f"missing_env_secrets: {names}")
        self.names = names


class ProviderEntry(BaseModel):
    """One provider as written in the YAML file."""
    id: str = Field(description="Stable provider identifier")
    name: str = Field(description="Display name")
    type: str = Field(description="Protocol family: openai, anthropic or gemini")
    model: str = Field(description="Model id, optionally with a reasoning-effort directive")
    api_key: str = Field(default="", description="Credential; may be a ${ENV_VAR} reference")
    endpoint: Optional[str] = Field(default=None, description="Endpoint URL; vendor default when unset")
    group_name: Optional[str] = Field(default=None, description="Group used by CHECK_GROUPS filtering")
    enabled: bool = Field(default=True, description="Disabled entries are never checked")
    request_headers: Dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Extra top-level request body fields")

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        # Unknown types load fine; the check for that one provider reports the error.
        return value.strip().lower()


class SystemNotification(BaseModel):
    """Operator notice shown alongside the status data."""
    id: str = Field(description="Stable notice identifier")
    message: str = Field(description="Notice text")
    level: str = Field(default="info", description="info, warning or error")
    is_active: bool = Field(default=True, description="Inactive notices are kept but not served")
    created_at: datetime = Field(description="When the notice was posted; naive times are UTC")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().lower() or "info"

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class MonitoringConfig(BaseModel):
    """Main configuration for the monitor."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="console or json")

    # Scheduling and check tunables, re-read every tick
    poll_interval_seconds: int = Field(default=60, ge=1, description="Seconds between ticks")
    check_timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, description="Per-check deadline")
    degraded_threshold_ms: int = Field(default=DEFAULT_DEGRADED_THRESHOLD_MS, ge=0, description="Slow-but-correct cutoff")
    ping_timeout_seconds: float = Field(default=DEFAULT_PING_TIMEOUT_SECONDS, gt=0, description="Endpoint ping timeout")
    reuse_clients: bool = Field(default=True, description="Reuse one HTTP client per base URL and credential")

    # History
    history_path: Optional[str] = Field(default="data/history.json", description="JSON history file; empty keeps it in memory")
    history_retention_days: float = Field(default=30.0, gt=0, description="Days of history to keep")
    history_max_per_provider: int = Field(default=5000, ge=1, description="Cap on stored results per provider")

    # Filtering
    check_groups: list[str] = Field(default_factory=list, description="Only check these groups; empty means all")

    # Status API
    api_host: str = Field(default="127.0.0.1", description="Status API bind host")
    api_port: int = Field(default=8080, description="Status API port")
    official_status_enabled: bool = Field(default=True, description="Expose vendor status pages through the API")
    notifications: list[SystemNotification] = Field(default_factory=list, description="Operator notices served by the API")

    providers: list[ProviderEntry] = Field(default_factory=list, description="Configured providers")


def substitute_env_refs(text: str) -> str:
    """
    Replace ${VAR} with os.environ['VAR'].
    - If a placeholder exists but the env var is missing, raise MissingSecretError.
    """
    s = str(text or "")
    if "${" not in s:
        return s

    missing: list[str] = []

    def _repl(m: re.Match[str]) -> str:
        key = m.group(1)
        val = os.getenv(key)
        if val is None:
            missing.append(key)
            return ""
        return val

    out = _ENV_REF_RE.sub(_repl, s)
    if missing:
        raise MissingSecretError(sorted(set(missing)))
    return out


def _split_groups(raw: str) -> list[str]:
    return [g.strip() for g in raw.split(",") if g.strip()]


def load_config(config_path: Optional[str] = None) -> MonitoringConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("MONITORING_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            try:
                config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"invalid YAML in {config_path}: {e}") from e
        if not isinstance(config_data, dict):
            raise ValueError(f"config root must be a mapping: {config_path}")

    env_overrides = {
        "log_level": os.getenv("LOG_LEVEL"),
        "log_format": os.getenv("LOG_FORMAT"),
        "poll_interval_seconds": os.getenv("POLL_INTERVAL_SECONDS"),
        "check_timeout_seconds": os.getenv("CHECK_TIMEOUT_SECONDS"),
        "degraded_threshold_ms": os.getenv("DEGRADED_THRESHOLD_MS"),
        "check_groups": os.getenv("CHECK_GROUPS"),
        "history_path": os.getenv("HISTORY_PATH"),
    }

    for key, value in env_overrides.items():
        if value is None:
            continue
        if key == "check_groups":
            config_data[key] = _split_groups(value)
        else:
            config_data[key] = value

    try:
        return MonitoringConfig(**config_data)
    except ValidationError as e:
        raise ValueError(f"invalid monitoring config: {e}") from e


def _resolve_entry(entry: ProviderEntry) -> ProviderConfig:
    return ProviderConfig(
        id=entry.id,
        name=entry.name,
        type=entry.type,
        api_key=substitute_env_refs(entry.api_key),
        model=entry.model,
        group_name=entry.group_name,
        endpoint=substitute_env_refs(entry.endpoint) if entry.endpoint else None,
        request_headers={k: substitute_env_refs(v) for k, v in entry.request_headers.items()},
        metadata=dict(entry.metadata),
    )


def provider_configs(config: MonitoringConfig) -> list[ProviderConfig]:
    """Enabled providers, filtered by ``check_groups``, with secrets resolved."""
    groups = set(config.check_groups)
    out: list[ProviderConfig] = []
    for entry in config.providers:
        if not entry.enabled:
            continue
        if groups and (entry.group_name or "") not in groups:
            continue
        if entry.type not in PROVIDER_TYPES:
            logger.warning("provider_type_unsupported", provider_id=entry.id, provider_type=entry.type)
        try:
            out.append(_resolve_entry(entry))
        except MissingSecretError as e:
            logger.warning("provider_skipped_missing_secret", provider_id=entry.id, missing=e.names)
    return out


def active_notifications(config: MonitoringConfig) -> list[SystemNotification]:
    """Active notices, newest first."""
    active = [n for n in config.notifications if n.is_active]
    return sorted(active, key=lambda n: n.created_at, reverse=True)


def check_settings(config: MonitoringConfig) -> CheckSettings:
    return CheckSettings(
        timeout_seconds=config.check_timeout_seconds,
        degraded_threshold_ms=config.degraded_threshold_ms,
        ping_timeout_seconds=config.ping_timeout_seconds,
    )


def get_config() -> MonitoringConfig:
    """Get a freshly loaded configuration instance."""
    return load_config()
