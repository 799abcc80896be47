"""
Configuration Dataclasses

Type-safe settings for the EdgeSync node, loaded from a YAML file with
environment-variable fallbacks. All cron expressions go through
resolve_cron(), the one place that decides explicit > env > default.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from croniter import croniter

from .exceptions import ConfigError

# Centralized defaults
DEFAULT_CONFIG_SYNC_CRON = "0 * * * *"  # hourly, at minute 0
DEFAULT_UPLOAD_CRON = "*/5 * * * *"  # every 5 minutes
DEFAULT_COLLECTION_INTERVAL_S = 60.0
DEFAULT_BATCH_SIZE = 100
DEFAULT_INSERT_ATTEMPTS = 3
DEFAULT_INSERT_BACKOFF_S = (1.0, 2.0)
DEFAULT_UPLOAD_BATCH_SIZE = 100
DEFAULT_UPLOAD_MAX_ROWS = 1000
DEFAULT_UPLOAD_TIMEOUT_S = 30.0
DEFAULT_MAX_READING_AGE_DAYS = 365
DEFAULT_MAX_PENDING_READINGS = 10000
DEFAULT_SYNC_LOG_RETENTION_DAYS = 30
DEFAULT_LOCAL_DB_URL = "sqlite+aiosqlite:////var/lib/edgesync/edgesync.db"
DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8090

# Environment variables
ENV_CONFIG_PATH = "EDGESYNC_CONFIG"
ENV_CONFIG_SYNC_CRON = "EDGESYNC_CONFIG_SYNC_CRON"
ENV_UPLOAD_CRON = "EDGESYNC_UPLOAD_CRON"
ENV_LOCAL_DB_URL = "EDGESYNC_LOCAL_DB_URL"
ENV_REMOTE_DB_URL = "EDGESYNC_REMOTE_DB_URL"
ENV_API_URL = "EDGESYNC_API_URL"
ENV_TENANT_ID = "EDGESYNC_TENANT_ID"


def resolve_setting(explicit: Any, env_var: str | None, default: Any) -> Any:
    """
    Resolve one setting with precedence explicit > environment > default.

    Empty strings count as unset at every level.
    """
    if explicit not in (None, ""):
        return explicit
    if env_var:
        value = os.environ.get(env_var)
        if value not in (None, ""):
            return value
    return default


def resolve_cron(explicit: str | None, env_var: str, default: str) -> str:
    """
    Resolve a cron expression for a scheduler.

    Consulted by every cron-driven loop at startup and whenever settings
    change.

    Raises:
        ConfigError: If the resolved expression is not a valid cron
    """
    expression = str(resolve_setting(explicit, env_var, default)).strip()
    if not croniter.is_valid(expression):
        raise ConfigError(f"Invalid cron expression '{expression}' (from {env_var} chain)")
    return expression


@dataclass
class LocalSettings:
    """Local edge database"""
    url: str = DEFAULT_LOCAL_DB_URL
    sync_log_retention_days: float | None = DEFAULT_SYNC_LOG_RETENTION_DAYS
    echo: bool = False


@dataclass
class RemoteSettings:
    """Remote master database and upload API"""
    db_url: str = ""
    api_url: str = ""
    upload_timeout_s: float = DEFAULT_UPLOAD_TIMEOUT_S


@dataclass
class ScheduleSettings:
    """Raw (unresolved) schedule values from the settings file"""
    config_sync_cron: str | None = None
    upload_cron: str | None = None
    collection_interval_s: float = DEFAULT_COLLECTION_INTERVAL_S


@dataclass
class CollectionSettings:
    """Accumulator, validator and batch writer tuning"""
    batch_size: int = DEFAULT_BATCH_SIZE
    insert_attempts: int = DEFAULT_INSERT_ATTEMPTS
    insert_backoff_s: tuple[float, ...] = DEFAULT_INSERT_BACKOFF_S
    max_reading_age_days: float | None = DEFAULT_MAX_READING_AGE_DAYS
    future_tolerance_s: float = 0.0
    max_pending_readings: int = DEFAULT_MAX_PENDING_READINGS


@dataclass
class UploadSettings:
    """Upload scheduler tuning"""
    batch_size: int = DEFAULT_UPLOAD_BATCH_SIZE
    max_rows_per_tick: int = DEFAULT_UPLOAD_MAX_ROWS


@dataclass
class Settings:
    """Complete EdgeSync node settings"""
    tenant_id: int | None = None
    local: LocalSettings = field(default_factory=LocalSettings)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    collection: CollectionSettings = field(default_factory=CollectionSettings)
    upload: UploadSettings = field(default_factory=UploadSettings)
    http_host: str = DEFAULT_HTTP_HOST
    http_port: int = DEFAULT_HTTP_PORT

    @property
    def config_sync_cron(self) -> str:
        return resolve_cron(
            self.schedule.config_sync_cron, ENV_CONFIG_SYNC_CRON, DEFAULT_CONFIG_SYNC_CRON
        )

    @property
    def upload_cron(self) -> str:
        return resolve_cron(self.schedule.upload_cron, ENV_UPLOAD_CRON, DEFAULT_UPLOAD_CRON)

    def validate(self) -> None:
        """Fail fast on settings the node cannot run with."""
        # Resolving the crons raises ConfigError on bad expressions
        _ = self.config_sync_cron, self.upload_cron

        if not self.remote.db_url:
            raise ConfigError("remote.db_url is required (or set EDGESYNC_REMOTE_DB_URL)")
        if self.collection.batch_size < 1:
            raise ConfigError("collection.batch_size must be >= 1")
        if self.collection.insert_attempts < 1:
            raise ConfigError("collection.insert_attempts must be >= 1")
        if self.collection.max_pending_readings < 1:
            raise ConfigError("collection.max_pending_readings must be >= 1")
        if self.upload.batch_size < 1:
            raise ConfigError("upload.batch_size must be >= 1")
        if self.schedule.collection_interval_s <= 0:
            raise ConfigError("schedule.collection_interval_s must be > 0")

    def to_dict(self) -> dict:
        """Resolved settings for --dry-run and /status (secrets omitted)."""
        return {
            "tenant_id": self.tenant_id,
            "local_db_url": self.local.url,
            "remote_db_configured": bool(self.remote.db_url),
            "api_url": self.remote.api_url,
            "config_sync_cron": self.config_sync_cron,
            "upload_cron": self.upload_cron,
            "collection_interval_s": self.schedule.collection_interval_s,
            "batch_size": self.collection.batch_size,
            "insert_attempts": self.collection.insert_attempts,
            "insert_backoff_s": list(self.collection.insert_backoff_s),
            "max_pending_readings": self.collection.max_pending_readings,
            "sync_log_retention_days": self.local.sync_log_retention_days,
            "upload_batch_size": self.upload.batch_size,
            "upload_max_rows_per_tick": self.upload.max_rows_per_tick,
            "http": f"{self.http_host}:{self.http_port}",
        }


def find_config_path(explicit: str | None = None) -> Path | None:
    """Locate the settings file: explicit, EDGESYNC_CONFIG, /etc, cwd."""
    candidates = [
        explicit,
        os.environ.get(ENV_CONFIG_PATH),
        "/etc/edgesync/config.yaml",
        "config.yaml",
    ]
    for candidate in candidates:
        if candidate and Path(candidate).exists():
            return Path(candidate)
    if explicit:
        raise ConfigError(f"Config file not found: {explicit}")
    return None


def load_settings(config_path: str | None = None) -> Settings:
    """
    Load settings from YAML, falling back to environment variables.

    Args:
        config_path: Explicit path; otherwise the usual locations are searched

    Returns:
        Settings instance (not yet validated)
    """
    path = find_config_path(config_path)
    data: dict = {}
    if path:
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing {path}: {e}")

    return settings_from_dict(data)


def settings_from_dict(data: dict) -> Settings:
    """Build Settings from a parsed YAML mapping."""
    local = data.get("local", {}) or {}
    remote = data.get("remote", {}) or {}
    schedule = data.get("schedule", {}) or {}
    collection = data.get("collection", {}) or {}
    upload = data.get("upload", {}) or {}
    http = data.get("http", {}) or {}

    tenant_id = resolve_setting(data.get("tenant_id"), ENV_TENANT_ID, None)

    try:
        return Settings(
            tenant_id=int(tenant_id) if tenant_id is not None else None,
            local=LocalSettings(
                url=resolve_setting(local.get("url"), ENV_LOCAL_DB_URL, DEFAULT_LOCAL_DB_URL),
                echo=bool(local.get("echo", False)),
                sync_log_retention_days=local.get(
                    "sync_log_retention_days", DEFAULT_SYNC_LOG_RETENTION_DAYS
                ),
            ),
            remote=RemoteSettings(
                db_url=resolve_setting(remote.get("db_url"), ENV_REMOTE_DB_URL, ""),
                api_url=resolve_setting(remote.get("api_url"), ENV_API_URL, "").rstrip("/"),
                upload_timeout_s=float(
                    remote.get("upload_timeout_s", DEFAULT_UPLOAD_TIMEOUT_S)
                ),
            ),
            schedule=ScheduleSettings(
                config_sync_cron=schedule.get("config_sync_cron"),
                upload_cron=schedule.get("upload_cron"),
                collection_interval_s=float(
                    schedule.get("collection_interval_s", DEFAULT_COLLECTION_INTERVAL_S)
                ),
            ),
            collection=CollectionSettings(
                batch_size=int(collection.get("batch_size", DEFAULT_BATCH_SIZE)),
                insert_attempts=int(collection.get("insert_attempts", DEFAULT_INSERT_ATTEMPTS)),
                insert_backoff_s=tuple(
                    float(s) for s in collection.get("insert_backoff_s", DEFAULT_INSERT_BACKOFF_S)
                ),
                max_reading_age_days=collection.get(
                    "max_reading_age_days", DEFAULT_MAX_READING_AGE_DAYS
                ),
                future_tolerance_s=float(collection.get("future_tolerance_s", 0.0)),
                max_pending_readings=int(
                    collection.get("max_pending_readings", DEFAULT_MAX_PENDING_READINGS)
                ),
            ),
            upload=UploadSettings(
                batch_size=int(upload.get("batch_size", DEFAULT_UPLOAD_BATCH_SIZE)),
                max_rows_per_tick=int(upload.get("max_rows_per_tick", DEFAULT_UPLOAD_MAX_ROWS)),
            ),
            http_host=http.get("host", DEFAULT_HTTP_HOST),
            http_port=int(http.get("port", DEFAULT_HTTP_PORT)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid setting value: {e}")
