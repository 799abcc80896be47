"""
Common Utilities

Shared modules used across all services:
- config.py - Settings dataclasses and cron/env resolution
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- models.py - Domain rows and sync results
- scheduler.py - Non-reentrant interval and cron loops
- timestamp.py - Timestamp parsing
"""

from .config import Settings, load_settings, resolve_cron, resolve_setting
from .exceptions import (
    EdgeSyncError,
    ConfigError,
    RemoteUnavailableError,
    BatchInsertError,
    CacheReloadError,
    UploadError,
)
from .logging_setup import setup_logging, get_service_logger

__all__ = [
    # Config
    "Settings",
    "load_settings",
    "resolve_cron",
    "resolve_setting",
    # Exceptions
    "EdgeSyncError",
    "ConfigError",
    "RemoteUnavailableError",
    "BatchInsertError",
    "CacheReloadError",
    "UploadError",
    # Logging
    "setup_logging",
    "get_service_logger",
]
