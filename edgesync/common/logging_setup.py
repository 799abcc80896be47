"""
Structured Logging Setup

Every EdgeSync module logs through `get_service_logger(name)`, which
returns an adapter over a dedicated "edgesync.<name>" logger. Output is
one JSON object per line on stdout by default; set
EDGESYNC_LOG_FORMAT=text for human-readable lines during development.

Structured fields go in `extra={...}` and end up as top-level JSON keys.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

ENV_LOG_LEVEL = "EDGESYNC_LOG_LEVEL"
ENV_LOG_FORMAT = "EDGESYNC_LOG_FORMAT"
LOGGER_PREFIX = "edgesync"

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord carries; anything else came from `extra`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "service", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, extras flattened to top-level keys"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # datetimes and enums in extras
        return json.dumps(entry, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Adds the adapter's context (at least `service`) to every record"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _build_handler(level: int, json_format: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the "edgesync.<service_name>" logger.

    Args:
        service_name: Dotted component name, e.g. "config.orchestrator"
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines when True, plain text otherwise

    Returns:
        The configured logger (handlers replaced, not propagating to root)
    """
    level = _level(log_level)

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{service_name}")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(_build_handler(level, json_format))
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """Logger adapter for one component, configured from the environment."""
    logger = setup_logging(
        service_name,
        os.environ.get(ENV_LOG_LEVEL, "INFO"),
        os.environ.get(ENV_LOG_FORMAT, "json").lower() == "json",
    )
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_global_level(log_level: str) -> None:
    """Change the level of every EdgeSync logger already created (--verbose)."""
    level = _level(log_level)
    for name, logger in logging.root.manager.loggerDict.items():
        if not name.startswith(f"{LOGGER_PREFIX}.") or not isinstance(logger, logging.Logger):
            continue
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)


def log_sync_result(logger: logging.LoggerAdapter, result) -> None:
    """Log one entity reconciliation outcome (a SyncResult)."""
    fields = {
        "entity": result.entity,
        "inserted": result.inserted,
        "updated": result.updated,
        "deleted": result.deleted,
        "skipped": result.skipped,
    }
    if result.success:
        logger.info(
            f"{result.entity} sync completed: inserted={result.inserted}, "
            f"updated={result.updated}, deleted={result.deleted}, skipped={result.skipped}",
            extra=fields,
        )
    else:
        logger.error(f"{result.entity} sync failed: {result.error}", extra=fields)
