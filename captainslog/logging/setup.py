"""
Centralized logging configuration for the Captain's Log proxy.

Provides:
- Unified logging for all proxy components
- Structured JSON output for log files
- Service tagging for filtering
- Optional log rotation when a log directory is configured
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "service",
        "message",
        "asctime",
    }
)


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "main"),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(_extra_fields(record))
        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Console formatter: fixed columns, extra fields appended as key=value."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(service)-10s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "service"):
            record.service = "main"
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in sorted(extras.items()))
        return line


class ServiceFilter(logging.Filter):
    """Filter that tags log records with a service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


_logging_configured = False
_loggers: Dict[str, logging.Logger] = {}


def setup_logging(
    config: Optional[Dict[str, Any]] = None,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Initialize logging for all proxy components.

    Args:
        config: Logging configuration dict with keys:
            - level: Log level (default: INFO)
            - directory: Log directory path (default: none, console only)
            - max_size_mb: Max log file size before rotation (default: 10)
            - backup_count: Number of backup files to keep (default: 5)
            - structured: Use JSON format for the file (default: True)
            - console_output: Also log to console (default: True)
        log_dir: Override log directory

    Returns:
        Root logger instance
    """
    global _logging_configured

    root_logger = logging.getLogger()
    if _logging_configured:
        return root_logger

    default_config: Dict[str, Any] = {
        "level": "INFO",
        "directory": None,
        "max_size_mb": 10,
        "backup_count": 5,
        "structured": True,
        "console_output": True,
    }

    resolved_config = default_config.copy()
    if config:
        resolved_config.update(config.get("logging", config))

    level_name = str(resolved_config.get("level") or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)

    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    directory = log_dir or resolved_config.get("directory")
    log_path: Optional[Path] = None
    if directory:
        log_directory = Path(directory).expanduser()
        log_directory.mkdir(parents=True, exist_ok=True)
        log_path = log_directory / "captainslog.log"

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=int(resolved_config.get("max_size_mb", 10)) * 1_000_000,
            backupCount=int(resolved_config.get("backup_count", 5)),
            encoding="utf-8",
        )
        if resolved_config.get("structured", True):
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(HumanReadableFormatter())
        file_handler.addFilter(ServiceFilter("main"))
        root_logger.addHandler(file_handler)

    if resolved_config.get("console_output", True) or log_path is None:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(HumanReadableFormatter())
        console_handler.addFilter(ServiceFilter("main"))
        root_logger.addHandler(console_handler)

    logging.captureWarnings(True)

    _logging_configured = True
    root_logger.info(
        "Logging initialized",
        extra={"log_path": str(log_path) if log_path else "stdout", "level": level_name},
    )

    return root_logger


def reset_logging() -> None:
    """Allow ``setup_logging`` to run again (used by tests and app reloads)."""
    global _logging_configured
    _logging_configured = False


def get_logger(service_name: str) -> logging.Logger:
    """
    Get a logger for a specific service.

    The service name is added to all log records for filtering.

    Args:
        service_name: Name of the service (e.g., "api", "proxy", "settings")

    Returns:
        Logger instance with service filter
    """
    if service_name in _loggers:
        return _loggers[service_name]

    logger = logging.getLogger(f"captainslog.{service_name}")
    logger.addFilter(ServiceFilter(service_name))
    _loggers[service_name] = logger

    return logger
