"""
Logging setup for processes embedding the session mirror.

Two output styles are supported:
- bracketed text lines for terminals and plain log files
- single-line JSON objects for log collectors that expect structured input
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# LogRecord attributes that are never treated as extra context
_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class BracketFormatter(logging.Formatter):
    """
    Render records as ``[timestamp] [LEVEL] [module:line] message key=value``.

    Extra context passed via ``extra=`` is appended in sorted key order.
    """

    def __init__(self, timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT):
        super().__init__()
        self.timestamp_format = timestamp_format

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime(self.timestamp_format)
        line = (
            f"[{timestamp}] [{record.levelname}] "
            f"[{record.module}:{record.lineno}] {record.getMessage()}"
        )

        extra = _extra_fields(record)
        for key in sorted(extra):
            line += f" {key}={extra[key]}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs as single-line JSON objects with consistent fields:
    - timestamp: ISO 8601 format in UTC
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - caller: module:line of the call site
    - message: Log message
    - Additional context fields from extra dict
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "caller": f"{record.module}:{record.lineno}",
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in _extra_fields(record).items():
            # Ensure value is JSON serializable
            try:
                json.dumps(value)
                log_obj[key] = value
            except (TypeError, ValueError):
                log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


def parse_level(level: str | int | None) -> int:
    """Map a level name such as ``"debug"`` to its logging constant.

    Unknown names fall back to INFO.
    """
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(
    level: str | int = "info",
    output: str | None = None,
    json_format: bool = False,
    logger_name: str | None = None,
) -> logging.Logger:
    """
    Configure logging to stdout and, optionally, an append-mode log file.

    Args:
        level: Level name or constant (default: info)
        output: Log file path; ``None``, ``""`` and ``"stdout"`` mean stdout only
        json_format: Emit JSON lines instead of bracketed text
        logger_name: Specific logger to configure (default: root logger)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = StructuredJsonFormatter() if json_format else BracketFormatter()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if output and output != "stdout":
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(parse_level(level))
    return logger


def get_mirror_logger(name: str) -> logging.Logger:
    """
    Get a logger for mirror components with consistent naming.

    Args:
        name: Component name (e.g., 'store', 'manager')

    Returns:
        Logger instance with name 'session_mirror.{name}'
    """
    return logging.getLogger(f"session_mirror.{name}")
