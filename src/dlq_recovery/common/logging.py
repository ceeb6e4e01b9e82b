"""
Logging utilities for dlq_recovery.

Provides structured logging helpers, a contextvars-based log context,
JSON/console formatters and the one-shot CLI logging setup.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Noisy loggers to suppress
NOISY_LOGGERS = [
    "aiokafka",
    "kafka",
]

_command: ContextVar[Optional[str]] = ContextVar("command", default=None)
_topic: ContextVar[Optional[str]] = ContextVar("topic", default=None)


def set_log_context(command: Optional[str] = None, topic: Optional[str] = None) -> None:
    """Set context fields injected into every log record."""
    if command is not None:
        _command.set(command)
    if topic is not None:
        _topic.set(topic)


def get_log_context() -> Dict[str, Optional[str]]:
    return {"command": _command.get(), "topic": _topic.get()}


def clear_log_context() -> None:
    _command.set(None)
    _topic.set(None)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (partition, offset, message_id, etc.)

    Example:
        log_with_context(
            logger, logging.INFO, "Match found",
            topic=position.topic,
            partition=position.partition,
            offset=position.offset,
        )
    """
    logger.log(level, msg, extra=kwargs)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from RecoveryError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        error_category = cat.value if hasattr(cat, "value") else str(cat)
        kwargs["error_category"] = error_category

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=kwargs)
    else:
        logger.log(level, msg, extra=kwargs)


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        "topic",
        "partition",
        "offset",
        "message_id",
        "correlation_id",
        "destination_topic",
        "action",
        "state",
        "scanned",
        "skipped",
        "outcome",
        "duration_ms",
        "error_category",
        "error_message",
        "group_id",
        "bootstrap_servers",
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        ctx = get_log_context()
        if ctx["command"]:
            log_entry["command"] = ctx["command"]

        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]
        if ctx["command"]:
            parts.append(f"[{ctx['command']}]")

        return f"{' - '.join(parts)} - {record.getMessage()}"


def get_log_file_path(log_dir: Path, command: Optional[str] = None) -> Path:
    """
    Build log file path with date subfolder structure.

    Structure: {log_dir}/dlq/{YYYY-MM-DD}/dlq_{command}_{YYYYMMDD}_p{pid}.log
    """
    date_folder = datetime.now().strftime("%Y-%m-%d")
    date_str = datetime.now().strftime("%Y%m%d")
    base_name = f"dlq_{command}_{date_str}" if command else f"dlq_{date_str}"
    return log_dir / "dlq" / date_folder / f"{base_name}_p{os.getpid()}.log"


def setup_logging(
    command: Optional[str] = None,
    log_dir: Optional[Path] = None,
    console_level: int = logging.WARNING,
    file_level: int = logging.DEBUG,
    log_to_file: bool = True,
    suppress_noisy: bool = True,
) -> logging.Logger:
    """
    Configure logging for one CLI invocation.

    Console diagnostics go to stderr so stdout carries only operator output
    (tables, previews). The rotating JSON file log keeps the audit trail of
    every recovery step.

    Args:
        command: CLI command name, added to the log context and file name
        log_dir: Directory for log files (default: ./logs)
        console_level: Console handler level (default: WARNING)
        file_level: File handler level (default: DEBUG)
        log_to_file: Write the JSON audit log file
        suppress_noisy: Quiet down the Kafka client loggers

    Returns:
        Configured package logger
    """
    if command:
        set_log_context(command=command)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    log_file = None
    if log_to_file:
        log_file = get_log_file_path(log_dir or DEFAULT_LOG_DIR, command)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=DEFAULT_MAX_BYTES,
            backupCount=DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger("dlq_recovery")
    logger.debug(f"Logging initialized: file={log_file}")
    return logger


__all__ = [
    "ConsoleFormatter",
    "JSONFormatter",
    "clear_log_context",
    "get_log_context",
    "log_exception",
    "log_with_context",
    "set_log_context",
    "setup_logging",
]
