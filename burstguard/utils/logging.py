"""
Structured logging utilities with JSON formatting and context injection.

This module provides structured logging capabilities with:
- JSON formatted log output for machine-readable logs
- Context injection (fingerprint, source_service, error_type) via LoggerAdapter
- Standardized log fields for decisions, escalations and degradations
- Integration with Python's standard logging module
"""

import logging
import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, MutableMapping
from logging import LogRecord


# Fields promoted to the top level of each JSON log line
PROMOTED_FIELDS = ("fingerprint", "source_service", "error_type", "verdict")

_RESERVED_FIELDS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with standard fields:
    - timestamp: ISO 8601 formatted timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - fingerprint, source_service, error_type, verdict: when present
    - context: Any other extra fields
    - error: Error details (when exc_info is attached)
    """

    def format(self, record: LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON formatted log string
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in PROMOTED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_FIELDS and key not in PROMOTED_FIELDS:
                extra_fields[key] = value

        if extra_fields:
            log_data["context"] = extra_fields

        if record.exc_info:
            log_data["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stack_trace": "".join(traceback.format_exception(*record.exc_info))
            }

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName
        }

        return json.dumps(log_data, default=str)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that injects context fields into all log records.

    Context set on the adapter (e.g. fingerprint) is merged into every
    record's extra fields.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """
        Process log message and inject context.

        Args:
            msg: Log message
            kwargs: Log kwargs

        Returns:
            Tuple of (message, kwargs) with context injected
        """
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Sets up:
    - JSON formatter for all handlers
    - Console handler with appropriate log level
    - Root logger configuration

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a context-aware logger for a module.

    Args:
        name: Logger name (typically __name__)
        **context: Initial context fields (fingerprint, source_service, etc.)

    Returns:
        Context logger adapter

    Example:
        logger = get_logger(__name__, source_service="billing")
        logger.info("Evaluating event")  # Will include source_service
    """
    base_logger = logging.getLogger(name)
    return ContextLoggerAdapter(base_logger, context)


def log_decision(
    logger: logging.LoggerAdapter,
    fingerprint: str,
    source_service: str,
    error_type: str,
    verdict: str,
    occurrence_count: Optional[int] = None,
    reason: Optional[str] = None
) -> None:
    """
    Log the verdict for one occurrence.

    Mutes are logged at DEBUG to keep suppressed bursts out of the main
    stream; allows at INFO.
    """
    extra: Dict[str, Any] = {
        "fingerprint": fingerprint,
        "source_service": source_service,
        "error_type": error_type,
        "verdict": verdict,
    }
    if occurrence_count is not None:
        extra["occurrence_count"] = occurrence_count
    if reason:
        extra["reason"] = reason

    level = logging.DEBUG if verdict == "mute" else logging.INFO
    logger.log(level, f"Decision: {verdict} for {source_service}/{error_type}", extra=extra)


def log_escalation(
    logger: logging.LoggerAdapter,
    fingerprint: str,
    source_service: str,
    error_type: str,
    trigger: str,
    occurrence_count: int,
    delivered: Optional[bool] = None
) -> None:
    """
    Log a committed escalation and, once known, its delivery outcome.
    """
    extra: Dict[str, Any] = {
        "fingerprint": fingerprint,
        "source_service": source_service,
        "error_type": error_type,
        "trigger": trigger,
        "occurrence_count": occurrence_count,
    }
    if delivered is not None:
        extra["delivered"] = delivered

    if delivered is False:
        logger.error(f"Escalation not delivered for {source_service}/{error_type}", extra=extra)
    else:
        logger.info(f"Escalation committed for {source_service}/{error_type}", extra=extra)


def log_degradation(
    logger: logging.LoggerAdapter,
    operation: str,
    error: Exception,
    fallback: str,
    **context: Any
) -> None:
    """
    Log a degradation event: the ledger failed and a fallback was applied.

    Args:
        logger: Logger to use
        operation: Ledger operation that failed (e.g. 'observe')
        error: Exception raised by the ledger
        fallback: What was done instead (e.g. 'allow')
        **context: Additional context fields
    """
    extra = {
        "degraded": True,
        "operation": operation,
        "fallback": fallback,
        "error_type_name": type(error).__name__,
        "error": str(error),
    }
    extra.update(context)
    logger.warning(f"Ledger {operation} failed, falling back to {fallback}", extra=extra)


def log_error_with_context(
    logger: logging.LoggerAdapter,
    message: str,
    error: Exception,
    **context: Any
) -> None:
    """
    Log error with full stack trace and context.

    Args:
        logger: Logger to use
        message: Error message
        error: Exception object
        **context: Additional context fields
    """
    logger.error(
        message,
        extra=context,
        exc_info=error
    )
