"""
Structured logging for the gateway.

Keyword arguments passed to any logger call become structured fields:

    logger.info("Client joined topic", topic="room:42", client_id="abc")

Fields whose value is None are dropped. Production renders one JSON object
per line; development renders a coloured single line with the fields
appended.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from shared.config.settings import Settings, settings as default_settings

# Attribute on LogRecord carrying the structured fields
FIELDS_ATTR = "fields"


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = getattr(record, FIELDS_ATTR, None) or {}
    return {k: v for k, v in fields.items() if v is not None}


def _record_correlation_id(record: logging.LogRecord) -> str | None:
    correlation_id = getattr(record, "correlation_id", None)
    if correlation_id and correlation_id != "-":
        return correlation_id
    return None


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def __init__(self, include_source: bool = False):
        super().__init__()
        self._include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = _record_correlation_id(record)
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        fields = _record_fields(record)
        if fields:
            log_data["data"] = fields

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self._include_source:
            log_data["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Coloured single-line output for a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]

        # Connection ids are uuid hex; 8 chars are enough to follow one socket
        correlation_id = _record_correlation_id(record)
        prefix = f"{self.DIM}[{correlation_id[:8]}]{self.RESET} " if correlation_id else ""

        line = (
            f"{color}{timestamp} {record.levelname:8}{self.RESET} "
            f"{prefix}{record.name}: {record.getMessage()}"
        )

        fields = _record_fields(record)
        if fields:
            line += f" {self.DIM}" + " ".join(f"{k}={v}" for k, v in fields.items()) + self.RESET

        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


class StructuredLogger(logging.Logger):
    """
    Logger accepting arbitrary keyword arguments as structured fields.

    Every level method of logging.Logger funnels into `_log`, so overriding
    it alone covers debug() through critical(), exception() and log().
    """

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        extra = dict(extra) if extra else {}
        extra[FIELDS_ATTR] = fields
        # One extra frame (this one) sits between the caller and Logger._log
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(config: Settings | None = None) -> None:
    """
    Configure the root logger. Call once at application startup.

    Args:
        config: Settings providing level and format; the process settings
            by default.
    """
    from shared.infrastructure.correlation import CorrelationIdFilter

    config = config or default_settings
    level = logging.getLevelName(config.effective_log_level)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CorrelationIdFilter())
    if config.use_json_logs:
        handler.setFormatter(StructuredFormatter(include_source=config.debug))
    else:
        handler.setFormatter(DevelopmentFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    Usage:
        logger = get_logger(__name__)
        logger.info("Client connected", client_id="abc", connection_id="f00d")
        logger.error("Cascade failed", client_id="abc", exc_info=True)
    """
    return logging.getLogger(name)  # type: ignore[return-value]


gateway_logger = get_logger("topic_gateway")

# Connection audit trail, routed separately from operational logs
audit_logger = get_logger("topic_gateway.audit")


def audit_ws_connection(
    event_type: str,
    client_id: str | None = None,
    connection_id: str | None = None,
    reason: str | None = None,
    **extra: Any,
) -> None:
    """
    Record a connection lifecycle event on the audit logger.

    Args:
        event_type: OPEN, CLOSE, REPLACED, REJECTED or CASCADE
        client_id: Client identity supplied at connection time
        connection_id: Transport-level connection identifier
        reason: Why the event happened (rejections, shutdown)
        **extra: Additional fields
    """
    audit_logger.info(
        f"WS_AUDIT: {event_type}",
        event_type=event_type,
        client_id=client_id,
        connection_id=connection_id,
        reason=reason,
        **extra,
    )
