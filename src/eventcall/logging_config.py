"""Structured logging configuration for EventCall.

- JSON structured logging with StructuredFormatter
- Logger hierarchy under the ``eventcall`` namespace
- Environment variable control (EVENTCALL_LOG_LEVEL, EVENTCALL_LOG_FORMAT)
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

HANDLER_NAME = "eventcall"

# Keys redacted from log output. Credentials and CSRF tokens travel through
# the gateway on every call, so they must never reach a log sink.
SENSITIVE_KEYS = {
    "password", "token", "secret", "apikey", "api_key",
    "authorization", "credential", "auth", "key", "bearer",
    "csrf_token", "csrftoken", "x-csrf-token",
}

_STANDARD_FIELDS = {
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
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    Outputs logs in JSON format with:
    - timestamp: UTC ISO 8601 format with 'Z' suffix
    - level: Log level name (INFO, ERROR, etc.)
    - logger: Logger name (eventcall hierarchy)
    - message: Log message
    - context: Extras dict merged from LogRecord attributes

    Sensitive keys (token, secret, authorization, ...) are redacted.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: LogRecord to format

        Returns:
            JSON string with structured log data
        """
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
            for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }

        if extras:
            log_data["context"] = extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for local development.

    Used when EVENTCALL_LOG_FORMAT=text.
    """

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured logging for all eventcall loggers.

    Args:
        level: Optional log level override. If not provided, uses
               EVENTCALL_LOG_LEVEL environment variable (default: INFO).

    Environment Variables:
        EVENTCALL_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        EVENTCALL_LOG_FORMAT: Output format (json, text). Default: json
    """
    if level is None:
        level = os.getenv("EVENTCALL_LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    log_format = os.getenv("EVENTCALL_LOG_FORMAT", "json").lower()

    if log_format == "text":
        formatter = TextFormatter()
    else:
        formatter = StructuredFormatter()

    logger = logging.getLogger("eventcall")
    logger.setLevel(log_level)

    # Only add our handler once; configure_logging runs on every package import
    if not any(h.get_name() == HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
