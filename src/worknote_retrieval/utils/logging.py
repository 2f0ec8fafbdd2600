"""Logging setup for the work note retrieval service.

Everything logs under the ``worknote_retrieval`` namespace. Production emits
one JSON object per line; development emits a single readable line. Both
carry the current request id and any ``extra=`` fields (``work_id``,
``reason``, ...) passed at the call site.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Optional

from worknote_retrieval.config import get_settings

ROOT_LOGGER_NAME = "worknote_retrieval"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# LogRecord attributes that are not call-site extras
_STANDARD_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "request_id", "taskName"}

_NOISY_LOGGERS = ("uvicorn", "uvicorn.access", "httpx", "httpcore", "openai", "qdrant_client")

_configured = False


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
    }


class RequestIdFilter(logging.Filter):
    """Stamp each record with the request id of the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable single-line output; extras are appended as key=value."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s %(name)s [%(request_id)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extra_fields(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


def setup_logging() -> logging.Logger:
    """Configure the package logger once; later calls return it unchanged."""
    global _configured

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if _configured:
        return logger

    settings = get_settings()
    level = getattr(logging, settings.log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(JSONFormatter() if settings.is_production else ConsoleFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    logger.debug(
        "Logging configured",
        extra={"level": settings.log_level, "environment": settings.environment.value},
    )
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Logger for a component, e.g. ``get_logger("qdrant_service")``."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
    return logging.getLogger(ROOT_LOGGER_NAME)


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def log_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
    """
    Log an exception with its traceback and structured context.

    Service exceptions also contribute their ``code`` and, for pipeline
    failures, the classified ``reason``.
    """
    fields: Dict[str, Any] = {"error_type": type(error).__name__}
    code = getattr(error, "code", None)
    if code:
        fields["error_code"] = code
    reason = getattr(error, "reason", None)
    if reason is not None:
        fields["reason"] = getattr(reason, "value", reason)
    if context:
        fields.update(context)

    get_logger("error").error(f"{type(error).__name__}: {error}", exc_info=error, extra=fields)
