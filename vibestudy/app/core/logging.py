"""Logging setup for the sync service.

Standard library logging configured through ``dictConfig``. Three output
formats are selectable with ``LOG_FORMAT``: ``text`` (plain lines),
``structured`` (plain lines with the sync context appended) and ``json``
(one JSON object per record, for log shippers).

Sync and rate limit code passes its context through ``extra=``; the names
below are promoted to top-level JSON keys, anything else lands under
``"extra"``.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from vibestudy.app.core.config import settings

APP_LOGGER = "vibestudy"

# Context attributes a record may carry
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "bucket_id",
    "day",
    "field",
    "path",
    "method",
    "status_code",
    "duration_ms",
)

# Attributes every LogRecord has, plus the keys the JSON layout uses itself
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName", "timestamp", "logger", "level", "source"}


class JSONFormatter(logging.Formatter):
    """Renders a record as a single JSON line.

    Layout::

        {"timestamp", "level", "logger", "message",
         "source": {"file", "line", "function"},
         <context fields that are set>,
         "extra": {<other extra= keys>},
         "exception": [<formatted traceback lines>]}
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        payload: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }
        payload.update(self._context(record))

        extra = self._extra(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)

    @staticmethod
    def _context(record: logging.LogRecord) -> Dict[str, Any]:
        context = {}
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None and value != "-":
                context[name] = value
        return context

    @staticmethod
    def _extra(record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS
        }


class ContextFilter(logging.Filter):
    """Gives every record the context attributes, None when unset.

    The ``structured`` text format interpolates them, so they must exist.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


def _formatters(log_format: str) -> Dict[str, Any]:
    formatters: Dict[str, Any] = {
        "standard": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
        "structured": {
            "format": (
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                " - request_id=%(request_id)s user_id=%(user_id)s"
                " day=%(day)s field=%(field)s"
            )
        },
    }
    if log_format == "json":
        formatters["json"] = {"()": f"{__name__}.JSONFormatter"}
    return formatters


def get_logging_config() -> Dict[str, Any]:
    """Build the ``dictConfig`` mapping from settings.

    App records go to stdout, and ERROR and above also to stderr.
    """
    log_format = str(getattr(settings, "log_format", "text")).lower()
    log_level = str(getattr(settings, "log_level", "INFO")).upper()
    formatter = log_format if log_format in ("json", "structured") else "standard"

    def stream_handler(stream: Any, level: str) -> Dict[str, Any]:
        return {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "stream": stream,
            "filters": ["context"],
        }

    def console_logger(*handlers: str) -> Dict[str, Any]:
        return {"level": log_level, "handlers": list(handlers), "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": _formatters(log_format),
        "filters": {"context": {"()": f"{__name__}.ContextFilter"}},
        "handlers": {
            "console": stream_handler(sys.stdout, log_level),
            "error_console": stream_handler(sys.stderr, "ERROR"),
        },
        "loggers": {
            APP_LOGGER: console_logger("console", "error_console"),
            "uvicorn": console_logger("console"),
            "uvicorn.access": console_logger("console"),
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Apply the logging config and quiet chatty libraries."""
    logging.config.dictConfig(get_logging_config())

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str = APP_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    day: Optional[int] = None,
    field: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """``extra=`` mapping for a sync log line, without the unset keys.

    Example:
        >>> logger.info(
        ...     "Progress write applied",
        ...     extra=get_log_context(user_id="u-1", day=3, field="code")
        ... )
    """
    context: Dict[str, Any] = {
        "request_id": request_id,
        "user_id": user_id,
        "day": day,
        "field": field,
        **extra,
    }
    return {key: value for key, value in context.items() if value is not None}
