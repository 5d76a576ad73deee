"""
Structured logging configuration.

- Development: human-readable colored format
- Production: JSON format (log aggregator compatible)
- LOG_LEVEL / LOG_FORMAT env variables override the defaults
- Every record emitted inside a request carries the request id and the
  calling principal's e-mail (from the gateway identity headers)

Usage:
    from app.middleware.logging_config import configure_logging
    configure_logging(app)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Context keys passed through ``extra=`` by services and middleware
_EXTRA_KEYS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "request_id",
    "actor_email",
    "submission_id",
    "lifecycle_status",
    "role_context",
    "approval_request_id",
    "change_request_id",
    "card_id",
    "store_key",
    "persistence_code",
)


class RequestContextFilter(logging.Filter):
    """Stamp request id and caller e-mail onto records logged during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_request_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = getattr(g, "request_id", None)
        if getattr(record, "actor_email", None) is None:
            record.actor_email = (request.headers.get("X-User-Email") or "").strip().lower() or None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update({
            key: getattr(record, key) for key in _EXTRA_KEYS if getattr(record, key, None) is not None
        })
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for a developer terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        parts = [
            f"{color}{datetime.now():%H:%M:%S} {record.levelname:<8}{self.RESET}",
            f"{record.name}: {record.getMessage()}",
        ]
        for key in ("submission_id", "change_request_id", "actor_email"):
            value = getattr(record, key, None)
            if value:
                parts.append(f"[{key}={value}]")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"[{duration:.0f}ms]")
        line = " ".join(parts)
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Set up structured logging for the Flask app.

    LOG_LEVEL defaults to DEBUG in dev and INFO in prod.  LOG_FORMAT
    (``json`` | ``readable``) overrides the per-environment formatter.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    fmt = os.getenv("LOG_FORMAT", "json" if is_prod else "readable").lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    # Single root handler; clearing avoids duplicates when tests build apps repeatedly
    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, fmt)
