"""
Logging setup for the operations core.

Every record passes through ``OperationsContextFilter``, which stamps the
request id and calling actor from ``flask.g`` so lock, unlock and status
log lines can be traced back to the user who caused them.

- Production: one JSON object per line
- Development / testing: ``HH:MM:SS LEVEL logger: message [task=7 actor=u-1]``
- Level: ``LOG_LEVEL`` config key or env variable
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

# Entity references a service can attach with ``extra={...}``
ENTITY_FIELDS = ("project_id", "task_id", "unlock_request_id", "event_type")
# Added by the timing middleware on request lines
HTTP_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr")

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic", "flask_limiter")


class OperationsContextFilter(logging.Filter):
    """Copy ``request_id`` / ``actor_id`` from the active request onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        in_request = has_request_context()
        for key in ("request_id", "actor_id"):
            if getattr(record, key, None) is None:
                setattr(record, key, getattr(g, key, None) if in_request else None)
        return True


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "actor_id": getattr(record, "actor_id", None),
        }
        for key in ENTITY_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        http = {key: getattr(record, key) for key in HTTP_FIELDS if getattr(record, key, None) is not None}
        if http:
            entry["http"] = http
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        refs = [
            f"{key.removesuffix('_id')}={getattr(record, key)}"
            for key in ("project_id", "task_id", "unlock_request_id", "actor_id")
            if getattr(record, key, None) is not None
        ]
        if refs:
            # exc text (if any) follows the first line
            head, sep, tail = line.partition("\n")
            line = f"{head} [{' '.join(refs)}]{sep}{tail}"
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger with the context filter."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = (app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL")
                  or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.addFilter(OperationsContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # create_app may run more than once per process (tests)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if is_prod else "text")
