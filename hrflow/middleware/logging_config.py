"""
Structured logging configuration.

- Development: one colored line per record, engine context appended
- Production: one JSON object per record
- Log level: LOG_LEVEL env variable

Engine code logs with ``extra={...}``. Request fields stay top-level in the
JSON output; engine fields (``program_id``, ``process_id``, ``stage_id``,
``trigger``, ``depth``) are grouped under ``engine`` so that automation
halts and configuration errors can be filtered on ``event_type`` alone.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id", "user_id")
ENGINE_FIELDS = ("program_id", "process_id", "stage_id", "trigger", "depth")


def _collect(record: logging.LogRecord, names) -> dict:
    return {
        name: getattr(record, name)
        for name in names
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        event_type = getattr(record, "event_type", None)
        if event_type:
            entry["event_type"] = event_type
        entry.update(_collect(record, REQUEST_FIELDS))
        engine = _collect(record, ENGINE_FIELDS)
        if engine:
            entry["engine"] = engine
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter for local runs."""

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{clock} {record.levelname[:4]}{self.RESET} {record.name}: {record.getMessage()}"

        tags = [f"{k}={v}" for k, v in _collect(record, ENGINE_FIELDS).items()]
        event_type = getattr(record, "event_type", None)
        if event_type:
            tags.insert(0, event_type)
        if tags:
            line += " [" + " ".join(tags) + "]"

        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" {duration:.0f}ms"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger.

    Production (neither DEBUG nor TESTING) gets JSON at INFO; everything
    else gets the readable formatter at DEBUG. LOG_LEVEL overrides both.
    """
    testing = app.config.get("TESTING", False)
    production = not (app.config.get("DEBUG", False) or testing)

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.setLevel(level)

    # create_app may run several times per process (tests)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for chatty in ("werkzeug", "sqlalchemy.engine"):
        logging.getLogger(chatty).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging configured: level=%s json=%s", level_name, production)
