"""
Log formatting for fabstock.

Production writes one JSON object per line; development and tests get a
short coloured line. LOG_LEVEL overrides the level (DEBUG outside
production, INFO in production).

Services pass domain context with ``extra=``. Only the keys in
``STRUCTURED_FIELDS`` reach the JSON output, so one consumption or
transition can be followed across records by ``tenant_id``,
``entity_id`` or ``correlation_id``.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

STRUCTURED_FIELDS = (
    "tenant_id",
    "entity_type",
    "entity_id",
    "action",
    "actor",
    "correlation_id",
    "stock_unit_id",
    "lot_id",
    "purchase_request_id",
    "old_status",
    "new_status",
    "required",
    "available",
    "attempt",
    "duration_ms",
    "error_code",
)

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic")


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        doc.update(
            (key, getattr(record, key))
            for key in STRUCTURED_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            doc["exception"] = self.formatException(record.exc_info)
            # FabstockError subclasses carry a machine-readable code
            code = getattr(record.exc_info[1], "code", None)
            if code is not None:
                doc.setdefault("error_code", code)
        return json.dumps(doc, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger [tenant]: message`` with the level coloured."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{self.COLORS.get(record.levelname, '')}{record.levelname:<8}{self.RESET}"
        tenant = getattr(record, "tenant_id", None)
        scope = f" [{tenant}]" if tenant else ""
        line = f"{stamp} {level} {record.name}{scope}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for *app*."""
    testing = app.config.get("TESTING", False)
    production = not (app.config.get("DEBUG", False) or testing)

    level_name = os.getenv("LOG_LEVEL", "INFO" if production else "DEBUG").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if production else ReadableFormatter())
    handler.setLevel(level)

    # create_app() runs more than once under pytest
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if not testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if production else "readable")
