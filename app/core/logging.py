"""Logging setup.

Module loggers are plain ``logging.getLogger(__name__)``; this module only
installs handlers and formatters once at startup and stamps each record with
the id of the request being served.
"""

import json
import logging
import logging.config
from contextvars import ContextVar
from datetime import UTC, datetime

from app.core.config import LogFormatEnum, Settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


class RequestIdFilter(logging.Filter):
    """Attach the current request id (or ``-``) to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


SIMPLE_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    """Install the root handler according to ``LOG_LEVEL`` and ``LOG_FORMAT``."""
    formatter = "json" if settings.log_format == LogFormatEnum.json else "simple"
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_id": {"()": RequestIdFilter}},
            "formatters": {
                "simple": {"format": SIMPLE_FORMAT},
                "json": {"()": JsonFormatter},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": formatter,
                    "filters": ["request_id"],
                }
            },
            "root": {"level": settings.log_level.value, "handlers": ["console"]},
            "loggers": {
                # SQL echo is controlled by DEBUG on the engine, keep the logger quiet otherwise
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
