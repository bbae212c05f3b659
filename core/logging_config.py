"""
core/logging_config.py -- Process-wide logging setup.

ENV selects the handler format:
  local -> human-readable text at DEBUG
  dev   -> JSON lines at DEBUG
  prod  -> JSON lines at INFO

All AuthGate loggers live under the "authgate" namespace, so operators can
raise or lower verbosity for the whole service with one logger name.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from core.config import ENV_DEV, ENV_LOCAL, ENV_PROD

_TEXT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Extra attributes copied into JSON output when a log call passes them.
_EXTRA_KEYS = ("method", "path", "status_code", "duration_ms", "client", "user_id", "operation")


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(env: str) -> None:
    """Install a single stdout handler on the root logger for the given ENV."""
    handler = logging.StreamHandler(sys.stdout)
    if env == ENV_LOCAL:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT))
        level = logging.DEBUG
    elif env == ENV_DEV:
        handler.setFormatter(JSONFormatter())
        level = logging.DEBUG
    elif env == ENV_PROD:
        handler.setFormatter(JSONFormatter())
        level = logging.INFO
    else:
        raise ValueError(f"Unknown ENV {env!r}")

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
