"""Structured logging configuration for the controller.

JSON output is meant for log shippers; text output is for a terminal. Both
carry the controller id so several controllers can share a log sink.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from fleetpower.config import settings

SERVICE_NAME = "fleetpower"

# Attributes every LogRecord has; anything else was passed via ``extra``
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "asctime", "taskName",
    }
)


class FleetJSONFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def __init__(self, controller_id: str = ""):
        super().__init__()
        self.controller_id = controller_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "controller_id": self.controller_id,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


class FleetTextFormatter(logging.Formatter):
    """Human-readable format with a short controller id prefix."""

    def __init__(self, controller_id: str = ""):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(controller)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.controller_id = controller_id

    def format(self, record: logging.LogRecord) -> str:
        record.controller = self.controller_id[:8] or "-"
        return super().format(record)


def setup_logging(controller_id: str = "") -> None:
    """Configure the root logger from settings.

    Replaces existing root handlers so repeated calls do not duplicate output.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(FleetJSONFormatter(controller_id=controller_id))
    else:
        handler.setFormatter(FleetTextFormatter(controller_id=controller_id))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # Library chatter
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
