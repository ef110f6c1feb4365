"""Process-wide logging setup."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from tablekit.config import settings

_CONFIGURED = False


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Install a single stream handler on the root logger.

    Calling this more than once only updates the level.
    """
    global _CONFIGURED
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if _CONFIGURED:
        return

    handler = logging.StreamHandler()
    if (fmt or settings.log_format).lower() == "json":
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )
    root.addHandler(handler)
    _CONFIGURED = True
