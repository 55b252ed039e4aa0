from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys

from .config import settings

# Structured fields callers pass through ``extra={...}``.
LOG_FIELDS = (
    "event",
    "game_id",
    "player_id",
    "round_id",
    "round_number",
    "location_index",
    "game_type",
    "started_at",
    "elapsed_ms",
    "period",
    "attempt",
    "reason",
    "ip",
    "path",
    "status",
    "db_backend",
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; unset fields are left out."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in LOG_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    if any(isinstance(handler.formatter, JsonFormatter) for handler in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    root.addHandler(handler)
