"""Logging helpers.

The scheduler uses Python logging with a JSON formatter so every lifecycle
transition leaves a machine-readable audit line.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from clusterdispatch.config.settings import load_logging_config

_EXTRA_KEYS = ("submission_id", "status", "previous_status", "event", "code", "retries")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Common structured extras (when provided).
        for k in _EXTRA_KEYS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True)


def apply_logging_config(logging_config_path: Path) -> None:
    logging.config.dictConfig(load_logging_config(logging_config_path))
