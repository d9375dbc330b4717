"""Small utility helpers used across the scheduler."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_rfc3339(dt: str) -> datetime:
    """Parse RFC3339-ish timestamps as written by `format_rfc3339`.

    Python's datetime.fromisoformat does not accept trailing "Z" on older
    interpreters, so we normalize.
    """
    s = dt.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        raise ValueError("date-time must be timezone-aware (include Z or offset)")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def as_str_map(v: Any, *, field: str) -> dict[str, str]:
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise TypeError(f"{field} must be an object")
    return {str(k): str(val) for k, val in v.items()}


def as_str_tuple(v: Any, *, field: str) -> tuple[str, ...]:
    if v is None:
        return ()
    if isinstance(v, (str, bytes)) or not isinstance(v, (list, tuple)):
        raise TypeError(f"{field} must be a list")
    return tuple(str(x) for x in v)
