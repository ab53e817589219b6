"""Shared utility functions used across hackjury modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo, so everything is stored naive."""
    return datetime.now(UTC).replace(tzinfo=None)


def elapsed_ms(since: datetime | None, until: datetime | None = None) -> int:
    if since is None:
        return 0
    until = until or utcnow()
    return max(0, int((until - since).total_seconds() * 1000))
