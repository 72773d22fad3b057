from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def stable_json_dumps(obj: Any) -> str:
    """Deterministic JSON serialization (stable key order)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def as_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def timestamp_slug(dt: datetime | None = None) -> str:
    """Filesystem-safe UTC timestamp, e.g. 2025-01-15T03-15-02-123Z."""
    dt = dt or now_utc()
    s = dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return s.replace(":", "-").replace(".", "-")


def preview(text: str, limit: int = 100) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")
