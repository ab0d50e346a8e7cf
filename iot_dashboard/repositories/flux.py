from __future__ import annotations

from datetime import datetime, timezone

EPOCH_RFC3339 = "1970-01-01T00:00:00Z"


def to_rfc3339(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def flux_str(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def flux_time(dt: datetime | None) -> str:
    return f"time(v: {flux_str(to_rfc3339(dt) if dt is not None else EPOCH_RFC3339)})"
