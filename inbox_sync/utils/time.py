from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _to_float(value: int | float | str) -> float | None:
    try:
        return float(value)
    except (OverflowError, ValueError):
        return None


def _coerce_epoch(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _to_float(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned.isdigit():
            return _to_float(cleaned)
        return None
    if isinstance(value, dict) and "low" in value:
        # protobuf Long serialized as {"low": ..., "high": ..., "unsigned": ...}
        low = value.get("low")
        high = value.get("high") or 0
        if isinstance(low, int) and isinstance(high, int):
            return _to_float((high << 32) + (low & 0xFFFFFFFF))
    return None


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    epoch = _coerce_epoch(value)
    if epoch is not None:
        if epoch > 1_000_000_000_000:
            epoch = epoch / 1000.0
        try:
            return datetime.fromtimestamp(epoch, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        cleaned = value.replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(cleaned)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)
