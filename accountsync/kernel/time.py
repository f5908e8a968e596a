from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

UTC = timezone.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return a tz-aware UTC timestamp."""
    return datetime.now(UTC)


def coerce_utc(value: datetime) -> datetime:
    """Coerce any datetime to tz-aware UTC; naive values are taken as UTC."""
    if value.tzinfo is not None and value.utcoffset() is not None:
        return value.astimezone(UTC)
    return value.replace(tzinfo=UTC)


def isoformat_z(value: datetime) -> str:
    """RFC3339-ish UTC string with a `Z` suffix."""
    return coerce_utc(value).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    """Parse ISO8601/RFC3339 timestamps into tz-aware UTC datetimes.

    Supports `Z` suffix. Naive values are taken as UTC.
    """
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    return coerce_utc(datetime.fromisoformat(normalized))


def from_epoch_millis(value: int | str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def to_epoch_millis(value: datetime) -> int:
    return int(coerce_utc(value).timestamp() * 1000)


def seconds_until(value: datetime, *, now: datetime) -> float:
    return (coerce_utc(value) - coerce_utc(now)).total_seconds()
