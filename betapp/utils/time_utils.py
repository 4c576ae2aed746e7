"""Timezone-aware datetime helpers used across the betting application."""

from __future__ import annotations

import datetime as dt
import logging
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from betapp.config import DEFAULT_TIMEZONE_NAME as CONFIG_DEFAULT_TIMEZONE_NAME


logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE_NAME = CONFIG_DEFAULT_TIMEZONE_NAME
UTC = dt.timezone.utc


def now_utc() -> dt.datetime:
    """Return the current time as an aware ``datetime`` in UTC."""

    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """Coerce ``value`` to an aware UTC datetime without altering the instant.

    Naive datetimes are assumed to already represent UTC (SQLite drops the
    offset on the way back out).
    """

    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _normalize_timezone_name(candidate: Optional[str]) -> str:
    if isinstance(candidate, str):
        stripped = candidate.strip()
        if stripped:
            return stripped
    return DEFAULT_TIMEZONE_NAME


@lru_cache(maxsize=32)
def _resolve_zoneinfo(name: Optional[str]) -> dt.tzinfo:
    """Return a ``tzinfo`` for ``name`` falling back to UTC on failure."""

    candidate = _normalize_timezone_name(name)
    try:
        return ZoneInfo(candidate)
    except ZoneInfoNotFoundError:
        if candidate != DEFAULT_TIMEZONE_NAME:
            logger.warning(
                "Unknown timezone %s; falling back to %s", candidate, DEFAULT_TIMEZONE_NAME
            )
            return _resolve_zoneinfo(DEFAULT_TIMEZONE_NAME)
        logger.warning("Unknown timezone %s; falling back to UTC", candidate)
        return UTC


def to_local(value: dt.datetime, tz_name: Optional[str] = DEFAULT_TIMEZONE_NAME) -> dt.datetime:
    """Convert ``value`` to the target timezone, assuming UTC when naive."""

    return ensure_utc(value).astimezone(_resolve_zoneinfo(tz_name))


def format_local(
    value: dt.datetime, fmt: str, tz_name: Optional[str] = DEFAULT_TIMEZONE_NAME
) -> str:
    """Return ``value`` formatted in the requested timezone using ``fmt``."""

    return to_local(value, tz_name=tz_name).strftime(fmt)


def elapsed_seconds(since: dt.datetime, *, now: Optional[dt.datetime] = None) -> int:
    """Whole seconds elapsed between ``since`` and ``now`` (floored, never negative)."""

    reference = ensure_utc(now) if now is not None else now_utc()
    delta = reference - ensure_utc(since)
    return max(0, int(delta.total_seconds()))


def remaining_window(
    created_at: dt.datetime, window_seconds: int, *, now: Optional[dt.datetime] = None
) -> int:
    """Seconds left of a ``window_seconds`` long window opened at ``created_at``."""

    return max(0, int(window_seconds) - elapsed_seconds(created_at, now=now))


def format_remaining(seconds: int) -> str:
    """Render a countdown as ``"4m 12s"`` or ``"42s"``."""

    seconds = max(0, int(seconds))
    minutes, remainder = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {remainder}s"
    return f"{remainder}s"


__all__ = [
    "DEFAULT_TIMEZONE_NAME",
    "UTC",
    "now_utc",
    "ensure_utc",
    "to_local",
    "format_local",
    "elapsed_seconds",
    "remaining_window",
    "format_remaining",
]
