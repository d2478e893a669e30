"""Time helpers for UTC timestamps."""

from __future__ import annotations

from datetime import UTC, datetime

__all__ = ["now_utc", "naive_utc"]


def now_utc() -> datetime:
    """Return the current UTC time with timezone information."""

    return datetime.now(UTC)


def naive_utc() -> datetime:
    """Return the current UTC time without tzinfo, as stored in the database."""

    return now_utc().replace(tzinfo=None)
