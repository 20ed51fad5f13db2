"""Utility helpers for OpenReserve."""

from __future__ import annotations

from datetime import UTC, date, datetime


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def utctoday() -> date:
    return utcnow().date()


def percentage(part: int, whole: int) -> int:
    """Return ``part`` as a percentage of ``whole`` rounded half up (0 when ``whole`` is 0)."""

    if not whole:
        return 0
    return (part * 200 + whole) // (2 * whole)


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()
