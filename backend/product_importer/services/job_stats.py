"""Derived progress figures for import jobs."""

from __future__ import annotations

import math
from datetime import datetime, timezone

PHASE_ORDER = (
    "queued",
    "initializing",
    "parsing",
    "validating",
    "importing",
    "finalizing",
    "completed",
    "failed",
    "canceled",
)
TERMINAL_PHASES = ("completed", "failed", "canceled")


def percentage(rows_processed: int, rows_total: int | None) -> float:
    if not rows_total:
        return 0.0
    return round(min(rows_processed / rows_total, 1.0) * 100, 1)


def phase_for_progress(rows_processed: int, rows_total: int | None) -> str:
    """Map raw progress onto a phase label.

    0 rows is ``initializing``; below 10% ``parsing``, below 50%
    ``validating``, below 90% ``importing`` and ``finalizing`` afterwards.
    """
    if not rows_total or rows_processed <= 0:
        return "initializing"
    ratio = rows_processed / rows_total
    if ratio < 0.10:
        return "parsing"
    if ratio < 0.50:
        return "validating"
    if ratio < 0.90:
        return "importing"
    return "finalizing"


def advance_phase(current: str | None, candidate: str) -> str:
    """Return whichever phase is further along; terminal phases stick."""
    if current in TERMINAL_PHASES:
        return current
    if current is None or current not in PHASE_ORDER:
        return candidate
    if PHASE_ORDER.index(candidate) > PHASE_ORDER.index(current):
        return candidate
    return current


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def elapsed_seconds(started_at: datetime | None, until: datetime | None = None) -> float:
    started = as_utc(started_at)
    if started is None:
        return 0.0
    end = as_utc(until) or datetime.now(timezone.utc)
    return max((end - started).total_seconds(), 0.0)


def processing_rate(rows_processed: int, elapsed: float) -> float:
    """Rows per second, rounded to one decimal."""
    if rows_processed <= 0 or elapsed <= 0:
        return 0.0
    return round(rows_processed / elapsed, 1)


def estimated_seconds_remaining(
    rows_processed: int, rows_total: int | None, rate: float
) -> int | None:
    if rate <= 0 or rows_total is None:
        return None
    remaining = max(rows_total - rows_processed, 0)
    return math.ceil(remaining / rate)
