"""Centralised wall-clock helpers — single source of truth for 'now'.

Run records, cache entries and search results all stamp times through here,
so tests can freeze time by patching one function.
"""

from __future__ import annotations

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def today_str() -> str:
    """ISO 8601 date string: '2026-02-23'"""
    return now_utc().strftime("%Y-%m-%d")
