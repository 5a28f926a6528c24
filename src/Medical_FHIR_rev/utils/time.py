"""Timestamp helpers with strict UTC enforcement.

Thread Safety:
    - Thread-safe; uses stdlib datetime utilities
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)
