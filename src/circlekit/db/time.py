# src/circlekit/db/time.py
"""Timestamp defaults for ORM columns."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time; used as the default for created/joined columns."""
    return datetime.now(UTC)
