"""Timestamp helpers shared by the snapshot store and interceptor."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

__all__ = ["TICK", "utcnow"]

# Smallest step between two snapshots of the same entity.
TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    """Return a naive UTC timestamp, the form stored in history tables."""
    return datetime.now(UTC).replace(tzinfo=None)
