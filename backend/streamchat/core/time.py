"""Time helpers.

Database timestamps are naive datetimes that are always UTC, so aware and
naive values never mix in comparisons or ORM defaults.
"""

from __future__ import annotations

from datetime import datetime, timezone

PROMPT_TIME_FORMAT = "%A %d %B %Y %H:%M"


def utcnow() -> datetime:
    """Naive UTC datetime (tzinfo stripped)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def prompt_timestamp(now: datetime | None = None) -> str:
    """Human-readable UTC time for the chat system prompt."""
    return (now or utcnow()).strftime(PROMPT_TIME_FORMAT)
