"""Batching aggregator for streamed deltas.

Deltas are appended to two buffers: ``full`` grows for the whole stream,
``pending`` is emitted and cleared on every flush. A flush is due when the
delta counter reaches the profile's count threshold OR the time since the
last flush reaches its interval, whichever comes first.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from streamchat.config import Settings

INTERRUPTION_MARKER = "\n\n[The response was interrupted because of an error]"


@dataclass(frozen=True)
class ThrottleProfile:
    """Flush thresholds for one kind of stream."""

    max_deltas: int | None
    interval_ms: float
    pacing_ms: float = 0.0

    @classmethod
    def main(cls, settings: Settings) -> ThrottleProfile:
        return cls(
            max_deltas=settings.batch_max_deltas,
            interval_ms=settings.batch_interval_ms,
        )

    @classmethod
    def title(cls, settings: Settings) -> ThrottleProfile:
        # Titles flush on time only and pause after each flush.
        return cls(
            max_deltas=None,
            interval_ms=settings.title_interval_ms,
            pacing_ms=settings.title_pacing_ms,
        )


MAIN_PROFILE = ThrottleProfile(max_deltas=3, interval_ms=20.0)
TITLE_PROFILE = ThrottleProfile(max_deltas=None, interval_ms=50.0, pacing_ms=25.0)


@dataclass(frozen=True)
class FlushBatch:
    """Text emitted by one flush decision."""

    text: str
    is_complete: bool = False
    is_error: bool = False
    is_title: bool = False


class BatchAggregator:
    """Accumulates deltas and decides when to flush them."""

    def __init__(
        self,
        profile: ThrottleProfile = MAIN_PROFILE,
        *,
        is_title: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self.is_title = is_title
        self._clock = clock
        self._full: list[str] = []
        self._pending: list[str] = []
        self._count = 0
        self._last_flush = clock()
        self._completed = False

    @property
    def full(self) -> str:
        return "".join(self._full)

    @property
    def pending(self) -> str:
        return "".join(self._pending)

    @property
    def delta_count(self) -> int:
        """Deltas accumulated since the last flush."""
        return self._count

    @property
    def completed(self) -> bool:
        return self._completed

    def add(self, text: str | None) -> FlushBatch | None:
        """Append a delta; return a batch if a flush is now due."""
        if self._completed:
            raise RuntimeError("Cannot add deltas after the terminal batch")
        if not text:
            return None

        self._full.append(text)
        self._pending.append(text)
        self._count += 1

        now = self._clock()
        if self.flush_due(now):
            return self._flush(now)
        return None

    def flush_due(self, now: float | None = None) -> bool:
        if not self._pending:
            return False
        if now is None:
            now = self._clock()
        max_deltas = self.profile.max_deltas
        if max_deltas is not None and self._count >= max_deltas:
            return True
        return (now - self._last_flush) * 1000.0 >= self.profile.interval_ms

    def drain(self) -> FlushBatch | None:
        """Flush whatever is pending once the stream is exhausted."""
        if not self._pending:
            return None
        return self._flush(self._clock())

    def complete(self, text: str | None = None) -> FlushBatch:
        """Build the terminal batch; ``text`` defaults to the full buffer."""
        if self._pending:
            raise RuntimeError("Drain pending text before completing the stream")
        self._completed = True
        return FlushBatch(
            text=self.full if text is None else text,
            is_complete=True,
            is_title=self.is_title,
        )

    def interrupted(self) -> str:
        """Accumulated text with the interruption marker, or "" if nothing arrived."""
        if not self._full:
            return ""
        return self.full + INTERRUPTION_MARKER

    def _flush(self, now: float) -> FlushBatch:
        batch = FlushBatch(text="".join(self._pending), is_title=self.is_title)
        self._pending.clear()
        self._count = 0
        self._last_flush = now
        return batch
