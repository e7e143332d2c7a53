"""Persistence sink for the assistant message of one stream."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from streamchat.core import get_logger
from streamchat.db.models import Message
from streamchat.db.repositories import update_message_content
from streamchat.services.batching import BatchAggregator

logger = get_logger(__name__)


class AssistantDraft:
    """Owns the (initially empty) assistant message while it streams.

    Each write commits on its own. Leaving the ``with`` block without
    ``finalize()`` or ``fail()`` saves whatever the aggregator holds, with
    the interruption marker, so partial output survives every exit path.
    """

    def __init__(
        self,
        db: Session,
        message: Message,
        aggregator: BatchAggregator,
        *,
        checkpoint_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.message = message
        self.aggregator = aggregator
        self.checkpoint_interval = checkpoint_interval
        self._clock = clock
        self._last_checkpoint = clock()
        self._saved_length = 0
        self.settled = False

    def __enter__(self) -> AssistantDraft:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self.settled:
            return
        if exc is not None:
            logger.warning(
                "Stream left without settling; saving partial content",
                data={
                    "message_id": self.message.id,
                    "error": exc_type.__name__ if exc_type else None,
                },
            )
        self.fail()

    def checkpoint(self, content: str | None = None) -> bool:
        """Save progress if the checkpoint interval has elapsed."""
        if self.settled:
            return False
        content = self.aggregator.full if content is None else content
        now = self._clock()
        if len(content) == self._saved_length:
            return False
        if now - self._last_checkpoint < self.checkpoint_interval:
            return False
        self._write(content)
        self._last_checkpoint = now
        return True

    def finalize(self, content: str | None = None) -> None:
        content = self.aggregator.full if content is None else content
        self._write(content)
        self.settled = True

    def fail(self, content: str | None = None) -> None:
        """Save interrupted content; an empty draft is left untouched."""
        content = self.aggregator.interrupted() if content is None else content
        self.settled = True
        if not content:
            return
        try:
            self._write(content)
        except Exception as exc:
            logger.error(
                "Failed to save partial assistant content",
                exc_info=exc,
                data={"message_id": self.message.id},
            )
            self.db.rollback()

    def _write(self, content: str) -> None:
        update_message_content(self.db, self.message, content)
        self._saved_length = len(content)
