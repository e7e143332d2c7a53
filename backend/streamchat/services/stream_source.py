"""Token stream source.

Wraps a provider's async chunk iterator and hands the orchestrator explicit
outcomes instead of exceptions: a ``Delta`` per chunk, then exactly one
terminal ``StreamEnd`` or ``StreamFailure``.

The upstream read is kept in a task so that an idle wait (used to schedule
keepalive pings) never cancels it; only the pipeline deadline does.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Union

from streamchat.core import AppError, StreamAbortError, StreamTimeoutError, get_logger
from streamchat.providers.base import ChatChunk

logger = get_logger(__name__)


@dataclass(frozen=True)
class Delta:
    """One text fragment from the upstream stream. May be empty."""

    text: str | None


@dataclass(frozen=True)
class StreamEnd:
    """The upstream stream was exhausted normally."""


@dataclass(frozen=True)
class StreamFailure:
    """The upstream stream stopped with an error."""

    error: AppError


StreamOutcome = Union[Delta, StreamEnd, StreamFailure]


class TokenStream:
    """Pull-based view over a provider chunk iterator."""

    def __init__(
        self,
        chunks: AsyncIterator[ChatChunk],
        *,
        deadline: float | None = None,
    ):
        self._iterator = chunks.__aiter__()
        self._deadline = deadline
        self._pending: asyncio.Task[ChatChunk | None] | None = None
        self._primed: StreamOutcome | None = None
        self._terminal: StreamOutcome | None = None
        self.deltas_received = 0

    @property
    def finished(self) -> bool:
        return self._terminal is not None and self._primed is None

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self._deadline is None:
            return None
        return self._deadline - asyncio.get_running_loop().time()

    async def prime(self) -> StreamOutcome:
        """Wait for the first outcome and hold it for the next ``next()`` call."""
        outcome = await self.next()
        while outcome is None:
            outcome = await self.next()
        self._primed = outcome
        return outcome

    async def next(self, wait: float | None = None) -> StreamOutcome | None:
        """Return the next outcome, or None if ``wait`` seconds passed idle."""
        if self._primed is not None:
            outcome, self._primed = self._primed, None
            return outcome
        if self._terminal is not None:
            return self._terminal

        if self._pending is None:
            self._pending = asyncio.create_task(self._advance())

        timeout = wait
        remaining = self.remaining()
        # The deadline, not the idle wait, bounds this call.
        deadline_bound = remaining is not None and (wait is None or remaining <= wait)
        if remaining is not None:
            timeout = max(remaining if timeout is None else min(timeout, remaining), 0.0)

        done, _ = await asyncio.wait({self._pending}, timeout=timeout)
        if not done:
            if deadline_bound:
                await self._cancel_pending()
                return self._finish(
                    StreamFailure(StreamTimeoutError("Stream exceeded its time limit"))
                )
            return None

        task, self._pending = self._pending, None
        try:
            chunk = task.result()
        except AppError as exc:
            return self._finish(StreamFailure(exc))
        except Exception as exc:
            logger.warning(
                "Upstream stream raised an unexpected error",
                exc_info=exc,
                data={"deltas_received": self.deltas_received},
            )
            return self._finish(
                StreamFailure(
                    StreamAbortError(
                        "Provider stream interrupted",
                        details={"reason": str(exc) or exc.__class__.__name__},
                    )
                )
            )

        if chunk is None:
            return self._finish(StreamEnd())
        self.deltas_received += 1
        return Delta(chunk.content)

    async def aclose(self) -> None:
        """Cancel any in-flight read and close the upstream iterator."""
        await self._cancel_pending()
        aclose = getattr(self._iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.debug("Error closing upstream stream", data={"error": str(exc)})
        if self._terminal is None:
            self._terminal = StreamEnd()

    async def _advance(self) -> ChatChunk | None:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return None

    async def _cancel_pending(self) -> None:
        task, self._pending = self._pending, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug(
                "Pending upstream read failed during cancel",
                data={"error": str(task.exception())},
            )

    def _finish(self, outcome: StreamOutcome) -> StreamOutcome:
        self._terminal = outcome
        return outcome
