"""
Recognizer Base Module

Every recognizer exposes the same contract:

    identify(duration_seconds, snippet=None) -> Optional[Track]
    cancel()

identify() always settles, with a Track, with None (no match) or with a
RecognitionError. The result travels through a single-resolution future:
the first of {vendor result, failsafe timeout, cancel()} wins and every
later signal is ignored.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional, Set

from errors import (
    ApiError,
    MissingCredentials,
    ParsingError,
    RecognitionCancelled,
    RecognitionError,
    RecognitionTimeout,
)
from logging_config import get_logger
from models import Track
from system_utils.helpers import create_tracked_task

from .capture import Snippet

logger = get_logger(__name__)

# Raised while reading vendor JSON whose shape differs from what the parsers expect
SHAPE_ERRORS = (ValueError, KeyError, TypeError, AttributeError, IndexError, RecursionError)


class Recognizer(ABC):
    """
    Base class for song identification providers.

    Subclasses implement _run(). Request/response providers simply return
    the identified Track (or None). Push-style providers (push_style = True)
    start their session in _run() and deliver the result later through
    _resolve()/_fail(); they must also return a failsafe from
    failsafe_timeout() so identify() settles when the vendor never answers.
    """

    name = "base"
    needs_snippet = False  # True: the orchestrator records a Snippet first
    push_style = False

    def __init__(self):
        self._pending: Optional[asyncio.Future] = None
        self._worker: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @abstractmethod
    def has_valid_credentials(self) -> bool:
        """Provider-specific validity predicate for the configured credentials."""

    @abstractmethod
    async def _run(self, duration_seconds: float, snippet: Optional[Snippet]) -> Optional[Track]:
        """Perform the provider-specific identification."""

    def failsafe_timeout(self, duration_seconds: float) -> Optional[float]:
        """Seconds before a pending identify() is forced to settle (None = no failsafe)."""
        return None

    def _end_session(self) -> None:
        """Stop any provider session (recording/streaming). Must be idempotent."""

    @property
    def is_busy(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def identify(self, duration_seconds: float, snippet: Optional[Snippet] = None) -> Optional[Track]:
        """
        Identify the currently playing track.

        Args:
            duration_seconds: Length of the listening window
            snippet: Pre-recorded audio (required when needs_snippet is True)

        Returns:
            Track, or None if nothing matched

        Raises:
            RecognitionError subclasses; RecognitionCancelled after cancel()
        """
        if not self.has_valid_credentials():
            raise MissingCredentials(f"{self.name} credentials are missing")
        if self.needs_snippet and snippet is None:
            raise ValueError(f"{self.name} requires a recorded snippet")
        if self.is_busy:
            raise ApiError("Recognition already in progress")

        loop = asyncio.get_running_loop()
        pending = loop.create_future()
        self._pending = pending
        self._worker = create_tracked_task(
            self._drive(pending, duration_seconds, snippet), self._tasks, name=f"{self.name}-identify"
        )

        failsafe = None
        timeout = self.failsafe_timeout(duration_seconds)
        if timeout is not None:
            failsafe = loop.call_later(timeout, self._on_failsafe, pending, timeout)

        try:
            return await pending
        finally:
            if failsafe is not None:
                failsafe.cancel()
            if self._worker is not None and not self._worker.done():
                self._worker.cancel()
            self._worker = None
            if self._pending is pending:
                self._pending = None
            self._end_session()

    async def _drive(self, pending: asyncio.Future, duration_seconds: float, snippet: Optional[Snippet]) -> None:
        try:
            result = await self._run(duration_seconds, snippet)
        except RecognitionError as e:
            self._fail(pending, e)
        except SHAPE_ERRORS as e:
            self._fail(pending, ParsingError(f"{self.name}: {e}"))
        else:
            if not self.push_style:
                self._resolve(pending, result)

    def _resolve(self, pending: asyncio.Future, result: Optional[Track]) -> None:
        if pending.done():
            logger.debug(f"{self.name}: late result ignored")
            return
        pending.set_result(result)

    def _fail(self, pending: asyncio.Future, error: BaseException) -> None:
        if pending.done():
            logger.debug(f"{self.name}: late error ignored ({error})")
            return
        pending.set_exception(error)

    def _on_failsafe(self, pending: asyncio.Future, timeout: float) -> None:
        if pending.done():
            return
        logger.warning(f"{self.name}: no result after {timeout:.1f}s, forcing session stop")
        self._fail(pending, RecognitionTimeout(f"{self.name} recognition timed out"))
        self._end_session()

    def cancel(self) -> None:
        """
        Cancel the pending identification, if any.

        The pending identify() settles with RecognitionCancelled. Idempotent and
        safe to call when nothing is pending.
        """
        self._end_session()
        pending = self._pending
        if pending is not None and not pending.done():
            logger.debug(f"{self.name}: cancelling pending identification")
            pending.set_exception(RecognitionCancelled(f"{self.name} recognition cancelled"))

    async def close(self) -> None:
        """Cancel pending work and release provider resources."""
        self.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name='{self.name}' busy={self.is_busy}>"
