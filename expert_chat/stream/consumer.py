"""
Stream consumer: drives the frame decoder and event parser over a live
response body and reports UI-relevant updates.

State transitions:
- IDLE -> STREAMING (start)
- STREAMING -> COMPLETED (end of body, or explicit end event)
- STREAMING -> FAILED (read error or inactivity timeout)

A cancelled consumer stays STREAMING with ``cancelled`` set.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from expert_chat.errors import ChatError, StreamTimeoutError, TransportError
from expert_chat.models import Suggestion
from expert_chat.stream.decoder import FrameDecoder
from expert_chat.stream.events import (
    EventParser,
    Malformed,
    SessionAssigned,
    StreamEnded,
    StreamEvent,
    SuggestionsAttached,
    TextDelta,
)

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StreamResult:
    """Outcome of one consumed stream."""
    state: StreamState
    content: str = ""
    suggestions: list[Suggestion] = field(default_factory=list)
    session_id: Optional[str] = None
    error: Optional[ChatError] = None
    malformed_count: int = 0
    cancelled: bool = False

    @property
    def has_content(self) -> bool:
        return bool(self.content)


@dataclass
class StreamHandler:
    """
    Callbacks fired while a stream is consumed.

    Every callback is optional and may be a plain function or a coroutine
    function.
    """
    on_event: Optional[Callable[[StreamEvent], Any]] = None
    on_text_update: Optional[Callable[[str], Any]] = None
    on_suggestions: Optional[Callable[[list[Suggestion]], Any]] = None
    on_session_bound: Optional[Callable[[str], Any]] = None
    on_complete: Optional[Callable[[StreamResult], Any]] = None
    on_error: Optional[Callable[[ChatError], Any]] = None


async def invoke(callback: Optional[Callable], *args) -> None:
    """Call an optional handler callback, awaiting it if it is async."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class _Stop(Exception):
    """Internal: the body must not be read any further."""


class StreamConsumer:
    """Consumes one chat response body. Not reusable."""

    def __init__(
        self,
        inactivity_timeout: Optional[float] = None,
        decoder: Optional[FrameDecoder] = None,
        parser: Optional[EventParser] = None,
    ):
        self.inactivity_timeout = inactivity_timeout
        self._decoder = decoder or FrameDecoder()
        self._parser = parser or EventParser()

        self._state = StreamState.IDLE
        self._cancelled = False
        self._pending_read: Optional[asyncio.Future] = None

        self._content = ""
        self._suggestions: list[Suggestion] = []
        self._session_id: Optional[str] = None
        self._malformed_count = 0
        self._error: Optional[ChatError] = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def content(self) -> str:
        """Cumulative assistant text received so far."""
        return self._content

    @property
    def suggestions(self) -> list[Suggestion]:
        return list(self._suggestions)

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def malformed_count(self) -> int:
        return self._malformed_count

    def cancel(self) -> None:
        """
        Stop consuming.

        No event is dispatched after this returns. A pending chunk read is
        interrupted; ``start`` then releases the body and returns normally.
        """
        if self._cancelled:
            return
        self._cancelled = True
        if self._pending_read is not None and not self._pending_read.done():
            self._pending_read.cancel()
        logger.debug("Stream consumer cancelled in state %s", self._state.value)

    def result(self) -> StreamResult:
        return StreamResult(
            state=self._state,
            content=self._content,
            suggestions=list(self._suggestions),
            session_id=self._session_id,
            error=self._error,
            malformed_count=self._malformed_count,
            cancelled=self._cancelled,
        )

    async def start(
        self,
        body: AsyncIterator[bytes],
        handler: Optional[StreamHandler] = None,
    ) -> StreamResult:
        """
        Consume ``body`` until it ends, fails, or the consumer is cancelled.

        Transport failures are reported through ``handler.on_error`` and the
        returned result, never raised.
        """
        if self._state is not StreamState.IDLE:
            raise RuntimeError(f"Stream consumer already used (state: {self._state.value})")

        handler = handler or StreamHandler()
        self._state = StreamState.STREAMING
        iterator = body.__aiter__()

        try:
            await self._consume(iterator, handler)
        finally:
            await self._release(body)

        if self._cancelled:
            logger.info("Stream cancelled after %d chars", len(self._content))
        elif self._state is StreamState.COMPLETED:
            await invoke(handler.on_complete, self.result())
        elif self._state is StreamState.FAILED:
            await invoke(handler.on_error, self._error)

        return self.result()

    async def _consume(self, iterator: AsyncIterator[bytes], handler: StreamHandler) -> None:
        while not self._cancelled:
            try:
                chunk = await self._read(iterator)
            except StopAsyncIteration:
                break
            except asyncio.CancelledError:
                if self._cancelled:
                    return
                raise
            except asyncio.TimeoutError:
                logger.error("Stream stalled for %ss, giving up", self.inactivity_timeout)
                self._fail(StreamTimeoutError(
                    f"No data received for {self.inactivity_timeout:g}s",
                    partial_content=self._content,
                ))
                return
            except Exception as e:
                logger.error("Stream read failed: %s", e)
                self._fail(TransportError(
                    f"Connection lost while receiving the answer: {e}",
                    partial_content=self._content,
                ))
                return

            try:
                await self._dispatch_lines(self._decoder.feed(chunk), handler)
            except _Stop:
                return

        if self._cancelled:
            return

        try:
            await self._dispatch_lines(self._decoder.flush(), handler)
        except _Stop:
            return
        self._state = StreamState.COMPLETED

    async def _read(self, iterator: AsyncIterator[bytes]) -> bytes:
        self._pending_read = asyncio.ensure_future(iterator.__anext__())
        try:
            if self.inactivity_timeout is None:
                return await self._pending_read
            return await asyncio.wait_for(self._pending_read, self.inactivity_timeout)
        finally:
            self._pending_read = None

    async def _dispatch_lines(self, lines: list[str], handler: StreamHandler) -> None:
        for line in lines:
            if self._cancelled:
                raise _Stop()
            event = self._parser.parse(line)
            if event is None:
                continue
            await self._dispatch(event, handler)

    async def _dispatch(self, event: StreamEvent, handler: StreamHandler) -> None:
        if isinstance(event, Malformed):
            self._malformed_count += 1
            error = event.to_error()
            logger.warning("Skipping malformed stream line (%s): %.200s", error, error.raw)
            await invoke(handler.on_event, event)
            return

        await invoke(handler.on_event, event)

        if isinstance(event, TextDelta):
            self._content += event.text
            await invoke(handler.on_text_update, self._content)
        elif isinstance(event, SuggestionsAttached):
            self._suggestions = list(event.items)
            await invoke(handler.on_suggestions, list(self._suggestions))
        elif isinstance(event, SessionAssigned):
            if self._session_id is not None and self._session_id != event.session_id:
                logger.warning(
                    "Stream assigned a second session id %s (keeping %s)",
                    event.session_id, self._session_id,
                )
                return
            self._session_id = event.session_id
            await invoke(handler.on_session_bound, event.session_id)
        elif isinstance(event, StreamEnded):
            self._state = StreamState.COMPLETED
            raise _Stop()

    def _fail(self, error: TransportError) -> None:
        self._error = error
        self._state = StreamState.FAILED

    async def _release(self, body: Any) -> None:
        aclose = getattr(body, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("Ignoring error while closing stream body: %s", e)
