"""
Streaming events and the cancellable per-turn streaming session.

A backend adapter opens an HTTP response and hands it to a StreamingSession
together with a provider-specific decoder. The session turns raw lines into
uniform events, in generation order, for exactly one consumer.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

import aiohttp

from errors import BackendErrorKind
from models import ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of a tool call still being generated."""
    index: int
    call_id: Optional[str]
    tool_name: Optional[str]
    fragment: str


@dataclass(frozen=True)
class ToolCallComplete:
    tool_call: ToolCall


@dataclass(frozen=True)
class TurnComplete:
    finish_reason: str = "stop"


@dataclass(frozen=True)
class StreamError:
    kind: BackendErrorKind
    message: str


StreamEvent = Union[TextDelta, ToolCallDelta, ToolCallComplete, TurnComplete, StreamError]


class StreamDecoder:
    """Incremental parser for one provider's stream framing.

    One decoder per stream: it keeps the partial tool-call state of that
    stream only.
    """

    def parse_event(self, raw_chunk: str) -> list[StreamEvent]:
        """Parse one raw line into zero or more events."""
        raise NotImplementedError

    def finish(self) -> list[StreamEvent]:
        """Called once when the connection closes; reports dangling state."""
        return []


def sse_data(line: str) -> Optional[str]:
    """Payload of an SSE `data:` line, or None for comments/other fields."""
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def expect_object(value: object, what: str) -> dict:
    """A nested JSON object of a chunk; absent means empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} is not an object: {str(value)[:100]}")
    return value


def expect_list(value: object, what: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} is not a list: {str(value)[:100]}")
    return value


class StreamingSession:
    """Cancellable, single-consumer, ordered channel of stream events."""

    def __init__(
        self,
        source: AsyncIterator,
        decoder: StreamDecoder,
        release: Optional[Callable[[], None]] = None,
        label: str = "",
    ):
        self._source = source
        self._decoder = decoder
        self._release = release
        self.label = label
        self._pending: deque = deque()
        self._produced = 0
        self._source_done = False
        self._ended = False
        self._cancelled = False
        self._closed = False
        self._reading = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def events_produced(self) -> int:
        return self._produced

    def cancel(self) -> None:
        """Stop delivery now and drop the connection. Safe to call repeatedly."""
        if self._cancelled or self._ended:
            return
        logger.debug("Streaming session %s cancelled after %d event(s)", self.label, self._produced)
        self._cancelled = True
        self._pending.clear()
        self._release_resource()

    def __aiter__(self) -> "StreamingSession":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._reading:
            raise RuntimeError("StreamingSession supports a single consumer")
        self._reading = True
        try:
            return await self._next_event()
        finally:
            self._reading = False

    async def _next_event(self) -> StreamEvent:
        while True:
            if self._cancelled or self._ended:
                await self.aclose()
                raise StopAsyncIteration
            if self._pending:
                return self._deliver(self._pending.popleft())
            if self._source_done:
                self._ended = True
                continue
            try:
                raw = await self._source.__anext__()
            except StopAsyncIteration:
                self._source_done = True
                self._pending.extend(self._end_of_stream())
                continue
            except asyncio.TimeoutError:
                self._source_done = True
                if not self._cancelled:
                    self._pending.append(StreamError(BackendErrorKind.NETWORK, "Stream read timed out"))
                continue
            except aiohttp.ClientError as e:
                self._source_done = True
                if not self._cancelled:
                    self._pending.append(StreamError(BackendErrorKind.NETWORK, f"Stream interrupted: {e}"))
                continue
            except ValueError as e:
                # aiohttp refuses lines above its buffer limit
                self._source_done = True
                self._pending.append(StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Unreadable stream chunk: {e}"))
                continue
            if self._cancelled:
                continue
            line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
            line = line.strip("\r\n")
            if not line.strip():
                continue
            try:
                events = self._decoder.parse_event(line)
            except (AttributeError, TypeError, ValueError, KeyError, IndexError) as e:
                # A chunk of the wrong shape ends the stream like an undecodable one
                logger.warning("Malformed chunk on stream %s: %s", self.label, e)
                self._source_done = True
                self._release_resource()
                self._pending.append(StreamError(BackendErrorKind.MALFORMED_RESPONSE, f"Malformed stream chunk: {e}"))
                continue
            self._pending.extend(events)

    def _deliver(self, event: StreamEvent) -> StreamEvent:
        self._produced += 1
        if isinstance(event, (TurnComplete, StreamError)):
            # Nothing follows a terminal event
            self._ended = True
            self._pending.clear()
        return event

    def _end_of_stream(self) -> list:
        events = list(self._decoder.finish())
        if any(isinstance(e, (TurnComplete, StreamError)) for e in events):
            return events
        if self._produced == 0 and not events:
            events.append(StreamError(
                BackendErrorKind.NETWORK,
                "Connection closed before any event was produced",
            ))
        else:
            events.append(StreamError(
                BackendErrorKind.NETWORK,
                "Connection closed before the turn completed",
            ))
        return events

    def _release_resource(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._release is not None:
            try:
                self._release()
            except Exception as e:
                logger.debug("Releasing stream %s failed: %s", self.label, e)

    async def aclose(self) -> None:
        """Release the underlying connection; runs on every exit path."""
        self._ended = True
        self._release_resource()
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except (RuntimeError, aiohttp.ClientError) as e:
                logger.debug("Closing stream source %s failed: %s", self.label, e)

    async def __aenter__(self) -> "StreamingSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
