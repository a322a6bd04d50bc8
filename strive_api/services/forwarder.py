"""
Stream forwarder: re-chunked upstream deltas to server-sent events.

One StreamForwarder drives exactly one request. It drains a DeltaStream
through a Rechunker, turns each flush into an OutboundEvent, and writes it
as an SSE frame:

    data: {"content":"Hello there.","title":"Focus Tips"}\n\n
    ...
    data: {"done":true,"title":"Focus Tips"}\n\n

Per-request state machine:

    IDLE -> TITLE_PENDING (title requested) -> STREAMING
    STREAMING <-> FLUSHING (once per flushed event)
    STREAMING -> DRAINING (upstream exhausted, remainder flush)
    DRAINING -> TERMINATED (terminal done event; no writes afterwards)

Title delivery:
    - inline: the title is known before streaming and rides on every event
    - event: a pending title task is awaited alongside the stream; a
      standalone {"title": ...} event goes out as soon as it resolves

Failure handling:
    - UpstreamError while streaming: buffered text is discarded and the
      terminal event is sent with an "error" field
    - Client disconnect (cancellation or generator close): upstream is
      released and nothing more is written

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
import asyncio
import time
from enum import Enum
from typing import AsyncGenerator, AsyncIterator, Optional, Protocol, Tuple

import structlog
from fastapi.responses import StreamingResponse

from strive_api.schemas import OutboundEvent
from strive_api.services.errors import UpstreamError
from strive_api.services.observability import StreamOutcome, record_stream
from strive_api.services.rechunker import BufferingPolicy, Rechunker

logger = structlog.get_logger(__name__)

# Client-facing error on the terminal event of an interrupted stream
INTERRUPTED_MESSAGE: str = "Stream interrupted"

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

_END_OF_STREAM = object()


class DeltaSource(Protocol):
    """What the forwarder needs from an upstream stream."""

    def __aiter__(self) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


class StreamState(str, Enum):
    IDLE = "idle"
    TITLE_PENDING = "title_pending"
    STREAMING = "streaming"
    FLUSHING = "flushing"
    DRAINING = "draining"
    TERMINATED = "terminated"


_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.IDLE: frozenset({StreamState.TITLE_PENDING, StreamState.STREAMING}),
    StreamState.TITLE_PENDING: frozenset({StreamState.STREAMING}),
    StreamState.STREAMING: frozenset({StreamState.FLUSHING, StreamState.DRAINING}),
    StreamState.FLUSHING: frozenset({StreamState.STREAMING, StreamState.DRAINING}),
    StreamState.DRAINING: frozenset({StreamState.TERMINATED}),
    StreamState.TERMINATED: frozenset(),
}


def encode_frame(event: OutboundEvent) -> str:
    """Serialize one event as an SSE frame: ``data: <compact json>\\n\\n``."""
    return f"data: {event.to_json()}\n\n"


async def _next_delta(iterator: AsyncIterator[str]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


class StreamForwarder:
    """
    Forward one upstream reply to one client connection.

    Args:
        stream: Unconsumed upstream delta stream (closed by the forwarder)
        policy: Buffering policy for this endpoint
        title: Title already known before streaming (inline delivery)
        title_task: Pending title task (event delivery)
        flush_delay: Pause after each flushed content event, in seconds
        endpoint: Endpoint name for logs and metrics

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    def __init__(
        self,
        stream: DeltaSource,
        policy: BufferingPolicy,
        *,
        title: Optional[str] = None,
        title_task: Optional["asyncio.Task[str]"] = None,
        flush_delay: float = 0.01,
        endpoint: str = "chat",
    ):
        self._stream = stream
        self._rechunker = Rechunker(policy)
        self._title = title
        self._title_task = title_task
        self._flush_delay = flush_delay
        self._endpoint = endpoint
        self._state = StreamState.IDLE
        self._events_sent = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def title(self) -> Optional[str]:
        return self._title

    def _advance(self, new_state: StreamState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Illegal stream transition {self._state.value} -> {new_state.value}"
            )
        self._state = new_state

    def _checked(self, event: OutboundEvent) -> OutboundEvent:
        if self._state is StreamState.TERMINATED:
            raise RuntimeError("Stream already terminated")
        if event.done:
            self._advance(StreamState.TERMINATED)
        self._events_sent += 1
        return event

    def _content_event(self, text: str) -> OutboundEvent:
        return OutboundEvent(content=text, title=self._title)

    def _terminal_event(self, error: Optional[str] = None) -> OutboundEvent:
        return OutboundEvent(done=True, title=self._title, error=error)

    async def _upstream(self) -> AsyncGenerator[Tuple[str, str], None]:
        """Yield ("delta", text) and, at most once, ("title", title) in arrival order."""
        if self._title_task is None:
            async for delta in self._stream:
                yield "delta", delta
            return

        iterator = self._stream.__aiter__()
        next_delta: Optional[asyncio.Task] = None
        try:
            while True:
                if next_delta is None:
                    next_delta = asyncio.create_task(_next_delta(iterator))
                waiting = {next_delta}
                if self._title_task is not None:
                    waiting.add(self._title_task)

                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if self._title_task is not None and self._title_task in done:
                    title_task, self._title_task = self._title_task, None
                    yield "title", title_task.result()

                if next_delta in done:
                    delta_task, next_delta = next_delta, None
                    delta = delta_task.result()
                    if delta is _END_OF_STREAM:
                        return
                    yield "delta", delta
        finally:
            if next_delta is not None:
                next_delta.cancel()

    async def events(self) -> AsyncGenerator[OutboundEvent, None]:
        """
        Drive the request and yield every outbound event in order.

        Exactly one event with ``done=True`` is yielded when the stream ends
        normally or on an upstream error; none when the consumer goes away.

        Last Grunted: 10/19/2026 09:10:00 AM UTC
        """
        started = time.perf_counter()
        outcome = StreamOutcome.DISCONNECTED

        if self._title_task is not None:
            # Title resolves concurrently with the stream
            self._advance(StreamState.TITLE_PENDING)
        self._advance(StreamState.STREAMING)

        logger.info(
            "stream.start",
            endpoint=self._endpoint,
            policy=self._rechunker.policy.name,
            title_pending=self._title_task is not None,
        )

        upstream = self._upstream()
        try:
            try:
                async for kind, value in upstream:
                    if kind == "title":
                        self._title = value
                        logger.debug("stream.title", endpoint=self._endpoint, title=value)
                        yield self._checked(OutboundEvent(title=value))
                        continue

                    text = self._rechunker.feed(value)
                    if text is None:
                        continue

                    self._advance(StreamState.FLUSHING)
                    yield self._checked(self._content_event(text))
                    self._advance(StreamState.STREAMING)
                    await asyncio.sleep(self._flush_delay)

                self._advance(StreamState.DRAINING)

                if self._title_task is not None:
                    # Upstream finished before the title did
                    title_task, self._title_task = self._title_task, None
                    self._title = await title_task
                    yield self._checked(OutboundEvent(title=self._title))

                remainder = self._rechunker.drain()
                if remainder is not None:
                    yield self._checked(self._content_event(remainder))

                outcome = StreamOutcome.COMPLETED
                yield self._checked(self._terminal_event())

            except UpstreamError as e:
                logger.warning(
                    "stream.upstream_error",
                    endpoint=self._endpoint,
                    error=str(e),
                    error_type=type(e).__name__,
                    discarded_chars=len(self._rechunker.buffer),
                    events_sent=self._events_sent,
                )
                if self._state is not StreamState.DRAINING:
                    self._advance(StreamState.DRAINING)
                outcome = StreamOutcome.INTERRUPTED
                yield self._checked(self._terminal_event(error=INTERRUPTED_MESSAGE))

        except Exception:
            outcome = StreamOutcome.FAILED
            logger.exception(
                "stream.failed",
                endpoint=self._endpoint,
                state=self._state.value,
                events_sent=self._events_sent,
            )
            raise

        finally:
            if self._title_task is not None and not self._title_task.done():
                self._title_task.cancel()

            duration_ms = (time.perf_counter() - started) * 1000
            record_stream(self._endpoint, outcome, duration_ms, self._events_sent)

            if self._state is StreamState.TERMINATED:
                logger.info(
                    "stream.complete",
                    endpoint=self._endpoint,
                    events=self._events_sent,
                    outcome=outcome.value,
                    duration_ms=round(duration_ms, 2),
                )
            elif outcome is StreamOutcome.DISCONNECTED:
                logger.info(
                    "stream.client_disconnected",
                    endpoint=self._endpoint,
                    state=self._state.value,
                    events=self._events_sent,
                )

            # Runs to completion even if this task is cancelled again
            await asyncio.shield(self._release(upstream))

    async def _release(self, upstream: AsyncGenerator[Tuple[str, str], None]) -> None:
        await upstream.aclose()
        await self._stream.aclose()

    async def frames(self) -> AsyncGenerator[str, None]:
        """Encoded SSE frames for StreamingResponse."""
        events = self.events()
        try:
            async for event in events:
                yield encode_frame(event)
        finally:
            await events.aclose()


def event_stream_response(frames: AsyncIterator[str]) -> StreamingResponse:
    """
    Wrap encoded frames in a text/event-stream response.

    Args:
        frames: Async iterator of already-encoded SSE frames

    Returns:
        StreamingResponse with no-cache/keep-alive headers

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
