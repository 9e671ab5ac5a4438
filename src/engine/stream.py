"""Stream handles: one server-push connection per session.

A StreamHandle owns exactly one connection for one session. It pulls SSE
frames from a *stream source*, normalizes each into an event and hands it to
its owner, strictly in arrival order. Transport failures are delivered as
``error`` events through the same callback; there is no separate error
channel and no automatic retry.

State machine::

    idle -> connecting -> open -> closed_normal
                              \\-> closed_error
"""

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from enum import Enum

import httpx

from src.engine.config import EngineConfig
from src.models.events import (
    CompleteEvent,
    ErrorEvent,
    FrameParseError,
    RawFrame,
    StreamEvent,
    parse_frame,
    transport_error,
)
from src.models.session import Session, SessionKind

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

# A stream source opens the connection for a session and yields its frames.
StreamSource = Callable[[Session], AbstractAsyncContextManager[AsyncIterator[RawFrame]]]
EventCallback = Callable[[StreamEvent], Awaitable[None]]


class StreamTransportError(Exception):
    """Raised by a stream source when the connection cannot be used."""

    pass


async def iter_sse_frames(lines: AsyncIterable[str]) -> AsyncIterator[RawFrame]:
    """Group text lines into SSE frames.

    Follows the event-stream format: ``field: value`` lines, frames separated
    by a blank line, ``:`` comment lines ignored. Multiple ``data`` lines are
    joined with newlines. ``[DONE]`` sentinels are skipped.

    Args:
        lines: Decoded lines without trailing newlines.

    Yields:
        One RawFrame per dispatched event.
    """
    event: str | None = None
    frame_id: str | None = None
    data: list[str] = []

    def flush() -> RawFrame | None:
        nonlocal event, frame_id, data
        frame = None
        payload = "\n".join(data)
        if data and payload.strip() != DONE_SENTINEL:
            frame = RawFrame(data=payload, event=event, id=frame_id)
        event, frame_id, data = None, None, []
        return frame

    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if frame := flush():
                yield frame
            continue
        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if name == "data":
            data.append(value)
        elif name == "event":
            event = value or None
        elif name == "id":
            frame_id = value or None

    if frame := flush():
        yield frame


class HttpStreamSource:
    """Opens SSE streams over HTTP with httpx.

    The URL is built from the path template for the session kind, or taken
    as is when the stream ref is already an absolute URL.
    """

    def __init__(self, config: EngineConfig, client: httpx.AsyncClient) -> None:
        self._config = config
        self._client = client

    def url_for(self, session: Session) -> str:
        """Return the stream URL for a session."""
        ref = session.stream_ref
        if ref.startswith(("http://", "https://")):
            return ref
        template = (
            self._config.task_stream_path
            if session.kind == SessionKind.TASK
            else self._config.chat_stream_path
        )
        return f"{self._config.api_base_url}{template.format(ref=ref)}"

    @asynccontextmanager
    async def __call__(self, session: Session) -> AsyncIterator[AsyncIterator[RawFrame]]:
        headers = {"Accept": "text/event-stream"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"

        async with self._client.stream(
            "GET", self.url_for(session), headers=headers
        ) as response:
            response.raise_for_status()
            yield iter_sse_frames(response.aiter_lines())


class HandleState(str, Enum):
    """Lifecycle of a stream handle."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_NORMAL = "closed_normal"
    CLOSED_ERROR = "closed_error"


_CLOSED = (HandleState.CLOSED_NORMAL, HandleState.CLOSED_ERROR)


class StreamHandle:
    """Owns one open stream for one session.

    Events are delivered by awaiting ``on_event`` from the handle's own task,
    so a slow callback (e.g. a citation fetch) pauses only this stream.
    """

    def __init__(
        self,
        session: Session,
        source: StreamSource,
        on_event: EventCallback,
        idle_timeout: float | None = None,
    ) -> None:
        self.session_id = session.id
        self._session = session
        self._source = source
        self._on_event = on_event
        self._idle_timeout = idle_timeout
        self._state = HandleState.IDLE
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state in _CLOSED

    def open(self) -> None:
        """Start connecting and delivering events.

        Must be called from a running event loop.

        Raises:
            RuntimeError: If the handle was already opened.
        """
        if self._state != HandleState.IDLE:
            raise RuntimeError(f"Stream handle for {self.session_id} already opened")
        self._state = HandleState.CONNECTING
        self._task = asyncio.create_task(self._run(), name=f"stream-{self.session_id}")

    def close(self) -> None:
        """Close the handle. Closing an already closed handle is a no-op.

        Returns immediately; connection teardown continues in the background
        and its outcome is discarded.
        """
        if self.is_closed:
            return
        self._state = HandleState.CLOSED_NORMAL
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the handle's task has finished."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _next_frame(self, frames: AsyncIterator[RawFrame]) -> RawFrame:
        if self._idle_timeout is None:
            return await anext(frames)
        try:
            return await asyncio.wait_for(anext(frames), timeout=self._idle_timeout)
        except TimeoutError as e:
            raise StreamTransportError(
                f"Stream idle for {self._idle_timeout:g} seconds"
            ) from e

    async def _pump(self, frames: AsyncIterator[RawFrame]) -> bool:
        """Deliver frames until the stream ends; return True on a terminal event."""
        while True:
            try:
                frame = await self._next_frame(frames)
            except StopAsyncIteration:
                return False

            try:
                event = parse_frame(frame, self.session_id)
            except FrameParseError as e:
                logger.warning(f"Dropping frame: {e}")
                continue
            if event is None:
                continue

            await self._on_event(event)
            if isinstance(event, CompleteEvent | ErrorEvent):
                return True
            if self.is_closed:
                return True

    async def _fail(self, message: str) -> None:
        self._state = HandleState.CLOSED_ERROR
        logger.warning(f"Stream for session {self.session_id} failed: {message}")
        await self._on_event(transport_error(self.session_id, message))

    async def _run(self) -> None:
        try:
            async with self._source(self._session) as frames:
                if self.is_closed:
                    return
                self._state = HandleState.OPEN
                logger.info(f"Stream opened for session {self.session_id}")
                terminal = await self._pump(frames)
        except httpx.HTTPStatusError as e:
            if not self.is_closed:
                await self._fail(f"HTTP {e.response.status_code}")
            return
        except httpx.RequestError as e:
            if not self.is_closed:
                await self._fail(f"Connection failed: {e}")
            return
        except (StreamTransportError, OSError) as e:
            if not self.is_closed:
                await self._fail(str(e) or type(e).__name__)
            return
        except Exception as e:
            logger.exception(f"Unexpected failure in stream for session {self.session_id}")
            if not self.is_closed:
                await self._fail(f"Stream failed: {e}")
            return

        if self.is_closed:
            return
        if terminal:
            self._state = HandleState.CLOSED_NORMAL
            logger.info(f"Stream closed for session {self.session_id}")
        else:
            await self._fail("Stream closed before completion")
