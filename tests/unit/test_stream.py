"""Unit tests for SSE framing, the HTTP stream source and stream handles."""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_check as check

from src.engine.config import EngineConfig
from src.engine.stream import HandleState, HttpStreamSource, StreamHandle, iter_sse_frames
from src.models.events import ContentDeltaEvent, ErrorEvent, RawFrame, StreamEvent
from src.models.session import ExchangeState, Session, SessionKind, TaskState
from tests.conftest import ScriptedSource

Settle = Callable[[], Awaitable[None]]


async def lines_of(text: str) -> AsyncIterator[str]:
    for line in text.split("\n"):
        yield line


async def collect(text: str) -> list[RawFrame]:
    return [frame async for frame in iter_sse_frames(lines_of(text))]


def exchange(stream_ref: str = "chat-1") -> Session:
    return Session(id="x1", kind=SessionKind.EXCHANGE, stream_ref=stream_ref, state=ExchangeState())


class Recorder:
    """Event callback that records what it receives."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    async def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)


class TestIterSseFrames:
    """Tests for grouping lines into frames."""

    async def test_event_and_data_fields(self) -> None:
        frames = await collect('id: 1\nevent: status\ndata: {"progress": 10}\n\n')

        assert frames == [RawFrame(data='{"progress": 10}', event="status", id="1")]

    async def test_multiple_data_lines_are_joined(self) -> None:
        frames = await collect("data: first\ndata: second\n\n")

        assert frames[0].data == "first\nsecond"

    async def test_comments_and_done_sentinel_are_skipped(self) -> None:
        """Keep-alive comments and ``[DONE]`` never become frames."""
        frames = await collect(': keep-alive\n\ndata: {"delta": "a"}\n\ndata: [DONE]\n\n')

        check.equal(len(frames), 1)
        check.equal(frames[0].data, '{"delta": "a"}')
        check.is_none(frames[0].event)

    async def test_trailing_frame_without_blank_line_is_flushed(self) -> None:
        frames = await collect('event: complete\ndata: {}')

        assert frames == [RawFrame(data="{}", event="complete")]

    async def test_fields_reset_between_frames(self) -> None:
        frames = await collect("event: status\ndata: 1\n\ndata: 2\n\n")

        assert [(f.event, f.data) for f in frames] == [("status", "1"), (None, "2")]

    async def test_carriage_returns_are_stripped(self) -> None:
        frames = await collect("event: complete\r\ndata: {}\r\n\r\n")

        assert frames == [RawFrame(data="{}", event="complete")]


class TestHttpStreamSource:
    """Tests for opening SSE streams with httpx."""

    def test_url_from_template(self, engine_config: EngineConfig) -> None:
        source = HttpStreamSource(engine_config, httpx.AsyncClient())
        task = Session(id="t1", kind=SessionKind.TASK, stream_ref="abc", state=TaskState())

        check.equal(source.url_for(task), "http://test/tasks/abc/stream")
        check.equal(source.url_for(exchange("xyz")), "http://test/chat/xyz/stream")

    def test_absolute_ref_is_used_as_is(self, engine_config: EngineConfig) -> None:
        source = HttpStreamSource(engine_config, httpx.AsyncClient())

        assert source.url_for(exchange("https://other/stream/1")) == "https://other/stream/1"

    async def test_streams_frames_with_auth_header(self, engine_config: EngineConfig) -> None:
        """Requests accept event streams and carry the bearer token."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = 'event: content_delta\ndata: {"delta": "hi"}\n\nevent: complete\ndata: {}\n\n'
            return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

        config = engine_config.model_copy(update={"api_token": "secret"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            async with HttpStreamSource(config, client)(exchange()) as frames:
                received = [frame async for frame in frames]

        check.equal([f.event for f in received], ["content_delta", "complete"])
        check.equal(str(seen[0].url), "http://test/chat/chat-1/stream")
        check.equal(seen[0].headers["Accept"], "text/event-stream")
        check.equal(seen[0].headers["Authorization"], "Bearer secret")

    async def test_error_status_raises(self, engine_config: EngineConfig) -> None:
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        ) as client:
            with pytest.raises(httpx.HTTPStatusError):
                async with HttpStreamSource(engine_config, client)(exchange()):
                    pass


class TestStreamHandle:
    """Tests for the stream handle state machine."""

    async def test_delivers_events_in_order_then_closes(self) -> None:
        source = ScriptedSource()
        recorder = Recorder()
        handle = StreamHandle(exchange(), source, recorder)
        source.feed("chat-1", "content_delta", {"delta": "a"})
        source.feed("chat-1", "content_delta", {"delta": "b"})
        source.feed("chat-1", "complete", {})

        handle.open()
        await handle.wait_closed()

        check.equal([e.type for e in recorder.events], ["content_delta", "content_delta", "complete"])
        check.equal([e.delta for e in recorder.events[:2]], ["a", "b"])
        check.equal(handle.state, HandleState.CLOSED_NORMAL)
        check.equal(source.open_connections, 0)

    async def test_bad_frame_is_dropped(self) -> None:
        """A malformed frame does not close the stream."""
        source = ScriptedSource()
        recorder = Recorder()
        handle = StreamHandle(exchange(), source, recorder)
        source.feed("chat-1", "content_delta", "{not json")
        source.feed("chat-1", "content_delta", {"delta": "ok"})
        source.feed("chat-1", "complete", {})

        handle.open()
        await handle.wait_closed()

        assert [e.type for e in recorder.events] == ["content_delta", "complete"]

    async def test_refused_connection_is_an_error_event(self) -> None:
        source = ScriptedSource()
        source.refuse.add("chat-1")
        recorder = Recorder()
        handle = StreamHandle(exchange(), source, recorder)

        handle.open()
        await handle.wait_closed()

        assert len(recorder.events) == 1
        event = recorder.events[0]
        check.is_instance(event, ErrorEvent)
        check.equal(event.message, "Connection refused")
        check.equal(handle.state, HandleState.CLOSED_ERROR)

    async def test_stream_ending_early_is_an_error(self) -> None:
        source = ScriptedSource()
        recorder = Recorder()
        handle = StreamHandle(exchange(), source, recorder)
        source.feed("chat-1", "content_delta", {"delta": "a"})
        source.end("chat-1")

        handle.open()
        await handle.wait_closed()

        check.is_instance(recorder.events[-1], ErrorEvent)
        check.equal(recorder.events[-1].message, "Stream closed before completion")
        check.equal(handle.state, HandleState.CLOSED_ERROR)

    async def test_http_error_status_message(self, engine_config: EngineConfig) -> None:
        recorder = Recorder()
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        ) as client:
            handle = StreamHandle(exchange(), HttpStreamSource(engine_config, client), recorder)
            handle.open()
            await handle.wait_closed()

        assert [e.message for e in recorder.events] == ["HTTP 503"]

    async def test_idle_timeout_fails_the_stream(self) -> None:
        source = ScriptedSource()
        recorder = Recorder()
        handle = StreamHandle(exchange(), source, recorder, idle_timeout=0.01)

        handle.open()
        await asyncio.wait_for(handle.wait_closed(), timeout=1)

        assert len(recorder.events) == 1
        check.is_in("idle", recorder.events[0].message)
        check.equal(handle.state, HandleState.CLOSED_ERROR)

    async def test_close_stops_delivery_without_error(self, settle: Settle) -> None:
        """Closing is silent: no error event and no further frames."""
        source = ScriptedSource()
        recorder = Recorder()
        handle = StreamHandle(exchange(), source, recorder)
        source.feed("chat-1", "content_delta", {"delta": "a"})

        handle.open()
        await settle()
        handle.close()
        source.feed("chat-1", "content_delta", {"delta": "b"})
        await handle.wait_closed()

        check.equal([e.delta for e in recorder.events if isinstance(e, ContentDeltaEvent)], ["a"])
        check.equal(handle.state, HandleState.CLOSED_NORMAL)
        check.equal(source.open_connections, 0)

    async def test_close_is_idempotent(self) -> None:
        handle = StreamHandle(exchange(), ScriptedSource(), Recorder())
        handle.open()

        handle.close()
        handle.close()
        await handle.wait_closed()

        assert handle.is_closed

    async def test_close_before_open(self) -> None:
        handle = StreamHandle(exchange(), ScriptedSource(), Recorder())

        handle.close()

        assert handle.state == HandleState.CLOSED_NORMAL
        with pytest.raises(RuntimeError):
            handle.open()

    async def test_open_twice_raises(self) -> None:
        handle = StreamHandle(exchange(), ScriptedSource(), Recorder())
        handle.open()

        with pytest.raises(RuntimeError):
            handle.open()

        handle.close()
        await handle.wait_closed()

    async def test_unexpected_source_failure_is_an_error_event(self) -> None:
        """Any exception escaping the source ends the stream with an error event."""

        async def frames() -> AsyncIterator[RawFrame]:
            yield RawFrame(data='{"delta": "a"}', event="content_delta")
            raise RuntimeError("decoder exploded")

        @asynccontextmanager
        async def broken_source(session: Session) -> AsyncIterator[AsyncIterator[RawFrame]]:
            yield frames()

        recorder = Recorder()
        handle = StreamHandle(exchange(), broken_source, recorder)

        handle.open()
        await handle.wait_closed()

        check.equal([e.type for e in recorder.events], ["content_delta", "error"])
        check.equal(recorder.events[-1].message, "Stream failed: decoder exploded")
        check.equal(handle.state, HandleState.CLOSED_ERROR)

    async def test_non_finite_progress_does_not_kill_the_stream(self) -> None:
        source = ScriptedSource()
        recorder = Recorder()
        task = Session(id="t1", kind=SessionKind.TASK, stream_ref="task-1", state=TaskState())
        handle = StreamHandle(task, source, recorder)
        source.feed("task-1", "status", '{"progress": 1e400, "step": "embedding"}')
        source.feed("task-1", "status", {"progress": 40, "step": "embedding"})
        source.feed("task-1", "complete", {"result_id": "doc_1"})

        handle.open()
        await handle.wait_closed()

        check.equal([e.type for e in recorder.events], ["status", "complete"])
        check.equal(handle.state, HandleState.CLOSED_NORMAL)
