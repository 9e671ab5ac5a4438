"""Pytest fixtures and shared test configuration.

Provides reusable fixtures for unit and integration tests.

Fixtures:
    - engine_config: Engine configuration that never touches the environment
    - source: Scripted stream source fed frame by frame by the test
    - resolver: In-memory citation batch resolver
    - storage / store: Persistence backed by a plain dict
    - engine: SessionEngine wired to the fakes above
    - settle: Lets pending stream tasks run
    - stream_app / async_client: Reference server and HTTPX client for it
"""

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.api.app import create_app
from src.engine.config import EngineConfig
from src.engine.engine import SessionEngine
from src.engine.persistence import SessionStore
from src.engine.sources import SourcesResolutionError
from src.engine.stream import StreamTransportError
from src.models.events import RawFrame
from src.models.session import Session, Source


class ScriptedSource:
    """Stream source whose frames are pushed by the test, one queue per stream ref."""

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[RawFrame | None]] = {}
        self.opened: list[str] = []
        self.open_connections = 0
        self.refuse: set[str] = set()

    def _queue(self, stream_ref: str) -> asyncio.Queue[RawFrame | None]:
        return self._queues.setdefault(stream_ref, asyncio.Queue())

    def feed(self, stream_ref: str, event: str | None, payload: Any) -> None:
        """Queue one frame; payload is JSON-encoded unless it is already a string."""
        data = payload if isinstance(payload, str) else json.dumps(payload)
        self._queue(stream_ref).put_nowait(RawFrame(data=data, event=event))

    def end(self, stream_ref: str) -> None:
        """Close the stream from the server side."""
        self._queue(stream_ref).put_nowait(None)

    async def _frames(self, stream_ref: str) -> AsyncIterator[RawFrame]:
        queue = self._queue(stream_ref)
        while True:
            frame = await queue.get()
            if frame is None:
                return
            yield frame

    @asynccontextmanager
    async def __call__(self, session: Session) -> AsyncIterator[AsyncIterator[RawFrame]]:
        self.opened.append(session.stream_ref)
        if session.stream_ref in self.refuse:
            raise StreamTransportError("Connection refused")
        self.open_connections += 1
        try:
            yield self._frames(session.stream_ref)
        finally:
            self.open_connections -= 1


class FakeResolver:
    """Citation resolver serving batches from a dict."""

    def __init__(self) -> None:
        self.batches: dict[str, list[Source]] = {}
        self.calls: list[str] = []

    async def __call__(self, ref: str) -> list[Source]:
        self.calls.append(ref)
        if ref not in self.batches:
            raise SourcesResolutionError(f"HTTP 404 fetching sources {ref}")
        return self.batches[ref]


@pytest.fixture
def engine_config() -> EngineConfig:
    """Return a configuration independent of the environment.

    Returns:
        EngineConfig with in-memory persistence and no idle timeout.
    """
    return EngineConfig(
        api_base_url="http://test",
        api_token=None,
        idle_timeout=None,
        store_path=None,
        store_namespace="activeSessions",
    )


@pytest.fixture
def source() -> ScriptedSource:
    return ScriptedSource()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def storage() -> dict[str, Any]:
    """Plain dict standing in for per-tab storage."""
    return {}


@pytest.fixture
def store(storage: dict[str, Any]) -> SessionStore:
    return SessionStore(storage)


@pytest.fixture
async def engine(
    engine_config: EngineConfig,
    store: SessionStore,
    source: ScriptedSource,
    resolver: FakeResolver,
) -> AsyncGenerator[SessionEngine]:
    """Create an engine wired to the scripted source and fake resolver.

    Yields:
        SessionEngine, closed after the test.
    """
    engine = SessionEngine(engine_config, store=store, source=source, resolver=resolver)
    yield engine
    await engine.aclose()


@pytest.fixture
def settle() -> Callable[[], Awaitable[None]]:
    """Return a coroutine function that lets queued stream work run."""

    async def _settle(rounds: int = 25) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def stream_app() -> FastAPI:
    """Reference server with no delay between scripted steps."""
    return create_app(step_delay=0)


@pytest.fixture
async def async_client(stream_app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create async HTTP client for the reference server.

    Yields:
        Configured AsyncClient for making test requests.
    """
    transport = ASGITransport(app=stream_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
