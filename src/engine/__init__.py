"""Streaming session engine.

Turns server-pushed event streams into durable, navigable session state.

Responsibilities:
    - Stream handles: one SSE connection per session, closed exactly once
    - Reducer: pure folding of events into session state
    - Registry: the single source of truth for tracked sessions
    - Persistence: snapshots of in-flight sessions for restore after reload
    - Engine: start, cancel, restore and change notification

Keeps transport (httpx) and storage details behind the engine's API, so UI
code only ever sees Session snapshots.
"""

from src.engine.config import EngineConfig, get_engine_config
from src.engine.engine import SessionEngine, SessionListener, get_session_engine
from src.engine.persistence import JsonFileStorage, SessionStore
from src.engine.reducer import reduce, transition
from src.engine.registry import SessionRegistry
from src.engine.sources import HttpSourcesResolver, SourcesResolutionError
from src.engine.stream import (
    HandleState,
    HttpStreamSource,
    StreamHandle,
    StreamTransportError,
    iter_sse_frames,
)

__all__ = [
    "EngineConfig",
    "HandleState",
    "HttpSourcesResolver",
    "HttpStreamSource",
    "JsonFileStorage",
    "SessionEngine",
    "SessionListener",
    "SessionRegistry",
    "SessionStore",
    "SourcesResolutionError",
    "StreamHandle",
    "StreamTransportError",
    "get_engine_config",
    "get_session_engine",
    "iter_sse_frames",
    "reduce",
    "transition",
]
