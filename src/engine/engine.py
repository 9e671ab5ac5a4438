"""Session engine: the public entry point for streamed work.

The engine owns the session registry, one stream handle per session and the
persistence store, and is the only writer to any of them. Callers start,
cancel and remove sessions; UI code subscribes with ``on_change`` and renders
whatever sessions it is handed.

Every inbound event goes through the same pipeline:

1. superseded-handle guard: events from a replaced handle are dropped
2. stale-id guard: events for unregistered sessions are dropped silently
3. terminal guard: finished sessions never change again
4. ``sources_ref`` resolution (the only extra suspension point)
5. reducer
6. listener notification
7. persistence snapshot of the non-terminal sessions

Reconnection happens only through ``restore()``, which callers invoke
explicitly once per process (or page) start.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Any

import httpx

from src.engine.config import EngineConfig, get_engine_config
from src.engine.persistence import JsonFileStorage, SessionStore
from src.engine.reducer import reduce, transition
from src.engine.registry import SessionRegistry
from src.engine.sources import HttpSourcesResolver, SourcesResolutionError, SourcesResolver
from src.engine.stream import HttpStreamSource, StreamHandle, StreamSource
from src.models.events import SourcesEvent, SourcesRefEvent, StreamEvent
from src.models.session import Session, SessionKind, SessionStatus, initial_state, utc_now

logger = logging.getLogger(__name__)

SessionListener = Callable[[Session], None]


class SessionEngine:
    """Tracks streamed sessions and keeps their state consistent.

    All methods must be called from the thread running the event loop;
    ``start``, ``subscribe`` and ``restore`` additionally need a running
    loop because they open connections.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        store: SessionStore | None = None,
        source: StreamSource | None = None,
        resolver: SourcesResolver | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration. Loads from environment if not provided.
            store: Persistence store. Defaults to a JSON file when
                ``config.store_path`` is set, else an in-memory mapping.
            source: Opens streams. Defaults to SSE over HTTP.
            resolver: Fetches ``sources_ref`` batches. Defaults to HTTP.
            client: Shared HTTP client for the default source and resolver.
                Created on first use (and closed by ``aclose``) if not given.
        """
        self._config = config or get_engine_config()
        self._store = store or self._create_store()
        self._source = source
        self._resolver = resolver
        self._client = client
        self._owns_client = client is None
        self._registry = SessionRegistry()
        self._handles: dict[str, StreamHandle] = {}
        self._listeners: list[SessionListener] = []
        self._restored = False

    def _create_store(self) -> SessionStore:
        if self._config.store_path is not None:
            return SessionStore(JsonFileStorage(self._config.store_path), self._config.store_namespace)
        return SessionStore(namespace=self._config.store_namespace)

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Streams may stay silent for long stretches; only connecting is bounded.
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(None, connect=self._config.connect_timeout)
            )
        return self._client

    def _stream_source(self) -> StreamSource:
        if self._source is None:
            self._source = HttpStreamSource(self._config, self._http_client())
        return self._source

    def _sources_resolver(self) -> SourcesResolver:
        if self._resolver is None:
            self._resolver = HttpSourcesResolver(self._config, self._http_client())
        return self._resolver

    # === Listeners ===

    def on_change(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener called with the full session on every change.

        Listeners are also called with the last snapshot of a session when it
        is removed; ``get()`` returns None for it at that point.

        Args:
            listener: Callback taking the changed Session. Must not block.

        Returns:
            A function that unregisters the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, session: Session) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception(f"Session listener failed for {session.id}")

    def _persist(self) -> None:
        try:
            self._store.save(self._registry)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to persist sessions: {e}")

    def _commit(self, session: Session) -> None:
        self._registry.update(session)
        self._notify(session)
        self._persist()

    # === Read accessors ===

    def get(self, session_id: str) -> Session | None:
        """Return the current snapshot of a session."""
        return self._registry.get(session_id)

    def sessions(self) -> list[Session]:
        """Return all tracked sessions in registry order."""
        return self._registry.values()

    def active_sessions(self) -> list[Session]:
        """Return the non-terminal sessions in registry order."""
        return self._registry.active()

    def has_open_stream(self, session_id: str) -> bool:
        """Whether a live stream handle exists for the session."""
        handle = self._handles.get(session_id)
        return handle is not None and not handle.is_closed

    # === Lifecycle ===

    def start(
        self,
        kind: SessionKind | str,
        stream_ref: str,
        seed: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> str:
        """Register a new session and start streaming it.

        A session already registered under the same id is superseded: its
        stream is closed and the new session takes its place.

        Args:
            kind: ``task`` or ``exchange``.
            stream_ref: Server-issued stream identifier.
            seed: Initial state fields (e.g. ``file_name`` or ``prompt``).
            session_id: Caller-assigned id; a uuid4 is generated if omitted.

        Returns:
            The session id.

        Raises:
            ValueError: If the kind, stream ref or seed is invalid.
        """
        kind = SessionKind(kind)
        if not stream_ref or not stream_ref.strip():
            raise ValueError("stream_ref is required to start a session")

        session_id = session_id or str(uuid.uuid4())
        now = utc_now()
        session = Session(
            id=session_id,
            kind=kind,
            stream_ref=stream_ref,
            state=initial_state(kind, seed),
            created_at=now,
            updated_at=now,
        )

        self._close_handle(session_id)
        if self._registry.put(session) is not None:
            logger.info(f"Session {session_id} superseded by a new {kind.value} session")
        self._notify(session)
        self._persist()

        self.subscribe(session_id)
        return session_id

    def subscribe(self, session_id: str) -> None:
        """Open a stream for a registered session.

        Any existing handle for the session is closed first, so a session
        never has more than one open stream.

        Raises:
            KeyError: If the session is not registered.
        """
        session = self._registry.get(session_id)
        if session is None:
            raise KeyError(session_id)
        if session.is_terminal:
            logger.info(f"Not subscribing to finished session {session_id}")
            return

        self._close_handle(session_id)
        self._commit(transition(session, SessionStatus.CONNECTING, utc_now()))

        handle = StreamHandle(
            session,
            self._stream_source(),
            lambda event: self._deliver(handle, event),
            idle_timeout=self._config.idle_timeout,
        )
        self._handles[session_id] = handle
        handle.open()
        logger.info(f"Subscribed to {session.kind.value} session {session_id}")

    def cancel(self, session_id: str) -> Session | None:
        """Stop a session's stream and mark it cancelled.

        Unknown or already finished sessions are left untouched.

        Returns:
            The session after the call, or None if it is not registered.
        """
        session = self._registry.get(session_id)
        if session is None or session.is_terminal:
            return session

        self._close_handle(session_id)
        cancelled = transition(session, SessionStatus.CANCELLED, utc_now())
        self._commit(cancelled)
        logger.info(f"Cancelled session {session_id}")
        return cancelled

    def remove(self, session_id: str) -> bool:
        """Dismiss a session: close its stream and drop it from the registry.

        Returns:
            True if the session was registered.
        """
        self._close_handle(session_id)
        removed = self._registry.remove(session_id)
        if removed is None:
            return False
        self._notify(removed)
        self._persist()
        return True

    def clear_completed(self) -> int:
        """Remove every session with a terminal status.

        Returns:
            Number of sessions removed.
        """
        finished = self._registry.terminal()
        for session in finished:
            self.remove(session.id)
        return len(finished)

    def restore(self) -> list[str]:
        """Re-register persisted in-flight sessions and resubscribe them.

        Effective once per engine; later calls return an empty list. Sessions
        already registered under a persisted id are kept as they are.

        Returns:
            Ids of the restored sessions.
        """
        if self._restored:
            return []
        self._restored = True

        restored: list[str] = []
        for session in self._store.load():
            if session.id in self._registry:
                logger.info(f"Skipping restore of {session.id}: already registered")
                continue
            self._registry.put(session)
            self.subscribe(session.id)
            restored.append(session.id)

        if restored:
            logger.info(f"Restored {len(restored)} in-flight session(s)")
        return restored

    async def wait(self, session_id: str) -> None:
        """Wait for the session's current stream to finish, if it has one."""
        handle = self._handles.get(session_id)
        if handle is not None:
            await handle.wait_closed()

    def detach(self) -> None:
        """Close every stream without touching session status.

        Used on teardown: in-flight sessions stay persisted and are picked up
        by the next ``restore()``.
        """
        for session_id in list(self._handles):
            self._close_handle(session_id)

    async def aclose(self) -> None:
        """Detach all streams and release the HTTP client."""
        handles = list(self._handles.values())
        self.detach()
        for handle in handles:
            await handle.wait_closed()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _close_handle(self, session_id: str) -> None:
        handle = self._handles.pop(session_id, None)
        if handle is not None:
            handle.close()

    # === Event pipeline ===

    async def _deliver(self, handle: StreamHandle, event: StreamEvent) -> None:
        if self._handles.get(handle.session_id) is not handle:
            logger.debug(f"Dropping {event.type} from a replaced stream for {handle.session_id}")
            return
        await self.dispatch(event)

    def _accepts(self, event: StreamEvent) -> Session | None:
        session = self._registry.get(event.session_id)
        if session is None:
            logger.debug(f"Dropping {event.type} for unknown session {event.session_id}")
            return None
        if session.is_terminal:
            logger.debug(f"Dropping {event.type} for finished session {event.session_id}")
            return None
        return session

    async def _resolve_sources(self, event: SourcesRefEvent) -> SourcesEvent | None:
        try:
            sources = await self._sources_resolver()(event.ref)
        except SourcesResolutionError as e:
            logger.warning(f"Dropping sources_ref for session {event.session_id}: {e}")
            return None
        return SourcesEvent(
            session_id=event.session_id, sources=sources, received_at=event.received_at
        )

    async def dispatch(self, event: StreamEvent) -> None:
        """Apply one normalized event to the session it references.

        Events for unknown or finished sessions are dropped without error.

        Args:
            event: The event; ``event.session_id`` selects the session.
        """
        session = self._accepts(event)
        if session is None:
            return

        if isinstance(event, SourcesRefEvent):
            if session.kind != SessionKind.EXCHANGE:
                logger.debug(f"Ignoring sources_ref for task session {session.id}")
                return
            resolved = await self._resolve_sources(event)
            # The session may have been cancelled or removed while fetching.
            session = self._accepts(event) if resolved is not None else None
            if session is None:
                return
            event = resolved

        updated = reduce(session, event)
        if updated is session:
            logger.debug(f"Ignoring {event.type} for {session.kind.value} session {session.id}")
            return
        self._commit(updated)

        if updated.is_terminal:
            self._close_handle(updated.id)
            logger.info(f"Session {updated.id} finished with status {updated.status.value}")


# Module-level singleton instance
_session_engine: SessionEngine | None = None


def get_session_engine() -> SessionEngine:
    """Get or create the global session engine.

    Returns:
        The SessionEngine instance.
    """
    global _session_engine
    if _session_engine is None:
        _session_engine = SessionEngine()
    return _session_engine
