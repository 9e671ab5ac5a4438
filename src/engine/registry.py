"""In-memory session registry.

The registry is the engine's single source of truth for session state. It is
insertion-ordered so listings and persistence snapshots iterate
deterministically. Only the engine writes to it.
"""

from collections.abc import Iterator

from src.models.session import Session


class SessionRegistry:
    """Insertion-ordered mapping of session id to Session."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def put(self, session: Session) -> Session | None:
        """Insert a session, superseding any session with the same id.

        A superseding session moves to the end of the iteration order.

        Returns:
            The session that was replaced, if any.
        """
        previous = self._sessions.pop(session.id, None)
        self._sessions[session.id] = session
        return previous

    def update(self, session: Session) -> None:
        """Replace a registered session in place, keeping its position.

        Raises:
            KeyError: If the session id is not registered.
        """
        if session.id not in self._sessions:
            raise KeyError(session.id)
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        """Remove a session and return it, or None if it was not registered."""
        return self._sessions.pop(session_id, None)

    def active(self) -> list[Session]:
        """Sessions whose status is not terminal, in registry order."""
        return [s for s in self._sessions.values() if not s.is_terminal]

    def terminal(self) -> list[Session]:
        """Sessions whose status is terminal, in registry order."""
        return [s for s in self._sessions.values() if s.is_terminal]

    def values(self) -> list[Session]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
