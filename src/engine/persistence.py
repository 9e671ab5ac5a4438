"""Persistence of in-flight sessions across restarts.

After every registry mutation the engine hands its sessions to a
SessionStore, which keeps only the non-terminal ones under a fixed
namespace key. On restore the entries are validated and anything
structurally invalid is discarded.

The backing storage is any mutable mapping: a plain dict, NiceGUI's
per-tab ``app.storage.tab``, or a JsonFileStorage for command-line use.
Writes are last-write-wins; the engine is the only writer.
"""

import json
import logging
import os
from collections.abc import Iterable, Iterator, MutableMapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from src.models.session import Session

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "activeSessions"

# Fields written for each session; created_at is not persisted.
PERSISTED_FIELDS = {"id", "kind", "stream_ref", "status", "state", "updated_at"}


class JsonFileStorage(MutableMapping[str, Any]):
    """A mutable mapping persisted to a JSON file.

    Every write rewrites the file through a temporary file and an atomic
    rename, so a crash never leaves a half-written snapshot.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] = self._read()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session store {self._path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring session store {self._path}: not a JSON object")
            return {}
        return data

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._write()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._write()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


def to_entry(session: Session) -> dict[str, Any]:
    """Serialize a session into its persisted layout."""
    return session.model_dump(mode="json", include=PERSISTED_FIELDS)


def from_entry(entry: Any) -> Session:
    """Rebuild a session from a persisted entry.

    Raises:
        ValueError: If the entry is structurally invalid.
    """
    if not isinstance(entry, dict):
        raise ValueError(f"entry is {type(entry).__name__}, expected an object")
    missing = {"id", "kind", "stream_ref", "state"} - entry.keys()
    if missing:
        raise ValueError(f"entry is missing {', '.join(sorted(missing))}")
    data = {key: entry[key] for key in PERSISTED_FIELDS if key in entry}
    if "updated_at" in data:
        data["created_at"] = data["updated_at"]
    try:
        return Session.model_validate(data)
    except ValidationError as e:
        raise ValueError(str(e)) from e


class SessionStore:
    """Snapshots non-terminal sessions into a namespaced storage key."""

    def __init__(
        self,
        storage: MutableMapping[str, Any] | None = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self._storage: MutableMapping[str, Any] = storage if storage is not None else {}
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    def save(self, sessions: Iterable[Session]) -> None:
        """Overwrite the snapshot with the non-terminal sessions given."""
        self._storage[self._namespace] = [
            to_entry(session) for session in sessions if not session.is_terminal
        ]

    def load(self) -> list[Session]:
        """Read the snapshot, discarding invalid and terminal entries.

        Returns:
            Restorable sessions in persisted order.
        """
        raw = self._storage.get(self._namespace)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning(f"Discarding session snapshot {self._namespace!r}: not a list")
            return []

        sessions: list[Session] = []
        for index, entry in enumerate(raw):
            try:
                session = from_entry(entry)
            except ValueError as e:
                logger.warning(f"Discarding persisted session #{index}: {e}")
                continue
            if session.is_terminal:
                logger.warning(f"Discarding persisted session {session.id}: already terminal")
                continue
            sessions.append(session)
        return sessions

    def clear(self) -> None:
        """Remove the snapshot from storage."""
        self._storage.pop(self._namespace, None)
