"""
session/storage.py — Session Storage Backends

SessionStorageBackend is the interface the session layer talks to:

    save(persisted)        write or overwrite one session
    load(session_id)       PersistedSession, or None if unknown
    list(filter)           metadata of matching sessions
    delete(session_id)     True if something was removed

Two implementations:
    InMemoryStorageBackend   tests, --ephemeral runs
    FileStorageBackend       one JSON document per session, atomic replace
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from llamacli.exceptions import SessionError
from llamacli.observability.logger import get_logger
from llamacli.session.types import PersistedSession, SessionFilter, SessionMetadata

log = get_logger(__name__)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class SessionStorageBackend(ABC):

    @abstractmethod
    async def save(self, persisted: PersistedSession) -> None:
        ...

    @abstractmethod
    async def load(self, session_id: str) -> Optional[PersistedSession]:
        ...

    @abstractmethod
    async def list(self, filter: Optional[SessionFilter] = None) -> list[SessionMetadata]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...


class InMemoryStorageBackend(SessionStorageBackend):
    """Keeps deep copies so callers can't mutate stored state by accident."""

    def __init__(self):
        self._store: dict[str, PersistedSession] = {}
        self._lock = asyncio.Lock()

    async def save(self, persisted: PersistedSession) -> None:
        async with self._lock:
            self._store[persisted.metadata.id] = persisted.model_copy(deep=True)

    async def load(self, session_id: str) -> Optional[PersistedSession]:
        async with self._lock:
            found = self._store.get(session_id)
            return found.model_copy(deep=True) if found is not None else None

    async def list(self, filter: Optional[SessionFilter] = None) -> list[SessionMetadata]:
        async with self._lock:
            metas = [p.metadata.model_copy(deep=True) for p in self._store.values()]
        return (filter or SessionFilter()).apply(metas)

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._store.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._store)


class FileStorageBackend(SessionStorageBackend):
    """
    <root>/<session_id>.json, written via temp file + os.replace so a crash
    mid-write never leaves a half-written session behind.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, session_id: str) -> Path:
        if not _SAFE_ID_RE.match(session_id):
            raise SessionError(f"Invalid session id: {session_id!r}")
        return self.root / f"{session_id}.json"

    async def save(self, persisted: PersistedSession) -> None:
        path = self._path_for(persisted.metadata.id)
        payload = persisted.model_dump_json(indent=2)
        await asyncio.to_thread(self._atomic_write, path, payload)
        log.debug("session_storage.saved", session_id=persisted.metadata.id, path=str(path))

    def _atomic_write(self, path: Path, payload: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def load(self, session_id: str) -> Optional[PersistedSession]:
        path = self._path_for(session_id)
        if not path.exists():
            return None
        raw = await asyncio.to_thread(path.read_text, "utf-8")
        try:
            return PersistedSession.model_validate_json(raw)
        except ValidationError as e:
            raise SessionError(f"Session file {path.name} is unreadable: {e}") from e

    async def list(self, filter: Optional[SessionFilter] = None) -> list[SessionMetadata]:
        metas = await asyncio.to_thread(self._read_all_metadata)
        return (filter or SessionFilter()).apply(metas)

    def _read_all_metadata(self) -> list[SessionMetadata]:
        metas: list[SessionMetadata] = []
        for path in sorted(self.root.glob("*.json")):
            try:
                metas.append(PersistedSession.model_validate_json(path.read_text("utf-8")).metadata)
            except (ValidationError, OSError) as e:
                log.warning("session_storage.skip_unreadable", path=str(path), error=str(e))
        return metas

    async def delete(self, session_id: str) -> bool:
        path = self._path_for(session_id)
        if not path.exists():
            return False
        await asyncio.to_thread(path.unlink)
        log.info("session_storage.deleted", session_id=session_id)
        return True
