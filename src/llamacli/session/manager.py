"""
session/manager.py — Session Manager

Owns the live Session objects for this process and the storage backend they
checkpoint to. Each session gets its own ShellSafetyGate.
Uses asyncio.Lock for safe concurrent access.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional

from llamacli.exceptions import SessionNotFoundError
from llamacli.observability.logger import get_logger
from llamacli.safety.shell_gate import ShellSafetyGate
from llamacli.session.state import Session
from llamacli.session.storage import (
    FileStorageBackend,
    InMemoryStorageBackend,
    SessionStorageBackend,
)
from llamacli.session.types import SessionFilter, SessionMetadata, SessionPriority, SessionStatus

log = get_logger(__name__)

ShellFactory = Callable[[str, Optional[str]], ShellSafetyGate]


def storage_from_settings(settings) -> SessionStorageBackend:
    if settings.session.backend == "memory":
        return InMemoryStorageBackend()
    return FileStorageBackend(settings.session_dir)


def shell_factory_from_settings(settings) -> ShellFactory:
    shell_cfg = settings.shell

    def factory(session_id: str, working_directory: Optional[str]) -> ShellSafetyGate:
        return ShellSafetyGate(
            working_directory=working_directory or shell_cfg.working_dir,
            timeout_seconds=shell_cfg.timeout_seconds,
            history_size=shell_cfg.history_size,
            allowlist_scope=shell_cfg.allowlist_scope,
            max_output_chars=shell_cfg.max_output_chars,
            session_id=session_id,
        )

    return factory


def _default_shell_factory(session_id: str, working_directory: Optional[str]) -> ShellSafetyGate:
    return ShellSafetyGate(working_directory=working_directory or ".", session_id=session_id)


class SessionManager:
    """
    Async-safe registry of open sessions.

    Sessions are created with create(), reopened from storage with open()
    (integrity-checked), and branched with branch().
    """

    def __init__(
        self,
        storage: Optional[SessionStorageBackend] = None,
        shell_factory: Optional[ShellFactory] = None,
        settings_snapshot: Optional[dict[str, Any]] = None,
    ):
        self.storage = storage if storage is not None else InMemoryStorageBackend()
        self._shell_factory = shell_factory or _default_shell_factory
        self._settings_snapshot = dict(settings_snapshot or {})
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "SessionManager":
        return cls(
            storage=storage_from_settings(settings),
            shell_factory=shell_factory_from_settings(settings),
            settings_snapshot={
                "provider": settings.llm.provider,
                "model": settings.llm.model,
                "replay_thinking": settings.agent.replay_thinking,
                "allowlist_scope": settings.shell.allowlist_scope,
            },
        )

    async def create(
        self,
        name: Optional[str] = None,
        priority: SessionPriority = SessionPriority.NORMAL,
        tags: Optional[list[str]] = None,
        working_directory: Optional[str | Path] = None,
    ) -> Session:
        session = Session.create(
            name=name,
            storage=self.storage,
            priority=priority,
            tags=tags,
            settings_snapshot=self._settings_snapshot,
        )
        session.shell = self._shell_factory(
            session.id, str(working_directory) if working_directory else None
        )
        session.metadata.working_directory = str(session.shell.working_directory)
        async with self._lock:
            self._sessions[session.id] = session
        await session.checkpoint()
        log.info("session_manager.created", session_id=session.id)
        return session

    async def open(self, session_id: str) -> Session:
        """Return the cached session or load it. Raises SessionIntegrityError on tamper."""
        async with self._lock:
            cached = self._sessions.get(session_id)
            if cached is not None:
                return cached

            persisted = await self.storage.load(session_id)
            if persisted is None:
                raise SessionNotFoundError(session_id)
            shell = self._shell_factory(session_id, _existing_dir(persisted.metadata.working_directory))
            session = Session.from_persisted(persisted, storage=self.storage, shell=shell)
            self._sessions[session_id] = session

        log.info("session_manager.opened", session_id=session_id, version=session.version)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def branch(self, session: Session, at_message_index: int, name: Optional[str] = None) -> Session:
        async with session.lock:
            child = session.branch(at_message_index, name=name)
            child.shell = self._shell_factory(child.id, _existing_dir(session.metadata.working_directory))
            if session.shell is not None:
                child.shell.import_allowlist(session.shell.export_allowlist())
            await session.checkpoint()
        await child.checkpoint()
        async with self._lock:
            self._sessions[child.id] = child
        return child

    async def list(self, filter: Optional[SessionFilter] = None) -> list[SessionMetadata]:
        return await self.storage.list(filter)

    async def most_recent(self) -> Optional[SessionMetadata]:
        found = await self.storage.list(
            SessionFilter(status=[SessionStatus.ACTIVE, SessionStatus.PAUSED], limit=1)
        )
        return found[0] if found else None

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            self._sessions.pop(session_id, None)
        return await self.storage.delete(session_id)

    async def close_all(self) -> None:
        """Checkpoint every open session; used on shutdown."""
        async with self._lock:
            sessions = [s for s in self._sessions.values()]
        for session in sessions:
            async with session.lock:
                await session.checkpoint()

    @property
    def count(self) -> int:
        return len(self._sessions)


def _existing_dir(path: Optional[str]) -> Optional[str]:
    if path and Path(path).is_dir():
        return path
    return None
