"""
session/state.py — Session State Machine

One Session per conversation. Holds the append-only message history, the
thinking archive, usage stats and the lifecycle status:

    active ⇄ paused
    active → completed
    active | paused → archived
    *      → error

Only active sessions accept messages. checkpoint() bumps the version,
recomputes the SHA-256 checksum over the persisted snapshot and hands the
snapshot to the storage backend. from_persisted() re-verifies the checksum.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from llamacli.brain.types import Message, ThinkingBlock, ToolCallRecord, ToolCallStatus, TokenUsage
from llamacli.exceptions import (
    BranchError,
    InvalidSessionTransition,
    SessionIntegrityError,
    SessionNotActiveError,
)
from llamacli.observability.logger import get_logger
from llamacli.session.types import (
    PersistedSession,
    SessionBranch,
    SessionMetadata,
    SessionPriority,
    SessionStatus,
)

if TYPE_CHECKING:
    from llamacli.safety.shell_gate import ShellSafetyGate
    from llamacli.session.storage import SessionStorageBackend

log = get_logger(__name__)


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.ARCHIVED,
        SessionStatus.ERROR,
    }),
    SessionStatus.PAUSED: frozenset({
        SessionStatus.ACTIVE,
        SessionStatus.ARCHIVED,
        SessionStatus.ERROR,
    }),
    SessionStatus.COMPLETED: frozenset({SessionStatus.ERROR}),
    SessionStatus.ARCHIVED: frozenset({SessionStatus.ERROR}),
    SessionStatus.ERROR: frozenset(),
}


def compute_checksum(persisted: PersistedSession) -> str:
    """
    SHA-256 over canonical JSON of the whole persisted snapshot: history,
    thinking archive, settings, shell allowlist and metadata (minus the
    checksum itself).
    """
    payload = persisted.model_dump(mode="json", exclude={"metadata": {"checksum"}})
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class Session:
    """All runtime state for one conversation."""

    def __init__(
        self,
        metadata: SessionMetadata,
        messages: Optional[list[Message]] = None,
        thinking_blocks: Optional[list[ThinkingBlock]] = None,
        storage: Optional["SessionStorageBackend"] = None,
        shell: Optional["ShellSafetyGate"] = None,
        settings_snapshot: Optional[dict[str, Any]] = None,
    ):
        self.metadata = metadata
        self._messages: list[Message] = list(messages or [])
        self._thinking: list[ThinkingBlock] = list(thinking_blocks or [])
        self.storage = storage
        self.shell = shell
        self.settings_snapshot: dict[str, Any] = dict(settings_snapshot or {})
        self.lock = asyncio.Lock()

    @classmethod
    def create(
        cls,
        name: Optional[str] = None,
        storage: Optional["SessionStorageBackend"] = None,
        shell: Optional["ShellSafetyGate"] = None,
        priority: SessionPriority = SessionPriority.NORMAL,
        tags: Optional[list[str]] = None,
        settings_snapshot: Optional[dict[str, Any]] = None,
    ) -> "Session":
        metadata = SessionMetadata(priority=priority, tags=list(tags or []))
        metadata.name = name or f"Session {metadata.created_at:%Y-%m-%d %H:%M}"
        if shell is not None:
            metadata.working_directory = str(shell.working_directory)
        session = cls(metadata, storage=storage, shell=shell, settings_snapshot=settings_snapshot)
        log.info("session.created", session_id=session.id, name=metadata.name)
        return session

    # ── Read access ───────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def status(self) -> SessionStatus:
        return self.metadata.status

    @property
    def is_active(self) -> bool:
        return self.metadata.status == SessionStatus.ACTIVE

    @property
    def version(self) -> int:
        return self.metadata.version

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def thinking_blocks(self) -> tuple[ThinkingBlock, ...]:
        return tuple(self._thinking)

    def __len__(self) -> int:
        return len(self._messages)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _transition(self, target: SessionStatus) -> None:
        current = self.metadata.status
        if target not in _TRANSITIONS[current]:
            raise InvalidSessionTransition(current.value, target.value)
        self.metadata.status = target
        self._touch()
        log.info("session.transition", session_id=self.id, from_status=current.value, to_status=target.value)

    async def pause(self) -> None:
        self._transition(SessionStatus.PAUSED)
        await self.checkpoint()

    async def resume(self) -> None:
        self._transition(SessionStatus.ACTIVE)

    async def complete(self) -> None:
        self._transition(SessionStatus.COMPLETED)
        await self.checkpoint()

    async def archive(self) -> None:
        self._transition(SessionStatus.ARCHIVED)
        await self.checkpoint()

    async def fail(self, reason: str) -> None:
        if self.metadata.status == SessionStatus.ERROR:
            return
        self._transition(SessionStatus.ERROR)
        self.metadata.error_reason = reason
        await self.checkpoint()

    # ── Mutation (active only) ────────────────────────────────────────────────

    def _require_active(self) -> None:
        if not self.is_active:
            raise SessionNotActiveError(self.id, self.metadata.status.value)

    def _touch(self) -> None:
        self.metadata.last_activity = datetime.now(timezone.utc)

    def append_message(self, message: Message) -> None:
        self._require_active()
        self._messages.append(message)
        self.metadata.stats.message_count = len(self._messages)
        self._touch()

    def archive_thinking(self, block: ThinkingBlock) -> bool:
        """Keep a closed reasoning span. Blank spans are dropped."""
        if block.is_blank:
            return False
        self._thinking.append(block)
        return True

    def clear_thinking(self) -> None:
        self._thinking.clear()

    def record_tool_result(self, record: ToolCallRecord) -> None:
        self._require_active()
        stats = self.metadata.stats
        stats.tool_call_count += 1
        if record.status == ToolCallStatus.SUCCEEDED:
            stats.successful_tool_calls += 1
        else:
            stats.failed_tool_calls += 1

    def record_token_usage(self, usage: TokenUsage) -> None:
        stats = self.metadata.stats
        stats.input_tokens += usage.input_tokens
        stats.output_tokens += usage.output_tokens

    def record_turn(self) -> None:
        self.metadata.stats.turn_count += 1

    # ── Persistence ───────────────────────────────────────────────────────────

    def compute_checksum(self) -> str:
        return compute_checksum(self.to_persisted())

    async def checkpoint(self) -> int:
        """Bump the version, refresh the checksum and save. Returns the new version."""
        if self.shell is not None:
            self.metadata.working_directory = str(self.shell.working_directory)
        self.metadata.version += 1
        self.metadata.checksum = self.compute_checksum()
        if self.storage is not None:
            await self.storage.save(self.to_persisted())
        log.info(
            "session.checkpoint",
            session_id=self.id,
            version=self.metadata.version,
            messages=len(self._messages),
        )
        return self.metadata.version

    def to_persisted(self) -> PersistedSession:
        return PersistedSession(
            metadata=self.metadata.model_copy(deep=True),
            messages=list(self._messages),
            thinking_blocks=list(self._thinking),
            settings=dict(self.settings_snapshot),
            shell_allowlist=self.shell.export_allowlist() if self.shell is not None else [],
        )

    @classmethod
    def from_persisted(
        cls,
        persisted: PersistedSession,
        storage: Optional["SessionStorageBackend"] = None,
        shell: Optional["ShellSafetyGate"] = None,
    ) -> "Session":
        """
        Rebuild a session from a checkpoint. Raises SessionIntegrityError when
        the checksum is missing or does not match the snapshot.
        """
        metadata = persisted.metadata.model_copy(deep=True)
        actual = compute_checksum(persisted)
        if metadata.checksum is None or actual != metadata.checksum:
            log.error("session.integrity_failed", session_id=metadata.id, version=metadata.version)
            raise SessionIntegrityError(metadata.id, metadata.checksum, actual)
        if shell is not None:
            shell.import_allowlist(persisted.shell_allowlist)
        return cls(
            metadata,
            messages=persisted.messages,
            thinking_blocks=persisted.thinking_blocks,
            storage=storage,
            shell=shell,
            settings_snapshot=persisted.settings,
        )

    # ── Branching ─────────────────────────────────────────────────────────────

    def branch(self, at_message_index: int, name: Optional[str] = None) -> "Session":
        """
        New active session whose history is a copy of messages[:at_message_index].
        The parent's messages are untouched; its metadata records the branch.
        """
        if self.metadata.status not in (SessionStatus.ACTIVE, SessionStatus.PAUSED):
            raise BranchError(f"Cannot branch a {self.metadata.status.value} session")
        if not 0 <= at_message_index <= len(self._messages):
            raise BranchError(
                f"Branch point {at_message_index} is outside 0..{len(self._messages)}"
            )

        child_meta = SessionMetadata(
            name=name or f"{self.metadata.name} (branch @{at_message_index})",
            priority=self.metadata.priority,
            tags=list(self.metadata.tags),
            parent_session_id=self.id,
            branch_point=at_message_index,
            working_directory=self.metadata.working_directory,
        )
        history = [m.model_copy(deep=True) for m in self._messages[:at_message_index]]
        child_meta.stats.message_count = len(history)
        child = Session(
            child_meta,
            messages=history,
            storage=self.storage,
            settings_snapshot=self.settings_snapshot,
        )
        self.metadata.branches.append(
            SessionBranch(
                id=child.id,
                parent_session_id=self.id,
                branch_point=at_message_index,
                name=child_meta.name,
            )
        )
        log.info("session.branched", session_id=self.id, child_id=child.id, branch_point=at_message_index)
        return child

    # ── Introspection ─────────────────────────────────────────────────────────

    def status_summary(self) -> dict:
        stats = self.metadata.stats
        return {
            "session_id": self.id,
            "name": self.metadata.name,
            "status": self.metadata.status.value,
            "priority": self.metadata.priority.value,
            "messages": len(self._messages),
            "turns": stats.turn_count,
            "tool_calls": stats.tool_call_count,
            "failed_tool_calls": stats.failed_tool_calls,
            "tokens": stats.total_tokens_used,
            "thinking_blocks": len(self._thinking),
            "version": self.metadata.version,
            "parent": self.metadata.parent_session_id,
            "working_directory": self.metadata.working_directory,
        }

    def __repr__(self) -> str:
        return (
            f"<Session id={self.id} status={self.metadata.status.value} "
            f"messages={len(self._messages)} v{self.metadata.version}>"
        )
