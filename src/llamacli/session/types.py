"""
session/types.py — Session Data Models

Persisted shape of a session. Storage backends read and write
PersistedSession; the live state machine is session/state.py.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from llamacli.brain.types import Message, ThinkingBlock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return f"session_{int(_utcnow().timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    ERROR = "error"


class SessionPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class SessionStats(BaseModel):
    message_count: int = 0
    turn_count: int = 0
    tool_call_count: int = 0
    successful_tool_calls: int = 0
    failed_tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class SessionBranch(BaseModel):
    """Record, kept on the parent, of a session branched off it."""
    id: str
    parent_session_id: str
    branch_point: int
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class SessionMetadata(BaseModel):
    id: str = Field(default_factory=new_session_id)
    name: str = "New session"
    status: SessionStatus = SessionStatus.ACTIVE
    priority: SessionPriority = SessionPriority.NORMAL
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)
    stats: SessionStats = Field(default_factory=SessionStats)
    parent_session_id: Optional[str] = None
    branch_point: Optional[int] = None
    branches: list[SessionBranch] = Field(default_factory=list)
    working_directory: Optional[str] = None
    error_reason: Optional[str] = None
    version: int = 0
    checksum: Optional[str] = None


class PersistedSession(BaseModel):
    """Everything a storage backend needs to rebuild a Session."""
    metadata: SessionMetadata
    messages: list[Message] = Field(default_factory=list)
    thinking_blocks: list[ThinkingBlock] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    shell_allowlist: list[str] = Field(default_factory=list)


class SessionFilter(BaseModel):
    """Query for SessionStorageBackend.list()."""
    status: Optional[list[SessionStatus]] = None
    priority: Optional[list[SessionPriority]] = None
    tags: Optional[list[str]] = None
    parent_session_id: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0
    sort_by: Literal["created_at", "last_activity", "name", "priority"] = "last_activity"
    sort_order: Literal["asc", "desc"] = "desc"

    def matches(self, meta: SessionMetadata) -> bool:
        if self.status and meta.status not in self.status:
            return False
        if self.priority and meta.priority not in self.priority:
            return False
        if self.tags and not set(self.tags) <= set(meta.tags):
            return False
        if self.parent_session_id and meta.parent_session_id != self.parent_session_id:
            return False
        return True

    def apply(self, metas: list[SessionMetadata]) -> list[SessionMetadata]:
        selected = [m for m in metas if self.matches(m)]
        if self.sort_by == "priority":
            order = list(SessionPriority)
            key = lambda m: order.index(m.priority)  # noqa: E731
        else:
            key = lambda m: getattr(m, self.sort_by)  # noqa: E731
        selected.sort(key=key, reverse=self.sort_order == "desc")
        end = self.offset + self.limit if self.limit is not None else None
        return selected[self.offset:end]
