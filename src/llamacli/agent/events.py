"""
agent/events.py — Turn Outcomes and UI Events

The orchestrator reports progress to a UISink as it happens and returns a
TurnResult at the end. Sinks are fire-and-forget: emit() must not block.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, Union, runtime_checkable

from llamacli.brain.types import ThinkingBlock, TokenUsage, ToolCallRecord
from llamacli.safety.shell_gate import ShellConfirmationRequest


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    BUDGET_EXCEEDED = "budget_exceeded"
    STREAM_ERROR = "stream_error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class TurnResult:
    status: TurnStatus
    content: str = ""
    reason: Optional[str] = None
    rounds: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.COMPLETED


# ─────────────────────────────────────────────────────────────────────────────
# UI events
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ThinkingStarted:
    pass


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ThinkingEnded:
    block: ThinkingBlock


@dataclass(frozen=True)
class ToolCallStarted:
    call_id: str
    tool_name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class ToolCallResolved:
    record: ToolCallRecord


@dataclass(frozen=True)
class ConfirmationNeeded:
    call_id: str
    tool_name: str
    request: ShellConfirmationRequest


@dataclass(frozen=True)
class TurnCompleted:
    status: TurnStatus
    reason: Optional[str] = None


UIEvent = Union[
    ContentDelta,
    ThinkingStarted,
    ThinkingDelta,
    ThinkingEnded,
    ToolCallStarted,
    ToolCallResolved,
    ConfirmationNeeded,
    TurnCompleted,
]


@runtime_checkable
class UISink(Protocol):
    def emit(self, event: UIEvent) -> None:
        ...


class NullSink:
    """Drops everything."""

    def emit(self, event: UIEvent) -> None:
        return None


class CollectingSink:
    """Keeps every event in order. Handy for tests and scripted runs."""

    def __init__(self):
        self.events: list[UIEvent] = []

    def emit(self, event: UIEvent) -> None:
        self.events.append(event)

    def of_type(self, kind: type) -> list:
        return [e for e in self.events if isinstance(e, kind)]

    @property
    def content(self) -> str:
        return "".join(e.text for e in self.of_type(ContentDelta))
