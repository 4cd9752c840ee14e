"""
brain/types.py — llamacli Conversation Data Models

Shared types used by the model adapters, the orchestrator and the session
layer. Adapters map their provider's streaming shapes into these types.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from llamacli.exceptions import InvalidToolCallTransition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"           # tool result fed back to the model


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"
    VLLM = "vllm"
    OPENAI_COMPATIBLE = "openai-compatible"


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.DENIED, ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED)


# Allowed forward moves; anything else is a regression.
_TOOL_CALL_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.PENDING: frozenset({
        ToolCallStatus.CONFIRMED,
        ToolCallStatus.DENIED,
        ToolCallStatus.EXECUTING,
        ToolCallStatus.FAILED,
    }),
    ToolCallStatus.CONFIRMED: frozenset({ToolCallStatus.EXECUTING, ToolCallStatus.FAILED}),
    ToolCallStatus.EXECUTING: frozenset({ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED}),
    ToolCallStatus.DENIED: frozenset(),
    ToolCallStatus.SUCCEEDED: frozenset(),
    ToolCallStatus.FAILED: frozenset(),
}


# ─────────────────────────────────────────────────────────────────────────────
# Tool results
# ─────────────────────────────────────────────────────────────────────────────


class ContentPart(BaseModel):
    """One piece of a tool result: plain text or a JSON-serialisable value."""
    model_config = ConfigDict(frozen=True)

    type: Literal["text", "json"] = "text"
    text: Optional[str] = None
    data: Any = None

    def render(self) -> str:
        if self.type == "json":
            return json.dumps(self.data, ensure_ascii=False, default=str)
        return self.text or ""


class ToolResult(BaseModel):
    """Outcome of a tool invocation. Errors are values, never exceptions."""
    is_error: bool = False
    content: list[ContentPart] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        """All parts rendered and joined, as fed back to the model."""
        return "\n".join(part.render() for part in self.content)

    @classmethod
    def success(cls, value: Any = "Done.", **metadata: Any) -> "ToolResult":
        if isinstance(value, str):
            part = ContentPart(type="text", text=value)
        else:
            part = ContentPart(type="json", data=value)
        return cls(is_error=False, content=[part], metadata=metadata)

    @classmethod
    def error(cls, message: str, **metadata: Any) -> "ToolResult":
        return cls(
            is_error=True,
            content=[ContentPart(type="text", text=f"Error: {message}")],
            metadata=metadata,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Tool calls
# ─────────────────────────────────────────────────────────────────────────────


class StreamingToolCall(BaseModel):
    """A complete tool-call intent assembled by an adapter from stream deltas."""
    id: str = Field(default_factory=lambda: f"call_{_new_id()}")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    raw_arguments: Optional[str] = None       # set when the JSON could not be parsed


class ToolCallRecord(BaseModel):
    """
    Tracks one tool call through its lifecycle inside a turn.

    Status only moves forward:
        pending → confirmed → executing → succeeded | failed
        pending → executing
        pending → denied
        pending → failed
    """
    id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Optional[ToolResult] = None
    status: ToolCallStatus = ToolCallStatus.PENDING

    def transition(self, target: ToolCallStatus) -> None:
        if target not in _TOOL_CALL_TRANSITIONS[self.status]:
            raise InvalidToolCallTransition(self.status.value, target.value)
        self.status = target

    def finish(self, result: ToolResult) -> None:
        """Attach the result and move to succeeded/failed from its error flag."""
        if self.status == ToolCallStatus.CONFIRMED or (
            self.status == ToolCallStatus.PENDING and not result.is_error
        ):
            self.transition(ToolCallStatus.EXECUTING)
        self.transition(ToolCallStatus.FAILED if result.is_error else ToolCallStatus.SUCCEEDED)
        self.result = result

    @classmethod
    def from_stream(cls, call: StreamingToolCall) -> "ToolCallRecord":
        return cls(id=call.id, tool_name=call.name, arguments=dict(call.arguments))


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single message in the conversation. Immutable once built.

    Assistant messages that requested tools carry the finalised records in
    tool_calls; each answering tool message links back via tool_call_id.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    tool_calls: Optional[list[ToolCallRecord]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None                  # tool name on tool messages
    reasoning: Optional[str] = None             # thinking text produced with this reply

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Optional[list[ToolCallRecord]] = None,
        reasoning: Optional[str] = None,
    ) -> "Message":
        records = [r.model_copy(deep=True) for r in tool_calls] if tool_calls else None
        return cls(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=records,
            reasoning=reasoning or None,
        )

    @classmethod
    def tool_response(cls, record: ToolCallRecord) -> "Message":
        text = record.result.text if record.result is not None else ""
        return cls(
            role=Role.TOOL,
            content=text,
            tool_call_id=record.id,
            name=record.tool_name,
        )


class ThinkingBlock(BaseModel):
    """One closed reasoning span. Archived on the session, never replayed by default."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    collapsed: bool = True

    @property
    def is_blank(self) -> bool:
        return not self.content.strip()


# ─────────────────────────────────────────────────────────────────────────────
# Request config / usage
# ─────────────────────────────────────────────────────────────────────────────


class LLMConfig(BaseModel):
    """Per-request model configuration."""
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: float = 1.0


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ToolSchema(BaseModel):
    """Provider-agnostic tool definition handed to adapters."""
    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
