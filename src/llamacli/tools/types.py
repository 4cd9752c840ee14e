"""
tools/types.py — Tool System Data Models

Shared types used across the tool registry, the dispatcher and all tool
implementations. ToolResult / ContentPart live in brain.types because they
are also part of the conversation record; they are re-exported here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

from llamacli.brain.types import ContentPart, ToolResult, ToolSchema as LLMToolSchema

if TYPE_CHECKING:
    from llamacli.safety.shell_gate import ShellSafetyGate


class RiskLevel(str, Enum):
    """Rough blast radius of a tool, shown to the user next to each call."""
    LOW = "LOW"           # read-only (read_file, list_directory)
    MEDIUM = "MEDIUM"     # writes with limited reach (write_file, web_fetch)
    HIGH = "HIGH"         # system-level (execute_shell, delete_file)

    def _order(self) -> int:
        return [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH].index(self)

    def __lt__(self, other: "RiskLevel") -> bool:
        return self._order() < other._order()

    def __ge__(self, other: "RiskLevel") -> bool:
        return self._order() >= other._order()


class ToolCategory(str, Enum):
    GENERAL = "general"
    FILESYSTEM = "filesystem"
    SHELL = "shell"           # routed through the session's ShellSafetyGate
    NETWORK = "network"


class ToolSchema(BaseModel):
    """
    Full metadata for a registered tool.
    Stored in ToolRegistry; the model only ever sees to_llm_schema().
    """
    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    category: ToolCategory = ToolCategory.GENERAL
    risk_level: RiskLevel = RiskLevel.LOW
    takes_context: bool = False
    enabled: bool = True

    def to_llm_schema(self) -> LLMToolSchema:
        return LLMToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


@dataclass
class ToolContext:
    """Per-session facts handed to handlers registered with takes_context=True."""
    session_id: str
    working_directory: Path
    shell: Optional["ShellSafetyGate"] = None
    confirmed_command: Optional[str] = None     # set once the user approved this exact command


__all__ = [
    "ContentPart",
    "RiskLevel",
    "ToolCategory",
    "ToolContext",
    "ToolResult",
    "ToolSchema",
]
