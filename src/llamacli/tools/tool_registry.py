"""
tools/tool_registry.py — Tool Registry

Maps tool names to their schemas and async handlers. One registry is built at
startup and shared read-mostly by every session; there is no global instance.

Usage:
    registry = ToolRegistry()

    @registry.tool(
        name="read_file",
        description="Read a text file",
        category=ToolCategory.FILESYSTEM,
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    )
    async def read_file(path: str) -> str:
        ...

    registry.get_schema("read_file")
    registry.list()          # registration order
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from llamacli.brain.types import ToolSchema as LLMToolSchema
from llamacli.exceptions import DuplicateToolError
from llamacli.observability.logger import get_logger
from llamacli.tools.types import RiskLevel, ToolCategory, ToolSchema

log = get_logger(__name__)


class ToolRegistry:
    """
    Registry that maps tool names to their schemas and async handlers.

    Dicts preserve insertion order, so listing is always in registration order.
    """

    def __init__(self):
        self._schemas: dict[str, ToolSchema] = {}
        self._handlers: dict[str, Callable] = {}

    def register(self, schema: ToolSchema, handler: Callable) -> None:
        """Register a handler. Raises DuplicateToolError if the name is taken."""
        if schema.name in self._schemas:
            raise DuplicateToolError(schema.name)
        self._schemas[schema.name] = schema
        self._handlers[schema.name] = handler
        log.debug(
            "tool.registered",
            tool=schema.name,
            category=schema.category.value,
            risk=schema.risk_level.value,
        )

    def tool(
        self,
        name: str,
        description: str,
        category: ToolCategory = ToolCategory.GENERAL,
        risk_level: RiskLevel = RiskLevel.LOW,
        parameters: Optional[dict[str, Any]] = None,
        takes_context: bool = False,
        enabled: bool = True,
    ) -> Callable:
        """Decorator form of register()."""
        def decorator(fn: Callable) -> Callable:
            schema = ToolSchema(
                name=name,
                description=description,
                category=category,
                risk_level=risk_level,
                parameters=parameters or {"type": "object", "properties": {}, "required": []},
                takes_context=takes_context,
                enabled=enabled,
            )
            self.register(schema, fn)
            return fn

        return decorator

    def get_schema(self, name: str) -> Optional[ToolSchema]:
        return self._schemas.get(name)

    def get_handler(self, name: str) -> Optional[Callable]:
        return self._handlers.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._schemas

    def list(self, enabled_only: bool = True) -> list[ToolSchema]:
        """All registered schemas, in registration order."""
        schemas = [s for s in self._schemas.values()]
        if enabled_only:
            schemas = [s for s in schemas if s.enabled]
        return schemas

    def list_names(self, enabled_only: bool = True) -> list[str]:
        return [s.name for s in self.list(enabled_only)]

    def to_llm_schemas(self) -> list[LLMToolSchema]:
        """Enabled tools in the provider-agnostic form adapters expect."""
        return [s.to_llm_schema() for s in self.list(enabled_only=True)]

    def enable(self, name: str) -> None:
        if name in self._schemas:
            self._schemas[name].enabled = True

    def disable(self, name: str) -> None:
        if name in self._schemas:
            self._schemas[name].enabled = False

    def __len__(self) -> int:
        return len(self._schemas)

    def __contains__(self, name: str) -> bool:
        return name in self._schemas

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={[n for n in self._schemas]}>"
