"""
tools/builtin.py — Built-in Tool Set

register_builtin_tools(registry, settings) wires up every shipped tool,
honouring the tools.enable_* switches.
"""

from __future__ import annotations

from typing import Optional

from llamacli.observability.logger import get_logger
from llamacli.tools.filesystem import register_filesystem_tools
from llamacli.tools.shell import register_shell_tools
from llamacli.tools.tool_registry import ToolRegistry
from llamacli.tools.types import RiskLevel, ToolCategory
from llamacli.tools.web_fetch import register_web_tools

log = get_logger(__name__)


def register_echo_tool(registry: ToolRegistry) -> None:

    @registry.tool(
        name="echo",
        description="Return the given text unchanged. Useful for testing tool calling.",
        category=ToolCategory.GENERAL,
        risk_level=RiskLevel.LOW,
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo back"}},
            "required": ["text"],
        },
    )
    async def echo(text: str) -> str:
        return text


def register_builtin_tools(registry: ToolRegistry, settings=None) -> ToolRegistry:
    tools_cfg = settings.tools if settings is not None else None
    shell_timeout: Optional[float] = settings.shell.timeout_seconds if settings is not None else None

    register_echo_tool(registry)
    if tools_cfg is None or tools_cfg.enable_filesystem:
        register_filesystem_tools(registry, tools_cfg.allowed_paths if tools_cfg else None)
    if tools_cfg is None or tools_cfg.enable_shell:
        register_shell_tools(registry, default_timeout=shell_timeout)
    if tools_cfg is None or tools_cfg.enable_network:
        register_web_tools(registry)

    log.info("tools.builtin_registered", tools=registry.list_names())
    return registry
