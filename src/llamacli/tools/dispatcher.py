"""
tools/dispatcher.py — Tool Dispatcher

Routes a tool-call intent to its handler. dispatch() never raises: every
failure mode comes back as ToolResult(is_error=True) naming the tool and the
cause, so the model can read it and recover.

Flow:
  dispatch(name, arguments)
    → registry lookup (unknown / disabled)
    → argument validation (object, required fields, JSON types)
    → handler execution (async, with timeout)
    → normalise + truncate
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from llamacli.exceptions import ToolDispatchError
from llamacli.observability.logger import get_logger
from llamacli.tools.tool_registry import ToolRegistry
from llamacli.tools.types import ContentPart, ToolContext, ToolResult

log = get_logger(__name__)

MAX_RESULT_CHARS = 8_000
DEFAULT_TIMEOUT_SECONDS = 60.0

_JSON_TYPE_MAP: dict[str, type | tuple] = {
    "string":  str,
    "integer": int,
    "number":  (int, float),
    "boolean": bool,
    "array":   list,
    "object":  dict,
}


class ToolDispatcher:
    """
    Usage:
        dispatcher = ToolDispatcher(registry)
        result = await dispatcher.dispatch("read_file", {"path": "a.txt"}, context=ctx)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_result_chars: int = MAX_RESULT_CHARS,
    ):
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.max_result_chars = max_result_chars

    async def dispatch(
        self,
        name: str,
        arguments: Any,
        context: Optional[ToolContext] = None,
        call_id: Optional[str] = None,
    ) -> ToolResult:
        start = time.monotonic()
        log.info("dispatcher.dispatch", tool=name, tool_call_id=call_id)

        try:
            raw_result = await self._execute(name, arguments, context, start)
        except ToolDispatchError as e:
            return ToolResult.error(str(e), tool=e.tool_name)

        # ── Step 4: Normalise and truncate ────────────────────────────────────
        result = _truncate_result(_normalise_result(raw_result), self.max_result_chars)
        duration_ms = round((time.monotonic() - start) * 1000, 1)
        result.metadata.setdefault("tool", name)
        result.metadata["duration_ms"] = duration_ms

        log.info(
            "dispatcher.success" if not result.is_error else "dispatcher.tool_reported_error",
            tool=name,
            tool_call_id=call_id,
            duration_ms=duration_ms,
            result_chars=len(result.text),
        )
        return result

    async def _execute(
        self,
        name: str,
        arguments: Any,
        context: Optional[ToolContext],
        start: float,
    ) -> Any:
        """Steps 1-3. Every failure is raised as ToolDispatchError."""
        # ── Step 1: Registry lookup ───────────────────────────────────────────
        schema = self.registry.get_schema(name)
        handler = self.registry.get_handler(name)
        if schema is None or handler is None:
            log.warning("dispatcher.unknown_tool", tool=name)
            raise ToolDispatchError(
                name, f"Unknown tool '{name}'. Available tools: {self.registry.list_names()}"
            )
        if not schema.enabled:
            raise ToolDispatchError(name, f"Tool '{name}' is disabled.")

        # ── Step 2: Argument validation ───────────────────────────────────────
        if not isinstance(arguments, dict):
            raise ToolDispatchError(
                name,
                f"Tool '{name}' received invalid arguments: expected a JSON object, "
                f"got {type(arguments).__name__}",
            )
        validation_error = _validate_args(arguments, schema.parameters)
        if validation_error:
            raise ToolDispatchError(name, f"Tool '{name}' received invalid arguments: {validation_error}")

        kwargs = dict(arguments)
        if schema.takes_context:
            if context is None:
                raise ToolDispatchError(
                    name, f"Tool '{name}' needs a session context and none was provided."
                )
            kwargs["context"] = context

        # ── Step 3: Execute with timeout ──────────────────────────────────────
        try:
            return await asyncio.wait_for(handler(**kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            log.error(
                "dispatcher.timeout",
                tool=name,
                timeout_seconds=self.timeout_seconds,
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )
            raise ToolDispatchError(name, f"Tool '{name}' timed out after {self.timeout_seconds}s")
        except Exception as e:
            log.error(
                "dispatcher.execution_error",
                tool=name,
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 1),
                exc_info=True,
            )
            raise ToolDispatchError(name, f"Tool '{name}' failed: {type(e).__name__}: {e}") from e


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _validate_args(arguments: dict, schema: dict) -> Optional[str]:
    """
    Validate tool arguments against the JSON schema.
    Returns an error string if invalid, None if valid.

    Checks required-field presence and the declared primitive type of every
    provided value. Unknown fields are tolerated.
    """
    for field in schema.get("required", []):
        if field not in arguments:
            return f"Missing required field: '{field}'"

    properties = schema.get("properties", {})
    for field, value in arguments.items():
        json_type = (properties.get(field) or {}).get("type")
        expected = _JSON_TYPE_MAP.get(json_type) if json_type else None
        if expected is None:
            continue
        # bool is a subclass of int
        if json_type in ("integer", "number") and isinstance(value, bool):
            return f"Field '{field}': expected {json_type}, got boolean"
        if not isinstance(value, expected):
            return f"Field '{field}': expected {json_type}, got {type(value).__name__}"

    return None


def _normalise_result(result: Any) -> ToolResult:
    """Convert any handler return value into a ToolResult."""
    if isinstance(result, ToolResult):
        return result
    if result is None:
        return ToolResult.success("Done.")
    if isinstance(result, (str, dict, list)):
        return ToolResult.success(result)
    return ToolResult.success(str(result))


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return (
        text[:max_chars]
        + f"\n\n[Output truncated — {len(text) - max_chars} chars omitted. "
        f"Total: {len(text)} chars]"
    )


def _truncate_result(result: ToolResult, max_chars: int) -> ToolResult:
    """Cap each part; oversized JSON parts degrade to truncated text."""
    parts: list[ContentPart] = []
    for part in result.content:
        rendered = part.render()
        if len(rendered) <= max_chars:
            parts.append(part)
        elif part.type == "json":
            pretty = json.dumps(part.data, indent=2, ensure_ascii=False, default=str)
            parts.append(ContentPart(type="text", text=_truncate(pretty, max_chars)))
        else:
            parts.append(ContentPart(type="text", text=_truncate(rendered, max_chars)))
    return ToolResult(is_error=result.is_error, content=parts, metadata=dict(result.metadata))
