"""
brain/anthropic_client.py — Anthropic Streaming Client

Streams Claude replies through the official `anthropic` SDK. Differences from
the OpenAI format handled here:
  - the system prompt is a top-level parameter, not a message
  - tool calls arrive as tool_use content blocks whose JSON input streams in
    input_json_delta pieces
  - tool results go back as tool_result blocks inside a user message
  - extended thinking streams as thinking_delta and is re-wrapped in
    <think>…</think> for the stream parser
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import anthropic
from anthropic import AsyncAnthropic

from llamacli.brain.llm_client import BaseLLMClient, StreamFragment
from llamacli.brain.types import (
    LLMConfig,
    Message,
    Provider,
    Role,
    StreamingToolCall,
    TokenUsage,
    ToolSchema,
)
from llamacli.exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from llamacli.observability.logger import get_logger

log = get_logger(__name__)

_PROVIDER = Provider.ANTHROPIC.value


def _map_error(e: Exception) -> LLMError:
    """Translate an anthropic SDK exception into the LLMError family."""
    if isinstance(e, anthropic.AuthenticationError):
        return LLMConnectionError(str(e), provider=_PROVIDER, status_code=401)
    if isinstance(e, anthropic.RateLimitError):
        retry_after = None
        header = e.response.headers.get("retry-after") if e.response is not None else None
        if header and header.replace(".", "", 1).isdigit():
            retry_after = float(header)
        return LLMRateLimitError(str(e), provider=_PROVIDER, retry_after=retry_after)
    if isinstance(e, anthropic.BadRequestError):
        text = str(e).lower()
        if "too long" in text or "context" in text:
            return LLMContextError(str(e), provider=_PROVIDER)
        return LLMInvalidRequestError(str(e), provider=_PROVIDER)
    if isinstance(e, anthropic.APIConnectionError):
        return LLMConnectionError(str(e), provider=_PROVIDER)
    if isinstance(e, anthropic.InternalServerError):
        return LLMConnectionError(str(e), provider=_PROVIDER, status_code=e.status_code)
    return LLMError(str(e), provider=_PROVIDER, status_code=getattr(e, "status_code", None))


class _ToolUseAccumulator:
    """Collects tool_use blocks by content-block index until the stream ends."""

    def __init__(self) -> None:
        self._blocks: dict[int, dict[str, Any]] = {}

    def start(self, index: int, block) -> None:
        self._blocks[index] = {"id": block.id, "name": block.name, "json": ""}

    def add(self, index: int, partial_json: str) -> None:
        if index in self._blocks:
            self._blocks[index]["json"] += partial_json

    def drain(self) -> list[StreamingToolCall]:
        calls: list[StreamingToolCall] = []
        for index in sorted(self._blocks):
            block = self._blocks[index]
            raw = block["json"].strip()
            try:
                parsed = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                calls.append(StreamingToolCall(id=block["id"], name=block["name"], arguments=parsed))
            else:
                calls.append(StreamingToolCall(id=block["id"], name=block["name"], raw_arguments=raw))
        self._blocks.clear()
        return calls


class AnthropicClient(BaseLLMClient):
    """Streaming client for the Anthropic Messages API."""

    def __init__(self, api_key: Optional[str], base_url: Optional[str] = None):
        super().__init__(api_key=api_key, base_url=base_url)
        self.provider = Provider.ANTHROPIC
        self._client = AsyncAnthropic(api_key=api_key, base_url=base_url)

    # ── Public API ────────────────────────────────────────────────────────────

    async def chat_stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> AsyncIterator[StreamFragment]:
        system_prompt, ant_messages = self._to_provider_messages(messages)

        log.debug(
            "anthropic.stream.start",
            model=config.model,
            message_count=len(messages),
            has_tools=bool(tools),
            has_system=bool(system_prompt),
        )

        try:
            stream = await self._client.messages.create(
                model=config.model,
                system=system_prompt or anthropic.NOT_GIVEN,
                messages=ant_messages,
                tools=self._to_provider_tools(tools) if tools else anthropic.NOT_GIVEN,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                top_p=config.top_p if config.top_p < 1.0 else anthropic.NOT_GIVEN,
                stream=True,
            )
        except anthropic.AnthropicError as e:
            raise _map_error(e) from e

        tool_uses = _ToolUseAccumulator()
        input_tokens = output_tokens = 0
        in_thinking = False

        try:
            async for event in stream:
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens or 0
                elif event.type == "content_block_start":
                    if event.content_block.type == "tool_use":
                        tool_uses.start(event.index, event.content_block)
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "thinking_delta":
                        if not in_thinking:
                            in_thinking = True
                            yield "<think>"
                        yield delta.thinking
                    elif delta.type == "text_delta":
                        if in_thinking:
                            in_thinking = False
                            yield "</think>"
                        yield delta.text
                    elif delta.type == "input_json_delta":
                        tool_uses.add(event.index, delta.partial_json)
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens or output_tokens
        except anthropic.AnthropicError as e:
            raise _map_error(e) from e

        if in_thinking:
            yield "</think>"
        for call in tool_uses.drain():
            yield call
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        yield usage

        log.debug(
            "anthropic.stream.complete",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )

    async def health_check(self) -> bool:
        """Lists models; no tokens are spent."""
        try:
            await self._client.models.list()
            return True
        except anthropic.AnthropicError as e:
            log.warning("anthropic.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    def _to_provider_messages(self, messages: list[Message]) -> tuple[Optional[str], list[dict]]:
        """
        Translate internal Message list → (system_prompt, Anthropic messages).

        Consecutive entries with the same role are merged, so every tool
        result of one round lands in a single user message.
        """
        system_prompt: Optional[str] = None
        result: list[dict] = []

        def append(role: str, blocks: list[dict]) -> None:
            if not blocks:
                return
            if result and result[-1]["role"] == role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": role, "content": blocks})

        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_prompt = (system_prompt + "\n\n" + msg.content) if system_prompt else msg.content

            elif msg.role == Role.USER:
                append("user", [{"type": "text", "text": msg.content}] if msg.content else [])

            elif msg.role == Role.ASSISTANT:
                blocks: list[dict] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls or []:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.tool_name,
                        "input": tc.arguments,
                    })
                append("assistant", blocks)

            elif msg.role == Role.TOOL:
                append("user", [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }])

        return system_prompt, result

    def _to_provider_tools(self, tools: list[ToolSchema]) -> list[dict]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.parameters}
            for t in tools
        ]

    def __repr__(self) -> str:
        return f"<AnthropicClient base_url={self.base_url!r}>"
