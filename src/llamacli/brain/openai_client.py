"""
brain/openai_client.py — OpenAI-compatible Streaming Client

Works against the official OpenAI API and every OpenAI-compatible server
(Ollama, OpenRouter, vLLM, LiteLLM proxies). Streams text as it arrives,
assembles tool-call deltas into complete StreamingToolCalls, and reports
token usage at the end.

Providers that stream reasoning on a separate delta field (reasoning_content
/ reasoning) have it re-wrapped in <think>…</think> so the stream parser sees
one uniform format.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

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


def _map_error(e: Exception, provider: str) -> LLMError:
    """Translate an openai SDK exception into the LLMError family."""
    if isinstance(e, openai.AuthenticationError):
        return LLMConnectionError(str(e), provider=provider, status_code=401)
    if isinstance(e, openai.RateLimitError):
        retry_after = None
        response = getattr(e, "response", None)
        if response is not None:
            header = response.headers.get("retry-after")
            if header and header.replace(".", "", 1).isdigit():
                retry_after = float(header)
        return LLMRateLimitError(str(e), provider=provider, retry_after=retry_after)
    if isinstance(e, openai.BadRequestError):
        text = str(e).lower()
        if "context" in text or "too long" in text:
            return LLMContextError(str(e), provider=provider)
        return LLMInvalidRequestError(str(e), provider=provider)
    if isinstance(e, (openai.APIConnectionError, openai.APITimeoutError)):
        return LLMConnectionError(str(e), provider=provider)
    if isinstance(e, openai.InternalServerError):
        return LLMConnectionError(str(e), provider=provider, status_code=e.status_code)
    return LLMError(str(e), provider=provider, status_code=getattr(e, "status_code", None))


class _ToolCallAccumulator:
    """Collects indexed tool-call deltas until the stream ends."""

    def __init__(self) -> None:
        self._slots: dict[int, dict[str, Any]] = {}

    def add(self, delta) -> None:
        slot = self._slots.setdefault(delta.index, {"id": None, "name": "", "args": ""})
        if delta.id:
            slot["id"] = delta.id
        fn = delta.function
        if fn is not None:
            if fn.name:
                slot["name"] += fn.name
            if fn.arguments:
                slot["args"] += fn.arguments

    def drain(self) -> list[StreamingToolCall]:
        calls: list[StreamingToolCall] = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            raw = slot["args"].strip()
            kwargs: dict[str, Any] = {"name": slot["name"]}
            if slot["id"]:
                kwargs["id"] = slot["id"]
            try:
                parsed = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                kwargs["arguments"] = parsed
            else:
                kwargs["raw_arguments"] = raw
            calls.append(StreamingToolCall(**kwargs))
        self._slots.clear()
        return calls


class OpenAIClient(BaseLLMClient):
    """Streaming client for OpenAI and OpenAI-compatible endpoints."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        provider: Provider = Provider.OPENAI,
    ):
        super().__init__(api_key=api_key, base_url=base_url)
        self.provider = provider
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    # ── Public API ────────────────────────────────────────────────────────────

    async def chat_stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> AsyncIterator[StreamFragment]:
        provider = self.provider.value
        oai_tools = self._to_provider_tools(tools) if tools else openai.NOT_GIVEN

        log.debug(
            "openai.stream.start",
            provider=provider,
            model=config.model,
            message_count=len(messages),
            has_tools=bool(tools),
        )

        try:
            stream = await self._client.chat.completions.create(
                model=config.model,
                messages=self._to_provider_messages(messages),
                tools=oai_tools,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                top_p=config.top_p if config.top_p is not None else openai.NOT_GIVEN,
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.OpenAIError as e:
            raise _map_error(e, provider) from e

        tool_calls = _ToolCallAccumulator()
        usage: Optional[TokenUsage] = None
        in_reasoning = False

        try:
            async for chunk in stream:
                if chunk.usage is not None:
                    usage = TokenUsage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
                if reasoning:
                    if not in_reasoning:
                        in_reasoning = True
                        yield "<think>"
                    yield reasoning

                if delta.content:
                    if in_reasoning:
                        in_reasoning = False
                        yield "</think>"
                    yield delta.content

                for tc in delta.tool_calls or []:
                    tool_calls.add(tc)
        except openai.OpenAIError as e:
            raise _map_error(e, provider) from e

        if in_reasoning:
            yield "</think>"
        for call in tool_calls.drain():
            yield call
        if usage is not None:
            yield usage

        log.debug(
            "openai.stream.complete",
            provider=provider,
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
        )

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except openai.OpenAIError as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    def _to_provider_messages(self, messages: list[Message]) -> list[dict]:
        """Translate internal Message list → OpenAI chat message format."""
        result = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                result.append({"role": "system", "content": msg.content})

            elif msg.role == Role.USER:
                result.append({"role": "user", "content": msg.content})

            elif msg.role == Role.ASSISTANT:
                entry: dict = {"role": "assistant", "content": msg.content or None}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.tool_name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                result.append(entry)

            elif msg.role == Role.TOOL:
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })

        return result

    def _to_provider_tools(self, tools: list[ToolSchema]) -> list[dict]:
        """Translate internal ToolSchema list → OpenAI function tool format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    def __repr__(self) -> str:
        return f"<OpenAIClient provider={self.provider.value} base_url={self.base_url!r}>"
