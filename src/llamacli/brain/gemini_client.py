"""
brain/gemini_client.py — Google Gemini Streaming Client

Uses the `google-genai` SDK (google.genai), not the deprecated
`google-generativeai` package. Thought parts are re-wrapped in
<think>…</think>; function calls are complete in one part, so they are
collected as they arrive and yielded after the text.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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

_PROVIDER = Provider.GEMINI.value

_TYPE_MAP = {
    "string": genai_types.Type.STRING,
    "integer": genai_types.Type.INTEGER,
    "number": genai_types.Type.NUMBER,
    "boolean": genai_types.Type.BOOLEAN,
    "array": genai_types.Type.ARRAY,
    "object": genai_types.Type.OBJECT,
}


def _map_error(e: Exception) -> LLMError:
    """Translate a google-genai or transport exception into the LLMError family."""
    if isinstance(e, httpx.HTTPError):
        return LLMConnectionError(str(e), provider=_PROVIDER)
    code = getattr(e, "code", None)
    text = str(e).lower()
    if code == 429 or "quota" in text:
        return LLMRateLimitError(str(e), provider=_PROVIDER)
    if code in (401, 403):
        return LLMConnectionError(str(e), provider=_PROVIDER, status_code=code)
    if isinstance(e, genai_errors.ClientError):
        if "too long" in text or "context" in text or "token count" in text:
            return LLMContextError(str(e), provider=_PROVIDER)
        return LLMInvalidRequestError(str(e), provider=_PROVIDER)
    if isinstance(e, genai_errors.ServerError):
        return LLMConnectionError(str(e), provider=_PROVIDER, status_code=code)
    return LLMError(str(e), provider=_PROVIDER, status_code=code)


def _to_schema(definition: dict) -> genai_types.Schema:
    """JSON-schema fragment → Gemini Schema. Unknown types fall back to string."""
    kind = _TYPE_MAP.get(definition.get("type", "string"), genai_types.Type.STRING)
    kwargs: dict = {"type": kind, "description": definition.get("description") or None}
    if kind == genai_types.Type.OBJECT:
        kwargs["properties"] = {
            name: _to_schema(prop) for name, prop in definition.get("properties", {}).items()
        }
        kwargs["required"] = list(definition.get("required", []))
    elif kind == genai_types.Type.ARRAY:
        kwargs["items"] = _to_schema(definition.get("items", {"type": "string"}))
    if definition.get("enum"):
        kwargs["enum"] = [str(v) for v in definition["enum"]]
    return genai_types.Schema(**kwargs)


class GeminiClient(BaseLLMClient):
    """Streaming client for the Gemini API."""

    def __init__(self, api_key: Optional[str]):
        super().__init__(api_key=api_key)
        self.provider = Provider.GEMINI
        self._client = genai.Client(api_key=api_key)

    async def chat_stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> AsyncIterator[StreamFragment]:
        system_instruction, contents = self._to_provider_messages(messages)

        log.debug(
            "gemini.stream.start",
            model=config.model,
            message_count=len(messages),
            has_tools=bool(tools),
        )

        gen_config = genai_types.GenerateContentConfig(
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
            top_p=config.top_p,
            system_instruction=system_instruction,
            tools=self._to_provider_tools(tools) if tools else None,
        )

        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=config.model,
                contents=contents,
                config=gen_config,
            )
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise _map_error(e) from e

        calls: list[StreamingToolCall] = []
        usage: Optional[TokenUsage] = None
        in_thought = False

        try:
            async for chunk in stream:
                if chunk.usage_metadata is not None:
                    usage = TokenUsage(
                        input_tokens=chunk.usage_metadata.prompt_token_count or 0,
                        output_tokens=chunk.usage_metadata.candidates_token_count or 0,
                    )
                if not chunk.candidates or chunk.candidates[0].content is None:
                    continue
                for part in chunk.candidates[0].content.parts or []:
                    if part.function_call is not None:
                        fc = part.function_call
                        kwargs = {"name": fc.name, "arguments": dict(fc.args or {})}
                        if fc.id:
                            kwargs["id"] = fc.id
                        calls.append(StreamingToolCall(**kwargs))
                    elif part.text:
                        if part.thought and not in_thought:
                            in_thought = True
                            yield "<think>"
                        elif not part.thought and in_thought:
                            in_thought = False
                            yield "</think>"
                        yield part.text
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise _map_error(e) from e

        if in_thought:
            yield "</think>"
        for call in calls:
            yield call
        if usage is not None:
            yield usage

        log.debug(
            "gemini.stream.complete",
            tool_calls=len(calls),
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
        )

    async def health_check(self) -> bool:
        try:
            await self._client.aio.models.list()
            return True
        except (genai_errors.APIError, httpx.HTTPError) as e:
            log.warning("gemini.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    # ── Private helpers ───────────────────────────────────────────────────────

    def _to_provider_messages(
        self, messages: list[Message]
    ) -> tuple[Optional[str], list[genai_types.Content]]:
        """Translate internal Message list → Gemini Contents + system instruction."""
        system_instruction: Optional[str] = None
        contents: list[genai_types.Content] = []

        def append(role: str, parts: list[genai_types.Part]) -> None:
            if not parts:
                return
            if contents and contents[-1].role == role:
                contents[-1].parts.extend(parts)
            else:
                contents.append(genai_types.Content(role=role, parts=parts))

        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_instruction = (
                    system_instruction + "\n\n" + msg.content
                ) if system_instruction else msg.content

            elif msg.role == Role.USER:
                append("user", [genai_types.Part(text=msg.content)] if msg.content else [])

            elif msg.role == Role.ASSISTANT:
                parts = []
                if msg.content:
                    parts.append(genai_types.Part(text=msg.content))
                for tc in msg.tool_calls or []:
                    parts.append(genai_types.Part(
                        function_call=genai_types.FunctionCall(
                            id=tc.id,
                            name=tc.tool_name,
                            args=tc.arguments,
                        )
                    ))
                append("model", parts)

            elif msg.role == Role.TOOL:
                append("user", [genai_types.Part(
                    function_response=genai_types.FunctionResponse(
                        id=msg.tool_call_id,
                        name=msg.name or "",
                        response={"result": msg.content},
                    )
                )])

        return system_instruction, contents

    def _to_provider_tools(self, tools: list[ToolSchema]) -> list[genai_types.Tool]:
        declarations = [
            genai_types.FunctionDeclaration(
                name=t.name,
                description=t.description,
                # an object schema without properties is rejected
                parameters=_to_schema({**t.parameters, "type": "object"})
                if t.parameters.get("properties") else None,
            )
            for t in tools
        ]
        return [genai_types.Tool(function_declarations=declarations)]

    def __repr__(self) -> str:
        return "<GeminiClient>"
