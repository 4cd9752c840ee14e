"""
tests/unit/test_llm_client.py — Model Adapter Unit Tests

Covers:
  - OpenAIClient: message/tool translation, tool-call delta assembly,
    reasoning re-wrapping, usage, SDK error mapping
  - ResilientLLMClient: retry before the first fragment, failover,
    permanent errors, mid-stream errors
  - LLMClientFactory, including the Anthropic and Gemini adapters
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from llamacli.brain.llm_client import BaseLLMClient, LLMClientFactory, ResilientLLMClient
from llamacli.brain.openai_client import OpenAIClient, _map_error, _ToolCallAccumulator
from llamacli.brain.types import (
    LLMConfig,
    Message,
    Provider,
    StreamingToolCall,
    TokenUsage,
    ToolCallRecord,
    ToolResult,
    ToolSchema,
)
from llamacli.exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def tc_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def chunk(content=None, tool_calls=None, reasoning=None, usage=None, choices=True):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls, reasoning_content=reasoning)
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta)] if choices else [],
        usage=usage,
    )


async def fake_stream(*chunks):
    for c in chunks:
        yield c


def make_client(*chunks) -> OpenAIClient:
    client = OpenAIClient(api_key="sk-test", provider=Provider.OPENAI)
    client._client = SimpleNamespace(
        chat=SimpleNamespace(
            completions=SimpleNamespace(create=AsyncMock(return_value=fake_stream(*chunks)))
        )
    )
    return client


async def drain(stream) -> list:
    return [f async for f in stream]


CONFIG = LLMConfig(model="gpt-test")


# ─────────────────────────────────────────────────────────────────────────────
# Tool-call accumulation
# ─────────────────────────────────────────────────────────────────────────────


class TestToolCallAccumulator:
    def test_fragments_joined_per_index(self):
        acc = _ToolCallAccumulator()
        acc.add(tc_delta(0, id="call_a", name="read_", arguments='{"pa'))
        acc.add(tc_delta(1, id="call_b", name="echo", arguments='{"text": "x"}'))
        acc.add(tc_delta(0, name="file", arguments='th": "a.txt"}'))
        calls = acc.drain()
        assert [c.id for c in calls] == ["call_a", "call_b"]
        assert calls[0].name == "read_file"
        assert calls[0].arguments == {"path": "a.txt"}
        assert calls[0].raw_arguments is None

    def test_invalid_json_kept_raw(self):
        acc = _ToolCallAccumulator()
        acc.add(tc_delta(0, id="c", name="echo", arguments='{"text": '))
        call = acc.drain()[0]
        assert call.arguments == {}
        assert call.raw_arguments == '{"text":'

    def test_non_object_json_kept_raw(self):
        acc = _ToolCallAccumulator()
        acc.add(tc_delta(0, id="c", name="echo", arguments="[1, 2]"))
        assert acc.drain()[0].raw_arguments == "[1, 2]"

    def test_empty_arguments_are_empty_object(self):
        acc = _ToolCallAccumulator()
        acc.add(tc_delta(0, id="c", name="list_directory", arguments=""))
        assert acc.drain()[0].arguments == {}

    def test_missing_id_generated(self):
        acc = _ToolCallAccumulator()
        acc.add(tc_delta(0, name="echo", arguments="{}"))
        assert acc.drain()[0].id.startswith("call_")


# ─────────────────────────────────────────────────────────────────────────────
# OpenAIClient streaming
# ─────────────────────────────────────────────────────────────────────────────


class TestOpenAIStream:
    @pytest.mark.asyncio
    async def test_text_then_usage(self):
        client = make_client(
            chunk("Hel"),
            chunk("lo"),
            chunk(choices=False, usage=SimpleNamespace(prompt_tokens=7, completion_tokens=2)),
        )
        fragments = await drain(client.chat_stream([Message.user("hi")], CONFIG))
        assert fragments[:2] == ["Hel", "lo"]
        assert fragments[-1] == TokenUsage(input_tokens=7, output_tokens=2)

    @pytest.mark.asyncio
    async def test_tool_calls_emitted_after_text(self):
        client = make_client(
            chunk("Let me check."),
            chunk(tool_calls=[tc_delta(0, id="call_1", name="echo", arguments='{"text"')]),
            chunk(tool_calls=[tc_delta(0, arguments=': "hi"}')]),
        )
        fragments = await drain(client.chat_stream([Message.user("hi")], CONFIG))
        assert fragments[0] == "Let me check."
        assert isinstance(fragments[1], StreamingToolCall)
        assert fragments[1].arguments == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_reasoning_field_rewrapped(self):
        client = make_client(
            chunk(reasoning="step one"),
            chunk(reasoning=", step two"),
            chunk("Answer"),
        )
        fragments = await drain(client.chat_stream([Message.user("q")], CONFIG))
        assert "".join(fragments) == "<think>step one, step two</think>Answer"

    @pytest.mark.asyncio
    async def test_unterminated_reasoning_closed(self):
        client = make_client(chunk(reasoning="only thinking"))
        fragments = await drain(client.chat_stream([Message.user("q")], CONFIG))
        assert fragments[-1] == "</think>"

    @pytest.mark.asyncio
    async def test_request_shape(self):
        client = make_client(chunk("ok"))
        tools = [ToolSchema(name="echo", description="Echo")]
        await drain(client.chat_stream([Message.user("hi")], CONFIG, tools))
        kwargs = client._client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}
        assert kwargs["tools"][0]["function"]["name"] == "echo"

    @pytest.mark.asyncio
    async def test_tools_omitted_when_none(self):
        client = make_client(chunk("ok"))
        await drain(client.chat_stream([Message.user("hi")], CONFIG))
        kwargs = client._client.chat.completions.create.call_args.kwargs
        assert kwargs["tools"] is openai.NOT_GIVEN

    @pytest.mark.asyncio
    async def test_sdk_error_mapped(self):
        client = make_client()
        client._client.chat.completions.create.side_effect = openai.APIConnectionError(request=_REQUEST)
        with pytest.raises(LLMConnectionError):
            await drain(client.chat_stream([Message.user("hi")], CONFIG))


class TestMessageTranslation:
    def test_assistant_tool_calls_and_tool_results(self):
        record = ToolCallRecord(id="call_1", tool_name="echo", arguments={"text": "hi"})
        record.finish(ToolResult.success("hi"))
        messages = [
            Message.system("sys"),
            Message.user("say hi"),
            Message.assistant("", tool_calls=[record]),
            Message.tool_response(record),
        ]
        out = OpenAIClient(api_key="sk-test")._to_provider_messages(messages)
        assert [m["role"] for m in out] == ["system", "user", "assistant", "tool"]
        assert out[2]["content"] is None
        assert out[2]["tool_calls"][0]["function"] == {"name": "echo", "arguments": '{"text": "hi"}'}
        assert out[3] == {"role": "tool", "tool_call_id": "call_1", "content": "hi"}


# ─────────────────────────────────────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────────────────────────────────────


class TestErrorMapping:
    def test_rate_limit_with_retry_after(self):
        response = httpx.Response(429, request=_REQUEST, headers={"retry-after": "2"})
        err = _map_error(openai.RateLimitError("slow down", response=response, body=None), "openai")
        assert isinstance(err, LLMRateLimitError)
        assert err.retry_after == 2.0

    def test_auth_error(self):
        response = httpx.Response(401, request=_REQUEST)
        err = _map_error(openai.AuthenticationError("bad key", response=response, body=None), "openai")
        assert isinstance(err, LLMConnectionError)
        assert err.status_code == 401

    def test_context_overflow(self):
        response = httpx.Response(400, request=_REQUEST)
        err = _map_error(
            openai.BadRequestError("maximum context length exceeded", response=response, body=None),
            "openai",
        )
        assert isinstance(err, LLMContextError)

    def test_other_bad_request(self):
        response = httpx.Response(400, request=_REQUEST)
        err = _map_error(openai.BadRequestError("unknown parameter", response=response, body=None), "openai")
        assert isinstance(err, LLMInvalidRequestError)

    def test_timeout(self):
        err = _map_error(openai.APITimeoutError(request=_REQUEST), "ollama")
        assert isinstance(err, LLMConnectionError)
        assert err.provider == "ollama"


# ─────────────────────────────────────────────────────────────────────────────
# ResilientLLMClient
# ─────────────────────────────────────────────────────────────────────────────


class FlakyClient(BaseLLMClient):
    """Fails the first `failures` opens with `error`, then streams `fragments`."""

    def __init__(self, fragments, failures=0, error=None, mid_stream_error=None):
        super().__init__()
        self.fragments = fragments
        self.failures = failures
        self.error = error or LLMConnectionError("down", provider="flaky")
        self.mid_stream_error = mid_stream_error
        self.opens = 0

    async def chat_stream(self, messages, config, tools=None):
        self.opens += 1
        if self.opens <= self.failures:
            raise self.error
        for i, fragment in enumerate(self.fragments):
            if i == 1 and self.mid_stream_error is not None:
                raise self.mid_stream_error
            yield fragment

    async def health_check(self) -> bool:
        return True


def resilient(primary, fallbacks=None, attempts=3):
    return ResilientLLMClient(primary, fallbacks, max_attempts=attempts, base_delay=0.0, max_delay=0.01)


class TestResilientClient:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        primary = FlakyClient(["a", "b"], failures=2)
        fragments = await drain(resilient(primary).chat_stream([], CONFIG))
        assert fragments == ["a", "b"]
        assert primary.opens == 3

    @pytest.mark.asyncio
    async def test_fails_over_after_exhausting_retries(self):
        primary = FlakyClient(["never"], failures=10)
        backup = FlakyClient(["from backup"])
        client = resilient(primary, [backup], attempts=2)
        fragments = await drain(client.chat_stream([], CONFIG))
        assert fragments == ["from backup"]
        assert primary.opens == 2

    @pytest.mark.asyncio
    async def test_permanent_error_skips_failover(self):
        primary = FlakyClient(["x"], failures=1, error=LLMContextError("too long", provider="p"))
        backup = FlakyClient(["from backup"])
        with pytest.raises(LLMContextError):
            await drain(resilient(primary, [backup]).chat_stream([], CONFIG))
        assert backup.opens == 0

    @pytest.mark.asyncio
    async def test_all_clients_fail(self):
        client = resilient(FlakyClient([], failures=10), [FlakyClient([], failures=10)], attempts=1)
        with pytest.raises(LLMError, match="All model clients failed"):
            await drain(client.chat_stream([], CONFIG))

    @pytest.mark.asyncio
    async def test_mid_stream_error_not_retried(self):
        primary = FlakyClient(["a", "b"], mid_stream_error=LLMConnectionError("reset", provider="p"))
        received = []
        with pytest.raises(LLMConnectionError):
            async for fragment in resilient(primary).chat_stream([], CONFIG):
                received.append(fragment)
        assert received == ["a"]
        assert primary.opens == 1

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        assert await drain(resilient(FlakyClient([])).chat_stream([], CONFIG)) == []


class TestFactory:
    def test_local_provider_gets_placeholder_key(self):
        client = LLMClientFactory.create("ollama", base_url="http://localhost:11434/v1")
        assert isinstance(client, OpenAIClient)
        assert client.provider == Provider.OLLAMA
        assert client.api_key == "ollama"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClientFactory.create("skynet")

    def test_anthropic_client(self):
        from llamacli.brain.anthropic_client import AnthropicClient

        client = LLMClientFactory.create("anthropic", api_key="sk-ant-test")
        assert isinstance(client, AnthropicClient)
        assert client.provider == Provider.ANTHROPIC

    def test_gemini_client(self):
        from llamacli.brain.gemini_client import GeminiClient

        client = LLMClientFactory.create("gemini", api_key="g-test")
        assert isinstance(client, GeminiClient)
        assert client.provider == Provider.GEMINI

    @pytest.mark.parametrize("provider", ["anthropic", "gemini"])
    def test_hosted_provider_needs_key(self, provider):
        with pytest.raises(LLMConnectionError, match="API_KEY is required"):
            LLMClientFactory.create(provider)
