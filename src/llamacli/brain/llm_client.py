"""
brain/llm_client.py — Abstract Streaming Model Client + Retry/Failover

Every provider adapter subclasses BaseLLMClient and implements chat_stream(),
an async iterator of fragments:

    str                 a piece of assistant text (may contain <think> markers)
    StreamingToolCall   a complete tool-call intent
    TokenUsage          usage totals, normally last

Adapters raise LLMError subclasses on failure. Retrying is only safe before
the first fragment has been yielded: ResilientLLMClient retries opening the
stream with exponential backoff and then fails over to the next client.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Union

from llamacli.brain.types import LLMConfig, Message, Provider, StreamingToolCall, TokenUsage, ToolSchema
from llamacli.exceptions import (
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from llamacli.observability.logger import get_logger

log = get_logger(__name__)

StreamFragment = Union[str, StreamingToolCall, TokenUsage]


class BaseLLMClient(ABC):
    """
    Abstract base for all model adapters.

    Subclasses must implement:
      - chat_stream()  -> async iterator of StreamFragment
      - health_check() -> verify connectivity to the provider
    """

    supports_tools: bool = True

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    def chat_stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> AsyncIterator[StreamFragment]:
        """Start a streaming completion."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the provider is reachable and the API key is valid."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Retry logic
# ─────────────────────────────────────────────────────────────────────────────


async def _close_stream(stream: AsyncIterator[StreamFragment]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


async def _open_with_retry(
    client: BaseLLMClient,
    messages: list[Message],
    config: LLMConfig,
    tools: Optional[list[ToolSchema]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
) -> tuple[Optional[StreamFragment], AsyncIterator[StreamFragment]]:
    """
    Open client.chat_stream() and pull the first fragment, retrying with
    exponential backoff on transient errors.

    Retries on LLMConnectionError and LLMRateLimitError. Context overflow and
    invalid requests are permanent and propagate immediately.

    Backoff: min(base_delay * 2^attempt + jitter, max_delay), or retry_after
    when the rate-limit error carries one.

    Returns (first_fragment, stream). first_fragment is None for an empty stream.
    """
    last_error: Exception | None = None

    for attempt in range(max_attempts):
        stream = client.chat_stream(messages, config, tools)
        try:
            first = await stream.__anext__()
            return first, stream
        except StopAsyncIteration:
            return None, stream
        except (LLMConnectionError, LLMRateLimitError) as e:
            last_error = e
            await _close_stream(stream)

            if attempt == max_attempts - 1:
                break

            if isinstance(e, LLMRateLimitError) and e.retry_after:
                delay = min(e.retry_after, max_delay)
            else:
                jitter = random.uniform(0, 0.5)
                delay = min(base_delay * (2 ** attempt) + jitter, max_delay)

            log.warning(
                "llm.retrying",
                attempt=attempt + 1,
                max_attempts=max_attempts,
                delay_s=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)

    raise last_error  # type: ignore[misc]


# ─────────────────────────────────────────────────────────────────────────────
# ResilientLLMClient — retry + optional provider failover
# ─────────────────────────────────────────────────────────────────────────────


class ResilientLLMClient(BaseLLMClient):
    """
    Wraps a primary client with retry and optional failover.

    Behaviour:
      1. Opens the primary stream with up to max_attempts retries.
      2. If the primary exhausts its retries, each fallback is tried in order.
      3. Permanent errors (context overflow, invalid request) skip failover.
      4. Once a fragment has been yielded, errors propagate unchanged;
         the turn already consumed part of the answer.
    """

    def __init__(
        self,
        primary: BaseLLMClient,
        fallbacks: Optional[list[BaseLLMClient]] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        super().__init__()
        self._primary = primary
        self._fallbacks = fallbacks or []
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.supports_tools = getattr(primary, "supports_tools", True)
        self._active_client: BaseLLMClient = primary

    @property
    def primary(self) -> BaseLLMClient:
        return self._primary

    async def chat_stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        tools: Optional[list[ToolSchema]] = None,
    ) -> AsyncIterator[StreamFragment]:
        all_clients = [self._primary] + self._fallbacks
        last_error: Exception | None = None

        for i, client in enumerate(all_clients):
            if i > 0:
                log.warning(
                    "llm.failing_over",
                    from_client=repr(all_clients[i - 1]),
                    to_client=repr(client),
                    reason=str(last_error),
                )
            try:
                first, stream = await _open_with_retry(
                    client=client,
                    messages=messages,
                    config=config,
                    tools=tools,
                    max_attempts=self._max_attempts,
                    base_delay=self._base_delay,
                    max_delay=self._max_delay,
                )
            except (LLMContextError, LLMInvalidRequestError):
                raise
            except LLMError as e:
                last_error = e
                log.error(
                    "llm.client_exhausted",
                    client=repr(client),
                    error=str(e),
                    will_try_fallback=i < len(all_clients) - 1,
                )
                continue

            self._active_client = client
            try:
                if first is None:
                    return
                yield first
                async for fragment in stream:
                    yield fragment
            finally:
                await _close_stream(stream)
            return

        raise LLMError(
            f"All model clients failed. Last error: {last_error}",
            provider="all",
        )

    async def health_check(self) -> bool:
        return await self._active_client.health_check()

    def __repr__(self) -> str:
        n = len(self._fallbacks)
        suffix = f" + {n} fallback(s)" if n else ""
        return f"<ResilientLLMClient primary={self._primary!r}{suffix}>"


# ─────────────────────────────────────────────────────────────────────────────
# Client Factory
# ─────────────────────────────────────────────────────────────────────────────


class LLMClientFactory:
    """Builds adapters: Anthropic and Gemini natively, everything else over the OpenAI API."""

    @staticmethod
    def create(
        provider: Provider | str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> BaseLLMClient:
        provider = Provider(provider)

        if provider == Provider.ANTHROPIC:
            if not api_key:
                raise LLMConnectionError("ANTHROPIC_API_KEY is required", provider=provider.value)
            from llamacli.brain.anthropic_client import AnthropicClient
            return AnthropicClient(api_key=api_key, base_url=base_url)

        if provider == Provider.GEMINI:
            if not api_key:
                raise LLMConnectionError("GEMINI_API_KEY is required", provider=provider.value)
            from llamacli.brain.gemini_client import GeminiClient
            return GeminiClient(api_key=api_key)

        from llamacli.brain.openai_client import OpenAIClient

        # Local servers accept any key; the SDK refuses an empty one.
        if provider in (Provider.OLLAMA, Provider.VLLM, Provider.OPENAI_COMPATIBLE):
            api_key = api_key or provider.value
        return OpenAIClient(api_key=api_key, base_url=base_url, provider=provider)

    @staticmethod
    def from_settings(settings) -> ResilientLLMClient:
        primary = LLMClientFactory.create(
            settings.llm.provider,
            api_key=settings.llm_api_key_for_provider,
            base_url=settings.llm_base_url,
        )
        retry = settings.llm.retry
        return ResilientLLMClient(
            primary=primary,
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
        )
