"""
agent/stream_parser.py — Stream Event Parser

Turns raw text fragments from a model adapter into structured events:

    content          visible assistant text
    thinking-start   a <think> span opened
    thinking-delta   text inside the span
    thinking-end     span closed; carries the full ThinkingBlock
    tool-call        a complete tool-call intent from the adapter
    error            adapter failure or timeout (terminal, no done follows)
    done             stream finished normally; carries token usage

Markers are matched case-insensitively and may be split across fragments.
Text is flushed as soon as it provably cannot be the start of the next
marker: the longest buffer suffix that is a prefix of the awaited marker is
held back, everything before it is emitted. The concatenated content events
therefore equal the input with reasoning spans removed, and the concatenated
thinking deltas equal the spans' inner text, however the input is chunked.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from llamacli.brain.llm_client import StreamFragment
from llamacli.brain.types import StreamingToolCall, ThinkingBlock, TokenUsage
from llamacli.exceptions import LLMError, StreamError, StreamIdleTimeout
from llamacli.observability.logger import get_logger

log = get_logger(__name__)

OPEN_MARKER = "<think>"
CLOSE_MARKER = "</think>"

_OPEN_RE = re.compile(re.escape(OPEN_MARKER), re.IGNORECASE)
_CLOSE_RE = re.compile(re.escape(CLOSE_MARKER), re.IGNORECASE)


class StreamEventKind(str, Enum):
    CONTENT = "content"
    THINKING_START = "thinking-start"
    THINKING_DELTA = "thinking-delta"
    THINKING_END = "thinking-end"
    TOOL_CALL = "tool-call"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    block: Optional[ThinkingBlock] = None
    call: Optional[StreamingToolCall] = None
    error: Optional[Exception] = None
    usage: Optional[TokenUsage] = None

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(StreamEventKind.CONTENT, text=text)

    @classmethod
    def thinking_start(cls) -> "StreamEvent":
        return cls(StreamEventKind.THINKING_START)

    @classmethod
    def thinking_delta(cls, text: str) -> "StreamEvent":
        return cls(StreamEventKind.THINKING_DELTA, text=text)

    @classmethod
    def thinking_end(cls, block: ThinkingBlock) -> "StreamEvent":
        return cls(StreamEventKind.THINKING_END, block=block)

    @classmethod
    def tool_call(cls, call: StreamingToolCall) -> "StreamEvent":
        return cls(StreamEventKind.TOOL_CALL, call=call)

    @classmethod
    def failed(cls, error: Exception) -> "StreamEvent":
        return cls(StreamEventKind.ERROR, error=error)

    @classmethod
    def done(cls, usage: Optional[TokenUsage] = None) -> "StreamEvent":
        return cls(StreamEventKind.DONE, usage=usage)


def _held_suffix_length(buffer: str, marker: str) -> int:
    """Length of the longest suffix of buffer that is a proper prefix of marker."""
    for k in range(min(len(buffer), len(marker) - 1), 0, -1):
        if buffer[-k:].lower() == marker[:k]:
            return k
    return 0


class StreamEventParser:
    """
    Incremental <think>-aware parser. One instance per model call; finalize()
    resets it so it can be reused for the next call.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_thinking = False
        self._thinking_parts: list[str] = []

    @property
    def in_thinking(self) -> bool:
        return self._in_thinking

    def process(self, fragment: str) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        self._buffer += fragment

        while True:
            pattern = _CLOSE_RE if self._in_thinking else _OPEN_RE
            match = pattern.search(self._buffer)
            if match is None:
                break
            before = self._buffer[:match.start()]
            self._buffer = self._buffer[match.end():]
            if self._in_thinking:
                self._emit_text(before, events)
                events.append(self._close_span())
            else:
                self._emit_text(before, events)
                self._in_thinking = True
                self._thinking_parts = []
                events.append(StreamEvent.thinking_start())

        marker = CLOSE_MARKER if self._in_thinking else OPEN_MARKER
        hold = _held_suffix_length(self._buffer, marker)
        safe = self._buffer[:len(self._buffer) - hold]
        self._buffer = self._buffer[len(safe):]
        self._emit_text(safe, events)
        return events

    def finalize(self) -> list[StreamEvent]:
        """Flush whatever is buffered. An unclosed span is treated as complete."""
        events: list[StreamEvent] = []
        if self._in_thinking:
            self._emit_text(self._buffer, events)
            events.append(self._close_span())
        else:
            self._emit_text(self._buffer, events)
        self.reset()
        return events

    def reset(self) -> None:
        self._buffer = ""
        self._in_thinking = False
        self._thinking_parts = []

    # ── internals ────────────────────────────────────────────────────────────

    def _emit_text(self, text: str, events: list[StreamEvent]) -> None:
        if not text:
            return
        if self._in_thinking:
            self._thinking_parts.append(text)
            events.append(StreamEvent.thinking_delta(text))
        else:
            events.append(StreamEvent.content(text))

    def _close_span(self) -> StreamEvent:
        block = ThinkingBlock(content="".join(self._thinking_parts))
        self._in_thinking = False
        self._thinking_parts = []
        return StreamEvent.thinking_end(block)


async def _close_stream(stream: AsyncIterator[StreamFragment]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


async def iter_stream_events(
    stream: AsyncIterator[StreamFragment],
    parser: Optional[StreamEventParser] = None,
    idle_timeout: Optional[float] = None,
    total_timeout: Optional[float] = None,
) -> AsyncIterator[StreamEvent]:
    """
    Drive a parser over an adapter stream.

    Text fragments go through the parser; tool calls pass straight through;
    usage is attached to the final done event. Any adapter failure, idle
    timeout or total timeout ends the iteration with a single error event.
    """
    parser = parser or StreamEventParser()
    loop = asyncio.get_running_loop()
    deadline = loop.time() + total_timeout if total_timeout else None
    iterator = stream.__aiter__()
    usage: Optional[TokenUsage] = None

    try:
        while True:
            try:
                fragment = await _next_fragment(iterator, loop, idle_timeout, deadline, total_timeout)
            except StopAsyncIteration:
                break
            except (LLMError, StreamError) as e:
                log.warning("stream.failed", error=str(e), error_type=type(e).__name__)
                parser.reset()
                yield StreamEvent.failed(e)
                return
            except Exception as e:
                log.error("stream.adapter_crashed", error=str(e), error_type=type(e).__name__, exc_info=True)
                parser.reset()
                yield StreamEvent.failed(StreamError(f"{type(e).__name__}: {e}"))
                return

            if isinstance(fragment, str):
                for event in parser.process(fragment):
                    yield event
            elif isinstance(fragment, StreamingToolCall):
                yield StreamEvent.tool_call(fragment)
            elif isinstance(fragment, TokenUsage):
                usage = fragment
            else:
                log.warning("stream.unknown_fragment", fragment_type=type(fragment).__name__)
    finally:
        await _close_stream(iterator)

    for event in parser.finalize():
        yield event
    yield StreamEvent.done(usage)


async def _next_fragment(iterator, loop, idle_timeout, deadline, total_timeout):
    timeout = idle_timeout
    bounded_by_total = False
    if deadline is not None:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise StreamError(f"Model stream exceeded total timeout of {total_timeout}s")
        if idle_timeout is None or remaining <= idle_timeout:
            timeout = remaining
            bounded_by_total = True
    try:
        return await asyncio.wait_for(iterator.__anext__(), timeout)
    except asyncio.TimeoutError:
        if bounded_by_total:
            raise StreamError(f"Model stream exceeded total timeout of {total_timeout}s")
        raise StreamIdleTimeout(idle_timeout or 0.0)
