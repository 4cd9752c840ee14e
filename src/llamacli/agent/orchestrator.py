"""
agent/orchestrator.py — Agentic Orchestrator

Drives one user turn from input to final answer:

    1. Append the user message
    2. Build context, open the model stream, parse it into events
    3. Forward content/thinking to the UI sink, collect tool calls
    4. Resolve tool calls one by one, in emission order
       (shell tools go through the session's ShellSafetyGate first)
    5. Append the assistant message with its tool-call records, then one
       tool message per call, and loop back to 2
    6. No tool calls → append the final assistant message, checkpoint, done

run_turn() never raises for turn-level outcomes. Every ending is a
TurnResult whose status says what happened: completed, budget_exceeded,
stream_error, cancelled, timeout, rejected or failed.

Cancellation (cancel(session_id)) discards the in-progress assistant message
and any uncommitted tool results of that round, denies an outstanding
confirmation, and leaves the session active.

Usage:
    orc = Orchestrator.from_settings(settings, llm_client, registry)
    result = await orc.run_turn(session, "What is in this directory?", sink)
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from llamacli.agent.context_builder import ContextBuilder
from llamacli.agent.events import (
    ConfirmationNeeded,
    ContentDelta,
    NullSink,
    ThinkingDelta,
    ThinkingEnded,
    ThinkingStarted,
    ToolCallResolved,
    ToolCallStarted,
    TurnCompleted,
    TurnResult,
    TurnStatus,
    UIEvent,
    UISink,
)
from llamacli.agent.stream_parser import StreamEventKind, StreamEventParser, iter_stream_events
from llamacli.brain.llm_client import BaseLLMClient
from llamacli.brain.types import (
    LLMConfig,
    Message,
    StreamingToolCall,
    TokenUsage,
    ToolCallRecord,
    ToolCallStatus,
    ToolResult,
)
from llamacli.exceptions import (
    ConfirmationDenied,
    ConfirmationPendingError,
    SessionIntegrityError,
    TurnBudgetExceeded,
    TurnInProgressError,
    TurnTimeoutError,
)
from llamacli.observability.logger import bind_session, clear_session, get_logger
from llamacli.session.state import Session
from llamacli.tools.dispatcher import ToolDispatcher
from llamacli.tools.tool_registry import ToolRegistry
from llamacli.tools.types import ToolCategory, ToolContext

log = get_logger(__name__)

_MAX_TOOL_ROUNDS = 10


@dataclass
class _TurnState:
    """Progress of the running turn, readable after cancellation or timeout."""
    rounds: int = 0
    content: str = ""
    records: list[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class _RoundOutcome:
    content: str = ""
    reasoning: str = ""
    calls: list[StreamingToolCall] = field(default_factory=list)
    error: Optional[Exception] = None


class Orchestrator:
    """
    Coordinates the tool-calling loop for each user turn.

    One orchestrator serves every session; per-session state lives on the
    Session (history, lock) and its ShellSafetyGate.
    """

    def __init__(
        self,
        llm_client: BaseLLMClient,
        llm_config: LLMConfig,
        tool_registry: ToolRegistry,
        dispatcher: Optional[ToolDispatcher] = None,
        agent_name: str = "LlamaCLI",
        max_tool_rounds: int = _MAX_TOOL_ROUNDS,
        turn_timeout: Optional[float] = None,
        stream_idle_timeout: Optional[float] = None,
        stream_total_timeout: Optional[float] = None,
        replay_thinking: bool = False,
        system_prompt: Optional[str] = None,
    ):
        self._llm = llm_client
        self._config = llm_config
        self._registry = tool_registry
        self._dispatcher = dispatcher or ToolDispatcher(tool_registry)
        self._max_rounds = max_tool_rounds
        self._turn_timeout = turn_timeout
        self._idle_timeout = stream_idle_timeout
        self._total_timeout = stream_total_timeout
        self._ctx = ContextBuilder(
            agent_name=agent_name,
            system_prompt=system_prompt,
            replay_thinking=replay_thinking,
        )
        self._inflight: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()

    @classmethod
    def from_settings(
        cls,
        settings,
        llm_client: BaseLLMClient,
        tool_registry: ToolRegistry,
    ) -> "Orchestrator":
        llm_config = LLMConfig(
            model=settings.llm.model,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
        )
        dispatcher = ToolDispatcher(
            tool_registry,
            timeout_seconds=max(settings.tools.timeout_seconds, settings.shell.timeout_seconds + 5),
            max_result_chars=settings.tools.max_result_chars,
        )
        return cls(
            llm_client=llm_client,
            llm_config=llm_config,
            tool_registry=tool_registry,
            dispatcher=dispatcher,
            agent_name=settings.agent.name,
            max_tool_rounds=settings.agent.max_tool_rounds,
            turn_timeout=settings.agent.max_turn_timeout_seconds,
            stream_idle_timeout=settings.llm.idle_timeout_seconds,
            stream_total_timeout=settings.llm.total_timeout_seconds,
            replay_thinking=settings.agent.replay_thinking,
            system_prompt=settings.agent.system_prompt,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def is_running(self, session_id: str) -> bool:
        task = self._inflight.get(session_id)
        return task is not None and not task.done()

    def cancel(self, session_id: str) -> bool:
        """Cancel the running turn for a session. Returns False if none is running."""
        task = self._inflight.get(session_id)
        if task is None or task.done():
            return False
        self._cancel_requested.add(session_id)
        task.cancel()
        log.info("orchestrator.cancel_requested", session_id=session_id)
        return True

    async def run_turn(
        self,
        session: Session,
        user_input: str,
        sink: Optional[UISink] = None,
    ) -> TurnResult:
        """Process one user message and return how the turn ended."""
        sink = sink or NullSink()
        t0 = time.monotonic()

        if session.id in self._inflight:
            return self._finish(sink, TurnResult(
                status=TurnStatus.REJECTED,
                reason=str(TurnInProgressError(session.id)),
            ), t0)
        if not session.is_active:
            return self._finish(sink, TurnResult(
                status=TurnStatus.REJECTED,
                reason=f"Session is {session.status.value}; resume it before sending messages.",
            ), t0)

        bind_session(session.id)
        log.info("orchestrator.turn_start", user_input=user_input[:120])
        state = _TurnState()
        task = asyncio.create_task(self._turn(session, user_input, sink, state))
        self._inflight[session.id] = task

        try:
            status, reason = await asyncio.wait_for(task, timeout=self._turn_timeout)
        except asyncio.TimeoutError:
            log.warning("orchestrator.turn_timeout", timeout=self._turn_timeout)
            status, reason = TurnStatus.TIMEOUT, str(TurnTimeoutError(self._turn_timeout))
            await self._after_interruption(session)
        except asyncio.CancelledError:
            self._abandon_pending(session)
            if session.id not in self._cancel_requested:
                raise
            log.info("orchestrator.turn_cancelled")
            status, reason = TurnStatus.CANCELLED, "Cancelled by user."
            await self._after_interruption(session)
        except SessionIntegrityError as e:
            log.error("orchestrator.integrity_error", error=str(e))
            status, reason = TurnStatus.FAILED, str(e)
            await session.fail(str(e))
        except Exception as e:
            log.error("orchestrator.turn_error", error=str(e), exc_info=True)
            status, reason = TurnStatus.FAILED, f"{type(e).__name__}: {e}"
        finally:
            self._inflight.pop(session.id, None)
            self._cancel_requested.discard(session.id)

        result = TurnResult(
            status=status,
            content=state.content,
            reason=reason,
            rounds=state.rounds,
            tool_calls=list(state.records),
            usage=state.usage,
        )
        try:
            return self._finish(sink, result, t0)
        finally:
            clear_session()

    # ─────────────────────────────────────────────────────────────────────────
    # Turn body
    # ─────────────────────────────────────────────────────────────────────────

    async def _turn(
        self,
        session: Session,
        user_input: str,
        sink: UISink,
        state: _TurnState,
    ) -> tuple[TurnStatus, Optional[str]]:
        async with session.lock:
            session.append_message(Message.user(user_input))
            tools = self._registry.to_llm_schemas() if self._llm.supports_tools else None

            for round_index in range(self._max_rounds):
                state.rounds = round_index + 1
                outcome = await self._stream_round(session, tools, sink, state)

                if outcome.error is not None:
                    session.record_turn()
                    await session.checkpoint()
                    return TurnStatus.STREAM_ERROR, str(outcome.error)

                if not outcome.calls:
                    session.append_message(
                        Message.assistant(outcome.content, reasoning=outcome.reasoning)
                    )
                    state.content = outcome.content
                    session.record_turn()
                    await session.checkpoint()
                    return TurnStatus.COMPLETED, None

                records = await self._resolve_tool_calls(session, outcome.calls, sink)
                session.append_message(
                    Message.assistant(outcome.content, tool_calls=records, reasoning=outcome.reasoning)
                )
                for record in records:
                    session.append_message(Message.tool_response(record))
                    session.record_tool_result(record)
                state.records.extend(records)

            log.warning("orchestrator.max_rounds_reached", max_rounds=self._max_rounds)
            session.record_turn()
            await session.checkpoint()
            return TurnStatus.BUDGET_EXCEEDED, str(TurnBudgetExceeded(self._max_rounds))

    async def _stream_round(
        self,
        session: Session,
        tools,
        sink: UISink,
        state: _TurnState,
    ) -> _RoundOutcome:
        outcome = _RoundOutcome()
        content: list[str] = []
        reasoning: list[str] = []

        stream = self._llm.chat_stream(self._ctx.build(session), self._config, tools)
        events = iter_stream_events(
            stream,
            StreamEventParser(),
            idle_timeout=self._idle_timeout,
            total_timeout=self._total_timeout,
        )
        async with aclosing(events):
            async for event in events:
                kind = event.kind
                if kind == StreamEventKind.CONTENT:
                    content.append(event.text)
                    self._emit(sink, ContentDelta(event.text))
                elif kind == StreamEventKind.THINKING_START:
                    self._emit(sink, ThinkingStarted())
                elif kind == StreamEventKind.THINKING_DELTA:
                    self._emit(sink, ThinkingDelta(event.text))
                elif kind == StreamEventKind.THINKING_END:
                    session.archive_thinking(event.block)
                    if not event.block.is_blank:
                        reasoning.append(event.block.content)
                    self._emit(sink, ThinkingEnded(event.block))
                elif kind == StreamEventKind.TOOL_CALL:
                    outcome.calls.append(event.call)
                elif kind == StreamEventKind.ERROR:
                    outcome.error = event.error
                    break
                elif kind == StreamEventKind.DONE and event.usage is not None:
                    session.record_token_usage(event.usage)
                    state.usage = TokenUsage(
                        input_tokens=state.usage.input_tokens + event.usage.input_tokens,
                        output_tokens=state.usage.output_tokens + event.usage.output_tokens,
                    )

        outcome.content = "".join(content)
        outcome.reasoning = "\n\n".join(reasoning)
        return outcome

    # ─────────────────────────────────────────────────────────────────────────
    # Tool resolution
    # ─────────────────────────────────────────────────────────────────────────

    async def _resolve_tool_calls(
        self,
        session: Session,
        calls: list[StreamingToolCall],
        sink: UISink,
    ) -> list[ToolCallRecord]:
        """Sequential, in emission order. One failure never skips the rest."""
        records: list[ToolCallRecord] = []
        for call in calls:
            record = ToolCallRecord.from_stream(call)
            self._emit(sink, ToolCallStarted(record.id, record.tool_name, dict(record.arguments)))
            await self._resolve_one(session, call, record, sink)
            self._emit(sink, ToolCallResolved(record.model_copy(deep=True)))
            log.info(
                "orchestrator.tool_resolved",
                tool=record.tool_name,
                tool_call_id=record.id,
                status=record.status.value,
            )
            records.append(record)
        return records

    async def _resolve_one(
        self,
        session: Session,
        call: StreamingToolCall,
        record: ToolCallRecord,
        sink: UISink,
    ) -> None:
        if call.raw_arguments is not None:
            record.finish(ToolResult.error(
                f"Tool '{call.name}' arguments were not valid JSON: {call.raw_arguments[:200]}",
                tool=call.name,
            ))
            return

        schema = self._registry.get_schema(call.name)
        if schema is None or not schema.enabled:
            # dispatcher produces the unknown/disabled error; pending → failed
            record.finish(await self._dispatcher.dispatch(call.name, call.arguments, call_id=record.id))
            return

        context = ToolContext(
            session_id=session.id,
            working_directory=(
                session.shell.working_directory
                if session.shell is not None
                else Path(session.metadata.working_directory or ".").resolve()
            ),
            shell=session.shell,
        )

        if schema.category == ToolCategory.SHELL and session.shell is not None:
            command = call.arguments.get("command")
            if isinstance(command, str) and command.strip():
                classification = session.shell.classify(command)
                if classification.needs_confirmation:
                    try:
                        request = session.shell.request_confirmation(
                            command, classification.reason, classification.category
                        )
                    except ConfirmationPendingError as e:
                        _deny(record, f"Tool '{call.name}' could not ask for confirmation: {e}")
                        return
                    self._emit(sink, ConfirmationNeeded(record.id, record.tool_name, request))
                    if not await request.wait():
                        _deny(record, str(ConfirmationDenied(command)))
                        return
                    record.transition(ToolCallStatus.CONFIRMED)
                    context.confirmed_command = command

        record.transition(ToolCallStatus.EXECUTING)
        result = await self._dispatcher.dispatch(
            call.name, call.arguments, context=context, call_id=record.id
        )
        record.finish(result)

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _abandon_pending(self, session: Session) -> None:
        if session.shell is not None:
            session.shell.cancel_pending()

    async def _after_interruption(self, session: Session) -> None:
        """Persist what was committed before a cancel/timeout; the partial reply is dropped."""
        self._abandon_pending(session)
        async with session.lock:
            if session.is_active:
                session.record_turn()
                await session.checkpoint()

    def _emit(self, sink: UISink, event: UIEvent) -> None:
        try:
            sink.emit(event)
        except Exception as e:
            log.warning("orchestrator.sink_error", event_type=type(event).__name__, error=str(e), exc_info=True)

    def _finish(self, sink: UISink, result: TurnResult, t0: float) -> TurnResult:
        result.duration_ms = round((time.monotonic() - t0) * 1000, 1)
        self._emit(sink, TurnCompleted(result.status, result.reason))
        log_fn = log.info if result.status == TurnStatus.COMPLETED else log.warning
        log_fn(
            "orchestrator.turn_done",
            status=result.status.value,
            reason=result.reason,
            rounds=result.rounds,
            tool_calls=len(result.tool_calls),
            ms=result.duration_ms,
        )
        return result


def _deny(record: ToolCallRecord, message: str) -> None:
    record.transition(ToolCallStatus.DENIED)
    record.result = ToolResult.error(message, denied=True)
