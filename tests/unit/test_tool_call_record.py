"""
tests/unit/test_tool_call_record.py — ToolCallRecord Lifecycle Unit Tests

Covers:
  - legal forward transitions
  - backward moves and moves out of terminal states are refused
  - finish(): routing through executing, and refusing a second result
"""

from __future__ import annotations

import pytest

from llamacli.brain.types import (
    StreamingToolCall,
    ToolCallRecord,
    ToolCallStatus,
    ToolResult,
)
from llamacli.exceptions import InvalidToolCallTransition, ToolError


def make_record(status: ToolCallStatus = ToolCallStatus.PENDING) -> ToolCallRecord:
    return ToolCallRecord(id="c1", tool_name="echo", arguments={"text": "hi"}, status=status)


# ─────────────────────────────────────────────────────────────────────────────
# transition()
# ─────────────────────────────────────────────────────────────────────────────


class TestTransition:
    @pytest.mark.parametrize("path", [
        [ToolCallStatus.CONFIRMED, ToolCallStatus.EXECUTING, ToolCallStatus.SUCCEEDED],
        [ToolCallStatus.EXECUTING, ToolCallStatus.FAILED],
        [ToolCallStatus.DENIED],
        [ToolCallStatus.FAILED],
        [ToolCallStatus.CONFIRMED, ToolCallStatus.FAILED],
    ])
    def test_forward_paths(self, path):
        record = make_record()
        for status in path:
            record.transition(status)
        assert record.status == path[-1]

    @pytest.mark.parametrize("current,target", [
        (ToolCallStatus.SUCCEEDED, ToolCallStatus.EXECUTING),
        (ToolCallStatus.PENDING, ToolCallStatus.SUCCEEDED),
        (ToolCallStatus.EXECUTING, ToolCallStatus.CONFIRMED),
        (ToolCallStatus.EXECUTING, ToolCallStatus.PENDING),
        (ToolCallStatus.DENIED, ToolCallStatus.EXECUTING),
        (ToolCallStatus.FAILED, ToolCallStatus.SUCCEEDED),
        (ToolCallStatus.CONFIRMED, ToolCallStatus.DENIED),
    ])
    def test_illegal_moves_refused(self, current, target):
        record = make_record(current)
        with pytest.raises(InvalidToolCallTransition) as exc_info:
            record.transition(target)
        assert exc_info.value.current == current.value
        assert exc_info.value.target == target.value
        assert record.status == current

    def test_error_is_a_tool_error(self):
        assert issubclass(InvalidToolCallTransition, ToolError)

    def test_terminal_states(self):
        terminal = {s for s in ToolCallStatus if s.is_terminal}
        assert terminal == {ToolCallStatus.DENIED, ToolCallStatus.SUCCEEDED, ToolCallStatus.FAILED}


# ─────────────────────────────────────────────────────────────────────────────
# finish()
# ─────────────────────────────────────────────────────────────────────────────


class TestFinish:
    def test_success_from_pending_runs_through_executing(self):
        record = make_record()
        record.finish(ToolResult.success("hi"))
        assert record.status == ToolCallStatus.SUCCEEDED
        assert record.result.text == "hi"

    def test_error_from_pending_fails_directly(self):
        record = make_record()
        record.finish(ToolResult.error("bad arguments"))
        assert record.status == ToolCallStatus.FAILED

    def test_confirmed_record_finishes(self):
        record = make_record(ToolCallStatus.CONFIRMED)
        record.finish(ToolResult.success("ok"))
        assert record.status == ToolCallStatus.SUCCEEDED

    def test_second_finish_refused(self):
        record = make_record()
        record.finish(ToolResult.success("first"))
        with pytest.raises(InvalidToolCallTransition):
            record.finish(ToolResult.error("second"))
        assert record.status == ToolCallStatus.SUCCEEDED
        assert record.result.text == "first"

    def test_denied_record_cannot_finish(self):
        record = make_record()
        record.transition(ToolCallStatus.DENIED)
        with pytest.raises(InvalidToolCallTransition):
            record.finish(ToolResult.success("late"))
        assert record.result is None

    def test_from_stream_copies_arguments(self):
        call = StreamingToolCall(id="c9", name="echo", arguments={"text": "x"})
        record = ToolCallRecord.from_stream(call)
        call.arguments["text"] = "changed"
        assert record.id == "c9"
        assert record.arguments == {"text": "x"}
        assert record.status == ToolCallStatus.PENDING
