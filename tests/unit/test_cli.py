"""
tests/unit/test_cli.py — CLI Interface Unit Tests

Tests CLIInterface command dispatch, event rendering and confirmation
prompts with a silent console, an in-memory session and a mocked
orchestrator.

Run with:
    pytest tests/unit/test_cli.py -v
"""

from __future__ import annotations

import asyncio
from io import StringIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from rich.console import Console

from llamacli.agent.events import (
    ConfirmationNeeded,
    ContentDelta,
    TurnCompleted,
    TurnResult,
    TurnStatus,
)
from llamacli.brain.types import Message, ThinkingBlock
from llamacli.config.settings import Settings
from llamacli.interfaces.cli import CLIInterface
from llamacli.session import SessionManager, SessionStatus
from llamacli.tools.builtin import register_builtin_tools
from llamacli.tools.tool_registry import ToolRegistry


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def cli(tmp_path):
    """Create a pre-wired CLIInterface bypassing _init_components."""
    settings = Settings()
    cli = CLIInterface(settings=settings, console=Console(file=StringIO(), highlight=False, width=200))
    cli._manager = SessionManager()
    cli._session = await cli._manager.create(name="cli-test", working_directory=tmp_path)
    cli._registry = register_builtin_tools(ToolRegistry())
    cli._orchestrator = MagicMock()
    cli._orchestrator.run_turn = AsyncMock(return_value=TurnResult(status=TurnStatus.COMPLETED))
    return cli


def output(cli: CLIInterface) -> str:
    return cli.console.file.getvalue()


# ── _dispatch routing ─────────────────────────────────────────────────────────


class TestDispatch:
    @pytest.mark.asyncio
    async def test_plain_text_routes_to_ask(self, cli):
        cli._cmd_ask = AsyncMock()
        await cli._dispatch("Hello there")
        cli._cmd_ask.assert_awaited_once_with("Hello there")

    @pytest.mark.asyncio
    async def test_bang_routes_to_shell(self, cli):
        cli._cmd_shell = AsyncMock()
        await cli._dispatch("!ls -la")
        cli._cmd_shell.assert_awaited_once_with("ls -la")

    @pytest.mark.asyncio
    async def test_unknown_command(self, cli):
        await cli._dispatch("/frobnicate")
        assert "Unknown command: /frobnicate" in output(cli)

    @pytest.mark.asyncio
    async def test_help(self, cli):
        await cli._dispatch("/help")
        assert "/branch" in output(cli)

    @pytest.mark.asyncio
    async def test_status(self, cli):
        await cli._dispatch("/status")
        assert cli._session.id in output(cli)

    @pytest.mark.asyncio
    async def test_tools(self, cli):
        await cli._dispatch("/tools")
        assert "execute_shell" in output(cli)
        assert "read_file" in output(cli)


# ── Chat ──────────────────────────────────────────────────────────────────────


class TestAsk:
    @pytest.mark.asyncio
    async def test_runs_turn_with_cli_as_sink(self, cli):
        await cli._cmd_ask("what is here?")
        cli._orchestrator.run_turn.assert_awaited_once_with(cli._session, "what is here?", sink=cli)

    def test_content_streams_to_console(self, cli):
        cli.emit(ContentDelta("Hello "))
        cli.emit(ContentDelta("world"))
        cli.emit(TurnCompleted(TurnStatus.COMPLETED))
        assert "Hello world" in output(cli)

    def test_non_completed_status_shown(self, cli):
        cli.emit(TurnCompleted(TurnStatus.CANCELLED, "Cancelled by user."))
        assert "cancelled: Cancelled by user." in output(cli)


# ── Shell passthrough ─────────────────────────────────────────────────────────


class TestShell:
    @pytest.mark.asyncio
    async def test_safe_command_runs(self, cli):
        await cli._cmd_shell("echo from-the-shell")
        assert "from-the-shell" in output(cli)
        assert cli._session.shell.history == ["echo from-the-shell"]

    @pytest.mark.asyncio
    async def test_denied_command_not_run(self, cli, tmp_path):
        victim = tmp_path / "keep.txt"
        victim.write_text("x")

        async def deny(request):
            request.resolve(allow=False)

        cli._prompt_confirmation = deny
        await cli._cmd_shell("rm keep.txt")
        assert "Not executed" in output(cli)
        assert victim.exists()

    @pytest.mark.asyncio
    async def test_prompt_allow_always(self, cli):
        request = cli._session.shell.request_confirmation("rm x", "dangerous")
        with patch("llamacli.interfaces.cli.aioconsole.ainput", AsyncMock(side_effect=["maybe", "a"])):
            await cli._prompt_confirmation(request)
        assert request.allowed and request.allow_always
        assert cli._session.shell.allowlist == ["rm"]

    @pytest.mark.asyncio
    async def test_prompt_eof_denies(self, cli):
        request = cli._session.shell.request_confirmation("rm x", "dangerous")
        with patch("llamacli.interfaces.cli.aioconsole.ainput", AsyncMock(side_effect=EOFError)):
            await cli._prompt_confirmation(request)
        assert request.resolved and not request.allowed

    @pytest.mark.asyncio
    async def test_finished_turn_closes_open_prompt(self, cli):
        prompt_open = asyncio.Event()

        async def never_answers(prompt):
            prompt_open.set()
            await asyncio.Event().wait()

        request = cli._session.shell.request_confirmation("rm x", "dangerous")

        async def run_turn(session, message, sink):
            sink.emit(ConfirmationNeeded(call_id="c1", tool_name="execute_shell", request=request))
            await asyncio.wait_for(prompt_open.wait(), timeout=5)
            return TurnResult(status=TurnStatus.CANCELLED)

        cli._orchestrator.run_turn = AsyncMock(side_effect=run_turn)
        reader = AsyncMock(side_effect=never_answers)
        with patch("llamacli.interfaces.cli.aioconsole.ainput", reader):
            await cli._cmd_ask("go")

        assert cli._confirm_task is None
        assert request.resolved and not request.allowed
        assert reader.await_count == 1

    @pytest.mark.asyncio
    async def test_turn_completed_cancels_prompt(self, cli):
        async def never_answers(prompt):
            await asyncio.Event().wait()

        request = cli._session.shell.request_confirmation("rm x", "dangerous")
        with patch("llamacli.interfaces.cli.aioconsole.ainput", AsyncMock(side_effect=never_answers)):
            cli.emit(ConfirmationNeeded(call_id="c1", tool_name="execute_shell", request=request))
            task = cli._confirm_task
            await asyncio.sleep(0)
            cli.emit(TurnCompleted(TurnStatus.TIMEOUT, "Turn exceeded 1s."))
            with pytest.raises(asyncio.CancelledError):
                await task

        assert task.cancelled()
        assert cli._confirm_task is None


# ── Session commands ──────────────────────────────────────────────────────────


class TestSessionCommands:
    @pytest.mark.asyncio
    async def test_pause_and_resume(self, cli):
        await cli._dispatch("/pause")
        assert cli._session.status == SessionStatus.PAUSED
        await cli._dispatch("/resume")
        assert cli._session.status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_illegal_transition_reported(self, cli):
        await cli._dispatch("/resume")
        assert "Cannot move session" in output(cli)

    @pytest.mark.asyncio
    async def test_branch_switches_session(self, cli):
        parent = cli._session
        parent.append_message(Message.user("one"))
        parent.append_message(Message.user("two"))
        await cli._dispatch("/branch 1")
        assert cli._session is not parent
        assert cli._session.metadata.parent_session_id == parent.id
        assert len(cli._session.messages) == 1

    @pytest.mark.asyncio
    async def test_branch_usage(self, cli):
        await cli._dispatch("/branch nope")
        assert "Usage: /branch" in output(cli)

    @pytest.mark.asyncio
    async def test_sessions_listed(self, cli):
        await cli._dispatch("/sessions")
        assert "cli-test" in output(cli)

    @pytest.mark.asyncio
    async def test_think_commands(self, cli):
        cli._session.archive_thinking(ThinkingBlock(content="first idea"))
        await cli._dispatch("/think list")
        assert "first idea" in output(cli)
        await cli._dispatch("/think 5")
        assert "No reasoning block 5" in output(cli)
        await cli._dispatch("/think on")
        assert cli._show_thinking is True
        await cli._dispatch("/think clear")
        assert cli._session.thinking_blocks == ()

    @pytest.mark.asyncio
    async def test_allowlist_show_and_clear(self, cli):
        cli._session.shell.allow("rm x")
        await cli._dispatch("/allowlist")
        assert "rm" in output(cli)
        await cli._dispatch("/allowlist clear")
        assert cli._session.shell.allowlist == []
