"""
tests/unit/test_shell_tool.py — execute_shell Tool + Built-in Registration Unit Tests
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from llamacli.config.settings import load_settings
from llamacli.safety.shell_gate import ShellSafetyGate
from llamacli.tools.builtin import register_builtin_tools
from llamacli.tools.dispatcher import ToolDispatcher
from llamacli.tools.tool_registry import ToolRegistry
from llamacli.tools.types import ToolContext


def make_dispatcher() -> ToolDispatcher:
    return ToolDispatcher(register_builtin_tools(ToolRegistry()))


def make_context(tmp_path: Path, confirmed: str | None = None, shell: bool = True) -> ToolContext:
    gate = ShellSafetyGate(working_directory=tmp_path, timeout_seconds=5) if shell else None
    return ToolContext(
        session_id="test",
        working_directory=tmp_path,
        shell=gate,
        confirmed_command=confirmed,
    )


# ─────────────────────────────────────────────────────────────────────────────
# execute_shell
# ─────────────────────────────────────────────────────────────────────────────


class TestExecuteShell:
    @pytest.mark.asyncio
    async def test_safe_command(self, tmp_path):
        result = await make_dispatcher().dispatch(
            "execute_shell", {"command": "echo hi"}, context=make_context(tmp_path)
        )
        assert not result.is_error
        assert "Exit Code: 0" in result.text
        assert "--- STDOUT ---\nhi" in result.text
        assert result.metadata["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_error(self, tmp_path):
        result = await make_dispatcher().dispatch(
            "execute_shell", {"command": "ls does-not-exist"}, context=make_context(tmp_path)
        )
        assert result.is_error
        assert result.metadata["exit_code"] != 0
        assert "--- STDERR ---" in result.text

    @pytest.mark.asyncio
    async def test_unconfirmed_dangerous_refused(self, tmp_path):
        victim = tmp_path / "keep.txt"
        victim.write_text("x")
        result = await make_dispatcher().dispatch(
            "execute_shell", {"command": "rm keep.txt"}, context=make_context(tmp_path)
        )
        assert result.is_error
        assert result.metadata["denied"] is True
        assert victim.exists()

    @pytest.mark.asyncio
    async def test_confirmation_covers_only_exact_command(self, tmp_path):
        victim = tmp_path / "keep.txt"
        victim.write_text("x")
        context = make_context(tmp_path, confirmed="rm other.txt")
        result = await make_dispatcher().dispatch("execute_shell", {"command": "rm keep.txt"}, context=context)
        assert result.is_error
        assert victim.exists()

    @pytest.mark.asyncio
    async def test_confirmed_command_runs(self, tmp_path):
        victim = tmp_path / "gone.txt"
        victim.write_text("x")
        context = make_context(tmp_path, confirmed="rm gone.txt")
        result = await make_dispatcher().dispatch("execute_shell", {"command": "rm gone.txt"}, context=context)
        assert not result.is_error
        assert not victim.exists()

    @pytest.mark.asyncio
    async def test_no_shell_attached(self, tmp_path):
        result = await make_dispatcher().dispatch(
            "execute_shell", {"command": "echo hi"}, context=make_context(tmp_path, shell=False)
        )
        assert result.is_error
        assert "No shell" in result.text

    @pytest.mark.asyncio
    async def test_empty_command(self, tmp_path):
        result = await make_dispatcher().dispatch(
            "execute_shell", {"command": "   "}, context=make_context(tmp_path)
        )
        assert result.is_error
        assert "Empty command" in result.text


# ─────────────────────────────────────────────────────────────────────────────
# register_builtin_tools
# ─────────────────────────────────────────────────────────────────────────────


class TestBuiltinRegistration:
    def test_all_tools_by_default(self):
        names = register_builtin_tools(ToolRegistry()).list_names()
        for expected in ("echo", "execute_shell", "read_file", "write_file", "web_fetch"):
            assert expected in names

    def test_switches_respected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "tools": {"enable_shell": False, "enable_network": False, "enable_filesystem": True},
        }), encoding="utf-8")
        names = register_builtin_tools(ToolRegistry(), load_settings(path)).list_names()
        assert "execute_shell" not in names
        assert "web_fetch" not in names
        assert "read_file" in names
        assert "echo" in names
