"""
tools/shell.py — Shell Execution Tool

Runs commands through the session's ShellSafetyGate, so they share its
working directory, history, scrubbed environment and timeout handling.

The orchestrator asks the user before this tool runs a command the gate
flags. The handler re-classifies anyway: a flagged command that was not
confirmed (context.confirmed_command differs) is refused, never executed.

Registered tools:
  - execute_shell → run a shell command, capture output
"""

from __future__ import annotations

from typing import Optional

from llamacli.observability.logger import get_logger
from llamacli.safety.shell_gate import ShellExecutionResult, ShellExecutionStatus
from llamacli.tools.tool_registry import ToolRegistry
from llamacli.tools.types import RiskLevel, ToolCategory, ToolContext, ToolResult

log = get_logger(__name__)


def format_execution(result: ShellExecutionResult) -> str:
    lines = [
        f"Command: {result.command}",
        f"Working Directory: {result.working_directory}",
        f"Exit Code: {result.exit_code}",
        f"Duration: {result.duration_ms}ms",
    ]
    if result.status == ShellExecutionStatus.TIMED_OUT:
        lines.append("Status: TIMED OUT")
    elif result.status == ShellExecutionStatus.FAILED_TO_START:
        lines.append("Status: FAILED TO START")
    if result.stdout:
        lines += ["", "--- STDOUT ---", result.stdout.rstrip("\n")]
    if result.stderr:
        lines += ["", "--- STDERR ---", result.stderr.rstrip("\n")]
    return "\n".join(lines)


def register_shell_tools(registry: ToolRegistry, default_timeout: Optional[float] = None) -> None:

    @registry.tool(
        name="execute_shell",
        description=(
            "Execute a shell command in the session's working directory and return "
            "its exit code, stdout and stderr. `cd` changes the working directory for "
            "later commands. Potentially destructive commands pause for the user's "
            "approval first."
        ),
        category=ToolCategory.SHELL,
        risk_level=RiskLevel.HIGH,
        takes_context=True,
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute (e.g. 'ls -la', 'grep -r TODO .')",
                },
                "timeout_seconds": {
                    "type": "integer",
                    "description": "Max seconds to wait for the command (default: configured shell timeout)",
                },
            },
            "required": ["command"],
        },
    )
    async def execute_shell(
        command: str,
        context: ToolContext,
        timeout_seconds: Optional[int] = None,
    ) -> ToolResult:
        gate = context.shell
        if gate is None:
            return ToolResult.error("No shell is attached to this session.")
        if not command.strip():
            return ToolResult.error("Empty command.")

        classification = gate.classify(command)
        if classification.needs_confirmation and context.confirmed_command != command:
            log.warning("shell_tool.unconfirmed_refused", command=command, reason=classification.reason)
            return ToolResult.error(
                f"Command requires user confirmation and was not approved: {command}",
                denied=True,
            )

        timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else default_timeout
        result = await gate.execute_command(command, timeout=timeout)
        text = format_execution(result)
        metadata = {
            "exit_code": result.exit_code,
            "status": result.status.value,
            "working_directory": result.working_directory,
        }
        if not result.succeeded:
            return ToolResult.error(text, **metadata)
        return ToolResult.success(text, **metadata)
