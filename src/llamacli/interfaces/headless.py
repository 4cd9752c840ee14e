"""
interfaces/headless.py — llamacli Non-interactive Mode

Runs a single turn without the REPL and writes the reply to stdout or a
file. Status lines go to stderr so stdout stays clean for pipes.

Usage:
    llamacli -p "summarise README.md" --format json -o summary.json
    echo "what is in this directory?" | llamacli
    llamacli get "capital of France"

Shell commands that need confirmation are denied, since nobody is there to
answer. --yolo approves every such request instead.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TextIO

from rich.console import Console
from rich.markup import escape

from llamacli.agent.events import (
    CollectingSink,
    ConfirmationNeeded,
    ToolCallStarted,
    TurnResult,
    UIEvent,
)
from llamacli.agent.orchestrator import Orchestrator
from llamacli.brain.llm_client import BaseLLMClient, LLMClientFactory
from llamacli.config.settings import Settings
from llamacli.observability.logger import get_logger
from llamacli.session.manager import SessionManager
from llamacli.session.types import SessionStatus
from llamacli.tools.builtin import register_builtin_tools
from llamacli.tools.tool_registry import ToolRegistry

log = get_logger(__name__)

OUTPUT_FORMATS = ("text", "json", "markdown")


@dataclass
class HeadlessOptions:
    prompt: str
    output_format: str = "text"
    output_path: Optional[Path] = None
    file_path: Optional[Path] = None
    no_tools: bool = False
    yolo: bool = False
    quiet: bool = False
    verbose: bool = False               # include metadata in json / markdown output
    session_id: Optional[str] = None
    working_directory: Optional[str] = None


class HeadlessSink(CollectingSink):
    """Collects events and answers confirmation requests on the user's behalf."""

    def __init__(self, console: Console, auto_approve: bool = False, quiet: bool = False):
        super().__init__()
        self.console = console
        self.auto_approve = auto_approve
        self.quiet = quiet

    def emit(self, event: UIEvent) -> None:
        super().emit(event)
        if isinstance(event, ConfirmationNeeded):
            request = event.request
            request.resolve(allow=self.auto_approve)
            log.info("headless.confirmation", command=request.command, allowed=self.auto_approve)
            if not self.quiet:
                verdict = "[yellow]auto-approved[/]" if self.auto_approve else "[red]denied (pass --yolo to allow)[/]"
                self.console.print(f"⚠ {escape(request.command)}: {verdict}")
        elif isinstance(event, ToolCallStarted) and not self.quiet:
            self.console.print(f"[cyan]⚙ {escape(event.tool_name)}[/]")


def build_prompt(prompt: str, file_path: Optional[Path] = None) -> str:
    """Append an attached file to the prompt. Raises OSError if it cannot be read."""
    if file_path is None:
        return prompt
    content = Path(file_path).read_text(encoding="utf-8")
    return f"{prompt}\n\n--- File: {file_path} ---\n{content}\n--- End of File ---"


def format_output(
    result: TurnResult,
    output_format: str,
    metadata: Optional[dict[str, Any]] = None,
) -> str:
    timestamp = datetime.now(timezone.utc).isoformat()
    if output_format == "json":
        return json.dumps(
            {
                "content": result.content,
                "status": result.status.value,
                "reason": result.reason,
                "metadata": metadata or {},
                "timestamp": timestamp,
            },
            indent=2,
            ensure_ascii=False,
        )
    if output_format == "markdown":
        if not metadata:
            return result.content
        front = "\n".join(f"{key}: {value}" for key, value in metadata.items())
        return f"---\n{front}\ntimestamp: {timestamp}\n---\n\n{result.content}"
    return result.content


class HeadlessRunner:
    """One prompt in, one rendered reply out. Returns a process exit code."""

    def __init__(
        self,
        settings: Settings,
        llm_client: Optional[BaseLLMClient] = None,
        console: Optional[Console] = None,
        stdout: Optional[TextIO] = None,
    ):
        self.settings = settings
        self.console = console or Console(stderr=True)
        self.stdout = stdout or sys.stdout
        self._llm_client = llm_client

    async def run(self, options: HeadlessOptions) -> int:
        if options.output_format not in OUTPUT_FORMATS:
            self._error(options, f"Unknown output format '{options.output_format}'")
            return 2
        try:
            prompt = build_prompt(options.prompt, options.file_path)
        except OSError as e:
            self._error(options, f"Failed to read file {options.file_path}: {e}")
            return 1
        if not prompt.strip():
            self._error(options, "No input provided. Use --prompt or pipe input via stdin.")
            return 2

        llm_client = self._llm_client or LLMClientFactory.from_settings(self.settings)
        registry = ToolRegistry() if options.no_tools else register_builtin_tools(ToolRegistry(), self.settings)
        orchestrator = Orchestrator.from_settings(self.settings, llm_client, registry)
        manager = SessionManager.from_settings(self.settings)

        try:
            if options.session_id:
                session = await manager.open(options.session_id)
                if session.status == SessionStatus.PAUSED:
                    await session.resume()
            else:
                session = await manager.create(
                    name="headless",
                    working_directory=options.working_directory or self.settings.shell.working_dir,
                )

            log.info(
                "headless.start",
                session_id=session.id,
                output_format=options.output_format,
                tools=len(registry),
                yolo=options.yolo,
            )
            sink = HeadlessSink(self.console, auto_approve=options.yolo, quiet=options.quiet)
            result = await orchestrator.run_turn(session, prompt, sink)
        finally:
            await manager.close_all()

        metadata = None
        if options.verbose:
            metadata = {
                "provider": self.settings.llm.provider,
                "model": self.settings.llm.model,
                "session_id": session.id,
                "rounds": result.rounds,
                "tool_calls": len(result.tool_calls),
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
                "duration_ms": result.duration_ms,
            }
        rendered = format_output(result, options.output_format, metadata)

        try:
            self._write(rendered, options)
        except OSError as e:
            self._error(options, f"Failed to write output to {options.output_path}: {e}")
            return 1

        log.info("headless.done", session_id=session.id, status=result.status.value)
        if not result.ok:
            self._error(options, f"{result.status.value}: {result.reason or 'no reason given'}")
            return 1
        return 0

    def _write(self, rendered: str, options: HeadlessOptions) -> None:
        if options.output_path is not None:
            Path(options.output_path).write_text(rendered, encoding="utf-8")
            if not options.quiet:
                self.console.print(f"[green]✅ Output written to: {escape(str(options.output_path))}[/]")
            return
        self.stdout.write(rendered if rendered.endswith("\n") else rendered + "\n")
        self.stdout.flush()

    def _error(self, options: HeadlessOptions, message: str) -> None:
        log.warning("headless.error", error=message)
        if not options.quiet:
            self.console.print(f"[red]❌ Error: {escape(message)}[/]")


async def run_headless(settings: Settings, options: HeadlessOptions) -> int:
    return await HeadlessRunner(settings).run(options)
