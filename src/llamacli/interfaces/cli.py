"""
interfaces/cli.py — llamacli Interactive REPL

Rich-rendered terminal chat on top of the Orchestrator. Uses aioconsole for
async input so the event loop keeps running while the prompt is open.

Features:
  - Streaming assistant output with a thinking indicator
  - Tool progress lines and y/a/n confirmation for flagged shell commands
  - Ctrl+C cancels the running turn; Ctrl+D / `exit` quits
  - `!command` runs a shell command directly through the session's gate
  - Slash commands for sessions, thinking blocks, allowlist and history

Usage:
    llamacli
    llamacli --session session_1700000000000_ab12cd34
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from typing import Optional

import aioconsole
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from llamacli import __version__
from llamacli.agent.events import (
    ConfirmationNeeded,
    ContentDelta,
    ThinkingDelta,
    ThinkingEnded,
    ThinkingStarted,
    ToolCallResolved,
    ToolCallStarted,
    TurnCompleted,
    TurnStatus,
    UIEvent,
)
from llamacli.agent.orchestrator import Orchestrator
from llamacli.brain.llm_client import BaseLLMClient, LLMClientFactory
from llamacli.brain.types import ToolCallStatus
from llamacli.config.settings import Settings
from llamacli.exceptions import (
    ConfirmationPendingError,
    LlamaCLIError,
    SessionError,
)
from llamacli.observability.logger import get_logger
from llamacli.safety.shell_gate import ShellConfirmationRequest
from llamacli.session.manager import SessionManager
from llamacli.session.state import Session
from llamacli.session.types import SessionFilter, SessionStatus
from llamacli.tools.builtin import register_builtin_tools
from llamacli.tools.shell import format_execution
from llamacli.tools.tool_registry import ToolRegistry

log = get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_HELP_TEXT = """
## llamacli Commands

| Command | Description |
|---------|-------------|
| *(any text)* | Send a message to the assistant |
| `!<command>` | Run a shell command directly (dangerous ones ask first) |
| `/status` | Show session status and stats |
| `/sessions` | List saved sessions |
| `/branch <N>` | Fork this session keeping the first N messages, and switch to it |
| `/pause` · `/resume` · `/archive` | Change the session lifecycle state |
| `/think` | Show whether live reasoning display is on |
| `/think on\\|off` | Show / hide reasoning while it streams |
| `/think list` | List archived reasoning blocks |
| `/think <N>` | Show reasoning block N |
| `/think clear` | Drop archived reasoning blocks |
| `/allowlist [clear]` | Show or clear commands allowed for this session |
| `/history` | Show shell command history |
| `/tools` | List registered tools |
| `/help` | Show this help message |
| `exit` / `quit` / Ctrl+D | Exit |

Press **Ctrl+C** while the assistant is working to cancel the turn.
"""

_RISK_COLOURS = {"LOW": "green", "MEDIUM": "yellow", "HIGH": "red"}

_STATUS_STYLES = {
    TurnStatus.BUDGET_EXCEEDED: "yellow",
    TurnStatus.STREAM_ERROR: "red",
    TurnStatus.CANCELLED: "yellow",
    TurnStatus.TIMEOUT: "red",
    TurnStatus.REJECTED: "yellow",
    TurnStatus.FAILED: "red",
}


# ── CLI Runner ────────────────────────────────────────────────────────────────


class CLIInterface:
    """
    Interactive REPL for llamacli.

    Wires together: Settings → LLM client → ToolRegistry → Orchestrator →
    SessionManager, then runs the async input loop. Also acts as the UI sink
    the orchestrator emits events into.
    """

    def __init__(
        self,
        settings: Settings,
        llm_client: Optional[BaseLLMClient] = None,
        console: Optional[Console] = None,
    ):
        self.settings = settings
        self.console = console or Console()
        self._llm_client = llm_client
        self._registry: Optional[ToolRegistry] = None
        self._orchestrator: Optional[Orchestrator] = None
        self._manager: Optional[SessionManager] = None
        self._session: Optional[Session] = None
        self._show_thinking = False
        self._streaming = False
        self._confirm_task: Optional[asyncio.Task] = None
        self._shutdown = asyncio.Event()

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self, session_id: Optional[str] = None) -> None:
        await self._init_components(session_id)
        self._print_banner()
        try:
            await self._repl_loop()
        finally:
            await self._cleanup()

    async def _init_components(self, session_id: Optional[str] = None) -> None:
        if self._llm_client is None:
            self._llm_client = LLMClientFactory.from_settings(self.settings)
        self._registry = register_builtin_tools(ToolRegistry(), self.settings)
        self._orchestrator = Orchestrator.from_settings(self.settings, self._llm_client, self._registry)
        self._manager = SessionManager.from_settings(self.settings)

        if session_id:
            self._session = await self._manager.open(session_id)
            if self._session.status == SessionStatus.PAUSED:
                await self._session.resume()
        else:
            self._session = await self._manager.create(working_directory=self.settings.shell.working_dir)
        log.info("cli.initialized", session_id=self._session.id)

    def _print_banner(self) -> None:
        llm = self.settings.llm
        self.console.print(
            Panel(
                f"[bold cyan]{self.settings.agent.name}[/] [bold]v{__version__}[/]  ·  "
                f"LLM: [cyan]{llm.provider}[/]/[cyan]{llm.model}[/]  ·  "
                f"Session: [dim]{self._session.id}[/]\n"
                f"[dim]cwd: {self._session.shell.working_directory}[/]\n\n"
                f"Type your message or [bold]/help[/] for commands. "
                f"[bold]exit[/] or Ctrl+D to quit.",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    # ── REPL Loop ─────────────────────────────────────────────────────────────

    async def _repl_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                user_input = await aioconsole.ainput(self._build_prompt())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit"):
                self.console.print("[dim]Goodbye.[/]")
                break

            try:
                await self._dispatch(user_input)
            except LlamaCLIError as e:
                self.console.print(f"[red]✗ {e}[/]")

    def _build_prompt(self) -> str:
        status = self._session.status.value
        turns = self._session.metadata.stats.turn_count
        colour = "\033[32m" if status == "active" else "\033[33m"
        reset = "\033[0m"
        return f"{colour}llamacli[{status}][{turns}]{reset}> "

    # ── Command Dispatch ──────────────────────────────────────────────────────

    async def _dispatch(self, raw: str) -> None:
        if raw.startswith("!"):
            await self._cmd_shell(raw[1:].strip())
            return
        if not raw.startswith("/"):
            await self._cmd_ask(raw)
            return

        parts = raw.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        handlers = {
            "/help":      lambda _: self._print_help(),
            "/status":    lambda _: self._cmd_status(),
            "/sessions":  lambda _: self._cmd_sessions(),
            "/branch":    self._cmd_branch,
            "/pause":     lambda _: self._cmd_lifecycle("pause"),
            "/resume":    lambda _: self._cmd_lifecycle("resume"),
            "/archive":   lambda _: self._cmd_lifecycle("archive"),
            "/think":     self._cmd_think,
            "/allowlist": self._cmd_allowlist,
            "/history":   lambda _: self._cmd_history(),
            "/tools":     lambda _: self._cmd_tools(),
        }
        handler = handlers.get(cmd)
        if handler is None:
            self.console.print(f"[yellow]Unknown command: {cmd}. Type /help for commands.[/]")
            return
        result = handler(arg)
        if asyncio.iscoroutine(result):
            await result

    # ── Chat ──────────────────────────────────────────────────────────────────

    async def _cmd_ask(self, message: str) -> None:
        self.console.print()
        turn = asyncio.create_task(self._orchestrator.run_turn(self._session, message, sink=self))
        loop = asyncio.get_running_loop()
        handler_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._orchestrator.cancel, self._session.id)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            log.debug("cli.sigint_handler_unavailable")
        try:
            await turn
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
            await self._drop_confirmation_prompt()

    async def _cmd_shell(self, command: str) -> None:
        if not command:
            self.console.print("[yellow]Usage: !<command>[/]")
            return
        gate = self._session.shell
        classification = gate.classify(command)
        if classification.needs_confirmation:
            try:
                request = gate.request_confirmation(command, classification.reason, classification.category)
            except ConfirmationPendingError as e:
                self.console.print(f"[red]✗ {e}[/]")
                return
            await self._prompt_confirmation(request)
            if not request.allowed:
                self.console.print("[red]✗ Not executed.[/]")
                return
        result = await gate.execute_command(command)
        style = "green" if result.succeeded else "red"
        self.console.print(Panel(format_execution(result), border_style=style, padding=(0, 1)))

    # ── UI sink ───────────────────────────────────────────────────────────────

    def emit(self, event: UIEvent) -> None:
        """Render orchestrator events as they arrive. Never blocks."""
        if isinstance(event, ContentDelta):
            self._streaming = True
            self.console.print(event.text, end="", markup=False, highlight=False)
        elif isinstance(event, ThinkingStarted):
            self._end_stream_line()
            self.console.print("[dim italic]💭 thinking…[/]", end="\n" if not self._show_thinking else " ")
        elif isinstance(event, ThinkingDelta):
            if self._show_thinking:
                self.console.print(event.text, end="", style="dim italic", markup=False, highlight=False)
        elif isinstance(event, ThinkingEnded):
            if self._show_thinking:
                self.console.print()
        elif isinstance(event, ToolCallStarted):
            self._end_stream_line()
            args = json.dumps(event.arguments, ensure_ascii=False)
            self.console.print(
                f"  [cyan]⚙ {event.tool_name}[/] [dim]{args[:120]}{'…' if len(args) > 120 else ''}[/]"
            )
        elif isinstance(event, ToolCallResolved):
            self._render_tool_result(event)
        elif isinstance(event, ConfirmationNeeded):
            self._end_stream_line()
            self._drop_confirmation_prompt_nowait()
            self._confirm_task = asyncio.get_running_loop().create_task(
                self._prompt_confirmation(event.request)
            )
        elif isinstance(event, TurnCompleted):
            self._end_stream_line()
            self._drop_confirmation_prompt_nowait()
            if event.status != TurnStatus.COMPLETED:
                style = _STATUS_STYLES.get(event.status, "yellow")
                reason = f": {event.reason}" if event.reason else ""
                self.console.print(f"[{style}]■ {event.status.value}{reason}[/]")
            self.console.print()

    def _end_stream_line(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def _render_tool_result(self, event: ToolCallResolved) -> None:
        record = event.record
        if record.status == ToolCallStatus.SUCCEEDED:
            self.console.print(f"  [green]✓ {record.tool_name}[/]")
        elif record.status == ToolCallStatus.DENIED:
            self.console.print(f"  [yellow]⊘ {record.tool_name} denied[/]")
        else:
            detail = record.result.text.splitlines()[0] if record.result and record.result.text else ""
            self.console.print(f"  [red]✗ {record.tool_name}[/] [dim]{detail[:160]}[/]")

    def _drop_confirmation_prompt_nowait(self) -> None:
        task, self._confirm_task = self._confirm_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _drop_confirmation_prompt(self) -> None:
        """Cancel a prompt left open by the last turn so it cannot read the next line."""
        task = self._confirm_task
        self._drop_confirmation_prompt_nowait()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _prompt_confirmation(self, request: ShellConfirmationRequest) -> None:
        self.console.print(
            Panel(
                f"[bold]{request.command}[/]\n[dim]{request.reason}[/]",
                title="[bold yellow]⚠ Confirmation Required[/]",
                border_style="yellow",
                padding=(0, 2),
            )
        )
        while not request.resolved:
            try:
                answer = (await aioconsole.ainput("  Run it? [y]es / [a]lways / [N]o: ")).strip().lower()
            except (EOFError, KeyboardInterrupt):
                answer = "n"
            except asyncio.CancelledError:
                if not request.resolved:
                    request.resolve(allow=False)
                raise
            if request.resolved:
                break
            if answer in ("y", "yes"):
                request.resolve(allow=True)
            elif answer in ("a", "always"):
                request.resolve(allow=True, allow_always=True)
            elif answer in ("", "n", "no"):
                request.resolve(allow=False)
            else:
                continue
            status = "[green]✓ Approved[/]" if request.allowed else "[red]✗ Denied[/]"
            if request.allow_always:
                status += " [dim](allowed for this session)[/]"
            self.console.print(f"  {status}")

    # ── Commands ──────────────────────────────────────────────────────────────

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    def _cmd_status(self) -> None:
        table = Table(box=box.SIMPLE, show_header=False)
        table.add_column("Key", style="cyan", no_wrap=True)
        table.add_column("Value")
        for key, value in self._session.status_summary().items():
            table.add_row(key, "—" if value is None else str(value))
        table.add_row("shell cwd", str(self._session.shell.working_directory))
        table.add_row("allowlist", ", ".join(self._session.shell.allowlist) or "—")
        self.console.print(table)

    async def _cmd_sessions(self) -> None:
        sessions = await self._manager.list(SessionFilter(limit=20))
        if not sessions:
            self.console.print("[dim]No saved sessions.[/]")
            return
        table = Table(title="Sessions", box=box.ROUNDED, border_style="dim")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Status", no_wrap=True)
        table.add_column("Msgs", justify="right")
        table.add_column("Last activity", no_wrap=True)
        for meta in sessions:
            marker = " ◀" if meta.id == self._session.id else ""
            table.add_row(
                meta.id + marker,
                meta.name,
                meta.status.value,
                str(meta.stats.message_count),
                f"{meta.last_activity:%Y-%m-%d %H:%M}",
            )
        self.console.print(table)

    async def _cmd_branch(self, arg: str) -> None:
        if not arg.isdigit():
            self.console.print(f"[yellow]Usage: /branch <N>  (0..{len(self._session.messages)})[/]")
            return
        try:
            child = await self._manager.branch(self._session, int(arg))
        except SessionError as e:
            self.console.print(f"[red]✗ {e}[/]")
            return
        self.console.print(
            f"[green]✓ Branched at message {arg} → [bold]{child.id}[/bold] (now active)[/]"
        )
        self._session = child

    async def _cmd_lifecycle(self, action: str) -> None:
        try:
            async with self._session.lock:
                await getattr(self._session, action)()
        except SessionError as e:
            self.console.print(f"[red]✗ {e}[/]")
            return
        self.console.print(f"[green]✓ Session is now {self._session.status.value}[/]")

    def _cmd_think(self, arg: str) -> None:
        arg = arg.lower()
        blocks = self._session.thinking_blocks
        if arg in ("on", "off"):
            self._show_thinking = arg == "on"
            self.console.print(f"[dim]Live reasoning display {arg}.[/]")
        elif arg == "clear":
            self._session.clear_thinking()
            self.console.print("[dim]Reasoning blocks cleared.[/]")
        elif arg == "list":
            if not blocks:
                self.console.print("[dim]No reasoning blocks archived.[/]")
                return
            for i, block in enumerate(blocks, start=1):
                preview = " ".join(block.content.split())
                self.console.print(
                    f"  [cyan]{i:>3}[/] [dim]{block.created_at:%H:%M:%S}[/] "
                    f"{preview[:80]}{'…' if len(preview) > 80 else ''}"
                )
        elif arg.isdigit():
            index = int(arg)
            if not 1 <= index <= len(blocks):
                self.console.print(f"[yellow]No reasoning block {index} (have {len(blocks)}).[/]")
                return
            self.console.print(
                Panel(blocks[index - 1].content, title=f"💭 Reasoning {index}", border_style="dim", padding=(0, 2))
            )
        elif not arg:
            state = "on" if self._show_thinking else "off"
            self.console.print(f"[dim]Live reasoning display is {state}; {len(blocks)} block(s) archived.[/]")
        else:
            self.console.print("[yellow]Usage: /think [list|N|on|off|clear][/]")

    def _cmd_allowlist(self, arg: str) -> None:
        gate = self._session.shell
        if arg.lower() == "clear":
            gate.clear_allowlist()
            self.console.print("[dim]Session allowlist cleared.[/]")
            return
        entries = gate.allowlist
        if not entries:
            self.console.print("[dim]Nothing allowlisted for this session.[/]")
            return
        for entry in entries:
            self.console.print(f"  [green]✓[/] {entry}")

    def _cmd_history(self) -> None:
        history = self._session.shell.history
        if not history:
            self.console.print("[dim]No shell history.[/]")
            return
        for i, command in enumerate(history, start=1):
            self.console.print(f"  [dim]{i:>3}[/] {command}")

    def _cmd_tools(self) -> None:
        schemas = self._registry.list(enabled_only=False)
        if not schemas:
            self.console.print("[dim]No tools registered.[/]")
            return
        table = Table(title="Tools", box=box.ROUNDED, border_style="dim")
        table.add_column("Name", style="cyan bold", no_wrap=True)
        table.add_column("Category", no_wrap=True)
        table.add_column("Risk", no_wrap=True)
        table.add_column("Enabled", no_wrap=True)
        table.add_column("Description")
        for s in schemas:
            risk = s.risk_level.value
            table.add_row(
                s.name,
                s.category.value,
                f"[{_RISK_COLOURS.get(risk, 'white')}]{risk}[/]",
                "[green]✓[/]" if s.enabled else "[dim red]✗[/]",
                s.description[:60] + ("…" if len(s.description) > 60 else ""),
            )
        self.console.print(table)

    # ── Cleanup ───────────────────────────────────────────────────────────────

    async def _cleanup(self) -> None:
        if self._session is not None and self._session.shell is not None:
            self._session.shell.cancel_pending()
        if self._manager is not None:
            try:
                await self._manager.close_all()
            except (SessionError, OSError) as e:
                log.warning("cli.close_failed", error=str(e))
        log.info("cli.shutdown", session_id=self._session.id if self._session else None)


# ── Public entry point ────────────────────────────────────────────────────────


async def run_cli(settings: Settings, session_id: Optional[str] = None) -> None:
    cli = CLIInterface(settings=settings)
    log.info("cli.starting")
    try:
        await cli.start(session_id)
    except KeyboardInterrupt:
        log.info("cli.interrupted")
