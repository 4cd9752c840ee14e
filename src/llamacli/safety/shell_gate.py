"""
safety/shell_gate.py — Shell Safety Gate

One ShellSafetyGate per session. It decides whether a shell command may run
straight away, owns the session allowlist and the single outstanding
confirmation request, executes commands in their own process group, tracks
the working directory across `cd`, and keeps a bounded command history.

Classification order:
    1. every binary/command key already on the session allowlist → session_allowed
       (binary scope: only without command substitution or a DENY_PATTERNS hit)
    2. denylist match on any segment or the raw command          → needs_confirmation
    3. otherwise                                                 → auto

Confirmation:
    request = gate.request_confirmation(command, reason)
    ...                               # UI shows request.command / request.reason
    request.resolve(allow=True, allow_always=True)
    allowed = await request.wait()

resolve() takes effect exactly once. allow_always adds the command's
normalised form to the allowlist for the rest of the session.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import signal
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from llamacli.exceptions import ConfirmationPendingError, ShellTimeout
from llamacli.observability.logger import get_logger
from llamacli.safety.denylist import (
    DenyCategory,
    base_binary,
    command_substitutions,
    match_dangerous,
    match_pattern,
    split_segments,
)

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_HISTORY_SIZE = 100
DEFAULT_MAX_OUTPUT_CHARS = 20_000
DEFAULT_CONFIRMATION_REASON = "This command is potentially dangerous and requires confirmation."

_KILL_GRACE_SECONDS = 2.0
_CWD_SENTINEL = "__LLAMACLI_CWD__="
_DIRECTORY_BUILTINS = frozenset({"cd", "pushd", "popd"})

# Env-var name patterns that indicate secrets; stripped before every command.
_SECRET_ENV_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"API[_-]?KEY",
        r"SECRET",
        r"PASSWORD",
        r"PASSWD",
        r"TOKEN",
        r"AUTH",
        r"CREDENTIAL",
        r"PRIVATE[_-]?KEY",
        r"ACCESS[_-]?KEY",
        r"OPENAI",
        r"OPENROUTER",
        r"LLAMACLI_API",
        r"DATABASE[_-]?URL",
        r"PGPASSWORD",
        r"AWS[_-]",
        r"GCP[_-]",
        r"AZURE[_-]",
    ]
]


def _safe_env() -> dict[str, str]:
    """os.environ minus anything that looks like a credential."""
    return {
        key: value
        for key, value in os.environ.items()
        if not any(pat.search(key) for pat in _SECRET_ENV_PATTERNS)
    }


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────


class ShellClassificationKind(str, Enum):
    AUTO = "auto"
    NEEDS_CONFIRMATION = "needs_confirmation"
    SESSION_ALLOWED = "session_allowed"


@dataclass(frozen=True)
class ShellClassification:
    kind: ShellClassificationKind
    reason: str
    category: Optional[DenyCategory] = None

    @property
    def needs_confirmation(self) -> bool:
        return self.kind == ShellClassificationKind.NEEDS_CONFIRMATION


class ShellExecutionStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED_TO_START = "failed_to_start"


@dataclass
class ShellExecutionResult:
    command: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    duration_ms: float
    status: ShellExecutionStatus
    working_directory: str

    @property
    def succeeded(self) -> bool:
        return self.status == ShellExecutionStatus.COMPLETED and self.exit_code == 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class ShellConfirmationRequest:
    """
    A pending yes/no decision about one command.

    resolve() takes effect exactly once; later calls return False and log a
    warning. Awaiting wait() blocks until a decision exists.
    """

    def __init__(
        self,
        command: str,
        reason: str = DEFAULT_CONFIRMATION_REASON,
        category: Optional[DenyCategory] = None,
        on_resolve: Optional[Callable[["ShellConfirmationRequest"], None]] = None,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.command = command
        self.reason = reason
        self.category = category
        self._on_resolve = on_resolve
        self._event = asyncio.Event()
        self._allowed = False
        self._allow_always = False

    @property
    def resolved(self) -> bool:
        return self._event.is_set()

    @property
    def allowed(self) -> bool:
        return self._allowed

    @property
    def allow_always(self) -> bool:
        return self._allow_always

    def resolve(self, allow: bool, allow_always: bool = False) -> bool:
        if self._event.is_set():
            log.warning(
                "shell_gate.confirmation_already_resolved",
                request_id=self.id,
                command=self.command,
            )
            return False
        self._allowed = bool(allow)
        self._allow_always = bool(allow and allow_always)
        self._event.set()
        if self._on_resolve is not None:
            self._on_resolve(self)
        return True

    async def wait(self) -> bool:
        await self._event.wait()
        return self._allowed

    def __repr__(self) -> str:
        state = "pending" if not self.resolved else ("allowed" if self._allowed else "denied")
        return f"<ShellConfirmationRequest id={self.id} {state} command={self.command!r}>"


# ─────────────────────────────────────────────────────────────────────────────
# Gate
# ─────────────────────────────────────────────────────────────────────────────


class ShellSafetyGate:
    """Per-session shell policy, executor and history."""

    def __init__(
        self,
        working_directory: str | Path = ".",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        history_size: int = DEFAULT_HISTORY_SIZE,
        allowlist_scope: str = "binary",
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        session_id: Optional[str] = None,
    ):
        if allowlist_scope not in ("binary", "command"):
            raise ValueError(f"allowlist_scope must be 'binary' or 'command', got {allowlist_scope!r}")
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        self.allowlist_scope = allowlist_scope
        self.max_output_chars = max_output_chars
        self._working_directory = Path(working_directory).expanduser().resolve()
        self._allowlist: set[str] = set()
        self._pending: Optional[ShellConfirmationRequest] = None
        self._history: deque[str] = deque(maxlen=history_size)
        self._history_index = -1
        self._shell = shutil.which("bash")

    # ── Working directory ─────────────────────────────────────────────────────

    @property
    def working_directory(self) -> Path:
        return self._working_directory

    def set_working_directory(self, path: str | Path) -> None:
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_dir():
            raise NotADirectoryError(str(resolved))
        self._working_directory = resolved

    # ── Classification ────────────────────────────────────────────────────────

    def allowlist_keys(self, command: str) -> set[str]:
        """Normalised form(s) of a command as stored on the allowlist."""
        if self.allowlist_scope == "command":
            collapsed = " ".join(command.split())
            return {collapsed} if collapsed else set()
        return {b for b in (base_binary(tokens) for tokens in split_segments(command)) if b}

    def is_allowed(self, command: str) -> bool:
        keys = self.allowlist_keys(command)
        return bool(keys) and keys <= self._allowlist

    def _session_allows(self, command: str) -> bool:
        if not self.is_allowed(command):
            return False
        if self.allowlist_scope == "command":
            return True
        # a binary entry covers plain invocations only
        return not command_substitutions(command) and match_pattern(command) is None

    def classify(self, command: str) -> ShellClassification:
        if self._session_allows(command):
            result = ShellClassification(
                ShellClassificationKind.SESSION_ALLOWED,
                "Previously allowed for this session",
            )
        else:
            match = match_dangerous(command)
            if match is not None:
                result = ShellClassification(
                    ShellClassificationKind.NEEDS_CONFIRMATION,
                    f"{DEFAULT_CONFIRMATION_REASON} ({match.reason})",
                    category=match.category,
                )
            else:
                result = ShellClassification(ShellClassificationKind.AUTO, "No dangerous pattern matched")

        log.info(
            "shell_gate.classified",
            command=command,
            kind=result.kind.value,
            category=result.category.value if result.category else None,
        )
        return result

    # ── Confirmation ──────────────────────────────────────────────────────────

    @property
    def pending(self) -> Optional[ShellConfirmationRequest]:
        return self._pending

    def request_confirmation(
        self,
        command: str,
        reason: str = DEFAULT_CONFIRMATION_REASON,
        category: Optional[DenyCategory] = None,
    ) -> ShellConfirmationRequest:
        if self._pending is not None and not self._pending.resolved:
            raise ConfirmationPendingError(
                f"A confirmation for {self._pending.command!r} is still outstanding"
            )
        request = ShellConfirmationRequest(
            command=command,
            reason=reason,
            category=category,
            on_resolve=self._on_resolved,
        )
        self._pending = request
        log.info("shell_gate.confirmation_requested", request_id=request.id, command=command)
        return request

    def cancel_pending(self) -> bool:
        """Resolve the outstanding request as an implicit denial."""
        request = self._pending
        if request is None or request.resolved:
            return False
        log.info("shell_gate.confirmation_cancelled", request_id=request.id)
        return request.resolve(allow=False)

    def _on_resolved(self, request: ShellConfirmationRequest) -> None:
        if request.allow_always:
            self.allow(request.command)
        if self._pending is request:
            self._pending = None
        log_fn = log.info if request.allowed else log.warning
        log_fn(
            "shell_gate.confirmation_resolved",
            request_id=request.id,
            command=request.command,
            allowed=request.allowed,
            allow_always=request.allow_always,
        )

    # ── Allowlist ─────────────────────────────────────────────────────────────

    def allow(self, command: str) -> None:
        keys = self.allowlist_keys(command)
        self._allowlist |= keys
        log.info("shell_gate.allowlisted", keys=sorted(keys))

    @property
    def allowlist(self) -> list[str]:
        return sorted(self._allowlist)

    def clear_allowlist(self) -> None:
        self._allowlist.clear()

    def export_allowlist(self) -> list[str]:
        return sorted(self._allowlist)

    def import_allowlist(self, entries: Iterable[str]) -> None:
        self._allowlist |= {e.strip() for e in entries if e and e.strip()}

    # ── History ───────────────────────────────────────────────────────────────

    @property
    def history(self) -> list[str]:
        return list(self._history)

    def add_to_history(self, command: str) -> None:
        command = command.strip()
        if not command:
            return
        if command in self._history:
            self._history.remove(command)
        self._history.append(command)
        self._history_index = -1

    def previous_command(self) -> Optional[str]:
        if not self._history:
            return None
        if self._history_index == -1:
            self._history_index = len(self._history) - 1
        elif self._history_index > 0:
            self._history_index -= 1
        return self._history[self._history_index]

    def next_command(self) -> Optional[str]:
        if not self._history or self._history_index == -1:
            return None
        if self._history_index < len(self._history) - 1:
            self._history_index += 1
            return self._history[self._history_index]
        self._history_index = -1
        return None

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute_command(
        self,
        command: str,
        timeout: Optional[float] = None,
    ) -> ShellExecutionResult:
        """
        Run a command in its own process group with a scrubbed environment.

        This does not consult classify(); callers gate first. On timeout the
        whole process group is terminated and status is timed_out.
        """
        if timeout is None:
            timeout = self.timeout_seconds
        self.add_to_history(command)
        cwd = self._working_directory
        tracks_cwd = any(
            base_binary(tokens) in _DIRECTORY_BUILTINS for tokens in split_segments(command)
        )
        script = command
        if tracks_cwd:
            script = (
                f"{command}\n__llamacli_rc=$?\n"
                f"printf '\\n{_CWD_SENTINEL}%s\\n' \"$PWD\"\n"
                f"exit $__llamacli_rc"
            )

        start = time.monotonic()
        log.info("shell_gate.exec.start", command=command, cwd=str(cwd), timeout=timeout)

        try:
            proc = await asyncio.create_subprocess_shell(
                script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=str(cwd),
                env=_safe_env(),
                start_new_session=True,
                executable=self._shell,
            )
        except OSError as e:
            log.error("shell_gate.exec.failed_to_start", command=command, error=str(e))
            return ShellExecutionResult(
                command=command,
                stdout="",
                stderr=f"Failed to start process: {e}",
                exit_code=None,
                duration_ms=_elapsed_ms(start),
                status=ShellExecutionStatus.FAILED_TO_START,
                working_directory=str(cwd),
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate_group(proc)
            error = ShellTimeout(command, timeout)
            log.warning("shell_gate.exec.timeout", command=command, timeout=timeout)
            return ShellExecutionResult(
                command=command,
                stdout="",
                stderr=str(error),
                exit_code=None,
                duration_ms=_elapsed_ms(start),
                status=ShellExecutionStatus.TIMED_OUT,
                working_directory=str(cwd),
            )
        except asyncio.CancelledError:
            await _terminate_group(proc)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if tracks_cwd:
            stdout = self._consume_cwd_sentinel(stdout, proc.returncode)

        result = ShellExecutionResult(
            command=command,
            stdout=_truncate(stdout, self.max_output_chars, "stdout"),
            stderr=_truncate(stderr, self.max_output_chars, "stderr"),
            exit_code=proc.returncode,
            duration_ms=_elapsed_ms(start),
            status=ShellExecutionStatus.COMPLETED,
            working_directory=str(self._working_directory),
        )
        log.info(
            "shell_gate.exec.complete",
            command=command,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        return result

    def _consume_cwd_sentinel(self, stdout: str, returncode: Optional[int]) -> str:
        head, sep, tail = stdout.rpartition(_CWD_SENTINEL)
        if not sep:
            return stdout
        new_dir = tail.strip()
        if returncode == 0 and new_dir:
            try:
                self.set_working_directory(new_dir)
                log.info("shell_gate.cwd_changed", working_directory=new_dir)
            except NotADirectoryError:
                log.warning("shell_gate.cwd_missing", working_directory=new_dir)
        return head[:-1] if head.endswith("\n") else head

    def __repr__(self) -> str:
        return (
            f"<ShellSafetyGate session={self.session_id} cwd={self._working_directory} "
            f"allowlist={len(self._allowlist)} pending={self._pending is not None}>"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


def _truncate(text: str, max_chars: int, stream: str) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n[{stream} truncated — {len(text)} total chars]"


def _kill_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


async def _terminate_group(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM the process group, then SIGKILL it if it lingers."""
    if proc.returncode is not None:
        return
    _kill_group(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.communicate(), timeout=_KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        _kill_group(proc, signal.SIGKILL)
        await proc.wait()
