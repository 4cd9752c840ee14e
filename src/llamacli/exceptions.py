"""
exceptions.py — llamacli Error Hierarchy

Every llamacli-specific exception lives here and derives from LlamaCLIError.

Import from here, not from individual modules:
    from llamacli.exceptions import DuplicateToolError, SessionIntegrityError

Hierarchy:
    LlamaCLIError
    ├── AgentError
    │   ├── TurnInProgressError
    │   ├── TurnBudgetExceeded
    │   └── TurnTimeoutError
    ├── StreamError
    │   └── StreamIdleTimeout
    ├── ToolError
    │   ├── DuplicateToolError
    │   ├── ToolDispatchError
    │   └── InvalidToolCallTransition
    ├── SafetyError
    │   ├── ConfirmationDenied
    │   ├── ConfirmationPendingError
    │   └── ShellTimeout
    ├── SessionError
    │   ├── SessionIntegrityError
    │   ├── SessionNotActiveError
    │   ├── InvalidSessionTransition
    │   ├── BranchError
    │   └── SessionNotFoundError
    └── LLMError
        ├── LLMConnectionError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError

Only StreamError / LLMError (mid-turn) and SessionIntegrityError surface as
turn or session failures. Tool, confirmation and shell-timeout conditions are
folded into ToolResults by the dispatcher and orchestrator.
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class LlamaCLIError(Exception):
    """Base class for all llamacli exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(LlamaCLIError):
    """Base for agent orchestration errors."""


class TurnInProgressError(AgentError):
    """A turn is already running for this session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"A turn is already in progress for session '{session_id}'")


class TurnBudgetExceeded(AgentError):
    """The tool-call loop hit max_tool_rounds without a final answer."""

    def __init__(self, max_rounds: int) -> None:
        self.max_rounds = max_rounds
        super().__init__(f"Stopped after {max_rounds} tool rounds without a final answer.")


class TurnTimeoutError(AgentError):
    """A single turn exceeded its wall-clock budget."""

    def __init__(self, seconds: Optional[float]) -> None:
        self.seconds = seconds
        super().__init__(f"Turn exceeded {seconds}s.")


# ─────────────────────────────────────────────────────────────────────────────
# Stream layer
# ─────────────────────────────────────────────────────────────────────────────

class StreamError(LlamaCLIError):
    """The model stream failed or was malformed."""


class StreamIdleTimeout(StreamError):
    """No fragment arrived within the idle timeout."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"Model stream idle for more than {seconds}s")


# ─────────────────────────────────────────────────────────────────────────────
# Tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolError(LlamaCLIError):
    """Base for tool registry / dispatch errors."""


class DuplicateToolError(ToolError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolDispatchError(ToolError):
    """Describes a dispatch failure; always folded into an error ToolResult."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(message)


class InvalidToolCallTransition(ToolError):
    """A ToolCallRecord status change would move backwards or out of a terminal state."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal tool call transition: {current} -> {target}")


# ─────────────────────────────────────────────────────────────────────────────
# Safety layer
# ─────────────────────────────────────────────────────────────────────────────

class SafetyError(LlamaCLIError):
    """Base for shell safety gate errors."""


class ConfirmationDenied(SafetyError):
    """The user declined a confirmation request."""

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"User denied execution of: {command}")


class ConfirmationPendingError(SafetyError):
    """A confirmation request is already outstanding for this session."""


class ShellTimeout(SafetyError):
    """A shell command exceeded its hard timeout and was killed."""

    def __init__(self, command: str, seconds: float) -> None:
        self.command = command
        self.seconds = seconds
        super().__init__(f"Command timed out after {seconds}s: {command}")


# ─────────────────────────────────────────────────────────────────────────────
# Session layer
# ─────────────────────────────────────────────────────────────────────────────

class SessionError(LlamaCLIError):
    """Base for session state machine and storage errors."""


class SessionIntegrityError(SessionError):
    """Stored checksum does not match the persisted history."""

    def __init__(self, session_id: str, expected: Optional[str], actual: str) -> None:
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Session '{session_id}' failed integrity check "
            f"(stored {(expected or 'no checksum')[:12]}…, computed {actual[:12]}…)"
        )


class SessionNotActiveError(SessionError):
    """The session is not in the active state and cannot accept messages."""

    def __init__(self, session_id: str, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session '{session_id}' is {status}, not active")


class InvalidSessionTransition(SessionError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move session from {current} to {target}")


class BranchError(SessionError):
    """Branch point is out of range or the source session cannot be branched."""


class SessionNotFoundError(SessionError):
    """No session with the given id exists in the storage backend."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer
# ─────────────────────────────────────────────────────────────────────────────

class LLMError(LlamaCLIError):
    """Base exception for all model adapter errors."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable or authentication failed."""


class LLMRateLimitError(LLMError):
    """Rate limit hit; retry with exponential backoff."""

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMContextError(LLMError):
    """Input exceeds model context window."""


class LLMInvalidRequestError(LLMError):
    """Bad request — invalid parameters or unsupported feature."""


__all__ = [
    "LlamaCLIError",
    # Agent
    "AgentError",
    "TurnInProgressError",
    "TurnBudgetExceeded",
    "TurnTimeoutError",
    # Stream
    "StreamError",
    "StreamIdleTimeout",
    # Tool
    "ToolError",
    "DuplicateToolError",
    "ToolDispatchError",
    "InvalidToolCallTransition",
    # Safety
    "SafetyError",
    "ConfirmationDenied",
    "ConfirmationPendingError",
    "ShellTimeout",
    # Session
    "SessionError",
    "SessionIntegrityError",
    "SessionNotActiveError",
    "InvalidSessionTransition",
    "BranchError",
    "SessionNotFoundError",
    # LLM
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
]
