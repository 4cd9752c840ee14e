"""
session/ — llamacli Session Layer

Public API:
    from llamacli.session import Session, SessionManager, SessionStatus

Component overview:
    Session                 Append-only history + lifecycle state machine
    SessionManager          Open sessions, create / open / branch / list
    SessionStorageBackend   save / load / list / delete interface
    FileStorageBackend      JSON-file implementation
    InMemoryStorageBackend  In-process implementation
"""

from llamacli.session.manager import SessionManager
from llamacli.session.state import Session, compute_checksum
from llamacli.session.storage import FileStorageBackend, InMemoryStorageBackend, SessionStorageBackend
from llamacli.session.types import (
    PersistedSession,
    SessionBranch,
    SessionFilter,
    SessionMetadata,
    SessionPriority,
    SessionStats,
    SessionStatus,
)

__all__ = [
    "Session",
    "SessionManager",
    "SessionStorageBackend",
    "FileStorageBackend",
    "InMemoryStorageBackend",
    "PersistedSession",
    "SessionBranch",
    "SessionFilter",
    "SessionMetadata",
    "SessionPriority",
    "SessionStats",
    "SessionStatus",
    "compute_checksum",
]
