"""
safety/paths.py — Filesystem Path Confinement

    check_path(path, allowed_paths, base_dir=None, operation="read")
        → (allowed: bool, reason: str, resolved: Path | None)

Relative paths are resolved against base_dir (the session's working
directory), symlinks are followed, and the result must sit under one of the
allowed roots. A fixed set of system locations and credential files is
refused regardless of allowed_paths.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

BLOCKED_PATH_PREFIXES: frozenset[str] = frozenset([
    "/etc/passwd",
    "/etc/shadow",
    "/etc/sudoers",
    "/etc/ssh",
    "/proc",
    "/sys",
    "/dev",
    "/boot",
    "/private/etc",
])

BLOCKED_PATH_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"/\.ssh(/|$)"),   ".ssh directories are always blocked"),
    (re.compile(r"/\.gnupg(/|$)"), ".gnupg directories are always blocked"),
    (re.compile(r"/\.aws(/|$)"),   ".aws credentials are always blocked"),
    (re.compile(r"/\.kube(/|$)"),  ".kube config is always blocked"),
    (re.compile(r"\.env$"),        ".env files are always blocked"),
    (re.compile(r"\.pem$"),        ".pem key files are always blocked"),
    (re.compile(r"\.key$"),        ".key files are always blocked"),
]

# Readable without an allowed_paths entry; never writable through this check.
ALWAYS_READABLE_PREFIXES: tuple[str, ...] = (
    "/tmp/",
    "/var/tmp/",
)


def resolve_roots(allowed_paths: Optional[list[str]]) -> list[Path]:
    roots: list[Path] = []
    for ap in allowed_paths or []:
        try:
            roots.append(Path(ap).expanduser().resolve())
        except (ValueError, RuntimeError, OSError):
            continue
    return roots


def check_path(
    path: str | Path,
    allowed_paths: Optional[list[str]] = None,
    base_dir: Optional[Path] = None,
    operation: str = "read",
) -> tuple[bool, str, Optional[Path]]:
    """
    Decide whether a filesystem path may be accessed.

    Args:
        path:          Path string from the tool call. Empty means base_dir.
        allowed_paths: Permitted roots (tools.allowed_paths). Supports ~.
        base_dir:      Directory relative paths are resolved against.
        operation:     "read" or "write". Writes never use the
                       always-readable locations.

    Returns:
        (allowed, reason, resolved path or None when resolution failed)
    """
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    raw = str(path).strip() if path is not None else ""
    try:
        candidate = Path(raw).expanduser() if raw else base
        if not candidate.is_absolute():
            candidate = base / candidate
        resolved = candidate.resolve()
    except (ValueError, RuntimeError, OSError) as exc:
        return False, f"Path resolution failed: {exc}", None

    path_str = str(resolved)

    for prefix in BLOCKED_PATH_PREFIXES:
        if path_str == prefix or path_str.startswith(prefix + "/"):
            return False, f"Path blocked: '{path_str}' is within a protected system location ({prefix})", resolved

    for pattern, reason in BLOCKED_PATH_PATTERNS:
        if pattern.search(path_str):
            return False, f"Path blocked: {reason} (matched '{path_str}')", resolved

    roots = resolve_roots(allowed_paths)
    for root in roots:
        if resolved == root or root in resolved.parents:
            return True, f"Path '{path_str}' is within allowed root '{root}'", resolved

    if operation == "read" and path_str.startswith(ALWAYS_READABLE_PREFIXES):
        return True, f"Path '{path_str}' is in an always-readable location", resolved

    return (
        False,
        f"Path '{path_str}' is outside all allowed paths "
        f"({[str(r) for r in roots]}). "
        "Add the directory to 'tools.allowed_paths' in config.yaml.",
        resolved,
    )
