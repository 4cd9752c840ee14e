"""
safety/denylist.py — Dangerous Command Denylist

One public function used by the ShellSafetyGate:

    match_dangerous(command) -> DenyMatch | None

A command is dangerous when any segment of it (split on ; && || | &), or of a
command substitution inside it, starts with a known dangerous binary, or when
the raw command matches one of the DENY_PATTERNS. Either way the caller asks
the user before running it; nothing here blocks outright.

Also exported for the gate:

    split_segments(command)        -> list[list[str]]
    command_substitutions(command) -> list[str]   bodies of $(...), `...`, <(...)
    match_pattern(command)         -> DenyMatch | None   DENY_PATTERNS only
    base_binary(tokens)            -> str   lower-cased basename, assignments skipped
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class DenyCategory(str, Enum):
    DESTRUCTIVE_FILESYSTEM = "destructive_filesystem"
    PRIVILEGE_ESCALATION = "privilege_escalation"
    NETWORK_EXFILTRATION = "network_exfiltration"
    PROCESS_CONTROL = "process_control"


@dataclass(frozen=True)
class DenyMatch:
    category: DenyCategory
    reason: str
    segment: str


# ─────────────────────────────────────────────────────────────────────────────
# Binary classes  (checked on argv[0] of every segment)
# ─────────────────────────────────────────────────────────────────────────────

DANGEROUS_BINARIES: dict[str, DenyCategory] = {
    **{b: DenyCategory.DESTRUCTIVE_FILESYSTEM for b in (
        "rm", "rmdir", "del", "delete", "format", "fdisk", "parted", "mkfs",
        "dd", "shred", "wipe", "chmod", "chown", "chgrp",
        "mount", "umount", "unmount",
    )},
    **{b: DenyCategory.PRIVILEGE_ESCALATION for b in (
        "sudo", "su", "doas", "passwd", "useradd", "userdel", "usermod", "visudo",
    )},
    **{b: DenyCategory.PROCESS_CONTROL for b in (
        "kill", "killall", "pkill", "systemctl", "service", "launchctl",
        "reboot", "shutdown", "halt", "poweroff",
    )},
}

# Prefix wrappers that run their argument as the real command.
_COMMAND_WRAPPERS: frozenset[str] = frozenset({
    "env", "nohup", "time", "nice", "exec", "command", "builtin",
})

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


# ─────────────────────────────────────────────────────────────────────────────
# Raw-string patterns  (checked on the whole command)
# ─────────────────────────────────────────────────────────────────────────────

DENY_PATTERNS: list[tuple[re.Pattern, DenyCategory, str]] = [
    # Destructive filesystem
    (re.compile(r"\brm\s+(-\w*r\w*|-\w*f\w*|--recursive|--force)", re.I),
        DenyCategory.DESTRUCTIVE_FILESYSTEM, "rm with recursive/force flag"),
    (re.compile(r"\bmkfs(\.\w+)?\b"),
        DenyCategory.DESTRUCTIVE_FILESYSTEM, "filesystem formatting"),
    (re.compile(r"\bdd\b.*of=/dev/"),
        DenyCategory.DESTRUCTIVE_FILESYSTEM, "writing to a block device"),
    (re.compile(r">\s*/(etc|dev/sd|dev/nvme|boot)"),
        DenyCategory.DESTRUCTIVE_FILESYSTEM, "redirecting output into a system location"),
    (re.compile(r"\bfind\b.*\s-delete\b"),
        DenyCategory.DESTRUCTIVE_FILESYSTEM, "find -delete"),
    (re.compile(r">\s*~/?\.(bash|zsh)_history|history\s+-c"),
        DenyCategory.DESTRUCTIVE_FILESYSTEM, "erasing shell history"),
    # Privilege escalation
    (re.compile(r"\bsudo\b"),
        DenyCategory.PRIVILEGE_ESCALATION, "sudo"),
    (re.compile(r"\bsu\s+-"),
        DenyCategory.PRIVILEGE_ESCALATION, "su -"),
    (re.compile(r"\bchmod\s+[-+]?[0-7]*[4-7][0-7]{3}\b|\bchmod\s+\S*[ug]\+s"),
        DenyCategory.PRIVILEGE_ESCALATION, "setting setuid/setgid bits"),
    # Network exfiltration / remote code
    (re.compile(r"\|\s*(ba|z|da|fi|k)?sh\b"),
        DenyCategory.NETWORK_EXFILTRATION, "pipe-to-shell"),
    (re.compile(r"\b(curl|wget)\b.*\|\s*(bash|sh|python[0-9.]*)", re.I),
        DenyCategory.NETWORK_EXFILTRATION, "download piped into an interpreter"),
    (re.compile(r"\bcurl\b.*(\s-d\s*@|--data(-binary)?\s*@|\s-T\s|--upload-file|\s-F\s)", re.I),
        DenyCategory.NETWORK_EXFILTRATION, "curl uploading local data"),
    (re.compile(r"\b(nc|netcat|ncat)\b.*\s-[lek]"),
        DenyCategory.NETWORK_EXFILTRATION, "netcat listener/exec mode"),
    (re.compile(r"/dev/(tcp|udp)/"),
        DenyCategory.NETWORK_EXFILTRATION, "raw /dev/tcp socket"),
    (re.compile(r"\bopenssl\b.*(s_client|s_time|dgram)", re.I),
        DenyCategory.NETWORK_EXFILTRATION, "openssl network connection"),
    (re.compile(r"\b(rsync|scp)\b.*\s[\w.@-]+:"),
        DenyCategory.NETWORK_EXFILTRATION, "copying to a remote host"),
    (re.compile(r"\beval\b.*\$\("),
        DenyCategory.NETWORK_EXFILTRATION, "eval with subshell substitution"),
    # Process control
    (re.compile(r":\(\)\s*\{.*\}\s*;\s*:"),
        DenyCategory.PROCESS_CONTROL, "fork bomb"),
    (re.compile(r"\bcrontab\s+-[er]\b"),
        DenyCategory.PROCESS_CONTROL, "crontab editing"),
]


# ─────────────────────────────────────────────────────────────────────────────
# Parsing helpers
# ─────────────────────────────────────────────────────────────────────────────

_SEPARATORS = {";", "&&", "||", "|", "&", "|&", ";;"}
_FALLBACK_SPLIT = re.compile(r"\|\||&&|\|&|[;|&]")


def split_segments(command: str) -> list[list[str]]:
    """
    Split a compound command into token lists, one per simple command.

    Quoted separators stay inside their token. Malformed quoting falls back
    to a plain textual split so classification still sees every segment.
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError:
        return [seg.split() for seg in _FALLBACK_SPLIT.split(command) if seg.strip()]

    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SEPARATORS or set(token) <= {";", "&", "|"}:
            if current:
                segments.append(current)
            current = []
        else:
            current.append(token)
    if current:
        segments.append(current)
    return segments


def base_binary(tokens: list[str]) -> str:
    """Lower-cased basename of the command actually run by a segment."""
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if _ASSIGNMENT_RE.match(token):
            i += 1
            continue
        name = Path(token).name.lower()
        if name in _COMMAND_WRAPPERS and i + 1 < len(tokens):
            i += 1
            # skip wrapper flags such as `nice -n 5` or `env -i`
            while i < len(tokens) and tokens[i].startswith("-"):
                i += 1
                if name == "nice" and i < len(tokens) and tokens[i].lstrip("-").isdigit():
                    i += 1
            continue
        return name
    return ""


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def command_substitutions(command: str) -> list[str]:
    """
    Bodies of every $(...), `...`, <(...) and >(...) in a command, nested
    ones included. Single-quoted text is literal and skipped.
    """
    bodies: list[str] = []
    in_double = False
    i, n = 0, len(command)
    while i < n:
        ch = command[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            in_double = not in_double
        elif ch == "'" and not in_double:
            end = command.find("'", i + 1)
            i = n if end == -1 else end + 1
            continue
        if ch == "`":
            end = i + 1
            while end < n and command[end] != "`":
                end += 2 if command[end] == "\\" else 1
            body = command[i + 1:end]
            bodies.append(body)
            bodies.extend(command_substitutions(body))
            i = end + 1
            continue
        if ch in "$<>" and command.startswith("(", i + 1):
            depth, end = 1, i + 2
            while end < n and depth:
                if command[end] == "(":
                    depth += 1
                elif command[end] == ")":
                    depth -= 1
                end += 1
            body = command[i + 2:end - 1] if depth == 0 else command[i + 2:]
            bodies.append(body)
            bodies.extend(command_substitutions(body))
            i = end
            continue
        i += 1
    return bodies


def _match_binary(command: str) -> Optional[DenyMatch]:
    for tokens in split_segments(command):
        binary = base_binary(tokens)
        category = DANGEROUS_BINARIES.get(binary)
        if category is None and binary.startswith("mkfs."):
            category = DenyCategory.DESTRUCTIVE_FILESYSTEM
        if category is not None:
            return DenyMatch(
                category=category,
                reason=f"'{binary}' is a {category.value.replace('_', ' ')} command",
                segment=" ".join(tokens),
            )
    return None


def match_pattern(command: str) -> Optional[DenyMatch]:
    """First DENY_PATTERNS hit on the raw command, or None."""
    for pattern, category, reason in DENY_PATTERNS:
        m = pattern.search(command)
        if m:
            return DenyMatch(category=category, reason=reason, segment=m.group(0))
    return None


def match_dangerous(command: str) -> Optional[DenyMatch]:
    """Return the first reason this command needs confirmation, or None."""
    command = command.strip()
    if not command:
        return None

    # commands hidden in substitutions run too
    for text in (command, *command_substitutions(command)):
        match = _match_binary(text)
        if match is not None:
            return match

    return match_pattern(command)
