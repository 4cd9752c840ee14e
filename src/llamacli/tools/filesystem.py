"""
tools/filesystem.py — Filesystem Tools

Path-restricted file access for the agent. Relative paths resolve against
the session's working directory (which follows `cd` in the shell tool), and
every resolved path must sit under tools.allowed_paths.

Registered tools:
  - read_file       → read a text file
  - write_file      → write/overwrite (or append to) a text file
  - list_directory  → list directory contents
  - search_files    → glob for files, optionally grepping their contents
  - delete_file     → delete a single file
"""

from __future__ import annotations

import asyncio
import fnmatch
from pathlib import Path
from typing import Optional

from llamacli.observability.logger import get_logger
from llamacli.safety.paths import check_path
from llamacli.tools.tool_registry import ToolRegistry
from llamacli.tools.types import RiskLevel, ToolCategory, ToolContext

log = get_logger(__name__)

# Refuse to load files larger than this into the model context
_MAX_READ_BYTES = 10 * 1024 * 1024  # 10 MB
_MAX_SEARCH_RESULTS = 200


def _resolve(
    path: str,
    context: ToolContext,
    allowed_paths: list[str],
    operation: str = "read",
) -> Path:
    ok, reason, resolved = check_path(
        path, allowed_paths, base_dir=context.working_directory, operation=operation
    )
    if not ok or resolved is None:
        log.warning("filesystem.path_blocked", path=path, operation=operation, reason=reason)
        raise PermissionError(reason)
    return resolved


def register_filesystem_tools(registry: ToolRegistry, allowed_paths: Optional[list[str]] = None) -> None:
    """Register the filesystem tool set on a registry, confined to allowed_paths."""
    roots = list(allowed_paths or ["."])

    @registry.tool(
        name="read_file",
        description=(
            "Read the contents of a text file. "
            "Relative paths are resolved against the current working directory. "
            "Only files within allowed paths can be read."
        ),
        category=ToolCategory.FILESYSTEM,
        risk_level=RiskLevel.LOW,
        takes_context=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to read"},
                "encoding": {
                    "type": "string",
                    "description": "File encoding (default: utf-8)",
                    "default": "utf-8",
                },
            },
            "required": ["path"],
        },
    )
    async def read_file(path: str, context: ToolContext, encoding: str = "utf-8") -> str:
        resolved = _resolve(path, context, roots, "read")
        if not resolved.exists():
            raise FileNotFoundError(f"File not found: {resolved}")
        if not resolved.is_file():
            raise ValueError(f"Path is not a file: {resolved}")
        size = resolved.stat().st_size
        if size > _MAX_READ_BYTES:
            return (
                f"[File too large to read directly: {size:,} bytes "
                f"(limit {_MAX_READ_BYTES:,} bytes). "
                f"Use execute_shell with 'head', 'tail' or 'grep' to inspect it.]"
            )
        return await asyncio.to_thread(resolved.read_text, encoding=encoding, errors="replace")

    @registry.tool(
        name="write_file",
        description=(
            "Write content to a file, creating it if it doesn't exist "
            "or overwriting it if it does. Set append=true to add to the end instead. "
            "Only files within allowed paths can be written."
        ),
        category=ToolCategory.FILESYSTEM,
        risk_level=RiskLevel.MEDIUM,
        takes_context=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to write to"},
                "content": {"type": "string", "description": "Text content to write"},
                "append": {
                    "type": "boolean",
                    "description": "Append instead of overwriting (default: false)",
                    "default": False,
                },
                "create_dirs": {
                    "type": "boolean",
                    "description": "Create parent directories if they don't exist (default: true)",
                    "default": True,
                },
            },
            "required": ["path", "content"],
        },
    )
    async def write_file(
        path: str,
        content: str,
        context: ToolContext,
        append: bool = False,
        create_dirs: bool = True,
    ) -> str:
        resolved = _resolve(path, context, roots, "write")
        if resolved.is_dir():
            raise IsADirectoryError(f"Path is a directory: {resolved}")

        def _write() -> None:
            if create_dirs:
                resolved.parent.mkdir(parents=True, exist_ok=True)
            with resolved.open("a" if append else "w", encoding="utf-8") as f:
                f.write(content)

        await asyncio.to_thread(_write)
        verb = "Appended" if append else "Written"
        return f"{verb} {len(content)} characters to {resolved}"

    @registry.tool(
        name="list_directory",
        description=(
            "List the contents of a directory. "
            "Returns names, types and sizes. Defaults to the working directory."
        ),
        category=ToolCategory.FILESYSTEM,
        risk_level=RiskLevel.LOW,
        takes_context=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory to list (default: working directory)",
                    "default": ".",
                },
                "show_hidden": {
                    "type": "boolean",
                    "description": "Include hidden files (starting with .)",
                    "default": False,
                },
            },
            "required": [],
        },
    )
    async def list_directory(
        context: ToolContext,
        path: str = ".",
        show_hidden: bool = False,
    ) -> dict:
        resolved = _resolve(path, context, roots, "read")
        if not resolved.exists():
            raise FileNotFoundError(f"Directory not found: {resolved}")
        if not resolved.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {resolved}")

        entries = []
        for entry in sorted(resolved.iterdir()):
            if not show_hidden and entry.name.startswith("."):
                continue
            try:
                kind = "dir" if entry.is_dir() else "file"
                entries.append({
                    "name": entry.name,
                    "type": kind,
                    "size_bytes": entry.stat().st_size if kind == "file" else None,
                })
            except OSError:
                entries.append({"name": entry.name, "type": "unknown", "error": "permission denied"})

        return {"path": str(resolved), "entries": entries, "count": len(entries)}

    @registry.tool(
        name="search_files",
        description=(
            "Find files under a directory whose names match a glob pattern "
            "(e.g. '*.py'). If 'contains' is given, only files whose text "
            "contains that string are returned, with the matching line numbers."
        ),
        category=ToolCategory.FILESYSTEM,
        risk_level=RiskLevel.LOW,
        takes_context=True,
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Filename glob, e.g. '*.md'"},
                "path": {
                    "type": "string",
                    "description": "Directory to search (default: working directory)",
                    "default": ".",
                },
                "contains": {
                    "type": "string",
                    "description": "Only return files containing this text",
                },
                "max_results": {
                    "type": "integer",
                    "description": f"Maximum matches to return (default: 50, max: {_MAX_SEARCH_RESULTS})",
                    "default": 50,
                },
            },
            "required": ["pattern"],
        },
    )
    async def search_files(
        pattern: str,
        context: ToolContext,
        path: str = ".",
        contains: Optional[str] = None,
        max_results: int = 50,
    ) -> dict:
        resolved = _resolve(path, context, roots, "read")
        if not resolved.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {resolved}")
        limit = max(1, min(max_results, _MAX_SEARCH_RESULTS))

        def _search() -> tuple[list[dict], bool]:
            matches: list[dict] = []
            for candidate in sorted(resolved.rglob("*")):
                if any(part.startswith(".") for part in candidate.relative_to(resolved).parts):
                    continue
                if not candidate.is_file() or not fnmatch.fnmatch(candidate.name, pattern):
                    continue
                ok, _, _ = check_path(candidate, roots, operation="read")
                if not ok:
                    continue
                rel = str(candidate.relative_to(resolved))
                if contains is None:
                    matches.append({"path": rel})
                else:
                    lines = _matching_lines(candidate, contains)
                    if lines:
                        matches.append({"path": rel, "lines": lines})
                if len(matches) >= limit:
                    return matches, True
            return matches, False

        matches, truncated = await asyncio.to_thread(_search)
        log.debug("filesystem.search_done", root=str(resolved), pattern=pattern, matches=len(matches))
        return {
            "root": str(resolved),
            "pattern": pattern,
            "matches": matches,
            "count": len(matches),
            "truncated": truncated,
        }

    @registry.tool(
        name="delete_file",
        description=(
            "Delete a single file. Directories are never deleted by this tool. "
            "Only files within allowed paths can be deleted."
        ),
        category=ToolCategory.FILESYSTEM,
        risk_level=RiskLevel.HIGH,
        takes_context=True,
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path of the file to delete"},
            },
            "required": ["path"],
        },
    )
    async def delete_file(path: str, context: ToolContext) -> str:
        resolved = _resolve(path, context, roots, "write")
        if not resolved.exists():
            raise FileNotFoundError(f"File not found: {resolved}")
        if resolved.is_dir():
            raise IsADirectoryError(f"Refusing to delete a directory: {resolved}")
        await asyncio.to_thread(resolved.unlink)
        log.info("filesystem.deleted", path=str(resolved), session_id=context.session_id)
        return f"Deleted {resolved}"


def _matching_lines(path: Path, needle: str, max_lines: int = 5) -> list[int]:
    if path.stat().st_size > _MAX_READ_BYTES:
        return []
    hits: list[int] = []
    try:
        with path.open("r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                if needle in line:
                    hits.append(lineno)
                    if len(hits) >= max_lines:
                        break
    except OSError:
        return []
    return hits
