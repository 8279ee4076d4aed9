"""Workspace path resolution for sandbox commands.

All paths handed to the sandbox are pinned under the workspace root.
Traversal segments, home-directory expansion and absolute paths outside
the root are rejected with ``bad_request`` before anything reaches the
provider.
"""

from __future__ import annotations

import re

from sortie.config import DEFAULT_WORKSPACE_ROOT
from sortie.errors import AppError, ErrorCode

_TRAVERSAL_SEGMENT = re.compile(r"(^|/)\.\.(/|$)")

# Commands whose every operand is a path.
_ALL_OPERANDS = frozenset({"ls", "cat"})

# Commands whose path is the last argument.
_LAST_OPERAND = frozenset({"grep", "mkdir", "test"})

# find options that come before the start paths.
_FIND_LEADING = frozenset({"-H", "-L", "-P"})


def _within_root(path: str, root: str) -> bool:
    root = root.rstrip("/") or "/"
    return path == root or path.startswith(root + "/")


def _join(root: str, relative: str) -> str:
    joined = f"{root.rstrip('/')}/{relative}"
    while "//" in joined:
        joined = joined.replace("//", "/")
    return joined


def resolve_path(raw: str, root: str = DEFAULT_WORKSPACE_ROOT) -> str:
    """Resolve a sandbox path against the workspace root.

    Returns an absolute path under ``root`` or raises ``bad_request``.
    """
    trimmed = (raw or "").strip()
    if not trimmed or trimmed.startswith("~"):
        raise AppError(ErrorCode.BAD_REQUEST, "Invalid sandbox path.")
    if _TRAVERSAL_SEGMENT.search(trimmed):
        raise AppError(ErrorCode.BAD_REQUEST, "Invalid sandbox path.")
    if trimmed.startswith("/"):
        if not _within_root(trimmed, root):
            raise AppError(ErrorCode.BAD_REQUEST, f"Path must be within {root}.")
        return trimmed
    return _join(root, trimmed)


def resolve_cwd(raw: str | None, root: str = DEFAULT_WORKSPACE_ROOT) -> str | None:
    """Resolve a command ``cwd``; blank input yields None (provider default)."""
    if raw is None or not raw.strip():
        return None
    try:
        return resolve_path(raw, root)
    except AppError as err:
        raise AppError(ErrorCode.BAD_REQUEST, f"Invalid cwd: {err.message}") from err


def _find_start_positions(args: list[str]) -> list[int]:
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _FIND_LEADING or arg.startswith("-O"):
            i += 1
        elif arg == "-D":
            i += 2
        else:
            break
    positions = []
    for pos in range(i, len(args)):
        if args[pos].startswith(("-", "(", "!", ")", ",")):
            break
        positions.append(pos)
    return positions


def _path_arg_positions(cmd: str, args: list[str]) -> list[int]:
    """Indices of ``args`` that name filesystem paths for ``cmd``."""
    if cmd in _ALL_OPERANDS:
        positions = []
        operands_only = False
        for pos, arg in enumerate(args):
            if not operands_only and arg == "--":
                operands_only = True
            elif operands_only or not arg.startswith("-"):
                positions.append(pos)
        return positions
    if cmd == "find":
        return _find_start_positions(args)
    if cmd in _LAST_OPERAND and args and not args[-1].startswith("-"):
        return [len(args) - 1]
    return []


def check_args_for_workspace(cmd: str, args: list[str], root: str = DEFAULT_WORKSPACE_ROOT) -> None:
    """Validate every path argument of file commands without rewriting it."""
    for pos in _path_arg_positions(cmd, args):
        resolve_path(args[pos], root)


def rewrite_args_for_workspace(
    cmd: str, args: list[str], root: str = DEFAULT_WORKSPACE_ROOT
) -> list[str]:
    """Return ``args`` with the command's path arguments pinned under ``root``."""
    rewritten = list(args)
    for pos in _path_arg_positions(cmd, rewritten):
        rewritten[pos] = resolve_path(rewritten[pos], root)
    return rewritten
