"""Default-deny command policy for sandbox execution."""

from __future__ import annotations

import enum

from sortie.errors import AppError, ErrorCode


class CommandPolicy(str, enum.Enum):
    CODE_MODE = "code_mode"
    IMPLEMENTATION_RUN = "implementation_run"


_CODE_MODE_COMMANDS = frozenset(
    {
        "bun",
        "cat",
        "find",
        "grep",
        "jq",
        "ls",
        "mkdir",
        "node",
        "npm",
        "npx",
        "pnpm",
        "python3",
        "rg",
        "sed",
        "test",
        "which",
    }
)

# Implementation runs also commit/push and run the Python toolchain via uv.
_IMPLEMENTATION_RUN_COMMANDS = _CODE_MODE_COMMANDS | {"chmod", "git", "tsc", "uv"}

ALLOWED_COMMANDS: dict[CommandPolicy, frozenset[str]] = {
    CommandPolicy.CODE_MODE: _CODE_MODE_COMMANDS,
    CommandPolicy.IMPLEMENTATION_RUN: _IMPLEMENTATION_RUN_COMMANDS,
}

BLOCKED_SUBSTRINGS = (
    "rm -rf",
    "mkfs",
    "dd if=",
    ":(){",
    "nc ",
    "ncat ",
    "nmap",
    "scp ",
    "ssh ",
    "docker ",
    "podman ",
    "mount ",
    "apt ",
    "yum ",
)

MAX_ARGS = 64
MAX_ARG_LENGTH = 8_192


def assert_command_allowed(cmd: str, args: list[str], policy: CommandPolicy | str) -> None:
    """Raise ``bad_request`` unless ``cmd args`` is permitted under ``policy``."""
    name = cmd.strip()
    try:
        allowed = ALLOWED_COMMANDS[CommandPolicy(policy)]
    except ValueError as e:
        raise AppError(ErrorCode.BAD_REQUEST, f"Unknown command policy: {policy!r}.", cause=e) from e
    if name not in allowed:
        raise AppError(ErrorCode.BAD_REQUEST, f"Command not allowed: {name}.")

    if len(args) > MAX_ARGS:
        raise AppError(ErrorCode.BAD_REQUEST, f"Too many sandbox args (max {MAX_ARGS}).")

    for arg in args:
        if len(arg) > MAX_ARG_LENGTH:
            raise AppError(ErrorCode.BAD_REQUEST, "Sandbox arg exceeds maximum length.")
        if any(needle in arg for needle in BLOCKED_SUBSTRINGS):
            raise AppError(ErrorCode.BAD_REQUEST, "Sandbox command contains a blocked operation.")

    if name == "npx" and (not args or args[0] != "tsx"):
        raise AppError(ErrorCode.BAD_REQUEST, "Sandbox npx is restricted to `npx tsx <script>`.")
