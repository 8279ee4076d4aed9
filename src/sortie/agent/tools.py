"""Sandbox tools exposed to the code-mode agent.

Each tool has a Pydantic parameter model (its JSON schema is what the model
sees) and an implementation that runs through the job session, so every
call is allowlisted, path-checked, redacted and recorded in the job
transcript.

Tools:
- sandbox_run: Execute an allowlisted command, streaming its output
- sandbox_ls / sandbox_cat / sandbox_grep / sandbox_find: Read-only
  exploration of the workspace
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from sortie.errors import AppError, ErrorCode
from sortie.llm import function_tool
from sortie.sandbox.allowlist import CommandPolicy
from sortie.sandbox.paths import resolve_path, rewrite_args_for_workspace
from sortie.sandbox.session import SandboxJobSession
from sortie.sandbox.transcript import LogLine

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20_000
MAX_TRANSCRIPT_TAIL_CHARS = 50_000
TRUNCATION_NOTICE = "\n\n[output truncated]"

RUN_TOOL = "sandbox_run"


# ── Tool Parameter Models ────────────────────────────────────────────────────


class SandboxRunParams(BaseModel):
    cmd: str = Field(min_length=1, description="Command to run, e.g. 'npm' or 'python3'")
    args: list[str] = Field(default_factory=list, max_length=64, description="Command arguments")
    cwd: str | None = Field(default=None, description="Working directory (relative to the workspace)")


class SandboxLsParams(BaseModel):
    path: str | None = Field(default=None, description="Directory to list (default: workspace root)")


class SandboxCatParams(BaseModel):
    path: str = Field(min_length=1, description="File to read")


class SandboxGrepParams(BaseModel):
    pattern: str = Field(min_length=1, description="Pattern to search for")
    path: str | None = Field(default=None, description="File or directory to search (default: workspace root)")


class SandboxFindParams(BaseModel):
    path: str | None = Field(default=None, description="Directory to search from (default: workspace root)")
    name: str | None = Field(default=None, description="Filename glob, e.g. '*.py'")
    max_depth: int | None = Field(default=None, ge=1, le=8, description="Maximum directory depth")


_TOOLS: dict[str, tuple[str, type[BaseModel]]] = {
    RUN_TOOL: (
        "Execute an allowlisted command inside the sandbox workspace. "
        "Prefer the read-only tools (ls/cat/grep/find) for exploration.",
        SandboxRunParams,
    ),
    "sandbox_ls": ("List directory contents inside the sandbox workspace.", SandboxLsParams),
    "sandbox_cat": ("Read a file inside the sandbox workspace (redacted, bounded output).", SandboxCatParams),
    "sandbox_grep": ("Search file contents for a pattern inside the sandbox workspace.", SandboxGrepParams),
    "sandbox_find": ("Find files by name within the sandbox workspace (bounded depth).", SandboxFindParams),
}


def truncate_head(value: str, max_chars: int = MAX_OUTPUT_CHARS) -> str:
    if len(value) <= max_chars:
        return value
    return value[:max_chars] + TRUNCATION_NOTICE


def truncate_tail(value: str, max_chars: int = MAX_TRANSCRIPT_TAIL_CHARS) -> str:
    if len(value) <= max_chars:
        return value
    return value[-max_chars:] + TRUNCATION_NOTICE


def tool_error(err: AppError) -> dict[str, Any]:
    return {"error": {"code": err.code.value, "message": err.message}}


# ── Tool Implementations ─────────────────────────────────────────────────────


class SandboxTools:
    """Tool implementations bound to one job session.

    ``on_log`` receives the redacted output of ``sandbox_run`` as it streams.
    Read-only tools do not stream; their output is returned in the result.
    """

    def __init__(
        self,
        session: SandboxJobSession,
        *,
        on_log: Callable[[LogLine], Awaitable[None] | None] | None = None,
    ):
        self.session = session
        self._on_log = on_log

    def definitions(self) -> list[dict[str, Any]]:
        return [function_tool(name, desc, params) for name, (desc, params) in _TOOLS.items()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Run one tool call. ``AppError``s become ``{"error": ...}`` results."""
        try:
            spec = _TOOLS.get(name)
            if spec is None:
                raise AppError(ErrorCode.BAD_REQUEST, f"Unknown tool: {name}.")
            try:
                params = spec[1].model_validate(arguments)
            except ValidationError as e:
                raise AppError(ErrorCode.BAD_REQUEST, f"Invalid {name} input.", cause=e) from e
            handler = getattr(self, name)
            return await handler(params)
        except AppError as err:
            logger.info("Tool %s failed: %s", name, err.code.value)
            return tool_error(err)

    async def sandbox_run(self, params: SandboxRunParams) -> dict[str, Any]:
        result = await self.session.run_command(
            params.cmd.strip(),
            params.args,
            cwd=params.cwd,
            policy=CommandPolicy.CODE_MODE,
            on_log=self._on_log,
        )
        return {
            "exitCode": result.exit_code,
            "transcriptTail": truncate_tail(result.transcript.combined),
        }

    async def sandbox_ls(self, params: SandboxLsParams) -> dict[str, Any]:
        return await self._read("ls", ["-la", self._path(params.path)])

    async def sandbox_cat(self, params: SandboxCatParams) -> dict[str, Any]:
        return await self._read("cat", [resolve_path(params.path, self.session.workspace_root)])

    async def sandbox_grep(self, params: SandboxGrepParams) -> dict[str, Any]:
        return await self._read("grep", ["-rn", "-e", params.pattern, self._path(params.path)])

    async def sandbox_find(self, params: SandboxFindParams) -> dict[str, Any]:
        args = [self._path(params.path)]
        if params.max_depth:
            args += ["-maxdepth", str(params.max_depth)]
        if params.name:
            args += ["-name", params.name]
        return await self._read("find", args)

    def _path(self, raw: str | None) -> str:
        # A leading "-" would otherwise reach the command as an option.
        return resolve_path((raw or "").strip() or ".", self.session.workspace_root)

    async def _read(self, cmd: str, args: list[str]) -> dict[str, Any]:
        root = self.session.workspace_root
        stdout: list[str] = []

        def collect(line: LogLine) -> None:
            if line.stream == "stdout":
                stdout.append(line.data)

        result = await self.session.run_command(
            cmd,
            rewrite_args_for_workspace(cmd, args, root),
            cwd=root,
            policy=CommandPolicy.CODE_MODE,
            on_log=collect,
        )
        return {"exitCode": result.exit_code, "output": truncate_head("".join(stdout))}

