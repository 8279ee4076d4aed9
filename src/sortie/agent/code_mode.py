"""Code-mode agent runner.

Runs a bounded tool loop against a sandbox job session:

1. Start (or attach to) a ``code_mode`` sandbox session. Restricted runs
   clone the project's repo; ``none`` runs get an empty workspace.
2. Best-effort enable sandbox-backed compaction; fall back to dropping old
   tool results if the sandbox cannot host the files.
3. Loop: compact history → stream one model turn → execute its tool calls
   sequentially → repeat, until the model stops calling tools or the step
   budget is spent. The whole loop runs under ``asyncio.timeout``.
4. Always: clean up compaction storage, finalize the job, emit ``exit``.

Everything that leaves the runner (events, the returned assistant text) is
redacted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from sortie.agent.tools import RUN_TOOL, SandboxTools, tool_error
from sortie.compaction import (
    CompactionStrategy,
    KeepLast,
    SandboxFileStorage,
    compact,
    default_serializer,
)
from sortie.config import SortieConfig, read_secret
from sortie.errors import AppError, ErrorCode
from sortie.github_client import GitHubClient
from sortie.llm import ChatClient, sanitize_history
from sortie.models import JobStatus, Repo, RepoKind
from sortie.registry import ProjectStore
from sortie.sandbox.network_policy import select_policy
from sortie.sandbox.provider import GitSource
from sortie.sandbox.redaction import redact
from sortie.sandbox.session import SandboxJobSession, SandboxRunner
from sortie.sandbox.transcript import LogLine
from sortie.stream import (
    AssistantDeltaEvent,
    EventSink,
    ExitEvent,
    LogEvent,
    StatusEvent,
    ToolCallEvent,
    ToolResultEvent,
)

logger = logging.getLogger(__name__)

MAX_ASSISTANT_CHARS = 200_000

SYSTEM_PROMPT = "\n".join(
    [
        "You are Code Mode, an AI assistant operating inside a locked-down sandbox VM.",
        "You can run allowlisted commands via the sandbox_run tool; be explicit about what you run and why.",
        "Large tool outputs are compacted to files in the sandbox. Use sandbox_ls/sandbox_cat/"
        "sandbox_grep/sandbox_find to read referenced results on demand.",
        "Default to read-only inspection before running heavier commands.",
        "Never attempt to fetch secrets or exfiltrate data.",
        "When you complete the task, summarize what you did and include command outputs when relevant.",
    ]
)


class CodeModeBudgets(BaseModel):
    max_steps: int | None = Field(default=None, ge=1, le=50)
    timeout_ms: int | None = Field(default=None, ge=1, le=30 * 60 * 1000)


class CodeModeRequest(BaseModel):
    project_id: str
    run_id: str
    prompt: str = Field(min_length=1)
    network_access: Literal["none", "restricted"] = "restricted"
    budgets: CodeModeBudgets = Field(default_factory=CodeModeBudgets)


class CodeModeResult(BaseModel):
    assistant_text: str
    job_id: str
    prompt: str
    exit_code: int
    steps: int
    transcript_blob_ref: str | None = None
    transcript_truncated: bool = False


@dataclass
class AttachTarget:
    """Run against an existing sandbox instead of provisioning one."""

    sandbox_id: str
    job_type: str
    step_id: str | None = None
    metadata: dict[str, Any] | None = None


def redact_payload(value: Any) -> Any:
    """Redact an arbitrary JSON-able payload, keeping its shape when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return redact(value)
    try:
        return json.loads(redact(json.dumps(value, default=str)))
    except ValueError:
        return redact(str(value))


def redacting_serializer(value: Any) -> str:
    return redact(default_serializer(value))


class CodeModeRunner:
    """Drives one code-mode run end to end."""

    def __init__(
        self,
        *,
        config: SortieConfig,
        sandboxes: SandboxRunner,
        chat: ChatClient,
        projects: ProjectStore,
        github: GitHubClient | None = None,
    ):
        self.config = config
        self.sandboxes = sandboxes
        self.chat = chat
        self.projects = projects
        self.github = github

    def _clamp_budgets(self, budgets: CodeModeBudgets) -> tuple[int, int]:
        b = self.config.budgets
        max_steps = min(budgets.max_steps or b.code_mode_default_max_steps, b.code_mode_max_steps_limit)
        timeout_ms = budgets.timeout_ms or b.code_mode_default_timeout_ms
        timeout_ms = min(max(timeout_ms, b.code_mode_min_timeout_ms), b.code_mode_max_timeout_ms)
        return max_steps, timeout_ms

    async def _detect_kind(self, repo: Repo | None) -> RepoKind:
        if repo is None or self.github is None or not self.github.configured:
            return "node"
        return await self.github.detect_repo_kind(repo.owner, repo.name, ref=repo.default_branch)

    async def _open_session(
        self,
        request: CodeModeRequest,
        timeout_ms: int,
        attach: AttachTarget | None,
    ) -> SandboxJobSession:
        if attach is not None:
            return await self.sandboxes.attach(
                sandbox_id=attach.sandbox_id,
                job_type=attach.job_type,
                project_id=request.project_id,
                run_id=request.run_id,
                step_id=attach.step_id,
                metadata=attach.metadata,
                stop_on_finalize=False,
            )

        repo = await self.projects.get_primary_repo(request.project_id)
        kind = await self._detect_kind(repo)

        source: GitSource | None = None
        if request.network_access == "restricted" and repo is not None:
            token = read_secret(self.config.github.token_env)
            source = GitSource(
                url=repo.clone_url,
                revision=repo.default_branch,
                depth=1,
                username="x-access-token" if token else None,
                password=token,
            )

        metadata: dict[str, Any] = {"networkAccess": request.network_access, "repoKind": kind}
        if repo is not None:
            metadata["repo"] = {
                "provider": repo.provider,
                "owner": repo.owner,
                "name": repo.name,
                "defaultBranch": repo.default_branch,
                "htmlUrl": repo.html_url,
            }

        sandbox_cfg = self.config.sandbox
        return await self.sandboxes.start(
            job_type="code_mode",
            project_id=request.project_id,
            run_id=request.run_id,
            network_policy=select_policy(kind, request.network_access, self.config.network_policy),
            runtime=sandbox_cfg.python_runtime if kind == "python" else sandbox_cfg.node_runtime,
            timeout_ms=timeout_ms,
            vcpus=sandbox_cfg.vcpus,
            source=source,
            metadata=metadata,
        )

    async def _enable_compaction(self, session: SandboxJobSession, sink: EventSink) -> SandboxFileStorage | None:
        storage = SandboxFileStorage(
            self.sandboxes.provider,
            session.sandbox_id,
            workspace_root=session.workspace_root,
            directory=self.config.compaction.sandbox_dir,
        )
        try:
            await storage.prepare()
        except Exception as e:
            message = e.message if isinstance(e, AppError) else str(e) or type(e).__name__
            logger.info("Sandbox compaction unavailable for %s: %s", session.sandbox_id, message)
            await sink.send(StatusEvent(message=f"Context compaction disabled: {redact(message)}"))
            return None
        await sink.send(StatusEvent(message="Context compaction enabled (tool results written to sandbox)."))
        return storage

    async def run(
        self,
        request: CodeModeRequest,
        sink: EventSink,
        *,
        attach: AttachTarget | None = None,
    ) -> CodeModeResult:
        """Run the agent. The caller closes ``sink`` after the ``exit`` event."""
        max_steps, timeout_ms = self._clamp_budgets(request.budgets)
        await sink.send(StatusEvent(message=f"Code Mode started (run: {request.run_id})."))

        session = await self._open_session(request, timeout_ms, attach)
        storage: SandboxFileStorage | None = None
        session_id = f"code-mode:{request.run_id}"

        async def on_log(line: LogLine) -> None:
            await sink.send(LogEvent(stream=line.stream, data=line.data))

        tools = SandboxTools(session, on_log=on_log)
        assistant_text = ""

        async def on_text(delta: str) -> None:
            nonlocal assistant_text
            safe = redact(delta)
            assistant_text = (assistant_text + safe)[-MAX_ASSISTANT_CHARS:]
            await sink.send(AssistantDeltaEvent(text=safe))

        exit_code = 0
        steps = 0
        failure: BaseException | None = None
        canceled = False
        try:
            await sink.send(StatusEvent(message=f"Sandbox job: {session.job.id}"))
            storage = await self._enable_compaction(session, sink)
            async with asyncio.timeout(timeout_ms / 1000):
                steps = await self._loop(request.prompt, tools, storage, session_id, max_steps, on_text, sink)
        except asyncio.CancelledError as e:
            exit_code, failure, canceled = 1, e, True
        except TimeoutError as e:
            exit_code = 1
            failure = AppError(ErrorCode.UPSTREAM_TIMEOUT, "Code Mode timed out.", cause=e)
        except Exception as e:
            exit_code, failure = 1, e

        if failure is not None and not canceled:
            message = failure.message if isinstance(failure, AppError) else "Code Mode failed."
            logger.warning("Code Mode run %s failed: %s", request.run_id, message)
            await sink.send(StatusEvent(message=redact(message)))

        if storage is not None:
            await storage.cleanup()

        finalized = None
        status = JobStatus.CANCELED if canceled else (JobStatus.SUCCEEDED if exit_code == 0 else JobStatus.FAILED)
        try:
            finalized = await session.finalize(exit_code=exit_code, status=status)
        except Exception:
            if failure is None:
                raise
            logger.warning("Failed to finalize code-mode job %s", session.job.id, exc_info=True)

        await sink.send(
            ExitEvent(
                status="succeeded" if exit_code == 0 else "failed",
                exit_code=exit_code,
                job_id=session.job.id,
                error=failure.to_payload() if isinstance(failure, AppError) else None,
            )
        )

        if failure is not None:
            raise failure
        if finalized is None or not finalized.job.id:
            raise AppError(ErrorCode.INTERNAL, "Sandbox job did not finalize.")

        return CodeModeResult(
            assistant_text=redact(assistant_text),
            job_id=finalized.job.id,
            prompt=request.prompt,
            exit_code=exit_code,
            steps=steps,
            transcript_blob_ref=finalized.job.transcript_blob_ref,
            transcript_truncated=finalized.transcript.truncated,
        )

    async def _loop(
        self,
        prompt: str,
        tools: SandboxTools,
        storage: SandboxFileStorage | None,
        session_id: str,
        max_steps: int,
        on_text,
        sink: EventSink,
    ) -> int:
        system = {"role": "system", "content": SYSTEM_PROMPT}
        history: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        definitions = tools.definitions()
        boundary = KeepLast(self.config.compaction.boundary_count)

        for step in range(1, max_steps + 1):
            if storage is not None:
                view = await compact(
                    history,
                    CompactionStrategy.WRITE_TOOL_RESULTS_TO_FILE,
                    boundary=boundary,
                    storage=storage,
                    session_id=session_id,
                    serializer=redacting_serializer,
                )
            else:
                view = await compact(history, CompactionStrategy.DROP_TOOL_RESULTS, boundary=boundary)
            # A keep-last fallback only shortens this request, not the history.
            if len(view) == len(history):
                history = view

            turn = await self.chat.stream([system, *sanitize_history(view)], tools=definitions, on_text=on_text)
            history.append(turn.to_message())
            if not turn.tool_calls:
                return step

            for call in turn.tool_calls:
                result = await self._call_tool(tools, call.id, call.name, call.arguments, sink)
                history.append(
                    {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, default=str)}
                )
        logger.info("Code Mode reached its step budget (%d)", max_steps)
        return max_steps

    async def _call_tool(
        self,
        tools: SandboxTools,
        call_id: str,
        name: str,
        raw_arguments: str,
        sink: EventSink,
    ) -> dict[str, Any]:
        try:
            arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
            if not isinstance(arguments, dict):
                raise ValueError("arguments must be an object")
        except ValueError:
            return tool_error(AppError(ErrorCode.BAD_REQUEST, f"Tool arguments for {name} are not valid JSON."))

        if name == RUN_TOOL:
            shown: dict[str, Any] = {
                "cmd": str(arguments.get("cmd", "")).strip(),
                "args": [redact(str(a)) for a in arguments.get("args") or []],
            }
            if arguments.get("cwd"):
                shown["cwd"] = arguments["cwd"]
            await sink.send(ToolCallEvent(tool_call_id=call_id, tool_name=name, input=shown))
            result = await tools.execute(name, arguments)
            summary = {"exitCode": result["exitCode"]} if "exitCode" in result else redact_payload(result)
            await sink.send(ToolResultEvent(tool_call_id=call_id, tool_name=name, output=summary))
            return result

        await sink.send(ToolCallEvent(tool_call_id=call_id, tool_name=name, input=redact_payload(arguments)))
        result = await tools.execute(name, arguments)
        await sink.send(ToolResultEvent(tool_call_id=call_id, tool_name=name, output=redact_payload(result)))
        return result
