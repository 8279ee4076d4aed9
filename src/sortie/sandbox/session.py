"""Sandbox job sessions: auditable, redacted, policy-enforced command execution.

A session binds one sandbox to one persisted ``SandboxJob``:

1. ``SandboxRunner.start`` provisions a new sandbox (optionally cloning a
   git source); ``SandboxRunner.attach`` reuses a running one, e.g. verify
   reusing checkout's sandbox.
2. ``run_command`` validates the working directory and path arguments
   against the workspace root, enforces the command allowlist, then streams
   the provider's output through the redactor into a bounded transcript and
   the caller's ``on_log`` hook.
3. ``finalize`` uploads the combined transcript to blob storage, records the
   exit code / status / timestamps on the job, and stops the sandbox when
   the session owns its lifetime (``stop_on_finalize``).

Cleanup on failure is a scope guard (``async with session.guard():``):
finalize as failed and stop the sandbox, log and discard any secondary
errors, re-raise the original one.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from sortie.blob import BlobStore, transcript_blob_path
from sortie.config import DEFAULT_WORKSPACE_ROOT, TranscriptConfig
from sortie.errors import AppError, ErrorCode
from sortie.models import JobStatus, SandboxJob, utcnow
from sortie.registry import SandboxJobStore
from sortie.sandbox.allowlist import CommandPolicy, assert_command_allowed
from sortie.sandbox.network_policy import NetworkPolicy
from sortie.sandbox.paths import check_args_for_workspace, resolve_cwd, resolve_path
from sortie.sandbox.provider import GitSource, SandboxFile, SandboxHandle, SandboxProvider
from sortie.sandbox.redaction import redact
from sortie.sandbox.transcript import LogLine, Transcript, TranscriptCollector

logger = logging.getLogger(__name__)

OnLog = Callable[[LogLine], "Awaitable[None] | None"]


class CommandResult(BaseModel):
    exit_code: int
    transcript: Transcript


@dataclass
class FinalizeResult:
    job: SandboxJob
    transcript: Transcript


def format_command_header(
    cmd: str,
    args: list[str],
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    extra_secrets: Iterable[str] = (),
) -> str:
    """Transcript header for one command. Args are redacted; env values are never shown."""
    secrets = list(extra_secrets)
    safe_args = [redact(a, secrets) for a in args]
    lines = [" ".join(["$", cmd, *safe_args]).strip()]
    if cwd:
        lines.append(f"# cwd: {cwd}")
    env_keys = sorted(k for k in (env or {}) if k)
    if env_keys:
        lines.append(f"# env: {', '.join(env_keys)}")
    lines.append("")
    return "\n".join(lines)


# ── Session ──────────────────────────────────────────────────────────────────


class SandboxJobSession:
    """One job's view of a sandbox. Created by ``SandboxRunner``."""

    def __init__(
        self,
        *,
        job: SandboxJob,
        sandbox: SandboxHandle,
        provider: SandboxProvider,
        jobs: SandboxJobStore,
        blob: BlobStore | None,
        workspace_root: str = DEFAULT_WORKSPACE_ROOT,
        stop_on_finalize: bool = True,
        transcript_limits: TranscriptConfig | None = None,
        secrets: Iterable[str] = (),
    ):
        self.job = job
        self.sandbox = sandbox
        self.workspace_root = workspace_root
        self.stop_on_finalize = stop_on_finalize
        self.last_exit_code: int | None = None
        self._provider = provider
        self._jobs = jobs
        self._blob = blob
        self._limits = transcript_limits or TranscriptConfig()
        self._collector = self._new_collector()
        self._secrets = [s for s in secrets if s]
        self._lock = asyncio.Lock()
        self._finalized = False

    @property
    def sandbox_id(self) -> str:
        return self.sandbox.sandbox_id

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _new_collector(self) -> TranscriptCollector:
        return TranscriptCollector(
            max_combined_chars=self._limits.max_combined_chars,
            max_stream_chars=self._limits.max_stream_chars,
        )

    def snapshot_transcript(self) -> Transcript:
        return self._collector.snapshot()

    # ── Commands ─────────────────────────────────────────────────────────

    async def run_command(
        self,
        cmd: str,
        args: Iterable[str] = (),
        *,
        policy: CommandPolicy | str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        extra_secrets: Iterable[str] = (),
        on_log: OnLog | None = None,
    ) -> CommandResult:
        """Run one allowlisted command and capture its redacted transcript.

        Raises:
            AppError(bad_request): cwd/path escapes the workspace, or the
                command is not allowed. The provider is not called.
        """
        arg_list = [str(a) for a in args]
        resolved_cwd = resolve_cwd(cwd, self.workspace_root)
        check_args_for_workspace(cmd, arg_list, self.workspace_root)
        assert_command_allowed(cmd, arg_list, policy)

        secrets = [*self._secrets, *extra_secrets]
        env_values = list((env or {}).values())

        async with self._lock:
            if self._finalized:
                raise AppError(ErrorCode.INTERNAL, "Sandbox job session is already finalized.")

            command_collector = self._new_collector()
            header = LogLine(
                stream="stdout",
                data=format_command_header(cmd, arg_list, resolved_cwd, env, secrets),
            )
            self._collector.append(header, secrets)
            command_collector.append(header, secrets)

            handle = await self._provider.run_command(
                self.sandbox_id, cmd, arg_list, cwd=resolved_cwd, env=dict(env or {})
            )
            # Values passed via env are secrets for transcript purposes.
            log_secrets = [*secrets, *env_values]
            async for line in handle.logs():
                redacted = self._collector.append(line, log_secrets)
                command_collector.append(line, log_secrets)
                if on_log is not None:
                    result = on_log(LogLine(stream=line.stream, data=redacted))
                    if inspect.isawaitable(result):
                        await result
            exit_code = await handle.wait()
            self.last_exit_code = exit_code

        if exit_code != 0:
            logger.info("Sandbox %s: `%s` exited %d", self.sandbox_id, cmd, exit_code)
        return CommandResult(exit_code=exit_code, transcript=command_collector.snapshot())

    async def write_files(self, files: list[SandboxFile]) -> None:
        """Write files into the sandbox; every path must resolve under the workspace."""
        pinned = [SandboxFile(path=resolve_path(f.path, self.workspace_root), content=f.content) for f in files]
        await self._provider.write_files(self.sandbox_id, pinned)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def finalize(self, *, exit_code: int, status: JobStatus) -> FinalizeResult:
        """Persist the outcome of this job. May be called once."""
        if self._finalized:
            raise AppError(ErrorCode.INTERNAL, "Sandbox job session finalized twice.")
        self._finalized = True

        transcript = self._collector.snapshot()
        blob_ref: str | None = None
        if self._blob is not None:
            try:
                ref = await self._blob.put(
                    transcript_blob_path(self.job.project_id, self.job.run_id, self.job.id),
                    transcript.combined.encode("utf-8"),
                    "text/plain; charset=utf-8",
                )
                blob_ref = ref.url
            except Exception:
                logger.warning("Failed to upload transcript for job %s", self.job.id, exc_info=True)

        try:
            self.job = await self._jobs.update(
                self.job.id,
                status=status,
                exit_code=exit_code,
                transcript_blob_ref=blob_ref,
                ended_at=utcnow(),
                metadata={"transcriptTruncated": transcript.truncated},
            )
        finally:
            if self.stop_on_finalize:
                await self._stop_quietly()

        logger.info(
            "Finalized sandbox job %s (%s, exit=%d, transcript=%s)",
            self.job.id,
            status.value,
            exit_code,
            "stored" if blob_ref else "missing",
        )
        return FinalizeResult(job=self.job, transcript=transcript)

    async def cancel(self) -> None:
        """Mark the job canceled (no transcript upload)."""
        if self._finalized:
            return
        self._finalized = True
        try:
            self.job = await self._jobs.update(self.job.id, status=JobStatus.CANCELED, ended_at=utcnow())
        finally:
            if self.stop_on_finalize:
                await self._stop_quietly()

    async def stop(self) -> None:
        await self._provider.stop(self.sandbox_id)

    async def _stop_quietly(self) -> None:
        try:
            await self._provider.stop(self.sandbox_id)
        except Exception:
            logger.warning("Failed to stop sandbox %s", self.sandbox_id, exc_info=True)

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[SandboxJobSession]:
        """Scope guard: on error, finalize failed + stop, then re-raise.

        Secondary errors during cleanup are logged and discarded so the
        original error is the one that surfaces.
        """
        try:
            yield self
        except asyncio.CancelledError:
            try:
                await self.cancel()
            except Exception:
                logger.warning("Cleanup failed for canceled job %s", self.job.id, exc_info=True)
            await self._stop_quietly()
            raise
        except BaseException:
            if not self._finalized:
                exit_code = self.last_exit_code if self.last_exit_code else 1
                try:
                    await self.finalize(exit_code=exit_code, status=JobStatus.FAILED)
                except Exception:
                    logger.warning("Failed to finalize job %s after error", self.job.id, exc_info=True)
            await self._stop_quietly()
            raise


# ── Runner ───────────────────────────────────────────────────────────────────


@dataclass
class SandboxRunner:
    """Creates sessions. Holds the collaborators every session needs."""

    provider: SandboxProvider
    jobs: SandboxJobStore
    blob: BlobStore | None = None
    workspace_root: str = DEFAULT_WORKSPACE_ROOT
    transcript_limits: TranscriptConfig = field(default_factory=TranscriptConfig)

    async def start(
        self,
        *,
        job_type: str,
        project_id: str,
        run_id: str,
        network_policy: NetworkPolicy,
        runtime: str,
        timeout_ms: int,
        vcpus: int = 2,
        source: GitSource | None = None,
        metadata: dict[str, Any] | None = None,
        step_id: str | None = None,
        stop_on_finalize: bool = True,
    ) -> SandboxJobSession:
        """Provision a sandbox and record a running job for it.

        Raises:
            AppError(bad_gateway): provisioning failed. The job is marked
                failed and any partially created sandbox is stopped.
        """
        job = await self.jobs.create(
            project_id=project_id,
            run_id=run_id,
            job_type=job_type,
            step_id=step_id,
            metadata=metadata,
        )

        handle: SandboxHandle | None = None
        try:
            handle = await self.provider.create(
                runtime=runtime,
                vcpus=vcpus,
                timeout_ms=timeout_ms,
                network_policy=network_policy,
                source=source,
            )
            policy_meta: dict[str, Any] = {"type": network_policy.type}
            if network_policy.type == "restricted":
                policy_meta["variant"] = network_policy.variant
            job = await self.jobs.update(
                job.id,
                status=JobStatus.RUNNING,
                started_at=utcnow(),
                metadata={
                    "sandboxId": handle.sandbox_id,
                    "runtime": runtime,
                    "vcpus": vcpus,
                    "networkPolicy": policy_meta,
                },
            )
        except Exception as e:
            if handle is not None:
                try:
                    await self.provider.stop(handle.sandbox_id)
                except Exception:
                    logger.warning("Failed to stop sandbox %s after start error", handle.sandbox_id, exc_info=True)
            try:
                await self.jobs.update(job.id, status=JobStatus.FAILED, ended_at=utcnow())
            except Exception:
                logger.warning("Failed to mark job %s failed", job.id, exc_info=True)
            if isinstance(e, AppError):
                raise
            raise AppError(ErrorCode.BAD_GATEWAY, "Failed to provision sandbox.", cause=e) from e

        secrets = [source.password] if source and source.password else []
        return SandboxJobSession(
            job=job,
            sandbox=handle,
            provider=self.provider,
            jobs=self.jobs,
            blob=self.blob,
            workspace_root=self.workspace_root,
            stop_on_finalize=stop_on_finalize,
            transcript_limits=self.transcript_limits,
            secrets=secrets,
        )

    async def attach(
        self,
        *,
        sandbox_id: str,
        job_type: str,
        project_id: str,
        run_id: str,
        metadata: dict[str, Any] | None = None,
        step_id: str | None = None,
        stop_on_finalize: bool = False,
    ) -> SandboxJobSession:
        """Record a new job against an already-running sandbox."""
        job = await self.jobs.create(
            project_id=project_id,
            run_id=run_id,
            job_type=job_type,
            step_id=step_id,
            metadata=metadata,
        )
        try:
            handle = await self.provider.get(sandbox_id)
        except Exception as e:
            try:
                await self.jobs.update(job.id, status=JobStatus.FAILED, ended_at=utcnow())
            except Exception:
                logger.warning("Failed to mark job %s failed", job.id, exc_info=True)
            if isinstance(e, AppError):
                raise
            raise AppError(ErrorCode.BAD_GATEWAY, "Failed to look up sandbox.", cause=e) from e

        job = await self.jobs.update(
            job.id,
            status=JobStatus.RUNNING,
            started_at=utcnow(),
            metadata={"sandboxId": handle.sandbox_id},
        )
        return SandboxJobSession(
            job=job,
            sandbox=handle,
            provider=self.provider,
            jobs=self.jobs,
            blob=self.blob,
            workspace_root=self.workspace_root,
            stop_on_finalize=stop_on_finalize,
            transcript_limits=self.transcript_limits,
        )
