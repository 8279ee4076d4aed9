"""Implementation run engine. Sequences the pipeline steps for one run.

Steps run strictly in order. Each step is recorded in the run store
(ensure → begin → finish) and reported on the event sink as
``step-started`` / ``step-finished``.

Key behaviors:
    - The first failure finishes the active step and the run as failed,
      stops any sandbox best-effort, emits ``run-finished`` and re-raises.
    - Cancellation marks the run and its open steps canceled.
    - Earlier steps are never rolled back.
    - Re-invoking a run skips steps that already succeeded, re-hydrating
      their outputs from the step record. Sandbox steps are only skipped
      as a group: if any of them still has to run, the whole group reruns
      from ``checkout`` on a fresh sandbox.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from sortie.config import SortieConfig
from sortie.context7 import Context7Client
from sortie.errors import AppError, ErrorCode, to_error_payload
from sortie.github_client import GitHubClient
from sortie.llm import ChatClient
from sortie.models import RunStatus, StepKind
from sortie.pipeline import steps
from sortie.pipeline.planning import ImplementationPlan
from sortie.registry import ProjectStore, RunStore
from sortie.sandbox.session import SandboxRunner
from sortie.stream import (
    EventSink,
    NullSink,
    RunFinishedEvent,
    RunStartedEvent,
    StepFinishedEvent,
    StepStartedEvent,
)

logger = logging.getLogger(__name__)

PREFLIGHT = "preflight"
REPO_CONTEXT = "repo-context"
CHECKOUT = "checkout"
PLANNING = "planning"
EXECUTION = "execution"
COMMIT_PUSH = "commit-push"
VERIFY = "verify"
PULL_REQUEST = "pull-request"
STOP_SANDBOX = "stop-sandbox"

STEP_ORDER = (
    PREFLIGHT,
    REPO_CONTEXT,
    CHECKOUT,
    PLANNING,
    EXECUTION,
    COMMIT_PUSH,
    VERIFY,
    PULL_REQUEST,
    STOP_SANDBOX,
)

# These share one sandbox, so they can only be resumed together.
SANDBOX_STEPS = frozenset({CHECKOUT, EXECUTION, COMMIT_PUSH, VERIFY})

Outputs = dict[str, BaseModel]


@dataclass
class StepSpec:
    step_id: str
    step_name: str
    step_kind: StepKind
    output_model: type[BaseModel]
    execute: Callable[[Outputs], Awaitable[BaseModel]]
    inputs: Callable[[Outputs], dict[str, Any]] = field(default=lambda outputs: {})


class ImplementationRunEngine:
    """Runs the implementation pipeline for persisted runs.

    Usage:
        engine = ImplementationRunEngine(config=cfg, runs=registry.runs, ...)
        outputs = await engine.run(run_id, sink)
    """

    def __init__(
        self,
        *,
        config: SortieConfig,
        runs: RunStore,
        projects: ProjectStore,
        sandboxes: SandboxRunner,
        github: GitHubClient,
        chat: ChatClient,
        context7: Context7Client | None = None,
    ):
        self.config = config
        self.runs = runs
        self.projects = projects
        self.sandboxes = sandboxes
        self.github = github
        self.chat = chat
        self.context7 = context7

    def build_steps(self, ctx: steps.StepContext) -> list[StepSpec]:
        def repo(o: Outputs) -> steps.RepoContext:
            return o[REPO_CONTEXT]  # type: ignore[return-value]

        def checked_out(o: Outputs) -> steps.CheckoutResult:
            return o[CHECKOUT]  # type: ignore[return-value]

        def plan(o: Outputs) -> ImplementationPlan:
            return o[PLANNING]  # type: ignore[return-value]

        def sandbox_id(o: Outputs) -> str | None:
            return checked_out(o).sandbox_id if CHECKOUT in o else None

        return [
            StepSpec(PREFLIGHT, "Preflight", StepKind.TOOL, steps.PreflightResult, lambda o: steps.preflight(ctx)),
            StepSpec(
                REPO_CONTEXT, "Repo context", StepKind.TOOL, steps.RepoContext, lambda o: steps.repo_context(ctx)
            ),
            StepSpec(
                CHECKOUT,
                "Checkout",
                StepKind.SANDBOX,
                steps.CheckoutResult,
                lambda o: steps.checkout(ctx, repo(o), step_id=CHECKOUT),
                inputs=lambda o: {"branchName": repo(o).branch_name, "repoKind": repo(o).repo_kind},
            ),
            StepSpec(PLANNING, "Planning", StepKind.LLM, ImplementationPlan, lambda o: steps.planning(ctx, repo(o))),
            StepSpec(
                EXECUTION,
                "Execution",
                StepKind.SANDBOX,
                steps.ExecutionResult,
                lambda o: steps.execution(ctx, repo(o), checked_out(o), plan(o), step_id=EXECUTION),
                inputs=lambda o: {"sandboxId": checked_out(o).sandbox_id},
            ),
            StepSpec(
                COMMIT_PUSH,
                "Commit and push",
                StepKind.SANDBOX,
                steps.CommitPushResult,
                lambda o: steps.commit_push(ctx, checked_out(o), plan(o), step_id=COMMIT_PUSH),
                inputs=lambda o: {"sandboxId": checked_out(o).sandbox_id, "branchName": checked_out(o).branch_name},
            ),
            StepSpec(
                VERIFY,
                "Verify",
                StepKind.SANDBOX,
                steps.VerifyResult,
                lambda o: steps.verify(ctx, repo(o), checked_out(o), step_id=VERIFY),
                inputs=lambda o: {"sandboxId": checked_out(o).sandbox_id},
            ),
            StepSpec(
                PULL_REQUEST,
                "Pull request",
                StepKind.TOOL,
                steps.PullRequestResult,
                lambda o: steps.pull_request(ctx, repo(o), plan(o), o[COMMIT_PUSH]),  # type: ignore[arg-type]
            ),
            StepSpec(
                STOP_SANDBOX,
                "Stop sandbox",
                StepKind.SANDBOX,
                steps.StopSandboxResult,
                lambda o: steps.stop_sandbox(ctx, sandbox_id(o)),
            ),
        ]

    async def _resumable(self, run_id: str) -> dict[str, dict[str, Any]]:
        """Persisted outputs of steps that may be skipped on this invocation."""
        done = {
            s.step_id: s.outputs
            for s in await self.runs.list_steps(run_id)
            if s.status == RunStatus.SUCCEEDED and s.outputs is not None
        }
        if not SANDBOX_STEPS <= done.keys():
            for step_id in SANDBOX_STEPS:
                done.pop(step_id, None)
        return done

    async def run(self, run_id: str, sink: EventSink | None = None) -> Outputs:
        """Execute (or resume) the run. Returns each step's output model."""
        sink = sink or NullSink()
        run = await self.runs.get_run(run_id)
        if run is None:
            raise AppError(ErrorCode.NOT_FOUND, "Run not found.")

        ctx = steps.StepContext(
            config=self.config,
            project_id=run.project_id,
            run_id=run_id,
            projects=self.projects,
            sandboxes=self.sandboxes,
            github=self.github,
            chat=self.chat,
            context7=self.context7,
            events=sink,
        )
        specs = self.build_steps(ctx)
        resumable = await self._resumable(run_id)
        outputs: Outputs = {}

        await self.runs.set_run_status(run_id, RunStatus.RUNNING)
        await sink.send(RunStartedEvent(run_id=run_id))
        logger.info("Implementation run %s started (%d steps resumable)", run_id, len(resumable))

        active: StepSpec | None = None
        try:
            for spec in specs:
                active = spec
                if spec.step_id in resumable:
                    outputs[spec.step_id] = spec.output_model.model_validate(resumable[spec.step_id])
                    await sink.send(
                        StepFinishedEvent(
                            run_id=run_id,
                            step_id=spec.step_id,
                            status=RunStatus.SUCCEEDED.value,
                            skipped=True,
                            outputs=resumable[spec.step_id],
                        )
                    )
                    continue

                await self.runs.ensure_step(
                    run_id,
                    spec.step_id,
                    step_kind=spec.step_kind,
                    step_name=spec.step_name,
                    inputs=spec.inputs(outputs),
                )
                step = await self.runs.begin_step(run_id, spec.step_id)
                await sink.send(StepStartedEvent(run_id=run_id, step_id=spec.step_id, attempt=step.attempt))

                output = await spec.execute(outputs)
                outputs[spec.step_id] = output
                payload = output.model_dump(mode="json")
                await self.runs.finish_step(run_id, spec.step_id, status=RunStatus.SUCCEEDED, outputs=payload)
                await sink.send(
                    StepFinishedEvent(
                        run_id=run_id, step_id=spec.step_id, status=RunStatus.SUCCEEDED.value, outputs=payload
                    )
                )
        except asyncio.CancelledError:
            logger.info("Implementation run %s canceled", run_id)
            try:
                await self.runs.cancel_run_and_steps(run_id)
            except Exception:
                logger.warning("Failed to record cancellation of run %s", run_id, exc_info=True)
            await self._stop_sandbox(ctx, outputs)
            await sink.send(RunFinishedEvent(run_id=run_id, status=RunStatus.CANCELED.value))
            raise
        except Exception as e:
            error = to_error_payload(e)
            step_id = active.step_id if active else None
            logger.warning("Implementation run %s failed at %s: %s", run_id, step_id, error["message"])
            await self._record_failure(run_id, step_id, error)
            if step_id is not None:
                await sink.send(
                    StepFinishedEvent(run_id=run_id, step_id=step_id, status=RunStatus.FAILED.value, error=error)
                )
            if active is None or active.step_id != STOP_SANDBOX:
                await self._stop_sandbox(ctx, outputs)
            await sink.send(RunFinishedEvent(run_id=run_id, status=RunStatus.FAILED.value, error=error))
            raise

        await self.runs.set_run_status(run_id, RunStatus.SUCCEEDED)
        await sink.send(RunFinishedEvent(run_id=run_id, status=RunStatus.SUCCEEDED.value))
        logger.info("Implementation run %s succeeded", run_id)
        return outputs

    async def _record_failure(self, run_id: str, step_id: str | None, error: dict[str, Any]) -> None:
        try:
            if step_id is not None:
                await self.runs.finish_step(run_id, step_id, status=RunStatus.FAILED, error=error)
            await self.runs.set_run_status(run_id, RunStatus.FAILED)
        except Exception:
            logger.warning("Failed to record failure of run %s", run_id, exc_info=True)

    async def _stop_sandbox(self, ctx: steps.StepContext, outputs: Outputs) -> None:
        checkout = outputs.get(CHECKOUT)
        if isinstance(checkout, steps.CheckoutResult):
            await steps.stop_sandbox(ctx, checkout.sandbox_id)
