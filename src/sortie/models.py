"""Core data models for sortie."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

RepoKind = Literal["node", "python"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Sandbox Jobs ─────────────────────────────────────────────────────────────


class JobStatus(str, enum.Enum):
    """Sandbox job lifecycle: pending → running → terminal."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_JOB_STATUSES


_TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})

_JOB_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELED: 2,
}


def job_transition_allowed(current: JobStatus, target: JobStatus) -> bool:
    """Monotonic transitions only; terminal states are never left."""
    if current.is_terminal:
        return current == target
    return _JOB_STATUS_RANK[target] >= _JOB_STATUS_RANK[current]


class SandboxJob(BaseModel):
    """One sandbox command-execution unit of work (never deleted)."""

    id: str
    project_id: str
    run_id: str
    step_id: str | None = None
    job_type: str = Field(description="e.g. 'implementation_checkout', 'code_mode'")
    status: JobStatus = JobStatus.PENDING
    exit_code: int | None = None
    transcript_blob_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ── Runs & Steps ─────────────────────────────────────────────────────────────


class RunKind(str, enum.Enum):
    RESEARCH = "research"
    IMPLEMENTATION = "implementation"
    CODE_MODE = "code_mode"


class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class StepKind(str, enum.Enum):
    LLM = "llm"
    TOOL = "tool"
    SANDBOX = "sandbox"


class Run(BaseModel):
    id: str
    project_id: str
    kind: RunKind = RunKind.IMPLEMENTATION
    status: RunStatus = RunStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RunStep(BaseModel):
    """Logical stage of a run. ``attempt`` counts begin_step calls."""

    run_id: str
    step_id: str
    step_kind: StepKind = StepKind.TOOL
    step_name: str = ""
    status: RunStatus = RunStatus.PENDING
    attempt: int = 0
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ── Projects & Repos ─────────────────────────────────────────────────────────


class Project(BaseModel):
    id: str
    name: str
    slug: str
    created_at: datetime = Field(default_factory=utcnow)


class Repo(BaseModel):
    """A GitHub repository connected to a project."""

    id: str
    project_id: str
    provider: Literal["github"] = "github"
    owner: str
    name: str
    clone_url: str
    html_url: str
    default_branch: str = "main"
    created_at: datetime = Field(default_factory=utcnow)
