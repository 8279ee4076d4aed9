"""SQLite-backed persistence for projects, runs, run steps and sandbox jobs.

One ``Registry`` owns the aiosqlite connection; the stores share it.
Sandbox jobs are an audit trail: rows are created and updated, never
deleted. Job metadata updates are read-merge-write under a lock so fields
recorded by different callers are not lost.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import aiosqlite

from sortie.errors import AppError, ErrorCode
from sortie.models import (
    JobStatus,
    Project,
    Repo,
    Run,
    RunKind,
    RunStatus,
    RunStep,
    SandboxJob,
    StepKind,
    job_transition_allowed,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS repos (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    provider TEXT NOT NULL DEFAULT 'github',
    owner TEXT NOT NULL,
    name TEXT NOT NULL,
    clone_url TEXT NOT NULL,
    html_url TEXT NOT NULL,
    default_branch TEXT NOT NULL DEFAULT 'main',
    created_at TEXT NOT NULL,
    UNIQUE(project_id, owner, name)
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS run_steps (
    run_id TEXT NOT NULL,
    step_id TEXT NOT NULL,
    step_kind TEXT NOT NULL,
    step_name TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    attempt INTEGER NOT NULL DEFAULT 0,
    inputs TEXT NOT NULL DEFAULT '{}',
    outputs TEXT,
    error TEXT,
    started_at TEXT,
    ended_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (run_id, step_id)
);

CREATE TABLE IF NOT EXISTS sandbox_jobs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    step_id TEXT,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    exit_code INTEGER,
    transcript_blob_ref TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    started_at TEXT,
    ended_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_repos_project ON repos(project_id, created_at);
CREATE INDEX IF NOT EXISTS idx_run_steps_run ON run_steps(run_id, created_at);
CREATE INDEX IF NOT EXISTS idx_sandbox_jobs_run ON sandbox_jobs(run_id, created_at);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def new_id() -> str:
    return uuid.uuid4().hex


def _dt_to_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _load_json(raw: str | None, default: Any) -> Any:
    if raw is None:
        return default
    return json.loads(raw)


async def _execute(db: aiosqlite.Connection, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Cursor:
    """Execute ``sql``, mapping a missing schema to ``db_not_migrated``."""
    try:
        return await db.execute(sql, tuple(params))
    except sqlite3.OperationalError as e:
        if "no such table" in str(e) or "no such column" in str(e):
            raise AppError(
                ErrorCode.DB_NOT_MIGRATED,
                "Database schema is missing or out of date. Run `sortie init-db`.",
                cause=e,
            ) from e
        raise


# ── Registry ─────────────────────────────────────────────────────────────────


class Registry:
    """Owns the SQLite connection shared by all stores."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self.jobs: SandboxJobStore | None = None
        self.runs: RunStore | None = None
        self.projects: ProjectStore | None = None

    async def initialize(self, *, migrate: bool = True) -> None:
        """Open the database and (by default) create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        if migrate:
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        self.jobs = SandboxJobStore(self._db)
        self.runs = RunStore(self._db)
        self.projects = ProjectStore(self._db)
        logger.info("Registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized; call initialize() first")
        return self._db


# ── Sandbox Jobs ─────────────────────────────────────────────────────────────


class SandboxJobStore:
    """Create/read/update for sandbox jobs. Jobs are never deleted."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        self._lock = asyncio.Lock()

    async def create(
        self,
        *,
        project_id: str,
        run_id: str,
        job_type: str,
        step_id: str | None = None,
        status: JobStatus = JobStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> SandboxJob:
        job = SandboxJob(
            id=new_id(),
            project_id=project_id,
            run_id=run_id,
            step_id=step_id,
            job_type=job_type,
            status=status,
            metadata=dict(metadata or {}),
        )
        await _execute(
            self._db,
            """INSERT INTO sandbox_jobs
               (id, project_id, run_id, step_id, job_type, status, exit_code,
                transcript_blob_ref, metadata, started_at, ended_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, NULL, NULL, ?, NULL, NULL, ?, ?)""",
            (
                job.id,
                job.project_id,
                job.run_id,
                job.step_id,
                job.job_type,
                job.status.value,
                json.dumps(job.metadata),
                _dt_to_str(job.created_at),
                _dt_to_str(job.updated_at),
            ),
        )
        await self._db.commit()
        logger.info("Created sandbox job %s (type=%s, run=%s)", job.id, job_type, run_id)
        return job

    async def get(self, job_id: str) -> SandboxJob | None:
        cursor = await _execute(self._db, "SELECT * FROM sandbox_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_by_run(self, run_id: str) -> list[SandboxJob]:
        """All jobs for a run, oldest first."""
        cursor = await _execute(
            self._db,
            "SELECT * FROM sandbox_jobs WHERE run_id = ? ORDER BY created_at ASC, rowid ASC",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    async def update(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        exit_code: int | None = None,
        transcript_blob_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> SandboxJob:
        """Patch a job. ``metadata`` is merged into the stored value.

        Status changes that would leave a terminal state (or move backwards)
        are logged and ignored; the rest of the patch is still applied.
        """
        async with self._lock:
            job = await self.get(job_id)
            if job is None:
                raise AppError(ErrorCode.NOT_FOUND, f"Sandbox job not found: {job_id}.")

            if status is not None:
                if job_transition_allowed(job.status, status):
                    job.status = status
                else:
                    logger.warning(
                        "Ignoring sandbox job %s status change %s -> %s",
                        job_id,
                        job.status.value,
                        status.value,
                    )
            if exit_code is not None:
                job.exit_code = exit_code
            if transcript_blob_ref is not None:
                job.transcript_blob_ref = transcript_blob_ref
            if metadata:
                job.metadata = {**job.metadata, **metadata}
            if started_at is not None:
                job.started_at = started_at
            if ended_at is not None:
                job.ended_at = ended_at
            job.updated_at = utcnow()

            await _execute(
                self._db,
                """UPDATE sandbox_jobs SET
                   status=?, exit_code=?, transcript_blob_ref=?, metadata=?,
                   started_at=?, ended_at=?, updated_at=?
                   WHERE id=?""",
                (
                    job.status.value,
                    job.exit_code,
                    job.transcript_blob_ref,
                    json.dumps(job.metadata),
                    _dt_to_str(job.started_at),
                    _dt_to_str(job.ended_at),
                    _dt_to_str(job.updated_at),
                    job.id,
                ),
            )
            await self._db.commit()
            return job


# ── Runs & Steps ─────────────────────────────────────────────────────────────


class RunStore:
    """Runs and their steps."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create_run(
        self,
        *,
        project_id: str,
        kind: RunKind = RunKind.IMPLEMENTATION,
        run_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Run:
        run = Run(id=run_id or new_id(), project_id=project_id, kind=kind, metadata=metadata or {})
        await _execute(
            self._db,
            """INSERT INTO runs (id, project_id, kind, status, metadata, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                run.id,
                run.project_id,
                run.kind.value,
                run.status.value,
                json.dumps(run.metadata),
                _dt_to_str(run.created_at),
                _dt_to_str(run.updated_at),
            ),
        )
        await self._db.commit()
        return run

    async def get_run(self, run_id: str) -> Run | None:
        cursor = await _execute(self._db, "SELECT * FROM runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def set_run_status(self, run_id: str, status: RunStatus) -> None:
        await _execute(
            self._db,
            "UPDATE runs SET status=?, updated_at=? WHERE id=?",
            (status.value, _dt_to_str(utcnow()), run_id),
        )
        await self._db.commit()

    async def ensure_step(
        self,
        run_id: str,
        step_id: str,
        *,
        step_kind: StepKind = StepKind.TOOL,
        step_name: str = "",
        inputs: dict[str, Any] | None = None,
    ) -> RunStep:
        """Insert the step row if it does not exist yet; return the current row."""
        now = _dt_to_str(utcnow())
        await _execute(
            self._db,
            """INSERT INTO run_steps
               (run_id, step_id, step_kind, step_name, status, attempt, inputs, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?)
               ON CONFLICT(run_id, step_id) DO NOTHING""",
            (run_id, step_id, step_kind.value, step_name, json.dumps(inputs or {}), now, now),
        )
        await self._db.commit()
        step = await self.get_step(run_id, step_id)
        assert step is not None
        return step

    async def begin_step(self, run_id: str, step_id: str) -> RunStep:
        now = _dt_to_str(utcnow())
        await _execute(
            self._db,
            """UPDATE run_steps SET status='running', attempt=attempt+1, error=NULL,
               started_at=?, ended_at=NULL, updated_at=?
               WHERE run_id=? AND step_id=?""",
            (now, now, run_id, step_id),
        )
        await self._db.commit()
        step = await self.get_step(run_id, step_id)
        if step is None:
            raise AppError(ErrorCode.NOT_FOUND, f"Run step not found: {run_id}/{step_id}.")
        return step

    async def finish_step(
        self,
        run_id: str,
        step_id: str,
        *,
        status: RunStatus,
        outputs: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        now = _dt_to_str(utcnow())
        await _execute(
            self._db,
            """UPDATE run_steps SET status=?, outputs=?, error=?, ended_at=?, updated_at=?
               WHERE run_id=? AND step_id=?""",
            (
                status.value,
                json.dumps(outputs) if outputs is not None else None,
                json.dumps(error) if error is not None else None,
                now,
                now,
                run_id,
                step_id,
            ),
        )
        await self._db.commit()

    async def get_step(self, run_id: str, step_id: str) -> RunStep | None:
        cursor = await _execute(
            self._db,
            "SELECT * FROM run_steps WHERE run_id = ? AND step_id = ?",
            (run_id, step_id),
        )
        row = await cursor.fetchone()
        return _row_to_step(row) if row else None

    async def list_steps(self, run_id: str) -> list[RunStep]:
        cursor = await _execute(
            self._db,
            "SELECT * FROM run_steps WHERE run_id = ? ORDER BY created_at ASC, rowid ASC",
            (run_id,),
        )
        return [_row_to_step(r) for r in await cursor.fetchall()]

    async def cancel_run_and_steps(self, run_id: str) -> None:
        """Mark the run and any non-terminal steps canceled."""
        now = _dt_to_str(utcnow())
        await _execute(
            self._db,
            """UPDATE run_steps SET status='canceled', ended_at=?, updated_at=?
               WHERE run_id=? AND status IN ('pending', 'running')""",
            (now, now, run_id),
        )
        await self.set_run_status(run_id, RunStatus.CANCELED)


# ── Projects & Repos ─────────────────────────────────────────────────────────


class ProjectStore:
    """Projects and their connected repositories (upsert semantics)."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def upsert_project(self, project: Project) -> Project:
        await _execute(
            self._db,
            """INSERT INTO projects (id, name, slug, created_at) VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET name=excluded.name, slug=excluded.slug""",
            (project.id, project.name, project.slug, _dt_to_str(project.created_at)),
        )
        await self._db.commit()
        return project

    async def get_project(self, project_id: str) -> Project | None:
        cursor = await _execute(self._db, "SELECT * FROM projects WHERE id = ?", (project_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return Project(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            created_at=_str_to_dt(row["created_at"]),
        )

    async def ensure_repo(self, repo: Repo) -> Repo:
        """Connect a repo to a project; re-connecting updates it in place."""
        await _execute(
            self._db,
            """INSERT INTO repos
               (id, project_id, provider, owner, name, clone_url, html_url, default_branch, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(project_id, owner, name) DO UPDATE SET
                   clone_url=excluded.clone_url,
                   html_url=excluded.html_url,
                   default_branch=excluded.default_branch""",
            (
                repo.id,
                repo.project_id,
                repo.provider,
                repo.owner,
                repo.name,
                repo.clone_url,
                repo.html_url,
                repo.default_branch,
                _dt_to_str(repo.created_at),
            ),
        )
        await self._db.commit()
        stored = await self._get_repo(repo.project_id, repo.owner, repo.name)
        assert stored is not None
        return stored

    async def _get_repo(self, project_id: str, owner: str, name: str) -> Repo | None:
        cursor = await _execute(
            self._db,
            "SELECT * FROM repos WHERE project_id = ? AND owner = ? AND name = ?",
            (project_id, owner, name),
        )
        row = await cursor.fetchone()
        return _row_to_repo(row) if row else None

    async def get_primary_repo(self, project_id: str) -> Repo | None:
        """The first repo connected to the project."""
        cursor = await _execute(
            self._db,
            "SELECT * FROM repos WHERE project_id = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (project_id,),
        )
        row = await cursor.fetchone()
        return _row_to_repo(row) if row else None


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _row_to_job(row: aiosqlite.Row) -> SandboxJob:
    return SandboxJob(
        id=row["id"],
        project_id=row["project_id"],
        run_id=row["run_id"],
        step_id=row["step_id"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        exit_code=row["exit_code"],
        transcript_blob_ref=row["transcript_blob_ref"],
        metadata=_load_json(row["metadata"], {}),
        started_at=_str_to_dt(row["started_at"]),
        ended_at=_str_to_dt(row["ended_at"]),
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_run(row: aiosqlite.Row) -> Run:
    return Run(
        id=row["id"],
        project_id=row["project_id"],
        kind=RunKind(row["kind"]),
        status=RunStatus(row["status"]),
        metadata=_load_json(row["metadata"], {}),
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_step(row: aiosqlite.Row) -> RunStep:
    return RunStep(
        run_id=row["run_id"],
        step_id=row["step_id"],
        step_kind=StepKind(row["step_kind"]),
        step_name=row["step_name"],
        status=RunStatus(row["status"]),
        attempt=row["attempt"],
        inputs=_load_json(row["inputs"], {}),
        outputs=_load_json(row["outputs"], None),
        error=_load_json(row["error"], None),
        started_at=_str_to_dt(row["started_at"]),
        ended_at=_str_to_dt(row["ended_at"]),
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_repo(row: aiosqlite.Row) -> Repo:
    return Repo(
        id=row["id"],
        project_id=row["project_id"],
        provider=row["provider"],
        owner=row["owner"],
        name=row["name"],
        clone_url=row["clone_url"],
        html_url=row["html_url"],
        default_branch=row["default_branch"],
        created_at=_str_to_dt(row["created_at"]),
    )
