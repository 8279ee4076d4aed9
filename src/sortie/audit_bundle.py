"""Implementation run audit bundles.

A bundle is a deterministic zip of everything recorded about one run:

    bundle.json                              manifest (ids, file list, sha256)
    run.json
    repo.json                                when a repo is connected
    steps/NNN.{step_id}.json                 sorted by step id
    sandbox_jobs/NNN.{job_type}.{job_id}.json  sorted by job type, then id

Every JSON document is key-redacted and written as stable JSON. Zip entry
timestamps are fixed, so the same records always produce the same bytes.
"""

from __future__ import annotations

import hashlib
import io
import logging
import zipfile
from dataclasses import dataclass
from typing import Any

from sortie.blob import BlobRef, BlobStore
from sortie.errors import AppError, ErrorCode
from sortie.registry import Registry
from sortie.sandbox.redaction import redact_keys, stable_json

logger = logging.getLogger(__name__)

BUNDLE_KIND = "implementation_audit_bundle"
BUNDLE_VERSION = 1
MANIFEST_PATH = "bundle.json"

_FIXED_ZIP_DATE = (1980, 1, 1, 0, 0, 0)


@dataclass
class AuditBundle:
    project_id: str
    run_id: str
    data: bytes
    manifest: dict[str, Any]


def audit_bundle_blob_path(project_id: str, run_id: str) -> str:
    return f"audit-bundles/{project_id}/{run_id}.zip"


def _json_bytes(value: Any) -> bytes:
    return (stable_json(redact_keys(value)) + "\n").encode("utf-8")


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def build_bundle_files(
    *,
    run: dict[str, Any],
    repo: dict[str, Any] | None,
    steps: list[dict[str, Any]],
    jobs: list[dict[str, Any]],
) -> dict[str, bytes]:
    """Lay out bundle documents (without the manifest), keyed by zip path."""
    files: dict[str, bytes] = {"run.json": _json_bytes(run)}
    if repo is not None:
        files["repo.json"] = _json_bytes(repo)

    for idx, step in enumerate(sorted(steps, key=lambda s: s["stepId"]), start=1):
        files[f"steps/{idx:03d}.{step['stepId']}.json"] = _json_bytes(step)

    for idx, job in enumerate(sorted(jobs, key=lambda j: (j["jobType"], j["id"])), start=1):
        files[f"sandbox_jobs/{idx:03d}.{job['jobType']}.{job['id']}.json"] = _json_bytes(job)

    return files


def build_manifest(project_id: str, run_id: str, files: dict[str, bytes]) -> dict[str, Any]:
    return {
        "kind": BUNDLE_KIND,
        "version": BUNDLE_VERSION,
        "projectId": project_id,
        "runId": run_id,
        "files": [
            {"path": path, "bytes": len(data), "sha256": hashlib.sha256(data).hexdigest()}
            for path, data in sorted(files.items())
        ],
    }


def zip_bundle(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(files):
            info = zipfile.ZipInfo(path, date_time=_FIXED_ZIP_DATE)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, files[path])
    return buf.getvalue()


async def build_implementation_audit_bundle(registry: Registry, run_id: str) -> AuditBundle:
    """Collect a run's records and zip them in memory.

    Raises:
        AppError(not_found): the run does not exist.
    """
    run = await registry.runs.get_run(run_id)
    if run is None:
        raise AppError(ErrorCode.NOT_FOUND, "Run not found.")

    repo = await registry.projects.get_primary_repo(run.project_id)
    steps = await registry.runs.list_steps(run_id)
    jobs = await registry.jobs.list_by_run(run_id)

    files = build_bundle_files(
        run={
            "id": run.id,
            "projectId": run.project_id,
            "kind": run.kind.value,
            "status": run.status.value,
            "metadata": run.metadata,
            "createdAt": _iso(run.created_at),
            "updatedAt": _iso(run.updated_at),
        },
        repo=(
            {
                "id": repo.id,
                "provider": repo.provider,
                "owner": repo.owner,
                "name": repo.name,
                "htmlUrl": repo.html_url,
                "cloneUrl": repo.clone_url,
                "defaultBranch": repo.default_branch,
            }
            if repo is not None
            else None
        ),
        steps=[
            {
                "stepId": s.step_id,
                "stepKind": s.step_kind.value,
                "stepName": s.step_name,
                "status": s.status.value,
                "attempt": s.attempt,
                "inputs": s.inputs,
                "outputs": s.outputs or {},
                "error": s.error,
                "startedAt": _iso(s.started_at),
                "endedAt": _iso(s.ended_at),
                "createdAt": _iso(s.created_at),
                "updatedAt": _iso(s.updated_at),
            }
            for s in steps
        ],
        jobs=[
            {
                "id": j.id,
                "jobType": j.job_type,
                "stepId": j.step_id,
                "status": j.status.value,
                "exitCode": j.exit_code,
                "transcriptBlobRef": j.transcript_blob_ref,
                "metadata": j.metadata,
                "startedAt": _iso(j.started_at),
                "endedAt": _iso(j.ended_at),
                "createdAt": _iso(j.created_at),
                "updatedAt": _iso(j.updated_at),
            }
            for j in jobs
        ],
    )
    manifest = build_manifest(run.project_id, run.id, files)
    files[MANIFEST_PATH] = _json_bytes(manifest)

    data = zip_bundle(files)
    logger.info("Built audit bundle for run %s (%d files, %d bytes)", run_id, len(files), len(data))
    return AuditBundle(project_id=run.project_id, run_id=run.id, data=data, manifest=manifest)


async def upload_audit_bundle(bundle: AuditBundle, blob: BlobStore) -> BlobRef:
    return await blob.put(
        audit_bundle_blob_path(bundle.project_id, bundle.run_id),
        bundle.data,
        "application/zip",
    )
