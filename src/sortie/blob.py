"""Blob storage for transcripts and audit bundles."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from sortie.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobRef:
    path: str
    url: str


class BlobStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str = "text/plain") -> BlobRef: ...


def _clean_blob_path(path: str) -> str:
    cleaned = path.replace("\\", "/").lstrip("/")
    if not cleaned or any(part in ("", ".", "..") for part in cleaned.split("/")):
        raise AppError(ErrorCode.BAD_REQUEST, f"Invalid blob path: {path!r}.")
    return cleaned


def transcript_blob_path(project_id: str, run_id: str, job_id: str) -> str:
    return f"sandbox-transcripts/{project_id}/{run_id}/{job_id}.log"


class LocalBlobStore:
    """Writes blobs under a local directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    async def put(self, path: str, data: bytes, content_type: str = "text/plain") -> BlobRef:
        rel = _clean_blob_path(path)
        target = self.root / rel

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Stored blob %s (%d bytes)", rel, len(data))
        return BlobRef(path=rel, url=target.resolve().as_uri())


class HttpBlobStore:
    """PUTs blobs to an HTTP blob service (Vercel Blob style)."""

    def __init__(self, base_url: str, token: str | None, *, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    async def put(self, path: str, data: bytes, content_type: str = "text/plain") -> BlobRef:
        if not self._token:
            raise AppError(ErrorCode.ENV_INVALID, "Blob storage token is not configured.")
        rel = _clean_blob_path(path)
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout) as client:
            try:
                resp = await client.put(
                    f"/{rel}",
                    content=data,
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Content-Type": content_type,
                        "x-add-random-suffix": "0",
                    },
                )
            except httpx.TimeoutException as e:
                raise AppError(ErrorCode.UPSTREAM_TIMEOUT, "Blob upload timed out.", cause=e) from e
            except httpx.HTTPError as e:
                raise AppError(ErrorCode.BAD_GATEWAY, "Blob upload failed.", cause=e) from e
        if resp.status_code >= 400:
            raise AppError(ErrorCode.BAD_GATEWAY, f"Blob upload failed (HTTP {resp.status_code}).")
        payload = resp.json()
        return BlobRef(path=payload.get("pathname", rel), url=payload["url"])
