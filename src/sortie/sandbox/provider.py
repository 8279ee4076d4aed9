"""Sandbox provider interface and the HTTP adapter.

The engine never provisions VMs itself. It consumes a provider that can
create a sandbox (optionally cloning a git source), run a command and stream
its logs, write files, and stop the sandbox. ``HttpSandboxProvider`` talks to
a Vercel-Sandbox-style REST API over httpx; tests use an in-process fake
implementing the same protocol.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from sortie.errors import AppError, ErrorCode
from sortie.sandbox.network_policy import NetworkPolicy
from sortie.sandbox.transcript import LogLine

logger = logging.getLogger(__name__)


# ── Value types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class GitSource:
    """Clone spec for a new sandbox. ``password`` is never persisted."""

    url: str
    revision: str | None = None
    depth: int | None = 1
    username: str | None = None
    password: str | None = field(default=None, repr=False)

    def to_payload(self) -> dict:
        payload: dict = {"type": "git", "url": self.url}
        if self.revision:
            payload["revision"] = self.revision
        if self.depth:
            payload["depth"] = self.depth
        if self.username and self.password:
            payload["username"] = self.username
            payload["password"] = self.password
        return payload


@dataclass(frozen=True)
class SandboxFile:
    path: str
    content: bytes


@dataclass(frozen=True)
class SandboxHandle:
    sandbox_id: str
    status: str = "running"


# ── Protocols ────────────────────────────────────────────────────────────────


class CommandHandle(Protocol):
    """A detached command: stream its logs, then wait for the exit code."""

    def logs(self) -> AsyncIterator[LogLine]:
        """Yield output chunks in the order the sandbox produced them."""
        ...

    async def wait(self) -> int:
        """Wait for completion and return the exit code."""
        ...


class SandboxProvider(Protocol):
    async def create(
        self,
        *,
        runtime: str,
        vcpus: int,
        timeout_ms: int,
        network_policy: NetworkPolicy,
        source: GitSource | None = None,
    ) -> SandboxHandle: ...

    async def get(self, sandbox_id: str) -> SandboxHandle: ...

    async def run_command(
        self,
        sandbox_id: str,
        cmd: str,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandHandle: ...

    async def write_files(self, sandbox_id: str, files: list[SandboxFile]) -> None: ...

    async def stop(self, sandbox_id: str) -> None: ...


# ── HTTP adapter ─────────────────────────────────────────────────────────────


class _HttpCommandHandle:
    def __init__(self, provider: HttpSandboxProvider, sandbox_id: str, command_id: str):
        self._provider = provider
        self._sandbox_id = sandbox_id
        self.command_id = command_id

    async def logs(self) -> AsyncIterator[LogLine]:
        path = f"/v1/sandboxes/{self._sandbox_id}/cmd/{self.command_id}/logs"
        action = "stream command logs"
        try:
            async with self._provider.client.stream(
                "GET", path, params=self._provider._params(), headers=self._provider._headers()
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    self._provider._raise_for_status(resp, action)
                async for raw in resp.aiter_lines():
                    if not raw.strip():
                        continue
                    try:
                        entry = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed log line from sandbox %s", self._sandbox_id)
                        continue
                    if not isinstance(entry, dict):
                        continue
                    stream = "stderr" if entry.get("stream") == "stderr" else "stdout"
                    yield LogLine(stream=stream, data=str(entry.get("data", "")))
        except httpx.TimeoutException as e:
            raise AppError(ErrorCode.UPSTREAM_TIMEOUT, f"Sandbox API timed out ({action}).", cause=e) from e
        except httpx.HTTPError as e:
            raise AppError(ErrorCode.BAD_GATEWAY, f"Sandbox API unreachable ({action}).", cause=e) from e

    async def wait(self) -> int:
        resp = await self._provider._request(
            "GET",
            f"/v1/sandboxes/{self._sandbox_id}/cmd/{self.command_id}",
            action="wait for command",
            params={"wait": "true"},
        )
        command = _json_object(resp, "command", "wait for command")
        exit_code = command.get("exitCode")
        if exit_code is None:
            raise AppError(ErrorCode.BAD_GATEWAY, "Sandbox command finished without an exit code.")
        try:
            return int(exit_code)
        except (TypeError, ValueError) as e:
            raise AppError(ErrorCode.BAD_GATEWAY, "Sandbox command returned an invalid exit code.", cause=e) from e


def _json_object(resp: httpx.Response, key: str, action: str) -> dict:
    """Return ``resp.json()[key]`` as a dict; anything else is ``bad_gateway``."""
    try:
        body = resp.json()
    except ValueError as e:
        raise AppError(ErrorCode.BAD_GATEWAY, f"Sandbox API returned invalid JSON ({action}).", cause=e) from e
    value = body.get(key) if isinstance(body, dict) else None
    if not isinstance(value, dict):
        raise AppError(ErrorCode.BAD_GATEWAY, f"Sandbox API returned a malformed response ({action}).")
    return value


def _required_id(value: dict, action: str) -> str:
    ident = value.get("id")
    if not isinstance(ident, str) or not ident:
        raise AppError(ErrorCode.BAD_GATEWAY, f"Sandbox API response is missing an id ({action}).")
    return ident


class HttpSandboxProvider:
    """Async client for a Vercel-Sandbox-style REST API."""

    def __init__(
        self,
        *,
        api_url: str,
        token: str | None,
        team_id: str | None = None,
        timeout: float = 60.0,
    ):
        self.api_url = api_url.rstrip("/")
        self._token = token
        self._team_id = team_id
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={"User-Agent": "sortie/0.1.0"},
            # Log streams stay open for the life of a command.
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        logger.info("Sandbox provider client started (%s)", self.api_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Sandbox provider not started")
        return self._client

    def _headers(self) -> dict[str, str]:
        if not self._token:
            raise AppError(ErrorCode.ENV_INVALID, "Sandbox API token is not configured.")
        return {"Authorization": f"Bearer {self._token}"}

    def _params(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        params = dict(extra or {})
        if self._team_id:
            params["teamId"] = self._team_id
        return params

    def _raise_for_status(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code == 404:
            raise AppError(ErrorCode.NOT_FOUND, f"Sandbox not found ({action}).")
        if resp.status_code >= 400:
            raise AppError(
                ErrorCode.BAD_GATEWAY,
                f"Sandbox API failed to {action} (HTTP {resp.status_code}).",
            )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: dict[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        try:
            resp = await self.client.request(
                method, path, params=self._params(params), headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            raise AppError(ErrorCode.UPSTREAM_TIMEOUT, f"Sandbox API timed out ({action}).", cause=e) from e
        except httpx.HTTPError as e:
            raise AppError(ErrorCode.BAD_GATEWAY, f"Sandbox API unreachable ({action}).", cause=e) from e
        self._raise_for_status(resp, action)
        return resp

    # ── Operations ───────────────────────────────────────────────────────

    async def create(
        self,
        *,
        runtime: str,
        vcpus: int,
        timeout_ms: int,
        network_policy: NetworkPolicy,
        source: GitSource | None = None,
    ) -> SandboxHandle:
        body: dict = {
            "runtime": runtime,
            "resources": {"vcpus": vcpus},
            "timeout": timeout_ms,
            "networkPolicy": network_policy.to_provider_payload(),
        }
        if source is not None:
            body["source"] = source.to_payload()
        resp = await self._request("POST", "/v1/sandboxes", action="create sandbox", json=body)
        sandbox = _json_object(resp, "sandbox", "create sandbox")
        handle = SandboxHandle(
            sandbox_id=_required_id(sandbox, "create sandbox"), status=sandbox.get("status", "running")
        )
        logger.info("Created sandbox %s (runtime=%s, vcpus=%d)", handle.sandbox_id, runtime, vcpus)
        return handle

    async def get(self, sandbox_id: str) -> SandboxHandle:
        resp = await self._request("GET", f"/v1/sandboxes/{sandbox_id}", action="get sandbox")
        sandbox = _json_object(resp, "sandbox", "get sandbox")
        return SandboxHandle(sandbox_id=sandbox.get("id", sandbox_id), status=sandbox.get("status", "running"))

    async def run_command(
        self,
        sandbox_id: str,
        cmd: str,
        args: list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandHandle:
        body: dict = {"command": cmd, "args": list(args), "env": dict(env or {})}
        if cwd:
            body["cwd"] = cwd
        resp = await self._request(
            "POST", f"/v1/sandboxes/{sandbox_id}/cmd", action="run command", json=body
        )
        command_id = _required_id(_json_object(resp, "command", "run command"), "run command")
        return _HttpCommandHandle(self, sandbox_id, command_id)

    async def write_files(self, sandbox_id: str, files: list[SandboxFile]) -> None:
        body = {
            "files": [
                {"path": f.path, "content": base64.b64encode(f.content).decode("ascii")}
                for f in files
            ]
        }
        await self._request(
            "POST", f"/v1/sandboxes/{sandbox_id}/fs/write", action="write files", json=body
        )

    async def stop(self, sandbox_id: str) -> None:
        await self._request("POST", f"/v1/sandboxes/{sandbox_id}/stop", action="stop sandbox")
        logger.info("Stopped sandbox %s", sandbox_id)
