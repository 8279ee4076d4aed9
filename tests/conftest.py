"""Shared fixtures: an in-memory sandbox provider, a scripted chat model, and
a temp-file registry."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from sortie.blob import LocalBlobStore
from sortie.config import SortieConfig
from sortie.errors import AppError, ErrorCode
from sortie.llm import ChatTurn, ToolCall
from sortie.models import Project, Repo
from sortie.registry import Registry
from sortie.sandbox.provider import GitSource, SandboxFile, SandboxHandle
from sortie.sandbox.session import SandboxRunner
from sortie.sandbox.transcript import LogLine


# ── Fake sandbox provider ────────────────────────────────────────────────────


@dataclass
class CommandCall:
    sandbox_id: str
    cmd: str
    args: list[str]
    cwd: str | None
    env: dict[str, str]


@dataclass
class _Rule:
    cmd: str
    args_prefix: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    error: Exception | None = None


class FakeCommandHandle:
    def __init__(self, lines: list[LogLine], exit_code: int, error: Exception | None = None):
        self._lines = lines
        self._exit_code = exit_code
        self._error = error

    async def logs(self) -> AsyncIterator[LogLine]:
        for line in self._lines:
            yield line
        if self._error is not None:
            raise self._error

    async def wait(self) -> int:
        return self._exit_code


@dataclass
class FakeSandboxProvider:
    """Records every call. Commands succeed silently unless a rule says otherwise."""

    created: list[dict] = field(default_factory=list)
    commands: list[CommandCall] = field(default_factory=list)
    written: list[SandboxFile] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    rules: list[_Rule] = field(default_factory=list)
    create_error: Exception | None = None
    write_error: Exception | None = None
    stop_error: Exception | None = None
    _next_id: int = 0
    _sandboxes: set[str] = field(default_factory=set)

    def on(
        self,
        cmd: str,
        *args_prefix: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        error: Exception | None = None,
    ) -> None:
        """Script the result of commands matching ``cmd`` + argument prefix (last rule wins)."""
        self.rules.append(_Rule(cmd, tuple(args_prefix), exit_code, stdout, stderr, error))

    def command_lines(self) -> list[str]:
        return [" ".join([c.cmd, *c.args]) for c in self.commands]

    async def create(self, *, runtime, vcpus, timeout_ms, network_policy, source: GitSource | None = None):
        if self.create_error is not None:
            raise self.create_error
        self._next_id += 1
        sandbox_id = f"sbx_{self._next_id}"
        self._sandboxes.add(sandbox_id)
        self.created.append(
            {
                "sandbox_id": sandbox_id,
                "runtime": runtime,
                "vcpus": vcpus,
                "timeout_ms": timeout_ms,
                "network_policy": network_policy,
                "source": source,
            }
        )
        return SandboxHandle(sandbox_id=sandbox_id)

    async def get(self, sandbox_id: str) -> SandboxHandle:
        if sandbox_id not in self._sandboxes:
            raise AppError(ErrorCode.NOT_FOUND, "Sandbox not found (get sandbox).")
        return SandboxHandle(sandbox_id=sandbox_id)

    async def run_command(self, sandbox_id, cmd, args, *, cwd=None, env=None) -> FakeCommandHandle:
        self.commands.append(CommandCall(sandbox_id, cmd, list(args), cwd, dict(env or {})))
        for rule in reversed(self.rules):
            if rule.cmd == cmd and tuple(args[: len(rule.args_prefix)]) == rule.args_prefix:
                lines = []
                if rule.stdout:
                    lines.append(LogLine(stream="stdout", data=rule.stdout))
                if rule.stderr:
                    lines.append(LogLine(stream="stderr", data=rule.stderr))
                return FakeCommandHandle(lines, rule.exit_code, rule.error)
        return FakeCommandHandle([], 0)

    async def write_files(self, sandbox_id: str, files: list[SandboxFile]) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.extend(files)

    async def stop(self, sandbox_id: str) -> None:
        self.stopped.append(sandbox_id)
        if self.stop_error is not None:
            raise self.stop_error


# ── Scripted chat model ──────────────────────────────────────────────────────


class ScriptedChat:
    """Stands in for ChatClient. Each call pops the next scripted turn."""

    def __init__(self, turns: list[ChatTurn]):
        self.turns = list(turns)
        self.requests: list[list[dict]] = []
        self.kwargs: list[dict] = []

    def _next(self, messages, kwargs) -> ChatTurn:
        self.requests.append([dict(m) for m in messages])
        self.kwargs.append(kwargs)
        if not self.turns:
            return ChatTurn(text="done")
        return self.turns.pop(0)

    async def stream(self, messages, *, tools=None, temperature=None, on_text=None) -> ChatTurn:
        turn = self._next(messages, {"tools": tools, "temperature": temperature})
        if turn.text and on_text is not None:
            await on_text(turn.text)
        return turn

    async def complete(self, messages, *, tools=None, temperature=None, response_format=None) -> ChatTurn:
        return self._next(
            messages, {"tools": tools, "temperature": temperature, "response_format": response_format}
        )


def tool_turn(*calls: tuple[str, str, str], text: str = "") -> ChatTurn:
    """A turn that calls tools: each call is (id, name, json arguments)."""
    return ChatTurn(text=text, tool_calls=[ToolCall(id=i, name=n, arguments=a) for i, n, a in calls])


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = Registry(str(tmp_path / "test.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest.fixture
def provider():
    return FakeSandboxProvider()


@pytest.fixture
def blob(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def sandboxes(provider, registry, blob):
    return SandboxRunner(provider=provider, jobs=registry.jobs, blob=blob)


@pytest.fixture
def config():
    return SortieConfig()


@pytest.fixture
def secrets_env(monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_" + "A" * 36)
    monkeypatch.setenv("AI_GATEWAY_API_KEY", "gateway-key-0123456789")


@pytest_asyncio.fixture
async def project(registry):
    """Project ``p1`` (slug ``demo``) with acme/widgets connected."""
    proj = await registry.projects.upsert_project(Project(id="p1", name="Demo", slug="demo"))
    await registry.projects.ensure_repo(
        Repo(
            id="r1",
            project_id="p1",
            owner="acme",
            name="widgets",
            clone_url="https://github.com/acme/widgets.git",
            html_url="https://github.com/acme/widgets",
            default_branch="main",
        )
    )
    return proj
