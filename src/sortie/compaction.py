"""Context compaction for tool-heavy agent histories.

Old tool results are the bulk of an agent's context. ``compact`` rewrites
every tool message older than the keep-last boundary:

- ``drop-tool-results`` replaces the content with a short marker.
- ``write-tool-results-to-file`` serialises the payload to storage and
  replaces the content with a reference the agent can read back with its
  sandbox read tools.

Messages are OpenAI-style chat dicts (``role``, ``content``, ``tool_calls``,
``tool_call_id``). Compaction is idempotent: already-compacted messages are
left alone. If storage fails, the history falls back to exactly the last
``count`` messages so the caller always gets a bounded context.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import re
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from sortie.config import DEFAULT_WORKSPACE_ROOT
from sortie.errors import AppError, ErrorCode
from sortie.sandbox.provider import SandboxFile, SandboxProvider

logger = logging.getLogger(__name__)

Message = dict[str, Any]
Serializer = Callable[[Any], str]

COMPACTED_PREFIX = "[compacted]"
DROPPED_MARKER = f"{COMPACTED_PREFIX} Tool result removed to save context."
PREVIEW_CHARS = 200

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class CompactionStrategy(str, enum.Enum):
    DROP_TOOL_RESULTS = "drop-tool-results"
    WRITE_TOOL_RESULTS_TO_FILE = "write-tool-results-to-file"


@dataclass(frozen=True)
class KeepLast:
    """Boundary: the last ``count`` messages are never rewritten."""

    count: int = 8

    def __post_init__(self) -> None:
        if self.count < 1:
            raise AppError(ErrorCode.BAD_REQUEST, "Compaction boundary count must be at least 1.")


class CompactionStorage(Protocol):
    async def write(self, relative_path: str, content: str) -> str:
        """Persist ``content`` and return the path the agent should read."""
        ...

    async def cleanup(self) -> None: ...


def default_serializer(content: Any) -> str:
    """Pretty JSON. String content that is itself JSON is re-indented."""
    if isinstance(content, str):
        try:
            return json.dumps(json.loads(content), indent=2, sort_keys=True)
        except ValueError:
            return content
    return json.dumps(content, indent=2, sort_keys=True, default=str)


def is_compacted(message: Message) -> bool:
    content = message.get("content")
    return isinstance(content, str) and content.startswith(COMPACTED_PREFIX)


def _safe_segment(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value).strip("._") or "x"


def _tool_names(messages: Sequence[Message]) -> dict[str, str]:
    """Map tool_call_id → tool name from assistant tool_calls."""
    names: dict[str, str] = {}
    for msg in messages:
        if msg.get("role") != "assistant":
            continue
        for call in msg.get("tool_calls") or []:
            call_id = call.get("id")
            name = (call.get("function") or {}).get("name")
            if call_id and name:
                names[call_id] = name
    return names


def _reference(path: str, payload: str) -> str:
    preview = payload[:PREVIEW_CHARS]
    more = "..." if len(payload) > PREVIEW_CHARS else ""
    return (
        f"{COMPACTED_PREFIX} Tool result written to {path} ({len(payload)} chars). "
        f"Read it with sandbox_cat if you need it again.\nPreview: {preview}{more}"
    )


async def compact(
    messages: Sequence[Message],
    strategy: CompactionStrategy | str,
    *,
    boundary: KeepLast | None = None,
    storage: CompactionStorage | None = None,
    session_id: str | None = None,
    serializer: Serializer | None = None,
) -> list[Message]:
    """Compact tool results older than the keep-last boundary.

    Raises:
        AppError(bad_request): write strategy without storage or session id.
    """
    strategy = CompactionStrategy(strategy)
    boundary = boundary or KeepLast()
    serializer = serializer or default_serializer
    if strategy == CompactionStrategy.WRITE_TOOL_RESULTS_TO_FILE and (storage is None or not session_id):
        raise AppError(
            ErrorCode.BAD_REQUEST,
            "write-tool-results-to-file compaction requires storage and a session id.",
        )

    history = list(messages)
    if len(history) <= boundary.count:
        return history

    cutoff = len(history) - boundary.count
    names = _tool_names(history)
    compacted: list[Message] = []
    written = 0
    try:
        for index, msg in enumerate(history):
            if index >= cutoff or msg.get("role") != "tool" or is_compacted(msg):
                compacted.append(msg)
                continue

            if strategy == CompactionStrategy.DROP_TOOL_RESULTS:
                compacted.append({**msg, "content": DROPPED_MARKER})
                continue

            call_id = str(msg.get("tool_call_id") or f"msg{index}")
            tool_name = names.get(call_id, "tool")
            relative = (
                f"{_safe_segment(session_id or '')}/tool-results/"
                f"{_safe_segment(tool_name)}-{_safe_segment(call_id)}.json"
            )
            payload = serializer(msg.get("content"))
            path = await storage.write(relative, payload)  # type: ignore[union-attr]
            compacted.append({**msg, "content": _reference(path, payload)})
            written += 1
    except Exception:
        logger.warning(
            "Compaction storage failed, keeping last %d messages", boundary.count, exc_info=True
        )
        return history[-boundary.count :]

    if written:
        logger.debug("Compacted %d tool results for session %s", written, session_id)
    return compacted


# ── Storage adapters ─────────────────────────────────────────────────────────


class LocalFileStorage:
    """Stores compacted tool results under a local directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    async def write(self, relative_path: str, content: str) -> str:
        target = self.root / relative_path

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return str(target)

    async def cleanup(self) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, self.root)
        except FileNotFoundError:
            pass
        except Exception:
            logger.debug("Failed to clean up compaction dir %s", self.root, exc_info=True)


class SandboxFileStorage:
    """Stores compacted tool results inside the sandbox workspace.

    Files land under ``{workspace_root}/{directory}`` so the agent's
    ``sandbox_cat`` can read them back. Cleanup goes straight to the
    provider: it is housekeeping, not an agent command.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        sandbox_id: str,
        *,
        workspace_root: str = DEFAULT_WORKSPACE_ROOT,
        directory: str = ".sortie-ctx",
    ):
        self._provider = provider
        self._sandbox_id = sandbox_id
        self.root = f"{workspace_root.rstrip('/')}/{directory.strip('/')}"

    async def prepare(self) -> None:
        """Create the storage directory. Raises if the sandbox is not writable."""
        await self._provider.write_files(
            self._sandbox_id, [SandboxFile(path=f"{self.root}/.keep", content=b"")]
        )

    async def write(self, relative_path: str, content: str) -> str:
        path = f"{self.root}/{relative_path.lstrip('/')}"
        await self._provider.write_files(
            self._sandbox_id, [SandboxFile(path=path, content=content.encode("utf-8"))]
        )
        return path

    async def cleanup(self) -> None:
        try:
            handle = await self._provider.run_command(self._sandbox_id, "rm", ["-rf", self.root])
            async for _ in handle.logs():
                pass
            exit_code = await handle.wait()
            if exit_code != 0:
                logger.debug("Compaction cleanup in sandbox %s exited %d", self._sandbox_id, exit_code)
        except Exception:
            logger.debug("Failed to clean up compaction dir in sandbox %s", self._sandbox_id, exc_info=True)
