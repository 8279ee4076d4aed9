"""Event streams: a bounded single-producer/single-consumer channel plus event models.

Code-mode runs and implementation runs both report progress as a sequence of
small JSON events. The producer ``send``s, the consumer iterates with
``async for``; ``close()`` ends the iteration after all queued events are
drained. The queue is bounded so a slow consumer applies backpressure to the
producer instead of growing memory.
"""

from __future__ import annotations

import asyncio
from typing import Any, Literal, Protocol, Union

from pydantic import BaseModel

_CLOSED = object()


# ── Code-mode events ─────────────────────────────────────────────────────────


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    message: str


class ToolCallEvent(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ToolResultEvent(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None


class LogEvent(BaseModel):
    type: Literal["log"] = "log"
    stream: Literal["stdout", "stderr"]
    data: str


class AssistantDeltaEvent(BaseModel):
    type: Literal["assistant-delta"] = "assistant-delta"
    text: str


class ExitEvent(BaseModel):
    type: Literal["exit"] = "exit"
    status: Literal["succeeded", "failed"]
    exit_code: int
    job_id: str | None = None
    error: dict[str, Any] | None = None


CodeModeEvent = Union[
    StatusEvent, ToolCallEvent, ToolResultEvent, LogEvent, AssistantDeltaEvent, ExitEvent
]


# ── Run events ───────────────────────────────────────────────────────────────


class RunStartedEvent(BaseModel):
    type: Literal["run-started"] = "run-started"
    run_id: str


class StepStartedEvent(BaseModel):
    type: Literal["step-started"] = "step-started"
    run_id: str
    step_id: str
    attempt: int


class StepFinishedEvent(BaseModel):
    type: Literal["step-finished"] = "step-finished"
    run_id: str
    step_id: str
    status: str
    skipped: bool = False
    outputs: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class RunFinishedEvent(BaseModel):
    type: Literal["run-finished"] = "run-finished"
    run_id: str
    status: str
    error: dict[str, Any] | None = None


RunEvent = Union[RunStartedEvent, StepStartedEvent, StepFinishedEvent, RunFinishedEvent]


# ── Channel ──────────────────────────────────────────────────────────────────


class EventSink(Protocol):
    async def send(self, event: BaseModel) -> None: ...


class EventChannel:
    """Bounded async channel. Iteration ends once ``close()`` has been drained."""

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: BaseModel) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on a closed EventChannel")
        await self._queue.put(event)

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    def __aiter__(self) -> EventChannel:
        return self

    async def __anext__(self) -> BaseModel:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the sentinel for any further iteration attempts.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class NullSink:
    """Sink that drops every event."""

    async def send(self, event: BaseModel) -> None:
        return None


class EventRecorder:
    """Sink that keeps every event in memory (CLI export and tests)."""

    def __init__(self) -> None:
        self.events: list[BaseModel] = []

    async def send(self, event: BaseModel) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [getattr(e, "type", "") for e in self.events]
