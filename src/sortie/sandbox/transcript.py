"""Bounded, redacted transcript capture for sandbox commands.

Only the tail of each stream is kept in memory so a long-running job
cannot grow without bound. Everything appended is redacted first.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel

from sortie.sandbox.redaction import redact

LogStream = Literal["stdout", "stderr"]

DEFAULT_MAX_COMBINED_CHARS = 200_000
DEFAULT_MAX_STREAM_CHARS = 100_000


@dataclass(frozen=True)
class LogLine:
    """One chunk of command output as produced by the provider."""

    stream: LogStream
    data: str


class Transcript(BaseModel):
    combined: str = ""
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False


class BoundedStringBuffer:
    """Append-only string buffer that keeps the last ``max_chars`` characters."""

    def __init__(self, max_chars: int):
        self.max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._length = 0
        self.truncated = False

    def append(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        self._length += len(text)
        self._trim()

    def _trim(self) -> None:
        over = self._length - self.max_chars
        if over <= 0:
            return
        self.truncated = True
        while over > 0 and self._chunks:
            head = self._chunks[0]
            if len(head) <= over:
                self._chunks.popleft()
                self._length -= len(head)
                over -= len(head)
            else:
                self._chunks[0] = head[over:]
                self._length -= over
                over = 0

    def __len__(self) -> int:
        return self._length

    def __str__(self) -> str:
        return "".join(self._chunks)


class TranscriptCollector:
    """Collects redacted command output into bounded per-stream buffers."""

    def __init__(
        self,
        *,
        max_combined_chars: int = DEFAULT_MAX_COMBINED_CHARS,
        max_stream_chars: int = DEFAULT_MAX_STREAM_CHARS,
    ):
        self._combined = BoundedStringBuffer(max_combined_chars)
        self._stdout = BoundedStringBuffer(max_stream_chars)
        self._stderr = BoundedStringBuffer(max_stream_chars)

    def append(self, line: LogLine, extra_secrets: Iterable[str] = ()) -> str:
        """Redact and record ``line``; returns the redacted text."""
        text = redact(line.data, extra_secrets)
        self._combined.append(text)
        if line.stream == "stdout":
            self._stdout.append(text)
        else:
            self._stderr.append(text)
        return text

    def snapshot(self) -> Transcript:
        return Transcript(
            combined=str(self._combined),
            stdout=str(self._stdout),
            stderr=str(self._stderr),
            truncated=self._combined.truncated
            or self._stdout.truncated
            or self._stderr.truncated,
        )
