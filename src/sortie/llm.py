"""Chat model client for an OpenAI-compatible chat completions gateway.

Built on the ``openai`` SDK (``AsyncOpenAI`` with ``base_url`` pointed at
the gateway). Two call shapes are used by sortie:

- ``stream``: incremental text and tool-call deltas (the code-mode agent
  loop).
- ``complete`` / ``complete_json``: one non-streaming response, optionally
  constrained to a JSON schema (planning).

Tool calls arrive as index-addressed fragments in the stream; they are
reassembled here so callers only ever see whole ``ToolCall`` objects. SDK
errors are mapped onto ``AppError`` codes.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from sortie.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)

Message = dict[str, Any]
OnText = Callable[[str], "Awaitable[None] | None"]
ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        if not self.arguments.strip():
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise AppError(ErrorCode.BAD_REQUEST, f"Tool arguments for {self.name} are not valid JSON.") from e
        if not isinstance(value, dict):
            raise AppError(ErrorCode.BAD_REQUEST, f"Tool arguments for {self.name} must be an object.")
        return value

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatTurn:
    """One assistant response."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None

    def to_message(self) -> Message:
        message: Message = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [c.to_payload() for c in self.tool_calls]
        return message


def function_tool(name: str, description: str, params: type[BaseModel]) -> dict[str, Any]:
    """OpenAI tool declaration from a Pydantic parameter model."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": params.model_json_schema(),
        },
    }


def sanitize_history(messages: Sequence[Message]) -> list[Message]:
    """Drop tool messages whose assistant tool call is no longer in the history.

    Keep-last truncation can cut between an assistant tool call and its
    results; gateways reject such orphans.
    """
    seen: set[str] = set()
    cleaned: list[Message] = []
    for msg in messages:
        if msg.get("role") == "assistant":
            for call in msg.get("tool_calls") or []:
                if call.get("id"):
                    seen.add(call["id"])
        if msg.get("role") == "tool" and msg.get("tool_call_id") not in seen:
            continue
        cleaned.append(msg)
    return cleaned


def parse_json_output(text: str, schema: type[ModelT]) -> ModelT:
    """Validate model output against ``schema``. Invalid output is ``bad_gateway``."""
    raw = text.strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.startswith("json"):
            raw = raw[4:]
    try:
        return schema.model_validate_json(raw)
    except ValidationError as e:
        raise AppError(ErrorCode.BAD_GATEWAY, "Model returned invalid structured output.", cause=e) from e


@contextmanager
def _gateway_errors(action: str) -> Iterator[None]:
    """Translate SDK exceptions raised inside the block into ``AppError``."""
    try:
        yield
    except openai.APITimeoutError as e:
        raise AppError(ErrorCode.UPSTREAM_TIMEOUT, f"Model {action} timed out.", cause=e) from e
    except openai.APIStatusError as e:
        logger.warning("Model gateway returned HTTP %d", e.status_code)
        raise AppError(ErrorCode.BAD_GATEWAY, f"Model request failed (HTTP {e.status_code}).", cause=e) from e
    except openai.OpenAIError as e:
        logger.warning("Model %s failed: %s", action, type(e).__name__)
        raise AppError(ErrorCode.BAD_GATEWAY, f"Model {action} failed.", cause=e) from e


class ChatClient:
    """Async chat completions client over ``openai.AsyncOpenAI``."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout: float = 120.0,
        max_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = timeout
        self._max_retries = max_retries
        self._client: AsyncOpenAI | None = None
        self._started = False

    async def start(self) -> None:
        """Initialize the SDK client. Without an API key, calls fail with ``env_invalid``."""
        self._started = True
        if not self._api_key:
            logger.warning("AI gateway API key is not configured; model calls will fail")
            return
        self._client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=self._api_key,
            timeout=self._timeout,
            max_retries=self._max_retries,
        )
        logger.info("Chat client started (%s, model=%s)", self.base_url, self.model)

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None
        self._started = False

    @property
    def client(self) -> AsyncOpenAI:
        if not self._started:
            raise RuntimeError("Chat client not started")
        if self._client is None:
            raise AppError(ErrorCode.ENV_INVALID, "AI gateway API key is not configured.")
        return self._client

    def _request_kwargs(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None,
        temperature: float | None,
        response_format: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": self.model, "messages": sanitize_history(messages)}
        if tools:
            kwargs["tools"] = list(tools)
        if temperature is not None:
            kwargs["temperature"] = temperature
        if response_format is not None:
            kwargs["response_format"] = response_format
        return kwargs

    # ── Non-streaming ────────────────────────────────────────────────────

    async def complete(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        temperature: float | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> ChatTurn:
        kwargs = self._request_kwargs(
            messages, tools=tools, temperature=temperature, response_format=response_format
        )
        client = self.client
        with _gateway_errors("request"):
            response = await client.chat.completions.create(**kwargs)

        if not response.choices:
            raise AppError(ErrorCode.BAD_GATEWAY, "Model response had no choices.")
        choice = response.choices[0]
        message = choice.message
        calls = []
        for call in message.tool_calls or []:
            function = getattr(call, "function", None)
            if function is None:
                continue
            calls.append(ToolCall(id=call.id or "", name=function.name or "", arguments=function.arguments or ""))
        return ChatTurn(text=message.content or "", tool_calls=calls, finish_reason=choice.finish_reason)

    async def complete_json(
        self,
        messages: Sequence[Message],
        schema: type[ModelT],
        *,
        temperature: float | None = None,
    ) -> ModelT:
        turn = await self.complete(
            messages, temperature=temperature, response_format=json_schema_format(schema)
        )
        return parse_json_output(turn.text, schema)

    # ── Streaming ────────────────────────────────────────────────────────

    async def stream(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[dict[str, Any]] | None = None,
        temperature: float | None = None,
        on_text: OnText | None = None,
    ) -> ChatTurn:
        """Stream one assistant turn; text deltas are passed to ``on_text`` as they arrive.

        Raises:
            AppError(bad_gateway): the gateway failed, reported an error
                mid-stream, or the stream carried no choices at all.
            AppError(upstream_timeout): the request or stream timed out.
        """
        kwargs = self._request_kwargs(messages, tools=tools, temperature=temperature)
        client = self.client
        turn = ChatTurn()
        text_parts: list[str] = []
        partial_calls: dict[int, ToolCall] = {}
        saw_choice = False

        with _gateway_errors("stream"):
            stream = await client.chat.completions.create(**kwargs, stream=True)
            try:
                async for chunk in stream:
                    for choice in chunk.choices or []:
                        saw_choice = True
                        delta = choice.delta
                        if delta is not None and delta.content:
                            text_parts.append(delta.content)
                            if on_text is not None:
                                result = on_text(delta.content)
                                if inspect.isawaitable(result):
                                    await result
                        for fragment in (delta.tool_calls if delta is not None else None) or []:
                            call = partial_calls.setdefault(fragment.index, ToolCall(id="", name=""))
                            if fragment.id:
                                call.id = fragment.id
                            if fragment.function is not None:
                                if fragment.function.name:
                                    call.name += fragment.function.name
                                if fragment.function.arguments:
                                    call.arguments += fragment.function.arguments
                        if choice.finish_reason:
                            turn.finish_reason = choice.finish_reason
            finally:
                await stream.close()

        if not saw_choice:
            raise AppError(ErrorCode.BAD_GATEWAY, "Model stream returned no choices.")
        turn.text = "".join(text_parts)
        turn.tool_calls = [partial_calls[i] for i in sorted(partial_calls)]
        return turn


def json_schema_format(schema: type[BaseModel]) -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": schema.__name__,
            "schema": schema.model_json_schema(),
            "strict": False,
        },
    }
