"""Context7 documentation lookup, budgeted per planning turn.

Two operations are exposed to the planner as tools:
- resolve-library-id: library/package name → Context7 library id
- query-docs: library id + question → documentation excerpt

Calls are capped per turn (``Context7Budget``), bounded in time, and
responses over the byte budget are rejected rather than passed to the model.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from sortie.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)


class ResolveLibraryParams(BaseModel):
    library_name: str = Field(min_length=1, description="Library or package name, e.g. 'fastapi'")
    query: str = Field(min_length=1, description="What you want to learn about the library")


class QueryDocsParams(BaseModel):
    library_id: str = Field(min_length=1, description="Context7 library id from resolve-library-id")
    query: str = Field(min_length=1, description="Documentation question")


class Context7Budget:
    """Per-turn call counter. Exceeding it is a ``conflict``."""

    def __init__(self, max_calls: int):
        self.max_calls = max_calls
        self.calls = 0

    def consume(self) -> None:
        if self.calls >= self.max_calls:
            raise AppError(ErrorCode.CONFLICT, "Context7 budget exceeded for this turn.")
        self.calls += 1


class Context7Client:
    """Async client for the Context7 REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout: float = 15.0,
        max_response_bytes: int = 250_000,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self.max_response_bytes = max_response_bytes
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"User-Agent": "sortie/0.1.0"},
            timeout=self._timeout,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Context7 client not started")
        return self._client

    async def _get(self, path: str, params: dict[str, str]) -> httpx.Response:
        if not self._api_key:
            raise AppError(ErrorCode.ENV_INVALID, "Context7 API key is not configured.")
        try:
            resp = await self.client.get(
                path, params=params, headers={"Authorization": f"Bearer {self._api_key}"}
            )
        except httpx.TimeoutException as e:
            raise AppError(ErrorCode.UPSTREAM_TIMEOUT, "Context7 timed out.", cause=e) from e
        except httpx.HTTPError as e:
            raise AppError(ErrorCode.BAD_GATEWAY, "Context7 request failed.", cause=e) from e
        if resp.status_code >= 400:
            raise AppError(ErrorCode.BAD_GATEWAY, f"Context7 request failed (HTTP {resp.status_code}).")
        if len(resp.content) > self.max_response_bytes:
            raise AppError(ErrorCode.BAD_GATEWAY, "Context7 response exceeded size budget.")
        return resp

    async def resolve_library_id(self, params: ResolveLibraryParams) -> Any:
        resp = await self._get("/v1/search", {"query": params.library_name})
        return resp.json()

    async def query_docs(self, params: QueryDocsParams) -> str:
        library_id = params.library_id.strip().lstrip("/")
        resp = await self._get(f"/v1/{library_id}", {"topic": params.query, "type": "txt"})
        return resp.text
