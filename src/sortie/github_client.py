"""GitHub API client for sortie.

Token authentication (``GITHUB_TOKEN``), rate limit tracking, and the
handful of async repo operations the implementation pipeline needs:
repo-kind detection, config-file reads, and idempotent pull request
creation.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel

from sortie.errors import AppError, ErrorCode
from sortie.models import RepoKind

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class PullRequest(BaseModel):
    number: int
    html_url: str
    title: str
    head_ref: str
    base_ref: str
    draft: bool = False


def _to_pull_request(data: dict) -> PullRequest:
    return PullRequest(
        number=data["number"],
        html_url=data.get("html_url", ""),
        title=data.get("title", ""),
        head_ref=(data.get("head") or {}).get("ref", ""),
        base_ref=(data.get("base") or {}).get("ref", ""),
        draft=bool(data.get("draft", False)),
    )


class GitHubClient:
    """Async GitHub API client with token authentication."""

    def __init__(self, *, token: str | None, api_url: str = GITHUB_API):
        self.api_url = api_url.rstrip("/")
        self._token = token

        # Rate limit tracking
        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0
        self._rate_limit_reserve: int = 50
        self._rate_limit_lock: asyncio.Lock | None = None

        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": "sortie/0.1.0",
            },
            timeout=30.0,
        )
        self._rate_limit_lock = asyncio.Lock()
        logger.info("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    def _auth_headers(self) -> dict[str, str]:
        if not self._token:
            raise AppError(ErrorCode.ENV_INVALID, "GitHub token is not configured.")
        return {"Authorization": f"Bearer {self._token}"}

    # ── Rate Limit Tracking ──────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Track rate limits from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an authenticated API request with rate limit throttling.

        When remaining quota drops below the reserve threshold, requests
        are serialized through a lock; if quota is exhausted we sleep until
        the reset window.
        """
        if self._rate_limit_lock and self._rate_limit_remaining <= self._rate_limit_reserve:
            async with self._rate_limit_lock:
                await self._wait_for_rate_limit_reset()
                return await self._do_request(method, path, **kwargs)
        return await self._do_request(method, path, **kwargs)

    async def _do_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute an authenticated request and track rate limits."""
        headers = self._auth_headers()
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    async def _wait_for_rate_limit_reset(self) -> None:
        if self._rate_limit_remaining > 0:
            return
        wait = max(0, self._rate_limit_reset - time.time()) + 1
        logger.warning("Rate limit exhausted, sleeping %.1fs until reset", wait)
        await asyncio.sleep(wait)
        self._rate_limit_remaining = 100

    # ── Repository Contents ──────────────────────────────────────────────

    async def path_exists(self, owner: str, repo: str, path: str, *, ref: str | None = None) -> bool:
        """Whether ``path`` exists at ``ref``. Any failure counts as absent."""
        params = {"ref": ref} if ref else None
        try:
            await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
            return True
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 404:
                logger.debug("GitHub contents lookup for %s failed (%d)", path, e.response.status_code)
            return False
        except httpx.HTTPError:
            logger.debug("GitHub contents lookup for %s failed", path, exc_info=True)
            return False

    async def read_text_file(
        self, owner: str, repo: str, path: str, *, ref: str | None = None
    ) -> str | None:
        """Return a small text file's contents, or None if it is missing or unreadable."""
        params = {"ref": ref} if ref else None
        try:
            resp = await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
        except httpx.HTTPError:
            return None
        data = resp.json()
        if not isinstance(data, dict) or data.get("encoding") != "base64":
            return None
        try:
            return base64.b64decode(data.get("content", "")).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None

    async def detect_repo_kind(self, owner: str, repo: str, *, ref: str | None = None) -> RepoKind:
        """Pick the sandbox runtime from canonical root files.

        ``package.json`` wins; otherwise ``pyproject.toml`` or
        ``requirements.txt`` means Python; with no evidence, Node.
        """
        owner, repo = owner.strip(), repo.strip()
        if not owner or not repo:
            return "node"
        has_package_json, has_pyproject, has_requirements = await asyncio.gather(
            self.path_exists(owner, repo, "package.json", ref=ref),
            self.path_exists(owner, repo, "pyproject.toml", ref=ref),
            self.path_exists(owner, repo, "requirements.txt", ref=ref),
        )
        if has_package_json:
            return "node"
        if has_pyproject or has_requirements:
            return "python"
        return "node"

    # ── PR Operations ────────────────────────────────────────────────────

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        *,
        state: str = "open",
        head: str | None = None,
        base: str | None = None,
        per_page: int = 100,
    ) -> list[dict]:
        """List pull requests for a repository.

        Args:
            state: ``"open"``, ``"closed"``, or ``"all"``.
            head: Filter by head user/branch, e.g. ``"user:branch"``.
        """
        params: dict[str, str | int] = {"state": state, "per_page": per_page}
        if head:
            params["head"] = head
        if base:
            params["base"] = base
        resp = await self._request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
        return resp.json()

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
        *,
        draft: bool = False,
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base, "draft": draft},
        )
        return resp.json()

    async def create_or_get_pull_request(
        self,
        *,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
        draft: bool = True,
    ) -> PullRequest:
        """Return the open PR for ``head`` → ``base``, creating a draft if none exists."""
        owner, repo, head, base, title = (v.strip() for v in (owner, repo, head, base, title))
        if not owner or not repo or not head or not base or not title:
            raise AppError(ErrorCode.BAD_REQUEST, "Invalid pull request input.")

        try:
            existing = await self.list_pull_requests(
                owner, repo, state="open", head=f"{owner}:{head}", base=base, per_page=5
            )
            if existing:
                logger.info("Reusing open PR #%d for %s/%s:%s", existing[0]["number"], owner, repo, head)
                return _to_pull_request(existing[0])
        except AppError:
            raise
        except Exception:
            # Best-effort idempotency check; still attempt creation.
            logger.warning("Listing pull requests for %s/%s failed", owner, repo, exc_info=True)

        try:
            created = await self.create_pull_request(owner, repo, title, body, head, base, draft=draft)
        except httpx.HTTPError as e:
            raise AppError(ErrorCode.BAD_GATEWAY, "Failed to create pull request via GitHub.", cause=e) from e
        pr = _to_pull_request(created)
        logger.info("Opened PR #%d for %s/%s:%s", pr.number, owner, repo, head)
        return pr
