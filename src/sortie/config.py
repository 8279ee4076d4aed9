"""Configuration models and loader for sortie.

Config lives in a single ``sortie.yaml``. Every section has defaults so an
empty file (or no file at all) yields a usable local configuration.
Secrets are never stored in the file: fields ending in ``_env`` name the
environment variable that holds the secret.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_ROOT = "/vercel/sandbox"


# ── Sections ─────────────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    path: str = ".sortie/sortie.db"


class SandboxConfig(BaseModel):
    """Sandbox provider and session defaults."""

    api_url: str = "https://api.vercel.com"
    token_env: str = "SANDBOX_TOKEN"
    team_id: str | None = None
    workspace_root: str = DEFAULT_WORKSPACE_ROOT
    vcpus: int = 2
    checkout_timeout_ms: int = 30 * 60 * 1000
    request_timeout_s: float = 60.0
    node_runtime: str = "node24"
    python_runtime: str = "python3.13"


class NetworkPolicyConfig(BaseModel):
    """Egress allowlists for ``restricted`` sandboxes.

    These are fixed defaults, not derived from repo manifests. Custom package
    registries (``.npmrc``, ``[[tool.uv.index]]``) must be added here.
    """

    shared_domains: list[str] = Field(
        default_factory=lambda: [
            "github.com",
            "api.github.com",
            "codeload.github.com",
            "objects.githubusercontent.com",
            "ai-gateway.vercel.sh",
        ]
    )
    node_domains: list[str] = Field(
        default_factory=lambda: [
            "registry.npmjs.org",
            "registry.yarnpkg.com",
            "bun.sh",
        ]
    )
    python_domains: list[str] = Field(
        default_factory=lambda: [
            "pypi.org",
            "files.pythonhosted.org",
            "astral.sh",
        ]
    )


class TranscriptConfig(BaseModel):
    max_combined_chars: int = 200_000
    max_stream_chars: int = 100_000


class AIGatewayConfig(BaseModel):
    """OpenAI-compatible chat completions gateway."""

    base_url: str = "https://ai-gateway.vercel.sh/v1"
    api_key_env: str = "AI_GATEWAY_API_KEY"
    chat_model: str = "openai/gpt-4.1"
    request_timeout_s: float = 120.0


class GitHubConfig(BaseModel):
    api_url: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"
    commit_author_name: str = "Sortie Agent"
    commit_author_email: str = "sortie-agent@users.noreply.github.com"


class Context7Config(BaseModel):
    enabled: bool = False
    base_url: str = "https://context7.com/api"
    api_key_env: str = "CONTEXT7_API_KEY"
    timeout_s: float = 15.0


class BudgetsConfig(BaseModel):
    """Cost and safety budgets for agent runs and external calls."""

    code_mode_default_max_steps: int = 12
    code_mode_max_steps_limit: int = 50
    code_mode_default_timeout_ms: int = 10 * 60 * 1000
    code_mode_min_timeout_ms: int = 10 * 1000
    code_mode_max_timeout_ms: int = 30 * 60 * 1000
    max_context7_calls_per_turn: int = 2
    max_context7_response_bytes: int = 250_000
    planning_max_steps: int = 10


class CompactionConfig(BaseModel):
    boundary_count: int = 8
    # Relative to the sandbox workspace root.
    sandbox_dir: str = ".sortie-ctx"


class BlobConfig(BaseModel):
    """Blob storage for transcripts and audit bundles.

    ``kind: local`` writes under ``root``; ``kind: http`` PUTs to ``base_url``.
    """

    kind: str = "local"
    root: str = ".sortie/blobs"
    base_url: str | None = None
    token_env: str = "BLOB_READ_WRITE_TOKEN"


# ── Top-level ────────────────────────────────────────────────────────────────


class SortieConfig(BaseModel):
    """Top-level configuration (matches sortie.yaml)."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    network_policy: NetworkPolicyConfig = Field(default_factory=NetworkPolicyConfig)
    transcript: TranscriptConfig = Field(default_factory=TranscriptConfig)
    ai_gateway: AIGatewayConfig = Field(default_factory=AIGatewayConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    context7: Context7Config = Field(default_factory=Context7Config)
    budgets: BudgetsConfig = Field(default_factory=BudgetsConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    blob: BlobConfig = Field(default_factory=BlobConfig)


def read_secret(env_name: str) -> str | None:
    """Read a secret from the environment, treating blank values as missing."""
    value = os.environ.get(env_name, "").strip()
    return value or None


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(config_path: Path | None = None) -> SortieConfig:
    """Load configuration from ``sortie.yaml``.

    Args:
        config_path: Path to the YAML file. When omitted or missing, defaults
            are used.

    Returns:
        Validated SortieConfig.

    Raises:
        ValueError: If config validation fails.
    """
    raw: dict = {}
    if config_path is not None:
        if config_path.exists():
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        else:
            logger.warning("Config file not found at %s, using defaults", config_path)

    config = SortieConfig(**raw)

    # Environment variable overrides for deployment
    db_path = os.environ.get("SORTIE_DB_PATH")
    if db_path:
        config.database.path = db_path

    sandbox_api = os.environ.get("SORTIE_SANDBOX_API_URL")
    if sandbox_api:
        config.sandbox.api_url = sandbox_api

    workspace_root = os.environ.get("SORTIE_WORKSPACE_ROOT")
    if workspace_root:
        config.sandbox.workspace_root = workspace_root

    blob_root = os.environ.get("SORTIE_BLOB_ROOT")
    if blob_root:
        config.blob.root = blob_root

    logger.info(
        "Loaded sortie config: db=%s sandbox=%s model=%s",
        config.database.path,
        config.sandbox.api_url,
        config.ai_gateway.chat_model,
    )
    return config
