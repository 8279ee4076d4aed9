"""Network egress policy selection for sandbox sessions.

The policy is advisory input to the sandbox provider, which does the actual
blocking. Selection here is pure: the same (repo kind, access mode, config)
always yields the same immutable policy.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

from sortie.config import NetworkPolicyConfig
from sortie.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)

RepoKind = Literal["node", "python"]
NetworkAccess = Literal["none", "restricted"]


class NoNetworkPolicy(BaseModel):
    """No egress at all."""

    model_config = ConfigDict(frozen=True)

    type: Literal["none"] = "none"

    def to_provider_payload(self) -> dict:
        return {"type": "none"}


class RestrictedNetworkPolicy(BaseModel):
    """Egress limited to an allowlist of domains."""

    model_config = ConfigDict(frozen=True)

    type: Literal["restricted"] = "restricted"
    allowed_domains: frozenset[str]
    variant: Literal["default", "python-default"] = "default"

    def allows(self, host: str) -> bool:
        host = host.lower().rstrip(".")
        return any(host == d or host.endswith("." + d) for d in self.allowed_domains)

    def to_provider_payload(self) -> dict:
        return {"type": "restricted", "allowedDomains": sorted(self.allowed_domains)}


NetworkPolicy = Union[NoNetworkPolicy, RestrictedNetworkPolicy]


def select_policy(
    repo_kind: RepoKind,
    network_access: NetworkAccess,
    config: NetworkPolicyConfig | None = None,
) -> NetworkPolicy:
    """Select the network policy for a session.

    ``"none"`` always yields the no-egress policy, regardless of repo kind.
    ``"restricted"`` yields the kind-specific allowlist; the Python and Node
    variants differ only in their registry domains.
    """
    if network_access == "none":
        return NoNetworkPolicy()
    if network_access != "restricted":
        raise AppError(ErrorCode.BAD_REQUEST, f"Unknown network access mode: {network_access!r}.")

    cfg = config or NetworkPolicyConfig()
    if repo_kind == "python":
        domains = [*cfg.shared_domains, *cfg.python_domains]
        variant = "python-default"
    elif repo_kind == "node":
        domains = [*cfg.shared_domains, *cfg.node_domains]
        variant = "default"
    else:
        raise AppError(ErrorCode.BAD_REQUEST, f"Unknown repo kind: {repo_kind!r}.")

    return RestrictedNetworkPolicy(
        allowed_domains=frozenset(d.strip().lower() for d in domains if d.strip()),
        variant=variant,
    )


# ── Custom registry detection ────────────────────────────────────────────────

# .npmrc: registry=... / @scope:registry=...
_NPMRC_REGISTRY = re.compile(r"^\s*(?:@[\w.-]+:)?registry\s*=\s*(\S+)", re.MULTILINE)
# pip.conf / pip.ini: index-url / extra-index-url
_PIP_INDEX = re.compile(r"^\s*(?:extra-)?index-url\s*=\s*(\S+)", re.MULTILINE)
# uv.toml / pyproject.toml [[tool.uv.index]] url = "..." and index-url = "..."
_TOML_URL = re.compile(r"^\s*(?:url|index-url|extra-index-url)\s*=\s*[\"']([^\"']+)[\"']", re.MULTILINE)

_REGISTRY_FILE_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    ".npmrc": [_NPMRC_REGISTRY],
    ".yarnrc.yml": [re.compile(r"^\s*npmRegistryServer:\s*[\"']?([^\"'\s]+)", re.MULTILINE)],
    "pip.conf": [_PIP_INDEX],
    "pip.ini": [_PIP_INDEX],
    "uv.toml": [_TOML_URL],
    "pyproject.toml": [_TOML_URL],
}


def detect_custom_registries(
    files: Mapping[str, str],
    policy: NetworkPolicy,
) -> list[str]:
    """Return registry hosts configured in repo files but not allowed by ``policy``.

    This is a reporting aid only. Custom registries are a known gap of the
    fixed allowlists: callers record the result in job metadata and log it;
    the policy itself is not widened.

    Args:
        files: Mapping of repo-relative file name to contents.
        policy: The selected policy.
    """
    if isinstance(policy, NoNetworkPolicy):
        return []

    hosts: set[str] = set()
    for name, content in files.items():
        base = name.rsplit("/", 1)[-1]
        for pattern in _REGISTRY_FILE_PATTERNS.get(base, []):
            for match in pattern.finditer(content or ""):
                host = urlparse(match.group(1)).hostname
                if host and not policy.allows(host):
                    hosts.add(host.lower())

    if hosts:
        logger.warning(
            "Repo configures registries outside the %s allowlist: %s",
            policy.variant,
            ", ".join(sorted(hosts)),
        )
    return sorted(hosts)
