"""Sandbox execution layer.

Every command an agent or pipeline step runs goes through a job session:
- Workspace path pinning and a default-deny command allowlist
- Network policy fixed when the sandbox is created
- Redacted, bounded transcripts uploaded to blob storage on finalize
- A persisted ``SandboxJob`` per session (never deleted)
"""

from .allowlist import CommandPolicy, assert_command_allowed
from .network_policy import (
    NetworkPolicy,
    NoNetworkPolicy,
    RestrictedNetworkPolicy,
    detect_custom_registries,
    select_policy,
)
from .provider import GitSource, HttpSandboxProvider, SandboxFile, SandboxHandle, SandboxProvider
from .redaction import redact, redact_keys, stable_json
from .session import CommandResult, SandboxJobSession, SandboxRunner

__all__ = [
    "CommandPolicy",
    "CommandResult",
    "GitSource",
    "HttpSandboxProvider",
    "NetworkPolicy",
    "NoNetworkPolicy",
    "RestrictedNetworkPolicy",
    "SandboxFile",
    "SandboxHandle",
    "SandboxJobSession",
    "SandboxProvider",
    "SandboxRunner",
    "assert_command_allowed",
    "detect_custom_registries",
    "redact",
    "redact_keys",
    "select_policy",
    "stable_json",
]
