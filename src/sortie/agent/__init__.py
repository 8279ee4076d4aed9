"""Code-mode agent: a bounded tool loop over a sandbox job session."""

from sortie.agent.code_mode import AttachTarget, CodeModeBudgets, CodeModeRequest, CodeModeResult, CodeModeRunner
from sortie.agent.tools import SandboxTools

__all__ = [
    "AttachTarget",
    "CodeModeBudgets",
    "CodeModeRequest",
    "CodeModeResult",
    "CodeModeRunner",
    "SandboxTools",
]
