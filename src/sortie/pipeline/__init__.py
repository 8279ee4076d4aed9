"""Implementation run pipeline.

preflight → repo-context → checkout → planning → execution → commit-push
→ verify → pull-request → stop-sandbox

Key exports:
    ImplementationRunEngine: Sequences and persists the steps of one run
    StepContext: Collaborators passed to every step function
    ImplementationPlan: Structured planner output
"""

from sortie.pipeline.engine import STEP_ORDER, ImplementationRunEngine
from sortie.pipeline.planning import ImplementationPlan, Planner
from sortie.pipeline.steps import StepContext

__all__ = [
    "ImplementationPlan",
    "ImplementationRunEngine",
    "Planner",
    "STEP_ORDER",
    "StepContext",
]
