"""Sortie: sandboxed code-mode agents and auditable implementation runs."""

__version__ = "0.1.0"
