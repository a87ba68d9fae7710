"""
Safety Module for the sandbox engine

Pre-execution deny-list checks. The container runtime is the actual
isolation boundary; this gate short-circuits the known-destructive
commands before a container is ever created.
"""

from .guards import (
    DEFAULT_PATTERNS,
    SafetyCheck,
    SafetyGate,
    SafetyPolicy,
    create_safety_gate,
)

__all__ = [
    "DEFAULT_PATTERNS",
    "SafetyCheck",
    "SafetyGate",
    "SafetyPolicy",
    "create_safety_gate",
]
