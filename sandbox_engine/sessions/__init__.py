"""
Sessions Module for the sandbox engine

The sandbox manager: execution orchestration, session workspaces,
process control and statistics.
"""

from .manager import (
    ActiveExecution,
    SandboxManager,
    SandboxSession,
    create_sandbox_manager,
)

__all__ = [
    "ActiveExecution",
    "SandboxManager",
    "SandboxSession",
    "create_sandbox_manager",
]
