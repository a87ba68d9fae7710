"""
Sandbox Engine: isolated execution of shell, Python and Node.js payloads

Each execution runs in a single-use Docker container with no network,
CPU/memory/pid quotas and a private ephemeral workspace. Output streams
live to subscribers, successful results are memoized in Redis, and the
container and workspace are always reclaimed.

Core Components:
- sessions: SandboxManager, the orchestrator
- sandbox: workspace store and Docker runtime adapter
- safety: deny-list safety gate
- cache: Redis result cache
- streaming: per-session output relay
- api: FastAPI routes and WebSocket streaming

Usage:
    from sandbox_engine import Settings, create_sandbox_manager

    manager = create_sandbox_manager(Settings.from_env())
    await manager.startup()
    result = await manager.execute_shell("echo hi", session_id="s1")
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .errors import (
    ContainerLaunchError,
    InvalidRequestError,
    PathTraversalError,
    SandboxError,
    SandboxFileNotFoundError,
    SessionLimitError,
    SessionNotFoundError,
    WorkspaceAllocationError,
)
from .schemas import ExecutionRequest, ExecutionResult, Language
from .sessions import SandboxManager, create_sandbox_manager

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "ContainerLaunchError",
    "InvalidRequestError",
    "PathTraversalError",
    "SandboxError",
    "SandboxFileNotFoundError",
    "SessionLimitError",
    "SessionNotFoundError",
    "WorkspaceAllocationError",
    "ExecutionRequest",
    "ExecutionResult",
    "Language",
    "SandboxManager",
    "create_sandbox_manager",
]
