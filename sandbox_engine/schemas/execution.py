"""
Execution Schemas for the sandbox engine

This module defines the Pydantic schemas exchanged with callers:
- ExecutionRequest: one immutable unit of work
- ExecutionResult: the outcome of one request (also the cached value)
- Session, file and statistics descriptors for the auxiliary operations
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Language(str, Enum):
    """Kind of payload carried by an execution request."""
    SHELL = "shell"
    PYTHON = "python"
    NODE = "node"


class OutputStream(str, Enum):
    """Origin of an output chunk."""
    STDOUT = "stdout"
    STDERR = "stderr"


def _new_execution_id() -> str:
    return uuid.uuid4().hex[:12]


class ExecutionRequest(BaseModel):
    """Immutable description of one execution."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(min_length=1, description="Fully formed invocation, as hashed for caching")
    argv: tuple[str, ...] = Field(min_length=1, description="Argument vector run inside the container")
    language: Language = Language.SHELL
    session_id: str = Field(min_length=1, description="Caller-supplied correlation identifier")
    timeout_ms: int = Field(gt=0, description="Wall-clock limit for the container run")
    execution_id: str = Field(default_factory=_new_execution_id)


class ExecutionResult(BaseModel):
    """Result of a sandboxed execution."""

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0
    session_id: str | None = None
    execution_id: str | None = None
    error: str | None = None

    @classmethod
    def rejected(
        cls,
        request: ExecutionRequest,
        reason: str,
    ) -> "ExecutionResult":
        """Build the result returned when the safety gate refuses a request."""
        return cls(
            success=False,
            exit_code=-1,
            stderr=f"AI Safety Violation: {reason}",
            session_id=request.session_id,
            execution_id=request.execution_id,
            error=reason,
        )


class SessionDescriptor(BaseModel):
    """A pre-provisioned sandbox session."""
    session_id: str
    path: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    active_processes: int = 0


class FileEntry(BaseModel):
    """One entry of a session directory listing."""
    name: str
    is_directory: bool
    is_file: bool
    size: int = 0


class ProcessInfo(BaseModel):
    """An execution whose container is currently running."""
    process_id: str
    session_id: str
    language: Language
    container_id: str | None = None
    uptime_ms: int = 0


class SandboxStats(BaseModel):
    """Introspection snapshot of the sandbox manager."""
    active_sessions: int
    active_processes: int
    total_executions: int
    cache_hits: int
    cache_misses: int
    safety_rejections: int
    timeouts: int
    workspace_root: str
    image: str
    cache_enabled: bool
    relay_dropped_chunks: int = 0
