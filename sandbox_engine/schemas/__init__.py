"""
Schemas Module for the sandbox engine

Pydantic models shared by the manager, the HTTP layer and the cache.
"""

from .execution import (
    ExecutionRequest,
    ExecutionResult,
    FileEntry,
    Language,
    OutputStream,
    ProcessInfo,
    SandboxStats,
    SessionDescriptor,
)

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "FileEntry",
    "Language",
    "OutputStream",
    "ProcessInfo",
    "SandboxStats",
    "SessionDescriptor",
]
