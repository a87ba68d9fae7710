"""
Error taxonomy for the sandbox engine.

Only caller-actionable conditions are raised out of the manager. Safety
violations and timeouts are reported inside an ExecutionResult instead,
and cache failures never leave the cache layer.
"""


class SandboxError(Exception):
    """Base class for all sandbox engine errors."""

    code = "SANDBOX_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            **({"details": self.details} if self.details else {}),
        }


class InvalidRequestError(SandboxError):
    """The execution request is malformed (empty session id, bad timeout)."""

    code = "INVALID_REQUEST"


class WorkspaceAllocationError(SandboxError):
    """A workspace directory could not be created."""

    code = "WORKSPACE_ALLOCATION_FAILED"


class ContainerLaunchError(SandboxError):
    """The container runtime is unavailable or refused to create/start a container."""

    code = "CONTAINER_LAUNCH_FAILED"


class SessionNotFoundError(SandboxError):
    """The session is unknown or has already been cleaned up."""

    code = "SESSION_NOT_FOUND"


class SandboxFileNotFoundError(SandboxError):
    """A file or directory does not exist inside a session workspace."""

    code = "FILE_NOT_FOUND"


class PathTraversalError(SandboxError):
    """A file path resolved outside of its session workspace."""

    code = "PATH_TRAVERSAL"


class SessionLimitError(SandboxError):
    """The configured number of simultaneous executions is already running."""

    code = "SESSION_LIMIT_REACHED"


class CacheUnavailableError(SandboxError):
    """The result cache could not be reached. Never surfaced to callers."""

    code = "CACHE_UNAVAILABLE"
