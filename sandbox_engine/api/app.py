"""
Sandbox Engine API application.

Wires the sandbox manager into a FastAPI app and maps sandbox errors to
HTTP responses.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config.settings import Settings, get_settings
from ..errors import (
    ContainerLaunchError,
    InvalidRequestError,
    PathTraversalError,
    SandboxError,
    SandboxFileNotFoundError,
    SessionLimitError,
    SessionNotFoundError,
    WorkspaceAllocationError,
)
from ..sessions.manager import SandboxManager, create_sandbox_manager
from .routes import ExecutionLimiter, router
from .websocket import ConnectionManager

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[SandboxError], int] = {
    InvalidRequestError: 400,
    PathTraversalError: 400,
    SessionNotFoundError: 404,
    SandboxFileNotFoundError: 404,
    SessionLimitError: 429,
    WorkspaceAllocationError: 500,
    ContainerLaunchError: 503,
}


async def sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
    status_code = STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra={"path": request.url.path})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(
    settings: Settings | None = None,
    manager: SandboxManager | None = None,
) -> FastAPI:
    """Create the API application."""
    settings = settings or get_settings()
    manager = manager or create_sandbox_manager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting sandbox engine API...")
        await manager.startup()
        yield
        logger.info("Shutting down sandbox engine API...")
        await manager.shutdown()

    app = FastAPI(
        title="Sandbox Engine API",
        version=__version__,
        description="Sandboxed execution of shell, Python and Node.js payloads",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sandbox_manager = manager
    app.state.execution_limiter = ExecutionLimiter(settings.server.max_concurrent_sessions)
    app.state.connection_manager = ConnectionManager(manager.relay)

    app.add_exception_handler(SandboxError, sandbox_error_handler)
    app.include_router(router)

    @app.get("/health")
    async def health():
        runtime_ok = await manager.runtime.is_available()
        return {
            "status": "healthy" if runtime_ok else "degraded",
            "runtime_available": runtime_ok,
            "cache_enabled": manager.cache.enabled,
            "version": __version__,
        }

    return app
