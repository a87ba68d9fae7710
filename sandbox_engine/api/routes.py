"""
API Routes for the sandbox engine

This module provides REST API endpoints for:
- Shell, Python and Node.js execution
- Session workspaces and their files
- Process control and statistics
- Live output over WebSocket
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, Query, Request, WebSocket
from pydantic import BaseModel, ConfigDict, Field

from ..errors import SessionLimitError
from ..schemas.execution import ExecutionResult, FileEntry, SandboxStats, SessionDescriptor
from ..sessions.manager import SandboxManager


router = APIRouter(prefix="/api/v1/sandbox", tags=["sandbox"])


class ExecutionLimiter:
    """Bounds the number of executions running at once; excess calls are rejected."""

    def __init__(self, limit: int):
        self.limit = limit
        self.in_flight = 0

    @asynccontextmanager
    async def slot(self) -> AsyncGenerator[None, None]:
        if self.in_flight >= self.limit:
            raise SessionLimitError(
                f"Maximum concurrent sessions ({self.limit}) reached",
                limit=self.limit,
            )
        self.in_flight += 1
        try:
            yield
        finally:
            self.in_flight -= 1


# Request/Response Models

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ExecuteShellRequest(_CamelModel):
    """Request to execute a shell command."""
    command: str = Field(..., description="Shell command to run with sh -c")
    session_id: str = Field(..., alias="sessionId")
    timeout: int | None = Field(default=None, gt=0, description="Timeout in milliseconds")


class ExecuteCodeRequest(_CamelModel):
    """Request to execute Python or JavaScript source."""
    code: str = Field(..., description="Source code passed to the interpreter")
    session_id: str = Field(..., alias="sessionId")
    timeout: int | None = Field(default=None, gt=0, description="Timeout in milliseconds")


class CreateSessionRequest(_CamelModel):
    """Request to create a session workspace."""
    session_id: str | None = Field(default=None, alias="sessionId")


class WriteFileRequest(_CamelModel):
    """Request to write a file into a session workspace."""
    session_id: str = Field(..., alias="sessionId")
    file_path: str = Field(..., alias="filePath")
    content: str


class KillProcessRequest(_CamelModel):
    """Request to kill a running execution."""
    process_id: str = Field(..., alias="processId")


class FileListing(BaseModel):
    """Directory listing of a session workspace."""
    success: bool = True
    path: str
    files: list[FileEntry]


def _manager(req: Request | WebSocket) -> SandboxManager:
    return req.app.state.sandbox_manager


def _limiter(req: Request) -> ExecutionLimiter:
    return req.app.state.execution_limiter


# Execution Endpoints

@router.post("/execute/shell", response_model=ExecutionResult)
async def execute_shell(request: ExecuteShellRequest, req: Request):
    """Execute a shell command in a fresh sandbox container."""
    async with _limiter(req).slot():
        return await _manager(req).execute_shell(
            request.command, request.session_id, request.timeout
        )


@router.post("/execute/python", response_model=ExecutionResult)
async def execute_python(request: ExecuteCodeRequest, req: Request):
    """Execute Python code in a fresh sandbox container."""
    async with _limiter(req).slot():
        return await _manager(req).execute_python(
            request.code, request.session_id, request.timeout
        )


@router.post("/execute/node", response_model=ExecutionResult)
async def execute_node(request: ExecuteCodeRequest, req: Request):
    """Execute JavaScript code in a fresh sandbox container."""
    async with _limiter(req).slot():
        return await _manager(req).execute_node(
            request.code, request.session_id, request.timeout
        )


# Session Endpoints

@router.post("/session/create", response_model=SessionDescriptor)
async def create_session(req: Request, request: CreateSessionRequest | None = None):
    """Create a session and pre-provision its workspace."""
    session_id = request.session_id if request else None
    return await _manager(req).create_session(session_id)


@router.delete("/session/cleanup")
async def cleanup_session(req: Request, session_id: str = Query(..., alias="sessionId")):
    """Tear down a session's containers and workspace."""
    return await _manager(req).cleanup_session(session_id)


# File Endpoints

@router.post("/file/write")
async def write_file(request: WriteFileRequest, req: Request):
    """Write a file into a session workspace."""
    return await _manager(req).write_file(request.session_id, request.file_path, request.content)


@router.get("/file/read")
async def read_file(
    req: Request,
    session_id: str = Query(..., alias="sessionId"),
    file_path: str = Query(..., alias="filePath"),
):
    """Read a file from a session workspace."""
    return await _manager(req).read_file(session_id, file_path)


@router.get("/files/list", response_model=FileListing)
async def list_files(
    req: Request,
    session_id: str = Query(..., alias="sessionId"),
    dir_path: str = Query(default="", alias="dirPath"),
):
    """List a directory of a session workspace."""
    files = await _manager(req).list_files(session_id, dir_path)
    return FileListing(path=dir_path, files=files)


# Process and System Endpoints

@router.post("/process/kill")
async def kill_process(request: KillProcessRequest, req: Request):
    """Kill a running execution. Unknown ids report "Process not found"."""
    return await _manager(req).kill_process(request.process_id)


@router.get("/processes")
async def list_processes(req: Request):
    """List executions whose containers are running."""
    return {"processes": [p.model_dump() for p in _manager(req).get_active_processes()]}


@router.get("/stats", response_model=SandboxStats)
async def get_stats(req: Request):
    """Get sandbox statistics."""
    return _manager(req).get_stats()


@router.websocket("/ws/{session_id}")
async def stream_output(websocket: WebSocket, session_id: str):
    """Stream live output of a session's executions."""
    await websocket.app.state.connection_manager.stream_session(websocket, session_id)
