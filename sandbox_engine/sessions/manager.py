"""
Sandbox Manager for the sandbox engine

This module orchestrates sandboxed executions:
- Result cache fast path for repeated successful commands
- Safety gate before any resource is created
- One ephemeral workspace and one container per execution
- Live output relay tagged by session id
- A single teardown per execution, whatever happened before it
- Session workspaces for file operations, process kill and statistics
"""

import asyncio
import logging
import shlex
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from ..cache.result_cache import ResultCache
from ..config.settings import SafetySettings, SandboxSettings, Settings
from ..errors import (
    ContainerLaunchError,
    InvalidRequestError,
    SandboxFileNotFoundError,
    SessionNotFoundError,
    WorkspaceAllocationError,
)
from ..safety.guards import SafetyGate, create_safety_gate
from ..sandbox.docker_runtime import (
    EXECUTION_LABEL,
    INSTANCE_LABEL,
    SESSION_LABEL,
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    DockerCliRuntime,
    Mount,
    ResourceLimits,
)
from ..sandbox.workspace import Workspace, WorkspaceStore
from ..schemas.execution import (
    ExecutionRequest,
    ExecutionResult,
    FileEntry,
    Language,
    OutputStream,
    ProcessInfo,
    SandboxStats,
    SessionDescriptor,
)
from ..streaming.relay import OutputRelay

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [output truncated]"


class _OutputBuffer:
    """Accumulates stdout/stderr up to a per-stream limit in UTF-8 bytes."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._parts: dict[OutputStream, list[str]] = {
            OutputStream.STDOUT: [],
            OutputStream.STDERR: [],
        }
        self._sizes = {OutputStream.STDOUT: 0, OutputStream.STDERR: 0}
        self.truncated: set[OutputStream] = set()

    def append(self, stream: OutputStream, data: str) -> None:
        room = self.max_bytes - self._sizes[stream]
        if room <= 0:
            self.truncated.add(stream)
            return
        encoded = data.encode("utf-8", errors="replace")
        if len(encoded) > room:
            # Never keep half of a multi-byte character
            encoded = encoded[:room]
            data = encoded.decode("utf-8", errors="ignore")
            encoded = data.encode("utf-8")
            self.truncated.add(stream)
        self._parts[stream].append(data)
        self._sizes[stream] += len(encoded)

    def text(self, stream: OutputStream) -> str:
        text = "".join(self._parts[stream])
        if stream in self.truncated:
            text += TRUNCATION_MARKER
        return text


@dataclass
class SandboxSession:
    """A pre-provisioned session and its persistent directory."""
    session_id: str
    path: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ActiveExecution:
    """Bookkeeping for one in-flight execution."""
    request: ExecutionRequest
    workspace: Workspace
    buffer: _OutputBuffer
    started_at: float = field(default_factory=time.monotonic)
    handle: ContainerHandle | None = None
    # Set when `create` was interrupted and may have left a container behind
    orphan_name: str | None = None
    killed: bool = False
    torn_down: bool = False


class SandboxManager:
    """
    Runs execution requests inside single-use containers.

    All collaborators are injected. Concurrent `execute` calls share only
    the runtime, the cache and the relay; workspaces and container handles
    belong to exactly one call.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        workspaces: WorkspaceStore,
        cache: ResultCache,
        relay: OutputRelay,
        gate: SafetyGate | None = None,
        settings: SandboxSettings | None = None,
        safety: SafetySettings | None = None,
    ):
        self.runtime = runtime
        self.workspaces = workspaces
        self.cache = cache
        self.relay = relay
        self.gate = gate or create_safety_gate()
        self.settings = settings or SandboxSettings()
        self.safety = safety or SafetySettings()

        self.sessions: dict[str, SandboxSession] = {}
        self._active: dict[str, ActiveExecution] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._session_lock = asyncio.Lock()

        # Statistics
        self.total_executions = 0
        self.safety_rejections = 0
        self.timeouts = 0

    # Lifecycle

    async def startup(self) -> None:
        """
        Prepare the workspace root, reap leftovers of exited processes, connect the cache.

        Workspaces and containers owned by other running processes sharing
        the same root are left untouched.
        """
        self.workspaces.initialize()

        swept = await asyncio.to_thread(self.workspaces.sweep_stale)
        if swept:
            logger.info(f"Removed {swept} stale workspace directories")

        live_instances = await asyncio.to_thread(self.workspaces.live_instances)
        try:
            reaped = await self.runtime.reap_orphans(live_instances)
        except ContainerLaunchError as e:
            logger.warning(f"Container runtime unavailable at startup: {e}")
        else:
            if reaped:
                logger.info(f"Reaped {reaped} orphaned sandbox containers")

        await self.cache.connect()
        logger.info(
            f"Sandbox manager ready (image={self.settings.image}, root={self.workspaces.root})"
        )

    async def shutdown(self) -> None:
        """Kill running executions, then release the cache and this process's workspace subtree."""
        for execution in list(self._active.values()):
            await self._kill_execution(execution)
        await self.drain()
        await self.cache.close()
        for session_id in list(self.sessions):
            self.relay.close_session(session_id)
        try:
            await asyncio.to_thread(self.workspaces.close)
        except OSError:
            logger.warning(f"Failed to delete {self.workspaces.instance_root}", exc_info=True)
        logger.info("Sandbox manager stopped")

    async def drain(self) -> None:
        """Wait for pending background cache writes."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # Request builders

    def build_request(
        self,
        language: Language,
        payload: str,
        session_id: str,
        timeout_ms: int | None = None,
    ) -> ExecutionRequest:
        """
        Build an ExecutionRequest for a shell command or an interpreter payload.

        Interpreter payloads are passed as a single argv element; nothing is
        interpolated into a shell string.

        Raises:
            InvalidRequestError: if the session id, payload or timeout is invalid.
        """
        if language == Language.SHELL:
            argv: tuple[str, ...] = ("sh", "-c", payload)
            command = payload
        elif language == Language.PYTHON:
            argv = (self.settings.python_binary, "-c", payload)
            command = shlex.join(argv)
        else:
            argv = (self.settings.node_binary, "-e", payload)
            command = shlex.join(argv)

        if not payload or not payload.strip():
            raise InvalidRequestError(f"Empty {language.value} payload")

        try:
            return ExecutionRequest(
                command=command,
                argv=argv,
                language=language,
                session_id=session_id,
                timeout_ms=timeout_ms if timeout_ms is not None else self.settings.default_timeout_ms,
            )
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid execution request: {e}") from e

    async def execute_shell(
        self,
        command: str,
        session_id: str,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Execute a shell command."""
        return await self.execute(
            self.build_request(Language.SHELL, command, session_id, timeout_ms)
        )

    async def execute_python(
        self,
        code: str,
        session_id: str,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Execute Python source with the container's interpreter."""
        return await self.execute(
            self.build_request(Language.PYTHON, code, session_id, timeout_ms)
        )

    async def execute_node(
        self,
        code: str,
        session_id: str,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Execute JavaScript source with the container's node binary."""
        return await self.execute(
            self.build_request(Language.NODE, code, session_id, timeout_ms)
        )

    # Hot path

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Run one execution request.

        Returns a cached result for a previously successful identical
        command, a failed result for safety violations and timeouts, or the
        result of running the command in a fresh container.

        Raises:
            WorkspaceAllocationError: if no workspace could be created.
            ContainerLaunchError: if the runtime could not create or start the container.
        """
        self.total_executions += 1
        log_extra = {"session_id": request.session_id, "execution_id": request.execution_id}

        session = self.sessions.get(request.session_id)
        # Session files make the result depend on more than the command
        use_cache = session is None or not await asyncio.to_thread(_has_entries, session.path)
        cache_key = self.cache.key_for(request.command)

        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.info("Returning cached execution result", extra=log_extra)
                return cached

        if self._should_gate(request):
            gate_text = request.command if request.language == Language.SHELL else request.argv[-1]
            check = self.gate.check(gate_text)
            if not check.allowed:
                self.safety_rejections += 1
                logger.warning(f"Safety gate rejected request: {check.reason}", extra=log_extra)
                return ExecutionResult.rejected(request, check.reason or "blocked")

        workspace = await self.workspaces.allocate(request.session_id)
        execution = ActiveExecution(
            request=request,
            workspace=workspace,
            buffer=_OutputBuffer(self.settings.max_output_bytes),
        )
        self._active[request.execution_id] = execution

        try:
            if session is not None:
                try:
                    await self.workspaces.seed(workspace, session.path)
                except OSError as e:
                    raise WorkspaceAllocationError(
                        f"Failed to seed workspace from session {request.session_id}: {e}"
                    ) from e
            exit_code, timed_out = await self._run_in_container(execution)
        finally:
            await self._teardown(execution)

        result = self._build_result(execution, exit_code, timed_out)
        logger.info(
            f"Execution finished with exit code {result.exit_code}",
            extra={**log_extra, "exit_code": result.exit_code, "duration_ms": result.duration_ms},
        )

        if result.success and use_cache:
            self._store_in_background(cache_key, result)
        return result

    def _should_gate(self, request: ExecutionRequest) -> bool:
        if not self.safety.enabled:
            return False
        if request.language == Language.SHELL:
            return self.safety.gate_shell
        return True

    def _container_spec(self, request: ExecutionRequest, workspace: Workspace) -> ContainerSpec:
        return ContainerSpec(
            image=self.settings.image,
            argv=list(request.argv),
            mount=Mount(
                host_path=str(workspace.host_path),
                container_path=self.settings.container_workdir,
                writable=True,
            ),
            limits=ResourceLimits(
                memory=self.settings.memory_limit,
                cpus=self.settings.cpu_limit,
                pids=self.settings.pids_limit,
            ),
            name=f"sandbox-{request.execution_id}",
            labels={
                SESSION_LABEL: request.session_id,
                EXECUTION_LABEL: request.execution_id,
                INSTANCE_LABEL: self.workspaces.instance_id,
            },
            env={"SANDBOX_SESSION_ID": request.session_id},
            user=self.settings.run_as_user,
            tmpfs_size=self.settings.tmpfs_size,
            network_mode="none",
        )

    async def _run_in_container(self, execution: ActiveExecution) -> tuple[int, bool]:
        """
        Create, start and await the container. Returns (exit_code, timed_out).

        One deadline covers both `create` (which may pull the image) and the
        run itself.
        """
        request = execution.request
        spec = self._container_spec(request, execution.workspace)

        def on_output(stream: OutputStream, data: str) -> None:
            execution.buffer.append(stream, data)
            self.relay.publish(request.session_id, request.execution_id, stream, data)

        async def create_and_start() -> int:
            try:
                execution.handle = await self.runtime.create(spec)
            except asyncio.CancelledError:
                execution.orphan_name = spec.name
                raise
            if execution.killed:
                return -1
            return await self.runtime.start(execution.handle, on_output)

        try:
            exit_code = await asyncio.wait_for(
                create_and_start(),
                timeout=request.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            self.timeouts += 1
            logger.warning(
                f"Execution timed out after {request.timeout_ms}ms",
                extra={"session_id": request.session_id, "execution_id": request.execution_id},
            )
            await self._kill_container(execution.handle)
            return -1, True
        return exit_code, False

    async def _teardown(self, execution: ActiveExecution) -> None:
        """Remove the container, then the workspace. Runs once per execution and never raises."""
        if execution.torn_down:
            return
        execution.torn_down = True
        log_extra = {
            "session_id": execution.request.session_id,
            "execution_id": execution.request.execution_id,
        }

        handle = execution.handle
        if handle is None and execution.orphan_name is not None:
            # Removal by the pre-assigned name
            handle = ContainerHandle(
                name=execution.orphan_name,
                resource_limits=ResourceLimits(),
                mounts=[],
            )

        if handle is not None:
            try:
                await self.runtime.remove(handle)
            except Exception:
                logger.warning(
                    f"Failed to remove container {handle.name}",
                    extra={**log_extra, "container_id": handle.id},
                    exc_info=True,
                )

        try:
            await self.workspaces.release(execution.workspace)
        except OSError:
            logger.warning(
                f"Failed to delete workspace {execution.workspace.host_path}",
                extra={**log_extra, "workspace_id": execution.workspace.id},
                exc_info=True,
            )

        self._active.pop(execution.request.execution_id, None)

    def _build_result(
        self,
        execution: ActiveExecution,
        exit_code: int,
        timed_out: bool,
    ) -> ExecutionResult:
        request = execution.request
        stdout = execution.buffer.text(OutputStream.STDOUT)
        stderr = execution.buffer.text(OutputStream.STDERR)
        error = None

        if timed_out:
            error = f"Execution timed out after {request.timeout_ms}ms"
            stderr = f"{stderr}\n{error}" if stderr else error
        elif execution.killed:
            error = "Execution killed"
        elif execution.handle is not None and execution.handle.error:
            error = execution.handle.error

        return ExecutionResult(
            success=exit_code == 0 and not timed_out and not execution.killed,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - execution.started_at) * 1000),
            session_id=request.session_id,
            execution_id=request.execution_id,
            error=error,
        )

    def _store_in_background(self, key: str, result: ExecutionResult) -> None:
        """Fire-and-forget cache write, decoupled from the returned result."""
        task = asyncio.create_task(self.cache.set(key, result))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_store_done)

    def _on_store_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background cache write failed", exc_info=exc)

    async def _kill_container(self, handle: ContainerHandle | None) -> None:
        if handle is None:
            return
        try:
            await self.runtime.kill(handle)
        except ContainerLaunchError:
            logger.warning(f"Failed to kill container {handle.name}", exc_info=True)

    async def _kill_execution(self, execution: ActiveExecution) -> bool:
        if execution.killed or execution.torn_down:
            return False
        execution.killed = True
        await self._kill_container(execution.handle)
        return True

    # Sessions and files

    async def create_session(self, session_id: str | None = None) -> SessionDescriptor:
        """
        Pre-provision a session workspace.

        Creating a session that already exists returns its descriptor.
        """
        async with self._session_lock:
            session_id = session_id or str(uuid.uuid4())
            session = self.sessions.get(session_id)
            if session is None:
                path = await self.workspaces.create_session_dir(session_id)
                session = SandboxSession(session_id=session_id, path=path)
                self.sessions[session_id] = session
                logger.info("Created sandbox session", extra={"session_id": session_id})
            return self._describe(session)

    def get_session(self, session_id: str) -> SessionDescriptor:
        return self._describe(self._require_session(session_id))

    def _describe(self, session: SandboxSession) -> SessionDescriptor:
        return SessionDescriptor(
            session_id=session.session_id,
            path=str(session.path),
            created_at=session.created_at,
            active_processes=sum(
                1 for e in self._active.values() if e.request.session_id == session.session_id
            ),
        )

    def _require_session(self, session_id: str) -> SandboxSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}", session_id=session_id)
        return session

    async def write_file(self, session_id: str, file_path: str, content: str) -> dict:
        """Write a text file inside a session workspace."""
        session = self._require_session(session_id)
        target = self.workspaces.resolve_inside(session.path, file_path)
        if target == session.path.resolve():
            raise InvalidRequestError("A file path is required")

        def _write() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            return target.write_text(content, encoding="utf-8")

        written = await asyncio.to_thread(_write)
        return {"success": True, "path": file_path, "bytes": written}

    async def read_file(self, session_id: str, file_path: str) -> dict:
        """Read a text file from a session workspace."""
        session = self._require_session(session_id)
        target = self.workspaces.resolve_inside(session.path, file_path)
        if not target.is_file():
            raise SandboxFileNotFoundError(f"File not found: {file_path}", path=file_path)

        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        return {"success": True, "path": file_path, "content": content}

    async def list_files(self, session_id: str, dir_path: str = "") -> list[FileEntry]:
        """List a directory inside a session workspace."""
        session = self._require_session(session_id)
        target = self.workspaces.resolve_inside(session.path, dir_path)
        if not target.is_dir():
            raise SandboxFileNotFoundError(f"Directory not found: {dir_path}", path=dir_path)

        def _list() -> list[FileEntry]:
            entries = []
            for entry in sorted(target.iterdir(), key=lambda p: p.name):
                is_file = entry.is_file()
                entries.append(FileEntry(
                    name=entry.name,
                    is_directory=entry.is_dir(),
                    is_file=is_file,
                    size=entry.stat().st_size if is_file else 0,
                ))
            return entries

        return await asyncio.to_thread(_list)

    async def cleanup_session(self, session_id: str) -> dict:
        """
        Tear down a session: kill its running executions, delete its
        directory and end its output subscriptions.

        Cleaning up an unknown or already cleaned session succeeds with
        removed=False.
        """
        async with self._session_lock:
            session = self.sessions.pop(session_id, None)

        killed = 0
        for execution in list(self._active.values()):
            if execution.request.session_id == session_id:
                if await self._kill_execution(execution):
                    killed += 1

        removed_dir = await self.workspaces.remove_session_dir(session_id)
        self.relay.close_session(session_id)

        removed = session is not None or removed_dir
        if removed:
            logger.info("Cleaned up sandbox session", extra={"session_id": session_id})
        return {"success": True, "removed": removed, "killed_processes": killed}

    # Processes and statistics

    async def kill_process(self, process_id: str) -> dict:
        """
        Kill a running execution by id.

        Unknown, finished or already killed executions return a
        "Process not found" result instead of raising.
        """
        execution = self._active.get(process_id)
        if execution is None or not await self._kill_execution(execution):
            return {"success": False, "error": "Process not found"}
        logger.info(
            "Killed execution",
            extra={"session_id": execution.request.session_id, "execution_id": process_id},
        )
        return {"success": True, "process_id": process_id}

    def get_active_processes(self) -> list[ProcessInfo]:
        now = time.monotonic()
        return [
            ProcessInfo(
                process_id=execution_id,
                session_id=execution.request.session_id,
                language=execution.request.language,
                container_id=execution.handle.id if execution.handle else None,
                uptime_ms=int((now - execution.started_at) * 1000),
            )
            for execution_id, execution in self._active.items()
        ]

    def get_stats(self) -> SandboxStats:
        return SandboxStats(
            active_sessions=len(self.sessions),
            active_processes=len(self._active),
            total_executions=self.total_executions,
            cache_hits=self.cache.hits,
            cache_misses=self.cache.misses,
            safety_rejections=self.safety_rejections,
            timeouts=self.timeouts,
            workspace_root=str(self.workspaces.root),
            image=self.settings.image,
            cache_enabled=self.cache.enabled,
            relay_dropped_chunks=self.relay.dropped,
        )


def _has_entries(path: Path) -> bool:
    try:
        return any(path.iterdir())
    except OSError:
        return False


def create_sandbox_manager(
    settings: Settings,
    runtime: ContainerRuntime | None = None,
    cache: ResultCache | None = None,
) -> SandboxManager:
    """Wire a SandboxManager with the production collaborators."""
    return SandboxManager(
        runtime=runtime or DockerCliRuntime(settings.sandbox.docker_binary),
        workspaces=WorkspaceStore(settings.sandbox.workspace_root),
        cache=cache or ResultCache(
            url=settings.cache.redis_url,
            ttl_seconds=settings.cache.ttl_seconds,
            key_prefix=settings.cache.key_prefix,
            socket_timeout=settings.cache.socket_timeout,
        ),
        relay=OutputRelay(max_queue_size=settings.server.relay_queue_size),
        gate=create_safety_gate(settings.safety.extra_patterns),
        settings=settings.sandbox,
        safety=settings.safety,
    )
