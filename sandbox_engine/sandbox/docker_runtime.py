"""
Docker Runtime for the sandbox engine

This module implements the container runtime adapter used by the sandbox
manager. Every execution gets a single-use container with:
- The execution workspace bind-mounted as the working directory
- No network interface (--network none)
- Memory, CPU and process-count quotas
- All capabilities dropped and no-new-privileges
- Labels that let a restarted process reap the orphans of dead instances

The adapter drives the `docker` CLI with argument vectors, so commands are
never re-parsed by a shell on the host.
"""

import asyncio
import codecs
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Collection, Protocol

from ..errors import ContainerLaunchError
from ..schemas.execution import OutputStream

logger = logging.getLogger(__name__)

MANAGED_LABEL = "sandbox-engine.managed"
SESSION_LABEL = "sandbox-engine.session"
EXECUTION_LABEL = "sandbox-engine.execution"
INSTANCE_LABEL = "sandbox-engine.instance"

READ_CHUNK_SIZE = 4096

OutputCallback = Callable[[OutputStream, str], None]


class ContainerState(str, Enum):
    """Lifecycle state of a container handle."""
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass
class ResourceLimits:
    """Quotas applied to a container."""
    memory: str = "512m"
    cpus: float = 1.0
    pids: int = 128
    # Same as memory: no swap on top of the memory ceiling
    memory_swap: str | None = None


@dataclass
class Mount:
    """A bind mount from the host into the container."""
    host_path: str
    container_path: str
    writable: bool = True


@dataclass
class ContainerSpec:
    """Everything needed to create one sandbox container."""
    image: str
    argv: list[str]
    mount: Mount
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    name: str = field(default_factory=lambda: f"sandbox-{uuid.uuid4().hex[:12]}")
    labels: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    user: str | None = None
    tmpfs_size: str = "64m"
    network_mode: str = "none"

    @property
    def workdir(self) -> str:
        return self.mount.container_path


@dataclass
class ContainerHandle:
    """A created container. Never outlives its execution."""
    name: str
    resource_limits: ResourceLimits
    mounts: list[Mount]
    network_mode: str = "none"
    id: str | None = None
    state: ContainerState = ContainerState.CREATED
    exit_code: int | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ref(self) -> str:
        """Identifier usable with the docker CLI."""
        return self.id or self.name


class ContainerRuntime(Protocol):
    """Interface of a container runtime adapter."""

    async def create(self, spec: ContainerSpec) -> ContainerHandle:
        ...

    async def start(self, handle: ContainerHandle, on_output: OutputCallback) -> int:
        ...

    async def kill(self, handle: ContainerHandle) -> bool:
        ...

    async def remove(self, handle: ContainerHandle) -> bool:
        ...

    async def reap_orphans(self, keep_instances: Collection[str] = ()) -> int:
        ...

    async def is_available(self) -> bool:
        ...


def build_create_args(spec: ContainerSpec, docker_binary: str = "docker") -> list[str]:
    """Build the `docker create` argument vector for a container spec."""
    limits = spec.limits
    args = [
        docker_binary, "create",
        "--name", spec.name,
        "--label", f"{MANAGED_LABEL}=true",
        "--network", spec.network_mode,
        "--memory", limits.memory,
        "--memory-swap", limits.memory_swap or limits.memory,
        "--cpus", str(limits.cpus),
        "--pids-limit", str(limits.pids),
        "--security-opt", "no-new-privileges:true",
        "--cap-drop", "ALL",
        "--init",
        "--tmpfs", f"/tmp:rw,noexec,nosuid,size={spec.tmpfs_size}",
        "-v", f"{spec.mount.host_path}:{spec.mount.container_path}:{'rw' if spec.mount.writable else 'ro'}",
        "-w", spec.workdir,
    ]

    for key, value in sorted(spec.labels.items()):
        args.extend(["--label", f"{key}={value}"])

    if spec.user:
        args.extend(["--user", spec.user])

    for key, value in spec.env.items():
        args.extend(["-e", f"{key}={value}"])

    args.append(spec.image)
    args.extend(spec.argv)
    return args


class DockerCliRuntime:
    """
    Container runtime backed by the docker CLI.

    One instance is shared by all concurrent executions; it keeps no
    per-execution state.
    """

    def __init__(self, docker_binary: str = "docker"):
        self.docker_binary = docker_binary

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """Run a docker CLI command to completion."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ContainerLaunchError(
                f"Container runtime unavailable ({self.docker_binary}): {e}"
            ) from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # A deadline expired mid-command (e.g. `create` pulling an image)
            if process.returncode is None:
                process.kill()
                await asyncio.shield(process.wait())
            raise
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def create(self, spec: ContainerSpec) -> ContainerHandle:
        """Create (but do not start) a container."""
        handle = ContainerHandle(
            name=spec.name,
            resource_limits=spec.limits,
            mounts=[spec.mount],
            network_mode=spec.network_mode,
        )
        args = build_create_args(spec, self.docker_binary)[1:]
        returncode, stdout, stderr = await self._run(*args)

        if returncode != 0:
            handle.state = ContainerState.FAILED
            handle.error = stderr.strip()
            raise ContainerLaunchError(
                f"Failed to create container from image {spec.image}: {stderr.strip()}",
                image=spec.image,
            )

        handle.id = stdout.strip()
        logger.debug(f"Created container {handle.name}", extra={"container_id": handle.id})
        return handle

    async def start(self, handle: ContainerHandle, on_output: OutputCallback) -> int:
        """
        Start the container attached and stream its output.

        Returns:
            The container exit code.

        Raises:
            ContainerLaunchError: if the container could not be started.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary, "start", "--attach", handle.ref,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            handle.state = ContainerState.FAILED
            handle.error = str(e)
            raise ContainerLaunchError(f"Container runtime unavailable: {e}") from e

        handle.state = ContainerState.RUNNING

        try:
            await asyncio.gather(
                self._pump(process.stdout, OutputStream.STDOUT, on_output),
                self._pump(process.stderr, OutputStream.STDERR, on_output),
            )
            attach_code = await process.wait()
        except asyncio.CancelledError:
            # Timeout or kill: stop the attach client; the container itself
            # is killed and removed by the caller's teardown.
            if process.returncode is None:
                process.kill()
                await asyncio.shield(process.wait())
            raise

        state = await self._inspect_state(handle)
        if state is None:
            exit_code = attach_code
        else:
            if state.get("Error"):
                handle.state = ContainerState.FAILED
                handle.error = state["Error"]
                raise ContainerLaunchError(
                    f"Container {handle.name} failed to start: {state['Error']}"
                )
            exit_code = int(state.get("ExitCode", attach_code))
            if state.get("OOMKilled"):
                handle.error = "Container exceeded its memory limit"

        handle.state = ContainerState.EXITED
        handle.exit_code = exit_code
        return exit_code

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        kind: OutputStream,
        on_output: OutputCallback,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    on_output(kind, tail)
                return
            text = decoder.decode(data)
            if text:
                on_output(kind, text)

    async def _inspect_state(self, handle: ContainerHandle) -> dict | None:
        returncode, stdout, _ = await self._run(
            "inspect", "--format", "{{json .State}}", handle.ref
        )
        if returncode != 0:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError:
            return None

    async def kill(self, handle: ContainerHandle) -> bool:
        """Kill a running container. Returns False if it was not running."""
        returncode, _, stderr = await self._run("kill", handle.ref)
        if returncode != 0:
            logger.debug(
                f"Kill of {handle.name} had no effect: {stderr.strip()}",
                extra={"container_id": handle.id},
            )
            return False
        return True

    async def remove(self, handle: ContainerHandle) -> bool:
        """
        Force-remove a container and its anonymous volumes.

        Returns False if the container no longer existed.
        """
        returncode, _, stderr = await self._run("rm", "--force", "--volumes", handle.ref)
        if returncode != 0:
            if "no such container" in stderr.lower():
                handle.state = ContainerState.REMOVED
                return False
            raise ContainerLaunchError(
                f"Failed to remove container {handle.name}: {stderr.strip()}"
            )
        handle.state = ContainerState.REMOVED
        return True

    async def reap_orphans(self, keep_instances: Collection[str] = ()) -> int:
        """
        Remove managed containers that no live instance owns.

        Containers whose instance label is in `keep_instances` belong to a
        running process and are left alone.
        """
        returncode, stdout, stderr = await self._run(
            "ps", "--all",
            "--filter", f"label={MANAGED_LABEL}=true",
            "--format", f'{{{{.ID}}}} {{{{.Label "{INSTANCE_LABEL}"}}}}',
        )
        if returncode != 0:
            logger.warning(f"Could not list orphaned containers: {stderr.strip()}")
            return 0

        container_ids = []
        for line in stdout.splitlines():
            parts = line.split()
            if not parts:
                continue
            instance = parts[1] if len(parts) > 1 else ""
            if instance not in keep_instances:
                container_ids.append(parts[0])
        if not container_ids:
            return 0

        returncode, _, stderr = await self._run("rm", "--force", "--volumes", *container_ids)
        if returncode != 0:
            logger.warning(f"Failed to reap some orphaned containers: {stderr.strip()}")
        return len(container_ids)

    async def is_available(self) -> bool:
        """Check that the docker daemon answers."""
        try:
            returncode, _, _ = await self._run("version", "--format", "{{.Server.Version}}")
        except ContainerLaunchError:
            return False
        return returncode == 0
