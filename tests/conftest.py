"""Shared fixtures: a recording container runtime and an in-memory Redis."""

import asyncio
import os
from dataclasses import dataclass, field

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sandbox_engine.cache.result_cache import ResultCache
from sandbox_engine.config.settings import Settings
from sandbox_engine.errors import ContainerLaunchError
from sandbox_engine.safety.guards import create_safety_gate
from sandbox_engine.sandbox.docker_runtime import ContainerHandle, ContainerSpec, ContainerState
from sandbox_engine.sandbox.workspace import WorkspaceStore
from sandbox_engine.schemas.execution import OutputStream
from sandbox_engine.sessions.manager import SandboxManager
from sandbox_engine.streaming.relay import OutputRelay


@dataclass
class FakeRun:
    """Scripted behaviour of one container run."""
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    exit_code: int = 0
    hang: bool = False
    fail_start: bool = False


class FakeRuntime:
    """
    ContainerRuntime that never touches Docker.

    Records every spec it is asked to create, which containers were
    started, killed and removed, and plays back scripted output.
    """

    KILLED_EXIT_CODE = 137

    def __init__(self):
        self.created: list[ContainerSpec] = []
        self.started: list[str] = []
        self.killed: list[str] = []
        self.removed: list[str] = []
        self.running: set[str] = set()
        self.fail_create = False
        self.available = True
        self.orphans = 0
        self.reap_calls = 0
        self.reap_keep: list[set[str]] = []
        self.create_delay = 0.0
        self.create_cancelled: list[str] = []
        self._scripts: dict[str | None, FakeRun] = {None: FakeRun()}
        self._specs: dict[str, ContainerSpec] = {}
        self._kill_events: dict[str, asyncio.Event] = {}
        # Workspace contents seen by each container when it started
        self.workspace_listing: dict[str, list[str]] = {}

    def script(self, session_id: str | None = None, **kwargs) -> FakeRun:
        """Script runs for one session, or for every session when session_id is None."""
        run = FakeRun(**kwargs)
        self._scripts[session_id] = run
        return run

    def _run_for(self, spec: ContainerSpec) -> FakeRun:
        session_id = spec.env.get("SANDBOX_SESSION_ID")
        return self._scripts.get(session_id, self._scripts[None])

    @property
    def live_containers(self) -> set[str]:
        """Containers created but not yet removed."""
        return {spec.name for spec in self.created} - set(self.removed)

    async def create(self, spec: ContainerSpec) -> ContainerHandle:
        if self.fail_create:
            raise ContainerLaunchError(f"Failed to create container from image {spec.image}")
        if self.create_delay:
            try:
                await asyncio.sleep(self.create_delay)
            except asyncio.CancelledError:
                self.create_cancelled.append(spec.name)
                raise
        self.created.append(spec)
        self._specs[spec.name] = spec
        return ContainerHandle(
            name=spec.name,
            resource_limits=spec.limits,
            mounts=[spec.mount],
            network_mode=spec.network_mode,
            id=f"cid-{len(self.created)}",
        )

    async def start(self, handle: ContainerHandle, on_output) -> int:
        run = self._run_for(self._specs[handle.name])
        if run.fail_start:
            handle.state = ContainerState.FAILED
            raise ContainerLaunchError(f"Container {handle.name} failed to start")

        self.started.append(handle.name)
        self.workspace_listing[handle.name] = sorted(os.listdir(handle.mounts[0].host_path))
        self.running.add(handle.name)
        try:
            for data in run.stdout:
                on_output(OutputStream.STDOUT, data)
                await asyncio.sleep(0)
            for data in run.stderr:
                on_output(OutputStream.STDERR, data)
                await asyncio.sleep(0)
            if run.hang:
                event = self._kill_events.setdefault(handle.name, asyncio.Event())
                await event.wait()
                return self.KILLED_EXIT_CODE
            return run.exit_code
        finally:
            self.running.discard(handle.name)

    async def kill(self, handle: ContainerHandle) -> bool:
        self.killed.append(handle.name)
        event = self._kill_events.setdefault(handle.name, asyncio.Event())
        event.set()
        return handle.name in self.running

    async def remove(self, handle: ContainerHandle) -> bool:
        self.removed.append(handle.name)
        handle.state = ContainerState.REMOVED
        return True

    async def reap_orphans(self, keep_instances=()) -> int:
        self.reap_calls += 1
        self.reap_keep.append(set(keep_instances))
        return self.orphans

    async def is_available(self) -> bool:
        return self.available


class FakeRedis:
    """In-memory stand-in for a redis.asyncio client."""

    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = fail
        self.closed = False
        self.get_calls = 0
        self.set_calls = 0

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self.get_calls += 1
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.set_calls += 1
        self._check()
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def runtime():
    """A recording fake container runtime."""
    return FakeRuntime()


@pytest.fixture
def fake_redis():
    """An in-memory Redis client."""
    return FakeRedis()


@pytest.fixture
def settings(tmp_path):
    """Settings pointing the workspace root at a temporary directory."""
    settings = Settings()
    settings.sandbox.workspace_root = str(tmp_path / "sandbox")
    settings.sandbox.default_timeout_ms = 5000
    return settings


@pytest.fixture
def cache(fake_redis):
    """A result cache backed by the in-memory Redis."""
    return ResultCache(client=fake_redis, ttl_seconds=60)


@pytest.fixture
def relay():
    """An unbounded output relay."""
    return OutputRelay()


@pytest.fixture
def manager(runtime, cache, relay, settings):
    """A SandboxManager wired with fakes."""
    return SandboxManager(
        runtime=runtime,
        workspaces=WorkspaceStore(settings.sandbox.workspace_root),
        cache=cache,
        relay=relay,
        gate=create_safety_gate(),
        settings=settings.sandbox,
        safety=settings.safety,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def until():
    """Async helper that polls a predicate."""
    return wait_until
