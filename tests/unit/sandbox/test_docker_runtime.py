"""Unit tests for the docker CLI runtime adapter."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from sandbox_engine.errors import ContainerLaunchError
from sandbox_engine.sandbox.docker_runtime import (
    INSTANCE_LABEL,
    MANAGED_LABEL,
    ContainerHandle,
    ContainerSpec,
    ContainerState,
    DockerCliRuntime,
    Mount,
    ResourceLimits,
    build_create_args,
)
from sandbox_engine.schemas.execution import OutputStream


def _spec(**overrides) -> ContainerSpec:
    values = dict(
        image="sandbox-engine-runtime:latest",
        argv=["sh", "-c", "echo hi"],
        mount=Mount(host_path="/tmp/ws-1", container_path="/workspace"),
        limits=ResourceLimits(memory="256m", cpus=0.5, pids=64),
        name="sandbox-abc",
        labels={"sandbox-engine.session": "s1"},
        env={"SANDBOX_SESSION_ID": "s1"},
    )
    values.update(overrides)
    return ContainerSpec(**values)


def _handle(name: str = "sandbox-abc") -> ContainerHandle:
    return ContainerHandle(
        name=name,
        resource_limits=ResourceLimits(),
        mounts=[Mount(host_path="/tmp/ws-1", container_path="/workspace")],
        id="deadbeef",
    )


def _pair(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


class FakeStream:
    """Minimal asyncio.StreamReader replacement."""

    def __init__(self, chunks: list[bytes]):
        self._chunks = list(chunks)

    async def read(self, n: int) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


class TestBuildCreateArgs:
    """Tests for the docker create argument vector."""

    def test_isolation_flags(self):
        """Test every container is created isolated and bounded."""
        args = build_create_args(_spec())

        assert args[:2] == ["docker", "create"]
        assert _pair(args, "--network") == "none"
        assert _pair(args, "--memory") == "256m"
        assert _pair(args, "--memory-swap") == "256m"
        assert _pair(args, "--cpus") == "0.5"
        assert _pair(args, "--pids-limit") == "64"
        assert _pair(args, "--cap-drop") == "ALL"
        assert _pair(args, "--security-opt") == "no-new-privileges:true"
        assert "--init" in args
        assert "--privileged" not in args

    def test_mount_and_workdir(self):
        """Test the workspace is the only bind mount and the working directory."""
        args = build_create_args(_spec())

        assert _pair(args, "-v") == "/tmp/ws-1:/workspace:rw"
        assert args.count("-v") == 1
        assert _pair(args, "-w") == "/workspace"
        assert _pair(args, "--tmpfs").startswith("/tmp:")

    def test_labels_env_and_command(self):
        """Test labels, environment and argv placement."""
        args = build_create_args(_spec(user="1000:1000"))

        assert f"{MANAGED_LABEL}=true" in args
        assert "sandbox-engine.session=s1" in args
        assert _pair(args, "-e") == "SANDBOX_SESSION_ID=s1"
        assert _pair(args, "--user") == "1000:1000"
        image_index = args.index("sandbox-engine-runtime:latest")
        assert args[image_index + 1:] == ["sh", "-c", "echo hi"]

    def test_payload_is_not_reparsed(self):
        """Test payloads stay a single argv element."""
        code = "print('x'); import os"
        args = build_create_args(_spec(argv=["python3", "-c", code]))
        assert args[-1] == code

    def test_custom_binary(self):
        """Test the docker binary can be replaced (e.g. podman)."""
        assert build_create_args(_spec(), "podman")[0] == "podman"


class TestDockerCliRuntime:
    """Tests for DockerCliRuntime with the docker CLI mocked out."""

    @pytest.mark.asyncio
    async def test_create_returns_handle(self):
        """Test create records the container id."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(0, "deadbeef\n", ""))

        handle = await runtime.create(_spec())

        assert handle.id == "deadbeef"
        assert handle.name == "sandbox-abc"
        assert handle.network_mode == "none"
        assert handle.state == ContainerState.CREATED
        assert runtime._run.call_args.args[0] == "create"

    @pytest.mark.asyncio
    async def test_create_failure(self):
        """Test a failed docker create raises ContainerLaunchError."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(125, "", "Unable to find image"))

        with pytest.raises(ContainerLaunchError) as exc_info:
            await runtime.create(_spec())
        assert "Unable to find image" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        """Test a missing docker binary raises ContainerLaunchError."""
        runtime = DockerCliRuntime("definitely-not-a-docker-binary")
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("not found")),
        ):
            with pytest.raises(ContainerLaunchError):
                await runtime.create(_spec())

    @pytest.mark.asyncio
    async def test_start_streams_output(self):
        """Test start pumps both streams and returns the container exit code."""
        runtime = DockerCliRuntime()
        process = MagicMock()
        process.stdout = FakeStream([b"hel", b"lo\n"])
        # A multi-byte character split across reads
        process.stderr = FakeStream(["é".encode()[:1], "é".encode()[1:]])
        process.wait = AsyncMock(return_value=0)
        process.returncode = 0
        runtime._run = AsyncMock(return_value=(0, json.dumps({"ExitCode": 2}), ""))

        received = []
        handle = _handle()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            exit_code = await runtime.start(handle, lambda s, d: received.append((s, d)))

        assert exit_code == 2
        assert handle.state == ContainerState.EXITED
        assert "".join(d for s, d in received if s == OutputStream.STDOUT) == "hello\n"
        assert "".join(d for s, d in received if s == OutputStream.STDERR) == "é"

    @pytest.mark.asyncio
    async def test_start_reports_oom(self):
        """Test an OOM-killed container sets an error on the handle."""
        runtime = DockerCliRuntime()
        process = MagicMock()
        process.stdout = FakeStream([])
        process.stderr = FakeStream([])
        process.wait = AsyncMock(return_value=137)
        runtime._run = AsyncMock(
            return_value=(0, json.dumps({"ExitCode": 137, "OOMKilled": True}), "")
        )

        handle = _handle()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            assert await runtime.start(handle, lambda s, d: None) == 137
        assert "memory" in handle.error

    @pytest.mark.asyncio
    async def test_start_error_state(self):
        """Test a container whose process could not start raises."""
        runtime = DockerCliRuntime()
        process = MagicMock()
        process.stdout = FakeStream([])
        process.stderr = FakeStream([])
        process.wait = AsyncMock(return_value=127)
        runtime._run = AsyncMock(
            return_value=(0, json.dumps({"ExitCode": 127, "Error": "exec: not found"}), "")
        )

        handle = _handle()
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(ContainerLaunchError):
                await runtime.start(handle, lambda s, d: None)
        assert handle.state == ContainerState.FAILED

    @pytest.mark.asyncio
    async def test_start_cancel_kills_attach_client(self):
        """Test cancelling start terminates the attach process."""
        runtime = DockerCliRuntime()
        process = MagicMock()
        blocked = asyncio.Event()

        class BlockingStream:
            async def read(self, n):
                await blocked.wait()
                return b""

        process.stdout = BlockingStream()
        process.stderr = BlockingStream()
        process.returncode = None
        process.wait = AsyncMock(return_value=-9)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(runtime.start(_handle(), lambda s, d: None), 0.05)

        process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_remove(self):
        """Test remove force-removes the container."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(0, "", ""))
        handle = _handle()

        assert await runtime.remove(handle) is True
        assert handle.state == ContainerState.REMOVED
        runtime._run.assert_awaited_once_with("rm", "--force", "--volumes", "deadbeef")

    @pytest.mark.asyncio
    async def test_remove_missing_container(self):
        """Test removing an already removed container is not an error."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(1, "", "Error: No such container: deadbeef"))

        assert await runtime.remove(_handle()) is False

    @pytest.mark.asyncio
    async def test_remove_failure_raises(self):
        """Test other removal failures are raised."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(1, "", "daemon unavailable"))

        with pytest.raises(ContainerLaunchError):
            await runtime.remove(_handle())

    @pytest.mark.asyncio
    async def test_kill(self):
        """Test kill reports whether the container was running."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(0, "", ""))
        assert await runtime.kill(_handle()) is True

        runtime._run = AsyncMock(return_value=(1, "", "is not running"))
        assert await runtime.kill(_handle()) is False

    @pytest.mark.asyncio
    async def test_reap_orphans(self):
        """Test managed containers of dead instances are found by label and removed."""
        runtime = DockerCliRuntime()
        listing = "aaa dead-instance\nbbb\nccc live-instance\n"
        runtime._run = AsyncMock(side_effect=[(0, listing, ""), (0, "", "")])

        assert await runtime.reap_orphans({"live-instance"}) == 2
        list_call, rm_call = runtime._run.await_args_list
        assert f"label={MANAGED_LABEL}=true" in list_call.args
        assert any(INSTANCE_LABEL in arg for arg in list_call.args)
        assert rm_call.args == ("rm", "--force", "--volumes", "aaa", "bbb")

    @pytest.mark.asyncio
    async def test_reap_orphans_none(self):
        """Test nothing is removed when every container has a live owner."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(0, "aaa live-instance\n", ""))

        assert await runtime.reap_orphans({"live-instance"}) == 0
        runtime._run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_command_kills_cli(self):
        """Test a docker command interrupted by a deadline does not keep running."""
        runtime = DockerCliRuntime()
        process = MagicMock()
        blocked = asyncio.Event()

        async def communicate():
            await blocked.wait()
            return b"", b""

        process.communicate = communicate
        process.returncode = None
        process.wait = AsyncMock(return_value=-9)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(runtime.create(_spec()), 0.05)

        process.kill.assert_called_once()
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_is_available(self):
        """Test availability checks."""
        runtime = DockerCliRuntime()
        runtime._run = AsyncMock(return_value=(0, "27.0.1", ""))
        assert await runtime.is_available() is True

        runtime._run = AsyncMock(side_effect=ContainerLaunchError("missing"))
        assert await runtime.is_available() is False
