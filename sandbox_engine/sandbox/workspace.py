"""
Workspace Store for the sandbox engine

Every execution gets a freshly created, uniquely named directory under the
workspace root. The directory is bind-mounted into exactly one container
and deleted when that container is gone. Session directories (created by
`create_session`) live next to them under `sessions/` until the session is
cleaned up.

Several processes may share one workspace root. Each store owns a private
subtree `instances/<instance_id>/` holding an `owner.pid` file, and only
subtrees whose owner process is gone are swept at startup.
"""

import asyncio
import hashlib
import logging
import os
import re
import shutil
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ..errors import PathTraversalError, WorkspaceAllocationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

OWNER_FILE = "owner.pid"


def _safe_name(value: str) -> str:
    """Reduce a caller-supplied id to a filesystem-safe directory name."""
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned[:48] or "session"


def _session_dir_name(session_id: str) -> str:
    """Readable prefix plus a digest of the raw id, so distinct ids never share a directory."""
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:16]
    return f"{_safe_name(session_id)}-{digest}"


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def _read_owner(instance_dir: Path) -> int | None:
    try:
        return int((instance_dir / OWNER_FILE).read_text().strip())
    except (OSError, ValueError):
        return None


@dataclass
class Workspace:
    """A directory owned by exactly one execution."""
    id: str
    host_path: Path
    session_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WorkspaceStore:
    """Allocates and destroys execution workspaces and session directories."""

    INSTANCES_DIR = "instances"
    EXECUTIONS_DIR = "executions"
    SESSIONS_DIR = "sessions"

    def __init__(self, root: str | os.PathLike, instance_id: str | None = None):
        self.root = Path(root).resolve()
        self.instance_id = instance_id or uuid.uuid4().hex[:12]
        self.instances_root = self.root / self.INSTANCES_DIR
        self.instance_root = self.instances_root / self.instance_id
        self.executions_root = self.instance_root / self.EXECUTIONS_DIR
        self.sessions_root = self.instance_root / self.SESSIONS_DIR
        self._registered = False

    def initialize(self) -> None:
        """Create this instance's directories and record the owning process."""
        try:
            self._register()
            self.executions_root.mkdir(parents=True, exist_ok=True)
            self.sessions_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceAllocationError(
                f"Cannot create workspace root {self.root}: {e}",
                root=str(self.root),
            ) from e

    def _register(self) -> None:
        if self._registered:
            return
        self.instance_root.mkdir(parents=True, exist_ok=True)
        (self.instance_root / OWNER_FILE).write_text(str(os.getpid()))
        self._registered = True

    async def allocate(self, session_id: str) -> Workspace:
        """
        Create an empty, uniquely named workspace.

        Raises:
            WorkspaceAllocationError: if the directory cannot be created.
        """
        workspace_id = f"{_safe_name(session_id)}-{uuid.uuid4().hex[:12]}"
        host_path = self.executions_root / workspace_id
        try:
            await asyncio.to_thread(self._create_dir, host_path)
        except OSError as e:
            raise WorkspaceAllocationError(
                f"Failed to allocate workspace {workspace_id}: {e}",
                workspace_id=workspace_id,
            ) from e

        logger.debug(
            f"Allocated workspace {host_path}",
            extra={"session_id": session_id, "workspace_id": workspace_id},
        )
        return Workspace(id=workspace_id, host_path=host_path, session_id=session_id)

    def _create_dir(self, path: Path) -> None:
        self._register()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.mkdir(exist_ok=False)
        # Container user may differ from the host user
        os.chmod(path, 0o777)

    async def release(self, workspace: Workspace) -> None:
        """Recursively delete a workspace. Deleting a missing workspace is a no-op."""
        await asyncio.to_thread(self._remove_tree, workspace.host_path)

    @staticmethod
    def _remove_tree(path: Path) -> None:
        if not path.exists():
            return

        def _retry_writable(func, failed_path, _exc):
            # Files created read-only inside the container
            os.chmod(failed_path, 0o700)
            func(failed_path)

        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_retry_writable)
        else:
            shutil.rmtree(path, onerror=_retry_writable)

    async def seed(self, workspace: Workspace, source: Path) -> None:
        """Copy the contents of a session directory into a workspace."""
        if not source.is_dir():
            return
        await asyncio.to_thread(
            shutil.copytree, source, workspace.host_path, dirs_exist_ok=True, symlinks=True
        )

    # Session directories

    def session_path(self, session_id: str) -> Path:
        return self.sessions_root / _session_dir_name(session_id)

    async def create_session_dir(self, session_id: str) -> Path:
        path = self.session_path(session_id)

        def _create() -> None:
            self._register()
            path.mkdir(parents=True, exist_ok=True)

        try:
            await asyncio.to_thread(_create)
        except OSError as e:
            raise WorkspaceAllocationError(
                f"Failed to create session directory for {session_id}: {e}",
                session_id=session_id,
            ) from e
        return path

    async def remove_session_dir(self, session_id: str) -> bool:
        path = self.session_path(session_id)
        if not path.exists():
            return False
        await asyncio.to_thread(self._remove_tree, path)
        return True

    @staticmethod
    def resolve_inside(base: Path, relative: str) -> Path:
        """
        Resolve `relative` under `base`, refusing anything that escapes it.

        Raises:
            PathTraversalError: if the resolved path is outside `base`.
        """
        base = base.resolve()
        target = (base / relative.lstrip("/")).resolve() if relative else base
        if target != base and base not in target.parents:
            raise PathTraversalError(
                f"Invalid path '{relative}': directory traversal detected",
                path=relative,
            )
        return target

    # Instances sharing the root

    def live_instances(self) -> set[str]:
        """Ids of instances under the root whose owning process is still running."""
        live = {self.instance_id}
        if not self.instances_root.exists():
            return live
        for entry in self.instances_root.iterdir():
            if not entry.is_dir():
                continue
            pid = _read_owner(entry)
            if pid is not None and _process_alive(pid):
                live.add(entry.name)
        return live

    def sweep_stale(self) -> int:
        """Delete the subtrees of instances whose owning process has exited."""
        if not self.instances_root.exists():
            return 0
        live = self.live_instances()
        removed = 0
        for entry in self.instances_root.iterdir():
            if not entry.is_dir() or entry.name in live:
                continue
            try:
                self._remove_tree(entry)
                removed += 1
            except OSError:
                logger.warning(f"Could not remove stale workspace {entry}", exc_info=True)
        return removed

    def close(self) -> None:
        """Delete this instance's subtree, session directories included."""
        self._remove_tree(self.instance_root)
        self._registered = False

    def active_count(self) -> int:
        if not self.executions_root.exists():
            return 0
        return sum(1 for entry in self.executions_root.iterdir() if entry.is_dir())
