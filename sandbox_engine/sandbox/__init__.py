"""
Sandbox Module for the sandbox engine

This module provides the isolation primitives used by the manager:
- Ephemeral per-execution workspaces on local storage
- Single-use Docker containers with quotas and no network
- The runtime image definition
"""

from .docker_runtime import (
    ContainerHandle,
    ContainerRuntime,
    ContainerSpec,
    ContainerState,
    DockerCliRuntime,
    Mount,
    ResourceLimits,
    build_create_args,
)
from .image import (
    DEFAULT_IMAGE_NAME,
    DOCKERFILE_CONTENT,
    build_runtime_image,
    generate_dockerfile,
)
from .workspace import Workspace, WorkspaceStore

__all__ = [
    "ContainerHandle",
    "ContainerRuntime",
    "ContainerSpec",
    "ContainerState",
    "DockerCliRuntime",
    "Mount",
    "ResourceLimits",
    "build_create_args",
    "DEFAULT_IMAGE_NAME",
    "DOCKERFILE_CONTENT",
    "build_runtime_image",
    "generate_dockerfile",
    "Workspace",
    "WorkspaceStore",
]
