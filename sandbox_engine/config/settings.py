"""
Settings Configuration for the sandbox engine

This module provides centralized settings management with:
- Environment variable loading
- Default values
- Validation
"""

import os
import tempfile
from dataclasses import dataclass, field
from typing import Any


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class SandboxSettings:
    """Container and workspace settings."""

    image: str = "sandbox-engine-runtime:latest"

    # Resource limits
    memory_limit: str = "512m"
    cpu_limit: float = 1.0
    pids_limit: int = 128
    tmpfs_size: str = "64m"

    default_timeout_ms: int = 30000

    # Workspace
    workspace_root: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "sandbox-engine")
    )
    container_workdir: str = "/workspace"

    # Always isolated; kept as a field so it shows up in to_dict()/logs
    network_mode: str = "none"
    run_as_user: str | None = None

    docker_binary: str = "docker"
    python_binary: str = "python3"
    node_binary: str = "node"

    max_output_bytes: int = 1048576  # 1MB per stream

    @classmethod
    def from_env(cls) -> "SandboxSettings":
        """Load sandbox settings from environment variables."""
        return cls(
            image=os.environ.get("SANDBOX_IMAGE", "sandbox-engine-runtime:latest"),
            memory_limit=os.environ.get("SANDBOX_MEMORY_LIMIT", "512m"),
            cpu_limit=float(os.environ.get("SANDBOX_CPU_LIMIT", "1.0")),
            pids_limit=int(os.environ.get("SANDBOX_PIDS_LIMIT", "128")),
            tmpfs_size=os.environ.get("SANDBOX_TMPFS_SIZE", "64m"),
            default_timeout_ms=int(os.environ.get("SANDBOX_DEFAULT_TIMEOUT_MS", "30000")),
            workspace_root=os.environ.get(
                "SANDBOX_WORKSPACE_ROOT",
                os.path.join(tempfile.gettempdir(), "sandbox-engine"),
            ),
            container_workdir=os.environ.get("SANDBOX_CONTAINER_WORKDIR", "/workspace"),
            run_as_user=os.environ.get("SANDBOX_RUN_AS_USER") or None,
            docker_binary=os.environ.get("DOCKER_BINARY", "docker"),
            python_binary=os.environ.get("SANDBOX_PYTHON_BINARY", "python3"),
            node_binary=os.environ.get("SANDBOX_NODE_BINARY", "node"),
            max_output_bytes=int(os.environ.get("SANDBOX_MAX_OUTPUT_BYTES", "1048576")),
        )


@dataclass
class CacheSettings:
    """Result cache settings. No URL means caching is disabled."""

    redis_url: str | None = None
    ttl_seconds: int = 3600
    key_prefix: str = "sandbox:exec:"
    socket_timeout: float = 1.0

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    @classmethod
    def from_env(cls) -> "CacheSettings":
        """Load cache settings from environment variables."""
        return cls(
            redis_url=os.environ.get("REDIS_URL") or None,
            ttl_seconds=int(os.environ.get("CACHE_TTL_SECONDS", "3600")),
            key_prefix=os.environ.get("CACHE_KEY_PREFIX", "sandbox:exec:"),
            socket_timeout=float(os.environ.get("CACHE_SOCKET_TIMEOUT", "1.0")),
        )


@dataclass
class SafetySettings:
    """Safety gate settings."""

    enabled: bool = True
    gate_shell: bool = True
    extra_patterns: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "SafetySettings":
        """Load safety settings from environment variables."""
        extra = os.environ.get("SAFETY_EXTRA_PATTERNS", "")
        return cls(
            enabled=_env_bool("SAFETY_GATE_ENABLED", "true"),
            gate_shell=_env_bool("SAFETY_GATE_SHELL", "true"),
            extra_patterns=[p.strip() for p in extra.split(",") if p.strip()],
        )


@dataclass
class ServerSettings:
    """HTTP server and logging settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    max_concurrent_sessions: int = 5
    relay_queue_size: int = 0
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        """Load server settings from environment variables."""
        return cls(
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "8000")),
            max_concurrent_sessions=int(os.environ.get("MAX_CONCURRENT_SESSIONS", "5")),
            relay_queue_size=int(os.environ.get("RELAY_QUEUE_SIZE", "0")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("LOG_FORMAT", "json").lower(),
        )


@dataclass
class Settings:
    """
    Centralized settings for the sandbox engine.

    Combines all setting categories and provides validation.
    """

    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load all settings from environment variables."""
        return cls(
            sandbox=SandboxSettings.from_env(),
            cache=CacheSettings.from_env(),
            safety=SafetySettings.from_env(),
            server=ServerSettings.from_env(),
        )

    def validate(self) -> list[str]:
        """
        Validate settings and return list of errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.sandbox.image:
            errors.append("SANDBOX_IMAGE must not be empty.")

        if self.sandbox.cpu_limit <= 0:
            errors.append("SANDBOX_CPU_LIMIT must be positive.")

        if self.sandbox.pids_limit < 10:
            errors.append("SANDBOX_PIDS_LIMIT must be at least 10.")

        if self.sandbox.default_timeout_ms < 1:
            errors.append("SANDBOX_DEFAULT_TIMEOUT_MS must be at least 1.")

        if self.sandbox.network_mode != "none":
            errors.append("Sandbox network mode must be 'none'.")

        if not os.path.isabs(self.sandbox.container_workdir):
            errors.append("SANDBOX_CONTAINER_WORKDIR must be an absolute path.")

        if self.cache.ttl_seconds < 1:
            errors.append("CACHE_TTL_SECONDS must be at least 1.")

        if self.server.max_concurrent_sessions < 1:
            errors.append("MAX_CONCURRENT_SESSIONS must be at least 1.")

        if self.server.log_format not in ("json", "text"):
            errors.append("LOG_FORMAT must be 'json' or 'text'.")

        return errors

    def is_valid(self) -> bool:
        """Check if settings are valid."""
        return len(self.validate()) == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary for logging."""
        return {
            "sandbox": {
                "image": self.sandbox.image,
                "memory_limit": self.sandbox.memory_limit,
                "cpu_limit": self.sandbox.cpu_limit,
                "pids_limit": self.sandbox.pids_limit,
                "default_timeout_ms": self.sandbox.default_timeout_ms,
                "workspace_root": self.sandbox.workspace_root,
                "network_mode": self.sandbox.network_mode,
            },
            "cache": {
                "enabled": self.cache.enabled,
                "ttl_seconds": self.cache.ttl_seconds,
                "key_prefix": self.cache.key_prefix,
            },
            "safety": {
                "enabled": self.safety.enabled,
                "gate_shell": self.safety.gate_shell,
                "extra_patterns": len(self.safety.extra_patterns),
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "max_concurrent_sessions": self.server.max_concurrent_sessions,
                "log_level": self.server.log_level,
                "log_format": self.server.log_format,
            },
        }


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Settings are loaded from environment variables on first access.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment variables."""
    global _settings
    _settings = Settings.from_env()
    return _settings
