"""Unit tests for settings."""

import os
from unittest.mock import patch

import pytest

from sandbox_engine.config.settings import (
    CacheSettings,
    SafetySettings,
    SandboxSettings,
    ServerSettings,
    Settings,
    get_settings,
    reload_settings,
)


class TestSandboxSettings:
    """Tests for SandboxSettings."""

    def test_defaults(self):
        """Test default container settings."""
        settings = SandboxSettings()
        assert settings.image == "sandbox-engine-runtime:latest"
        assert settings.memory_limit == "512m"
        assert settings.cpu_limit == 1.0
        assert settings.default_timeout_ms == 30000
        assert settings.network_mode == "none"
        assert settings.container_workdir == "/workspace"
        assert settings.run_as_user is None

    def test_from_env(self):
        """Test loading container settings from the environment."""
        env = {
            "SANDBOX_IMAGE": "custom:1",
            "SANDBOX_MEMORY_LIMIT": "1g",
            "SANDBOX_CPU_LIMIT": "2.5",
            "SANDBOX_PIDS_LIMIT": "64",
            "SANDBOX_DEFAULT_TIMEOUT_MS": "1500",
            "SANDBOX_WORKSPACE_ROOT": "/srv/sandbox",
            "SANDBOX_RUN_AS_USER": "1000:1000",
            "DOCKER_BINARY": "podman",
        }
        with patch.dict(os.environ, env):
            settings = SandboxSettings.from_env()

        assert settings.image == "custom:1"
        assert settings.memory_limit == "1g"
        assert settings.cpu_limit == 2.5
        assert settings.pids_limit == 64
        assert settings.default_timeout_ms == 1500
        assert settings.workspace_root == "/srv/sandbox"
        assert settings.run_as_user == "1000:1000"
        assert settings.docker_binary == "podman"


class TestCacheSettings:
    """Tests for CacheSettings."""

    def test_disabled_without_url(self):
        """Test caching is disabled when no URL is set."""
        with patch.dict(os.environ, {}, clear=True):
            settings = CacheSettings.from_env()
        assert settings.redis_url is None
        assert settings.enabled is False

    def test_from_env(self):
        """Test loading cache settings from the environment."""
        env = {"REDIS_URL": "redis://localhost:6379/0", "CACHE_TTL_SECONDS": "120"}
        with patch.dict(os.environ, env):
            settings = CacheSettings.from_env()
        assert settings.enabled is True
        assert settings.ttl_seconds == 120
        assert settings.key_prefix == "sandbox:exec:"


class TestSafetySettings:
    """Tests for SafetySettings."""

    def test_from_env(self):
        """Test boolean flags and extra patterns."""
        env = {
            "SAFETY_GATE_ENABLED": "true",
            "SAFETY_GATE_SHELL": "false",
            "SAFETY_EXTRA_PATTERNS": r"\bcurl\b, \bwget\b ,",
        }
        with patch.dict(os.environ, env):
            settings = SafetySettings.from_env()
        assert settings.enabled is True
        assert settings.gate_shell is False
        assert settings.extra_patterns == [r"\bcurl\b", r"\bwget\b"]


class TestServerSettings:
    """Tests for ServerSettings."""

    def test_from_env(self):
        """Test loading server settings from the environment."""
        env = {
            "PORT": "9000",
            "MAX_CONCURRENT_SESSIONS": "2",
            "LOG_LEVEL": "debug",
            "LOG_FORMAT": "TEXT",
        }
        with patch.dict(os.environ, env):
            settings = ServerSettings.from_env()
        assert settings.port == 9000
        assert settings.max_concurrent_sessions == 2
        assert settings.log_level == "DEBUG"
        assert settings.log_format == "text"


class TestSettingsValidation:
    """Tests for Settings.validate."""

    def test_defaults_are_valid(self):
        """Test default settings validate."""
        assert Settings().is_valid() is True

    @pytest.mark.parametrize("mutate, message", [
        (lambda s: setattr(s.sandbox, "image", ""), "SANDBOX_IMAGE"),
        (lambda s: setattr(s.sandbox, "cpu_limit", 0), "SANDBOX_CPU_LIMIT"),
        (lambda s: setattr(s.sandbox, "pids_limit", 1), "SANDBOX_PIDS_LIMIT"),
        (lambda s: setattr(s.sandbox, "default_timeout_ms", 0), "SANDBOX_DEFAULT_TIMEOUT_MS"),
        (lambda s: setattr(s.sandbox, "network_mode", "bridge"), "network mode"),
        (lambda s: setattr(s.sandbox, "container_workdir", "workspace"), "SANDBOX_CONTAINER_WORKDIR"),
        (lambda s: setattr(s.cache, "ttl_seconds", 0), "CACHE_TTL_SECONDS"),
        (lambda s: setattr(s.server, "max_concurrent_sessions", 0), "MAX_CONCURRENT_SESSIONS"),
        (lambda s: setattr(s.server, "log_format", "xml"), "LOG_FORMAT"),
    ])
    def test_invalid_values(self, mutate, message):
        """Test each invalid value is reported."""
        settings = Settings()
        mutate(settings)
        errors = settings.validate()
        assert any(message in error for error in errors)
        assert settings.is_valid() is False

    def test_to_dict(self):
        """Test to_dict never exposes the cache URL."""
        settings = Settings()
        settings.cache.redis_url = "redis://:secret@cache:6379/0"

        data = settings.to_dict()

        assert data["sandbox"]["network_mode"] == "none"
        assert data["cache"]["enabled"] is True
        assert "secret" not in str(data)


class TestGlobalSettings:
    """Tests for the lazily created settings instance."""

    def test_get_settings_is_cached(self):
        """Test get_settings returns the same instance."""
        assert get_settings() is get_settings()

    def test_reload_settings(self):
        """Test reload_settings re-reads the environment."""
        with patch.dict(os.environ, {"PORT": "8123"}):
            settings = reload_settings()
            assert settings.server.port == 8123
            assert get_settings() is settings
        reload_settings()
