"""
Configuration Module for the sandbox engine

This module provides configuration management including:
- Container image and resource quotas
- Result cache connection
- Safety gate toggles
- Server and logging options
"""

from .settings import (
    CacheSettings,
    SafetySettings,
    SandboxSettings,
    ServerSettings,
    Settings,
    get_settings,
    reload_settings,
)

__all__ = [
    "CacheSettings",
    "SafetySettings",
    "SandboxSettings",
    "ServerSettings",
    "Settings",
    "get_settings",
    "reload_settings",
]
