"""
API Module for the sandbox engine

This module provides the HTTP and WebSocket surface:
- REST endpoints for execution, sessions, files, processes and stats
- WebSocket streaming of live execution output
"""

from .app import create_app
from .routes import router
from .websocket import ConnectionManager, MessageType, WebSocketMessage

__all__ = [
    "create_app",
    "router",
    "ConnectionManager",
    "MessageType",
    "WebSocketMessage",
]
