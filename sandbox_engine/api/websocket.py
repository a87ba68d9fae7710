"""
WebSocket Manager for the sandbox engine

This module bridges the output relay to WebSocket clients:
- One relay subscription per connected client
- Live stdout/stderr chunks for the subscribed session
- A closing message when the session is cleaned up
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from ..streaming.relay import OutputRelay, Subscription

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Types of WebSocket messages."""
    CONNECTED = "connected"
    OUTPUT = "output"
    SESSION_CLOSED = "session_closed"
    ERROR = "error"


@dataclass
class WebSocketMessage:
    """A control message sent to a WebSocket client."""
    type: MessageType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    session_id: str | None = None

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps({
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
        })


class ConnectionManager:
    """
    Manages WebSocket subscribers of the output relay.

    Supports:
    - Multiple connections per session
    - Per-connection relay subscriptions
    - Clean unsubscribe on disconnect
    """

    def __init__(self, relay: OutputRelay):
        self.relay = relay
        self.session_connections: dict[str, list[WebSocket]] = {}
        self._subscriptions: dict[WebSocket, Subscription] = {}

    async def connect(self, websocket: WebSocket, session_id: str) -> Subscription:
        """Accept a connection and subscribe it to a session."""
        await websocket.accept()

        subscription = self.relay.subscribe(session_id)
        self._subscriptions[websocket] = subscription
        self.session_connections.setdefault(session_id, []).append(websocket)

        await websocket.send_text(WebSocketMessage(
            type=MessageType.CONNECTED,
            data={"message": "Subscribed to sandbox output"},
            session_id=session_id,
        ).to_json())
        return subscription

    def disconnect(self, websocket: WebSocket) -> None:
        """Unsubscribe a connection. Safe to call more than once."""
        subscription = self._subscriptions.pop(websocket, None)
        if subscription is None:
            return
        subscription.close()

        connections = self.session_connections.get(subscription.session_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.session_connections.pop(subscription.session_id, None)

    async def stream_session(self, websocket: WebSocket, session_id: str) -> None:
        """
        Forward a session's output to a client until either side goes away.
        """
        subscription = await self.connect(websocket, session_id)

        async def forward() -> None:
            async for chunk in subscription:
                await websocket.send_text(json.dumps(chunk.to_dict()))

        async def watch_client() -> None:
            # Clients do not send anything meaningful; this detects disconnects
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return

        forward_task = asyncio.create_task(forward())
        watch_task = asyncio.create_task(watch_client())
        try:
            done, pending = await asyncio.wait(
                {forward_task, watch_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            if forward_task in done and forward_task.exception() is None:
                # Relay closed the session
                await websocket.send_text(WebSocketMessage(
                    type=MessageType.SESSION_CLOSED,
                    session_id=session_id,
                ).to_json())
                await websocket.close()
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("WebSocket closed while streaming", extra={"session_id": session_id})
        finally:
            self.disconnect(websocket)

    def get_connection_count(self) -> int:
        """Get total number of active connections."""
        return len(self._subscriptions)

    def get_session_connection_count(self, session_id: str) -> int:
        """Get number of connections for a session."""
        return len(self.session_connections.get(session_id, []))
