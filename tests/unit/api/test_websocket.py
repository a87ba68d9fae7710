"""Unit tests for the WebSocket connection manager."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sandbox_engine.api.websocket import ConnectionManager, MessageType, WebSocketMessage
from sandbox_engine.schemas.execution import OutputStream
from sandbox_engine.streaming.relay import OutputRelay


def _websocket() -> MagicMock:
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_text = AsyncMock()
    return websocket


class TestWebSocketMessage:
    """Tests for control messages."""

    def test_to_json(self):
        """Test message serialization."""
        message = WebSocketMessage(type=MessageType.SESSION_CLOSED, session_id="s1")

        data = json.loads(message.to_json())

        assert data["type"] == "session_closed"
        assert data["session_id"] == "s1"
        assert data["data"] == {}


class TestConnectionManager:
    """Tests for ConnectionManager."""

    @pytest.mark.asyncio
    async def test_connect_subscribes(self):
        """Test connecting accepts, subscribes and greets the client."""
        relay = OutputRelay()
        manager = ConnectionManager(relay)
        websocket = _websocket()

        subscription = await manager.connect(websocket, "s1")

        websocket.accept.assert_awaited_once()
        greeting = json.loads(websocket.send_text.await_args.args[0])
        assert greeting["type"] == "connected"
        assert relay.subscriber_count("s1") == 1
        assert manager.get_session_connection_count("s1") == 1

        relay.publish("s1", "e1", OutputStream.STDOUT, "x")
        assert (await subscription.get(timeout=1)).data == "x"

    @pytest.mark.asyncio
    async def test_disconnect_unsubscribes(self):
        """Test disconnecting twice is safe and removes the subscription."""
        relay = OutputRelay()
        manager = ConnectionManager(relay)
        websocket = _websocket()
        await manager.connect(websocket, "s1")

        manager.disconnect(websocket)
        manager.disconnect(websocket)

        assert relay.subscriber_count("s1") == 0
        assert manager.get_connection_count() == 0
        assert manager.get_session_connection_count("s1") == 0
