"""
Tests for session WebSocket events.

Tests:
- Session message types are defined in MessageType enum
- Messages serialise to and from JSON
- Notification helpers broadcast to the session channel
- The session manager relays output and state changes

Run tests:
    pytest tests/test_websocket.py -v
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fakes import FakeEngine, engine_factory, settle
from lab.session import SessionManager
from websocket.manager import (
    MessageType,
    WebSocketManager,
    WebSocketMessage,
    notify_output_appended,
    notify_output_cleared,
    notify_session_closed,
    notify_session_state,
    session_channel,
)

# ============================================================================
# MessageType Enum Tests
# ============================================================================


class TestSessionMessageTypes:
    def test_output_appended_exists(self):
        assert MessageType.OUTPUT_APPENDED == "output_appended"

    def test_output_cleared_exists(self):
        assert MessageType.OUTPUT_CLEARED == "output_cleared"

    def test_session_state_exists(self):
        assert MessageType.SESSION_STATE == "session_state"

    def test_session_closed_exists(self):
        assert MessageType.SESSION_CLOSED == "session_closed"

    def test_session_channel_name(self):
        assert session_channel("lab_1234") == "session:lab_1234"


# ============================================================================
# Serialization Tests
# ============================================================================


class TestMessageSerialization:
    def test_to_json(self):
        msg = WebSocketMessage(
            type=MessageType.OUTPUT_APPENDED,
            channel="session:lab_1",
            data={"session_id": "lab_1", "index": 0, "entry": {"text": "HELLO"}},
        )

        parsed = json.loads(msg.to_json())

        assert parsed["type"] == "output_appended"
        assert parsed["channel"] == "session:lab_1"
        assert parsed["data"]["entry"]["text"] == "HELLO"
        assert parsed["timestamp"] is not None

    def test_from_json(self):
        msg = WebSocketMessage.from_json(
            json.dumps({"type": "subscribe", "channel": "", "data": {"channel": "session:lab_1"}})
        )

        assert msg.type == MessageType.SUBSCRIBE
        assert msg.data == {"channel": "session:lab_1"}

    def test_from_json_rejects_non_objects(self):
        with pytest.raises(ValueError):
            WebSocketMessage.from_json("[1, 2]")


# ============================================================================
# Notification Helper Tests
# ============================================================================


class TestNotificationHelpers:
    def test_notify_output_appended(self):
        with patch("websocket.manager.ws_manager") as mock_mgr:
            mock_mgr.broadcast_to_channel = AsyncMock(return_value=1)
            asyncio.run(notify_output_appended("lab_1", 3, {"text": "A", "style": "none"}))

            mock_mgr.broadcast_to_channel.assert_called_once()
            channel, msg = mock_mgr.broadcast_to_channel.call_args[0]
            assert channel == "session:lab_1"
            assert msg.type == MessageType.OUTPUT_APPENDED
            assert msg.data == {"session_id": "lab_1", "index": 3, "entry": {"text": "A", "style": "none"}}

    def test_notify_output_cleared(self):
        with patch("websocket.manager.ws_manager") as mock_mgr:
            mock_mgr.broadcast_to_channel = AsyncMock(return_value=1)
            asyncio.run(notify_output_cleared("lab_1"))

            msg = mock_mgr.broadcast_to_channel.call_args[0][1]
            assert msg.type == MessageType.OUTPUT_CLEARED

    def test_notify_session_state(self):
        with patch("websocket.manager.ws_manager") as mock_mgr:
            mock_mgr.broadcast_to_channel = AsyncMock(return_value=1)
            asyncio.run(notify_session_state("lab_1", {"state": "compiled", "compiled": True}))

            msg = mock_mgr.broadcast_to_channel.call_args[0][1]
            assert msg.type == MessageType.SESSION_STATE
            assert msg.data == {"session_id": "lab_1", "state": "compiled", "compiled": True}

    def test_notify_session_closed(self):
        with patch("websocket.manager.ws_manager") as mock_mgr:
            mock_mgr.broadcast_to_channel = AsyncMock(return_value=0)
            asyncio.run(notify_session_closed("lab_1"))

            msg = mock_mgr.broadcast_to_channel.call_args[0][1]
            assert msg.type == MessageType.SESSION_CLOSED
            assert msg.channel == "session:lab_1"


# ============================================================================
# Connection Manager Tests
# ============================================================================


def fake_socket():
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


class TestWebSocketManager:
    def test_subscribe_and_broadcast(self):
        manager = WebSocketManager()
        ws = fake_socket()

        async def go():
            await manager.connect(ws, "client-1")
            await manager.subscribe(ws, "session:lab_1")
            msg = WebSocketMessage(type=MessageType.OUTPUT_CLEARED, channel="session:lab_1")
            return await manager.broadcast_to_channel("session:lab_1", msg)

        assert asyncio.run(go()) == 1
        sent = [json.loads(call.args[0])["type"] for call in ws.send_text.call_args_list]
        assert sent == ["connected", "subscribed", "output_cleared"]
        assert manager.get_channel_subscribers("session:lab_1") == 1
        assert manager.stats() == {"total_connections": 1, "channels": {"session:lab_1": 1}}

    def test_failed_send_drops_subscriber(self):
        manager = WebSocketManager()
        ws = fake_socket()

        async def go():
            await manager.connect(ws)
            await manager.subscribe(ws, "session:lab_1")
            ws.send_text.side_effect = RuntimeError("socket closed")
            msg = WebSocketMessage(type=MessageType.OUTPUT_CLEARED, channel="session:lab_1")
            return await manager.broadcast_to_channel("session:lab_1", msg)

        assert asyncio.run(go()) == 0
        assert manager.get_connection_count() == 0
        assert manager.get_channel_subscribers("session:lab_1") == 0

    def test_handle_message(self):
        manager = WebSocketManager()
        ws = fake_socket()

        async def go():
            await manager.connect(ws)
            pong = await manager.handle_message(ws, json.dumps({"type": "ping"}))
            subscribed = await manager.handle_message(
                ws, json.dumps({"type": "subscribe", "data": {"channel": "session:lab_2"}})
            )
            invalid = await manager.handle_message(ws, "{nope")
            unsupported = await manager.handle_message(ws, json.dumps({"type": "pong"}))
            return pong, subscribed, invalid, unsupported

        pong, subscribed, invalid, unsupported = asyncio.run(go())

        assert pong.type == MessageType.PONG
        assert subscribed is None
        assert manager.get_channel_subscribers("session:lab_2") == 1
        assert invalid.type == MessageType.ERROR
        assert unsupported.data["error"] == "Unsupported message type: pong"


# ============================================================================
# Session Relay Tests
# ============================================================================


class TestSessionRelay:
    @pytest.mark.asyncio
    async def test_manager_relays_output_and_state(self):
        with patch("websocket.manager.ws_manager") as mock_mgr:
            mock_mgr.broadcast_to_channel = AsyncMock(return_value=1)
            manager = SessionManager(engine_factory=engine_factory(FakeEngine()))

            session = await manager.create_session(config="pipeline: {}", input_text="x")
            await session.request_compile()
            await settle()

            messages = [call.args[1] for call in mock_mgr.broadcast_to_channel.call_args_list]
            appended = [m.data["entry"]["text"] for m in messages if m.type == MessageType.OUTPUT_APPENDED]
            states = [m.data["state"] for m in messages if m.type == MessageType.SESSION_STATE]

            assert appended == ["Engine fake-1.0 ready.", "Compiled successfully."]
            assert "compile_in_flight" in states
            assert states[-1] == "compiled"
            assert all(m.channel == session_channel(session.id) for m in messages)

            await manager.shutdown()

    @pytest.mark.asyncio
    async def test_delete_session_notifies_close(self):
        with patch("websocket.manager.ws_manager") as mock_mgr:
            mock_mgr.broadcast_to_channel = AsyncMock(return_value=1)
            engine = FakeEngine()
            manager = SessionManager(engine_factory=engine_factory(engine))
            session = await manager.create_session()

            assert await manager.delete_session(session.id) is True
            await settle()

            types = [call.args[1].type for call in mock_mgr.broadcast_to_channel.call_args_list]
            assert MessageType.SESSION_CLOSED in types
            assert engine.closed
            assert len(manager) == 0
            assert await manager.delete_session(session.id) is False

    @pytest.mark.asyncio
    async def test_cleanup_idle_sessions(self):
        manager = SessionManager(engine_factory=engine_factory(FakeEngine()))
        stale = await manager.create_session()
        fresh = await manager.create_session()
        stale.last_active = stale.last_active.replace(year=stale.last_active.year - 1)

        removed = await manager.cleanup_idle_sessions(max_age_hours=1)

        assert removed == 1
        assert manager.get_session(stale.id) is None
        assert manager.get_session(fresh.id) is fresh
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_run_cleanup_sweeps_until_cancelled(self):
        manager = SessionManager(engine_factory=engine_factory(FakeEngine()))
        session = await manager.create_session()

        sweeper = asyncio.create_task(manager.run_cleanup(max_age_hours=0, interval=0.01))
        for _ in range(100):
            if manager.get_session(session.id) is None:
                break
            await asyncio.sleep(0.01)
        sweeper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sweeper

        assert len(manager) == 0
        await manager.shutdown()
