"""
WebSocket streaming of lab sessions.

Every session publishes on its own ``session:<id>`` channel:

- ``output_appended``: one output log entry, with its index in the log
- ``output_cleared``: the log was emptied
- ``session_state``: lifecycle state, compiled flag, controls and view
- ``session_closed``: the session was deleted

Clients either connect to ``/ws/session/{id}`` (subscribed to that channel
on connect) or to ``/ws`` and send ``subscribe`` / ``unsubscribe`` messages.
Messages to one socket are sent in publish order; a socket that fails a send
is dropped from every channel.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fastapi import WebSocket

from lab.shared.logger import get_logger

logger = get_logger(__name__)

SYSTEM_CHANNEL = "system"


class MessageType(str, Enum):
    """Types of WebSocket messages."""

    # Session messages
    OUTPUT_APPENDED = "output_appended"
    OUTPUT_CLEARED = "output_cleared"
    SESSION_STATE = "session_state"
    SESSION_CLOSED = "session_closed"

    # System messages
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    CONNECTED = "connected"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


@dataclass
class WebSocketMessage:
    """Represents a WebSocket message."""

    type: MessageType
    channel: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now().isoformat()

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type.value,
            "channel": self.channel,
            "data": self.data,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_json(cls, json_str: str) -> "WebSocketMessage":
        """Parse a client message.

        Raises:
            ValueError: If the text is not a JSON object of a known type.
        """
        payload = json.loads(json_str)
        if not isinstance(payload, dict):
            raise ValueError("message must be a JSON object")
        return cls(
            type=MessageType(payload.get("type", "error")),
            channel=payload.get("channel", ""),
            data=payload.get("data") or {},
            timestamp=payload.get("timestamp"),
        )


@dataclass
class Connection:
    """An accepted socket and the channels it listens to."""

    websocket: WebSocket
    client_id: Optional[str] = None
    connected_at: str = field(default_factory=lambda: datetime.now().isoformat())
    channels: Set[str] = field(default_factory=set)


class WebSocketManager:
    """Tracks sockets and channel subscriptions and fans messages out."""

    def __init__(self):
        self._connections: Dict[WebSocket, Connection] = {}
        self._channels: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._handlers: Dict[MessageType, Callable[[WebSocket, WebSocketMessage], Awaitable[Optional[WebSocketMessage]]]] = {
            MessageType.PING: self._on_ping,
            MessageType.SUBSCRIBE: self._on_subscribe,
            MessageType.UNSUBSCRIBE: self._on_unsubscribe,
        }

    async def connect(self, websocket: WebSocket, client_id: Optional[str] = None) -> Connection:
        """Accept ``websocket`` and greet it with a ``connected`` message."""
        await websocket.accept()
        connection = Connection(websocket=websocket, client_id=client_id)
        async with self._lock:
            self._connections[websocket] = connection

        await self.send_to_connection(
            websocket,
            WebSocketMessage(
                type=MessageType.CONNECTED,
                channel=SYSTEM_CHANNEL,
                data={"client_id": client_id, "message": "Connected to the pipeline lab"},
            ),
        )
        return connection

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            connection = self._connections.pop(websocket, None)
            if connection is None:
                return
            for channel in connection.channels:
                self._leave(websocket, channel)

    def _leave(self, websocket: WebSocket, channel: str) -> None:
        subscribers = self._channels.get(channel)
        if subscribers is None:
            return
        subscribers.discard(websocket)
        if not subscribers:
            del self._channels[channel]

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
            connection = self._connections.get(websocket)
            if connection is not None:
                connection.channels.add(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(type=MessageType.SUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._leave(websocket, channel)
            connection = self._connections.get(websocket)
            if connection is not None:
                connection.channels.discard(channel)

        await self.send_to_connection(
            websocket,
            WebSocketMessage(type=MessageType.UNSUBSCRIBED, channel=channel, data={"channel": channel}),
        )

    async def send_to_connection(self, websocket: WebSocket, message: WebSocketMessage) -> bool:
        """Send one message; a failed send drops the socket.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            await websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning("Error sending WebSocket message: %s", e)
            await self.disconnect(websocket)
            return False

    async def broadcast_to_channel(self, channel: str, message: WebSocketMessage) -> int:
        """Send ``message`` to every subscriber of ``channel`` concurrently.

        Returns:
            Number of connections that received the message
        """
        async with self._lock:
            subscribers = list(self._channels.get(channel, ()))
        if not subscribers:
            return 0

        text = message.to_json()
        results = await asyncio.gather(
            *(websocket.send_text(text) for websocket in subscribers),
            return_exceptions=True,
        )
        sent = 0
        for websocket, result in zip(subscribers, results):
            if isinstance(result, Exception):
                logger.debug("Dropping WebSocket subscriber of %s: %s", channel, result)
                await self.disconnect(websocket)
            else:
                sent += 1
        return sent

    def get_channel_subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def get_connection_count(self) -> int:
        return len(self._connections)

    def stats(self) -> Dict[str, Any]:
        """Connection count and subscribers per channel."""
        return {
            "total_connections": len(self._connections),
            "channels": {channel: len(sockets) for channel, sockets in self._channels.items()},
        }

    async def handle_message(self, websocket: WebSocket, message_text: str) -> Optional[WebSocketMessage]:
        """Handle a client message and return the reply to send, if any."""
        try:
            message = WebSocketMessage.from_json(message_text)
        except ValueError as e:
            return WebSocketMessage(
                type=MessageType.ERROR,
                channel=SYSTEM_CHANNEL,
                data={"error": f"Invalid message format: {e}"},
            )

        handler = self._handlers.get(message.type)
        if handler is None:
            return WebSocketMessage(
                type=MessageType.ERROR,
                channel=SYSTEM_CHANNEL,
                data={"error": f"Unsupported message type: {message.type.value}"},
            )
        return await handler(websocket, message)

    async def _on_ping(self, websocket: WebSocket, message: WebSocketMessage) -> WebSocketMessage:
        return WebSocketMessage(
            type=MessageType.PONG,
            channel=SYSTEM_CHANNEL,
            data={"timestamp": datetime.now().isoformat()},
        )

    async def _on_subscribe(self, websocket: WebSocket, message: WebSocketMessage) -> None:
        channel = message.data.get("channel") or message.channel
        if channel:
            await self.subscribe(websocket, channel)

    async def _on_unsubscribe(self, websocket: WebSocket, message: WebSocketMessage) -> None:
        channel = message.data.get("channel") or message.channel
        if channel:
            await self.unsubscribe(websocket, channel)


# Global WebSocket manager instance
ws_manager = WebSocketManager()


# ============= Session notifications =============


async def _publish(session_id: str, message_type: MessageType, **data: Any) -> None:
    channel = session_channel(session_id)
    message = WebSocketMessage(type=message_type, channel=channel, data={"session_id": session_id, **data})
    await ws_manager.broadcast_to_channel(channel, message)


async def notify_output_appended(session_id: str, index: int, entry: Dict[str, Any]) -> None:
    """
    Notify subscribers that an entry was appended to a session's output log.

    Args:
        session_id: Session identifier
        index: Position of the entry in the log
        entry: Serialised log entry (text, style, link, timestamp)
    """
    await _publish(session_id, MessageType.OUTPUT_APPENDED, index=index, entry=entry)


async def notify_output_cleared(session_id: str) -> None:
    await _publish(session_id, MessageType.OUTPUT_CLEARED)


async def notify_session_state(session_id: str, state: Dict[str, Any]) -> None:
    """
    Notify subscribers of a session state change.

    Args:
        session_id: Session identifier
        state: State, compiled flag, controls and active view
    """
    await _publish(session_id, MessageType.SESSION_STATE, **state)


async def notify_session_closed(session_id: str) -> None:
    await _publish(session_id, MessageType.SESSION_CLOSED)
