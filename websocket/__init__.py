"""
WebSocket streaming for the pipeline lab.

Each lab session publishes its output log and state changes on a
``session:<id>`` channel.
"""

from .manager import (
    Connection,
    MessageType,
    WebSocketManager,
    WebSocketMessage,
    notify_output_appended,
    notify_output_cleared,
    notify_session_closed,
    notify_session_state,
    session_channel,
    ws_manager,
)

__all__ = [
    "Connection",
    "MessageType",
    "WebSocketManager",
    "WebSocketMessage",
    "notify_output_appended",
    "notify_output_cleared",
    "notify_session_closed",
    "notify_session_state",
    "session_channel",
    "ws_manager",
]
