"""Lab sessions: the lifecycle controller and the per-process registry."""

from .controller import Controls, EngineFactory, LabSession, SessionState, View
from .manager import DEFAULT_CONFIG, DEFAULT_INPUT, SessionManager, state_payload

__all__ = [
    "Controls",
    "DEFAULT_CONFIG",
    "DEFAULT_INPUT",
    "EngineFactory",
    "LabSession",
    "SessionManager",
    "SessionState",
    "View",
    "state_payload",
]
