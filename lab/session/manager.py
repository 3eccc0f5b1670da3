"""
Session manager for the pipeline lab.

Keeps the live ``LabSession`` instances of the process, creates and loads
them, and relays their output log and state changes to WebSocket
subscribers of the ``session:<id>`` channel.
"""

import asyncio
import threading
import uuid
from datetime import datetime
from typing import Any, Coroutine, Dict, List, Optional, Set

from websocket import (
    notify_output_appended,
    notify_output_cleared,
    notify_session_closed,
    notify_session_state,
)

from ..adapter import DEFAULT_EXECUTE_TIMEOUT, Normaliser
from ..buffers import LogEntry
from ..clients import ShareClient
from ..engine import load_engine
from ..settings import SettingStore, use_setting
from ..shared.logger import get_logger
from .controller import EngineFactory, LabSession

logger = get_logger(__name__)

DEFAULT_CONFIG = """pipeline:
  processors:
  - type: text
    text:
      operator: to_upper
"""

DEFAULT_INPUT = "hello world"


def state_payload(session: LabSession) -> Dict[str, Any]:
    """The part of a session snapshot that changes with its lifecycle."""
    return {
        "state": session.state.value,
        "compiled": session.compiled,
        "generation": session.generation,
        "controls": session.controls.to_dict(),
        "view": session.view.value,
    }


class SessionManager:
    """
    Manages the lab sessions of the process.

    Each session owns its own engine instance; sessions never share state.
    """

    def __init__(
        self,
        engine_factory: EngineFactory = load_engine,
        share_client: Optional[ShareClient] = None,
        normaliser: Optional[Normaliser] = None,
        execute_timeout: float = DEFAULT_EXECUTE_TIMEOUT,
        setting_store: Optional[SettingStore] = None,
    ):
        """Initialize the session manager.

        Args:
            engine_factory: Coroutine function returning a loaded engine
            share_client: Share client given to new sessions by default
            normaliser: Optional HTTP normaliser used instead of the engine
            execute_timeout: Per-batch execute timeout in seconds
            setting_store: Source of the ``default_config`` and
                ``default_input`` settings seeding new sessions
        """
        self.engine_factory = engine_factory
        self.share_client = share_client
        self.normaliser = normaliser
        self.execute_timeout = execute_timeout
        self.setting_store = setting_store
        self._sessions: Dict[str, LabSession] = {}
        self._lock = threading.Lock()
        self._pending: Set["asyncio.Task[Any]"] = set()

    async def create_session(
        self,
        config: Optional[str] = None,
        input_text: Optional[str] = None,
        share_client: Optional[ShareClient] = None,
    ) -> LabSession:
        """Create a session, load its engine and register it.

        A session whose engine fails to load is still registered, in the
        ``failed`` state, so the client can read the error from its log.
        """
        session_id = f"lab_{uuid.uuid4().hex[:8]}"
        session = LabSession(
            session_id,
            self.engine_factory,
            share_client=share_client or self.share_client,
            normaliser=self.normaliser,
            config=self._default("default_config", DEFAULT_CONFIG) if config is None else config,
            input_text=self._default("default_input", DEFAULT_INPUT) if input_text is None else input_text,
            execute_timeout=self.execute_timeout,
        )
        self._attach(session)

        with self._lock:
            self._sessions[session_id] = session

        await session.start()
        logger.info("Created session %s (%s)", session_id, session.state.value)
        return session

    def _default(self, name: str, fallback: str) -> str:
        if self.setting_store is None:
            return fallback
        return use_setting(self.setting_store, name, fallback).value

    def get_session(self, session_id: str) -> Optional[LabSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self, limit: int = 50) -> List[LabSession]:
        """List sessions, most recently created first."""
        with self._lock:
            sessions = list(self._sessions.values())
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    async def delete_session(self, session_id: str) -> bool:
        """Close and forget a session.

        Returns:
            True if the session existed
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        self._dispatch(notify_session_closed(session_id))
        logger.info("Deleted session %s", session_id)
        return True

    async def cleanup_idle_sessions(self, max_age_hours: float = 24) -> int:
        """Remove sessions that saw no activity for ``max_age_hours``.

        Returns:
            Number of sessions removed
        """
        cutoff = datetime.now()
        with self._lock:
            idle = [
                session_id
                for session_id, session in self._sessions.items()
                if (cutoff - session.last_active).total_seconds() / 3600 > max_age_hours
            ]
        removed = 0
        for session_id in idle:
            if await self.delete_session(session_id):
                removed += 1
        return removed

    async def run_cleanup(self, max_age_hours: float, interval: float) -> None:
        """Sweep idle sessions every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self.cleanup_idle_sessions(max_age_hours)
            except Exception as e:
                logger.error("Idle session cleanup failed: %s", e)
                continue
            if removed:
                logger.info("Removed %d idle session(s)", removed)

    async def shutdown(self) -> None:
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            await self.delete_session(session_id)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # WebSocket relay
    # ------------------------------------------------------------------

    def _attach(self, session: LabSession) -> None:
        session_id = session.id

        def on_append(entry: LogEntry) -> None:
            index = len(session.output) - 1
            self._dispatch(notify_output_appended(session_id, index, entry.to_dict()))

        def on_clear() -> None:
            self._dispatch(notify_output_cleared(session_id))

        def on_state(changed: LabSession) -> None:
            self._dispatch(notify_session_state(session_id, state_payload(changed)))

        session.output.on_append(on_append)
        session.output.on_clear(on_clear)
        session.on_state_change(on_state)

    def _dispatch(self, notification: Coroutine[Any, Any, None]) -> None:
        """Schedule a WebSocket notification on the running event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside the event loop (plain sync use); nobody can be listening
            notification.close()
            return
        task = loop.create_task(notification)
        self._pending.add(task)
        task.add_done_callback(self._on_dispatched)

    def _on_dispatched(self, task: "asyncio.Task[Any]") -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Error dispatching WebSocket notification: %s", task.exception())
