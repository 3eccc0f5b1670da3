"""
Editable text buffers and the append-only output log of a lab session.

A session owns two independent buffers (``config`` and ``input``) and one
``OutputLog``. Buffers notify listeners on every mutation, including a
replacement with identical text; the session relies on that to invalidate
its compiled state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import LabError
from .shared.logger import get_logger

logger = get_logger(__name__)


class BufferName(str, Enum):
    """Names of the two editable buffers."""

    CONFIG = "config"
    INPUT = "input"


class Buffer:
    """An ordered sequence of lines edited by replacement or by splices."""

    def __init__(self, name: BufferName, value: str = ""):
        self.name = name
        self._lines: List[str] = value.split("\n")
        self._listeners: List[Callable[["Buffer"], None]] = []

    @property
    def value(self) -> str:
        """Point-in-time snapshot of the buffer contents."""
        return "\n".join(self._lines)

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def set_value(self, value: str) -> None:
        """Replace the full contents."""
        self._lines = value.split("\n")
        self._changed()

    def apply_edit(self, offset: int, delete: int = 0, text: str = "") -> None:
        """Splice ``text`` in at ``offset`` after removing ``delete`` characters.

        Raises:
            ValueError: If the edit falls outside the buffer.
        """
        current = self.value
        if offset < 0 or delete < 0 or offset + delete > len(current):
            raise ValueError(
                f"edit at offset {offset} removing {delete} characters is outside "
                f"a buffer of length {len(current)}"
            )
        self._lines = (current[:offset] + text + current[offset + delete:]).split("\n")
        self._changed()

    def append(self, text: str) -> None:
        self.apply_edit(len(self.value), 0, text)

    def on_change(self, listener: Callable[["Buffer"], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener(self)


class LogStyle(str, Enum):
    """Style tag attached to an output log entry."""

    NONE = "none"
    INFO = "info"
    ERROR = "error"
    LINT = "lint"
    LOG = "log"


@dataclass(frozen=True)
class LogEntry:
    """A single output log entry."""

    text: str
    style: LogStyle = LogStyle.NONE
    link: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "style": self.style.value,
            "link": self.link,
            "timestamp": self.timestamp,
        }


class OutputLog:
    """Append-only record of session activity. Entries are never edited."""

    def __init__(self):
        self._entries: List[LogEntry] = []
        self._append_listeners: List[Callable[[LogEntry], None]] = []
        self._clear_listeners: List[Callable[[], None]] = []

    @property
    def entries(self) -> List[LogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> LogEntry:
        self._entries.append(entry)
        for listener in list(self._append_listeners):
            listener(entry)
        return entry

    def write(self, text: str, style: LogStyle = LogStyle.NONE, link: Optional[str] = None) -> LogEntry:
        return self.append(LogEntry(text=text, style=style, link=link))

    def info(self, text: str, link: Optional[str] = None) -> LogEntry:
        return self.write(text, LogStyle.INFO, link)

    def error(self, err: LabError) -> LogEntry:
        logger.debug("Output error entry (%s): %s", err.kind, err)
        return self.write(f"Error: {err}", LogStyle.ERROR)

    def clear(self) -> None:
        self._entries.clear()
        for listener in list(self._clear_listeners):
            listener()

    def on_append(self, listener: Callable[[LogEntry], None]) -> None:
        self._append_listeners.append(listener)

    def on_clear(self, listener: Callable[[], None]) -> None:
        self._clear_listeners.append(listener)

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]
