"""
Call surface of a compute engine as seen by the lab.

The session never talks to an engine directly; it goes through
``lab.adapter.EngineAdapter``, which turns the exceptions raised here into
``Ok``/``Err`` results and output log entries.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, List, Optional, Sequence


class ComponentKind(str, Enum):
    """Component categories offered for insertion."""

    PROCESSOR = "processor"
    CACHE = "cache"
    RATELIMIT = "ratelimit"


@dataclass(frozen=True)
class CompileReport:
    """Outcome of a successful compile."""

    lints: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    """What the engine produced for one input batch.

    ``batches`` holds the output batches (a processor may split or drop a
    batch), ``logs`` the lines emitted by logging processors and ``error`` the
    processing failure, if any. A failed batch does not abort the run.
    """

    batches: List[List[str]] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ComputeEngine(ABC):
    """A single stateful engine instance, owned by one session.

    ``compile`` replaces the engine's loaded pipeline; ``execute`` runs input
    through whatever was compiled last.
    """

    version: str = "unknown"

    @abstractmethod
    def list_components(self, kind: ComponentKind) -> Sequence[str]:
        """Return the names of every component type of ``kind``."""

    @abstractmethod
    def insert_component(self, kind: ComponentKind, name: str, config: str) -> Optional[str]:
        """Return ``config`` with a default component added, or None for no change.

        Raises:
            ConfigError: If ``config`` cannot be parsed or ``name`` is unknown.
        """

    @abstractmethod
    async def normalise(self, config: str) -> str:
        """Return the canonical form of ``config``.

        Raises:
            ConfigError: If ``config`` is invalid.
        """

    @abstractmethod
    async def compile(self, config: str) -> CompileReport:
        """Load ``config`` so that it is ready to execute.

        Raises:
            ConfigError: If ``config`` is invalid.
        """

    @abstractmethod
    def execute(self, input_text: str) -> AsyncIterator[BatchResult]:
        """Feed ``input_text`` through the compiled pipeline, one batch at a time.

        Raises:
            ExecutionError: If nothing has been compiled.
        """

    async def close(self) -> None:
        """Release the loaded pipeline, if any."""
