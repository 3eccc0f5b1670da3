"""
Adapter between a lab session and its compute engine.

The adapter is the only place that calls the engine. It turns engine
exceptions into ``Err`` results carrying the lab error taxonomy, converts
execution output into output log entries and applies the execute timeout.
Normalising can be bound to the engine itself or to an HTTP ``/normalise``
service (see ``lab.clients.RemoteNormaliser``).
"""

import asyncio
from types import MappingProxyType
from typing import Callable, Mapping, Optional, Protocol, Tuple

from .buffers import LogEntry, LogStyle
from .engine.base import CompileReport, ComponentKind, ComputeEngine
from .errors import ConfigError, ExecutionError, LabError
from .result import Err, Ok, Result
from .shared.logger import get_logger

logger = get_logger(__name__)

DEFAULT_EXECUTE_TIMEOUT = 30.0


class Normaliser(Protocol):
    async def normalise(self, config: str) -> Result[str]:
        ...


class EngineAdapter:
    """Translate session actions into engine calls and engine responses into results."""

    def __init__(
        self,
        engine: ComputeEngine,
        normaliser: Optional[Normaliser] = None,
        execute_timeout: float = DEFAULT_EXECUTE_TIMEOUT,
    ):
        self.engine = engine
        self.normaliser = normaliser
        self.execute_timeout = execute_timeout

    @property
    def version(self) -> str:
        return self.engine.version

    def list_components(self, kind: ComponentKind) -> Tuple[str, ...]:
        return tuple(self.engine.list_components(kind))

    def catalog(self) -> Mapping[ComponentKind, Tuple[str, ...]]:
        """Immutable mapping of component kind to component type names."""
        return MappingProxyType({kind: self.list_components(kind) for kind in ComponentKind})

    def insert_component(self, kind: ComponentKind, name: str, config: str) -> Result[Optional[str]]:
        """Return ``Ok(new_config)``, ``Ok(None)`` for no change, or ``Err``."""
        try:
            return Ok(self.engine.insert_component(kind, name, config))
        except ConfigError as e:
            return Err(ConfigError(f"failed to add {kind.value}: {e}"))
        except Exception as e:
            logger.exception("Engine failed to insert %s %s", kind.value, name)
            return Err(ConfigError(f"failed to add {kind.value}: {e}"))

    async def normalise(self, config: str) -> Result[str]:
        if self.normaliser is not None:
            try:
                return await self.normaliser.normalise(config)
            except LabError as e:
                return Err(e)
        try:
            return Ok(await self.engine.normalise(config))
        except ConfigError as e:
            return Err(ConfigError(f"failed to normalise config: {e}"))
        except Exception as e:
            logger.exception("Engine failed to normalise config")
            return Err(ConfigError(f"failed to normalise config: {e}"))

    async def compile(self, config: str) -> Result[CompileReport]:
        try:
            return Ok(await self.engine.compile(config))
        except ConfigError as e:
            return Err(ConfigError(f"failed to create pipeline: {e}"))
        except LabError as e:
            return Err(e)
        except Exception as e:
            logger.exception("Engine failed to compile config")
            return Err(ConfigError(f"failed to create pipeline: {e}"))

    async def execute(self, input_text: str, sink: Callable[[LogEntry], None]) -> Result[int]:
        """Run ``input_text`` through the compiled pipeline.

        Output is streamed to ``sink`` as each batch completes: one entry per
        output part followed by an empty separator entry, ``Log:`` entries for
        engine logs and one error entry per failed batch. Returns the number of
        input batches processed.
        """
        batches = 0
        iterator = None
        try:
            iterator = self.engine.execute(input_text).__aiter__()
            while True:
                try:
                    result = await asyncio.wait_for(iterator.__anext__(), self.execute_timeout)
                except StopAsyncIteration:
                    break
                batches += 1
                for line in result.logs:
                    sink(LogEntry(f"Log: {line}", LogStyle.LOG))
                if result.error is not None:
                    sink(LogEntry(f"Error: failed to execute: {result.error}", LogStyle.ERROR))
                    continue
                for output in result.batches:
                    for part in output:
                        sink(LogEntry(part))
                    sink(LogEntry(""))
        except asyncio.TimeoutError:
            logger.warning("Execution timed out after %.1fs", self.execute_timeout)
            return Err(ExecutionError("failed to execute: request timed out"))
        except ExecutionError as e:
            return Err(ExecutionError(f"failed to execute: {e}"))
        except LabError as e:
            return Err(e)
        except Exception as e:
            logger.exception("Engine failed to execute input")
            return Err(ExecutionError(f"failed to execute: {e}"))
        finally:
            aclose = getattr(iterator, "aclose", None) if iterator is not None else None
            if aclose is not None:
                await aclose()
        return Ok(batches)
