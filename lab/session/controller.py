"""
Lab session controller.

A ``LabSession`` owns the two buffers, the output log, the compiled-state
flag and the compute engine handle of one lab. It sequences user intent
(edit, compile, execute, normalise, share) against the engine and the share
service and keeps the control states consistent with what is valid.

Rules enforced here:

- Any mutation of the config buffer clears the compiled state, even when the
  text ends up identical. A generation counter tracks mutations, so a compile
  that resolves after an edit cannot mark the session compiled.
- At most one compile is outstanding. Compile requests share the in-flight
  result unless it read an older config, in which case one fresh compile is
  queued behind it.
- At most one execute is outstanding; a second request is rejected.
- Executing an uncompiled session compiles first and only executes if that
  compile succeeded for the current config.
- Compile and execute are serialised on the engine, which is a single
  stateful resource.
- Recoverable failures end up in the output log, never as exceptions.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..adapter import DEFAULT_EXECUTE_TIMEOUT, EngineAdapter, Normaliser
from ..buffers import Buffer, BufferName, LogStyle, OutputLog
from ..clients import ShareClient
from ..engine.base import CompileReport, ComponentKind, ComputeEngine
from ..errors import EngineLoadError, RequestRejected
from ..result import Err, Ok, Result
from ..shared.logger import get_logger

logger = get_logger(__name__)

EngineFactory = Callable[[], Awaitable[ComputeEngine]]


class SessionState(str, Enum):
    """Lifecycle state of a lab session."""

    LOADING = "loading"
    IDLE = "idle"
    COMPILE_IN_FLIGHT = "compile_in_flight"
    COMPILED = "compiled"
    EXECUTE_IN_FLIGHT = "execute_in_flight"
    NORMALISE_IN_FLIGHT = "normalise_in_flight"
    FAILED = "failed"
    CLOSED = "closed"


class View(str, Enum):
    """The pane currently shown to the user."""

    CONFIG = "config"
    INPUT = "input"
    SETTINGS = "settings"


@dataclass(frozen=True)
class Controls:
    """Which actions the user can currently trigger."""

    compile_enabled: bool
    execute_enabled: bool
    normalise_enabled: bool
    share_enabled: bool
    insert_enabled: bool

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


class LabSession:
    """One lab: buffers, output log, compiled state and an engine handle."""

    def __init__(
        self,
        session_id: str,
        engine_factory: EngineFactory,
        share_client: Optional[ShareClient] = None,
        normaliser: Optional[Normaliser] = None,
        config: str = "",
        input_text: str = "",
        execute_timeout: float = DEFAULT_EXECUTE_TIMEOUT,
    ):
        self.id = session_id
        self.config = Buffer(BufferName.CONFIG, config)
        self.input = Buffer(BufferName.INPUT, input_text)
        self.output = OutputLog()
        self.view = View.CONFIG
        self.created_at = datetime.now()
        self.last_active = self.created_at

        self._engine_factory = engine_factory
        self._share_client = share_client
        self._normaliser = normaliser
        self._execute_timeout = execute_timeout

        self._adapter: Optional[EngineAdapter] = None
        self._load_error: Optional[EngineLoadError] = None
        self._catalog: Mapping[ComponentKind, Tuple[str, ...]] = MappingProxyType({})
        self._closed = False

        self._compiled = False
        self._generation = 0
        self._compile_task: Optional["asyncio.Future[Result[CompileReport]]"] = None
        self._compile_generation: Optional[int] = None
        self._recompile_queued = False
        self._executing = False
        self._normalising = 0
        self._engine_lock = asyncio.Lock()

        self._state_listeners: List[Callable[["LabSession"], None]] = []
        self.config.on_change(self._on_config_changed)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def compiled(self) -> bool:
        """Whether the current config buffer has a valid compiled pipeline."""
        return self._compiled

    @property
    def generation(self) -> int:
        """Number of config buffer mutations so far."""
        return self._generation

    @property
    def engine_version(self) -> Optional[str]:
        return self._adapter.version if self._adapter is not None else None

    @property
    def catalog(self) -> Mapping[ComponentKind, Tuple[str, ...]]:
        """Component catalog, queried once when the engine loaded."""
        return self._catalog

    @property
    def state(self) -> SessionState:
        if self._closed:
            return SessionState.CLOSED
        if self._load_error is not None:
            return SessionState.FAILED
        if self._adapter is None:
            return SessionState.LOADING
        if self._compile_task is not None:
            return SessionState.COMPILE_IN_FLIGHT
        if self._executing:
            return SessionState.EXECUTE_IN_FLIGHT
        if self._normalising:
            return SessionState.NORMALISE_IN_FLIGHT
        if self._compiled:
            return SessionState.COMPILED
        return SessionState.IDLE

    @property
    def ready(self) -> bool:
        return self._adapter is not None and self._load_error is None and not self._closed

    @property
    def controls(self) -> Controls:
        ready = self.ready
        return Controls(
            compile_enabled=ready and not self._compiled and self._compile_task is None,
            execute_enabled=ready and self._compiled and not self._executing,
            normalise_enabled=ready,
            share_enabled=ready and self._share_client is not None,
            insert_enabled=ready,
        )

    def on_state_change(self, listener: Callable[["LabSession"], None]) -> None:
        self._state_listeners.append(listener)

    def _notify_state(self) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error("Error in session state listener: %s", e)

    def touch(self) -> None:
        self.last_active = datetime.now()

    def to_dict(self, include_output: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "state": self.state.value,
            "compiled": self._compiled,
            "generation": self._generation,
            "controls": self.controls.to_dict(),
            "view": self.view.value,
            "engine_version": self.engine_version,
            "engine_error": str(self._load_error) if self._load_error else None,
            "config": self.config.value,
            "input": self.input.value,
            "output_length": len(self.output),
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat(),
        }
        if include_output:
            data["output"] = self.output.to_list()
        return data

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> Result[str]:
        """Load the compute engine; controls stay disabled until this succeeds."""
        if self._adapter is not None or self._load_error is not None:
            return Err(RequestRejected("engine already started"))
        try:
            engine = await self._engine_factory()
        except EngineLoadError as e:
            error = e
        except Exception as e:
            error = EngineLoadError(f"failed to load engine: {e}")
        else:
            self._adapter = EngineAdapter(engine, self._normaliser, self._execute_timeout)
            self._catalog = self._adapter.catalog()
            self.output.info(f"Engine {self._adapter.version} ready.")
            logger.info("Session %s loaded engine %s", self.id, self._adapter.version)
            self._notify_state()
            return Ok(self._adapter.version)

        self._load_error = error
        self.output.error(error)
        logger.error("Session %s failed to load its engine: %s", self.id, error)
        self._notify_state()
        return Err(error)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._adapter is not None:
            async with self._engine_lock:
                await self._adapter.engine.close()
        self._notify_state()

    def _check_ready(self) -> Optional[Err]:
        if self._closed:
            return Err(RequestRejected("session is closed"))
        if self._load_error is not None:
            return Err(self._load_error)
        if self._adapter is None:
            return Err(RequestRejected("engine is still loading"))
        return None

    # ------------------------------------------------------------------
    # Buffers and view
    # ------------------------------------------------------------------

    def _on_config_changed(self, buffer: Buffer) -> None:
        self._generation += 1
        if self._compiled:
            logger.debug("Session %s config changed, compiled state cleared", self.id)
        self._compiled = False
        self._notify_state()

    def set_view(self, view: Union[View, str]) -> None:
        self.view = View(view)
        self._notify_state()

    def clear_output(self) -> None:
        self.output.clear()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def request_compile(self) -> Result[CompileReport]:
        """Compile the current config, sharing any compile already in flight.

        A compile that already read an older config is not shared: the
        request waits for it to finish and then compiles the current buffer.
        """
        rejected = self._check_ready()
        if rejected is not None:
            return rejected
        self.touch()
        while self._compile_task is not None:
            task = self._compile_task
            if self._compile_generation in (None, self._generation):
                return await asyncio.shield(task)
            self._recompile_queued = True
            await asyncio.wait({task})
        self._recompile_queued = False
        self._compile_generation = None
        self._compile_task = asyncio.ensure_future(self._compile())
        self._notify_state()
        return await asyncio.shield(self._compile_task)

    async def _compile(self) -> Result[CompileReport]:
        try:
            async with self._engine_lock:
                generation = self._compile_generation = self._generation
                result = await self._adapter.compile(self.config.value)
            if not result.ok:
                # the engine drops its previous pipeline before compiling
                self._compiled = False
                self.output.error(result.error)
                return result
            if generation != self._generation:
                logger.debug("Session %s discarded a stale compile result", self.id)
                error = RequestRejected("configuration changed during compile, compile again")
                if not self._recompile_queued:
                    self.output.error(error)
                return Err(error)
            for lint in result.value.lints:
                self.output.write(f"Lint: {lint}", LogStyle.LINT)
            self._compiled = True
            self.output.info("Compiled successfully.")
            return result
        finally:
            self._compile_task = None
            self._compile_generation = None
            self._notify_state()

    async def request_execute(self) -> Result[int]:
        """Execute the input buffer, compiling first when needed."""
        rejected = self._check_ready()
        if rejected is not None:
            return rejected
        self.touch()
        if self._executing:
            error = RequestRejected("execution already in progress")
            self.output.info("Execution already in progress.")
            return Err(error)

        self._executing = True
        self._notify_state()
        try:
            if not self._compiled:
                compiled = await self.request_compile()
                if not compiled.ok:
                    return compiled
            async with self._engine_lock:
                if not self._compiled:
                    self.output.info("Pipeline is no longer compiled, execution skipped.")
                    return Err(RequestRejected("pipeline is no longer compiled"))
                result = await self._adapter.execute(self.input.value, self.output.append)
            if not result.ok:
                self.output.error(result.error)
            return result
        finally:
            self._executing = False
            self._notify_state()

    async def request_normalise(self) -> Result[str]:
        """Replace the config buffer with its normalised form."""
        rejected = self._check_ready()
        if rejected is not None:
            return rejected
        self.touch()
        self._normalising += 1
        self._notify_state()
        try:
            generation = self._generation
            result = await self._adapter.normalise(self.config.value)
            if not result.ok:
                self.output.error(result.error)
                return result
            if generation != self._generation:
                self.output.info("Configuration changed while normalising, result discarded.")
                return Err(RequestRejected("configuration changed while normalising"))
            self.config.set_value(result.value)
            self.set_view(View.CONFIG)
            return result
        finally:
            self._normalising -= 1
            self._notify_state()

    async def request_share(self) -> Result[str]:
        """Save both buffers with the share service and log the resulting URL."""
        rejected = self._check_ready()
        if rejected is not None:
            return rejected
        self.touch()
        if self._share_client is None:
            error = RequestRejected("sharing is not configured")
            self.output.error(error)
            return Err(error)
        result = await self._share_client.share(self.input.value, self.config.value)
        if result.ok:
            self.output.info(f"Session saved at: {result.value}", link=result.value)
        else:
            self.output.error(result.error)
        return result

    def insert_component(self, kind: Union[ComponentKind, str], name: str) -> Result[Optional[str]]:
        """Add a default component of type ``name`` to the config buffer."""
        rejected = self._check_ready()
        if rejected is not None:
            return rejected
        self.touch()
        result = self._adapter.insert_component(ComponentKind(kind), name, self.config.value)
        if not result.ok:
            self.output.error(result.error)
            return result
        if result.value is not None:
            self.config.set_value(result.value)
            self.set_view(View.CONFIG)
        return result
