"""
Controllable stand-ins for the compute engine.

``FakeEngine`` records every call, can hold compile, execute and normalise
on an ``asyncio.Event`` gate, and tracks how many engine calls overlap so
tests can observe scheduling.
"""

import asyncio
from typing import Dict, List, Optional, Sequence

from lab.engine import BatchResult, CompileReport, ComponentKind, ComputeEngine, split_batches
from lab.errors import ConfigError, EngineLoadError
from lab.session import LabSession

VALID_CONFIG = "pipeline:\n  processors: []\n"


class FakeEngine(ComputeEngine):
    version = "fake-1.0"

    def __init__(self, lints: Sequence[str] = ()):
        self.lints = list(lints)
        self.components: Dict[ComponentKind, Sequence[str]] = {
            ComponentKind.PROCESSOR: ("noop", "text"),
            ComponentKind.CACHE: ("memory",),
            ComponentKind.RATELIMIT: ("local",),
        }
        self.compile_calls: List[str] = []
        self.execute_calls: List[str] = []
        self.normalise_calls: List[str] = []
        self.compile_gate: Optional[asyncio.Event] = None
        self.execute_gate: Optional[asyncio.Event] = None
        self.normalise_gate: Optional[asyncio.Event] = None
        self.compile_error: Optional[str] = None
        self.execute_error: Optional[Exception] = None
        self.batch_errors: Dict[int, str] = {}
        self.active = 0
        self.max_active = 0
        self.closed = False

    def _enter(self):
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def _exit(self):
        self.active -= 1

    def list_components(self, kind):
        return self.components[kind]

    def insert_component(self, kind, name, config):
        if not name:
            return None
        if name not in self.components[kind]:
            raise ConfigError(f"{kind.value} type '{name}' not recognised")
        return config + f"# {kind.value}: {name}\n"

    async def normalise(self, config):
        self.normalise_calls.append(config)
        if self.normalise_gate is not None:
            await self.normalise_gate.wait()
        if "invalid" in config:
            raise ConfigError("line 1: invalid config")
        return "normalised:\n" + config

    async def compile(self, config):
        self._enter()
        try:
            self.compile_calls.append(config)
            if self.compile_gate is not None:
                await self.compile_gate.wait()
            if self.compile_error is not None:
                raise ConfigError(self.compile_error)
            return CompileReport(lints=list(self.lints))
        finally:
            self._exit()

    async def execute(self, input_text):
        self._enter()
        try:
            self.execute_calls.append(input_text)
            if self.execute_gate is not None:
                await self.execute_gate.wait()
            if self.execute_error is not None:
                raise self.execute_error
            for i, batch in enumerate(split_batches(input_text)):
                if i in self.batch_errors:
                    yield BatchResult(error=self.batch_errors[i])
                    continue
                yield BatchResult(batches=[[part.upper() for part in batch]])
        finally:
            self._exit()

    async def close(self):
        self.closed = True


def engine_factory(engine: ComputeEngine):
    async def factory():
        return engine

    return factory


async def failing_factory():
    raise EngineLoadError("engine binary could not be fetched")


async def started_session(engine=None, config=VALID_CONFIG, input_text="hello", **kwargs) -> LabSession:
    """A session whose engine has loaded, with its output log cleared."""
    engine = engine or FakeEngine()
    session = LabSession("lab_test", engine_factory(engine), config=config, input_text=input_text, **kwargs)
    await session.start()
    session.clear_output()
    return session


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run up to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)

