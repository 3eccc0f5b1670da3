"""
In-process compute engine shipped with the lab.

The engine keeps one compiled pipeline at a time. ``compile`` builds a fresh
pipeline (with fresh cache and rate limit resources) and swaps it in;
``execute`` splits the input into batches and streams a ``BatchResult`` per
batch.
"""

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

from .. import __version__
from ..errors import ConfigError, EngineLoadError, ExecutionError
from ..shared.logger import get_logger
from . import config as lab_config
from . import processors as _processors  # noqa: F401  (registers processors)
from . import resources as _resources
from .base import BatchResult, CompileReport, ComponentKind, ComputeEngine
from .processors import ProcessContext, Processor
from .registry import Catalog, catalog as default_catalog

logger = get_logger(__name__)


def split_batches(input_text: str) -> List[List[str]]:
    """Group input lines into batches separated by blank lines.

    Empty batches (leading, trailing or repeated blank lines) are skipped.
    """
    batches: List[List[str]] = [[]]
    for line in input_text.split("\n"):
        if not line:
            if batches[-1]:
                batches.append([])
            continue
        batches[-1].append(line)
    return [batch for batch in batches if batch]


class CompiledPipeline:
    """Processors and resources built from a sanitised document."""

    def __init__(self, processors: List[Processor], resources: _resources.Resources):
        self.processors = processors
        self.resources = resources

    @classmethod
    def build(cls, doc: dict, catalog: Catalog) -> "CompiledPipeline":
        def construct(kind: ComponentKind, component: dict, resources):
            spec = catalog.get(kind, component["type"])
            return spec.factory(component[component["type"]], resources)

        declared = doc["resources"]
        resources = _resources.Resources()
        resources.caches = {
            name: construct(ComponentKind.CACHE, comp, resources)
            for name, comp in declared["caches"].items()
        }
        resources.rate_limits = {
            name: construct(ComponentKind.RATELIMIT, comp, resources)
            for name, comp in declared["rate_limits"].items()
        }
        processors = [
            construct(ComponentKind.PROCESSOR, comp, resources)
            for comp in doc["pipeline"]["processors"]
        ]
        return cls(processors, resources)

    async def run(self, batch: List[str]) -> BatchResult:
        ctx = ProcessContext()
        result = BatchResult(logs=ctx.logs)
        batches = [batch]
        try:
            for processor in self.processors:
                next_batches: List[List[str]] = []
                for current in batches:
                    next_batches.extend(await processor.process(current, ctx))
                batches = next_batches
        except (ExecutionError, ConfigError) as e:
            result.error = str(e)
            return result
        except Exception as e:
            logger.exception("Processor failure")
            result.error = f"{type(e).__name__}: {e}"
            return result
        result.batches = batches
        return result


class BuiltinEngine(ComputeEngine):
    """The lab's own stream-processing engine."""

    version = __version__

    def __init__(self, catalog: Catalog = default_catalog):
        self.catalog = catalog
        self._pipeline: Optional[CompiledPipeline] = None

    @property
    def compiled(self) -> bool:
        return self._pipeline is not None

    def list_components(self, kind: ComponentKind) -> Sequence[str]:
        return self.catalog.names(kind)

    def insert_component(self, kind: ComponentKind, name: str, config: str) -> Optional[str]:
        return lab_config.insert_component(config, kind, name, self.catalog)

    async def normalise(self, config: str) -> str:
        return lab_config.normalise(config, self.catalog)

    async def compile(self, config: str) -> CompileReport:
        await self.close()
        doc = lab_config.sanitise(lab_config.load_document(config), self.catalog)
        pipeline = CompiledPipeline.build(doc, self.catalog)
        lints = lab_config.lint(config, self.catalog)
        self._pipeline = pipeline
        logger.debug("Compiled pipeline with %d processors", len(pipeline.processors))
        return CompileReport(lints=lints)

    async def execute(self, input_text: str) -> AsyncIterator[BatchResult]:
        pipeline = self._pipeline
        if pipeline is None:
            raise ExecutionError("pipeline must be compiled first")
        for batch in split_batches(input_text):
            yield await pipeline.run(batch)

    async def close(self) -> None:
        self._pipeline = None


async def load_engine(catalog: Catalog = default_catalog) -> BuiltinEngine:
    """Initialise a built-in engine instance.

    Raises:
        EngineLoadError: If the component catalog is incomplete.
    """
    await asyncio.sleep(0)
    missing = [kind.value for kind in ComponentKind if not catalog.names(kind)]
    if missing:
        raise EngineLoadError(f"engine catalog has no {', '.join(missing)} components")
    engine = BuiltinEngine(catalog)
    logger.info("Built-in engine %s loaded", engine.version)
    return engine
