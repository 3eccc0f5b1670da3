"""
Processors of the built-in engine.

A processor receives one batch (a list of message parts) and returns zero or
more batches. Returning an empty list drops the batch. Construction errors
are ``ConfigError`` and surface at compile time; ``ExecutionError`` raised
from ``process`` fails the current batch only.
"""

import asyncio
import json
import re
from typing import Any, Dict, List

from ..errors import ConfigError, ExecutionError
from .base import ComponentKind
from .registry import catalog
from .resources import Resources, parse_duration

Batch = List[str]

CONTENT_PLACEHOLDER = "${!content()}"
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "WARN", "ERROR")


def interpolate(template: str, content: str) -> str:
    """Substitute the message content into ``template``."""
    return template.replace(CONTENT_PLACEHOLDER, content)


def target_indexes(parts: List[int], size: int) -> List[int]:
    """Resolve a ``parts`` field against a batch of ``size`` parts.

    An empty list targets every part; negative indexes count from the end.
    Indexes out of range are ignored.
    """
    if not parts:
        return list(range(size))
    resolved = []
    for index in parts:
        if index < 0:
            index += size
        if 0 <= index < size:
            resolved.append(index)
    return resolved


class ProcessContext:
    """Per-batch context collecting log lines emitted by processors."""

    def __init__(self):
        self.logs: List[str] = []

    def log(self, level: str, message: str) -> None:
        self.logs.append(f"{level} {message}")


class Processor:
    """Base class for processors."""

    def __init__(self, fields: Dict[str, Any], resources: Resources):
        self.fields = fields
        self.resources = resources

    async def process(self, batch: Batch, ctx: ProcessContext) -> List[Batch]:
        raise NotImplementedError


@catalog.register(ComponentKind.PROCESSOR, "noop")
class NoopProcessor(Processor):
    """Passes batches through unchanged."""

    async def process(self, batch, ctx):
        return [batch]


@catalog.register(
    ComponentKind.PROCESSOR,
    "text",
    {"operator": "to_upper", "arg": "", "value": "", "parts": []},
)
class TextProcessor(Processor):
    """Applies a string operation to message parts."""

    OPERATORS = ("append", "prepend", "replace", "set", "to_lower", "to_upper", "trim_space")

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        if fields["operator"] not in self.OPERATORS:
            raise ConfigError(
                f"text operator '{fields['operator']}' not recognised, "
                f"expected one of: {', '.join(self.OPERATORS)}"
            )

    def _apply(self, content: str) -> str:
        op = self.fields["operator"]
        value = interpolate(self.fields["value"], content)
        if op == "to_upper":
            return content.upper()
        if op == "to_lower":
            return content.lower()
        if op == "trim_space":
            return content.strip()
        if op == "append":
            return content + value
        if op == "prepend":
            return value + content
        if op == "set":
            return value
        return content.replace(self.fields["arg"], value)

    async def process(self, batch, ctx):
        result = list(batch)
        for i in target_indexes(self.fields["parts"], len(batch)):
            result[i] = self._apply(batch[i])
        return [result]


@catalog.register(ComponentKind.PROCESSOR, "insert_part", {"index": -1, "content": ""})
class InsertPartProcessor(Processor):
    """Inserts a new part at an index; negative indexes count back from the end."""

    async def process(self, batch, ctx):
        index = self.fields["index"]
        if index < 0:
            index = max(len(batch) + 1 + index, 0)
        index = min(index, len(batch))
        result = list(batch)
        result.insert(index, self.fields["content"])
        return [result]


@catalog.register(ComponentKind.PROCESSOR, "select_parts", {"parts": [0]})
class SelectPartsProcessor(Processor):
    """Keeps only the parts at the listed indexes, dropping empty batches."""

    async def process(self, batch, ctx):
        selected = [batch[i] for i in target_indexes(self.fields["parts"], len(batch))]
        return [selected] if selected else []


@catalog.register(
    ComponentKind.PROCESSOR,
    "bounds_check",
    {"max_parts": 100, "min_parts": 1, "max_part_size": 1073741824, "min_part_size": 1},
)
class BoundsCheckProcessor(Processor):
    """Drops batches whose part count or part sizes are out of bounds."""

    async def process(self, batch, ctx):
        if not self.fields["min_parts"] <= len(batch) <= self.fields["max_parts"]:
            return []
        for part in batch:
            size = len(part.encode("utf-8"))
            if not self.fields["min_part_size"] <= size <= self.fields["max_part_size"]:
                return []
        return [batch]


@catalog.register(ComponentKind.PROCESSOR, "split", {"size": 1})
class SplitProcessor(Processor):
    """Breaks a batch into batches of at most ``size`` parts."""

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        if fields["size"] < 1:
            raise ConfigError("split size must be at least 1")

    async def process(self, batch, ctx):
        size = self.fields["size"]
        return [batch[i:i + size] for i in range(0, len(batch), size)]


@catalog.register(ComponentKind.PROCESSOR, "filter_parts", {"pattern": "", "invert": False})
class FilterPartsProcessor(Processor):
    """Keeps parts matching a regular expression (or not matching, if inverted)."""

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        try:
            self._pattern = re.compile(fields["pattern"])
        except re.error as e:
            raise ConfigError(f"filter_parts pattern is invalid: {e}") from e

    async def process(self, batch, ctx):
        invert = self.fields["invert"]
        kept = [part for part in batch if bool(self._pattern.search(part)) != invert]
        return [kept] if kept else []


@catalog.register(
    ComponentKind.PROCESSOR,
    "json",
    {"operator": "get", "path": "", "value": None, "parts": []},
)
class JSONProcessor(Processor):
    """Reads or edits a dot-separated path of JSON message parts."""

    OPERATORS = ("delete", "get", "set")

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        if fields["operator"] not in self.OPERATORS:
            raise ConfigError(
                f"json operator '{fields['operator']}' not recognised, "
                f"expected one of: {', '.join(self.OPERATORS)}"
            )
        self._path = [p for p in fields["path"].split(".") if p]

    def _descend(self, doc: Any, path: List[str]) -> Any:
        for key in path:
            if isinstance(doc, dict) and key in doc:
                doc = doc[key]
            elif isinstance(doc, list) and key.lstrip("-").isdigit() and -len(doc) <= int(key) < len(doc):
                doc = doc[int(key)]
            else:
                raise ExecutionError(f"json path '{self.fields['path']}' not found")
        return doc

    def _apply(self, content: str) -> str:
        try:
            doc = json.loads(content)
        except json.JSONDecodeError as e:
            raise ExecutionError(f"failed to parse part as json: {e}") from e

        op = self.fields["operator"]
        if op == "get":
            return json.dumps(self._descend(doc, self._path))
        if not self._path:
            return json.dumps(self.fields["value"] if op == "set" else None)

        parent = doc
        for key in self._path[:-1]:
            if not isinstance(parent, dict):
                raise ExecutionError(f"json path '{self.fields['path']}' not found")
            parent = parent.setdefault(key, {}) if op == "set" else parent.get(key)
        if not isinstance(parent, dict):
            raise ExecutionError(f"json path '{self.fields['path']}' not found")
        if op == "set":
            parent[self._path[-1]] = self.fields["value"]
        else:
            parent.pop(self._path[-1], None)
        return json.dumps(doc)

    async def process(self, batch, ctx):
        result = list(batch)
        for i in target_indexes(self.fields["parts"], len(batch)):
            result[i] = self._apply(batch[i])
        return [result]


@catalog.register(ComponentKind.PROCESSOR, "log", {"level": "INFO", "message": ""})
class LogProcessor(Processor):
    """Emits a log line per part, defaulting to the part content."""

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        if fields["level"].upper() not in LOG_LEVELS:
            raise ConfigError(f"log level '{fields['level']}' not recognised")

    async def process(self, batch, ctx):
        level = self.fields["level"].upper()
        for part in batch:
            message = interpolate(self.fields["message"], part) if self.fields["message"] else part
            ctx.log(level, message)
        return [batch]


@catalog.register(ComponentKind.PROCESSOR, "sleep", {"duration": "100ms"})
class SleepProcessor(Processor):
    """Pauses for a fixed duration before passing each batch on."""

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        self._seconds = parse_duration(fields["duration"])

    async def process(self, batch, ctx):
        await asyncio.sleep(self._seconds)
        return [batch]


@catalog.register(
    ComponentKind.PROCESSOR,
    "cache",
    {"resource": "", "operator": "set", "key": CONTENT_PLACEHOLDER, "value": CONTENT_PLACEHOLDER},
)
class CacheProcessor(Processor):
    """Stores, reads or deletes part contents in a cache resource."""

    OPERATORS = ("delete", "get", "set")

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        if fields["operator"] not in self.OPERATORS:
            raise ConfigError(
                f"cache operator '{fields['operator']}' not recognised, "
                f"expected one of: {', '.join(self.OPERATORS)}"
            )
        self._cache = resources.cache(fields["resource"])

    async def process(self, batch, ctx):
        op = self.fields["operator"]
        result = list(batch)
        for i, part in enumerate(batch):
            key = interpolate(self.fields["key"], part)
            if op == "set":
                await self._cache.set(key, interpolate(self.fields["value"], part))
            elif op == "delete":
                await self._cache.delete(key)
            else:
                value = await self._cache.get(key)
                if value is None:
                    raise ExecutionError(f"key '{key}' not found in cache '{self.fields['resource']}'")
                result[i] = value
        return [result]


@catalog.register(ComponentKind.PROCESSOR, "rate_limit", {"resource": ""})
class RateLimitProcessor(Processor):
    """Throttles parts through a rate limit resource."""

    def __init__(self, fields, resources):
        super().__init__(fields, resources)
        self._limit = resources.rate_limit(fields["resource"])

    async def process(self, batch, ctx):
        for _ in batch:
            await self._limit.access()
        return [batch]
