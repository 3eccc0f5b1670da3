"""
Cache and rate limit resources of the built-in engine.

Resources are declared under ``resources.caches`` and
``resources.rate_limits`` and referenced by name from processors. A fresh
set is built on every compile.
"""

import asyncio
import re
import time
from collections import OrderedDict
from typing import Any, Dict, Optional

from ..errors import ConfigError
from .base import ComponentKind
from .registry import catalog

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ns|us|ms|s|m|h)\s*$")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Convert a duration string such as ``"100ms"`` or ``"1.5s"`` into seconds.

    Raises:
        ConfigError: If the string is not a duration.
    """
    match = _DURATION_RE.match(value)
    if not match:
        raise ConfigError(f"invalid duration '{value}'")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


class Resources:
    """Named caches and rate limits shared by the processors of a pipeline."""

    def __init__(self, caches: Optional[Dict[str, Any]] = None, rate_limits: Optional[Dict[str, Any]] = None):
        self.caches = caches or {}
        self.rate_limits = rate_limits or {}

    def cache(self, name: str):
        try:
            return self.caches[name]
        except KeyError:
            raise ConfigError(f"cache resource '{name}' was not found") from None

    def rate_limit(self, name: str):
        try:
            return self.rate_limits[name]
        except KeyError:
            raise ConfigError(f"rate limit resource '{name}' was not found") from None


# ============= Caches =============


@catalog.register(ComponentKind.CACHE, "memory", {"ttl": 300})
class MemoryCache:
    """Stores key/value pairs in memory, each expiring after ``ttl`` seconds."""

    def __init__(self, fields: Dict[str, Any], resources: Optional[Resources] = None, clock=time.monotonic):
        self.ttl = fields["ttl"]
        if self.ttl < 0:
            raise ConfigError("memory cache ttl must not be negative")
        self._clock = clock
        self._items: Dict[str, tuple] = {}

    async def get(self, key: str) -> Optional[str]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self.ttl and self._clock() >= expires_at:
            del self._items[key]
            return None
        return value

    async def set(self, key: str, value: str) -> None:
        self._items[key] = (value, self._clock() + self.ttl)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)


@catalog.register(ComponentKind.CACHE, "lru", {"cap": 1000})
class LRUCache:
    """Keeps the ``cap`` most recently used key/value pairs in memory."""

    def __init__(self, fields: Dict[str, Any], resources: Optional[Resources] = None):
        self.cap = fields["cap"]
        if self.cap < 1:
            raise ConfigError("lru cache cap must be at least 1")
        self._items: "OrderedDict[str, str]" = OrderedDict()

    async def get(self, key: str) -> Optional[str]:
        if key not in self._items:
            return None
        self._items.move_to_end(key)
        return self._items[key]

    async def set(self, key: str, value: str) -> None:
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self.cap:
            self._items.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)


# ============= Rate limits =============


@catalog.register(ComponentKind.RATELIMIT, "local", {"count": 1000, "interval": "1s"})
class LocalRateLimit:
    """Allows ``count`` accesses per ``interval``, delaying callers beyond that."""

    def __init__(self, fields: Dict[str, Any], resources: Optional[Resources] = None):
        self.count = fields["count"]
        if self.count < 1:
            raise ConfigError("local rate limit count must be at least 1")
        self.interval = parse_duration(fields["interval"])
        self._window_start: Optional[float] = None
        self._used = 0
        self._lock = asyncio.Lock()

    async def access(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            now = loop.time()
            if self._window_start is None or now - self._window_start >= self.interval:
                self._window_start = now
                self._used = 0
            if self._used >= self.count:
                await asyncio.sleep(self._window_start + self.interval - now)
                self._window_start = loop.time()
                self._used = 0
            self._used += 1
