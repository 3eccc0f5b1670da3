"""
Compute engine contract and the built-in engine.

``ComputeEngine`` is the narrow call surface the lab consumes; ``BuiltinEngine``
is the in-process implementation used by default.
"""

from .base import BatchResult, CompileReport, ComponentKind, ComputeEngine
from .builtin import BuiltinEngine, load_engine, split_batches
from .registry import Catalog, catalog

__all__ = [
    "BatchResult",
    "BuiltinEngine",
    "Catalog",
    "CompileReport",
    "ComponentKind",
    "ComputeEngine",
    "catalog",
    "load_engine",
    "split_batches",
]
