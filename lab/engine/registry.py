"""
Component catalog of the built-in engine.

Processors, caches and rate limits register themselves with a default field
set; the config layer uses the defaults to normalise documents and the
engine uses the classes to build a runnable pipeline.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .base import ComponentKind


@dataclass(frozen=True)
class ComponentSpec:
    """A registered component type."""

    kind: ComponentKind
    name: str
    defaults: Dict[str, Any]
    factory: Callable[..., Any]
    summary: str = ""


class Catalog:
    """Mapping of component kind to the component types available for it."""

    def __init__(self):
        self._specs: Dict[ComponentKind, Dict[str, ComponentSpec]] = {kind: {} for kind in ComponentKind}

    def register(
        self,
        kind: ComponentKind,
        name: str,
        defaults: Optional[Dict[str, Any]] = None,
        summary: str = "",
    ) -> Callable[[Any], Any]:
        """Class decorator adding a component type to the catalog."""

        def decorator(factory):
            if name in self._specs[kind]:
                raise ValueError(f"{kind.value} type '{name}' registered twice")
            self._specs[kind][name] = ComponentSpec(
                kind=kind,
                name=name,
                defaults=dict(defaults or {}),
                factory=factory,
                summary=summary or (factory.__doc__ or "").strip().split("\n")[0],
            )
            return factory

        return decorator

    def get(self, kind: ComponentKind, name: str) -> Optional[ComponentSpec]:
        return self._specs[kind].get(name)

    def names(self, kind: ComponentKind) -> Tuple[str, ...]:
        return tuple(sorted(self._specs[kind]))


# Global catalog populated by lab.engine.processors and lab.engine.resources
catalog = Catalog()
