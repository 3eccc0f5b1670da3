"""
Pipeline configuration documents of the built-in engine.

A lab config is a YAML mapping with the sections ``input``, ``buffer``,
``pipeline``, ``output`` and ``resources``. Components take the form::

    type: text
    text:
      operator: to_upper

``sanitise`` validates a parsed document against the catalog, fills in
defaults and drops unknown fields; ``marshal`` renders the result with a
fixed section and field order, so normalising is idempotent. ``lint``
reports the fields that sanitising would drop, with their line numbers.
"""

import copy
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ConfigError
from .base import ComponentKind
from .registry import Catalog

SECTION_ORDER = ("input", "buffer", "pipeline", "output", "resources")

# Sections that only accept the lab's own plumbing
FIXED_SECTIONS = {
    "input": ("lab",),
    "buffer": ("none",),
    "output": ("lab",),
}

DEFAULT_TYPES = {
    ComponentKind.PROCESSOR: "noop",
    ComponentKind.CACHE: "memory",
    ComponentKind.RATELIMIT: "local",
}

RESOURCE_SECTIONS = {
    ComponentKind.CACHE: "caches",
    ComponentKind.RATELIMIT: "rate_limits",
}

MAX_RESOURCE_IDS = 10000


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "mapping"
    if value is None:
        return "null"
    return type(value).__name__


def load_document(text: str) -> Dict[str, Any]:
    """Parse config text into a mapping.

    Raises:
        ConfigError: On YAML syntax errors or a non-mapping document.
    """
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"yaml: {e}") from e
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ConfigError(f"expected a mapping at the top level, got {_type_name(doc)}")
    return doc


def _check_type(value: Any, default: Any, path: str) -> Any:
    if default is None:
        return value
    if isinstance(default, bool):
        ok = isinstance(value, bool)
    elif isinstance(default, int):
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif isinstance(default, float):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            value = float(value)
    elif isinstance(default, str):
        ok = isinstance(value, str)
    elif isinstance(default, list):
        ok = isinstance(value, list)
    elif isinstance(default, dict):
        ok = isinstance(value, dict)
    else:
        ok = True
    if not ok:
        raise ConfigError(f"{path}: expected {_type_name(default)}, got {_type_name(value)}")
    return value


def _as_mapping(raw: Any, path: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping, got {_type_name(raw)}")
    return raw


def sanitise_component(kind: ComponentKind, raw: Any, path: str, catalog: Catalog) -> Dict[str, Any]:
    """Validate one component and return it with defaults filled in."""
    raw = _as_mapping(raw, path)
    ctype = raw.get("type", DEFAULT_TYPES[kind])
    if not isinstance(ctype, str):
        raise ConfigError(f"{path}.type: expected string, got {_type_name(ctype)}")
    spec = catalog.get(kind, ctype)
    if spec is None:
        raise ConfigError(f"{kind.value} type '{ctype}' not recognised")

    fields = _as_mapping(raw.get(ctype), f"{path}.{ctype}")
    merged = {}
    for key, default in spec.defaults.items():
        if key in fields:
            merged[key] = _check_type(fields[key], default, f"{path}.{ctype}.{key}")
        else:
            merged[key] = copy.deepcopy(default)
    return {"type": ctype, ctype: merged}


def _sanitise_fixed(section: str, raw: Any) -> Dict[str, Any]:
    raw = _as_mapping(raw, section)
    allowed = FIXED_SECTIONS[section]
    ctype = raw.get("type", allowed[0])
    if ctype not in allowed:
        raise ConfigError(f"{section} type '{ctype}' is not available in the lab")
    return {"type": ctype}


def sanitise(doc: Dict[str, Any], catalog: Catalog) -> Dict[str, Any]:
    """Return the canonical form of a parsed config document.

    Raises:
        ConfigError: If a section, component or field is invalid.
    """
    result: Dict[str, Any] = {}
    for section in ("input", "buffer"):
        result[section] = _sanitise_fixed(section, doc.get(section))

    pipeline = _as_mapping(doc.get("pipeline"), "pipeline")
    threads = _check_type(pipeline.get("threads", 1), 1, "pipeline.threads")
    if threads < 1:
        raise ConfigError("pipeline.threads must be at least 1")
    processors = pipeline.get("processors") or []
    if not isinstance(processors, list):
        raise ConfigError(f"pipeline.processors: expected list, got {_type_name(processors)}")
    result["pipeline"] = {
        "threads": threads,
        "processors": [
            sanitise_component(ComponentKind.PROCESSOR, proc, f"pipeline.processors.{i}", catalog)
            for i, proc in enumerate(processors)
        ],
    }

    result["output"] = _sanitise_fixed("output", doc.get("output"))

    resources = _as_mapping(doc.get("resources"), "resources")
    result["resources"] = {}
    for kind, section in RESOURCE_SECTIONS.items():
        declared = _as_mapping(resources.get(section), f"resources.{section}")
        result["resources"][section] = {
            str(name): sanitise_component(kind, component, f"resources.{section}.{name}", catalog)
            for name, component in declared.items()
        }
    return result


def marshal(doc: Dict[str, Any]) -> str:
    """Render a sanitised document as YAML, preserving key order."""
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, allow_unicode=True)


def normalise(text: str, catalog: Catalog) -> str:
    """Parse, sanitise and re-render config text."""
    return marshal(sanitise(load_document(text), catalog))


# ============= Linting =============


def _key_line(key_node: yaml.Node) -> int:
    return key_node.start_mark.line + 1


def _lint_keys(node: yaml.Node, allowed, lints: List[str]) -> None:
    if not isinstance(node, yaml.MappingNode):
        return
    allowed = tuple(allowed)
    for key_node, _ in node.value:
        if not isinstance(key_node, yaml.ScalarNode):
            continue
        if key_node.value not in allowed:
            lints.append(f"line {_key_line(key_node)}: field {key_node.value} not recognised")


def _lint_component(node: yaml.Node, kind: ComponentKind, catalog: Catalog, lints: List[str]) -> None:
    if not isinstance(node, yaml.MappingNode):
        return
    ctype = DEFAULT_TYPES[kind]
    for key_node, value_node in node.value:
        if key_node.value == "type" and isinstance(value_node, yaml.ScalarNode):
            ctype = value_node.value
    spec = catalog.get(kind, ctype)
    if spec is None:
        return
    for key_node, value_node in node.value:
        if not isinstance(key_node, yaml.ScalarNode):
            continue
        key = key_node.value
        if key == "type":
            continue
        if key == ctype:
            _lint_keys(value_node, spec.defaults, lints)
        elif catalog.get(kind, key) is not None:
            lints.append(
                f"line {_key_line(key_node)}: field {key} is invalid when the component type is {ctype}"
            )
        else:
            lints.append(f"line {_key_line(key_node)}: field {key} not recognised")


def lint(text: str, catalog: Catalog) -> List[str]:
    """Report fields of ``text`` that the engine ignores."""
    try:
        root = yaml.compose(text)
    except yaml.YAMLError:
        return []
    if not isinstance(root, yaml.MappingNode):
        return []

    lints: List[str] = []
    _lint_keys(root, SECTION_ORDER, lints)
    for key_node, value_node in root.value:
        if not isinstance(key_node, yaml.ScalarNode):
            continue
        section = key_node.value
        if section in FIXED_SECTIONS:
            _lint_keys(value_node, ("type",), lints)
        elif section == "pipeline":
            _lint_keys(value_node, ("threads", "processors"), lints)
            if not isinstance(value_node, yaml.MappingNode):
                continue
            for sub_key, sub_value in value_node.value:
                if sub_key.value == "processors" and isinstance(sub_value, yaml.SequenceNode):
                    for proc_node in sub_value.value:
                        _lint_component(proc_node, ComponentKind.PROCESSOR, catalog, lints)
        elif section == "resources":
            _lint_keys(value_node, RESOURCE_SECTIONS.values(), lints)
            if not isinstance(value_node, yaml.MappingNode):
                continue
            for sub_key, sub_value in value_node.value:
                kind = next((k for k, s in RESOURCE_SECTIONS.items() if s == sub_key.value), None)
                if kind is None or not isinstance(sub_value, yaml.MappingNode):
                    continue
                for _, component_node in sub_value.value:
                    _lint_component(component_node, kind, catalog, lints)
    return lints


# ============= Component insertion =============


def _free_resource_id(existing: Dict[str, Any]) -> Optional[str]:
    for i in range(MAX_RESOURCE_IDS):
        candidate = "example" if i == 0 else f"example{i}"
        if candidate not in existing:
            return candidate
    return None


def insert_component(text: str, kind: ComponentKind, name: str, catalog: Catalog) -> Optional[str]:
    """Return ``text`` with a default component of type ``name`` added.

    Processors are appended to the pipeline; caches and rate limits are
    declared under the first free ``example`` id. Returns None when there is
    nothing to insert or no id is left.

    Raises:
        ConfigError: If ``name`` is unknown or ``text`` is invalid.
    """
    if not name:
        return None
    spec = catalog.get(kind, name)
    if spec is None:
        raise ConfigError(f"{kind.value} type '{name}' not recognised")

    doc = sanitise(load_document(text), catalog)
    component = {"type": name, name: copy.deepcopy(spec.defaults)}
    if kind == ComponentKind.PROCESSOR:
        doc["pipeline"]["processors"].append(component)
    else:
        declared = doc["resources"][RESOURCE_SECTIONS[kind]]
        resource_id = _free_resource_id(declared)
        if resource_id is None:
            return None
        declared[resource_id] = component
    return marshal(doc)
