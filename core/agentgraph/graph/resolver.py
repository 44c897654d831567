"""
Variable resolution for ``{{source.field}}`` references.

Reference forms:

- ``name``            the current node's raw input map
- ``input.name``      the workflow input
- ``context.name``    the shared context map
- ``node_id.name``    the recorded output of an upstream node

Paths may continue past the first field (``fetch.data.items.0.title``) to
walk nested maps and lists. Anything missing resolves to ``None`` in value
mode and to ``""`` in template mode. Resolution is a single pass: a value
that itself contains ``{{...}}`` is not expanded again.
"""

import json
import re
from typing import Any

from agentgraph.graph.context import NodeContext

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
_SINGLE_REFERENCE = re.compile(r"^\s*\{\{([^}]+)\}\}\s*$")

_MISSING = object()


def _strip_braces(ref: str) -> str:
    ref = ref.strip()
    if ref.startswith("{{") and ref.endswith("}}"):
        ref = ref[2:-2]
    return ref.strip()


def _walk(value: Any, path: list[str]) -> Any:
    for key in path:
        if isinstance(value, dict):
            value = value.get(key, _MISSING)
        elif isinstance(value, list | tuple) and key.lstrip("-").isdigit():
            index = int(key)
            value = value[index] if -len(value) <= index < len(value) else _MISSING
        else:
            return None
        if value is _MISSING:
            return None
    return value


def resolve_value(ref: str, context: NodeContext) -> Any:
    """Resolve one reference (with or without braces) to its raw value."""
    ref = _strip_braces(ref)
    if not ref:
        return None

    parts = [part.strip() for part in ref.split(".")]
    if len(parts) == 1:
        return _walk(context.input, parts)

    source, path = parts[0], parts[1:]
    if source == "input":
        return _walk(context.workflow_input, path)
    if source == "context":
        return _walk(context.variables, path)

    output = context.node_output(source)
    if output is None:
        return None
    return _walk(output, path)


def stringify(value: Any) -> str:
    """String form used when a value is spliced into a template."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


def resolve(template: str | None, context: NodeContext) -> str | None:
    """Replace every ``{{ref}}`` in ``template``; unresolved refs become ``""``."""
    if template is None:
        return None
    if "{{" not in template:
        return template
    return VARIABLE_PATTERN.sub(
        lambda match: stringify(resolve_value(match.group(1), context)), template
    )


def resolve_structure(obj: Any, context: NodeContext) -> Any:
    """
    Resolve templates inside nested dicts and lists.

    A string that is exactly one reference keeps the referenced value's type
    (so ``"{{fetch.data}}"`` yields the dict, not its JSON text); any other
    string is resolved in template mode.
    """
    if isinstance(obj, str):
        match = _SINGLE_REFERENCE.match(obj)
        if match:
            return resolve_value(match.group(1), context)
        return resolve(obj, context)
    if isinstance(obj, dict):
        return {key: resolve_structure(value, context) for key, value in obj.items()}
    if isinstance(obj, list):
        return [resolve_structure(item, context) for item in obj]
    return obj
