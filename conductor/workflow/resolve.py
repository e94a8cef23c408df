"""
Context value resolution for workflow parameters.

A string starting with ``$`` is a dotted path into the execution context:
``$result.items.0.name`` walks mappings by key and lists by index. A path
that does not resolve yields None; resolution never raises. ``$$`` escapes
a literal dollar sign.
"""

from collections.abc import Mapping
from typing import Any


def resolve_path(path: str, context: Mapping[str, Any]) -> Any:
    """Walk a dotted path through nested mappings and lists."""
    head, *rest = path.split(".")
    current = context.get(head) if isinstance(context, Mapping) else None
    for part in rest:
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list | tuple):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve a ``$path`` reference; any other value is returned unchanged."""
    if isinstance(value, str) and value.startswith("$"):
        if value.startswith("$$"):
            return value[1:]
        return resolve_path(value[1:], context)
    return value


def resolve_params(params: Any, context: Mapping[str, Any]) -> Any:
    """Resolve every ``$path`` reference inside nested dicts and lists."""
    if isinstance(params, Mapping):
        return {key: resolve_params(value, context) for key, value in params.items()}
    if isinstance(params, list):
        return [resolve_params(item, context) for item in params]
    return resolve_value(params, context)
