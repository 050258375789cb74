"""
Node input resolution.

String values in a node's ``input`` may reference earlier results or the
execution context with ``${...}``:

    "${fetch.items}"            -> fetch's result["items"], raw value
    "${user_id}"                -> context["user_id"], raw value
    "Found ${count.total} rows" -> interpolated, objects JSON-encoded

A string that is exactly one reference resolves to the raw value (dicts and
lists stay structured). References that cannot be resolved are left as-is.
"""

import json
import re
from typing import Any

from intent_router.schemas.graph import EdgeSpec, NodeSpec

_REFERENCE = re.compile(r"\$\{([^}]+)\}")
_SINGLE_REFERENCE = re.compile(r"^\$\{([^}]+)\}$")

_MISSING = object()


def _walk(value: Any, parts: list[str]) -> Any:
    for part in parts:
        if isinstance(value, dict):
            if part not in value:
                return _MISSING
            value = value[part]
        elif isinstance(value, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(value) <= index < len(value):
                return _MISSING
            value = value[index]
        else:
            return _MISSING
    return value


def lookup(path: str, results: dict[str, Any], context: dict[str, Any]) -> Any:
    """Resolve one dotted reference; returns the ``_MISSING`` sentinel when absent."""
    path = path.strip()
    parts = path.split(".")
    if len(parts) >= 2 and parts[0] in results:
        return _walk(results[parts[0]], parts[1:])
    if path in context:
        return context[path]
    return _walk(context, parts)


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_value(value: Any, results: dict[str, Any], context: dict[str, Any]) -> Any:
    """Recursively substitute references inside strings, lists and dicts."""
    if isinstance(value, str):
        single = _SINGLE_REFERENCE.match(value)
        if single:
            resolved = lookup(single.group(1), results, context)
            return value if resolved is _MISSING else resolved

        def _replace(match: re.Match) -> str:
            resolved = lookup(match.group(1), results, context)
            return match.group(0) if resolved is _MISSING else _stringify(resolved)

        return _REFERENCE.sub(_replace, value)
    if isinstance(value, list):
        return [resolve_value(item, results, context) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, results, context) for key, item in value.items()}
    return value


def resolve_node_input(
    node: NodeSpec,
    results: dict[str, Any],
    context: dict[str, Any],
    incoming_edges: list[EdgeSpec] | None = None,
) -> dict[str, Any]:
    """
    Build the input an agent receives for a node.

    Args:
        node: The node about to run
        results: Raw result of every successful node, keyed by node id
        context: Execution context
        incoming_edges: Edges into the node; their ``data_flow`` maps an input
            key to a dotted path in the source node's result and fills keys
            the node's own input does not set

    Returns:
        The resolved input dict (the node itself is not modified)
    """
    resolved = resolve_value(dict(node.input), results, context)

    for edge in incoming_edges or []:
        if not edge.data_flow or edge.source not in results:
            continue
        for input_key, source_path in edge.data_flow.items():
            if input_key in resolved:
                continue
            parts = [p for p in source_path.split(".") if p]
            if parts and parts[0] in ("result", "output"):
                parts = parts[1:]
            value = _walk(results[edge.source], parts)
            if value is not _MISSING:
                resolved[input_key] = value

    return resolved
