"""
JSON Schema helpers used when publishing tool schemas and decoding
structured tool output.
"""

import copy
import logging
from typing import Any, Dict, Optional, Set

import jsonschema

from forge_mcp.error_handling.exceptions import ValidationError

logger = logging.getLogger(__name__)

WRAP_RESULT_KEY = "x-fastmcp-wrap-result"


def _resolve_pointer(root: Dict[str, Any], ref: str) -> Optional[Any]:
    if not ref.startswith("#"):
        return None
    node: Any = root
    for part in ref.lstrip("#").strip("/").split("/"):
        if not part:
            continue
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def dereference_refs(schema: Any) -> Any:
    """
    Inline every local ``$ref`` and drop ``$defs``/``definitions``.

    Recursive references are left in place (together with the definitions
    they point to) since they cannot be expanded finitely.
    """
    if not isinstance(schema, dict):
        return schema

    root = schema
    unresolved = False

    def walk(node: Any, stack: Set[str]) -> Any:
        nonlocal unresolved
        if isinstance(node, list):
            return [walk(item, stack) for item in node]
        if not isinstance(node, dict):
            return node

        ref = node.get("$ref")
        if isinstance(ref, str):
            target = _resolve_pointer(root, ref)
            if target is None or ref in stack:
                unresolved = True
                return {k: walk(v, stack) for k, v in node.items()}
            expanded = walk(target, stack | {ref})
            siblings = {k: walk(v, stack) for k, v in node.items() if k != "$ref"}
            if isinstance(expanded, dict):
                merged = dict(expanded)
                merged.update(siblings)
                return merged
            return expanded

        return {
            k: walk(v, stack)
            for k, v in node.items()
            if k not in ("$defs", "definitions")
        }

    result = walk(root, set())
    if unresolved:
        # keep the definitions the remaining refs point at
        for key in ("$defs", "definitions"):
            if key in root:
                result[key] = copy.deepcopy(root[key])
    return result


def normalize_output_schema(schema: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Wrap a non-object output schema so structured output is always an object."""
    if schema is None:
        return None
    if isinstance(schema, dict) and schema.get("type") == "object":
        return schema
    if isinstance(schema, dict) and not schema:
        return None
    return {
        "type": "object",
        "properties": {"result": schema},
        "required": ["result"],
        WRAP_RESULT_KEY: True,
    }


def is_wrapped(schema: Optional[Dict[str, Any]]) -> bool:
    return bool(schema) and bool(schema.get(WRAP_RESULT_KEY))


def apply_defaults(schema: Any, value: Any) -> Any:
    """Return a copy of ``value`` with ``default`` values from ``schema`` filled in."""
    if not isinstance(schema, dict):
        return value
    if isinstance(value, dict) and isinstance(schema.get("properties"), dict):
        result = dict(value)
        for name, prop in schema["properties"].items():
            if name not in result:
                if isinstance(prop, dict) and "default" in prop:
                    result[name] = copy.deepcopy(prop["default"])
            else:
                result[name] = apply_defaults(prop, result[name])
        return result
    if isinstance(value, list) and isinstance(schema.get("items"), dict):
        return [apply_defaults(schema["items"], item) for item in value]
    return value


def validate(instance: Any, schema: Dict[str, Any], what: str = "value") -> None:
    """
    Validate ``instance`` against ``schema`` with jsonschema.

    Raises:
        ValidationError: If the instance does not conform
    """
    try:
        jsonschema.validate(instance=instance, schema=schema)
    except jsonschema.ValidationError as e:
        raise ValidationError(f"Invalid {what}: {e.message}", original_exception=e)
    except jsonschema.SchemaError as e:
        raise ValidationError(f"Invalid schema for {what}: {e.message}", original_exception=e)


def decode_structured(structured: Any, output_schema: Optional[Dict[str, Any]]) -> Any:
    """
    Turn ``structuredContent`` into a plain value using the tool's output schema.

    Wrapped schemas yield the inner ``result``; object schemas get defaults
    applied and are validated.
    """
    if not output_schema:
        return structured
    if is_wrapped(output_schema):
        if isinstance(structured, dict) and "result" in structured:
            inner_schema = output_schema.get("properties", {}).get("result", {})
            value = apply_defaults(inner_schema, structured["result"])
            validate(value, inner_schema, "structured content")
            return value
        return structured
    value = apply_defaults(output_schema, structured)
    validate(value, output_schema, "structured content")
    return value
