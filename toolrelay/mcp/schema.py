"""
Argument normalization and validation against a tool's input schema.

Models often send ``"42"`` for an integer or ``"true"`` for a boolean.
``normalize_by_schema`` coerces such values toward the declared types and
fills defaults before ``ToolArgumentValidator`` runs ``jsonschema`` over the
result.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import jsonschema

logger = logging.getLogger(__name__)

_INT_PREFIX = re.compile(r"^\s*[-+]?\d+")
_FLOAT_PREFIX = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")

_MISSING = object()


def normalize_schema(schema: dict | None) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    return s


def _schema_types(schema: dict) -> list[str]:
    declared = schema.get("type")
    if isinstance(declared, str):
        return [declared]
    if isinstance(declared, list):
        return [str(t) for t in declared]
    return []


def _schema_unions(schema: dict) -> list[dict]:
    unions: list[dict] = []
    for key in ("anyOf", "oneOf"):
        branches = schema.get(key)
        if isinstance(branches, list):
            unions.extend(b for b in branches if isinstance(b, dict))
    return unions


def normalize_by_schema(value: Any, schema: dict | None) -> Any:
    """Coerce *value* toward *schema*; unknown shapes pass through unchanged."""
    if not isinstance(schema, dict):
        return value

    unions = _schema_unions(schema)
    if unions:
        # First branch whose declared type fits; otherwise the first branch.
        for branch in unions:
            if _fits(value, branch):
                return normalize_by_schema(value, branch)
        return normalize_by_schema(value, unions[0])

    types = _schema_types(schema)
    if "object" in types:
        return _normalize_object(value, schema)
    if "array" in types:
        return _normalize_array(value, schema)
    if "boolean" in types:
        return _normalize_boolean(value)
    if "integer" in types:
        return _normalize_integer(value)
    if "number" in types:
        return _normalize_number(value)
    if "string" in types:
        return _normalize_string(value, schema)
    return value


def _fits(value: Any, schema: dict) -> bool:
    types = _schema_types(schema)
    if not types:
        return True
    checks = {
        "object": lambda v: isinstance(v, dict),
        "array": lambda v: isinstance(v, list),
        "boolean": lambda v: isinstance(v, bool),
        "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
        "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
        "string": lambda v: isinstance(v, str),
        "null": lambda v: v is None,
    }
    return any(checks.get(t, lambda v: False)(value) for t in types)


def _normalize_object(value: Any, schema: dict) -> Any:
    if not isinstance(value, dict):
        return value
    properties: dict = schema.get("properties") or {}

    # Keys the schema does not describe pass through untouched.
    output = {k: v for k, v in value.items() if k not in properties}

    for key, prop_schema in properties.items():
        if not isinstance(prop_schema, dict):
            if key in value:
                output[key] = value[key]
            continue
        current = value.get(key, _MISSING)
        if current is _MISSING or current is None:
            if "default" in prop_schema:
                current = prop_schema["default"]
            elif isinstance(prop_schema.get("enum"), list) and prop_schema["enum"]:
                current = prop_schema["enum"][0]
            elif current is None:
                output[key] = None
                continue
            else:
                continue
        output[key] = normalize_by_schema(current, prop_schema)
    return output


def _normalize_array(value: Any, schema: dict) -> list:
    items = schema.get("items") if isinstance(schema.get("items"), dict) else {}
    values = value if isinstance(value, list) else [value]
    return [normalize_by_schema(v, items) for v in values]


def _normalize_boolean(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    return value


def _normalize_integer(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        if match:
            return int(match.group(0))
    return value


def _normalize_number(value: Any) -> Any:
    if isinstance(value, str):
        match = _FLOAT_PREFIX.match(value)
        if match:
            number = float(match.group(0))
            return int(number) if number.is_integer() and "." not in match.group(0) else number
    return value


def _normalize_string(value: Any, schema: dict) -> Any:
    if value is None or isinstance(value, str):
        enum = schema.get("enum")
        if isinstance(value, str) and isinstance(enum, list) and enum and value not in enum:
            logger.debug("Value %r outside enum %r; leaving it for the server", value, enum)
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class ToolArgumentValidator:
    @staticmethod
    def validate(arguments: Any, schema: dict | None) -> tuple[bool, str | None]:
        try:
            jsonschema.validate(instance=arguments, schema=normalize_schema(schema))
            return True, None
        except jsonschema.ValidationError as e:
            return False, str(e.message)
        except jsonschema.SchemaError as e:
            # A broken server schema should not block the call.
            logger.warning("Ignoring invalid tool schema: %s", e.message)
            return True, None
