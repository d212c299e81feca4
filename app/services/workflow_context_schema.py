"""
Typed context schemas for workflow templates.

A template may declare the context keys its steps and conditions expect:

    {
      "version": 1,
      "fields": {
        "client_approved": {"type": "boolean", "label": "Client approved",
                            "required": true, "default": false},
        "document_count":  {"type": "number", "min": 0, "max": 100, "default": 0},
        "approver_name":   {"type": "string", "min_length": 2, "max_length": 100,
                            "pattern": "^[A-Z]"},
        "documents":       {"type": "array", "item_type": "string", "max_items": 50},
        "payment":         {"type": "object",
                            "properties": {"amount": {"type": "number", "required": true}}}
      }
    }

Defaults are applied when an instance is created and when its context is
cleared.  Writes through the context API are validated against the schema;
keys written by step handlers are not.
"""

from __future__ import annotations

import re
from typing import Any

FIELD_TYPES = ("string", "number", "boolean", "array", "object")

_INT_OPTIONS = ("min_length", "max_length", "min_items", "max_items")
_NUMBER_OPTIONS = ("min", "max")


def _type_of(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _error(field: str, message: str, code: str) -> dict:
    return {"field": field, "message": message, "code": code}


def schema_fields(schema: dict | None) -> dict:
    if not isinstance(schema, dict):
        return {}
    fields = schema.get("fields")
    return fields if isinstance(fields, dict) else {}


# ═══════════════════════════════════════════════════════════════════════════
#  Authoring
# ═══════════════════════════════════════════════════════════════════════════


def validate_context_schema(schema: Any) -> list[str]:
    """Return every problem in a template's ``context_schema`` (None is valid)."""
    if schema is None:
        return []
    if not isinstance(schema, dict):
        return ["context_schema must be an object"]
    fields = schema.get("fields")
    if not isinstance(fields, dict):
        return ["context_schema.fields must be an object"]
    errors: list[str] = []
    for key, definition in fields.items():
        errors.extend(_validate_definition(f"context_schema.fields.{key}", key, definition))
    return errors


def _validate_definition(where: str, key: str, definition: Any) -> list[str]:
    if not isinstance(definition, dict):
        return [f"{where}: must be an object"]
    field_type = definition.get("type")
    if field_type not in FIELD_TYPES:
        return [f"{where}: type must be one of {', '.join(FIELD_TYPES)}"]

    errors = []
    for option in _INT_OPTIONS:
        value = definition.get(option)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
            errors.append(f"{where}: {option} must be a non-negative integer")
    for option in _NUMBER_OPTIONS:
        value = definition.get(option)
        if value is not None and _type_of(value) != "number":
            errors.append(f"{where}: {option} must be a number")
    pattern = definition.get("pattern")
    if pattern is not None:
        try:
            re.compile(pattern)
        except (re.error, TypeError):
            errors.append(f"{where}: pattern is not a valid regular expression")
    item_type = definition.get("item_type")
    if item_type is not None and item_type not in FIELD_TYPES:
        errors.append(f"{where}: item_type must be one of {', '.join(FIELD_TYPES)}")

    properties = definition.get("properties")
    if properties is not None:
        if field_type != "object" or not isinstance(properties, dict):
            errors.append(f"{where}: properties is only allowed on object fields and must be an object")
        else:
            for name, sub in properties.items():
                errors.extend(_validate_definition(f"{where}.properties.{name}", name, sub))

    if not errors and "default" in definition:
        errors.extend(
            f"{where}: default is invalid ({e['message']})"
            for e in validate_context_field(key, definition["default"], definition)
        )
    return errors


# ═══════════════════════════════════════════════════════════════════════════
#  Values
# ═══════════════════════════════════════════════════════════════════════════


def validate_context_field(key: str, value: Any, definition: dict) -> list[dict]:
    """Check one value against its field definition."""
    label = definition.get("label") or key
    if _is_empty(value):
        if definition.get("required"):
            return [_error(key, f"{label} is required", "REQUIRED")]
        return []

    field_type = definition.get("type")
    if _type_of(value) != field_type:
        return [_error(key, f"{label} must be a {field_type}", "INVALID_TYPE")]

    errors = []
    if field_type == "string":
        if definition.get("min_length") and len(value) < definition["min_length"]:
            errors.append(_error(key, f"{label} must be at least {definition['min_length']} characters", "MIN_LENGTH"))
        if definition.get("max_length") and len(value) > definition["max_length"]:
            errors.append(_error(key, f"{label} must be at most {definition['max_length']} characters", "MAX_LENGTH"))
        if definition.get("pattern") and not re.search(definition["pattern"], value):
            errors.append(_error(key, f"{label} format is invalid", "INVALID_PATTERN"))
    elif field_type == "number":
        if definition.get("min") is not None and value < definition["min"]:
            errors.append(_error(key, f"{label} must be at least {definition['min']}", "MIN_VALUE"))
        if definition.get("max") is not None and value > definition["max"]:
            errors.append(_error(key, f"{label} must be at most {definition['max']}", "MAX_VALUE"))
    elif field_type == "array":
        if definition.get("min_items") and len(value) < definition["min_items"]:
            errors.append(_error(key, f"{label} must have at least {definition['min_items']} items", "MIN_ITEMS"))
        if definition.get("max_items") and len(value) > definition["max_items"]:
            errors.append(_error(key, f"{label} must have at most {definition['max_items']} items", "MAX_ITEMS"))
        item_type = definition.get("item_type")
        if item_type and any(_type_of(item) != item_type for item in value):
            errors.append(_error(key, f"{label} items must be of type {item_type}", "INVALID_ITEM_TYPE"))
    elif field_type == "object":
        for name, sub in (definition.get("properties") or {}).items():
            errors.extend(validate_context_field(f"{key}.{name}", value.get(name), sub))
    return errors


def validate_context(context: dict, schema: dict | None, *, written=None) -> list[dict]:
    """
    Validate *context* against *schema*.

    ``written`` limits the check to the keys a partial update touched;
    without it every schema field is checked.  Written keys the schema
    does not define are reported as UNDEFINED_FIELD.
    """
    fields = schema_fields(schema)
    if not fields:
        return []
    keys = list(context) if written is None else list(written)

    errors = []
    for key, definition in fields.items():
        if written is None or key in keys:
            errors.extend(validate_context_field(key, context.get(key), definition))
    for key in keys:
        if key not in fields:
            errors.append(_error(key, f'Field "{key}" is not defined in schema', "UNDEFINED_FIELD"))
    return errors


def apply_schema_defaults(context: dict, schema: dict | None) -> dict:
    """Copy of *context* with defaults filled in for absent keys."""
    result = dict(context)
    for key, definition in schema_fields(schema).items():
        if key not in result and isinstance(definition, dict) and "default" in definition:
            result[key] = definition["default"]
    return result
