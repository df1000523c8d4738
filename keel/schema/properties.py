"""Property Schemas — model property notation → JSON schema and SQLAlchemy columns.

Invariants:
    - Property-level extras (primary, required, unique, index, column, computed, hidden)
      never reach the JSON schema; `required: true` moves into the object's `required`
    - Non-JSON types name other models and become `$ref`s
    - date / datetime / timestamp accept ISO strings and date objects alike
"""

import copy
from collections.abc import Callable, Mapping
from typing import Any

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Float, Integer, String, Text,
)
from sqlalchemy.types import TypeEngine

JSON_TYPES = frozenset({
    "string", "number", "integer", "boolean", "object", "array", "null",
})
DATE_TYPES = frozenset({"date", "datetime", "timestamp"})
PROPERTY_EXTRAS = (
    "primary", "required", "unique", "index", "column", "computed", "hidden",
)


def convert_property(schema: Any) -> dict[str, Any]:
    if isinstance(schema, str):
        schema = {"type": schema}
    elif isinstance(schema, list):
        schema = {"type": "array", "items": schema[0] if len(schema) == 1 else schema}
    schema = copy.deepcopy(dict(schema))
    for key in PROPERTY_EXTRAS:
        schema.pop(key, None)
    kind = schema.get("type")
    if kind == "text":
        schema["type"] = "string"
    elif kind in DATE_TYPES:
        del schema["type"]
        schema["anyOf"] = [
            {"type": "string", "format": "date" if kind == "date" else "date-time"},
            {"instanceof": "Date"},
        ]
    elif isinstance(kind, str) and kind not in JSON_TYPES:
        del schema["type"]
        schema["$ref"] = kind
    elif kind == "array" and "items" in schema:
        items = schema["items"]
        schema["items"] = (
            [convert_property(item) for item in items]
            if isinstance(items, list) else convert_property(items)
        )
    elif kind == "object" and isinstance(schema.get("properties"), Mapping):
        nested = convert_properties(schema["properties"], additional=schema.get(
            "additionalProperties", True,
        ))
        schema.update(nested)
    if schema.get("nullable"):
        schema = _make_nullable(schema)
    return schema


def _make_nullable(schema: dict[str, Any]) -> dict[str, Any]:
    kind = schema.get("type")
    if isinstance(kind, str):
        schema["type"] = [kind, "null"]
    elif isinstance(kind, list):
        if "null" not in kind:
            schema["type"] = [*kind, "null"]
    else:
        keep = {"nullable": True}
        for key in ("default", "description", "title"):
            if key in schema:
                keep[key] = schema.pop(key)
        schema.pop("nullable", None)
        schema = {"anyOf": [schema, {"type": "null"}], **keep}
    return schema


def convert_properties(
    properties: Mapping[str, Any],
    additional: bool = False,
) -> dict[str, Any]:
    """Root (or nested object) properties → `{"type": "object", ...}` schema."""
    converted = {}
    required = []
    for name, prop in properties.items():
        if isinstance(prop, Mapping) and prop.get("required"):
            required.append(name)
        converted[name] = convert_property(prop)
    schema: dict[str, Any] = {
        "type": "object",
        "properties": converted,
        "additionalProperties": additional,
    }
    if required:
        schema["required"] = required
    return schema


def column_type(prop: Mapping[str, Any]) -> TypeEngine:
    kind = prop.get("type")
    if kind == "integer":
        return Integer()
    if kind == "number":
        return Float()
    if kind == "boolean":
        return Boolean()
    if kind == "text":
        return Text()
    if kind == "string":
        return String(prop.get("maxLength", 255))
    if kind == "date":
        return Date()
    if kind in ("datetime", "timestamp"):
        return DateTime(timezone=True)
    return JSON()


def build_columns(
    properties: Mapping[str, Mapping[str, Any]],
    column_name: Callable[[str], str],
) -> list[Column]:
    columns = []
    # Only a single integer primary key autoincrements.
    single_key = sum(1 for prop in properties.values() if prop.get("primary")) == 1
    for name, prop in properties.items():
        if prop.get("computed"):
            continue
        primary = bool(prop.get("primary"))
        kwargs: dict[str, Any] = {
            "primary_key": primary,
            "nullable": False if primary else prop.get(
                "nullable", not prop.get("required", False),
            ),
            "unique": bool(prop.get("unique")) or None,
            "index": bool(prop.get("index")) or None,
        }
        if primary and prop.get("type") == "integer":
            kwargs["autoincrement"] = single_key
        if "default" in prop and not callable(prop["default"]):
            kwargs["default"] = prop["default"]
        columns.append(Column(column_name(name), column_type(prop), **kwargs))
    return columns
