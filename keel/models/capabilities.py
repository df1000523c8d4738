"""Capabilities — reusable property / hook / scope bundles stacked onto models.

Invariants:
    - with_capabilities() never mutates the base class; it returns a subclass
    - The subclass records every applied capability, in order, on
      `__capabilities__`; capabilities already recorded are skipped
    - A capability never overrides a property or scope the model declares
"""

import datetime
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from keel.models.model import Model, collect_declarations


@dataclass(frozen=True)
class Capability:
    name: str
    properties: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    hooks: Mapping[str, Callable] = field(default_factory=lambda: MappingProxyType({}))
    scopes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


def with_capabilities(base: type[Model], *capabilities: Capability) -> type[Model]:
    applied = tuple(getattr(base, "__capabilities__", ()))
    pending = []
    for capability in capabilities:
        if capability not in applied and capability not in pending:
            pending.append(capability)
    if not pending:
        return base
    properties: dict[str, Any] = {}
    scopes: dict[str, Any] = {}
    hooks: dict[str, list[Callable]] = {}
    for capability in pending:
        properties.update(capability.properties)
        scopes.update(capability.scopes)
        for event, listener in capability.hooks.items():
            hooks.setdefault(event, []).append(listener)
    base_properties = collect_declarations(base, "properties")
    base_scopes = collect_declarations(base, "scopes")
    return type(base.__name__, (base,), {
        "__module__": base.__module__,
        "__qualname__": base.__qualname__,
        "__capabilities__": (*applied, *pending),
        "properties": {k: v for k, v in properties.items() if k not in base_properties},
        "scopes": {k: v for k, v in scopes.items() if k not in base_scopes},
        "hooks": hooks,
    })


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _set_created(query: Any, data: dict) -> None:
    now = _now()
    data.setdefault("createdAt", now)
    data.setdefault("updatedAt", now)


def _set_updated(query: Any, data: dict) -> None:
    data["updatedAt"] = _now()


TIMESTAMPS = Capability(
    name="timestamps",
    properties=MappingProxyType({
        "createdAt": {"type": "timestamp"},
        "updatedAt": {"type": "timestamp"},
    }),
    hooks=MappingProxyType({
        "before:insert": _set_created,
        "before:update": _set_updated,
    }),
)
