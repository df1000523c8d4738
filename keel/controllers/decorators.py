"""Action Decorators — attach per-action configuration to controller methods.

Invariants:
    - Every decorator records onto one ActionMeta stored as `fn.__keel_action__`;
      decorators stack in any order
    - Only methods carrying ActionMeta are routed (a bare @action() is enough)
    - `transacted` left as None falls back to the controller's setting
    - Stacked @validate checks run in declaration order, top to bottom
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

ACTION_ATTRIBUTE = "__keel_action__"


@dataclass
class ActionMeta:
    verb: str = "get"
    path: str | None = None
    transacted: bool | None = None
    scope: list[str] = field(default_factory=list)
    eager_scope: list[str] = field(default_factory=list)
    parameters: dict[str, Any] | None = None
    returns: dict[str, Any] | None = None
    authorize: Any = None
    validate: list[Callable] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)


def get_action_meta(fn: Callable, create: bool = False) -> ActionMeta | None:
    meta = getattr(fn, ACTION_ATTRIBUTE, None)
    if meta is None and create:
        meta = ActionMeta()
        setattr(fn, ACTION_ATTRIBUTE, meta)
    return meta


def _decorator(update: Callable[[ActionMeta], None]) -> Callable:
    def decorate(fn: Callable) -> Callable:
        update(get_action_meta(fn, create=True))
        return fn
    return decorate


def action(verb: str = "get", path: str | None = None, **options: Any) -> Callable:
    """Route the method on `verb`; `path` is relative to the controller's path."""
    def update(meta: ActionMeta) -> None:
        meta.verb = verb.lower()
        meta.path = path
        meta.options.update(options)
    return _decorator(update)


def transacted(fn: Callable | None = None, *, enabled: bool = True) -> Callable:
    """Run the action inside a request transaction. Usable bare or called."""
    decorate = _decorator(lambda meta: setattr(meta, "transacted", enabled))
    return decorate(fn) if fn is not None else decorate


def scope(*names: str) -> Callable:
    return _decorator(lambda meta: meta.scope.extend(
        name for name in names if name not in meta.scope
    ))


def eager_scope(*names: str) -> Callable:
    """Scopes injected into every node of the requested `eager` expression."""
    return _decorator(lambda meta: meta.eager_scope.extend(
        name for name in names if name not in meta.eager_scope
    ))


def parameters(schema: dict[str, Any] | None = None, **properties: Any) -> Callable:
    """Declare action parameters as a property map: `{"limit": {"type": "integer"}}`."""
    def update(meta: ActionMeta) -> None:
        meta.parameters = {**(meta.parameters or {}), **(schema or {}), **properties}
    return _decorator(update)


def returns(schema: dict[str, Any]) -> Callable:
    return _decorator(lambda meta: setattr(meta, "returns", schema))


def authorize(predicate: Any) -> Callable:
    """`predicate` is a bool, a role name, a list of role names or `callable(ctx)`."""
    return _decorator(lambda meta: setattr(meta, "authorize", predicate))


def validate(*checks: Callable) -> Callable:
    """`check(ctx, params)` runs once parameters are collected, before the handler.

    None or a truthy result passes; False, a message or a list of raw errors
    fails the request with a validation error.
    """
    def update(meta: ActionMeta) -> None:
        meta.validate[:0] = checks
    return _decorator(update)
