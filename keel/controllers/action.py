"""Action Invocation — the innermost pipeline stage.

Invariants:
    - Authorization runs before anything touches the request body
    - Parameters come from path params, then the query string (coerced to
      their schema type), then the JSON body; each is validated on its own
      and its errors are keyed by the parameter name
    - @validate checks see the collected parameters and run before the handler
    - `eager` query expressions are parsed and given the action's eager scopes
      before the handler runs
    - Return values are serialized, then validated against `returns`; a
      mismatch is a server error (500), never a client one
"""

import inspect
import json
from collections.abc import Mapping
from typing import Any

from keel.api.context import RequestContext
from keel.api.middleware import Middleware, Next
from keel.api.router import Route
from keel.controllers.decorators import ActionMeta
from keel.core.errors import AuthorizationError, ErrorContext, ValidationError
from keel.core.utils import as_list
from keel.models.model import Model
from keel.schema.eager_scope import apply_eager_scope
from keel.schema.expression import RelationExpression
from keel.schema.properties import convert_property
from keel.schema.validator import Validator

_BODY_METHODS = frozenset({"post", "put", "patch", "delete"})


def compile_route(route: Route, validator: Validator) -> Route:
    """Compile the route's parameter and return schemas once, at startup."""
    meta = route.meta
    if meta is None:
        return route
    if meta.parameters:
        properties = {
            name: {"type": schema} if isinstance(schema, str) else schema
            for name, schema in meta.parameters.items()
        }
        route.parameter_validators = {
            name: validator.compile(convert_property(schema))
            for name, schema in properties.items()
        }
        route.required_parameters = tuple(
            name for name, schema in properties.items() if schema.get("required")
        )
    if meta.returns:
        route.returns_validator = validator.compile(convert_property(meta.returns))
    return route


def serialize(value: Any) -> Any:
    if isinstance(value, Model):
        return value.to_data()
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    if isinstance(value, Mapping):
        return {key: serialize(item) for key, item in value.items()}
    return value


async def authorize_action(ctx: RequestContext, predicate: Any) -> bool:
    if predicate is None:
        return True
    if isinstance(predicate, bool):
        return predicate
    if isinstance(predicate, (str, list, tuple)):
        roles = set(getattr(ctx.user, "roles", None) or ())
        return ctx.user is not None and any(role in roles for role in as_list(predicate))
    result = predicate(ctx)
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


async def read_body(ctx: RequestContext) -> Any:
    if ctx.data is not None or ctx.request is None or ctx.method not in _BODY_METHODS:
        return ctx.data
    raw = await ctx.request.body()
    if raw:
        try:
            ctx.data = json.loads(raw)
        except ValueError as e:
            raise ValidationError(message="The request body is not valid JSON") from e
    return ctx.data


def coerce_query_value(value: Any, schema: Mapping[str, Any]) -> Any:
    """Query strings → the first schema type they parse as; unparsable values stay strings."""
    kinds = as_list(schema.get("type"))
    if "array" in kinds:
        return as_list(value)
    if isinstance(value, list):
        value = value[-1]
    for kind in kinds:
        if kind == "integer" and value.lstrip("-").isdigit():
            return int(value)
        if kind == "number":
            try:
                return float(value)
            except ValueError:
                continue
        if kind == "boolean" and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")
        if kind == "object":
            try:
                return json.loads(value)
            except ValueError:
                continue
        if kind == "null" and value in ("", "null"):
            return None
    return value


def collect_parameters(ctx: RequestContext, route: Route) -> dict[str, Any]:
    if not route.parameter_validators:
        return {}
    body = ctx.data if isinstance(ctx.data, Mapping) else {}
    values: dict[str, Any] = {}
    errors: list[dict] = []
    for name, compiled in route.parameter_validators.items():
        if name in ctx.params:
            value = ctx.params[name]
        elif name in ctx.query:
            value = coerce_query_value(ctx.query[name], compiled.schema)
        elif name in body:
            value = body[name]
        else:
            if name in route.required_parameters:
                errors.append({
                    "keyword": "required",
                    "message": f"'{name}' is a required property",
                    "params": {"missing_property": name},
                    "data_path": name,
                })
            continue
        errors.extend(compiled(value, data_path=name))
        values[name] = value
    if errors:
        raise ValidationError(
            errors, "The provided parameters are not valid", ErrorContext(path=ctx.path),
        )
    return values


async def validate_action(ctx: RequestContext, checks: list, params: dict[str, Any]) -> None:
    errors: list[dict] = []
    for check in checks:
        result = check(ctx, params)
        if inspect.isawaitable(result):
            result = await result
        if result is None or result is True:
            continue
        if isinstance(result, str):
            errors.append(_action_error(result))
        elif isinstance(result, list):
            errors.extend(
                {**_action_error(error.get("message")), **error}
                if isinstance(error, Mapping) else _action_error(str(error))
                for error in result
            )
        elif not result:
            errors.append(_action_error('must pass "validate" keyword validation'))
    if errors:
        raise ValidationError(
            errors, "The provided parameters are not valid", ErrorContext(path=ctx.path),
        )


def _action_error(message: str | None) -> dict:
    return {"keyword": "validate", "message": message, "params": {}, "data_path": ""}


def eager_expression(ctx: RequestContext, route: Route) -> RelationExpression | None:
    raw = ctx.query.get("eager")
    if not raw:
        return None
    if isinstance(raw, list):
        raw = ",".join(raw)
    if route.model is None:
        return RelationExpression.parse(raw)
    scopes = route.meta.eager_scope if route.meta is not None else ()
    return apply_eager_scope(ctx.app.models[route.model], raw, scopes)


def handle_action() -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        route = ctx.route
        meta = route.meta or ActionMeta()
        if not await authorize_action(ctx, meta.authorize):
            raise AuthorizationError(context=ErrorContext(path=ctx.path))
        await read_body(ctx)
        params = collect_parameters(ctx, route)
        if meta.validate:
            await validate_action(ctx, meta.validate, params)
        ctx.eager = eager_expression(ctx, route)
        result = route.handler(ctx, **params)
        if inspect.isawaitable(result):
            result = await result
        data = serialize(result)
        if route.returns_validator is not None:
            errors = route.returns_validator(data)
            if errors:
                raise ValidationError(
                    errors, "The action returned invalid data",
                    ErrorContext(path=ctx.path), http_status=500,
                )
        if result is not None:
            ctx.body = data
        await next_()
    return middleware
