"""Schema Keywords — custom keywords layered onto the JSON-Schema validator.

Invariants:
    - Every keyword's own configuration is checked against its `meta_schema`
      when a schema is processed (boot time), never per request
    - Macro keywords ($extend, range) are expanded before validation and never
      reach the underlying validator
    - Silent keywords validate like any other keyword but are left out of
      documentation schemas (Validator.documentation_schema)
    - `instanceof` and `relate` fail quietly when a name can't be resolved
    - `validate` callables run synchronously: coroutine functions are rejected
      when the schema is processed, awaitable results when data is validated
"""

import copy
import inspect
import datetime
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from keel.core.errors import MissingReferenceError, SchemaError, ValidationError
from keel.core.utils import as_list, merge_deeply

if TYPE_CHECKING:
    from keel.schema.validator import Validator


@dataclass(frozen=True)
class ValidateParams:
    """Context handed to keyword validate functions and `validate` callables."""
    data: Any
    data_path: str = ""
    parent_data: Any = None
    parent_key: str | None = None
    parent_index: int | None = None
    root_data: Any = None
    validator: "Validator | None" = None
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SchemaKeyword:
    """Registration record for one custom keyword.

    Exactly one of `macro` (config, parent_schema, validator) -> schema fragment
    or `validate` (config, data, params) -> bool | list of raw errors is set,
    unless the keyword only carries meta information.
    """
    keyword: str
    meta_schema: Any = None
    macro: Callable[[Any, Mapping, "Validator"], dict] | None = None
    validate: Callable[[Any, Any, ValidateParams], Any] | None = None
    errors: str | bool | None = None
    silent: bool = False
    type: tuple[str, ...] | None = None
    message: str | None = None


# ─── $extend ─────────────────────────────────────────────────────

def expand_extend(schemas: list, parent_schema: Mapping, validator: "Validator") -> dict:
    """`[source, *patches]` → deep-merged copy of source; `$ref` sources are looked up."""
    resolved = []
    for schema in schemas:
        ref = schema.get("$ref") if isinstance(schema, Mapping) else None
        if ref:
            schema = validator.get_schema(ref)
            if schema is None:
                raise MissingReferenceError(ref)
        resolved.append(schema)
    source, *patches = resolved
    merged = merge_deeply(copy.deepcopy(source), *copy.deepcopy(patches))
    merged.pop("$id", None)
    return merged


# ─── instanceof ──────────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_BUILTIN_CHECKS: dict[str, Callable[[Any], bool]] = {
    "object": lambda value: value is not None and not isinstance(value, (str, bytes, int, float)),
    "array": lambda value: isinstance(value, (list, tuple)),
    "function": callable,
    "asyncfunction": inspect.iscoroutinefunction,
    "string": lambda value: isinstance(value, str),
    "number": _is_number,
    "boolean": lambda value: isinstance(value, bool),
    "date": lambda value: isinstance(value, datetime.date),
    "regexp": lambda value: isinstance(value, re.Pattern),
    "buffer": lambda value: isinstance(value, (bytes, bytearray, memoryview)),
}


def _instance_check(candidate: Any, params: ValidateParams) -> Callable[[Any], bool] | None:
    if isinstance(candidate, type):
        return lambda value: isinstance(value, candidate)
    if isinstance(candidate, str):
        check = _BUILTIN_CHECKS.get(candidate.lower())
        if check is not None:
            return check
        model = params.validator.get_model(candidate) if params.validator else None
        if model is not None:
            return lambda value: isinstance(value, model.model_class)
    return None


def validate_instanceof(config: Any, data: Any, params: ValidateParams) -> bool:
    for candidate in as_list(config):
        check = _instance_check(candidate, params)
        if check is not None and check(data):
            return True
    return False


# ─── reference / relate ──────────────────────────────────────────
# Neither keyword is checked against `required`: a schema holding a reference
# must not also require the referenced object's other properties.

def validate_reference(config: bool, data: Any, params: ValidateParams) -> bool:
    if not config:
        return True
    parent = params.parent_data
    return isinstance(parent, Mapping) and list(parent) == [params.parent_key]


def validate_relate(config: str, data: Any, params: ValidateParams) -> bool:
    model = params.validator.get_model(config) if params.validator else None
    return bool(model is not None and model.is_reference(data))


# ─── validate ────────────────────────────────────────────────────

def validate_function(func: Callable, data: Any, params: ValidateParams) -> Any:
    try:
        result = func(params)
    except ValidationError as error:
        return _raw_errors(error.errors or error.message)
    except Exception as error:
        return _raw_errors(getattr(error, "errors", None) or str(error))
    if inspect.isawaitable(result):
        if inspect.iscoroutine(result):
            result.close()
        raise SchemaError("`validate` callables must be synchronous, got an awaitable result")
    if result is None:
        return True
    if isinstance(result, (str, list)):
        return _raw_errors(result)
    return bool(result)


def _raw_errors(result: str | list) -> list[dict]:
    if isinstance(result, str):
        return [{"keyword": "validate", "message": result, "params": {}}]
    return [
        {
            "keyword": error.get("keyword", "validate"),
            "message": error.get("message"),
            "params": error.get("params") or {},
            "data_path": error.get("data_path") or "",
        }
        if isinstance(error, Mapping)
        else {"keyword": "validate", "message": str(error), "params": {}}
        for error in result
    ] or [{"keyword": "validate", "message": 'must pass "validate" keyword validation', "params": {}}]


EXTEND = SchemaKeyword(
    keyword="$extend",
    meta_schema={"type": "array", "items": {"type": "object"}, "minItems": 2},
    macro=expand_extend,
)

INSTANCEOF = SchemaKeyword(
    keyword="instanceof",
    meta_schema={
        "anyOf": [
            {"type": "string"},
            {"instanceof": "Function"},
            {
                "type": "array",
                "items": {
                    "anyOf": [
                        {"type": "string"},
                        {"type": "object"},
                        {"instanceof": "Function"},
                    ],
                },
            },
        ],
    },
    validate=validate_instanceof,
)

RANGE = SchemaKeyword(
    keyword="range",
    type=("number", "integer"),
    meta_schema={
        "type": "array",
        "prefixItems": [{"type": "number"}, {"type": "number"}],
        "minItems": 2,
        "items": False,
    },
    macro=lambda config, parent_schema, validator: {
        "minimum": config[0],
        "maximum": config[1],
    },
)

REFERENCE = SchemaKeyword(
    keyword="reference",
    silent=True,
    meta_schema={"type": "boolean"},
    validate=validate_reference,
)

RELATE = SchemaKeyword(
    keyword="relate",
    silent=True,
    meta_schema={"type": "string"},
    validate=validate_relate,
)

VALIDATE = SchemaKeyword(
    keyword="validate",
    errors="full",
    meta_schema={"instanceof": "Function", "not": {"instanceof": "AsyncFunction"}},
    validate=validate_function,
)

# Meta information for column generation only.
NULLABLE = SchemaKeyword(
    keyword="nullable",
    meta_schema={"type": "boolean"},
)

DEFAULT_KEYWORDS = (EXTEND, INSTANCEOF, RANGE, REFERENCE, RELATE, VALIDATE, NULLABLE)
