"""Validator — jsonschema Draft 2020-12 extended with keel's schema keywords.

Invariants:
    - Schemas are stored exactly as added; processing works on deep copies
    - Keyword configs are meta-validated and macros expanded in process_schema()
    - validate() returns raw errors: {keyword, message, params, data_path}
    - Data paths are dot-separated (`author.tags.0`); the root path is ""
    - `required` / `additionalProperties` errors point at the offending property

Design Decisions:
    - Model schemas are registered as `referencing` resources keyed by their
      `$id` (the model name), so `{"$ref": "Post"}` resolves across models
    - Applicators that step into a child value (properties, patternProperties,
      additionalProperties, items, prefixItems, contains, unevaluated*) push a
      frame recording parent data and key for keywords that inspect their
      surroundings (reference, validate); each child is validated to
      completion before its frame is popped
    - dependentSchemas, propertyNames and the in-place applicators (allOf,
      if / then / else, $ref ...) stay in the current frame
"""

import copy
import re
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Protocol

from jsonschema import Draft202012Validator
from jsonschema import validators as jsonschema_validators
from jsonschema._utils import (
    find_evaluated_item_indexes_by_schema,
    find_evaluated_property_keys_by_schema,
)
from jsonschema.exceptions import ValidationError as SchemaValidationError
from referencing import Registry, Resource
from referencing.exceptions import Unresolvable
from referencing.jsonschema import DRAFT202012

from keel.core.errors import MissingReferenceError, SchemaError
from keel.schema.keywords import DEFAULT_KEYWORDS, SchemaKeyword, ValidateParams

_REQUIRED_MESSAGE = re.compile(r"^'(.*)' is a required property$")

# Keys whose values are maps of subschemas / single subschemas / lists of subschemas.
_SCHEMA_MAP_KEYS = frozenset({
    "properties", "patternProperties", "$defs", "definitions", "dependentSchemas",
})
_SCHEMA_KEYS = frozenset({
    "additionalProperties", "items", "not", "if", "then", "else", "contains",
    "propertyNames", "unevaluatedItems", "unevaluatedProperties",
})
_SCHEMA_LIST_KEYS = frozenset({"allOf", "anyOf", "oneOf", "prefixItems"})


class ModelLookup(Protocol):
    def get(self, name: str) -> Any: ...


def join_data_path(prefix: str | None, path: str | None) -> str:
    if prefix and path:
        return f"{prefix}.{path}"
    return prefix or path or ""


def _format_path(parts: Iterable[Any]) -> str:
    return ".".join(str(part) for part in parts)


@dataclass
class _Frame:
    data: Any
    parent_data: Any
    parent_key: str | int | None
    path: tuple


class _ValidationRun:
    def __init__(self, validator: "Validator", root_data: Any, options: Mapping[str, Any]):
        self.validator = validator
        self.root_data = root_data
        self.options = options
        self.frames = [_Frame(root_data, None, None, ())]

    @contextmanager
    def enter(self, data: Any, parent: Any, key: str | int) -> Iterator[None]:
        self.frames.append(_Frame(data, parent, key, (*self.frames[-1].path, key)))
        try:
            yield
        finally:
            self.frames.pop()

    def params(self, data: Any) -> ValidateParams:
        frame = self.frames[-1]
        key = frame.parent_key
        return ValidateParams(
            data=data,
            data_path=_format_path(frame.path),
            parent_data=frame.parent_data,
            parent_key=key if isinstance(key, str) else None,
            parent_index=key if isinstance(key, int) else None,
            root_data=self.root_data,
            validator=self.validator,
            options=self.options,
        )


_current_run: ContextVar[_ValidationRun | None] = ContextVar("keel_validation_run", default=None)


def _descend_in_frame(
    validator, instance, subschema, parent, key, schema_path=None, resolver=None,
) -> Iterator:
    run = _current_run.get()
    if run is None:
        yield from validator.descend(
            instance, subschema, path=key, schema_path=schema_path, resolver=resolver,
        )
        return
    with run.enter(instance, parent, key):
        errors = list(validator.descend(
            instance, subschema, path=key, schema_path=schema_path, resolver=resolver,
        ))
    yield from errors


def _valid_in_frame(validator, instance, subschema, parent, key) -> bool:
    return next(_descend_in_frame(validator, instance, subschema, parent, key), None) is None


class _FramedValidator:
    """Hands applicators a validator whose descents into a child push a frame."""

    def __init__(self, validator, parent):
        self._validator = validator
        self._parent = parent

    def __getattr__(self, name):
        return getattr(self._validator, name)

    def descend(self, instance, schema, path=None, schema_path=None, resolver=None):
        if path is None:
            return self._validator.descend(
                instance, schema, schema_path=schema_path, resolver=resolver,
            )
        return _descend_in_frame(
            self._validator, instance, schema, self._parent, path, schema_path, resolver,
        )


def _framed(applicator):
    def check(validator, config, instance, schema):
        return applicator(_FramedValidator(validator, instance), config, instance, schema)
    return check


# Applicators that reach child values through `descend(..., path=...)`.
_FRAMED_APPLICATORS = (
    "properties", "patternProperties", "additionalProperties",
    "items", "prefixItems",
)


def _contains(validator, contains, instance, schema):
    if not validator.is_type(instance, "array"):
        return
    min_contains = schema.get("minContains", 1)
    max_contains = schema.get("maxContains", len(instance))
    matches = 0
    for index, each in enumerate(instance):
        if _valid_in_frame(validator, each, contains, instance, index):
            matches += 1
            if matches > max_contains:
                yield SchemaValidationError(
                    f"Too many items match the given schema (expected at most {max_contains})",
                    validator="maxContains",
                    validator_value=max_contains,
                )
                return
    if matches < min_contains:
        if not matches:
            yield SchemaValidationError(
                f"{instance!r} does not contain items matching the given schema",
            )
        else:
            yield SchemaValidationError(
                "Too few items match the given schema (expected at least "
                f"{min_contains} but only {matches} matched)",
                validator="minContains",
                validator_value=min_contains,
            )


def _unevaluated_items(validator, unevaluated, instance, schema):
    if not validator.is_type(instance, "array"):
        return
    others = {key: value for key, value in schema.items() if key != "unevaluatedItems"}
    evaluated = set(find_evaluated_item_indexes_by_schema(validator, instance, others))
    extras = [
        each for index, each in enumerate(instance)
        if index not in evaluated
        and not _valid_in_frame(validator, each, unevaluated, instance, index)
    ]
    if extras:
        verb = "was" if len(extras) == 1 else "were"
        listed = ", ".join(repr(each) for each in extras)
        yield SchemaValidationError(
            f"Unevaluated items are not allowed ({listed} {verb} unexpected)",
        )


def _unevaluated_properties(validator, unevaluated, instance, schema):
    if not validator.is_type(instance, "object"):
        return
    others = {key: value for key, value in schema.items() if key != "unevaluatedProperties"}
    evaluated = set(find_evaluated_property_keys_by_schema(validator, instance, others))
    invalid = sorted(
        (
            key for key, value in instance.items()
            if key not in evaluated
            and not _valid_in_frame(validator, value, unevaluated, instance, key)
        ),
        key=str,
    )
    if invalid:
        verb = "was" if len(invalid) == 1 else "were"
        listed = ", ".join(repr(key) for key in invalid)
        if unevaluated is False:
            message = f"Unevaluated properties are not allowed ({listed} {verb} unexpected)"
        else:
            message = (
                "Unevaluated properties are not valid under the given schema "
                f"({listed} {verb} unevaluated and invalid)"
            )
        yield SchemaValidationError(message)


def _keyword_function(keyword: SchemaKeyword):
    def check(validator, config, instance, schema):
        if keyword.type and not any(validator.is_type(instance, t) for t in keyword.type):
            return
        run = _current_run.get()
        params = run.params(instance) if run else ValidateParams(data=instance, root_data=instance)
        result = keyword.validate(config, instance, params)
        if isinstance(result, list) and result:
            for raw in result:
                yield _schema_error(raw, keyword)
        elif result is True or (not isinstance(result, list) and result):
            return
        else:
            yield SchemaValidationError(
                keyword.message or f'must pass "{keyword.keyword}" keyword validation',
                validator=keyword.keyword,
            )
    return check


def _schema_error(raw: Mapping[str, Any], keyword: SchemaKeyword) -> SchemaValidationError:
    path = [
        int(part) if part.isdigit() else part
        for part in (raw.get("data_path") or "").split(".") if part
    ]
    error = SchemaValidationError(
        raw.get("message") or "is invalid",
        validator=raw.get("keyword") or keyword.keyword,
        path=path,
    )
    error.keel_params = dict(raw.get("params") or {})
    return error


def _raw_errors(error: SchemaValidationError) -> list[dict]:
    keyword = error.validator
    path = _format_path(error.absolute_path)
    params = dict(getattr(error, "keel_params", None) or {})
    if keyword == "required":
        match = _REQUIRED_MESSAGE.match(error.message)
        missing = match.group(1) if match else None
        params["missing_property"] = missing
        return [_raw(keyword, error.message, params, join_data_path(path, missing))]
    if keyword == "additionalProperties" and isinstance(error.instance, Mapping):
        known = set(error.schema.get("properties", {}))
        patterns = [re.compile(p) for p in error.schema.get("patternProperties", {})]
        extras = [
            key for key in error.instance
            if key not in known and not any(p.search(key) for p in patterns)
        ]
        return [
            _raw(
                keyword, "must NOT have additional properties",
                {**params, "additional_property": extra}, join_data_path(path, extra),
            )
            for extra in extras
        ] or [_raw(keyword, error.message, params, path)]
    return [_raw(keyword, error.message, params, path)]


def _raw(keyword: str, message: str, params: dict, data_path: str) -> dict:
    return {"keyword": keyword, "message": message, "params": params, "data_path": data_path}


class CompiledSchema:
    """A processed schema ready to validate data against the validator's registry."""

    def __init__(self, validator: "Validator", schema: Any, standalone: bool = False):
        self.validator = validator
        self.schema = schema
        self.standalone = standalone
        self._instance = None
        self._generation = -1

    def _get_instance(self):
        if self._instance is None or self._generation != self.validator.generation:
            kwargs = {} if self.standalone else {"registry": self.validator.registry}
            self._instance = self.validator.validator_class(
                self.schema,
                format_checker=Draft202012Validator.FORMAT_CHECKER,
                **kwargs,
            )
            self._generation = self.validator.generation
        return self._instance

    def __call__(self, data: Any, data_path: str = "", **options: Any) -> list[dict]:
        errors = self.validator.run(self._get_instance(), data, options)
        return self.validator.prefix_data_paths(errors, data_path) if data_path else errors

    def is_valid(self, data: Any, **options: Any) -> bool:
        return not self(data, **options)


class Validator:
    """Schema store plus jsonschema validator class carrying keel's keywords."""

    def __init__(
        self,
        keywords: Iterable[SchemaKeyword] = (),
        models: ModelLookup | None = None,
    ):
        self.keywords: dict[str, SchemaKeyword] = {
            keyword.keyword: keyword for keyword in (*DEFAULT_KEYWORDS, *keywords)
        }
        self.models = models
        self.generation = 0
        self._schemas: dict[str, Any] = {}
        self._registry: Registry | None = None
        self._compiled: dict[tuple[str, bool], CompiledSchema] = {}
        self._meta: dict[str, CompiledSchema] = {}
        validators = {
            name: _framed(Draft202012Validator.VALIDATORS[name]) for name in _FRAMED_APPLICATORS
        }
        validators.update(
            contains=_contains,
            unevaluatedItems=_unevaluated_items,
            unevaluatedProperties=_unevaluated_properties,
        )
        for keyword in self.keywords.values():
            if keyword.validate is not None:
                validators[keyword.keyword] = _keyword_function(keyword)
        self.validator_class = jsonschema_validators.extend(
            Draft202012Validator, validators=validators,
        )

    # ─── schema store ────────────────────────────────────────────

    def get_keyword(self, name: str) -> SchemaKeyword | None:
        return self.keywords.get(name)

    def get_model(self, name: str) -> Any:
        return self.models.get(name) if self.models is not None else None

    def add_schema(self, schema: Mapping[str, Any], schema_id: str | None = None) -> None:
        schema_id = schema_id or schema.get("$id")
        if not schema_id:
            raise SchemaError("Schemas need an `$id` to be added to the validator")
        self._schemas[schema_id] = copy.deepcopy(dict(schema))
        self._registry = None
        self._compiled.clear()
        self.generation += 1

    def get_schema(self, schema_id: str) -> Any:
        return self._schemas.get(schema_id)

    def clear(self) -> None:
        self._schemas.clear()
        self._compiled.clear()
        self._registry = None
        self.generation += 1

    @property
    def registry(self) -> Registry:
        if self._registry is None:
            self.prepare()
        return self._registry

    def prepare(self) -> None:
        """Process every stored schema now, so configuration errors surface at boot."""
        self._registry = Registry().with_resources(
            (schema_id, Resource.from_contents(
                self.process_schema(schema), default_specification=DRAFT202012,
            ))
            for schema_id, schema in self._schemas.items()
        )

    # ─── processing ──────────────────────────────────────────────

    def process_schema(self, schema: Any) -> Any:
        """Meta-validate keyword configs and expand macros, on a deep copy."""
        return self._process(copy.deepcopy(schema))

    def _process(self, schema: Any) -> Any:
        if not isinstance(schema, dict):
            return schema
        result: dict[str, Any] = {}
        expansions = []
        for key, value in schema.items():
            keyword = self.keywords.get(key)
            if keyword is not None:
                self._check_config(keyword, value)
                if keyword.macro is not None:
                    expansions.append(keyword.macro(value, schema, self))
                else:
                    result[key] = value
            elif key in _SCHEMA_MAP_KEYS and isinstance(value, dict):
                result[key] = {name: self._process(sub) for name, sub in value.items()}
            elif key in _SCHEMA_KEYS:
                result[key] = (
                    [self._process(sub) for sub in value]
                    if isinstance(value, list) else self._process(value)
                )
            elif key in _SCHEMA_LIST_KEYS and isinstance(value, list):
                result[key] = [self._process(sub) for sub in value]
            else:
                result[key] = value
        for expanded in expansions:
            expanded = self._process(expanded)
            if expanded.keys() & result.keys():
                result.setdefault("allOf", []).append(expanded)
            else:
                result.update(expanded)
        return result

    def _check_config(self, keyword: SchemaKeyword, config: Any) -> None:
        if keyword.meta_schema is None:
            return
        meta = self._meta.get(keyword.keyword)
        if meta is None:
            meta = self._meta[keyword.keyword] = CompiledSchema(
                self, keyword.meta_schema, standalone=True,
            )
        errors = self.run(meta._get_instance(), config, {})
        if errors:
            raise SchemaError(
                f"Invalid configuration for keyword '{keyword.keyword}': "
                f"{errors[0]['message']}",
            )

    def documentation_schema(self, schema: Any) -> Any:
        """Copy of `schema` without silent keywords."""
        if isinstance(schema, list):
            return [self.documentation_schema(sub) for sub in schema]
        if not isinstance(schema, dict):
            return schema
        result = {}
        for key, value in schema.items():
            keyword = self.keywords.get(key)
            if keyword is not None and keyword.silent:
                continue
            if key in _SCHEMA_MAP_KEYS and isinstance(value, dict):
                value = {name: self.documentation_schema(sub) for name, sub in value.items()}
            elif key in _SCHEMA_KEYS or key in _SCHEMA_LIST_KEYS:
                value = self.documentation_schema(value)
            result[key] = value
        return result

    # ─── validation ──────────────────────────────────────────────

    def compile(self, schema: Any, patch: bool = False) -> CompiledSchema:
        """Compile a schema, or a stored schema by `$id`; `patch` drops root `required`."""
        if isinstance(schema, str):
            key = (schema, patch)
            compiled = self._compiled.get(key)
            if compiled is None:
                if schema not in self._schemas:
                    raise MissingReferenceError(schema)
                if patch:
                    processed = self.process_schema(self._schemas[schema])
                    processed.pop("required", None)
                    processed.pop("$id", None)
                else:
                    processed = {"$ref": schema}
                compiled = self._compiled[key] = CompiledSchema(self, processed)
            return compiled
        processed = self.process_schema(schema)
        if patch and isinstance(processed, dict):
            processed.pop("required", None)
        return CompiledSchema(self, processed)

    def validate(
        self,
        schema: Any,
        data: Any,
        patch: bool = False,
        data_path: str = "",
        **options: Any,
    ) -> list[dict]:
        compiled = schema if isinstance(schema, CompiledSchema) else self.compile(schema, patch)
        return compiled(data, data_path=data_path, **options)

    def is_valid(self, schema: Any, data: Any, **options: Any) -> bool:
        return not self.validate(schema, data, **options)

    def run(self, instance_validator: Any, data: Any, options: Mapping[str, Any]) -> list[dict]:
        token = _current_run.set(_ValidationRun(self, data, options))
        try:
            errors = list(instance_validator.iter_errors(data))
        except Unresolvable as e:
            raise MissingReferenceError(str(getattr(e, "ref", e))) from e
        finally:
            _current_run.reset(token)
        return [raw for error in errors for raw in _raw_errors(error)]

    def prefix_data_paths(self, errors: list[dict], prefix: str) -> list[dict]:
        return [
            {**error, "data_path": join_data_path(prefix, error.get("data_path"))}
            for error in errors
        ]
