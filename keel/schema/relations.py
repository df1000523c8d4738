"""Relation Resolver — compiles declarative relation schemas into join specifications.

Invariants:
    - After resolution every join column is a `table.column` string, never `Model.property`
    - `through` is present only on manyToMany relations; anywhere else it is an error
    - `modify` is the first non-empty of `scope`, `modify`, `filter` (in that order)
    - Pure function of its inputs; runs once per model at boot, errors abort startup

Accepted relation schema (both shapes may be mixed):

    {"relation": "hasMany", "modelClass": "Comment",
     "join": {"from": "Post.id", "to": "Comment.postId"}, "scope": "published"}

    {"relation": "many-to-many", "from": "Post.id", "to": "Tag.id",
     "through": {"from": "PostTag.postId", "to": "PostTag.tagId"}}
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from functools import partial
from types import MappingProxyType
from typing import Any, Protocol

from keel.core.domain_types import RelationKind
from keel.core.errors import ErrorContext, RelationError
from keel.core.utils import as_list, camelize

_RELATION_LOOKUP = {
    "belongsTo": RelationKind.BELONGS_TO_ONE,
    "belongsToOne": RelationKind.BELONGS_TO_ONE,
    "hasOne": RelationKind.HAS_ONE,
    "hasOneThrough": RelationKind.HAS_ONE_THROUGH,
    "hasMany": RelationKind.HAS_MANY,
    "manyToMany": RelationKind.MANY_TO_MANY,
}

_RELATION_CLASS_NAMES = {
    "BelongsToOneRelation": RelationKind.BELONGS_TO_ONE,
    "HasOneRelation": RelationKind.HAS_ONE,
    "HasOneThroughRelation": RelationKind.HAS_ONE_THROUGH,
    "HasManyRelation": RelationKind.HAS_MANY,
    "ManyToManyRelation": RelationKind.MANY_TO_MANY,
}

# Keys consumed by the resolver; everything else ends up in `options`.
_RESERVED_KEYS = frozenset({
    "relation", "modelClass", "join", "from", "to", "through",
    "scope", "modify", "filter",
})


class ModelLike(Protocol):
    """What the resolver needs to know about a model."""
    name: str
    table_name: str

    def column_name(self, property_name: str) -> str: ...


Modifier = str | Callable[[Any], Any]


@dataclass(frozen=True)
class ThroughSpec:
    from_: tuple[str, ...]
    to: tuple[str, ...]
    model: str | None = None


@dataclass(frozen=True)
class JoinSpec:
    from_: tuple[str, ...]
    to: tuple[str, ...]
    through: ThroughSpec | None = None


@dataclass(frozen=True)
class RelationDefinition:
    """A resolved relation; shared read-only across requests."""
    name: str
    kind: RelationKind
    owner: str
    related: str
    join: JoinSpec
    modify: Modifier | None = None
    options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_one_to_one(self) -> bool:
        return self.kind.is_one_to_one

    @property
    def owns_data(self) -> bool:
        return bool(self.options.get("owner"))


def get_relation_kind(relation: Any) -> RelationKind | None:
    """Map `hasMany`, `has-many`, `HasManyRelation` or a RelationKind to a RelationKind."""
    if isinstance(relation, RelationKind):
        return relation
    if isinstance(relation, str):
        return (
            _RELATION_LOOKUP.get(camelize(relation))
            or _RELATION_CLASS_NAMES.get(relation)
        )
    return None


class _ColumnReference:
    """One side of a join: `Model.prop` / `table.column` references, resolved."""

    def __init__(
        self,
        reference: Any,
        registry: Mapping[str, ModelLike],
        allow_unknown: bool = False,
    ):
        self.model: ModelLike | None = None
        self.prefix: str | None = None
        self.columns: list[str] = []
        refs = as_list(reference)
        if not refs:
            raise RelationError("Missing join reference")
        tables = {model.table_name for model in registry.values()}
        for ref in refs:
            prefix, _, name = ref.partition(".") if isinstance(ref, str) else ("", "", "")
            if not prefix or not name:
                raise RelationError(f"Invalid join reference: {ref!r}")
            model = registry.get(prefix)
            if model is None and prefix not in tables and not allow_unknown:
                raise RelationError(f"Unknown model reference: {ref}")
            if self.prefix is None:
                self.prefix, self.model = prefix, model
            elif self.prefix != prefix:
                raise RelationError(
                    f"Composite keys need to be defined on the same table: {ref}",
                )
            self.columns.append(
                f"{model.table_name}.{model.column_name(name)}" if model else ref,
            )

    def to_value(self) -> tuple[str, ...]:
        return tuple(self.columns)


def _apply_find_filter(criteria: Mapping[str, Any], query: Any) -> Any:
    return query.where(**criteria)


def _effective_modifier(schema: Mapping[str, Any]) -> Modifier | None:
    modify = next(
        (schema[key] for key in ("scope", "modify", "filter") if schema.get(key)),
        None,
    )
    if isinstance(modify, Mapping):
        return partial(_apply_find_filter, dict(modify))
    return modify


def resolve_relation(
    name: str,
    schema: Mapping[str, Any],
    owner: ModelLike,
    registry: Mapping[str, ModelLike],
) -> RelationDefinition:
    kind = get_relation_kind(schema.get("relation"))
    if kind is None:
        raise RelationError(f"Unrecognized relation: {schema.get('relation')}")
    join = schema.get("join") or {}
    from_ref = _ColumnReference(join.get("from", schema.get("from")), registry)
    to_ref = _ColumnReference(join.get("to", schema.get("to")), registry)
    related_name = schema.get("modelClass") or (to_ref.model and to_ref.model.name)
    if not related_name or related_name not in registry:
        raise RelationError(f"Unknown related model: {related_name}")
    through = join.get("through", schema.get("through"))
    if kind is RelationKind.MANY_TO_MANY:
        through_spec = _resolve_through(through, registry)
    elif through:
        raise RelationError("Unsupported through join definition")
    else:
        through_spec = None
    return RelationDefinition(
        name=name,
        kind=kind,
        owner=owner.name,
        related=related_name,
        join=JoinSpec(from_ref.to_value(), to_ref.to_value(), through_spec),
        modify=_effective_modifier(schema),
        options=MappingProxyType({
            key: value for key, value in schema.items() if key not in _RESERVED_KEYS
        }),
    )


def _resolve_through(
    through: Mapping[str, Any] | None,
    registry: Mapping[str, ModelLike],
) -> ThroughSpec:
    if not through or not through.get("from") or not through.get("to"):
        raise RelationError(
            "The relation needs a `through.from` and `through.to` definition",
        )
    from_ref = _ColumnReference(through["from"], registry, allow_unknown=True)
    to_ref = _ColumnReference(through["to"], registry, allow_unknown=True)
    if (from_ref.model or to_ref.model) and from_ref.model is not to_ref.model:
        raise RelationError(
            "Both sides of the `through` definition need to be on the same join model",
        )
    model_name = through.get("modelClass") or (from_ref.model and from_ref.model.name)
    if model_name and model_name not in registry:
        raise RelationError(f"Unknown through model: {model_name}")
    return ThroughSpec(from_ref.to_value(), to_ref.to_value(), model_name or None)


def resolve_relations(
    owner: ModelLike,
    relation_schemas: Mapping[str, Mapping[str, Any]],
    registry: Mapping[str, ModelLike],
) -> dict[str, RelationDefinition]:
    """Resolve every relation schema of `owner`; errors name the failing relation."""
    resolved = {}
    for name, schema in relation_schemas.items():
        try:
            resolved[name] = resolve_relation(name, schema or {}, owner, registry)
        except RelationError as e:
            raise RelationError(
                f"{owner.name}.relations.{name}: {e.message}",
                ErrorContext(model=owner.name, relation=name),
            ) from e
    return resolved


def add_relation_schemas(
    relations: Mapping[str, RelationDefinition],
    properties: dict[str, Any],
) -> dict[str, Any]:
    """Add a JSON-schema property for each relation so nested graphs validate."""
    for relation in relations.values():
        ref = relation.related
        any_of: list[dict] = []
        if relation.is_one_to_one:
            any_of.append({"type": "null"})
        if not relation.owns_data:
            any_of.append({"relate": ref})
        any_of.append({"$ref": ref})
        items = {"anyOf": any_of} if len(any_of) > 1 else any_of[0]
        properties[relation.name] = (
            items if relation.is_one_to_one else {"type": "array", "items": items}
        )
    return properties
