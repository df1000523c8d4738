"""Models — declarative model classes and their compiled, immutable definitions.

Invariants:
    - Model classes only declare; all derived metadata lives on ModelDefinition
    - A ModelDefinition is created by ModelRegistry.compile() and never mutated
    - Declarations (properties, relations, scopes, filters, hooks) merge along the
      MRO, so capabilities stacked under a subclass keep their contributions
    - Query access always goes through an explicit context: definition.query(ctx)

Design Decisions:
    - Model instances are plain attribute bags built from rows; persistence is
      handled by ModelQuery, never by the instance itself
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import Table

from keel.core.errors import ModelError
from keel.core.events import EventEmitter
from keel.core.utils import as_list
from keel.schema.relations import RelationDefinition

if TYPE_CHECKING:
    from keel.models.query import ModelQuery
    from keel.models.registry import ModelRegistry


class Model:
    """Base class for declarative models.

    Subclasses declare class attributes:

        class Post(Model):
            properties = {"title": {"type": "string", "required": True}}
            relations = {"author": {"relation": "belongsTo", "from": "Post.authorId",
                                    "to": "Person.id"}}
            scopes = {"published": {"published": True}}
            hooks = {"before:insert": set_slug}
    """

    name: ClassVar[str | None] = None
    table_name: ClassVar[str | None] = None
    properties: ClassVar[dict[str, Any]] = {}
    relations: ClassVar[dict[str, Any]] = {}
    scopes: ClassVar[dict[str, Any]] = {}
    filters: ClassVar[dict[str, Callable]] = {}
    hooks: ClassVar[dict[str, Any]] = {}
    __capabilities__: ClassVar[tuple] = ()

    def __init__(self, **data: Any):
        self.__dict__.update(data)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self.to_data().items())
        return f"{type(self).__name__}({fields})"

    def to_data(self) -> dict[str, Any]:
        """Plain dict of the instance, related instances included; hidden properties dropped."""
        hidden = {
            name for name, prop in collect_declarations(type(self), "properties").items()
            if isinstance(prop, Mapping) and prop.get("hidden")
        }
        return {
            key: _to_data(value)
            for key, value in vars(self).items()
            if not key.startswith("_") and key not in hidden
        }


def _to_data(value: Any) -> Any:
    if isinstance(value, Model):
        return value.to_data()
    if isinstance(value, list):
        return [_to_data(item) for item in value]
    return value


def collect_declarations(model_class: type, attribute: str) -> dict[str, Any]:
    """Merge a declaration dict along the MRO, base classes first."""
    merged: dict[str, Any] = {}
    for cls in reversed(model_class.__mro__):
        declared = cls.__dict__.get(attribute)
        if not declared:
            continue
        if attribute == "hooks":
            for event, listeners in declared.items():
                merged[event] = [*merged.get(event, []), *as_list(listeners)]
        else:
            merged.update(declared)
    return merged


@dataclass(frozen=True, eq=False)
class ModelDefinition:
    """Compiled model metadata, shared read-only across all requests."""
    name: str
    model_class: type[Model]
    table_name: str
    properties: Mapping[str, Mapping[str, Any]]
    columns: Mapping[str, str]
    id_properties: tuple[str, ...]
    table: Table = field(repr=False)
    registry: "ModelRegistry" = field(repr=False)
    json_schema: Mapping[str, Any] = field(default_factory=dict, repr=False)
    relations: Mapping[str, RelationDefinition] = field(default_factory=dict)
    scopes: Mapping[str, Any] = field(default_factory=dict)
    filters: Mapping[str, Callable] = field(default_factory=dict)
    events: EventEmitter = field(default_factory=EventEmitter, repr=False)
    capabilities: tuple = ()

    def column_name(self, property_name: str) -> str:
        column = self.columns.get(property_name)
        if column is None:
            raise ModelError(self.name, f"Unknown property '{property_name}'")
        return column

    def property_name(self, column_name: str) -> str:
        for prop, column in self.columns.items():
            if column == column_name:
                return prop
        return column_name

    def get_related(self, relation_name: str) -> "ModelDefinition":
        relation = self.relations.get(relation_name)
        if relation is None:
            raise ModelError(self.name, f"Unknown relation '{relation_name}'")
        return self.registry[relation.related]

    def is_reference(self, data: Any) -> bool:
        """True for the `{id}` reference shape: exactly the id properties, all set."""
        return (
            isinstance(data, Mapping)
            and len(data) == len(self.id_properties)
            and all(data.get(prop) is not None for prop in self.id_properties)
        )

    def get_reference(self, data: Any) -> dict[str, Any]:
        source = data if isinstance(data, Mapping) else vars(data)
        missing = [prop for prop in self.id_properties if source.get(prop) is None]
        if missing:
            raise ModelError(self.name, f"Missing reference ids: {', '.join(missing)}")
        return {prop: source[prop] for prop in self.id_properties}

    def id_criteria(self, id_value: Any) -> dict[str, Any]:
        """`5` / `(1, 2)` / `{"id": 5}` → criteria over the id properties."""
        if isinstance(id_value, Mapping):
            return self.get_reference(id_value)
        values = as_list(id_value)
        if len(values) != len(self.id_properties):
            raise ModelError(
                self.name,
                f"Expected {len(self.id_properties)} id values, got {len(values)}",
            )
        return dict(zip(self.id_properties, values))

    def from_row(self, row: Mapping[str, Any]) -> Model:
        return self.model_class(**{
            self.property_name(column): value for column, value in row.items()
        })

    def query(self, context: Any) -> "ModelQuery":
        from keel.models.query import ModelQuery
        return ModelQuery(self, context)
