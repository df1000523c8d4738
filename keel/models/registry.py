"""Model Registry — compiles model classes into definitions, owns their caches.

Invariants:
    - Compilation runs in two phases: tables and columns for every model first,
      then relations and JSON schemas (relations need every table to exist)
    - Definitions are cached per registry, keyed by model class; clear() ends
      the cache lifecycle together with the application
    - Any RelationError / SchemaError raised while compiling aborts startup
"""

import logging
from collections.abc import Iterator, Mapping
from dataclasses import replace
from types import MappingProxyType

from sqlalchemy import Table, MetaData

from keel.core.errors import ModelError
from keel.core.utils import as_list, snake_case
from keel.models.model import Model, ModelDefinition, collect_declarations
from keel.schema.properties import build_columns, convert_properties
from keel.schema.relations import add_relation_schemas, resolve_relations
from keel.schema.validator import Validator

logger = logging.getLogger(__name__)

_DEFAULT_ID = {"id": {"type": "integer", "primary": True}}


class ModelRegistry(Mapping[str, ModelDefinition]):
    """Registered models by name; also the model lookup of its Validator."""

    def __init__(self, validator: Validator | None = None):
        self.metadata = MetaData()
        self.validator = validator or Validator()
        self.validator.models = self
        self._classes: list[type[Model]] = []
        self._definitions: dict[type[Model], ModelDefinition] = {}
        self._by_name: dict[str, ModelDefinition] = {}

    def __getitem__(self, name: str) -> ModelDefinition:
        return self._by_name[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_name)

    def __len__(self) -> int:
        return len(self._by_name)

    @property
    def compiled(self) -> bool:
        return bool(self._classes) and all(cls in self._definitions for cls in self._classes)

    def register(self, *model_classes: type[Model]) -> type[Model] | None:
        """Register model classes; usable as a class decorator."""
        for model_class in model_classes:
            if model_class not in self._classes:
                self._classes.append(model_class)
        return model_classes[0] if len(model_classes) == 1 else None

    def get_definition(self, model: type[Model] | str) -> ModelDefinition:
        definition = (
            self._by_name.get(model) if isinstance(model, str)
            else self._definitions.get(model)
        )
        if definition is None:
            name = model if isinstance(model, str) else model.__name__
            raise ModelError(name, "Model is not registered or not compiled")
        return definition

    def compile(self) -> None:
        pending = [cls for cls in self._classes if cls not in self._definitions]
        for model_class in pending:
            definition = self._build_table(model_class)
            self._store(definition)
        for model_class in pending:
            definition = self._build_relations(self._definitions[model_class])
            self._store(definition)
            self.validator.add_schema(definition.json_schema, definition.name)
        # Processing every schema meta-validates all keyword configurations.
        self.validator.prepare()
        logger.info(f"Compiled {len(pending)} models: {', '.join(self._by_name)}")

    def clear(self) -> None:
        self._definitions.clear()
        self._by_name.clear()
        self.metadata.clear()
        self.validator.clear()

    def _store(self, definition: ModelDefinition) -> None:
        self._definitions[definition.model_class] = definition
        self._by_name[definition.name] = definition

    def _build_table(self, model_class: type[Model]) -> ModelDefinition:
        name = getattr(model_class, "name", None) or model_class.__name__
        if name in self._by_name:
            raise ModelError(name, "A model with this name is already registered")
        properties = {
            prop: {"type": schema} if isinstance(schema, str) else dict(schema)
            for prop, schema in collect_declarations(model_class, "properties").items()
        }
        if not any(prop.get("primary") for prop in properties.values()):
            properties = {**_DEFAULT_ID, **properties}
        columns = {
            prop: schema.get("column") or snake_case(prop)
            for prop, schema in properties.items() if not schema.get("computed")
        }
        table_name = getattr(model_class, "table_name", None) or snake_case(name)
        table = Table(
            table_name, self.metadata,
            *build_columns(properties, lambda prop: columns[prop]),
        )
        definition = ModelDefinition(
            name=name,
            model_class=model_class,
            table_name=table_name,
            properties=MappingProxyType(properties),
            columns=MappingProxyType(columns),
            id_properties=tuple(p for p, s in properties.items() if s.get("primary")),
            table=table,
            registry=self,
            scopes=MappingProxyType(collect_declarations(model_class, "scopes")),
            filters=MappingProxyType(collect_declarations(model_class, "filters")),
            capabilities=tuple(getattr(model_class, "__capabilities__", ())),
        )
        for event, listeners in collect_declarations(model_class, "hooks").items():
            for listener in as_list(listeners):
                definition.events.on(event, listener)
        return definition

    def _build_relations(self, definition: ModelDefinition) -> ModelDefinition:
        relations = resolve_relations(
            definition,
            collect_declarations(definition.model_class, "relations"),
            self,
        )
        schema = convert_properties({
            prop: schema for prop, schema in definition.properties.items()
            if not schema.get("computed")
        })
        add_relation_schemas(relations, schema["properties"])
        schema["$id"] = definition.name
        return replace(
            definition,
            relations=MappingProxyType(relations),
            json_schema=schema,
        )
