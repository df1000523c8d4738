"""Model Queries — SQLAlchemy Core queries over one model, bound to an explicit context.

Invariants:
    - Statements run on `context.transaction` when set, else on a short
      autocommit connection from `context.database`
    - The `default` scope applies unless unscoped() was called
    - `before:<op>` hooks are awaited before the statement executes and
      `after:<op>` hooks after it succeeded, in registration order
    - Inserts and patches are validated against the model schema after the
      `before:` hooks ran, so hooks may fill in data
    - Related queries share the parent's context, hence its transaction
    - Relation values written through insert / patch: belongsTo references fill
      the local foreign key; hasOne / hasMany / manyToMany values are written
      after the row (references related, nested objects inserted), and a patch
      replaces the previously related set

Design Decisions:
    - Builder methods mutate and return the query (chainable); scopes are
      resolved on a copy at execution time, so a query can be executed twice
    - Eager loading issues one IN query per relation node instead of joins
"""

import copy
import datetime
import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    and_, column as sql_column, delete, func, insert, select, table as sql_table,
    tuple_, update,
)

from keel.core.domain_types import RelationKind
from keel.core.errors import (
    ErrorContext, NotFoundError, QueryError, RelationError, ValidationError,
)
from keel.core.utils import as_list
from keel.schema.eager_scope import apply_eager_scope, parse_scope
from keel.schema.expression import RelationExpression
from keel.schema.relations import RelationDefinition, ThroughSpec

if TYPE_CHECKING:
    from keel.models.model import Model, ModelDefinition

logger = logging.getLogger(__name__)


def _column_of(reference: str) -> str:
    return reference.rpartition(".")[2]


def _table_of(reference: str) -> str:
    return reference.rpartition(".")[0]


def _match_keys(columns: list, keys: list[tuple]) -> Any:
    if len(columns) == 1:
        return columns[0].in_([key[0] for key in keys])
    return tuple_(*columns).in_(keys)


def _coerce(schema: Mapping[str, Any], value: Any) -> Any:
    if not isinstance(value, str):
        return value
    kind = schema.get("type")
    if kind == "date":
        return datetime.date.fromisoformat(value)
    if kind in ("datetime", "timestamp"):
        return datetime.datetime.fromisoformat(value)
    return value


class ModelQuery:
    """Chainable query over one model definition."""

    def __init__(self, definition: "ModelDefinition", context: Any):
        self.definition = definition
        self.context = context
        self._clauses: list = []
        self._order: list = []
        self._limit: int | None = None
        self._offset: int | None = None
        self._scopes: list[str] = []
        self._unscoped = False
        self._graph: RelationExpression | None = None

    def __repr__(self) -> str:
        return f"<ModelQuery {self.definition.name} scopes={self._scopes}>"

    @property
    def table(self):
        return self.definition.table

    def column(self, property_name: str):
        return self.table.c[self.definition.column_name(property_name)]

    # ─── builders ────────────────────────────────────────────────

    def where(self, *clauses: Any, **criteria: Any) -> "ModelQuery":
        self._clauses.extend(clauses)
        for prop, value in criteria.items():
            column = self.column(prop)
            if value is None:
                self._clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set)):
                self._clauses.append(column.in_(list(value)))
            else:
                self._clauses.append(column == value)
        return self

    def order_by(self, *properties: str) -> "ModelQuery":
        for prop in properties:
            column = self.column(prop.lstrip("-"))
            self._order.append(column.desc() if prop.startswith("-") else column.asc())
        return self

    def limit(self, limit: int | None) -> "ModelQuery":
        self._limit = limit
        return self

    def offset(self, offset: int | None) -> "ModelQuery":
        self._offset = offset
        return self

    def scope(self, *names: str) -> "ModelQuery":
        """Replace the requested scopes. `~name` also applies `name` to the eager graph."""
        self._scopes = []
        return self.merge_scope(*names)

    def merge_scope(self, *names: str) -> "ModelQuery":
        for name in names:
            if name not in self._scopes:
                self._scopes.append(name)
        return self

    def unscoped(self) -> "ModelQuery":
        self._unscoped = True
        self._scopes = []
        return self

    def modify(self, modifier: Any) -> "ModelQuery":
        if isinstance(modifier, str):
            return self.merge_scope(modifier)
        if isinstance(modifier, Mapping):
            return self.where(**modifier)
        if isinstance(modifier, (list, tuple)):
            for item in modifier:
                self.modify(item)
            return self
        if callable(modifier):
            modifier(self)
            return self
        raise QueryError(f"Invalid query modifier: {modifier!r}")

    def apply_filter(self, name: str, **params: Any) -> "ModelQuery":
        query_filter = self.definition.filters.get(name)
        if query_filter is None:
            raise QueryError(f"Unknown filter '{name}' on {self.definition.name}")
        query_filter(self, **params)
        return self

    def with_graph(self, expression: Any, scopes: list[str] | tuple = ()) -> "ModelQuery":
        graph = apply_eager_scope(self.definition, expression, scopes)
        self._graph = graph if self._graph is None else self._graph.merge(graph)
        return self

    # ─── reads ───────────────────────────────────────────────────

    async def all(self) -> list["Model"]:
        query = self._prepared()
        rows = await query._execute(query._select(), fetch=True)
        instances = [self.definition.from_row(row) for row in rows]
        if query._graph is not None and instances:
            await query._load_graph(instances, query._graph)
        return instances

    async def first(self) -> "Model | None":
        query = copy.copy(self)
        query._clauses = list(self._clauses)
        instances = await query.limit(1).all()
        return instances[0] if instances else None

    async def find_by_id(self, id_value: Any) -> "Model":
        instance = await self.where(**self.definition.id_criteria(id_value)).first()
        if instance is None:
            raise NotFoundError(
                f"{self.definition.name} with id {id_value!r} not found",
                ErrorContext(model=self.definition.name),
            )
        return instance

    async def count(self) -> int:
        query = self._prepared()
        statement = select(func.count()).select_from(self.table)
        if query._clauses:
            statement = statement.where(*query._clauses)
        result = await query._execute(statement)
        return result.scalar_one()

    # ─── writes ──────────────────────────────────────────────────

    def validate(self, data: Mapping[str, Any], patch: bool = False) -> None:
        validator = self.definition.registry.validator
        errors = validator.validate(self.definition.name, data, patch=patch)
        if errors:
            raise ValidationError(errors, context=ErrorContext(model=self.definition.name))

    async def insert(self, data: Mapping[str, Any]) -> "Model":
        data = dict(data)
        await self.definition.events.emit("before:insert", self, data)
        self.validate(data)
        graph = self._split_graph(data)
        result = await self._execute(insert(self.table).values(**self._values(data)))
        ids = {prop: data.get(prop) for prop in self.definition.id_properties}
        if any(value is None for value in ids.values()):
            ids = dict(zip(self.definition.id_properties, result.inserted_primary_key))
        instance = await self._refetch(ids)
        await self._write_graph(instance, graph)
        await self.definition.events.emit("after:insert", self, instance)
        return instance

    async def patch_by_id(self, id_value: Any, data: Mapping[str, Any]) -> "Model":
        data = dict(data)
        criteria = self.definition.id_criteria(id_value)
        await self.definition.events.emit("before:update", self, data)
        self.validate(data, patch=True)
        graph = self._split_graph(data)
        values = self._values(data)
        if values:
            statement = update(self.table).where(*self._criteria(criteria)).values(**values)
            result = await self._execute(statement)
            if not result.rowcount:
                raise NotFoundError(
                    f"{self.definition.name} with id {id_value!r} not found",
                    ErrorContext(model=self.definition.name),
                )
        instance = await self._refetch(criteria)
        await self._write_graph(instance, graph, replace=True)
        await self.definition.events.emit("after:update", self, instance)
        return instance

    async def upsert(self, data: Mapping[str, Any]) -> "Model":
        ids = {prop: data.get(prop) for prop in self.definition.id_properties}
        if all(value is not None for value in ids.values()):
            existing = await self.definition.query(self.context).unscoped().where(**ids).count()
            if existing:
                return await self.patch_by_id(
                    ids, {key: value for key, value in data.items() if key not in ids},
                )
        return await self.insert(data)

    async def delete(self) -> int:
        """Delete every row matching the current criteria and scopes."""
        query = self._prepared()
        statement = delete(self.table)
        if query._clauses:
            statement = statement.where(*query._clauses)
        await self.definition.events.emit("before:delete", self, None)
        result = await query._execute(statement)
        await self.definition.events.emit("after:delete", self, None)
        return result.rowcount

    async def delete_by_id(self, id_value: Any) -> int:
        criteria = self.definition.id_criteria(id_value)
        await self.definition.events.emit("before:delete", self, criteria)
        result = await self._execute(delete(self.table).where(*self._criteria(criteria)))
        if not result.rowcount:
            raise NotFoundError(
                f"{self.definition.name} with id {id_value!r} not found",
                ErrorContext(model=self.definition.name),
            )
        await self.definition.events.emit("after:delete", self, criteria)
        return result.rowcount

    # ─── internals ───────────────────────────────────────────────

    def _prepared(self) -> "ModelQuery":
        query = copy.copy(self)
        query._clauses = list(self._clauses)
        query._order = list(self._order)
        query._scopes = []
        names = list(self._scopes)
        if not self._unscoped and "default" in self.definition.scopes and "default" not in names:
            names.insert(0, "default")
        eager = []
        for raw in names:
            name, is_eager = parse_scope(raw)
            if is_eager:
                eager.append(name)
            query._apply_named(name)
        if eager and query._graph is not None:
            query._graph = apply_eager_scope(self.definition, query._graph, eager)
        return query

    def _apply_named(self, name: str) -> None:
        scope = self.definition.scopes.get(name)
        if scope is None:
            if name in self.definition.filters:
                self.apply_filter(name)
                return
            raise QueryError(f"Unknown scope '{name}' on {self.definition.name}")
        if isinstance(scope, Mapping):
            self.where(**scope)
        else:
            scope(self)

    def _select(self):
        statement = select(self.table)
        if self._clauses:
            statement = statement.where(*self._clauses)
        if self._order:
            statement = statement.order_by(*self._order)
        if self._limit is not None:
            statement = statement.limit(self._limit)
        if self._offset is not None:
            statement = statement.offset(self._offset)
        return statement

    def _criteria(self, criteria: Mapping[str, Any]) -> list:
        return [self.column(prop) == value for prop, value in criteria.items()]

    def _values(self, data: Mapping[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for prop, value in data.items():
            relation = self.definition.relations.get(prop)
            if relation is not None:
                self._relate(relation, value, values)
                continue
            column = self.definition.columns.get(prop)
            if column is not None:
                values[column] = _coerce(self.definition.properties[prop], value)
        return values

    def _relate(self, relation: RelationDefinition, value: Any, values: dict) -> None:
        """Copy a belongsTo reference (`{"id": 1}`) into the local foreign key columns."""
        related = self.definition.get_related(relation.name)
        reference = related.get_reference(value) if value is not None else None
        for from_ref, to_ref in zip(relation.join.from_, relation.join.to):
            values[_column_of(from_ref)] = (
                reference[related.property_name(_column_of(to_ref))]
                if reference is not None else None
            )

    def _split_graph(self, data: dict[str, Any]) -> dict[str, Any]:
        """Pop relations whose keys live outside this row (all but belongsTo) off `data`."""
        return {
            name: data.pop(name)
            for name, relation in self.definition.relations.items()
            if name in data and relation.kind is not RelationKind.BELONGS_TO_ONE
        }

    async def _write_graph(
        self,
        owner: "Model",
        graph: Mapping[str, Any],
        replace: bool = False,
    ) -> None:
        """Relate references and insert nested objects for hasOne / hasMany / manyToMany.

        With `replace`, rows related before are unrelated first, so the written
        value becomes the complete new set.
        """
        for name, value in graph.items():
            relation = self.definition.relations[name]
            related = self.definition.get_related(name)
            keys = [
                getattr(owner, self.definition.property_name(_column_of(ref)))
                for ref in relation.join.from_
            ]
            if replace:
                await self._unrelate_all(relation, related, keys)
            instances = []
            for item in as_list(value):
                instances.append(await self._relate_item(relation, related, keys, item))
            if relation.is_one_to_one:
                setattr(owner, name, instances[0] if instances else None)
            else:
                setattr(owner, name, instances)

    async def _relate_item(
        self,
        relation: RelationDefinition,
        related: "ModelDefinition",
        keys: list,
        item: Any,
    ) -> "Model":
        through = relation.join.through
        query = related.query(self.context).unscoped()
        if through is None:
            foreign = {
                related.property_name(_column_of(ref)): key
                for ref, key in zip(relation.join.to, keys)
            }
            if not related.is_reference(item):
                return await query.insert({**item, **foreign})
            instance = await query.find_by_id(related.get_reference(item))
            await query._execute(
                update(related.table)
                .where(*query._criteria(related.get_reference(item)))
                .values(**{related.column_name(prop): v for prop, v in foreign.items()}),
            )
            for prop, key in foreign.items():
                setattr(instance, prop, key)
            return instance
        if related.is_reference(item):
            instance = await query.find_by_id(related.get_reference(item))
        else:
            instance = await query.insert(item)
        join_table = self._through_table(through)
        values = dict(zip(map(_column_of, through.from_), keys))
        for from_ref, to_ref in zip(through.to, relation.join.to):
            values[_column_of(from_ref)] = getattr(
                instance, related.property_name(_column_of(to_ref)),
            )
        await self._execute(insert(join_table).values(**values))
        return instance

    async def _unrelate_all(
        self,
        relation: RelationDefinition,
        related: "ModelDefinition",
        keys: list,
    ) -> None:
        through = relation.join.through
        if through is not None:
            join_table = self._through_table(through)
            columns = [join_table.c[_column_of(ref)] for ref in through.from_]
            statement = delete(join_table)
        else:
            columns = [related.table.c[_column_of(ref)] for ref in relation.join.to]
            statement = update(related.table).values(**{c.name: None for c in columns})
        await self._execute(statement.where(*(c == key for c, key in zip(columns, keys))))

    async def _refetch(self, ids: Mapping[str, Any]) -> "Model":
        return await self.definition.query(self.context).unscoped().find_by_id(dict(ids))

    async def _execute(self, statement: Any, fetch: bool = False) -> Any:
        logger.debug(f"{self.definition.name}: {statement}")
        transaction = getattr(self.context, "transaction", None)
        if transaction is not None:
            result = await transaction.execute(statement)
            return result.mappings().all() if fetch else result
        database = getattr(self.context, "database", None)
        if database is None:
            raise QueryError(f"No database available to query {self.definition.name}")
        async with database.connect() as connection:
            result = await connection.execute(statement)
            return result.mappings().all() if fetch else result

    # ─── eager loading ───────────────────────────────────────────

    async def _load_graph(self, instances: list["Model"], expression: RelationExpression) -> None:
        for child in expression.children.values():
            relation = self.definition.relations.get(child.name)
            if relation is None:
                raise RelationError(f"Invalid child expression: {child.name}")
            query = self.definition.get_related(child.name).query(self.context)
            if relation.modify:
                query.modify(relation.modify)
            query.merge_scope(*child.args)
            query._graph = child if child.children else None
            await query._load_relation(relation, instances)

    async def _load_relation(self, relation: RelationDefinition, owners: list["Model"]) -> None:
        owner = self.definition.registry[relation.owner]
        owner_props = [owner.property_name(_column_of(ref)) for ref in relation.join.from_]

        def owner_key(instance: "Model") -> tuple:
            return tuple(getattr(instance, prop, None) for prop in owner_props)

        keys = list({
            key for key in map(owner_key, owners)
            if all(value is not None for value in key)
        })
        grouped: dict[tuple, list] = defaultdict(list)
        if keys:
            query = self._prepared()
            related_columns = [self.table.c[_column_of(ref)] for ref in relation.join.to]
            through = relation.join.through
            if through is not None:
                statement, labels = query._through_select(through, related_columns, keys)
            else:
                statement = query._select().where(_match_keys(related_columns, keys))
                labels = [column.name for column in related_columns]
            instances = []
            for row in await query._execute(statement, fetch=True):
                row = dict(row)
                key = tuple(row[label] for label in labels)
                if through is not None:
                    for label in labels:
                        row.pop(label)
                instance = self.definition.from_row(row)
                grouped[key].append(instance)
                instances.append(instance)
            if query._graph is not None and instances:
                await query._load_graph(instances, query._graph)
        for instance in owners:
            matches = grouped.get(owner_key(instance), [])
            if relation.is_one_to_one:
                setattr(instance, relation.name, matches[0] if matches else None)
            else:
                setattr(instance, relation.name, matches)

    def _through_select(
        self,
        through: ThroughSpec,
        related_columns: list,
        keys: list[tuple],
    ) -> tuple[Any, list[str]]:
        join_table = self._through_table(through)
        from_columns = [join_table.c[_column_of(ref)] for ref in through.from_]
        to_columns = [join_table.c[_column_of(ref)] for ref in through.to]
        labels = [f"_through_{index}" for index in range(len(from_columns))]
        statement = (
            self._select()
            .add_columns(*(c.label(label) for c, label in zip(from_columns, labels)))
            .join(join_table, and_(*(t == r for t, r in zip(to_columns, related_columns))))
            .where(_match_keys(from_columns, keys))
        )
        return statement, labels

    def _through_table(self, through: ThroughSpec):
        if through.model is not None:
            return self.definition.registry[through.model].table
        return sql_table(
            _table_of(through.from_[0]),
            *(sql_column(_column_of(ref)) for ref in (*through.from_, *through.to)),
        )


class BoundModel:
    """A model definition bound to one request context; delegates to fresh queries."""

    def __init__(self, definition: "ModelDefinition", context: Any):
        self.definition = definition
        self.context = context

    def __repr__(self) -> str:
        return f"<BoundModel {self.definition.name}>"

    def query(self) -> ModelQuery:
        return self.definition.query(self.context)

    def __getattr__(self, name: str) -> Callable:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self.query(), name)
