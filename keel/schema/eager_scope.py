"""Eager Scope Resolver — injects named scopes into nested eager expressions.

Invariants:
    - The root node never receives scopes; only relation nodes do
    - A scope is added to a node only if the node's model knows it
      (named scope) or it is in `available_filters`
    - Applying the same scopes twice yields a structurally identical tree
    - Unknown child relations raise RelationError("Invalid child expression: <name>")
"""

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from keel.core.errors import RelationError
from keel.schema.expression import RelationExpression
from keel.schema.relations import RelationDefinition


class ScopedModel(Protocol):
    name: str
    scopes: Mapping[str, Any]
    relations: Mapping[str, RelationDefinition]

    def get_related(self, relation_name: str) -> "ScopedModel": ...


def parse_scope(expression: str) -> tuple[str, bool]:
    """`~published` → ("published", True): a leading `~` marks an eager scope."""
    if expression.startswith("~"):
        return expression[1:], True
    return expression, False


def apply_eager_scope(
    model: ScopedModel,
    expression: Any,
    scopes: Iterable[str],
    available_filters: Mapping[str, Any] | None = None,
    prepend: bool = False,
    is_root: bool = True,
) -> RelationExpression:
    scopes = list(dict.fromkeys(scopes))
    if is_root:
        expression = RelationExpression.parse(expression)
    else:
        missing = [
            scope for scope in scopes
            if scope not in expression.args
            and (scope in model.scopes or scope in (available_filters or {}))
        ]
        if missing:
            if prepend:
                expression.args[:0] = missing
            else:
                expression.args.extend(missing)
    for child in expression.children.values():
        if child.name not in model.relations:
            raise RelationError(f"Invalid child expression: {child.name}")
        apply_eager_scope(
            model.get_related(child.name), child, scopes,
            available_filters, prepend, is_root=False,
        )
    return expression
