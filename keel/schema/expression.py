"""Relation Expressions — parsed eager-loading trees.

Invariants:
    - A node's `args` never contains the same scope name twice
    - Children are keyed by relation name; parsing the same name twice merges
      both occurrences into one node
    - parse() always returns a fresh tree; it never hands back its input

Grammar accepted by parse():

    expression := item ("," item)*
    item       := "[" expression "]" | path
    path       := node ("." (node | "[" expression "]"))*
    node       := name ("(" name ("," name)* ")")?

Dict form: `{"author": {"profile": True}, "tags(published)": True}`.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from keel.core.errors import RelationError

_TOKEN = re.compile(r"\s*(?:([A-Za-z_$][\w$]*)|(\S))")


@dataclass
class RelationExpression:
    """Tree node: relation name, requested scopes (`args`), child nodes."""
    name: str | None = None
    args: list[str] = field(default_factory=list)
    children: dict[str, "RelationExpression"] = field(default_factory=dict)

    @property
    def num_children(self) -> int:
        return len(self.children)

    def add_arg(self, arg: str, prepend: bool = False) -> bool:
        if arg in self.args:
            return False
        if prepend:
            self.args.insert(0, arg)
        else:
            self.args.append(arg)
        return True

    def add_child(self, child: "RelationExpression") -> "RelationExpression":
        existing = self.children.get(child.name)
        if existing is None:
            self.children[child.name] = child
            return child
        existing.merge(child)
        return existing

    def merge(self, other: "RelationExpression") -> "RelationExpression":
        for arg in other.args:
            self.add_arg(arg)
        for child in other.children.values():
            self.add_child(child.clone())
        return self

    def clone(self) -> "RelationExpression":
        return RelationExpression(
            name=self.name,
            args=list(self.args),
            children={name: child.clone() for name, child in self.children.items()},
        )

    def __str__(self) -> str:
        children = ", ".join(_format(child) for child in self.children.values())
        if self.name is None:
            return f"[{children}]" if self.num_children > 1 else children
        return _format(self)

    @classmethod
    def parse(cls, expression: Any) -> "RelationExpression":
        """Parse a string, dict, list or existing node into a fresh root node."""
        if isinstance(expression, RelationExpression):
            return expression.clone()
        root = cls()
        if expression is None or expression == "":
            return root
        if isinstance(expression, str):
            _Parser(expression).parse_into(root)
        elif isinstance(expression, dict):
            _parse_dict(expression, root)
        elif isinstance(expression, (list, tuple)):
            for entry in expression:
                root.merge(cls.parse(entry))
        else:
            raise RelationError(f"Invalid eager expression: {expression!r}")
        return root


def _format(node: RelationExpression) -> str:
    text = node.name or ""
    if node.args:
        text += f"({', '.join(node.args)})"
    if node.num_children == 1:
        text += f".{_format(next(iter(node.children.values())))}"
    elif node.num_children > 1:
        text += ".[" + ", ".join(_format(c) for c in node.children.values()) + "]"
    return text


def _parse_dict(spec: dict, parent: RelationExpression) -> None:
    for key, value in spec.items():
        if not value:
            continue
        holder = RelationExpression()
        _Parser(key).parse_into(holder)
        if len(holder.children) != 1:
            raise RelationError(f"Invalid eager expression key: {key!r}")
        node = parent.add_child(next(iter(holder.children.values())))
        if isinstance(value, dict):
            _parse_dict(value, _leaf(node))


def _leaf(node: RelationExpression) -> RelationExpression:
    while node.num_children == 1:
        node = next(iter(node.children.values()))
    return node


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens: list[str] = []
        for match in _TOKEN.finditer(source):
            name, punct = match.groups()
            token = name or punct
            if token:
                self.tokens.append(token)
        self.pos = 0

    def error(self) -> RelationError:
        return RelationError(f"Invalid eager expression: {self.source!r}")

    def peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, expected: str | None = None) -> str:
        token = self.peek()
        if token is None or (expected is not None and token != expected):
            raise self.error()
        self.pos += 1
        return token

    def parse_into(self, parent: RelationExpression) -> None:
        self.expression(parent)
        if self.peek() is not None:
            raise self.error()

    def expression(self, parent: RelationExpression) -> None:
        self.item(parent)
        while self.peek() == ",":
            self.take(",")
            self.item(parent)

    def item(self, parent: RelationExpression) -> None:
        if self.peek() == "[":
            self.take("[")
            self.expression(parent)
            self.take("]")
        else:
            self.path(parent)

    def path(self, parent: RelationExpression) -> None:
        node = parent.add_child(self.node())
        while self.peek() == ".":
            self.take(".")
            if self.peek() == "[":
                self.take("[")
                self.expression(node)
                self.take("]")
                return
            node = node.add_child(self.node())

    def node(self) -> RelationExpression:
        name = self.take()
        if not _is_name(name):
            raise self.error()
        node = RelationExpression(name=name)
        if self.peek() == "(":
            self.take("(")
            while True:
                arg = self.take()
                if not _is_name(arg):
                    raise self.error()
                node.add_arg(arg)
                if self.peek() == ",":
                    self.take(",")
                    continue
                self.take(")")
                break
        return node


def _is_name(token: str) -> bool:
    return bool(re.fullmatch(r"[A-Za-z_$][\w$]*", token))
