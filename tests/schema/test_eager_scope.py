"""Eager Scope Resolver — named scopes pushed into nested eager expressions.

Tests cover:
    - The root node never receives scopes
    - Scopes land only on nodes whose model knows them (or available filters)
    - prepend vs append ordering
    - Idempotence and duplicate-free args
    - Unknown child relations
"""

import pytest

from keel.core.errors import RelationError
from keel.schema.eager_scope import apply_eager_scope, parse_scope
from keel.schema.expression import RelationExpression


class FakeModel:
    def __init__(self, name, scopes=()):
        self.name = name
        self.scopes = {scope: {} for scope in scopes}
        self.relations = {}

    def get_related(self, relation_name):
        return self.relations[relation_name]


@pytest.fixture
def person():
    person = FakeModel("Person", scopes=["active"])
    post = FakeModel("Post", scopes=["published", "recent"])
    tag = FakeModel("Tag", scopes=["active"])
    person.relations = {"posts": post}
    post.relations = {"author": person, "tags": tag}
    return person


def test_root_never_receives_scopes(person):
    expr = apply_eager_scope(person, "posts", ["active", "published"])
    assert expr.args == []
    assert expr.children["posts"].args == ["published"]


def test_scopes_only_applied_where_known(person):
    expr = apply_eager_scope(person, "posts.[author, tags]", ["active", "published"])
    posts = expr.children["posts"]
    assert posts.args == ["published"]
    assert posts.children["author"].args == ["active"]
    assert posts.children["tags"].args == ["active"]


def test_existing_args_kept_and_appended_after(person):
    expr = apply_eager_scope(person, "posts(recent)", ["published"])
    assert expr.children["posts"].args == ["recent", "published"]


def test_prepend_puts_scopes_first(person):
    expr = apply_eager_scope(person, "posts(recent)", ["published"], prepend=True)
    assert expr.children["posts"].args == ["published", "recent"]


def test_available_filters_count_as_known(person):
    expr = apply_eager_scope(person, "posts", ["mine"], available_filters={"mine": object()})
    assert expr.children["posts"].args == ["mine"]


def test_duplicate_requested_scopes_added_once(person):
    expr = apply_eager_scope(person, "posts", ["published", "published"])
    assert expr.children["posts"].args == ["published"]


def test_application_is_idempotent(person):
    once = apply_eager_scope(person, "posts(published).tags", ["active", "published"])
    twice = apply_eager_scope(person, once, ["active", "published"])
    assert twice == once
    assert str(twice) == "posts(published).tags(active)"


def test_input_expression_is_not_mutated(person):
    source = RelationExpression.parse("posts")
    apply_eager_scope(person, source, ["published"])
    assert source.children["posts"].args == []


def test_invalid_child_expression(person):
    with pytest.raises(RelationError, match="Invalid child expression: comments"):
        apply_eager_scope(person, "posts.comments", ["published"])


def test_parse_scope():
    assert parse_scope("~published") == ("published", True)
    assert parse_scope("published") == ("published", False)
