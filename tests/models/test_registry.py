"""Model Registry — two-phase compilation into immutable definitions.

Tests cover:
    - Tables, columns and default ids generated from property schemas
    - Relations resolved against the compiled tables
    - JSON schemas registered with the validator under the model name
    - Compile errors abort (RelationError / SchemaError)
"""

import dataclasses

import pytest
from sqlalchemy import Integer, String

from keel.core.domain_types import RelationKind
from keel.core.errors import ModelError, RelationError, SchemaError
from keel.models.model import Model
from keel.models.registry import ModelRegistry
from tests.sample_app import MODELS


@pytest.fixture
def registry():
    registry = ModelRegistry()
    registry.register(*MODELS)
    registry.compile()
    return registry


def test_tables_and_columns(registry):
    post = registry["Post"]
    assert post.table_name == "post"
    assert post.columns["authorId"] == "author_id"
    assert set(post.table.c.keys()) == {"id", "title", "published", "author_id"}
    assert isinstance(post.table.c.title.type, String)


def test_default_integer_id_added(registry):
    person = registry["Person"]
    assert person.id_properties == ("id",)
    assert person.table.c.id.primary_key
    assert isinstance(person.table.c.id.type, Integer)


def test_composite_primary_key(registry):
    link = registry["PostTag"]
    assert link.table_name == "post_tag"
    assert link.id_properties == ("postId", "tagId")
    assert "id" not in link.columns


def test_relations_resolved(registry):
    tags = registry["Post"].relations["tags"]
    assert tags.kind is RelationKind.MANY_TO_MANY
    assert tags.join.through.from_ == ("post_tag.post_id",)
    assert registry["Post"].get_related("tags") is registry["Tag"]
    assert registry["Person"].relations["posts"].join.to == ("post.author_id",)


def test_json_schema_registered(registry):
    schema = registry.validator.get_schema("Post")
    assert schema["$id"] == "Post"
    assert schema["required"] == ["title"]
    assert schema["additionalProperties"] is False
    assert schema["properties"]["author"]["anyOf"][-1] == {"$ref": "Person"}
    assert registry.validator.validate("Post", {"title": "x", "author": {"id": 1}}) == []


def test_hidden_and_extras_not_in_schema(registry):
    email = registry["Person"].json_schema["properties"]["email"]
    assert "hidden" not in email
    assert email["type"] == ["string", "null"]


def test_definitions_are_frozen(registry):
    with pytest.raises(dataclasses.FrozenInstanceError):
        registry["Post"].name = "Article"


def test_get_definition_by_class_and_name(registry):
    post_class = MODELS[1]
    assert registry.get_definition(post_class) is registry.get_definition("Post")
    with pytest.raises(ModelError):
        registry.get_definition("Comment")


def test_clear_ends_cache_lifecycle(registry):
    registry.clear()
    assert len(registry) == 0
    assert not registry.compiled
    assert registry.validator.get_schema("Post") is None
    registry.compile()
    assert "Post" in registry


def test_bad_relation_aborts_compile():
    class Broken(Model):
        relations = {"owner": {"relation": "hasMany", "from": "Broken.id", "to": "Phantom.id"}}

    registry = ModelRegistry()
    registry.register(Broken)
    with pytest.raises(RelationError, match="Broken.relations.owner"):
        registry.compile()


def test_bad_keyword_config_aborts_compile():
    class Ranged(Model):
        properties = {"score": {"type": "integer", "range": [1]}}

    registry = ModelRegistry()
    registry.register(Ranged)
    with pytest.raises(SchemaError, match="range"):
        registry.compile()


def test_register_as_decorator():
    registry = ModelRegistry()

    @registry.register
    class Note(Model):
        table_name = "notes"
        properties = {"body": "text"}

    registry.compile()
    assert registry["Note"].table_name == "notes"
    assert registry["Note"].json_schema["properties"]["body"] == {"type": "string"}
