"""Sample blog models and controllers shared by the API and model tests."""

from keel.controllers.controller import Controller, ModelController
from keel.controllers.decorators import (
    action, authorize, eager_scope, parameters, returns, scope, transacted, validate,
)
from keel.core.errors import QueryError
from keel.models.model import Model


class Person(Model):
    properties = {
        "name": {"type": "string", "required": True, "maxLength": 100},
        "email": {"type": "string", "hidden": True, "nullable": True},
        "age": {"type": "integer", "range": [0, 150], "nullable": True},
    }
    relations = {
        "posts": {"relation": "hasMany", "from": "Person.id", "to": "Post.authorId"},
    }
    scopes = {"adults": lambda query: query.where(query.column("age") >= 18)}


class Post(Model):
    properties = {
        "title": {"type": "string", "required": True},
        "published": {"type": "boolean", "default": False},
        "authorId": {"type": "integer", "nullable": True},
    }
    relations = {
        "author": {"relation": "belongsTo", "from": "Post.authorId", "to": "Person.id"},
        "tags": {
            "relation": "manyToMany",
            "from": "Post.id",
            "to": "Tag.id",
            "through": {"from": "PostTag.postId", "to": "PostTag.tagId"},
        },
    }
    scopes = {"published": {"published": True}}
    filters = {
        "titled": lambda query, title=None: query.where(title=title) if title else query,
    }


class Tag(Model):
    properties = {
        "name": {"type": "string", "required": True},
        "active": {"type": "boolean", "default": True},
    }
    scopes = {"active": {"active": True}}


class PostTag(Model):
    properties = {
        "postId": {"type": "integer", "primary": True},
        "tagId": {"type": "integer", "primary": True},
    }


MODELS = (Person, Post, Tag, PostTag)


class PersonController(ModelController):
    model = "Person"
    path = "/people"


class PostController(ModelController):
    model = "Post"

    @action("get", "/published")
    @scope("published")
    @eager_scope("active")
    async def published(self, ctx):
        return await self.query(ctx).all()


def ordered_bounds(ctx, params):
    if params["low"] > params["high"]:
        return [{"message": "must not exceed high", "data_path": "low"}]
    return None


class EchoController(Controller):

    @action("get", "/add")
    @parameters(
        a={"type": "integer", "required": True},
        b={"type": "integer", "required": True},
    )
    async def add(self, ctx, a, b):
        return {"sum": a + b}

    @action("get", "/span")
    @parameters(
        low={"type": "integer", "required": True},
        high={"type": "integer", "required": True},
    )
    @validate(ordered_bounds)
    async def span(self, ctx, low, high):
        return {"span": high - low}

    @action("get", "/secret")
    @authorize("admin")
    async def secret(self, ctx):
        return {"ok": True}

    @action("get", "/broken")
    async def broken(self, ctx):
        raise RuntimeError("database password is hunter2")

    @action("get", "/bad-return")
    @returns({"type": "object", "properties": {"count": {"type": "integer"}}})
    async def bad_return(self, ctx):
        return {"count": "many"}

    @action("post", "/fail")
    @transacted
    async def fail(self, ctx):
        await ctx.models.Tag.insert({"name": "rolled back"})
        raise QueryError("Refusing to keep this tag")

    @action("post", "/tag")
    @transacted
    async def tag(self, ctx):
        return await ctx.models.Tag.insert({"name": "kept"})


CONTROLLERS = (PersonController, PostController, EchoController)
