"""Controllers & action decorators — route collection and per-action metadata."""

import pytest

from keel.api.context import RequestContext
from keel.controllers.action import authorize_action, coerce_query_value, validate_action
from keel.controllers import decorators
from keel.controllers.controller import Controller, ModelController, join_paths
from keel.controllers.decorators import (
    action, authorize, eager_scope, get_action_meta, parameters, scope, transacted, validate,
)
from keel.core.errors import ControllerError, ValidationError


class ReportController(Controller):
    transacted = True

    @action("get")
    async def monthly_summary(self, ctx):
        return {}

    @action("post", "/rebuild")
    @decorators.transacted(enabled=False)
    async def rebuild(self, ctx):
        return {}

    async def helper(self, ctx):
        return {}


class CustomReportController(ReportController):

    @action("get", "/summary")
    async def monthly_summary(self, ctx):
        return {"custom": True}


def first_check(ctx, params):
    return True


def second_check(ctx, params):
    return True


def test_decorators_stack_onto_one_meta():
    @action("patch", "/{id}", cache=False)
    @scope("published", "recent")
    @scope("published")
    @eager_scope("active")
    @parameters({"limit": {"type": "integer"}}, offset="integer")
    @authorize(["admin", "editor"])
    @validate(first_check)
    @validate(second_check)
    @transacted
    async def handler(self, ctx):
        return None

    meta = get_action_meta(handler)
    assert meta.verb == "patch"
    assert meta.path == "/{id}"
    assert meta.transacted is True
    assert meta.scope == ["published", "recent"]
    assert meta.eager_scope == ["active"]
    assert meta.parameters == {"limit": {"type": "integer"}, "offset": "integer"}
    assert meta.authorize == ["admin", "editor"]
    assert meta.validate == [first_check, second_check]
    assert meta.options == {"cache": False}


def test_routes_collected_with_default_paths():
    routes = {route.action: route for route in ReportController(None).get_routes("/api")}
    assert set(routes) == {"monthly_summary", "rebuild"}
    assert routes["monthly_summary"].path == "/api/report/monthly-summary"
    assert routes["monthly_summary"].transacted is True
    assert routes["rebuild"].path == "/api/report/rebuild"
    assert routes["rebuild"].transacted is False


def test_subclass_action_wins():
    routes = CustomReportController(None).get_routes()
    paths = sorted(route.path for route in routes)
    assert paths == ["/custom-report/rebuild", "/custom-report/summary"]


def test_model_controller_needs_a_model():
    class Orphan(ModelController):
        model = None

    with pytest.raises(ControllerError, match="needs a `model`"):
        Orphan(None)


def test_model_controller_default_path():
    class TagController(ModelController):
        model = "Tag"

    assert TagController.get_path() == "/tags"


def test_join_paths():
    assert join_paths("/api", "/posts", "") == "/api/posts"
    assert join_paths("", "posts/", "/{id}") == "/posts/{id}"
    assert join_paths() == "/"


@pytest.mark.parametrize("value, schema, expected", [
    ("12", {"type": "integer"}, 12),
    ("-3", {"type": "integer"}, -3),
    ("1.5", {"type": "number"}, 1.5),
    ("true", {"type": "boolean"}, True),
    ("0", {"type": "boolean"}, False),
    ('{"a": 1}', {"type": "object"}, {"a": 1}),
    ("a", {"type": "array"}, ["a"]),
    (["1", "2"], {"type": "integer"}, 2),
    ("", {"type": ["integer", "null"]}, None),
    ("abc", {"type": "integer"}, "abc"),
])
def test_coerce_query_value(value, schema, expected):
    assert coerce_query_value(value, schema) == expected


class User:
    def __init__(self, *roles):
        self.roles = roles


@pytest.mark.parametrize("predicate, user, allowed", [
    (None, None, True),
    (False, User("admin"), False),
    ("admin", None, False),
    ("admin", User("admin"), True),
    (["admin", "editor"], User("editor"), True),
    (["admin"], User("viewer"), False),
])
async def test_authorize_action(app, predicate, user, allowed):
    ctx = RequestContext(app, "get", "/")
    ctx.user = user
    assert await authorize_action(ctx, predicate) is allowed


async def test_authorize_action_with_async_callable(app):
    async def only_owner(ctx):
        return ctx.params.get("id") == "7"

    ctx = RequestContext(app, "get", "/")
    ctx.params = {"id": "7"}
    assert await authorize_action(ctx, only_owner) is True


async def test_validate_action_collects_every_failure(app):
    async def positive(ctx, params):
        return params["n"] > 0

    ctx = RequestContext(app, "get", "/items")
    checks = [positive, lambda ctx, params: "too odd" if params["n"] % 2 else None]
    await validate_action(ctx, checks, {"n": 2})
    with pytest.raises(ValidationError) as excinfo:
        await validate_action(ctx, checks, {"n": -1})
    assert [e["message"] for e in excinfo.value.errors] == [
        'must pass "validate" keyword validation', "too odd",
    ]
