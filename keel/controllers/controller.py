"""Controllers — classes whose decorated methods become routes.

Invariants:
    - Routes are collected subclass-first, so a subclass action wins over a
      base-class action on the same path
    - An action's path is `<api prefix><controller path><action path>`; a
      missing action path defaults to the kebab-cased method name
    - ModelController write actions are transacted
"""

from typing import TYPE_CHECKING, Any, ClassVar

from keel.api.router import Route
from keel.controllers.decorators import action, get_action_meta, parameters, transacted
from keel.core.errors import ControllerError, NotFoundError, ValidationError
from keel.core.utils import snake_case

if TYPE_CHECKING:
    from keel.api.context import RequestContext
    from keel.app import Application
    from keel.models.query import ModelQuery


def join_paths(*parts: str) -> str:
    path = "/".join(part.strip("/") for part in parts if part and part.strip("/"))
    return f"/{path}"


class Controller:
    path: ClassVar[str | None] = None
    model: ClassVar[str | None] = None
    transacted: ClassVar[bool] = False

    def __init__(self, app: "Application"):
        self.app = app

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.get_path()}>"

    @classmethod
    def get_path(cls) -> str:
        if cls.path is not None:
            return cls.path
        return "/" + snake_case(cls.__name__.removesuffix("Controller")).replace("_", "-")

    def get_routes(self, prefix: str = "") -> list[Route]:
        routes = []
        seen: set[str] = set()
        for cls in type(self).__mro__:
            for name, member in cls.__dict__.items():
                if name in seen:
                    continue
                seen.add(name)
                meta = get_action_meta(member) if callable(member) else None
                if meta is None:
                    continue
                action_path = meta.path if meta.path is not None else snake_case(name).replace("_", "-")
                routes.append(Route(
                    verb=meta.verb,
                    path=join_paths(prefix, self.get_path(), action_path),
                    handler=getattr(self, name),
                    controller=self,
                    action=name,
                    meta=meta,
                    model=self.model,
                    transacted=self.transacted if meta.transacted is None else meta.transacted,
                ))
        return routes


class ModelController(Controller):
    """CRUD actions over one registered model."""

    model: ClassVar[str]

    def __init__(self, app: "Application"):
        super().__init__(app)
        if not getattr(type(self), "model", None):
            raise ControllerError(self, "ModelController needs a `model`")

    @classmethod
    def get_path(cls) -> str:
        if cls.path is not None:
            return cls.path
        return "/" + snake_case(cls.model).replace("_", "-") + "s"

    def query(self, ctx: "RequestContext") -> "ModelQuery":
        query = ctx.models[self.model].query()
        meta = ctx.route.meta if ctx.route is not None else None
        if meta is not None and meta.scope:
            query.scope(*meta.scope)
        if ctx.eager is not None:
            query.with_graph(ctx.eager)
        return query

    def get_id(self, ctx: "RequestContext") -> Any:
        definition = self.app.models[self.model]
        value = ctx.params.get("id")
        if len(definition.id_properties) == 1:
            schema = definition.properties[definition.id_properties[0]]
            if schema.get("type") == "integer":
                if not str(value).lstrip("-").isdigit():
                    raise NotFoundError(f"{self.model} with id {value!r} not found")
                return int(value)
        return value

    def get_data(self, ctx: "RequestContext") -> dict[str, Any]:
        data = ctx.data if ctx.data is not None else {}
        if not isinstance(data, dict):
            raise ValidationError(message="The request body needs to be a JSON object")
        return data

    @action("get", "")
    @parameters(
        limit={"type": "integer", "minimum": 0},
        offset={"type": "integer", "minimum": 0},
        order={"type": "string"},
    )
    async def find(self, ctx: "RequestContext", limit=None, offset=None, order=None):
        query = self.query(ctx).limit(limit).offset(offset)
        if order:
            query.order_by(*order.split(","))
        return await query.all()

    @action("get", "/{id}")
    async def find_one(self, ctx: "RequestContext"):
        return await self.query(ctx).find_by_id(self.get_id(ctx))

    @action("post", "")
    @transacted
    async def create(self, ctx: "RequestContext"):
        instance = await ctx.models[self.model].insert(self.get_data(ctx))
        ctx.status = 201
        return instance

    @action("patch", "/{id}")
    @transacted
    async def patch(self, ctx: "RequestContext"):
        return await ctx.models[self.model].patch_by_id(self.get_id(ctx), self.get_data(ctx))

    @action("put", "/{id}")
    @transacted
    async def update(self, ctx: "RequestContext"):
        definition = self.app.models[self.model]
        data = {**self.get_data(ctx), **definition.id_criteria(self.get_id(ctx))}
        return await ctx.models[self.model].upsert(data)

    @action("delete", "/{id}")
    @transacted
    async def delete(self, ctx: "RequestContext"):
        count = await ctx.models[self.model].delete_by_id(self.get_id(ctx))
        return {"count": count}
