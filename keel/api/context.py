"""Request Context — per-request state threaded through the pipeline.

Invariants:
    - One RequestContext per request; never shared or reused
    - `transaction` is set only while the transaction stage runs the
      downstream chain of a transacted route, and cleared on exit
    - `models` binds model definitions to this context on first access;
      the bindings die with the context
"""

import logging
import uuid
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from keel.models.query import BoundModel

if TYPE_CHECKING:
    from fastapi import Request

    from keel.api.router import Route, RouteMiss
    from keel.app import Application
    from keel.infrastructure.database import Database, Transaction
    from keel.models.registry import ModelRegistry
    from keel.schema.expression import RelationExpression

logger = logging.getLogger("keel.request")


class BoundModels:
    """`ctx.models.Post` / `ctx.models["Post"]`: models bound to one request."""

    def __init__(self, registry: "ModelRegistry", context: "RequestContext"):
        self._registry = registry
        self._context = context
        self._bound: dict[str, BoundModel] = {}

    def __getitem__(self, name: str) -> BoundModel:
        bound = self._bound.get(name)
        if bound is None:
            bound = self._bound[name] = BoundModel(self._registry[name], self._context)
        return bound

    def __getattr__(self, name: str) -> BoundModel:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"Unknown model: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._registry

    def __iter__(self) -> Iterator[str]:
        return iter(self._registry)


class RequestContext:
    """Everything one request needs: route, params, transaction, models, response."""

    def __init__(
        self,
        app: "Application",
        method: str,
        path: str,
        query: dict[str, Any] | None = None,
        request: "Request | None" = None,
        data: Any = None,
    ):
        self.app = app
        self.request = request
        self.method = method.lower()
        self.path = path
        self.query = query or {}
        self.data = data
        self.request_id = uuid.uuid4().hex[:12]
        self.logger = logging.LoggerAdapter(logger, {
            "request_id": self.request_id,
            "method": self.method.upper(),
            "path": path,
        })
        self.route: Route | None = None
        self.route_miss: RouteMiss | None = None
        self.params: dict[str, Any] = {}
        self.transaction: Transaction | None = None
        self.user: Any = None
        self.session: Any = None
        self.eager: RelationExpression | None = None
        self.status = 200
        self.body: Any = None
        self.headers: dict[str, str] = {}
        self.cookies: dict[str, dict[str, Any]] = {}
        self._models: BoundModels | None = None

    def __repr__(self) -> str:
        return f"<RequestContext {self.method.upper()} {self.path} [{self.request_id}]>"

    @property
    def database(self) -> "Database | None":
        return self.app.database

    @property
    def models(self) -> BoundModels:
        if self._models is None:
            self.bind_models(self.app.models)
        return self._models

    def bind_models(self, registry: "ModelRegistry") -> None:
        """Bind models to this context; each BoundModel is created on first access."""
        self._models = BoundModels(registry, self)

    def set_cookie(self, name: str, value: str, **options: Any) -> None:
        self.cookies[name] = {"value": value, **options}
