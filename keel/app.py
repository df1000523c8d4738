"""Application — wires models, controllers, the request pipeline and FastAPI together.

Invariants:
    - start() compiles every model and route once; compile errors abort startup
    - Routed requests enter through one catch-all FastAPI route into the
      pipeline; health probes are plain FastAPI routes registered before it
    - HEAD and OPTIONS enter the pipeline too: HEAD runs the GET action and
      drops the body, OPTIONS is answered by the router (404 / 405 + Allow)
      unless CORSMiddleware already handled it as a preflight
    - stop() disposes the engine and clears the model registry (cache lifecycle
      ends with the application)
    - CORS configured from settings (not hardcoded)

Design Decisions:
    - Lifespan context manager drives start()/stop(); tests that bypass the
      lifespan (httpx ASGITransport) call them directly
    - FastAPI owns transport concerns (parsing, CORS, cookies); the pipeline
      owns routing, transactions and error formatting
"""

import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keel.api import health
from keel.api.context import RequestContext
from keel.api.error_handlers import register_error_handlers
from keel.api.middleware import (
    Middleware, bind_models, compose, create_transaction, find_route,
    handle_error, handle_route,
)
from keel.api.router import Router
from keel.api.session import ModelSessionStore, SessionModel, handle_session
from keel.config import Settings, get_settings
from keel.controllers.action import compile_route, handle_action
from keel.controllers.controller import Controller
from keel.core.events import EventEmitter
from keel.infrastructure.database import Database
from keel.infrastructure.observability import setup_logging
from keel.models.model import Model
from keel.models.registry import ModelRegistry
from keel.schema.keywords import SchemaKeyword
from keel.schema.validator import Validator

logger = logging.getLogger(__name__)

_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class Application:
    """A keel application: models + controllers served through FastAPI."""

    def __init__(
        self,
        settings: Settings | None = None,
        models: Iterable[type[Model]] = (),
        controllers: Iterable[type[Controller]] = (),
        keywords: Iterable[SchemaKeyword] = (),
        session_store: ModelSessionStore | None = None,
    ):
        self.settings = settings or get_settings()
        self.events = EventEmitter()
        self.validator = Validator(keywords)
        self.models = ModelRegistry(self.validator)
        self.router = Router()
        self.database: Database | None = None
        self.session_store = session_store
        if self.session_store is None and self.settings.session_enabled:
            self.session_store = ModelSessionStore(self.settings.session_model)
            if self.settings.session_model == SessionModel.name:
                self.models.register(SessionModel)
        self.controllers: list[type[Controller]] = []
        self.started = False
        self._pipeline = None
        self.models.register(*models)
        for controller in controllers:
            self.add_controller(controller)
        self.fastapi = self._create_fastapi()

    async def __call__(self, scope, receive, send) -> None:
        await self.fastapi(scope, receive, send)

    def add_models(self, *models: type[Model]) -> None:
        self.models.register(*models)

    def add_controller(self, controller: type[Controller]) -> None:
        if controller not in self.controllers:
            self.controllers.append(controller)

    def create_middleware(self) -> list[Middleware]:
        middleware = [
            handle_error(self.events),
            find_route(self.router),
            handle_route(),
            bind_models(self.models),
            create_transaction(),
        ]
        if self.session_store is not None:
            middleware.append(handle_session(
                self.session_store,
                cookie=self.settings.session_cookie,
                max_age=self.settings.session_max_age,
                auto_commit=self.settings.session_auto_commit,
            ))
        middleware.append(handle_action())
        return middleware

    # ─── lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        if self.started:
            return
        setup_logging(self.settings.log_level, self.settings.log_format)
        self.models.compile()
        for controller_class in self.controllers:
            controller = controller_class(self)
            for route in controller.get_routes(self.settings.api_prefix):
                self.router.add_route(compile_route(route, self.validator))
        self.database = Database(
            self.settings.database_url,
            pool_size=self.settings.database_pool_size,
            max_overflow=self.settings.database_max_overflow,
            echo=self.settings.database_echo,
        )
        self._pipeline = compose(self.create_middleware())
        self.started = True
        logger.info(f"keel application started with {len(self.router.routes)} routes")
        await self.events.emit("start", self)

    async def stop(self) -> None:
        if not self.started:
            return
        await self.events.emit("stop", self)
        if self.database is not None:
            await self.database.dispose()
            self.database = None
        self.router.routes.clear()
        self.models.clear()
        self._pipeline = None
        self.started = False
        logger.info("keel application stopped")

    async def create_tables(self) -> None:
        await self.database.create_all(self.models.metadata)

    # ─── requests ────────────────────────────────────────────────

    async def handle(self, request: Request) -> Response:
        ctx = RequestContext(
            self,
            request.method,
            request.url.path,
            query=_query_dict(request),
            request=request,
        )
        await self._pipeline(ctx)
        return self.create_response(ctx)

    def create_response(self, ctx: RequestContext) -> Response:
        if ctx.body is None or ctx.method == "head":
            status = 204 if ctx.body is None and ctx.status == 200 else ctx.status
            response = Response(status_code=status, headers=ctx.headers)
        else:
            response = JSONResponse(
                status_code=ctx.status,
                content=jsonable_encoder(ctx.body),
                headers=ctx.headers,
            )
        for name, cookie in ctx.cookies.items():
            options = dict(cookie)
            response.set_cookie(name, options.pop("value"), **options)
        return response

    def _create_fastapi(self) -> FastAPI:
        @asynccontextmanager
        async def lifespan(fastapi: FastAPI):
            await self.start()
            yield
            await self.stop()

        fastapi = FastAPI(title="keel", lifespan=lifespan)
        fastapi.add_middleware(
            CORSMiddleware,
            allow_origins=self.settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        register_error_handlers(fastapi)
        fastapi.include_router(health.create_router(self))

        @fastapi.api_route("/{path:path}", methods=_METHODS, include_in_schema=False)
        async def dispatch(request: Request) -> Response:
            return await self.handle(request)

        return fastapi


def _query_dict(request: Request) -> dict[str, Any]:
    query: dict[str, Any] = {}
    for key in request.query_params:
        values = request.query_params.getlist(key)
        query[key] = values[0] if len(values) == 1 else values
    return query
