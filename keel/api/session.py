"""Sessions — cookie-keyed sessions persisted through a model.

Invariants:
    - Store reads and writes go through ctx.models, so a transacted route's
      session work runs in that route's transaction
    - With auto_commit, a transacted route writes the session only after its
      downstream chain succeeded; a non-transacted route always writes it
    - Unchanged sessions are never written
"""

import copy
import logging
import secrets
from collections.abc import Awaitable, Callable
from functools import partial

from keel.api.context import RequestContext
from keel.api.middleware import Middleware, Next
from keel.models.model import Model

logger = logging.getLogger(__name__)


class SessionModel(Model):
    name = "Session"
    properties = {
        "id": {"type": "string", "primary": True, "maxLength": 64},
        "value": {"type": "object", "nullable": True},
    }


class ModelSessionStore:
    """get / set / destroy session values through a registered model."""

    def __init__(self, model_name: str = "Session"):
        self.model_name = model_name

    async def get(self, ctx: RequestContext, key: str) -> dict | None:
        instance = await ctx.models[self.model_name].query().where(id=key).first()
        return instance.value if instance is not None else None

    async def set(self, ctx: RequestContext, key: str, value: dict) -> None:
        await ctx.models[self.model_name].upsert({"id": key, "value": value})

    async def destroy(self, ctx: RequestContext, key: str) -> None:
        await ctx.models[self.model_name].query().where(id=key).delete()


class Session(dict):
    """Session data for one request; tracks whether it needs writing."""

    def __init__(self, key: str | None = None, data: dict | None = None):
        super().__init__(data or {})
        self.key = key
        self.destroyed = False
        self._original = copy.deepcopy(dict(self))
        self._commit: Callable[[], Awaitable[None]] | None = None

    @property
    def is_new(self) -> bool:
        return self.key is None

    @property
    def changed(self) -> bool:
        return dict(self) != self._original

    def destroy(self) -> None:
        self.clear()
        self.destroyed = True

    async def commit(self) -> None:
        """Write the session now; needed when the middleware runs without auto_commit."""
        if self._commit is not None:
            await self._commit()


async def commit_session(
    ctx: RequestContext,
    store: ModelSessionStore,
    cookie: str,
    max_age: int,
) -> None:
    session: Session | None = ctx.session
    if session is None:
        return
    if session.destroyed:
        if session.key is not None:
            await store.destroy(ctx, session.key)
            ctx.set_cookie(cookie, "", max_age=0)
        return
    if not session.changed:
        return
    key = session.key or secrets.token_urlsafe(24)
    await store.set(ctx, key, dict(session))
    logger.debug(f"Session written for request {ctx.request_id}")
    session.key = key
    session._original = copy.deepcopy(dict(session))
    ctx.set_cookie(cookie, key, max_age=max_age, httponly=True, samesite="lax")


def handle_session(
    store: ModelSessionStore,
    cookie: str = "keel.sid",
    max_age: int = 86_400,
    auto_commit: bool = True,
) -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        request = ctx.request
        key = request.cookies.get(cookie) if request is not None else None
        data = await store.get(ctx, key) if key else None
        session = ctx.session = Session(key if data is not None else None, data)
        session._commit = partial(commit_session, ctx, store, cookie, max_age)
        if not auto_commit:
            await next_()
            return
        if ctx.transaction is not None:
            await next_()
            await commit_session(ctx, store, cookie, max_age)
            return
        try:
            await next_()
        finally:
            await commit_session(ctx, store, cookie, max_age)
    return middleware
