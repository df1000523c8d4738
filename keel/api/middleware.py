"""Request Pipeline — ordered async middleware around every routed request.

Invariants:
    - Stage order: handle_error → find_route → handle_route → bind_models →
      create_transaction → [handle_session] → handle_action
    - handle_error is outermost: no error escapes the pipeline, the app-level
      "error" event is emitted for every caught error, and stack traces never
      reach the response body
    - Transaction state walks NONE → STARTED → COMMITTED | ROLLED_BACK; commit
      and rollback listeners run after the physical commit / rollback
    - A failed transacted request rolls back and re-raises the original error
      unchanged; ctx.transaction is cleared on every exit path, including
      cancellation and timeouts (BaseException)

Design Decisions:
    - Koa-style `async def middleware(ctx, next_)` stages composed by
      compose(); each stage is a closure over its configuration
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from keel.api.context import RequestContext
from keel.api.error_handlers import format_error
from keel.api.router import RouteMatch, Router
from keel.core.domain_types import TransactionState
from keel.core.errors import MethodNotAllowedError, NotFoundError
from keel.core.events import EventEmitter

if TYPE_CHECKING:
    from keel.models.registry import ModelRegistry

Next = Callable[[], Awaitable[None]]
Middleware = Callable[[RequestContext, Next], Awaitable[None]]


def compose(middleware: Sequence[Middleware]) -> Callable[..., Awaitable[None]]:
    """Compose stages into one callable: `await pipeline(ctx)`."""
    stages = list(middleware)

    async def pipeline(ctx: RequestContext, next_: Next | None = None) -> None:
        last = -1

        async def dispatch(index: int) -> None:
            nonlocal last
            if index <= last:
                raise RuntimeError("next() called multiple times")
            last = index
            if index == len(stages):
                if next_ is not None:
                    await next_()
                return
            await stages[index](ctx, lambda: dispatch(index + 1))

        await dispatch(0)

    return pipeline


def handle_error(events: EventEmitter) -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        try:
            await next_()
        except Exception as error:
            status, body, headers = format_error(error)
            ctx.status = status
            ctx.body = body
            ctx.headers.update(headers)
            if status >= 500:
                ctx.logger.error(f"Request failed: {error}", exc_info=error)
            else:
                ctx.logger.warning(f"Request rejected ({status}): {error}")
            await events.emit("error", error, ctx)
    return middleware


def find_route(router: Router) -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        result = router.find(ctx.method, ctx.path)
        if isinstance(result, RouteMatch):
            ctx.route = result.route
            ctx.params = result.params
        else:
            ctx.route_miss = result
        await next_()
    return middleware


def handle_route() -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        if ctx.route is None:
            miss = ctx.route_miss
            if miss is not None and miss.status == 405:
                raise MethodNotAllowedError(miss.allowed)
            raise NotFoundError()
        await next_()
    return middleware


def bind_models(registry: "ModelRegistry") -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        ctx.bind_models(registry)
        await next_()
    return middleware


def create_transaction() -> Middleware:
    async def middleware(ctx: RequestContext, next_: Next) -> None:
        if ctx.route is None or not ctx.route.transacted:
            await next_()
            return
        transaction = await ctx.database.start_transaction()
        ctx.transaction = transaction
        try:
            await next_()
            await transaction.commit()
        except BaseException as error:
            if transaction.state is TransactionState.STARTED:
                ctx.logger.info(f"Rolling back transaction: {error!r}")
                await transaction.rollback(error)
            raise
        finally:
            ctx.transaction = None
            await transaction.close()
    return middleware
