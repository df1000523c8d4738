"""Request Pipeline — composition and transaction scoping, without HTTP.

Tests cover:
    - compose() ordering and the double-next guard
    - Transaction stage: commit on success, rollback on error / cancellation,
      listeners after the physical operation, ctx.transaction always cleared
    - Error stage: formatted body, status, headers and the "error" event
"""

import asyncio

import pytest

from keel.api.context import RequestContext
from keel.api.middleware import compose, create_transaction, handle_error
from keel.api.router import Route
from keel.core.domain_types import TransactionState
from keel.core.errors import MethodNotAllowedError, QueryError
from keel.core.events import EventEmitter


def make_ctx(app, transacted=True):
    ctx = RequestContext(app, "post", "/things")
    ctx.route = Route("post", "/things", lambda ctx: None, transacted=transacted)
    return ctx


async def test_compose_runs_stages_in_order():
    calls = []

    def stage(name):
        async def middleware(ctx, next_):
            calls.append(f"{name}:in")
            await next_()
            calls.append(f"{name}:out")
        return middleware

    await compose([stage("a"), stage("b")])(object())
    assert calls == ["a:in", "b:in", "b:out", "a:out"]


async def test_compose_rejects_second_next_call():
    async def twice(ctx, next_):
        await next_()
        await next_()

    with pytest.raises(RuntimeError, match="multiple times"):
        await compose([twice])(object())


async def test_transaction_commits_and_clears(app):
    ctx = make_ctx(app)
    states = []

    async def work(ctx, next_):
        transaction = ctx.transaction
        transaction.on_commit(lambda: states.append(transaction.state))
        await ctx.models.Tag.insert({"name": "kept"})
        await next_()

    await compose([create_transaction(), work])(ctx)
    assert ctx.transaction is None
    assert states == [TransactionState.COMMITTED]
    assert await RequestContext(app, "get", "/").models.Tag.count() == 1


async def test_transaction_rolls_back_and_reraises_unchanged(app):
    ctx = make_ctx(app)
    error = QueryError("nope")
    rolled_back = []

    async def work(ctx, next_):
        ctx.transaction.on_rollback(lambda e: rolled_back.append((e, ctx.transaction)))
        await ctx.models.Tag.insert({"name": "gone"})
        raise error

    with pytest.raises(QueryError) as excinfo:
        await compose([create_transaction(), work])(ctx)
    assert excinfo.value is error
    assert rolled_back[0][0] is error
    assert ctx.transaction is None
    assert await RequestContext(app, "get", "/").models.Tag.count() == 0


async def test_cancellation_rolls_back(app):
    ctx = make_ctx(app)
    states = []

    async def work(ctx, next_):
        transaction = ctx.transaction
        transaction.on_rollback(lambda e: states.append(transaction.state))
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await compose([create_transaction(), work])(ctx)
    assert states == [TransactionState.ROLLED_BACK]
    assert ctx.transaction is None


async def test_non_transacted_route_gets_no_transaction(app):
    ctx = make_ctx(app, transacted=False)
    seen = []

    async def work(ctx, next_):
        seen.append(ctx.transaction)

    await compose([create_transaction(), work])(ctx)
    assert seen == [None]


async def test_error_stage_formats_and_emits(app):
    events = EventEmitter()
    emitted = []
    events.on("error", lambda error, ctx: emitted.append(error))
    error = MethodNotAllowedError(["GET"])

    async def fail(ctx, next_):
        raise error

    ctx = make_ctx(app, transacted=False)
    await compose([handle_error(events), fail])(ctx)
    assert ctx.status == 405
    assert ctx.headers["Allow"] == "GET"
    assert ctx.body["error"]["code"] == "METHOD_NOT_ALLOWED"
    assert emitted == [error]


async def test_error_stage_hides_internal_messages(app):
    async def fail(ctx, next_):
        raise KeyError("secret column")

    ctx = make_ctx(app, transacted=False)
    await compose([handle_error(EventEmitter()), fail])(ctx)
    assert ctx.status == 500
    assert ctx.body == {"message": "An unexpected error occurred"}


async def test_error_stage_uses_status_attribute(app):
    class Teapot(Exception):
        status = 418

    async def fail(ctx, next_):
        raise Teapot("short and stout")

    ctx = make_ctx(app, transacted=False)
    await compose([handle_error(EventEmitter()), fail])(ctx)
    assert ctx.status == 418
    assert ctx.body == {"message": "short and stout"}


async def test_transaction_listeners_run_after_commit(app):
    transaction = await app.database.start_transaction()
    order = []
    transaction.on_commit(lambda: order.append(transaction.state))
    assert transaction.state is TransactionState.STARTED
    await transaction.commit()
    await transaction.close()
    assert order == [TransactionState.COMMITTED]
    with pytest.raises(RuntimeError):
        await transaction.rollback()
