"""Root conftest — an application per test plus a seeded blog.

Invariants:
    - Every test gets a fresh on-disk SQLite database under tmp_path
    - The app fixture is started and its tables exist before the test runs
    - Model classes are shared; each Application compiles its own definitions

Design Decisions:
    - httpx ASGITransport does not run the lifespan, so fixtures call
      start() / create_tables() / stop() directly
"""

import os

import pytest
from httpx import ASGITransport, AsyncClient

from keel.api.context import RequestContext
from keel.app import Application
from keel.config import Settings
from tests.sample_app import CONTROLLERS, MODELS

# Ensure tests never pick up a developer's database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///test.db")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        log_level="WARNING",
        log_format="text",
    )


@pytest.fixture
async def app(settings):
    application = Application(settings, models=MODELS, controllers=CONTROLLERS)
    await application.start()
    await application.create_tables()
    yield application
    await application.stop()


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as http:
        yield http


@pytest.fixture
def ctx(app):
    """A request context outside any request: autocommit queries, no transaction."""
    return RequestContext(app, "get", "/")


@pytest.fixture
async def blog(ctx):
    """Two people, three posts, two tags (one inactive) and their links."""
    ada = await ctx.models.Person.insert({"name": "Ada", "age": 36, "email": "ada@example.com"})
    tim = await ctx.models.Person.insert({"name": "Tim", "age": 12})
    first = await ctx.models.Post.insert({"title": "First", "published": True, "authorId": ada.id})
    draft = await ctx.models.Post.insert({"title": "Draft", "authorId": ada.id})
    other = await ctx.models.Post.insert({"title": "Other", "published": True, "authorId": tim.id})
    python = await ctx.models.Tag.insert({"name": "python"})
    legacy = await ctx.models.Tag.insert({"name": "legacy", "active": False})
    await ctx.models.PostTag.insert({"postId": first.id, "tagId": python.id})
    await ctx.models.PostTag.insert({"postId": first.id, "tagId": legacy.id})
    await ctx.models.PostTag.insert({"postId": draft.id, "tagId": python.id})
    return {
        "ada": ada, "tim": tim,
        "first": first, "draft": draft, "other": other,
        "python": python, "legacy": legacy,
    }
