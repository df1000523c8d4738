"""Model Queries — reads, writes, scopes, hooks and eager loading.

Tests cover:
    - Insert / find / patch / upsert / delete through an explicit context
    - Validation before writes (full on insert, patch mode on patch)
    - Relation writes: references related, nested objects inserted, patch replaces
    - Named scopes, the default scope, filters and modifiers
    - Eager loading for belongsTo, hasMany and manyToMany (through table)
    - Eager scopes narrowing nested relations
"""

import pytest

from keel.core.errors import ModelError, NotFoundError, QueryError, RelationError, ValidationError


async def test_insert_returns_refetched_instance(ctx):
    person = await ctx.models.Person.insert({"name": "Ada", "age": 36})
    assert person.id is not None
    assert person.name == "Ada"
    assert person.email is None


async def test_insert_applies_column_defaults(ctx):
    post = await ctx.models.Post.insert({"title": "Hello"})
    assert post.published is False


async def test_insert_validates_data(ctx):
    with pytest.raises(ValidationError) as excinfo:
        await ctx.models.Person.insert({"age": 200, "color": "red"})
    assert set(excinfo.value.details) == {"name", "age", "color"}
    assert await ctx.models.Person.count() == 0


async def test_insert_with_belongs_to_reference(ctx, blog):
    post = await ctx.models.Post.insert({"title": "Linked", "author": {"id": blog["tim"].id}})
    assert post.authorId == blog["tim"].id


async def test_insert_relates_many_to_many_references(app, ctx, blog):
    data = {"title": "Linked", "tags": [{"id": blog["python"].id}]}
    assert app.validator.validate("Post", data) == []
    post = await ctx.models.Post.insert(data)
    assert [tag.name for tag in post.tags] == ["python"]
    reloaded = await ctx.models.Post.query().with_graph("tags").find_by_id(post.id)
    assert [tag.name for tag in reloaded.tags] == ["python"]


async def test_insert_has_many_references_and_nested_objects(ctx, blog):
    person = await ctx.models.Person.insert({
        "name": "Grace",
        "posts": [{"id": blog["other"].id}, {"title": "Fresh"}],
    })
    assert sorted(post.title for post in person.posts) == ["Fresh", "Other"]
    written = await ctx.models.Post.query().where(authorId=person.id).all()
    assert sorted(post.title for post in written) == ["Fresh", "Other"]


async def test_patch_replaces_related_set(ctx, blog):
    post = await ctx.models.Post.patch_by_id(
        blog["first"].id, {"tags": [{"id": blog["legacy"].id}]},
    )
    assert [tag.name for tag in post.tags] == ["legacy"]
    links = await ctx.models.PostTag.query().where(postId=blog["first"].id).all()
    assert [link.tagId for link in links] == [blog["legacy"].id]

    await ctx.models.Person.patch_by_id(blog["ada"].id, {"posts": []})
    assert await ctx.models.Post.query().where(authorId=blog["ada"].id).count() == 0


async def test_relating_a_missing_row_fails(ctx):
    with pytest.raises(NotFoundError):
        await ctx.models.Post.insert({"title": "Linked", "tags": [{"id": 999}]})


async def test_find_by_id(ctx, blog):
    post = await ctx.models.Post.find_by_id(blog["draft"].id)
    assert post.title == "Draft"


async def test_find_by_id_missing(ctx):
    with pytest.raises(NotFoundError):
        await ctx.models.Post.find_by_id(999)


async def test_find_by_composite_id(ctx, blog):
    link = await ctx.models.PostTag.find_by_id((blog["first"].id, blog["legacy"].id))
    assert link.tagId == blog["legacy"].id
    with pytest.raises(ModelError):
        await ctx.models.PostTag.find_by_id(blog["first"].id)


async def test_where_and_order(ctx, blog):
    posts = await ctx.models.Post.where(authorId=blog["ada"].id).order_by("-title").all()
    assert [p.title for p in posts] == ["First", "Draft"]


async def test_where_with_list_and_none(ctx, blog):
    await ctx.models.Post.insert({"title": "Orphan"})
    orphans = await ctx.models.Post.where(authorId=None).all()
    assert [p.title for p in orphans] == ["Orphan"]
    some = await ctx.models.Post.where(title=["First", "Other"]).count()
    assert some == 2


async def test_limit_offset_first(ctx, blog):
    posts = await ctx.models.Post.order_by("title").limit(2).offset(1).all()
    assert [p.title for p in posts] == ["First", "Other"]
    assert (await ctx.models.Post.order_by("title").first()).title == "Draft"


async def test_patch_by_id_validates_in_patch_mode(ctx, blog):
    post = await ctx.models.Post.patch_by_id(blog["draft"].id, {"published": True})
    assert post.published is True
    assert post.title == "Draft"
    with pytest.raises(ValidationError) as excinfo:
        await ctx.models.Post.patch_by_id(blog["draft"].id, {"title": 3})
    assert list(excinfo.value.details) == ["title"]


async def test_patch_missing_row(ctx):
    with pytest.raises(NotFoundError):
        await ctx.models.Post.patch_by_id(999, {"title": "Nope"})


async def test_upsert_inserts_then_updates(ctx):
    tag = await ctx.models.Tag.upsert({"name": "new"})
    updated = await ctx.models.Tag.upsert({"id": tag.id, "name": "renamed"})
    assert updated.id == tag.id
    assert updated.name == "renamed"
    assert await ctx.models.Tag.count() == 1


async def test_delete_by_id(ctx, blog):
    assert await ctx.models.Post.delete_by_id(blog["other"].id) == 1
    with pytest.raises(NotFoundError):
        await ctx.models.Post.delete_by_id(blog["other"].id)


async def test_delete_by_criteria(ctx, blog):
    deleted = await ctx.models.Post.where(authorId=blog["ada"].id).delete()
    assert deleted == 2
    assert await ctx.models.Post.count() == 1


async def test_named_scopes(ctx, blog):
    published = await ctx.models.Post.scope("published").order_by("title").all()
    assert [p.title for p in published] == ["First", "Other"]
    adults = await ctx.models.Person.scope("adults").all()
    assert [p.name for p in adults] == ["Ada"]


async def test_unknown_scope(ctx):
    with pytest.raises(QueryError, match="Unknown scope 'secret'"):
        await ctx.models.Post.scope("secret").all()


async def test_query_can_run_twice(ctx, blog):
    query = ctx.models.Post.query().scope("published")
    assert await query.count() == 2
    assert await query.count() == 2


async def test_modify_accepts_names_dicts_and_callables(ctx, blog):
    query = ctx.models.Post.query().modify([
        "published",
        {"authorId": blog["ada"].id},
        lambda q: q.order_by("title"),
    ])
    assert [p.title for p in await query.all()] == ["First"]


async def test_filters(ctx, blog):
    assert await ctx.models.Post.apply_filter("titled", title="First").count() == 1
    with pytest.raises(QueryError, match="Unknown filter 'drafts'"):
        ctx.models.Post.apply_filter("drafts")


async def test_eager_belongs_to_and_has_many(ctx, blog):
    people = await ctx.models.Person.with_graph("posts.author").order_by("name").all()
    ada, tim = people
    assert sorted(p.title for p in ada.posts) == ["Draft", "First"]
    assert [p.title for p in tim.posts] == ["Other"]
    assert ada.posts[0].author.name == "Ada"


async def test_eager_belongs_to_missing_is_none(ctx, blog):
    orphan = await ctx.models.Post.insert({"title": "Orphan"})
    post = await ctx.models.Post.where(id=orphan.id).with_graph("author").first()
    assert post.author is None


async def test_eager_many_to_many_through_table(ctx, blog):
    posts = await ctx.models.Post.with_graph("tags").order_by("title").all()
    by_title = {p.title: sorted(t.name for t in p.tags) for p in posts}
    assert by_title == {"Draft": ["python"], "First": ["legacy", "python"], "Other": []}


async def test_eager_scope_narrows_nested_relation(ctx, blog):
    posts = await ctx.models.Post.with_graph("tags", scopes=["active"]).where(
        id=blog["first"].id,
    ).all()
    assert [t.name for t in posts[0].tags] == ["python"]


async def test_eager_scope_marker_applies_to_graph(ctx, blog):
    people = await ctx.models.Person.scope("~adults").with_graph("posts").all()
    assert [p.name for p in people] == ["Ada"]


async def test_eager_invalid_child(ctx):
    with pytest.raises(RelationError, match="Invalid child expression: comments"):
        ctx.models.Post.with_graph("comments")


async def test_eager_results_serialize_nested(ctx, blog):
    person = await ctx.models.Person.where(id=blog["ada"].id).with_graph("posts").first()
    data = person.to_data()
    assert "email" not in data
    assert {p["title"] for p in data["posts"]} == {"First", "Draft"}


async def test_insert_hooks_run_in_order(app, ctx):
    calls = []
    events = app.models["Tag"].events

    async def before(query, data):
        calls.append("before")
        data["name"] = data["name"].strip()

    events.on("before:insert", before)
    events.on("after:insert", lambda query, tag: calls.append(("after", tag.name)))
    await ctx.models.Tag.insert({"name": "  spaced  "})
    assert calls == ["before", ("after", "spaced")]
