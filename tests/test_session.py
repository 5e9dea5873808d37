# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Session tests for RelAlchemy against SQLite.

Tests cover:
- Insert cascades, generated keys and managed timestamps
- Snapshot-driven updates
- Remove cascades and database delete actions
- Soft remove and recover
- Many-to-many links
- Insertion cycles
- Transactions, rollback and the session factory
- Repository and raw execution helpers
"""

from __future__ import annotations

import pytest

from relalchemy import (
    EntityNotFoundError,
    ForeignKeyViolationError,
    PersistenceError,
    RelSession,
    SessionFactory,
    SQLiteExecutor,
    UnsupportedFeatureError,
    field,
    insert_into,
    update,
)

from ._schema import build_blog_registry, build_cycle_registry


class _CommitRefusingExecutor(SQLiteExecutor):
    """In-memory executor whose commit always fails."""

    def __init__(self) -> None:
        super().__init__()
        self.rollbacks = 0

    def commit(self) -> None:
        raise PersistenceError("commit refused")

    def rollback(self) -> None:
        self.rollbacks += 1
        super().rollback()


def _open(registry, executor=None, **kwargs) -> RelSession:
    session = RelSession(registry, executor, **kwargs)
    session.create_schema()
    return session


def _scalar(session, sql, params=None):
    rows = session.execute_raw(sql, params).rows
    return list(rows[0].values())[0]


class TestSaveAndFind:
    """Inserting graphs and reading them back."""

    def test_save_assigns_keys_and_timestamps(self, session, models):
        """Generated keys and create/update dates are set on the instance."""
        user = models["User"](name="A", email="a@example.com")
        returned = session.save(user)

        assert returned is user
        assert user.id is not None
        assert user.createdAt is not None and user.createdAt.tzinfo is not None
        assert user.updatedAt == user.createdAt
        assert session.identity_lookup("User", user.id) is user

    def test_insert_cascade_and_find_with_relations(self, session, models):
        """New children are inserted after the parent with its key."""
        User, Post = models["User"], models["Post"]
        user = User(name="A", posts=[Post(title="T1"), Post(title="T2")])
        session.save(user)

        assert session.last_plan.summary() == [("insert", "User"), ("insert", "Post"), ("insert", "Post")]
        assert _scalar(session, 'SELECT COUNT(*) FROM "post" WHERE "authorId" = ?', [user.id]) == 2

        loaded = session.find("User", {"id": user.id}, relations=["posts"])
        assert len(loaded) == 1
        assert sorted(p.title for p in loaded[0].posts) == ["T1", "T2"]
        assert loaded[0].active is True
        assert loaded[0].createdAt == user.createdAt

    def test_owning_parent_is_inserted_first(self, session, models):
        user = models["User"](name="A", profile=models["Profile"](bio="hello"))
        session.save(user)
        assert session.last_plan.summary() == [("insert", "Profile"), ("insert", "User")]

        loaded = session.find_one("User", {"id": user.id}, relations=["profile"])
        assert loaded.profile.bio == "hello"

    def test_new_parent_without_cascade_round_trips(self, session, models):
        """A new parent is stored first even when the relation declares no cascade."""
        post = models["Post"](title="T", author=models["User"](name="A"))
        session.save(post)

        assert session.last_plan.summary() == [("insert", "User"), ("insert", "Post")]
        assert session.count("User") == 1
        assert _scalar(session, 'SELECT "authorId" FROM "post" WHERE "id" = ?', [post.id]) == post.author.id

        loaded = session.find_one("Post", {"id": post.id}, relations=["author"])
        assert loaded.author is not None
        assert loaded.author.name == "A"

    def test_nested_relations(self, session, models):
        User, Post, Comment = models["User"], models["Post"], models["Comment"]
        user = User(name="A", posts=[Post(title="T", comments=[Comment(body="c1"), Comment(body="c2")])])
        session.save(user)

        loaded = session.find_one("User", {"id": user.id}, relations=["posts.comments"])
        assert sorted(c.body for c in loaded.posts[0].comments) == ["c1", "c2"]

    def test_json_round_trip(self, session, models):
        settings = {"theme": "dark", "tabs": [1, 2]}
        user = session.save(models["User"](name="A", settings=settings))
        assert session.find_one("User", {"id": user.id}).settings == settings

    def test_save_list(self, session, models):
        User = models["User"]
        session.save([User(name="A"), User(name="B")])
        assert session.count("User") == 2
        assert session.count("User", {"name": ["A", "Z"]}) == 1
        assert session.exists("User", {"name": "B"})
        assert not session.exists("User", {"name": "Z"})

    def test_take_limits_root_entities(self, session, models):
        """take counts users, not joined rows."""
        User, Post = models["User"], models["Post"]
        for name, posts in (("A", 1), ("B", 1), ("C", 3)):
            session.save(User(name=name, posts=[Post(title=f"{name}{i}") for i in range(posts)]))

        found = session.find("User", order={"name": "DESC"}, take=2, relations=["posts"])
        assert [u.name for u in found] == ["C", "B"]
        assert len(found[0].posts) == 3

        assert [u.name for u in session.find("User", order={"name": "ASC"}, skip=1)] == ["B", "C"]

    def test_unique_violation_is_a_persistence_error(self, session, models):
        User = models["User"]
        session.save(User(name="A", email="same@example.com"))
        with pytest.raises(PersistenceError) as exc_info:
            session.save(User(name="B", email="same@example.com"))
        assert not isinstance(exc_info.value, ForeignKeyViolationError)
        assert session.count("User") == 1


class TestUpdates:
    """Snapshot-driven updates."""

    def test_changed_columns_are_written(self, session, models):
        user = session.save(models["User"](name="A"))
        user.name = "B"
        session.save(user)

        assert session.last_plan.summary()[0] == ("update", "User")
        assert session.execute_raw('SELECT "name" FROM "user" WHERE "id" = ?', [user.id]).rows == [{"name": "B"}]
        assert user.updatedAt >= user.createdAt

    def test_unchanged_instance_writes_nothing(self, session, models):
        """No changes means no UPDATE, so the update date stays put."""
        user = session.save(models["User"](name="A"))
        stamp = user.updatedAt
        session.save(user)
        assert user.updatedAt == stamp

    def test_clearing_a_parent_nulls_the_key(self, session, models):
        user = session.save(models["User"](name="A"))
        post = session.save(models["Post"](title="T", author=user))
        assert _scalar(session, 'SELECT "authorId" FROM "post" WHERE "id" = ?', [post.id]) == user.id

        post.author = None
        session.save(post)
        assert _scalar(session, 'SELECT "authorId" FROM "post" WHERE "id" = ?', [post.id]) is None

    def test_loaded_instance_updates(self, session, models):
        """Instances read through the session are tracked like saved ones."""
        user = session.save(models["User"](name="A"))
        loaded = session.find_one_or_fail("User", {"id": user.id})
        loaded.email = "new@example.com"
        session.save(loaded)
        assert session.last_plan.summary() == [("update", "User")]
        assert session.find_one("User", {"email": "new@example.com"}).id == user.id


class TestRemoval:
    """Hard removal and database delete actions."""

    def test_remove_cascades_to_children_and_junctions(self, session, models):
        User, Post, Tag = models["User"], models["Post"], models["Tag"]
        user = User(name="A", posts=[Post(title="T", tags=[Tag(label="x")])])
        session.save(user)
        assert _scalar(session, 'SELECT COUNT(*) FROM "post_tag"') == 1

        session.remove(user)
        assert session.last_plan.summary() == [("unlink", "Post"), ("remove", "Post"), ("remove", "User")]
        assert session.count("User") == 0
        assert session.count("Post", with_deleted=True) == 0
        assert _scalar(session, 'SELECT COUNT(*) FROM "post_tag"') == 0
        assert session.count("Tag") == 1
        assert session.identity_lookup("User", user.id) is None

    def test_remove_loads_children_not_in_memory(self, session, models):
        """Children stored but never loaded are still removed first."""
        User, Post = models["User"], models["Post"]
        user = session.save(User(name="A", posts=[Post(title="T1"), Post(title="T2")]))
        detached = User(id=user.id, name="A")

        session.remove(detached)
        assert [kind for kind, _ in session.last_plan.summary()] == ["unlink", "remove", "unlink", "remove", "remove"]
        assert session.count("Post", with_deleted=True) == 0

    def test_restrict_blocks_and_rolls_back(self):
        registry = build_blog_registry(posts_cascade=["insert"], author_on_delete="RESTRICT")
        User, Post = registry.entity_class("User"), registry.entity_class("Post")
        with _open(registry) as session:
            user = session.save(User(name="A", posts=[Post(title="T")]))
            with pytest.raises(ForeignKeyViolationError):
                session.remove(user)
            assert session.count("User") == 1
            assert not session.in_transaction

    def test_set_null_on_delete(self):
        registry = build_blog_registry(posts_cascade=["insert"], author_on_delete="setNull")
        User, Post = registry.entity_class("User"), registry.entity_class("Post")
        with _open(registry) as session:
            user = session.save(User(name="A", posts=[Post(title="T")]))
            session.remove(user)
            assert session.execute_raw('SELECT "authorId" FROM "post"').rows == [{"authorId": None}]

    def test_remove_requires_primary_key(self, session, models):
        with pytest.raises(PersistenceError):
            session.remove(models["User"](name="never saved"))


class TestSoftRemoval:
    """Delete-date handling."""

    def test_soft_remove_and_recover(self, session, models):
        Post, Comment = models["Post"], models["Comment"]
        post = session.save(Post(title="T", comments=[Comment(body="c")]))

        session.soft_remove(post)
        assert post.deletedAt is not None
        assert session.find("Post") == []
        assert session.find("Comment") == []
        assert len(session.find("Post", with_deleted=True)) == 1
        assert session.count("Post") == 0

        session.recover(post)
        assert post.deletedAt is None
        assert len(session.find("Post")) == 1
        assert len(session.find("Comment")) == 1

    def test_soft_removed_children_are_hidden_in_joins(self, session, models):
        Post, Comment = models["Post"], models["Comment"]
        comment = Comment(body="gone")
        post = session.save(Post(title="T", comments=[Comment(body="kept"), comment]))
        session.soft_remove(comment)

        loaded = session.find_one("Post", {"id": post.id}, relations=["comments"])
        assert [c.body for c in loaded.comments] == ["kept"]

    def test_soft_remove_without_delete_date(self, session, models):
        user = session.save(models["User"](name="A"))
        with pytest.raises(UnsupportedFeatureError):
            session.soft_remove(user)
        assert session.count("User") == 1


class TestManyToMany:
    """Junction rows written by link operations."""

    def test_links_are_written_once(self, session, models):
        Post, Tag = models["Post"], models["Tag"]
        post = session.save(Post(title="T", tags=[Tag(label="a"), Tag(label="b")]))
        assert _scalar(session, 'SELECT COUNT(*) FROM "post_tag"') == 2

        session.save(post)
        assert _scalar(session, 'SELECT COUNT(*) FROM "post_tag"') == 2

        loaded = session.find_one("Post", {"id": post.id}, relations=["tags"])
        assert sorted(t.label for t in loaded.tags) == ["a", "b"]

    def test_link_from_inverse_side(self, session, models):
        Post, Tag = models["Post"], models["Tag"]
        post = session.save(Post(title="T"))
        session.save(Tag(label="c", posts=[post]))

        loaded = session.find_one("Tag", {"label": "c"}, relations=["posts"])
        assert [p.id for p in loaded.posts] == [post.id]


class TestCycles:
    def test_nullable_cycle_is_completed_after_insert(self):
        """The deferred key is filled once both rows exist."""
        registry = build_cycle_registry()
        User, Post = registry.entity_class("User"), registry.entity_class("Post")
        with _open(registry) as session:
            user = User(name="u")
            post = Post(title="p", author=user)
            user.favoritePost = post
            session.save(user)

            assert _scalar(session, 'SELECT "authorId" FROM "post"') == user.id
            assert _scalar(session, 'SELECT "favoritePostId" FROM "user"') == post.id


class TestTransactions:
    """Explicit transactions, rollback and the factory."""

    def test_manual_commit_and_rollback(self, blog_registry, shared_executor):
        User = blog_registry.entity_class("User")
        session = RelSession(blog_registry, shared_executor, autocommit=False)
        session.create_schema()
        session.commit()

        user = session.save(User(name="A"))
        assert session.in_transaction
        session.rollback()
        assert session.count("User") == 0
        assert session.identity_lookup("User", user.id) is None

        session.save(User(name="B"))
        session.commit()
        other = RelSession(blog_registry, shared_executor)
        assert other.count("User") == 1
        session.close()
        other.close()

    def test_transaction_block_rolls_back(self, session, models):
        with pytest.raises(RuntimeError):
            with session.transaction():
                session.save(models["User"](name="A"))
                raise RuntimeError("boom")
        assert session.count("User") == 0
        assert not session.in_transaction

    def test_transaction_block_commits(self, session, models):
        with session.transaction():
            session.save(models["User"](name="A"))
            with session.transaction():
                session.save(models["User"](name="B"))
        assert session.count("User") == 2

    def test_failed_commit_rolls_back(self, blog_registry):
        """An executor that refuses to commit leaves no open transaction behind."""
        executor = _CommitRefusingExecutor()
        session = RelSession(blog_registry, executor)
        try:
            with pytest.raises(PersistenceError):
                session.create_schema()
            assert not session.in_transaction
            assert executor.rollbacks == 1
            assert session.execute_raw("SELECT name FROM sqlite_master WHERE type = 'table'").rows == []
        finally:
            session.close()
            executor.close()

    def test_commit_without_transaction(self, session):
        with pytest.raises(PersistenceError):
            session.commit()

    def test_closed_session(self, session):
        session.close()
        with pytest.raises(PersistenceError):
            session.count("User")

    def test_session_factory_scope(self, blog_registry, shared_executor):
        factory = SessionFactory(blog_registry, executor_factory=lambda: shared_executor)
        User = blog_registry.entity_class("User")

        with factory.session_scope() as session:
            session.create_schema()
            session.save(User(name="A"))

        with pytest.raises(ValueError):
            with factory.session_scope() as session:
                session.save(User(name="B"))
                raise ValueError("abort")

        with factory() as session:
            assert [u.name for u in session.find("User")] == ["A"]

    def test_file_database(self, blog_registry, test_db_path):
        User = blog_registry.entity_class("User")
        with _open(blog_registry, database=test_db_path) as session:
            session.save(User(name="A"))
        with RelSession(blog_registry, database=test_db_path) as session:
            assert session.count("User") == 1


class TestHelpers:
    """Repository, query and raw execution helpers."""

    def test_repository(self, session):
        users = session.get_repository("User")
        user = users.save(users.create(name="A"))

        assert users.entity == "User"
        assert users.find_one({"name": "A"}).id == user.id
        assert users.count() == 1
        assert not users.exists({"name": "Z"})
        with pytest.raises(EntityNotFoundError):
            users.find_one_or_fail({"name": "Z"})

    def test_session_queries(self, session, models):
        session.save(models["User"](name="A", posts=[models["Post"](title="T")]))

        users = session.query("User").inner_join("user.posts", "p").where(field("p.title") == "T").get_many()
        assert [u.name for u in users] == ["A"]
        assert session.query("User").get_raw_many()[0]["user_name"] == "A"
        assert session.query("User").where(field("user.name") == "Z").first() is None
        assert session.query("Post").count() == 1

    def test_first_keeps_existing_pagination(self, session, models):
        """first() caps pagination the caller already chose instead of mixing styles."""
        session.save([models["User"](name="A"), models["User"](name="B")])
        ordered = session.query("User").order_by("user.name")

        assert ordered.limit(5).first().name == "A"
        assert ordered.offset(1).first().name == "B"
        assert ordered.take(5).raw().first()["user_name"] == "A"
        assert ordered.skip(1).first().name == "B"
        assert ordered.raw().first()["user_name"] == "A"

    def test_raw_labels_across_joined_aliases(self, session, models):
        user = session.save(models["User"](name="A", profile=models["Profile"](bio="b")))

        rows = (
            session.query("User")
            .left_join("user.profile", "profile")
            .select("user.id", "profile.bio")
            .get_raw_many()
        )
        assert rows == [{"user_id": user.id, "profile_bio": "b"}]

    def test_write_builders(self, session):
        result = insert_into(session.registry, "Tag", session=session).values({"label": "x"}).execute()
        assert result.affected_count == 1
        update(session.registry, "Tag", session=session).set(label="y").where({"label": "x"}).execute()
        assert session.count("Tag", {"label": "y"}) == 1

    def test_execute_raw_to_arrow(self, session, models):
        Post = models["Post"]
        session.save([Post(title="a", views=3), Post(title="b", views=5)])

        result = session.execute_raw('SELECT "title", "views" FROM "post" ORDER BY "views"')
        assert result.rows == [{"title": "a", "views": 3}, {"title": "b", "views": 5}]
        table = result.to_arrow()
        assert table.num_rows == 2
        assert table.column_names == ["title", "views"]
        assert table.column("views").to_pylist() == [3, 5]

        empty = session.execute_raw('SELECT "title" FROM "post" WHERE "views" > ?', [100])
        assert len(empty) == 0
        assert empty.to_arrow().column_names == ["title"]

    def test_execute_raw_query(self, session, models):
        session.save(models["User"](name="A"))
        result = session.execute_raw(session.query("User").select("user.name"))
        assert result.rows == [{"user_name": "A"}]
