# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Result mapper tests for RelAlchemy.

Rows are fed directly to the mapper, shaped like the projection of a
compiled query, so these tests need no database.

Tests cover:
- Entity graph reconstruction across fanned-out joins
- Deduplication by primary key
- Empty left joins
- Value conversion from storage
- Raw-mode dicts
- Shape mismatches
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from relalchemy import Query, ResultMapper, ResultShapeMismatchError

from ._schema import build_blog_registry, build_user_post_registry


class TestEntityMapping:
    """Rows to entity graphs."""

    def setup_method(self):
        self.registry = build_blog_registry()
        self.mapper = ResultMapper(self.registry)
        self.nested = (
            Query(self.registry, "User")
            .left_join_and_select("user.posts", "posts")
            .left_join_and_select("posts.comments", "c")
            .select("user.id", "user.name", "posts.id", "posts.title", "c.id", "c.body")
            .to_sql()
        )

    def test_fanned_out_rows_collapse(self):
        """One user, three posts, two comments each: six rows, one root."""
        rows = [
            (1, "A", post_id, f"t{post_id}", post_id * 10 + n, f"b{n}")
            for post_id in (1, 2, 3)
            for n in (1, 2)
        ]
        users = self.mapper.map(self.nested, rows)

        assert len(users) == 1
        user = users[0]
        assert user.id == 1 and user.name == "A"
        assert [p.id for p in user.posts] == [1, 2, 3]
        assert [[c.id for c in p.comments] for p in user.posts] == [[11, 12], [21, 22], [31, 32]]

    def test_roots_keep_first_seen_order(self):
        rows = [
            (2, "B", 20, "x", None, None),
            (1, "A", 10, "y", None, None),
            (2, "B", 21, "z", None, None),
        ]
        users = self.mapper.map(self.nested, rows)
        assert [u.id for u in users] == [2, 1]
        assert [p.id for p in users[0].posts] == [20, 21]

    def test_empty_left_join(self):
        """NULL keys mean no related row; loaded collections are empty lists."""
        rows = [
            (1, "A", None, None, None, None),
            (2, "B", 5, "t", None, None),
        ]
        first, second = self.mapper.map(self.nested, rows)
        assert first.posts == []
        assert len(second.posts) == 1
        assert second.posts[0].comments == []

    def test_to_one_instances_are_shared(self):
        """Rows pointing at the same parent share one instance."""
        compiled = (
            Query(self.registry, "Post")
            .inner_join_and_select("post.author", "a")
            .select("post.id", "post.title", "a.id", "a.name")
            .to_sql()
        )
        posts = self.mapper.map(compiled, [(1, "x", 7, "A"), (2, "y", 7, "A")])
        assert len(posts) == 2
        assert posts[0].author is posts[1].author
        assert posts[0].author.name == "A"

    def test_unselected_joins_are_not_mapped(self):
        compiled = Query(self.registry, "User").inner_join("user.posts", "posts").select("user.id").to_sql()
        users = self.mapper.map(compiled, [(1,), (1,)])
        assert len(users) == 1
        assert users[0].posts == []

    def test_storage_values_are_converted(self):
        """JSON text is decoded; integers and ISO strings are coerced."""
        compiled = (
            Query(self.registry, "User")
            .select("user.id", "user.settings", "user.active", "user.createdAt")
            .to_sql()
        )
        (user,) = self.mapper.map(compiled, [(1, '{"theme": "dark"}', 0, "2025-01-02T03:04:05+00:00")])
        assert user.settings == {"theme": "dark"}
        assert user.active is False
        assert user.createdAt == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_unprojected_columns_take_defaults(self):
        compiled = Query(self.registry, "User").select("user.id").to_sql()
        (user,) = self.mapper.map(compiled, [(3,)])
        assert user.active is True
        assert user.name is None


class TestRawMapping:
    """Raw-mode dicts."""

    def setup_method(self):
        self.registry = build_user_post_registry()
        self.mapper = ResultMapper(self.registry)

    def test_rows_become_dicts(self):
        """Raw rows are not deduplicated."""
        compiled = Query(self.registry, "User").left_join_and_select("user.posts", "p").raw().to_sql()
        rows = [(1, "A", 10, "x"), (1, "A", 11, "y")]
        assert self.mapper.map(compiled, rows) == [
            {"user_id": 1, "user_name": "A", "p_id": 10, "p_title": "x"},
            {"user_id": 1, "user_name": "A", "p_id": 11, "p_title": "y"},
        ]

    def test_narrow_raw_row(self):
        compiled = Query(self.registry, "User").raw().to_sql()
        with pytest.raises(ResultShapeMismatchError):
            self.mapper.map(compiled, [(1,)])


class TestShapeErrors:
    """Rows that do not fit the projection."""

    def setup_method(self):
        self.registry = build_user_post_registry()
        self.mapper = ResultMapper(self.registry)

    def test_narrow_row(self):
        compiled = Query(self.registry, "User").to_sql()
        with pytest.raises(ResultShapeMismatchError):
            self.mapper.map(compiled, [(1, "A"), (2,)])

    def test_missing_primary_key(self):
        """Entity mode needs the primary key of every mapped alias."""
        compiled = Query(self.registry, "User").select("user.name").to_sql()
        with pytest.raises(ResultShapeMismatchError):
            self.mapper.map(compiled, [("A",)])

    def test_extra_columns_are_ignored(self):
        compiled = Query(self.registry, "User").to_sql()
        (user,) = self.mapper.map(compiled, [(1, "A", "driver extra")])
        assert user.name == "A"
