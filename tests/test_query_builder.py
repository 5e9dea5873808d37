# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Query builder tests for RelAlchemy.

Tests cover:
- Builder immutability and structural equality of ASTs
- Relation path validation and alias handling
- Predicate construction through fields, dicts and raw fragments
- Pagination argument validation
- Write builders
"""

from __future__ import annotations

import pytest

from relalchemy import (
    EntitySelection,
    InsertNode,
    JoinType,
    ProjectionMode,
    Query,
    QueryBuildError,
    SchemaError,
    SchemaRegistry,
    UnknownRelationError,
    and_,
    count,
    delete_from,
    field,
    insert_into,
    raw,
    select_from,
    update,
)
from relalchemy.constants import ComparisonOperator, LogicalOperator
from relalchemy.rel_query_expressions import (
    ColumnRef,
    Comparison,
    Compound,
    InList,
    NullCheck,
)

from ._schema import build_user_post_registry


class TestImmutability:
    """Every builder call returns a new query."""

    def setup_method(self):
        self.registry = build_user_post_registry()

    def test_receiver_is_unchanged(self):
        base = Query(self.registry, "User")
        filtered = base.where(field("user.name") == "A")
        joined = base.left_join_and_select("user.posts")

        assert base.to_ast().where is None
        assert base.to_ast().joins == ()
        assert filtered.to_ast().where is not None
        assert len(joined.to_ast().joins) == 1
        assert filtered is not base

    def test_identical_sequences_build_equal_trees(self):
        """Two identical call chains produce structurally equal ASTs."""
        def build():
            return (
                Query(self.registry, "User")
                .left_join_and_select("user.posts", "posts")
                .where(field("user.name") == "A")
                .order_by("user.id", "desc")
                .take(3)
                .to_ast()
            )

        assert build() == build()

    def test_default_alias_and_entity_class(self):
        User = self.registry.entity_class("User")
        query = Query(self.registry, User)
        assert query.alias == "user"
        assert query.entity == "User"
        assert select_from(self.registry, "Post", "p").alias == "p"

    def test_requires_finalized_registry(self):
        with pytest.raises(SchemaError):
            Query(SchemaRegistry(), "User")


class TestJoins:
    """Relation path resolution while building."""

    def setup_method(self):
        self.query = Query(build_user_post_registry(), "User")

    def test_default_join_alias(self):
        """Path-derived aliases join parent and property."""
        join = self.query.left_join("user.posts").to_ast().joins[0]
        assert join.alias == "user__posts"
        assert join.parent_alias == "user"
        assert join.entity == "Post"
        assert join.join_type == JoinType.LEFT
        assert join.selected is False

    def test_bare_property_is_relative_to_root(self):
        join = self.query.inner_join_and_select("posts", "p").to_ast().joins[0]
        assert join.parent_alias == "user"
        assert join.alias == "p"
        assert join.selected is True

    def test_nested_join_through_alias(self):
        """Joined aliases can be used as the parent of a further join."""
        node = self.query.left_join("user.posts", "p").left_join("p.author", "a").to_ast()
        assert [j.alias for j in node.joins] == ["p", "a"]
        assert node.alias_entities() == {"user": "User", "p": "Post", "a": "User"}

    def test_unknown_relation(self):
        with pytest.raises(UnknownRelationError):
            self.query.join("user.comments")

    def test_unknown_parent_alias(self):
        with pytest.raises(UnknownRelationError):
            self.query.join("ghost.posts")

    def test_duplicate_alias(self):
        query = self.query.join("user.posts", "p")
        with pytest.raises(QueryBuildError):
            query.join("user.posts", "p")

    def test_join_condition_is_kept(self):
        join = self.query.left_join("user.posts", "p", field("p.title") == "x").to_ast().joins[0]
        assert join.condition == Comparison(ColumnRef("p", "title"), ComparisonOperator.EQ, "x")

    def test_bare_join_condition_binds_to_joined_alias(self):
        """Dict and field conditions without an alias refer to the joined entity."""
        query = self.query.left_join_and_select("user.posts", "p", {"title": "x"})
        assert query.to_ast().joins[0].condition == Comparison(ColumnRef("p", "title"), ComparisonOperator.EQ, "x")

        join = self.query.left_join("user.posts", condition=field("title") == "y").to_ast().joins[0]
        assert join.condition == Comparison(ColumnRef("user__posts", "title"), ComparisonOperator.EQ, "y")


class TestPredicates:
    """Predicate construction."""

    def setup_method(self):
        self.query = Query(build_user_post_registry(), "User")

    def test_root_relative_references_are_bound(self):
        """Bare property names refer to the root alias."""
        where = self.query.where(field("name") == "A").to_ast().where
        assert where == Comparison(ColumnRef("user", "name"), ComparisonOperator.EQ, "A")

    def test_filter_by(self):
        where = self.query.filter_by(name="A", id=[1, 2]).to_ast().where
        assert isinstance(where, Compound)
        assert where.operator == LogicalOperator.AND
        assert where.items[1] == InList(ColumnRef("user", "id"), (1, 2))

    def test_dict_criteria(self):
        """None matches NULL and sequences match with IN."""
        where = self.query.where({"user.name": None}).to_ast().where
        assert where == NullCheck(ColumnRef("user", "name"))

    def test_equality_with_none(self):
        assert (field("user.name") == None) == NullCheck(ColumnRef("user", "name"))  # noqa: E711
        assert (field("user.name") != None) == NullCheck(ColumnRef("user", "name"), negated=True)  # noqa: E711

    def test_and_where_flattens(self):
        where = (
            self.query
            .where(field("name") == "A")
            .and_where(field("id") > 1)
            .and_where(field("id") < 9)
            .to_ast()
            .where
        )
        assert isinstance(where, Compound)
        assert len(where.items) == 3

    def test_or_where(self):
        where = self.query.where(field("name") == "A").or_where(field("name") == "B").to_ast().where
        assert where.operator == LogicalOperator.OR

    def test_operators(self):
        predicate = (field("user.id") > 1) & ~(field("user.name").like("a%"))
        assert isinstance(predicate, Compound)

    def test_empty_and_is_rejected(self):
        with pytest.raises(QueryBuildError):
            and_()

    def test_raw_fragment_rejects_literals(self):
        """Values inside raw fragments must be bound."""
        with pytest.raises(QueryBuildError):
            raw("user.name = 'x'")

    def test_raw_fragment_requires_params(self):
        with pytest.raises(QueryBuildError):
            self.query.where("user.name = :name")

    def test_criteria_rejects_predicates(self):
        with pytest.raises(QueryBuildError):
            self.query.where({"user.name": field("user.id") == 1})


class TestProjectionAndPaging:
    """Select lists, projection mode and pagination arguments."""

    def setup_method(self):
        self.query = Query(build_user_post_registry(), "User")

    def test_select_alias_selects_entity(self):
        node = self.query.left_join("user.posts", "p").select("user", "p").to_ast()
        assert node.items == (EntitySelection("user"), EntitySelection("p"))

    def test_select_unknown_alias(self):
        with pytest.raises(QueryBuildError):
            self.query.select("ghost.name")

    def test_raw_mode(self):
        node = self.query.raw().select("user.name", count().label("n")).to_ast()
        assert node.mode == ProjectionMode.RAW
        assert node.items[0] == ColumnRef("user", "name")
        assert node.items[1].label == "n"
        assert self.query.raw().entities().to_ast().mode == ProjectionMode.ENTITY

    @pytest.mark.parametrize("value", [-1, 1.5, True, "3"])
    def test_invalid_counts(self, value):
        with pytest.raises(QueryBuildError):
            self.query.limit(value)
        with pytest.raises(QueryBuildError):
            self.query.take(value)

    def test_limit_and_take_are_kept_apart(self):
        node = self.query.limit(10).offset(5).to_ast()
        assert node.limit.limit == 10 and node.limit.offset == 5
        assert node.page is None

        node = self.query.take(2).skip(4).to_ast()
        assert node.page.limit == 2 and node.page.offset == 4
        assert node.limit is None

    def test_execution_requires_session(self):
        with pytest.raises(QueryBuildError):
            self.query.all()
        with pytest.raises(QueryBuildError):
            self.query.count()


class TestWriteBuilders:
    """Insert, update and delete builders."""

    def setup_method(self):
        self.registry = build_user_post_registry()

    def test_insert_rows(self):
        node = insert_into(self.registry, "User").values({"name": "A"}, [{"name": "B"}]).to_ast()
        assert node == InsertNode("User", ((("name", "A"),), (("name", "B"),)))

    def test_insert_rows_must_share_columns(self):
        with pytest.raises(QueryBuildError):
            insert_into(self.registry, "User").values({"name": "A"}, {"id": 3})

    def test_empty_insert(self):
        with pytest.raises(QueryBuildError):
            insert_into(self.registry, "User").values()

    def test_update_set_merges(self):
        node = update(self.registry, "User").set(name="A").set({"name": "B"}, id=4).to_ast()
        assert dict(node.assignments) == {"name": "B", "id": 4}

    def test_delete_where(self):
        builder = delete_from(self.registry, "User")
        node = builder.where({"id": 1}).to_ast()
        assert builder.to_ast().where is None
        assert node.where == Comparison(ColumnRef(None, "id"), ComparisonOperator.EQ, 1)
