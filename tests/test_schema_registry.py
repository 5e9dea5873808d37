# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Schema registry tests for RelAlchemy.

Tests cover:
- Registration, lookup and idempotent re-registration
- Conflicting and late registration
- Descriptor validation
- Creation order and DDL generation per dialect
- Synthesized entity classes
"""

from __future__ import annotations

import pytest

from relalchemy import (
    EntityDescriptor,
    RegistryFrozenError,
    RelBaseModel,
    RelationKind,
    ScalarType,
    SchemaConflictError,
    SchemaError,
    SchemaRegistry,
    UnknownEntityError,
    UnknownRelationError,
    column,
    primary_generated_column,
    relation,
)
from relalchemy.rel_orm import lower_camel, snake_case

from ._schema import build_blog_registry, build_cycle_registry


def _user_descriptor(**overrides) -> EntityDescriptor:
    values = dict(
        name="User",
        columns=[primary_generated_column(), column("name", ScalarType.TEXT)],
    )
    values.update(overrides)
    return EntityDescriptor(**values)


class TestRegistration:
    """Test registering and resolving entities."""

    def setup_method(self):
        """Create an empty registry."""
        self.registry = SchemaRegistry()

    def test_register_and_resolve(self):
        """Registered metadata is returned by name, class and instance."""
        meta = self.registry.register(_user_descriptor())
        assert self.registry.resolve("User") is meta
        assert meta.table_name == "user"
        assert meta.primary_keys == ("id",)

        instance = meta.entity_class(name="A")
        assert self.registry.entity_for(instance) is meta
        assert self.registry.entity_for(meta.entity_class) is meta
        assert self.registry.entity_for("User") is meta

    def test_unknown_entity(self):
        """Resolving a name that was never registered fails."""
        with pytest.raises(UnknownEntityError):
            self.registry.resolve("Ghost")

    def test_identical_reregistration_is_idempotent(self):
        """Registering the same shape twice returns the existing metadata."""
        first = self.registry.register(_user_descriptor())
        second = self.registry.register(_user_descriptor())
        assert first is second

    def test_conflicting_reregistration(self):
        """Registering the same name with another shape fails."""
        self.registry.register(_user_descriptor())
        with pytest.raises(SchemaConflictError):
            self.registry.register(_user_descriptor(
                columns=[primary_generated_column(), column("email", ScalarType.TEXT)]
            ))

    def test_register_after_finalize(self):
        """The registry is read-only once finalized."""
        self.registry.register(_user_descriptor())
        self.registry.finalize()
        with pytest.raises(RegistryFrozenError):
            self.registry.register(_user_descriptor(name="Other"))

    def test_finalize_twice_is_noop(self):
        """A second finalize() leaves the registry unchanged."""
        self.registry.register(_user_descriptor())
        self.registry.finalize()
        self.registry.finalize()
        assert self.registry.is_finalized
        assert self.registry.creation_order() == ["User"]

    def test_operations_require_finalize(self):
        """Relation lookups and DDL are refused before finalize()."""
        self.registry.register(_user_descriptor())
        with pytest.raises(SchemaError):
            self.registry.generate_ddl()
        with pytest.raises(SchemaError):
            self.registry.creation_order()

    def test_registry_errors_are_value_errors(self):
        """Schema errors can be caught as ValueError."""
        assert issubclass(SchemaConflictError, ValueError)
        assert issubclass(UnknownEntityError, LookupError)

    def test_explicit_entity_class(self):
        """A caller-supplied RelBaseModel subclass is used as the entity class."""

        class Account(RelBaseModel):
            id: int = None
            owner: str = None

        meta = self.registry.register(EntityDescriptor(
            name="Account",
            columns=[primary_generated_column(), column("owner", ScalarType.TEXT)],
            entity_class=Account,
        ))
        assert meta.entity_class is Account
        assert self.registry.entity_for(Account(owner="x")) is meta
        assert Account(owner="x").column_values() == {"id": None, "owner": "x"}


class TestDescriptorValidation:
    """Test descriptor shape validation."""

    def test_missing_primary_key(self):
        """An entity needs a primary key column."""
        with pytest.raises(ValueError):
            EntityDescriptor(name="Bad", columns=[column("name", ScalarType.TEXT)])

    def test_duplicate_property(self):
        """A property name may not be declared twice."""
        with pytest.raises(ValueError):
            EntityDescriptor(
                name="Bad",
                columns=[primary_generated_column(), column("name", ScalarType.TEXT)],
                relations=[relation("name", RelationKind.MANY_TO_ONE, "Other")],
            )

    def test_duplicate_column_name(self):
        """Two properties may not map to one storage column."""
        with pytest.raises(ValueError):
            EntityDescriptor(
                name="Bad",
                columns=[
                    primary_generated_column(),
                    column("first", ScalarType.TEXT, column_name="value"),
                    column("second", ScalarType.TEXT, column_name="value"),
                ],
            )

    def test_nullable_primary_key(self):
        """Primary key columns cannot be nullable."""
        with pytest.raises(SchemaError):
            column("id", ScalarType.INTEGER, primary=True, nullable=True)

    def test_generated_text_column(self):
        """Only integer columns can be generated."""
        with pytest.raises(SchemaError):
            column("id", ScalarType.TEXT, primary=True, generated=True)

    def test_string_scalar_type(self):
        """Scalar types can be given by name."""
        assert column("title", "TEXT").scalar_type == ScalarType.TEXT


class TestCreationOrderAndDDL:
    """Test creation order and CREATE TABLE generation."""

    def test_creation_order_follows_foreign_keys(self, blog_registry):
        """Referenced tables come before the tables that reference them."""
        order = blog_registry.creation_order()
        assert order.index("Profile") < order.index("User")
        assert order.index("User") < order.index("Post")
        assert order.index("Post") < order.index("Comment")
        assert set(order) == {"User", "Profile", "Post", "Comment", "Tag"}

    def test_sqlite_ddl(self, blog_registry):
        """SQLite DDL has implicit key columns, inline constraints and junctions."""
        ddl = blog_registry.generate_ddl("sqlite")
        post = next(s for s in ddl if s.startswith('CREATE TABLE IF NOT EXISTS "post"'))
        assert '"id" INTEGER PRIMARY KEY' in post
        assert '"title" TEXT NOT NULL' in post
        assert '"views" INTEGER DEFAULT 0' in post
        assert '"authorId" INTEGER' in post
        assert 'FOREIGN KEY ("authorId") REFERENCES "user" ("id") ON DELETE CASCADE' in post

        user = next(s for s in ddl if s.startswith('CREATE TABLE IF NOT EXISTS "user"'))
        assert '"email" TEXT UNIQUE' in user
        assert '"active" BOOLEAN DEFAULT 1' in user
        assert '"profileId" INTEGER UNIQUE' in user
        assert "ON DELETE SET NULL" in user

        junction = next(s for s in ddl if s.startswith('CREATE TABLE IF NOT EXISTS "post_tag"'))
        assert '"postId" INTEGER NOT NULL' in junction
        assert '"tagId" INTEGER NOT NULL' in junction
        assert 'PRIMARY KEY ("postId", "tagId")' in junction
        assert not any(s.startswith("ALTER TABLE") for s in ddl)

    def test_not_nullable_foreign_key(self):
        """A non-nullable relation yields a NOT NULL key column."""
        registry = build_blog_registry(author_nullable=False)
        post = next(s for s in registry.generate_ddl() if '"post"' in s.split("(")[0])
        assert '"authorId" INTEGER NOT NULL' in post

    def test_postgres_ddl_types(self, blog_registry):
        """PostgreSQL uses SERIAL keys and JSONB."""
        ddl = blog_registry.generate_ddl("postgresql")
        user = next(s for s in ddl if s.startswith('CREATE TABLE IF NOT EXISTS "user"'))
        assert '"id" SERIAL PRIMARY KEY' in user
        assert '"settings" JSONB' in user
        assert '"createdAt" TIMESTAMP' in user

    def test_mysql_ddl_quoting(self, blog_registry):
        """MySQL quotes with backticks and uses AUTO_INCREMENT."""
        ddl = blog_registry.generate_ddl("mysql")
        assert any(s.startswith("CREATE TABLE IF NOT EXISTS `user`") for s in ddl)
        assert any("`id` INT AUTO_INCREMENT PRIMARY KEY" in s for s in ddl)

    def test_cyclic_foreign_keys_are_deferred(self):
        """Forward references become ALTER TABLE statements outside SQLite."""
        registry = build_cycle_registry()
        assert registry.get_circular_dependencies()
        ddl = registry.generate_ddl("postgresql")
        creates = [s for s in ddl if s.startswith("CREATE TABLE")]
        alters = [s for s in ddl if s.startswith("ALTER TABLE")]
        assert len(creates) == 2
        assert len(alters) == 1
        assert ddl.index(alters[0]) > max(ddl.index(s) for s in creates)
        assert "ADD CONSTRAINT" in alters[0]

        sqlite_ddl = registry.generate_ddl("sqlite")
        assert not any(s.startswith("ALTER TABLE") for s in sqlite_ddl)

    def test_self_reference(self):
        """Self-referencing relations are tracked without a dependency edge."""
        registry = SchemaRegistry()
        registry.register(EntityDescriptor(
            name="Category",
            columns=[primary_generated_column(), column("name", ScalarType.TEXT)],
            relations=[
                relation("parent", RelationKind.MANY_TO_ONE, "Category", inverse_side="children"),
                relation("children", RelationKind.ONE_TO_MANY, "Category", inverse_side="parent"),
            ],
        ))
        registry.finalize()
        assert registry.get_self_references() == {"Category"}
        assert registry.creation_order() == ["Category"]
        ddl = registry.generate_ddl()[0]
        assert 'REFERENCES "category" ("id")' in ddl


class TestEntityClasses:
    """Test synthesized entity classes."""

    def test_defaults(self, models):
        """Columns take declared defaults; to-many relations start empty."""
        user = models["User"](name="A")
        assert user.id is None
        assert user.active is True
        assert user.posts == []
        assert user.profile is None

    def test_equality_compares_columns(self, models):
        """Equality ignores relations, so cyclic graphs compare safely."""
        first = models["User"](name="A")
        second = models["User"](name="A")
        post = models["Post"](title="T", author=first)
        first.posts.append(post)
        assert first == second
        assert hash(first) != hash(second)

    def test_unknown_field_rejected(self, models):
        """Entity classes reject properties they do not declare."""
        with pytest.raises(ValueError):
            models["User"](nickname="x")

    def test_resolved_relation_lookup(self, blog_registry):
        """Unknown relations raise UnknownRelationError."""
        with pytest.raises(UnknownRelationError):
            blog_registry.resolved_relation("User", "nope")


class TestNamingHelpers:
    """Test identifier helpers."""

    def test_snake_case(self):
        assert snake_case("PostComment") == "post_comment"
        assert snake_case("User") == "user"

    def test_lower_camel(self):
        assert lower_camel("PostComment") == "postComment"
        assert lower_camel("post_comment") == "postComment"
