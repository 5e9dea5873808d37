# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Exception hierarchy for RelAlchemy ORM.

Every error raised by the engine derives from :class:`RelAlchemyError`. The
intermediate classes also derive from the built-in exception a caller would
reach for (``ValueError`` for malformed declarations and queries,
``LookupError`` for unknown names) so plain ``except ValueError`` handlers
keep working.

:module: exceptions
:synopsis: Typed errors for schema, query, persistence and mapping failures
"""

from __future__ import annotations


class RelAlchemyError(Exception):
    """Base class for all RelAlchemy errors."""


# -----------------------------------------------------------------------------
# Startup-time schema errors
# -----------------------------------------------------------------------------

class SchemaError(RelAlchemyError, ValueError):
    """Invalid entity or relation declaration."""


class SchemaConflictError(SchemaError):
    """An entity name was registered twice with different shapes."""


class RegistryFrozenError(SchemaError):
    """Registration attempted after the registry was finalized."""


class UnknownEntityError(SchemaError, LookupError):
    """An entity name (or class) is not registered."""


class AmbiguousOwnershipError(SchemaError):
    """A bidirectional relation does not resolve to exactly one owning side."""


# -----------------------------------------------------------------------------
# Build-time query errors
# -----------------------------------------------------------------------------

class QueryBuildError(RelAlchemyError, ValueError):
    """The caller's query is malformed."""


class UnknownRelationError(QueryBuildError, LookupError):
    """A relation path does not resolve against the schema registry."""


class UnknownColumnError(QueryBuildError, LookupError):
    """A column reference names a property the entity does not have."""


class UnsupportedFeatureError(QueryBuildError):
    """The construct cannot be expressed in the target dialect."""


# -----------------------------------------------------------------------------
# Runtime persistence errors
# -----------------------------------------------------------------------------

class PersistenceError(RelAlchemyError):
    """A write failed while executing an operation plan."""


class ForeignKeyViolationError(PersistenceError):
    """The database rejected a write because of a foreign key constraint."""


class UnresolvableCycleError(PersistenceError):
    """Mutually dependent inserts cannot be ordered because a key is not nullable."""


class EntityNotFoundError(PersistenceError, LookupError):
    """find_one_or_fail matched no row."""


# -----------------------------------------------------------------------------
# Read path errors
# -----------------------------------------------------------------------------

class ResultShapeMismatchError(RelAlchemyError):
    """Returned rows do not match the compiled projection."""


__all__ = [
    "RelAlchemyError",
    "SchemaError",
    "SchemaConflictError",
    "RegistryFrozenError",
    "UnknownEntityError",
    "AmbiguousOwnershipError",
    "QueryBuildError",
    "UnknownRelationError",
    "UnknownColumnError",
    "UnsupportedFeatureError",
    "PersistenceError",
    "ForeignKeyViolationError",
    "UnresolvableCycleError",
    "EntityNotFoundError",
    "ResultShapeMismatchError",
]
