# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Constants module for RelAlchemy ORM.

This module centralizes all constants, configuration values, and literal strings
used throughout the RelAlchemy codebase. No magic values are allowed elsewhere.

:module: constants
:synopsis: Centralized constants and configuration for RelAlchemy ORM
:author: RelAlchemy Contributors
"""

from __future__ import annotations

from enum import Enum, StrEnum
from typing import Final


# ============================================================================
# RELATION KINDS AND POLICIES
# ============================================================================

class RelationKind(StrEnum):
    """
    Relation cardinalities understood by the resolver.

    :class: RelationKind
    :synopsis: Enumeration of declared relation kinds
    """

    ONE_TO_MANY = "OneToMany"
    MANY_TO_ONE = "ManyToOne"
    ONE_TO_ONE = "OneToOne"
    MANY_TO_MANY_OWNING = "ManyToManyOwning"
    MANY_TO_MANY_INVERSE = "ManyToManyInverse"

    @property
    def is_to_many(self) -> bool:
        return self in (
            RelationKind.ONE_TO_MANY,
            RelationKind.MANY_TO_MANY_OWNING,
            RelationKind.MANY_TO_MANY_INVERSE,
        )

    @property
    def is_many_to_many(self) -> bool:
        return self in (RelationKind.MANY_TO_MANY_OWNING, RelationKind.MANY_TO_MANY_INVERSE)


class CascadeOperation(StrEnum):
    """
    Operations that may propagate across a relation.

    :class: CascadeOperation
    :synopsis: Enumeration of cascade policy members
    """

    INSERT = "insert"
    UPDATE = "update"
    REMOVE = "remove"
    SOFT_REMOVE = "softRemove"
    RECOVER = "recover"


class DeleteAction(Enum):
    """
    Delete actions for the underlying foreign key constraint.

    :class: DeleteAction
    :synopsis: Enumeration of ON DELETE actions
    """

    RESTRICT = "RESTRICT"
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    NO_ACTION = "NO ACTION"

    @classmethod
    def parse(cls, value: "DeleteAction | str") -> "DeleteAction":
        """Accept enum members, SQL spellings ("SET NULL") or camelCase ("setNull")."""
        if isinstance(value, DeleteAction):
            return value
        normalized = value.replace("_", "").replace(" ", "").lower()
        for member in cls:
            if member.value.replace(" ", "").lower() == normalized:
                return member
        raise ValueError(f"Unknown delete action: {value!r}")


class ScalarType(StrEnum):
    """Scalar column types; dialects map them to storage types."""

    INTEGER = "integer"
    BIGINT = "bigint"
    TEXT = "text"
    REAL = "real"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BLOB = "blob"
    UUID = "uuid"
    JSON = "json"


# ============================================================================
# QUERY ENUMERATIONS
# ============================================================================

class OrderDirection(StrEnum):
    """Sort direction for ORDER BY items."""

    ASC = "ASC"
    DESC = "DESC"


class JoinType(StrEnum):
    """Join flavours supported by the compiler."""

    INNER = "INNER JOIN"
    LEFT = "LEFT JOIN"


class ProjectionMode(StrEnum):
    """How a select is projected and how its rows are returned."""

    ENTITY = "entity"
    RAW = "raw"


class ComparisonOperator(StrEnum):
    """Binary comparison operators."""

    EQ = "="
    NEQ = "<>"
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"


class LogicalOperator(StrEnum):
    """Boolean connectives for compound predicates."""

    AND = "AND"
    OR = "OR"


class AggregateFunction(StrEnum):
    """Aggregate functions usable in select lists."""

    COUNT = "COUNT"
    COUNT_DISTINCT = "COUNT_DISTINCT"
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"


# ============================================================================
# CASCADE PLAN ENUMERATIONS
# ============================================================================

class OperationKind(StrEnum):
    """Kinds of sub-operation an OperationPlan can hold."""

    INSERT = "insert"
    UPDATE = "update"
    REMOVE = "remove"
    SOFT_REMOVE = "softRemove"
    RECOVER = "recover"
    LINK = "link"
    UNLINK = "unlink"
    SET_FOREIGN_KEY = "setForeignKey"


class OperationState(StrEnum):
    """Per-operation lifecycle: Pending -> Scheduled -> (Executed | Failed)."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    EXECUTED = "executed"
    FAILED = "failed"


# ============================================================================
# SQL CONSTANTS
# ============================================================================

class SQLConstants:
    """SQL keywords emitted by the compiler and DDL generator."""

    # @@ STEP 1: Define statement keywords
    SELECT: Final[str] = "SELECT"
    DISTINCT: Final[str] = "DISTINCT"
    FROM: Final[str] = "FROM"
    WHERE: Final[str] = "WHERE"
    ON: Final[str] = "ON"
    AS: Final[str] = "AS"
    GROUP_BY: Final[str] = "GROUP BY"
    HAVING: Final[str] = "HAVING"
    ORDER_BY: Final[str] = "ORDER BY"
    LIMIT: Final[str] = "LIMIT"
    OFFSET: Final[str] = "OFFSET"
    INSERT_INTO: Final[str] = "INSERT INTO"
    VALUES: Final[str] = "VALUES"
    DEFAULT_VALUES: Final[str] = "DEFAULT VALUES"
    UPDATE: Final[str] = "UPDATE"
    SET: Final[str] = "SET"
    DELETE_FROM: Final[str] = "DELETE FROM"
    RETURNING: Final[str] = "RETURNING"

    # @@ STEP 2: Define operators
    AND: Final[str] = "AND"
    OR: Final[str] = "OR"
    NOT: Final[str] = "NOT"
    IN: Final[str] = "IN"
    NOT_IN: Final[str] = "NOT IN"
    IS_NULL: Final[str] = "IS NULL"
    IS_NOT_NULL: Final[str] = "IS NOT NULL"
    BETWEEN: Final[str] = "BETWEEN"
    EXISTS: Final[str] = "EXISTS"
    COUNT_STAR: Final[str] = "COUNT(*)"
    ALWAYS_FALSE: Final[str] = "1 = 0"
    ALWAYS_TRUE: Final[str] = "1 = 1"

    # @@ STEP 3: Define DDL keywords
    CREATE_TABLE: Final[str] = "CREATE TABLE IF NOT EXISTS"
    ALTER_TABLE: Final[str] = "ALTER TABLE"
    ADD_CONSTRAINT: Final[str] = "ADD CONSTRAINT"
    PRIMARY_KEY: Final[str] = "PRIMARY KEY"
    FOREIGN_KEY: Final[str] = "FOREIGN KEY"
    REFERENCES: Final[str] = "REFERENCES"
    UNIQUE: Final[str] = "UNIQUE"
    NOT_NULL: Final[str] = "NOT NULL"
    DEFAULT: Final[str] = "DEFAULT"
    ON_DELETE: Final[str] = "ON DELETE"

    # @@ STEP 4: Define separators
    FIELD_SEPARATOR: Final[str] = ", "
    STATEMENT_SEPARATOR: Final[str] = ";"


class DialectNames:
    """Names accepted by get_dialect()."""

    SQLITE: Final[str] = "sqlite"
    POSTGRESQL: Final[str] = "postgresql"
    MYSQL: Final[str] = "mysql"


# ============================================================================
# NAMING CONSTANTS
# ============================================================================

class NamingConstants:
    """Naming rules for derived identifiers."""

    # @@ STEP 1: Foreign keys derive as <property>Id
    FOREIGN_KEY_SUFFIX: Final[str] = "Id"

    # @@ STEP 2: Junction tables join sorted table names with this separator
    JUNCTION_SEPARATOR: Final[str] = "_"

    # @@ STEP 3: Path-derived aliases join segments with this separator
    ALIAS_PATH_SEPARATOR: Final[str] = "__"

    # @@ STEP 4: Raw-mode column labels are <alias><sep><column>
    RAW_LABEL_SEPARATOR: Final[str] = "_"

    # @@ STEP 5: Relation paths are written "<alias>.<property>"
    RELATION_PATH_SEPARATOR: Final[str] = "."

    # @@ STEP 6: Raw fragments bind :name placeholders
    RAW_PARAMETER_PREFIX: Final[str] = ":"

    # @@ STEP 7: Aliases used by internally generated subselects
    PAGINATION_ALIAS_SUFFIX: Final[str] = "_page"
    JUNCTION_ALIAS_SUFFIX: Final[str] = "_junction"
    COUNT_LABEL: Final[str] = "count"


# ============================================================================
# SESSION CONSTANTS
# ============================================================================

class SessionConstants:
    """Defaults for RelSession configuration."""

    # @@ STEP 1: Define transaction defaults
    DEFAULT_DIALECT: Final[str] = DialectNames.SQLITE
    DEFAULT_AUTOCOMMIT: Final[bool] = True

    # @@ STEP 2: Define identity map sizing
    IDENTITY_MAP_INITIAL_SIZE: Final[int] = 256

    # @@ STEP 3: Define SQLite adapter defaults
    SQLITE_MEMORY_PATH: Final[str] = ":memory:"
    SQLITE_FOREIGN_KEYS_PRAGMA: Final[str] = "PRAGMA foreign_keys = ON"
    SQLITE_BEGIN: Final[str] = "BEGIN"
    SQLITE_COMMIT: Final[str] = "COMMIT"
    SQLITE_ROLLBACK: Final[str] = "ROLLBACK"
    SQLITE_FOREIGN_KEY_MARKER: Final[str] = "FOREIGN KEY"


# ============================================================================
# ERROR MESSAGE CONSTANTS
# ============================================================================

class ErrorMessages:
    """Error message constants."""

    # @@ STEP 1: Define registry errors
    SCHEMA_CONFLICT: Final[str] = "Entity {entity} is already registered with a different shape"
    REGISTRY_FROZEN: Final[str] = "Cannot register {entity}: the schema registry is finalized"
    REGISTRY_NOT_FINALIZED: Final[str] = "The schema registry must be finalized before {operation}"
    UNKNOWN_ENTITY: Final[str] = "Unknown entity: {entity}"
    UNKNOWN_ENTITY_CLASS: Final[str] = "No entity is registered for class {cls}"
    MISSING_PRIMARY_KEY: Final[str] = "Entity {entity} declares no primary key column"
    DUPLICATE_PROPERTY: Final[str] = "Entity {entity} declares property {prop} more than once"
    DUPLICATE_COLUMN: Final[str] = "Entity {entity} maps column {column} more than once"
    MULTIPLE_DELETE_DATE: Final[str] = "Entity {entity} declares more than one delete date column"

    # @@ STEP 2: Define relation resolution errors
    AMBIGUOUS_BOTH_OWNING: Final[str] = (
        "Relation {entity}.{prop} and its inverse {target}.{inverse} both declare themselves owning"
    )
    AMBIGUOUS_NONE_OWNING: Final[str] = (
        "Relation {entity}.{prop} and its inverse {target}.{inverse} both declare themselves inverse"
    )
    NO_OWNING_COUNTERPART: Final[str] = (
        "Relation {entity}.{prop} is an inverse side but {target} has no owning relation back to {entity}"
    )
    MULTIPLE_OWNING_COUNTERPARTS: Final[str] = (
        "Relation {entity}.{prop} matches several owning relations on {target}: {candidates}; "
        "declare inverse_side explicitly"
    )
    UNKNOWN_INVERSE: Final[str] = "Relation {entity}.{prop} names unknown inverse side {target}.{inverse}"
    INCOMPATIBLE_INVERSE: Final[str] = (
        "Relation {entity}.{prop} ({kind}) cannot pair with {target}.{inverse} ({inverse_kind})"
    )
    UNKNOWN_REFERENCED_COLUMN: Final[str] = (
        "Relation {entity}.{prop} references unknown column {column} on {target}"
    )
    COMPOSITE_REFERENCE: Final[str] = (
        "Relation {entity}.{prop} targets {target} with a composite primary key; "
        "declare referenced_column explicitly"
    )

    # @@ STEP 3: Define query build errors
    UNKNOWN_RELATION: Final[str] = "Unknown relation {path}: {entity} has no relation {prop}"
    UNKNOWN_ALIAS: Final[str] = "Unknown alias {alias} in relation path {path}"
    INVALID_RELATION_PATH: Final[str] = "Relation path must look like '<alias>.<property>', got {path!r}"
    DUPLICATE_ALIAS: Final[str] = "Alias {alias} is already used in this query"
    UNKNOWN_COLUMN: Final[str] = "Unknown column {prop} on {entity} (alias {alias})"
    UNKNOWN_QUERY_ALIAS: Final[str] = "Unknown alias {alias} in column reference {ref}"
    RAW_FRAGMENT_LITERAL: Final[str] = (
        "Raw fragment {fragment!r} contains a quoted literal; bind values as parameters instead"
    )
    RAW_FRAGMENT_MISSING_PARAM: Final[str] = "Raw fragment {fragment!r} references unbound parameter :{name}"
    INVALID_LIMIT: Final[str] = "{clause} must be a non-negative integer, got {value!r}"
    EMPTY_INSERT: Final[str] = "Insert into {target} has no rows"
    EMPTY_UPDATE: Final[str] = "Update of {target} has no assignments"
    UNKNOWN_DIALECT: Final[str] = "Unknown SQL dialect: {dialect}"

    # @@ STEP 4: Define unsupported feature errors
    RETURNING_UNSUPPORTED: Final[str] = "Dialect {dialect} does not support RETURNING"
    PAGINATION_ORDER_UNSUPPORTED: Final[str] = (
        "Root pagination can only order by root alias columns, got {ref}"
    )
    SOFT_DELETE_UNSUPPORTED: Final[str] = "Entity {entity} has no delete date column"

    # @@ STEP 5: Define persistence errors
    UNRESOLVABLE_CYCLE: Final[str] = (
        "Cannot order inserts for {entity}.{prop}: foreign key column {column} is not nullable "
        "and {target} is part of an insertion cycle"
    )
    FOREIGN_KEY_VIOLATION: Final[str] = "Foreign key constraint failed: {error}"
    INTEGRITY_VIOLATION: Final[str] = "Integrity constraint failed: {error}"
    ENTITY_NOT_FOUND: Final[str] = "Could not find any {entity} matching {criteria}"
    MISSING_PRIMARY_KEY_VALUE: Final[str] = "Cannot {operation} {entity}: primary key is not set"
    ILLEGAL_STATE_TRANSITION: Final[str] = "Operation {operation} cannot move from {current} to {target}"

    # @@ STEP 6: Define result mapping errors
    ROW_TOO_NARROW: Final[str] = "Row {index} has {actual} columns, projection expects {expected}"
    PRIMARY_KEY_NOT_PROJECTED: Final[str] = (
        "Alias {alias} ({entity}) does not project primary key {prop}; entities cannot be deduplicated"
    )

    # @@ STEP 7: Define session errors
    SESSION_CLOSED: Final[str] = "Session is closed"
    NO_ACTIVE_TRANSACTION: Final[str] = "No active transaction"
    NO_SESSION: Final[str] = "No session attached to query"
