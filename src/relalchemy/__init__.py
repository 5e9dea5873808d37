# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
RelAlchemy: a relational ORM engine with explicit entity descriptors,
cascade planning, a query AST with a multi-dialect SQL compiler, and a
Unit of Work session.
"""

from __future__ import annotations

from .constants import (
    AggregateFunction,
    CascadeOperation,
    ComparisonOperator,
    DeleteAction,
    DialectNames,
    JoinType,
    LogicalOperator,
    OperationKind,
    OperationState,
    OrderDirection,
    ProjectionMode,
    RelationKind,
    ScalarType,
)
from .exceptions import (
    AmbiguousOwnershipError,
    EntityNotFoundError,
    ForeignKeyViolationError,
    PersistenceError,
    QueryBuildError,
    RegistryFrozenError,
    RelAlchemyError,
    ResultShapeMismatchError,
    SchemaConflictError,
    SchemaError,
    UnknownColumnError,
    UnknownEntityError,
    UnknownRelationError,
    UnresolvableCycleError,
    UnsupportedFeatureError,
)
from .rel_cascade import CascadeEngine, OperationPlan, PlannedOperation
from .rel_orm import (
    ColumnMetadata,
    EntityDescriptor,
    EntityMetadata,
    RelationMetadata,
    RelBaseModel,
    SchemaRegistry,
    column,
    create_date_column,
    delete_date_column,
    primary_generated_column,
    relation,
    update_date_column,
)
from .rel_query import (
    DeleteQuery,
    InsertQuery,
    Query,
    UpdateQuery,
    delete_from,
    insert_into,
    select_from,
    update,
)
from .rel_query_builder import (
    DeleteNode,
    EntitySelection,
    InsertNode,
    JoinNode,
    SelectNode,
    SubSelect,
    UpdateNode,
)
from .rel_query_expressions import (
    ColumnRef,
    FilterExpression,
    QueryField,
    and_,
    avg,
    count,
    count_distinct,
    exists,
    field,
    max_,
    min_,
    not_,
    not_exists,
    or_,
    raw,
    sum_,
)
from .rel_relations import JunctionMetadata, RelationshipResolver, ResolvedRelation
from .rel_result_mapper import ResultMapper
from .rel_session import (
    ExecutionResult,
    RawResult,
    RelSession,
    Repository,
    SessionFactory,
    SQLiteExecutor,
    SqlExecutor,
)
from .rel_sql_compiler import CompiledQuery, SQLCompiler, get_dialect

__version__ = "0.1.0"

__all__ = [
    # Constants
    "AggregateFunction",
    "CascadeOperation",
    "ComparisonOperator",
    "DeleteAction",
    "DialectNames",
    "JoinType",
    "LogicalOperator",
    "OperationKind",
    "OperationState",
    "OrderDirection",
    "ProjectionMode",
    "RelationKind",
    "ScalarType",
    # Errors
    "AmbiguousOwnershipError",
    "EntityNotFoundError",
    "ForeignKeyViolationError",
    "PersistenceError",
    "QueryBuildError",
    "RegistryFrozenError",
    "RelAlchemyError",
    "ResultShapeMismatchError",
    "SchemaConflictError",
    "SchemaError",
    "UnknownColumnError",
    "UnknownEntityError",
    "UnknownRelationError",
    "UnresolvableCycleError",
    "UnsupportedFeatureError",
    # Schema
    "ColumnMetadata",
    "EntityDescriptor",
    "EntityMetadata",
    "RelationMetadata",
    "RelBaseModel",
    "SchemaRegistry",
    "column",
    "create_date_column",
    "delete_date_column",
    "primary_generated_column",
    "relation",
    "update_date_column",
    "JunctionMetadata",
    "RelationshipResolver",
    "ResolvedRelation",
    # Cascades
    "CascadeEngine",
    "OperationPlan",
    "PlannedOperation",
    # Queries
    "DeleteQuery",
    "InsertQuery",
    "Query",
    "UpdateQuery",
    "delete_from",
    "insert_into",
    "select_from",
    "update",
    "DeleteNode",
    "EntitySelection",
    "InsertNode",
    "JoinNode",
    "SelectNode",
    "SubSelect",
    "UpdateNode",
    "ColumnRef",
    "FilterExpression",
    "QueryField",
    "and_",
    "avg",
    "count",
    "count_distinct",
    "exists",
    "field",
    "max_",
    "min_",
    "not_",
    "not_exists",
    "or_",
    "raw",
    "sum_",
    # Compilation and mapping
    "CompiledQuery",
    "SQLCompiler",
    "get_dialect",
    "ResultMapper",
    # Sessions
    "ExecutionResult",
    "RawResult",
    "RelSession",
    "Repository",
    "SessionFactory",
    "SQLiteExecutor",
    "SqlExecutor",
    "__version__",
]
