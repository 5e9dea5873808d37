# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Unit of Work session for RelAlchemy.

This module provides the SQL executor capability and its SQLite adapter,
the :class:`RelSession` that runs cascade plans inside one transaction, a
repository facade bound to one entity, and a session factory.
"""

from __future__ import annotations

from contextlib import contextmanager
import copy
from dataclasses import dataclass, field, replace
import datetime
import decimal
from enum import Enum
import json
import logging
from pathlib import Path
import sqlite3
from threading import RLock
from typing import (
    Any, Callable, Dict, Generic, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple,
    Type, TypeVar, Union, runtime_checkable,
)
import uuid

import pyarrow as pa

from .constants import (
    ErrorMessages,
    NamingConstants,
    OperationKind,
    OrderDirection,
    ProjectionMode,
    ScalarType,
    SessionConstants,
)
from .exceptions import (
    EntityNotFoundError,
    ForeignKeyViolationError,
    PersistenceError,
)
from .rel_cascade import CascadeEngine, OperationPlan, PlannedOperation
from .rel_orm import ColumnMetadata, EntityMetadata, SchemaRegistry, lower_camel
from .rel_query import Query
from .rel_query_builder import (
    DeleteNode,
    InsertNode,
    JunctionAction,
    JunctionNode,
    QueryNode,
    SelectNode,
    UpdateNode,
)
from .rel_query_expressions import FilterExpression, criteria_to_predicate
from .rel_relations import ResolvedRelation
from .rel_result_mapper import ResultMapper
from .rel_sql_compiler import CompiledQuery, Dialect, SQLCompiler

ModelType = TypeVar("ModelType")

logger = logging.getLogger(__name__)


# =============================================================================
# Executor capability
# =============================================================================

@dataclass
class ExecutionResult:
    """
    Outcome of one statement.

    ``generated_keys`` holds database-assigned keys of an INSERT when the
    driver reports them (``lastrowid`` on SQLite).
    """
    rows: List[Tuple[Any, ...]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    affected_count: int = 0
    generated_keys: List[Any] = field(default_factory=list)


@runtime_checkable
class SqlExecutor(Protocol):
    """Capability the session consumes to run SQL inside one transaction."""

    dialect: str

    def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecutionResult: ...

    def begin_transaction(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close(self) -> None: ...


def _adapt_parameter(value: Any) -> Any:
    """Values the sqlite3 driver cannot bind are stored as text."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class SQLiteExecutor:
    """
    SQLite executor using the standard library driver.

    The connection runs in driver autocommit mode with explicit BEGIN /
    COMMIT / ROLLBACK, and foreign key enforcement switched on.
    """

    dialect = "sqlite"

    def __init__(self, database: Union[str, Path] = SessionConstants.SQLITE_MEMORY_PATH, **connect_kwargs: Any) -> None:
        connect_kwargs.setdefault("check_same_thread", False)
        self.database = str(database)
        self._conn = sqlite3.connect(self.database, isolation_level=None, **connect_kwargs)
        self._conn.execute(SessionConstants.SQLITE_FOREIGN_KEYS_PRAGMA)
        self._lock = RLock()
        self._closed = False

    def execute(self, sql: str, params: Sequence[Any] = ()) -> ExecutionResult:
        """
        Execute one statement.

        Raises:
            ForeignKeyViolationError: A foreign key constraint failed
            PersistenceError: Any other driver failure
        """
        adapted = [_adapt_parameter(p) for p in params]
        with self._lock:
            try:
                cursor = self._conn.execute(sql, adapted)
                rows = cursor.fetchall() if cursor.description else []
            except sqlite3.IntegrityError as e:
                logger.error("Integrity error executing %s: %s", sql, e)
                if SessionConstants.SQLITE_FOREIGN_KEY_MARKER in str(e).upper():
                    raise ForeignKeyViolationError(ErrorMessages.FOREIGN_KEY_VIOLATION.format(error=e)) from e
                raise PersistenceError(ErrorMessages.INTEGRITY_VIOLATION.format(error=e)) from e
            except sqlite3.Error as e:
                logger.error("SQLite error executing %s: %s", sql, e)
                raise PersistenceError(f"Statement failed: {e}") from e

            columns = [d[0] for d in cursor.description] if cursor.description else []
            generated = []
            if cursor.lastrowid and sql.lstrip().upper().startswith("INSERT"):
                generated.append(cursor.lastrowid)
            return ExecutionResult(
                rows=[tuple(r) for r in rows],
                columns=columns,
                affected_count=max(cursor.rowcount, 0),
                generated_keys=generated,
            )

    def begin_transaction(self) -> None:
        with self._lock:
            self._conn.execute(SessionConstants.SQLITE_BEGIN)

    def commit(self) -> None:
        with self._lock:
            self._conn.execute(SessionConstants.SQLITE_COMMIT)

    def rollback(self) -> None:
        with self._lock:
            if self._conn.in_transaction:
                self._conn.execute(SessionConstants.SQLITE_ROLLBACK)

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    def __repr__(self) -> str:
        return f"<SQLiteExecutor({self.database!r})>"


# =============================================================================
# Raw results
# =============================================================================

@dataclass
class RawResult:
    """Rows of a raw query as dicts, with a pyarrow export."""
    rows: List[Dict[str, Any]]
    columns: List[str]
    affected_count: int = 0

    def to_arrow(self) -> pa.Table:
        if self.rows:
            return pa.Table.from_pylist(self.rows)
        return pa.table({name: pa.array([], type=pa.null()) for name in self.columns})

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def __getitem__(self, index: int) -> Dict[str, Any]:
        return self.rows[index]


# =============================================================================
# Session
# =============================================================================

@dataclass
class _Snapshot:
    """Stored state of one row as last written or read by this session."""
    columns: Dict[str, Any]
    relations: Dict[str, Optional[int]]
    foreign_keys: Dict[str, Any] = field(default_factory=dict)


_UNKNOWN = object()


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _to_storage(col: Optional[ColumnMetadata], value: Any) -> Any:
    if col is not None and col.scalar_type == ScalarType.JSON and value is not None:
        return json.dumps(value)
    return value


class RelSession:
    """
    Unit of Work over one executor.

    Every write runs its whole cascade plan inside one transaction; any
    error rolls the transaction back before it reaches the caller.

    Args:
        registry: Finalized schema registry
        executor: SQL executor; an in-memory SQLite executor when omitted
        database: SQLite database path used when ``executor`` is omitted
        dialect: Dialect name; defaults to the executor's
        autocommit: Commit after each write. When ``False`` the first write
            opens a transaction that stays open until :meth:`commit`
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        executor: Optional[SqlExecutor] = None,
        *,
        database: Union[str, Path, None] = None,
        dialect: Union[str, Dialect, None] = None,
        autocommit: bool = SessionConstants.DEFAULT_AUTOCOMMIT,
    ) -> None:
        registry.require_finalized("opening a session")
        if executor is None:
            executor = SQLiteExecutor(database or SessionConstants.SQLITE_MEMORY_PATH)
            self._owns_executor = True
        else:
            self._owns_executor = False
        self.registry = registry
        self._executor = executor
        self.compiler = SQLCompiler(registry, dialect or getattr(executor, "dialect", SessionConstants.DEFAULT_DIALECT))
        self.mapper = ResultMapper(registry)
        self.cascade = CascadeEngine(registry, self._is_new, self._load_related)
        self.autocommit = autocommit
        self.last_plan: Optional[OperationPlan] = None

        self._identity_map: Dict[Tuple[str, Tuple[Any, ...]], Any] = {}
        self._snapshots: Dict[Tuple[str, Tuple[Any, ...]], _Snapshot] = {}
        self._in_transaction = False
        self._closed = False

        self._handlers: Dict[OperationKind, Callable[[PlannedOperation], None]] = {
            OperationKind.INSERT: self._execute_insert,
            OperationKind.UPDATE: self._execute_update,
            OperationKind.REMOVE: self._execute_remove,
            OperationKind.SOFT_REMOVE: self._execute_soft_remove,
            OperationKind.RECOVER: self._execute_recover,
            OperationKind.LINK: self._execute_link,
            OperationKind.UNLINK: self._execute_unlink,
            OperationKind.SET_FOREIGN_KEY: self._execute_set_foreign_key,
        }

    @property
    def dialect(self) -> Dialect:
        return self.compiler.dialect

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    # =========================================================================
    # Transactions
    # =========================================================================

    def _check_open(self) -> None:
        if self._closed:
            raise PersistenceError(ErrorMessages.SESSION_CLOSED)

    def begin(self) -> None:
        self._check_open()
        if self._in_transaction:
            raise PersistenceError("A transaction is already active")
        self._executor.begin_transaction()
        self._in_transaction = True
        logger.debug("Transaction started")

    def commit(self) -> None:
        self._check_open()
        if not self._in_transaction:
            raise PersistenceError(ErrorMessages.NO_ACTIVE_TRANSACTION)
        self._executor.commit()
        self._in_transaction = False
        logger.debug("Transaction committed")

    def rollback(self) -> None:
        """Roll back the active transaction and forget every tracked row."""
        self._check_open()
        if self._in_transaction:
            try:
                self._executor.rollback()
            finally:
                self._in_transaction = False
            logger.debug("Transaction rolled back")
        self._identity_map.clear()
        self._snapshots.clear()

    @contextmanager
    def transaction(self) -> Iterator["RelSession"]:
        """
        Transactional scope.

        Commits on success. On any exception, cancellation and a failed
        commit included, rolls back and re-raises. A nested call joins the active transaction; an
        error inside it still rolls back the whole transaction.
        """
        self._check_open()
        owner = not self._in_transaction
        if owner:
            self.begin()
        try:
            yield self
            if owner and self._in_transaction:
                self.commit()
        except BaseException:
            if self._in_transaction:
                self.rollback()
            raise

    @contextmanager
    def _unit_of_work(self) -> Iterator["RelSession"]:
        if not self.autocommit and not self._in_transaction:
            self.begin()
        with self.transaction():
            yield self

    def close(self) -> None:
        if self._closed:
            return
        if self._in_transaction:
            self.rollback()
        self._identity_map.clear()
        self._snapshots.clear()
        if self._owns_executor:
            self._executor.close()
        self._closed = True

    def __enter__(self) -> "RelSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _ = exc_val, exc_tb
        try:
            if self._in_transaction:
                if exc_type is None:
                    self.commit()
                else:
                    self.rollback()
        finally:
            self.close()

    # =========================================================================
    # Statement execution
    # =========================================================================

    def _execute(self, compiled: CompiledQuery) -> ExecutionResult:
        self._check_open()
        logger.debug("Executing: %s %r", compiled.sql, compiled.params)
        return self._executor.execute(compiled.sql, compiled.params)

    def execute_node(self, node: QueryNode) -> ExecutionResult:
        """Compile and execute a write node inside a unit of work."""
        with self._unit_of_work():
            return self._execute(self.compiler.compile(node))

    def fetch_entities(self, node: SelectNode) -> List[Any]:
        return self._select(node, register=True)

    def fetch_raw(self, node: SelectNode) -> RawResult:
        compiled = self.compiler.compile(node)
        result = self._execute(compiled)
        rows = self.mapper.map_raw(compiled, result.rows)
        return RawResult(rows=rows, columns=list(compiled.labels), affected_count=result.affected_count)

    def fetch_count(self, node: SelectNode) -> int:
        result = self._execute(self.compiler.compile_count(node))
        return int(result.rows[0][0]) if result.rows else 0

    def _select(self, node: SelectNode, register: bool) -> List[Any]:
        compiled = self.compiler.compile(node)
        result = self._execute(compiled)
        instances = self.mapper.map_entities(compiled, result.rows)
        if register:
            self._register_graph(instances)
        return instances

    # =========================================================================
    # Identity map and snapshots
    # =========================================================================

    def _register_graph(self, instances: List[Any]) -> None:
        seen: set = set()
        stack = list(instances)
        while stack:
            instance = stack.pop()
            if id(instance) in seen:
                continue
            seen.add(id(instance))
            meta = self.registry.entity_for(instance)
            self._remember(meta, instance)
            for rel in meta.relations:
                value = getattr(instance, rel.property_name, None)
                if isinstance(value, list):
                    stack.extend(v for v in value if v is not None)
                elif value is not None:
                    stack.append(value)

    def _remember(self, meta: EntityMetadata, instance: Any, foreign_keys: Optional[Dict[str, Any]] = None) -> None:
        pk = meta.primary_key_of(instance)
        if pk is None:
            return
        key = (meta.name, pk)
        previous = self._snapshots.get(key)
        known_fks = dict(previous.foreign_keys) if previous is not None and self._identity_map.get(key) is instance else {}
        known_fks.update(foreign_keys or {})
        self._identity_map[key] = instance
        self._snapshots[key] = _Snapshot(
            columns=copy.deepcopy({c.property_name: getattr(instance, c.property_name, None) for c in meta.columns}),
            relations={
                r.property_name: self._relation_identity(getattr(instance, r.property_name, None))
                for r in meta.relations if not r.kind.is_to_many
            },
            foreign_keys=known_fks,
        )

    @staticmethod
    def _relation_identity(value: Any) -> Optional[int]:
        return None if value is None else id(value)

    def _forget(self, meta: EntityMetadata, instance: Any) -> None:
        pk = meta.primary_key_of(instance)
        if pk is None:
            return
        self._identity_map.pop((meta.name, pk), None)
        self._snapshots.pop((meta.name, pk), None)

    def identity_lookup(self, entity: Any, *primary_key: Any) -> Optional[Any]:
        """Instance tracked for ``primary_key``, or ``None``."""
        return self._identity_map.get((self.registry.entity_for(entity).name, tuple(primary_key)))

    def _is_new(self, instance: Any, meta: EntityMetadata) -> bool:
        pk = meta.primary_key_of(instance)
        if pk is None:
            return True
        if (meta.name, pk) in self._identity_map:
            return False
        query = Query(self.registry, meta.name, session=self).with_deleted().where(self._pk_criteria(meta, instance))
        return self.fetch_count(query.to_ast()) == 0

    def _load_related(self, instance: Any, meta: EntityMetadata, res: ResolvedRelation) -> List[Any]:
        """Stored rows related to ``instance`` through ``res``, soft-removed ones included."""
        alias = lower_camel(meta.name)
        query = (
            Query(self.registry, meta.name, alias=alias, session=self)
            .with_deleted()
            .where(self._pk_criteria(meta, instance))
            .inner_join_and_select(f"{alias}.{res.property_name}")
        )
        owners = self._select(query.to_ast(), register=False)
        related: List[Any] = []
        for owner in owners:
            value = getattr(owner, res.property_name, None)
            if isinstance(value, list):
                related.extend(value)
            elif value is not None:
                related.append(value)
        return related

    @staticmethod
    def _pk_criteria(meta: EntityMetadata, instance: Any) -> FilterExpression:
        criteria = {prop: getattr(instance, prop, None) for prop in meta.primary_keys}
        return criteria_to_predicate(criteria)

    def _require_pk(self, meta: EntityMetadata, instance: Any, operation: str) -> FilterExpression:
        if meta.primary_key_of(instance) is None:
            raise PersistenceError(ErrorMessages.MISSING_PRIMARY_KEY_VALUE.format(operation=operation, entity=meta.name))
        return self._pk_criteria(meta, instance)

    # =========================================================================
    # Writes
    # =========================================================================

    def save(self, instance: Union[ModelType, List[ModelType]]) -> Union[ModelType, List[ModelType]]:
        """
        Insert or update ``instance`` and everything its cascades reach.

        Returns the same instance with generated keys and timestamps set.
        """
        if isinstance(instance, list):
            with self._unit_of_work():
                for item in instance:
                    self.save(item)
            return instance
        with self._unit_of_work():
            plan = self.cascade.plan_save(instance)
            self._run_plan(plan)
        return instance

    def remove(self, instance: ModelType) -> ModelType:
        """Delete ``instance`` and its remove cascades. The instance keeps its primary key."""
        with self._unit_of_work():
            self._run_plan(self.cascade.plan_remove(instance))
        return instance

    def soft_remove(self, instance: ModelType) -> ModelType:
        with self._unit_of_work():
            self._run_plan(self.cascade.plan_soft_remove(instance))
        return instance

    def recover(self, instance: ModelType) -> ModelType:
        with self._unit_of_work():
            self._run_plan(self.cascade.plan_recover(instance))
        return instance

    def _run_plan(self, plan: OperationPlan) -> None:
        self.last_plan = plan
        for op in plan:
            try:
                self._handlers[op.kind](op)
            except BaseException as exc:
                op.mark_failed(exc)
                logger.error("Operation %s failed: %s", op.describe(), exc)
                raise
            op.mark_executed()

    # ---- foreign keys ------------------------------------------------------

    def _owning_relations(self, entity: str) -> Dict[str, ResolvedRelation]:
        return {res.foreign_key_column: res for res in self.registry.relations_of(entity) if res.is_owning_to_one}

    def _foreign_key_values(self, op: PlannedOperation) -> Dict[str, Any]:
        """Foreign key column values this operation writes."""
        values: Dict[str, Any] = {}
        for column_name, (parent, parent_prop) in op.foreign_key_sources.items():
            if column_name in op.deferred_foreign_keys:
                if op.kind == OperationKind.INSERT:
                    values[column_name] = None
                continue
            value = getattr(parent, parent_prop, None)
            if value is None:
                raise PersistenceError(
                    ErrorMessages.MISSING_PRIMARY_KEY_VALUE.format(
                        operation="reference", entity=self.registry.entity_for(parent).name
                    )
                )
            values[column_name] = value
        return values

    # ---- handlers ----------------------------------------------------------

    def _execute_insert(self, op: PlannedOperation) -> None:
        instance = op.instance
        meta = self.registry.resolve(op.entity)
        now = _now()

        # @@ STEP 1: Column values; generated keys are left to the database
        row: Dict[str, Any] = {}
        for col in meta.columns:
            value = getattr(instance, col.property_name, None)
            if col.generated and value is None:
                continue
            if (col.create_date or col.update_date) and value is None:
                value = now
                setattr(instance, col.property_name, value)
            row[col.property_name] = _to_storage(col, value)

        # @@ STEP 2: Foreign keys from parents written earlier in the plan
        fk_values = self._foreign_key_values(op)
        owning = self._owning_relations(meta.name)
        for column_name, value in fk_values.items():
            res = owning.get(column_name)
            if res is not None and res.foreign_key_property is not None:
                row[res.foreign_key_property] = value
                setattr(instance, res.foreign_key_property, value)
            else:
                row[column_name] = value

        # @@ STEP 3: Insert and collect the generated key
        generated = [c for c in meta.primary_columns if c.generated and getattr(instance, c.property_name, None) is None]
        returning: Tuple[str, ...] = ()
        if generated and self.dialect.supports_returning:
            returning = (generated[0].property_name,)
        node = InsertNode(meta.name, (tuple(row.items()),), returning)
        result = self._execute(self.compiler.compile(node))
        if generated:
            if returning:
                key = result.rows[0][0] if result.rows else None
            else:
                key = result.generated_keys[0] if result.generated_keys else None
            if key is None:
                raise PersistenceError(f"Database returned no generated key for {meta.name}")
            setattr(instance, generated[0].property_name, key)

        self._remember(meta, instance, foreign_keys=fk_values)
        logger.debug("Inserted %s %s", meta.name, meta.primary_key_of(instance))

    def _execute_update(self, op: PlannedOperation) -> None:
        instance = op.instance
        meta = self.registry.resolve(op.entity)
        where = self._require_pk(meta, instance, "update")
        pk = meta.primary_key_of(instance)
        snapshot = self._snapshots.get((meta.name, pk)) if self._identity_map.get((meta.name, pk)) is instance else None

        # @@ STEP 1: Changed columns
        assignments: Dict[str, Any] = {}
        for col in meta.columns:
            if col.primary:
                continue
            value = getattr(instance, col.property_name, None)
            if snapshot is None:
                if col.create_date and value is None:
                    continue
                assignments[col.property_name] = value
            elif snapshot.columns.get(col.property_name) != value:
                assignments[col.property_name] = value

        # @@ STEP 2: Changed foreign keys
        fk_values = self._foreign_key_values(op)
        owning = self._owning_relations(meta.name)
        if snapshot is not None:
            for column_name, res in owning.items():
                if column_name in fk_values or column_name in op.deferred_foreign_keys:
                    continue
                had_parent = snapshot.relations.get(res.property_name) is not None
                if had_parent and getattr(instance, res.property_name, None) is None:
                    fk_values[column_name] = None
        for column_name, value in fk_values.items():
            res = owning.get(column_name)
            if res is not None and res.foreign_key_property is not None:
                setattr(instance, res.foreign_key_property, value)
                stored = snapshot.columns.get(res.foreign_key_property, _UNKNOWN) if snapshot else _UNKNOWN
                if stored != value:
                    assignments[res.foreign_key_property] = value
                else:
                    assignments.pop(res.foreign_key_property, None)
            else:
                stored = snapshot.foreign_keys.get(column_name, _UNKNOWN) if snapshot else _UNKNOWN
                if stored != value:
                    assignments[column_name] = value

        if not assignments:
            logger.debug("No changes for %s %s", meta.name, pk)
            self._remember(meta, instance)
            return

        # @@ STEP 3: Write
        for col in meta.columns:
            if col.update_date:
                now = _now()
                setattr(instance, col.property_name, now)
                assignments[col.property_name] = now
        node = UpdateNode(
            meta.name,
            tuple((name, _to_storage(meta.column(name), value)) for name, value in assignments.items()),
            where,
        )
        self._execute(self.compiler.compile(node))
        self._remember(meta, instance, foreign_keys=fk_values)
        logger.debug("Updated %s %s: %s", meta.name, pk, sorted(assignments))

    def _execute_remove(self, op: PlannedOperation) -> None:
        meta = self.registry.resolve(op.entity)
        where = self._require_pk(meta, op.instance, "remove")
        self._execute(self.compiler.compile(DeleteNode(meta.name, where)))
        self._forget(meta, op.instance)
        logger.debug("Removed %s %s", meta.name, meta.primary_key_of(op.instance))

    def _set_delete_date(self, op: PlannedOperation, value: Optional[datetime.datetime], operation: str) -> None:
        meta = self.registry.resolve(op.entity)
        col = meta.delete_date_column
        where = self._require_pk(meta, op.instance, operation)
        node = UpdateNode(meta.name, ((col.property_name, value),), where)
        self._execute(self.compiler.compile(node))
        setattr(op.instance, col.property_name, value)
        self._remember(meta, op.instance)

    def _execute_soft_remove(self, op: PlannedOperation) -> None:
        self._set_delete_date(op, _now(), "soft remove")

    def _execute_recover(self, op: PlannedOperation) -> None:
        self._set_delete_date(op, None, "recover")

    def _junction_values(self, op: PlannedOperation) -> Tuple[Tuple[str, Any], ...]:
        res = self.registry.resolved_relation(op.entity, op.relation)
        junction = res.junction
        owner_value = getattr(op.instance, junction.owner_referenced_property, None)
        target_value = getattr(op.related, junction.target_referenced_property, None)
        if owner_value is None or target_value is None:
            raise PersistenceError(
                ErrorMessages.MISSING_PRIMARY_KEY_VALUE.format(operation="link", entity=op.entity)
            )
        return ((junction.owner_column, owner_value), (junction.target_column, target_value))

    def _execute_link(self, op: PlannedOperation) -> None:
        res = self.registry.resolved_relation(op.entity, op.relation)
        values = self._junction_values(op)
        count = self._execute(self.compiler.compile(JunctionNode(JunctionAction.COUNT, res.junction.name, values)))
        if count.rows and count.rows[0][0]:
            return
        self._execute(self.compiler.compile(JunctionNode(JunctionAction.INSERT, res.junction.name, values)))
        logger.debug("Linked %s.%s", op.entity, op.relation)

    def _execute_unlink(self, op: PlannedOperation) -> None:
        res = self.registry.resolved_relation(op.entity, op.relation)
        value = getattr(op.instance, res.local_property, None)
        if value is None:
            return
        node = JunctionNode(JunctionAction.DELETE, res.junction.name, ((res.junction_source_column, value),))
        self._execute(self.compiler.compile(node))

    def _execute_set_foreign_key(self, op: PlannedOperation) -> None:
        meta = self.registry.resolve(op.entity)
        res = self.registry.resolved_relation(op.entity, op.relation)
        value = getattr(op.related, res.referenced_property, None)
        if value is None:
            raise PersistenceError(
                ErrorMessages.MISSING_PRIMARY_KEY_VALUE.format(operation="reference", entity=res.target)
            )
        where = self._require_pk(meta, op.instance, "update")
        target = res.foreign_key_property or res.foreign_key_column
        self._execute(self.compiler.compile(UpdateNode(meta.name, ((target, value),), where)))
        if res.foreign_key_property is not None:
            setattr(op.instance, res.foreign_key_property, value)
        self._remember(meta, op.instance, foreign_keys={res.foreign_key_column: value})

    # =========================================================================
    # Reads
    # =========================================================================

    def query(self, entity: Union[str, Type[ModelType]], alias: Optional[str] = None) -> Query[ModelType]:
        """Create a query bound to this session."""
        return Query(self.registry, entity, alias=alias, session=self)

    def _find_query(
        self,
        entity: Any,
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
        order: Optional[Mapping[str, Union[OrderDirection, str]]] = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
        with_deleted: bool = False,
    ) -> Query:
        query = self.query(entity)
        root = query.alias
        if criteria:
            if isinstance(criteria, FilterExpression):
                query = query.where(criteria)
            else:
                query = query.filter_by(**criteria)

        # @@ STEP: Relation paths are relative to the root ("posts.comments")
        joined = set()
        for path in relations or ():
            parent = root
            for prop in path.split(NamingConstants.RELATION_PATH_SEPARATOR):
                alias = f"{parent}{NamingConstants.ALIAS_PATH_SEPARATOR}{prop}"
                if alias not in joined:
                    query = query.left_join_and_select(f"{parent}.{prop}", alias=alias)
                    joined.add(alias)
                parent = alias

        for prop, direction in (order or {}).items():
            query = query.add_order_by(f"{root}.{prop}", direction)
        if with_deleted:
            query = query.with_deleted()
        return query.skip(skip).take(take)

    def find(
        self,
        entity: Union[str, Type[ModelType]],
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
        order: Optional[Mapping[str, Union[OrderDirection, str]]] = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
        with_deleted: bool = False,
    ) -> List[ModelType]:
        """
        Find entities matching ``criteria``.

        Args:
            entity: Entity name or class
            criteria: Dict of root properties (``None`` matches NULL, lists
                match with IN) or a predicate
            relations: Relation paths to load, e.g. ``["posts.comments"]``
            order: Root property to direction
            skip: Root entities to skip
            take: Maximum number of root entities
        """
        return self._find_query(entity, criteria, relations, order, skip, take, with_deleted).all()

    def find_one(
        self,
        entity: Union[str, Type[ModelType]],
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
        with_deleted: bool = False,
    ) -> Optional[ModelType]:
        results = self._find_query(entity, criteria, relations, take=1, with_deleted=with_deleted).all()
        return results[0] if results else None

    def find_one_or_fail(
        self,
        entity: Union[str, Type[ModelType]],
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
        with_deleted: bool = False,
    ) -> ModelType:
        found = self.find_one(entity, criteria, relations, with_deleted)
        if found is None:
            raise EntityNotFoundError(
                ErrorMessages.ENTITY_NOT_FOUND.format(entity=self.registry.entity_for(entity).name, criteria=criteria)
            )
        return found

    def count(
        self,
        entity: Union[str, Type[Any]],
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        with_deleted: bool = False,
    ) -> int:
        return self._find_query(entity, criteria, with_deleted=with_deleted).count()

    def exists(
        self,
        entity: Union[str, Type[Any]],
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
    ) -> bool:
        return self.count(entity, criteria) > 0

    def execute_raw(
        self,
        query: Union[str, Query, QueryNode],
        params: Union[Sequence[Any], None] = None,
    ) -> RawResult:
        """
        Run a query without entity mapping.

        ``query`` is a SQL string with dialect placeholders and ``params``, a
        :class:`Query`, or an AST node. Selects return rows keyed by their
        output labels.
        """
        if isinstance(query, str):
            result = self._execute(CompiledQuery(sql=query, params=tuple(params or ())))
            rows = [dict(zip(result.columns, row)) for row in result.rows]
            return RawResult(rows=rows, columns=result.columns, affected_count=result.affected_count)

        node = query.to_ast() if isinstance(query, Query) else query
        if isinstance(node, SelectNode):
            return self.fetch_raw(replace(node, mode=ProjectionMode.RAW))
        result = self.execute_node(node)
        rows = [dict(zip(result.columns, row)) for row in result.rows]
        return RawResult(rows=rows, columns=result.columns, affected_count=result.affected_count)

    def create_schema(self) -> None:
        """Create every table, junction table and deferred constraint."""
        with self._unit_of_work():
            for statement in self.registry.generate_ddl(self.dialect):
                self._execute(CompiledQuery(sql=statement, params=()))
        logger.info("Created schema for %d entities", len(self.registry.all_entities()))

    def get_repository(self, entity: Union[str, Type[ModelType]]) -> "Repository[ModelType]":
        return Repository(self, entity)

    def __repr__(self) -> str:
        return f"<RelSession(dialect={self.dialect.name}, autocommit={self.autocommit})>"


# =============================================================================
# Repository facade
# =============================================================================

class Repository(Generic[ModelType]):
    """
    Repository bound to one entity.

    Example:
        >>> users = session.get_repository("User")
        >>> users.save(users.create(name="A"))
        >>> users.find({"name": "A"}, relations=["posts"])
    """

    def __init__(self, session: RelSession, entity: Union[str, Type[ModelType]]) -> None:
        self.session = session
        self.metadata = session.registry.entity_for(entity)

    @property
    def entity(self) -> str:
        return self.metadata.name

    def create(self, **values: Any) -> ModelType:
        """Build an unsaved instance."""
        return self.metadata.create_instance(values)

    def query(self, alias: Optional[str] = None) -> Query[ModelType]:
        return self.session.query(self.metadata.name, alias)

    def find(
        self,
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
        order: Optional[Mapping[str, Union[OrderDirection, str]]] = None,
        skip: Optional[int] = None,
        take: Optional[int] = None,
        with_deleted: bool = False,
    ) -> List[ModelType]:
        return self.session.find(self.metadata.name, criteria, relations, order, skip, take, with_deleted)

    def find_one(
        self,
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
        with_deleted: bool = False,
    ) -> Optional[ModelType]:
        return self.session.find_one(self.metadata.name, criteria, relations, with_deleted)

    def find_one_or_fail(
        self,
        criteria: Union[Mapping[str, Any], FilterExpression, None] = None,
        relations: Optional[Sequence[str]] = None,
    ) -> ModelType:
        return self.session.find_one_or_fail(self.metadata.name, criteria, relations)

    def save(self, instance: Union[ModelType, List[ModelType]]) -> Union[ModelType, List[ModelType]]:
        return self.session.save(instance)

    def remove(self, instance: ModelType) -> ModelType:
        return self.session.remove(instance)

    def soft_remove(self, instance: ModelType) -> ModelType:
        return self.session.soft_remove(instance)

    def recover(self, instance: ModelType) -> ModelType:
        return self.session.recover(instance)

    def count(self, criteria: Union[Mapping[str, Any], FilterExpression, None] = None) -> int:
        return self.session.count(self.metadata.name, criteria)

    def exists(self, criteria: Union[Mapping[str, Any], FilterExpression, None] = None) -> bool:
        return self.session.exists(self.metadata.name, criteria)

    def __repr__(self) -> str:
        return f"<Repository({self.metadata.name})>"


# =============================================================================
# Factory
# =============================================================================

class SessionFactory:
    """Factory for creating sessions with consistent configuration."""

    def __init__(
        self,
        registry: SchemaRegistry,
        executor_factory: Optional[Callable[[], SqlExecutor]] = None,
        **default_kwargs: Any,
    ) -> None:
        """
        Initialize session factory.

        Args:
            registry: Finalized schema registry shared by every session
            executor_factory: Builds one executor per session; sessions
                create their own SQLite executor when omitted
            **default_kwargs: Default session configuration
        """
        self.registry = registry
        self.executor_factory = executor_factory
        self.default_kwargs = default_kwargs

    def create_session(self, **kwargs: Any) -> RelSession:
        config = {**self.default_kwargs, **kwargs}
        executor = self.executor_factory() if self.executor_factory is not None else None
        return RelSession(self.registry, executor, **config)

    @contextmanager
    def session_scope(self, **kwargs: Any) -> Iterator[RelSession]:
        """
        Provide a transactional scope for a series of operations.

        Yields:
            RelSession whose writes commit together when the block exits
        """
        kwargs.setdefault("autocommit", False)
        session = self.create_session(**kwargs)
        try:
            yield session
            if session.in_transaction:
                session.commit()
        except BaseException:
            if session.in_transaction:
                session.rollback()
            raise
        finally:
            session.close()

    def __call__(self, **kwargs: Any) -> RelSession:
        return self.create_session(**kwargs)
