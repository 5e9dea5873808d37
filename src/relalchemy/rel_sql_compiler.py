# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
SQL compiler for RelAlchemy.

Lowers query AST nodes into dialect SQL plus an ordered parameter list.
Compilation is a pure function of the AST, the registry and the dialect:
the same input always yields byte-identical SQL. Values never appear in the
SQL text; LIMIT/OFFSET integers are validated and inlined.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from .constants import (
    AggregateFunction,
    ComparisonOperator,
    DialectNames,
    ErrorMessages,
    NamingConstants,
    ProjectionMode,
    ScalarType,
    SQLConstants,
)
from .exceptions import QueryBuildError, UnknownColumnError, UnsupportedFeatureError
from .rel_orm import EntityMetadata, SchemaRegistry, lower_camel
from .rel_query_builder import (
    DeleteNode,
    EntitySelection,
    InsertNode,
    JoinNode,
    JunctionAction,
    JunctionNode,
    LimitNode,
    QueryNode,
    SelectNode,
    SubSelect,
    UpdateNode,
)
from .rel_query_expressions import (
    Aggregate,
    Between,
    CaseInsensitiveLike,
    ColumnRef,
    Comparison,
    Compound,
    Exists,
    FilterExpression,
    InList,
    InSubquery,
    Not,
    NullCheck,
    OrderItem,
    RawPredicate,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Dialects
# =============================================================================

class Dialect:
    """
    Dialect-specific tokens: identifier quoting, placeholders, storage types,
    and capability flags.
    """

    name: str = ""
    identifier_quote: str = '"'
    supports_returning: bool = False
    supports_ilike: bool = False
    inline_forward_foreign_keys: bool = False
    type_map: Dict[ScalarType, str] = {}

    def quote(self, identifier: str) -> str:
        q = self.identifier_quote
        return f"{q}{identifier.replace(q, q + q)}{q}"

    def placeholder(self, index: int) -> str:
        """Placeholder for the ``index``-th (1-based) parameter."""
        raise NotImplementedError

    def column_type(self, scalar_type: ScalarType) -> str:
        return self.type_map[scalar_type]

    def generated_primary_key(self, scalar_type: ScalarType) -> str:
        raise NotImplementedError

    def limit_clause(self, limit: Optional[int], offset: Optional[int]) -> str:
        parts = []
        if limit is not None:
            parts.append(f"{SQLConstants.LIMIT} {limit}")
        if offset is not None:
            parts.append(f"{SQLConstants.OFFSET} {offset}")
        return " ".join(parts)

    def default_values_clause(self) -> str:
        return SQLConstants.DEFAULT_VALUES

    def __repr__(self) -> str:
        return f"<Dialect {self.name}>"


class SQLiteDialect(Dialect):
    name = DialectNames.SQLITE
    inline_forward_foreign_keys = True
    type_map = {
        ScalarType.INTEGER: "INTEGER",
        ScalarType.BIGINT: "INTEGER",
        ScalarType.TEXT: "TEXT",
        ScalarType.REAL: "REAL",
        ScalarType.NUMERIC: "NUMERIC",
        ScalarType.BOOLEAN: "BOOLEAN",
        ScalarType.DATE: "TEXT",
        ScalarType.TIMESTAMP: "TEXT",
        ScalarType.BLOB: "BLOB",
        ScalarType.UUID: "TEXT",
        ScalarType.JSON: "TEXT",
    }

    def placeholder(self, index: int) -> str:
        return "?"

    def generated_primary_key(self, scalar_type: ScalarType) -> str:
        return "INTEGER PRIMARY KEY"

    def limit_clause(self, limit: Optional[int], offset: Optional[int]) -> str:
        # SQLite cannot OFFSET without LIMIT
        if limit is None and offset is not None:
            limit = -1
        return super().limit_clause(limit, offset)


class PostgreSQLDialect(Dialect):
    name = DialectNames.POSTGRESQL
    supports_returning = True
    supports_ilike = True
    type_map = {
        ScalarType.INTEGER: "INTEGER",
        ScalarType.BIGINT: "BIGINT",
        ScalarType.TEXT: "TEXT",
        ScalarType.REAL: "DOUBLE PRECISION",
        ScalarType.NUMERIC: "NUMERIC",
        ScalarType.BOOLEAN: "BOOLEAN",
        ScalarType.DATE: "DATE",
        ScalarType.TIMESTAMP: "TIMESTAMP",
        ScalarType.BLOB: "BYTEA",
        ScalarType.UUID: "UUID",
        ScalarType.JSON: "JSONB",
    }

    def placeholder(self, index: int) -> str:
        return f"${index}"

    def generated_primary_key(self, scalar_type: ScalarType) -> str:
        serial = "BIGSERIAL" if scalar_type == ScalarType.BIGINT else "SERIAL"
        return f"{serial} {SQLConstants.PRIMARY_KEY}"


class MySQLDialect(Dialect):
    name = DialectNames.MYSQL
    identifier_quote = "`"
    type_map = {
        ScalarType.INTEGER: "INT",
        ScalarType.BIGINT: "BIGINT",
        ScalarType.TEXT: "VARCHAR(255)",
        ScalarType.REAL: "DOUBLE",
        ScalarType.NUMERIC: "DECIMAL(38, 10)",
        ScalarType.BOOLEAN: "BOOLEAN",
        ScalarType.DATE: "DATE",
        ScalarType.TIMESTAMP: "DATETIME(6)",
        ScalarType.BLOB: "BLOB",
        ScalarType.UUID: "CHAR(36)",
        ScalarType.JSON: "JSON",
    }

    # Largest row count MySQL accepts; it has no OFFSET-only form
    _MAX_LIMIT = 18446744073709551615

    def placeholder(self, index: int) -> str:
        return "%s"

    def generated_primary_key(self, scalar_type: ScalarType) -> str:
        return f"{self.column_type(scalar_type)} AUTO_INCREMENT {SQLConstants.PRIMARY_KEY}"

    def limit_clause(self, limit: Optional[int], offset: Optional[int]) -> str:
        if limit is None and offset is not None:
            limit = self._MAX_LIMIT
        return super().limit_clause(limit, offset)

    def default_values_clause(self) -> str:
        return "() VALUES ()"


_DIALECTS: Dict[str, Dialect] = {
    DialectNames.SQLITE: SQLiteDialect(),
    DialectNames.POSTGRESQL: PostgreSQLDialect(),
    "postgres": PostgreSQLDialect(),
    DialectNames.MYSQL: MySQLDialect(),
}


def get_dialect(dialect: Union[str, Dialect]) -> Dialect:
    if isinstance(dialect, Dialect):
        return dialect
    found = _DIALECTS.get(str(dialect).lower())
    if found is None:
        raise UnsupportedFeatureError(ErrorMessages.UNKNOWN_DIALECT.format(dialect=dialect))
    return found


# =============================================================================
# Compiled output
# =============================================================================

@dataclass(frozen=True)
class ProjectedColumn:
    """
    One position of the select list.

    Entity columns carry ``alias`` and ``property_name``; aggregates carry
    only ``label``. ``label`` is the raw-mode output key.
    """
    label: str
    alias: Optional[str] = None
    property_name: Optional[str] = None


@dataclass(frozen=True)
class AliasInfo:
    """How an alias in the statement relates to its parent."""
    alias: str
    entity: str
    parent_alias: Optional[str] = None
    property_name: Optional[str] = None
    selected: bool = True


@dataclass(frozen=True)
class CompiledQuery:
    """
    Result of compiling one AST node.

    :class: CompiledQuery
    :synopsis: SQL text, ordered parameters, and mapping hints
    """
    sql: str
    params: Tuple[Any, ...]
    projection: Tuple[ProjectedColumn, ...] = ()
    aliases: Tuple[AliasInfo, ...] = ()
    mode: ProjectionMode = ProjectionMode.RAW
    root_alias: Optional[str] = None
    returning: Tuple[str, ...] = ()

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(col.label for col in self.projection)

    def alias_info(self, alias: str) -> AliasInfo:
        for info in self.aliases:
            if info.alias == alias:
                return info
        raise KeyError(alias)


# =============================================================================
# Compiler
# =============================================================================

@dataclass
class _Scope:
    """Alias resolution scope; subselects chain to their enclosing scope."""
    aliases: Dict[str, str]
    parent: Optional["_Scope"] = None
    qualify: bool = True

    def entity_of(self, alias: str) -> Optional[str]:
        scope: Optional[_Scope] = self
        while scope is not None:
            if alias in scope.aliases:
                return scope.aliases[alias]
            scope = scope.parent
        return None


@dataclass
class _Context:
    """Per-compilation parameter accumulator."""
    dialect: Dialect
    params: List[Any] = field(default_factory=list)

    def bind(self, value: Any) -> str:
        self.params.append(value)
        return self.dialect.placeholder(len(self.params))


class SQLCompiler:
    """
    Compile AST nodes for one dialect against a finalized registry.

    Example:
        >>> compiler = SQLCompiler(registry, "sqlite")
        >>> compiled = compiler.compile(select_from(registry, "User").to_ast())
        >>> compiled.sql
        'SELECT "user"."id", "user"."name" FROM "user" "user"'
    """

    def __init__(self, registry: SchemaRegistry, dialect: Union[str, Dialect] = DialectNames.SQLITE) -> None:
        registry.require_finalized("compiling queries")
        self.registry = registry
        self.dialect = get_dialect(dialect)
        self._column_cache: Dict[Tuple[str, str], Optional[str]] = {}

    # ---- entry points ------------------------------------------------------

    def compile(self, node: QueryNode) -> CompiledQuery:
        if isinstance(node, SelectNode):
            compiled = self._compile_select_statement(node)
        elif isinstance(node, InsertNode):
            compiled = self._compile_insert(node)
        elif isinstance(node, UpdateNode):
            compiled = self._compile_update(node)
        elif isinstance(node, DeleteNode):
            compiled = self._compile_delete(node)
        elif isinstance(node, JunctionNode):
            compiled = self._compile_junction(node)
        else:
            raise QueryBuildError(f"Cannot compile {type(node).__name__}")
        logger.debug("Compiled SQL: %s (%d params)", compiled.sql, len(compiled.params))
        return compiled

    def compile_count(self, node: SelectNode) -> CompiledQuery:
        """``SELECT COUNT(...)`` over distinct root entities matching ``node``."""
        ctx = _Context(self.dialect)
        scope = _Scope(node.alias_entities())
        root = self.registry.resolve(node.entity)
        q = self.dialect.quote

        from_sql = self._from_and_joins(node, ctx, scope)
        where_sql = self._where_clause(node, ctx, scope)
        if not node.joins:
            sql = f"{SQLConstants.SELECT} {SQLConstants.COUNT_STAR} {from_sql}{where_sql}"
        elif len(root.primary_keys) == 1:
            pk = self._qualified(node.alias, root.primary_columns[0].column_name)
            sql = f"{SQLConstants.SELECT} COUNT({SQLConstants.DISTINCT} {pk}) {from_sql}{where_sql}"
        else:
            pks = SQLConstants.FIELD_SEPARATOR.join(
                self._qualified(node.alias, c.column_name) for c in root.primary_columns
            )
            inner = f"{SQLConstants.SELECT} {SQLConstants.DISTINCT} {pks} {from_sql}{where_sql}"
            sql = f"{SQLConstants.SELECT} {SQLConstants.COUNT_STAR} {SQLConstants.FROM} ({inner}) {q(NamingConstants.COUNT_LABEL)}"
        compiled = CompiledQuery(
            sql=sql,
            params=tuple(ctx.params),
            projection=(ProjectedColumn(NamingConstants.COUNT_LABEL),),
            mode=ProjectionMode.RAW,
            root_alias=node.alias,
        )
        logger.debug("Compiled SQL: %s (%d params)", compiled.sql, len(compiled.params))
        return compiled

    # ---- column resolution -------------------------------------------------

    def storage_column(self, entity: str, name: str) -> Optional[str]:
        """Storage column for a property, a column name, or an implicit foreign key."""
        key = (entity, name)
        if key in self._column_cache:
            return self._column_cache[key]
        meta = self.registry.resolve(entity)
        col = meta.column(name) or meta.column_by_name(name)
        result = col.column_name if col is not None else None
        if result is None:
            for res in self.registry.relations_of(entity):
                if res.is_owning_to_one and res.foreign_key_column == name:
                    result = name
                    break
        self._column_cache[key] = result
        return result

    def _require_column(self, entity: str, name: str, alias: Optional[str]) -> str:
        column = self.storage_column(entity, name)
        if column is None:
            raise UnknownColumnError(
                ErrorMessages.UNKNOWN_COLUMN.format(prop=name, entity=entity, alias=alias)
            )
        return column

    def _qualified(self, alias: str, column: str) -> str:
        q = self.dialect.quote
        return f"{q(alias)}.{q(column)}"

    def _column_sql(self, ref: ColumnRef, scope: _Scope) -> str:
        if not scope.qualify:
            entity = next(iter(scope.aliases.values()))
            if ref.alias is not None and ref.alias not in scope.aliases:
                raise QueryBuildError(ErrorMessages.UNKNOWN_QUERY_ALIAS.format(alias=ref.alias, ref=ref))
            return self.dialect.quote(self._require_column(entity, ref.property_name, ref.alias))
        if ref.alias is None:
            raise QueryBuildError(ErrorMessages.UNKNOWN_QUERY_ALIAS.format(alias=None, ref=ref))
        entity = scope.entity_of(ref.alias)
        if entity is None:
            raise QueryBuildError(ErrorMessages.UNKNOWN_QUERY_ALIAS.format(alias=ref.alias, ref=ref))
        return self._qualified(ref.alias, self._require_column(entity, ref.property_name, ref.alias))

    def _operand_sql(self, operand: Any, scope: _Scope) -> str:
        if isinstance(operand, ColumnRef):
            return self._column_sql(operand, scope)
        if isinstance(operand, Aggregate):
            return self._aggregate_sql(operand, scope)
        raise QueryBuildError(f"Unsupported operand {operand!r}")

    def _aggregate_sql(self, agg: Aggregate, scope: _Scope) -> str:
        if agg.ref is None:
            return SQLConstants.COUNT_STAR
        inner = self._column_sql(agg.ref, scope)
        if agg.function == AggregateFunction.COUNT_DISTINCT:
            return f"COUNT({SQLConstants.DISTINCT} {inner})"
        return f"{agg.function}({inner})"

    # ---- predicates --------------------------------------------------------

    def _predicate_sql(self, pred: FilterExpression, ctx: _Context, scope: _Scope) -> str:
        if isinstance(pred, Comparison):
            left = self._operand_sql(pred.left, scope)
            if isinstance(pred.right, (ColumnRef, Aggregate)):
                right = self._operand_sql(pred.right, scope)
            else:
                right = ctx.bind(pred.right)
            return f"{left} {pred.operator} {right}"

        if isinstance(pred, CaseInsensitiveLike):
            left = self._column_sql(pred.left, scope)
            if self.dialect.supports_ilike:
                return f"{left} ILIKE {ctx.bind(pred.pattern)}"
            return f"LOWER({left}) {ComparisonOperator.LIKE} LOWER({ctx.bind(pred.pattern)})"

        if isinstance(pred, InList):
            if not pred.values:
                return SQLConstants.ALWAYS_TRUE if pred.negated else SQLConstants.ALWAYS_FALSE
            left = self._column_sql(pred.left, scope)
            placeholders = SQLConstants.FIELD_SEPARATOR.join(ctx.bind(v) for v in pred.values)
            keyword = SQLConstants.NOT_IN if pred.negated else SQLConstants.IN
            return f"{left} {keyword} ({placeholders})"

        if isinstance(pred, NullCheck):
            keyword = SQLConstants.IS_NOT_NULL if pred.negated else SQLConstants.IS_NULL
            return f"{self._column_sql(pred.left, scope)} {keyword}"

        if isinstance(pred, Between):
            left = self._column_sql(pred.left, scope)
            return f"{left} {SQLConstants.BETWEEN} {ctx.bind(pred.low)} {SQLConstants.AND} {ctx.bind(pred.high)}"

        if isinstance(pred, Compound):
            joiner = f" {pred.operator} "
            return "(" + joiner.join(self._predicate_sql(item, ctx, scope) for item in pred.items) + ")"

        if isinstance(pred, Not):
            return f"{SQLConstants.NOT} ({self._predicate_sql(pred.item, ctx, scope)})"

        if isinstance(pred, InSubquery):
            left = self._column_sql(pred.left, scope)
            inner = self._subselect_sql(pred.subquery, ctx, scope, for_exists=False)
            keyword = SQLConstants.NOT_IN if pred.negated else SQLConstants.IN
            return f"{left} {keyword} ({inner})"

        if isinstance(pred, Exists):
            inner = self._subselect_sql(pred.subquery, ctx, scope, for_exists=True)
            prefix = f"{SQLConstants.NOT} " if pred.negated else ""
            return f"{prefix}{SQLConstants.EXISTS} ({inner})"

        if isinstance(pred, RawPredicate):
            return self._raw_sql(pred, ctx)

        raise QueryBuildError(f"Unsupported predicate {type(pred).__name__}")

    def _raw_sql(self, pred: RawPredicate, ctx: _Context) -> str:
        out: List[str] = []
        last = 0
        for match in pred.placeholders():
            out.append(pred.fragment[last:match.start()])
            out.append(ctx.bind(pred.value(match.group(1))))
            last = match.end()
        out.append(pred.fragment[last:])
        return "(" + "".join(out) + ")"

    def _subselect_sql(self, sub: SubSelect, ctx: _Context, outer: _Scope, for_exists: bool) -> str:
        node = sub.select
        scope = _Scope(node.alias_entities(), parent=outer)
        root = self.registry.resolve(node.entity)
        if node.items:
            columns = self._plain_items_sql(node, scope)
        elif for_exists:
            columns = "1"
        else:
            columns = SQLConstants.FIELD_SEPARATOR.join(
                self._qualified(node.alias, c.column_name) for c in root.primary_columns
            )
        distinct = f"{SQLConstants.DISTINCT} " if node.distinct else ""
        sql = f"{SQLConstants.SELECT} {distinct}{columns} {self._from_and_joins(node, ctx, scope)}"
        sql += self._where_clause(node, ctx, scope)
        sql += self._tail_clauses(node, ctx, scope)
        return sql

    def _plain_items_sql(self, node: SelectNode, scope: _Scope) -> str:
        parts = []
        for item in node.items:
            if isinstance(item, EntitySelection):
                meta = self.registry.resolve(scope.entity_of(item.alias) or node.entity)
                parts.extend(self._qualified(item.alias, c.column_name) for c in meta.columns)
            else:
                parts.append(self._operand_sql(item, scope))
        return SQLConstants.FIELD_SEPARATOR.join(parts)

    # ---- SELECT ------------------------------------------------------------

    def _compile_select_statement(self, node: SelectNode) -> CompiledQuery:
        self._check_aliases(node)
        if node.page is not None and node.limit is not None:
            raise QueryBuildError("Use either take/skip or limit/offset on one query, not both")
        ctx = _Context(self.dialect)
        scope = _Scope(node.alias_entities())

        projection, columns_sql = self._projection(node, scope)
        distinct = f"{SQLConstants.DISTINCT} " if node.distinct else ""
        sql = f"{SQLConstants.SELECT} {distinct}{columns_sql} {self._from_and_joins(node, ctx, scope)}"

        if node.page is not None and node.joins:
            sql += self._paginated_where(node, ctx, scope)
        else:
            sql += self._where_clause(node, ctx, scope)
        sql += self._tail_clauses(node, ctx, scope)

        if node.page is not None and not node.joins:
            sql += f" {self._limit_sql(node.page)}"
        elif node.limit is not None:
            sql += f" {self._limit_sql(node.limit)}"

        return CompiledQuery(
            sql=sql,
            params=tuple(ctx.params),
            projection=projection,
            aliases=self._alias_infos(node),
            mode=node.mode,
            root_alias=node.alias,
        )

    def _check_aliases(self, node: SelectNode) -> None:
        seen = {node.alias}
        for join in node.joins:
            if join.alias in seen:
                raise QueryBuildError(ErrorMessages.DUPLICATE_ALIAS.format(alias=join.alias))
            seen.add(join.alias)

    def _alias_infos(self, node: SelectNode) -> Tuple[AliasInfo, ...]:
        infos = [AliasInfo(node.alias, node.entity)]
        for join in node.joins:
            infos.append(AliasInfo(join.alias, join.entity, join.parent_alias, join.property_name, join.selected))
        return tuple(infos)

    def _projection(self, node: SelectNode, scope: _Scope) -> Tuple[Tuple[ProjectedColumn, ...], str]:
        raw = node.mode == ProjectionMode.RAW
        items = node.items
        if not items:
            items = (EntitySelection(node.alias),) + tuple(
                EntitySelection(j.alias) for j in node.joins if j.selected
            )

        projection: List[ProjectedColumn] = []
        parts: List[str] = []
        q = self.dialect.quote
        sep = NamingConstants.RAW_LABEL_SEPARATOR

        def add_column(alias: str, meta: EntityMetadata, prop: str) -> None:
            column = self._require_column(meta.name, prop, alias)
            label = f"{alias}{sep}{column}"
            sql = self._qualified(alias, column)
            parts.append(f"{sql} {SQLConstants.AS} {q(label)}" if raw else sql)
            col = meta.column(prop) or meta.column_by_name(prop)
            projection.append(ProjectedColumn(label, alias, col.property_name if col is not None else prop))

        for item in items:
            if isinstance(item, EntitySelection):
                entity = scope.entity_of(item.alias)
                if entity is None:
                    raise QueryBuildError(ErrorMessages.UNKNOWN_QUERY_ALIAS.format(alias=item.alias, ref=item.alias))
                meta = self.registry.resolve(entity)
                for col in meta.columns:
                    add_column(item.alias, meta, col.property_name)
            elif isinstance(item, ColumnRef):
                entity = scope.entity_of(item.alias) if item.alias is not None else None
                if entity is None:
                    raise QueryBuildError(ErrorMessages.UNKNOWN_QUERY_ALIAS.format(alias=item.alias, ref=item))
                add_column(item.alias, self.registry.resolve(entity), item.property_name)
            elif isinstance(item, Aggregate):
                if not raw:
                    raise QueryBuildError("Aggregates can only be selected in raw projection mode")
                label = item.label or self._aggregate_label(item)
                parts.append(f"{self._aggregate_sql(item, scope)} {SQLConstants.AS} {q(label)}")
                projection.append(ProjectedColumn(label))
            else:
                raise QueryBuildError(f"Unsupported select item {item!r}")
        return tuple(projection), SQLConstants.FIELD_SEPARATOR.join(parts)

    def _aggregate_label(self, agg: Aggregate) -> str:
        fn = str(agg.function).lower()
        if agg.ref is None:
            return fn
        sep = NamingConstants.RAW_LABEL_SEPARATOR
        return f"{fn}{sep}{agg.ref.alias}{sep}{agg.ref.property_name}"

    def _from_and_joins(self, node: SelectNode, ctx: _Context, scope: _Scope) -> str:
        q = self.dialect.quote
        root = self.registry.resolve(node.entity)
        parts = [f"{SQLConstants.FROM} {q(root.table_name)} {q(node.alias)}"]
        for join in node.joins:
            parts.append(self._join_sql(join, node, ctx, scope))
        return " ".join(parts)

    def _join_sql(self, join: JoinNode, node: SelectNode, ctx: _Context, scope: _Scope) -> str:
        q = self.dialect.quote
        res = self.registry.resolved_relation(join.owner_entity, join.property_name)
        target = self.registry.resolve(join.entity)
        extra: List[str] = []
        if join.condition is not None:
            extra.append(self._predicate_sql(join.condition, ctx, scope))
        if not node.with_deleted and target.delete_date_column is not None:
            extra.append(f"{self._qualified(join.alias, target.delete_date_column.column_name)} {SQLConstants.IS_NULL}")
        extra_sql = "".join(f" {SQLConstants.AND} {e}" for e in extra)

        if res.junction is None:
            on = f"{self._qualified(join.alias, res.remote_column)} = {self._qualified(join.parent_alias, res.local_column)}"
            return f"{join.join_type} {q(target.table_name)} {q(join.alias)} {SQLConstants.ON} {on}{extra_sql}"

        junction_alias = f"{join.alias}{NamingConstants.JUNCTION_ALIAS_SUFFIX}"
        first = (
            f"{join.join_type} {q(res.junction.name)} {q(junction_alias)} {SQLConstants.ON} "
            f"{self._qualified(junction_alias, res.junction_source_column)} = "
            f"{self._qualified(join.parent_alias, res.local_column)}"
        )
        second = (
            f"{join.join_type} {q(target.table_name)} {q(join.alias)} {SQLConstants.ON} "
            f"{self._qualified(join.alias, res.remote_column)} = "
            f"{self._qualified(junction_alias, res.junction_target_column)}{extra_sql}"
        )
        return f"{first} {second}"

    def _root_filters(self, node: SelectNode, ctx: _Context, scope: _Scope) -> List[str]:
        filters: List[str] = []
        root = self.registry.resolve(node.entity)
        if not node.with_deleted and root.delete_date_column is not None:
            filters.append(f"{self._qualified(node.alias, root.delete_date_column.column_name)} {SQLConstants.IS_NULL}")
        if node.where is not None:
            filters.append(self._predicate_sql(node.where, ctx, scope))
        return filters

    def _where_clause(self, node: SelectNode, ctx: _Context, scope: _Scope) -> str:
        filters = self._root_filters(node, ctx, scope)
        if not filters:
            return ""
        return f" {SQLConstants.WHERE} " + f" {SQLConstants.AND} ".join(filters)

    def _tail_clauses(self, node: SelectNode, ctx: _Context, scope: _Scope) -> str:
        sql = ""
        if node.group_by:
            sql += f" {SQLConstants.GROUP_BY} " + SQLConstants.FIELD_SEPARATOR.join(
                self._column_sql(ref, scope) for ref in node.group_by
            )
        if node.having is not None:
            sql += f" {SQLConstants.HAVING} {self._predicate_sql(node.having, ctx, scope)}"
        if node.order_by:
            sql += f" {SQLConstants.ORDER_BY} " + self._order_sql(node.order_by, scope)
        return sql

    def _order_sql(self, items: Tuple[OrderItem, ...], scope: _Scope) -> str:
        return SQLConstants.FIELD_SEPARATOR.join(
            f"{self._operand_sql(item.ref, scope)} {item.direction}" for item in items
        )

    def _limit_sql(self, limit: LimitNode) -> str:
        for clause, value in ((SQLConstants.LIMIT, limit.limit), (SQLConstants.OFFSET, limit.offset)):
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise QueryBuildError(ErrorMessages.INVALID_LIMIT.format(clause=clause, value=value))
        return self.dialect.limit_clause(limit.limit, limit.offset)

    def _paginated_where(self, node: SelectNode, ctx: _Context, scope: _Scope) -> str:
        """
        Restrict the joined select to one page of distinct root entities.

        Renders ``root.pk IN (SELECT pk FROM (SELECT DISTINCT root.pk, <order
        columns> ... ORDER BY ... LIMIT ...) page)``; the derived table keeps
        LIMIT out of the IN subquery itself.
        """
        q = self.dialect.quote
        root = self.registry.resolve(node.entity)
        for item in node.order_by:
            if not isinstance(item.ref, ColumnRef) or item.ref.alias != node.alias:
                raise UnsupportedFeatureError(ErrorMessages.PAGINATION_ORDER_UNSUPPORTED.format(ref=item.ref))

        pk_columns = [c.column_name for c in root.primary_columns]
        inner_columns = list(pk_columns)
        for item in node.order_by:
            column = self._require_column(node.entity, item.ref.property_name, node.alias)
            if column not in inner_columns:
                inner_columns.append(column)

        page_alias = f"{node.alias}{NamingConstants.PAGINATION_ALIAS_SUFFIX}"
        inner_select = SQLConstants.FIELD_SEPARATOR.join(self._qualified(node.alias, c) for c in inner_columns)
        inner = f"{SQLConstants.SELECT} {SQLConstants.DISTINCT} {inner_select} {self._from_and_joins(node, ctx, scope)}"
        inner += self._where_clause(node, ctx, scope)
        if node.order_by:
            inner += f" {SQLConstants.ORDER_BY} " + self._order_sql(node.order_by, scope)
        inner += f" {self._limit_sql(node.page)}"

        page_cols = SQLConstants.FIELD_SEPARATOR.join(self._qualified(page_alias, c) for c in pk_columns)
        outer_cols = SQLConstants.FIELD_SEPARATOR.join(self._qualified(node.alias, c) for c in pk_columns)
        if len(pk_columns) > 1:
            outer_cols = f"({outer_cols})"
        membership = (
            f"{outer_cols} {SQLConstants.IN} ({SQLConstants.SELECT} {page_cols} "
            f"{SQLConstants.FROM} ({inner}) {q(page_alias)})"
        )
        filters = [membership] + self._root_filters(node, ctx, scope)
        return f" {SQLConstants.WHERE} " + f" {SQLConstants.AND} ".join(filters)

    # ---- writes ------------------------------------------------------------

    def _returning_sql(self, entity: str, returning: Tuple[str, ...]) -> str:
        if not returning:
            return ""
        if not self.dialect.supports_returning:
            raise UnsupportedFeatureError(ErrorMessages.RETURNING_UNSUPPORTED.format(dialect=self.dialect.name))
        q = self.dialect.quote
        cols = SQLConstants.FIELD_SEPARATOR.join(q(self._require_column(entity, p, None)) for p in returning)
        return f" {SQLConstants.RETURNING} {cols}"

    def _compile_insert(self, node: InsertNode) -> CompiledQuery:
        meta = self.registry.resolve(node.entity)
        q = self.dialect.quote
        if not node.rows:
            raise QueryBuildError(ErrorMessages.EMPTY_INSERT.format(target=node.entity))
        keys = [name for name, _ in node.rows[0]]
        for row in node.rows[1:]:
            if [name for name, _ in row] != keys:
                raise QueryBuildError(f"Insert rows into {node.entity} must share the same columns")
        returning_sql = self._returning_sql(node.entity, node.returning)

        ctx = _Context(self.dialect)
        table = q(meta.table_name)
        if not keys:
            if len(node.rows) > 1:
                raise QueryBuildError(f"Cannot insert several default rows into {node.entity} at once")
            sql = f"{SQLConstants.INSERT_INTO} {table} {self.dialect.default_values_clause()}"
        else:
            columns = SQLConstants.FIELD_SEPARATOR.join(q(self._require_column(meta.name, k, None)) for k in keys)
            values = SQLConstants.FIELD_SEPARATOR.join(
                "(" + SQLConstants.FIELD_SEPARATOR.join(ctx.bind(v) for _, v in row) + ")" for row in node.rows
            )
            sql = f"{SQLConstants.INSERT_INTO} {table} ({columns}) {SQLConstants.VALUES} {values}"
        return CompiledQuery(sql=sql + returning_sql, params=tuple(ctx.params), returning=node.returning)

    def _unqualified_scope(self, entity: str) -> _Scope:
        return _Scope({lower_camel(entity): entity}, qualify=False)

    def _compile_update(self, node: UpdateNode) -> CompiledQuery:
        meta = self.registry.resolve(node.entity)
        q = self.dialect.quote
        if not node.assignments:
            raise QueryBuildError(ErrorMessages.EMPTY_UPDATE.format(target=node.entity))
        returning_sql = self._returning_sql(node.entity, node.returning)

        ctx = _Context(self.dialect)
        scope = self._unqualified_scope(node.entity)
        sets = SQLConstants.FIELD_SEPARATOR.join(
            f"{q(self._require_column(meta.name, name, None))} = {ctx.bind(value)}"
            for name, value in node.assignments
        )
        sql = f"{SQLConstants.UPDATE} {q(meta.table_name)} {SQLConstants.SET} {sets}"
        if node.where is not None:
            sql += f" {SQLConstants.WHERE} {self._predicate_sql(node.where, ctx, scope)}"
        return CompiledQuery(sql=sql + returning_sql, params=tuple(ctx.params), returning=node.returning)

    def _compile_delete(self, node: DeleteNode) -> CompiledQuery:
        meta = self.registry.resolve(node.entity)
        returning_sql = self._returning_sql(node.entity, node.returning)
        ctx = _Context(self.dialect)
        scope = self._unqualified_scope(node.entity)
        sql = f"{SQLConstants.DELETE_FROM} {self.dialect.quote(meta.table_name)}"
        if node.where is not None:
            sql += f" {SQLConstants.WHERE} {self._predicate_sql(node.where, ctx, scope)}"
        return CompiledQuery(sql=sql + returning_sql, params=tuple(ctx.params), returning=node.returning)

    def _compile_junction(self, node: JunctionNode) -> CompiledQuery:
        junction = self.registry.junction(node.junction)
        if junction is None:
            raise QueryBuildError(f"Unknown junction table: {node.junction}")
        q = self.dialect.quote
        ctx = _Context(self.dialect)
        known = {junction.owner_column, junction.target_column}
        for column, _ in node.values:
            if column not in known:
                raise UnknownColumnError(
                    ErrorMessages.UNKNOWN_COLUMN.format(prop=column, entity=junction.name, alias=None)
                )
        table = q(junction.name)

        if node.action == JunctionAction.INSERT:
            columns = SQLConstants.FIELD_SEPARATOR.join(q(c) for c, _ in node.values)
            values = SQLConstants.FIELD_SEPARATOR.join(ctx.bind(v) for _, v in node.values)
            sql = f"{SQLConstants.INSERT_INTO} {table} ({columns}) {SQLConstants.VALUES} ({values})"
            return CompiledQuery(sql=sql, params=tuple(ctx.params))

        where = f" {SQLConstants.AND} ".join(f"{q(c)} = {ctx.bind(v)}" for c, v in node.values)
        where_sql = f" {SQLConstants.WHERE} {where}" if where else ""
        if node.action == JunctionAction.DELETE:
            sql = f"{SQLConstants.DELETE_FROM} {table}{where_sql}"
            return CompiledQuery(sql=sql, params=tuple(ctx.params))
        if node.action == JunctionAction.COUNT:
            sql = f"{SQLConstants.SELECT} {SQLConstants.COUNT_STAR} {SQLConstants.FROM} {table}{where_sql}"
            return CompiledQuery(
                sql=sql, params=tuple(ctx.params), projection=(ProjectedColumn(NamingConstants.COUNT_LABEL),)
            )
        raise QueryBuildError(f"Unknown junction action: {node.action}")
