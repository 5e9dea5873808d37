# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Fluent query builders for RelAlchemy.

Every builder call returns a new builder; the receiver is never changed.
Relation paths are resolved against the schema registry as soon as they are
added, so a misspelled relation fails while building, not while executing.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING, Any, Dict, Generic, Iterator, List, Mapping, Optional, Tuple, TypeVar, Union
)
import logging

from .constants import (
    DialectNames,
    ErrorMessages,
    JoinType,
    NamingConstants,
    OrderDirection,
    ProjectionMode,
)
from .exceptions import EntityNotFoundError, QueryBuildError, UnknownRelationError
from .rel_orm import SchemaRegistry, lower_camel
from .rel_query_builder import (
    DeleteNode,
    EntitySelection,
    InsertNode,
    JoinNode,
    QueryState,
    SelectItem,
    SelectNode,
    SubSelect,
    UpdateNode,
)
from .rel_query_expressions import (
    Aggregate,
    ColumnRef,
    FilterExpression,
    OrderItem,
    QueryField,
    and_,
    criteria_to_predicate,
    or_,
    raw,
)
from .rel_sql_compiler import CompiledQuery, Dialect, SQLCompiler

if TYPE_CHECKING:
    from .rel_session import RelSession

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType")

Condition = Union[FilterExpression, Mapping[str, Any], str]


def _check_count(clause: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise QueryBuildError(ErrorMessages.INVALID_LIMIT.format(clause=clause, value=value))
    return value


def _to_predicate(condition: Condition, params: Optional[Mapping[str, Any]] = None) -> FilterExpression:
    if isinstance(condition, FilterExpression):
        return condition
    if isinstance(condition, str):
        return raw(condition, params)
    if isinstance(condition, Mapping):
        predicate = criteria_to_predicate(condition)
        if predicate is None:
            raise QueryBuildError("Empty criteria")
        return predicate
    raise QueryBuildError(f"Unsupported condition: {condition!r}")


class Query(Generic[ModelType]):
    """
    Immutable select builder.

    Example:
        >>> q = (Query(registry, "User")
        ...      .left_join_and_select("user.posts")
        ...      .where(field("user.name") == "A")
        ...      .order_by("user.id"))
        >>> q.to_sql().sql
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        entity: Any,
        alias: Optional[str] = None,
        session: Optional["RelSession"] = None,
    ) -> None:
        registry.require_finalized("building queries")
        meta = registry.entity_for(entity)
        self._registry = registry
        self._session = session
        self._state = QueryState(entity=meta.name, alias=alias or lower_camel(meta.name))

    @classmethod
    def from_(
        cls, registry: SchemaRegistry, entity: Any, alias: Optional[str] = None,
        session: Optional["RelSession"] = None,
    ) -> "Query":
        return cls(registry, entity, alias, session)

    def _copy_with_state(self, **kwargs: Any) -> "Query":
        """Create a new Query with updated state."""
        new_query = Query.__new__(Query)
        new_query._registry = self._registry
        new_query._session = self._session
        new_query._state = self._state.copy(**kwargs)
        return new_query

    def with_session(self, session: "RelSession") -> "Query":
        new_query = self._copy_with_state()
        new_query._session = session
        return new_query

    @property
    def alias(self) -> str:
        return self._state.alias

    @property
    def entity(self) -> str:
        return self._state.entity

    # ---- projection --------------------------------------------------------

    def _select_item(self, item: Union[str, QueryField, SelectItem]) -> SelectItem:
        if isinstance(item, QueryField):
            item = item.operand
        if isinstance(item, str):
            if NamingConstants.RELATION_PATH_SEPARATOR not in item and item in self._state.aliases:
                return EntitySelection(item)
            item = ColumnRef.parse(item)
        if isinstance(item, (ColumnRef, Aggregate)):
            bound = item.bind(self._state.alias)
            ref = bound.ref if isinstance(bound, Aggregate) else bound
            if ref is not None:
                self._state.require_alias(ref.alias, str(ref))
            return bound
        if isinstance(item, EntitySelection):
            self._state.require_alias(item.alias, item.alias)
            return item
        raise QueryBuildError(f"Unsupported select item: {item!r}")

    def select(self, *items: Union[str, QueryField, SelectItem]) -> "Query":
        """Replace the select list. No items selects the root and every selected join."""
        return self._copy_with_state(items=[self._select_item(i) for i in items])

    def add_select(self, *items: Union[str, QueryField, SelectItem]) -> "Query":
        return self._copy_with_state(items=list(self._state.items) + [self._select_item(i) for i in items])

    def raw(self) -> "Query":
        """Return flat rows labeled ``<alias>_<column>`` instead of entities."""
        return self._copy_with_state(mode=ProjectionMode.RAW)

    def entities(self) -> "Query":
        return self._copy_with_state(mode=ProjectionMode.ENTITY)

    def distinct(self, enabled: bool = True) -> "Query":
        return self._copy_with_state(distinct=enabled)

    def with_deleted(self) -> "Query":
        """Include soft-removed rows."""
        return self._copy_with_state(with_deleted=True)

    # ---- filtering ---------------------------------------------------------

    def _bound(self, condition: Condition, params: Optional[Mapping[str, Any]]) -> FilterExpression:
        return _to_predicate(condition, params).bind(self._state.alias)

    def where(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> "Query":
        """Replace the WHERE predicate. Strings are raw fragments with ``:name`` params."""
        return self._copy_with_state(where=self._bound(condition, params))

    def and_where(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> "Query":
        predicate = self._bound(condition, params)
        if self._state.where is not None:
            predicate = and_(self._state.where, predicate)
        return self._copy_with_state(where=predicate)

    def or_where(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> "Query":
        predicate = self._bound(condition, params)
        if self._state.where is not None:
            predicate = or_(self._state.where, predicate)
        return self._copy_with_state(where=predicate)

    def filter_by(self, **criteria: Any) -> "Query":
        """Equality criteria on root properties, ANDed onto the WHERE predicate."""
        predicate = criteria_to_predicate(criteria, alias=self._state.alias)
        return self if predicate is None else self.and_where(predicate)

    # ---- joins -------------------------------------------------------------

    def join(
        self,
        path: str,
        alias: Optional[str] = None,
        condition: Optional[Condition] = None,
        params: Optional[Mapping[str, Any]] = None,
        join_type: Union[JoinType, str] = JoinType.INNER,
        select: bool = False,
    ) -> "Query":
        """
        Join the relation at ``path`` (``"<alias>.<property>"``).

        Args:
            path: Relation path; a bare property is relative to the root alias
            alias: Alias of the joined entity; defaults to ``<parent>__<property>``
            condition: Extra predicate ANDed into the ON clause
            join_type: Inner or left join
            select: Project the joined entity and attach it in entity mode

        Raises:
            UnknownRelationError: The path does not name a relation
            QueryBuildError: The alias is already used
        """
        parent, sep, prop = path.rpartition(NamingConstants.RELATION_PATH_SEPARATOR)
        if not prop:
            raise QueryBuildError(ErrorMessages.INVALID_RELATION_PATH.format(path=path))
        if not sep:
            parent = self._state.alias
        if parent not in self._state.aliases:
            raise UnknownRelationError(ErrorMessages.UNKNOWN_ALIAS.format(alias=parent, path=path))

        owner = self._state.entity_of(parent)
        relation = self._registry.resolve(owner).relation(prop)
        if relation is None:
            raise UnknownRelationError(ErrorMessages.UNKNOWN_RELATION.format(path=path, entity=owner, prop=prop))
        resolved = self._registry.resolved_relation(owner, prop)

        alias = alias or f"{parent}{NamingConstants.ALIAS_PATH_SEPARATOR}{prop}"
        if alias in self._state.aliases:
            raise QueryBuildError(ErrorMessages.DUPLICATE_ALIAS.format(alias=alias))

        on = None
        if condition is not None:
            # Bare names in an ON condition refer to the joined entity
            on = _to_predicate(condition, params).bind(alias)
        join = JoinNode(
            alias=alias,
            parent_alias=parent,
            owner_entity=owner,
            property_name=prop,
            entity=resolved.target,
            join_type=JoinType(join_type),
            condition=on,
            selected=select,
        )
        return self._copy_with_state(
            joins=list(self._state.joins) + [join],
            aliases=list(self._state.aliases) + [alias],
        )

    def inner_join(self, path: str, alias: Optional[str] = None, condition: Optional[Condition] = None,
                   params: Optional[Mapping[str, Any]] = None) -> "Query":
        return self.join(path, alias, condition, params, JoinType.INNER)

    def left_join(self, path: str, alias: Optional[str] = None, condition: Optional[Condition] = None,
                  params: Optional[Mapping[str, Any]] = None) -> "Query":
        return self.join(path, alias, condition, params, JoinType.LEFT)

    def inner_join_and_select(self, path: str, alias: Optional[str] = None, condition: Optional[Condition] = None,
                              params: Optional[Mapping[str, Any]] = None) -> "Query":
        return self.join(path, alias, condition, params, JoinType.INNER, select=True)

    def left_join_and_select(self, path: str, alias: Optional[str] = None, condition: Optional[Condition] = None,
                             params: Optional[Mapping[str, Any]] = None) -> "Query":
        return self.join(path, alias, condition, params, JoinType.LEFT, select=True)

    join_and_select = inner_join_and_select

    # ---- ordering, grouping, pagination ------------------------------------

    def _order_item(self, ref: Union[str, QueryField, OrderItem], direction: Union[OrderDirection, str]) -> OrderItem:
        if isinstance(ref, OrderItem):
            return ref.bind(self._state.alias)
        operand = ref.operand if isinstance(ref, QueryField) else ColumnRef.parse(ref)
        return OrderItem(operand, OrderDirection(str(direction).upper())).bind(self._state.alias)

    def order_by(self, ref: Union[str, QueryField, OrderItem],
                 direction: Union[OrderDirection, str] = OrderDirection.ASC) -> "Query":
        """Replace the ordering."""
        return self._copy_with_state(order_by=[self._order_item(ref, direction)])

    def add_order_by(self, ref: Union[str, QueryField, OrderItem],
                     direction: Union[OrderDirection, str] = OrderDirection.ASC) -> "Query":
        return self._copy_with_state(order_by=list(self._state.order_by) + [self._order_item(ref, direction)])

    def group_by(self, *refs: Union[str, QueryField]) -> "Query":
        items = [r.ref if isinstance(r, QueryField) else ColumnRef.parse(r) for r in refs]
        return self._copy_with_state(group_by=[r.bind(self._state.alias) for r in items])

    def having(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> "Query":
        return self._copy_with_state(having=self._bound(condition, params))

    def limit(self, count: Optional[int]) -> "Query":
        """SQL LIMIT on result rows (joined rows included)."""
        return self._copy_with_state(limit_value=_check_count("LIMIT", count))

    def offset(self, count: Optional[int]) -> "Query":
        return self._copy_with_state(offset_value=_check_count("OFFSET", count))

    def take(self, count: Optional[int]) -> "Query":
        """Limit the number of root entities, independent of join fan-out."""
        return self._copy_with_state(take_value=_check_count("LIMIT", count))

    def skip(self, count: Optional[int]) -> "Query":
        return self._copy_with_state(skip_value=_check_count("OFFSET", count))

    # ---- output ------------------------------------------------------------

    def to_ast(self) -> SelectNode:
        return self._state.to_node()

    def subquery(self) -> SubSelect:
        return SubSelect(self.to_ast())

    def to_sql(self, dialect: Union[str, Dialect, None] = None) -> CompiledQuery:
        if dialect is None:
            dialect = self._session.dialect if self._session is not None else DialectNames.SQLITE
        return SQLCompiler(self._registry, dialect).compile(self.to_ast())

    # ---- execution ---------------------------------------------------------

    def _require_session(self) -> "RelSession":
        if self._session is None:
            raise QueryBuildError(ErrorMessages.NO_SESSION)
        return self._session

    def all(self) -> Union[List[ModelType], List[Dict[str, Any]]]:
        """Entities in entity mode, label-keyed dicts in raw mode."""
        session = self._require_session()
        node = self.to_ast()
        if node.mode == ProjectionMode.RAW:
            return session.fetch_raw(node).rows
        return session.fetch_entities(node)

    def get_many(self) -> List[ModelType]:
        return self.entities().all()

    def get_raw_many(self) -> List[Dict[str, Any]]:
        return self.raw().all()

    def first(self) -> Union[ModelType, Dict[str, Any], None]:
        """
        First root entity (or raw row), or ``None``.

        Pagination the caller already set is kept and capped at one; without
        any, entity mode pages by root entity and raw mode by row.
        """
        state = self._state
        row_paged = state.limit_value is not None or state.offset_value is not None
        root_paged = state.take_value is not None or state.skip_value is not None
        if row_paged:
            query = self.limit(min(state.limit_value, 1) if state.limit_value is not None else 1)
        elif root_paged or state.mode == ProjectionMode.ENTITY:
            query = self.take(min(state.take_value, 1) if state.take_value is not None else 1)
        else:
            query = self.limit(1)
        results = query.all()
        return results[0] if results else None

    def one(self) -> Union[ModelType, Dict[str, Any]]:
        result = self.first()
        if result is None:
            raise EntityNotFoundError(
                ErrorMessages.ENTITY_NOT_FOUND.format(entity=self._state.entity, criteria=self._state.where)
            )
        return result

    def count(self) -> int:
        return self._require_session().fetch_count(self.to_ast())

    def exists(self) -> bool:
        return self.count() > 0

    def __iter__(self) -> Iterator[Union[ModelType, Dict[str, Any]]]:
        return iter(self.all())

    def __repr__(self) -> str:
        return f"<Query {self._state.entity} as {self._state.alias}>"


class _WriteQuery:
    """Shared plumbing of the write builders."""

    def __init__(self, registry: SchemaRegistry, entity: Any, session: Optional["RelSession"] = None) -> None:
        registry.require_finalized("building queries")
        self._registry = registry
        self._entity = registry.entity_for(entity).name
        self._session = session
        self._returning: Tuple[str, ...] = ()

    def _clone(self, **attrs: Any) -> Any:
        new = self.__class__.__new__(self.__class__)
        new.__dict__.update(self.__dict__)
        new.__dict__.update(attrs)
        return new

    def returning(self, *properties: str) -> Any:
        """RETURNING columns; compiling fails on dialects without RETURNING."""
        return self._clone(_returning=tuple(properties))

    def to_ast(self) -> Any:
        raise NotImplementedError

    def to_sql(self, dialect: Union[str, Dialect, None] = None) -> CompiledQuery:
        if dialect is None:
            dialect = self._session.dialect if self._session is not None else DialectNames.SQLITE
        return SQLCompiler(self._registry, dialect).compile(self.to_ast())

    def execute(self) -> Any:
        if self._session is None:
            raise QueryBuildError(ErrorMessages.NO_SESSION)
        return self._session.execute_node(self.to_ast())


class _FilteredWriteQuery(_WriteQuery):
    _where: Optional[FilterExpression] = None

    def where(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> Any:
        return self._clone(_where=_to_predicate(condition, params))

    def and_where(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> Any:
        predicate = _to_predicate(condition, params)
        if self._where is not None:
            predicate = and_(self._where, predicate)
        return self._clone(_where=predicate)

    def or_where(self, condition: Condition, params: Optional[Mapping[str, Any]] = None) -> Any:
        predicate = _to_predicate(condition, params)
        if self._where is not None:
            predicate = or_(self._where, predicate)
        return self._clone(_where=predicate)


class InsertQuery(_WriteQuery):
    """``insert_into(registry, "User").values({"name": "A"})``"""

    _rows: Tuple[Tuple[Tuple[str, Any], ...], ...] = ()

    def values(self, *rows: Union[Mapping[str, Any], List[Mapping[str, Any]]]) -> "InsertQuery":
        flat: List[Mapping[str, Any]] = []
        for row in rows:
            if isinstance(row, (list, tuple)):
                flat.extend(row)
            else:
                flat.append(row)
        if not flat:
            raise QueryBuildError(ErrorMessages.EMPTY_INSERT.format(target=self._entity))
        keys = list(flat[0].keys())
        normalized = []
        for row in flat:
            if set(row.keys()) != set(keys):
                raise QueryBuildError(f"Insert rows into {self._entity} must share the same columns")
            normalized.append(tuple((k, row[k]) for k in keys))
        return self._clone(_rows=self._rows + tuple(normalized))

    def to_ast(self) -> InsertNode:
        return InsertNode(self._entity, self._rows, self._returning)


class UpdateQuery(_FilteredWriteQuery):
    """``update(registry, "User").set(name="B").where({"id": 1})``"""

    _assignments: Tuple[Tuple[str, Any], ...] = ()

    def set(self, values: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> "UpdateQuery":
        merged = dict(self._assignments)
        merged.update(values or {})
        merged.update(kwargs)
        return self._clone(_assignments=tuple(merged.items()))

    def to_ast(self) -> UpdateNode:
        return UpdateNode(self._entity, self._assignments, self._where, self._returning)


class DeleteQuery(_FilteredWriteQuery):
    """``delete_from(registry, "User").where({"id": 1})``"""

    def to_ast(self) -> DeleteNode:
        return DeleteNode(self._entity, self._where, self._returning)


def select_from(registry: SchemaRegistry, entity: Any, alias: Optional[str] = None,
                session: Optional["RelSession"] = None) -> Query:
    return Query(registry, entity, alias, session)


def insert_into(registry: SchemaRegistry, entity: Any, session: Optional["RelSession"] = None) -> InsertQuery:
    return InsertQuery(registry, entity, session)


def update(registry: SchemaRegistry, entity: Any, session: Optional["RelSession"] = None) -> UpdateQuery:
    return UpdateQuery(registry, entity, session)


def delete_from(registry: SchemaRegistry, entity: Any, session: Optional["RelSession"] = None) -> DeleteQuery:
    return DeleteQuery(registry, entity, session)
