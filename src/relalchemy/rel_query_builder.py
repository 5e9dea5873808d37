# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Query AST nodes and query state for RelAlchemy.

The AST is a tree of frozen dataclasses. Relations are referenced by
``(entity, property)`` names and looked up in the schema registry when
compiling, so the tree never points back into the (possibly cyclic)
relation graph.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional, Tuple, Union

from .constants import ErrorMessages, JoinType, ProjectionMode
from .exceptions import QueryBuildError
from .rel_query_expressions import Aggregate, ColumnRef, FilterExpression, OrderItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitySelection:
    """Every mapped column of ``alias``."""
    alias: str


SelectItem = Union[ColumnRef, Aggregate, EntitySelection]


@dataclass(frozen=True)
class JoinNode:
    """
    Join of ``parent_alias.property_name`` under ``alias``.

    ``selected`` joins contribute their columns to the projection and are
    attached to the parent by the result mapper.
    """
    alias: str
    parent_alias: str
    owner_entity: str
    property_name: str
    entity: str
    join_type: JoinType = JoinType.INNER
    condition: Optional[FilterExpression] = None
    selected: bool = False


@dataclass(frozen=True)
class LimitNode:
    limit: Optional[int] = None
    offset: Optional[int] = None


@dataclass(frozen=True)
class SelectNode:
    """
    SELECT statement.

    ``limit`` applies to the SQL result set; ``page`` (take/skip) applies to
    distinct root entities and compiles to a root-key subselect when joins
    are present.
    """
    entity: str
    alias: str
    items: Tuple[SelectItem, ...] = ()
    joins: Tuple[JoinNode, ...] = ()
    where: Optional[FilterExpression] = None
    group_by: Tuple[ColumnRef, ...] = ()
    having: Optional[FilterExpression] = None
    order_by: Tuple[OrderItem, ...] = ()
    limit: Optional[LimitNode] = None
    page: Optional[LimitNode] = None
    distinct: bool = False
    with_deleted: bool = False
    mode: ProjectionMode = ProjectionMode.ENTITY

    def alias_entities(self) -> Dict[str, str]:
        """alias -> entity name for the root and every join."""
        result = {self.alias: self.entity}
        for join in self.joins:
            result[join.alias] = join.entity
        return result

    def join_for(self, alias: str) -> Optional[JoinNode]:
        for join in self.joins:
            if join.alias == alias:
                return join
        return None


@dataclass(frozen=True)
class SubSelect:
    """A select used inside IN or EXISTS."""
    select: SelectNode


@dataclass(frozen=True)
class InsertNode:
    """
    INSERT of one or more rows.

    Rows are ``((property, value), ...)`` tuples; implicit foreign keys are
    keyed by their column name.
    """
    entity: str
    rows: Tuple[Tuple[Tuple[str, Any], ...], ...]
    returning: Tuple[str, ...] = ()


@dataclass(frozen=True)
class UpdateNode:
    entity: str
    assignments: Tuple[Tuple[str, Any], ...]
    where: Optional[FilterExpression] = None
    returning: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DeleteNode:
    entity: str
    where: Optional[FilterExpression] = None
    returning: Tuple[str, ...] = ()


class JunctionAction:
    INSERT = "insert"
    DELETE = "delete"
    COUNT = "count"


@dataclass(frozen=True)
class JunctionNode:
    """Insert, delete or count junction rows matching storage column values."""
    action: str
    junction: str
    values: Tuple[Tuple[str, Any], ...]


QueryNode = Union[SelectNode, InsertNode, UpdateNode, DeleteNode, JunctionNode]


@dataclass
class QueryState:
    """Immutable state for select building; mutate only through copy()."""
    entity: str
    alias: str
    items: Tuple[SelectItem, ...] = ()
    joins: Tuple[JoinNode, ...] = ()
    where: Optional[FilterExpression] = None
    group_by: Tuple[ColumnRef, ...] = ()
    having: Optional[FilterExpression] = None
    order_by: Tuple[OrderItem, ...] = ()
    limit_value: Optional[int] = None
    offset_value: Optional[int] = None
    take_value: Optional[int] = None
    skip_value: Optional[int] = None
    distinct: bool = False
    with_deleted: bool = False
    mode: ProjectionMode = ProjectionMode.ENTITY
    aliases: Tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.aliases:
            self.aliases = (self.alias,)

    def copy(self, **kwargs: Any) -> "QueryState":
        """Create a copy with updated fields."""
        new_state = copy.copy(self)
        for key, value in kwargs.items():
            if not hasattr(new_state, key):
                raise ValueError(f"Cannot update non-existent field '{key}' in QueryState")
            if key in ("items", "joins", "group_by", "order_by", "aliases"):
                value = tuple(value) if value else ()
            setattr(new_state, key, value)
        return new_state

    def require_alias(self, alias: str, path: str) -> None:
        if alias not in self.aliases:
            raise QueryBuildError(ErrorMessages.UNKNOWN_ALIAS.format(alias=alias, path=path))

    def entity_of(self, alias: str) -> str:
        if alias == self.alias:
            return self.entity
        for join in self.joins:
            if join.alias == alias:
                return join.entity
        raise QueryBuildError(ErrorMessages.UNKNOWN_QUERY_ALIAS.format(alias=alias, ref=alias))

    def to_node(self) -> SelectNode:
        limit = None
        if self.limit_value is not None or self.offset_value is not None:
            limit = LimitNode(self.limit_value, self.offset_value)
        page = None
        if self.take_value is not None or self.skip_value is not None:
            page = LimitNode(self.take_value, self.skip_value)
        return SelectNode(
            entity=self.entity,
            alias=self.alias,
            items=self.items,
            joins=self.joins,
            where=self.where,
            group_by=self.group_by,
            having=self.having,
            order_by=self.order_by,
            limit=limit,
            page=page,
            distinct=self.distinct,
            with_deleted=self.with_deleted,
            mode=self.mode,
        )
