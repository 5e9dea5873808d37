# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Query expressions for RelAlchemy.

Predicates are frozen dataclasses, so two identical builder call sequences
produce structurally equal trees. Values are stored as given and are always
bound as parameters by the compiler; nothing here renders SQL text.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Tuple, Union

from .constants import (
    AggregateFunction,
    ComparisonOperator,
    ErrorMessages,
    LogicalOperator,
    NamingConstants,
    OrderDirection,
)
from .exceptions import QueryBuildError

if TYPE_CHECKING:
    from .rel_query_builder import SubSelect


# =============================================================================
# Operands
# =============================================================================

@dataclass(frozen=True)
class ColumnRef:
    """
    Reference to a column of an aliased entity.

    ``alias`` is ``None`` for the query root until the builder binds it.
    ``property_name`` is a mapped property or, for foreign keys without a
    declared column, the storage column name.
    """
    alias: Optional[str]
    property_name: str

    @classmethod
    def parse(cls, path: str) -> "ColumnRef":
        """``"user.name"`` -> ``ColumnRef("user", "name")``; ``"name"`` -> root alias."""
        alias, sep, prop = path.rpartition(NamingConstants.RELATION_PATH_SEPARATOR)
        if not prop:
            raise QueryBuildError(f"Empty column reference: {path!r}")
        return cls(alias if sep else None, prop)

    def bind(self, root_alias: str) -> "ColumnRef":
        return self if self.alias is not None else ColumnRef(root_alias, self.property_name)

    def __str__(self) -> str:
        return f"{self.alias}.{self.property_name}" if self.alias else self.property_name


@dataclass(frozen=True)
class Aggregate:
    """Aggregate over a column, or ``COUNT(*)`` when ``ref`` is ``None``."""
    function: AggregateFunction
    ref: Optional[ColumnRef] = None
    label: Optional[str] = None

    def bind(self, root_alias: str) -> "Aggregate":
        if self.ref is None:
            return self
        return Aggregate(self.function, self.ref.bind(root_alias), self.label)

    def labeled(self, label: str) -> "Aggregate":
        return Aggregate(self.function, self.ref, label)


Operand = Union[ColumnRef, Aggregate]


# =============================================================================
# Predicates
# =============================================================================

class FilterExpression:
    """Base class of predicate nodes; supports ``&``, ``|`` and ``~``."""

    def __and__(self, other: "FilterExpression") -> "FilterExpression":
        return and_(self, other)

    def __or__(self, other: "FilterExpression") -> "FilterExpression":
        return or_(self, other)

    def __invert__(self) -> "FilterExpression":
        return not_(self)

    def bind(self, root_alias: str) -> "FilterExpression":
        """Return a copy whose root-relative references use ``root_alias``."""
        return self


@dataclass(frozen=True)
class Comparison(FilterExpression):
    """``left <op> right``; ``right`` is a bound value or another operand."""
    left: Operand
    operator: ComparisonOperator
    right: Any

    def bind(self, root_alias: str) -> "Comparison":
        right = self.right.bind(root_alias) if isinstance(self.right, (ColumnRef, Aggregate)) else self.right
        return Comparison(self.left.bind(root_alias), self.operator, right)


@dataclass(frozen=True)
class CaseInsensitiveLike(FilterExpression):
    """Case-insensitive LIKE; ILIKE where the dialect has it."""
    left: ColumnRef
    pattern: str

    def bind(self, root_alias: str) -> "CaseInsensitiveLike":
        return CaseInsensitiveLike(self.left.bind(root_alias), self.pattern)


@dataclass(frozen=True)
class InList(FilterExpression):
    """``left IN (...)``; an empty list is always false (always true when negated)."""
    left: ColumnRef
    values: Tuple[Any, ...]
    negated: bool = False

    def bind(self, root_alias: str) -> "InList":
        return InList(self.left.bind(root_alias), self.values, self.negated)


@dataclass(frozen=True)
class NullCheck(FilterExpression):
    left: ColumnRef
    negated: bool = False

    def bind(self, root_alias: str) -> "NullCheck":
        return NullCheck(self.left.bind(root_alias), self.negated)


@dataclass(frozen=True)
class Between(FilterExpression):
    left: ColumnRef
    low: Any
    high: Any

    def bind(self, root_alias: str) -> "Between":
        return Between(self.left.bind(root_alias), self.low, self.high)


@dataclass(frozen=True)
class Compound(FilterExpression):
    """AND / OR over two or more predicates."""
    operator: LogicalOperator
    items: Tuple[FilterExpression, ...]

    def bind(self, root_alias: str) -> "Compound":
        return Compound(self.operator, tuple(item.bind(root_alias) for item in self.items))


@dataclass(frozen=True)
class Not(FilterExpression):
    item: FilterExpression

    def bind(self, root_alias: str) -> "Not":
        return Not(self.item.bind(root_alias))


@dataclass(frozen=True)
class InSubquery(FilterExpression):
    """``left IN (SELECT ...)``."""
    left: ColumnRef
    subquery: "SubSelect"
    negated: bool = False

    def bind(self, root_alias: str) -> "InSubquery":
        return InSubquery(self.left.bind(root_alias), self.subquery, self.negated)


@dataclass(frozen=True)
class Exists(FilterExpression):
    subquery: "SubSelect"
    negated: bool = False


_QUOTE_CHARS = ("'", '"', "`")
_RAW_PARAMETER = re.compile(r"(?<!:):([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class RawPredicate(FilterExpression):
    """
    Caller-written SQL fragment with ``:name`` placeholders.

    Quoted literals are rejected; every value must arrive through
    ``params``. Column references inside the fragment are used verbatim.
    """
    fragment: str
    params: Tuple[Tuple[str, Any], ...] = ()

    def __post_init__(self) -> None:
        if any(ch in self.fragment for ch in _QUOTE_CHARS):
            raise QueryBuildError(ErrorMessages.RAW_FRAGMENT_LITERAL.format(fragment=self.fragment))
        bound = {name for name, _ in self.params}
        for name in _RAW_PARAMETER.findall(self.fragment):
            if name not in bound:
                raise QueryBuildError(
                    ErrorMessages.RAW_FRAGMENT_MISSING_PARAM.format(fragment=self.fragment, name=name)
                )

    def placeholders(self) -> Iterable[re.Match]:
        return _RAW_PARAMETER.finditer(self.fragment)

    def value(self, name: str) -> Any:
        for key, value in self.params:
            if key == name:
                return value
        raise KeyError(name)


# =============================================================================
# Order items
# =============================================================================

@dataclass(frozen=True)
class OrderItem:
    ref: Operand
    direction: OrderDirection = OrderDirection.ASC

    def bind(self, root_alias: str) -> "OrderItem":
        return OrderItem(self.ref.bind(root_alias), self.direction)


# =============================================================================
# Fluent field wrapper
# =============================================================================

class QueryField:
    """
    Operator-overloading wrapper producing predicates.

    >>> field("user.name") == "A"
    Comparison(left=ColumnRef(alias='user', property_name='name'), ...)
    """

    __slots__ = ("operand",)

    def __init__(self, operand: Union[str, Operand], alias: Optional[str] = None) -> None:
        if isinstance(operand, str):
            operand = ColumnRef(alias, operand) if alias is not None else ColumnRef.parse(operand)
        self.operand = operand

    @property
    def ref(self) -> ColumnRef:
        if not isinstance(self.operand, ColumnRef):
            raise QueryBuildError(f"{self.operand} is not a column reference")
        return self.operand

    def _compare(self, operator: ComparisonOperator, other: Any) -> Comparison:
        if isinstance(other, QueryField):
            other = other.operand
        return Comparison(self.operand, operator, other)

    def __eq__(self, other: Any) -> FilterExpression:  # type: ignore[override]
        if other is None:
            return NullCheck(self.ref)
        return self._compare(ComparisonOperator.EQ, other)

    def __ne__(self, other: Any) -> FilterExpression:  # type: ignore[override]
        if other is None:
            return NullCheck(self.ref, negated=True)
        return self._compare(ComparisonOperator.NEQ, other)

    def __lt__(self, other: Any) -> Comparison:
        return self._compare(ComparisonOperator.LT, other)

    def __le__(self, other: Any) -> Comparison:
        return self._compare(ComparisonOperator.LTE, other)

    def __gt__(self, other: Any) -> Comparison:
        return self._compare(ComparisonOperator.GT, other)

    def __ge__(self, other: Any) -> Comparison:
        return self._compare(ComparisonOperator.GTE, other)

    __hash__ = object.__hash__

    def in_(self, values: Union[Iterable[Any], "SubSelect"]) -> FilterExpression:
        from .rel_query_builder import SubSelect

        if isinstance(values, SubSelect):
            return InSubquery(self.ref, values)
        return InList(self.ref, tuple(values))

    def not_in(self, values: Union[Iterable[Any], "SubSelect"]) -> FilterExpression:
        from .rel_query_builder import SubSelect

        if isinstance(values, SubSelect):
            return InSubquery(self.ref, values, negated=True)
        return InList(self.ref, tuple(values), negated=True)

    def like(self, pattern: str) -> Comparison:
        return self._compare(ComparisonOperator.LIKE, pattern)

    def not_like(self, pattern: str) -> Comparison:
        return self._compare(ComparisonOperator.NOT_LIKE, pattern)

    def ilike(self, pattern: str) -> CaseInsensitiveLike:
        return CaseInsensitiveLike(self.ref, pattern)

    def is_null(self) -> NullCheck:
        return NullCheck(self.ref)

    def is_not_null(self) -> NullCheck:
        return NullCheck(self.ref, negated=True)

    def between(self, low: Any, high: Any) -> Between:
        return Between(self.ref, low, high)

    def asc(self) -> OrderItem:
        return OrderItem(self.operand, OrderDirection.ASC)

    def desc(self) -> OrderItem:
        return OrderItem(self.operand, OrderDirection.DESC)

    def label(self, name: str) -> "QueryField":
        if isinstance(self.operand, Aggregate):
            return QueryField(self.operand.labeled(name))
        raise QueryBuildError("Only aggregates can be labeled")

    def __repr__(self) -> str:
        return f"QueryField({self.operand})"


def field(path: str) -> QueryField:
    """Shorthand for ``QueryField(path)``."""
    return QueryField(path)


# =============================================================================
# Combinators
# =============================================================================

def _flatten(operator: LogicalOperator, items: Iterable[FilterExpression]) -> Tuple[FilterExpression, ...]:
    flat = []
    for item in items:
        if item is None:
            continue
        if not isinstance(item, FilterExpression):
            raise QueryBuildError(f"Expected a predicate, got {item!r}")
        if isinstance(item, Compound) and item.operator == operator:
            flat.extend(item.items)
        else:
            flat.append(item)
    return tuple(flat)


def and_(*items: FilterExpression) -> FilterExpression:
    flat = _flatten(LogicalOperator.AND, items)
    if not flat:
        raise QueryBuildError("and_() requires at least one predicate")
    return flat[0] if len(flat) == 1 else Compound(LogicalOperator.AND, flat)


def or_(*items: FilterExpression) -> FilterExpression:
    flat = _flatten(LogicalOperator.OR, items)
    if not flat:
        raise QueryBuildError("or_() requires at least one predicate")
    return flat[0] if len(flat) == 1 else Compound(LogicalOperator.OR, flat)


def not_(item: FilterExpression) -> FilterExpression:
    return Not(item)


def exists(subquery: "SubSelect") -> Exists:
    return Exists(subquery)


def not_exists(subquery: "SubSelect") -> Exists:
    return Exists(subquery, negated=True)


def raw(fragment: str, params: Optional[Mapping[str, Any]] = None) -> RawPredicate:
    """Raw SQL predicate; values bind through ``:name`` placeholders."""
    return RawPredicate(fragment, tuple((params or {}).items()))


def criteria_to_predicate(criteria: Mapping[str, Any], alias: Optional[str] = None) -> Optional[FilterExpression]:
    """
    Dict criteria to predicate: ``None`` matches NULL, lists and tuples match
    with IN, anything else with equality.
    """
    items = []
    for key, value in criteria.items():
        ref = ColumnRef.parse(key) if alias is None else ColumnRef(alias, key)
        if value is None:
            items.append(NullCheck(ref))
        elif isinstance(value, (list, tuple, set, frozenset)):
            items.append(InList(ref, tuple(value)))
        elif isinstance(value, FilterExpression):
            raise QueryBuildError(f"Criteria value for {key} must be a plain value, got a predicate")
        else:
            items.append(Comparison(ref, ComparisonOperator.EQ, value))
    if not items:
        return None
    return and_(*items)


# =============================================================================
# Aggregates
# =============================================================================

def _aggregate(function: AggregateFunction, path: Optional[Union[str, QueryField]]) -> QueryField:
    if path is None:
        return QueryField(Aggregate(function))
    ref = path.ref if isinstance(path, QueryField) else ColumnRef.parse(path)
    return QueryField(Aggregate(function, ref))


def count(path: Optional[Union[str, QueryField]] = None) -> QueryField:
    return _aggregate(AggregateFunction.COUNT, path)


def count_distinct(path: Union[str, QueryField]) -> QueryField:
    return _aggregate(AggregateFunction.COUNT_DISTINCT, path)


def sum_(path: Union[str, QueryField]) -> QueryField:
    return _aggregate(AggregateFunction.SUM, path)


def avg(path: Union[str, QueryField]) -> QueryField:
    return _aggregate(AggregateFunction.AVG, path)


def min_(path: Union[str, QueryField]) -> QueryField:
    return _aggregate(AggregateFunction.MIN, path)


def max_(path: Union[str, QueryField]) -> QueryField:
    return _aggregate(AggregateFunction.MAX, path)
