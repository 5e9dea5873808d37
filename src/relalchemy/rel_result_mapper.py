# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Result mapping for RelAlchemy.

Turns driver rows into entity graphs (entity mode) or label-keyed dicts
(raw mode), guided by the projection and alias map of a
:class:`~relalchemy.rel_sql_compiler.CompiledQuery`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .constants import ErrorMessages, ProjectionMode, ScalarType
from .exceptions import ResultShapeMismatchError
from .rel_orm import EntityMetadata, SchemaRegistry
from .rel_sql_compiler import AliasInfo, CompiledQuery

logger = logging.getLogger(__name__)

Row = Sequence[Any]


class _AliasPlan:
    """Where one alias's columns sit in a row and how it hangs off its parent."""

    __slots__ = ("info", "meta", "positions", "pk_positions", "to_many", "child_collections")

    def __init__(self, info: AliasInfo, meta: EntityMetadata) -> None:
        self.info = info
        self.meta = meta
        self.positions: List[Tuple[int, str]] = []
        self.pk_positions: List[int] = []
        self.to_many = False
        self.child_collections: List[str] = []


class ResultMapper:
    """
    Map rows of a compiled select.

    :class: ResultMapper
    :synopsis: Rows to entity graphs or raw dicts

    Instances are deduplicated per alias by primary key within one call, so
    a fanned-out join yields one object per stored row.
    """

    def __init__(self, registry: SchemaRegistry) -> None:
        self.registry = registry

    def map(self, compiled: CompiledQuery, rows: Sequence[Row]) -> List[Any]:
        if compiled.mode == ProjectionMode.RAW:
            return self.map_raw(compiled, rows)
        return self.map_entities(compiled, rows)

    # =========================================================================
    # Raw mode
    # =========================================================================

    def map_raw(self, compiled: CompiledQuery, rows: Sequence[Row]) -> List[Dict[str, Any]]:
        """Rows as dicts keyed by the compiler's labels, one dict per row."""
        labels = compiled.labels
        width = len(labels)
        result = []
        for index, row in enumerate(rows):
            self._check_width(index, row, width)
            result.append(dict(zip(labels, row)))
        return result

    # =========================================================================
    # Entity mode
    # =========================================================================

    def map_entities(self, compiled: CompiledQuery, rows: Sequence[Row]) -> List[Any]:
        """
        Rebuild the root entities of ``rows`` with their selected relations.

        Returns root instances in first-seen order.

        Raises:
            ResultShapeMismatchError: A row is narrower than the projection, or
                an alias is projected without its primary key
        """
        plans = self._alias_plans(compiled)
        width = len(compiled.projection)
        root_alias = compiled.root_alias

        identity: Dict[str, Dict[Tuple[Any, ...], Any]] = {alias: {} for alias in plans}
        attached: Set[Tuple[int, str, int]] = set()
        roots: List[Any] = []

        for index, row in enumerate(rows):
            self._check_width(index, row, width)
            row_instances: Dict[str, Optional[Any]] = {}

            for alias, plan in plans.items():
                # @@ STEP 1: A NULL key means "no related row" for this alias
                pk = tuple(row[i] for i in plan.pk_positions)
                if any(v is None for v in pk):
                    row_instances[alias] = None
                    continue

                # @@ STEP 2: One instance per stored row within this result
                instance = identity[alias].get(pk)
                if instance is None:
                    instance = self._build_instance(plan, row)
                    identity[alias][pk] = instance
                    if alias == root_alias:
                        roots.append(instance)
                row_instances[alias] = instance

                # @@ STEP 3: Attach to the parent instance of this row
                info = plan.info
                if info.parent_alias is None:
                    continue
                parent = row_instances.get(info.parent_alias)
                if parent is None:
                    continue
                if plan.to_many:
                    key = (id(parent), info.property_name, id(instance))
                    if key not in attached:
                        attached.add(key)
                        getattr(parent, info.property_name).append(instance)
                else:
                    setattr(parent, info.property_name, instance)

        logger.debug("Mapped %d rows into %d %s instances", len(rows), len(roots), compiled.root_alias)
        return roots

    def _alias_plans(self, compiled: CompiledQuery) -> Dict[str, _AliasPlan]:
        plans: Dict[str, _AliasPlan] = {}
        for info in compiled.aliases:
            if info.parent_alias is not None and not info.selected:
                continue
            plans[info.alias] = _AliasPlan(info, self.registry.resolve(info.entity))

        for position, projected in enumerate(compiled.projection):
            plan = plans.get(projected.alias) if projected.alias is not None else None
            if plan is not None:
                plan.positions.append((position, projected.property_name))

        for alias in list(plans):
            plan = plans[alias]
            if not plan.positions:
                del plans[alias]
                continue
            by_property = {prop: position for position, prop in plan.positions}
            for prop in plan.meta.primary_keys:
                if prop not in by_property:
                    logger.error("Alias %s of %s is projected without primary key %s", alias, plan.meta.name, prop)
                    raise ResultShapeMismatchError(
                        ErrorMessages.PRIMARY_KEY_NOT_PROJECTED.format(alias=alias, entity=plan.meta.name, prop=prop)
                    )
                plan.pk_positions.append(by_property[prop])

        for plan in plans.values():
            info = plan.info
            if info.parent_alias is None:
                continue
            parent = plans.get(info.parent_alias)
            if parent is None:
                continue
            res = self.registry.resolved_relation(parent.meta.name, info.property_name)
            plan.to_many = res.is_to_many
            if plan.to_many:
                parent.child_collections.append(info.property_name)
        return plans

    def _build_instance(self, plan: _AliasPlan, row: Row) -> Any:
        values: Dict[str, Any] = {}
        for position, prop in plan.positions:
            col = plan.meta.column(prop)
            if col is None:
                # Implicit foreign key columns have no entity field
                continue
            values[prop] = _from_storage(col.scalar_type, row[position])
        instance = plan.meta.create_instance(values)
        # Selected to-many relations are loaded, so an empty result is an empty list
        for prop in plan.child_collections:
            setattr(instance, prop, [])
        return instance

    @staticmethod
    def _check_width(index: int, row: Row, width: int) -> None:
        if len(row) < width:
            logger.error("Result row %d has %d columns, projection expects %d", index, len(row), width)
            raise ResultShapeMismatchError(
                ErrorMessages.ROW_TOO_NARROW.format(index=index, actual=len(row), expected=width)
            )


def _from_storage(scalar_type: ScalarType, value: Any) -> Any:
    """Undo text storage of JSON; pydantic coerces the remaining scalar types."""
    if scalar_type == ScalarType.JSON and isinstance(value, str):
        return json.loads(value)
    return value
