# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Relationship resolution for RelAlchemy.

Turns a declared :class:`~relalchemy.rel_orm.RelationMetadata` plus both
sides' entity metadata into a :class:`ResolvedRelation`: which side owns the
foreign key, what the key and referenced columns are called, which inverse
relation pairs with it, and the junction table for many-to-many relations.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional

from .constants import (
    CascadeOperation,
    DeleteAction,
    ErrorMessages,
    NamingConstants,
    RelationKind,
)
from .exceptions import AmbiguousOwnershipError, SchemaError, UnknownRelationError
from .rel_orm import lower_camel

if TYPE_CHECKING:
    from .rel_orm import ColumnMetadata, EntityMetadata, RelationMetadata, SchemaRegistry

logger = logging.getLogger(__name__)


# Kinds that may pair as the two ends of one bidirectional relation
_PARTNER_KINDS: Dict[RelationKind, FrozenSet[RelationKind]] = {
    RelationKind.ONE_TO_MANY: frozenset({RelationKind.MANY_TO_ONE}),
    RelationKind.MANY_TO_ONE: frozenset({RelationKind.ONE_TO_MANY}),
    RelationKind.ONE_TO_ONE: frozenset({RelationKind.ONE_TO_ONE}),
    RelationKind.MANY_TO_MANY_OWNING: frozenset(
        {RelationKind.MANY_TO_MANY_INVERSE, RelationKind.MANY_TO_MANY_OWNING}
    ),
    RelationKind.MANY_TO_MANY_INVERSE: frozenset(
        {RelationKind.MANY_TO_MANY_OWNING, RelationKind.MANY_TO_MANY_INVERSE}
    ),
}


@dataclass(frozen=True)
class JunctionMetadata:
    """
    Synthesized or explicit junction table of a many-to-many relation.

    The "owner" columns belong to the entity holding the owning relation.

    :class: JunctionMetadata
    :synopsis: Junction table name and its two foreign key columns
    """
    name: str
    owner_entity: str
    owner_column: str
    owner_referenced_property: str
    target_entity: str
    target_column: str
    target_referenced_property: str


@dataclass(frozen=True)
class ResolvedRelation:
    """
    A relation with every join detail made explicit.

    ``local_column``/``remote_column`` are the storage columns that join the
    owner table to the target table (through the junction for many-to-many,
    where they name the key columns the junction references).

    :class: ResolvedRelation
    :synopsis: Result of RelationshipResolver.resolve
    """
    owner: str
    property_name: str
    kind: RelationKind
    target: str
    owning_side: bool
    relation: "RelationMetadata"
    local_column: str
    local_property: Optional[str]
    remote_column: str
    remote_property: Optional[str]
    foreign_key_column: Optional[str] = None
    foreign_key_property: Optional[str] = None
    foreign_key_nullable: bool = True
    referenced_column: Optional[str] = None
    referenced_property: Optional[str] = None
    inverse_relation: Optional[str] = None
    inverse_foreign_key_column: Optional[str] = None
    junction: Optional[JunctionMetadata] = None
    junction_source_column: Optional[str] = None
    junction_target_column: Optional[str] = None

    @property
    def is_to_many(self) -> bool:
        return self.kind.is_to_many

    @property
    def is_owning_to_one(self) -> bool:
        """The owner row stores a foreign key to the target row."""
        return self.owning_side and self.foreign_key_column is not None

    @property
    def is_inverse_side(self) -> bool:
        """The target rows store the foreign key back to the owner (no junction)."""
        return not self.owning_side and self.junction is None

    @property
    def on_delete(self) -> DeleteAction:
        return self.relation.on_delete

    def cascades(self, operation: CascadeOperation) -> bool:
        return self.relation.cascades(operation)


class RelationshipResolver:
    """
    Resolve declared relations against the registered entities.

    Resolution is fatal on error: an ambiguous or dangling relation graph is
    reported at finalize() and never reaches the compiler.
    """

    def __init__(self, registry: "SchemaRegistry") -> None:
        self._registry = registry

    def resolve(self, relation: "RelationMetadata", owner: "EntityMetadata") -> ResolvedRelation:
        """
        Resolve one relation declared on ``owner``.

        :raises UnknownEntityError: target never registered
        :raises UnknownRelationError: named inverse side does not exist
        :raises AmbiguousOwnershipError: not exactly one owning side
        :raises SchemaError: referenced column missing or ambiguous
        """
        target = self._registry.resolve(relation.target)
        inverse = self._find_inverse(relation, owner, target)
        owning = self._determine_owning(relation, owner, target, inverse)

        if relation.kind.is_many_to_many:
            return self._resolve_many_to_many(relation, owner, target, inverse, owning)
        if owning:
            return self._resolve_owning_to_one(relation, owner, target, inverse)
        return self._resolve_inverse(relation, owner, target, inverse)

    # ---- inverse discovery -------------------------------------------------

    def _find_inverse(
        self, relation: "RelationMetadata", owner: "EntityMetadata", target: "EntityMetadata"
    ) -> Optional["RelationMetadata"]:
        # @@ STEP 1: An explicit inverse_side must exist on the target
        if relation.inverse_side is not None:
            inverse = target.relation(relation.inverse_side)
            if inverse is None:
                raise UnknownRelationError(
                    ErrorMessages.UNKNOWN_INVERSE.format(
                        entity=owner.name, prop=relation.property_name,
                        target=target.name, inverse=relation.inverse_side,
                    )
                )
            self._check_compatible(relation, owner, target, inverse)
            return inverse

        # @@ STEP 2: A target relation naming us explicitly
        for candidate in target.relations:
            if (
                candidate.target == owner.name
                and candidate.inverse_side == relation.property_name
                and candidate is not relation
            ):
                self._check_compatible(relation, owner, target, candidate)
                return candidate

        # @@ STEP 3: Unique auto-detected partner
        candidates = self._auto_candidates(target, owner, relation)
        if relation.declares_owning:
            # || S.3: An owning side only pairs when the partner would pick it back
            if len(candidates) == 1 and self._auto_candidates(owner, target, candidates[0]) == [relation]:
                return candidates[0]
            return None
        if len(candidates) > 1:
            raise AmbiguousOwnershipError(
                ErrorMessages.MULTIPLE_OWNING_COUNTERPARTS.format(
                    entity=owner.name, prop=relation.property_name, target=target.name,
                    candidates=", ".join(sorted(c.property_name for c in candidates)),
                )
            )
        return candidates[0] if candidates else None

    @staticmethod
    def _auto_candidates(
        on_entity: "EntityMetadata", pointing_to: "EntityMetadata", relation: "RelationMetadata"
    ) -> List["RelationMetadata"]:
        partner_kinds = _PARTNER_KINDS[relation.kind]
        return [
            candidate
            for candidate in on_entity.relations
            if candidate is not relation
            and candidate.target == pointing_to.name
            and candidate.kind in partner_kinds
            and candidate.inverse_side is None
        ]

    @staticmethod
    def _check_compatible(
        relation: "RelationMetadata", owner: "EntityMetadata",
        target: "EntityMetadata", inverse: "RelationMetadata",
    ) -> None:
        if inverse.target != owner.name or inverse.kind not in _PARTNER_KINDS[relation.kind]:
            raise SchemaError(
                ErrorMessages.INCOMPATIBLE_INVERSE.format(
                    entity=owner.name, prop=relation.property_name, kind=relation.kind,
                    target=target.name, inverse=inverse.property_name, inverse_kind=inverse.kind,
                )
            )

    # ---- ownership ---------------------------------------------------------

    @staticmethod
    def _determine_owning(
        relation: "RelationMetadata", owner: "EntityMetadata",
        target: "EntityMetadata", inverse: Optional["RelationMetadata"],
    ) -> bool:
        if inverse is None:
            # Unidirectional one-to-one owns the key unless told otherwise
            if relation.kind == RelationKind.ONE_TO_ONE and relation.owning is None:
                return True
            if not relation.declares_owning:
                raise AmbiguousOwnershipError(
                    ErrorMessages.NO_OWNING_COUNTERPART.format(
                        entity=owner.name, prop=relation.property_name, target=target.name
                    )
                )
            return True

        here, there = relation.declares_owning, inverse.declares_owning
        fmt = dict(
            entity=owner.name, prop=relation.property_name,
            target=target.name, inverse=inverse.property_name,
        )
        if here and there:
            raise AmbiguousOwnershipError(ErrorMessages.AMBIGUOUS_BOTH_OWNING.format(**fmt))
        if not here and not there:
            raise AmbiguousOwnershipError(ErrorMessages.AMBIGUOUS_NONE_OWNING.format(**fmt))
        return here

    # ---- column resolution -------------------------------------------------

    @staticmethod
    def foreign_key_name(relation: "RelationMetadata") -> str:
        """Explicit join column, else ``<property>Id``."""
        return relation.join_column or f"{relation.property_name}{NamingConstants.FOREIGN_KEY_SUFFIX}"

    @staticmethod
    def _referenced(
        relation: "RelationMetadata", declaring: "EntityMetadata", referenced_entity: "EntityMetadata"
    ) -> "ColumnMetadata":
        """Column on ``referenced_entity`` that ``relation`` (declared on ``declaring``) points at."""
        name = relation.referenced_column
        if name is not None:
            col = referenced_entity.column(name) or referenced_entity.column_by_name(name)
            if col is None:
                raise SchemaError(
                    ErrorMessages.UNKNOWN_REFERENCED_COLUMN.format(
                        entity=declaring.name, prop=relation.property_name,
                        column=name, target=referenced_entity.name,
                    )
                )
            return col
        if len(referenced_entity.primary_keys) != 1:
            raise SchemaError(
                ErrorMessages.COMPOSITE_REFERENCE.format(
                    entity=declaring.name, prop=relation.property_name, target=referenced_entity.name
                )
            )
        return referenced_entity.primary_columns[0]

    def _resolve_owning_to_one(
        self, relation: "RelationMetadata", owner: "EntityMetadata",
        target: "EntityMetadata", inverse: Optional["RelationMetadata"],
    ) -> ResolvedRelation:
        fk = self.foreign_key_name(relation)
        referenced = self._referenced(relation, owner, target)
        declared = owner.column_by_name(fk)
        nullable = declared.nullable if declared is not None else relation.nullable
        return ResolvedRelation(
            owner=owner.name,
            property_name=relation.property_name,
            kind=relation.kind,
            target=target.name,
            owning_side=True,
            relation=relation,
            local_column=fk,
            local_property=declared.property_name if declared is not None else None,
            remote_column=referenced.column_name,
            remote_property=referenced.property_name,
            foreign_key_column=fk,
            foreign_key_property=declared.property_name if declared is not None else None,
            foreign_key_nullable=nullable,
            referenced_column=referenced.column_name,
            referenced_property=referenced.property_name,
            inverse_relation=inverse.property_name if inverse is not None else None,
        )

    def _resolve_inverse(
        self, relation: "RelationMetadata", owner: "EntityMetadata",
        target: "EntityMetadata", inverse: "RelationMetadata",
    ) -> ResolvedRelation:
        # The key lives on the target; it references a column of ours
        partner_fk = self.foreign_key_name(inverse)
        referenced = self._referenced(inverse, target, owner)
        declared = target.column_by_name(partner_fk)
        nullable = declared.nullable if declared is not None else inverse.nullable
        return ResolvedRelation(
            owner=owner.name,
            property_name=relation.property_name,
            kind=relation.kind,
            target=target.name,
            owning_side=False,
            relation=relation,
            local_column=referenced.column_name,
            local_property=referenced.property_name,
            remote_column=partner_fk,
            remote_property=declared.property_name if declared is not None else None,
            foreign_key_nullable=nullable,
            referenced_column=referenced.column_name,
            referenced_property=referenced.property_name,
            inverse_relation=inverse.property_name,
            inverse_foreign_key_column=partner_fk,
        )

    # ---- many-to-many ------------------------------------------------------

    def _junction(
        self, owning: "RelationMetadata", owning_entity: "EntityMetadata",
        other_entity: "EntityMetadata", inverse: Optional["RelationMetadata"],
    ) -> JunctionMetadata:
        name = owning.junction_table or (inverse.junction_table if inverse is not None else None)
        if name is None:
            tables = sorted((owning_entity.table_name, other_entity.table_name))
            name = NamingConstants.JUNCTION_SEPARATOR.join(tables)

        owner_column = f"{lower_camel(owning_entity.name)}{NamingConstants.FOREIGN_KEY_SUFFIX}"
        if owning_entity.name == other_entity.name:
            target_column = f"{owning.property_name}{NamingConstants.FOREIGN_KEY_SUFFIX}"
        else:
            target_column = f"{lower_camel(other_entity.name)}{NamingConstants.FOREIGN_KEY_SUFFIX}"

        owner_ref = self._referenced_owner_key(owning, owning_entity)
        target_ref = self._referenced(owning, owning_entity, other_entity)
        return JunctionMetadata(
            name=name,
            owner_entity=owning_entity.name,
            owner_column=owner_column,
            owner_referenced_property=owner_ref.property_name,
            target_entity=other_entity.name,
            target_column=target_column,
            target_referenced_property=target_ref.property_name,
        )

    @staticmethod
    def _referenced_owner_key(relation: "RelationMetadata", entity: "EntityMetadata") -> "ColumnMetadata":
        if len(entity.primary_keys) != 1:
            raise SchemaError(
                ErrorMessages.COMPOSITE_REFERENCE.format(
                    entity=entity.name, prop=relation.property_name, target=entity.name
                )
            )
        return entity.primary_columns[0]

    def _resolve_many_to_many(
        self, relation: "RelationMetadata", owner: "EntityMetadata",
        target: "EntityMetadata", inverse: Optional["RelationMetadata"], owning: bool,
    ) -> ResolvedRelation:
        if owning:
            junction = self._junction(relation, owner, target, inverse)
            source, dest = junction.owner_column, junction.target_column
            local_prop, remote_prop = junction.owner_referenced_property, junction.target_referenced_property
        else:
            junction = self._junction(inverse, target, owner, relation)
            source, dest = junction.target_column, junction.owner_column
            local_prop, remote_prop = junction.target_referenced_property, junction.owner_referenced_property

        local = owner.column(local_prop)
        remote = target.column(remote_prop)
        return ResolvedRelation(
            owner=owner.name,
            property_name=relation.property_name,
            kind=relation.kind,
            target=target.name,
            owning_side=owning,
            relation=relation,
            local_column=local.column_name,
            local_property=local.property_name,
            remote_column=remote.column_name,
            remote_property=remote.property_name,
            referenced_column=remote.column_name,
            referenced_property=remote.property_name,
            inverse_relation=inverse.property_name if inverse is not None else None,
            junction=junction,
            junction_source_column=source,
            junction_target_column=dest,
        )
