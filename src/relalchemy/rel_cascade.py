# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Cascade engine for RelAlchemy.

Expands one root write into an :class:`OperationPlan` whose order respects
foreign key dependencies: referenced rows are inserted before the rows that
point at them and deleted after them. The engine is pure; it learns whether
an instance is persisted, and which related rows exist in storage, through
callables injected by the session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import itertools
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .constants import (
    CascadeOperation,
    ErrorMessages,
    OperationKind,
    OperationState,
)
from .exceptions import UnresolvableCycleError, UnsupportedFeatureError
from .rel_orm import EntityMetadata, SchemaRegistry
from .rel_relations import ResolvedRelation

logger = logging.getLogger(__name__)

IsNewOracle = Callable[[Any, EntityMetadata], bool]
RelatedLoader = Callable[[Any, EntityMetadata, ResolvedRelation], List[Any]]


_ALLOWED_TRANSITIONS: Dict[OperationState, Tuple[OperationState, ...]] = {
    OperationState.PENDING: (OperationState.SCHEDULED,),
    OperationState.SCHEDULED: (OperationState.EXECUTED, OperationState.FAILED),
    OperationState.EXECUTED: (),
    OperationState.FAILED: (),
}


@dataclass(eq=False)
class PlannedOperation:
    """
    One sub-operation of a plan.

    ``foreign_key_sources`` maps a foreign key column of ``instance`` to the
    ``(parent instance, parent property)`` whose value it takes once the
    parent row exists. ``deferred_foreign_keys`` lists columns written as
    NULL on insert and filled by a later SET_FOREIGN_KEY operation.

    For LINK, UNLINK and SET_FOREIGN_KEY, ``relation`` names the relation on
    ``entity`` and ``related`` is the instance on the other end (``None`` for
    UNLINK, which removes every junction row of ``instance``).
    """
    kind: OperationKind
    entity: str
    instance: Any
    relation: Optional[str] = None
    related: Any = None
    foreign_key_sources: Dict[str, Tuple[Any, str]] = field(default_factory=dict)
    deferred_foreign_keys: Set[str] = field(default_factory=set)
    state: OperationState = OperationState.PENDING
    sequence: int = -1
    error: Optional[BaseException] = None

    def _transition(self, target: OperationState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                ErrorMessages.ILLEGAL_STATE_TRANSITION.format(
                    operation=self.describe(), current=self.state, target=target
                )
            )
        self.state = target

    def schedule(self) -> None:
        self._transition(OperationState.SCHEDULED)

    def mark_executed(self) -> None:
        self._transition(OperationState.EXECUTED)

    def mark_failed(self, error: BaseException) -> None:
        self._transition(OperationState.FAILED)
        self.error = error

    def describe(self) -> str:
        suffix = f".{self.relation}" if self.relation else ""
        return f"{self.kind} {self.entity}{suffix}"

    def __repr__(self) -> str:
        return f"<PlannedOperation {self.describe()} [{self.state}]>"


class OperationPlan:
    """
    Ordered, de-duplicated list of planned operations.

    An instance is scheduled at most once per operation kind, identified by
    object reference and, once assigned, by ``(entity, primary key)``.
    """

    def __init__(self, root: Any, operation: OperationKind) -> None:
        self.root = root
        self.operation = operation
        self._operations: List[PlannedOperation] = []
        self._by_identity: Dict[Tuple[OperationKind, int, Optional[str], int], PlannedOperation] = {}
        self._by_key: Dict[Tuple[OperationKind, str, Tuple[Any, ...]], PlannedOperation] = {}
        self._counter = itertools.count()

    def add(self, operation: PlannedOperation, primary_key: Optional[Tuple[Any, ...]] = None) -> PlannedOperation:
        """Schedule ``operation`` unless an equivalent one is already scheduled; return the scheduled one."""
        identity = (operation.kind, id(operation.instance), operation.relation, id(operation.related))
        existing = self._by_identity.get(identity)
        if existing is None and primary_key is not None and operation.relation is None:
            existing = self._by_key.get((operation.kind, operation.entity, primary_key))
        if existing is not None:
            return existing

        operation.schedule()
        operation.sequence = next(self._counter)
        self._operations.append(operation)
        self._by_identity[identity] = operation
        if primary_key is not None and operation.relation is None:
            self._by_key[(operation.kind, operation.entity, primary_key)] = operation
        logger.debug("Planned %s", operation.describe())
        return operation

    def find(self, kind: OperationKind, instance: Any) -> Optional[PlannedOperation]:
        return self._by_identity.get((kind, id(instance), None, id(None)))

    def summary(self) -> List[Tuple[str, str]]:
        """``[(kind, entity), ...]`` in execution order."""
        return [(str(op.kind), op.entity) for op in self._operations]

    @property
    def operations(self) -> List[PlannedOperation]:
        return list(self._operations)

    def __iter__(self) -> Iterator[PlannedOperation]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def __repr__(self) -> str:
        return f"<OperationPlan {self.operation} {self.summary()}>"


class CascadeEngine:
    """
    Build operation plans for save, remove, soft remove and recover.

    Args:
        registry: Finalized schema registry
        is_new: Returns ``True`` when an instance has no stored row yet
        load_related: Returns the stored rows related to an instance through
            a relation; used by remove-style traversals to find children the
            caller never loaded. Defaults to in-memory values only.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        is_new: IsNewOracle,
        load_related: Optional[RelatedLoader] = None,
    ) -> None:
        registry.require_finalized("planning cascades")
        self._registry = registry
        self._is_new = is_new
        self._load_related = load_related

    # =========================================================================
    # Save
    # =========================================================================

    def plan_save(self, root: Any) -> OperationPlan:
        """
        Plan an insert-or-update of ``root`` and everything its cascades reach.

        Order: owning to-one parents, the instance, inverse children, and
        finally many-to-many links once both ends are scheduled.
        """
        meta = self._registry.entity_for(root)
        plan = OperationPlan(root, OperationKind.INSERT if self._is_new(root, meta) else OperationKind.UPDATE)
        traversal = _SaveTraversal(self, plan)
        traversal.visit(root, meta)
        traversal.finish()
        logger.debug("Save plan for %s: %s", meta.name, plan.summary())
        return plan

    # =========================================================================
    # Remove-style traversals
    # =========================================================================

    def plan_remove(self, root: Any) -> OperationPlan:
        """
        Plan a delete of ``root``.

        Children reached through remove-cascading relations go first, then
        the junction rows of each removed instance, then the instance, then
        owning parents whose relation cascades remove.
        """
        return self._plan_removal(root, OperationKind.REMOVE, CascadeOperation.REMOVE)

    def plan_soft_remove(self, root: Any) -> OperationPlan:
        """Plan setting the delete date column of ``root`` and its softRemove cascades."""
        return self._plan_removal(root, OperationKind.SOFT_REMOVE, CascadeOperation.SOFT_REMOVE)

    def plan_recover(self, root: Any) -> OperationPlan:
        """Plan clearing the delete date column; parents are recovered before their children."""
        return self._plan_removal(root, OperationKind.RECOVER, CascadeOperation.RECOVER)

    def _plan_removal(self, root: Any, kind: OperationKind, cascade: CascadeOperation) -> OperationPlan:
        meta = self._registry.entity_for(root)
        plan = OperationPlan(root, kind)
        visited: Set[int] = set()
        self._visit_removal(root, meta, plan, kind, cascade, visited)
        logger.debug("%s plan for %s: %s", kind, meta.name, plan.summary())
        return plan

    def _visit_removal(
        self,
        instance: Any,
        meta: EntityMetadata,
        plan: OperationPlan,
        kind: OperationKind,
        cascade: CascadeOperation,
        visited: Set[int],
    ) -> None:
        if id(instance) in visited:
            return
        visited.add(id(instance))

        if kind != OperationKind.REMOVE and meta.delete_date_column is None:
            raise UnsupportedFeatureError(ErrorMessages.SOFT_DELETE_UNSUPPORTED.format(entity=meta.name))

        relations = self._registry.relations_of(meta.name)
        own = PlannedOperation(kind, meta.name, instance)

        # @@ STEP 1: Recovery restores the row before its children
        if kind == OperationKind.RECOVER:
            plan.add(own, meta.primary_key_of(instance))

        # @@ STEP 2: Children through cascading non-owning relations
        for res in relations:
            if res.is_owning_to_one or not res.cascades(cascade):
                continue
            target_meta = self._registry.resolve(res.target)
            for child in self._related(instance, meta, res, target_meta):
                self._visit_removal(child, target_meta, plan, kind, cascade, visited)

        if kind != OperationKind.RECOVER:
            # @@ STEP 3: Junction rows, then the row itself
            if kind == OperationKind.REMOVE:
                for res in relations:
                    if res.junction is not None:
                        plan.add(PlannedOperation(
                            OperationKind.UNLINK, meta.name, instance, relation=res.property_name
                        ))
            plan.add(own, meta.primary_key_of(instance))

        # @@ STEP 4: Owning parents whose relation cascades this operation
        for res in relations:
            if not res.is_owning_to_one or not res.cascades(cascade):
                continue
            target_meta = self._registry.resolve(res.target)
            for parent in self._related(instance, meta, res, target_meta):
                self._visit_removal(parent, target_meta, plan, kind, cascade, visited)

    def _related(
        self, instance: Any, meta: EntityMetadata, res: ResolvedRelation, target_meta: EntityMetadata
    ) -> List[Any]:
        """In-memory related instances merged with stored ones; in-memory objects win."""
        in_memory = _as_list(getattr(instance, res.property_name, None))
        if self._load_related is None or meta.primary_key_of(instance) is None:
            return in_memory

        by_key: Dict[Tuple[Any, ...], Any] = {}
        merged: List[Any] = []
        for item in in_memory:
            key = target_meta.primary_key_of(item)
            if key is not None:
                by_key[key] = item
            merged.append(item)
        for item in self._load_related(instance, meta, res):
            key = target_meta.primary_key_of(item)
            if key is None or key not in by_key:
                merged.append(item)
                if key is not None:
                    by_key[key] = item
        return merged

    # ---- helpers shared with the save traversal ---------------------------

    @property
    def registry(self) -> SchemaRegistry:
        return self._registry

    def is_new(self, instance: Any, meta: EntityMetadata) -> bool:
        return self._is_new(instance, meta)


class _SaveTraversal:
    """Depth-first save traversal state for one plan."""

    def __init__(self, engine: CascadeEngine, plan: OperationPlan) -> None:
        self.engine = engine
        self.registry = engine.registry
        self.plan = plan
        self.ops: Dict[int, PlannedOperation] = {}
        self.in_progress: Set[int] = set()
        self.followups: List[PlannedOperation] = []
        self.links: List[PlannedOperation] = []
        self._link_keys: Set[Tuple[int, str, int]] = set()

    def visit(self, instance: Any, meta: EntityMetadata) -> PlannedOperation:
        existing = self.ops.get(id(instance))
        if existing is not None:
            return existing

        new = self.engine.is_new(instance, meta)
        op = PlannedOperation(OperationKind.INSERT if new else OperationKind.UPDATE, meta.name, instance)
        self.ops[id(instance)] = op
        self.in_progress.add(id(instance))
        relations = self.registry.relations_of(meta.name)

        # @@ STEP 1: Owning to-one parents are written before the row that references them
        for res in relations:
            if res.is_owning_to_one:
                self._visit_parent(instance, meta, op, res)

        # @@ STEP 2: The instance itself
        self.plan.add(op, meta.primary_key_of(instance))
        self.in_progress.discard(id(instance))

        # @@ STEP 3: Children and many-to-many partners
        for res in relations:
            if res.is_owning_to_one:
                continue
            for child in _as_list(getattr(instance, res.property_name, None)):
                if res.junction is None:
                    self._visit_child(instance, op, res, child)
                else:
                    self._visit_partner(instance, meta, res, child)
        return op

    def _visit_parent(self, instance: Any, meta: EntityMetadata, op: PlannedOperation, res: ResolvedRelation) -> None:
        parent = getattr(instance, res.property_name, None)
        if parent is None:
            return
        parent_meta = self.registry.resolve(res.target)

        # || S.1: Parent still on the stack: mutual references
        if id(parent) in self.in_progress:
            if self.engine.is_new(parent, parent_meta):
                self._defer_foreign_key(instance, meta, op, res, parent)
            else:
                op.foreign_key_sources[res.foreign_key_column] = (parent, res.referenced_property)
            return

        if id(parent) in self.ops:
            op.foreign_key_sources[res.foreign_key_column] = (parent, res.referenced_property)
            return

        # || S.2: A new parent has no other write path, so it is inserted whatever the cascade
        if self.engine.is_new(parent, parent_meta):
            self.visit(parent, parent_meta)
        elif res.cascades(CascadeOperation.UPDATE):
            self.visit(parent, parent_meta)
        op.foreign_key_sources[res.foreign_key_column] = (parent, res.referenced_property)

    def _visit_child(self, parent: Any, parent_op: PlannedOperation, res: ResolvedRelation, child: Any) -> None:
        child_meta = self.registry.resolve(res.target)
        # New children can only be written through their parent; persisted ones need an update cascade
        if (
            id(child) not in self.ops
            and not self.engine.is_new(child, child_meta)
            and not res.cascades(CascadeOperation.UPDATE)
        ):
            return
        child_op = self.visit(child, child_meta)
        child_op.foreign_key_sources[res.inverse_foreign_key_column] = (parent, res.local_property)

        # A child written before a parent that is itself being inserted needs a follow-up
        if (
            child_op.sequence != -1
            and child_op.sequence < parent_op.sequence
            and parent_op.kind == OperationKind.INSERT
        ):
            self._defer_foreign_key(child, child_meta, child_op, self._owning_counterpart(res), parent)

    def _visit_partner(self, instance: Any, meta: EntityMetadata, res: ResolvedRelation, partner: Any) -> None:
        partner_meta = self.registry.resolve(res.target)
        wanted = CascadeOperation.INSERT if self.engine.is_new(partner, partner_meta) else CascadeOperation.UPDATE
        if id(partner) not in self.ops and res.cascades(wanted):
            self.visit(partner, partner_meta)

        # Links are always expressed from the owning side
        if res.owning_side:
            owner, owner_entity, prop, other = instance, meta.name, res.property_name, partner
        else:
            owner, owner_entity, prop, other = partner, res.target, res.inverse_relation, instance
        key = (id(owner), prop, id(other))
        if key in self._link_keys:
            return
        self._link_keys.add(key)
        self.links.append(PlannedOperation(OperationKind.LINK, owner_entity, owner, relation=prop, related=other))

    def _owning_counterpart(self, res: ResolvedRelation) -> ResolvedRelation:
        return self.registry.resolved_relation(res.target, res.inverse_relation)

    def _defer_foreign_key(
        self, instance: Any, meta: EntityMetadata, op: PlannedOperation, res: ResolvedRelation, parent: Any
    ) -> None:
        if not res.foreign_key_nullable:
            raise UnresolvableCycleError(
                ErrorMessages.UNRESOLVABLE_CYCLE.format(
                    entity=meta.name, prop=res.property_name,
                    column=res.foreign_key_column, target=res.target,
                )
            )
        op.deferred_foreign_keys.add(res.foreign_key_column)
        self.followups.append(PlannedOperation(
            OperationKind.SET_FOREIGN_KEY, meta.name, instance,
            relation=res.property_name, related=parent,
        ))
        logger.debug(
            "Deferring %s.%s until %s is inserted", meta.name, res.foreign_key_column, res.target
        )

    def finish(self) -> None:
        for op in self.followups:
            self.plan.add(op)
        for op in self.links:
            self.plan.add(op)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value if item is not None]
    return [value]
