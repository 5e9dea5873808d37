# SPDX-FileCopyrightText: 2025 FanaticPythoner
# SPDX-License-Identifier: Apache-2.0

"""
Schema registry, entity metadata, and DDL generation for RelAlchemy.

Entities are declared with explicit :class:`EntityDescriptor` values built
from :func:`column` and :func:`relation` helpers, registered once, and
frozen by :meth:`SchemaRegistry.finalize`. Finalization resolves every
relation (owning side, join keys, junction tables) and computes the table
creation order, so a broken relation graph fails at startup instead of
producing wrong SQL later.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime
import decimal
import logging
import re
import uuid
from threading import RLock
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Type,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, create_model, model_validator

from .constants import (
    CascadeOperation,
    DeleteAction,
    ErrorMessages,
    RelationKind,
    ScalarType,
    SQLConstants,
)
from .exceptions import (
    RegistryFrozenError,
    SchemaConflictError,
    SchemaError,
    UnknownEntityError,
    UnknownRelationError,
)

if TYPE_CHECKING:
    from .rel_relations import JunctionMetadata, ResolvedRelation
    from .rel_sql_compiler import Dialect

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Naming helpers
# -----------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def snake_case(name: str) -> str:
    """``PostComment`` -> ``post_comment``."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def lower_camel(name: str) -> str:
    """``PostComment`` -> ``postComment``; ``post_comment`` -> ``postComment``."""
    if "_" in name:
        head, *rest = [part for part in name.split("_") if part]
        return head.lower() + "".join(part[:1].upper() + part[1:] for part in rest)
    return name[:1].lower() + name[1:]


# -----------------------------------------------------------------------------
# Column and relation metadata
# -----------------------------------------------------------------------------

_PYTHON_TYPES: Dict[ScalarType, Any] = {
    ScalarType.INTEGER: int,
    ScalarType.BIGINT: int,
    ScalarType.TEXT: str,
    ScalarType.REAL: float,
    ScalarType.NUMERIC: decimal.Decimal,
    ScalarType.BOOLEAN: bool,
    ScalarType.DATE: datetime.date,
    ScalarType.TIMESTAMP: datetime.datetime,
    ScalarType.BLOB: bytes,
    ScalarType.UUID: uuid.UUID,
    ScalarType.JSON: Any,
}


@dataclass(frozen=True)
class ColumnMetadata:
    """
    Metadata for one mapped column.

    :class: ColumnMetadata
    :synopsis: Immutable property-to-column mapping
    """
    property_name: str
    column_name: str
    scalar_type: ScalarType
    nullable: bool = True
    unique: bool = False
    primary: bool = False
    generated: bool = False
    default: Any = None
    create_date: bool = False
    update_date: bool = False
    delete_date: bool = False

    @property
    def python_type(self) -> Any:
        return _PYTHON_TYPES[self.scalar_type]

    @property
    def is_timestamp_managed(self) -> bool:
        """Create/update/delete date columns are filled by the session, not the caller."""
        return self.create_date or self.update_date or self.delete_date


@dataclass(frozen=True)
class RelationMetadata:
    """
    Metadata for one declared relation.

    ``owning`` is ``None`` when the owning side is inferred from ``kind``
    (ManyToOne and ManyToManyOwning own, OneToMany and ManyToManyInverse do
    not, OneToOne owns when it declares a join column).

    :class: RelationMetadata
    :synopsis: Immutable relation declaration
    """
    property_name: str
    kind: RelationKind
    target: str
    inverse_side: Optional[str] = None
    owning: Optional[bool] = None
    join_column: Optional[str] = None
    referenced_column: Optional[str] = None
    cascade: FrozenSet[CascadeOperation] = frozenset()
    on_delete: DeleteAction = DeleteAction.NO_ACTION
    nullable: bool = True
    junction_table: Optional[str] = None

    def cascades(self, operation: CascadeOperation) -> bool:
        return operation in self.cascade

    @property
    def declares_owning(self) -> bool:
        """Owning flag as declared or implied by the kind alone."""
        if self.owning is not None:
            return self.owning
        if self.kind in (RelationKind.MANY_TO_ONE, RelationKind.MANY_TO_MANY_OWNING):
            return True
        if self.kind == RelationKind.ONE_TO_ONE:
            return self.join_column is not None
        return False


def column(
    property_name: str,
    scalar_type: Union[ScalarType, str],
    *,
    column_name: Optional[str] = None,
    nullable: Optional[bool] = None,
    unique: bool = False,
    primary: bool = False,
    generated: bool = False,
    default: Any = None,
    create_date: bool = False,
    update_date: bool = False,
    delete_date: bool = False,
) -> ColumnMetadata:
    """
    Create column metadata.

    Args:
        property_name: Attribute name on the entity
        scalar_type: Scalar type (enum member or its string value)
        column_name: Storage column name; defaults to the property name
        nullable: Defaults to ``False`` for primary keys, ``True`` otherwise
        generated: The database assigns the value on insert
    """
    if isinstance(scalar_type, str) and not isinstance(scalar_type, ScalarType):
        scalar_type = ScalarType(scalar_type.lower())
    if nullable is None:
        nullable = not primary
    if primary and nullable:
        raise SchemaError(f"Primary key column {property_name} cannot be nullable")
    if generated and scalar_type not in (ScalarType.INTEGER, ScalarType.BIGINT):
        raise SchemaError(
            f"Generated column {property_name} must be INTEGER or BIGINT, got {scalar_type}"
        )
    return ColumnMetadata(
        property_name=property_name,
        column_name=column_name or property_name,
        scalar_type=scalar_type,
        nullable=nullable,
        unique=unique,
        primary=primary,
        generated=generated,
        default=default,
        create_date=create_date,
        update_date=update_date,
        delete_date=delete_date,
    )


def primary_generated_column(property_name: str = "id", scalar_type: ScalarType = ScalarType.INTEGER) -> ColumnMetadata:
    """Auto-increment primary key column."""
    return column(property_name, scalar_type, primary=True, generated=True)


def create_date_column(property_name: str = "createdAt") -> ColumnMetadata:
    return column(property_name, ScalarType.TIMESTAMP, create_date=True)


def update_date_column(property_name: str = "updatedAt") -> ColumnMetadata:
    return column(property_name, ScalarType.TIMESTAMP, update_date=True)


def delete_date_column(property_name: str = "deletedAt") -> ColumnMetadata:
    """Soft-delete marker; rows with a value here are hidden from queries."""
    return column(property_name, ScalarType.TIMESTAMP, delete_date=True)


def _parse_cascade(cascade: Union[bool, Iterable[Union[CascadeOperation, str]], None]) -> FrozenSet[CascadeOperation]:
    if cascade is None or cascade is False:
        return frozenset()
    if cascade is True:
        return frozenset(CascadeOperation)
    return frozenset(
        op if isinstance(op, CascadeOperation) else CascadeOperation(op) for op in cascade
    )


def relation(
    property_name: str,
    kind: Union[RelationKind, str],
    target: str,
    *,
    inverse_side: Optional[str] = None,
    cascade: Union[bool, Iterable[Union[CascadeOperation, str]], None] = None,
    on_delete: Union[DeleteAction, str] = DeleteAction.NO_ACTION,
    join_column: Optional[str] = None,
    referenced_column: Optional[str] = None,
    owning: Optional[bool] = None,
    nullable: bool = True,
    junction_table: Optional[str] = None,
) -> RelationMetadata:
    """
    Create relation metadata.

    ``cascade=True`` enables every cascade operation; otherwise pass an
    iterable such as ``["insert", "remove"]``.
    """
    if isinstance(kind, str) and not isinstance(kind, RelationKind):
        kind = RelationKind(kind)
    return RelationMetadata(
        property_name=property_name,
        kind=kind,
        target=target,
        inverse_side=inverse_side,
        owning=owning,
        join_column=join_column,
        referenced_column=referenced_column,
        cascade=_parse_cascade(cascade),
        on_delete=DeleteAction.parse(on_delete),
        nullable=nullable,
        junction_table=junction_table,
    )


# -----------------------------------------------------------------------------
# Entity base model
# -----------------------------------------------------------------------------

class RelBaseModel(BaseModel):
    """
    Base model for RelAlchemy entities.

    Entities are plain data holders. Equality compares mapped column values
    only, so two graphs with back-references never recurse; hashing is by
    object identity because primary keys are assigned during a save.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True, validate_assignment=False, extra="forbid"
    )

    __rel_entity_name__: ClassVar[Optional[str]] = None
    __rel_column_fields__: ClassVar[Tuple[str, ...]] = ()

    def column_values(self) -> Dict[str, Any]:
        """Mapped column values keyed by property name."""
        names = self.__rel_column_fields__ or tuple(self.__class__.model_fields)
        return {name: self.__dict__.get(name) for name in names}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, self.__class__):
            return False
        return self.column_values() == other.column_values()

    def __hash__(self) -> int:
        return hash(id(self))

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self.column_values().items())
        return f"{self.__class__.__name__}({args})"

    __str__ = __repr__


def _build_entity_class(name: str, columns: Iterable[ColumnMetadata], relations: Iterable[RelationMetadata]) -> Type[RelBaseModel]:
    """Synthesize a RelBaseModel subclass with one field per column and relation."""
    fields: Dict[str, Any] = {}
    column_names: List[str] = []
    for col in columns:
        fields[col.property_name] = (Optional[col.python_type], col.default)
        column_names.append(col.property_name)
    for rel in relations:
        if rel.kind.is_to_many:
            fields[rel.property_name] = (List[Any], Field(default_factory=list))
        else:
            fields[rel.property_name] = (Optional[Any], None)
    model = create_model(name, __base__=RelBaseModel, **fields)
    setattr(model, "__rel_entity_name__", name)
    setattr(model, "__rel_column_fields__", tuple(column_names))
    return model


# -----------------------------------------------------------------------------
# Descriptors and entity metadata
# -----------------------------------------------------------------------------

class EntityDescriptor(BaseModel):
    """
    Caller-built declaration of one entity.

    :class: EntityDescriptor
    :synopsis: Validated input to SchemaRegistry.register
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    columns: List[ColumnMetadata]
    relations: List[RelationMetadata] = Field(default_factory=list)
    table_name: Optional[str] = None
    entity_class: Optional[Type[Any]] = None

    @model_validator(mode="after")
    def validate_shape(self) -> "EntityDescriptor":
        # @@ STEP 1: Require a primary key
        if not any(col.primary for col in self.columns):
            raise ValueError(ErrorMessages.MISSING_PRIMARY_KEY.format(entity=self.name))

        # @@ STEP 2: Property names are unique across columns and relations
        seen: Set[str] = set()
        for prop in [c.property_name for c in self.columns] + [r.property_name for r in self.relations]:
            if prop in seen:
                raise ValueError(ErrorMessages.DUPLICATE_PROPERTY.format(entity=self.name, prop=prop))
            seen.add(prop)

        # @@ STEP 3: Storage column names are unique
        column_names = [c.column_name for c in self.columns]
        for name in column_names:
            if column_names.count(name) > 1:
                raise ValueError(ErrorMessages.DUPLICATE_COLUMN.format(entity=self.name, column=name))

        if sum(1 for c in self.columns if c.delete_date) > 1:
            raise ValueError(ErrorMessages.MULTIPLE_DELETE_DATE.format(entity=self.name))
        return self


@dataclass(frozen=True)
class EntityMetadata:
    """
    Immutable metadata for one registered entity.

    :class: EntityMetadata
    :synopsis: Columns, relations and primary key of an entity
    """
    name: str
    table_name: str
    columns: Tuple[ColumnMetadata, ...]
    relations: Tuple[RelationMetadata, ...]
    primary_keys: Tuple[str, ...]
    entity_class: Type[Any] = field(compare=False)
    explicit_class: bool = field(default=False, compare=False)
    _columns_by_property: Dict[str, ColumnMetadata] = field(init=False, repr=False, compare=False)
    _columns_by_name: Dict[str, ColumnMetadata] = field(init=False, repr=False, compare=False)
    _relations_by_property: Dict[str, RelationMetadata] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_columns_by_property", {c.property_name: c for c in self.columns})
        object.__setattr__(self, "_columns_by_name", {c.column_name: c for c in self.columns})
        object.__setattr__(self, "_relations_by_property", {r.property_name: r for r in self.relations})

    def column(self, property_name: str) -> Optional[ColumnMetadata]:
        return self._columns_by_property.get(property_name)

    def column_by_name(self, column_name: str) -> Optional[ColumnMetadata]:
        return self._columns_by_name.get(column_name)

    def relation(self, property_name: str) -> Optional[RelationMetadata]:
        return self._relations_by_property.get(property_name)

    @property
    def primary_columns(self) -> Tuple[ColumnMetadata, ...]:
        return tuple(self._columns_by_property[p] for p in self.primary_keys)

    @property
    def delete_date_column(self) -> Optional[ColumnMetadata]:
        for col in self.columns:
            if col.delete_date:
                return col
        return None

    def shape(self) -> Tuple[Any, ...]:
        """Structural identity used to detect conflicting re-registration."""
        return (self.table_name, self.columns, self.relations, self.primary_keys)

    def primary_key_of(self, instance: Any) -> Optional[Tuple[Any, ...]]:
        """Primary key tuple of ``instance``, or ``None`` while any part is unset."""
        values = tuple(getattr(instance, prop, None) for prop in self.primary_keys)
        if any(v is None for v in values):
            return None
        return values

    def create_instance(self, values: Dict[str, Any]) -> Any:
        return self.entity_class(**values)


# -----------------------------------------------------------------------------
# Default value rendering for DDL
# -----------------------------------------------------------------------------

class DefaultValueHandlerRegistry:
    """Registry for type-specific DEFAULT clause renderers."""

    _handlers: Dict[type, Callable[[Any], str]] = {}

    @classmethod
    def register_handler(cls, value_type: type, handler: Callable[[Any], str]) -> None:
        cls._handlers[value_type] = handler

    @classmethod
    def render(cls, value: Any) -> str:
        handler = cls._handlers.get(type(value))
        if handler is None:
            raise SchemaError(
                f"No DEFAULT renderer registered for {type(value).__name__}. "
                f"Register one with DefaultValueHandlerRegistry.register_handler()"
            )
        return f"{SQLConstants.DEFAULT} {handler(value)}"

    @staticmethod
    def _string_handler(value: str) -> str:
        return "'" + value.replace("'", "''") + "'"


DefaultValueHandlerRegistry.register_handler(bool, lambda v: "1" if v else "0")
DefaultValueHandlerRegistry.register_handler(int, str)
DefaultValueHandlerRegistry.register_handler(float, repr)
DefaultValueHandlerRegistry.register_handler(decimal.Decimal, str)
DefaultValueHandlerRegistry.register_handler(str, DefaultValueHandlerRegistry._string_handler)


# -----------------------------------------------------------------------------
# Schema registry
# -----------------------------------------------------------------------------

class SchemaRegistry:
    """
    Registry of entity metadata with deferred relation resolution.

    The registry moves through two phases:

    1. Registration: descriptors are validated and stored; relations may point
       at entities that are not registered yet.
    2. Finalized: every relation is resolved, the creation order is computed,
       and the registry becomes read-only. Concurrent reads need no locking
       from this point on.

    There is no process-wide instance; callers build one and pass it to the
    sessions that use it.
    """

    def __init__(self) -> None:
        # @@ STEP 1: Core metadata storage
        self._entities: Dict[str, EntityMetadata] = {}
        self._by_class: Dict[type, EntityMetadata] = {}

        # @@ STEP 2: Resolution results, filled by finalize()
        self._resolved: Dict[Tuple[str, str], "ResolvedRelation"] = {}
        self._junctions: Dict[str, "JunctionMetadata"] = {}
        self._creation_order: List[str] = []
        self._dependencies: Dict[str, Set[str]] = {}
        self._circular_dependencies: Set[Tuple[str, str]] = set()
        self._self_references: Set[str] = set()

        self._finalized = False
        self._lock = RLock()

    # ---- registration ------------------------------------------------------

    def register(self, descriptor: EntityDescriptor) -> EntityMetadata:
        """
        Register an entity descriptor.

        Re-registering the same name with an identical shape returns the
        existing metadata.

        :raises RegistryFrozenError: after finalize()
        :raises SchemaConflictError: same name, different shape
        """
        with self._lock:
            if self._finalized:
                raise RegistryFrozenError(ErrorMessages.REGISTRY_FROZEN.format(entity=descriptor.name))

            columns = tuple(descriptor.columns)
            relations = tuple(descriptor.relations)
            entity_class = descriptor.entity_class
            explicit = entity_class is not None

            existing = self._entities.get(descriptor.name)
            table_name = descriptor.table_name or snake_case(descriptor.name)
            primary_keys = tuple(c.property_name for c in columns if c.primary)
            if existing is not None:
                shape = (table_name, columns, relations, primary_keys)
                same_class = (not explicit) or existing.entity_class is entity_class
                if existing.shape() == shape and same_class:
                    return existing
                raise SchemaConflictError(ErrorMessages.SCHEMA_CONFLICT.format(entity=descriptor.name))

            if entity_class is None:
                entity_class = _build_entity_class(descriptor.name, columns, relations)
            elif issubclass(entity_class, RelBaseModel):
                setattr(entity_class, "__rel_entity_name__", descriptor.name)
                setattr(entity_class, "__rel_column_fields__", tuple(c.property_name for c in columns))

            metadata = EntityMetadata(
                name=descriptor.name,
                table_name=table_name,
                columns=columns,
                relations=relations,
                primary_keys=primary_keys,
                entity_class=entity_class,
                explicit_class=explicit,
            )
            self._entities[descriptor.name] = metadata
            self._by_class[entity_class] = metadata
            logger.debug("Registered entity %s (table %s)", metadata.name, metadata.table_name)
            return metadata

    # ---- lookup ------------------------------------------------------------

    def resolve(self, name: str) -> EntityMetadata:
        """:raises UnknownEntityError: when ``name`` was never registered"""
        metadata = self._entities.get(name)
        if metadata is None:
            raise UnknownEntityError(ErrorMessages.UNKNOWN_ENTITY.format(entity=name))
        return metadata

    def all_entities(self) -> List[EntityMetadata]:
        """Entities in registration order."""
        return list(self._entities.values())

    def entity_for(self, target: Any) -> EntityMetadata:
        """Resolve a name, an entity class, or an entity instance."""
        if isinstance(target, EntityMetadata):
            return target
        if isinstance(target, str):
            return self.resolve(target)
        cls = target if isinstance(target, type) else type(target)
        metadata = self._by_class.get(cls)
        if metadata is None:
            raise UnknownEntityError(ErrorMessages.UNKNOWN_ENTITY_CLASS.format(cls=cls.__name__))
        return metadata

    def entity_class(self, name: str) -> Type[Any]:
        return self.resolve(name).entity_class

    # ---- finalization ------------------------------------------------------

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    def require_finalized(self, operation: str) -> None:
        if not self._finalized:
            raise SchemaError(ErrorMessages.REGISTRY_NOT_FINALIZED.format(operation=operation))

    def finalize(self) -> None:
        """
        Resolve all relations, compute the creation order, and freeze.

        Calling finalize() twice is a no-op. Resolution failures propagate and
        leave the registry unfinalized.
        """
        from .rel_relations import RelationshipResolver

        with self._lock:
            if self._finalized:
                return

            resolver = RelationshipResolver(self)
            resolved: Dict[Tuple[str, str], "ResolvedRelation"] = {}
            junctions: Dict[str, "JunctionMetadata"] = {}

            # @@ STEP 1: Resolve each relation against both sides' metadata
            for metadata in self._entities.values():
                for rel in metadata.relations:
                    result = resolver.resolve(rel, metadata)
                    resolved[(metadata.name, rel.property_name)] = result
                    if result.junction is not None:
                        known = junctions.get(result.junction.name)
                        if known is not None and known != result.junction:
                            raise SchemaError(
                                f"Junction table {result.junction.name} is synthesized by two different "
                                f"relations; set junction_table on {metadata.name}.{rel.property_name}"
                            )
                        junctions[result.junction.name] = result.junction

            # @@ STEP 2: Build the dependency graph from owning foreign keys
            self._resolved = resolved
            self._junctions = junctions
            self._analyze_dependencies()

            # @@ STEP 3: Topological creation order
            self._creation_order = self._compute_creation_order()
            self._finalized = True
            logger.info(
                "Schema registry finalized: %d entities, %d relations, %d junction tables",
                len(self._entities), len(resolved), len(junctions),
            )

    def _analyze_dependencies(self) -> None:
        self._dependencies = {name: set() for name in self._entities}
        self._circular_dependencies.clear()
        self._self_references.clear()
        for (owner, _prop), res in self._resolved.items():
            if not res.owning_side or res.foreign_key_column is None:
                continue
            if res.target == owner:
                self._self_references.add(owner)
                continue
            self._dependencies[owner].add(res.target)
            if owner in self._dependencies.get(res.target, set()):
                self._circular_dependencies.add((owner, res.target))

    def _compute_creation_order(self) -> List[str]:
        visited: Set[str] = set()
        visiting: Set[str] = set()
        order: List[str] = []

        def visit(name: str) -> None:
            if name in visited:
                return
            if name in visiting:
                # @@ STEP: Cycles are tolerated; the DDL emits their FKs afterwards
                logger.warning("Circular dependency detected involving %s", name)
                return
            visiting.add(name)
            for dep in sorted(self._dependencies.get(name, set())):
                visit(dep)
            visiting.remove(name)
            visited.add(name)
            order.append(name)

        for name in self._entities:
            visit(name)
        return order

    # ---- resolved relation access -----------------------------------------

    def resolved_relation(self, entity: str, property_name: str) -> "ResolvedRelation":
        """:raises UnknownRelationError: when ``entity`` has no such relation"""
        self.require_finalized("resolving relations")
        result = self._resolved.get((entity, property_name))
        if result is None:
            raise UnknownRelationError(
                ErrorMessages.UNKNOWN_RELATION.format(
                    path=f"{entity}.{property_name}", entity=entity, prop=property_name
                )
            )
        return result

    def relations_of(self, entity: str) -> List["ResolvedRelation"]:
        """Resolved relations of ``entity`` in declaration order."""
        metadata = self.resolve(entity)
        return [self.resolved_relation(entity, rel.property_name) for rel in metadata.relations]

    def junction(self, name: str) -> Optional["JunctionMetadata"]:
        return self._junctions.get(name)

    def junctions(self) -> List["JunctionMetadata"]:
        return [self._junctions[name] for name in sorted(self._junctions)]

    def creation_order(self) -> List[str]:
        self.require_finalized("computing the creation order")
        return list(self._creation_order)

    def get_circular_dependencies(self) -> Set[Tuple[str, str]]:
        return set(self._circular_dependencies)

    def get_self_references(self) -> Set[str]:
        return set(self._self_references)

    # ---- DDL ---------------------------------------------------------------

    def generate_ddl(self, dialect: Union[str, "Dialect"] = "sqlite") -> List[str]:
        """
        Generate CREATE TABLE statements in creation order.

        Emitted features:
          - Column types per dialect, NOT NULL, UNIQUE, DEFAULT
          - Inline PRIMARY KEY when singular, table-level when composite
          - Implicit foreign key columns for relations whose join column is not
            a declared column
          - FOREIGN KEY ... ON DELETE constraints, inline when the target table
            already exists (or the dialect allows forward references),
            otherwise as trailing ALTER TABLE statements
          - Junction tables for many-to-many relations
        """
        from .rel_sql_compiler import get_dialect

        self.require_finalized("generating DDL")
        dialect = get_dialect(dialect)
        statements: List[str] = []
        deferred: List[str] = []
        created: Set[str] = set()

        for name in self._creation_order:
            metadata = self._entities[name]
            table_sql, table_deferred = self._table_ddl(metadata, dialect, created)
            statements.append(table_sql)
            deferred.extend(table_deferred)
            created.add(name)

        for junction in self.junctions():
            statements.append(self._junction_ddl(junction, dialect))

        return statements + deferred

    def _table_ddl(self, metadata: EntityMetadata, dialect: "Dialect", created: Set[str]) -> Tuple[str, List[str]]:
        q = dialect.quote
        lines: List[str] = []
        deferred: List[str] = []
        composite = len(metadata.primary_keys) > 1

        # @@ STEP 1: Declared columns
        for col in metadata.columns:
            lines.append(self._column_ddl(col, dialect, inline_pk=col.primary and not composite))

        # @@ STEP 2: Implicit foreign key columns and constraints
        for rel in metadata.relations:
            res = self._resolved[(metadata.name, rel.property_name)]
            if not res.owning_side or res.foreign_key_column is None:
                continue
            target = self._entities[res.target]
            referenced = target.column(res.referenced_property)
            if res.foreign_key_property is None:
                fk_type = dialect.column_type(referenced.scalar_type)
                null_sql = "" if res.foreign_key_nullable else f" {SQLConstants.NOT_NULL}"
                unique_sql = f" {SQLConstants.UNIQUE}" if rel.kind == RelationKind.ONE_TO_ONE else ""
                lines.append(f"{q(res.foreign_key_column)} {fk_type}{null_sql}{unique_sql}")

            constraint = (
                f"CONSTRAINT {q(self._fk_name(metadata.table_name, res.foreign_key_column))} "
                f"{SQLConstants.FOREIGN_KEY} ({q(res.foreign_key_column)}) "
                f"{SQLConstants.REFERENCES} {q(target.table_name)} ({q(referenced.column_name)}) "
                f"{SQLConstants.ON_DELETE} {rel.on_delete.value}"
            )
            forward = res.target not in created and res.target != metadata.name
            if forward and not dialect.inline_forward_foreign_keys:
                deferred.append(
                    f"{SQLConstants.ALTER_TABLE} {q(metadata.table_name)} {SQLConstants.ADD_CONSTRAINT} "
                    + constraint[len("CONSTRAINT "):]
                )
            else:
                lines.append(constraint)

        # @@ STEP 3: Composite primary key
        if composite:
            pk_cols = SQLConstants.FIELD_SEPARATOR.join(q(c.column_name) for c in metadata.primary_columns)
            lines.append(f"{SQLConstants.PRIMARY_KEY} ({pk_cols})")

        body = ",\n  ".join(lines)
        return f"{SQLConstants.CREATE_TABLE} {q(metadata.table_name)} (\n  {body}\n)", deferred

    @staticmethod
    def _column_ddl(col: ColumnMetadata, dialect: "Dialect", inline_pk: bool) -> str:
        q = dialect.quote
        if col.generated and inline_pk:
            return f"{q(col.column_name)} {dialect.generated_primary_key(col.scalar_type)}"
        parts = [q(col.column_name), dialect.column_type(col.scalar_type)]
        if inline_pk:
            parts.append(SQLConstants.PRIMARY_KEY)
        elif not col.nullable:
            parts.append(SQLConstants.NOT_NULL)
        if col.unique and not col.primary:
            parts.append(SQLConstants.UNIQUE)
        if col.default is not None:
            parts.append(DefaultValueHandlerRegistry.render(col.default))
        return " ".join(parts)

    def _junction_ddl(self, junction: "JunctionMetadata", dialect: "Dialect") -> str:
        q = dialect.quote
        lines: List[str] = []
        for column_name, entity_name, referenced_property in (
            (junction.owner_column, junction.owner_entity, junction.owner_referenced_property),
            (junction.target_column, junction.target_entity, junction.target_referenced_property),
        ):
            entity = self._entities[entity_name]
            referenced = entity.column(referenced_property)
            lines.append(f"{q(column_name)} {dialect.column_type(referenced.scalar_type)} {SQLConstants.NOT_NULL}")
        for column_name, entity_name, referenced_property in (
            (junction.owner_column, junction.owner_entity, junction.owner_referenced_property),
            (junction.target_column, junction.target_entity, junction.target_referenced_property),
        ):
            entity = self._entities[entity_name]
            referenced = entity.column(referenced_property)
            lines.append(
                f"CONSTRAINT {q(self._fk_name(junction.name, column_name))} "
                f"{SQLConstants.FOREIGN_KEY} ({q(column_name)}) "
                f"{SQLConstants.REFERENCES} {q(entity.table_name)} ({q(referenced.column_name)}) "
                f"{SQLConstants.ON_DELETE} {DeleteAction.CASCADE.value}"
            )
        lines.append(
            f"{SQLConstants.PRIMARY_KEY} ({q(junction.owner_column)}, {q(junction.target_column)})"
        )
        body = ",\n  ".join(lines)
        return f"{SQLConstants.CREATE_TABLE} {q(junction.name)} (\n  {body}\n)"

    @staticmethod
    def _fk_name(table: str, column_name: str) -> str:
        return f"fk_{table}_{column_name}"

    def __repr__(self) -> str:
        state = "finalized" if self._finalized else "open"
        return f"<SchemaRegistry({len(self._entities)} entities, {state})>"
