"""
Role-Based Access Control model: entity types, grants and transition guards.

Grants:
  - Bind a role to a set of operations on one entity type
  - Optionally narrowed by a named instance predicate (row-level check)
  - Roles are additive: any satisfied grant allows the operation

Transition guards:
  - Scoped to one entity type and one state-changing operation
  - Fire when their named condition holds on the current or post-change state
  - Veto an otherwise allowed request unless the caller holds `required_role`

Classes:
  - EntityType: Declared schema with field classifications
  - Grant: Role -> operations binding
  - TransitionGuard: Additional necessary condition for Update/Delete
  - PolicyModel: Immutable, indexed collection of the above

The model is built once by `security.policy.loader` and never mutated.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from security.models import Operation
from security.policy.classification import Classification, ClassificationRegistry
from security.policy.predicates import Condition, Predicate

GUARDED_OPERATIONS = frozenset({Operation.UPDATE, Operation.DELETE})


@dataclass(frozen=True)
class HookSpec:
    """Named create-time hook with its arguments (resolved by the orchestrator)."""
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EntityType:
    name: str
    fields: Mapping[str, Classification]
    on_create: Tuple[HookSpec, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def has_field(self, name: str) -> bool:
        return name in self.fields


@dataclass(frozen=True)
class Grant:
    """
    Permission binding a role to operations on an entity type.

    Attributes:
        entity_type: Entity type name
        role: Role the grant applies to
        operations: Operations allowed by this grant
        predicate: Optional (caller, instance) -> bool check
        predicate_name: Name the predicate was resolved from (for logging)
    """
    entity_type: str
    role: str
    operations: FrozenSet[Operation]
    predicate: Optional[Predicate] = None
    predicate_name: Optional[str] = None
    predicate_args: Mapping[str, Any] = field(default_factory=dict)

    @property
    def unconditional(self) -> bool:
        return self.predicate is None

    def describe(self) -> str:
        ops = ",".join(sorted(op.value for op in self.operations))
        if self.unconditional:
            return f"{self.role}:{self.entity_type}[{ops}]"
        return f"{self.role}:{self.entity_type}[{ops}] if {self.predicate_name}"


@dataclass(frozen=True)
class TransitionGuard:
    """
    Veto rule for a state-changing operation.

    Attributes:
        entity_type: Entity type name
        applies_to: Update or Delete
        condition: (instance, change) -> bool; the guard fires when True
        required_role: Role that lets a caller through a fired guard
        deny_message: Reason returned when the guard vetoes a request
    """
    entity_type: str
    applies_to: Operation
    condition: Condition
    required_role: str
    deny_message: str
    condition_name: str = ""
    condition_args: Mapping[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.entity_type}.{self.applies_to.value}:{self.condition_name} requires {self.required_role}"


class PolicyModel:
    """
    Indexed, read-only view over entity types, grants and guards.

    Safe to share between threads: every container is built in __init__
    and never modified afterwards.
    """

    def __init__(
        self,
        entity_types: Iterable[EntityType],
        grants: Iterable[Grant],
        guards: Iterable[TransitionGuard],
        roles: Optional[Iterable[str]] = None,
    ):
        self._entity_types: Mapping[str, EntityType] = MappingProxyType(
            {etype.name: etype for etype in entity_types}
        )
        self._grants: Tuple[Grant, ...] = tuple(grants)
        self._guards: Tuple[TransitionGuard, ...] = tuple(guards)
        declared = set(roles or ())
        declared.update(g.role for g in self._grants)
        declared.update(g.required_role for g in self._guards)
        self._roles: FrozenSet[str] = frozenset(declared)

        grant_index: Dict[Tuple[str, Operation], List[Grant]] = {}
        for grant in self._grants:
            for operation in grant.operations:
                grant_index.setdefault((grant.entity_type, operation), []).append(grant)
        self._grant_index = MappingProxyType({k: tuple(v) for k, v in grant_index.items()})

        guard_index: Dict[Tuple[str, Operation], List[TransitionGuard]] = {}
        for guard in self._guards:
            guard_index.setdefault((guard.entity_type, guard.applies_to), []).append(guard)
        self._guard_index = MappingProxyType({k: tuple(v) for k, v in guard_index.items()})

        self.classifications = ClassificationRegistry.from_fields(
            {name: etype.fields for name, etype in self._entity_types.items()}
        )

    # ==================== LOOKUPS ====================

    @property
    def entity_types(self) -> Mapping[str, EntityType]:
        return self._entity_types

    @property
    def roles(self) -> FrozenSet[str]:
        return self._roles

    @property
    def grants(self) -> Tuple[Grant, ...]:
        return self._grants

    @property
    def guards(self) -> Tuple[TransitionGuard, ...]:
        return self._guards

    def entity_type(self, name: str) -> Optional[EntityType]:
        return self._entity_types.get(name)

    def grants_for(self, entity_type: str, operation: Operation) -> Tuple[Grant, ...]:
        return self._grant_index.get((entity_type, operation), ())

    def guards_for(self, entity_type: str, operation: Operation) -> Tuple[TransitionGuard, ...]:
        return self._guard_index.get((entity_type, operation), ())

    def roles_granting(self, entity_type: str, operation: Operation) -> FrozenSet[str]:
        """Roles with at least one grant (conditional or not) for the operation."""
        return frozenset(g.role for g in self.grants_for(entity_type, operation))

    def __repr__(self):
        return (
            f"<PolicyModel(entity_types={list(self._entity_types)}, "
            f"grants={len(self._grants)}, guards={len(self._guards)})>"
        )
