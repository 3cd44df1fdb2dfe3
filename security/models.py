"""
Request-scoped value objects shared by the policy engine, the audit
emitter and the mediator.

Classes:
  - Operation: CRUD operation enum
  - Caller: Verified identity and role set handed over by the identity layer
  - EntityInstance: Snapshot of one record as returned by storage
  - ProposedChange: What a write request wants to do to an instance
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional


class Operation(Enum):
    """CRUD operations guarded by the policy engine."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_string(cls, value: str) -> 'Operation':
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown operation: {value!r}")

    @property
    def is_write(self) -> bool:
        return self is not Operation.READ

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class Caller:
    """
    Authenticated caller.

    Attributes:
        id: Caller identifier as produced by the identity collaborator
        roles: Unordered set of role names
    """
    id: str
    roles: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "roles", frozenset(self.roles))

    @classmethod
    def of(cls, caller_id: str, roles: Iterable[str] = ()) -> 'Caller':
        return cls(id=caller_id, roles=frozenset(roles))

    def has_role(self, role: str) -> bool:
        return role in self.roles


def _freeze(fields: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(fields or {}))


@dataclass(frozen=True)
class EntityInstance:
    """
    Snapshot of a record.

    Attributes:
        type: Entity type name (e.g. "Incident")
        id: Record identifier (None for a not-yet-created record)
        fields: Field values, read-only
        version: Storage version used for optimistic concurrency
    """
    type: str
    id: Optional[str]
    fields: Mapping[str, Any] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self):
        object.__setattr__(self, "fields", _freeze(self.fields))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def merged(self, changes: Mapping[str, Any]) -> 'EntityInstance':
        """Return the post-change state of this instance."""
        fields = dict(self.fields)
        fields.update(changes or {})
        return EntityInstance(type=self.type, id=self.id, fields=fields, version=self.version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "fields": dict(self.fields),
            "version": self.version,
        }


@dataclass(frozen=True)
class ProposedChange:
    """
    Requested modification.

    Attributes:
        operation: Operation being requested
        fields: Field values to set (empty for Read and Delete)
        expected_version: Version the change was computed against
    """
    operation: Operation
    fields: Mapping[str, Any] = field(default_factory=dict)
    expected_version: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "fields", _freeze(self.fields))

    @classmethod
    def none(cls, operation: Operation) -> 'ProposedChange':
        return cls(operation=operation)

    def sets(self, name: str) -> bool:
        return name in self.fields

    def with_fields(self, fields: Mapping[str, Any]) -> 'ProposedChange':
        return ProposedChange(self.operation, fields, self.expected_version)

    def with_version(self, version: Optional[int]) -> 'ProposedChange':
        return ProposedChange(self.operation, self.fields, version)
