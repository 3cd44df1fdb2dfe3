from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from security.audit.sinks import AuditSink
from security.models import Caller, EntityInstance, Operation, ProposedChange
from security.policy.engine import Decision


@dataclass
class Result:
    """Successful mediator outcome returned to the transport."""
    operation: Operation
    entity_type: str
    instance: Optional[EntityInstance]
    decision: Decision
    correlation_id: str
    audit_event_ids: list = field(default_factory=list)

    def to_dict(self):
        return {
            "operation": self.operation.value,
            "entity_type": self.entity_type,
            "record": self.instance.to_dict() if self.instance else None,
            "correlation_id": self.correlation_id,
        }


class RecordStore(ABC):
    """
    Abstract base class for the storage collaborator.

    Implementations raise:
      - ConflictError on version mismatch or duplicate create
      - TimeoutError when `timeout` elapses (the write must not be applied)
    """

    @abstractmethod
    def fetch(self, entity_type: str, instance_id: str, timeout: Optional[float] = None) -> Optional[EntityInstance]:
        """Return the current snapshot or None if absent."""
        pass

    @abstractmethod
    def apply(self, entity_type: str, instance_id: Optional[str], change: ProposedChange,
              timeout: Optional[float] = None) -> EntityInstance:
        """Apply a Create/Update/Delete and return the resulting (or deleted) snapshot."""
        pass


__all__ = ['AuditSink', 'Caller', 'EntityInstance', 'Operation', 'ProposedChange',
           'RecordStore', 'Result']
