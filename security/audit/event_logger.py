"""
Audit event model.

Event kinds:
  - SensitiveDataRead: classified fields returned to a caller (names only)
  - PersonalDataModified: classified fields created, changed or removed
  - SecurityEvent: a request was denied

Events are immutable once constructed. The core appends them to a sink
and never updates or deletes them.

Classes:
  - AuditEventKind: Enum of event kinds
  - AuditAttribute: One touched field (name, old value, new value)
  - AuditEvent: The event itself

Sensitive values never reach an event: the emitter substitutes MASK
before constructing the attribute.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

MASK = "***"

_UNSET = object()


class AuditEventKind(Enum):
    SENSITIVE_DATA_READ = "SensitiveDataRead"
    PERSONAL_DATA_MODIFIED = "PersonalDataModified"
    SECURITY_EVENT = "SecurityEvent"


@dataclass(frozen=True)
class AuditAttribute:
    """
    A field named in an audit event.

    `old_value` / `new_value` are only serialized when they were provided,
    so "value not recorded" and "value was None" stay distinguishable.
    """
    name: str
    old_value: Any = _UNSET
    new_value: Any = _UNSET

    @property
    def has_old_value(self) -> bool:
        return self.old_value is not _UNSET

    @property
    def has_new_value(self) -> bool:
        return self.new_value is not _UNSET

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        if self.has_old_value:
            data["old_value"] = self.old_value
        if self.has_new_value:
            data["new_value"] = self.new_value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditAttribute':
        return cls(
            name=data["name"],
            old_value=data.get("old_value", _UNSET),
            new_value=data.get("new_value", _UNSET),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    """
    Structured audit record.

    Attributes:
        kind: Event kind
        actor: Caller id ("unknown" if not resolved)
        subject_type: Entity type touched
        subject_id: Instance id touched
        attributes: Fields touched by the request
        correlation_id: Request correlation id
        action: Human-readable description (SecurityEvent)
        origin: Client address supplied by the transport, if any
        timestamp: UTC creation time
        event_id: Unique id, stable across redelivery
    """
    kind: AuditEventKind
    actor: str
    subject_type: str
    subject_id: Optional[str]
    attributes: Tuple[AuditAttribute, ...] = ()
    correlation_id: Optional[str] = None
    action: Optional[str] = None
    origin: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        object.__setattr__(self, "attributes", tuple(self.attributes))

    @property
    def attribute_names(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.attributes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "actor": self.actor,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "attributes": [a.to_dict() for a in self.attributes],
            "correlation_id": self.correlation_id,
            "action": self.action,
            "origin": self.origin,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            kind=AuditEventKind(data["kind"]),
            actor=data["actor"],
            subject_type=data["subject_type"],
            subject_id=data.get("subject_id"),
            attributes=tuple(AuditAttribute.from_dict(a) for a in data.get("attributes", ())),
            correlation_id=data.get("correlation_id"),
            action=data.get("action"),
            origin=data.get("origin"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_id=data["event_id"],
        )


def count_attributes(events: Iterable[AuditEvent]) -> int:
    return sum(len(e.attributes) for e in events)
