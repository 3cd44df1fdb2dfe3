"""
SQLAlchemy ORM models for the relational record store and audit table.

Tables:
  - records: one row per entity instance, field values as JSON, version
    counter for optimistic concurrency
  - audit_events: append-only audit trail (DatabaseAuditSink)
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from security.audit.event_logger import AuditAttribute, AuditEvent, AuditEventKind
from security.models import EntityInstance

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class RecordRow(Base):
    """
    A stored entity instance.

    Attributes:
        entity_type: Entity type name (part of the primary key)
        record_id: Instance id (part of the primary key)
        field_values: Field values as JSON
        version: Incremented on every update
    """

    __tablename__ = "records"

    entity_type = Column(String(100), primary_key=True, doc="Entity type name")
    record_id = Column(String(64), primary_key=True, doc="Instance identifier")
    field_values = Column(JSON, nullable=False, default=lambda: {})
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<RecordRow({self.entity_type}/{self.record_id}, version={self.version})>"

    def to_instance(self) -> EntityInstance:
        return EntityInstance(
            type=self.entity_type,
            id=self.record_id,
            fields=dict(self.field_values or {}),
            version=self.version,
        )


class AuditEventRecord(Base):
    """Persisted audit event. Rows are inserted, never updated or deleted."""

    __tablename__ = "audit_events"

    event_id = Column(String(36), primary_key=True)
    kind = Column(String(40), nullable=False)
    actor = Column(String(255), nullable=False)
    subject_type = Column(String(100), nullable=False)
    subject_id = Column(String(64), nullable=True)
    attributes = Column(JSON, nullable=False, default=lambda: [])
    correlation_id = Column(String(128), nullable=True)
    action = Column(Text, nullable=True)
    origin = Column(String(255), nullable=True)  # client address or host name
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_audit_actor_created', actor, created_at),
        Index('idx_audit_subject', subject_type, subject_id),
        Index('idx_audit_kind_created', kind, created_at),
        Index('idx_audit_correlation', correlation_id),
    )

    @classmethod
    def from_event(cls, event: AuditEvent) -> 'AuditEventRecord':
        return cls(
            event_id=event.event_id,
            kind=event.kind.value,
            actor=event.actor,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            attributes=[a.to_dict() for a in event.attributes],
            correlation_id=event.correlation_id,
            action=event.action,
            origin=event.origin,
            created_at=event.timestamp,
        )

    def to_event(self) -> AuditEvent:
        return AuditEvent(
            kind=AuditEventKind(self.kind),
            actor=self.actor,
            subject_type=self.subject_type,
            subject_id=self.subject_id,
            attributes=tuple(AuditAttribute.from_dict(a) for a in self.attributes or ()),
            correlation_id=self.correlation_id,
            action=self.action,
            origin=self.origin,
            timestamp=self.created_at,
            event_id=self.event_id,
        )
