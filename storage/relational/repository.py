"""
Data access layer for records and audit events.

The repository pattern isolates SQL from the mediator; the mediator only
sees the RecordStore and AuditSink interfaces.

Classes:
- SqlRecordStore: RecordStore with version-checked updates and deletes
- DatabaseAuditSink: AuditSink inserting into the audit_events table
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.interfaces import RecordStore
from security.audit.event_logger import AuditEvent
from security.audit.sinks import AuditSink
from security.errors import ConflictError
from security.models import EntityInstance, Operation, ProposedChange
from storage.relational.database import DatabaseManager
from storage.relational.models import AuditEventRecord, RecordRow

logger = logging.getLogger(__name__)


class _Deadline:
    """Wall-clock budget for one storage call."""

    def __init__(self, timeout: Optional[float]):
        self.expires = time.monotonic() + timeout if timeout else None

    def check(self, session: Session, what: str) -> None:
        if self.expires is not None and time.monotonic() > self.expires:
            session.rollback()
            raise TimeoutError(f"{what} exceeded its deadline; rolled back")


class SqlRecordStore(RecordStore):
    """
    Record store backed by the `records` table.

    Updates and deletes are conditional on the version the change was
    computed against; a zero row count means somebody else got there first.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def fetch(self, entity_type: str, instance_id: str, timeout: Optional[float] = None) -> Optional[EntityInstance]:
        with self.db.session() as session:
            row = session.get(RecordRow, (entity_type, instance_id))
            return row.to_instance() if row else None

    def apply(self, entity_type: str, instance_id: Optional[str], change: ProposedChange,
              timeout: Optional[float] = None) -> EntityInstance:
        deadline = _Deadline(timeout)
        with self.db.session() as session:
            if change.operation is Operation.CREATE:
                return self._create(session, entity_type, instance_id, change, deadline)
            if change.operation is Operation.UPDATE:
                return self._update(session, entity_type, instance_id, change, deadline)
            if change.operation is Operation.DELETE:
                return self._delete(session, entity_type, instance_id, change, deadline)
        raise ValueError(f"Cannot apply {change.operation.value}")

    def list_by_type(self, entity_type: str, limit: int = 100) -> List[EntityInstance]:
        with self.db.session() as session:
            rows = session.execute(
                select(RecordRow).where(RecordRow.entity_type == entity_type)
                .order_by(RecordRow.created_at).limit(limit)
            ).scalars().all()
            return [row.to_instance() for row in rows]

    # ==================== WRITES ====================

    def _create(self, session: Session, entity_type: str, instance_id: Optional[str],
                change: ProposedChange, deadline: _Deadline) -> EntityInstance:
        row = RecordRow(
            entity_type=entity_type,
            record_id=instance_id or str(uuid.uuid4()),
            field_values=dict(change.fields),
            version=1,
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError as e:
            session.rollback()
            raise ConflictError(f"{entity_type}/{row.record_id} already exists") from e

        deadline.check(session, f"create {entity_type}/{row.record_id}")
        session.commit()
        logger.info(f"Created {entity_type}/{row.record_id}")
        return row.to_instance()

    def _current(self, session: Session, entity_type: str, instance_id: str,
                 change: ProposedChange) -> RecordRow:
        row = session.get(RecordRow, (entity_type, instance_id))
        if row is None:
            raise ConflictError(f"{entity_type}/{instance_id} no longer exists")
        if change.expected_version is not None and change.expected_version != row.version:
            raise ConflictError(
                f"{entity_type}/{instance_id} is at version {row.version}, "
                f"change was made against {change.expected_version}"
            )
        return row

    def _update(self, session: Session, entity_type: str, instance_id: str,
                change: ProposedChange, deadline: _Deadline) -> EntityInstance:
        row = self._current(session, entity_type, instance_id, change)
        version = row.version
        merged = {**(row.field_values or {}), **change.fields}

        result = session.execute(
            update(RecordRow)
            .where(
                RecordRow.entity_type == entity_type,
                RecordRow.record_id == instance_id,
                RecordRow.version == version,
            )
            .values(field_values=merged, version=version + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError(f"{entity_type}/{instance_id} changed concurrently")

        deadline.check(session, f"update {entity_type}/{instance_id}")
        session.commit()
        logger.info(f"Updated {entity_type}/{instance_id} to version {version + 1}")
        return EntityInstance(type=entity_type, id=instance_id, fields=merged, version=version + 1)

    def _delete(self, session: Session, entity_type: str, instance_id: str,
                change: ProposedChange, deadline: _Deadline) -> EntityInstance:
        row = self._current(session, entity_type, instance_id, change)
        snapshot = row.to_instance()

        result = session.execute(
            delete(RecordRow)
            .where(
                RecordRow.entity_type == entity_type,
                RecordRow.record_id == instance_id,
                RecordRow.version == snapshot.version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError(f"{entity_type}/{instance_id} changed concurrently")

        deadline.check(session, f"delete {entity_type}/{instance_id}")
        session.commit()
        logger.info(f"Deleted {entity_type}/{instance_id}")
        return snapshot


class DatabaseAuditSink(AuditSink):
    """
    Append-only audit sink on the `audit_events` table.

    Redelivered events whose event_id is already stored are acknowledged
    without inserting a second row.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def append(self, event: AuditEvent) -> None:
        with self.db.session() as session:
            session.add(AuditEventRecord.from_event(event))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if session.get(AuditEventRecord, event.event_id) is None:
                    raise
                logger.info(f"Audit event {event.event_id} already stored")

    def list_events(self, subject_type: Optional[str] = None, subject_id: Optional[str] = None,
                    limit: int = 100) -> List[AuditEvent]:
        """Read back events, newest first (exports and tests)."""
        with self.db.session() as session:
            query = select(AuditEventRecord)
            if subject_type:
                query = query.where(AuditEventRecord.subject_type == subject_type)
            if subject_id:
                query = query.where(AuditEventRecord.subject_id == subject_id)
            rows = session.execute(
                query.order_by(AuditEventRecord.created_at.desc()).limit(limit)
            ).scalars().all()
            return [row.to_event() for row in rows]
