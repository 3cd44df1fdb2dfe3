"""
In-memory record store.

Implements the storage collaborator with a dict guarded by a lock.
Versions start at 1 and increase on every update; a change computed
against another version raises ConflictError.
"""

import threading
import uuid
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from orchestrator.interfaces import RecordStore
from security.errors import ConflictError
from security.models import EntityInstance, Operation, ProposedChange


class InMemoryRecordStore(RecordStore):

    def __init__(self, records: Optional[Iterable[EntityInstance]] = None):
        self._records: Dict[Tuple[str, str], EntityInstance] = {}
        self._lock = threading.Lock()
        for record in records or ():
            self.put(record)

    def put(self, record: EntityInstance) -> EntityInstance:
        """Seed a record directly, bypassing policy (fixtures, imports)."""
        if record.id is None:
            raise ValueError("Seeded records need an id")
        version = record.version or 1
        stored = EntityInstance(type=record.type, id=record.id, fields=record.fields, version=version)
        with self._lock:
            self._records[(record.type, record.id)] = stored
        return stored

    def seed(self, entity_type: str, instance_id: str, **fields: Any) -> EntityInstance:
        return self.put(EntityInstance(type=entity_type, id=instance_id, fields=fields))

    def fetch(self, entity_type: str, instance_id: str, timeout: Optional[float] = None) -> Optional[EntityInstance]:
        with self._lock:
            return self._records.get((entity_type, instance_id))

    def apply(self, entity_type: str, instance_id: Optional[str], change: ProposedChange,
              timeout: Optional[float] = None) -> EntityInstance:
        with self._lock:
            if change.operation is Operation.CREATE:
                return self._create(entity_type, instance_id, change.fields)

            key = (entity_type, instance_id)
            current = self._records.get(key)
            if current is None:
                raise ConflictError(f"{entity_type}/{instance_id} no longer exists")
            if change.expected_version is not None and change.expected_version != current.version:
                raise ConflictError(
                    f"{entity_type}/{instance_id} is at version {current.version}, "
                    f"change was made against {change.expected_version}"
                )

            if change.operation is Operation.DELETE:
                del self._records[key]
                return current

            if change.operation is Operation.UPDATE:
                updated = EntityInstance(
                    type=entity_type,
                    id=instance_id,
                    fields={**current.fields, **change.fields},
                    version=current.version + 1,
                )
                self._records[key] = updated
                return updated

        raise ValueError(f"Cannot apply {change.operation.value}")

    def _create(self, entity_type: str, instance_id: Optional[str], fields: Mapping[str, Any]) -> EntityInstance:
        instance_id = instance_id or str(uuid.uuid4())
        key = (entity_type, instance_id)
        if key in self._records:
            raise ConflictError(f"{entity_type}/{instance_id} already exists")
        created = EntityInstance(type=entity_type, id=instance_id, fields=fields, version=1)
        self._records[key] = created
        return created

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
