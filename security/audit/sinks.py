"""
Audit sinks: append-only destinations for audit events.

Sinks:
  - InMemoryAuditSink: keeps events in a list (tests, inspection)
  - JsonlAuditSink: one JSON document per line, fsync after every append
  - storage.relational.repository.DatabaseAuditSink: SQL table

A sink acknowledges an event by returning from `append` and reports a
failure by raising. Sinks expose no update or delete operation.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Union

from loguru import logger

from security.audit.event_logger import AuditEvent, AuditEventKind


class AuditSink(ABC):
    """Abstract base class for audit sinks."""

    @abstractmethod
    def append(self, event: AuditEvent) -> None:
        """Append an event. Raises on failure."""
        pass

    def close(self) -> None:
        pass


class InMemoryAuditSink(AuditSink):
    """Thread-safe list-backed sink."""

    def __init__(self):
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def of_kind(self, kind: AuditEventKind) -> List[AuditEvent]:
        return [e for e in self.events if e.kind is kind]

    def for_correlation(self, correlation_id: str) -> List[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class JsonlAuditSink(AuditSink):
    """
    Append-only JSON Lines file.

    Args:
        path: File to append to (parent directories are created)
        fsync: Flush to disk before acknowledging
    """

    def __init__(self, path: Union[str, Path], fsync: bool = True):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.fsync = fsync
        self._lock = threading.Lock()
        logger.info(f"Audit events will be appended to {self.path}")

    def append(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), default=str)
        with self._lock:
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line + "\n")
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())

    def read_all(self) -> List[AuditEvent]:
        """Read back every event (for exports and tests)."""
        if not self.path.exists():
            return []
        with open(self.path, 'r', encoding='utf-8') as f:
            return [AuditEvent.from_dict(json.loads(line)) for line in f if line.strip()]
