from storage import memory_store
from storage import relational

from storage.memory_store import (InMemoryRecordStore,)
from storage.relational import (AuditEventRecord, DatabaseAuditSink,
                                DatabaseConfig, DatabaseManager, RecordRow,
                                SqlRecordStore,)

__all__ = ['AuditEventRecord', 'DatabaseAuditSink', 'DatabaseConfig',
           'DatabaseManager', 'InMemoryRecordStore', 'RecordRow',
           'SqlRecordStore', 'memory_store', 'relational']
