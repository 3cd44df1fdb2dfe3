from storage.relational import database
from storage.relational import models
from storage.relational import repository

from storage.relational.database import (DatabaseConfig, DatabaseManager,)
from storage.relational.models import (AuditEventRecord, Base, RecordRow,)
from storage.relational.repository import (DatabaseAuditSink, SqlRecordStore,)

__all__ = ['AuditEventRecord', 'Base', 'DatabaseAuditSink', 'DatabaseConfig',
           'DatabaseManager', 'RecordRow', 'SqlRecordStore', 'database',
           'models', 'repository']
