from security.audit.emitter import (AuditEmitter, describe_denial,)
from security.audit.event_logger import (MASK, AuditAttribute, AuditEvent,
                                         AuditEventKind,)
from security.audit.retry_queue import (AuditRetryQueue, RetryPolicy,)
from security.audit.sinks import (AuditSink, InMemoryAuditSink, JsonlAuditSink,)

__all__ = ['AuditAttribute', 'AuditEmitter', 'AuditEvent', 'AuditEventKind',
           'AuditRetryQueue', 'AuditSink', 'InMemoryAuditSink', 'JsonlAuditSink',
           'MASK', 'RetryPolicy', 'describe_denial']
