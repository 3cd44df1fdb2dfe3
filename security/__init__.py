from security import errors
from security import models

from security.errors import (AccessDenied, AuditDeliveryError, ConfigurationError,
                             ConflictError, InternalError, NotFound, PolicyError,)
from security.models import (Caller, EntityInstance, Operation, ProposedChange,)

__all__ = ['AccessDenied', 'AuditDeliveryError', 'Caller', 'ConfigurationError',
           'ConflictError', 'EntityInstance', 'InternalError', 'NotFound',
           'Operation', 'PolicyError', 'ProposedChange', 'errors', 'models']
