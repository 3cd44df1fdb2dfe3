"""
Error taxonomy for the authorization and audit pipeline.

Errors:
  - NotFound: instance absent (not a security signal)
  - AccessDenied: policy refused the request (always audited)
  - ConflictError: concurrent modification reported by storage (retryable)
  - ConfigurationError: fatal, raised only while loading policy configuration
  - AuditDeliveryError: mandatory audit event could not be accepted by the sink
  - InternalError: generic failure surfaced by the mediator

The mediator only lets NotFound, AccessDenied and InternalError escape to
its own caller.
"""

from typing import Iterable, List, Optional


class PolicyError(Exception):
    """Base class for every error raised by this package."""
    pass


class NotFound(PolicyError):
    """Raised when the requested instance does not exist."""

    def __init__(self, entity_type: str, instance_id: Optional[str]):
        self.entity_type = entity_type
        self.instance_id = instance_id
        super().__init__(f"{entity_type} '{instance_id}' not found")


class AccessDenied(PolicyError):
    """Raised when the policy engine denies a request. `reason` is safe to show the caller."""

    def __init__(self, reason: str, correlation_id: Optional[str] = None):
        self.reason = reason
        self.correlation_id = correlation_id
        super().__init__(reason)


class ConflictError(PolicyError):
    """Raised by a storage collaborator on concurrent modification."""
    pass


class ConfigurationError(PolicyError):
    """Raised at load time when the policy configuration is malformed."""

    def __init__(self, problems: Iterable[str]):
        if isinstance(problems, str):
            problems = [problems]
        self.problems: List[str] = list(problems)
        message = "Invalid policy configuration:\n  - " + "\n  - ".join(self.problems)
        super().__init__(message)


class AuditDeliveryError(PolicyError):
    """Raised when an audit event was neither delivered nor durably queued."""
    pass


class InternalError(PolicyError):
    """Generic failure returned by the mediator in place of storage and audit errors."""

    def __init__(self, message: str = "Request could not be completed", retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
