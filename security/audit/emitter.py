"""
Classification-driven audit emitter.

Called by the request mediator after each decision (never by the policy
engine):

  - Read allowed: one SensitiveDataRead per returned instance that has
    classified fields, naming those fields (never their values)
  - Create/Update/Delete allowed: one PersonalDataModified per instance
    listing each touched classified field; Personal values in clear,
    Sensitive values replaced by "***"
  - Deny: exactly one SecurityEvent with no attributes and an action string
    naming the resource and the required vs. held roles

Delivery:
  - each append is retried according to RetryPolicy, within the caller's
    timeout when one is given (a sink that does not answer in time counts
    as a failed append)
  - if the sink still fails, the event goes to the durable retry queue
  - if there is no queue (or it fails too) AuditDeliveryError is raised;
    `record_denial` logs that error instead of raising it
"""

import time
from collections import Counter
from concurrent import futures
from typing import Any, Callable, Iterable, List, Optional, Sequence

from loguru import logger

from security.audit.event_logger import MASK, AuditAttribute, AuditEvent, AuditEventKind
from security.audit.retry_queue import AuditRetryQueue, RetryPolicy
from security.audit.sinks import AuditSink
from security.errors import AuditDeliveryError
from security.models import Caller, EntityInstance, Operation, ProposedChange
from security.policy.classification import Classification, ClassificationRegistry


class AuditEmitter:
    """
    Builds audit events from classifications and hands them to a sink.

    Args:
        sink: Audit sink collaborator
        classifications: Field classification registry
        retry_policy: Immediate retry policy for sink appends
        retry_queue: Durable queue used when the sink keeps failing
        audit_personal_reads: Also name Personal fields in read events
        timeout: Default time budget in seconds for delivering one event
    """

    def __init__(
        self,
        sink: AuditSink,
        classifications: ClassificationRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        retry_queue: Optional[AuditRetryQueue] = None,
        audit_personal_reads: bool = True,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sink = sink
        self.classifications = classifications
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_queue = retry_queue
        self.audit_personal_reads = audit_personal_reads
        self.timeout = timeout
        self.stats: Counter = Counter()
        self._sleep = sleep
        self._executor: Optional[futures.ThreadPoolExecutor] = None

    # ==================== DELIVERY ====================

    def record(
        self,
        kind: AuditEventKind,
        actor: str,
        subject_type: str,
        subject_id: Optional[str],
        attributes: Sequence[AuditAttribute],
        correlation_id: Optional[str],
        action: Optional[str] = None,
        origin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AuditEvent:
        """
        Build one event and deliver it.

        Raises:
            AuditDeliveryError: If the event was neither delivered nor queued
        """
        event = AuditEvent(
            kind=kind,
            actor=actor or "unknown",
            subject_type=subject_type,
            subject_id=subject_id,
            attributes=tuple(attributes),
            correlation_id=correlation_id,
            action=action,
            origin=origin,
        )
        self.deliver(event, timeout=timeout)
        return event

    def deliver(self, event: AuditEvent, timeout: Optional[float] = None) -> bool:
        """
        Deliver an event to the sink, falling back to the retry queue.

        Args:
            event: Event to deliver
            timeout: Time budget for the sink (defaults to `self.timeout`)

        Returns:
            True if the sink acknowledged it, False if it was queued
        """
        budget = timeout if timeout is not None else self.timeout
        deadline = time.monotonic() + budget if budget is not None else None
        try:
            self.retry_policy.run(lambda: self._append(event, deadline), sleep=self._sleep, deadline=deadline)
            self.stats["delivered"] += 1
            return True
        except Exception as sink_error:
            if isinstance(sink_error, TimeoutError):
                self.stats["timed_out"] += 1
            if self.retry_queue is None:
                self.stats["failed"] += 1
                raise AuditDeliveryError(
                    f"Audit sink rejected {event.kind.value} {event.event_id}: {sink_error}"
                ) from sink_error

            try:
                self.retry_queue.enqueue(event)
            except Exception as queue_error:
                self.stats["failed"] += 1
                raise AuditDeliveryError(
                    f"Audit event {event.event_id} could not be delivered ({sink_error}) "
                    f"or queued ({queue_error})"
                ) from queue_error

            self.stats["queued"] += 1
            return False

    def _append(self, event: AuditEvent, deadline: Optional[float]) -> None:
        """One sink append, abandoned (not cancelled) once `deadline` passes."""
        if deadline is None:
            self.sink.append(event)
            return

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("audit deadline exceeded before append")
        if self._executor is None:
            self._executor = futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="audit-sink")
        future = self._executor.submit(self.sink.append, event)
        try:
            future.result(timeout=remaining)
        except futures.TimeoutError:
            logger.warning(f"Audit sink did not answer within {remaining:.3f}s for event {event.event_id}")
            raise TimeoutError(f"audit sink did not answer within {remaining:.3f}s")

    def redeliver(self) -> int:
        """Drain the retry queue into the sink. Returns the number delivered."""
        if self.retry_queue is None:
            return 0
        delivered = self.retry_queue.drain(self.sink.append)
        self.stats["redelivered"] += delivered
        return delivered

    # ==================== OUTCOMES ====================

    def record_read(
        self,
        actor: str,
        entity_type: str,
        instances: Iterable[EntityInstance],
        correlation_id: Optional[str],
        origin: Optional[str] = None,
        classifications: Optional[ClassificationRegistry] = None,
        timeout: Optional[float] = None,
    ) -> List[AuditEvent]:
        """Audit the instances actually returned to the caller."""
        if classifications is None:
            classifications = self.classifications
        audited = {Classification.SENSITIVE}
        if self.audit_personal_reads:
            audited.add(Classification.PERSONAL)

        events = []
        for instance in instances:
            names = [
                name for name in instance.fields
                if classifications.classify(entity_type, name) in audited
            ]
            if not names:
                continue
            events.append(self.record(
                AuditEventKind.SENSITIVE_DATA_READ,
                actor=actor,
                subject_type=entity_type,
                subject_id=instance.id,
                attributes=[AuditAttribute(name=name) for name in names],
                correlation_id=correlation_id,
                origin=origin,
                timeout=timeout,
            ))
        return events

    def record_write(
        self,
        actor: str,
        operation: Operation,
        entity_type: str,
        before: Optional[EntityInstance],
        after: Optional[EntityInstance],
        change: ProposedChange,
        correlation_id: Optional[str],
        origin: Optional[str] = None,
        classifications: Optional[ClassificationRegistry] = None,
        timeout: Optional[float] = None,
    ) -> List[AuditEvent]:
        """
        Audit a committed Create, Update or Delete.

        Args:
            before: Snapshot before the write (None for Create)
            after: Snapshot returned by storage (None if not available)
            change: Fields that were written (after create hooks)
            classifications: Registry of the policy that decided the request

        Returns:
            Emitted events (empty if no classified field was touched)
        """
        if classifications is None:
            classifications = self.classifications
        attributes = []
        if operation is Operation.DELETE:
            for name, value in (before.fields.items() if before else ()):
                classification = classifications.classify(entity_type, name)
                if classification.is_classified:
                    attributes.append(AuditAttribute(name=name, old_value=self._value(classification, value)))
        else:
            for name, value in change.fields.items():
                classification = classifications.classify(entity_type, name)
                if not classification.is_classified:
                    continue
                if operation is Operation.UPDATE and before is not None:
                    attributes.append(AuditAttribute(
                        name=name,
                        old_value=self._value(classification, before.get(name)),
                        new_value=self._value(classification, value),
                    ))
                else:
                    attributes.append(AuditAttribute(name=name, new_value=self._value(classification, value)))

        if not attributes:
            return []

        subject = after or before
        return [self.record(
            AuditEventKind.PERSONAL_DATA_MODIFIED,
            actor=actor,
            subject_type=entity_type,
            subject_id=subject.id if subject else None,
            attributes=attributes,
            correlation_id=correlation_id,
            origin=origin,
            timeout=timeout,
        )]

    def record_denial(
        self,
        caller: Caller,
        operation: Operation,
        entity_type: str,
        instance_id: Optional[str],
        required_roles: Iterable[str],
        reason: Optional[str],
        correlation_id: Optional[str],
        origin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[AuditEvent]:
        """
        Emit the SecurityEvent for a denied request.

        Delivery failures are logged and swallowed: the Deny stands either way.
        """
        action = describe_denial(caller, operation, entity_type, instance_id, required_roles, reason)
        try:
            return self.record(
                AuditEventKind.SECURITY_EVENT,
                actor=caller.id if caller else "unknown",
                subject_type=entity_type,
                subject_id=instance_id,
                attributes=(),
                correlation_id=correlation_id,
                action=action,
                origin=origin,
                timeout=timeout,
            )
        except AuditDeliveryError as e:
            logger.error(f"SecurityEvent for denied request {correlation_id} not recorded: {e}")
            return None

    @staticmethod
    def _value(classification: Classification, value: Any) -> Any:
        return MASK if classification is Classification.SENSITIVE else value


def describe_denial(
    caller: Optional[Caller],
    operation: Operation,
    entity_type: str,
    instance_id: Optional[str],
    required_roles: Iterable[str],
    reason: Optional[str],
) -> str:
    resource = f"{entity_type}/{instance_id}" if instance_id else entity_type
    required = ", ".join(sorted(required_roles)) or "none"
    held = ", ".join(sorted(caller.roles)) if caller and caller.roles else "none"
    action = (
        f'Attempt to {operation.value} restricted resource "{resource}" with insufficient authority '
        f"(required: {required}; held: {held})"
    )
    if reason:
        action += f": {reason}"
    return action
