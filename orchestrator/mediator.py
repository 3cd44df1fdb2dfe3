#Request-time flow: fetch snapshot -> evaluate policy -> apply -> audit -> acknowledge

import uuid
from typing import Any, Callable, List, Mapping, Optional, Union

from loguru import logger

from orchestrator.hooks import apply_create_hooks
from orchestrator.interfaces import RecordStore, Result
from orchestrator.observability import evaluation_incomplete, increment, trace_request
from security.audit.emitter import AuditEmitter
from security.audit.event_logger import AuditEvent
from security.errors import AccessDenied, AuditDeliveryError, ConflictError, InternalError, NotFound
from security.models import Caller, EntityInstance, Operation, ProposedChange
from security.policy.engine import Decision, PolicyEngine


class RequestMediator:
    """
    Orchestrates one CRUD request against the record store.

    Ordering guarantees:
      - storage write happens before its audit event (audit reflects committed state)
      - audit acceptance happens before success is returned to the caller

    Only NotFound, AccessDenied and InternalError leave `handle`.
    """

    def __init__(
        self,
        engine: PolicyEngine,
        emitter: AuditEmitter,
        store: RecordStore,
        timeout: Optional[float] = None,
    ):
        self.engine = engine
        self.emitter = emitter
        self.store = store
        self.timeout = timeout
        self.logger = logger

    def swap_engine(self, engine: PolicyEngine) -> None:
        """
        Install a freshly loaded policy.

        In-flight requests keep the engine they started with, and audit with
        that engine's classifications.
        """
        self.engine = engine
        self.emitter.classifications = engine.model.classifications

    def handle(
        self,
        caller: Caller,
        operation: Union[Operation, str],
        entity_type: str,
        instance_id: Optional[str] = None,
        proposed_change: Optional[Union[ProposedChange, Mapping[str, Any]]] = None,
        correlation_id: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> Result:
        """
        Process one request.

        Args:
            caller: Verified caller from the identity collaborator
            operation: Requested operation
            entity_type: Entity type name
            instance_id: Target instance (optional for Create)
            proposed_change: ProposedChange or plain field mapping
            correlation_id: Request correlation id (generated if absent)
            origin: Client address for the audit trail

        Returns:
            Result with the returned / written instance

        Raises:
            NotFound: Instance does not exist
            AccessDenied: Policy refused the request
            InternalError: Unknown operation (not retryable), storage conflict,
                timeout or audit delivery failure
        """
        if not isinstance(operation, Operation):
            try:
                operation = Operation.from_string(operation)
            except ValueError as e:
                self.logger.warning(f"Rejected request for {entity_type}/{instance_id}: {e}")
                raise InternalError(str(e), retryable=False) from e
        correlation_id = correlation_id or str(uuid.uuid4())
        change = self._as_change(operation, proposed_change)
        engine = self.engine
        classifications = engine.model.classifications

        with trace_request(correlation_id, f"{operation.value}:{entity_type}"):
            snapshot: Optional[EntityInstance] = None
            if operation is Operation.CREATE:
                subject = EntityInstance(type=entity_type, id=instance_id, fields=change.fields)
            else:
                snapshot = self._fetch(entity_type, instance_id, operation, correlation_id)
                subject = snapshot
                if change.expected_version is None:
                    change = change.with_version(snapshot.version)

            decision = engine.evaluate(caller, operation, entity_type, subject, change)

            if not decision.allowed:
                self._deny(caller, operation, entity_type, instance_id, decision, correlation_id, origin)

            increment("decision.allow")
            self.logger.debug(
                f"{caller.id} {operation.value} {entity_type}/{instance_id} allowed by {decision.rule}"
            )

            if operation is Operation.READ:
                events = self._audit(correlation_id, lambda: self.emitter.record_read(
                    caller.id, entity_type, [snapshot], correlation_id, origin=origin,
                    classifications=classifications, timeout=self.timeout,
                ))
                return Result(operation, entity_type, snapshot, decision, correlation_id,
                              [e.event_id for e in events])

            if operation is Operation.CREATE:
                change = apply_create_hooks(engine.model.entity_type(entity_type), caller, change)

            written = self._apply(entity_type, instance_id, change, correlation_id)
            events = self._audit(correlation_id, lambda: self.emitter.record_write(
                caller.id, operation, entity_type, snapshot, written, change, correlation_id, origin=origin,
                classifications=classifications, timeout=self.timeout,
            ))

        self.logger.info(f"{caller.id} {operation.value} {entity_type}/{written.id} committed [{correlation_id}]")
        return Result(operation, entity_type, written, decision, correlation_id, [e.event_id for e in events])

    # ==================== CONVENIENCE ====================

    def read(self, caller: Caller, entity_type: str, instance_id: str, **kwargs) -> Result:
        return self.handle(caller, Operation.READ, entity_type, instance_id, **kwargs)

    def create(self, caller: Caller, entity_type: str, fields: Mapping[str, Any],
               instance_id: Optional[str] = None, **kwargs) -> Result:
        return self.handle(caller, Operation.CREATE, entity_type, instance_id, fields, **kwargs)

    def update(self, caller: Caller, entity_type: str, instance_id: str, fields: Mapping[str, Any],
               **kwargs) -> Result:
        return self.handle(caller, Operation.UPDATE, entity_type, instance_id, fields, **kwargs)

    def delete(self, caller: Caller, entity_type: str, instance_id: str, **kwargs) -> Result:
        return self.handle(caller, Operation.DELETE, entity_type, instance_id, **kwargs)

    # ==================== STEPS ====================

    @staticmethod
    def _as_change(operation: Operation, proposed: Optional[Union[ProposedChange, Mapping[str, Any]]]) -> ProposedChange:
        if operation in (Operation.READ, Operation.DELETE):
            return ProposedChange.none(operation)
        if isinstance(proposed, ProposedChange):
            return ProposedChange(operation, proposed.fields, proposed.expected_version)
        return ProposedChange(operation, dict(proposed or {}))

    def _fetch(self, entity_type: str, instance_id: Optional[str], operation: Operation,
               correlation_id: str) -> EntityInstance:
        if instance_id is None:
            raise NotFound(entity_type, instance_id)
        try:
            snapshot = self.store.fetch(entity_type, instance_id, timeout=self.timeout)
        except TimeoutError as e:
            evaluation_incomplete(correlation_id, operation.value, entity_type, instance_id, e)
            raise InternalError("Request timed out") from e
        except Exception as e:
            self.logger.error(f"Fetch of {entity_type}/{instance_id} failed [{correlation_id}]: {e}")
            raise InternalError() from e

        if snapshot is None:
            self.logger.debug(f"{entity_type}/{instance_id} not found [{correlation_id}]")
            raise NotFound(entity_type, instance_id)
        return snapshot

    def _deny(self, caller: Caller, operation: Operation, entity_type: str, instance_id: Optional[str],
              decision: Decision, correlation_id: str, origin: Optional[str]) -> None:
        increment("decision.deny")
        if decision.error:
            increment("decision.error")
        self.logger.warning(
            f"User {caller.id} denied {operation.value} on {entity_type}/{instance_id}: "
            f"{decision.reason} [{correlation_id}]"
        )
        self.emitter.record_denial(
            caller, operation, entity_type, instance_id,
            decision.required_roles, decision.reason, correlation_id, origin=origin, timeout=self.timeout,
        )
        raise AccessDenied(decision.reason, correlation_id=correlation_id)

    def _apply(self, entity_type: str, instance_id: Optional[str], change: ProposedChange,
               correlation_id: str) -> EntityInstance:
        try:
            return self.store.apply(entity_type, instance_id, change, timeout=self.timeout)
        except TimeoutError as e:
            evaluation_incomplete(correlation_id, change.operation.value, entity_type, instance_id, e)
            raise InternalError("Request timed out; change not applied") from e
        except ConflictError as e:
            increment("storage.conflict")
            self.logger.info(f"Conflict writing {entity_type}/{instance_id} [{correlation_id}]: {e}")
            raise InternalError("Concurrent modification; retry the request") from e
        except Exception as e:
            self.logger.error(f"Write of {entity_type}/{instance_id} failed [{correlation_id}]: {e}")
            raise InternalError() from e

    def _audit(self, correlation_id: str, emit: Callable[[], List[AuditEvent]]) -> List[AuditEvent]:
        try:
            return emit()
        except AuditDeliveryError as e:
            increment("audit.failed")
            self.logger.error(f"Mandatory audit event not accepted, failing request [{correlation_id}]: {e}")
            raise InternalError("Audit trail unavailable; request not acknowledged") from e
