import threading
import time

import pytest

from orchestrator.hooks import HOOKS
from orchestrator.mediator import RequestMediator
from orchestrator.observability import get_metrics
from security.audit.emitter import AuditEmitter
from security.audit.event_logger import AuditEventKind
from security.audit.retry_queue import AuditRetryQueue, RetryPolicy
from security.audit.sinks import AuditSink
from security.errors import AccessDenied, ConflictError, InternalError, NotFound
from security.models import Caller, Operation, ProposedChange
from security.policy.classification import Classification
from security.policy.engine import EVALUATION_ERROR, PolicyEngine
from security.policy.loader import build_policy
from security.policy.rbac import EntityType, Grant, PolicyModel
from storage.memory_store import InMemoryRecordStore


class DownSink(AuditSink):
    def append(self, event):
        raise ConnectionError("audit sink down")


class SlowStore(InMemoryRecordStore):
    """Times out on the configured call."""

    def __init__(self, on, **kwargs):
        super().__init__(**kwargs)
        self.on = on

    def fetch(self, entity_type, instance_id, timeout=None):
        if self.on == "fetch":
            raise TimeoutError("fetch deadline exceeded")
        return super().fetch(entity_type, instance_id, timeout)

    def apply(self, entity_type, instance_id, change, timeout=None):
        if self.on == "apply":
            raise TimeoutError("write deadline exceeded")
        return super().apply(entity_type, instance_id, change, timeout)


class HangingSink(AuditSink):
    def __init__(self):
        self.release = threading.Event()

    def append(self, event):
        self.release.wait(5)


class RacingStore(InMemoryRecordStore):
    def apply(self, entity_type, instance_id, change, timeout=None):
        raise ConflictError(f"{entity_type}/{instance_id} changed concurrently")


def _copy_store(store, cls, **kwargs):
    return cls(records=[store.fetch("Incident", i) for i in ("INC-1", "INC-2", "INC-3", "INC-4")], **kwargs)


# ==================== READS ====================

def test_read_of_customer_with_sensitive_field(mediator, store, sink, alice):
    store.seed("Customer", "CUS-2", company="Globex", tax_id="US-99")

    result = mediator.read(alice, "Customer", "CUS-2")

    assert result.instance.get("tax_id") == "US-99"
    events = sink.events
    assert len(events) == 1
    assert events[0].kind is AuditEventKind.SENSITIVE_DATA_READ
    assert events[0].attribute_names == ("tax_id",)
    assert result.audit_event_ids == [events[0].event_id]


def test_read_of_public_fields_emits_nothing(mediator, store, sink, alice):
    store.seed("Customer", "CUS-3", company="Initech")

    mediator.read(alice, "Customer", "CUS-3")

    assert len(sink) == 0


def test_missing_instance_is_not_found_without_security_event(mediator, sink, alice):
    with pytest.raises(NotFound):
        mediator.read(alice, "Incident", "INC-404")
    with pytest.raises(NotFound):
        mediator.update(alice, "Incident", "INC-404", {"title": "x"})

    assert len(sink) == 0


def test_customer_read_names_personal_and_sensitive_fields(mediator, sink, alice):
    mediator.read(alice, "Customer", "CUS-1")

    [event] = sink.events
    assert event.kind is AuditEventKind.SENSITIVE_DATA_READ
    assert set(event.attribute_names) == {"name", "email", "tax_id", "credit_card"}
    assert "company" not in event.attribute_names


# ==================== DENIALS ====================

def test_denial_emits_exactly_one_security_event(mediator, store, sink, alice):
    with pytest.raises(AccessDenied) as exc_info:
        mediator.update(alice, "Incident", "INC-4", {"title": "taken"}, correlation_id="corr-7")

    assert exc_info.value.reason == "instance-level predicate not satisfied"
    assert exc_info.value.correlation_id == "corr-7"
    events = sink.events
    assert [e.kind for e in events] == [AuditEventKind.SECURITY_EVENT]
    assert events[0].correlation_id == "corr-7"
    assert store.fetch("Incident", "INC-4").get("title") == "Mail bounce"
    assert get_metrics()["decision.deny"] == 1


def test_guard_denial_reason_reaches_caller(mediator, alice):
    with pytest.raises(AccessDenied, match="high-severity"):
        mediator.update(alice, "Incident", "INC-1", {"state": "closed"})


def test_denied_create_writes_nothing(mediator, store, sink, alice):
    before = len(store)

    with pytest.raises(AccessDenied):
        mediator.create(alice, "Customer", {"company": "Hooli", "tax_id": "1"})

    assert len(store) == before
    assert [e.kind for e in sink.events] == [AuditEventKind.SECURITY_EVENT]


def test_raising_predicate_fails_closed_with_security_event(emitter, store, sink, alice):
    def explode(caller, instance):
        raise RuntimeError("bad predicate")

    model = PolicyModel(
        [EntityType("Incident", {"owner": Classification.PERSONAL})],
        [Grant("Incident", "support", frozenset({Operation.READ}), predicate=explode, predicate_name="explode")],
        [],
    )
    mediator = RequestMediator(PolicyEngine(model), emitter, store)

    with pytest.raises(AccessDenied, match=EVALUATION_ERROR):
        mediator.read(alice, "Incident", "INC-1")

    assert [e.kind for e in sink.events] == [AuditEventKind.SECURITY_EVENT]
    assert get_metrics()["decision.error"] == 1


def test_denial_stands_when_audit_sink_is_down(engine, model, store, alice):
    emitter = AuditEmitter(DownSink(), model.classifications, retry_policy=RetryPolicy(1, 0))
    mediator = RequestMediator(engine, emitter, store)

    with pytest.raises(AccessDenied):
        mediator.delete(alice, "Incident", "INC-1")


# ==================== WRITES ====================

def test_update_applies_then_audits(mediator, store, sink, admin):
    result = mediator.update(admin, "Incident", "INC-1", {"owner": "bob", "state": "closed"})

    assert result.instance.version == 2
    assert store.fetch("Incident", "INC-1").get("owner") == "bob"
    [event] = sink.events
    assert event.kind is AuditEventKind.PERSONAL_DATA_MODIFIED
    assert [(a.name, a.old_value, a.new_value) for a in event.attributes] == [("owner", "alice", "bob")]


def test_create_runs_hooks_before_write(mediator, store, sink, alice):
    result = mediator.create(alice, "Incident", {"title": "URGENT: database down", "state": "open"})

    stored = store.fetch("Incident", result.instance.id)
    assert stored.get("owner") == "alice"
    assert stored.get("urgency") == "high"
    [event] = sink.events
    assert event.subject_id == result.instance.id
    assert {a.name: a.new_value for a in event.attributes} == {"owner": "alice"}


def test_hooks_keep_explicit_owner(mediator, store, alice):
    result = mediator.create(alice, "Incident", {"title": "Disk full", "owner": "bob"})
    assert store.fetch("Incident", result.instance.id).get("owner") == "bob"


def test_admin_create_is_not_auto_assigned(mediator, store, admin):
    result = mediator.create(admin, "Incident", {"title": "Cert expiry"}, instance_id="INC-50")

    assert result.instance.id == "INC-50"
    assert store.fetch("Incident", "INC-50").get("owner") is None


def test_delete_audits_removed_personal_data(mediator, store, sink, admin):
    mediator.delete(admin, "Customer", "CUS-1")

    assert store.fetch("Customer", "CUS-1") is None
    [event] = sink.events
    assert event.kind is AuditEventKind.PERSONAL_DATA_MODIFIED
    assert {a.name: a.old_value for a in event.attributes}["tax_id"] == "***"


def test_plain_mapping_and_string_operation_are_accepted(mediator, alice):
    result = mediator.handle(alice, "update", "Incident", "INC-2", {"title": "VPN is slow"})
    assert result.operation is Operation.UPDATE
    assert result.to_dict()["record"]["fields"]["title"] == "VPN is slow"


# ==================== FAILURES ====================

def test_stale_version_is_a_retryable_internal_error(mediator, sink, admin):
    change = ProposedChange(Operation.UPDATE, {"title": "x"}, expected_version=7)

    with pytest.raises(InternalError) as exc_info:
        mediator.handle(admin, Operation.UPDATE, "Incident", "INC-2", change)

    assert exc_info.value.retryable
    assert isinstance(exc_info.value.__cause__, ConflictError)
    assert get_metrics()["storage.conflict"] == 1
    assert len(sink) == 0


def test_storage_conflict_is_collapsed(engine, emitter, store, sink, admin):
    mediator = RequestMediator(engine, emitter, _copy_store(store, RacingStore))

    with pytest.raises(InternalError):
        mediator.update(admin, "Incident", "INC-1", {"owner": "bob"})
    assert len(sink) == 0


@pytest.mark.parametrize("on", ["fetch", "apply"])
def test_timeout_fails_without_audit_event(engine, emitter, store, sink, admin, on):
    slow = _copy_store(store, SlowStore, on=on)
    mediator = RequestMediator(engine, emitter, slow, timeout=0.5)

    with pytest.raises(InternalError, match="timed out"):
        mediator.update(admin, "Incident", "INC-1", {"owner": "bob"})

    assert len(sink) == 0
    if on == "apply":
        assert slow.fetch("Incident", "INC-1").get("owner") == "alice"
    assert get_metrics()["request.incomplete"] == 1


def test_audit_failure_after_allow_fails_request(engine, model, store, admin):
    emitter = AuditEmitter(DownSink(), model.classifications, retry_policy=RetryPolicy(1, 0))
    mediator = RequestMediator(engine, emitter, store)

    with pytest.raises(InternalError, match="Audit trail unavailable"):
        mediator.read(admin, "Customer", "CUS-1")
    assert get_metrics()["audit.failed"] == 1


def test_swap_engine_changes_decisions(mediator, policy_data, alice):
    mediator.read(alice, "Customer", "CUS-1")

    policy_data["entityTypes"][1]["grants"] = [{"role": "admin", "operations": ["read"]}]
    mediator.swap_engine(PolicyEngine(build_policy(policy_data, hooks=HOOKS)))

    with pytest.raises(AccessDenied):
        mediator.read(alice, "Customer", "CUS-1")


def test_caller_roles_are_immutable():
    caller = Caller.of("alice", ["support"])
    with pytest.raises(AttributeError):
        caller.roles.add("admin")


def test_unknown_operation_is_a_non_retryable_internal_error(mediator, sink, admin):
    with pytest.raises(InternalError) as exc_info:
        mediator.handle(admin, "purge", "Incident", "INC-1")

    assert not exc_info.value.retryable
    assert "purge" in str(exc_info.value)
    assert len(sink) == 0


def test_hung_audit_sink_is_bounded_by_request_timeout(engine, model, store, admin, tmp_path):
    sink = HangingSink()
    queue = AuditRetryQueue(tmp_path / "pending.jsonl")
    emitter = AuditEmitter(sink, model.classifications, retry_policy=RetryPolicy(1, 0), retry_queue=queue)
    mediator = RequestMediator(engine, emitter, store, timeout=0.1)

    started = time.monotonic()
    result = mediator.read(admin, "Customer", "CUS-1")
    elapsed = time.monotonic() - started
    sink.release.set()

    assert elapsed < 1.0
    assert [e.event_id for e in queue.pending()] == result.audit_event_ids


def test_hung_audit_sink_without_queue_fails_request(engine, model, store, admin):
    sink = HangingSink()
    emitter = AuditEmitter(sink, model.classifications, retry_policy=RetryPolicy(1, 0))
    mediator = RequestMediator(engine, emitter, store, timeout=0.1)

    started = time.monotonic()
    with pytest.raises(InternalError, match="Audit trail unavailable"):
        mediator.read(admin, "Customer", "CUS-1")
    sink.release.set()

    assert time.monotonic() - started < 1.0


def test_request_audits_with_the_policy_it_started_with(engine, emitter, store, sink, policy_data, alice):
    policy_data["entityTypes"][1]["fields"] = [{"name": "company", "classification": "sensitive"}]
    reloaded = PolicyEngine(build_policy(policy_data, hooks=HOOKS))

    class ReloadingStore(InMemoryRecordStore):
        def fetch(self, entity_type, instance_id, timeout=None):
            mediator.swap_engine(reloaded)
            return super().fetch(entity_type, instance_id, timeout)

    mediator = RequestMediator(engine, emitter, ReloadingStore())
    mediator.store.seed("Customer", "CUS-1", company="Acme", tax_id="DE1")

    mediator.read(alice, "Customer", "CUS-1")

    [event] = sink.events
    assert event.attribute_names == ("tax_id",)
    assert mediator.engine is reloaded
