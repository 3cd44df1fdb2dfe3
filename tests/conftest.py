import copy

import pytest

from orchestrator.hooks import HOOKS
from orchestrator.mediator import RequestMediator
from orchestrator.observability import observability
from security.audit.emitter import AuditEmitter
from security.audit.retry_queue import RetryPolicy
from security.audit.sinks import InMemoryAuditSink
from security.models import Caller
from security.policy.engine import PolicyEngine
from security.policy.loader import build_policy
from storage.memory_store import InMemoryRecordStore

POLICY = {
    "roles": ["support", "admin"],
    "entityTypes": [
        {
            "entityType": "Incident",
            "fields": [
                {"name": "title", "classification": "public"},
                {"name": "description", "classification": "public"},
                {"name": "state", "classification": "public"},
                {"name": "severity", "classification": "public"},
                {"name": "urgency", "classification": "public"},
                {"name": "owner", "classification": "personal"},
                {"name": "reporter_email", "classification": "personal"},
            ],
            "grants": [
                {"role": "support", "operations": ["create", "read"]},
                {"role": "support", "operations": ["update"], "predicateName": "ownerIsCallerOrUnassigned"},
                {"role": "admin", "operations": ["create", "read", "update", "delete"]},
            ],
            "guards": [
                {
                    "operation": "update",
                    "conditionName": "transitionsToWhere",
                    "conditionArgs": {"field": "state", "value": "closed", "where": {"severity": "high"}},
                    "requiredRole": "admin",
                    "message": "Only an admin can close a high-severity incident",
                },
                {
                    "operation": "update",
                    "conditionName": "stateIs",
                    "conditionArgs": {"value": "closed"},
                    "requiredRole": "admin",
                    "message": "Can't modify a closed incident",
                },
                {
                    "operation": "delete",
                    "conditionName": "stateIs",
                    "conditionArgs": {"value": "closed"},
                    "requiredRole": "admin",
                    "message": "Can't modify a closed incident",
                },
            ],
            "onCreate": [
                {"hookName": "assignToCaller", "hookArgs": {"field": "owner", "roles": ["support"]}},
                {"hookName": "escalateOnKeyword", "hookArgs": {"keyword": "urgent"}},
            ],
        },
        {
            "entityType": "Customer",
            "fields": [
                {"name": "company", "classification": "public"},
                {"name": "name", "classification": "personal"},
                {"name": "email", "classification": "personal"},
                {"name": "tax_id", "classification": "sensitive"},
                {"name": "credit_card", "classification": "sensitive"},
            ],
            "grants": [
                {"role": "support", "operations": ["read"]},
                {"role": "admin", "operations": ["create", "read", "update", "delete"]},
            ],
        },
    ],
}


@pytest.fixture
def policy_data():
    return copy.deepcopy(POLICY)


@pytest.fixture
def model(policy_data):
    return build_policy(policy_data, hooks=HOOKS)


@pytest.fixture
def engine(model):
    return PolicyEngine(model)


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def emitter(sink, model):
    return AuditEmitter(sink, model.classifications, retry_policy=RetryPolicy(2, 0), sleep=lambda _: None)


@pytest.fixture
def store():
    store = InMemoryRecordStore()
    store.seed("Incident", "INC-1", title="Printer on fire", state="open", severity="high", owner="alice")
    store.seed("Incident", "INC-2", title="Slow VPN", state="open", severity="medium", owner=None)
    store.seed("Incident", "INC-3", title="Old outage", state="closed", severity="low", owner="alice")
    store.seed("Incident", "INC-4", title="Mail bounce", state="open", severity="low", owner="bob")
    store.seed("Customer", "CUS-1", company="Acme", name="Carol", email="carol@acme.test",
               tax_id="DE123456789", credit_card="4111111111111111")
    return store


@pytest.fixture
def mediator(engine, emitter, store):
    return RequestMediator(engine, emitter, store)


@pytest.fixture
def alice():
    return Caller.of("alice", ["support"])


@pytest.fixture
def bob():
    return Caller.of("bob", ["support"])


@pytest.fixture
def admin():
    return Caller.of("root", ["admin"])


@pytest.fixture(autouse=True)
def reset_metrics():
    observability.clear_metrics()
    yield
    observability.clear_metrics()
