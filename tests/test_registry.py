from pathlib import Path

import pytest
import yaml

from orchestrator.registry import Registry
from orchestrator.settings import Settings
from security.audit.sinks import InMemoryAuditSink, JsonlAuditSink
from security.errors import AccessDenied, ConfigurationError
from storage.memory_store import InMemoryRecordStore
from storage.relational.repository import DatabaseAuditSink, SqlRecordStore

DEFAULT_POLICY = Path(__file__).resolve().parent.parent / "configs" / "policies" / "default.yaml"


@pytest.fixture
def policy_file(tmp_path, policy_data):
    path = tmp_path / "policy.yaml"
    path.write_text(yaml.safe_dump(policy_data))
    return path


def _settings(tmp_path, **overrides):
    values = dict(
        audit_sink="memory",
        audit_retry_queue_path=str(tmp_path / "pending.jsonl"),
        records_database_url=None,
        audit_database_url=None,
        request_timeout_s=None,
    )
    values.update(overrides)
    return Settings(**values)


def test_settings_reject_unknown_keys_and_sinks():
    with pytest.raises(AttributeError):
        Settings(colour="blue")
    with pytest.raises(ValueError):
        Settings(audit_sink="kafka")


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("AUDIT_SINK", "DATABASE")
    monkeypatch.setenv("REQUEST_TIMEOUT_S", "2.5")
    monkeypatch.setenv("AUDIT_PERSONAL_READS", "no")

    settings = Settings()

    assert settings.audit_sink == "database"
    assert settings.request_timeout_s == 2.5
    assert settings.audit_personal_reads is False


def test_registry_assembles_in_memory_components(tmp_path):
    registry = Registry(_settings(tmp_path), config_path=DEFAULT_POLICY)

    mediator = registry.mediator

    assert mediator is registry.get("mediator")
    assert isinstance(mediator.store, InMemoryRecordStore)
    assert isinstance(registry.get("sink"), InMemoryAuditSink)
    assert set(registry.list_components()) >= {"mediator", "engine", "emitter", "store", "sink"}


def test_registry_builds_sql_and_jsonl_components(tmp_path):
    settings = _settings(tmp_path, records_database_url=f"sqlite:///{tmp_path / 'records.db'}",
                         audit_sink="jsonl", audit_log_path=str(tmp_path / "events.jsonl"))
    registry = Registry(settings, config_path=DEFAULT_POLICY)

    assert isinstance(registry.mediator.store, SqlRecordStore)
    assert isinstance(registry.get("sink"), JsonlAuditSink)


def test_registry_database_sink_shares_records_database(tmp_path):
    settings = _settings(tmp_path, records_database_url=f"sqlite:///{tmp_path / 'records.db'}",
                         audit_sink="database")
    registry = Registry(settings, config_path=DEFAULT_POLICY)

    sink = registry.get("sink")

    assert isinstance(sink, DatabaseAuditSink)
    assert sink.db is registry.get("database")


def test_unknown_component(tmp_path):
    registry = Registry(_settings(tmp_path), config_path=DEFAULT_POLICY)
    with pytest.raises(ValueError):
        registry.get("planner")


def test_missing_policy_file_refuses_to_start(tmp_path):
    with pytest.raises(ConfigurationError):
        Registry(_settings(tmp_path), config_path=tmp_path / "missing.yaml")


def test_reload_swaps_policy_in_running_mediator(tmp_path, policy_file, policy_data, alice):
    registry = Registry(_settings(tmp_path), config_path=policy_file)
    mediator = registry.mediator
    mediator.store.seed("Customer", "CUS-1", company="Acme", tax_id="1")
    mediator.read(alice, "Customer", "CUS-1")

    policy_data["entityTypes"][1]["grants"] = [{"role": "admin", "operations": ["read"]}]
    policy_file.write_text(yaml.safe_dump(policy_data))
    registry.reload_config()

    with pytest.raises(AccessDenied):
        mediator.read(alice, "Customer", "CUS-1")


def test_failed_reload_keeps_previous_policy(tmp_path, policy_file, alice):
    registry = Registry(_settings(tmp_path), config_path=policy_file)
    mediator = registry.mediator
    mediator.store.seed("Customer", "CUS-1", company="Acme")
    broken = tmp_path / "broken.yaml"
    broken.write_text(yaml.safe_dump({"entityTypes": [{"entityType": "Customer", "grants": "all"}]}))

    with pytest.raises(ConfigurationError):
        registry.reload_config(broken)

    assert registry.config_path == policy_file
    mediator.read(alice, "Customer", "CUS-1")


def test_queued_events_are_redelivered_at_startup(tmp_path):
    from security.audit.event_logger import AuditEvent, AuditEventKind
    from security.audit.retry_queue import AuditRetryQueue

    settings = _settings(tmp_path)
    event = AuditEvent(kind=AuditEventKind.SECURITY_EVENT, actor="bob", subject_type="Incident",
                       subject_id="INC-1", action="denied")
    AuditRetryQueue(settings.audit_retry_queue_path).enqueue(event)

    registry = Registry(settings, config_path=DEFAULT_POLICY)
    registry.get("emitter")

    assert [e.event_id for e in registry.get("sink").events] == [event.event_id]
    assert len(AuditRetryQueue(settings.audit_retry_queue_path)) == 0


@pytest.mark.parametrize("state, owner", [("assigned", "alice"), ("new", None)])
def test_default_policy_assigns_only_assigned_incidents(tmp_path, alice, state, owner):
    registry = Registry(_settings(tmp_path), config_path=DEFAULT_POLICY)

    result = registry.mediator.create(alice, "Incident", {"title": "Printer jam", "state": state})

    assert result.instance.get("owner") == owner


def test_default_policy_assigns_admin_creator(tmp_path, admin):
    registry = Registry(_settings(tmp_path), config_path=DEFAULT_POLICY)

    result = registry.mediator.create(admin, "Incident", {"title": "Cert expiry", "state": "assigned"})

    assert result.instance.get("owner") == "root"
