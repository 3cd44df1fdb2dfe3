import pytest
from fastapi.testclient import TestClient

from apps.api.main import CORRELATION_HEADER, create_app
from security.audit.event_logger import AuditEventKind

SUPPORT = {"X-User-Id": "alice", "X-User-Roles": "support"}
ADMIN = {"X-User-Id": "root", "X-User-Roles": "admin, support"}


@pytest.fixture
def client(mediator):
    return TestClient(create_app(mediator))


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_identity_is_unauthorized(client):
    response = client.get("/api/records/Incident/INC-1")
    assert response.status_code == 401


def test_read_record(client, sink):
    response = client.get("/api/records/Incident/INC-1", headers={**SUPPORT, CORRELATION_HEADER: "corr-42"})

    assert response.status_code == 200
    body = response.json()
    assert body["record"]["fields"]["title"] == "Printer on fire"
    assert body["correlation_id"] == "corr-42"
    assert response.headers[CORRELATION_HEADER] == "corr-42"
    [event] = sink.events
    assert event.correlation_id == "corr-42"
    assert event.origin == "testclient"


def test_correlation_id_is_generated(client):
    response = client.get("/api/records/Incident/INC-1", headers=SUPPORT)
    assert response.headers[CORRELATION_HEADER] == response.json()["correlation_id"]


def test_not_found(client, sink):
    response = client.get("/api/records/Incident/INC-404", headers=SUPPORT)

    assert response.status_code == 404
    assert len(sink) == 0


def test_denied_request_returns_reason(client, sink):
    response = client.patch("/api/records/Incident/INC-1", json={"fields": {"state": "closed"}}, headers=SUPPORT)

    assert response.status_code == 403
    assert "high-severity" in response.json()["detail"]
    assert [e.kind for e in sink.events] == [AuditEventKind.SECURITY_EVENT]


def test_create_record(client, store):
    response = client.post("/api/records/Incident", json={"fields": {"title": "Urgent: outage"}}, headers=SUPPORT)

    assert response.status_code == 201
    record = response.json()["record"]
    assert record["fields"]["owner"] == "alice"
    assert record["fields"]["urgency"] == "high"
    assert store.fetch("Incident", record["id"]) is not None


def test_stale_update_is_retryable(client):
    response = client.patch("/api/records/Incident/INC-2",
                            json={"fields": {"title": "x"}, "expected_version": 9}, headers=SUPPORT)

    assert response.status_code == 503
    assert "Retry-After" in response.headers


def test_admin_deletes_closed_incident(client, store):
    response = client.delete("/api/records/Incident/INC-3", headers=ADMIN)

    assert response.status_code == 200
    assert store.fetch("Incident", "INC-3") is None


def test_uninitialized_app_is_unavailable():
    client = TestClient(create_app())

    response = client.get("/api/records/Incident/INC-1", headers=SUPPORT)

    assert response.status_code == 503
    assert client.get("/health").json()["status"] == "starting"


@pytest.mark.parametrize("supplied", ["x" * 500, "bad id; drop", ""])
def test_malformed_correlation_id_is_replaced(client, sink, supplied):
    response = client.get("/api/records/Incident/INC-1", headers={**SUPPORT, CORRELATION_HEADER: supplied})

    assert response.status_code == 200
    generated = response.headers[CORRELATION_HEADER]
    assert generated != supplied
    assert len(generated) == 36
    assert [e.correlation_id for e in sink.events] == [generated]
