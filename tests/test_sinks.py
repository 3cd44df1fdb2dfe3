import json

import pytest

from security.audit.event_logger import AuditAttribute, AuditEvent, AuditEventKind
from security.audit.retry_queue import AuditRetryQueue, RetryPolicy
from security.audit.sinks import JsonlAuditSink


def _event(subject_id="CUS-1", **kwargs):
    return AuditEvent(
        kind=kwargs.pop("kind", AuditEventKind.SENSITIVE_DATA_READ),
        actor="alice",
        subject_type="Customer",
        subject_id=subject_id,
        attributes=(AuditAttribute("tax_id"),),
        correlation_id="corr-1",
        **kwargs,
    )


def test_jsonl_sink_appends_one_line_per_event(tmp_path):
    path = tmp_path / "audit" / "events.jsonl"
    sink = JsonlAuditSink(path)
    first, second = _event("CUS-1"), _event("CUS-2")

    sink.append(first)
    sink.append(second)

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["attributes"] == [{"name": "tax_id"}]
    assert [e.event_id for e in sink.read_all()] == [first.event_id, second.event_id]


def test_jsonl_sink_preserves_event_fields(tmp_path):
    sink = JsonlAuditSink(tmp_path / "events.jsonl", fsync=False)
    event = _event(kind=AuditEventKind.SECURITY_EVENT, action="denied", origin="10.1.1.1")

    sink.append(event)
    [stored] = sink.read_all()

    assert stored == event


def test_retry_policy_backoff():
    policy = RetryPolicy(max_attempts=4, base_delay=0.1)

    assert [policy.get_delay(n) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])
    assert policy.should_retry(3)
    assert not policy.should_retry(4)


def test_retry_policy_reraises_last_error():
    delays = []
    calls = []

    def always_fails():
        calls.append(1)
        raise ConnectionError(f"attempt {len(calls)}")

    with pytest.raises(ConnectionError, match="attempt 3"):
        RetryPolicy(3, 0.01).run(always_fails, sleep=delays.append)
    assert delays == pytest.approx([0.01, 0.02])


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_queue_keeps_events_that_still_fail(tmp_path):
    queue = AuditRetryQueue(tmp_path / "pending.jsonl")
    good, bad = _event("CUS-1"), _event("CUS-2")
    queue.enqueue(good)
    queue.enqueue(bad)
    delivered = []

    def deliver(event):
        if event.subject_id == "CUS-2":
            raise ConnectionError("still down")
        delivered.append(event)

    assert queue.drain(deliver) == 1
    assert [e.event_id for e in delivered] == [good.event_id]
    assert [e.event_id for e in queue.pending()] == [bad.event_id]


def test_queue_survives_reopen(tmp_path):
    path = tmp_path / "pending.jsonl"
    event = _event()
    AuditRetryQueue(path).enqueue(event)

    reopened = AuditRetryQueue(path)

    assert len(reopened) == 1
    assert reopened.pending()[0].event_id == event.event_id


def test_empty_queue_drains_nothing(tmp_path):
    assert AuditRetryQueue(tmp_path / "none.jsonl").drain(lambda e: None) == 0
