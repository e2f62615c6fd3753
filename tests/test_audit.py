"""Tests for tamper-evident audit trail behavior."""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from autopay.audit import AuditTrail, EventType


SUB = "0x" + "aa" * 20


@pytest.fixture
def trail(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTOPAY_AUDIT_HMAC_KEY", raising=False)
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.SUBSCRIPTION_INITIALIZED, subscription=SUB, amount=100)
    trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=100)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["amount"] = 9999
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_audit_detects_deleted_entry(trail, tmp_path):
    for _ in range(3):
        trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=1)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    del lines[1]
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_chain_continues_across_instances(trail, tmp_path):
    trail.log(EventType.SUBSCRIPTION_INITIALIZED, subscription=SUB)

    reopened = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )
    reopened.log(EventType.SUBSCRIPTION_CANCELLED, subscription=SUB)

    events = reopened.read_events()
    assert [e.event_type for e in events] == ["subscription_initialized", "subscription_cancelled"]
    assert events[1].prev_hash == events[0].event_hash


def test_filters_and_summary(trail):
    other = "0x" + "bb" * 20
    trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=100)
    trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=100)
    trail.log(EventType.CHARGE_REJECTED, subscription=SUB, success=False, reason="not due")
    trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=other, amount=7)

    assert len(trail.read_events(subscription=SUB)) == 3
    assert len(trail.read_events(event_type=EventType.CHARGE_REJECTED)) == 1

    summary = trail.summary(subscription=SUB)
    assert summary["total_events"] == 3
    assert summary["failures"] == 1
    assert summary["charged"] == 200
    assert summary["by_type"] == {"subscription_charged": 2, "charge_rejected": 1}


def test_interleaved_writers_share_one_chain(trail, tmp_path):
    other = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )

    trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=1)
    other.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=2)
    trail.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=3)

    events = AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    ).read_events()
    assert [e.amount for e in events] == [1, 2, 3]
    assert events[1].prev_hash == events[0].event_hash
    assert events[2].prev_hash == events[1].event_hash


def test_concurrent_writers_on_separate_handles(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTOPAY_AUDIT_HMAC_KEY", raising=False)
    path = tmp_path / "audit.jsonl"
    key_path = tmp_path / "secret" / "audit_hmac.key"
    writers = [AuditTrail(path=path, key_path=key_path) for _ in range(4)]

    def write(writer):
        for _ in range(10):
            writer.log(EventType.SUBSCRIPTION_CHARGED, subscription=SUB, amount=1)

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(write, writers))

    events = AuditTrail(path=path, key_path=key_path).read_events(limit=100)
    assert len(events) == 40
    assert all(b.prev_hash == a.event_hash for a, b in zip(events, events[1:]))
