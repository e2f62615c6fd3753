"""
Audit trail for subscription operations.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".autopay" / "audit.jsonl"


class EventType(str, Enum):
    SUBSCRIPTION_INITIALIZED = "subscription_initialized"
    DELEGATION_GRANTED = "delegation_granted"
    SUBSCRIPTION_CHARGED = "subscription_charged"
    CHARGE_REJECTED = "charge_rejected"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    ALLOWANCE_RENEWED = "allowance_renewed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    DELEGATION_REVOKED = "delegation_revoked"
    SUBSCRIPTION_CLOSED = "subscription_closed"
    REQUEST_REJECTED = "request_rejected"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    subscription: Optional[str] = None
    owner: Optional[str] = None
    recipient: Optional[str] = None
    caller: Optional[str] = None
    amount: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or self.path.parent.parent / f"{self.path.parent.name}-secrets" / "audit_hmac.key"

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        ensure_private_file(self._lock_path)

        self._hmac_key = self._load_or_create_key()
        self._lock = threading.Lock()

    @contextmanager
    def _chain_guard(self):
        with self._lock, open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("AUTOPAY_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                event = json.loads(line)
                last = event.get("event_hash", "")
        return last

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        subscription: Optional[str] = None,
        owner: Optional[str] = None,
        recipient: Optional[str] = None,
        caller: Optional[str] = None,
        amount: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "subscription": subscription,
            "owner": owner,
            "recipient": recipient,
            "caller": caller,
            "amount": amount,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}
        with self._chain_guard():
            # Another process may have appended since this trail last looked.
            prev_hash = self._scan_last_hash()
            current_hash = self._event_hash(payload, prev_hash)

            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=current_hash,
            )

            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            ensure_private_file(self.path)
        return event

    def read_events(
        self,
        subscription: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if subscription and raw.get("subscription") != subscription:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        return events[-limit:]

    def summary(self, subscription: Optional[str] = None) -> dict:
        events = self.read_events(subscription=subscription, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        charged = sum(
            e.amount or 0
            for e in events
            if e.event_type == EventType.SUBSCRIPTION_CHARGED.value and e.success
        )
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": len(failures),
            "charged": charged,
            "last_event": events[-1].to_json() if events else None,
        }
