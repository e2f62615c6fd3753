"""
Subscription record.

A Subscription is the standing authorization that lets any caller pull
``amount_per_period`` of ``fund_type`` from the owner's funds account to the
recipient's, no more often than every ``interval_seconds``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from .identity import normalize_address, subscription_address


@dataclass
class Subscription:
    """Persistent state of one (owner, recipient) subscription."""

    address: str
    owner: str
    recipient: str
    owner_funds_account: str
    recipient_funds_account: str
    fund_type: str
    amount_per_period: int
    interval_seconds: int
    last_charge_timestamp: int
    created_at: int
    expires_at: Optional[int] = None
    is_active: bool = True
    total_charged: int = 0
    storage_deposit: int = 0

    @property
    def next_charge_at(self) -> int:
        return self.last_charge_timestamp + self.interval_seconds

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def seconds_until_due(self, now: int) -> int:
        return max(0, self.next_charge_at - now)

    def is_due(self, now: int) -> bool:
        """True when a charge at ``now`` would pass every schedule check."""
        return (
            self.is_active
            and not self.is_expired(now)
            and now - self.last_charge_timestamp >= self.interval_seconds
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Subscription:
        data = dict(payload)
        owner = normalize_address(data["owner"])
        recipient = normalize_address(data["recipient"])
        address = normalize_address(data.get("address") or subscription_address(owner, recipient))
        if address != subscription_address(owner, recipient):
            raise ValueError(f"Subscription address mismatch for {address}")
        expires_at = data.get("expires_at")
        return cls(
            address=address,
            owner=owner,
            recipient=recipient,
            owner_funds_account=normalize_address(data["owner_funds_account"]),
            recipient_funds_account=normalize_address(data["recipient_funds_account"]),
            fund_type=normalize_address(data["fund_type"]),
            amount_per_period=int(data["amount_per_period"]),
            interval_seconds=int(data["interval_seconds"]),
            last_charge_timestamp=int(data["last_charge_timestamp"]),
            created_at=int(data["created_at"]),
            expires_at=int(expires_at) if expires_at is not None else None,
            is_active=bool(data.get("is_active", True)),
            total_charged=int(data.get("total_charged", 0)),
            storage_deposit=int(data.get("storage_deposit", 0)),
        )
