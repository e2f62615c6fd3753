"""Tests for the subscription record helpers."""

import pytest
from eth_account import Account

from autopay.identity import subscription_address
from autopay.subscription import Subscription


def make(**kwargs):
    owner = Account.create().address
    recipient = Account.create().address
    fields = dict(
        address=subscription_address(owner, recipient),
        owner=owner.lower(),
        recipient=recipient.lower(),
        owner_funds_account="0x" + "01" * 20,
        recipient_funds_account="0x" + "02" * 20,
        fund_type="0x" + "ab" * 20,
        amount_per_period=10,
        interval_seconds=100,
        last_charge_timestamp=1_000,
        created_at=1_000,
    )
    fields.update(kwargs)
    return Subscription(**fields)


def test_schedule_helpers():
    sub = make(expires_at=1_500)

    assert sub.next_charge_at == 1_100
    assert sub.seconds_until_due(1_050) == 50
    assert not sub.is_due(1_099)
    assert sub.is_due(1_100)
    assert not sub.is_expired(1_499)
    assert sub.is_expired(1_500)
    assert not sub.is_due(1_500)


def test_inactive_is_never_due():
    assert not make(is_active=False).is_due(10_000)


def test_address_is_deterministic():
    owner = Account.create().address
    recipient = Account.create().address
    assert subscription_address(owner, recipient) == subscription_address(owner.lower(), recipient)
    assert subscription_address(owner, recipient) != subscription_address(recipient, owner)


def test_from_dict_round_trip_and_address_check():
    sub = make()
    assert Subscription.from_dict(sub.to_dict()) == sub

    tampered = sub.to_dict()
    tampered["address"] = "0x" + "99" * 20
    with pytest.raises(ValueError, match="address mismatch"):
        Subscription.from_dict(tampered)
