"""Tests for owner-signed subscription actions."""

import pytest
from eth_account import Account

from autopay.actions import (
    ActionType,
    SignedAction,
    canonical_params,
    cancel_request,
    initialize_request,
    sign_action,
    update_request,
    verify_action,
)
from autopay.identity import subscription_address


MINT = "0x" + "ab" * 20
CHAIN_ID = 8453


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def recipient():
    return Account.create()


def make_initialize(owner, recipient, **kwargs):
    params = dict(
        recipient=recipient.address,
        owner_funds_account="0x" + "01" * 20,
        recipient_funds_account="0x" + "02" * 20,
        fund_type=MINT,
        amount_per_period=1_000_000,
        interval_seconds=3600,
        nonce=0,
    )
    params.update(kwargs)
    return initialize_request(owner.key, **params)


class TestSignedAction:
    def test_initialize_request_verifies(self, owner, recipient):
        request = make_initialize(owner, recipient)

        valid, reason = verify_action(request, chain_id=CHAIN_ID, now=0)
        assert valid, reason
        assert request.owner == owner.address.lower()
        assert request.subscription == subscription_address(owner.address, recipient.address)
        assert request.params["prepaid"] is False
        assert request.params["expires_at"] is None

    def test_tampered_params_fail(self, owner, recipient):
        request = make_initialize(owner, recipient)
        request.params["amount_per_period"] = 9_000_000

        valid, reason = verify_action(request, chain_id=CHAIN_ID)
        assert not valid
        assert "Signer mismatch" in reason

    def test_wrong_chain_fails(self, owner):
        request = cancel_request(owner.key, "0x" + "33" * 20, nonce=0, chain_id=84532)

        valid, reason = verify_action(request, chain_id=CHAIN_ID)
        assert not valid
        assert "chain" in reason

    def test_deadline(self, owner):
        request = update_request(owner.key, "0x" + "33" * 20, new_amount=5, nonce=0, deadline=1_000)

        assert verify_action(request, chain_id=CHAIN_ID, now=999)[0]
        valid, reason = verify_action(request, chain_id=CHAIN_ID, now=1_000)
        assert not valid
        assert "deadline" in reason

    def test_unsigned_request_fails(self, owner):
        request = cancel_request(owner.key, "0x" + "33" * 20, nonce=0)
        request.signature = None
        assert verify_action(request, chain_id=CHAIN_ID) == (False, "Request is unsigned")

    def test_garbage_signature_fails(self, owner):
        request = cancel_request(owner.key, "0x" + "33" * 20, nonce=0)
        request.signature = "0x1234"

        valid, reason = verify_action(request, chain_id=CHAIN_ID)
        assert not valid
        assert "Signature verification failed" in reason

    def test_dict_round_trip_keeps_signature_valid(self, owner, recipient):
        request = make_initialize(owner, recipient, expires_at=5_000, prepaid=True, deadline=10_000)

        restored = SignedAction.from_dict(request.to_dict())

        assert restored == request
        assert verify_action(restored, chain_id=CHAIN_ID, now=1)[0]


class TestCanonicalParams:
    def test_rejects_unknown_keys(self):
        with pytest.raises(ValueError, match="Unexpected parameters"):
            canonical_params("cancel", {"close": True, "refund_to": "0x" + "00" * 20})

    def test_rejects_unknown_action(self):
        with pytest.raises(ValueError, match="Unknown subscription action"):
            canonical_params("transfer", {})

    def test_rejects_missing_addresses(self, recipient):
        with pytest.raises(ValueError, match="required"):
            canonical_params("initialize", {"recipient": recipient.address})

    def test_rejects_non_integer_amounts(self):
        with pytest.raises(ValueError, match="integer"):
            canonical_params("update", {"new_amount": True})
        with pytest.raises(ValueError, match="integer"):
            canonical_params("update", {"new_amount": 1.5})

    def test_update_fills_unset_fields(self):
        assert canonical_params("update", {"new_interval": 60}) == {
            "new_amount": None,
            "new_interval": 60,
            "new_expires_at": None,
        }

    def test_sign_action_rejects_negative_nonce(self, owner):
        with pytest.raises(ValueError):
            sign_action(owner.key, ActionType.RENEW_ALLOWANCE, "0x" + "33" * 20, nonce=-1)

    def test_flags_must_be_booleans(self):
        assert canonical_params("cancel", {})["close"] is False
        with pytest.raises(ValueError, match="boolean"):
            canonical_params("cancel", {"close": "false"})
        with pytest.raises(ValueError, match="boolean"):
            canonical_params("cancel", {"close": 0})

    def test_stringly_flag_does_not_verify(self, owner, recipient):
        data = make_initialize(owner, recipient).to_dict()
        data["params"]["prepaid"] = "false"
        restored = SignedAction.from_dict(data)

        with pytest.raises(ValueError, match="boolean"):
            restored.params_hash
        valid, reason = verify_action(restored, chain_id=CHAIN_ID, now=1)
        assert not valid
        assert "prepaid must be a boolean" in reason
