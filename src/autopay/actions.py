"""
Owner-signed subscription actions.

Initialize, cancel, update and allowance renewal change what the owner has
authorized, so each one must arrive as an EIP-712 signature by the owner's
key. The ledger tracks one nonce per identity and consumes it in the same
transaction as the action, which makes every signed request single-use.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from .config import DEFAULT_CHAIN_ID
from .identity import canonical_json_hash, normalize_address, subscription_address


DOMAIN_NAME = "Autopay"
DOMAIN_VERSION = "1"


class ActionType(str, Enum):
    INITIALIZE = "initialize"
    CANCEL = "cancel"
    UPDATE = "update"
    RENEW_ALLOWANCE = "renew_allowance"


_ADDRESS_PARAMS = {"recipient", "owner_funds_account", "recipient_funds_account", "fund_type"}

_PARAM_FIELDS: dict[ActionType, tuple[str, ...]] = {
    ActionType.INITIALIZE: (
        "recipient",
        "owner_funds_account",
        "recipient_funds_account",
        "fund_type",
        "amount_per_period",
        "interval_seconds",
        "expires_at",
        "prepaid",
    ),
    ActionType.CANCEL: ("close",),
    ActionType.UPDATE: ("new_amount", "new_interval", "new_expires_at"),
    ActionType.RENEW_ALLOWANCE: (),
}


@dataclass
class SignedAction:
    """An owner-signed request to change a subscription."""

    action: str
    owner: str
    subscription: str
    nonce: int
    deadline: int
    chain_id: int
    params: dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None

    @property
    def params_hash(self) -> str:
        return canonical_json_hash(canonical_params(self.action, self.params))

    def to_eip712_message(self) -> dict:
        """Convert the request to EIP-712 typed data for signing."""
        return {
            "types": {
                "SubscriptionAction": [
                    {"name": "action", "type": "string"},
                    {"name": "owner", "type": "address"},
                    {"name": "subscription", "type": "address"},
                    {"name": "paramsHash", "type": "bytes32"},
                    {"name": "nonce", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"},
                ],
            },
            "primaryType": "SubscriptionAction",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": self.chain_id,
            },
            "message": {
                "action": self.action,
                "owner": self.owner,
                "subscription": self.subscription,
                "paramsHash": self.params_hash,
                "nonce": self.nonce,
                "deadline": self.deadline,
            },
        }

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> SignedAction:
        return cls(
            action=str(d["action"]),
            owner=normalize_address(d["owner"]),
            subscription=normalize_address(d["subscription"]),
            nonce=int(d["nonce"]),
            deadline=int(d.get("deadline", 0)),
            chain_id=int(d.get("chain_id", DEFAULT_CHAIN_ID)),
            params=dict(d.get("params", {})),
            signature=d.get("signature"),
        )


def canonical_params(action: str, params: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize action parameters; unknown or missing keys are rejected."""
    try:
        action_type = ActionType(action)
    except ValueError as e:
        raise ValueError(f"Unknown subscription action: {action}") from e

    expected = _PARAM_FIELDS[action_type]
    unknown = set(params) - set(expected)
    if unknown:
        raise ValueError(f"Unexpected parameters for {action}: {sorted(unknown)}")

    canonical: dict[str, Any] = {}
    for name in expected:
        value = params.get(name)
        if name in _ADDRESS_PARAMS:
            if value is None:
                raise ValueError(f"{name} is required for {action}")
            canonical[name] = normalize_address(value)
        elif name in {"prepaid", "close"}:
            if value is None:
                value = False
            if not isinstance(value, bool):
                raise ValueError(f"{name} must be a boolean")
            canonical[name] = value
        elif value is None:
            canonical[name] = None
        elif isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an integer")
        else:
            canonical[name] = value
    return canonical


def sign_action(
    owner_key: str,
    action: ActionType | str,
    subscription: str,
    params: Optional[Mapping[str, Any]] = None,
    *,
    nonce: int,
    deadline: int = 0,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedAction:
    """Build and sign a subscription action with the owner's key."""
    account = Account.from_key(owner_key)
    action_value = action.value if isinstance(action, ActionType) else str(action)
    if nonce < 0:
        raise ValueError("nonce must be >= 0")
    if deadline < 0:
        raise ValueError("deadline must be >= 0")

    request = SignedAction(
        action=action_value,
        owner=normalize_address(account.address),
        subscription=normalize_address(subscription),
        nonce=int(nonce),
        deadline=int(deadline),
        chain_id=int(chain_id),
        params=canonical_params(action_value, params or {}),
    )
    typed_data = request.to_eip712_message()
    signed = Account.sign_typed_data(
        account.key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    request.signature = "0x" + signed.signature.hex().removeprefix("0x")
    return request


def initialize_request(
    owner_key: str,
    *,
    recipient: str,
    owner_funds_account: str,
    recipient_funds_account: str,
    fund_type: str,
    amount_per_period: int,
    interval_seconds: int,
    expires_at: Optional[int] = None,
    prepaid: bool = False,
    nonce: int,
    deadline: int = 0,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedAction:
    owner = Account.from_key(owner_key).address
    return sign_action(
        owner_key,
        ActionType.INITIALIZE,
        subscription_address(owner, recipient),
        {
            "recipient": recipient,
            "owner_funds_account": owner_funds_account,
            "recipient_funds_account": recipient_funds_account,
            "fund_type": fund_type,
            "amount_per_period": amount_per_period,
            "interval_seconds": interval_seconds,
            "expires_at": expires_at,
            "prepaid": prepaid,
        },
        nonce=nonce,
        deadline=deadline,
        chain_id=chain_id,
    )


def cancel_request(
    owner_key: str,
    subscription: str,
    *,
    close: bool = False,
    nonce: int,
    deadline: int = 0,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedAction:
    return sign_action(
        owner_key,
        ActionType.CANCEL,
        subscription,
        {"close": close},
        nonce=nonce,
        deadline=deadline,
        chain_id=chain_id,
    )


def update_request(
    owner_key: str,
    subscription: str,
    *,
    new_amount: Optional[int] = None,
    new_interval: Optional[int] = None,
    new_expires_at: Optional[int] = None,
    nonce: int,
    deadline: int = 0,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedAction:
    return sign_action(
        owner_key,
        ActionType.UPDATE,
        subscription,
        {
            "new_amount": new_amount,
            "new_interval": new_interval,
            "new_expires_at": new_expires_at,
        },
        nonce=nonce,
        deadline=deadline,
        chain_id=chain_id,
    )


def renew_allowance_request(
    owner_key: str,
    subscription: str,
    *,
    nonce: int,
    deadline: int = 0,
    chain_id: int = DEFAULT_CHAIN_ID,
) -> SignedAction:
    return sign_action(
        owner_key,
        ActionType.RENEW_ALLOWANCE,
        subscription,
        nonce=nonce,
        deadline=deadline,
        chain_id=chain_id,
    )


def verify_action(
    request: SignedAction,
    *,
    chain_id: int = DEFAULT_CHAIN_ID,
    now: Optional[int] = None,
) -> tuple[bool, str]:
    """Verify a request's signature, chain and deadline."""
    if request.signature is None:
        return False, "Request is unsigned"
    if request.chain_id != chain_id:
        return False, f"Request signed for chain {request.chain_id}, expected {chain_id}"
    current = int(now if now is not None else time.time())
    if request.deadline != 0 and current >= request.deadline:
        return False, f"Request deadline passed at {request.deadline}"
    try:
        typed_data = request.to_eip712_message()
        signable = encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(request.signature.removeprefix("0x")),
        )
    except Exception as e:
        return False, f"Signature verification failed: {e}"

    if normalize_address(recovered) != normalize_address(request.owner):
        return False, f"Signer mismatch: expected {request.owner}, got {recovered}"
    return True, "Valid request"
