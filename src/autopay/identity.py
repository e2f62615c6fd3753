"""
Identity and deterministic addressing.

Identities, token accounts, mints and subscription records all share the
20-byte 0x-hex address space. Record addresses are derived from stable keys
so a record can be located without an index.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from eth_utils import keccak


SUBSCRIPTION_SEED = b"subscription"
TOKEN_ACCOUNT_SEED = b"token-account"
# Custody program that must hold every funds account the engine touches.
TOKEN_PROGRAM_ID = "0x" + keccak(b"autopay:token-program")[-20:].hex()

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: str) -> str:
    """Normalize addresses to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid address: {address}")
    return "0x" + candidate[2:].lower()


def derive_address(seed: bytes, *parts: str) -> str:
    """keccak256(seed || part_1 || ... || part_n), truncated to 20 bytes."""
    preimage = seed + b"".join(bytes.fromhex(normalize_address(p)[2:]) for p in parts)
    return "0x" + keccak(preimage)[-20:].hex()


def subscription_address(owner: str, recipient: str) -> str:
    """Record address for the (owner, recipient) pair."""
    return derive_address(SUBSCRIPTION_SEED, owner, recipient)


def token_account_address(owner: str, mint: str) -> str:
    """Canonical token account address for an owner's holding of ``mint``."""
    return derive_address(TOKEN_ACCOUNT_SEED, owner, mint)


def canonical_json_bytes(value: Mapping[str, Any]) -> bytes:
    """Serialize JSON using deterministic ordering and no insignificant whitespace."""
    return json.dumps(
        dict(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_json_hash(value: Mapping[str, Any]) -> str:
    """Return keccak256 hash of canonical JSON bytes."""
    return "0x" + keccak(canonical_json_bytes(value)).hex()
