"""Runtime configuration resolved from ``AUTOPAY_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .money import DEFAULT_DECIMALS


DEFAULT_HOME = Path.home() / ".autopay"
DEFAULT_CHAIN_ID = 8453
DEFAULT_ALLOWANCE_PERIODS = 12
# Rent-exempt minimum for a small record, charged to the creator and refunded on close.
DEFAULT_STORAGE_DEPOSIT = 2_039_280


@dataclass
class EngineConfig:
    """Settings shared by the ledger, engine and CLI."""

    home: Path = field(default_factory=lambda: DEFAULT_HOME)
    ledger_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    chain_id: int = DEFAULT_CHAIN_ID
    # 0 grants an unbounded allowance and relies on the charge checks alone.
    allowance_periods: int = DEFAULT_ALLOWANCE_PERIODS
    storage_deposit: int = DEFAULT_STORAGE_DEPOSIT
    token_decimals: int = DEFAULT_DECIMALS

    def __post_init__(self):
        self.home = Path(self.home)
        if self.ledger_path is None:
            self.ledger_path = self.home / "ledger.sqlite3"
        if self.audit_path is None:
            self.audit_path = self.home / "audit.jsonl"
        if self.allowance_periods < 0:
            raise ValueError("allowance_periods must be >= 0")
        if self.storage_deposit < 0:
            raise ValueError("storage_deposit must be >= 0")

    @property
    def audit_key_path(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets" / "audit_hmac.key"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        env = os.environ if environ is None else environ
        home = Path(env["AUTOPAY_HOME"]) if env.get("AUTOPAY_HOME") else DEFAULT_HOME
        ledger_path = env.get("AUTOPAY_LEDGER_PATH")
        audit_path = env.get("AUTOPAY_AUDIT_PATH")
        return cls(
            home=home,
            ledger_path=Path(ledger_path) if ledger_path else None,
            audit_path=Path(audit_path) if audit_path else None,
            chain_id=_env_int(env, "AUTOPAY_CHAIN_ID", DEFAULT_CHAIN_ID),
            allowance_periods=_env_int(env, "AUTOPAY_ALLOWANCE_PERIODS", DEFAULT_ALLOWANCE_PERIODS),
            storage_deposit=_env_int(env, "AUTOPAY_STORAGE_DEPOSIT", DEFAULT_STORAGE_DEPOSIT),
            token_decimals=_env_int(env, "AUTOPAY_TOKEN_DECIMALS", DEFAULT_DECIMALS),
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
