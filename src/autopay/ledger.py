"""
Transactional ledger substrate.

Holds subscription records, token accounts, delegate allowances and signer
nonces in one SQLite database. Every mutation happens inside
``Ledger.transaction()``, which opens ``BEGIN IMMEDIATE`` so concurrent
writers (threads or processes) are serialized and a transaction either
commits all of its record and fund changes or none of them.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .clock import Clock, SystemClock
from .errors import (
    InsufficientAllowanceError,
    InsufficientFundsError,
    TokenAccountError,
    UnauthorizedError,
)
from .identity import TOKEN_PROGRAM_ID, normalize_address, token_account_address
from .money import MAX_AMOUNT
from .storage import ensure_private_dir, ensure_private_file, restrict_sqlite_files
from .subscription import Subscription

logger = logging.getLogger(__name__)


@dataclass
class TokenAccount:
    """A holding of one mint, custodied by ``program``."""

    address: str
    owner: str
    mint: str
    balance: int
    program: str = TOKEN_PROGRAM_ID


_SUBSCRIPTION_COLUMNS = (
    "address",
    "owner",
    "recipient",
    "owner_funds_account",
    "recipient_funds_account",
    "fund_type",
    "amount_per_period",
    "interval_seconds",
    "last_charge_timestamp",
    "created_at",
    "expires_at",
    "is_active",
    "total_charged",
    "storage_deposit",
)


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        address=row["address"],
        owner=row["owner"],
        recipient=row["recipient"],
        owner_funds_account=row["owner_funds_account"],
        recipient_funds_account=row["recipient_funds_account"],
        fund_type=row["fund_type"],
        amount_per_period=row["amount_per_period"],
        interval_seconds=row["interval_seconds"],
        last_charge_timestamp=row["last_charge_timestamp"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        is_active=bool(row["is_active"]),
        total_charged=row["total_charged"],
        storage_deposit=row["storage_deposit"],
    )


def _row_to_token_account(row: sqlite3.Row) -> TokenAccount:
    return TokenAccount(
        address=row["address"],
        owner=row["owner"],
        mint=row["mint"],
        balance=row["balance"],
        program=row["program"],
    )


def _subscription_params(sub: Subscription) -> tuple:
    return (
        sub.address,
        sub.owner,
        sub.recipient,
        sub.owner_funds_account,
        sub.recipient_funds_account,
        sub.fund_type,
        sub.amount_per_period,
        sub.interval_seconds,
        sub.last_charge_timestamp,
        sub.created_at,
        sub.expires_at,
        1 if sub.is_active else 0,
        sub.total_charged,
        sub.storage_deposit,
    )


class _Reader:
    """Read queries shared by the ledger and open transactions."""

    conn: sqlite3.Connection

    def get_subscription(self, address: str) -> Optional[Subscription]:
        row = self.conn.execute(
            "SELECT * FROM subscriptions WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return _row_to_subscription(row) if row else None

    def get_token_account(self, address: str) -> Optional[TokenAccount]:
        row = self.conn.execute(
            "SELECT * FROM token_accounts WHERE address = ?",
            (normalize_address(address),),
        ).fetchone()
        return _row_to_token_account(row) if row else None

    def allowance(self, account: str, delegate: str) -> int:
        row = self.conn.execute(
            "SELECT amount FROM allowances WHERE account = ? AND delegate = ?",
            (normalize_address(account), normalize_address(delegate)),
        ).fetchone()
        return row["amount"] if row else 0

    def nonce_of(self, identity: str) -> int:
        row = self.conn.execute(
            "SELECT nonce FROM identities WHERE address = ?",
            (normalize_address(identity),),
        ).fetchone()
        return row["nonce"] if row else 0

    def reclaimed_deposits(self, identity: str) -> int:
        row = self.conn.execute(
            "SELECT reclaimed_deposits FROM identities WHERE address = ?",
            (normalize_address(identity),),
        ).fetchone()
        return row["reclaimed_deposits"] if row else 0


class LedgerTransaction(_Reader):
    """Mutations available inside one atomic ledger transaction.

    ``now`` is read from the ledger clock once when the transaction opens,
    so every check and write in the transaction sees the same timestamp.
    """

    def __init__(self, conn: sqlite3.Connection, now: int):
        self.conn = conn
        self.now = now

    # Records

    def insert_subscription(self, sub: Subscription) -> None:
        placeholders = ", ".join("?" for _ in _SUBSCRIPTION_COLUMNS)
        try:
            self.conn.execute(
                f"INSERT INTO subscriptions ({', '.join(_SUBSCRIPTION_COLUMNS)}) "
                f"VALUES ({placeholders})",
                _subscription_params(sub),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Record already exists at {sub.address}") from e

    def save_subscription(self, sub: Subscription) -> None:
        assignments = ", ".join(f"{c} = ?" for c in _SUBSCRIPTION_COLUMNS[1:])
        params = _subscription_params(sub)
        cur = self.conn.execute(
            f"UPDATE subscriptions SET {assignments} WHERE address = ?",
            params[1:] + (params[0],),
        )
        if cur.rowcount != 1:
            raise KeyError(f"Subscription not found: {sub.address}")

    def delete_subscription(self, address: str) -> int:
        """Delete a record and credit its storage deposit to the owner."""
        sub = self.get_subscription(address)
        if sub is None:
            raise KeyError(f"Subscription not found: {address}")
        self.conn.execute("DELETE FROM subscriptions WHERE address = ?", (sub.address,))
        self._ensure_identity(sub.owner)
        self.conn.execute(
            """
            UPDATE identities
            SET reclaimed_deposits = reclaimed_deposits + ?
            WHERE address = ?
            """,
            (sub.storage_deposit, sub.owner),
        )
        return sub.storage_deposit

    # Signer nonces

    def _ensure_identity(self, identity: str) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO identities (address, nonce, reclaimed_deposits) VALUES (?, 0, 0)",
            (identity,),
        )

    def use_nonce(self, identity: str, nonce: int) -> None:
        """Consume ``identity``'s current nonce; any other value is a replay or a gap."""
        identity = normalize_address(identity)
        current = self.nonce_of(identity)
        if nonce != current:
            raise UnauthorizedError(f"Stale or out-of-order nonce {nonce} for {identity} (expected {current})")
        self._ensure_identity(identity)
        self.conn.execute(
            "UPDATE identities SET nonce = nonce + 1 WHERE address = ?",
            (identity,),
        )

    # Token custody

    def _require_token_account(self, address: str) -> TokenAccount:
        account = self.get_token_account(address)
        if account is None:
            raise TokenAccountError(f"Token account not found: {address}")
        return account

    def approve(self, account: str, delegate: str, amount: int, signer: str) -> None:
        """Set ``delegate``'s allowance on ``account``; only the account owner may approve."""
        holding = self._require_token_account(account)
        if holding.owner != normalize_address(signer):
            raise TokenAccountError(f"{signer} does not own token account {holding.address}")
        if amount < 0 or amount > MAX_AMOUNT:
            raise ValueError(f"Allowance out of range: {amount}")
        self.conn.execute(
            """
            INSERT INTO allowances (account, delegate, amount) VALUES (?, ?, ?)
            ON CONFLICT (account, delegate) DO UPDATE SET amount = excluded.amount
            """,
            (holding.address, normalize_address(delegate), amount),
        )

    def revoke(self, account: str, delegate: str, signer: str) -> None:
        holding = self._require_token_account(account)
        if holding.owner != normalize_address(signer):
            raise TokenAccountError(f"{signer} does not own token account {holding.address}")
        self.conn.execute(
            "DELETE FROM allowances WHERE account = ? AND delegate = ?",
            (holding.address, normalize_address(delegate)),
        )

    def transfer_from(self, source: str, destination: str, delegate: str, amount: int) -> None:
        """Move ``amount`` from ``source`` to ``destination`` on ``delegate``'s allowance."""
        if amount <= 0:
            raise ValueError("Transfer amount must be positive")
        src = self._require_token_account(source)
        dst = self._require_token_account(destination)
        if src.mint != dst.mint:
            raise TokenAccountError(f"Mint mismatch: {src.mint} -> {dst.mint}")

        remaining = self.allowance(src.address, delegate)
        if remaining < amount:
            raise InsufficientAllowanceError(src.address, normalize_address(delegate), remaining, amount)
        if src.balance < amount:
            raise InsufficientFundsError(src.address, src.balance, amount)

        self.conn.execute(
            "UPDATE allowances SET amount = amount - ? WHERE account = ? AND delegate = ?",
            (amount, src.address, normalize_address(delegate)),
        )
        self.conn.execute(
            "DELETE FROM allowances WHERE account = ? AND delegate = ? AND amount = 0",
            (src.address, normalize_address(delegate)),
        )
        self.conn.execute(
            "UPDATE token_accounts SET balance = balance - ? WHERE address = ?",
            (amount, src.address),
        )
        self.conn.execute(
            "UPDATE token_accounts SET balance = balance + ? WHERE address = ?",
            (amount, dst.address),
        )


class Ledger:
    """
    SQLite-backed ledger.

    Each call opens its own connection; ``transaction()`` holds the write
    lock for its whole body and rolls back if the body raises.
    """

    def __init__(self, path: Path, clock: Optional[Clock] = None):
        self.path = Path(path)
        self.clock = clock or SystemClock()
        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._init_db()
        restrict_sqlite_files(self.path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    address TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    owner_funds_account TEXT NOT NULL,
                    recipient_funds_account TEXT NOT NULL,
                    fund_type TEXT NOT NULL,
                    amount_per_period INTEGER NOT NULL,
                    interval_seconds INTEGER NOT NULL,
                    last_charge_timestamp INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    expires_at INTEGER,
                    is_active INTEGER NOT NULL,
                    total_charged INTEGER NOT NULL DEFAULT 0,
                    storage_deposit INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_owner ON subscriptions (owner)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_accounts (
                    address TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    mint TEXT NOT NULL,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    program TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS allowances (
                    account TEXT NOT NULL,
                    delegate TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount >= 0),
                    PRIMARY KEY (account, delegate)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identities (
                    address TEXT PRIMARY KEY,
                    nonce INTEGER NOT NULL DEFAULT 0,
                    reclaimed_deposits INTEGER NOT NULL DEFAULT 0
                )
                """
            )

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        """Run the body as one serializable, all-or-nothing unit."""
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            tx = LedgerTransaction(conn, now=self.clock.now())
            try:
                yield tx
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def _reader(self) -> Iterator[_Reader]:
        with closing(self._connect()) as conn:
            reader = _Reader()
            reader.conn = conn
            yield reader

    def now(self) -> int:
        return self.clock.now()

    def get_subscription(self, address: str) -> Optional[Subscription]:
        with self._reader() as r:
            return r.get_subscription(address)

    def get_token_account(self, address: str) -> Optional[TokenAccount]:
        with self._reader() as r:
            return r.get_token_account(address)

    def allowance(self, account: str, delegate: str) -> int:
        with self._reader() as r:
            return r.allowance(account, delegate)

    def nonce_of(self, identity: str) -> int:
        with self._reader() as r:
            return r.nonce_of(identity)

    def reclaimed_deposits(self, identity: str) -> int:
        with self._reader() as r:
            return r.reclaimed_deposits(identity)

    def list_subscriptions(
        self,
        owner: Optional[str] = None,
        active_only: bool = False,
    ) -> list[Subscription]:
        query = "SELECT * FROM subscriptions"
        clauses: list[str] = []
        params: list = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(normalize_address(owner))
        if active_only:
            clauses.append("is_active = 1")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, address ASC"
        with self._reader() as r:
            return [_row_to_subscription(row) for row in r.conn.execute(query, params).fetchall()]

    # Local development helpers for the token custody side.

    def create_token_account(
        self,
        owner: str,
        mint: str,
        balance: int = 0,
        program: str = TOKEN_PROGRAM_ID,
    ) -> TokenAccount:
        """Open (or return) the owner's canonical token account for ``mint``."""
        owner = normalize_address(owner)
        mint = normalize_address(mint)
        address = token_account_address(owner, mint)
        with self.transaction() as tx:
            tx.conn.execute(
                """
                INSERT OR IGNORE INTO token_accounts (address, owner, mint, balance, program)
                VALUES (?, ?, ?, 0, ?)
                """,
                (address, owner, mint, normalize_address(program)),
            )
            if balance:
                tx.conn.execute(
                    "UPDATE token_accounts SET balance = balance + ? WHERE address = ?",
                    (balance, address),
                )
            account = tx.get_token_account(address)
        assert account is not None
        logger.info("Token account ready: %s (owner=%s mint=%s)", address, owner, mint)
        return account

    def mint_to(self, account: str, amount: int) -> TokenAccount:
        if amount <= 0:
            raise ValueError("Mint amount must be positive")
        with self.transaction() as tx:
            holding = tx._require_token_account(account)
            if holding.balance + amount > MAX_AMOUNT:
                raise ValueError("Balance would exceed ledger range")
            tx.conn.execute(
                "UPDATE token_accounts SET balance = balance + ? WHERE address = ?",
                (amount, holding.address),
            )
            updated = tx.get_token_account(holding.address)
        assert updated is not None
        return updated
