"""
Subscription authorization engine.

Flow for every operation:
1. Open one ledger transaction (serialized, all-or-nothing)
2. Authenticate the owner's signed request (owner-only operations)
3. Check the record's preconditions in a fixed order
4. Issue allowance / transfer instructions against the token ledger
5. Write the record back, commit, then log and audit

Any exception inside step 1-4 rolls the whole transaction back, so a
failed transfer never leaves an advanced schedule behind.
"""

from __future__ import annotations

import logging
from typing import Optional

from .actions import ActionType, SignedAction, canonical_params, verify_action
from .audit import AuditTrail, EventType
from .config import EngineConfig
from .errors import (
    AccountMismatchError,
    AlreadyCancelledError,
    AutopayError,
    ExpiredError,
    IntervalNotElapsedError,
    InvalidParameterError,
    NotActiveError,
    StillActiveError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
    TokenError,
    TransferFailedError,
    UnauthorizedError,
)
from .identity import TOKEN_PROGRAM_ID, normalize_address, subscription_address
from .ledger import Ledger, LedgerTransaction
from .money import MAX_AMOUNT
from .subscription import Subscription

logger = logging.getLogger(__name__)


class SubscriptionEngine:
    """Enforces owner-declared schedules on delegated recurring pulls."""

    def __init__(
        self,
        ledger: Ledger,
        audit: Optional[AuditTrail] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.ledger = ledger
        self.audit = audit
        self.config = config or EngineConfig()

    # Queries

    def get(self, address: str) -> Subscription:
        sub = self.ledger.get_subscription(address)
        if sub is None:
            raise SubscriptionNotFoundError(normalize_address(address))
        return sub

    def find(self, owner: str, recipient: str) -> Optional[Subscription]:
        return self.ledger.get_subscription(subscription_address(owner, recipient))

    def list_subscriptions(self, owner: Optional[str] = None, active_only: bool = False) -> list[Subscription]:
        return self.ledger.list_subscriptions(owner=owner, active_only=active_only)

    # Operations

    def initialize(self, request: SignedAction) -> Subscription:
        """Create the record and grant it a delegated allowance, atomically.

        With ``prepaid`` the first period is pulled in the same transaction,
        after the approval it depends on.
        """
        try:
            with self.ledger.transaction() as tx:
                self._authenticate(tx, request, ActionType.INITIALIZE)
                params = _params(request)
                owner = normalize_address(request.owner)
                recipient = params["recipient"]
                address = subscription_address(owner, recipient)
                if normalize_address(request.subscription) != address:
                    raise UnauthorizedError(
                        f"Request targets {request.subscription}, derived address is {address}"
                    )

                amount = params["amount_per_period"]
                interval = params["interval_seconds"]
                expires_at = params["expires_at"]
                if amount is None or interval is None:
                    raise InvalidParameterError("amount_per_period and interval_seconds are required")
                _validate_amount(amount)
                _validate_interval(interval)
                if expires_at is not None:
                    _validate_expiry(expires_at)
                    if expires_at <= tx.now:
                        raise InvalidParameterError(f"expires_at {expires_at} is not in the future")
                if params["owner_funds_account"] == params["recipient_funds_account"]:
                    raise InvalidParameterError("Owner and recipient funds accounts must differ")

                existing = tx.get_subscription(address)
                if existing is not None:
                    if existing.is_active:
                        raise SubscriptionExistsError(address)
                    # A cancelled record still occupying the address is closed first.
                    tx.delete_subscription(address)

                self._check_funds_account(
                    tx, params["owner_funds_account"], params["fund_type"], "owner", owner=owner
                )
                self._check_funds_account(
                    tx, params["recipient_funds_account"], params["fund_type"], "recipient"
                )

                sub = Subscription(
                    address=address,
                    owner=owner,
                    recipient=recipient,
                    owner_funds_account=params["owner_funds_account"],
                    recipient_funds_account=params["recipient_funds_account"],
                    fund_type=params["fund_type"],
                    amount_per_period=amount,
                    interval_seconds=interval,
                    last_charge_timestamp=0,
                    created_at=tx.now,
                    expires_at=expires_at,
                    is_active=True,
                    total_charged=0,
                    storage_deposit=self.config.storage_deposit,
                )
                tx.insert_subscription(sub)

                allowance = self._allowance_for(amount)
                tx.approve(sub.owner_funds_account, sub.address, allowance, signer=owner)

                if params["prepaid"]:
                    self._transfer(tx, sub)
                    sub.last_charge_timestamp = tx.now
                    sub.total_charged = amount
                    tx.save_subscription(sub)
        except AutopayError as e:
            self._reject(request, e)
            raise

        logger.info(
            "Subscription initialized: %s owner=%s recipient=%s amount=%d interval=%ds prepaid=%s",
            sub.address, sub.owner, sub.recipient, amount, interval, params["prepaid"],
        )
        if self.audit:
            self.audit.log(
                EventType.SUBSCRIPTION_INITIALIZED,
                subscription=sub.address,
                owner=sub.owner,
                recipient=sub.recipient,
                amount=sub.amount_per_period,
                details={
                    "interval_seconds": sub.interval_seconds,
                    "expires_at": sub.expires_at,
                    "fund_type": sub.fund_type,
                    "prepaid": params["prepaid"],
                },
            )
            self.audit.log(
                EventType.DELEGATION_GRANTED,
                subscription=sub.address,
                owner=sub.owner,
                amount=allowance,
                details={"account": sub.owner_funds_account},
            )
            if params["prepaid"]:
                self.audit.log(
                    EventType.SUBSCRIPTION_CHARGED,
                    subscription=sub.address,
                    owner=sub.owner,
                    recipient=sub.recipient,
                    caller=sub.owner,
                    amount=sub.amount_per_period,
                    details={"total_charged": sub.total_charged, "prepaid": True},
                )
        return sub

    def charge(
        self,
        address: str,
        owner_funds_account: Optional[str] = None,
        recipient_funds_account: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> Subscription:
        """Pull one period from owner to recipient if the schedule allows it now.

        Anyone may call this. Supplied funds accounts default to the recorded
        ones and must match them exactly.
        """
        address = normalize_address(address)
        caller = normalize_address(caller) if caller else None
        try:
            with self.ledger.transaction() as tx:
                sub = tx.get_subscription(address)
                if sub is None:
                    raise SubscriptionNotFoundError(address)
                if not sub.is_active:
                    raise NotActiveError(address)
                if sub.is_expired(tx.now):
                    raise ExpiredError(address, sub.expires_at, tx.now)
                if tx.now - sub.last_charge_timestamp < sub.interval_seconds:
                    raise IntervalNotElapsedError(address, retry_at=sub.next_charge_at, now=tx.now)

                self._check_charge_accounts(
                    tx,
                    sub,
                    owner_funds_account or sub.owner_funds_account,
                    recipient_funds_account or sub.recipient_funds_account,
                )

                self._transfer(tx, sub)
                sub.last_charge_timestamp = tx.now
                sub.total_charged += sub.amount_per_period
                tx.save_subscription(sub)
        except AutopayError as e:
            logger.warning("Charge rejected for %s: %s", address, e)
            if self.audit:
                self.audit.log(
                    EventType.CHARGE_REJECTED,
                    subscription=address,
                    caller=caller,
                    success=False,
                    reason=str(e),
                    details={"code": e.code, "retryable": e.retryable},
                )
            raise

        logger.info(
            "Subscription charged: %s amount=%d total=%d",
            sub.address, sub.amount_per_period, sub.total_charged,
        )
        if self.audit:
            self.audit.log(
                EventType.SUBSCRIPTION_CHARGED,
                subscription=sub.address,
                owner=sub.owner,
                recipient=sub.recipient,
                caller=caller,
                amount=sub.amount_per_period,
                details={
                    "total_charged": sub.total_charged,
                    "charged_at": sub.last_charge_timestamp,
                },
            )
        return sub

    def cancel(self, request: SignedAction) -> Subscription:
        """Revoke the delegation and deactivate; with ``close`` also delete the record."""
        try:
            with self.ledger.transaction() as tx:
                sub = self._authorize_owner(tx, request, ActionType.CANCEL)
                close = _params(request)["close"]
                if not sub.is_active:
                    raise AlreadyCancelledError(sub.address)

                tx.revoke(sub.owner_funds_account, sub.address, signer=sub.owner)
                sub.is_active = False
                tx.save_subscription(sub)
                refunded = tx.delete_subscription(sub.address) if close else 0
        except AutopayError as e:
            self._reject(request, e)
            raise

        logger.info("Subscription cancelled: %s (closed=%s)", sub.address, close)
        if self.audit:
            self.audit.log(
                EventType.SUBSCRIPTION_CANCELLED,
                subscription=sub.address,
                owner=sub.owner,
                recipient=sub.recipient,
                details={"total_charged": sub.total_charged, "closed": close},
            )
            self.audit.log(
                EventType.DELEGATION_REVOKED,
                subscription=sub.address,
                owner=sub.owner,
                details={"account": sub.owner_funds_account},
            )
            if close:
                self.audit.log(
                    EventType.SUBSCRIPTION_CLOSED,
                    subscription=sub.address,
                    owner=sub.owner,
                    amount=refunded,
                )
        return sub

    def update(self, request: SignedAction) -> Subscription:
        """Overwrite future charge parameters; the charge history is never touched."""
        try:
            with self.ledger.transaction() as tx:
                sub = self._authorize_owner(tx, request, ActionType.UPDATE)
                if not sub.is_active:
                    raise NotActiveError(sub.address)
                params = _params(request)
                changes: dict = {}

                if params["new_amount"] is not None:
                    _validate_amount(params["new_amount"])
                    sub.amount_per_period = params["new_amount"]
                    changes["amount_per_period"] = sub.amount_per_period
                if params["new_interval"] is not None:
                    _validate_interval(params["new_interval"])
                    sub.interval_seconds = params["new_interval"]
                    changes["interval_seconds"] = sub.interval_seconds
                if params["new_expires_at"] is not None:
                    _validate_expiry(params["new_expires_at"])
                    sub.expires_at = params["new_expires_at"]
                    changes["expires_at"] = sub.expires_at

                tx.save_subscription(sub)
                if "amount_per_period" in changes:
                    tx.approve(
                        sub.owner_funds_account,
                        sub.address,
                        self._allowance_for(sub.amount_per_period),
                        signer=sub.owner,
                    )
        except AutopayError as e:
            self._reject(request, e)
            raise

        logger.info("Subscription updated: %s %s", sub.address, changes)
        if self.audit:
            self.audit.log(
                EventType.SUBSCRIPTION_UPDATED,
                subscription=sub.address,
                owner=sub.owner,
                details=changes,
            )
        return sub

    def renew_allowance(self, request: SignedAction) -> int:
        """Top the delegated allowance back up to the configured number of periods."""
        try:
            with self.ledger.transaction() as tx:
                sub = self._authorize_owner(tx, request, ActionType.RENEW_ALLOWANCE)
                if not sub.is_active:
                    raise NotActiveError(sub.address)
                allowance = self._allowance_for(sub.amount_per_period)
                tx.approve(sub.owner_funds_account, sub.address, allowance, signer=sub.owner)
        except AutopayError as e:
            self._reject(request, e)
            raise

        logger.info("Allowance renewed: %s allowance=%d", sub.address, allowance)
        if self.audit:
            self.audit.log(
                EventType.ALLOWANCE_RENEWED,
                subscription=sub.address,
                owner=sub.owner,
                amount=allowance,
                details={"account": sub.owner_funds_account},
            )
        return allowance

    def cleanup(self, address: str, caller: Optional[str] = None) -> int:
        """Delete a cancelled record; returns the deposit refunded to its owner."""
        address = normalize_address(address)
        with self.ledger.transaction() as tx:
            sub = tx.get_subscription(address)
            if sub is None:
                raise SubscriptionNotFoundError(address)
            if sub.is_active:
                raise StillActiveError(address)
            refunded = tx.delete_subscription(address)

        logger.info("Subscription closed: %s refunded=%d to %s", address, refunded, sub.owner)
        if self.audit:
            self.audit.log(
                EventType.SUBSCRIPTION_CLOSED,
                subscription=address,
                owner=sub.owner,
                caller=normalize_address(caller) if caller else None,
                amount=refunded,
            )
        return refunded

    # Internals

    def _authenticate(self, tx: LedgerTransaction, request: SignedAction, action: ActionType) -> None:
        if request.action != action.value:
            raise UnauthorizedError(f"Expected a {action.value} request, got {request.action}")
        valid, reason = verify_action(request, chain_id=self.config.chain_id, now=tx.now)
        if not valid:
            raise UnauthorizedError(reason)
        tx.use_nonce(request.owner, request.nonce)

    def _authorize_owner(self, tx: LedgerTransaction, request: SignedAction, action: ActionType) -> Subscription:
        self._authenticate(tx, request, action)
        sub = tx.get_subscription(request.subscription)
        if sub is None:
            raise SubscriptionNotFoundError(request.subscription)
        if normalize_address(request.owner) != sub.owner:
            raise UnauthorizedError(f"{request.owner} is not the owner of {sub.address}")
        return sub

    def _allowance_for(self, amount: int) -> int:
        periods = self.config.allowance_periods
        if periods == 0:
            return MAX_AMOUNT
        return min(MAX_AMOUNT, amount * periods)

    def _transfer(self, tx: LedgerTransaction, sub: Subscription) -> None:
        try:
            tx.transfer_from(
                sub.owner_funds_account,
                sub.recipient_funds_account,
                delegate=sub.address,
                amount=sub.amount_per_period,
            )
        except TokenError as e:
            raise TransferFailedError(f"Transfer for {sub.address} failed: {e}", cause=e) from e

    def _check_funds_account(
        self,
        tx: LedgerTransaction,
        address: str,
        fund_type: str,
        label: str,
        owner: Optional[str] = None,
    ) -> None:
        account = tx.get_token_account(address)
        if account is None:
            raise AccountMismatchError(f"{label} funds account {address} does not exist")
        if account.program != TOKEN_PROGRAM_ID:
            raise AccountMismatchError(f"{label} funds account {address} is not held by the token program")
        if account.mint != fund_type:
            raise AccountMismatchError(
                f"{label} funds account {address} holds {account.mint}, expected {fund_type}"
            )
        if owner is not None and account.owner != owner:
            raise AccountMismatchError(f"{label} funds account {address} is not owned by {owner}")

    def _check_charge_accounts(
        self,
        tx: LedgerTransaction,
        sub: Subscription,
        owner_funds_account: str,
        recipient_funds_account: str,
    ) -> None:
        try:
            supplied_owner = normalize_address(owner_funds_account)
            supplied_recipient = normalize_address(recipient_funds_account)
        except ValueError as e:
            raise AccountMismatchError(f"funds account is not a valid address: {e}") from e
        if supplied_owner != sub.owner_funds_account:
            raise AccountMismatchError(
                f"owner funds account {owner_funds_account} does not match recorded {sub.owner_funds_account}"
            )
        if supplied_recipient != sub.recipient_funds_account:
            raise AccountMismatchError(
                f"recipient funds account {recipient_funds_account} does not match "
                f"recorded {sub.recipient_funds_account}"
            )
        self._check_funds_account(tx, sub.owner_funds_account, sub.fund_type, "owner")
        self._check_funds_account(tx, sub.recipient_funds_account, sub.fund_type, "recipient")

    def _reject(self, request: SignedAction, error: AutopayError) -> None:
        logger.warning("%s request for %s rejected: %s", request.action, request.subscription, error)
        if self.audit:
            self.audit.log(
                EventType.REQUEST_REJECTED,
                subscription=request.subscription,
                owner=request.owner,
                success=False,
                reason=str(error),
                details={"action": request.action, "code": error.code},
            )


def _params(request: SignedAction) -> dict:
    try:
        return canonical_params(request.action, request.params)
    except ValueError as e:
        raise InvalidParameterError(str(e)) from e


def _validate_amount(amount: int) -> None:
    if amount <= 0:
        raise InvalidParameterError("amount_per_period must be > 0")
    if amount > MAX_AMOUNT:
        raise InvalidParameterError("amount_per_period out of range")


def _validate_interval(interval: int) -> None:
    if interval < 0:
        raise InvalidParameterError("interval_seconds must be >= 0")
    if interval > MAX_AMOUNT:
        raise InvalidParameterError("interval_seconds out of range")


def _validate_expiry(expires_at: int) -> None:
    if expires_at < 0 or expires_at > MAX_AMOUNT:
        raise InvalidParameterError("expires_at out of range")
