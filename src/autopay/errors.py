"""
Autopay error types.

Every rejected operation raises one specific exception so callers can tell
a retry-later outcome (interval not elapsed) from a permanent one
(cancelled, account mismatch). No error is ever raised after a partial
commit: the ledger rolls the whole transaction back first.
"""

from __future__ import annotations

from typing import Optional


class AutopayError(Exception):
    """Base error for all Autopay operations."""

    code = "autopay_error"
    retryable = False


# Subscription state errors
class SubscriptionError(AutopayError):
    """Base error for subscription precondition violations."""

    code = "subscription_error"


class NotActiveError(SubscriptionError):
    """Operation attempted on a cancelled subscription."""

    code = "not_active"

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Subscription {address} is not active")


class ExpiredError(SubscriptionError):
    """Current time is at or past the subscription's expiry."""

    code = "expired"

    def __init__(self, address: str, expires_at: int, now: int):
        self.address = address
        self.expires_at = expires_at
        self.now = now
        super().__init__(f"Subscription {address} expired at {expires_at} (now {now})")


class IntervalNotElapsedError(SubscriptionError):
    """Charge attempted before the billing interval has passed."""

    code = "interval_not_elapsed"
    retryable = True

    def __init__(self, address: str, retry_at: int, now: int):
        self.address = address
        self.retry_at = retry_at
        self.now = now
        super().__init__(
            f"Subscription {address} is not due until {retry_at} "
            f"({retry_at - now}s remaining)"
        )


class AlreadyCancelledError(SubscriptionError):
    """Cancel attempted on a subscription that is already cancelled."""

    code = "already_cancelled"

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Subscription {address} already cancelled")


class StillActiveError(SubscriptionError):
    """Cleanup attempted on a subscription that has not been cancelled."""

    code = "still_active"

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Subscription {address} is still active; cancel it first")


class AccountMismatchError(SubscriptionError):
    """Funds account differs from the recorded one or is not a valid token account."""

    code = "account_mismatch"


class SubscriptionExistsError(SubscriptionError):
    """An active subscription already occupies the derived address."""

    code = "subscription_exists"

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Active subscription already exists at {address}")


class SubscriptionNotFoundError(SubscriptionError):
    """No subscription record at the given address."""

    code = "subscription_not_found"

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Subscription not found: {address}")


class InvalidParameterError(SubscriptionError):
    """Amount, interval or expiry outside the allowed range."""

    code = "invalid_parameter"


# Authorization errors
class UnauthorizedError(AutopayError):
    """Signature missing, invalid, replayed, or from someone other than the owner."""

    code = "unauthorized"


# Funds movement errors
class TransferFailedError(AutopayError):
    """The underlying token transfer failed; the whole operation rolled back."""

    code = "transfer_failed"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class TokenError(AutopayError):
    """Base error for the token custody primitive."""

    code = "token_error"


class TokenAccountError(TokenError):
    """Token account missing, wrong mint, or wrong owner."""

    code = "token_account_error"


class InsufficientFundsError(TokenError):
    """Source token account balance is lower than the transfer amount."""

    code = "insufficient_funds"

    def __init__(self, account: str, balance: int, amount: int):
        self.account = account
        self.balance = balance
        self.amount = amount
        super().__init__(f"Account {account} holds {balance}, needs {amount}")


class InsufficientAllowanceError(TokenError):
    """Delegate's remaining allowance is lower than the transfer amount."""

    code = "insufficient_allowance"

    def __init__(self, account: str, delegate: str, allowance: int, amount: int):
        self.account = account
        self.delegate = delegate
        self.allowance = allowance
        self.amount = amount
        super().__init__(
            f"Delegate {delegate} may move {allowance} from {account}, needs {amount}"
        )
