"""
Autopay — Delegated recurring payments.

An owner authorizes a fixed amount per interval once; after that anyone may
trigger the charge, and the engine enforces schedule, amount, expiry and
cancellation on every pull.
"""

__version__ = "0.1.0"

from .actions import (
    ActionType,
    SignedAction,
    cancel_request,
    initialize_request,
    renew_allowance_request,
    sign_action,
    update_request,
    verify_action,
)
from .audit import AuditTrail, EventType
from .clock import Clock, ManualClock, SystemClock
from .config import EngineConfig
from .engine import SubscriptionEngine
from .ledger import Ledger, TokenAccount
from .subscription import Subscription
from .sweeper import ChargeSweeper, SweepReport

__all__ = [
    "ActionType", "SignedAction", "sign_action", "verify_action",
    "initialize_request", "cancel_request", "update_request", "renew_allowance_request",
    "AuditTrail", "EventType",
    "Clock", "ManualClock", "SystemClock",
    "EngineConfig",
    "SubscriptionEngine",
    "Ledger", "TokenAccount",
    "Subscription",
    "ChargeSweeper", "SweepReport",
]
