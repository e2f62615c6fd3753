"""
Charge sweeper.

Walks every subscription record and charges the ones that are due, the way
a recipient's cron job would. Records that are inactive, expired or not yet
due are skipped with a reason; a failure on one record is collected and the
sweep moves on.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Optional

import httpx

from .engine import SubscriptionEngine
from .errors import AutopayError, IntervalNotElapsedError

logger = logging.getLogger(__name__)


@dataclass
class SweepOutcome:
    """What happened to one record during a sweep."""

    subscription: str
    status: str  # charged | skipped | error
    reason: Optional[str] = None
    amount: int = 0
    code: Optional[str] = None


@dataclass
class SweepReport:
    swept_at: int
    total: int = 0
    charged: int = 0
    skipped: int = 0
    errors: int = 0
    amount_charged: int = 0
    outcomes: list[SweepOutcome] = field(default_factory=list)

    def add(self, outcome: SweepOutcome) -> None:
        self.outcomes.append(outcome)
        self.total += 1
        if outcome.status == "charged":
            self.charged += 1
            self.amount_charged += outcome.amount
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.errors += 1

    def to_dict(self) -> dict:
        return asdict(self)


class ChargeSweeper:
    """Charges every due subscription through the engine."""

    def __init__(self, engine: SubscriptionEngine, caller: Optional[str] = None):
        self.engine = engine
        self.caller = caller

    def run(self, owner: Optional[str] = None) -> SweepReport:
        now = self.engine.ledger.now()
        report = SweepReport(swept_at=now)
        subscriptions = self.engine.list_subscriptions(owner=owner)
        logger.info("Sweeping %d subscription(s)", len(subscriptions))

        for sub in subscriptions:
            if not sub.is_active:
                report.add(SweepOutcome(sub.address, "skipped", reason="inactive"))
                continue
            if sub.is_expired(now):
                report.add(SweepOutcome(sub.address, "skipped", reason="expired"))
                continue
            if not sub.is_due(now):
                report.add(
                    SweepOutcome(
                        sub.address,
                        "skipped",
                        reason=f"not due for {sub.seconds_until_due(now)}s",
                    )
                )
                continue

            try:
                charged = self.engine.charge(sub.address, caller=self.caller)
            except IntervalNotElapsedError as e:
                # Another caller charged it between the scan and the charge.
                report.add(SweepOutcome(sub.address, "skipped", reason=str(e), code=e.code))
            except AutopayError as e:
                logger.error("Sweep failed to charge %s: %s", sub.address, e)
                report.add(SweepOutcome(sub.address, "error", reason=str(e), code=e.code))
            else:
                report.add(SweepOutcome(sub.address, "charged", amount=charged.amount_per_period))

        logger.info(
            "Sweep finished: %d charged, %d skipped, %d errors",
            report.charged, report.skipped, report.errors,
        )
        return report


def post_report(report: SweepReport, webhook_url: str, timeout: float = 5.0) -> None:
    """POST a sweep summary to a webhook; raises ``httpx.HTTPError`` on failure."""
    body = {
        "event": "subscription_sweep",
        "swept_at": report.swept_at,
        "total": report.total,
        "charged": report.charged,
        "skipped": report.skipped,
        "errors": report.errors,
        "amount_charged": report.amount_charged,
        "failures": [
            {"subscription": o.subscription, "code": o.code, "reason": o.reason}
            for o in report.outcomes
            if o.status == "error"
        ],
    }
    response = httpx.post(webhook_url, json=body, timeout=timeout)
    response.raise_for_status()
