"""
Autopay CLI — Delegated recurring payments.

Commands:
    autopay fund       Open/top up a local token account
    autopay subscribe  Sign and initialize a subscription
    autopay charge     Charge one period if it is due
    autopay cancel     Revoke a subscription's delegation
    autopay update     Change amount, interval or expiry
    autopay renew      Top the delegated allowance back up
    autopay cleanup    Delete a cancelled subscription record
    autopay show       Show one subscription
    autopay list       List subscriptions
    autopay sweep      Charge every due subscription
    autopay audit      View audit trail
"""

from __future__ import annotations

import json
import subprocess
import sys
import time
from typing import Optional

import click
import httpx
from click.core import ParameterSource
from eth_account import Account

from . import __version__
from .actions import cancel_request, initialize_request, renew_allowance_request, update_request
from .audit import AuditTrail
from .config import EngineConfig
from .engine import SubscriptionEngine
from .errors import AutopayError, IntervalNotElapsedError
from .identity import normalize_address, subscription_address, token_account_address
from .ledger import Ledger
from .money import format_units, parse_units
from .subscription import Subscription
from .sweeper import ChargeSweeper, post_report


KEY_ARG_HELP = "Allow passing --owner-key via argv (unsafe; can leak in shell/process history)."


def _config() -> EngineConfig:
    return EngineConfig.from_env()


def _engine(config: EngineConfig) -> SubscriptionEngine:
    ledger = Ledger(config.ledger_path)
    audit = AuditTrail(config.audit_path, config.audit_key_path)
    return SubscriptionEngine(ledger, audit, config)


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    if raw in {"never", "none", "0"}:
        return 0
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 3600s, 30d, never)")
    return int(raw[:-1]) * units[raw[-1]]


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _owner_key(owner_key: str, unsafe_allow_key_arg: bool) -> str:
    """Resolve the owner key, refusing one passed on argv unless acknowledged."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("owner_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --owner-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)
    try:
        return _resolve_private_key(owner_key)
    except Exception as e:
        click.echo(f"❌ Invalid owner key: {e}", err=True)
        sys.exit(1)


def _fail(prefix: str, error: Exception) -> None:
    click.echo(f"❌ {prefix}: {error}", err=True)
    if isinstance(error, IntervalNotElapsedError):
        click.echo(
            f"   Retry at {error.retry_at} "
            f"({time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(error.retry_at))})",
            err=True,
        )
    sys.exit(1)


def _fmt_time(ts: Optional[int]) -> str:
    if not ts:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


def _echo_subscription(sub: Subscription, config: EngineConfig, allowance: Optional[int] = None, now: Optional[int] = None):
    d = config.token_decimals
    status = "active" if sub.is_active else "cancelled"
    click.echo(f"   Address:   {sub.address} ({status})")
    click.echo(f"   Owner:     {sub.owner}")
    click.echo(f"   Recipient: {sub.recipient}")
    click.echo(f"   Mint:      {sub.fund_type}")
    click.echo(f"   Amount:    {format_units(sub.amount_per_period, d)} every {sub.interval_seconds}s")
    click.echo(f"   Charged:   {format_units(sub.total_charged, d)} total")
    click.echo(f"   Last:      {_fmt_time(sub.last_charge_timestamp)}")
    click.echo(f"   Expires:   {_fmt_time(sub.expires_at)}")
    if allowance is not None:
        click.echo(f"   Allowance: {format_units(allowance, d)}")
    if now is not None and sub.is_active:
        if sub.is_due(now):
            click.echo("   Next:      due now")
        elif not sub.is_expired(now):
            click.echo(f"   Next:      {_fmt_time(sub.next_charge_at)} (in {sub.seconds_until_due(now)}s)")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
def main():
    """Autopay — Delegated recurring payments with owner-set limits."""
    pass


@main.command()
@click.argument("owner")
@click.argument("mint")
@click.option("--amount", default="0", help="Display amount to mint into the account (e.g. 25.5)")
def fund(owner: str, mint: str, amount: str):
    """Open (or top up) OWNER's local token account for MINT."""
    config = _config()
    try:
        units = parse_units(amount, config.token_decimals)
        ledger = Ledger(config.ledger_path)
        account = ledger.create_token_account(owner, mint)
        if units:
            account = ledger.mint_to(account.address, units)
    except (ValueError, AutopayError) as e:
        _fail("Failed to fund account", e)

    click.echo(f"✅ Token account: {account.address}")
    click.echo(f"   Owner:   {account.owner}")
    click.echo(f"   Mint:    {account.mint}")
    click.echo(f"   Balance: {format_units(account.balance, config.token_decimals)}")


@main.command()
@click.option("--owner-key", prompt=True, hide_input=True,
              help="Owner private key hex or op:// reference")
@click.option("--unsafe-allow-key-arg", is_flag=True, default=False, help=KEY_ARG_HELP)
@click.option("--recipient", required=True, help="Recipient address")
@click.option("--mint", required=True, help="Token mint address")
@click.option("--amount", required=True, help="Amount per period (display units, e.g. 10)")
@click.option("--interval", default="30d", help="Billing interval (e.g. 3600s, 30d)")
@click.option("--expires-in", default="never", help="Time until expiry (e.g. 365d, never)")
@click.option("--owner-account", default=None, help="Owner funds account (default: canonical account)")
@click.option("--recipient-account", default=None, help="Recipient funds account (default: canonical account)")
@click.option("--prepaid", is_flag=True, default=False, help="Charge the first period immediately")
@click.option("--nonce", type=int, default=None, help="Nonce override (default: ledger nonce)")
def subscribe(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    recipient: str,
    mint: str,
    amount: str,
    interval: str,
    expires_in: str,
    owner_account: Optional[str],
    recipient_account: Optional[str],
    prepaid: bool,
    nonce: Optional[int],
):
    """Sign and initialize a subscription to RECIPIENT."""
    key = _owner_key(owner_key, unsafe_allow_key_arg)
    config = _config()
    engine = _engine(config)
    owner = normalize_address(Account.from_key(key).address)

    try:
        amount_units = parse_units(amount, config.token_decimals)
        interval_seconds = _parse_duration_to_seconds(interval)
        expires_seconds = _parse_duration_to_seconds(expires_in)
        expires_at = engine.ledger.now() + expires_seconds if expires_seconds else None
        request = initialize_request(
            key,
            recipient=recipient,
            owner_funds_account=owner_account or token_account_address(owner, mint),
            recipient_funds_account=recipient_account or token_account_address(recipient, mint),
            fund_type=mint,
            amount_per_period=amount_units,
            interval_seconds=interval_seconds,
            expires_at=expires_at,
            prepaid=prepaid,
            nonce=nonce if nonce is not None else engine.ledger.nonce_of(owner),
            chain_id=config.chain_id,
        )
        sub = engine.initialize(request)
    except (ValueError, AutopayError) as e:
        _fail("Failed to subscribe", e)

    click.echo(f"✅ Subscription initialized: {sub.address}")
    _echo_subscription(sub, config, engine.ledger.allowance(sub.owner_funds_account, sub.address))


@main.command()
@click.argument("address")
@click.option("--owner-account", default=None, help="Owner funds account (must match the record)")
@click.option("--recipient-account", default=None, help="Recipient funds account (must match the record)")
@click.option("--caller", default=None, help="Caller address recorded in the audit trail")
def charge(address: str, owner_account: Optional[str], recipient_account: Optional[str], caller: Optional[str]):
    """Charge one period of subscription ADDRESS if it is due."""
    config = _config()
    engine = _engine(config)
    try:
        sub = engine.charge(
            address,
            owner_funds_account=owner_account,
            recipient_funds_account=recipient_account,
            caller=caller,
        )
    except (ValueError, AutopayError) as e:
        _fail("Charge rejected", e)

    d = config.token_decimals
    click.echo(f"✅ Charged {format_units(sub.amount_per_period, d)} → {sub.recipient}")
    click.echo(f"   Total:     {format_units(sub.total_charged, d)}")
    click.echo(f"   Next due:  {_fmt_time(sub.next_charge_at)}")


@main.command()
@click.argument("address")
@click.option("--owner-key", prompt=True, hide_input=True,
              help="Owner private key hex or op:// reference")
@click.option("--unsafe-allow-key-arg", is_flag=True, default=False, help=KEY_ARG_HELP)
@click.option("--close", is_flag=True, default=False, help="Also delete the record and refund its deposit")
@click.option("--nonce", type=int, default=None, help="Nonce override (default: ledger nonce)")
def cancel(address: str, owner_key: str, unsafe_allow_key_arg: bool, close: bool, nonce: Optional[int]):
    """Cancel subscription ADDRESS and revoke its delegation."""
    key = _owner_key(owner_key, unsafe_allow_key_arg)
    config = _config()
    engine = _engine(config)
    owner = Account.from_key(key).address
    try:
        request = cancel_request(
            key,
            address,
            close=close,
            nonce=nonce if nonce is not None else engine.ledger.nonce_of(owner),
            chain_id=config.chain_id,
        )
        sub = engine.cancel(request)
    except (ValueError, AutopayError) as e:
        _fail("Failed to cancel", e)

    click.echo(f"✅ Subscription cancelled: {sub.address}")
    click.echo(f"   Delegation revoked on {sub.owner_funds_account}")
    if close:
        click.echo(f"   Record closed; deposit refunded to {sub.owner}")


@main.command()
@click.argument("address")
@click.option("--owner-key", prompt=True, hide_input=True,
              help="Owner private key hex or op:// reference")
@click.option("--unsafe-allow-key-arg", is_flag=True, default=False, help=KEY_ARG_HELP)
@click.option("--amount", default=None, help="New amount per period (display units)")
@click.option("--interval", default=None, help="New billing interval (e.g. 3600s, 30d)")
@click.option("--expires-in", default=None, help="New time until expiry (e.g. 90d)")
@click.option("--nonce", type=int, default=None, help="Nonce override (default: ledger nonce)")
def update(
    address: str,
    owner_key: str,
    unsafe_allow_key_arg: bool,
    amount: Optional[str],
    interval: Optional[str],
    expires_in: Optional[str],
    nonce: Optional[int],
):
    """Change the amount, interval or expiry of subscription ADDRESS."""
    key = _owner_key(owner_key, unsafe_allow_key_arg)
    config = _config()
    engine = _engine(config)
    owner = Account.from_key(key).address
    try:
        new_expires_at = None
        if expires_in is not None:
            seconds = _parse_duration_to_seconds(expires_in)
            if seconds <= 0:
                raise ValueError("--expires-in must be a positive duration; expiry cannot be cleared")
            new_expires_at = engine.ledger.now() + seconds
        request = update_request(
            key,
            address,
            new_amount=parse_units(amount, config.token_decimals) if amount is not None else None,
            new_interval=_parse_duration_to_seconds(interval) if interval is not None else None,
            new_expires_at=new_expires_at,
            nonce=nonce if nonce is not None else engine.ledger.nonce_of(owner),
            chain_id=config.chain_id,
        )
        sub = engine.update(request)
    except (ValueError, AutopayError) as e:
        _fail("Failed to update", e)

    click.echo(f"✅ Subscription updated: {sub.address}")
    _echo_subscription(sub, config, engine.ledger.allowance(sub.owner_funds_account, sub.address))


@main.command()
@click.argument("address")
@click.option("--owner-key", prompt=True, hide_input=True,
              help="Owner private key hex or op:// reference")
@click.option("--unsafe-allow-key-arg", is_flag=True, default=False, help=KEY_ARG_HELP)
@click.option("--nonce", type=int, default=None, help="Nonce override (default: ledger nonce)")
def renew(address: str, owner_key: str, unsafe_allow_key_arg: bool, nonce: Optional[int]):
    """Top the delegated allowance of subscription ADDRESS back up."""
    key = _owner_key(owner_key, unsafe_allow_key_arg)
    config = _config()
    engine = _engine(config)
    owner = Account.from_key(key).address
    try:
        request = renew_allowance_request(
            key,
            address,
            nonce=nonce if nonce is not None else engine.ledger.nonce_of(owner),
            chain_id=config.chain_id,
        )
        allowance = engine.renew_allowance(request)
    except (ValueError, AutopayError) as e:
        _fail("Failed to renew allowance", e)

    click.echo(f"✅ Allowance renewed: {format_units(allowance, config.token_decimals)}")


@main.command()
@click.argument("address")
@click.option("--caller", default=None, help="Caller address recorded in the audit trail")
def cleanup(address: str, caller: Optional[str]):
    """Delete cancelled subscription ADDRESS and refund its deposit."""
    config = _config()
    engine = _engine(config)
    try:
        refunded = engine.cleanup(address, caller=caller)
    except (ValueError, AutopayError) as e:
        _fail("Cleanup rejected", e)

    click.echo(f"✅ Subscription closed: {normalize_address(address)}")
    click.echo(f"   Deposit refunded: {refunded}")


@main.command()
@click.argument("address", required=False)
@click.option("--owner", default=None, help="Owner address (with --recipient, instead of ADDRESS)")
@click.option("--recipient", default=None, help="Recipient address (with --owner, instead of ADDRESS)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record as JSON")
def show(address: Optional[str], owner: Optional[str], recipient: Optional[str], as_json: bool):
    """Show one subscription."""
    config = _config()
    engine = _engine(config)
    try:
        if address is None:
            if not (owner and recipient):
                raise ValueError("Pass ADDRESS or both --owner and --recipient")
            address = subscription_address(owner, recipient)
        sub = engine.get(address)
    except (ValueError, AutopayError) as e:
        _fail("Lookup failed", e)

    if as_json:
        click.echo(json.dumps(sub.to_dict(), indent=2))
        return
    allowance = engine.ledger.allowance(sub.owner_funds_account, sub.address)
    click.echo(f"📄 Subscription {sub.address}")
    _echo_subscription(sub, config, allowance, now=engine.ledger.now())


@main.command("list")
@click.option("--owner", default=None, help="Filter by owner address")
@click.option("--active-only", is_flag=True, help="Hide cancelled subscriptions")
def list_cmd(owner: Optional[str], active_only: bool):
    """List subscriptions."""
    config = _config()
    engine = _engine(config)
    try:
        subs = engine.list_subscriptions(owner=owner, active_only=active_only)
    except ValueError as e:
        _fail("Listing failed", e)

    if not subs:
        click.echo("No subscriptions found.")
        return

    now = engine.ledger.now()
    for sub in subs:
        if not sub.is_active:
            state = "cancelled"
        elif sub.is_expired(now):
            state = "expired"
        elif sub.is_due(now):
            state = "due"
        else:
            state = f"due in {sub.seconds_until_due(now)}s"
        amount = format_units(sub.amount_per_period, config.token_decimals)
        click.echo(f"- {sub.address} owner={sub.owner} recipient={sub.recipient} amount={amount} [{state}]")


@main.command()
@click.option("--owner", default=None, help="Only sweep this owner's subscriptions")
@click.option("--caller", default=None, help="Caller address recorded in the audit trail")
@click.option("--webhook-url", default=None, help="Optional webhook URL for the sweep report")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def sweep(owner: Optional[str], caller: Optional[str], webhook_url: Optional[str], as_json: bool):
    """Charge every subscription that is due."""
    config = _config()
    engine = _engine(config)
    try:
        report = ChargeSweeper(engine, caller=caller).run(owner=owner)
    except ValueError as e:
        _fail("Sweep failed", e)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(f"🔍 Swept {report.total} subscription(s)")
        for outcome in report.outcomes:
            if outcome.status == "charged":
                amount = format_units(outcome.amount, config.token_decimals)
                click.echo(f"   ✅ {outcome.subscription} charged {amount}")
            elif outcome.status == "skipped":
                click.echo(f"   ⏭️  {outcome.subscription} skipped ({outcome.reason})")
            else:
                click.echo(f"   ❌ {outcome.subscription} failed ({outcome.reason})")
        click.echo(f"   Charged: {report.charged} | Skipped: {report.skipped} | Errors: {report.errors}")

    if webhook_url:
        try:
            post_report(report, webhook_url)
            click.echo(f"Webhook delivered: {webhook_url}")
        except httpx.HTTPError as exc:
            click.echo(f"❌ Failed to deliver webhook: {exc}", err=True)
            sys.exit(1)

    if report.errors:
        sys.exit(1)


@main.command()
@click.option("--subscription", default=None, help="Filter by subscription address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(subscription: Optional[str], limit: int):
    """View the audit trail."""
    config = _config()
    trail = AuditTrail(config.audit_path, config.audit_key_path)
    try:
        events = trail.read_events(
            subscription=normalize_address(subscription) if subscription else None,
            limit=limit,
        )
    except (ValueError, RuntimeError) as e:
        _fail("Audit read failed", e)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_units(event.amount, config.token_decimals)}" if event.amount else ""
        target = f" {event.subscription}" if event.subscription else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{target}{amount}{reason}")


if __name__ == "__main__":
    main()
