"""Tests for the charge sweeper."""

import httpx
import pytest
from eth_account import Account

from autopay.actions import cancel_request, initialize_request
from autopay.clock import ManualClock
from autopay.config import EngineConfig
from autopay.engine import SubscriptionEngine
from autopay.ledger import Ledger
from autopay.sweeper import ChargeSweeper, SweepReport, post_report


MINT = "0x" + "ab" * 20
START = 1_700_000_000
DAY = 86_400


@pytest.fixture
def clock():
    return ManualClock(start=START)


@pytest.fixture
def engine(tmp_path, clock):
    ledger = Ledger(tmp_path / "ledger.sqlite3", clock=clock)
    return SubscriptionEngine(ledger, config=EngineConfig(home=tmp_path / "home"))


def subscribe(engine, owner, *, balance=100, amount=10, interval=DAY, expires_at=None, prepaid=False):
    recipient = Account.create()
    owner_account = engine.ledger.create_token_account(owner.address, MINT, balance=balance)
    recipient_account = engine.ledger.create_token_account(recipient.address, MINT)
    return engine.initialize(
        initialize_request(
            owner.key,
            recipient=recipient.address,
            owner_funds_account=owner_account.address,
            recipient_funds_account=recipient_account.address,
            fund_type=MINT,
            amount_per_period=amount,
            interval_seconds=interval,
            expires_at=expires_at,
            prepaid=prepaid,
            nonce=engine.ledger.nonce_of(owner.address),
        )
    )


def test_sweep_charges_due_and_skips_the_rest(engine, clock):
    due = subscribe(engine, Account.create())
    not_due = subscribe(engine, Account.create(), prepaid=True)
    expiring = subscribe(engine, Account.create(), expires_at=START + 10)
    cancelled_owner = Account.create()
    cancelled = subscribe(engine, cancelled_owner)
    engine.cancel(cancel_request(cancelled_owner.key, cancelled.address, nonce=1))

    clock.advance(10)
    report = ChargeSweeper(engine).run()

    by_address = {o.subscription: o for o in report.outcomes}
    assert by_address[due.address].status == "charged"
    assert by_address[not_due.address].status == "skipped"
    assert by_address[not_due.address].reason == f"not due for {DAY - 10}s"
    assert by_address[expiring.address].reason == "expired"
    assert by_address[cancelled.address].reason == "inactive"
    assert (report.total, report.charged, report.skipped, report.errors) == (4, 1, 3, 0)
    assert report.amount_charged == 10
    assert engine.get(due.address).total_charged == 10


def test_sweep_collects_errors_and_keeps_going(engine):
    broke = subscribe(engine, Account.create(), balance=5)
    healthy = subscribe(engine, Account.create())

    report = ChargeSweeper(engine).run()

    by_address = {o.subscription: o for o in report.outcomes}
    assert by_address[broke.address].status == "error"
    assert by_address[broke.address].code == "transfer_failed"
    assert by_address[healthy.address].status == "charged"
    assert report.errors == 1
    assert engine.get(broke.address).total_charged == 0


def test_second_sweep_is_a_no_op(engine):
    subscribe(engine, Account.create())

    first = ChargeSweeper(engine).run()
    second = ChargeSweeper(engine).run()

    assert first.charged == 1
    assert second.charged == 0
    assert second.skipped == 1


def test_sweep_can_be_limited_to_one_owner(engine):
    mine = Account.create()
    subscribe(engine, mine)
    subscribe(engine, Account.create())

    report = ChargeSweeper(engine).run(owner=mine.address)
    assert report.total == 1


def test_post_report(monkeypatch):
    captured = {}

    def fake_post(url, json, timeout):
        captured.update(url=url, body=json, timeout=timeout)
        return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    report = SweepReport(swept_at=START, total=2, charged=1, errors=1, amount_charged=10)

    post_report(report, "https://hooks.example.test/sweep")

    assert captured["url"] == "https://hooks.example.test/sweep"
    assert captured["body"]["event"] == "subscription_sweep"
    assert captured["body"]["charged"] == 1
    assert captured["timeout"] == 5.0


def test_post_report_raises_on_http_error(monkeypatch):
    def fake_post(url, json, timeout):
        return httpx.Response(500, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)

    with pytest.raises(httpx.HTTPStatusError):
        post_report(SweepReport(swept_at=START), "https://hooks.example.test/sweep")
