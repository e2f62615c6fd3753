"""CLI flow and security hardening tests."""

import json

import pytest
from click.testing import CliRunner
from eth_account import Account

from autopay.cli import main
from autopay.identity import subscription_address, token_account_address


MINT = "0x" + "ab" * 20


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTOPAY_AUDIT_HMAC_KEY", raising=False)
    return {"AUTOPAY_HOME": str(tmp_path / "home")}


@pytest.fixture
def runner():
    return CliRunner()


def owner_key(account):
    return "0x" + account.key.hex().removeprefix("0x")


def test_subscribe_rejects_raw_key_on_argv(runner, env):
    owner = Account.create()
    recipient = Account.create()

    result = runner.invoke(
        main,
        [
            "subscribe",
            "--owner-key",
            owner_key(owner),
            "--recipient",
            recipient.address,
            "--mint",
            MINT,
            "--amount",
            "1",
        ],
        env=env,
    )

    assert result.exit_code != 0
    assert "Refusing --owner-key from argv" in result.output


def test_full_subscription_flow(runner, env):
    owner = Account.create()
    recipient = Account.create()
    address = subscription_address(owner.address, recipient.address)

    result = runner.invoke(main, ["fund", owner.address, MINT, "--amount", "25"], env=env)
    assert result.exit_code == 0, result.output
    assert token_account_address(owner.address, MINT) in result.output
    assert "25.000000" in result.output

    result = runner.invoke(main, ["fund", recipient.address, MINT], env=env)
    assert result.exit_code == 0, result.output

    result = runner.invoke(
        main,
        [
            "subscribe",
            "--recipient",
            recipient.address,
            "--mint",
            MINT,
            "--amount",
            "10",
            "--interval",
            "30d",
        ],
        input=owner_key(owner) + "\n",
        env=env,
    )
    assert result.exit_code == 0, result.output
    assert f"Subscription initialized: {address}" in result.output
    assert "Allowance: 120.000000" in result.output

    result = runner.invoke(main, ["charge", address], env=env)
    assert result.exit_code == 0, result.output
    assert "Charged 10.000000" in result.output

    result = runner.invoke(main, ["charge", address], env=env)
    assert result.exit_code == 1
    assert "Charge rejected" in result.output
    assert "Retry at" in result.output

    result = runner.invoke(main, ["show", "--owner", owner.address, "--recipient", recipient.address, "--json"], env=env)
    assert result.exit_code == 0, result.output
    record = json.loads(result.output)
    assert record["total_charged"] == 10_000_000
    assert record["is_active"] is True

    result = runner.invoke(main, ["cancel", address], input=owner_key(owner) + "\n", env=env)
    assert result.exit_code == 0, result.output
    assert "Delegation revoked" in result.output

    result = runner.invoke(main, ["list"], env=env)
    assert result.exit_code == 0, result.output
    assert "[cancelled]" in result.output

    result = runner.invoke(main, ["cleanup", address], env=env)
    assert result.exit_code == 0, result.output
    assert "Deposit refunded" in result.output

    result = runner.invoke(main, ["audit", "--subscription", address], env=env)
    assert result.exit_code == 0, result.output
    assert "subscription_charged" in result.output
    assert "charge_rejected" in result.output
    assert "subscription_closed" in result.output


def test_update_and_renew(runner, env):
    owner = Account.create()
    recipient = Account.create()
    address = subscription_address(owner.address, recipient.address)
    runner.invoke(main, ["fund", owner.address, MINT, "--amount", "100"], env=env)
    runner.invoke(main, ["fund", recipient.address, MINT], env=env)
    runner.invoke(
        main,
        ["subscribe", "--recipient", recipient.address, "--mint", MINT, "--amount", "1"],
        input=owner_key(owner) + "\n",
        env=env,
    )

    result = runner.invoke(
        main,
        ["update", address, "--amount", "2", "--interval", "7d"],
        input=owner_key(owner) + "\n",
        env=env,
    )
    assert result.exit_code == 0, result.output
    assert "2.000000 every 604800s" in result.output

    result = runner.invoke(main, ["renew", address], input=owner_key(owner) + "\n", env=env)
    assert result.exit_code == 0, result.output
    assert "Allowance renewed: 24.000000" in result.output


def test_non_owner_cannot_cancel(runner, env):
    owner = Account.create()
    intruder = Account.create()
    recipient = Account.create()
    address = subscription_address(owner.address, recipient.address)
    runner.invoke(main, ["fund", owner.address, MINT, "--amount", "100"], env=env)
    runner.invoke(main, ["fund", recipient.address, MINT], env=env)
    runner.invoke(
        main,
        ["subscribe", "--recipient", recipient.address, "--mint", MINT, "--amount", "1"],
        input=owner_key(owner) + "\n",
        env=env,
    )

    result = runner.invoke(main, ["cancel", address], input=owner_key(intruder) + "\n", env=env)

    assert result.exit_code == 1
    assert "not the owner" in result.output


def test_sweep_reports_json(runner, env):
    owner = Account.create()
    recipient = Account.create()
    runner.invoke(main, ["fund", owner.address, MINT, "--amount", "100"], env=env)
    runner.invoke(main, ["fund", recipient.address, MINT], env=env)
    runner.invoke(
        main,
        ["subscribe", "--recipient", recipient.address, "--mint", MINT, "--amount", "1"],
        input=owner_key(owner) + "\n",
        env=env,
    )

    result = runner.invoke(main, ["sweep", "--json"], env=env)

    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["charged"] == 1
    assert report["errors"] == 0


def test_show_unknown_subscription(runner, env):
    result = runner.invoke(main, ["show", "0x" + "11" * 20], env=env)
    assert result.exit_code == 1
    assert "Subscription not found" in result.output
