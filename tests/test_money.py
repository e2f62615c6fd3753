"""Tests for base-unit conversion helpers."""

from decimal import Decimal

import pytest

from autopay.money import MAX_AMOUNT, format_units, parse_units, units_to_decimal


def test_parse_units_rounds_down():
    assert parse_units("1.5") == 1_500_000
    assert parse_units("0.0000019") == 1
    assert parse_units(2, decimals=9) == 2_000_000_000


@pytest.mark.parametrize("value", ["-1", "abc", "NaN", "Infinity"])
def test_parse_units_rejects_invalid(value):
    with pytest.raises(ValueError):
        parse_units(value)


def test_parse_units_rejects_out_of_range():
    with pytest.raises(ValueError, match="out of range"):
        parse_units(str(MAX_AMOUNT), decimals=6)


def test_format_units():
    assert units_to_decimal(1_500_000) == Decimal("1.500000")
    assert format_units(1_500_000, symbol="USDC") == "1.500000 USDC"
    assert format_units(MAX_AMOUNT) == "unlimited"
