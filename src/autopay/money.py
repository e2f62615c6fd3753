"""Base-unit conversion helpers for fixed-decimal fungible tokens."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR


DEFAULT_DECIMALS = 6
# Largest amount the ledger can store (signed 64-bit SQLite integers).
MAX_AMOUNT = 2**63 - 1


def _scale(decimals: int) -> Decimal:
    return Decimal(10) ** decimals


def parse_units(value: Decimal | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a display amount ("1.5") to integer base units, rounding down."""
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid token amount: {value}") from e
    if not dec.is_finite() or dec < 0:
        raise ValueError(f"Invalid token amount: {value}")
    units = (dec * _scale(decimals)).to_integral_value(rounding=ROUND_FLOOR)
    if units > MAX_AMOUNT:
        raise ValueError(f"Token amount out of range: {value}")
    return int(units)


def units_to_decimal(value: int, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal display amount."""
    quant = Decimal(1).scaleb(-decimals)
    return (Decimal(value) / _scale(decimals)).quantize(quant)


def format_units(value: int, decimals: int = DEFAULT_DECIMALS, symbol: str = "") -> str:
    """Format integer base units for humans, e.g. ``1.500000 USDC``."""
    if value >= MAX_AMOUNT:
        text = "unlimited"
    else:
        text = f"{units_to_decimal(value, decimals):f}"
    return f"{text} {symbol}".rstrip()
