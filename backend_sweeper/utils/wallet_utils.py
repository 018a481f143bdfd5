"""Wallet address and token amount utilities."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, localcontext

from eth_utils import is_address, is_checksum_address, to_checksum_address

# 78 digits covers any uint256
_UNITS_PRECISION = 80


def is_valid_wallet(w: str) -> bool:
    """
    Return True if w is a valid EVM address.

    All-lowercase / all-uppercase hex is accepted; mixed case must carry a
    valid EIP-55 checksum.
    """
    w = (w or "").strip()
    if not is_address(w):
        return False
    body = w[2:]
    if body.lower() == body or body.upper() == body:
        return True
    return is_checksum_address(w)


def normalize_address(w: str) -> str:
    """Return the checksum form of w. Raises ValueError when w is not a valid address."""
    w = (w or "").strip()
    if not w:
        raise ValueError("wallet must be non-empty")
    if not is_valid_wallet(w):
        raise ValueError(f"Invalid EVM wallet address: {w}")
    return to_checksum_address(w)


def units_to_decimal(units: int, decimals: int) -> Decimal:
    """Convert integer base units (wei) to a token/native amount without rounding."""
    with localcontext() as ctx:
        ctx.prec = _UNITS_PRECISION
        return Decimal(int(units)) / (Decimal(10) ** decimals)


def decimal_to_units(amount: Decimal | str | int, decimals: int) -> int:
    """Convert an amount to integer base units, rounding toward zero."""
    with localcontext() as ctx:
        ctx.prec = _UNITS_PRECISION
        scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def to_decimal(value: Decimal | str | int | float | None, default: str = "0") -> Decimal:
    """Parse a stored amount; floats go through str() to avoid binary artifacts."""
    if value is None or value == "":
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
