"""Token amount conversion helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR


USDC_DECIMALS = 6
CREDIT_DECIMALS = 18
CREDITS_PER_USDC = 10


def format_units(value: int, decimals: int = USDC_DECIMALS) -> str:
    """Format integer base units as a fixed-precision decimal string."""
    value = int(value)
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10**decimals)
    if decimals == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{frac:0{decimals}d}"


def parse_units(value: Decimal | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a human-readable amount to base units, rounding down."""
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value}") from e
    if not dec.is_finite():
        raise ValueError(f"Invalid amount: {value}")
    return int(dec.scaleb(decimals).to_integral_value(rounding=ROUND_FLOOR))


def normalize_amount(value: Decimal | int | str, decimals: int = USDC_DECIMALS) -> str:
    """Validate a positive human-readable amount and re-format it at token precision."""
    base_units = parse_units(value, decimals)
    if base_units <= 0:
        raise ValueError("Amount must be greater than 0")
    return format_units(base_units, decimals)


def split_share(total: int, member_count: int) -> int:
    """Equal share for payer + members; the floor remainder stays with the payer."""
    if total < 0:
        raise ValueError("Total must be >= 0")
    if member_count < 0:
        raise ValueError("Member count must be >= 0")
    return total // (member_count + 1)


def credits_for_usdc(usdc_amount: int) -> int:
    """Credits minted for a USDC purchase (10 credits per USDC, 18-decimal credits)."""
    return (int(usdc_amount) * CREDITS_PER_USDC * 10**CREDIT_DECIMALS) // 10**USDC_DECIMALS
