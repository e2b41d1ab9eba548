from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def format_decimal(value: Decimal) -> str:
    quantized = value.normalize()
    if quantized.is_zero():
        return "0"
    # Avoid scientific notation for integers.
    if quantized == quantized.to_integral():
        return f"{quantized:.0f}"
    return format(quantized, "f")


def format_decimal_rounded(value: Decimal, places: int | None) -> str:
    """Round half-up to at most ``places`` decimals, then drop trailing zeros."""
    if places is None:
        return format_decimal(value)
    if places < 0:
        raise ValueError("places must be >= 0")
    return format_decimal(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))
