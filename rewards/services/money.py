from __future__ import annotations

import re
from decimal import Decimal

_DIGITS_RE = re.compile(r"^\d*$")


def parse_money_to_cents(value: str | int | Decimal | None) -> int:
    """Convert a decimal money string into integer minor units.

    The fractional part is right-padded and truncated to two digits, never rounded:
    "12.345" -> 1234, "12.3" -> 1230, "-0.5" -> -50. Blank input is zero.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid money amount: {value!r}")
    if isinstance(value, int):
        return value * 100
    if isinstance(value, Decimal):
        value = format(value, "f")

    normalized = str(value).strip()
    if not normalized:
        return 0

    negative = normalized.startswith("-")
    unsigned = normalized[1:] if negative else normalized
    whole_part, _, frac_part = unsigned.partition(".")
    if not _DIGITS_RE.match(whole_part) or not _DIGITS_RE.match(frac_part):
        raise ValueError(f"Invalid money amount: {value!r}")
    if not whole_part and not frac_part:
        raise ValueError(f"Invalid money amount: {value!r}")

    whole = int(whole_part or "0")
    frac = int((frac_part + "00")[:2])
    cents = whole * 100 + frac
    return -cents if negative else cents


def safe_parse_money_to_cents(value: object) -> int:
    if value is None or isinstance(value, (dict, list)):
        return 0
    try:
        return parse_money_to_cents(value)  # type: ignore[arg-type]
    except ValueError:
        return 0


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{sign}{whole}.{frac:02d}"


def compute_earned_points(total_cents: int, points_per_dollar: int) -> int:
    if total_cents <= 0 or points_per_dollar <= 0:
        return 0
    return (total_cents * points_per_dollar) // 100


def scale_by_ratio(amount: int, numerator: int, denominator: int) -> int:
    """floor(amount * numerator / denominator) in integer arithmetic, 0 for a non-positive denominator."""
    if amount <= 0 or numerator <= 0 or denominator <= 0:
        return 0
    return (amount * numerator) // denominator
