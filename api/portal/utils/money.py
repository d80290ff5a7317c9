"""Money helpers. Amounts are integer cents everywhere past the provider boundary."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


def to_cents(value) -> int:
    """Convert a provider dollar amount (Decimal, int or numeric str) to integer cents.

    Floats are rejected: provider JSON is parsed with ``parse_float=Decimal`` so a
    float reaching here means something upstream lost precision.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"refusing to convert {type(value).__name__} to cents")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"not a monetary amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_cents(cents: int, *, currency_symbol: str = "$", show_sign: bool = False) -> str:
    """``123456`` -> ``$1,234.56``; ``-2500`` -> ``-$25.00``."""
    sign = "-" if cents < 0 else ("+" if show_sign and cents > 0 else "")
    dollars, rem = divmod(abs(cents), 100)
    return f"{sign}{currency_symbol}{dollars:,}.{rem:02d}"


__all__ = ["format_cents", "to_cents"]
