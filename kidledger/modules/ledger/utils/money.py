from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def ToAmount(value: Decimal | int | str | None) -> Decimal:
    """Quantize ``value`` to two fractional digits. Floats are rejected."""
    if value is None:
        return ZERO
    if isinstance(value, float):
        raise TypeError("Monetary amounts must not be floats")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def FormatAmount(value: Decimal | None) -> str:
    return f"{ToAmount(value):.2f}"
