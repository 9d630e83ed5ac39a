"""Small numeric helpers shared by the view computations."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round half up (2.5 → 3, 1.15 → 1.2), unlike built-in ``round``.

    Goes through the shortest decimal repr so values like 1.15, stored as
    1.149999..., still round on the written digit.
    """
    quantum = Decimal(1).scaleb(-ndigits)
    try:
        return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # non-finite, or too large for the requested precision
        return float(value)


def round_whole(value: float) -> int:
    return int(round_half_up(value))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
