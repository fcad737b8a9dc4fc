"""Decimal helpers for snapping prices and quantities to exchange increments."""

from decimal import ROUND_FLOOR, Decimal


def to_decimal(value) -> Decimal:
    """Convert floats via their repr so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def decimals_from_step(step: Decimal) -> int:
    """Number of decimal places implied by a step such as 0.001."""
    step = to_decimal(step).normalize()
    if step == 0:
        return 0
    return max(0, -step.as_tuple().exponent)


def floor_to_step(value, step) -> Decimal:
    """Round `value` down to a whole multiple of `step`.

    A non-positive step returns the value unchanged.
    """
    v = to_decimal(value)
    s = to_decimal(step)
    if s <= 0:
        return v
    n = (v / s).to_integral_value(rounding=ROUND_FLOOR)
    out = n * s
    return out.quantize(Decimal(1).scaleb(-decimals_from_step(s)))
