"""
Fixed-point token amount formatting.

Token balances come back from the chain as integers counted in the smallest
unit. They are scaled by ``10 ** decimals`` with exact decimal arithmetic and
rounded half-up to a fixed number of fractional digits for display.
"""

from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import NamedTuple


DEFAULT_PRECISION = 2


class DisplayAmount(NamedTuple):
    text: str
    value: float


def format_token_amount(raw: int, decimals: int, precision: int = DEFAULT_PRECISION) -> DisplayAmount:
    """Scale ``raw`` by ``10 ** decimals`` and render it with ``precision`` digits.

    The text is authoritative and never uses scientific notation. ``value`` is
    ``float(text)`` and only meant for threshold comparison.
    """
    if raw < 0:
        raise ValueError(f"raw amount must be non-negative, got {raw}")
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    if precision < 0:
        raise ValueError(f"precision must be non-negative, got {precision}")

    with localcontext() as ctx:
        # enough significant digits that neither scaling nor quantize rounds early
        ctx.prec = len(str(raw)) + decimals + precision + 2
        scaled = Decimal(raw).scaleb(-decimals)
        quantum = Decimal(1).scaleb(-precision)
        rounded = scaled.quantize(quantum, rounding=ROUND_HALF_UP)

    text = format(rounded, 'f')
    return DisplayAmount(text=text, value=float(text))
