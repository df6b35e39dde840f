"""Currency rules used by billing.

All amounts are ``Decimal`` dollars. Charges round *up* to the cent so the
platform is never under-billed; the rounding is applied to the cumulative
charge of a session, never per tick, which keeps
``amount_charged == charge_for_seconds(rate, billed_seconds)`` exact.
"""
from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
SECONDS_PER_MINUTE = Decimal(60)

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Coerce user input into a two-decimal amount.

    Floats go through ``str`` first so 2.1 becomes 2.10 and not
    2.100000000000000088817841970012523.
    """

    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def charge_for_seconds(rate_per_minute: Decimal, seconds: int) -> Decimal:
    """Cumulative charge for ``seconds`` of billed time."""

    if seconds <= 0:
        return ZERO
    raw = rate_per_minute * Decimal(seconds) / SECONDS_PER_MINUTE
    return raw.quantize(CENT, rounding=ROUND_CEILING)


def seconds_to_minutes(seconds: int) -> Decimal:
    return Decimal(seconds) / SECONDS_PER_MINUTE


def remaining_minutes(balance: Decimal, rate_per_minute: Decimal) -> Decimal:
    """Minutes the balance still buys; derived, never stored."""

    if rate_per_minute <= 0:
        raise ValueError("rate_per_minute must be positive")
    if balance <= 0:
        return ZERO
    return (balance / rate_per_minute).quantize(CENT, rounding=ROUND_DOWN)
