"""
Precision arithmetic for every cost path.

Responsibility:
    Fixed-decimal primitives. Each operation rounds its result to four
    decimal places (ROUND_HALF_UP) before returning, so repeated
    multiply/divide/add across the PO -> batch -> task -> order stages
    cannot accumulate binary floating-point drift.

Architecture position:
    Kernel > Domain. Leaf module, no imports from the rest of the project.

Invariants enforced:
    - Every value returned is a Decimal quantized to ``PRECISION_QUANT``.
    - ``div(a, 0)`` returns 0. Missing-rate or zero-quantity denominators
      degrade to a zero cost rather than aborting a cascade.
    - Inputs that are None, NaN or infinite are treated as 0.

Non-goals:
    Currency-aware rounding (minor units per ISO 4217). All cascade figures
    use the same four-place scale regardless of currency.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

PRECISION_PLACES = 4
PRECISION_QUANT = Decimal("0.0001")
ZERO = Decimal("0").quantize(PRECISION_QUANT)

Number = Union[Decimal, int, float, str, None]


def to_decimal(value: Number) -> Decimal:
    """Coerce a stored or user-supplied number into an exact Decimal.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")`` rather
    than its binary expansion. Unparseable or non-finite input yields 0.
    """
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        return Decimal(int(value))
    elif isinstance(value, int):
        return Decimal(value)
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return Decimal(0)
    if not result.is_finite():
        return Decimal(0)
    return result


def round4(value: Number) -> Decimal:
    """Round to four decimal places, half away from zero."""
    return to_decimal(value).quantize(PRECISION_QUANT, rounding=ROUND_HALF_UP)


def add(a: Number, b: Number) -> Decimal:
    return round4(to_decimal(a) + to_decimal(b))


def sub(a: Number, b: Number) -> Decimal:
    return round4(to_decimal(a) - to_decimal(b))


def mul(a: Number, b: Number) -> Decimal:
    return round4(to_decimal(a) * to_decimal(b))


def div(a: Number, b: Number) -> Decimal:
    """Divide, returning 0 when the divisor is 0."""
    divisor = to_decimal(b)
    if divisor == 0:
        return ZERO
    return round4(to_decimal(a) / divisor)


def total(values: Iterable[Number]) -> Decimal:
    """Sum with an intermediate round after every addition."""
    acc = ZERO
    for value in values:
        acc = add(acc, value)
    return acc
