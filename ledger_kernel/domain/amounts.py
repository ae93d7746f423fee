"""
Amounts -- Decimal-only money helpers for a single-currency ledger.

Responsibility:
    Converts boundary input into non-negative Decimals and provides the
    tolerance-aware comparisons every invariant and completeness check uses.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Monetary amounts are Decimal, never float.  Floats arriving from a
      JSON boundary are converted through ``str`` so no binary artefacts leak
      in.
    - Amounts are never rounded here; quantizing to two places happens only
      at the display boundary (``display_amount``).
    - All comparisons absorb ``AMOUNT_TOLERANCE`` (0.01 currency units).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from ledger_kernel.exceptions import InvalidAmountError

ZERO = Decimal("0")
AMOUNT_TOLERANCE = Decimal("0.01")


def to_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Convert a boundary value into a non-negative Decimal amount.

    Raises:
        InvalidAmountError: value is None, a bool, not a number, not finite,
            or negative.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmountError(field, value, "is required")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmountError(field, value, "is not a decimal number") from exc
    if not amount.is_finite():
        raise InvalidAmountError(field, value, "must be finite")
    if amount < ZERO:
        raise InvalidAmountError(field, value, "must not be negative")
    return amount


def total(amounts: Iterable[Decimal]) -> Decimal:
    """Sum amounts starting from Decimal zero."""
    return sum(amounts, ZERO)


def exceeds(amount: Decimal, limit: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    """True when ``amount`` is above ``limit`` by more than the tolerance."""
    return amount - limit > tolerance


def covers(removed: Decimal, gap: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    """True when ``removed`` absorbs ``gap`` within the tolerance."""
    return removed >= gap - tolerance


def is_material(amount: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    """True when ``amount`` is larger than rounding noise."""
    return amount > tolerance


def same_amount(a: Decimal, b: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    return abs(a - b) <= tolerance


def clamp_zero(amount: Decimal) -> Decimal:
    """Clamp sub-zero rounding residue to zero."""
    return amount if amount > ZERO else ZERO


def display_amount(amount: Decimal) -> Decimal:
    """Quantize to two places; for messages and display only."""
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
