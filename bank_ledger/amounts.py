"""
Monetary Amount Module

Exact decimal handling for balances and transaction amounts.
NEVER uses float arithmetic for monetary values.
"""

from decimal import (
    Decimal, Inexact, InvalidOperation as DecimalInvalidOperation, Rounded, getcontext, localcontext
)
from typing import Union
import re

from .errors import InvalidAmount

# High precision for financial calculations
getcontext().prec = 28

DEFAULT_SCALE = 2
ZERO = Decimal('0')

AmountLike = Union[Decimal, int, float, str]

_AMOUNT_PATTERN = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)$')


def to_decimal(value: AmountLike, scale: int = DEFAULT_SCALE) -> Decimal:
    """
    Convert an incoming amount to an exact Decimal at the given scale

    Args:
        value: Decimal, int, float or numeric string
        scale: Number of decimal places allowed (minor units)

    Returns:
        Decimal quantized to ``scale`` places

    Raises:
        InvalidAmount: If the value is not a finite number or carries more
            decimal places than ``scale``
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        # Go through the shortest repr, never the binary expansion
        amount = _parse_string(repr(value))
    elif isinstance(value, str):
        amount = _parse_string(value)
    else:
        raise InvalidAmount(f"Amount must be numeric, got {type(value).__name__}")

    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")

    quantum = Decimal(1).scaleb(-scale)
    try:
        quantized = amount.quantize(quantum)
    except DecimalInvalidOperation:
        raise InvalidAmount(f"Amount {value!r} exceeds supported precision")
    if quantized != amount:
        raise InvalidAmount(
            f"Amount {value!r} has more than {scale} decimal places",
            details={"scale": scale},
        )
    return quantized


def _parse_string(value: str) -> Decimal:
    clean_value = value.strip().replace('_', '')
    if not _AMOUNT_PATTERN.match(clean_value):
        raise InvalidAmount(f"Cannot convert {value!r} to an amount")
    try:
        return Decimal(clean_value)
    except DecimalInvalidOperation:
        raise InvalidAmount(f"Cannot convert {value!r} to an amount")


def positive_amount(value: AmountLike, scale: int = DEFAULT_SCALE) -> Decimal:
    """Parse an amount that must be strictly greater than zero"""
    amount = to_decimal(value, scale)
    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


def non_negative_amount(value: AmountLike, scale: int = DEFAULT_SCALE) -> Decimal:
    """Parse an amount that must be zero or greater"""
    amount = to_decimal(value, scale)
    if amount < ZERO:
        raise InvalidAmount(f"Amount must not be negative, got {amount}")
    return amount


def exact_add(balance: Decimal, amount: Decimal) -> Decimal:
    """
    Add two amounts without rounding

    Raises:
        InvalidAmount: If the exact result needs more digits than the
            decimal context carries
    """
    with localcontext() as ctx:
        ctx.traps[Inexact] = True
        ctx.traps[Rounded] = True
        try:
            return balance + amount
        except (Inexact, Rounded):
            raise InvalidAmount(
                f"Result of {balance} + {amount} exceeds supported precision",
                details={"precision": ctx.prec}
            )


def exact_subtract(balance: Decimal, amount: Decimal) -> Decimal:
    """Subtract ``amount`` from ``balance`` without rounding"""
    return exact_add(balance, -amount)


def format_amount(amount: Decimal, scale: int = DEFAULT_SCALE) -> str:
    """Format with exactly `scale` places for display and structured logs"""
    return f"{amount:.{scale}f}"
