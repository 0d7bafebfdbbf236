"""
Module: commerce_kernel.db.types
Responsibility: Annotated type aliases and utility functions for financial-grade
    column types.  Centralizes precision, rounding and decimal coercion so that
    every model, calculator and store uses identical definitions.
Architecture position: Kernel > DB.  May be imported by domain code and by
    commerce_modules.  MUST NOT import from either.

Invariants enforced:
    - round_money() is the ONLY sanctioned rounding function for monetary
      values stored or displayed by the system.
    - No floats: to_decimal() converts floats through their shortest str()
      form so 0.1 becomes Decimal("0.1"), never 0.1000000000000000055...
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Annotated, Any

from sqlalchemy import Numeric, String

# Scale of every stored decimal column; inputs finer than this cannot
# round-trip through storage
STORED_DECIMAL_PLACES = 9

# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, STORED_DECIMAL_PLACES)]

# Percentages (tax rates, discounts, fee rates)
Percent = Annotated[Decimal, Numeric(9, 4)]

# Short identifier strings
ShortCode = Annotated[str, String(50)]

# Long text for notes and descriptions
LongText = Annotated[str, String(4000)]


# Storage boundary precision for money (paise / cents)
MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

# Working precision for internal arithmetic; far above any realistic
# quantity * price * rate product so intermediate values stay exact.
WORKING_PRECISION = 60

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """
    Coerce a raw numeric input to a finite Decimal.

    Accepts Decimal, int, str, and float (via str()).  Rejects bool,
    None, NaN and infinities.

    Raises:
        ValueError: If the value cannot be represented as a finite Decimal.
            The message starts with ``field``.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field}: not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"{field}: not a number: {value!r}") from e
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise ValueError(f"{field}: unsupported type {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"{field}: not finite: {value!r}")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to specified decimal places.

    This is the ONLY sanctioned rounding function for money.  Callers
    compute at full precision and round once, at the storage or display
    boundary.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.

    Quantizing runs at WORKING_PRECISION, so any value the calculators can
    produce rounds without InvalidOperation.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "1"
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        return value.quantize(Decimal(quantize_str), rounding=rounding)


def fits_stored_scale(value: Decimal, decimal_places: int = STORED_DECIMAL_PLACES) -> bool:
    """True when ``value`` has no significant digits beyond ``decimal_places``."""
    _, digits, exponent = value.as_tuple()
    if not any(digits):
        return True
    significant = "".join(map(str, digits)).rstrip("0")
    return exponent + (len(digits) - len(significant)) >= -decimal_places
