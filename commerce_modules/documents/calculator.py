"""
Line item and document totals calculator.

Pure functions with no I/O.  Every amount shown on a proforma invoice,
tax invoice, purchase order, debit note or credit note is produced here.

Arithmetic runs in a local high-precision ``Decimal`` context so that
``quantity x unit_price x tax_rate / 100`` is exact for any realistic
input; rounding to money places happens once, at the boundary.

Usage:
    from commerce_modules.documents.calculator import compute_line_item, compute_totals

    amounts = compute_line_item("2", "100", "18").rounded()
    amounts.tax_amount   # Decimal("36.00")
    amounts.total        # Decimal("236.00")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any, Iterable

from commerce_kernel.db.types import (
    HUNDRED,
    MONEY_DECIMAL_PLACES,
    STORED_DECIMAL_PLACES,
    WORKING_PRECISION,
    ZERO,
    fits_stored_scale,
    round_money,
    to_decimal,
)
from commerce_kernel.exceptions import (
    ExcessPrecisionError,
    InvalidAmountError,
    MissingFieldError,
    NegativeMagnitudeError,
    OutOfRangeDiscountError,
    OutOfRangeTaxRateError,
    QuantityBelowMinimumError,
)
from commerce_modules.documents.models import LineItem, LineItemInput

MINIMUM_QUANTITY = Decimal("0.01")
DEFAULT_UNIT = "units"


@dataclass(frozen=True)
class LineAmounts:
    """Derived amounts for one line item, at full precision until ``rounded()``."""

    net_amount: Decimal
    tax_amount: Decimal
    total: Decimal

    def rounded(self, places: int = MONEY_DECIMAL_PLACES) -> LineAmounts:
        return LineAmounts(
            net_amount=round_money(self.net_amount, places),
            tax_amount=round_money(self.tax_amount, places),
            total=round_money(self.total, places),
        )


@dataclass(frozen=True)
class DocumentTotals:
    """Aggregate amounts for a document.

    Guarantees: ``total_amount == subtotal + tax_amount - discount_amount``
    exactly, because ``total_amount`` is summed from the rounded parts.
    """

    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def _amount(value: Any, field: str) -> Decimal:
    try:
        amount = to_decimal(value, field=field)
    except ValueError as e:
        raise InvalidAmountError(field, value) from e
    if not fits_stored_scale(amount):
        raise ExcessPrecisionError(field, amount, STORED_DECIMAL_PLACES)
    return amount


def validate_line_inputs(
    quantity: Any, unit_price: Any, tax_rate: Any
) -> tuple[Decimal, Decimal, Decimal]:
    """
    Coerce and range-check raw line item fields.

    Raises:
        InvalidAmountError: non-numeric or non-finite input.
        ExcessPrecisionError: more decimal places than storage keeps.
        NegativeMagnitudeError: quantity or unit_price below zero.
        QuantityBelowMinimumError: quantity in [0, 0.01).
        OutOfRangeTaxRateError: tax_rate outside [0, 100].
    """
    qty = _amount(quantity, "quantity")
    price = _amount(unit_price, "unit_price")
    rate = _amount(tax_rate, "tax_rate")

    if qty < ZERO:
        raise NegativeMagnitudeError("quantity", qty)
    if price < ZERO:
        raise NegativeMagnitudeError("unit_price", price)
    if qty < MINIMUM_QUANTITY:
        raise QuantityBelowMinimumError(qty, MINIMUM_QUANTITY)
    if rate < ZERO or rate > HUNDRED:
        raise OutOfRangeTaxRateError(rate, ZERO, HUNDRED)
    return qty, price, rate


def compute_line_item(quantity: Any, unit_price: Any, tax_rate: Any) -> LineAmounts:
    """
    Compute tax and total for one line item.

    Order of operations is fixed: ``net = quantity x unit_price`` then
    ``tax = net x tax_rate / 100``.  Results are unrounded.
    """
    qty, price, rate = validate_line_inputs(quantity, unit_price, tax_rate)
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        net = qty * price
        tax = net * rate / HUNDRED
        total = net + tax
    return LineAmounts(net_amount=net, tax_amount=tax, total=total)


def price_line_item(
    item: LineItemInput,
    places: int = MONEY_DECIMAL_PLACES,
    default_unit: str = DEFAULT_UNIT,
) -> LineItem:
    """Validate a raw line item and return it priced and rounded."""
    if not item.description or not item.description.strip():
        raise MissingFieldError("description")
    qty, price, rate = validate_line_inputs(item.quantity, item.unit_price, item.tax_rate)
    amounts = compute_line_item(qty, price, rate).rounded(places)
    return LineItem(
        description=item.description.strip(),
        quantity=qty,
        unit_price=price,
        tax_rate=rate,
        tax_amount=amounts.tax_amount,
        total=amounts.total,
        unit=item.unit or default_unit,
        hsn_code=item.hsn_code or None,
    )


def validate_discount(discount_percent: Any) -> Decimal:
    pct = _amount(discount_percent, "discount_percent")
    if pct < ZERO or pct > HUNDRED:
        raise OutOfRangeDiscountError(pct, ZERO, HUNDRED)
    return pct


def compute_totals(
    items: Iterable[LineItem],
    discount_percent: Any = ZERO,
    places: int = MONEY_DECIMAL_PLACES,
) -> DocumentTotals:
    """
    Aggregate line items into document totals.

    Subtotal and tax are summed exactly from each item's quantity, price
    and rate, then rounded once, so item order never changes the result.
    The discount is taken on the pre-tax subtotal.  An empty item list
    yields all-zero totals.
    """
    pct = validate_discount(discount_percent)
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        exact_subtotal = ZERO
        exact_tax = ZERO
        for item in items:
            net = item.quantity * item.unit_price
            exact_subtotal += net
            exact_tax += net * item.tax_rate / HUNDRED
        exact_discount = exact_subtotal * pct / HUNDRED

        subtotal = round_money(exact_subtotal, places)
        tax_amount = round_money(exact_tax, places)
        discount_amount = round_money(exact_discount, places)
        total_amount = subtotal + tax_amount - discount_amount
    return DocumentTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=total_amount,
    )
