"""
Billing Quarter Engine (``commerce_modules.billing.engine``).

Responsibility
--------------
Pure quarterly governance fee computation: places instants in fixed
calendar quarters in the org's timezone, decides which quarters fall in
the onboarding grace period, and prices a quarter's transacted volume.

Architecture position
---------------------
**Modules layer** -- pure computation.  No I/O, no clock: every instant is
an explicit argument, so the same inputs always produce the same result.

Invariants enforced
-------------------
* Quarters are Jan-Mar, Apr-Jun, Jul-Sep, Oct-Dec in the org's timezone;
  never rolling 90-day windows.
* The activation quarter, and any quarter before it, is onboarding.
* A later quarter is onboarding only when its whole local span
  ``[start 00:00, end+1 00:00)`` lies inside the onboarding window
  ``[activated_at, activated_at + onboarding_duration_days)``.
* Onboarding quarters price at zero.  Otherwise each fee component is
  ``volume x percent / 100`` rounded to money places, and
  ``total_fee`` is the sum of the rounded components.

Failure modes
-------------
* ``InvalidVolumeError`` for a negative or non-numeric volume.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, localcontext
from typing import Any

from commerce_config.schema import BillingSettings
from commerce_kernel.db.types import HUNDRED, WORKING_PRECISION, ZERO, round_money, to_decimal
from commerce_kernel.exceptions import InvalidVolumeError
from commerce_kernel.logging_config import get_logger
from commerce_modules.billing.calendar import quarter_key_for, quarter_span
from commerce_modules.billing.models import (
    BillingQuarter,
    InvoiceStatus,
    OnboardingStatus,
    OrgBillingProfile,
    QuarterFees,
    QuarterKey,
)

logger = get_logger("modules.billing.engine")

_ONE_DAY = timedelta(days=1)


def validate_volume(value: Any, field: str) -> Decimal:
    """Coerce a volume to Decimal.  Rejects negatives, NaN and infinities."""
    try:
        amount = to_decimal(value, field=field)
    except ValueError as e:
        raise InvalidVolumeError(field, value) from e
    if not amount.is_finite() or amount < ZERO:
        raise InvalidVolumeError(field, value)
    return amount


class BillingQuarterEngine:
    """
    Classifies and prices billing quarters.

    Contract:
        Stateless apart from ``BillingSettings``.  Methods never read the
        wall clock; callers pass ``at`` explicitly.
    """

    def __init__(self, settings: BillingSettings | None = None):
        self._settings = settings or BillingSettings()

    @property
    def settings(self) -> BillingSettings:
        return self._settings

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def onboarding_window(self, profile: OrgBillingProfile) -> tuple[datetime, datetime]:
        start = profile.activated_at
        return start, start + timedelta(days=self._settings.onboarding_duration_days)

    def activation_quarter(self, profile: OrgBillingProfile) -> QuarterKey:
        return quarter_key_for(profile.activated_at, profile.timezone)

    def classify(self, profile: OrgBillingProfile, at: datetime) -> QuarterKey:
        """The quarter that volume settled at ``at`` is attributed to."""
        return quarter_key_for(at, profile.timezone)

    def is_onboarding_quarter(self, profile: OrgBillingProfile, key: QuarterKey) -> bool:
        if key <= self.activation_quarter(profile):
            return True
        window_start, window_end = self.onboarding_window(profile)
        span_start, span_end = quarter_span(key, profile.timezone)
        return span_start >= window_start and span_end <= window_end

    # -------------------------------------------------------------------------
    # Pricing
    # -------------------------------------------------------------------------

    def compute_fees(
        self,
        key: QuarterKey,
        domestic_volume: Any,
        import_export_volume: Any,
        is_onboarding: bool,
    ) -> QuarterFees:
        domestic = validate_volume(domestic_volume, "domestic_volume")
        import_export = validate_volume(import_export_volume, "import_export_volume")

        if is_onboarding:
            return QuarterFees(key, True, ZERO, ZERO, ZERO)

        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            domestic_fee = round_money(
                domestic * self._settings.domestic_fee_percent / HUNDRED
            )
            import_export_fee = round_money(
                import_export * self._settings.import_export_fee_percent / HUNDRED
            )
        return QuarterFees(
            quarter_key=key,
            is_onboarding_quarter=False,
            domestic_fee=domestic_fee,
            import_export_fee=import_export_fee,
            total_fee=domestic_fee + import_export_fee,
        )

    def price_quarter(
        self, profile: OrgBillingProfile, quarter: BillingQuarter
    ) -> BillingQuarter:
        """
        Reprice ``quarter`` from its volumes.

        A pending onboarding quarter becomes ``waived``; every other
        invoice status is left alone.
        """
        onboarding = self.is_onboarding_quarter(profile, quarter.quarter_key)
        fees = self.compute_fees(
            quarter.quarter_key,
            quarter.domestic_volume,
            quarter.import_export_volume,
            onboarding,
        )
        status = quarter.invoice_status
        if onboarding and status == InvoiceStatus.PENDING:
            status = InvoiceStatus.WAIVED
        return replace(
            quarter,
            domestic_fee=fees.domestic_fee,
            import_export_fee=fees.import_export_fee,
            total_fee=fees.total_fee,
            is_onboarding_quarter=onboarding,
            invoice_status=status,
        )

    def onboarding_status(
        self, profile: OrgBillingProfile, at: datetime
    ) -> OnboardingStatus:
        """Whether ``at`` is inside the onboarding window, and whole days left (ceil)."""
        if at.tzinfo is None:
            raise ValueError("at must be timezone-aware")
        _, window_end = self.onboarding_window(profile)
        if at >= window_end:
            return OnboardingStatus(False, window_end, 0)
        remaining = window_end - at
        days = remaining // _ONE_DAY
        if remaining % _ONE_DAY:
            days += 1
        return OnboardingStatus(True, window_end, days)
