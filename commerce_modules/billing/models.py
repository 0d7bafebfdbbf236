"""
Enterprise Billing Domain Models (``commerce_modules.billing.models``).

Responsibility
--------------
Frozen value objects for quarterly governance billing: the calendar
quarter key, the per-org-per-quarter ``BillingQuarter`` aggregate, the
org billing profile, and read models for fees, onboarding status and
billing history rollups.

Architecture position
---------------------
**Modules layer** -- pure data definitions.  No I/O, no database.

Invariants enforced
-------------------
* ``BillingQuarter.total_fee == domestic_fee + import_export_fee``.
* Onboarding quarters carry zero fees.
* ``OrgBillingProfile.activated_at`` is timezone-aware.
* Quarter keys order chronologically.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from commerce_kernel.db.types import ZERO


class InvoiceStatus(Enum):
    """Quarter invoice states.  Must align with ``workflows.BILLING_INVOICE_WORKFLOW.states``."""
    PENDING = "pending"
    GENERATED = "generated"
    PAID = "paid"
    WAIVED = "waived"


FROZEN_INVOICE_STATUSES = frozenset({InvoiceStatus.GENERATED, InvoiceStatus.PAID})


class TradeKind(Enum):
    """Which fee rate a settled volume is billed at."""
    DOMESTIC = "domestic"
    IMPORT_EXPORT = "import_export"


_QUARTER_LABEL = re.compile(r"^(\d{4})-Q([1-4])$")


@dataclass(frozen=True, order=True)
class QuarterKey:
    """A fixed calendar quarter: Q1 Jan-Mar, Q2 Apr-Jun, Q3 Jul-Sep, Q4 Oct-Dec."""
    year: int
    quarter: int

    def __post_init__(self):
        if self.quarter not in (1, 2, 3, 4):
            raise ValueError(f"quarter must be 1-4, got {self.quarter}")
        if not 1 <= self.year <= 9998:
            raise ValueError(f"year out of range: {self.year}")

    @classmethod
    def containing(cls, day: date) -> QuarterKey:
        return cls(day.year, (day.month - 1) // 3 + 1)

    @classmethod
    def parse(cls, label: str) -> QuarterKey:
        """Parse ``YYYY-Qn``."""
        match = _QUARTER_LABEL.match(label.strip())
        if match is None:
            raise ValueError(f"Invalid quarter label: {label!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @property
    def label(self) -> str:
        return f"{self.year}-Q{self.quarter}"

    @property
    def start(self) -> date:
        return date(self.year, 3 * (self.quarter - 1) + 1, 1)

    @property
    def end(self) -> date:
        """Last day of the quarter (inclusive)."""
        return self.next().start - timedelta(days=1)

    def next(self) -> QuarterKey:
        if self.quarter == 4:
            return QuarterKey(self.year + 1, 1)
        return QuarterKey(self.year, self.quarter + 1)

    def previous(self) -> QuarterKey:
        if self.quarter == 1:
            return QuarterKey(self.year - 1, 4)
        return QuarterKey(self.year, self.quarter - 1)

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class OrgBillingProfile:
    """An organization's billing activation.

    Contract: ``activated_at`` is timezone-aware; ``timezone`` is an IANA
    name used to place calendar quarter boundaries.
    """
    org_id: str
    activated_at: datetime
    timezone: str = "UTC"
    billing_active: bool = True
    name: str | None = None

    def __post_init__(self):
        if self.activated_at.tzinfo is None:
            raise ValueError("activated_at must be timezone-aware")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {self.timezone!r}") from e


@dataclass(frozen=True)
class BillingQuarter:
    """Transacted volume and fees for one org in one calendar quarter.

    Contract: frozen; exactly one per (org_id, quarter_key).
    Guarantees: ``total_fee == domestic_fee + import_export_fee``.
    """
    id: UUID
    org_id: str
    quarter_key: QuarterKey
    domestic_volume: Decimal = ZERO
    import_export_volume: Decimal = ZERO
    domestic_fee: Decimal = ZERO
    import_export_fee: Decimal = ZERO
    total_fee: Decimal = ZERO
    is_onboarding_quarter: bool = False
    invoice_status: InvoiceStatus = InvoiceStatus.PENDING
    invoice_generated_at: datetime | None = None
    paid_at: datetime | None = None

    def __post_init__(self):
        if self.total_fee != self.domestic_fee + self.import_export_fee:
            raise ValueError(
                f"total_fee ({self.total_fee}) must equal domestic_fee + "
                f"import_export_fee ({self.domestic_fee + self.import_export_fee})"
            )
        if self.is_onboarding_quarter and self.total_fee != ZERO:
            raise ValueError("onboarding quarters carry no fee")

    @classmethod
    def blank(cls, org_id: str, quarter_key: QuarterKey) -> BillingQuarter:
        """A new quarter with no volume, before pricing."""
        return cls(id=uuid4(), org_id=org_id, quarter_key=quarter_key)

    @property
    def quarter_start(self) -> date:
        return self.quarter_key.start

    @property
    def quarter_end(self) -> date:
        return self.quarter_key.end

    @property
    def total_volume(self) -> Decimal:
        return self.domestic_volume + self.import_export_volume


@dataclass(frozen=True)
class QuarterFees:
    """Result of pricing a quarter."""
    quarter_key: QuarterKey
    is_onboarding_quarter: bool
    domestic_fee: Decimal
    import_export_fee: Decimal
    total_fee: Decimal


@dataclass(frozen=True)
class OnboardingStatus:
    is_onboarding: bool
    onboarding_end: datetime
    days_remaining: int


@dataclass(frozen=True)
class BillingSummary:
    """Rollup of an org's billing history."""
    org_id: str
    quarter_count: int
    total_domestic_volume: Decimal
    total_import_export_volume: Decimal
    total_fees: Decimal
    fees_paid: Decimal
    fees_outstanding: Decimal
    fees_waived: Decimal
    onboarding_quarters: int

    @property
    def total_transacted_value(self) -> Decimal:
        return self.total_domestic_volume + self.total_import_export_volume
