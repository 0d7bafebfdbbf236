"""
Enterprise billing: quarterly governance fees on transacted volume.
"""

from commerce_modules.billing.calendar import quarter_key_for, quarter_span
from commerce_modules.billing.engine import BillingQuarterEngine, validate_volume
from commerce_modules.billing.models import (
    BillingQuarter,
    BillingSummary,
    InvoiceStatus,
    OnboardingStatus,
    OrgBillingProfile,
    QuarterFees,
    QuarterKey,
    TradeKind,
)
from commerce_modules.billing.service import BillingService
from commerce_modules.billing.store import (
    BillingStore,
    InMemoryBillingStore,
    SqlBillingStore,
)
from commerce_modules.billing.workflows import BILLING_INVOICE_WORKFLOW

__all__ = [
    "BILLING_INVOICE_WORKFLOW",
    "BillingQuarter",
    "BillingQuarterEngine",
    "BillingService",
    "BillingStore",
    "BillingSummary",
    "InMemoryBillingStore",
    "InvoiceStatus",
    "OnboardingStatus",
    "OrgBillingProfile",
    "QuarterFees",
    "QuarterKey",
    "SqlBillingStore",
    "TradeKind",
    "quarter_key_for",
    "quarter_span",
    "validate_volume",
]
