"""
Billing ORM Models (``commerce_modules.billing.orm``).

Responsibility
--------------
SQLAlchemy persistence for org billing profiles and billing quarters.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``commerce_kernel.db.base``
and sibling ``models.py``.

Invariants enforced
-------------------
* ``uq_billing_quarters_org_quarter``: one row per (org_id, quarter_key).
* ``uq_org_billing_profiles_org``: one profile per org.
* Volumes are only ever changed with ``UPDATE ... SET v = v + :delta``
  (see ``SqlBillingStore.record_volume``); fees are rewritten from the
  resulting volumes in the same transaction.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from commerce_kernel.db.base import TrackedBase
from commerce_kernel.db.types import round_money


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored timestamps are UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrgBillingProfileModel(TrackedBase):
    """ORM model for ``OrgBillingProfile``."""

    __tablename__ = "org_billing_profiles"

    __table_args__ = (
        UniqueConstraint("org_id", name="uq_org_billing_profiles_org"),
    )

    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    activated_at: Mapped[datetime] = mapped_column(nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self):
        from commerce_modules.billing.models import OrgBillingProfile

        return OrgBillingProfile(
            org_id=self.org_id,
            activated_at=_aware(self.activated_at),
            timezone=self.timezone,
            billing_active=self.billing_active,
            name=self.name,
        )

    def apply(self, dto) -> None:
        self.name = dto.name
        # Stored in UTC so SQLite round-trips to the same instant
        self.activated_at = dto.activated_at.astimezone(timezone.utc)
        self.timezone = dto.timezone
        self.billing_active = dto.billing_active

    @classmethod
    def from_dto(cls, dto, created_by_id: str) -> "OrgBillingProfileModel":
        model = cls(org_id=dto.org_id, created_by_id=created_by_id)
        model.apply(dto)
        return model

    def __repr__(self) -> str:
        return f"<OrgBillingProfileModel {self.org_id} active={self.billing_active}>"


class BillingQuarterModel(TrackedBase):
    """
    ORM model for ``BillingQuarter``.

    ``quarter_key`` holds the ``YYYY-Qn`` label; ``quarter_start`` and
    ``quarter_end`` (inclusive) are stored alongside for range queries.
    """

    __tablename__ = "billing_quarters"

    __table_args__ = (
        UniqueConstraint("org_id", "quarter_key", name="uq_billing_quarters_org_quarter"),
        Index("idx_billing_quarters_org_start", "org_id", "quarter_start"),
        Index("idx_billing_quarters_invoice_status", "invoice_status"),
    )

    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quarter_key: Mapped[str] = mapped_column(String(7), nullable=False)
    quarter_start: Mapped[date] = mapped_column(Date, nullable=False)
    quarter_end: Mapped[date] = mapped_column(Date, nullable=False)

    domestic_volume: Mapped[Decimal] = mapped_column(nullable=False)
    import_export_volume: Mapped[Decimal] = mapped_column(nullable=False)
    domestic_fee: Mapped[Decimal] = mapped_column(nullable=False)
    import_export_fee: Mapped[Decimal] = mapped_column(nullable=False)
    total_fee: Mapped[Decimal] = mapped_column(nullable=False)

    is_onboarding_quarter: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invoice_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    invoice_generated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self):
        from commerce_modules.billing.models import BillingQuarter, InvoiceStatus, QuarterKey

        return BillingQuarter(
            id=self.id,
            org_id=self.org_id,
            quarter_key=QuarterKey.parse(self.quarter_key),
            domestic_volume=round_money(Decimal(self.domestic_volume)),
            import_export_volume=round_money(Decimal(self.import_export_volume)),
            domestic_fee=round_money(Decimal(self.domestic_fee)),
            import_export_fee=round_money(Decimal(self.import_export_fee)),
            total_fee=round_money(Decimal(self.total_fee)),
            is_onboarding_quarter=self.is_onboarding_quarter,
            invoice_status=InvoiceStatus(self.invoice_status),
            invoice_generated_at=_aware(self.invoice_generated_at),
            paid_at=_aware(self.paid_at),
        )

    def apply_pricing(self, dto) -> None:
        """Copy fees and status; volumes are left to the atomic increment."""
        self.domestic_fee = dto.domestic_fee
        self.import_export_fee = dto.import_export_fee
        self.total_fee = dto.total_fee
        self.is_onboarding_quarter = dto.is_onboarding_quarter
        self.invoice_status = dto.invoice_status.value
        self.invoice_generated_at = dto.invoice_generated_at
        self.paid_at = dto.paid_at

    def apply(self, dto) -> None:
        self.domestic_volume = dto.domestic_volume
        self.import_export_volume = dto.import_export_volume
        self.apply_pricing(dto)

    @classmethod
    def from_dto(cls, dto, created_by_id: str) -> "BillingQuarterModel":
        model = cls(
            id=dto.id,
            org_id=dto.org_id,
            quarter_key=dto.quarter_key.label,
            quarter_start=dto.quarter_start,
            quarter_end=dto.quarter_end,
            created_by_id=created_by_id,
        )
        model.apply(dto)
        return model

    def __repr__(self) -> str:
        return f"<BillingQuarterModel {self.org_id} {self.quarter_key} {self.invoice_status}>"
