"""
Governance Rule ORM Model (``commerce_modules.governance.orm``).

Maps ``GovernanceRule`` to ``governance_rules``.  Deactivation flips
``is_active`` and stamps ``deactivated_at``; rows are never deleted.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from commerce_kernel.db.base import TrackedBase


class GovernanceRuleModel(TrackedBase):
    __tablename__ = "governance_rules"

    __table_args__ = (
        Index("idx_governance_rules_org_active", "org_id", "is_active"),
    )

    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    max_credit_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_vendor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    margin_cap: Mapped[Decimal | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self):
        from commerce_modules.governance.models import GovernanceRule

        return GovernanceRule(
            id=self.id,
            org_id=self.org_id,
            category=self.category,
            max_credit_days=self.max_credit_days,
            min_vendor_count=self.min_vendor_count,
            margin_cap=self.margin_cap,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: str) -> "GovernanceRuleModel":
        return cls(
            id=dto.id,
            org_id=dto.org_id,
            category=dto.category,
            max_credit_days=dto.max_credit_days,
            min_vendor_count=dto.min_vendor_count,
            margin_cap=dto.margin_cap,
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<GovernanceRuleModel {self.org_id} {self.category or 'all'} active={self.is_active}>"
