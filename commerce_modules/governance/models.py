"""
Governance rule domain models.

An org may set procurement guardrails: a maximum credit period, a minimum
number of competing vendors, and a margin cap.  A rule applies to one
category or, with ``category=None``, to every category.  Rules are
deactivated, never deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from commerce_kernel.db.types import HUNDRED, ZERO

ALL_CATEGORIES = "all"


class Constraint(str, Enum):
    MAX_CREDIT_DAYS = "max_credit_days"
    MIN_VENDOR_COUNT = "min_vendor_count"
    MARGIN_CAP = "margin_cap"


@dataclass(frozen=True)
class GovernanceRule:
    """
    A set of limits for one org, optionally scoped to one category.

    ``min_vendor_count`` of 1 is the floor every transaction meets, so a
    rule only constrains vendor count when it asks for more than one.
    """
    org_id: str
    category: str | None = None
    max_credit_days: int | None = None
    min_vendor_count: int = 1
    margin_cap: Decimal | None = None
    is_active: bool = True
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self):
        if self.min_vendor_count < 1:
            raise ValueError(f"min_vendor_count must be >= 1, got {self.min_vendor_count}")
        if self.max_credit_days is not None and self.max_credit_days < 0:
            raise ValueError(f"max_credit_days cannot be negative, got {self.max_credit_days}")
        if self.margin_cap is not None and not (ZERO <= self.margin_cap <= HUNDRED):
            raise ValueError(f"margin_cap must be between 0 and 100, got {self.margin_cap}")

    @property
    def scope(self) -> str:
        return self.category if self.category is not None else ALL_CATEGORIES

    def limit_for(self, constraint: Constraint):
        """The limit this rule sets for ``constraint``, or None if it sets none."""
        if constraint is Constraint.MAX_CREDIT_DAYS:
            return self.max_credit_days
        if constraint is Constraint.MIN_VENDOR_COUNT:
            return self.min_vendor_count if self.min_vendor_count > 1 else None
        return self.margin_cap


@dataclass(frozen=True)
class ProposedTransaction:
    """A procurement transaction to check before it is committed.

    Fields left as None are not checked.
    """
    category: str | None = None
    credit_days: int | None = None
    vendor_count: int | None = None
    margin_percent: Decimal | None = None

    def actual_for(self, constraint: Constraint):
        if constraint is Constraint.MAX_CREDIT_DAYS:
            return self.credit_days
        if constraint is Constraint.MIN_VENDOR_COUNT:
            return self.vendor_count
        return self.margin_percent


@dataclass(frozen=True)
class Violation:
    constraint: Constraint
    limit: int | Decimal
    actual: int | Decimal
    scope: str
    rule_id: UUID | None = None

    def describe(self) -> str:
        if self.constraint is Constraint.MIN_VENDOR_COUNT:
            return f"{self.constraint.value}: {self.actual} < {self.limit} ({self.scope})"
        return f"{self.constraint.value}: {self.actual} > {self.limit} ({self.scope})"


@dataclass(frozen=True)
class GovernanceEvaluation:
    org_id: str
    transaction: ProposedTransaction
    violations: tuple[Violation, ...] = ()
    rules_considered: int = 0

    @property
    def passed(self) -> bool:
        return not self.violations
