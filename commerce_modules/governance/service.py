"""
Governance service: rule administration and transaction gating.

``enforce`` is what other modules call before committing a procurement
transaction; it raises ``GovernanceViolationError`` carrying every
violated constraint.  A violation blocks only that transaction.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from commerce_kernel.db.types import to_decimal
from commerce_kernel.domain.clock import Clock, SystemClock
from commerce_kernel.exceptions import (
    GovernanceViolationError,
    InvalidAmountError,
    MissingFieldError,
    ValidationError,
)
from commerce_kernel.logging_config import get_logger
from commerce_modules.governance.evaluator import GovernanceRuleEvaluator
from commerce_modules.governance.models import (
    GovernanceEvaluation,
    GovernanceRule,
    ProposedTransaction,
)
from commerce_modules.governance.store import GovernanceRuleStore

logger = get_logger("modules.governance.service")


class GovernanceService:

    def __init__(
        self,
        store: GovernanceRuleStore,
        clock: Clock | None = None,
        evaluator: GovernanceRuleEvaluator | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._evaluator = evaluator or GovernanceRuleEvaluator()

    def add_rule(
        self,
        org_id: str,
        *,
        category: str | None = None,
        max_credit_days: int | None = None,
        min_vendor_count: int = 1,
        margin_cap: Any = None,
    ) -> GovernanceRule:
        if not org_id:
            raise MissingFieldError("org_id")
        cap: Decimal | None = None
        if margin_cap is not None:
            try:
                cap = to_decimal(margin_cap, "margin_cap")
            except ValueError as e:
                raise InvalidAmountError("margin_cap", margin_cap) from e
        try:
            candidate = GovernanceRule(
                org_id=org_id,
                category=category.strip() if category else None,
                max_credit_days=max_credit_days,
                min_vendor_count=min_vendor_count,
                margin_cap=cap,
            )
        except ValueError as e:
            # rule messages lead with the offending field name
            raise ValidationError(str(e).split(" ", 1)[0], str(e)) from e
        rule = self._store.add_rule(candidate)
        logger.info(
            "governance_rule_added",
            extra={
                "org_id": org_id,
                "rule_id": str(rule.id),
                "scope": rule.scope,
                "max_credit_days": max_credit_days,
                "min_vendor_count": min_vendor_count,
                "margin_cap": cap,
            },
        )
        return rule

    def deactivate_rule(self, rule_id: UUID) -> GovernanceRule:
        rule = self._store.deactivate_rule(rule_id, self._clock.now_utc())
        logger.info(
            "governance_rule_deactivated",
            extra={"org_id": rule.org_id, "rule_id": str(rule_id)},
        )
        return rule

    def active_rules(self, org_id: str) -> list[GovernanceRule]:
        return self._store.active_rules(org_id)

    def evaluate(self, org_id: str, transaction: ProposedTransaction) -> GovernanceEvaluation:
        return self._evaluator.evaluate(org_id, transaction, self._store.active_rules(org_id))

    def enforce(self, org_id: str, transaction: ProposedTransaction) -> GovernanceEvaluation:
        """
        Evaluate and raise if anything is violated.

        Raises:
            GovernanceViolationError: with every violated constraint.
        """
        evaluation = self.evaluate(org_id, transaction)
        if not evaluation.passed:
            logger.warning(
                "governance_violation",
                extra={
                    "org_id": org_id,
                    "category": transaction.category,
                    "violations": [v.describe() for v in evaluation.violations],
                },
            )
            raise GovernanceViolationError(list(evaluation.violations))
        return evaluation
