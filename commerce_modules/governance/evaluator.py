"""
Governance Rule Evaluator (``commerce_modules.governance.evaluator``).

Responsibility
--------------
Checks a ``ProposedTransaction`` against an org's active governance rules
and reports every violated constraint.

Architecture position
---------------------
**Modules layer** -- pure function over rules.  No I/O.

Invariants enforced
-------------------
* Only active rules for the evaluated org apply.
* Each constraint is resolved on its own: if any active rule for the
  transaction's category sets it, category rules decide; otherwise
  all-categories rules do.
* Within the deciding scope the strictest limit wins: the lowest
  ``max_credit_days``, the highest ``min_vendor_count``, the lowest
  ``margin_cap``.
* Every violated constraint is reported, never only the first.
* A transaction field left as None is not checked.
"""

from __future__ import annotations

from collections.abc import Iterable

from commerce_kernel.logging_config import get_logger
from commerce_modules.governance.models import (
    Constraint,
    GovernanceEvaluation,
    GovernanceRule,
    ProposedTransaction,
    Violation,
)

logger = get_logger("modules.governance.evaluator")

# For each constraint: pick the strictest limit, and test actual against it.
_STRICTEST = {
    Constraint.MAX_CREDIT_DAYS: min,
    Constraint.MIN_VENDOR_COUNT: max,
    Constraint.MARGIN_CAP: min,
}
_VIOLATES = {
    Constraint.MAX_CREDIT_DAYS: lambda actual, limit: actual > limit,
    Constraint.MIN_VENDOR_COUNT: lambda actual, limit: actual < limit,
    Constraint.MARGIN_CAP: lambda actual, limit: actual > limit,
}


def _same_category(rule_category: str, category: str | None) -> bool:
    return category is not None and rule_category.strip().casefold() == category.strip().casefold()


class GovernanceRuleEvaluator:
    """Stateless evaluator; safe to share between threads."""

    def applicable_rules(
        self,
        org_id: str,
        category: str | None,
        rules: Iterable[GovernanceRule],
    ) -> list[GovernanceRule]:
        return [
            r
            for r in rules
            if r.is_active
            and r.org_id == org_id
            and (r.category is None or _same_category(r.category, category))
        ]

    def resolve_limit(
        self,
        constraint: Constraint,
        rules: list[GovernanceRule],
    ) -> tuple[object, GovernanceRule] | None:
        """The deciding (limit, rule) for ``constraint``, or None if unconstrained."""
        setting = [r for r in rules if r.limit_for(constraint) is not None]
        scoped = [r for r in setting if r.category is not None] or [
            r for r in setting if r.category is None
        ]
        if not scoped:
            return None
        pick = _STRICTEST[constraint]
        rule = pick(scoped, key=lambda r: r.limit_for(constraint))
        return rule.limit_for(constraint), rule

    def evaluate(
        self,
        org_id: str,
        transaction: ProposedTransaction,
        rules: Iterable[GovernanceRule],
    ) -> GovernanceEvaluation:
        applicable = self.applicable_rules(org_id, transaction.category, rules)
        violations: list[Violation] = []

        for constraint in Constraint:
            actual = transaction.actual_for(constraint)
            if actual is None:
                continue
            resolved = self.resolve_limit(constraint, applicable)
            if resolved is None:
                continue
            limit, rule = resolved
            if _VIOLATES[constraint](actual, limit):
                violations.append(
                    Violation(
                        constraint=constraint,
                        limit=limit,
                        actual=actual,
                        scope=rule.scope,
                        rule_id=rule.id,
                    )
                )

        evaluation = GovernanceEvaluation(
            org_id=org_id,
            transaction=transaction,
            violations=tuple(violations),
            rules_considered=len(applicable),
        )
        logger.debug(
            "governance_evaluated",
            extra={
                "org_id": org_id,
                "category": transaction.category,
                "rules_considered": len(applicable),
                "violation_count": len(violations),
            },
        )
        return evaluation
