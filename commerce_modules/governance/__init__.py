"""
Procurement governance rules: credit period, vendor count and margin
limits per org and category.
"""

from commerce_modules.governance.evaluator import GovernanceRuleEvaluator
from commerce_modules.governance.models import (
    ALL_CATEGORIES,
    Constraint,
    GovernanceEvaluation,
    GovernanceRule,
    ProposedTransaction,
    Violation,
)
from commerce_modules.governance.service import GovernanceService
from commerce_modules.governance.store import (
    GovernanceRuleStore,
    InMemoryGovernanceRuleStore,
    SqlGovernanceRuleStore,
)

__all__ = [
    "ALL_CATEGORIES",
    "Constraint",
    "GovernanceEvaluation",
    "GovernanceRule",
    "GovernanceRuleEvaluator",
    "GovernanceRuleStore",
    "GovernanceService",
    "InMemoryGovernanceRuleStore",
    "ProposedTransaction",
    "SqlGovernanceRuleStore",
    "Violation",
]
