"""
Governance rule evaluation.

Category rules override all-category rules per constraint, the strictest
limit wins among rules of the same scope, and every violated constraint
is reported together.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from commerce_kernel.exceptions import (
    GovernanceRuleNotFoundError,
    GovernanceViolationError,
    InvalidAmountError,
    MissingFieldError,
    ValidationError,
)
from commerce_modules.governance.evaluator import GovernanceRuleEvaluator
from commerce_modules.governance.models import (
    ALL_CATEGORIES,
    Constraint,
    GovernanceRule,
    ProposedTransaction,
)

ORG = "org-acme"


def violated(evaluation) -> dict[Constraint, object]:
    return {v.constraint: v.limit for v in evaluation.violations}


class TestRuleModel:

    def test_scope(self):
        assert GovernanceRule(ORG).scope == ALL_CATEGORIES
        assert GovernanceRule(ORG, category="steel").scope == "steel"

    def test_vendor_floor_is_unconstrained(self):
        assert GovernanceRule(ORG).limit_for(Constraint.MIN_VENDOR_COUNT) is None
        assert GovernanceRule(ORG, min_vendor_count=2).limit_for(Constraint.MIN_VENDOR_COUNT) == 2

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_vendor_count": 0},
            {"max_credit_days": -1},
            {"margin_cap": Decimal("101")},
            {"margin_cap": Decimal("-0.5")},
        ],
    )
    def test_invalid_limits(self, kwargs):
        with pytest.raises(ValueError):
            GovernanceRule(ORG, **kwargs)


class TestEvaluation:

    def test_no_rules_passes(self, governance_service):
        evaluation = governance_service.evaluate(ORG, ProposedTransaction(credit_days=365))
        assert evaluation.passed
        assert evaluation.rules_considered == 0

    def test_all_violations_reported(self, governance_service):
        governance_service.add_rule(ORG, max_credit_days=30, min_vendor_count=3, margin_cap="15")
        evaluation = governance_service.evaluate(
            ORG,
            ProposedTransaction(
                category="cement", credit_days=60, vendor_count=1, margin_percent=Decimal("20")
            ),
        )
        assert violated(evaluation) == {
            Constraint.MAX_CREDIT_DAYS: 30,
            Constraint.MIN_VENDOR_COUNT: 3,
            Constraint.MARGIN_CAP: Decimal("15"),
        }
        assert all(v.scope == ALL_CATEGORIES for v in evaluation.violations)

    def test_limits_are_inclusive(self, governance_service):
        governance_service.add_rule(ORG, max_credit_days=30, min_vendor_count=3, margin_cap="15")
        evaluation = governance_service.evaluate(
            ORG,
            ProposedTransaction(credit_days=30, vendor_count=3, margin_percent=Decimal("15")),
        )
        assert evaluation.passed

    def test_unset_fields_not_checked(self, governance_service):
        governance_service.add_rule(ORG, max_credit_days=30, min_vendor_count=3)
        assert governance_service.evaluate(ORG, ProposedTransaction(margin_percent=Decimal("50"))).passed

    def test_category_rule_overrides_all_category_rule(self, governance_service):
        governance_service.add_rule(ORG, max_credit_days=30)
        governance_service.add_rule(ORG, category="steel", max_credit_days=60)

        steel = governance_service.evaluate(ORG, ProposedTransaction("steel", credit_days=45))
        assert steel.passed
        cement = governance_service.evaluate(ORG, ProposedTransaction("cement", credit_days=45))
        assert violated(cement) == {Constraint.MAX_CREDIT_DAYS: 30}

    def test_override_is_per_constraint(self, governance_service):
        # The steel rule sets only margin; credit days still come from the org-wide rule
        governance_service.add_rule(ORG, max_credit_days=30)
        governance_service.add_rule(ORG, category="steel", margin_cap="5")
        evaluation = governance_service.evaluate(
            ORG, ProposedTransaction("steel", credit_days=45, margin_percent=Decimal("6"))
        )
        assert violated(evaluation) == {
            Constraint.MAX_CREDIT_DAYS: 30,
            Constraint.MARGIN_CAP: Decimal("5"),
        }
        scopes = {v.constraint: v.scope for v in evaluation.violations}
        assert scopes[Constraint.MARGIN_CAP] == "steel"
        assert scopes[Constraint.MAX_CREDIT_DAYS] == ALL_CATEGORIES

    def test_category_match_ignores_case(self, governance_service):
        governance_service.add_rule(ORG, category="Steel", max_credit_days=10)
        evaluation = governance_service.evaluate(ORG, ProposedTransaction(" STEEL ", credit_days=11))
        assert not evaluation.passed

    def test_strictest_rule_wins(self, governance_service):
        governance_service.add_rule(ORG, max_credit_days=45, min_vendor_count=2, margin_cap="20")
        strict = governance_service.add_rule(
            ORG, max_credit_days=15, min_vendor_count=4, margin_cap="8"
        )
        evaluation = governance_service.evaluate(
            ORG, ProposedTransaction(credit_days=20, vendor_count=3, margin_percent=Decimal("10"))
        )
        assert violated(evaluation) == {
            Constraint.MAX_CREDIT_DAYS: 15,
            Constraint.MIN_VENDOR_COUNT: 4,
            Constraint.MARGIN_CAP: Decimal("8"),
        }
        assert {v.rule_id for v in evaluation.violations} == {strict.id}

    def test_rules_of_other_orgs_ignored(self, governance_service):
        governance_service.add_rule("org-other", max_credit_days=1)
        assert governance_service.evaluate(ORG, ProposedTransaction(credit_days=90)).passed

    def test_evaluator_skips_inactive_rules(self):
        rules = [GovernanceRule(ORG, max_credit_days=10, is_active=False)]
        evaluation = GovernanceRuleEvaluator().evaluate(
            ORG, ProposedTransaction(credit_days=20), rules
        )
        assert evaluation.passed
        assert evaluation.rules_considered == 0


class TestEnforcement:

    def test_enforce_raises_with_every_violation(self, governance_service, captured_logs):
        governance_service.add_rule(ORG, max_credit_days=30, margin_cap="10")
        with pytest.raises(GovernanceViolationError) as exc_info:
            governance_service.enforce(
                ORG, ProposedTransaction(credit_days=31, margin_percent=Decimal("11"))
            )
        assert len(exc_info.value.violations) == 2
        record = next(r for r in captured_logs() if r["message"] == "governance_violation")
        assert len(record["violations"]) == 2

    def test_enforce_returns_passing_evaluation(self, governance_service):
        governance_service.add_rule(ORG, max_credit_days=30)
        assert governance_service.enforce(ORG, ProposedTransaction(credit_days=5)).passed

    def test_violation_description(self, governance_service):
        governance_service.add_rule(ORG, category="steel", min_vendor_count=3)
        evaluation = governance_service.evaluate(ORG, ProposedTransaction("steel", vendor_count=1))
        assert evaluation.violations[0].describe() == "min_vendor_count: 1 < 3 (steel)"


class TestRuleLifecycle:

    def test_deactivated_rule_stops_applying(self, governance_service):
        rule = governance_service.add_rule(ORG, max_credit_days=10)
        deactivated = governance_service.deactivate_rule(rule.id)
        assert not deactivated.is_active
        assert governance_service.active_rules(ORG) == []
        assert governance_service.evaluate(ORG, ProposedTransaction(credit_days=90)).passed

    def test_deactivate_unknown_rule(self, governance_service):
        with pytest.raises(GovernanceRuleNotFoundError):
            governance_service.deactivate_rule(uuid4())

    def test_org_required(self, governance_service):
        with pytest.raises(MissingFieldError):
            governance_service.add_rule("", max_credit_days=10)

    def test_category_is_trimmed(self, governance_service):
        rule = governance_service.add_rule(ORG, category="  steel ", max_credit_days=10)
        assert rule.category == "steel"

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"margin_cap": "150"}, "margin_cap"),
            ({"min_vendor_count": 0}, "min_vendor_count"),
            ({"max_credit_days": -5}, "max_credit_days"),
        ],
    )
    def test_out_of_range_limits_are_validation_errors(self, governance_service, kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            governance_service.add_rule(ORG, **kwargs)
        assert exc_info.value.field == field
        assert governance_service.active_rules(ORG) == []

    def test_non_numeric_margin_cap(self, governance_service):
        with pytest.raises(InvalidAmountError) as exc_info:
            governance_service.add_rule(ORG, margin_cap="fifteen")
        assert exc_info.value.code == "INVALID_AMOUNT"
        assert exc_info.value.field == "margin_cap"
