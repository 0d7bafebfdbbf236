"""
Governance rule storage port and implementations.

``active_rules`` returns only rules with ``is_active`` set; deactivated
rules stay stored for audit.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from commerce_kernel.exceptions import GovernanceRuleNotFoundError
from commerce_modules.governance.models import GovernanceRule
from commerce_modules.governance.orm import GovernanceRuleModel


class GovernanceRuleStore(Protocol):

    def add_rule(self, rule: GovernanceRule) -> GovernanceRule:
        ...

    def deactivate_rule(self, rule_id: UUID, at: datetime) -> GovernanceRule:
        """Mark a rule inactive.  Raises ``GovernanceRuleNotFoundError``."""
        ...

    def active_rules(self, org_id: str) -> list[GovernanceRule]:
        ...


class InMemoryGovernanceRuleStore:

    def __init__(self) -> None:
        self._rules: dict[UUID, GovernanceRule] = {}
        self._lock = threading.Lock()

    def add_rule(self, rule: GovernanceRule) -> GovernanceRule:
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def deactivate_rule(self, rule_id: UUID, at: datetime) -> GovernanceRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise GovernanceRuleNotFoundError(str(rule_id))
            rule = replace(rule, is_active=False)
            self._rules[rule_id] = rule
        return rule

    def active_rules(self, org_id: str) -> list[GovernanceRule]:
        with self._lock:
            return [r for r in self._rules.values() if r.org_id == org_id and r.is_active]


class SqlGovernanceRuleStore:

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def add_rule(self, rule: GovernanceRule) -> GovernanceRule:
        with self._session_factory.begin() as session:
            session.add(GovernanceRuleModel.from_dto(rule, created_by_id=rule.org_id))
        return rule

    def deactivate_rule(self, rule_id: UUID, at: datetime) -> GovernanceRule:
        with self._session_factory.begin() as session:
            model = session.get(GovernanceRuleModel, rule_id, with_for_update=True)
            if model is None:
                raise GovernanceRuleNotFoundError(str(rule_id))
            model.is_active = False
            model.deactivated_at = at
            return model.to_dto()

    def active_rules(self, org_id: str) -> list[GovernanceRule]:
        with self._session_factory() as session:
            models = session.execute(
                select(GovernanceRuleModel)
                .where(
                    GovernanceRuleModel.org_id == org_id,
                    GovernanceRuleModel.is_active.is_(True),
                )
                .order_by(GovernanceRuleModel.created_at)
            ).scalars()
            return [m.to_dto() for m in models]
