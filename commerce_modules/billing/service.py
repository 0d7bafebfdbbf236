"""
Billing Service (``commerce_modules.billing.service``).

Responsibility
--------------
Public entry point for enterprise billing: activates orgs, attributes
settled transaction volume to calendar quarters, drives the quarter
invoice through ``pending -> generated -> paid`` (or ``waived``), and
reports onboarding status and billing history.

Architecture position
---------------------
**Modules layer** -- orchestration.  Composes the pure
``BillingQuarterEngine`` with a ``BillingStore``; optionally gates
settlements through ``GovernanceService``.  Reads "now" only from the
injected ``Clock``.

Invariants enforced
-------------------
* Volume is added with an atomic increment and the quarter is repriced in
  the same unit of work (``BillingStore.record_volume``).
* The activation quarter is always onboarding and priced at zero.
* Invoices are generated only after the quarter has ended in the org's
  timezone.
* Only transient store faults are retried.

Failure modes
-------------
* ``BillingProfileNotFoundError`` / ``BillingProfileExistsError``.
* ``InvalidVolumeError`` for a negative or non-numeric amount.
* ``QuarterInvoicedError`` when volume targets a generated or paid quarter.
* ``QuarterNotFoundError``, ``QuarterNotClosedError``,
  ``InvalidInvoiceTransitionError`` from invoice operations.
* ``GovernanceViolationError`` when a gated settlement breaks a rule.
* ``PersistenceError`` after retries, ``PersistenceTimeoutError``.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import OperationalError

from commerce_config.schema import BillingSettings, PersistenceSettings
from commerce_kernel.db.types import ZERO, round_money
from commerce_kernel.domain.clock import Clock, SystemClock
from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.exceptions import (
    BillingProfileNotFoundError,
    MissingFieldError,
    PersistenceError,
    QuarterNotClosedError,
    QuarterNotFoundError,
    TransientPersistenceError,
    ValidationError,
)
from commerce_kernel.logging_config import LogContext, get_logger
from commerce_kernel.utils.retry import RetryExhausted, RetryPolicy, call_with_retry
from commerce_modules.billing.calendar import quarter_span
from commerce_modules.billing.engine import BillingQuarterEngine, validate_volume
from commerce_modules.billing.models import (
    BillingQuarter,
    BillingSummary,
    InvoiceStatus,
    OnboardingStatus,
    OrgBillingProfile,
    QuarterKey,
    TradeKind,
)
from commerce_modules.billing.store import BillingStore
from commerce_modules.billing.workflows import QUARTER_CLOSED, check_invoice_transition
from commerce_modules.governance.models import ProposedTransaction
from commerce_modules.governance.service import GovernanceService

logger = get_logger("modules.billing.service")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientPersistenceError,
    OperationalError,
)


class BillingService:
    """
    Quarterly governance billing for organizations.

    Contract:
        ``settled_at`` / ``at`` arguments default to the injected clock.
        Every store write runs under a ``Deadline`` built from
        ``PersistenceSettings.timeout_seconds`` unless one is passed.

    Non-goals:
        - Does NOT collect payment; ``mark_paid`` records that it happened.
        - Does NOT render invoices.
    """

    def __init__(
        self,
        store: BillingStore,
        clock: Clock | None = None,
        *,
        settings: BillingSettings | None = None,
        persistence: PersistenceSettings | None = None,
        governance: GovernanceService | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or BillingSettings()
        self._persistence = persistence or PersistenceSettings()
        self._engine = BillingQuarterEngine(self._settings)
        self._governance = governance
        self._retry = RetryPolicy(
            max_attempts=self._persistence.max_attempts,
            backoff_seconds=self._persistence.backoff_seconds,
            backoff_multiplier=self._persistence.backoff_multiplier,
        )
        self._sleep = sleep

    @property
    def engine(self) -> BillingQuarterEngine:
        return self._engine

    # =========================================================================
    # Internals
    # =========================================================================

    def _deadline(self, timeout_seconds: float | None, deadline: Deadline | None) -> Deadline:
        if deadline is not None:
            return deadline
        if timeout_seconds is not None:
            return Deadline(timeout_seconds)
        return Deadline(self._persistence.timeout_seconds)

    def _persist(self, operation: str, fn: Callable[[], T], deadline: Deadline) -> T:
        try:
            return call_with_retry(
                fn,
                policy=self._retry,
                retry_on=TRANSIENT_ERRORS,
                operation=operation,
                sleep=self._sleep,
                before_attempt=lambda _attempt: deadline.check(operation),
            )
        except RetryExhausted as e:
            logger.error(
                "persistence_failed",
                extra={
                    "operation": operation,
                    "attempts": e.attempts,
                    "error_type": type(e.last_error).__name__,
                },
            )
            raise PersistenceError(
                "billing write failed, no changes applied", attempts=e.attempts
            ) from e.last_error

    def _pricer(self, profile: OrgBillingProfile) -> Callable[[BillingQuarter], BillingQuarter]:
        return functools.partial(self._engine.price_quarter, profile)

    def get_profile(self, org_id: str) -> OrgBillingProfile:
        profile = self._store.get_profile(org_id)
        if profile is None:
            raise BillingProfileNotFoundError(org_id)
        return profile

    # =========================================================================
    # Profiles
    # =========================================================================

    def activate_org(
        self,
        org_id: str,
        *,
        activated_at: datetime | None = None,
        timezone: str | None = None,
        name: str | None = None,
        timeout_seconds: float | None = None,
    ) -> OrgBillingProfile:
        """
        Enable enterprise billing for an org.  Its onboarding window starts
        at ``activated_at``.

        Raises:
            BillingProfileExistsError: org already activated.
        """
        if not org_id:
            raise MissingFieldError("org_id")
        if activated_at is not None and activated_at.tzinfo is None:
            raise ValidationError("activated_at", "activated_at must be timezone-aware")
        deadline = self._deadline(timeout_seconds, None)
        try:
            profile = OrgBillingProfile(
                org_id=org_id,
                activated_at=activated_at or self._clock.now_utc(),
                timezone=timezone or self._settings.default_timezone,
                billing_active=True,
                name=name,
            )
        except ValueError as e:
            raise ValidationError("timezone", str(e)) from e
        self._persist("save_profile", lambda: self._store.save_profile(profile, deadline), deadline)
        _, window_end = self._engine.onboarding_window(profile)
        logger.info(
            "billing_activated",
            extra={
                "org_id": org_id,
                "activated_at": profile.activated_at,
                "timezone": profile.timezone,
                "activation_quarter": self._engine.activation_quarter(profile).label,
                "onboarding_end": window_end,
            },
        )
        return profile

    def set_billing_active(
        self, org_id: str, active: bool, *, timeout_seconds: float | None = None
    ) -> OrgBillingProfile:
        deadline = self._deadline(timeout_seconds, None)
        profile = replace(self.get_profile(org_id), billing_active=active)
        self._persist(
            "update_profile", lambda: self._store.update_profile(profile, deadline), deadline
        )
        logger.info("billing_active_changed", extra={"org_id": org_id, "billing_active": active})
        return profile

    def deactivate_billing(self, org_id: str, **kwargs: Any) -> OrgBillingProfile:
        return self.set_billing_active(org_id, False, **kwargs)

    # =========================================================================
    # Volume
    # =========================================================================

    def record_volume(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        *,
        domestic_volume: Any = ZERO,
        import_export_volume: Any = ZERO,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> BillingQuarter:
        """
        Add volume to ``quarter_key`` and reprice it.

        Raises:
            InvalidVolumeError: negative or non-numeric amount.
            QuarterInvoicedError: the quarter's invoice is generated or paid.
        """
        domestic = round_money(validate_volume(domestic_volume, "domestic_volume"))
        import_export = round_money(validate_volume(import_export_volume, "import_export_volume"))
        deadline = self._deadline(timeout_seconds, deadline)
        profile = self.get_profile(org_id)

        with LogContext.bind(org_id=org_id):
            quarter = self._persist(
                "record_volume",
                lambda: self._store.record_volume(
                    org_id, quarter_key, domestic, import_export, self._pricer(profile), deadline
                ),
                deadline,
            )
            logger.info(
                "volume_recorded",
                extra={
                    "quarter_key": quarter_key.label,
                    "domestic_delta": domestic,
                    "import_export_delta": import_export,
                    "domestic_volume": quarter.domestic_volume,
                    "import_export_volume": quarter.import_export_volume,
                    "total_fee": quarter.total_fee,
                    "is_onboarding_quarter": quarter.is_onboarding_quarter,
                },
            )
        return quarter

    def record_settlement(
        self,
        org_id: str,
        amount: Any,
        trade_kind: TradeKind | str = TradeKind.DOMESTIC,
        *,
        settled_at: datetime | None = None,
        transaction: ProposedTransaction | None = None,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> BillingQuarter | None:
        """
        Attribute a settled transaction to the quarter containing ``settled_at``.

        When a governance service is configured and ``transaction`` is
        given, the transaction is checked first and nothing is recorded if
        it violates a rule.  Returns None, recording nothing, when billing
        is inactive for the org.

        Raises:
            GovernanceViolationError: the gated transaction breaks a rule.
        """
        kind = TradeKind(trade_kind)
        profile = self.get_profile(org_id)
        if self._governance is not None and transaction is not None:
            self._governance.enforce(org_id, transaction)
        if not profile.billing_active:
            logger.info(
                "settlement_skipped",
                extra={"org_id": org_id, "reason": "billing_inactive"},
            )
            return None

        key = self._engine.classify(profile, settled_at or self._clock.now_utc())
        if kind is TradeKind.DOMESTIC:
            return self.record_volume(
                org_id, key, domestic_volume=amount,
                timeout_seconds=timeout_seconds, deadline=deadline,
            )
        return self.record_volume(
            org_id, key, import_export_volume=amount,
            timeout_seconds=timeout_seconds, deadline=deadline,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_quarter(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        *,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> BillingQuarter:
        """
        Raises:
            QuarterNotFoundError: no volume was ever recorded for the quarter.
        """
        deadline = self._deadline(timeout_seconds, deadline)
        quarter = self._persist(
            "get_billing_quarter",
            lambda: self._store.get_billing_quarter(org_id, quarter_key, deadline),
            deadline,
        )
        if quarter is None:
            raise QuarterNotFoundError(org_id, quarter_key.label)
        return quarter

    def current_quarter_key(self, org_id: str, at: datetime | None = None) -> QuarterKey:
        return self._engine.classify(self.get_profile(org_id), at or self._clock.now_utc())

    def list_history(self, org_id: str) -> list[BillingQuarter]:
        """All quarters for the org, most recent first."""
        return list(reversed(self._store.list_quarters(org_id)))

    def onboarding_status(self, org_id: str, at: datetime | None = None) -> OnboardingStatus:
        return self._engine.onboarding_status(
            self.get_profile(org_id), at or self._clock.now_utc()
        )

    def billing_summary(self, org_id: str) -> BillingSummary:
        quarters = self._store.list_quarters(org_id)

        def fees(*statuses: InvoiceStatus) -> Decimal:
            return sum((q.total_fee for q in quarters if q.invoice_status in statuses), ZERO)

        return BillingSummary(
            org_id=org_id,
            quarter_count=len(quarters),
            total_domestic_volume=sum((q.domestic_volume for q in quarters), ZERO),
            total_import_export_volume=sum((q.import_export_volume for q in quarters), ZERO),
            total_fees=sum((q.total_fee for q in quarters), ZERO),
            fees_paid=fees(InvoiceStatus.PAID),
            fees_outstanding=fees(InvoiceStatus.PENDING, InvoiceStatus.GENERATED),
            fees_waived=fees(InvoiceStatus.WAIVED),
            onboarding_quarters=sum(1 for q in quarters if q.is_onboarding_quarter),
        )

    # =========================================================================
    # Invoice lifecycle
    # =========================================================================

    def _transition_invoice(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        to_status: InvoiceStatus,
        at: datetime,
        timeout_seconds: float | None,
    ) -> BillingQuarter:
        profile = self.get_profile(org_id)
        deadline = self._deadline(timeout_seconds, None)
        from_status: list[InvoiceStatus] = []

        def apply(quarter: BillingQuarter) -> BillingQuarter:
            transition = check_invoice_transition(quarter, to_status)
            if transition.guard is QUARTER_CLOSED:
                _, quarter_end = quarter_span(quarter_key, profile.timezone)
                if at < quarter_end:
                    raise QuarterNotClosedError(
                        org_id, quarter_key.label, quarter_key.end.isoformat()
                    )
            from_status.append(quarter.invoice_status)
            changes: dict[str, Any] = {"invoice_status": to_status}
            if to_status is InvoiceStatus.GENERATED:
                changes["invoice_generated_at"] = at
            elif to_status is InvoiceStatus.PAID:
                changes["paid_at"] = at
            return replace(quarter, **changes)

        with LogContext.bind(org_id=org_id):
            updated = self._persist(
                "update_quarter",
                lambda: self._store.update_quarter(org_id, quarter_key, apply, deadline),
                deadline,
            )
            logger.info(
                "invoice_transition",
                extra={
                    "quarter_key": quarter_key.label,
                    "from_status": from_status[-1].value,
                    "to_status": to_status.value,
                    "total_fee": updated.total_fee,
                },
            )
        return updated

    def generate_invoice(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        *,
        at: datetime | None = None,
        timeout_seconds: float | None = None,
    ) -> BillingQuarter:
        """
        Freeze the quarter's volume and issue its invoice.

        Raises:
            QuarterNotClosedError: the quarter has not ended yet.
            InvalidInvoiceTransitionError: not pending (e.g. onboarding, waived).
        """
        return self._transition_invoice(
            org_id, quarter_key, InvoiceStatus.GENERATED,
            at or self._clock.now_utc(), timeout_seconds,
        )

    def mark_paid(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        *,
        paid_at: datetime | None = None,
        timeout_seconds: float | None = None,
    ) -> BillingQuarter:
        return self._transition_invoice(
            org_id, quarter_key, InvoiceStatus.PAID,
            paid_at or self._clock.now_utc(), timeout_seconds,
        )

    def waive_invoice(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        *,
        timeout_seconds: float | None = None,
    ) -> BillingQuarter:
        return self._transition_invoice(
            org_id, quarter_key, InvoiceStatus.WAIVED,
            self._clock.now_utc(), timeout_seconds,
        )

    # =========================================================================
    # Async variants
    # =========================================================================

    async def _run_async(self, fn: Callable[[], T], deadline: Deadline) -> T:
        try:
            return await asyncio.to_thread(fn)
        except asyncio.CancelledError:
            deadline.cancel()
            logger.warning("operation_cancelled", extra={"timeout_seconds": deadline.timeout_seconds})
            raise

    async def arecord_settlement(
        self,
        org_id: str,
        amount: Any,
        trade_kind: TradeKind | str = TradeKind.DOMESTIC,
        *,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> BillingQuarter | None:
        """Awaitable ``record_settlement``; cancelling the task cancels the write."""
        deadline = self._deadline(timeout_seconds, kwargs.pop("deadline", None))
        return await self._run_async(
            functools.partial(
                self.record_settlement, org_id, amount, trade_kind, deadline=deadline, **kwargs
            ),
            deadline,
        )

    async def aget_quarter(
        self, org_id: str, quarter_key: QuarterKey, *, timeout_seconds: float | None = None
    ) -> BillingQuarter:
        deadline = self._deadline(timeout_seconds, None)
        return await self._run_async(
            functools.partial(self.get_quarter, org_id, quarter_key, deadline=deadline), deadline
        )
