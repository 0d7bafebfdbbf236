"""
Billing storage port and implementations (``commerce_modules.billing.store``).

Responsibility
--------------
Persists org billing profiles and billing quarters.  ``record_volume`` is
the only way volume enters a quarter: the increment and the repricing run
in one locked unit of work so concurrent settlements never lose volume
and fees always match the stored volumes.

Implementations
---------------
* ``InMemoryBillingStore`` -- thread-safe dictionaries; increments and
  repricing happen under one lock.
* ``SqlBillingStore`` -- SQLAlchemy.  ``UPDATE ... SET v = v + :delta``,
  then ``SELECT ... FOR UPDATE`` and a fee rewrite in the same
  transaction.  The first volume for a quarter inserts the row under a
  savepoint; losing that race falls back to the increment.

Invariants enforced
-------------------
* At most one quarter per (org_id, quarter_key).
* Volume never enters a quarter whose invoice is generated or paid
  (``QuarterInvoicedError``).
* The caller's ``Deadline`` is checked before every commit.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Generator, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.exceptions import (
    BillingProfileExistsError,
    BillingProfileNotFoundError,
    QuarterInvoicedError,
    QuarterNotFoundError,
    TransientPersistenceError,
)
from commerce_kernel.logging_config import get_logger
from commerce_modules.billing.models import (
    FROZEN_INVOICE_STATUSES,
    BillingQuarter,
    OrgBillingProfile,
    QuarterKey,
)
from commerce_modules.billing.orm import BillingQuarterModel, OrgBillingProfileModel

logger = get_logger("modules.billing.store")

Pricer = Callable[[BillingQuarter], BillingQuarter]
QuarterUpdater = Callable[[BillingQuarter], BillingQuarter]


class BillingStore(Protocol):
    """Storage port for billing profiles and quarters."""

    def record_volume(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        domestic_delta: Decimal,
        import_export_delta: Decimal,
        pricer: Pricer,
        deadline: Deadline,
    ) -> BillingQuarter:
        """Add volume to a quarter (creating it if needed) and reprice it atomically."""
        ...

    def get_billing_quarter(
        self, org_id: str, quarter_key: QuarterKey, deadline: Deadline | None = None
    ) -> BillingQuarter | None:
        ...

    def list_quarters(self, org_id: str) -> list[BillingQuarter]:
        """All quarters for an org, oldest first."""
        ...

    def save_quarter(self, quarter: BillingQuarter, deadline: Deadline) -> BillingQuarter:
        """Insert or overwrite a whole quarter record."""
        ...

    def update_quarter(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        updater: QuarterUpdater,
        deadline: Deadline,
    ) -> BillingQuarter:
        """Read-modify-write one quarter under its row lock."""
        ...

    def get_profile(self, org_id: str) -> OrgBillingProfile | None:
        ...

    def save_profile(self, profile: OrgBillingProfile, deadline: Deadline) -> OrgBillingProfile:
        """Insert a new profile.  Raises ``BillingProfileExistsError``."""
        ...

    def update_profile(self, profile: OrgBillingProfile, deadline: Deadline) -> OrgBillingProfile:
        ...


def _check_open(quarter: BillingQuarter) -> None:
    if quarter.invoice_status in FROZEN_INVOICE_STATUSES:
        raise QuarterInvoicedError(
            quarter.org_id, quarter.quarter_key.label, quarter.invoice_status.value
        )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryBillingStore:
    """Dictionary-backed ``BillingStore``."""

    def __init__(self) -> None:
        self._quarters: dict[tuple[str, QuarterKey], BillingQuarter] = {}
        self._profiles: dict[str, OrgBillingProfile] = {}
        self._lock = threading.RLock()

    def record_volume(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        domestic_delta: Decimal,
        import_export_delta: Decimal,
        pricer: Pricer,
        deadline: Deadline,
    ) -> BillingQuarter:
        key = (org_id, quarter_key)
        with self._lock:
            current = self._quarters.get(key) or BillingQuarter.blank(org_id, quarter_key)
            _check_open(current)
            priced = pricer(
                replace(
                    current,
                    domestic_volume=current.domestic_volume + domestic_delta,
                    import_export_volume=current.import_export_volume + import_export_delta,
                )
            )
            deadline.check("record_volume")
            self._quarters[key] = priced
        return priced

    def get_billing_quarter(
        self, org_id: str, quarter_key: QuarterKey, deadline: Deadline | None = None
    ) -> BillingQuarter | None:
        with self._lock:
            if deadline is not None:
                deadline.check("get_billing_quarter")
            return self._quarters.get((org_id, quarter_key))

    def list_quarters(self, org_id: str) -> list[BillingQuarter]:
        with self._lock:
            return sorted(
                (q for (owner, _), q in self._quarters.items() if owner == org_id),
                key=lambda q: q.quarter_key,
            )

    def save_quarter(self, quarter: BillingQuarter, deadline: Deadline) -> BillingQuarter:
        with self._lock:
            existing = self._quarters.get((quarter.org_id, quarter.quarter_key))
            if existing is not None and existing.id != quarter.id:
                quarter = replace(quarter, id=existing.id)
            deadline.check("save_quarter")
            self._quarters[(quarter.org_id, quarter.quarter_key)] = quarter
        return quarter

    def update_quarter(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        updater: QuarterUpdater,
        deadline: Deadline,
    ) -> BillingQuarter:
        with self._lock:
            current = self._quarters.get((org_id, quarter_key))
            if current is None:
                raise QuarterNotFoundError(org_id, quarter_key.label)
            updated = updater(current)
            deadline.check("update_quarter")
            self._quarters[(org_id, quarter_key)] = updated
        return updated

    def get_profile(self, org_id: str) -> OrgBillingProfile | None:
        with self._lock:
            return self._profiles.get(org_id)

    def save_profile(self, profile: OrgBillingProfile, deadline: Deadline) -> OrgBillingProfile:
        with self._lock:
            if profile.org_id in self._profiles:
                raise BillingProfileExistsError(profile.org_id)
            deadline.check("save_profile")
            self._profiles[profile.org_id] = profile
        return profile

    def update_profile(self, profile: OrgBillingProfile, deadline: Deadline) -> OrgBillingProfile:
        with self._lock:
            if profile.org_id not in self._profiles:
                raise BillingProfileNotFoundError(profile.org_id)
            deadline.check("update_profile")
            self._profiles[profile.org_id] = profile
        return profile


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------


class SqlBillingStore:
    """SQLAlchemy-backed ``BillingStore``.  One session per unit of work."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _unit_of_work(
        self, operation: str, deadline: Deadline | None
    ) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.flush()
            if deadline is not None:
                deadline.check(operation)
            session.commit()
        except OperationalError as e:
            session.rollback()
            raise TransientPersistenceError(f"{operation} failed: {e.orig}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _quarter_filter(org_id: str, quarter_key: QuarterKey):
        return (
            BillingQuarterModel.org_id == org_id,
            BillingQuarterModel.quarter_key == quarter_key.label,
        )

    def _lock_quarter(
        self, session: Session, org_id: str, quarter_key: QuarterKey
    ) -> BillingQuarterModel | None:
        return session.execute(
            select(BillingQuarterModel)
            .where(*self._quarter_filter(org_id, quarter_key))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _increment(
        self,
        session: Session,
        org_id: str,
        quarter_key: QuarterKey,
        domestic_delta: Decimal,
        import_export_delta: Decimal,
    ) -> bool:
        """Atomic increment on an open quarter.  False when no open row matched."""
        result = session.execute(
            update(BillingQuarterModel)
            .where(
                *self._quarter_filter(org_id, quarter_key),
                BillingQuarterModel.invoice_status.not_in(
                    [s.value for s in FROZEN_INVOICE_STATUSES]
                ),
            )
            .values(
                domestic_volume=BillingQuarterModel.domestic_volume + domestic_delta,
                import_export_volume=BillingQuarterModel.import_export_volume
                + import_export_delta,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _raise_frozen(self, session: Session, org_id: str, quarter_key: QuarterKey) -> None:
        model = self._lock_quarter(session, org_id, quarter_key)
        if model is not None:
            _check_open(model.to_dto())

    def record_volume(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        domestic_delta: Decimal,
        import_export_delta: Decimal,
        pricer: Pricer,
        deadline: Deadline,
    ) -> BillingQuarter:
        with self._unit_of_work("record_volume", deadline) as session:
            if not self._increment(
                session, org_id, quarter_key, domestic_delta, import_export_delta
            ):
                self._raise_frozen(session, org_id, quarter_key)
                # First volume for this quarter.  A concurrent writer may
                # insert it first; the savepoint keeps our transaction alive.
                savepoint = session.begin_nested()
                try:
                    blank = BillingQuarter.blank(org_id, quarter_key)
                    session.add(
                        BillingQuarterModel.from_dto(
                            replace(
                                blank,
                                domestic_volume=domestic_delta,
                                import_export_volume=import_export_delta,
                            ),
                            created_by_id=org_id,
                        )
                    )
                    session.flush()
                    savepoint.commit()
                except IntegrityError:
                    logger.debug(
                        "billing_quarter_insert_race",
                        extra={"org_id": org_id, "quarter_key": quarter_key.label},
                    )
                    savepoint.rollback()
                    if not self._increment(
                        session, org_id, quarter_key, domestic_delta, import_export_delta
                    ):
                        self._raise_frozen(session, org_id, quarter_key)
                        raise

            model = self._lock_quarter(session, org_id, quarter_key)
            priced = pricer(model.to_dto())
            model.apply_pricing(priced)
        return priced

    def get_billing_quarter(
        self, org_id: str, quarter_key: QuarterKey, deadline: Deadline | None = None
    ) -> BillingQuarter | None:
        session = self._session_factory()
        try:
            model = session.execute(
                select(BillingQuarterModel).where(*self._quarter_filter(org_id, quarter_key))
            ).scalar_one_or_none()
            if deadline is not None:
                deadline.check("get_billing_quarter")
            return model.to_dto() if model is not None else None
        except OperationalError as e:
            raise TransientPersistenceError(f"get_billing_quarter failed: {e.orig}") from e
        finally:
            session.close()

    def list_quarters(self, org_id: str) -> list[BillingQuarter]:
        session = self._session_factory()
        try:
            models = session.execute(
                select(BillingQuarterModel)
                .where(BillingQuarterModel.org_id == org_id)
                .order_by(BillingQuarterModel.quarter_start)
            ).scalars()
            return [m.to_dto() for m in models]
        finally:
            session.close()

    def save_quarter(self, quarter: BillingQuarter, deadline: Deadline) -> BillingQuarter:
        with self._unit_of_work("save_quarter", deadline) as session:
            model = self._lock_quarter(session, quarter.org_id, quarter.quarter_key)
            if model is None:
                session.add(BillingQuarterModel.from_dto(quarter, created_by_id=quarter.org_id))
                stored = quarter
            else:
                model.apply(quarter)
                stored = replace(quarter, id=model.id)
        return stored

    def update_quarter(
        self,
        org_id: str,
        quarter_key: QuarterKey,
        updater: QuarterUpdater,
        deadline: Deadline,
    ) -> BillingQuarter:
        with self._unit_of_work("update_quarter", deadline) as session:
            model = self._lock_quarter(session, org_id, quarter_key)
            if model is None:
                raise QuarterNotFoundError(org_id, quarter_key.label)
            updated = updater(model.to_dto())
            model.apply_pricing(updated)
        return updated

    def _load_profile(self, session: Session, org_id: str) -> OrgBillingProfileModel | None:
        return session.execute(
            select(OrgBillingProfileModel).where(OrgBillingProfileModel.org_id == org_id)
        ).scalar_one_or_none()

    def get_profile(self, org_id: str) -> OrgBillingProfile | None:
        session = self._session_factory()
        try:
            model = self._load_profile(session, org_id)
            return model.to_dto() if model is not None else None
        finally:
            session.close()

    def save_profile(self, profile: OrgBillingProfile, deadline: Deadline) -> OrgBillingProfile:
        try:
            with self._unit_of_work("save_profile", deadline) as session:
                if self._load_profile(session, profile.org_id) is not None:
                    raise BillingProfileExistsError(profile.org_id)
                session.add(OrgBillingProfileModel.from_dto(profile, created_by_id=profile.org_id))
        except IntegrityError as e:
            raise BillingProfileExistsError(profile.org_id) from e
        return profile

    def update_profile(self, profile: OrgBillingProfile, deadline: Deadline) -> OrgBillingProfile:
        with self._unit_of_work("update_profile", deadline) as session:
            model = self._load_profile(session, profile.org_id)
            if model is None:
                raise BillingProfileNotFoundError(profile.org_id)
            model.apply(profile)
            model.updated_by_id = profile.org_id
        return profile
