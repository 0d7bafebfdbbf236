"""
Document Persistence Coordinator (``commerce_modules.documents.service``).

Responsibility
--------------
The sole public entry point for creating, editing, transitioning and
deleting commercial documents.  Prices items through the calculator,
validates status changes through ``DocumentLifecycle`` and commits the
document with its item set as one unit through a ``DocumentStore``.

Architecture position
---------------------
**Modules layer** -- orchestration.  Composes the pure calculator,
numbering and lifecycle with a storage port.  Owns retry, per-document
serialization and the commit deadline; stores own the transaction.

Invariants enforced
-------------------
* Writes to one document are serialized in-process by a keyed lock and
  across processes by the optimistic ``version`` check.
* Only the issuing organization may mutate a document.
* Item edits replace the whole item set atomically.  A partial delete is
  followed by a re-read and, if the stored state diverged, a restore of
  the previous item set; the ``PartialItemReplacementError`` is always
  re-raised.
* Only transient faults are retried, with bounded exponential backoff.
  Exhaustion surfaces as ``PersistenceError`` and nothing is applied.
* Transitions are emitted (log + audit sink) only after they commit.

Failure modes
-------------
* ``ValidationError`` subclasses from the calculator, before any I/O.
* ``InvalidTransitionError`` / ``EmptyDocumentError`` from the lifecycle.
* ``DocumentNotFoundError``, ``DocumentOwnershipError``,
  ``DocumentLockedError``, ``OptimisticLockError``,
  ``DuplicateDocumentNumberError``.
* ``PersistenceError`` (retry exhausted), ``PersistenceTimeoutError``
  (deadline expired or cancelled), ``PartialItemReplacementError``.

Usage::

    coordinator = DocumentPersistenceCoordinator(InMemoryDocumentStore(), clock)
    doc = coordinator.create_document(
        issuer_id="org-1",
        document_type=DocumentType.TAX_INVOICE,
        counterparty=Counterparty(name="Acme Traders"),
        items=[LineItemInput("Steel rods", "2", "100", "18")],
    )
    doc = coordinator.transition_document(
        doc.id, DocumentStatus.SENT, actor_issuer_id="org-1",
    )
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from typing import Any, Callable, Generator, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError

from commerce_config.schema import DocumentSettings, PersistenceSettings
from commerce_kernel.db.types import ZERO
from commerce_kernel.domain.clock import Clock, SystemClock
from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.exceptions import (
    DocumentLockedError,
    DocumentNotFoundError,
    DocumentOwnershipError,
    EmptyDocumentError,
    InvalidTransitionError,
    MissingFieldError,
    OptimisticLockError,
    PartialItemReplacementError,
    PersistenceError,
    PersistenceTimeoutError,
    TransientPersistenceError,
    ValidationError,
)
from commerce_kernel.logging_config import LogContext, get_logger
from commerce_kernel.utils.locks import KeyedLock
from commerce_kernel.utils.retry import RetryExhausted, RetryPolicy, call_with_retry
from commerce_modules.documents.calculator import (
    compute_totals,
    price_line_item,
    validate_discount,
)
from commerce_modules.documents.models import (
    Counterparty,
    Document,
    DocumentStatus,
    DocumentType,
    LineItem,
    LineItemInput,
)
from commerce_modules.documents.numbering import (
    DocumentNumberGenerator,
    normalize_manual_number,
)
from commerce_modules.documents.store import DocumentStore
from commerce_modules.documents.workflows import AuditSink, DocumentLifecycle

logger = get_logger("modules.documents.service")

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientPersistenceError,
    OperationalError,
)


def _parse_status(to_status: DocumentStatus | str, current: Document) -> DocumentStatus:
    try:
        return DocumentStatus(to_status)
    except ValueError:
        raise InvalidTransitionError(
            current.status.value, str(to_status), current.document_type.value
        ) from None


class DocumentPersistenceCoordinator:
    """
    Orchestrates document writes through a ``DocumentStore``.

    Contract:
        Every public write takes ``actor_issuer_id`` (except create, where
        the issuer is the creator) and an optional ``expected_version``.
        ``timeout_seconds`` overrides the configured budget; passing a
        ``deadline`` shares one budget across several calls.

    Non-goals:
        - Does NOT validate a note's ``reference_document_number`` against
          existing invoices; it is free text.
        - Does NOT physically delete anything.
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Clock | None = None,
        *,
        settings: PersistenceSettings | None = None,
        document_settings: DocumentSettings | None = None,
        numbering: DocumentNumberGenerator | None = None,
        audit_sink: AuditSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        locks: KeyedLock | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._settings = settings or PersistenceSettings()
        self._document_settings = document_settings or DocumentSettings()
        self._numbering = numbering or DocumentNumberGenerator(self._clock)
        self._lifecycle = DocumentLifecycle(self._clock, audit_sink)
        self._retry = RetryPolicy(
            max_attempts=self._settings.max_attempts,
            backoff_seconds=self._settings.backoff_seconds,
            backoff_multiplier=self._settings.backoff_multiplier,
        )
        self._sleep = sleep
        self._locks = locks or KeyedLock()

    # =========================================================================
    # Internals
    # =========================================================================

    def _deadline(
        self, timeout_seconds: float | None, deadline: Deadline | None
    ) -> Deadline:
        if deadline is not None:
            return deadline
        if timeout_seconds is not None:
            return Deadline(timeout_seconds)
        return Deadline(self._settings.timeout_seconds)

    def _persist(
        self,
        operation: str,
        fn: Callable[[], T],
        document_id: UUID | None,
        deadline: Deadline,
    ) -> T:
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
                    "document_id": str(document_id) if document_id else None,
                    "attempts": e.attempts,
                    "error_type": type(e.last_error).__name__,
                },
            )
            raise PersistenceError(
                "save failed, no changes applied",
                document_id=str(document_id) if document_id else None,
                attempts=e.attempts,
            ) from e.last_error

    @contextmanager
    def _serialized(
        self, document_id: UUID, deadline: Deadline, operation: str
    ) -> Generator[None, None, None]:
        acquired = False
        try:
            with self._locks.hold(document_id, timeout=deadline.remaining()):
                acquired = True
                with LogContext.bind(document_id=str(document_id)):
                    yield
        except TimeoutError as e:
            if acquired:
                raise
            raise PersistenceTimeoutError(operation, deadline.timeout_seconds) from e

    def _price(self, items: Sequence[LineItemInput | LineItem]) -> tuple[LineItem, ...]:
        settings = self._document_settings
        return tuple(
            price_line_item(
                item.to_input() if isinstance(item, LineItem) else item,
                places=settings.money_places,
                default_unit=settings.default_unit,
            )
            for item in items
        )

    @staticmethod
    def _check_counterparty(counterparty: Counterparty) -> None:
        if counterparty is None or not counterparty.name or not counterparty.name.strip():
            raise MissingFieldError("counterparty.name")

    @staticmethod
    def _check_note_fields(
        document_type: DocumentType,
        reference_document_number: str | None,
        reference_document_date: date | None,
        reason: str | None,
    ) -> None:
        if document_type.is_note:
            return
        for field_name, value in (
            ("reference_document_number", reference_document_number),
            ("reference_document_date", reference_document_date),
            ("reason", reason),
        ):
            if value is not None:
                raise ValidationError(
                    field_name,
                    f"{field_name} applies only to debit and credit notes",
                )

    def _load_live(self, document_id: UUID, deadline: Deadline) -> Document:
        document = self._persist(
            "get_document",
            lambda: self._store.get_document(document_id),
            document_id,
            deadline,
        )
        if document is None or document.is_deleted:
            raise DocumentNotFoundError(str(document_id))
        return document

    def _load_for_write(
        self,
        document_id: UUID,
        actor_issuer_id: str,
        expected_version: int | None,
        deadline: Deadline,
    ) -> Document:
        current = self._load_live(document_id, deadline)
        if current.issuer_id != actor_issuer_id:
            raise DocumentOwnershipError(
                str(document_id), current.issuer_id, actor_issuer_id
            )
        if expected_version is not None and expected_version != current.version:
            raise OptimisticLockError(
                "Document", str(document_id), expected_version, current.version
            )
        return current

    def _replace_items(
        self, current: Document, updated: Document, deadline: Deadline
    ) -> Document:
        try:
            return self._persist(
                "replace_items",
                lambda: self._store.replace_items(updated, current.version, deadline),
                current.id,
                deadline,
            )
        except PartialItemReplacementError as e:
            restored = self._restore_items(current)
            logger.error(
                "item_replacement_partial",
                extra={
                    "document_id": str(current.id),
                    "expected_deleted": e.expected_deleted,
                    "actual_deleted": e.actual_deleted,
                    "restored": restored,
                },
            )
            raise PartialItemReplacementError(
                str(current.id), e.expected_deleted, e.actual_deleted, restored=restored
            ) from e

    def _restore_items(self, previous: Document) -> bool:
        """Re-read after a partial replace; rewrite the previous items if they diverged."""
        stored = self._store.get_document(previous.id)
        if stored is None:
            return False
        if (
            stored.items == previous.items
            and stored.subtotal == previous.subtotal
            and stored.tax_amount == previous.tax_amount
            and stored.discount_amount == previous.discount_amount
            and stored.total_amount == previous.total_amount
        ):
            return False
        self._store.replace_items(
            previous, stored.version, Deadline(self._settings.timeout_seconds)
        )
        logger.warning(
            "items_restored",
            extra={"document_id": str(previous.id), "item_count": len(previous.items)},
        )
        return True

    # =========================================================================
    # Public API
    # =========================================================================

    def create_document(
        self,
        *,
        issuer_id: str,
        document_type: DocumentType,
        counterparty: Counterparty,
        items: Sequence[LineItemInput | LineItem] = (),
        issue_date: date | None = None,
        actor_id: str | None = None,
        due_date: date | None = None,
        discount_percent: Any = ZERO,
        notes: str | None = None,
        number: str | None = None,
        reference_document_number: str | None = None,
        reference_document_date: date | None = None,
        reason: str | None = None,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> Document:
        """
        Create a draft document with priced items.

        When ``number`` is omitted one is generated for the issuer's series,
        skipping numbers that already exist in the store.

        Raises:
            ValidationError: bad item fields, discount, counterparty or
                note-only fields on a non-note.
            DuplicateDocumentNumberError: ``number`` already used.
            PersistenceError: store failure after retries.
        """
        deadline = self._deadline(timeout_seconds, deadline)
        if not issuer_id:
            raise MissingFieldError("issuer_id")
        self._check_counterparty(counterparty)
        self._check_note_fields(
            document_type, reference_document_number, reference_document_date, reason
        )

        pct = validate_discount(discount_percent)
        priced = self._price(items)
        totals = compute_totals(priced, pct, places=self._document_settings.money_places)

        if number is None:
            number = self._numbering.next_number(
                issuer_id,
                document_type,
                is_taken=lambda n: self._store.number_exists(issuer_id, document_type, n),
            )
        else:
            number = normalize_manual_number(number)

        document = Document(
            id=uuid4(),
            document_type=document_type,
            number=number,
            issuer_id=issuer_id,
            counterparty=counterparty,
            issue_date=issue_date or self._clock.now_utc().date(),
            status=DocumentStatus.DRAFT,
            items=priced,
            discount_percent=pct,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            discount_amount=totals.discount_amount,
            total_amount=totals.total_amount,
            due_date=due_date,
            notes=notes,
            reference_document_number=reference_document_number,
            reference_document_date=reference_document_date,
            reason=reason,
            version=1,
            created_by=actor_id or issuer_id,
        )

        with LogContext.bind(document_id=str(document.id), actor_id=actor_id):
            self._persist(
                "create_document",
                lambda: self._store.save_document(document, deadline),
                document.id,
                deadline,
            )
            logger.info(
                "document_created",
                extra={
                    "document_type": document_type.value,
                    "number": number,
                    "issuer_id": issuer_id,
                    "item_count": len(priced),
                    "total_amount": str(document.total_amount),
                },
            )
        return document

    def update_document(
        self,
        document_id: UUID,
        *,
        actor_issuer_id: str,
        actor_id: str | None = None,
        expected_version: int | None = None,
        items: Sequence[LineItemInput | LineItem] | None = None,
        discount_percent: Any = None,
        counterparty: Counterparty | None = None,
        number: str | None = None,
        issue_date: date | None = None,
        due_date: date | None = None,
        notes: str | None = None,
        reference_document_number: str | None = None,
        reference_document_date: date | None = None,
        reason: str | None = None,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> Document:
        """
        Edit a non-terminal document.  Arguments left as None are unchanged.

        Passing ``items`` replaces the whole item set; totals are always
        recomputed from the resulting items and discount.

        Raises:
            DocumentLockedError: document is paid, rejected or cancelled.
            EmptyDocumentError: removing every item from a document past draft.
            OptimisticLockError: ``expected_version`` is stale.
            PartialItemReplacementError: the store reported a partial delete.
        """
        deadline = self._deadline(timeout_seconds, deadline)
        new_items = self._price(items) if items is not None else None
        pct = validate_discount(discount_percent) if discount_percent is not None else None
        if counterparty is not None:
            self._check_counterparty(counterparty)
        new_number = normalize_manual_number(number) if number is not None else None

        with self._serialized(document_id, deadline, "update_document"):
            current = self._load_for_write(
                document_id, actor_issuer_id, expected_version, deadline
            )
            if current.is_terminal:
                raise DocumentLockedError(str(document_id), current.status.value, "update")

            changes: dict[str, Any] = {
                key: value
                for key, value in (
                    ("counterparty", counterparty),
                    ("number", new_number),
                    ("issue_date", issue_date),
                    ("due_date", due_date),
                    ("notes", notes),
                    ("reference_document_number", reference_document_number),
                    ("reference_document_date", reference_document_date),
                    ("reason", reason),
                )
                if value is not None
            }
            self._check_note_fields(
                current.document_type,
                reference_document_number,
                reference_document_date,
                reason,
            )

            final_items = new_items if new_items is not None else current.items
            if not final_items and current.status is not DocumentStatus.DRAFT:
                raise EmptyDocumentError(current.number, "update")
            final_pct = pct if pct is not None else current.discount_percent
            totals = compute_totals(
                final_items, final_pct, places=self._document_settings.money_places
            )
            updated = replace(
                current,
                items=final_items,
                discount_percent=final_pct,
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                discount_amount=totals.discount_amount,
                total_amount=totals.total_amount,
                **changes,
            )

            with LogContext.bind(actor_id=actor_id):
                if new_items is not None:
                    stored = self._replace_items(current, updated, deadline)
                else:
                    stored = self._persist(
                        "update_document",
                        lambda: self._store.update_document(
                            updated, current.version, deadline
                        ),
                        document_id,
                        deadline,
                    )
                logger.info(
                    "document_updated",
                    extra={
                        "version": stored.version,
                        "items_replaced": new_items is not None,
                        "item_count": len(stored.items),
                        "total_amount": str(stored.total_amount),
                    },
                )
        return stored

    def transition_document(
        self,
        document_id: UUID,
        to_status: DocumentStatus | str,
        *,
        actor_issuer_id: str,
        actor_id: str | None = None,
        expected_version: int | None = None,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> Document:
        """
        Apply a lifecycle transition and persist it.

        Raises:
            InvalidTransitionError: pair not in the transition table
                or ``to_status`` is not a known status.
            EmptyDocumentError: sending a document with no items.
        """
        deadline = self._deadline(timeout_seconds, deadline)

        with self._serialized(document_id, deadline, "transition_document"):
            current = self._load_for_write(
                document_id, actor_issuer_id, expected_version, deadline
            )
            target = _parse_status(to_status, current)
            updated, record = self._lifecycle.prepare(current, target, actor_id)
            stored = self._persist(
                "transition_document",
                lambda: self._store.update_document(updated, current.version, deadline),
                document_id,
                deadline,
            )
            self._lifecycle.emit(record)
        return stored

    def perform_action(
        self,
        document_id: UUID,
        action: str,
        *,
        actor_issuer_id: str,
        actor_id: str | None = None,
        expected_version: int | None = None,
        timeout_seconds: float | None = None,
    ) -> Document:
        """Apply a named action (send, accept, reject, pay, cancel)."""
        current = self.get_document(document_id)
        target = self._lifecycle.resolve_action(current, action)
        return self.transition_document(
            document_id,
            target,
            actor_issuer_id=actor_issuer_id,
            actor_id=actor_id,
            expected_version=expected_version if expected_version is not None else current.version,
            timeout_seconds=timeout_seconds,
        )

    def delete_document(
        self,
        document_id: UUID,
        *,
        actor_issuer_id: str,
        actor_id: str | None = None,
        expected_version: int | None = None,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> Document:
        """
        Logically delete a draft or settled document.

        Sent and accepted documents are still in flight and cannot be
        deleted; cancel them first.

        Raises:
            DocumentLockedError: document is sent or accepted.
        """
        deadline = self._deadline(timeout_seconds, deadline)

        with self._serialized(document_id, deadline, "delete_document"):
            current = self._load_for_write(
                document_id, actor_issuer_id, expected_version, deadline
            )
            if not (current.status == DocumentStatus.DRAFT or current.is_terminal):
                raise DocumentLockedError(str(document_id), current.status.value, "delete")
            updated = replace(current, is_deleted=True)
            stored = self._persist(
                "delete_document",
                lambda: self._store.update_document(updated, current.version, deadline),
                document_id,
                deadline,
            )
            logger.info(
                "document_deleted",
                extra={"status": current.status.value, "actor_id": actor_id},
            )
        return stored

    def get_document(
        self,
        document_id: UUID,
        *,
        timeout_seconds: float | None = None,
        deadline: Deadline | None = None,
    ) -> Document:
        """
        Read a live document.

        Raises:
            DocumentNotFoundError: unknown or logically deleted.
        """
        return self._load_live(document_id, self._deadline(timeout_seconds, deadline))

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

    async def acreate_document(
        self, *, timeout_seconds: float | None = None, **kwargs: Any
    ) -> Document:
        """Awaitable ``create_document``; cancelling the task cancels the write."""
        deadline = self._deadline(timeout_seconds, kwargs.pop("deadline", None))
        return await self._run_async(
            functools.partial(self.create_document, deadline=deadline, **kwargs), deadline
        )

    async def aupdate_document(
        self, document_id: UUID, *, timeout_seconds: float | None = None, **kwargs: Any
    ) -> Document:
        deadline = self._deadline(timeout_seconds, kwargs.pop("deadline", None))
        return await self._run_async(
            functools.partial(self.update_document, document_id, deadline=deadline, **kwargs),
            deadline,
        )

    async def atransition_document(
        self,
        document_id: UUID,
        to_status: DocumentStatus | str,
        *,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> Document:
        deadline = self._deadline(timeout_seconds, kwargs.pop("deadline", None))
        return await self._run_async(
            functools.partial(
                self.transition_document, document_id, to_status, deadline=deadline, **kwargs
            ),
            deadline,
        )

    async def aget_document(
        self, document_id: UUID, *, timeout_seconds: float | None = None
    ) -> Document:
        deadline = self._deadline(timeout_seconds, None)
        return await self._run_async(
            functools.partial(self.get_document, document_id, deadline=deadline), deadline
        )
