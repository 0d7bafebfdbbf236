"""
DocumentPersistenceCoordinator tests against the in-memory store.

Covers create/update/transition/delete semantics, ownership, locking,
optimistic versions, duplicate numbers, transient retry, fail-closed
timeouts and partial item replacement.
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from commerce_config.schema import PersistenceSettings
from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.exceptions import (
    DocumentLockedError,
    DocumentNotFoundError,
    DocumentOwnershipError,
    DuplicateDocumentNumberError,
    EmptyDocumentError,
    InvalidTransitionError,
    MissingFieldError,
    OptimisticLockError,
    PartialItemReplacementError,
    PersistenceError,
    PersistenceTimeoutError,
    QuantityBelowMinimumError,
    TransientPersistenceError,
    ValidationError,
)
from commerce_modules.documents.models import (
    Counterparty,
    DocumentStatus,
    DocumentType,
    LineItemInput,
)
from commerce_modules.documents.service import DocumentPersistenceCoordinator
from commerce_modules.documents.store import InMemoryDocumentStore
from tests.helpers import ISSUER_ID, OTHER_ISSUER_ID, no_sleep


class FlakyStore(InMemoryDocumentStore):
    """Fails the first ``failures`` writes with a transient error."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.write_attempts = 0

    def _maybe_fail(self):
        self.write_attempts += 1
        if self.write_attempts <= self.failures:
            raise TransientPersistenceError("database is locked")

    def save_document(self, document, deadline):
        self._maybe_fail()
        return super().save_document(document, deadline)

    def replace_items(self, document, expected_version, deadline):
        self._maybe_fail()
        return super().replace_items(document, expected_version, deadline)


class PartialDeleteStore(InMemoryDocumentStore):
    """
    Simulates a delete phase that removed only some rows and was committed
    by a misbehaving backend: stores the truncated item set, then raises.
    """

    def __init__(self):
        super().__init__()
        self.fail_next_replace = False

    def replace_items(self, document, expected_version, deadline):
        if self.fail_next_replace:
            self.fail_next_replace = False
            current = self.get_document(document.id)
            truncated = replace(current, items=current.items[:1])
            super().replace_items(truncated, expected_version, deadline)
            raise PartialItemReplacementError(
                str(document.id), len(current.items), 1
            )
        return super().replace_items(document, expected_version, deadline)


@pytest.fixture
def draft(coordinator, counterparty, sample_items):
    return coordinator.create_document(
        issuer_id=ISSUER_ID,
        document_type=DocumentType.TAX_INVOICE,
        counterparty=counterparty,
        items=sample_items,
        discount_percent="10",
    )


class TestCreate:

    def test_create_prices_and_totals(self, draft):
        assert draft.status == DocumentStatus.DRAFT
        assert draft.version == 1
        assert draft.number == "INV-400000"
        assert draft.issue_date == date(2024, 1, 1)
        assert [i.total for i in draft.items] == [Decimal("236.00"), Decimal("52.50")]
        assert draft.subtotal == Decimal("250.00")
        assert draft.tax_amount == Decimal("38.50")
        assert draft.discount_amount == Decimal("25.00")
        assert draft.total_amount == Decimal("263.50")

    def test_round_trip(self, coordinator, draft):
        assert coordinator.get_document(draft.id) == draft

    def test_generated_numbers_skip_existing(self, coordinator, counterparty):
        coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.TAX_INVOICE,
            counterparty=counterparty,
            number="INV-400000",
        )
        generated = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.TAX_INVOICE,
            counterparty=counterparty,
        )
        assert generated.number == "INV-400001"

    def test_duplicate_manual_number_rejected(self, coordinator, counterparty, draft):
        with pytest.raises(DuplicateDocumentNumberError):
            coordinator.create_document(
                issuer_id=ISSUER_ID,
                document_type=DocumentType.TAX_INVOICE,
                counterparty=counterparty,
                number=f"  {draft.number} ",
            )

    def test_same_number_allowed_in_other_series(self, coordinator, counterparty, draft):
        other_issuer = coordinator.create_document(
            issuer_id=OTHER_ISSUER_ID,
            document_type=DocumentType.TAX_INVOICE,
            counterparty=counterparty,
            number=draft.number,
        )
        other_type = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.PURCHASE_ORDER,
            counterparty=counterparty,
            number=draft.number,
        )
        assert other_issuer.number == other_type.number == draft.number

    def test_invalid_item_rejected_before_any_write(self, coordinator, counterparty, document_store):
        with pytest.raises(QuantityBelowMinimumError):
            coordinator.create_document(
                issuer_id=ISSUER_ID,
                document_type=DocumentType.TAX_INVOICE,
                counterparty=counterparty,
                items=[LineItemInput("Dust", "0.001", "10", "18")],
            )
        assert not document_store.number_exists(ISSUER_ID, DocumentType.TAX_INVOICE, "INV-400000")

    def test_counterparty_name_required(self, coordinator):
        with pytest.raises(MissingFieldError):
            coordinator.create_document(
                issuer_id=ISSUER_ID,
                document_type=DocumentType.TAX_INVOICE,
                counterparty=Counterparty(name="  "),
            )

    def test_note_fields_only_on_notes(self, coordinator, counterparty):
        note = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.CREDIT_NOTE,
            counterparty=counterparty,
            items=[LineItemInput("Return of 1 rod", "1", "100", "18")],
            reference_document_number="INV-400000",
            reference_document_date=date(2023, 12, 20),
            reason="Damaged in transit",
        )
        assert note.number.startswith("CN-")
        assert note.reason == "Damaged in transit"

        with pytest.raises(ValidationError) as exc_info:
            coordinator.create_document(
                issuer_id=ISSUER_ID,
                document_type=DocumentType.TAX_INVOICE,
                counterparty=counterparty,
                reason="not allowed",
            )
        assert exc_info.value.field == "reason"

    def test_created_log_and_context(self, coordinator, counterparty, captured_logs):
        doc = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.PROFORMA_INVOICE,
            counterparty=counterparty,
            actor_id="user-7",
        )
        created = [r for r in captured_logs() if r["message"] == "document_created"]
        assert len(created) == 1
        assert created[0]["document_id"] == str(doc.id)
        assert created[0]["actor_id"] == "user-7"
        assert created[0]["number"] == doc.number


class TestUpdate:

    def test_replace_items_recomputes_totals(self, coordinator, draft):
        updated = coordinator.update_document(
            draft.id,
            actor_issuer_id=ISSUER_ID,
            items=[LineItemInput("Cement", "10", "350", "28")],
        )
        assert updated.version == 2
        assert len(updated.items) == 1
        assert updated.subtotal == Decimal("3500.00")
        assert updated.tax_amount == Decimal("980.00")
        assert updated.discount_amount == Decimal("350.00")
        assert updated.total_amount == Decimal("4130.00")
        assert coordinator.get_document(draft.id) == updated

    def test_discount_only_update_keeps_items(self, coordinator, draft):
        updated = coordinator.update_document(draft.id, actor_issuer_id=ISSUER_ID, discount_percent="0")
        assert updated.items == draft.items
        assert updated.total_amount == Decimal("288.50")

    def test_none_leaves_fields_unchanged(self, coordinator, draft):
        updated = coordinator.update_document(draft.id, actor_issuer_id=ISSUER_ID, notes="Net 30")
        assert updated.notes == "Net 30"
        assert updated.counterparty == draft.counterparty
        assert updated.number == draft.number
        assert updated.total_amount == draft.total_amount

    def test_other_issuer_cannot_update(self, coordinator, draft):
        with pytest.raises(DocumentOwnershipError):
            coordinator.update_document(draft.id, actor_issuer_id=OTHER_ISSUER_ID, notes="x")
        assert coordinator.get_document(draft.id).notes is None

    def test_stale_version_rejected(self, coordinator, draft):
        coordinator.update_document(draft.id, actor_issuer_id=ISSUER_ID, notes="first")
        with pytest.raises(OptimisticLockError):
            coordinator.update_document(
                draft.id, actor_issuer_id=ISSUER_ID, expected_version=1, notes="second"
            )
        assert coordinator.get_document(draft.id).notes == "first"

    def test_terminal_document_locked(self, coordinator, draft):
        coordinator.transition_document(draft.id, DocumentStatus.CANCELLED, actor_issuer_id=ISSUER_ID)
        with pytest.raises(DocumentLockedError) as exc_info:
            coordinator.update_document(draft.id, actor_issuer_id=ISSUER_ID, notes="late")
        assert exc_info.value.operation == "update"

    @pytest.mark.parametrize("actions", [["send"], ["send", "accept"]])
    def test_sent_document_cannot_be_emptied(self, coordinator, draft, actions):
        for action in actions:
            coordinator.perform_action(draft.id, action, actor_issuer_id=ISSUER_ID)
        before = coordinator.get_document(draft.id)

        with pytest.raises(EmptyDocumentError) as exc_info:
            coordinator.update_document(draft.id, actor_issuer_id=ISSUER_ID, items=[])
        assert exc_info.value.action == "update"
        assert coordinator.get_document(draft.id) == before

    def test_sent_document_items_can_still_be_replaced(self, coordinator, draft):
        coordinator.perform_action(draft.id, "send", actor_issuer_id=ISSUER_ID)
        updated = coordinator.update_document(
            draft.id,
            actor_issuer_id=ISSUER_ID,
            items=[LineItemInput("Cement", "10", "350", "28")],
        )
        assert updated.status == DocumentStatus.SENT
        assert len(updated.items) == 1

    def test_draft_can_be_emptied(self, coordinator, draft):
        updated = coordinator.update_document(draft.id, actor_issuer_id=ISSUER_ID, items=[])
        assert updated.items == ()
        assert updated.total_amount == Decimal("0.00")

    def test_renumber_to_taken_number_rejected(self, coordinator, counterparty, draft):
        other = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.TAX_INVOICE,
            counterparty=counterparty,
        )
        with pytest.raises(DuplicateDocumentNumberError):
            coordinator.update_document(other.id, actor_issuer_id=ISSUER_ID, number=draft.number)

    def test_unknown_document(self, coordinator):
        from uuid import uuid4

        with pytest.raises(DocumentNotFoundError):
            coordinator.update_document(uuid4(), actor_issuer_id=ISSUER_ID, notes="x")


class TestTransitions:

    def test_full_happy_path(self, coordinator, draft, audit_records):
        sent = coordinator.transition_document(draft.id, DocumentStatus.SENT, actor_issuer_id=ISSUER_ID)
        accepted = coordinator.perform_action(draft.id, "accept", actor_issuer_id=ISSUER_ID)
        paid = coordinator.perform_action(draft.id, "pay", actor_issuer_id=ISSUER_ID, actor_id="user-1")

        assert (sent.version, accepted.version, paid.version) == (2, 3, 4)
        assert paid.status == DocumentStatus.PAID
        assert [(r.from_status, r.to_status) for r in audit_records] == [
            (DocumentStatus.DRAFT, DocumentStatus.SENT),
            (DocumentStatus.SENT, DocumentStatus.ACCEPTED),
            (DocumentStatus.ACCEPTED, DocumentStatus.PAID),
        ]
        assert audit_records[-1].actor_id == "user-1"

    def test_invalid_transition_leaves_document(self, coordinator, draft, audit_records):
        with pytest.raises(InvalidTransitionError):
            coordinator.transition_document(draft.id, DocumentStatus.PAID, actor_issuer_id=ISSUER_ID)
        assert coordinator.get_document(draft.id) == draft
        assert audit_records == []

    def test_string_status_accepted(self, coordinator, draft):
        assert coordinator.transition_document(draft.id, "sent", actor_issuer_id=ISSUER_ID).status == DocumentStatus.SENT

    def test_unknown_status_string(self, coordinator, draft, audit_records):
        with pytest.raises(InvalidTransitionError) as exc_info:
            coordinator.transition_document(draft.id, "archived", actor_issuer_id=ISSUER_ID)
        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "archived"
        assert exc_info.value.document_type == "tax_invoice"
        assert coordinator.get_document(draft.id) == draft
        assert audit_records == []

    def test_empty_document_cannot_be_sent(self, coordinator, counterparty):
        empty = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.PURCHASE_ORDER,
            counterparty=counterparty,
        )
        with pytest.raises(EmptyDocumentError):
            coordinator.transition_document(empty.id, DocumentStatus.SENT, actor_issuer_id=ISSUER_ID)

    def test_failed_write_emits_no_audit(self, coordinator, draft, audit_records):
        with pytest.raises(PersistenceTimeoutError):
            deadline = Deadline(10.0)
            deadline.cancel()
            coordinator.transition_document(
                draft.id, DocumentStatus.SENT, actor_issuer_id=ISSUER_ID, deadline=deadline
            )
        assert audit_records == []
        assert coordinator.get_document(draft.id).status == DocumentStatus.DRAFT


class TestDelete:

    def test_draft_can_be_deleted(self, coordinator, draft, document_store):
        deleted = coordinator.delete_document(draft.id, actor_issuer_id=ISSUER_ID)
        assert deleted.is_deleted
        with pytest.raises(DocumentNotFoundError):
            coordinator.get_document(draft.id)
        # Logical only; the row and its number remain
        assert document_store.get_document(draft.id) is not None
        assert document_store.number_exists(ISSUER_ID, DocumentType.TAX_INVOICE, draft.number)

    def test_in_flight_document_cannot_be_deleted(self, coordinator, draft):
        coordinator.transition_document(draft.id, DocumentStatus.SENT, actor_issuer_id=ISSUER_ID)
        with pytest.raises(DocumentLockedError):
            coordinator.delete_document(draft.id, actor_issuer_id=ISSUER_ID)

    def test_settled_document_can_be_deleted(self, coordinator, draft):
        coordinator.perform_action(draft.id, "send", actor_issuer_id=ISSUER_ID)
        coordinator.perform_action(draft.id, "reject", actor_issuer_id=ISSUER_ID)
        assert coordinator.delete_document(draft.id, actor_issuer_id=ISSUER_ID).is_deleted

    def test_other_issuer_cannot_delete(self, coordinator, draft):
        with pytest.raises(DocumentOwnershipError):
            coordinator.delete_document(draft.id, actor_issuer_id=OTHER_ISSUER_ID)


class TestRetryAndTimeouts:

    def _coordinator(self, store, clock, max_attempts=3):
        return DocumentPersistenceCoordinator(
            store,
            clock,
            settings=PersistenceSettings(max_attempts=max_attempts, backoff_seconds=0),
            sleep=no_sleep,
        )

    def test_transient_failures_are_retried(self, clock, counterparty, sample_items):
        store = FlakyStore(failures=2)
        doc = self._coordinator(store, clock).create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.TAX_INVOICE,
            counterparty=counterparty,
            items=sample_items,
        )
        assert store.write_attempts == 3
        assert store.get_document(doc.id) == doc

    def test_retry_exhaustion_applies_nothing(self, clock, counterparty, sample_items, captured_logs):
        store = FlakyStore(failures=10)
        with pytest.raises(PersistenceError) as exc_info:
            self._coordinator(store, clock).create_document(
                issuer_id=ISSUER_ID,
                document_type=DocumentType.TAX_INVOICE,
                counterparty=counterparty,
                items=sample_items,
            )
        assert exc_info.value.attempts == 3
        assert "no changes applied" in str(exc_info.value)
        assert not isinstance(exc_info.value, TransientPersistenceError)
        assert not store.number_exists(ISSUER_ID, DocumentType.TAX_INVOICE, "INV-400000")
        assert any(r["message"] == "persistence_failed" for r in captured_logs())

    def test_expired_deadline_fails_closed(self, coordinator, draft):
        monotonic_now = [0.0]
        deadline = Deadline(1.0, monotonic=lambda: monotonic_now[0])
        monotonic_now[0] = 5.0
        with pytest.raises(PersistenceTimeoutError) as exc_info:
            coordinator.update_document(
                draft.id,
                actor_issuer_id=ISSUER_ID,
                items=[LineItemInput("Late", "1", "1", "0")],
                deadline=deadline,
            )
        assert exc_info.value.cancelled is False
        assert coordinator.get_document(draft.id) == draft


class TestPartialReplacement:

    def test_partial_delete_is_restored_and_surfaced(self, clock, counterparty, sample_items, captured_logs):
        store = PartialDeleteStore()
        coordinator = DocumentPersistenceCoordinator(
            store, clock, settings=PersistenceSettings(backoff_seconds=0), sleep=no_sleep
        )
        original = coordinator.create_document(
            issuer_id=ISSUER_ID,
            document_type=DocumentType.TAX_INVOICE,
            counterparty=counterparty,
            items=sample_items,
        )
        store.fail_next_replace = True

        with pytest.raises(PartialItemReplacementError) as exc_info:
            coordinator.update_document(
                original.id,
                actor_issuer_id=ISSUER_ID,
                items=[LineItemInput("New", "1", "1", "0")],
            )

        assert exc_info.value.restored is True
        assert exc_info.value.expected_deleted == 2
        assert exc_info.value.actual_deleted == 1
        stored = coordinator.get_document(original.id)
        assert stored.items == original.items
        assert stored.total_amount == original.total_amount
        assert any(r["message"] == "item_replacement_partial" for r in captured_logs())
