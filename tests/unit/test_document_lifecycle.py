"""
Document lifecycle tests.

Every (from, to) status pair is checked against the transition table for
every document type: allowed pairs succeed, all others raise and leave
the input untouched.
"""

from datetime import date
from itertools import product
from uuid import uuid4

import pytest

from commerce_kernel.exceptions import EmptyDocumentError, InvalidTransitionError
from commerce_modules.documents.calculator import compute_totals, price_line_item
from commerce_modules.documents.models import (
    Counterparty,
    Document,
    DocumentStatus,
    DocumentType,
    LineItemInput,
)
from commerce_modules.documents.workflows import (
    DOCUMENT_WORKFLOW,
    DocumentLifecycle,
    workflow_for,
)

S = DocumentStatus

ALLOWED = {
    (S.DRAFT, S.SENT),
    (S.SENT, S.ACCEPTED),
    (S.SENT, S.REJECTED),
    (S.SENT, S.PAID),
    (S.ACCEPTED, S.PAID),
    (S.DRAFT, S.CANCELLED),
    (S.SENT, S.CANCELLED),
    (S.ACCEPTED, S.CANCELLED),
}


def make_document(
    status: DocumentStatus = S.DRAFT,
    document_type: DocumentType = DocumentType.TAX_INVOICE,
    with_items: bool = True,
) -> Document:
    items = (
        (price_line_item(LineItemInput("Cement", "10", "350", "28")),) if with_items else ()
    )
    totals = compute_totals(items)
    return Document(
        id=uuid4(),
        document_type=document_type,
        number="TEST-1",
        issuer_id="org-1",
        counterparty=Counterparty(name="Buyer"),
        issue_date=date(2024, 1, 1),
        status=status,
        items=items,
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total_amount=totals.total_amount,
    )


class TestTransitionTable:

    @pytest.mark.parametrize("document_type", list(DocumentType))
    @pytest.mark.parametrize("from_status, to_status", list(product(S, S)))
    def test_every_pair(self, clock, document_type, from_status, to_status):
        lifecycle = DocumentLifecycle(clock)
        document = make_document(from_status, document_type)

        if (from_status, to_status) in ALLOWED:
            updated = lifecycle.transition(document, to_status, actor_id="user-1")
            assert updated.status == to_status
            assert updated.status_changed_at == clock.now_utc()
        else:
            with pytest.raises(InvalidTransitionError) as exc_info:
                lifecycle.transition(document, to_status)
            assert exc_info.value.from_status == from_status.value
            assert exc_info.value.to_status == to_status.value

        assert document.status == from_status

    def test_all_types_share_one_table(self):
        assert {id(workflow_for(t)) for t in DocumentType} == {id(DOCUMENT_WORKFLOW)}

    def test_terminal_states(self):
        for status in S:
            assert DOCUMENT_WORKFLOW.is_terminal(status.value) == (
                status in {S.PAID, S.REJECTED, S.CANCELLED}
            )


class TestGuardsAndActions:

    def test_sending_empty_document_rejected(self, clock):
        lifecycle = DocumentLifecycle(clock)
        with pytest.raises(EmptyDocumentError):
            lifecycle.transition(make_document(with_items=False), S.SENT)

    def test_empty_draft_can_be_cancelled(self, clock):
        lifecycle = DocumentLifecycle(clock)
        updated = lifecycle.transition(make_document(with_items=False), S.CANCELLED)
        assert updated.status == S.CANCELLED

    @pytest.mark.parametrize(
        "status, action, expected",
        [
            (S.DRAFT, "send", S.SENT),
            (S.SENT, "accept", S.ACCEPTED),
            (S.SENT, "reject", S.REJECTED),
            (S.SENT, "pay", S.PAID),
            (S.ACCEPTED, "pay", S.PAID),
            (S.ACCEPTED, "cancel", S.CANCELLED),
        ],
    )
    def test_named_actions(self, clock, status, action, expected):
        lifecycle = DocumentLifecycle(clock)
        assert lifecycle.apply_action(make_document(status), action).status == expected

    def test_unknown_action_rejected(self, clock):
        lifecycle = DocumentLifecycle(clock)
        with pytest.raises(InvalidTransitionError):
            lifecycle.apply_action(make_document(S.PAID), "send")


class TestAuditEmission:

    def test_sink_receives_record(self, clock):
        records = []
        lifecycle = DocumentLifecycle(clock, audit_sink=records.append)
        document = make_document()

        lifecycle.transition(document, S.SENT, actor_id="user-9")

        assert len(records) == 1
        record = records[0]
        assert record.document_id == document.id
        assert record.from_status == S.DRAFT
        assert record.to_status == S.SENT
        assert record.action == "send"
        assert record.actor_id == "user-9"

    def test_prepare_has_no_side_effects(self, clock, captured_logs):
        records = []
        lifecycle = DocumentLifecycle(clock, audit_sink=records.append)

        lifecycle.prepare(make_document(), S.SENT)

        assert records == []
        assert not any(r["message"] == "document_transition" for r in captured_logs())

    def test_failed_transition_emits_nothing(self, clock):
        records = []
        lifecycle = DocumentLifecycle(clock, audit_sink=records.append)
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(make_document(S.CANCELLED), S.SENT)
        assert records == []
