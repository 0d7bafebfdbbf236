"""
Commercial Document Workflows (``commerce_modules.documents.workflows``).

Responsibility
--------------
Declares the single transition table shared by every document type and
applies it.  ``DocumentLifecycle.transition`` validates a requested status
change, returns the new frozen document, logs a ``document_transition``
record and hands it to an optional audit sink.

Architecture position
---------------------
**Modules layer** -- declarative workflow definitions plus the pure
lifecycle applier.  Imports canonical Guard, Transition, Workflow from
``commerce_kernel.domain.workflow``.  No I/O other than logging and the
injected sink.

Invariants enforced
-------------------
* One table, parameterized by document type; today all five types map to
  the same ``DOCUMENT_WORKFLOW``.
* ``paid``, ``rejected`` and ``cancelled`` are terminal.
* A failed transition leaves the input document untouched.
* ``draft -> sent`` requires at least one line item.

Failure modes
-------------
* ``InvalidTransitionError`` for any (from, to) pair not in the table.
* ``EmptyDocumentError`` when sending a document with no items.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable

from commerce_kernel.domain.clock import Clock
from commerce_kernel.domain.workflow import Guard, Transition, Workflow
from commerce_kernel.exceptions import EmptyDocumentError, InvalidTransitionError
from commerce_kernel.logging_config import get_logger
from commerce_modules.documents.models import (
    Document,
    DocumentStatus,
    DocumentType,
    TransitionRecord,
)

logger = get_logger("modules.documents.workflows")


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

HAS_LINE_ITEMS = Guard(
    name="has_line_items",
    description="Document carries at least one line item",
)


# -----------------------------------------------------------------------------
# Document Workflow
# -----------------------------------------------------------------------------

_D = DocumentStatus

DOCUMENT_WORKFLOW = Workflow(
    name="commercial_document",
    description="Shared lifecycle for invoices, purchase orders and notes",
    initial_state=_D.DRAFT.value,
    states=tuple(s.value for s in DocumentStatus),
    transitions=(
        Transition(_D.DRAFT.value, _D.SENT.value, action="send", guard=HAS_LINE_ITEMS),
        Transition(_D.SENT.value, _D.ACCEPTED.value, action="accept"),
        Transition(_D.SENT.value, _D.REJECTED.value, action="reject"),
        Transition(_D.SENT.value, _D.PAID.value, action="pay"),
        Transition(_D.ACCEPTED.value, _D.PAID.value, action="pay"),
        Transition(_D.DRAFT.value, _D.CANCELLED.value, action="cancel"),
        Transition(_D.SENT.value, _D.CANCELLED.value, action="cancel"),
        Transition(_D.ACCEPTED.value, _D.CANCELLED.value, action="cancel"),
    ),
    terminal_states=(_D.PAID.value, _D.REJECTED.value, _D.CANCELLED.value),
)

WORKFLOWS_BY_TYPE: dict[DocumentType, Workflow] = {
    document_type: DOCUMENT_WORKFLOW for document_type in DocumentType
}

logger.info(
    "document_workflow_defined",
    extra={
        "workflow": DOCUMENT_WORKFLOW.name,
        "state_count": len(DOCUMENT_WORKFLOW.states),
        "transition_count": len(DOCUMENT_WORKFLOW.transitions),
    },
)


def workflow_for(document_type: DocumentType) -> Workflow:
    return WORKFLOWS_BY_TYPE[document_type]


AuditSink = Callable[[TransitionRecord], None]


class DocumentLifecycle:
    """Applies the transition table to documents.

    Contract: never mutates its input.  ``prepare`` validates and builds
    the new document plus its ``TransitionRecord`` without side effects;
    ``emit`` logs the record and hands it to the audit sink.  Callers that
    persist the change (the coordinator) emit only after the write
    commits; ``transition`` does both for in-memory use.
    """

    def __init__(self, clock: Clock, audit_sink: AuditSink | None = None):
        self._clock = clock
        self._audit_sink = audit_sink

    def check(self, document: Document, to_status: DocumentStatus) -> Transition:
        """Validate a transition without applying it."""
        workflow = workflow_for(document.document_type)
        transition = workflow.find_transition(document.status.value, to_status.value)
        if transition is None:
            raise InvalidTransitionError(
                document.status.value, to_status.value, document.document_type.value
            )
        if transition.guard is HAS_LINE_ITEMS and not document.items:
            raise EmptyDocumentError(document.number, transition.action)
        return transition

    def prepare(
        self,
        document: Document,
        to_status: DocumentStatus,
        actor_id: str | None = None,
    ) -> tuple[Document, TransitionRecord]:
        """
        Build the transitioned document and its record.

        Raises:
            InvalidTransitionError: pair not in the table.
            EmptyDocumentError: sending a document with no items.
        """
        transition = self.check(document, to_status)
        occurred_at = self._clock.now_utc()
        updated = replace(document, status=to_status, status_changed_at=occurred_at)
        record = TransitionRecord(
            document_id=document.id,
            document_type=document.document_type,
            number=document.number,
            from_status=document.status,
            to_status=to_status,
            action=transition.action,
            actor_id=actor_id,
            occurred_at=occurred_at,
        )
        return updated, record

    def emit(self, record: TransitionRecord) -> None:
        logger.info(
            "document_transition",
            extra={
                "document_id": str(record.document_id),
                "document_type": record.document_type.value,
                "number": record.number,
                "from_status": record.from_status.value,
                "to_status": record.to_status.value,
                "action": record.action,
                "actor_id": record.actor_id,
            },
        )
        if self._audit_sink is not None:
            self._audit_sink(record)

    def transition(
        self,
        document: Document,
        to_status: DocumentStatus,
        actor_id: str | None = None,
    ) -> Document:
        """Move ``document`` to ``to_status`` and emit the transition."""
        updated, record = self.prepare(document, to_status, actor_id)
        self.emit(record)
        return updated

    def resolve_action(self, document: Document, action: str) -> DocumentStatus:
        """Map a named action (send, accept, reject, pay, cancel) to its target status."""
        workflow = workflow_for(document.document_type)
        for t in workflow.transitions:
            if t.from_state == document.status.value and t.action == action:
                return DocumentStatus(t.to_state)
        raise InvalidTransitionError(
            document.status.value, action, document.document_type.value
        )

    def apply_action(
        self,
        document: Document,
        action: str,
        actor_id: str | None = None,
    ) -> Document:
        return self.transition(document, self.resolve_action(document, action), actor_id)
