"""
Commercial Document Domain Models (``commerce_modules.documents.models``).

Responsibility
--------------
Frozen value objects for the five commercial document types (proforma
invoice, tax invoice, purchase order, debit note, credit note), their
line items and their counterparty.

Architecture position
---------------------
**Modules layer** -- pure data definitions.  No I/O, no database.  These
objects flow into and out of ``DocumentPersistenceCoordinator`` as
immutable snapshots; a status change or edit always produces a new
``Document``.

Invariants enforced
-------------------
* All monetary fields use ``Decimal`` (never ``float``).
* ``Document.__post_init__`` enforces
  ``total_amount == subtotal + tax_amount - discount_amount``.
* Reference number, reference date and reason are only carried by debit
  and credit notes.

Failure modes
-------------
* ``ValueError`` raised in ``__post_init__`` when a constructed document
  breaks the aggregate identity or carries note-only fields.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from commerce_kernel.db.types import ZERO


class DocumentType(Enum):
    """Commercial document series.  Each has its own number prefix."""
    PROFORMA_INVOICE = "proforma_invoice"
    TAX_INVOICE = "tax_invoice"
    DEBIT_NOTE = "debit_note"
    CREDIT_NOTE = "credit_note"
    PURCHASE_ORDER = "purchase_order"

    @property
    def is_note(self) -> bool:
        return self in (DocumentType.DEBIT_NOTE, DocumentType.CREDIT_NOTE)


class DocumentStatus(Enum):
    """Lifecycle states.  Must align with ``workflows.DOCUMENT_WORKFLOW.states``."""
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PAID = "paid"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {DocumentStatus.PAID, DocumentStatus.REJECTED, DocumentStatus.CANCELLED}
)


@dataclass(frozen=True)
class Counterparty:
    """The other party named on a document (buyer on an invoice, supplier on a PO)."""
    name: str
    address: str | None = None
    tax_id: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class LineItemInput:
    """Raw line item fields as captured from the user.

    Numeric fields are accepted as ``Decimal``, ``int``, ``str`` or
    ``float`` and validated by ``calculator.price_line_item``.
    """
    description: str
    quantity: Any
    unit_price: Any
    tax_rate: Any
    unit: str | None = None
    hsn_code: str | None = None


@dataclass(frozen=True)
class LineItem:
    """A priced line item.  ``tax_amount`` and ``total`` are rounded to 2 places.

    Contract: only produced by ``calculator.price_line_item``; never
    mutated independently of its parent document.
    """
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    unit: str = "units"
    hsn_code: str | None = None

    @property
    def net_amount(self) -> Decimal:
        """quantity x unit_price at full precision."""
        return self.quantity * self.unit_price

    def to_input(self) -> LineItemInput:
        return LineItemInput(
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            tax_rate=self.tax_rate,
            unit=self.unit,
            hsn_code=self.hsn_code,
        )


@dataclass(frozen=True)
class Document:
    """A commercial document with its priced items and totals.

    Contract: frozen, validated at construction via ``__post_init__``.
    Guarantees: ``total_amount == subtotal + tax_amount - discount_amount``.
    Non-goals: does not validate ``reference_document_number`` against
    existing invoices; it is free text.
    """
    id: UUID
    document_type: DocumentType
    number: str
    issuer_id: str
    counterparty: Counterparty
    issue_date: date
    status: DocumentStatus = DocumentStatus.DRAFT
    items: tuple[LineItem, ...] = ()
    discount_percent: Decimal = ZERO
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    due_date: date | None = None
    notes: str | None = None
    reference_document_number: str | None = None
    reference_document_date: date | None = None
    reason: str | None = None
    version: int = 1
    is_deleted: bool = False
    created_by: str | None = None
    status_changed_at: datetime | None = None

    def __post_init__(self):
        expected = self.subtotal + self.tax_amount - self.discount_amount
        if self.total_amount != expected:
            raise ValueError(
                f"total_amount ({self.total_amount}) must equal subtotal + tax_amount "
                f"- discount_amount ({expected})"
            )
        if not self.document_type.is_note and (
            self.reference_document_number is not None
            or self.reference_document_date is not None
            or self.reason is not None
        ):
            raise ValueError(
                f"{self.document_type.value} cannot carry reference or reason fields"
            )
        if self.version < 1:
            raise ValueError(f"version must be >= 1, got {self.version}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class TransitionRecord:
    """One successful lifecycle transition, handed to the audit sink."""
    document_id: UUID
    document_type: DocumentType
    number: str
    from_status: DocumentStatus
    to_status: DocumentStatus
    action: str
    actor_id: str | None
    occurred_at: datetime
    metadata: dict = field(default_factory=dict)
