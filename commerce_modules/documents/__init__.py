"""
Commercial Documents Module.

Proforma invoices, tax invoices, purchase orders, debit notes and credit
notes: line item pricing, totals, numbering, the shared status lifecycle
and atomic persistence.
"""

from commerce_modules.documents.calculator import (
    DocumentTotals,
    LineAmounts,
    compute_line_item,
    compute_totals,
    price_line_item,
)
from commerce_modules.documents.models import (
    Counterparty,
    Document,
    DocumentStatus,
    DocumentType,
    LineItem,
    LineItemInput,
    TransitionRecord,
)
from commerce_modules.documents.numbering import DocumentNumberGenerator
from commerce_modules.documents.service import DocumentPersistenceCoordinator
from commerce_modules.documents.store import (
    DocumentStore,
    InMemoryDocumentStore,
    SqlDocumentStore,
)
from commerce_modules.documents.workflows import DOCUMENT_WORKFLOW, DocumentLifecycle

__all__ = [
    "Counterparty",
    "DOCUMENT_WORKFLOW",
    "Document",
    "DocumentLifecycle",
    "DocumentNumberGenerator",
    "DocumentPersistenceCoordinator",
    "DocumentStatus",
    "DocumentStore",
    "DocumentTotals",
    "DocumentType",
    "InMemoryDocumentStore",
    "LineAmounts",
    "LineItem",
    "LineItemInput",
    "SqlDocumentStore",
    "TransitionRecord",
    "compute_line_item",
    "compute_totals",
    "price_line_item",
]
