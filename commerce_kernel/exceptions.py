"""
Typed Exception Hierarchy for the Commerce Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Commercial documents carry money. Callers must be able to tell a bad
tax rate from a lost write from a lifecycle violation without parsing
message strings, because each needs a different user-facing response:

  - ValidationError      -> field-level message, draft preserved
  - InvalidTransition    -> action-level message, pick another action
  - ConflictError        -> regenerate or rename the document number
  - PersistenceError     -> "save failed, no changes applied"
  - GovernanceViolation  -> list every breached rule, block this transaction

Every class has a CODE attribute (machine-readable, API-safe) and carries
its context as attributes (field name, expected range, current vs.
requested state) so that logs and API payloads stay structured.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CommerceKernelError (base)
    |
    +-- ValidationError
    |   +-- NegativeMagnitudeError
    |   +-- OutOfRangeTaxRateError
    |   +-- OutOfRangeDiscountError
    |   +-- QuantityBelowMinimumError
    |   +-- InvalidAmountError
    |   +-- ExcessPrecisionError
    |   +-- EmptyDocumentError
    |   +-- MissingFieldError
    |
    +-- InvalidTransitionError
    |
    +-- ConflictError
    |   +-- DuplicateDocumentNumberError
    |
    +-- DocumentError
    |   +-- DocumentNotFoundError
    |   +-- DocumentOwnershipError
    |   +-- DocumentLockedError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- PersistenceError
    |   +-- TransientPersistenceError
    |   +-- PartialItemReplacementError
    |   +-- PersistenceTimeoutError
    |
    +-- BillingError
    |   +-- BillingProfileNotFoundError
    |   +-- BillingProfileExistsError
    |   +-- QuarterNotFoundError
    |   +-- QuarterNotClosedError
    |   +-- QuarterInvoicedError
    |   +-- InvalidInvoiceTransitionError
    |   +-- InvalidVolumeError
    |
    +-- GovernanceViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|------------------------------------
Validation   | NEGATIVE_MAGNITUDE            | quantity or unit_price < 0
             | OUT_OF_RANGE_TAX_RATE         | tax_rate outside [0, 100]
             | OUT_OF_RANGE_DISCOUNT         | discount_percent outside [0, 100]
             | QUANTITY_BELOW_MINIMUM        | 0 <= quantity < 0.01
             | INVALID_AMOUNT                | NaN, infinity, non-numeric input
             | EXCESS_PRECISION              | more than 9 decimal places
             | EMPTY_DOCUMENT                | sending a document with no items
             | MISSING_FIELD                 | required field blank
-------------|-------------------------------|------------------------------------
Lifecycle    | INVALID_TRANSITION            | (from, to) not in transition table
-------------|-------------------------------|------------------------------------
Conflict     | DUPLICATE_DOCUMENT_NUMBER     | number already used in the series
-------------|-------------------------------|------------------------------------
Document     | DOCUMENT_NOT_FOUND            | unknown or logically deleted id
             | DOCUMENT_OWNERSHIP            | actor is not the issuer
             | DOCUMENT_LOCKED               | editing a settled document
-------------|-------------------------------|------------------------------------
Concurrency  | OPTIMISTIC_LOCK_CONFLICT      | stale expected_version
-------------|-------------------------------|------------------------------------
Persistence  | TRANSIENT_PERSISTENCE_FAILURE | retryable I/O fault
             | PARTIAL_ITEM_REPLACEMENT      | item delete phase partially applied
             | PERSISTENCE_TIMEOUT           | deadline expired before commit
-------------|-------------------------------|------------------------------------
Billing      | BILLING_PROFILE_NOT_FOUND     | org has no billing profile
             | BILLING_PROFILE_EXISTS        | org activated twice
             | QUARTER_NOT_FOUND             | no volume recorded for the quarter
             | QUARTER_NOT_CLOSED            | invoicing a quarter still running
             | QUARTER_INVOICED              | volume for an invoiced quarter
             | INVALID_INVOICE_TRANSITION    | invoice status change not allowed
             | INVALID_VOLUME                | negative or non-finite volume
-------------|-------------------------------|------------------------------------
Governance   | GOVERNANCE_VIOLATION          | one or more rules breached
             | GOVERNANCE_RULE_NOT_FOUND     | unknown governance rule id

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        coordinator.update_document(doc_id, items=items, ...)
    except ValidationError as e:
        show_field_error(e.field, str(e))      # draft is untouched
    except OptimisticLockError:
        reload_and_retry()
    except PersistenceError as e:
        show_banner(e.code)                    # nothing was applied
"""

from decimal import Decimal
from typing import Any


class CommerceKernelError(Exception):
    """
    Base exception for all commerce kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "COMMERCE_KERNEL_ERROR"


# Validation exceptions


class ValidationError(CommerceKernelError):
    """Bad input shape or range. Always recoverable by correcting input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class NegativeMagnitudeError(ValidationError):
    """A magnitude that must be non-negative was negative."""

    code: str = "NEGATIVE_MAGNITUDE"

    def __init__(self, field: str, value: Decimal):
        self.value = value
        super().__init__(field, f"{field} must not be negative, got {value}")


class OutOfRangeTaxRateError(ValidationError):
    """Tax rate outside the [0, 100] percent range."""

    code: str = "OUT_OF_RANGE_TAX_RATE"

    def __init__(self, value: Decimal, minimum: Decimal, maximum: Decimal):
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            "tax_rate",
            f"tax_rate must be between {minimum} and {maximum}, got {value}",
        )


class OutOfRangeDiscountError(ValidationError):
    """Discount percent outside the [0, 100] range."""

    code: str = "OUT_OF_RANGE_DISCOUNT"

    def __init__(self, value: Decimal, minimum: Decimal, maximum: Decimal):
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            "discount_percent",
            f"discount_percent must be between {minimum} and {maximum}, got {value}",
        )


class QuantityBelowMinimumError(ValidationError):
    """Quantity is non-negative but smaller than the smallest billable unit."""

    code: str = "QUANTITY_BELOW_MINIMUM"

    def __init__(self, value: Decimal, minimum: Decimal):
        self.value = value
        self.minimum = minimum
        super().__init__(
            "quantity", f"quantity must be at least {minimum}, got {value}"
        )


class InvalidAmountError(ValidationError):
    """Value is not a finite decimal number."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, value: Any):
        self.value = value
        super().__init__(field, f"{field} is not a finite decimal: {value!r}")


class ExcessPrecisionError(ValidationError):
    """Value carries more decimal places than storage keeps."""

    code: str = "EXCESS_PRECISION"

    def __init__(self, field: str, value: Decimal, decimal_places: int):
        self.value = value
        self.decimal_places = decimal_places
        super().__init__(
            field, f"{field} allows at most {decimal_places} decimal places, got {value}"
        )


class EmptyDocumentError(ValidationError):
    """Document has no line items but the requested action needs at least one."""

    code: str = "EMPTY_DOCUMENT"

    def __init__(self, document_number: str | None, action: str):
        self.document_number = document_number
        self.action = action
        super().__init__(
            "items",
            f"Document {document_number or '<unsaved>'} has no line items; "
            f"cannot {action}",
        )


class MissingFieldError(ValidationError):
    """A required field is blank."""

    code: str = "MISSING_FIELD"

    def __init__(self, field: str):
        super().__init__(field, f"{field} is required")


# Lifecycle exceptions


class InvalidTransitionError(CommerceKernelError):
    """Requested status change is not in the transition table."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, document_type: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.document_type = document_type
        scope = f" for {document_type}" if document_type else ""
        super().__init__(
            f"Invalid transition{scope}: {from_status} -> {to_status}"
        )


# Conflict exceptions


class ConflictError(CommerceKernelError):
    """Uniqueness violation."""

    code: str = "CONFLICT"


class DuplicateDocumentNumberError(ConflictError):
    """Document number already used in the issuer's series."""

    code: str = "DUPLICATE_DOCUMENT_NUMBER"

    def __init__(self, issuer_id: str, document_type: str, number: str):
        self.issuer_id = issuer_id
        self.document_type = document_type
        self.number = number
        super().__init__(
            f"Document number {number} already exists for issuer {issuer_id} "
            f"({document_type})"
        )


# Document exceptions


class DocumentError(CommerceKernelError):
    """Base exception for document access errors."""

    code: str = "DOCUMENT_ERROR"


class DocumentNotFoundError(DocumentError):
    """Document does not exist or was logically deleted."""

    code: str = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id}")


class DocumentOwnershipError(DocumentError):
    """Only the issuing organization may mutate a document."""

    code: str = "DOCUMENT_OWNERSHIP"

    def __init__(self, document_id: str, issuer_id: str, actor_issuer_id: str):
        self.document_id = document_id
        self.issuer_id = issuer_id
        self.actor_issuer_id = actor_issuer_id
        super().__init__(
            f"Document {document_id} belongs to {issuer_id}, "
            f"not {actor_issuer_id}"
        )


class DocumentLockedError(DocumentError):
    """Document is in a status that no longer accepts the operation."""

    code: str = "DOCUMENT_LOCKED"

    def __init__(self, document_id: str, status: str, operation: str):
        self.document_id = document_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} document {document_id} in status {status}"
        )


# Concurrency exceptions


class ConcurrencyError(CommerceKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"expected version {expected_version}, found {actual_version}"
        )


# Persistence exceptions


class PersistenceError(CommerceKernelError):
    """
    Storage failure. A raised PersistenceError guarantees no change was applied.
    """

    code: str = "PERSISTENCE_ERROR"

    def __init__(self, message: str, document_id: str | None = None, attempts: int = 1):
        self.document_id = document_id
        self.attempts = attempts
        super().__init__(message)


class TransientPersistenceError(PersistenceError):
    """Retryable I/O fault (connection drop, lock timeout, busy database)."""

    code: str = "TRANSIENT_PERSISTENCE_FAILURE"


class PartialItemReplacementError(PersistenceError):
    """
    The delete phase of an item replacement only partially completed.

    Raised by stores that detect the condition and re-raised by the
    coordinator after the previous item set has been verified or restored.
    """

    code: str = "PARTIAL_ITEM_REPLACEMENT"

    def __init__(
        self,
        document_id: str,
        expected_deleted: int,
        actual_deleted: int,
        restored: bool = False,
    ):
        self.expected_deleted = expected_deleted
        self.actual_deleted = actual_deleted
        self.restored = restored
        super().__init__(
            f"Item replacement for document {document_id} deleted "
            f"{actual_deleted} of {expected_deleted} items; no changes applied",
            document_id=document_id,
        )


class PersistenceTimeoutError(PersistenceError):
    """Deadline expired or was cancelled before commit; the write rolled back."""

    code: str = "PERSISTENCE_TIMEOUT"

    def __init__(self, operation: str, timeout_seconds: float | None, cancelled: bool = False):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.cancelled = cancelled
        reason = "cancelled" if cancelled else f"exceeded {timeout_seconds}s"
        super().__init__(f"{operation} {reason}; no changes applied")


# Billing exceptions


class BillingError(CommerceKernelError):
    """Base exception for quarterly billing errors."""

    code: str = "BILLING_ERROR"


class BillingProfileNotFoundError(BillingError):
    """Organization has no billing profile (never activated)."""

    code: str = "BILLING_PROFILE_NOT_FOUND"

    def __init__(self, org_id: str):
        self.org_id = org_id
        super().__init__(f"No billing profile for organization {org_id}")


class BillingProfileExistsError(BillingError):
    """Organization already has a billing profile."""

    code: str = "BILLING_PROFILE_EXISTS"

    def __init__(self, org_id: str):
        self.org_id = org_id
        super().__init__(f"Organization {org_id} is already activated for billing")


class QuarterNotFoundError(BillingError):
    """No billing quarter exists for the org and quarter key."""

    code: str = "QUARTER_NOT_FOUND"

    def __init__(self, org_id: str, quarter_key: str):
        self.org_id = org_id
        self.quarter_key = quarter_key
        super().__init__(f"No billing quarter {quarter_key} for organization {org_id}")


class QuarterNotClosedError(BillingError):
    """Quarter has not ended yet, so it cannot be invoiced."""

    code: str = "QUARTER_NOT_CLOSED"

    def __init__(self, org_id: str, quarter_key: str, quarter_end: str):
        self.org_id = org_id
        self.quarter_key = quarter_key
        self.quarter_end = quarter_end
        super().__init__(
            f"Quarter {quarter_key} for {org_id} runs until {quarter_end}; "
            "cannot invoice an open quarter"
        )


class QuarterInvoicedError(BillingError):
    """Volume cannot be attributed to a quarter whose invoice is already out."""

    code: str = "QUARTER_INVOICED"

    def __init__(self, org_id: str, quarter_key: str, invoice_status: str):
        self.org_id = org_id
        self.quarter_key = quarter_key
        self.invoice_status = invoice_status
        super().__init__(
            f"Quarter {quarter_key} for {org_id} is {invoice_status}; "
            "volume is frozen"
        )


class InvalidInvoiceTransitionError(BillingError):
    """Billing invoice status change not in the billing workflow."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, quarter_key: str, from_status: str, to_status: str):
        self.quarter_key = quarter_key
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid invoice transition for {quarter_key}: "
            f"{from_status} -> {to_status}"
        )


class InvalidVolumeError(BillingError):
    """Transacted volume must be a finite, non-negative decimal."""

    code: str = "INVALID_VOLUME"

    def __init__(self, field: str, value: Any):
        self.field = field
        self.value = value
        super().__init__(f"{field} must be a finite non-negative decimal, got {value!r}")


# Governance exceptions


class GovernanceViolationError(CommerceKernelError):
    """
    One or more governance rules were breached.

    Not fatal to the system: blocks only the transaction that was evaluated.
    ``violations`` holds every breached constraint, not just the first.
    """

    code: str = "GOVERNANCE_VIOLATION"

    def __init__(self, violations: list):
        self.violations = list(violations)
        names = ", ".join(v.constraint for v in self.violations)
        super().__init__(
            f"{len(self.violations)} governance rule(s) violated: {names}"
        )


class GovernanceRuleNotFoundError(CommerceKernelError):
    """Governance rule id does not exist."""

    code: str = "GOVERNANCE_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Governance rule not found: {rule_id}")
