"""
Document number generation (``commerce_modules.documents.numbering``).

Responsibility
--------------
Produces type-prefixed document numbers that are distinct within an
issuer's series.  Formats are stable because stored numbers already use
them:

    proforma_invoice   PI-<base36 epoch milliseconds, upper case>
    tax_invoice        INV-<last 6 digits of epoch milliseconds>
    purchase_order     PO-<last 6 digits of epoch milliseconds>
    debit_note         DN-<base36 epoch milliseconds, upper case>
    credit_note        CN-<base36 epoch milliseconds, upper case>

Invariants enforced
-------------------
* Two calls for the same (issuer, document type) on one generator never
  return the same number, even within the same millisecond: the stamp is
  advanced past the last one issued.
* A caller-supplied ``is_taken`` predicate lets the generator skip
  numbers that already exist in storage.  Persistence still enforces
  uniqueness; the generator only avoids predictable collisions.

Failure modes
-------------
* ``DuplicateDocumentNumberError`` if no free number is found within
  ``max_probes`` advances.
"""

from __future__ import annotations

import string
import threading
from typing import Callable

from commerce_kernel.domain.clock import Clock
from commerce_kernel.exceptions import DuplicateDocumentNumberError, MissingFieldError
from commerce_kernel.logging_config import get_logger
from commerce_modules.documents.models import DocumentType

logger = get_logger("modules.documents.numbering")

_BASE36_DIGITS = string.digits + string.ascii_uppercase

PREFIXES: dict[DocumentType, str] = {
    DocumentType.PROFORMA_INVOICE: "PI",
    DocumentType.TAX_INVOICE: "INV",
    DocumentType.PURCHASE_ORDER: "PO",
    DocumentType.DEBIT_NOTE: "DN",
    DocumentType.CREDIT_NOTE: "CN",
}

_TAIL_FORMATS = frozenset({DocumentType.TAX_INVOICE, DocumentType.PURCHASE_ORDER})


def to_base36(value: int) -> str:
    """Upper-case base36 rendering of a non-negative integer."""
    if value < 0:
        raise ValueError(f"base36 requires a non-negative value, got {value}")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def format_number(document_type: DocumentType, epoch_ms: int) -> str:
    """Render the number for ``document_type`` at ``epoch_ms``."""
    prefix = PREFIXES[document_type]
    if document_type in _TAIL_FORMATS:
        return f"{prefix}-{str(epoch_ms)[-6:]}"
    return f"{prefix}-{to_base36(epoch_ms)}"


def normalize_manual_number(number: str | None) -> str:
    """Trim a user-entered number; blank numbers are rejected."""
    if number is None or not number.strip():
        raise MissingFieldError("number")
    return number.strip()


class DocumentNumberGenerator:
    """Thread-safe number generator driven by an injected clock."""

    def __init__(self, clock: Clock, max_probes: int = 10_000):
        self._clock = clock
        self._max_probes = max_probes
        self._last_stamp: dict[tuple[str, DocumentType], int] = {}
        self._last_number: dict[tuple[str, DocumentType], str] = {}
        self._lock = threading.Lock()

    def next_number(
        self,
        issuer_id: str,
        document_type: DocumentType,
        is_taken: Callable[[str], bool] | None = None,
    ) -> str:
        """
        Generate the next number for the issuer's series.

        Args:
            issuer_id: Organization issuing the document.
            document_type: Series to draw from.
            is_taken: Optional predicate; True means the number already
                exists and must be skipped.

        Raises:
            DuplicateDocumentNumberError: if every probed number was taken.
        """
        key = (issuer_id, document_type)
        with self._lock:
            stamp = self._clock.epoch_ms()
            last = self._last_stamp.get(key)
            if last is not None and stamp <= last:
                stamp = last + 1

            number = format_number(document_type, stamp)
            probes = 0
            while number == self._last_number.get(key) or (
                is_taken is not None and is_taken(number)
            ):
                probes += 1
                if probes >= self._max_probes:
                    raise DuplicateDocumentNumberError(
                        issuer_id, document_type.value, number
                    )
                stamp += 1
                number = format_number(document_type, stamp)

            self._last_stamp[key] = stamp
            self._last_number[key] = number

        if probes:
            logger.debug(
                "document_number_collision_skipped",
                extra={
                    "issuer_id": issuer_id,
                    "document_type": document_type.value,
                    "probes": probes,
                },
            )
        return number
