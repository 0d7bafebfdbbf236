"""
Commercial Document ORM Models (``commerce_modules.documents.orm``).

Responsibility
--------------
SQLAlchemy persistence models for commercial documents and their line
items.  Maps the frozen dataclasses from ``models.py`` to two tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``commerce_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``commerce_kernel``.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from commerce_kernel.db.base import Base, TrackedBase
from commerce_kernel.db.types import round_money


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; every timestamp written by this package is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# 1. DocumentModel
# ---------------------------------------------------------------------------


class DocumentModel(TrackedBase):
    """
    ORM model for commercial documents.

    Maps to the ``Document`` frozen dataclass.  Items live in
    ``commercial_document_items``.

    Guarantees:
        - (issuer_id, document_type, number) is unique
          (uq_commercial_documents_series_number), deleted rows included.
        - version is the optimistic concurrency counter; every UPDATE is
          issued with ``WHERE version = <loaded version>``.
        - Monetary fields use Decimal (Numeric(38,9) via type_annotation_map).
    """

    __tablename__ = "commercial_documents"

    __table_args__ = (
        UniqueConstraint(
            "issuer_id",
            "document_type",
            "number",
            name="uq_commercial_documents_series_number",
        ),
        Index("idx_commercial_documents_issuer_id", "issuer_id"),
        Index("idx_commercial_documents_status", "status"),
    )

    document_type: Mapped[str] = mapped_column(String(30), nullable=False)
    number: Mapped[str] = mapped_column(String(100), nullable=False)
    issuer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    counterparty_name: Mapped[str] = mapped_column(String(255), nullable=False)
    counterparty_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    counterparty_tax_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    counterparty_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    counterparty_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    discount_percent: Mapped[Decimal] = mapped_column(nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_document_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reference_document_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status_changed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }

    def to_dto(self, items: list["DocumentItemModel"]):
        """Convert ORM model (plus its ordered items) to frozen dataclass."""
        from commerce_modules.documents.models import (
            Counterparty,
            Document,
            DocumentStatus,
            DocumentType,
        )

        return Document(
            id=self.id,
            document_type=DocumentType(self.document_type),
            number=self.number,
            issuer_id=self.issuer_id,
            counterparty=Counterparty(
                name=self.counterparty_name,
                address=self.counterparty_address,
                tax_id=self.counterparty_tax_id,
                email=self.counterparty_email,
                phone=self.counterparty_phone,
            ),
            issue_date=self.issue_date,
            status=DocumentStatus(self.status),
            items=tuple(item.to_dto() for item in items),
            discount_percent=self.discount_percent,
            subtotal=round_money(self.subtotal),
            tax_amount=round_money(self.tax_amount),
            discount_amount=round_money(self.discount_amount),
            total_amount=round_money(self.total_amount),
            due_date=self.due_date,
            notes=self.notes,
            reference_document_number=self.reference_document_number,
            reference_document_date=self.reference_document_date,
            reason=self.reason,
            version=self.version,
            is_deleted=self.is_deleted,
            created_by=self.created_by_id,
            status_changed_at=_aware(self.status_changed_at),
        )

    def apply(self, dto, version: int, updated_by_id: str | None = None) -> None:
        """Copy mutable fields from ``dto`` and set the new version."""
        self.document_type = dto.document_type.value
        self.number = dto.number
        self.status = dto.status.value
        self.issue_date = dto.issue_date
        self.due_date = dto.due_date
        self.counterparty_name = dto.counterparty.name
        self.counterparty_address = dto.counterparty.address
        self.counterparty_tax_id = dto.counterparty.tax_id
        self.counterparty_email = dto.counterparty.email
        self.counterparty_phone = dto.counterparty.phone
        self.discount_percent = dto.discount_percent
        self.subtotal = dto.subtotal
        self.tax_amount = dto.tax_amount
        self.discount_amount = dto.discount_amount
        self.total_amount = dto.total_amount
        self.notes = dto.notes
        self.reference_document_number = dto.reference_document_number
        self.reference_document_date = dto.reference_document_date
        self.reason = dto.reason
        self.is_deleted = dto.is_deleted
        self.status_changed_at = dto.status_changed_at
        self.version = version
        if updated_by_id is not None:
            self.updated_by_id = updated_by_id

    @classmethod
    def from_dto(cls, dto, created_by_id: str) -> "DocumentModel":
        """Create ORM model from frozen dataclass."""
        model = cls(
            id=dto.id,
            issuer_id=dto.issuer_id,
            created_by_id=created_by_id,
        )
        model.apply(dto, version=dto.version)
        return model

    def __repr__(self) -> str:
        return f"<DocumentModel {self.document_type} {self.number} v{self.version}>"


# ---------------------------------------------------------------------------
# 2. DocumentItemModel
# ---------------------------------------------------------------------------


class DocumentItemModel(Base):
    """
    ORM model for document line items.

    Items are never updated in place: an edit deletes the document's rows
    and inserts the new set in the same transaction.
    """

    __tablename__ = "commercial_document_items"

    __table_args__ = (
        UniqueConstraint(
            "document_id", "line_number", name="uq_commercial_document_items_line"
        ),
        Index("idx_commercial_document_items_document_id", "document_id"),
    )

    document_id: Mapped[UUID] = mapped_column(
        ForeignKey("commercial_documents.id"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    hsn_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit: Mapped[str] = mapped_column(String(30), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total: Mapped[Decimal] = mapped_column(nullable=False)

    def to_dto(self):
        from commerce_modules.documents.models import LineItem

        return LineItem(
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            tax_rate=self.tax_rate,
            tax_amount=round_money(self.tax_amount),
            total=round_money(self.total),
            unit=self.unit,
            hsn_code=self.hsn_code,
        )

    @classmethod
    def from_dto(cls, dto, document_id: UUID, line_number: int) -> "DocumentItemModel":
        return cls(
            document_id=document_id,
            line_number=line_number,
            description=dto.description,
            hsn_code=dto.hsn_code,
            quantity=dto.quantity,
            unit=dto.unit,
            unit_price=dto.unit_price,
            tax_rate=dto.tax_rate,
            tax_amount=dto.tax_amount,
            total=dto.total,
        )
