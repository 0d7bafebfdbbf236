"""
Document storage port and implementations (``commerce_modules.documents.store``).

Responsibility
--------------
Persists documents and their item sets.  Every write is one unit of work:
the parent row (totals, status, version) and the full item set commit
together or not at all, and the caller's ``Deadline`` is checked
immediately before commit.

Implementations
---------------
* ``InMemoryDocumentStore`` -- thread-safe dictionary store for tests and
  embedding callers.  Swaps whole ``Document`` snapshots under a lock, so
  a reader sees either the old or the new item set.
* ``SqlDocumentStore`` -- SQLAlchemy store.  Locks the parent row
  (``SELECT ... FOR UPDATE``), deletes and re-inserts items, and commits
  once.  Under READ COMMITTED no reader observes the intermediate state.

Invariants enforced
-------------------
* (issuer_id, document_type, number) is unique; a clash raises
  ``DuplicateDocumentNumberError`` and never overwrites.
* Writes against a stale ``expected_version`` raise ``OptimisticLockError``.
* A delete phase that removes fewer rows than the document holds raises
  ``PartialItemReplacementError`` and the transaction rolls back.

Failure modes
-------------
* ``TransientPersistenceError`` wraps SQLAlchemy ``OperationalError``.
* ``PersistenceTimeoutError`` from ``Deadline.check`` before commit.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Generator, Protocol
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from commerce_kernel.domain.deadline import Deadline
from commerce_kernel.exceptions import (
    DocumentNotFoundError,
    DuplicateDocumentNumberError,
    OptimisticLockError,
    PartialItemReplacementError,
    TransientPersistenceError,
)
from commerce_kernel.logging_config import get_logger
from commerce_modules.documents.models import Document, DocumentType
from commerce_modules.documents.orm import DocumentItemModel, DocumentModel

logger = get_logger("modules.documents.store")


class DocumentStore(Protocol):
    """Storage port for commercial documents."""

    def save_document(self, document: Document, deadline: Deadline) -> UUID:
        """Insert a new document with its items. Returns its id."""
        ...

    def replace_items(
        self, document: Document, expected_version: int, deadline: Deadline
    ) -> Document:
        """Atomically replace the item set and parent fields. Returns the stored document."""
        ...

    def update_document(
        self, document: Document, expected_version: int, deadline: Deadline
    ) -> Document:
        """Write parent fields only (status, totals, deletion flag). Returns the stored document."""
        ...

    def get_document(self, document_id: UUID) -> Document | None:
        ...

    def number_exists(
        self,
        issuer_id: str,
        document_type: DocumentType,
        number: str,
        exclude_id: UUID | None = None,
    ) -> bool:
        ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryDocumentStore:
    """Dictionary-backed ``DocumentStore``."""

    def __init__(self) -> None:
        self._documents: dict[UUID, Document] = {}
        self._lock = threading.RLock()

    def _number_taken(
        self,
        issuer_id: str,
        document_type: DocumentType,
        number: str,
        exclude_id: UUID | None,
    ) -> bool:
        return any(
            d.issuer_id == issuer_id
            and d.document_type == document_type
            and d.number == number
            and d.id != exclude_id
            for d in self._documents.values()
        )

    def save_document(self, document: Document, deadline: Deadline) -> UUID:
        with self._lock:
            if document.id in self._documents or self._number_taken(
                document.issuer_id, document.document_type, document.number, None
            ):
                raise DuplicateDocumentNumberError(
                    document.issuer_id, document.document_type.value, document.number
                )
            deadline.check("save_document")
            self._documents[document.id] = document
        return document.id

    def _write(
        self,
        document: Document,
        expected_version: int,
        deadline: Deadline,
        operation: str,
        keep_items: bool,
    ) -> Document:
        with self._lock:
            current = self._documents.get(document.id)
            if current is None:
                raise DocumentNotFoundError(str(document.id))
            if current.version != expected_version:
                raise OptimisticLockError(
                    "Document", str(document.id), expected_version, current.version
                )
            if document.number != current.number and self._number_taken(
                document.issuer_id, document.document_type, document.number, document.id
            ):
                raise DuplicateDocumentNumberError(
                    document.issuer_id, document.document_type.value, document.number
                )
            stored = replace(document, version=expected_version + 1)
            if keep_items:
                stored = replace(stored, items=current.items)
            deadline.check(operation)
            self._documents[document.id] = stored
        return stored

    def replace_items(
        self, document: Document, expected_version: int, deadline: Deadline
    ) -> Document:
        return self._write(document, expected_version, deadline, "replace_items", False)

    def update_document(
        self, document: Document, expected_version: int, deadline: Deadline
    ) -> Document:
        return self._write(document, expected_version, deadline, "update_document", True)

    def get_document(self, document_id: UUID) -> Document | None:
        with self._lock:
            return self._documents.get(document_id)

    def number_exists(
        self,
        issuer_id: str,
        document_type: DocumentType,
        number: str,
        exclude_id: UUID | None = None,
    ) -> bool:
        with self._lock:
            return self._number_taken(issuer_id, document_type, number, exclude_id)


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------


class SqlDocumentStore:
    """SQLAlchemy-backed ``DocumentStore``.  One session per unit of work."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _unit_of_work(
        self, operation: str, deadline: Deadline
    ) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.flush()
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

    def _load_items(self, session: Session, document_id: UUID) -> list[DocumentItemModel]:
        return list(
            session.execute(
                select(DocumentItemModel)
                .where(DocumentItemModel.document_id == document_id)
                .order_by(DocumentItemModel.line_number)
            ).scalars()
        )

    def _number_taken(
        self,
        session: Session,
        issuer_id: str,
        document_type: DocumentType,
        number: str,
        exclude_id: UUID | None,
    ) -> bool:
        stmt = select(DocumentModel.id).where(
            DocumentModel.issuer_id == issuer_id,
            DocumentModel.document_type == document_type.value,
            DocumentModel.number == number,
        )
        if exclude_id is not None:
            stmt = stmt.where(DocumentModel.id != exclude_id)
        return session.execute(stmt.limit(1)).first() is not None

    def _add_items(self, session: Session, document: Document) -> None:
        for line_number, item in enumerate(document.items, start=1):
            session.add(DocumentItemModel.from_dto(item, document.id, line_number))

    def save_document(self, document: Document, deadline: Deadline) -> UUID:
        try:
            with self._unit_of_work("save_document", deadline) as session:
                if self._number_taken(
                    session, document.issuer_id, document.document_type, document.number, None
                ):
                    raise DuplicateDocumentNumberError(
                        document.issuer_id, document.document_type.value, document.number
                    )
                session.add(
                    DocumentModel.from_dto(
                        document, created_by_id=document.created_by or document.issuer_id
                    )
                )
                session.flush()
                self._add_items(session, document)
        except IntegrityError as e:
            # Lost a race with a concurrent insert of the same number
            raise DuplicateDocumentNumberError(
                document.issuer_id, document.document_type.value, document.number
            ) from e
        logger.debug(
            "document_row_inserted",
            extra={"document_id": str(document.id), "item_count": len(document.items)},
        )
        return document.id

    def _lock_parent(
        self, session: Session, document: Document, expected_version: int
    ) -> DocumentModel:
        model = session.execute(
            select(DocumentModel)
            .where(DocumentModel.id == document.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise DocumentNotFoundError(str(document.id))
        if model.version != expected_version:
            raise OptimisticLockError(
                "Document", str(document.id), expected_version, model.version
            )
        if document.number != model.number and self._number_taken(
            session, document.issuer_id, document.document_type, document.number, document.id
        ):
            raise DuplicateDocumentNumberError(
                document.issuer_id, document.document_type.value, document.number
            )
        return model

    def replace_items(
        self, document: Document, expected_version: int, deadline: Deadline
    ) -> Document:
        new_version = expected_version + 1
        try:
            with self._unit_of_work("replace_items", deadline) as session:
                model = self._lock_parent(session, document, expected_version)
                existing = session.execute(
                    select(func.count())
                    .select_from(DocumentItemModel)
                    .where(DocumentItemModel.document_id == document.id)
                ).scalar_one()
                result = session.execute(
                    delete(DocumentItemModel).where(
                        DocumentItemModel.document_id == document.id
                    )
                )
                if result.rowcount != existing:
                    raise PartialItemReplacementError(
                        str(document.id), existing, result.rowcount
                    )
                self._add_items(session, document)
                model.apply(document, version=new_version)
        except StaleDataError as e:
            raise OptimisticLockError("Document", str(document.id), expected_version) from e
        except IntegrityError as e:
            raise DuplicateDocumentNumberError(
                document.issuer_id, document.document_type.value, document.number
            ) from e
        return replace(document, version=new_version)

    def update_document(
        self, document: Document, expected_version: int, deadline: Deadline
    ) -> Document:
        new_version = expected_version + 1
        try:
            with self._unit_of_work("update_document", deadline) as session:
                model = self._lock_parent(session, document, expected_version)
                model.apply(document, version=new_version)
                items = self._load_items(session, document.id)
                stored = model.to_dto(items)
        except StaleDataError as e:
            raise OptimisticLockError("Document", str(document.id), expected_version) from e
        except IntegrityError as e:
            raise DuplicateDocumentNumberError(
                document.issuer_id, document.document_type.value, document.number
            ) from e
        return stored

    def get_document(self, document_id: UUID) -> Document | None:
        session = self._session_factory()
        try:
            model = session.get(DocumentModel, document_id)
            if model is None:
                return None
            return model.to_dto(self._load_items(session, document_id))
        finally:
            session.close()

    def number_exists(
        self,
        issuer_id: str,
        document_type: DocumentType,
        number: str,
        exclude_id: UUID | None = None,
    ) -> bool:
        session = self._session_factory()
        try:
            return self._number_taken(session, issuer_id, document_type, number, exclude_id)
        finally:
            session.close()
