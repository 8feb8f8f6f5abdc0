"""
Document Lifecycle Store

Creates deed documents and moves them through their lifecycle:

    pending ──(hash commit)──> hashed ──(verification)──> verified | rejected | flagged
       ^                          │
       └──(reconciliation only)───┘

Every method is one independent unit of work.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deed_integrity.core.errors import ConflictError, InvalidStateError, NotFoundError
from deed_integrity.models.models import Document, DocumentHash, DocumentStatus, utcnow
from deed_integrity.services.persistence import unit_of_work

logger = logging.getLogger(__name__)


# Transitions reachable through set_status
ALLOWED_TRANSITIONS: dict[DocumentStatus, set[DocumentStatus]] = {
    DocumentStatus.HASHED: {
        DocumentStatus.VERIFIED,
        DocumentStatus.REJECTED,
        DocumentStatus.FLAGGED,
    },
}

DECIDED_STATUSES = {
    DocumentStatus.VERIFIED.value,
    DocumentStatus.REJECTED.value,
    DocumentStatus.FLAGGED.value,
}


class ReadinessState(str, Enum):
    """Whether a property's deed can be verified right now."""
    NO_DEED = "no_deed"          # No deed document uploaded for the property
    NOT_HASHED = "not_hashed"    # Deed uploaded, hash not committed yet
    READY = "ready"              # Deed hashed, awaiting verification
    DECIDED = "decided"          # Deed already verified, rejected or flagged


@dataclass
class PropertyReadiness:
    property_id: str
    state: ReadinessState
    document: Optional[Document] = None

    def to_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "state": self.state.value,
            "document": self.document.to_dict() if self.document else None,
        }


class DocumentStore:
    """Persistence for deed documents and their lifecycle status."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # =========================================================================
    # Create / Read
    # =========================================================================

    async def create_document(
        self,
        *,
        property_id: str,
        doc_number: str,
        uploader_id: str,
        storage_path: str,
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
        original_filename: Optional[str] = None,
    ) -> Document:
        """Register an uploaded deed in the pending state."""
        document = Document(
            property_id=property_id,
            doc_number=doc_number,
            uploader_id=uploader_id,
            storage_path=storage_path,
            file_size=file_size,
            mime_type=mime_type,
            original_filename=original_filename,
            status=DocumentStatus.PENDING.value,
        )

        def duplicate() -> ConflictError:
            return ConflictError(
                f"Document number '{doc_number}' already exists for property '{property_id}'"
            )

        async with unit_of_work(self._session_factory, "create document", on_unique=duplicate) as session:
            session.add(document)

        logger.info(
            "Registered document %s",
            document.id,
            extra={"document_id": document.id, "property_id": property_id},
        )
        return document

    async def find_document(self, document_id: str) -> Optional[Document]:
        async with unit_of_work(self._session_factory, "get document") as session:
            return await session.get(Document, document_id)

    async def get_document(self, document_id: str) -> Document:
        document = await self.find_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    async def list_by_status(
        self,
        status: DocumentStatus,
        *,
        property_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Document]:
        """Documents in a given status, oldest first (e.g. hashed = ready for verification)."""
        query = select(Document).where(Document.status == status.value)
        if property_id:
            query = query.where(Document.property_id == property_id)
        query = query.order_by(Document.created_at).limit(limit)

        async with unit_of_work(self._session_factory, "list documents") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_hashed_without_record(self) -> list[Document]:
        """Hashed documents that have lost their hash record."""
        has_record = exists().where(DocumentHash.document_id == Document.id)
        query = select(Document).where(
            Document.status == DocumentStatus.HASHED.value,
            ~has_record,
        )
        async with unit_of_work(self._session_factory, "list unbacked documents") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def verification_readiness(self, property_id: str) -> PropertyReadiness:
        """Readiness of the property's most recent deed."""
        query = (
            select(Document)
            .where(Document.property_id == property_id)
            .order_by(Document.created_at.desc())
            .limit(1)
        )
        async with unit_of_work(self._session_factory, "verification readiness") as session:
            result = await session.execute(query)
            document = result.scalars().first()

        if document is None:
            state = ReadinessState.NO_DEED
        elif document.status == DocumentStatus.HASHED.value:
            state = ReadinessState.READY
        elif document.status in DECIDED_STATUSES:
            state = ReadinessState.DECIDED
        else:
            state = ReadinessState.NOT_HASHED

        return PropertyReadiness(property_id=property_id, state=state, document=document)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _transition(
        self,
        document_id: str,
        *,
        from_status: DocumentStatus,
        values: dict,
        operation: str,
    ) -> Document:
        """Conditional update: only applies while the document is in from_status."""
        query = (
            update(Document)
            .where(Document.id == document_id, Document.status == from_status.value)
            .values(**values, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with unit_of_work(self._session_factory, operation) as session:
            result = await session.execute(query)
            if result.rowcount == 0:
                document = await session.get(Document, document_id)
                if document is None:
                    raise NotFoundError("Document", document_id)
                raise InvalidStateError(
                    f"Cannot {operation}: document is {document.status}, expected {from_status.value}",
                    current_status=document.status,
                )
            document = await session.get(Document, document_id, populate_existing=True)
        return document

    async def mark_hashed(self, document_id: str, hashed_at: Optional[datetime] = None) -> Document:
        """pending -> hashed, stamping hash_computed_at."""
        return await self._transition(
            document_id,
            from_status=DocumentStatus.PENDING,
            values={
                "status": DocumentStatus.HASHED.value,
                "hash_computed_at": hashed_at or utcnow(),
            },
            operation="mark hashed",
        )

    async def set_status(self, document_id: str, status: DocumentStatus) -> Document:
        """Apply a verification outcome (hashed -> verified | rejected | flagged)."""
        for from_status, targets in ALLOWED_TRANSITIONS.items():
            if status in targets:
                return await self._transition(
                    document_id,
                    from_status=from_status,
                    values={"status": status.value},
                    operation=f"set status {status.value}",
                )
        raise InvalidStateError(f"Status '{status.value}' cannot be set directly")

    async def reset_to_pending(self, document_id: str) -> Document:
        """hashed -> pending; used by reconciliation when the hash record is gone."""
        document = await self._transition(
            document_id,
            from_status=DocumentStatus.HASHED,
            values={"status": DocumentStatus.PENDING.value, "hash_computed_at": None},
            operation="reset to pending",
        )
        logger.warning(
            "Document %s reset to pending",
            document_id,
            extra={"document_id": document_id},
        )
        return document
