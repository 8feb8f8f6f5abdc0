"""
Hash Record Store

Append-only ledger of document fingerprints. The newest record for a
document is authoritative. Records are removed only by hash-commit
compensation and by the reconciliation sweep.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deed_integrity.core.errors import DuplicateHashError, ValidationError
from deed_integrity.models.models import Document, DocumentHash, DocumentStatus, utcnow
from deed_integrity.services.hashing import DEFAULT_ALGORITHM, get_algorithm, is_valid_digest
from deed_integrity.services.persistence import unit_of_work

logger = logging.getLogger(__name__)


@dataclass
class HashHistory:
    """Summary of every fingerprint recorded for a document."""
    document_id: str
    records: list[DocumentHash] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return len(self.records)

    @property
    def latest(self) -> Optional[DocumentHash]:
        return self.records[-1] if self.records else None

    @property
    def hash_changes(self) -> int:
        """How many times the digest differed from the previous record."""
        return sum(
            1 for previous, current in zip(self.records, self.records[1:])
            if previous.digest != current.digest
        )

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "total_records": self.total_records,
            "hash_changes": self.hash_changes,
            "latest": self.latest.to_dict() if self.latest else None,
            "records": [record.to_dict() for record in self.records],
        }


class HashRecordStore:
    """Persistence for DocumentHash rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        document_id: str,
        digest: str,
        algorithm: str = DEFAULT_ALGORITHM,
        created_at: Optional[datetime] = None,
    ) -> DocumentHash:
        """
        Insert a fingerprint.

        Raises DuplicateHashError when the document already has a record for
        this algorithm, InvalidReferenceError when the document is gone.
        """
        algorithm = get_algorithm(algorithm).name
        if not is_valid_digest(digest, algorithm):
            raise ValidationError(f"Digest is not a valid {algorithm} hex digest")

        record = DocumentHash(
            document_id=document_id,
            digest=digest,
            algorithm=algorithm,
            created_at=created_at or utcnow(),
        )
        async with unit_of_work(
            self._session_factory,
            "append hash record",
            on_unique=lambda: DuplicateHashError(document_id, algorithm),
        ) as session:
            session.add(record)

        logger.debug(
            "Hash record %s appended",
            record.id,
            extra={"document_id": document_id, "algorithm": algorithm},
        )
        return record

    async def get_latest(self, document_id: str) -> Optional[DocumentHash]:
        """The authoritative (newest) record, or None."""
        query = (
            select(DocumentHash)
            .where(DocumentHash.document_id == document_id)
            .order_by(DocumentHash.created_at.desc(), DocumentHash.id.desc())
            .limit(1)
        )
        async with unit_of_work(self._session_factory, "get latest hash") as session:
            result = await session.execute(query)
            return result.scalars().first()

    async def list_history(self, document_id: str) -> list[DocumentHash]:
        """All records for a document, oldest first."""
        query = (
            select(DocumentHash)
            .where(DocumentHash.document_id == document_id)
            .order_by(DocumentHash.created_at, DocumentHash.id)
        )
        async with unit_of_work(self._session_factory, "list hash history") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def hash_history(self, document_id: str) -> HashHistory:
        return HashHistory(document_id=document_id, records=await self.list_history(document_id))

    async def find_by_digest(self, digest: str, algorithm: Optional[str] = None) -> list[DocumentHash]:
        """Records sharing a digest; more than one document means duplicate content."""
        query = select(DocumentHash).where(DocumentHash.digest == digest.lower())
        if algorithm:
            query = query.where(DocumentHash.algorithm == get_algorithm(algorithm).name)
        query = query.order_by(DocumentHash.created_at)

        async with unit_of_work(self._session_factory, "find hash by digest") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def delete(self, record_id: str) -> bool:
        """Remove a record. Returns False if it was already gone."""
        query = (
            delete(DocumentHash)
            .where(DocumentHash.id == record_id)
            .execution_options(synchronize_session=False)
        )
        async with unit_of_work(self._session_factory, "delete hash record") as session:
            result = await session.execute(query)
            deleted = result.rowcount > 0

        if deleted:
            logger.info("Hash record %s deleted", record_id, extra={"hash_record_id": record_id})
        return deleted

    async def list_orphaned(self, older_than: datetime) -> list[DocumentHash]:
        """Records created before older_than whose document is still pending."""
        query = (
            select(DocumentHash)
            .join(Document, Document.id == DocumentHash.document_id)
            .where(
                Document.status == DocumentStatus.PENDING.value,
                DocumentHash.created_at < older_than,
            )
            .order_by(DocumentHash.created_at)
        )
        async with unit_of_work(self._session_factory, "list orphaned hashes") as session:
            result = await session.execute(query)
            return list(result.scalars().all())
