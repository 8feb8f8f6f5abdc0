"""
Verification Record Store
Immutable log of verification outcomes per document.
"""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deed_integrity.models.models import Verification, VerificationVerdict, utcnow
from deed_integrity.services.persistence import unit_of_work


class VerificationStore:
    """Append and query verification outcomes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        *,
        document_id: str,
        verifier_id: str,
        verdict: VerificationVerdict,
        reason: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
        verification_storage_path: Optional[str] = None,
    ) -> Verification:
        record = Verification(
            document_id=document_id,
            verifier_id=verifier_id,
            verdict=verdict.value,
            reason=reason,
            discrepancy_evidence=evidence,
            verification_storage_path=verification_storage_path,
            created_at=utcnow(),
        )
        async with unit_of_work(self._session_factory, "append verification") as session:
            session.add(record)
        return record

    async def latest_for_document(self, document_id: str) -> Optional[Verification]:
        query = (
            select(Verification)
            .where(Verification.document_id == document_id)
            .order_by(Verification.created_at.desc())
            .limit(1)
        )
        async with unit_of_work(self._session_factory, "latest verification") as session:
            result = await session.execute(query)
            return result.scalars().first()

    async def list_for_document(self, document_id: str) -> list[Verification]:
        """Newest first."""
        query = (
            select(Verification)
            .where(Verification.document_id == document_id)
            .order_by(Verification.created_at.desc())
        )
        async with unit_of_work(self._session_factory, "list verifications") as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_by_verifier(self, verifier_id: str, limit: int = 100) -> list[Verification]:
        query = (
            select(Verification)
            .where(Verification.verifier_id == verifier_id)
            .order_by(Verification.created_at.desc())
            .limit(limit)
        )
        async with unit_of_work(self._session_factory, "list verifications by verifier") as session:
            result = await session.execute(query)
            return list(result.scalars().all())
