"""
FastAPI dependencies that assemble the integrity services from settings.

Services are stateless; each request gets fresh instances bound to the
shared session factory and object store. Tests swap any of these through
``app.dependency_overrides``.
"""

from datetime import timedelta
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deed_integrity.core.config import Settings, get_settings
from deed_integrity.core.database import get_session_factory
from deed_integrity.services.documents import DocumentStore
from deed_integrity.services.hash_commit import HashCommitService
from deed_integrity.services.hash_records import HashRecordStore
from deed_integrity.services.reconciliation import ReconciliationSweep
from deed_integrity.services.retry import RetryPolicy
from deed_integrity.services.storage import ObjectStore, get_object_store
from deed_integrity.services.verification import VerificationService
from deed_integrity.services.verification_records import VerificationStore


def get_sessions() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


@lru_cache
def _cached_object_store() -> ObjectStore:
    return get_object_store(get_settings())


def get_store() -> ObjectStore:
    return _cached_object_store()


def get_document_store(sessions=Depends(get_sessions)) -> DocumentStore:
    return DocumentStore(sessions)


def get_hash_record_store(sessions=Depends(get_sessions)) -> HashRecordStore:
    return HashRecordStore(sessions)


def get_verification_store(sessions=Depends(get_sessions)) -> VerificationStore:
    return VerificationStore(sessions)


def _engine_options(settings: Settings) -> dict:
    return {
        "algorithm": settings.hash_algorithm,
        "retry_policy": RetryPolicy.from_settings(settings),
        "chunk_size": settings.hash_chunk_size,
        "streaming_threshold": settings.hash_streaming_threshold,
        "progress_interval": settings.hash_progress_interval,
        "size_tolerance": settings.hash_size_tolerance,
    }


def get_hash_commit_service(
    documents: DocumentStore = Depends(get_document_store),
    hash_records: HashRecordStore = Depends(get_hash_record_store),
    object_store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> HashCommitService:
    return HashCommitService(documents, hash_records, object_store, **_engine_options(settings))


def get_verification_service(
    documents: DocumentStore = Depends(get_document_store),
    hash_records: HashRecordStore = Depends(get_hash_record_store),
    verifications: VerificationStore = Depends(get_verification_store),
    settings: Settings = Depends(get_settings),
) -> VerificationService:
    return VerificationService(documents, hash_records, verifications, **_engine_options(settings))


def get_reconciliation_sweep(
    documents: DocumentStore = Depends(get_document_store),
    hash_records: HashRecordStore = Depends(get_hash_record_store),
    settings: Settings = Depends(get_settings),
) -> ReconciliationSweep:
    return ReconciliationSweep(
        documents,
        hash_records,
        grace_period=timedelta(seconds=settings.reconciliation_grace_seconds),
    )
