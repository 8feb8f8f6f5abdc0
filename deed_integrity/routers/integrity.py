"""
Document Integrity Router
HTTP surface for the hash-commit protocol and the verification engine.

Endpoints:
- POST /api/documents                          - register an uploaded deed and commit its hash
- GET  /api/documents?status=hashed            - documents in a lifecycle status
- POST /api/documents/{id}/hash                - commit (or re-read) the authoritative hash
- POST /api/documents/{id}/verify              - verify a comparison file
- POST /api/verifications/batch                - verify up to 10 comparison files
- GET  /api/documents/{id}/hashes              - hash history
- GET  /api/hashes/{digest}                    - documents sharing a digest
- GET  /api/documents/{id}/verifications       - verification history
- GET  /api/properties/{id}/verification-status - is the property's deed ready?
- GET  /api/verifiers/{id}/verifications       - verification outcomes by verifier
- POST /api/reconciliation/run                 - repair half-committed hashes

Errors are rendered by the handlers in core.errors.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import BaseModel

from deed_integrity.core.config import Settings, get_settings
from deed_integrity.core.dependencies import (
    get_document_store,
    get_hash_commit_service,
    get_hash_record_store,
    get_reconciliation_sweep,
    get_store,
    get_verification_service,
    get_verification_store,
)
from deed_integrity.core.errors import ValidationError
from deed_integrity.models.models import DocumentStatus
from deed_integrity.services.documents import DocumentStore
from deed_integrity.services.hash_commit import HashCommitService
from deed_integrity.services.hash_records import HashRecordStore
from deed_integrity.services.reconciliation import ReconciliationSweep
from deed_integrity.services.storage import ObjectStore
from deed_integrity.services.verification import BatchItem, VerificationService
from deed_integrity.services.verification_records import VerificationStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Integrity"])


# =============================================================================
# Schemas
# =============================================================================

class HashCommitResponse(BaseModel):
    document_id: str
    digest: str
    algorithm: str
    committed_at: str
    hash_record_id: str
    already_hashed: bool


class DocumentRegisteredResponse(BaseModel):
    document: dict[str, Any]
    hash: HashCommitResponse


class DocumentListResponse(BaseModel):
    documents: list[dict[str, Any]]
    total: int


class VerificationResponse(BaseModel):
    document_id: str
    verification_id: str
    verdict: str
    reason: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None
    computed_digest: str
    stored_digest: str
    hash_match: bool
    created_at: str
    status_promoted: bool


class BatchVerificationResponse(BaseModel):
    results: list[dict[str, Any]]
    total: int
    succeeded: int


class VerificationListResponse(BaseModel):
    document_id: str
    verifications: list[dict[str, Any]]
    total: int


# =============================================================================
# Helpers
# =============================================================================

async def read_upload(file: UploadFile, settings: Settings) -> bytes:
    """Read an uploaded file, enforcing the upload size limit."""
    max_size = settings.max_upload_size_mb * 1024 * 1024
    content = await file.read(max_size + 1)
    if not content:
        raise ValidationError("Uploaded file is empty")
    if len(content) > max_size:
        raise ValidationError(f"File too large. Maximum: {settings.max_upload_size_mb}MB")
    return content


def _safe_name(filename: Optional[str]) -> str:
    name = (filename or "document").rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    return name or "document"


async def discard_upload(object_store: ObjectStore, location: str) -> None:
    """Remove a stored upload whose database row was never written."""
    try:
        await object_store.delete(location)
    except Exception as e:
        logger.error(
            "Failed to remove orphaned upload %s: %s",
            location,
            e,
            extra={"storage_path": location},
        )


# =============================================================================
# Hash Commit
# =============================================================================

@router.post(
    "/documents",
    response_model=DocumentRegisteredResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_document(
    file: UploadFile = File(...),
    property_id: str = Form(...),
    doc_number: str = Form(...),
    uploader_id: str = Form(...),
    documents: DocumentStore = Depends(get_document_store),
    commits: HashCommitService = Depends(get_hash_commit_service),
    object_store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    Store an uploaded deed, register it as pending, then commit its hash.
    """
    content = await read_upload(file, settings)
    filename = _safe_name(file.filename)
    storage_path = f"deeds/{property_id}/{uuid.uuid4()}_{filename}"

    stored = await object_store.upload(storage_path, content, file.content_type)
    try:
        document = await documents.create_document(
            property_id=property_id,
            doc_number=doc_number,
            uploader_id=uploader_id,
            storage_path=storage_path,
            file_size=stored.size,
            mime_type=stored.mime_type,
            original_filename=filename,
        )
    except Exception:
        await discard_upload(object_store, storage_path)
        raise
    result = await commits.commit_hash(document.id, timeout=settings.commit_timeout_seconds)
    document = await documents.get_document(document.id)

    return {"document": document.to_dict(), "hash": result.to_dict()}


@router.post("/documents/{document_id}/hash", response_model=HashCommitResponse)
async def commit_document_hash(
    document_id: str,
    commits: HashCommitService = Depends(get_hash_commit_service),
    settings: Settings = Depends(get_settings),
):
    """
    Compute and record the authoritative hash. Idempotent: an already
    hashed document returns its existing record.
    """
    result = await commits.commit_hash(document_id, timeout=settings.commit_timeout_seconds)
    return result.to_dict()


@router.get("/documents", response_model=DocumentListResponse)
async def list_documents(
    document_status: DocumentStatus = Query(DocumentStatus.HASHED, alias="status"),
    property_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    documents: DocumentStore = Depends(get_document_store),
):
    """Documents in one lifecycle status; the default lists those ready for verification."""
    records = await documents.list_by_status(document_status, property_id=property_id, limit=limit)
    return {"documents": [d.to_dict() for d in records], "total": len(records)}


@router.get("/documents/{document_id}/hashes")
async def get_hash_history(
    document_id: str,
    documents: DocumentStore = Depends(get_document_store),
    hash_records: HashRecordStore = Depends(get_hash_record_store),
):
    """Every fingerprint recorded for a document, oldest first."""
    await documents.get_document(document_id)
    history = await hash_records.hash_history(document_id)
    return history.to_dict()


@router.get("/hashes/{digest}")
async def find_documents_by_digest(
    digest: str,
    algorithm: Optional[str] = Query(None),
    hash_records: HashRecordStore = Depends(get_hash_record_store),
):
    """Hash records sharing a digest; more than one document means duplicate content."""
    records = await hash_records.find_by_digest(digest, algorithm)
    return {
        "digest": digest.lower(),
        "records": [r.to_dict() for r in records],
        "document_ids": sorted({r.document_id for r in records}),
        "total": len(records),
    }


# =============================================================================
# Verification
# =============================================================================

@router.post("/documents/{document_id}/verify", response_model=VerificationResponse)
async def verify_document(
    document_id: str,
    file: UploadFile = File(...),
    verifier_id: str = Form(...),
    reason: Optional[str] = Form(None),
    keep_file: bool = Form(False),
    verifier: VerificationService = Depends(get_verification_service),
    object_store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """
    Hash the uploaded comparison file and compare it with the stored hash.
    With ``keep_file`` the comparison file is stored alongside the verdict.
    """
    content = await read_upload(file, settings)
    filename = _safe_name(file.filename)

    verification_storage_path = None
    if keep_file:
        verification_storage_path = f"verifications/{document_id}/{uuid.uuid4()}_{filename}"
        await object_store.upload(verification_storage_path, content, file.content_type)

    try:
        result = await verifier.verify(
            document_id,
            content,
            verifier_id=verifier_id,
            reason=reason,
            mime_type=file.content_type,
            file_name=filename,
            verification_storage_path=verification_storage_path,
        )
    except Exception:
        if verification_storage_path:
            await discard_upload(object_store, verification_storage_path)
        raise
    return result.to_dict()


@router.post("/verifications/batch", response_model=BatchVerificationResponse)
async def verify_batch(
    files: list[UploadFile] = File(...),
    document_ids: list[str] = Form(...),
    verifier_id: str = Form(...),
    verifier: VerificationService = Depends(get_verification_service),
    settings: Settings = Depends(get_settings),
):
    """
    Verify several documents at once; ``files`` and ``document_ids`` pair up
    by position. Each item succeeds or fails on its own.
    """
    if len(files) != len(document_ids):
        raise ValidationError("Each file needs exactly one document_id")

    items = []
    for document_id, upload in zip(document_ids, files):
        items.append(
            BatchItem(
                document_id=document_id,
                comparison=await read_upload(upload, settings),
                mime_type=upload.content_type,
                file_name=_safe_name(upload.filename),
            )
        )

    results = await verifier.verify_batch(items, verifier_id=verifier_id)
    return {
        "results": [r.to_dict() for r in results],
        "total": len(results),
        "succeeded": sum(1 for r in results if r.success),
    }


@router.get("/documents/{document_id}/verifications", response_model=VerificationListResponse)
async def list_verifications(
    document_id: str,
    documents: DocumentStore = Depends(get_document_store),
    verifications: VerificationStore = Depends(get_verification_store),
):
    """Verification outcomes for a document, newest first."""
    await documents.get_document(document_id)
    records = await verifications.list_for_document(document_id)
    return {
        "document_id": document_id,
        "verifications": [r.to_dict() for r in records],
        "total": len(records),
    }


@router.get("/properties/{property_id}/verification-status")
async def property_verification_status(
    property_id: str,
    documents: DocumentStore = Depends(get_document_store),
):
    """no_deed | not_hashed | ready | decided for the property's latest deed."""
    readiness = await documents.verification_readiness(property_id)
    return readiness.to_dict()


@router.get("/verifiers/{verifier_id}/verifications")
async def list_verifier_verifications(
    verifier_id: str,
    limit: int = Query(100, ge=1, le=500),
    verifications: VerificationStore = Depends(get_verification_store),
):
    """Verification outcomes recorded by one verifier, newest first."""
    records = await verifications.list_by_verifier(verifier_id, limit=limit)
    return {
        "verifier_id": verifier_id,
        "verifications": [r.to_dict() for r in records],
        "total": len(records),
    }


# =============================================================================
# Maintenance
# =============================================================================

@router.post("/reconciliation/run")
async def run_reconciliation(sweep: ReconciliationSweep = Depends(get_reconciliation_sweep)):
    """Delete orphaned hash records and reset documents that lost theirs."""
    report = await sweep.run()
    return report.to_dict()
