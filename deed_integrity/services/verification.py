"""
Verification Decision Engine

Compares a freshly computed fingerprint of a comparison file against the
document's authoritative hash and records a verdict:

- VERIFIED: digests match. Reason and evidence are always empty.
- REJECTED: digests differ. A reason is always present (the verifier's, or
  a generated summary) along with structured discrepancy evidence.

The verification record is written first. Promoting the document's status
is a separate write; if it fails the verdict still stands and the result
reports ``status_promoted=False``.
"""

import asyncio
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from deed_integrity.core.errors import (
    DeedIntegrityError,
    InvalidStateError,
    ValidationError,
)
from deed_integrity.models.models import (
    Document,
    DocumentHash,
    DocumentStatus,
    VerificationVerdict,
    ensure_utc,
    utcnow,
)
from deed_integrity.services.documents import DocumentStore
from deed_integrity.services.hash_records import HashRecordStore
from deed_integrity.services.hashing import (
    DEFAULT_ALGORITHM,
    DEFAULT_CHUNK_SIZE,
    PROGRESS_INTERVAL,
    SIZE_TOLERANCE,
    STREAMING_THRESHOLD,
    ProgressCallback,
    compute_digest,
    get_algorithm,
)
from deed_integrity.services.retry import RetryPolicy, retry_with_backoff
from deed_integrity.services.storage.base import ByteSource, MemoryByteSource
from deed_integrity.services.verification_records import VerificationStore

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10


# =============================================================================
# Decision
# =============================================================================

@dataclass(frozen=True)
class VerificationDecision:
    """A verdict that is valid by construction."""
    verdict: VerificationVerdict
    reason: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None

    def __post_init__(self):
        if self.verdict == VerificationVerdict.REJECTED:
            if not self.reason or not self.reason.strip():
                raise ValidationError("A rejection requires a reason")
        elif self.reason is not None or self.evidence is not None:
            raise ValidationError("A verified decision carries no reason or evidence")


def collect_discrepancies(
    document: Document,
    stored: DocumentHash,
    *,
    computed_digest: str,
    expected_algorithm: str,
    file_size: int,
    mime_type: Optional[str] = None,
    file_name: Optional[str] = None,
    computation_ms: Optional[float] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Everything that differs between the stored deed and the comparison file."""
    now = now or utcnow()
    evidence: dict[str, Any] = {
        "hash_mismatch": True,
        "expected_digest": stored.digest,
        "computed_digest": computed_digest,
        "original_file_size": document.file_size,
        "verification_file_size": file_size,
        "stored_hash_algorithm": stored.algorithm,
    }

    if document.file_size is not None:
        difference = file_size - document.file_size
        if difference != 0:
            evidence["file_size_difference"] = difference
            if document.file_size:
                evidence["file_size_difference_percent"] = round(difference / document.file_size * 100, 2)

    other: dict[str, Any] = {}
    if document.mime_type and mime_type:
        evidence["original_mime_type"] = document.mime_type
        evidence["verification_mime_type"] = mime_type
        if document.mime_type != mime_type:
            other["mime_type_mismatch"] = True
    if stored.algorithm != expected_algorithm:
        other["algorithm_mismatch"] = True
    if other:
        evidence["other_discrepancies"] = other

    hashed_at = ensure_utc(document.hash_computed_at)
    if hashed_at is not None:
        evidence["time_since_hash_computation_days"] = round(
            (now - hashed_at).total_seconds() / 86400, 2
        )
    if file_name:
        evidence["verification_file_name"] = file_name
    if computation_ms is not None:
        evidence["computation_duration_ms"] = round(computation_ms, 2)

    return evidence


def summarize_discrepancies(evidence: dict[str, Any]) -> str:
    """Human-readable rejection reason built from the evidence."""
    reasons = ["Hash mismatch detected"]
    difference = evidence.get("file_size_difference")
    if difference:
        reasons.append(f"File size difference: {difference} bytes")
    other = evidence.get("other_discrepancies", {})
    if other.get("mime_type_mismatch"):
        reasons.append("MIME type mismatch")
    if other.get("algorithm_mismatch"):
        reasons.append("Hash algorithm mismatch")
    return ". ".join(reasons)


def make_decision(
    hash_match: bool,
    evidence: Optional[dict[str, Any]] = None,
    reason: Optional[str] = None,
) -> VerificationDecision:
    if hash_match:
        return VerificationDecision(verdict=VerificationVerdict.VERIFIED)
    evidence = evidence or {"hash_mismatch": True}
    return VerificationDecision(
        verdict=VerificationVerdict.REJECTED,
        reason=(reason or "").strip() or summarize_discrepancies(evidence),
        evidence=evidence,
    )


# =============================================================================
# Results
# =============================================================================

@dataclass
class VerificationResult:
    document_id: str
    verification_id: str
    verdict: VerificationVerdict
    reason: Optional[str]
    evidence: Optional[dict[str, Any]]
    computed_digest: str
    stored_digest: str
    hash_match: bool
    created_at: datetime
    status_promoted: bool

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "verification_id": self.verification_id,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "evidence": self.evidence,
            "computed_digest": self.computed_digest,
            "stored_digest": self.stored_digest,
            "hash_match": self.hash_match,
            "created_at": self.created_at.isoformat(),
            "status_promoted": self.status_promoted,
        }


@dataclass
class BatchItem:
    """One comparison in a batch request."""
    document_id: str
    comparison: bytes
    reason: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


@dataclass
class BatchItemResult:
    document_id: str
    result: Optional[VerificationResult] = None
    error_code: Optional[str] = None
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict:
        if self.result is not None:
            return {"document_id": self.document_id, "success": True, "result": self.result.to_dict()}
        return {
            "document_id": self.document_id,
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }


# =============================================================================
# Service
# =============================================================================

class VerificationService:
    """Verifies comparison files against committed document hashes."""

    def __init__(
        self,
        documents: DocumentStore,
        hash_records: HashRecordStore,
        verifications: VerificationStore,
        *,
        algorithm: str = DEFAULT_ALGORITHM,
        retry_policy: RetryPolicy = RetryPolicy(),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        streaming_threshold: int = STREAMING_THRESHOLD,
        progress_interval: int = PROGRESS_INTERVAL,
        size_tolerance: float = SIZE_TOLERANCE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.documents = documents
        self.hash_records = hash_records
        self.verifications = verifications
        self.algorithm = get_algorithm(algorithm).name
        self.retry_policy = retry_policy
        self.chunk_size = chunk_size
        self.streaming_threshold = streaming_threshold
        self.progress_interval = progress_interval
        self.size_tolerance = size_tolerance
        self._sleep = sleep

    async def _retry(self, operation, name: str, document_id: str):
        return await retry_with_backoff(
            operation,
            name,
            policy=self.retry_policy,
            context={"document_id": document_id},
            sleep=self._sleep,
        )

    async def _load_hashed(self, document_id: str, verifier_id: str) -> tuple[Document, DocumentHash]:
        """The document and its authoritative hash, if it can be verified."""
        if not verifier_id:
            raise ValidationError("verifier_id is required")

        document = await self._retry(
            lambda: self.documents.get_document(document_id), "retrieve document", document_id
        )
        if document.status != DocumentStatus.HASHED.value:
            raise InvalidStateError(
                f"Document '{document_id}' is not ready for verification",
                current_status=document.status,
            )

        stored = await self._retry(
            lambda: self.hash_records.get_latest(document_id), "get latest hash", document_id
        )
        if stored is None:
            raise InvalidStateError(
                f"Document '{document_id}' has no committed hash",
                current_status=document.status,
            )
        return document, stored

    async def verify(
        self,
        document_id: str,
        comparison: Union[bytes, ByteSource],
        *,
        verifier_id: str,
        reason: Optional[str] = None,
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        verification_storage_path: Optional[str] = None,
        promote_status: bool = True,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> VerificationResult:
        """
        Verify a comparison file against the document's committed hash.

        Raises:
            NotFoundError: Unknown document
            InvalidStateError: Document not hashed, or no authoritative hash
            CorruptSourceError: Comparison source longer than declared
        """
        source = MemoryByteSource(comparison) if isinstance(comparison, (bytes, bytearray)) else comparison
        try:
            document, stored = await self._load_hashed(document_id, verifier_id)
        except BaseException:
            # compute_digest never ran, so the source is still ours to close
            await source.aclose()
            raise

        if file_size is None:
            file_size = source.size

        # The comparison stream is consumed once, so hashing is not retried
        started = time.perf_counter()
        computed = await compute_digest(
            source,
            algorithm=stored.algorithm,
            chunk_size=self.chunk_size,
            streaming_threshold=self.streaming_threshold,
            on_progress=on_progress,
            progress_interval=self.progress_interval,
            size_tolerance=self.size_tolerance,
            cancel_event=cancel_event,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        hash_match = hmac.compare_digest(computed.lower(), stored.digest.lower())
        evidence = None
        if not hash_match:
            evidence = collect_discrepancies(
                document,
                stored,
                computed_digest=computed,
                expected_algorithm=self.algorithm,
                file_size=file_size,
                mime_type=mime_type,
                file_name=file_name,
                computation_ms=elapsed_ms,
            )
        decision = make_decision(hash_match, evidence, reason)

        record = await self._retry(
            lambda: self.verifications.append(
                document_id=document_id,
                verifier_id=verifier_id,
                verdict=decision.verdict,
                reason=decision.reason,
                evidence=decision.evidence,
                verification_storage_path=verification_storage_path,
            ),
            "record verification",
            document_id,
        )

        status_promoted = False
        if promote_status:
            status_promoted = await self._promote(document_id, decision.verdict)

        logger.info(
            "Document %s %s",
            document_id,
            decision.verdict.value,
            extra={
                "document_id": document_id,
                "verifier_id": verifier_id,
                "verification_id": record.id,
                "hash_match": hash_match,
            },
        )

        return VerificationResult(
            document_id=document_id,
            verification_id=record.id,
            verdict=decision.verdict,
            reason=decision.reason,
            evidence=decision.evidence,
            computed_digest=computed,
            stored_digest=stored.digest,
            hash_match=hash_match,
            created_at=ensure_utc(record.created_at),
            status_promoted=status_promoted,
        )

    async def _promote(self, document_id: str, verdict: VerificationVerdict) -> bool:
        """Move the document to the verdict's status; failure does not undo the verdict."""
        status = DocumentStatus(verdict.value)
        try:
            await self._retry(
                lambda: self.documents.set_status(document_id, status),
                "promote document status",
                document_id,
            )
        except Exception as e:
            logger.error(
                "Verification recorded but status update failed for %s: %s",
                document_id,
                e,
                extra={"document_id": document_id, "target_status": status.value},
            )
            return False
        return True

    async def verify_batch(self, items: list[BatchItem], *, verifier_id: str) -> list[BatchItemResult]:
        """
        Verify up to MAX_BATCH_SIZE documents, one after another.
        A failing item is reported in place and does not stop the batch.
        """
        if not items:
            raise ValidationError("Batch must contain at least one item")
        if len(items) > MAX_BATCH_SIZE:
            raise ValidationError(f"Batch size cannot exceed {MAX_BATCH_SIZE} items")

        results: list[BatchItemResult] = []
        for item in items:
            try:
                result = await self.verify(
                    item.document_id,
                    item.comparison,
                    verifier_id=verifier_id,
                    reason=item.reason,
                    mime_type=item.mime_type,
                    file_name=item.file_name,
                )
            except DeedIntegrityError as e:
                results.append(BatchItemResult(item.document_id, error_code=e.error_code, message=e.message))
            except Exception as e:
                logger.error(
                    "Batch verification failed for %s",
                    item.document_id,
                    exc_info=True,
                    extra={"document_id": item.document_id},
                )
                results.append(BatchItemResult(item.document_id, error_code="internal_error", message=str(e)))
            else:
                results.append(BatchItemResult(item.document_id, result=result))

        logger.info(
            "Batch verification complete: %d/%d succeeded",
            sum(1 for r in results if r.success),
            len(results),
            extra={"verifier_id": verifier_id},
        )
        return results
