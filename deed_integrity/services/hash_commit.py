"""
Atomic Hash-Commit Protocol

Establishes the authoritative fingerprint of an uploaded deed. The hash
record and the document's status live in separate tables and each write is
its own unit of work, so the two are tied together by compensation:

    1. retrieve the document
    2-3. download and hash its content (retried together; a consumed
         stream cannot be rewound)
    4. insert the hash record
    5. mark the document hashed
       -> on failure or cancellation, delete the record from step 4,
          then re-raise the original error

Every step runs through the retry layer. A crash between steps 4 and 5
that also skips compensation leaves an orphaned record for the
reconciliation sweep.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from deed_integrity.core.errors import (
    DeedIntegrityError,
    DuplicateHashError,
    HashComputationError,
    InvalidStateError,
    OperationCancelledError,
)
from deed_integrity.models.models import Document, DocumentHash, DocumentStatus, ensure_utc
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
from deed_integrity.services.retry import RetryPolicy, is_transient_error, retry_with_backoff
from deed_integrity.services.storage.base import ObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long a losing concurrent commit waits for the winner to settle
SETTLE_POLICY = RetryPolicy(max_attempts=8, initial_delay=0.05, multiplier=2.0, max_delay=1.0)


@dataclass
class HashCommitResult:
    """Outcome of a hash commit."""
    document_id: str
    digest: str
    algorithm: str
    committed_at: datetime
    hash_record_id: str
    already_hashed: bool = False

    @classmethod
    def from_record(cls, record: DocumentHash, already_hashed: bool = False) -> "HashCommitResult":
        return cls(
            document_id=record.document_id,
            digest=record.digest,
            algorithm=record.algorithm,
            committed_at=ensure_utc(record.created_at),
            hash_record_id=record.id,
            already_hashed=already_hashed,
        )

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "digest": self.digest,
            "algorithm": self.algorithm,
            "committed_at": self.committed_at.isoformat(),
            "hash_record_id": self.hash_record_id,
            "already_hashed": self.already_hashed,
        }


class HashCommitService:
    """Computes and records the authoritative hash of a document."""

    def __init__(
        self,
        documents: DocumentStore,
        hash_records: HashRecordStore,
        object_store: ObjectStore,
        *,
        algorithm: str = DEFAULT_ALGORITHM,
        retry_policy: RetryPolicy = RetryPolicy(),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        streaming_threshold: int = STREAMING_THRESHOLD,
        progress_interval: int = PROGRESS_INTERVAL,
        size_tolerance: float = SIZE_TOLERANCE,
        settle_policy: RetryPolicy = SETTLE_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.documents = documents
        self.hash_records = hash_records
        self.object_store = object_store
        self.algorithm = get_algorithm(algorithm).name
        self.retry_policy = retry_policy
        self.chunk_size = chunk_size
        self.streaming_threshold = streaming_threshold
        self.progress_interval = progress_interval
        self.size_tolerance = size_tolerance
        self.settle_policy = settle_policy
        self._sleep = sleep

    async def _retry(self, operation: Callable[[], Awaitable[T]], name: str, document_id: str) -> T:
        return await retry_with_backoff(
            operation,
            name,
            policy=self.retry_policy,
            context={"document_id": document_id},
            sleep=self._sleep,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def commit_hash(
        self,
        document_id: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> HashCommitResult:
        """
        Compute and record the authoritative hash of a document.

        Idempotent: a document that is already hashed returns its existing
        record with ``already_hashed=True``. Documents that already have a
        verification outcome raise InvalidStateError.

        Args:
            document_id: Document to hash
            on_progress: Optional (bytes_processed, total_bytes) observer
            cancel_event: Set it to abandon the commit (OperationCancelledError)
            timeout: Deadline in seconds for the whole commit
        """
        if timeout is None:
            return await self._commit(document_id, on_progress, cancel_event)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            return await asyncio.wait_for(
                self._commit(document_id, on_progress, cancel_event),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            if loop.time() < deadline:
                raise
            logger.warning(
                "Hash commit for %s exceeded %.1fs deadline",
                document_id,
                timeout,
                extra={"document_id": document_id},
            )
            raise OperationCancelledError(
                f"Hash commit for document '{document_id}' exceeded its {timeout}s deadline"
            )

    # =========================================================================
    # Protocol
    # =========================================================================

    async def _commit(
        self,
        document_id: str,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
        allow_rerun: bool = True,
    ) -> HashCommitResult:
        # Step 1: retrieve
        document = await self._retry(
            lambda: self.documents.get_document(document_id), "retrieve document", document_id
        )

        repairing = False
        if document.status == DocumentStatus.HASHED.value:
            existing = await self._retry(
                lambda: self.hash_records.get_latest(document_id), "get latest hash", document_id
            )
            if existing is not None:
                logger.info(
                    "Document %s already hashed",
                    document_id,
                    extra={"document_id": document_id, "hash_record_id": existing.id},
                )
                return HashCommitResult.from_record(existing, already_hashed=True)
            logger.warning(
                "Document %s is hashed but has no hash record, recomputing",
                document_id,
                extra={"document_id": document_id},
            )
            repairing = True
        elif document.status != DocumentStatus.PENDING.value:
            raise InvalidStateError(
                f"Document '{document_id}' already has a verification outcome",
                current_status=document.status,
            )

        if not document.storage_path:
            raise InvalidStateError(
                f"Document '{document_id}' has no storage path",
                current_status=document.status,
            )

        # Steps 2-3: download and hash
        digest = await self._retry(
            lambda: self._download_and_hash(document, on_progress, cancel_event),
            "download and hash",
            document_id,
        )

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Hash commit cancelled before writing")

        # Step 4: insert hash record
        try:
            record = await self._retry(
                lambda: self.hash_records.append(document_id, digest, self.algorithm),
                "insert hash record",
                document_id,
            )
        except DuplicateHashError:
            return await self._resolve_duplicate(document_id, on_progress, cancel_event, allow_rerun)

        if repairing:
            return HashCommitResult.from_record(record)

        # Step 5: mark hashed, compensating on failure
        try:
            await self._retry(
                lambda: self.documents.mark_hashed(document_id, record.created_at),
                "mark document hashed",
                document_id,
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._compensate(record))
            raise
        except Exception as e:
            logger.warning(
                "Status update failed for %s, compensating: %s",
                document_id,
                e,
                extra={"document_id": document_id, "hash_record_id": record.id},
            )
            await self._compensate(record)
            raise

        logger.info(
            "Hash committed for document %s",
            document_id,
            extra={"document_id": document_id, "algorithm": self.algorithm, "hash_record_id": record.id},
        )
        return HashCommitResult.from_record(record)

    async def _download_and_hash(
        self,
        document: Document,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> str:
        source = await self.object_store.download(document.storage_path)
        try:
            return await compute_digest(
                source,
                algorithm=self.algorithm,
                chunk_size=self.chunk_size,
                streaming_threshold=self.streaming_threshold,
                on_progress=on_progress,
                progress_interval=self.progress_interval,
                size_tolerance=self.size_tolerance,
                cancel_event=cancel_event,
            )
        except DeedIntegrityError:
            raise
        except Exception as e:
            if is_transient_error(e):
                raise
            raise HashComputationError(f"Failed to compute hash: {e}") from e

    async def _compensate(self, record: DocumentHash) -> None:
        """Delete the record inserted in step 4. Never raises."""
        try:
            await self._retry(
                lambda: self.hash_records.delete(record.id),
                "compensate hash record",
                record.document_id,
            )
        except Exception as e:
            logger.error(
                "Compensation failed: hash record %s for document %s was not deleted: %s",
                record.id,
                record.document_id,
                e,
                extra={"document_id": record.document_id, "hash_record_id": record.id},
            )

    async def _resolve_duplicate(
        self,
        document_id: str,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
        allow_rerun: bool,
    ) -> HashCommitResult:
        """
        Another commit won the insert race. Wait for it to settle: report its
        record once the document is hashed, or run the commit again if the
        winner compensated and its record is gone.
        """
        async def settled() -> Optional[DocumentHash]:
            document = await self.documents.get_document(document_id)
            existing = await self.hash_records.get_latest(document_id)
            if existing is None:
                return None
            if document.status == DocumentStatus.HASHED.value:
                return existing
            if document.status != DocumentStatus.PENDING.value:
                raise InvalidStateError(
                    f"Document '{document_id}' already has a verification outcome",
                    current_status=document.status,
                )
            # Winner is between its insert and its status update
            raise DuplicateHashError(document_id, self.algorithm, transient=True)

        try:
            existing = await retry_with_backoff(
                settled,
                "await concurrent hash commit",
                policy=self.settle_policy,
                context={"document_id": document_id},
                sleep=self._sleep,
            )
        except DuplicateHashError:
            raise DuplicateHashError(document_id, self.algorithm) from None

        if existing is not None:
            logger.info(
                "Concurrent hash commit for %s finished first",
                document_id,
                extra={"document_id": document_id, "hash_record_id": existing.id},
            )
            return HashCommitResult.from_record(existing, already_hashed=True)

        if not allow_rerun:
            raise DuplicateHashError(document_id, self.algorithm)
        logger.info(
            "Concurrent hash commit for %s was rolled back, committing again",
            document_id,
            extra={"document_id": document_id},
        )
        return await self._commit(document_id, on_progress, cancel_event, allow_rerun=False)
