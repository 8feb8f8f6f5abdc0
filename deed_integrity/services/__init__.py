# Deed integrity services
from deed_integrity.services.documents import DocumentStore, PropertyReadiness, ReadinessState
from deed_integrity.services.hash_commit import HashCommitResult, HashCommitService
from deed_integrity.services.hash_records import HashHistory, HashRecordStore
from deed_integrity.services.hashing import compute_digest, digest_bytes, is_valid_digest
from deed_integrity.services.reconciliation import ReconciliationReport, ReconciliationSweep
from deed_integrity.services.retry import RetryPolicy, is_transient_error, retry_with_backoff
from deed_integrity.services.verification import (
    BatchItem,
    BatchItemResult,
    VerificationResult,
    VerificationService,
)
from deed_integrity.services.verification_records import VerificationStore

__all__ = [
    "DocumentStore",
    "PropertyReadiness",
    "ReadinessState",
    "HashCommitResult",
    "HashCommitService",
    "HashHistory",
    "HashRecordStore",
    "compute_digest",
    "digest_bytes",
    "is_valid_digest",
    "ReconciliationReport",
    "ReconciliationSweep",
    "RetryPolicy",
    "is_transient_error",
    "retry_with_backoff",
    "BatchItem",
    "BatchItemResult",
    "VerificationResult",
    "VerificationService",
    "VerificationStore",
]
