"""
Deed Integrity Database Models
SQLAlchemy ORM models for documents, their hash ledger and verification outcomes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deed_integrity.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid4())


class DocumentStatus(str, Enum):
    """Document lifecycle status."""
    PENDING = "pending"     # Uploaded, no authoritative hash yet
    HASHED = "hashed"       # Hash committed, ready for verification
    VERIFIED = "verified"   # Comparison file matched
    REJECTED = "rejected"   # Comparison file did not match
    FLAGGED = "flagged"     # Held for manual review


class VerificationVerdict(str, Enum):
    """Outcome of a verification."""
    VERIFIED = "verified"
    REJECTED = "rejected"


# =============================================================================
# Documents
# =============================================================================

class Document(Base):
    """
    Canonical deed document record linked to a property.

    Invariant: pending documents carry no hash_computed_at; hashed and
    verified documents always do.
    """
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("property_id", "doc_number", name="uq_document_number_per_property"),
        CheckConstraint(
            "(status != 'pending' OR hash_computed_at IS NULL) AND "
            "(status NOT IN ('hashed', 'verified') OR hash_computed_at IS NOT NULL)",
            name="ck_document_hash_timestamp",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    property_id: Mapped[str] = mapped_column(String(36), index=True)
    doc_number: Mapped[str] = mapped_column(String(100), index=True)
    uploader_id: Mapped[str] = mapped_column(String(36), index=True)

    # Object-store location and file info
    storage_path: Mapped[str] = mapped_column(String(500))
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    original_filename: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=DocumentStatus.PENDING.value, index=True)
    hash_computed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    hashes: Mapped[list["DocumentHash"]] = relationship(
        back_populates="document", cascade="all, delete-orphan", passive_deletes=True
    )
    verifications: Mapped[list["Verification"]] = relationship(
        back_populates="document", cascade="all, delete-orphan", passive_deletes=True
    )

    def to_dict(self) -> dict[str, Any]:
        hash_computed_at = ensure_utc(self.hash_computed_at)
        return {
            "id": self.id,
            "property_id": self.property_id,
            "doc_number": self.doc_number,
            "uploader_id": self.uploader_id,
            "storage_path": self.storage_path,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "original_filename": self.original_filename,
            "status": self.status,
            "hash_computed_at": hash_computed_at.isoformat() if hash_computed_at else None,
            "created_at": ensure_utc(self.created_at).isoformat(),
            "updated_at": ensure_utc(self.updated_at).isoformat(),
        }


# =============================================================================
# Hash Ledger
# =============================================================================

class DocumentHash(Base):
    """
    Append-only fingerprint of a document's content.
    The newest record per document is authoritative.
    """
    __tablename__ = "document_hashes"
    __table_args__ = (
        UniqueConstraint("document_id", "algorithm", name="uq_document_hash_algorithm"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    document_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    digest: Mapped[str] = mapped_column(String(128), index=True)
    algorithm: Mapped[str] = mapped_column(String(20), default="SHA-256")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    document: Mapped["Document"] = relationship(back_populates="hashes")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "digest": self.digest,
            "algorithm": self.algorithm,
            "created_at": ensure_utc(self.created_at).isoformat(),
        }


# =============================================================================
# Verifications
# =============================================================================

class Verification(Base):
    """
    Immutable verification outcome.
    Rejections carry a reason and discrepancy evidence; successes carry neither.
    """
    __tablename__ = "verifications"
    __table_args__ = (
        CheckConstraint(
            "verdict = 'verified' OR (reason IS NOT NULL AND length(reason) > 0)",
            name="ck_verification_rejection_reason",
        ),
        CheckConstraint(
            "verdict = 'rejected' OR (reason IS NULL AND discrepancy_evidence IS NULL)",
            name="ck_verification_success_clean",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    document_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    verifier_id: Mapped[str] = mapped_column(String(36), index=True)
    verdict: Mapped[str] = mapped_column(String(20), index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    discrepancy_evidence: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    verification_storage_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    document: Mapped["Document"] = relationship(back_populates="verifications")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "verifier_id": self.verifier_id,
            "verdict": self.verdict,
            "reason": self.reason,
            "discrepancy_evidence": self.discrepancy_evidence,
            "verification_storage_path": self.verification_storage_path,
            "created_at": ensure_utc(self.created_at).isoformat(),
        }
