"""
Reconciliation Sweep

Repairs the two inconsistent states a hash commit can leave behind when its
compensation cannot run (process crash, database outage):

- Orphaned hash record: the record exists but the document is still pending.
  Deleted once it is older than the grace period, so an in-flight commit
  between its insert and its status update is left alone.
- Unbacked document: the document is hashed but has no hash record.
  Reset to pending so the next commit recomputes it.

Run it periodically (cron, scheduler) or via scripts; it is safe to run
concurrently with commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from deed_integrity.core.errors import DeedIntegrityError
from deed_integrity.models.models import utcnow
from deed_integrity.services.documents import DocumentStore
from deed_integrity.services.hash_records import HashRecordStore

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    started_at: datetime
    deleted_hash_records: list[str] = field(default_factory=list)
    reset_documents: list[str] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.deleted_hash_records or self.reset_documents or self.errors)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "deleted_hash_records": self.deleted_hash_records,
            "reset_documents": self.reset_documents,
            "errors": self.errors,
        }


class ReconciliationSweep:
    """Finds and repairs half-committed hashes."""

    def __init__(
        self,
        documents: DocumentStore,
        hash_records: HashRecordStore,
        grace_period: timedelta = timedelta(minutes=15),
    ):
        self.documents = documents
        self.hash_records = hash_records
        self.grace_period = grace_period

    async def run(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport(started_at=now)

        for record in await self.hash_records.list_orphaned(older_than=now - self.grace_period):
            try:
                if await self.hash_records.delete(record.id):
                    report.deleted_hash_records.append(record.id)
            except DeedIntegrityError as e:
                report.errors.append({"hash_record_id": record.id, "error": e.error_code, "message": e.message})

        for document in await self.documents.list_hashed_without_record():
            try:
                await self.documents.reset_to_pending(document.id)
                report.reset_documents.append(document.id)
            except DeedIntegrityError as e:
                report.errors.append({"document_id": document.id, "error": e.error_code, "message": e.message})

        if report.clean:
            logger.debug("Reconciliation found nothing to repair")
        else:
            logger.warning(
                "Reconciliation repaired %d hash records and %d documents (%d errors)",
                len(report.deleted_hash_records),
                len(report.reset_documents),
                len(report.errors),
                extra={"errors": len(report.errors)},
            )
        return report
