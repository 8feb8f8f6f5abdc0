"""
Tests for the reconciliation sweep.
"""

from datetime import timedelta

import pytest

from deed_integrity.models.models import utcnow
from deed_integrity.services.hashing import digest_bytes
from deed_integrity.services.reconciliation import ReconciliationSweep


@pytest.fixture
def sweep(documents, hash_records):
    return ReconciliationSweep(documents, hash_records, grace_period=timedelta(minutes=15))


@pytest.mark.anyio
async def test_clean_database(sweep):
    report = await sweep.run()
    assert report.clean
    assert report.to_dict()["deleted_hash_records"] == []


@pytest.mark.anyio
async def test_deletes_old_orphans_only(sweep, upload_deed, hash_records):
    stale = await upload_deed()
    in_flight = await upload_deed()
    stale_record = await hash_records.append(
        stale.id, digest_bytes(b"stale"), created_at=utcnow() - timedelta(hours=2)
    )
    await hash_records.append(in_flight.id, digest_bytes(b"in flight"))

    report = await sweep.run()

    assert report.deleted_hash_records == [stale_record.id]
    assert await hash_records.get_latest(stale.id) is None
    assert await hash_records.get_latest(in_flight.id) is not None


@pytest.mark.anyio
async def test_resets_hashed_documents_without_record(sweep, upload_deed, documents, commit_service):
    unbacked = await upload_deed()
    healthy = await upload_deed()
    await documents.mark_hashed(unbacked.id)
    await commit_service.commit_hash(healthy.id)

    report = await sweep.run()

    assert report.reset_documents == [unbacked.id]
    assert (await documents.get_document(unbacked.id)).status == "pending"
    assert (await documents.get_document(healthy.id)).status == "hashed"


@pytest.mark.anyio
async def test_reset_document_can_be_committed_again(sweep, upload_deed, documents, commit_service):
    document = await upload_deed()
    await documents.mark_hashed(document.id)
    await sweep.run()

    result = await commit_service.commit_hash(document.id)
    assert result.already_hashed is False
    assert (await documents.get_document(document.id)).status == "hashed"
