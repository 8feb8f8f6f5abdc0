"""
Tests for the Atomic Hash-Commit Protocol.

Tests cover:
- Commit and idempotency
- Compensation when the status update fails
- Compensation failures never mask the original error
- Precondition and storage failures
- Transient failures retried, deadlines enforced
- Concurrent commits of the same document
"""

import asyncio
import hashlib
import logging
from unittest.mock import AsyncMock, patch

import pytest

from deed_integrity.core.errors import (
    DuplicateHashError,
    InvalidStateError,
    NotFoundError,
    ObjectNotFoundError,
    OperationCancelledError,
    PersistenceError,
    StorageError,
)
from deed_integrity.models.models import DocumentStatus
from deed_integrity.services.hash_commit import HashCommitService
from deed_integrity.services.retry import RetryPolicy
from deed_integrity.services.storage.base import MemoryByteSource


class TestCommitHash:

    @pytest.mark.anyio
    async def test_commit_records_hash_and_status(
        self, upload_deed, commit_service, documents, hash_records, deed_content
    ):
        document = await upload_deed()

        result = await commit_service.commit_hash(document.id)

        assert result.digest == hashlib.sha256(deed_content).hexdigest()
        assert result.algorithm == "SHA-256"
        assert result.already_hashed is False
        stored = await documents.get_document(document.id)
        assert stored.status == DocumentStatus.HASHED.value
        assert stored.hash_computed_at is not None
        latest = await hash_records.get_latest(document.id)
        assert latest.id == result.hash_record_id

    @pytest.mark.anyio
    async def test_commit_is_idempotent(self, upload_deed, commit_service, hash_records):
        document = await upload_deed()

        first = await commit_service.commit_hash(document.id)
        second = await commit_service.commit_hash(document.id)

        assert second.digest == first.digest
        assert second.hash_record_id == first.hash_record_id
        assert second.already_hashed is True
        assert len(await hash_records.list_history(document.id)) == 1

    @pytest.mark.anyio
    async def test_streaming_commit_reports_progress(
        self, upload_deed, documents, hash_records, object_store, fast_retry
    ):
        content = b"\x00\x01" * (1024 * 1024)  # 2 MiB
        document = await upload_deed(content)
        service = HashCommitService(
            documents, hash_records, object_store, retry_policy=fast_retry, streaming_threshold=1024
        )
        calls = []

        result = await service.commit_hash(document.id, on_progress=lambda d, t: calls.append(d))

        assert result.digest == hashlib.sha256(content).hexdigest()
        assert calls[-1] == len(content)

    @pytest.mark.anyio
    async def test_configured_algorithm(self, upload_deed, documents, hash_records, object_store, fast_retry):
        document = await upload_deed()
        service = HashCommitService(
            documents, hash_records, object_store, algorithm="SHA-512", retry_policy=fast_retry
        )
        result = await service.commit_hash(document.id)
        assert result.algorithm == "SHA-512"
        assert len(result.digest) == 128


class TestCompensation:
    """A failed status update leaves no hash record behind."""

    @pytest.mark.anyio
    async def test_status_update_failure_deletes_record(self, upload_deed, commit_service, documents, hash_records):
        document = await upload_deed()
        failure = PersistenceError("mark hashed", "disk I/O error")

        with patch.object(documents, "mark_hashed", AsyncMock(side_effect=failure)):
            with pytest.raises(PersistenceError) as exc_info:
                await commit_service.commit_hash(document.id)

        assert exc_info.value is failure
        assert await hash_records.get_latest(document.id) is None
        assert (await documents.get_document(document.id)).status == "pending"

    @pytest.mark.anyio
    async def test_commit_succeeds_after_compensation(self, upload_deed, commit_service, documents, hash_records):
        document = await upload_deed()
        with patch.object(documents, "mark_hashed", AsyncMock(side_effect=PersistenceError("x", "down"))):
            with pytest.raises(PersistenceError):
                await commit_service.commit_hash(document.id)

        result = await commit_service.commit_hash(document.id)
        assert result.already_hashed is False
        assert len(await hash_records.list_history(document.id)) == 1

    @pytest.mark.anyio
    async def test_compensation_failure_keeps_original_error(
        self, upload_deed, commit_service, documents, hash_records, caplog
    ):
        document = await upload_deed()
        original = PersistenceError("mark hashed", "constraint")

        with patch.object(documents, "mark_hashed", AsyncMock(side_effect=original)), \
                patch.object(hash_records, "delete", AsyncMock(side_effect=RuntimeError("db gone"))):
            with caplog.at_level(logging.ERROR, logger="deed_integrity.services.hash_commit"):
                with pytest.raises(PersistenceError) as exc_info:
                    await commit_service.commit_hash(document.id)

        assert exc_info.value is original
        assert any("Compensation failed" in r.getMessage() for r in caplog.records)
        # The orphan is left for reconciliation
        assert await hash_records.get_latest(document.id) is not None

    @pytest.mark.anyio
    async def test_cancellation_during_status_update_compensates(
        self, upload_deed, commit_service, documents, hash_records
    ):
        document = await upload_deed()
        with patch.object(documents, "mark_hashed", AsyncMock(side_effect=asyncio.CancelledError())):
            with pytest.raises(asyncio.CancelledError):
                await commit_service.commit_hash(document.id)

        assert await hash_records.get_latest(document.id) is None


class TestPreconditions:

    @pytest.mark.anyio
    async def test_unknown_document(self, commit_service):
        with pytest.raises(NotFoundError):
            await commit_service.commit_hash("missing")

    @pytest.mark.anyio
    async def test_missing_storage_path(self, upload_deed, commit_service):
        document = await upload_deed(storage_path="")
        with pytest.raises(InvalidStateError):
            await commit_service.commit_hash(document.id)

    @pytest.mark.anyio
    async def test_decided_document_rejected(self, upload_deed, commit_service, documents):
        document = await upload_deed()
        await commit_service.commit_hash(document.id)
        await documents.set_status(document.id, DocumentStatus.VERIFIED)

        with pytest.raises(InvalidStateError) as exc_info:
            await commit_service.commit_hash(document.id)
        assert exc_info.value.current_status == "verified"

    @pytest.mark.anyio
    async def test_missing_object(self, upload_deed, commit_service, hash_records):
        document = await upload_deed(storage_path="deeds/nowhere.pdf")
        with pytest.raises(ObjectNotFoundError):
            await commit_service.commit_hash(document.id)
        assert await hash_records.get_latest(document.id) is None


class TestTransientFailures:

    @pytest.mark.anyio
    async def test_download_retried(self, upload_deed, commit_service, object_store, deed_content):
        document = await upload_deed()
        real_download = object_store.download
        attempts = {"n": 0}

        async def flaky_download(location):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise StorageError("local", "HTTP 503", upstream_status=503, transient=True)
            return await real_download(location)

        with patch.object(object_store, "download", flaky_download):
            result = await commit_service.commit_hash(document.id)

        assert attempts["n"] == 2
        assert result.digest == hashlib.sha256(deed_content).hexdigest()

    @pytest.mark.anyio
    async def test_hashed_without_record_is_repaired(self, upload_deed, commit_service, documents, hash_records):
        document = await upload_deed()
        await documents.mark_hashed(document.id)

        result = await commit_service.commit_hash(document.id)

        assert result.already_hashed is False
        assert (await hash_records.get_latest(document.id)).id == result.hash_record_id

    @pytest.mark.anyio
    async def test_deadline_exceeded(self, upload_deed, commit_service, object_store):
        document = await upload_deed()

        async def slow_download(location):
            await asyncio.sleep(5)
            return MemoryByteSource(b"")

        with patch.object(object_store, "download", slow_download):
            with pytest.raises(OperationCancelledError):
                await commit_service.commit_hash(document.id, timeout=0.05)

    @pytest.mark.anyio
    async def test_cancel_event(self, upload_deed, commit_service, hash_records):
        document = await upload_deed()
        event = asyncio.Event()
        event.set()
        with pytest.raises(OperationCancelledError):
            await commit_service.commit_hash(document.id, cancel_event=event)
        assert await hash_records.get_latest(document.id) is None


@pytest.fixture
def settling_service(documents, hash_records, object_store, fast_retry):
    return HashCommitService(
        documents,
        hash_records,
        object_store,
        retry_policy=fast_retry,
        settle_policy=RetryPolicy(max_attempts=50, initial_delay=0.02, multiplier=1.0, max_delay=0.02),
    )


class TestConcurrentCommits:

    @pytest.mark.anyio
    async def test_parallel_commits_agree(self, upload_deed, settling_service, hash_records):
        for _ in range(5):
            document = await upload_deed()

            first, second = await asyncio.gather(
                settling_service.commit_hash(document.id),
                settling_service.commit_hash(document.id),
            )

            assert first.hash_record_id == second.hash_record_id
            assert sorted([first.already_hashed, second.already_hashed]) == [False, True]
            assert len(await hash_records.list_history(document.id)) == 1

    @pytest.mark.anyio
    async def test_waits_for_winner_status_update(
        self, upload_deed, settling_service, documents, hash_records, deed_content
    ):
        document = await upload_deed()
        winner = await hash_records.append(document.id, hashlib.sha256(deed_content).hexdigest())

        async def finish_winner():
            await asyncio.sleep(0.1)
            await documents.mark_hashed(document.id, winner.created_at)

        task = asyncio.create_task(finish_winner())
        result = await settling_service.commit_hash(document.id)
        await task

        assert result.already_hashed is True
        assert result.hash_record_id == winner.id

    @pytest.mark.anyio
    async def test_recommits_when_winner_rolls_back(
        self, upload_deed, settling_service, documents, hash_records, deed_content
    ):
        document = await upload_deed()
        winner = await hash_records.append(document.id, hashlib.sha256(deed_content).hexdigest())

        async def compensate_winner():
            await asyncio.sleep(0.1)
            await hash_records.delete(winner.id)

        task = asyncio.create_task(compensate_winner())
        result = await settling_service.commit_hash(document.id)
        await task

        assert result.already_hashed is False
        assert result.hash_record_id != winner.id
        assert (await documents.get_document(document.id)).status == DocumentStatus.HASHED.value

    @pytest.mark.anyio
    async def test_unsettled_winner_raises_duplicate(
        self, upload_deed, commit_service, hash_records, deed_content, fast_retry
    ):
        document = await upload_deed()
        await hash_records.append(document.id, hashlib.sha256(deed_content).hexdigest())
        commit_service.settle_policy = fast_retry

        with pytest.raises(DuplicateHashError):
            await commit_service.commit_hash(document.id)
