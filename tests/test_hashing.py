"""
Tests for the Streaming Hash Engine.

Tests cover:
- Chunked and single-shot digests agree
- Digest format per algorithm
- Size tolerance (corrupt sources)
- Progress throttling
- Cancellation and reader cleanup
"""

import asyncio
import hashlib

import pytest

from deed_integrity.core.errors import CorruptSourceError, OperationCancelledError, ValidationError
from deed_integrity.services.hashing import (
    SUPPORTED_ALGORITHMS,
    compute_digest,
    digest_bytes,
    digest_of,
    get_algorithm,
    is_valid_digest,
)
from deed_integrity.services.storage.base import ByteSource, MemoryByteSource, StreamByteSource


class FailingSource(ByteSource):
    """Returns one chunk, then raises."""

    def __init__(self, size: int, error: Exception):
        super().__init__(size)
        self.error = error
        self.reads = 0

    async def read(self, n: int = -1) -> bytes:
        self.reads += 1
        if self.reads > 1:
            raise self.error
        return b"x" * (n if n > 0 else self.size)


@pytest.fixture
def payload():
    return bytes(range(256)) * 1000  # 256,000 bytes


# =============================================================================
# Digest Equality
# =============================================================================

class TestDigestEquality:
    """Single-shot and chunked paths produce the same digest."""

    @pytest.mark.anyio
    async def test_chunked_matches_single_shot(self, payload):
        single = await compute_digest(MemoryByteSource(payload))
        chunked = await compute_digest(
            MemoryByteSource(payload), streaming_threshold=0, chunk_size=4096
        )
        assert single == chunked == hashlib.sha256(payload).hexdigest()

    @pytest.mark.anyio
    async def test_odd_chunk_size(self, payload):
        digest = await compute_digest(MemoryByteSource(payload), streaming_threshold=0, chunk_size=777)
        assert digest == hashlib.sha256(payload).hexdigest()

    @pytest.mark.anyio
    async def test_empty_source(self):
        digest = await compute_digest(MemoryByteSource(b""), streaming_threshold=0)
        assert digest == hashlib.sha256(b"").hexdigest()

    @pytest.mark.anyio
    @pytest.mark.parametrize("name", sorted(SUPPORTED_ALGORITHMS))
    async def test_digest_length_and_case(self, payload, name):
        digest = await digest_of(payload, algorithm=name, streaming_threshold=0)
        assert len(digest) == get_algorithm(name).hex_length
        assert digest == digest.lower()
        assert is_valid_digest(digest, name)
        assert digest == digest_bytes(payload, name)


# =============================================================================
# Algorithm Registry
# =============================================================================

class TestAlgorithms:

    def test_lookup_is_case_insensitive(self):
        assert get_algorithm("sha-256").name == "SHA-256"

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            get_algorithm("MD5")

    def test_invalid_digests(self):
        assert not is_valid_digest("ABC" * 21 + "A")        # upper case
        assert not is_valid_digest("a" * 63)                # too short
        assert not is_valid_digest("g" * 64)                # not hex
        assert is_valid_digest("a" * 64)


# =============================================================================
# Size Tolerance
# =============================================================================

class TestSizeTolerance:
    """Reading beyond the declared size (plus 10%) marks the source corrupt."""

    @pytest.mark.anyio
    async def test_within_tolerance_is_accepted(self):
        data = b"a" * 1100
        digest = await compute_digest(MemoryByteSource(data, size=1000), streaming_threshold=0, chunk_size=100)
        assert digest == hashlib.sha256(data).hexdigest()

    @pytest.mark.anyio
    async def test_streaming_over_tolerance(self):
        source = MemoryByteSource(b"a" * 1200, size=1000)
        with pytest.raises(CorruptSourceError) as exc_info:
            await compute_digest(source, streaming_threshold=0, chunk_size=100)
        assert exc_info.value.declared_size == 1000
        assert exc_info.value.bytes_read == 1200
        assert source.closed

    @pytest.mark.anyio
    async def test_single_shot_over_tolerance(self):
        with pytest.raises(CorruptSourceError):
            await compute_digest(MemoryByteSource(b"a" * 500, size=100))

    @pytest.mark.anyio
    async def test_single_shot_stops_reading_past_tolerance(self):
        consumed = {"chunks": 0}

        async def chunks():
            for _ in range(50):
                consumed["chunks"] += 1
                yield b"a" * (1024 * 1024)

        source = StreamByteSource(chunks(), size=1000)
        with pytest.raises(CorruptSourceError) as exc_info:
            await compute_digest(source)

        assert consumed["chunks"] == 1
        assert exc_info.value.bytes_read == 1101
        assert source.closed


# =============================================================================
# Progress
# =============================================================================

class TestProgress:

    @pytest.mark.anyio
    async def test_progress_is_throttled(self):
        data = b"z" * (5 * 1024 * 1024 + 10)
        calls = []

        await compute_digest(
            MemoryByteSource(data),
            streaming_threshold=0,
            on_progress=lambda done, total: calls.append((done, total)),
        )

        # One call per full MiB, plus the final one
        assert len(calls) == 6
        assert calls[-1] == (len(data), len(data))
        processed = [done for done, _ in calls]
        assert processed == sorted(processed)

    @pytest.mark.anyio
    async def test_single_shot_reports_no_progress(self):
        calls = []
        await compute_digest(MemoryByteSource(b"small"), on_progress=lambda *a: calls.append(a))
        assert calls == []


# =============================================================================
# Cancellation & Cleanup
# =============================================================================

class TestCleanup:

    @pytest.mark.anyio
    async def test_cancel_event(self):
        event = asyncio.Event()
        event.set()
        source = MemoryByteSource(b"data" * 100)
        with pytest.raises(OperationCancelledError):
            await compute_digest(source, streaming_threshold=0, cancel_event=event)
        assert source.closed

    @pytest.mark.anyio
    async def test_reader_error_propagates_and_closes(self):
        source = FailingSource(size=10_000, error=ConnectionResetError("peer reset"))
        with pytest.raises(ConnectionResetError):
            await compute_digest(source, streaming_threshold=0, chunk_size=1000)
        assert source.closed

    @pytest.mark.anyio
    async def test_source_closed_on_success(self):
        source = MemoryByteSource(b"abc")
        await compute_digest(source)
        assert source.closed

    @pytest.mark.anyio
    async def test_invalid_chunk_size(self):
        with pytest.raises(ValidationError):
            await compute_digest(MemoryByteSource(b"abc"), chunk_size=0)
