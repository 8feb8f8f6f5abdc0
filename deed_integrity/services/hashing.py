"""
Streaming Hash Engine

Computes the cryptographic fingerprint of a deed file without holding
large files in memory:

- Sources at or below the streaming threshold (10 MB) are hashed in one shot
- Larger sources are read in bounded chunks (64 KB) into a running digest
- An optional progress callback fires at most once per 1 MB processed,
  plus once on completion
- Reading more than the declared size (plus 10% tolerance) fails with
  CorruptSourceError
- The source is closed on every exit path

Usage:
    from deed_integrity.services.hashing import compute_digest

    async with await store.download(document.storage_path) as source:
        digest = await compute_digest(source, algorithm="SHA-256")
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from deed_integrity.core.errors import (
    CorruptSourceError,
    OperationCancelledError,
    ValidationError,
)
from deed_integrity.services.storage.base import ByteSource, MemoryByteSource

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "SHA-256"
DEFAULT_CHUNK_SIZE = 64 * 1024               # 64KB
STREAMING_THRESHOLD = 10 * 1024 * 1024       # 10MB
PROGRESS_INTERVAL = 1024 * 1024              # 1MB
SIZE_TOLERANCE = 0.10                        # 10% over declared size

_HEX_RE = re.compile(r"^[0-9a-f]+$")


class ProgressCallback(Protocol):
    """
    Observer for long-running hashes.

    Called with (bytes_processed, total_bytes). Throttled: at most once per
    ``progress_interval`` bytes, then once more when hashing completes.
    Only the streaming path reports progress.
    """

    def __call__(self, bytes_processed: int, total_bytes: int) -> None: ...


# =============================================================================
# Algorithms
# =============================================================================

@dataclass(frozen=True)
class HashAlgorithm:
    """A supported digest algorithm."""
    name: str            # Identifier stored on hash records ("SHA-256")
    hashlib_name: str    # Name understood by hashlib.new
    hex_length: int      # Length of the hex digest

    def new(self):
        return hashlib.new(self.hashlib_name)


SUPPORTED_ALGORITHMS: dict[str, HashAlgorithm] = {
    algo.name: algo
    for algo in (
        HashAlgorithm("SHA-256", "sha256", 64),
        HashAlgorithm("SHA-384", "sha384", 96),
        HashAlgorithm("SHA-512", "sha512", 128),
        HashAlgorithm("BLAKE2B-512", "blake2b", 128),
    )
}


def get_algorithm(name: str) -> HashAlgorithm:
    """Look up an algorithm by identifier (case-insensitive)."""
    algorithm = SUPPORTED_ALGORITHMS.get(name.upper())
    if algorithm is None:
        raise ValidationError(
            f"Unsupported hash algorithm: {name}",
            details=[{"supported": sorted(SUPPORTED_ALGORITHMS)}],
        )
    return algorithm


def is_valid_digest(value: str, algorithm: str = DEFAULT_ALGORITHM) -> bool:
    """True if value is a lower-case hex digest of the algorithm's length."""
    algo = get_algorithm(algorithm)
    return len(value) == algo.hex_length and bool(_HEX_RE.match(value))


def digest_bytes(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Single-shot digest of an in-memory buffer."""
    hasher = get_algorithm(algorithm).new()
    hasher.update(data)
    return hasher.hexdigest()


# =============================================================================
# Streaming Digest
# =============================================================================

def _max_allowed(declared_size: int, size_tolerance: float) -> int:
    return declared_size + int(declared_size * size_tolerance)


def _check_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Hash computation cancelled")


async def _digest_single_shot(
    source: ByteSource,
    algorithm: HashAlgorithm,
    size_tolerance: float,
) -> str:
    # One byte past the tolerance is enough to prove the size is wrong
    max_allowed = _max_allowed(source.size, size_tolerance)
    data = await source.read(max_allowed + 1)
    if len(data) > max_allowed:
        raise CorruptSourceError(
            f"File size mismatch: expected {source.size} bytes, but read at least {len(data)} bytes",
            declared_size=source.size,
            bytes_read=len(data),
        )
    hasher = algorithm.new()
    hasher.update(data)
    return hasher.hexdigest()


async def _digest_streaming(
    source: ByteSource,
    algorithm: HashAlgorithm,
    chunk_size: int,
    size_tolerance: float,
    on_progress: Optional[ProgressCallback],
    progress_interval: int,
    cancel_event: Optional[asyncio.Event],
) -> str:
    hasher = algorithm.new()
    max_allowed = _max_allowed(source.size, size_tolerance)
    bytes_processed = 0
    last_progress = 0

    while True:
        _check_cancelled(cancel_event)
        chunk = await source.read(chunk_size)
        if not chunk:
            break

        hasher.update(chunk)
        bytes_processed += len(chunk)

        if bytes_processed > max_allowed:
            raise CorruptSourceError(
                f"File size mismatch: expected {source.size} bytes, but read {bytes_processed} bytes",
                declared_size=source.size,
                bytes_read=bytes_processed,
            )

        if on_progress and bytes_processed - last_progress >= progress_interval:
            on_progress(bytes_processed, source.size)
            last_progress = bytes_processed

    if on_progress:
        on_progress(bytes_processed, source.size)

    return hasher.hexdigest()


async def compute_digest(
    source: ByteSource,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    streaming_threshold: int = STREAMING_THRESHOLD,
    on_progress: Optional[ProgressCallback] = None,
    progress_interval: int = PROGRESS_INTERVAL,
    size_tolerance: float = SIZE_TOLERANCE,
    cancel_event: Optional[asyncio.Event] = None,
) -> str:
    """
    Compute the lower-case hex digest of a byte source.

    The source is consumed once and always closed. Raises CorruptSourceError
    when more bytes arrive than declared (beyond tolerance) and
    OperationCancelledError when ``cancel_event`` is set. Reader errors
    propagate unchanged so the retry layer can classify them.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")

    algo = get_algorithm(algorithm)
    try:
        _check_cancelled(cancel_event)
        if source.size > streaming_threshold:
            logger.debug(
                "Streaming hash for %d byte source",
                source.size,
                extra={"algorithm": algo.name, "chunk_size": chunk_size},
            )
            return await _digest_streaming(
                source,
                algo,
                chunk_size,
                size_tolerance,
                on_progress,
                progress_interval,
                cancel_event,
            )
        return await _digest_single_shot(source, algo, size_tolerance)
    finally:
        await source.aclose()


async def digest_of(data: bytes, algorithm: str = DEFAULT_ALGORITHM, **options) -> str:
    """Digest an in-memory payload through the same engine as stored files."""
    return await compute_digest(MemoryByteSource(data), algorithm=algorithm, **options)
