"""
Deed Integrity Object Store - Base Interface
Abstract contract for the object store that holds uploaded deed files,
plus the byte sources handed to the hash engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional


@dataclass
class StoredObject:
    """Represents an object in the store."""
    location: str
    size: int
    mime_type: str
    modified_at: datetime


# =============================================================================
# Byte Sources
# =============================================================================

class ByteSource(ABC):
    """
    A one-shot readable byte stream with a declared total size.

    ``size`` is what the producer claims; the hash engine checks it against
    what is actually read. Sources are async context managers and must be
    closed exactly once.
    """

    def __init__(self, size: int):
        self.size = size
        self.closed = False

    @abstractmethod
    async def read(self, n: int = -1) -> bytes:
        """Read up to n bytes (all remaining when n < 0). b"" at EOF."""
        pass

    async def aclose(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "ByteSource":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


class MemoryByteSource(ByteSource):
    """Byte source over an in-memory buffer (comparison uploads, tests)."""

    def __init__(self, data: bytes, size: Optional[int] = None):
        super().__init__(len(data) if size is None else size)
        self._view = memoryview(data)
        self._offset = 0

    async def read(self, n: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed source")
        end = len(self._view) if n < 0 else min(self._offset + n, len(self._view))
        chunk = bytes(self._view[self._offset:end])
        self._offset = end
        return chunk


class StreamByteSource(ByteSource):
    """
    Byte source over an async iterator of chunks (e.g. an HTTP body).
    ``on_close`` releases whatever produces the chunks.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        size: int,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        super().__init__(size)
        self._chunks = chunks
        self._buffer = bytearray()
        self._exhausted = False
        self._on_close = on_close

    async def _fill(self, n: int) -> None:
        while not self._exhausted and (n < 0 or len(self._buffer) < n):
            try:
                self._buffer.extend(await self._chunks.__anext__())
            except StopAsyncIteration:
                self._exhausted = True

    async def read(self, n: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed source")
        await self._fill(n)
        if n < 0:
            n = len(self._buffer)
        chunk = bytes(self._buffer[:n])
        del self._buffer[:n]
        return chunk

    async def aclose(self) -> None:
        if self.closed:
            return
        await super().aclose()
        if self._on_close is not None:
            await self._on_close()


# =============================================================================
# Object Store Contract
# =============================================================================

class ObjectStore(ABC):
    """
    Abstract base class for object stores.
    Errors: ObjectNotFoundError, AccessDeniedError, StorageError (transient
    when the backend reports 429/5xx).
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider name: local, r2"""
        pass

    @abstractmethod
    async def download(self, location: str) -> ByteSource:
        """Open a stored object for reading."""
        pass

    @abstractmethod
    async def upload(
        self,
        location: str,
        data: bytes,
        mime_type: Optional[str] = None,
    ) -> StoredObject:
        """Store an object at the given location."""
        pass

    @abstractmethod
    async def delete(self, location: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        pass

    @abstractmethod
    async def exists(self, location: str) -> bool:
        """Check if an object exists."""
        pass
