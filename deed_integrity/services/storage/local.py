"""
Deed Integrity - Local Filesystem Object Store
Stores deed files under a root directory; used in development and tests.
"""

import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import anyio

from deed_integrity.core.errors import (
    AccessDeniedError,
    ObjectNotFoundError,
    StorageError,
)
from deed_integrity.services.storage.base import ByteSource, ObjectStore, StoredObject


class FileByteSource(ByteSource):
    """Byte source over an open anyio file handle."""

    def __init__(self, handle, size: int):
        super().__init__(size)
        self._handle = handle

    async def read(self, n: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed source")
        return await self._handle.read(n)

    async def aclose(self) -> None:
        if self.closed:
            return
        await super().aclose()
        await self._handle.aclose()


class LocalObjectStore(ObjectStore):
    """Object store rooted at a local directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    @property
    def provider_name(self) -> str:
        return "local"

    def _resolve(self, location: str) -> Path:
        path = (self.root / location.lstrip("/")).resolve()
        # Reject traversal outside the root
        if path != self.root and self.root not in path.parents:
            raise AccessDeniedError(self.provider_name, location)
        return path

    async def download(self, location: str) -> ByteSource:
        path = self._resolve(location)
        try:
            size = (await anyio.Path(path).stat()).st_size
            handle = await anyio.open_file(path, "rb")
        except FileNotFoundError:
            raise ObjectNotFoundError(self.provider_name, location)
        except PermissionError:
            raise AccessDeniedError(self.provider_name, location)
        except OSError as e:
            raise StorageError(self.provider_name, f"download failed: {e}")
        return FileByteSource(handle, size)

    async def upload(
        self,
        location: str,
        data: bytes,
        mime_type: Optional[str] = None,
    ) -> StoredObject:
        path = self._resolve(location)
        try:
            await anyio.Path(path.parent).mkdir(parents=True, exist_ok=True)
            await anyio.Path(path).write_bytes(data)
        except PermissionError:
            raise AccessDeniedError(self.provider_name, location)
        except OSError as e:
            raise StorageError(self.provider_name, f"upload failed: {e}")

        return StoredObject(
            location=location,
            size=len(data),
            mime_type=mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
            modified_at=datetime.now(timezone.utc),
        )

    async def delete(self, location: str) -> bool:
        path = anyio.Path(self._resolve(location))
        try:
            await path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(self.provider_name, f"delete failed: {e}")
        return True

    async def exists(self, location: str) -> bool:
        return await anyio.Path(self._resolve(location)).is_file()
