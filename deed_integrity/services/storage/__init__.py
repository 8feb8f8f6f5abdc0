# Object stores - where uploaded deed files live
from deed_integrity.core.config import Settings
from deed_integrity.services.storage.base import (
    ByteSource,
    MemoryByteSource,
    ObjectStore,
    StoredObject,
    StreamByteSource,
)
from deed_integrity.services.storage.local import LocalObjectStore
from deed_integrity.services.storage.r2 import R2ObjectStore


def get_object_store(settings: Settings) -> ObjectStore:
    """
    Factory function to build the configured object store.

    Args:
        settings: Application settings; ``storage_backend`` is one of
            'local', 'r2'

    Returns:
        ObjectStore instance
    """
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalObjectStore(settings.storage_root)
    if backend == "r2":
        return R2ObjectStore(
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            bucket_name=settings.r2_bucket_name,
        )
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


__all__ = [
    "ByteSource",
    "MemoryByteSource",
    "StreamByteSource",
    "ObjectStore",
    "StoredObject",
    "LocalObjectStore",
    "R2ObjectStore",
    "get_object_store",
]
