"""
Tests for the object store adapters.
R2 is exercised against httpx.MockTransport; no network access.
"""

import hashlib

import httpx
import pytest

from deed_integrity.core.config import Settings
from deed_integrity.core.errors import AccessDeniedError, ObjectNotFoundError, StorageError
from deed_integrity.services.hashing import compute_digest
from deed_integrity.services.retry import is_transient_error
from deed_integrity.services.storage import (
    LocalObjectStore,
    R2ObjectStore,
    StreamByteSource,
    get_object_store,
)


# =============================================================================
# Local
# =============================================================================

class TestLocalObjectStore:

    @pytest.mark.anyio
    async def test_upload_download_roundtrip(self, tmp_path):
        store = LocalObjectStore(tmp_path)
        stored = await store.upload("deeds/a.pdf", b"deed bytes", "application/pdf")
        assert stored.size == 10
        assert await store.exists("deeds/a.pdf")

        source = await store.download("deeds/a.pdf")
        assert source.size == 10
        assert await compute_digest(source) == hashlib.sha256(b"deed bytes").hexdigest()
        assert source.closed

    @pytest.mark.anyio
    async def test_missing_object(self, tmp_path):
        with pytest.raises(ObjectNotFoundError):
            await LocalObjectStore(tmp_path).download("nope.pdf")

    @pytest.mark.anyio
    async def test_path_traversal_denied(self, tmp_path):
        store = LocalObjectStore(tmp_path / "root")
        with pytest.raises(AccessDeniedError):
            await store.download("../../etc/passwd")

    @pytest.mark.anyio
    async def test_delete(self, tmp_path):
        store = LocalObjectStore(tmp_path)
        await store.upload("x.bin", b"x")
        assert await store.delete("x.bin") is True
        assert await store.delete("x.bin") is False
        assert not await store.exists("x.bin")


# =============================================================================
# R2
# =============================================================================

def make_r2(handler) -> R2ObjectStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return R2ObjectStore(
        account_id="acct",
        access_key_id="key",
        secret_access_key="secret",
        bucket_name="deeds",
        client=client,
    )


class TestR2ObjectStore:

    @pytest.mark.anyio
    async def test_streaming_download(self):
        body = b"r2 deed content" * 1000
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization", "")
            return httpx.Response(200, content=body)

        store = make_r2(handler)
        source = await store.download("prop-1/deed one.pdf")

        assert isinstance(source, StreamByteSource)
        assert source.size == len(body)
        digest = await compute_digest(source, streaming_threshold=0, chunk_size=1024)
        assert digest == hashlib.sha256(body).hexdigest()
        assert seen["url"] == "https://acct.r2.cloudflarestorage.com/deeds/prop-1/deed%20one.pdf"
        assert seen["auth"].startswith("AWS4-HMAC-SHA256 Credential=key/")

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "status_code, error_type",
        [(404, ObjectNotFoundError), (403, AccessDeniedError)],
    )
    async def test_permanent_statuses(self, status_code, error_type):
        store = make_r2(lambda request: httpx.Response(status_code))
        with pytest.raises(error_type) as exc_info:
            await store.download("missing.pdf")
        assert not is_transient_error(exc_info.value)

    @pytest.mark.anyio
    async def test_unavailable_is_transient(self):
        store = make_r2(lambda request: httpx.Response(503))
        with pytest.raises(StorageError) as exc_info:
            await store.download("deed.pdf")
        assert exc_info.value.upstream_status == 503
        assert exc_info.value.status_code == 503
        assert is_transient_error(exc_info.value)

    @pytest.mark.anyio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(StorageError) as exc_info:
            await make_r2(handler).download("deed.pdf")
        assert exc_info.value.transient

    @pytest.mark.anyio
    async def test_download_without_content_length(self):
        store = make_r2(lambda request: httpx.Response(200, stream=httpx.ByteStream(b"chunked deed")))
        with pytest.raises(StorageError) as exc_info:
            await store.download("deed.pdf")
        assert "Content-Length" in exc_info.value.message
        assert not exc_info.value.transient

    @pytest.mark.anyio
    async def test_upload_and_delete(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            if request.method == "DELETE":
                return httpx.Response(204)
            return httpx.Response(200)

        store = make_r2(handler)
        stored = await store.upload("a.pdf", b"abc", "application/pdf")
        assert stored.size == 3
        assert await store.delete("a.pdf") is True
        assert methods == ["PUT", "DELETE"]


# =============================================================================
# Factory
# =============================================================================

def test_factory_local(tmp_path):
    store = get_object_store(Settings(storage_backend="local", storage_root=str(tmp_path)))
    assert store.provider_name == "local"


def test_factory_r2():
    store = get_object_store(Settings(storage_backend="r2", r2_account_id="acct"))
    assert isinstance(store, R2ObjectStore)
    assert store.host == "acct.r2.cloudflarestorage.com"
