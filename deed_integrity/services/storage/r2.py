"""
Deed Integrity - Cloudflare R2 Object Store
Async S3-compatible client (httpx) with streaming downloads.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import httpx

from deed_integrity.core.errors import (
    AccessDeniedError,
    ObjectNotFoundError,
    StorageError,
)
from deed_integrity.services.storage.base import (
    ByteSource,
    ObjectStore,
    StoredObject,
    StreamByteSource,
)

EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()

# Upstream statuses worth retrying
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class R2ObjectStore(ObjectStore):
    """
    Cloudflare R2 object store using the S3-compatible API.
    Pass ``client`` to share a connection pool (or a mock transport in tests).
    """

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket_name: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.account_id = account_id
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.bucket_name = bucket_name
        self.host = f"{account_id}.r2.cloudflarestorage.com"
        self.endpoint = f"https://{self.host}"
        self.timeout = timeout
        self._client = client

    @property
    def provider_name(self) -> str:
        return "r2"

    def _path(self, location: str) -> str:
        return "/" + quote(location.lstrip("/"))

    def _url(self, path: str) -> str:
        return f"{self.endpoint}/{self.bucket_name}{path}"

    def _sign_request(self, method: str, path: str, payload_hash: str) -> dict:
        """Sign request using AWS Signature Version 4."""
        now = datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")

        region = "auto"
        service = "s3"

        canonical_uri = f"/{self.bucket_name}{path}"
        signed_headers = "host;x-amz-content-sha256;x-amz-date"
        canonical_headers = (
            f"host:{self.host}\nx-amz-content-sha256:{payload_hash}\nx-amz-date:{amz_date}\n"
        )
        canonical_request = (
            f"{method}\n{canonical_uri}\n\n{canonical_headers}\n{signed_headers}\n{payload_hash}"
        )

        algorithm = "AWS4-HMAC-SHA256"
        credential_scope = f"{date_stamp}/{region}/{service}/aws4_request"
        string_to_sign = (
            f"{algorithm}\n{amz_date}\n{credential_scope}\n"
            f"{hashlib.sha256(canonical_request.encode()).hexdigest()}"
        )

        def sign(key: bytes, msg: str) -> bytes:
            return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()

        k_date = sign(("AWS4" + self.secret_access_key).encode("utf-8"), date_stamp)
        k_region = sign(k_date, region)
        k_service = sign(k_region, service)
        k_signing = sign(k_service, "aws4_request")

        signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        return {
            "Host": self.host,
            "x-amz-date": amz_date,
            "x-amz-content-sha256": payload_hash,
            "Authorization": (
                f"{algorithm} Credential={self.access_key_id}/{credential_scope}, "
                f"SignedHeaders={signed_headers}, Signature={signature}"
            ),
        }

    def _client_or_new(self) -> tuple[httpx.AsyncClient, bool]:
        if self._client is not None:
            return self._client, False
        return httpx.AsyncClient(timeout=self.timeout), True

    def _raise_for_status(self, status_code: int, location: str, action: str) -> None:
        if status_code == 404:
            raise ObjectNotFoundError(self.provider_name, location)
        if status_code == 403:
            raise AccessDeniedError(self.provider_name, location)
        raise StorageError(
            self.provider_name,
            f"{action} failed with HTTP {status_code}",
            upstream_status=status_code,
            transient=status_code in TRANSIENT_STATUSES,
        )

    async def download(self, location: str) -> ByteSource:
        """Open a streaming download; the body is read chunk by chunk."""
        path = self._path(location)
        headers = self._sign_request("GET", path, EMPTY_PAYLOAD_HASH)
        client, owned = self._client_or_new()

        async def release() -> None:
            await response.aclose()
            if owned:
                await client.aclose()

        try:
            request = client.build_request("GET", self._url(path), headers=headers)
            response = await client.send(request, stream=True)
        except httpx.TransportError as e:
            if owned:
                await client.aclose()
            raise StorageError(self.provider_name, f"download failed: {e}", transient=True) from e

        if response.status_code != 200:
            await release()
            self._raise_for_status(response.status_code, location, "download")

        # The hash engine bounds its reads by the declared size, so it must be known
        content_length = response.headers.get("Content-Length")
        if content_length is None or not content_length.isdigit():
            await release()
            raise StorageError(
                self.provider_name,
                f"download of {location} has no usable Content-Length",
                upstream_status=response.status_code,
            )
        return StreamByteSource(response.aiter_bytes(), int(content_length), on_close=release)

    async def upload(
        self,
        location: str,
        data: bytes,
        mime_type: Optional[str] = None,
    ) -> StoredObject:
        path = self._path(location)
        headers = self._sign_request("PUT", path, hashlib.sha256(data).hexdigest())
        headers["Content-Type"] = mime_type or "application/octet-stream"

        client, owned = self._client_or_new()
        try:
            response = await client.put(self._url(path), headers=headers, content=data)
        except httpx.TransportError as e:
            raise StorageError(self.provider_name, f"upload failed: {e}", transient=True) from e
        finally:
            if owned:
                await client.aclose()

        if response.status_code not in (200, 201):
            self._raise_for_status(response.status_code, location, "upload")

        return StoredObject(
            location=location,
            size=len(data),
            mime_type=mime_type or "application/octet-stream",
            modified_at=datetime.now(timezone.utc),
        )

    async def delete(self, location: str) -> bool:
        path = self._path(location)
        headers = self._sign_request("DELETE", path, EMPTY_PAYLOAD_HASH)

        client, owned = self._client_or_new()
        try:
            response = await client.delete(self._url(path), headers=headers)
        except httpx.TransportError as e:
            raise StorageError(self.provider_name, f"delete failed: {e}", transient=True) from e
        finally:
            if owned:
                await client.aclose()

        if response.status_code == 404:
            return False
        if response.status_code not in (200, 204):
            self._raise_for_status(response.status_code, location, "delete")
        return True

    async def exists(self, location: str) -> bool:
        path = self._path(location)
        headers = self._sign_request("HEAD", path, EMPTY_PAYLOAD_HASH)

        client, owned = self._client_or_new()
        try:
            response = await client.head(self._url(path), headers=headers)
        except httpx.TransportError as e:
            raise StorageError(self.provider_name, f"head failed: {e}", transient=True) from e
        finally:
            if owned:
                await client.aclose()

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        self._raise_for_status(response.status_code, location, "head")
        return False
