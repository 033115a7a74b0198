"""Blob storage backends used as a small key-value store.

Two implementations share the async :class:`BlobStore` contract:

* :class:`MemoryBlobStore` keeps blobs in a process-local dict. Every call
  yields to the event loop so interleavings between concurrent requests look
  the same as they would against a remote store.
* :class:`S3BlobStore` talks to any S3-compatible service (AWS S3, Cloudflare
  R2, MinIO) through boto3. The boto3 client is blocking, so each call runs in
  the default executor.

A store owns the bytes only; callers decide what the blobs mean.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from functools import partial
from typing import Any, AsyncIterator, Callable, Dict, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KEY_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_BUCKET_NOT_FOUND_CODES = {"404", "NoSuchBucket", "NotFound"}
_PRECONDITION_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}


class BlobStoreError(RuntimeError):
    """Raised when the storage backend is unreachable or misconfigured."""


class BlobNotFoundError(BlobStoreError):
    """Raised when a requested blob does not exist."""


class BlobAlreadyExistsError(BlobStoreError):
    """Raised when a create-if-absent write finds the key already taken."""


class BlobStore(abc.ABC):
    """Async key-value contract over a single blob container."""

    container: str
    supports_conditional_put: bool = False

    def __init__(self) -> None:
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    async def initialize(self) -> bool:
        """Make sure the container exists and report whether the store is usable."""

        try:
            await self.create_container_if_not_exists()
        except BlobStoreError as exc:
            logger.error("Blob store %r initialization failed: %s", self.container, exc)
            self._ready = False
            return False
        self._ready = True
        logger.info("Blob store %r ready (%s)", self.container, type(self).__name__)
        return True

    @abc.abstractmethod
    async def create_container_if_not_exists(self) -> None:
        ...

    @abc.abstractmethod
    async def put(self, key: str, data: bytes, *, if_absent: bool = False) -> None:
        """Write ``data`` under ``key``.

        With ``if_absent`` the write fails with :class:`BlobAlreadyExistsError`
        when the key is taken. Stores that do not advertise
        ``supports_conditional_put`` ignore the flag and overwrite.
        """

    @abc.abstractmethod
    async def get(self, key: str) -> bytes:
        ...

    @abc.abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""

    @abc.abstractmethod
    def list_keys(self) -> AsyncIterator[str]:
        """Yield every stored key once, in no particular order."""


class MemoryBlobStore(BlobStore):
    """In-process store, used for local development and tests."""

    def __init__(self, container: str = "voice-tokens", *, conditional_put: bool = True) -> None:
        super().__init__()
        self.container = container
        self.supports_conditional_put = conditional_put
        self._blobs: Dict[str, bytes] = {}

    async def create_container_if_not_exists(self) -> None:
        await asyncio.sleep(0)

    async def put(self, key: str, data: bytes, *, if_absent: bool = False) -> None:
        await asyncio.sleep(0)
        if if_absent and self.supports_conditional_put and key in self._blobs:
            raise BlobAlreadyExistsError(key)
        self._blobs[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        await asyncio.sleep(0)
        try:
            return self._blobs[key]
        except KeyError:
            raise BlobNotFoundError(key) from None

    async def exists(self, key: str) -> bool:
        await asyncio.sleep(0)
        return key in self._blobs

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        self._blobs.pop(key, None)

    async def list_keys(self) -> AsyncIterator[str]:
        await asyncio.sleep(0)
        # Iterate over a copy so writers may mutate the store mid-scan.
        for key in list(self._blobs):
            yield key
            await asyncio.sleep(0)


class S3BlobStore(BlobStore):
    """S3-compatible object storage; the container maps to a key prefix in the bucket."""

    def __init__(
        self,
        bucket: str,
        *,
        container: str = "voice-tokens",
        client: Any = None,
        conditional_put: bool = True,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region_name: str = "auto",
    ) -> None:
        super().__init__()
        self.bucket = bucket
        self.container = container
        self.supports_conditional_put = conditional_put
        self._prefix = f"{container.strip('/')}/"
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url or None,
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
                region_name=region_name,
            )
        self._client = client

    async def _call(self, func: Callable[..., T], /, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        operation = getattr(func, "__name__", "request")
        try:
            return await loop.run_in_executor(None, partial(func, **kwargs))
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _KEY_NOT_FOUND_CODES and "Key" in kwargs:
                raise BlobNotFoundError(kwargs["Key"]) from exc
            if code in _PRECONDITION_CODES:
                raise BlobAlreadyExistsError(kwargs.get("Key", "")) from exc
            raise BlobStoreError(f"S3 {operation} failed: {code or exc}") from exc
        except BotoCoreError as exc:
            raise BlobStoreError(f"S3 {operation} failed: {exc}") from exc

    def _object_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def create_container_if_not_exists(self) -> None:
        try:
            await self._call(self._client.head_bucket, Bucket=self.bucket)
        except BlobStoreError as exc:
            cause = exc.__cause__
            if not isinstance(cause, ClientError):
                raise
            code = str(cause.response.get("Error", {}).get("Code", ""))
            if code not in _BUCKET_NOT_FOUND_CODES:
                raise
            await self._call(self._client.create_bucket, Bucket=self.bucket)
            logger.info("Created bucket %r", self.bucket)

    async def put(self, key: str, data: bytes, *, if_absent: bool = False) -> None:
        kwargs: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self._object_key(key),
            "Body": data,
            "ContentType": "application/json",
        }
        if if_absent and self.supports_conditional_put:
            kwargs["IfNoneMatch"] = "*"
        try:
            await self._call(self._client.put_object, **kwargs)
        except BlobAlreadyExistsError:
            raise BlobAlreadyExistsError(key) from None

    async def get(self, key: str) -> bytes:
        try:
            response = await self._call(
                self._client.get_object, Bucket=self.bucket, Key=self._object_key(key)
            )
        except BlobNotFoundError:
            raise BlobNotFoundError(key) from None
        body = response["Body"]
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, body.read)
        finally:
            body.close()

    async def exists(self, key: str) -> bool:
        try:
            await self._call(self._client.head_object, Bucket=self.bucket, Key=self._object_key(key))
        except BlobNotFoundError:
            return False
        return True

    async def delete(self, key: str) -> None:
        await self._call(self._client.delete_object, Bucket=self.bucket, Key=self._object_key(key))

    async def list_keys(self) -> AsyncIterator[str]:
        kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": self._prefix}
        while True:
            page = await self._call(self._client.list_objects_v2, **kwargs)
            for item in page.get("Contents", []):
                name = item["Key"][len(self._prefix):]
                if name:
                    yield name
            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not token:
                break
            kwargs["ContinuationToken"] = token


def build_blob_store(config: Settings) -> BlobStore:
    """Create the blob store selected by ``config.blob_backend``."""

    backend = config.blob_backend
    if backend == "memory":
        return MemoryBlobStore(config.blob_container, conditional_put=config.blob_conditional_writes)
    if backend == "s3":
        return S3BlobStore(
            config.s3_bucket,
            container=config.blob_container,
            conditional_put=config.blob_conditional_writes,
            endpoint_url=config.s3_endpoint_url,
            access_key_id=config.s3_access_key_id,
            secret_access_key=config.s3_secret_access_key,
            region_name=config.s3_region,
        )
    raise ValueError(f"Unknown blob backend: {backend!r}")
