"""
Blob store clients for backup artifacts
In-memory, local filesystem and S3 backends plus a retry/deadline wrapper
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..error_models import ArtifactNotFoundError, OperationTimeoutError, ValidationError
from ..logging_adapter import get_safe_logger
from ..resilience import RetryConfig, call_with_retry, with_deadline

logger = get_safe_logger("dr_orchestrator.blob_store")

_S3_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_S3_RETRYABLE_CODES = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout",
                       "InternalError", "ServiceUnavailable", "503", "500"}
_TMP_PREFIX = ".tmp-"


class InMemoryBlobStore:
    """Dictionary-backed store for tests and local development"""

    def __init__(self, region: str):
        self.region = region
        self.objects: Dict[str, bytes] = {}

    async def put(self, key: str, data: bytes) -> None:
        self.objects[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise ArtifactNotFoundError(key, self.region)

    async def list(self, prefix: str) -> List[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class LocalBlobStore:
    """
    Filesystem store rooted at ``root``. Writes go to a temp file in the
    target directory and are renamed into place, so readers never observe
    a partial artifact.
    """

    def __init__(self, root: str, region: str):
        self.root = Path(root).resolve()
        self.region = region

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValidationError(f"Artifact key escapes the store root: {key}", field="key")
        return path

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _list(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith(_TMP_PREFIX):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    async def put(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._write, self._path(key), data)

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self._path(key).read_bytes)
        except FileNotFoundError:
            raise ArtifactNotFoundError(key, self.region)

    async def list(self, prefix: str) -> List[str]:
        return await asyncio.to_thread(self._list, prefix)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._path(key).unlink, missing_ok=True)


class S3BlobStore:
    """S3-compatible store. boto3 is synchronous, so calls run in worker threads."""

    def __init__(self, bucket: str, region: str, endpoint_url: Optional[str] = None,
                 client=None):
        self.bucket = bucket
        self.region = region
        self.s3_client = client or boto3.client("s3", endpoint_url=endpoint_url)

    def _translate(self, key: str, error: Exception) -> Exception:
        if isinstance(error, ClientError):
            code = str(error.response.get("Error", {}).get("Code", ""))
            if code in _S3_NOT_FOUND_CODES:
                return ArtifactNotFoundError(key, self.region)
            if code in _S3_RETRYABLE_CODES:
                return ConnectionError(f"S3 {code} for {key}")
            return error
        return ConnectionError(f"S3 request failed for {key}: {error}")

    async def put(self, key: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(
                self.s3_client.put_object, Bucket=self.bucket, Key=key, Body=data
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(key, e) from e

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()

        try:
            return await asyncio.to_thread(_read)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(key, e) from e

    async def list(self, prefix: str) -> List[str]:
        def _list() -> List[str]:
            keys = []
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return sorted(keys)

        try:
            return await asyncio.to_thread(_list)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(prefix, e) from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.s3_client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            translated = self._translate(key, e)
            if isinstance(translated, ArtifactNotFoundError):
                return
            raise translated from e


class RetryingBlobStore:
    """
    Wraps any blob store with a per-attempt deadline and bounded retries.
    Exhausted retries surface as StoreUnavailableError.
    """

    def __init__(self, inner, timeout: Optional[float] = 30.0,
                 retry_config: Optional[RetryConfig] = None):
        self.inner = inner
        self.region = inner.region
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.5,
            max_delay=10.0,
            retryable_exceptions=(ConnectionError, TimeoutError, OSError, OperationTimeoutError)
        )

    async def _call(self, name: str, key: str, *args):
        method = getattr(self.inner, name)
        operation = f"blob_{name}:{self.region}"

        async def attempt():
            return await with_deadline(method(key, *args), self.timeout, operation)

        return await call_with_retry(
            attempt, config=self.retry_config, service_name=f"blob_store:{self.region}"
        )

    async def put(self, key: str, data: bytes) -> None:
        await self._call("put", key, data)

    async def get(self, key: str) -> bytes:
        return await self._call("get", key)

    async def list(self, prefix: str) -> List[str]:
        return await self._call("list", prefix)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)


def create_blob_store(backend: str, region: str, *, bucket: Optional[str] = None,
                      endpoint_url: Optional[str] = None, local_root: Optional[str] = None):
    """Build the raw backend for one region"""
    if backend == "s3":
        if not bucket:
            raise ValueError(f"bucket is required for the s3 blob backend ({region})")
        return S3BlobStore(bucket, region, endpoint_url=endpoint_url)
    if backend == "local":
        if not local_root:
            raise ValueError("local_root is required for the local blob backend")
        return LocalBlobStore(os.path.join(local_root, region), region)
    return InMemoryBlobStore(region)
