"""Blob store gateway: presigned URLs, multipart sessions, existence checks.

The orchestrator and sweeper depend on the abstract ``BlobStore`` only.
``S3BlobStore`` is the production implementation; boto3 is synchronous, so
every call is pushed to a worker thread with ``asyncio.to_thread``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageUnavailable(Exception):
    """The blob store could not complete the operation. Nothing may be assumed to have happened."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class IncompletePartsError(ValueError):
    """A multipart completion was requested without an etag for every part."""

    def __init__(self, missing: Sequence[int], expected: int):
        self.missing = list(missing)
        self.expected = expected
        super().__init__(
            f"Missing etag for part(s) {', '.join(str(n) for n in self.missing)} "
            f"of {expected}"
        )


@dataclass(frozen=True)
class CompletedPart:
    part_number: int
    etag: Optional[str]


def validate_parts(parts: Sequence[CompletedPart], expected_parts: Optional[int] = None) -> list[dict]:
    """Check a part list is complete and return it in the shape S3 expects.

    Every part number from 1..expected_parts must be present with a non-empty
    etag. Without `expected_parts` the highest supplied part number is used,
    so gaps are still detected.
    """
    etags = {}
    for part in parts:
        if part.etag and part.etag.strip():
            etags[part.part_number] = part.etag
    expected = expected_parts
    if expected is None:
        expected = max((p.part_number for p in parts), default=0)
    if expected < 1:
        raise IncompletePartsError([1], 1)
    missing = [n for n in range(1, expected + 1) if n not in etags]
    if missing:
        raise IncompletePartsError(missing, expected)
    return [{"PartNumber": n, "ETag": etags[n]} for n in range(1, expected + 1)]


def content_disposition(filename: str) -> str:
    """Attachment header that survives non-ASCII names (RFC 5987)."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "'")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


class BlobStore(ABC):
    """Abstract gateway to the object store."""

    bucket: str

    @abstractmethod
    async def issue_put_url(self, key: str, content_type: str, ttl: int) -> str:
        ...

    @abstractmethod
    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        ...

    @abstractmethod
    async def issue_part_url(self, key: str, upload_id: str, part_number: int, ttl: int) -> str:
        ...

    @abstractmethod
    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[CompletedPart],
        expected_parts: Optional[int] = None,
    ) -> None:
        ...

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Best-effort: implementations log failures instead of raising."""

    @abstractmethod
    async def head_object(self, key: str) -> Optional[int]:
        """Size in bytes of the stored object, or None when it does not exist."""

    @abstractmethod
    async def issue_get_url(self, key: str, ttl: int, filename: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        ...


class S3BlobStore(BlobStore):
    """boto3-backed gateway. Works against AWS S3 or any S3-compatible endpoint."""

    def __init__(self, client, bucket: str):
        self._client = client
        self.bucket = bucket

    @classmethod
    def from_settings(cls, settings) -> "S3BlobStore":
        client = boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            config=Config(
                signature_version="s3v4",
                connect_timeout=30,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        return cls(client, settings.S3_BUCKET_NAME)

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailable(operation, str(e)) from e

    async def issue_put_url(self, key: str, content_type: str, ttl: int) -> str:
        return await self._call(
            "issue_put_url",
            self._client.generate_presigned_url,
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=ttl,
        )

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        response = await self._call(
            "create_multipart_upload",
            self._client.create_multipart_upload,
            Bucket=self.bucket, Key=key, ContentType=content_type,
        )
        return response["UploadId"]

    async def issue_part_url(self, key: str, upload_id: str, part_number: int, ttl: int) -> str:
        return await self._call(
            "issue_part_url",
            self._client.generate_presigned_url,
            "upload_part",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            ExpiresIn=ttl,
        )

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[CompletedPart],
        expected_parts: Optional[int] = None,
    ) -> None:
        s3_parts = validate_parts(parts, expected_parts)
        await self._call(
            "complete_multipart_upload",
            self._client.complete_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": s3_parts},
        )

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            await self._call(
                "abort_multipart_upload",
                self._client.abort_multipart_upload,
                Bucket=self.bucket, Key=key, UploadId=upload_id,
            )
        except StorageUnavailable as e:
            logger.error(f"Abort of multipart upload {upload_id} for {key} failed: {e}")

    async def head_object(self, key: str) -> Optional[int]:
        try:
            response = await asyncio.to_thread(self._client.head_object, Bucket=self.bucket, Key=key)
            return int(response.get("ContentLength", 0))
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_OBJECT_CODES:
                return None
            raise StorageUnavailable("head_object", str(e)) from e
        except BotoCoreError as e:
            raise StorageUnavailable("head_object", str(e)) from e

    async def issue_get_url(self, key: str, ttl: int, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = content_disposition(filename)
        return await self._call(
            "issue_get_url",
            self._client.generate_presigned_url,
            "get_object",
            Params=params,
            ExpiresIn=ttl,
        )

    async def delete_object(self, key: str) -> None:
        await self._call(
            "delete_object",
            self._client.delete_object,
            Bucket=self.bucket, Key=key,
        )
