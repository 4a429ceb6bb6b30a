"""Upload orchestrator - issuance, completion, abort and download resolution.

Per-file state machine:

    (none) --issue--> PENDING --verify-ok--> UPLOADED
                         |--verify-fail/abort--> FAILED
    UPLOADED/FAILED --expire--> inactive

A ledger row is written before any storage URL is handed out, and a row only
reaches UPLOADED after this service has itself confirmed the object exists in
the blob store. The client's word alone is never enough.
"""
import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Union

from quicksend.events import EventBus, UploadCompleted, UploadFailed, optional_bus
from quicksend.models.file_record import FileRecord, UploadStatus, as_utc
from quicksend.services.blob_store import BlobStore, CompletedPart, StorageUnavailable
from quicksend.services.ledger import Transition, UploadLedger
from quicksend.services.tier_policy import (
    PART_SIZE,
    Tier,
    TierLimits,
    UploadStrategy,
    download_url_ttl,
    format_bytes,
    limits_for,
    part_count,
    select_strategy,
    upload_url_ttl,
)

logger = logging.getLogger(__name__)


# ── Errors ───────────────────────────────────────────────────────

class UploadError(Exception):
    """Base for errors the API renders as structured JSON."""

    status_code = 400
    code = "UploadError"

    def __init__(self, message: str = ""):
        self.message = message or self.code
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "error": self.code, "message": self.message}


class InvalidUploadRequest(UploadError):
    code = "InvalidRequest"


class FileTooLargeError(UploadError):
    status_code = 413
    code = "FileTooLarge"

    def __init__(self, limit_bytes: int, actual_bytes: int, tier: Tier):
        self.limit_bytes = limit_bytes
        self.actual_bytes = actual_bytes
        self.tier = tier
        super().__init__(
            f"Your {tier.display_name} plan has a {format_bytes(limit_bytes)} file size limit. "
            f"The selected file is {format_bytes(actual_bytes)}."
        )

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload.update(
            limitBytes=self.limit_bytes,
            actualBytes=self.actual_bytes,
            currentTier=self.tier.value,
        )
        return payload


class TierNotEligibleError(UploadError):
    status_code = 403
    code = "TierNotEligible"


class RecordNotFoundError(UploadError):
    status_code = 404
    code = "NotFound"


class NotFoundInStorageError(UploadError):
    status_code = 404
    code = "NotFoundInStorage"


class UploadPendingError(UploadError):
    status_code = 423
    code = "Pending"


class UploadFailedError(UploadError):
    status_code = 500
    code = "UploadFailed"


class FileExpiredError(UploadError):
    status_code = 410
    code = "Expired"


class MultipartSessionError(UploadError):
    status_code = 409
    code = "MultipartSessionMismatch"


# ── Results ──────────────────────────────────────────────────────

@dataclass
class SingleUploadTarget:
    file_id: uuid.UUID
    storage_key: str
    bucket: str
    upload_url: str
    url_ttl: int
    expires_at: datetime
    strategy: UploadStrategy = UploadStrategy.SINGLE


@dataclass
class MultipartUploadTarget:
    file_id: uuid.UUID
    storage_key: str
    bucket: str
    upload_id: str
    part_urls: list[str]
    part_size: int
    url_ttl: int
    expires_at: datetime
    strategy: UploadStrategy = UploadStrategy.MULTIPART


UploadTarget = Union[SingleUploadTarget, MultipartUploadTarget]


@dataclass
class UploadResult:
    file_id: uuid.UUID
    download_link: str
    file_name: str
    file_size: int
    expires_at: datetime


@dataclass
class DownloadTarget:
    url: str
    file_name: str
    ttl: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def storage_key_for(file_id: uuid.UUID, file_name: str) -> str:
    name = os.path.basename(file_name.replace("\\", "/")).strip() or "unnamed"
    return f"files/{file_id}/{name}"


class UploadOrchestrator:
    """Coordinates the ledger and the blob store for one upload at a time.

    Holds no per-file in-memory state; concurrent requests for the same file
    are reconciled by the ledger's conditional updates.
    """

    def __init__(
        self,
        ledger: UploadLedger,
        blob_store: BlobStore,
        *,
        public_base_url: str,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ledger = ledger
        self.blob_store = blob_store
        self.public_base_url = public_base_url.rstrip("/")
        self.events = optional_bus(events)
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    def download_link(self, file_id: uuid.UUID) -> str:
        return f"{self.public_base_url}/download/{file_id}"

    # ── Limits ───────────────────────────────────────────────────

    def check_limits(self, size: Optional[int], tier) -> TierLimits:
        """Raise FileTooLargeError when `size` exceeds the tier's ceiling."""
        tier = Tier.parse(tier)
        limits = limits_for(tier)
        if size and size > limits.max_file_size:
            raise FileTooLargeError(limits.max_file_size, size, tier)
        return limits

    # ── Issuance ─────────────────────────────────────────────────

    async def request_upload(
        self,
        file_name: str,
        mime_type: Optional[str],
        size: Optional[int],
        tier,
        strategy: Optional[UploadStrategy] = None,
    ) -> UploadTarget:
        """Validate, write a PENDING row, then issue presigned URL(s).

        `strategy` forces a particular target shape; by default the tier/size
        rule decides.
        """
        tier = Tier.parse(tier)
        limits = self.check_limits(size, tier)
        if not file_name:
            raise InvalidUploadRequest("fileName is required")

        if strategy is None:
            strategy = select_strategy(size, tier)
        if strategy is UploadStrategy.MULTIPART:
            if not tier.is_paid:
                raise TierNotEligibleError("Multipart uploads are only available for Pro/Business tiers")
            if not size:
                raise InvalidUploadRequest("fileSize is required for multipart uploads")

        content_type = mime_type or "application/octet-stream"
        file_id = uuid.uuid4()
        key = storage_key_for(file_id, file_name)
        now = self._clock()
        expires_at = now + timedelta(days=limits.retention_days)

        await self.ledger.create(FileRecord(
            id=file_id,
            original_name=file_name,
            mime_type=content_type,
            size=size or 0,
            upload_date=now,
            expires_at=expires_at,
            download_count=0,
            is_active=True,
            storage_key=key,
            storage_bucket=self.blob_store.bucket,
            status=UploadStatus.PENDING.value,
            tier=tier.value,
        ))
        logger.info(
            f"Issued pending upload {file_id} ({strategy.value}, tier={tier.value}, "
            f"size={size or 'unknown'})"
        )

        ttl = upload_url_ttl(size, tier)
        if strategy is UploadStrategy.SINGLE:
            try:
                url = await self.blob_store.issue_put_url(key, content_type, ttl)
            except Exception as e:
                await self._fail(file_id, f"could not issue upload URL: {e}")
                raise
            return SingleUploadTarget(
                file_id=file_id,
                storage_key=key,
                bucket=self.blob_store.bucket,
                upload_url=url,
                url_ttl=ttl,
                expires_at=expires_at,
            )

        upload_id = None
        try:
            upload_id = await self.blob_store.create_multipart_upload(key, content_type)
            await self.ledger.attach_upload_id(file_id, upload_id)
            part_urls = []
            for part_number in range(1, part_count(size) + 1):
                part_urls.append(
                    await self.blob_store.issue_part_url(key, upload_id, part_number, ttl)
                )
        except Exception as e:
            if upload_id is not None:
                await self.blob_store.abort_multipart_upload(key, upload_id)
            await self._fail(file_id, f"could not initiate multipart upload: {e}")
            raise
        return MultipartUploadTarget(
            file_id=file_id,
            storage_key=key,
            bucket=self.blob_store.bucket,
            upload_id=upload_id,
            part_urls=part_urls,
            part_size=PART_SIZE,
            url_ttl=ttl,
            expires_at=expires_at,
        )

    # ── Completion ───────────────────────────────────────────────

    async def _require(self, file_id: uuid.UUID) -> FileRecord:
        record = await self.ledger.get(file_id)
        if record is None:
            raise RecordNotFoundError("File not found")
        return record

    async def complete_upload(self, file_id: uuid.UUID, reported_size: Optional[int] = None) -> UploadResult:
        """Verify a single-part upload landed and flip the row to UPLOADED.

        If the object is not visible yet the row stays PENDING and
        NotFoundInStorageError is raised; the caller may simply retry.
        """
        record = await self._require(file_id)
        if record.status == UploadStatus.UPLOADED.value:
            return self._result(record)
        if record.status == UploadStatus.FAILED.value:
            raise UploadFailedError("File upload failed")

        stored_size = await self.blob_store.head_object(record.storage_key)
        if stored_size is None:
            logger.info(f"Completion for {file_id} before object is visible in storage; left pending")
            raise NotFoundInStorageError("File not found in storage")
        if reported_size is not None and reported_size != stored_size:
            logger.warning(f"Upload {file_id} reported {reported_size} bytes, storage holds {stored_size}")
        return await self._settle_uploaded(record, stored_size)

    async def complete_multipart(
        self,
        file_id: uuid.UUID,
        parts: Sequence[CompletedPart],
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        """Assemble a multipart upload. Any failure aborts the session and fails the row."""
        record = await self._require(file_id)
        if record.status == UploadStatus.UPLOADED.value:
            return self._result(record)
        if record.status == UploadStatus.FAILED.value:
            raise UploadFailedError("File upload failed")
        if not record.upload_id:
            raise MultipartSessionError("File has no multipart upload session")
        if upload_id and upload_id != record.upload_id:
            raise MultipartSessionError("uploadId does not match this file")

        try:
            await self.blob_store.complete_multipart_upload(
                record.storage_key,
                record.upload_id,
                parts,
                expected_parts=part_count(record.size),
            )
        except Exception as e:
            logger.error(f"Completing multipart upload {record.upload_id} for {file_id} failed: {e}")
            await self.blob_store.abort_multipart_upload(record.storage_key, record.upload_id)
            await self._fail(file_id, str(e))
            raise

        stored_size = await self.blob_store.head_object(record.storage_key)
        if stored_size is None:
            raise NotFoundInStorageError("Assembled file not found in storage")
        return await self._settle_uploaded(record, stored_size)

    async def _settle_uploaded(self, record: FileRecord, stored_size: int) -> UploadResult:
        """Record the size storage actually holds, enforcing the tier ceiling on it.

        Uploads issued without a known size were never checked up front, so an
        object over the limit is deleted and its row failed here.
        """
        tier = Tier.parse(record.tier)
        limit = limits_for(tier).max_file_size
        if stored_size > limit:
            try:
                await self.blob_store.delete_object(record.storage_key)
            except StorageUnavailable as e:
                logger.error(f"Could not delete oversized object {record.storage_key}: {e}")
            await self._fail(
                record.id, f"stored object is {format_bytes(stored_size)}, over the {tier.value} limit",
            )
            raise FileTooLargeError(limit, stored_size, tier)

        outcome = await self.ledger.mark_uploaded(record.id, final_size=stored_size)
        if outcome is Transition.REJECTED:
            raise UploadFailedError("File upload failed")
        record = await self._require(record.id)
        if outcome is Transition.APPLIED:
            await self._announce(record)
        return self._result(record)

    async def abort_multipart(self, file_id: uuid.UUID, upload_id: Optional[str] = None) -> None:
        """Best-effort abort. Never raises: the caller is told it succeeded regardless."""
        try:
            record = await self.ledger.get(file_id)
            if record is None or not record.upload_id:
                return
            if upload_id and upload_id != record.upload_id:
                logger.warning(f"Abort for {file_id} named unknown upload {upload_id}; ignored")
                return
            await self.blob_store.abort_multipart_upload(record.storage_key, record.upload_id)
            await self._fail(file_id, "multipart upload aborted")
        except Exception as e:
            logger.error(f"Abort of multipart upload for {file_id} failed: {e}")

    async def cancel_upload(self, file_id: uuid.UUID) -> str:
        """Client-initiated cancel: abort any multipart session and fail a PENDING row.

        Rows that already settled are left alone. Returns the resulting status.
        """
        record = await self._require(file_id)
        if record.status != UploadStatus.PENDING.value:
            return record.status
        if record.upload_id:
            await self.blob_store.abort_multipart_upload(record.storage_key, record.upload_id)
        await self._fail(file_id, "cancelled by client")
        record = await self._require(file_id)
        return record.status

    async def set_encryption_metadata(self, file_id: uuid.UUID, iv: str, original_size: int) -> None:
        if not await self.ledger.set_encryption_metadata(file_id, iv, original_size):
            raise RecordNotFoundError("File not found")

    # ── Download ─────────────────────────────────────────────────

    async def resolve_download(self, file_id: uuid.UUID) -> DownloadTarget:
        record = await self.ledger.get(file_id)
        if record is None or not record.is_active:
            raise RecordNotFoundError("File not found")
        if record.status == UploadStatus.PENDING.value:
            raise UploadPendingError("File upload in progress, please try again in a moment")
        if record.status == UploadStatus.FAILED.value:
            raise UploadFailedError("File upload failed")
        if record.is_expired(self._clock()):
            # Lazy expiry; the sweeper reclaims the bytes later
            await self.ledger.mark_inactive(file_id)
            raise FileExpiredError("File has expired")

        self._fire_and_forget(
            self.ledger.increment_download_count(file_id),
            f"download count for {file_id}",
        )
        ttl = download_url_ttl(record.size)
        url = await self.blob_store.issue_get_url(record.storage_key, ttl, filename=record.original_name)
        return DownloadTarget(url=url, file_name=record.original_name, ttl=ttl)

    # ── Internals ────────────────────────────────────────────────

    def _result(self, record: FileRecord) -> UploadResult:
        return UploadResult(
            file_id=record.id,
            download_link=self.download_link(record.id),
            file_name=record.original_name,
            file_size=record.size,
            expires_at=as_utc(record.expires_at),
        )

    async def _announce(self, record: FileRecord) -> None:
        result = self._result(record)
        await self.events.publish(UploadCompleted(
            file_id=result.file_id,
            file_name=result.file_name,
            size=result.file_size,
            download_link=result.download_link,
            expires_at=result.expires_at,
        ))

    async def _fail(self, file_id: uuid.UUID, reason: str) -> None:
        outcome = await self.ledger.mark_failed(file_id)
        if outcome is Transition.APPLIED:
            logger.warning(f"Upload {file_id} failed: {reason}")
            await self.events.publish(UploadFailed(file_id=file_id, reason=reason))

    def _fire_and_forget(self, coro, description: str) -> None:
        task = asyncio.create_task(self._guarded(coro, description))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _guarded(self, coro, description: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Background update failed ({description}): {e}")

    async def drain_background_tasks(self) -> None:
        """Wait for outstanding fire-and-forget updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
