"""Upload ledger - the durable record of every upload attempt.

Status transitions are conditional UPDATEs (compare-and-swap on ``status``),
so two racing completion calls for the same file converge on one final state
without any in-process lock.
"""
import enum
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quicksend.models.file_record import FileRecord, UploadStatus

logger = logging.getLogger(__name__)


class Transition(str, enum.Enum):
    """Outcome of a conditional status update."""
    APPLIED = "applied"
    ALREADY = "already"
    REJECTED = "rejected"


class UploadLedger:
    """Async repository over the ``files`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, record: FileRecord) -> FileRecord:
        async with self._session_factory() as db:
            db.add(record)
            await db.commit()
            await db.refresh(record)
        return record

    async def get(self, file_id: uuid.UUID) -> Optional[FileRecord]:
        async with self._session_factory() as db:
            return await db.get(FileRecord, file_id)

    async def attach_upload_id(self, file_id: uuid.UUID, upload_id: str) -> None:
        """Record the multipart session id on a pending row."""
        async with self._session_factory() as db:
            await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id)
                .values(upload_id=upload_id)
            )
            await db.commit()

    async def _transition(self, file_id: uuid.UUID, to_status: UploadStatus, **values) -> bool:
        """PENDING -> to_status. True only for the caller that performed the flip."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(FileRecord)
                .where(
                    FileRecord.id == file_id,
                    FileRecord.status == UploadStatus.PENDING.value,
                )
                .values(status=to_status.value, **values)
            )
            await db.commit()
            return result.rowcount > 0

    async def _settle(self, file_id: uuid.UUID, to_status: UploadStatus, **values) -> Transition:
        if await self._transition(file_id, to_status, **values):
            return Transition.APPLIED
        current = await self.get(file_id)
        if current is not None and current.status == to_status.value:
            return Transition.ALREADY
        return Transition.REJECTED

    async def mark_uploaded(self, file_id: uuid.UUID, final_size: Optional[int] = None) -> Transition:
        """Flip PENDING -> UPLOADED.

        A repeat call after a successful one is a no-op (ALREADY), not an
        error. A FAILED or missing row is REJECTED.
        """
        values = {}
        if final_size is not None:
            values["size"] = final_size
        outcome = await self._settle(file_id, UploadStatus.UPLOADED, **values)
        if outcome is Transition.APPLIED:
            logger.info(f"File {file_id} marked uploaded")
        return outcome

    async def mark_failed(self, file_id: uuid.UUID) -> Transition:
        """Flip PENDING -> FAILED. An UPLOADED row is never demoted (REJECTED)."""
        outcome = await self._settle(file_id, UploadStatus.FAILED)
        if outcome is Transition.APPLIED:
            logger.warning(f"File {file_id} marked failed")
        return outcome

    async def mark_inactive(self, file_id: uuid.UUID) -> bool:
        """Set is_active=False. Returns False when the row was already inactive (or absent)."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id, FileRecord.is_active.is_(True))
                .values(is_active=False)
            )
            await db.commit()
        if result.rowcount:
            logger.info(f"File {file_id} marked inactive")
        return result.rowcount > 0

    async def mark_swept(self, file_id: uuid.UUID) -> bool:
        """Record that the object is gone and retire the row. False if already swept."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id, FileRecord.storage_deleted.is_(False))
                .values(is_active=False, storage_deleted=True)
            )
            await db.commit()
        return result.rowcount > 0

    async def increment_download_count(self, file_id: uuid.UUID) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id)
                .values(download_count=FileRecord.download_count + 1)
            )
            await db.commit()

    async def set_encryption_metadata(self, file_id: uuid.UUID, iv: str, original_size: int) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id)
                .values(encryption_iv=iv, original_size=original_size)
            )
            await db.commit()
            return result.rowcount > 0

    async def list_active(self) -> list[FileRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(FileRecord)
                .where(FileRecord.is_active.is_(True))
                .order_by(FileRecord.upload_date.desc())
            )
            return list(result.scalars().all())

    async def list_expired(self, now: datetime) -> list[FileRecord]:
        """Rows past retention whose object has not been deleted yet.

        Includes rows already made inactive by lazy expiry on download.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(FileRecord)
                .where(
                    and_(
                        FileRecord.expires_at < now,
                        FileRecord.storage_deleted.is_(False),
                    )
                )
                .order_by(FileRecord.expires_at)
            )
            return list(result.scalars().all())
