"""Retention sweeper.

Finds ledger rows past their expiry whose object is still stored, deletes the
object and retires the row. Uploads still pending at expiry are abandoned
first: any open multipart session is aborted and the row is failed.

Runs as an asyncio task within the FastAPI process, once per
``SWEEP_INTERVAL_SECONDS`` (hourly by default).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from quicksend.events import EventBus, FileExpired, UploadFailed, optional_bus
from quicksend.models.file_record import FileRecord, UploadStatus
from quicksend.services.blob_store import BlobStore
from quicksend.services.ledger import Transition, UploadLedger

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    deleted: int = 0
    abandoned: int = 0
    failures: list[str] = field(default_factory=list)


class RetentionSweeper:
    def __init__(
        self,
        ledger: UploadLedger,
        blob_store: BlobStore,
        *,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.ledger = ledger
        self.blob_store = blob_store
        self.events = optional_bus(events)
        self._clock = clock

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Sweep every expired row whose object has not been deleted yet.

        A failed delete is logged and skipped, so one bad object never stalls
        the rest of the batch; its row is not marked swept and the next run
        retries it. Re-running is a no-op for rows already swept.
        """
        now = now or self._clock()
        report = SweepReport()
        expired = await self.ledger.list_expired(now)
        if not expired:
            logger.info("No expired files found")
            return report

        logger.info(f"Found {len(expired)} expired file(s) to clean up")
        for record in expired:
            report.expired += 1
            try:
                if record.status == UploadStatus.PENDING.value:
                    await self._abandon(record)
                    report.abandoned += 1
                await self.blob_store.delete_object(record.storage_key)
                report.deleted += 1
                if await self.ledger.mark_swept(record.id):
                    await self.events.publish(FileExpired(file_id=record.id, storage_key=record.storage_key))
            except Exception as e:
                report.failures.append(str(record.id))
                logger.error(f"Error cleaning up expired file {record.id} ({record.storage_key}): {e}")

        logger.info(
            f"Cleanup completed: {report.deleted}/{report.expired} deleted, "
            f"{report.abandoned} abandoned upload(s), "
            f"{len(report.failures)} failure(s)"
        )
        return report

    async def _abandon(self, record: FileRecord) -> None:
        if record.upload_id:
            await self.blob_store.abort_multipart_upload(record.storage_key, record.upload_id)
        if await self.ledger.mark_failed(record.id) is Transition.APPLIED:
            await self.events.publish(UploadFailed(file_id=record.id, reason="expired before completion"))


async def sweeper_loop(sweeper: RetentionSweeper, interval_seconds: float = 3600.0):
    """Run the sweeper forever, every `interval_seconds`. Cancel the task to stop it."""
    logger.info(f"Retention sweeper started (interval={interval_seconds}s)")
    while True:
        try:
            await sweeper.run_once()
        except Exception as e:
            logger.error(f"Sweeper run error: {e}")

        await asyncio.sleep(interval_seconds)
