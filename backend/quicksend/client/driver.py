"""Client upload driver: local file -> durable remote link.

The upload runs as a straight async pipeline, one method per step:

    probe -> preflight -> monthly limit -> request -> transfer -> complete -> reconcile

Each step either enriches the ``UploadSession`` or raises an
``UploadDriverError`` subclass; ``describe_error`` turns that into an alert.
"""
import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from quicksend.client.api import BackendClient
from quicksend.client.counter import MonthlyUploadCounter
from quicksend.client.errors import (
    FileTooLargeError,
    MonthlyLimitReachedError,
    UploadCancelledError,
    UploadDriverError,
)
from quicksend.client.probe import detect_file_size, guess_mime_type
from quicksend.client.subscription import SubscriptionState
from quicksend.client.transfer import (
    CHUNK_SIZE,
    ProgressCallback,
    ProgressTracker,
    upload_parts,
    upload_single,
)
from quicksend.services.tier_policy import (
    MULTIPART_THRESHOLD,
    PART_SIZE,
    Tier,
    UploadStrategy,
    select_strategy,
)

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """Ephemeral state of one upload attempt. Never persisted."""
    path: str
    file_name: str
    mime_type: str
    size: Optional[int]
    tier: Tier
    strategy: Optional[UploadStrategy] = None
    file_id: Optional[str] = None
    upload_id: Optional[str] = None
    upload_url: Optional[str] = None
    part_urls: list[str] = field(default_factory=list)
    part_size: int = PART_SIZE
    progress: float = 0.0


@dataclass
class UploadOutcome:
    file_id: str
    download_link: str
    file_name: str
    file_size: int
    expires_at: Optional[str]


class UploadDriver:
    """Drives one upload at a time.

    `part_concurrency` caps in-flight multipart parts; 1 uploads them
    sequentially, which is the most reliable setting on poor networks.
    """

    def __init__(
        self,
        api: BackendClient,
        counter: MonthlyUploadCounter,
        subscription: SubscriptionState,
        *,
        part_concurrency: int = 1,
        chunk_size: int = CHUNK_SIZE,
        multipart_threshold: int = MULTIPART_THRESHOLD,
    ):
        self.api = api
        self.counter = counter
        self.subscription = subscription
        self.part_concurrency = part_concurrency
        self.chunk_size = chunk_size
        self.multipart_threshold = multipart_threshold
        self.session: Optional[UploadSession] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    async def upload(self, path: str, progress: Optional[ProgressCallback] = None) -> UploadOutcome:
        """Upload `path` and return its shareable link.

        Raises an UploadDriverError subclass on any failure, including
        UploadCancelledError after ``cancel()``.
        """
        if self.in_progress:
            raise RuntimeError("An upload is already in progress")
        self._cancel_requested = False
        self.session = None
        self._task = asyncio.create_task(self._run(path, progress))
        try:
            return await self._task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            await self._notify_cancelled()
            raise UploadCancelledError("Upload cancelled") from None
        finally:
            self._task = None

    def cancel(self) -> bool:
        """Stop the in-flight transfer. Bytes already sent are discarded and
        no completion call is made."""
        if not self.in_progress:
            return False
        self._cancel_requested = True
        self._task.cancel()
        return True

    # ── Pipeline ─────────────────────────────────────────────────

    async def _run(self, path: str, progress: Optional[ProgressCallback]) -> UploadOutcome:
        session = await self._probe(path)
        self.session = session
        self._preflight(session)
        await self._check_monthly_limit(session)
        await self._request(session)
        tracker = ProgressTracker(session.size, self._progress_reporter(session, progress))
        try:
            parts = await self._transfer(session, tracker)
        except UploadDriverError:
            await self._abandon(session)
            raise
        outcome = await self._complete(session, parts)
        await self._reconcile(session, tracker)
        return outcome

    async def _probe(self, path: str) -> UploadSession:
        size = await detect_file_size(path)
        return UploadSession(
            path=path,
            file_name=os.path.basename(path),
            mime_type=guess_mime_type(path),
            size=size,
            tier=self.subscription.tier,
        )

    def _preflight(self, session: UploadSession) -> None:
        """Reject oversized files locally; the server re-checks anyway."""
        limit = self.subscription.limits.max_file_size
        if session.size is not None and session.size > limit:
            raise FileTooLargeError(limit, session.size, session.tier)

    async def _check_monthly_limit(self, session: UploadSession) -> None:
        allowed = self.subscription.limits.max_uploads_per_month
        used = await self.counter.get()
        if used >= allowed:
            raise MonthlyLimitReachedError(allowed, used, session.tier)

    async def _request(self, session: UploadSession) -> None:
        session.strategy = select_strategy(session.size, session.tier, self.multipart_threshold)
        if session.strategy is UploadStrategy.MULTIPART:
            target = await self.api.request_multipart(
                session.file_name, session.mime_type, session.size, session.tier,
            )
            session.upload_id = target["uploadId"]
            session.part_urls = list(target["partUrls"])
            session.part_size = int(target.get("partSize") or PART_SIZE)
        else:
            target = await self.api.request_single(
                session.file_name, session.mime_type, session.size, session.tier,
            )
            session.upload_url = target["uploadUrl"]
        session.file_id = str(target["fileId"])
        logger.info(f"Upload {session.file_id} issued ({session.strategy.value}, size={session.size})")

    async def _transfer(self, session: UploadSession, tracker: ProgressTracker) -> list[dict]:
        if session.strategy is UploadStrategy.MULTIPART:
            return await upload_parts(
                self.api.session,
                session.part_urls,
                session.path,
                session.size,
                session.part_size,
                tracker,
                concurrency=self.part_concurrency,
                chunk_size=self.chunk_size,
            )
        await upload_single(
            self.api.session,
            session.upload_url,
            session.path,
            session.size,
            session.mime_type,
            tracker,
            chunk_size=self.chunk_size,
        )
        return []

    async def _complete(self, session: UploadSession, parts: list[dict]) -> UploadOutcome:
        if session.strategy is UploadStrategy.MULTIPART:
            body = await self.api.complete_multipart(session.upload_id, session.file_id, parts)
        else:
            body = await self.api.complete_upload(session.file_id, session.size)
        return UploadOutcome(
            file_id=str(body.get("fileId") or session.file_id),
            download_link=body["downloadLink"],
            file_name=body.get("fileName") or session.file_name,
            file_size=int(body.get("fileSize") or session.size or 0),
            expires_at=body.get("expiresAt"),
        )

    async def _reconcile(self, session: UploadSession, tracker: ProgressTracker) -> None:
        count = await self.counter.increment()
        await tracker.report(1.0)
        logger.info(f"Upload {session.file_id} complete ({count} this month)")

    @staticmethod
    def _progress_reporter(session: UploadSession, progress: Optional[ProgressCallback]):
        async def _report(fraction: float) -> None:
            session.progress = fraction
            if progress is not None:
                result = progress(fraction)
                if inspect.isawaitable(result):
                    await result

        return _report

    # ── Failure paths ────────────────────────────────────────────

    async def _abandon(self, session: UploadSession) -> None:
        """A transfer failed: release the multipart session right away."""
        if session.strategy is UploadStrategy.MULTIPART and session.upload_id:
            await self.api.abort_multipart(session.upload_id, session.file_id)

    async def _notify_cancelled(self) -> None:
        session = self.session
        if session is None or session.file_id is None:
            return
        await self.api.cancel_upload(session.file_id)
