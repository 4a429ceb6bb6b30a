"""Shared fixtures: a throwaway SQLite ledger and an in-memory blob store."""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import pytest
import pytest_asyncio

from quicksend.database import build_engine, make_session_factory
from quicksend.events import EventBus
from quicksend.models import Base, FileRecord, UploadStatus
from quicksend.services.blob_store import BlobStore, CompletedPart, StorageUnavailable, validate_parts
from quicksend.services.ledger import UploadLedger
from quicksend.services.orchestrator import UploadOrchestrator

PUBLIC_BASE_URL = "https://api.quicksend.test"


class FakeBlobStore(BlobStore):
    """In-memory stand-in for S3 implementing the same gateway interface."""

    def __init__(self, bucket: str = "test-bucket"):
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.sizes: dict[str, int] = {}
        self.assembled_size: Optional[int] = None
        self.sessions: dict[str, str] = {}
        self.completed: list[str] = []
        self.aborted: list[str] = []
        self.deleted: list[str] = []
        self.failing_operations: set[str] = set()
        self.failing_keys: set[str] = set()
        self._next_upload = 0

    def put(self, key: str, data: bytes = b"payload", size: Optional[int] = None) -> None:
        """Store an object; `size` overrides the reported length without allocating it."""
        self.objects[key] = data
        self.sizes[key] = len(data) if size is None else size

    def _check(self, operation: str, key: Optional[str] = None) -> None:
        if operation in self.failing_operations or (key is not None and key in self.failing_keys):
            raise StorageUnavailable(operation, "injected failure")

    async def issue_put_url(self, key: str, content_type: str, ttl: int) -> str:
        self._check("issue_put_url", key)
        return f"https://blob.test/{self.bucket}/{key}?X-Amz-Expires={ttl}"

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        self._check("create_multipart_upload", key)
        self._next_upload += 1
        upload_id = f"mpu-{self._next_upload}"
        self.sessions[upload_id] = key
        return upload_id

    async def issue_part_url(self, key: str, upload_id: str, part_number: int, ttl: int) -> str:
        self._check("issue_part_url", key)
        return (
            f"https://blob.test/{self.bucket}/{key}"
            f"?uploadId={upload_id}&partNumber={part_number}&X-Amz-Expires={ttl}"
        )

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[CompletedPart],
        expected_parts: Optional[int] = None,
    ) -> None:
        validate_parts(parts, expected_parts)
        self._check("complete_multipart_upload", key)
        if self.sessions.get(upload_id) != key:
            raise StorageUnavailable("complete_multipart_upload", f"NoSuchUpload {upload_id}")
        del self.sessions[upload_id]
        self.completed.append(upload_id)
        self.put(key, b"assembled", self.assembled_size)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self.aborted.append(upload_id)
        self.sessions.pop(upload_id, None)

    async def head_object(self, key: str) -> Optional[int]:
        self._check("head_object", key)
        return self.sizes.get(key)

    async def issue_get_url(self, key: str, ttl: int, filename: Optional[str] = None) -> str:
        self._check("issue_get_url", key)
        return f"https://blob.test/{self.bucket}/{key}?X-Amz-Expires={ttl}&response-content-disposition={filename}"

    async def delete_object(self, key: str) -> None:
        self._check("delete_object", key)
        self.objects.pop(key, None)
        self.sizes.pop(key, None)
        self.deleted.append(key)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return UploadLedger(session_factory)


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def orchestrator(ledger, blob_store, events):
    return UploadOrchestrator(ledger, blob_store, public_base_url=PUBLIC_BASE_URL, events=events)


@pytest.fixture
def make_record(ledger):
    """Insert a ledger row directly, bypassing issuance."""

    async def _make(
        status: UploadStatus = UploadStatus.UPLOADED,
        expires_in: timedelta = timedelta(days=7),
        is_active: bool = True,
        size: int = 1024,
        name: str = "report.pdf",
        upload_id: Optional[str] = None,
        storage_deleted: bool = False,
        tier: str = "free",
    ) -> FileRecord:
        file_id = uuid.uuid4()
        now = datetime.now(timezone.utc)
        return await ledger.create(FileRecord(
            id=file_id,
            original_name=name,
            mime_type="application/pdf",
            size=size,
            upload_date=now,
            expires_at=now + expires_in,
            download_count=0,
            is_active=is_active,
            storage_key=f"files/{file_id}/{name}",
            storage_bucket="test-bucket",
            status=status.value,
            upload_id=upload_id,
            storage_deleted=storage_deleted,
            tier=tier,
        ))

    return _make


@pytest.fixture
def recorded(events):
    """Collects every event of the given types published on the bus."""

    def _record(*event_types):
        seen = []
        for event_type in event_types:
            events.subscribe(event_type, seen.append)
        return seen

    return _record
