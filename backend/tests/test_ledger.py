import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from quicksend.models import UploadStatus
from quicksend.services.ledger import Transition


@pytest.mark.asyncio
async def test_mark_uploaded_is_idempotent(ledger, make_record):
    record = await make_record(status=UploadStatus.PENDING)

    assert await ledger.mark_uploaded(record.id, final_size=2048) is Transition.APPLIED
    assert await ledger.mark_uploaded(record.id) is Transition.ALREADY

    stored = await ledger.get(record.id)
    assert stored.status == UploadStatus.UPLOADED.value
    assert stored.size == 2048


@pytest.mark.asyncio
async def test_uploaded_row_is_never_failed(ledger, make_record):
    record = await make_record(status=UploadStatus.UPLOADED)
    assert await ledger.mark_failed(record.id) is Transition.REJECTED
    assert (await ledger.get(record.id)).status == UploadStatus.UPLOADED.value


@pytest.mark.asyncio
async def test_failed_row_cannot_become_uploaded(ledger, make_record):
    record = await make_record(status=UploadStatus.FAILED)
    assert await ledger.mark_uploaded(record.id) is Transition.REJECTED


@pytest.mark.asyncio
async def test_racing_transitions_have_one_winner(ledger, make_record):
    record = await make_record(status=UploadStatus.PENDING)

    outcomes = await asyncio.gather(*(ledger.mark_uploaded(record.id) for _ in range(5)))

    assert outcomes.count(Transition.APPLIED) == 1
    assert outcomes.count(Transition.ALREADY) == 4


@pytest.mark.asyncio
async def test_mark_inactive_only_once(ledger, make_record):
    record = await make_record()
    assert await ledger.mark_inactive(record.id) is True
    assert await ledger.mark_inactive(record.id) is False
    assert (await ledger.get(record.id)).is_active is False


@pytest.mark.asyncio
async def test_increment_download_count(ledger, make_record):
    record = await make_record()
    await ledger.increment_download_count(record.id)
    await ledger.increment_download_count(record.id)
    assert (await ledger.get(record.id)).download_count == 2


@pytest.mark.asyncio
async def test_list_expired_returns_every_row_still_holding_storage(ledger, make_record):
    lazily_expired = await make_record(expires_in=timedelta(days=-2), is_active=False)
    expired = await make_record(expires_in=timedelta(days=-1))
    await make_record(expires_in=timedelta(days=-3), is_active=False, storage_deleted=True)
    await make_record(expires_in=timedelta(days=3))

    rows = await ledger.list_expired(datetime.now(timezone.utc))

    assert [r.id for r in rows] == [lazily_expired.id, expired.id]


@pytest.mark.asyncio
async def test_mark_swept_retires_row_once(ledger, make_record):
    record = await make_record(expires_in=timedelta(days=-1))

    assert await ledger.mark_swept(record.id) is True
    assert await ledger.mark_swept(record.id) is False

    stored = await ledger.get(record.id)
    assert stored.is_active is False
    assert stored.storage_deleted is True


@pytest.mark.asyncio
async def test_attach_upload_id_and_encryption_metadata(ledger, make_record):
    record = await make_record(status=UploadStatus.PENDING)
    await ledger.attach_upload_id(record.id, "mpu-42")
    assert await ledger.set_encryption_metadata(record.id, "aXY=", 999) is True

    stored = await ledger.get(record.id)
    assert stored.upload_id == "mpu-42"
    assert stored.is_multipart
    assert stored.encryption_iv == "aXY="
    assert stored.original_size == 999
