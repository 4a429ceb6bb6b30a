import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from quicksend.dependencies import get_orchestrator
from quicksend.main import app
from quicksend.models import UploadStatus
from quicksend.services.tier_policy import MB


@pytest_asyncio.fixture
async def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    await orchestrator.drain_background_tasks()


def _upload_body(size: int, tier: str = "free", name: str = "notes.txt") -> dict:
    return {"fileName": name, "mimeType": "text/plain", "fileSize": size, "subscriptionTier": tier}


class TestLimits:
    @pytest.mark.asyncio
    async def test_within_limits(self, client):
        resp = await client.post("/api/uploads/limits", json={"fileSize": 5 * MB, "subscriptionTier": "pro"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["currentTier"] == "pro"
        assert data["limits"]["maxFileSize"] == 1024 * MB
        assert data["limits"]["retentionDays"] == 30

    @pytest.mark.asyncio
    async def test_too_large(self, client):
        resp = await client.post("/api/uploads/limits", json={"fileSize": 150 * MB, "tier": "free"})
        assert resp.status_code == 413
        data = resp.json()
        assert data["code"] == "FileTooLarge"
        assert data["limitBytes"] == 104857600
        assert data["actualBytes"] == 157286400
        assert data["currentTier"] == "free"


class TestIssuance:
    @pytest.mark.asyncio
    async def test_single_upload_url(self, client, ledger):
        resp = await client.post("/api/uploads/upload-url", json=_upload_body(10 * MB))
        assert resp.status_code == 201
        data = resp.json()
        assert data["uploadUrl"].startswith("https://blob.test/")
        assert data["storageKey"] == f"files/{data['fileId']}/notes.txt"
        assert data["urlExpiresIn"] == 3600
        record = await ledger.get(uuid.UUID(data["fileId"]))
        assert record.status == UploadStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_legacy_file_type_field(self, client, ledger):
        body = {"fileName": "a.png", "fileType": "image/png", "fileSize": 100, "subscriptionTier": "free"}
        resp = await client.post("/api/uploads/upload-url", json=body)
        assert resp.status_code == 201
        record = await ledger.get(uuid.UUID(resp.json()["fileId"]))
        assert record.mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_single_too_large(self, client):
        resp = await client.post("/api/uploads/upload-url", json=_upload_body(150 * MB))
        assert resp.status_code == 413
        assert resp.json()["limitBytes"] == 104857600

    @pytest.mark.asyncio
    async def test_missing_file_name(self, client):
        resp = await client.post("/api/uploads/upload-url", json={"fileSize": 10})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_multipart_free_tier_rejected(self, client):
        resp = await client.post("/api/uploads/multipart", json=_upload_body(80 * MB, "free", "a.zip"))
        assert resp.status_code == 403
        assert resp.json()["code"] == "TierNotEligible"

    @pytest.mark.asyncio
    async def test_multipart_business(self, client):
        resp = await client.post("/api/uploads/multipart", json=_upload_body(450 * MB, "business", "b.zip"))
        assert resp.status_code == 201
        data = resp.json()
        assert len(data["partUrls"]) == 3
        assert data["bucket"] == "test-bucket"
        assert data["key"] == f"files/{data['fileId']}/b.zip"
        assert data["uploadId"]

    @pytest.mark.asyncio
    async def test_auto_strategy(self, client):
        small = await client.post("/api/uploads", json=_upload_body(1 * MB, "business"))
        large = await client.post("/api/uploads", json=_upload_body(200 * MB, "business", "c.zip"))
        assert small.json()["strategy"] == "single"
        assert small.json()["uploadUrl"]
        assert large.json()["strategy"] == "multipart"
        assert len(large.json()["partUrls"]) == 1

    @pytest.mark.asyncio
    async def test_storage_outage_is_503(self, client, blob_store):
        blob_store.failing_operations.add("issue_put_url")
        resp = await client.post("/api/uploads/upload-url", json=_upload_body(10))
        assert resp.status_code == 503
        assert resp.json()["code"] == "StorageUnavailable"


class TestCompletion:
    @pytest.mark.asyncio
    async def test_complete_before_and_after_object_lands(self, client, blob_store):
        issued = (await client.post("/api/uploads/upload-url", json=_upload_body(2048))).json()
        body = {"fileId": issued["fileId"], "fileSize": 2048}

        early = await client.post("/api/uploads/complete", json=body)
        assert early.status_code == 404
        assert early.json()["error"] == "NotFoundInStorage"

        blob_store.put(issued["storageKey"])
        done = await client.post("/api/uploads/complete", json=body)
        assert done.status_code == 200
        assert done.json()["success"] is True
        assert done.json()["downloadLink"].endswith(f"/download/{issued['fileId']}")

        again = await client.post("/api/uploads/complete", json=body)
        assert again.status_code == 200

    @pytest.mark.asyncio
    async def test_multipart_complete(self, client, blob_store):
        issued = (await client.post(
            "/api/uploads/multipart", json=_upload_body(450 * MB, "business", "b.zip"),
        )).json()
        blob_store.assembled_size = 450 * MB
        parts = [{"partNumber": n, "etag": f'"e{n}"'} for n in (1, 2, 3)]

        resp = await client.post("/api/uploads/multipart/complete", json={
            "uploadId": issued["uploadId"], "fileId": issued["fileId"], "parts": parts,
        })

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["fileName"] == "b.zip"
        assert data["fileSize"] == 450 * MB
        assert data["expiresAt"]

    @pytest.mark.asyncio
    async def test_multipart_complete_missing_part(self, client, ledger):
        issued = (await client.post(
            "/api/uploads/multipart", json=_upload_body(450 * MB, "business", "b.zip"),
        )).json()
        parts = [{"PartNumber": 1, "ETag": '"e1"'}, {"PartNumber": 2, "ETag": '"e2"'}]

        resp = await client.post("/api/uploads/multipart/complete", json={
            "uploadId": issued["uploadId"], "fileId": issued["fileId"], "parts": parts,
        })

        assert resp.status_code == 400
        assert resp.json()["code"] == "IncompletePartsError"
        assert resp.json()["missingParts"] == [3]
        record = await ledger.get(uuid.UUID(issued["fileId"]))
        assert record.status == UploadStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_abort_always_succeeds(self, client):
        resp = await client.post("/api/uploads/multipart/abort", json={"uploadId": "x", "fileId": "not-a-uuid"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        issued = (await client.post("/api/uploads/upload-url", json=_upload_body(2048))).json()
        resp = await client.post(f"/api/uploads/{issued['fileId']}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"

    @pytest.mark.asyncio
    async def test_encryption_metadata(self, client, ledger):
        issued = (await client.post("/api/uploads/upload-url", json=_upload_body(2048))).json()
        resp = await client.post(
            f"/api/uploads/{issued['fileId']}/encryption-metadata",
            json={"iv": "c2VjcmV0", "originalSize": 2000},
        )
        assert resp.status_code == 200
        record = await ledger.get(uuid.UUID(issued["fileId"]))
        assert record.encryption_iv == "c2VjcmV0"
        assert record.original_size == 2000


class TestDownload:
    @pytest.mark.asyncio
    async def test_redirects_to_signed_url(self, client, make_record):
        record = await make_record()
        resp = await client.get(f"/download/{record.id}")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("https://blob.test/")

    @pytest.mark.asyncio
    async def test_unknown(self, client):
        resp = await client.get(f"/download/{uuid.uuid4()}")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_pending_is_locked(self, client, make_record):
        record = await make_record(status=UploadStatus.PENDING)
        resp = await client.get(f"/download/{record.id}")
        assert resp.status_code == 423

    @pytest.mark.asyncio
    async def test_expired_is_gone(self, client, make_record):
        record = await make_record(expires_in=timedelta(minutes=-5))
        resp = await client.get(f"/download/{record.id}")
        assert resp.status_code == 410
        assert resp.json()["code"] == "Expired"

    @pytest.mark.asyncio
    async def test_failed_upload(self, client, make_record):
        record = await make_record(status=UploadStatus.FAILED)
        resp = await client.get(f"/download/{record.id}")
        assert resp.status_code == 500
