"""Upload API - issuance, completion, abort and cancel.

Errors raised by the orchestrator are rendered by the exception handlers
registered in ``quicksend.main``.
"""
import logging
import uuid

from fastapi import APIRouter, Depends

from quicksend.dependencies import get_orchestrator
from quicksend.schemas.upload import (
    AbortMultipartRequest,
    CancelUploadResponse,
    CompleteMultipartRequest,
    CompleteUploadRequest,
    EncryptionMetadataRequest,
    MultipartUploadResponse,
    SingleUploadResponse,
    SuccessResponse,
    UploadLimitsRequest,
    UploadLimitsResponse,
    UploadRequest,
    UploadResultResponse,
    UploadTargetResponse,
)
from quicksend.services.blob_store import CompletedPart
from quicksend.services.orchestrator import MultipartUploadTarget, UploadOrchestrator
from quicksend.services.tier_policy import Tier, UploadStrategy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/uploads", tags=["uploads"])


def _target_payload(target) -> dict:
    payload = {
        "strategy": target.strategy.value,
        "file_id": target.file_id,
        "storage_key": target.storage_key,
        "expires_at": target.expires_at,
        "url_expires_in": target.url_ttl,
        "bucket": target.bucket,
    }
    if isinstance(target, MultipartUploadTarget):
        payload.update(upload_id=target.upload_id, part_urls=target.part_urls, part_size=target.part_size)
    else:
        payload.update(upload_url=target.upload_url)
    return payload


def _result_payload(result) -> dict:
    return {
        "success": True,
        "file_id": result.file_id,
        "download_link": result.download_link,
        "file_name": result.file_name,
        "file_size": result.file_size,
        "expires_at": result.expires_at,
    }


@router.post("/limits", response_model=UploadLimitsResponse)
async def check_upload_limits(
    body: UploadLimitsRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Check a prospective file size against the tier's limits."""
    tier = Tier.parse(body.subscription_tier)
    limits = orchestrator.check_limits(body.file_size, tier)
    return {
        "success": True,
        "current_tier": tier.value,
        "limits": {
            "max_file_size": limits.max_file_size,
            "max_uploads_per_month": limits.max_uploads_per_month,
            "retention_days": limits.retention_days,
            "price_text": limits.price_text,
        },
    }


@router.post("", response_model=UploadTargetResponse, status_code=201)
async def request_upload(
    body: UploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Issue an upload target; the server picks single-part or multipart."""
    target = await orchestrator.request_upload(
        body.file_name, body.mime_type, body.file_size, body.subscription_tier,
    )
    return _target_payload(target)


@router.post("/upload-url", response_model=SingleUploadResponse, status_code=201)
async def request_single_upload(
    body: UploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Issue one presigned PUT URL for the whole file."""
    target = await orchestrator.request_upload(
        body.file_name, body.mime_type, body.file_size, body.subscription_tier,
        strategy=UploadStrategy.SINGLE,
    )
    return {
        "upload_url": target.upload_url,
        "file_id": target.file_id,
        "storage_key": target.storage_key,
        "expires_at": target.expires_at,
        "url_expires_in": target.url_ttl,
    }


@router.post("/multipart", response_model=MultipartUploadResponse, status_code=201)
async def request_multipart_upload(
    body: UploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Start a multipart session (Pro/Business only) with one URL per part."""
    target = await orchestrator.request_upload(
        body.file_name, body.mime_type, body.file_size, body.subscription_tier,
        strategy=UploadStrategy.MULTIPART,
    )
    return {
        "upload_id": target.upload_id,
        "file_id": target.file_id,
        "part_urls": target.part_urls,
        "bucket": target.bucket,
        "key": target.storage_key,
        "part_size": target.part_size,
        "expires_at": target.expires_at,
        "url_expires_in": target.url_ttl,
    }


@router.post("/complete", response_model=UploadResultResponse)
async def complete_upload(
    body: CompleteUploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Confirm a single-part upload once the object is visible in storage."""
    result = await orchestrator.complete_upload(body.file_id, body.file_size)
    return _result_payload(result)


@router.post("/multipart/complete", response_model=UploadResultResponse)
async def complete_multipart_upload(
    body: CompleteMultipartRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Assemble the uploaded parts and return the shareable link."""
    parts = [CompletedPart(part_number=p.part_number, etag=p.etag) for p in body.parts]
    result = await orchestrator.complete_multipart(body.file_id, parts, upload_id=body.upload_id)
    return _result_payload(result)


@router.post("/multipart/abort", response_model=SuccessResponse)
async def abort_multipart_upload(
    body: AbortMultipartRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Best-effort abort; always reports success."""
    try:
        file_id = uuid.UUID(body.file_id)
    except ValueError:
        logger.warning(f"Abort requested for malformed file id {body.file_id!r}")
    else:
        await orchestrator.abort_multipart(file_id, upload_id=body.upload_id)
    return {"success": True, "message": "Multipart upload cancelled"}


@router.post("/{file_id}/cancel", response_model=CancelUploadResponse)
async def cancel_upload(
    file_id: uuid.UUID,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Cancel an in-flight upload so its row does not linger as pending."""
    status = await orchestrator.cancel_upload(file_id)
    return {"success": True, "file_id": file_id, "status": status}


@router.post("/{file_id}/encryption-metadata", response_model=SuccessResponse)
async def store_encryption_metadata(
    file_id: uuid.UUID,
    body: EncryptionMetadataRequest,
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
):
    """Store the IV and plaintext size of a client-side encrypted file."""
    await orchestrator.set_encryption_metadata(file_id, body.iv, body.original_size)
    return {"success": True, "message": "Encryption metadata stored"}
