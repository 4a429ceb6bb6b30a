"""Upload request/response schemas."""
import uuid
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, Field

from quicksend.schemas.base import CamelModel


class UploadLimitsRequest(CamelModel):
    file_size: Optional[int] = Field(None, ge=0)
    subscription_tier: Optional[str] = Field(
        None, validation_alias=AliasChoices("subscriptionTier", "tier", "subscription_tier")
    )


class TierLimitsResponse(CamelModel):
    max_file_size: int
    max_uploads_per_month: int
    retention_days: int
    price_text: str


class UploadLimitsResponse(CamelModel):
    success: bool = True
    current_tier: str
    limits: TierLimitsResponse


class UploadRequest(CamelModel):
    file_name: str = Field(..., min_length=1)
    # The iOS client historically sent "fileType"
    mime_type: Optional[str] = Field(
        None, validation_alias=AliasChoices("mimeType", "fileType", "mime_type")
    )
    file_size: Optional[int] = Field(None, ge=0)
    subscription_tier: Optional[str] = Field(
        None, validation_alias=AliasChoices("subscriptionTier", "tier", "subscription_tier")
    )


class SingleUploadResponse(CamelModel):
    upload_url: str
    file_id: uuid.UUID
    storage_key: str
    expires_at: datetime
    url_expires_in: int


class MultipartUploadResponse(CamelModel):
    upload_id: str
    file_id: uuid.UUID
    part_urls: list[str]
    bucket: str
    key: str
    part_size: int
    expires_at: datetime
    url_expires_in: int


class UploadTargetResponse(CamelModel):
    """Either shape, tagged by `strategy`."""
    strategy: str
    file_id: uuid.UUID
    storage_key: str
    expires_at: datetime
    url_expires_in: int
    upload_url: Optional[str] = None
    upload_id: Optional[str] = None
    part_urls: Optional[list[str]] = None
    part_size: Optional[int] = None
    bucket: Optional[str] = None


class CompleteUploadRequest(CamelModel):
    file_id: uuid.UUID
    file_size: Optional[int] = Field(None, ge=0)


class UploadedPart(CamelModel):
    part_number: int = Field(
        ..., ge=1, validation_alias=AliasChoices("partNumber", "PartNumber", "part_number")
    )
    etag: Optional[str] = Field(None, validation_alias=AliasChoices("etag", "ETag", "eTag"))


class CompleteMultipartRequest(CamelModel):
    upload_id: Optional[str] = None
    file_id: uuid.UUID
    parts: list[UploadedPart]


class AbortMultipartRequest(CamelModel):
    upload_id: Optional[str] = None
    file_id: str


class EncryptionMetadataRequest(CamelModel):
    iv: str = Field(..., min_length=1)
    original_size: int = Field(..., ge=0)


class UploadResultResponse(CamelModel):
    success: bool = True
    file_id: uuid.UUID
    download_link: str
    file_name: str
    file_size: int
    expires_at: datetime


class SuccessResponse(CamelModel):
    success: bool = True
    message: str = ""


class CancelUploadResponse(CamelModel):
    success: bool = True
    file_id: uuid.UUID
    status: str
