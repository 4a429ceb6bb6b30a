"""FileRecord model - one ledger row per upload attempt (bytes live in the blob store)."""
import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, BigInteger, Integer, Boolean, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from quicksend.models.base import Base, TimestampMixin


class UploadStatus(str, enum.Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    FAILED = "failed"


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FileRecord(Base, TimestampMixin):
    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    original_name: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Provisional until status is "uploaded"
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    upload_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    # Set once the sweeper has deleted the object; is_active alone can be flipped lazily
    storage_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    storage_key: Mapped[str] = mapped_column(String(1200), nullable=False)
    storage_bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=UploadStatus.PENDING.value, index=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    upload_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    original_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    encryption_iv: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def is_multipart(self) -> bool:
        return self.upload_id is not None

    def is_expired(self, now: datetime) -> bool:
        return now > as_utc(self.expires_at)
