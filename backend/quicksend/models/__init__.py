"""Import all models so SQLAlchemy metadata knows about them."""
from quicksend.models.base import Base
from quicksend.models.file_record import FileRecord, UploadStatus

__all__ = ["Base", "FileRecord", "UploadStatus"]
