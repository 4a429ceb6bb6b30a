"""Subscription tier limits and the upload strategy rules derived from them.

This table is consulted by the server (to reject oversized requests and size
presigned URL lifetimes) and by the client driver (to pre-validate before any
network call), so both sides always agree.
"""
import enum
import math
from dataclasses import dataclass
from typing import Optional

MB = 1024 * 1024
GB = 1024 * MB

MULTIPART_THRESHOLD = 50 * MB
PART_SIZE = 200 * MB
LARGE_FILE_THRESHOLD = 100 * MB
VERY_LARGE_FILE_THRESHOLD = 1 * GB

HOUR = 3600


class Tier(str, enum.Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Tier":
        """Map a raw tier string to a Tier. Unknown or missing values fall back to FREE."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.FREE

    @property
    def is_paid(self) -> bool:
        return self is not Tier.FREE

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class UploadStrategy(str, enum.Enum):
    SINGLE = "single"
    MULTIPART = "multipart"


@dataclass(frozen=True)
class TierLimits:
    max_file_size: int
    max_uploads_per_month: int
    retention_days: int
    price_text: str


_LIMITS = {
    Tier.FREE: TierLimits(
        max_file_size=100 * MB,
        max_uploads_per_month=10,
        retention_days=7,
        price_text="$0/month",
    ),
    Tier.PRO: TierLimits(
        max_file_size=1 * GB,
        max_uploads_per_month=100,
        retention_days=30,
        price_text="$4.99/month",
    ),
    Tier.BUSINESS: TierLimits(
        max_file_size=5 * GB,
        max_uploads_per_month=1000,
        retention_days=90,
        price_text="$14.99/month",
    ),
}


def limits_for(tier) -> TierLimits:
    """Limits for a tier. Accepts a Tier or a raw string; unknown tiers get FREE limits."""
    return _LIMITS[Tier.parse(tier)]


def select_strategy(size: Optional[int], tier, threshold: int = MULTIPART_THRESHOLD) -> UploadStrategy:
    """Multipart only pays off for large files on paid tiers."""
    tier = Tier.parse(tier)
    if size is None or size <= threshold or not tier.is_paid:
        return UploadStrategy.SINGLE
    return UploadStrategy.MULTIPART


def part_count(size: int, part_size: int = PART_SIZE) -> int:
    """Number of parts needed to cover `size` bytes (at least one)."""
    return max(1, math.ceil(size / part_size))


def upload_url_ttl(size: Optional[int], tier) -> int:
    """Seconds a presigned PUT stays valid.

    Large files on slow mobile uplinks must not have their URL expire
    mid-transfer, so lifetime grows with size and paid tiers get more headroom.
    """
    tier = Tier.parse(tier)
    size = size or 0
    if tier.is_paid:
        if size > VERY_LARGE_FILE_THRESHOLD:
            return 8 * HOUR
        if size > LARGE_FILE_THRESHOLD:
            return 4 * HOUR
        return 2 * HOUR
    if size > VERY_LARGE_FILE_THRESHOLD:
        return 4 * HOUR
    if size > LARGE_FILE_THRESHOLD:
        return 2 * HOUR
    return 1 * HOUR


def download_url_ttl(size: Optional[int]) -> int:
    """Seconds a presigned GET stays valid."""
    if (size or 0) > LARGE_FILE_THRESHOLD:
        return 2 * HOUR
    return 1 * HOUR


def format_bytes(num_bytes: int) -> str:
    """Human-readable size, e.g. 104857600 -> '100 MB'."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    exponent = 0
    while num_bytes >= 1024 ** (exponent + 1) and exponent < len(units) - 1:
        exponent += 1
    value = round(num_bytes / (1024 ** exponent), 2)
    if value == int(value):
        value = int(value)
    return f"{value} {units[exponent]}"
