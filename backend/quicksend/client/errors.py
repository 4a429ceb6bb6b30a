"""Client-side error taxonomy and the alerts shown for each category."""
import enum
from dataclasses import dataclass
from typing import Optional

import aiohttp

from quicksend.services.tier_policy import Tier, format_bytes


class ErrorCategory(str, enum.Enum):
    FILE_TOO_LARGE = "file_too_large"
    MONTHLY_LIMIT_REACHED = "monthly_limit_reached"
    TIER_NOT_ELIGIBLE = "tier_not_eligible"
    NETWORK = "network"
    SERVER = "server"
    FILE_UNREADABLE = "file_unreadable"
    CANCELLED = "cancelled"


class UploadDriverError(Exception):
    """Base for every failure the driver reports to its caller."""

    category = ErrorCategory.SERVER

    def __init__(self, message: str = ""):
        self.message = message or self.category.value
        super().__init__(self.message)


class FileTooLargeError(UploadDriverError):
    category = ErrorCategory.FILE_TOO_LARGE

    def __init__(self, limit_bytes: int, actual_bytes: int, tier: Tier):
        self.limit_bytes = limit_bytes
        self.actual_bytes = actual_bytes
        self.tier = Tier.parse(tier)
        super().__init__(
            f"{format_bytes(actual_bytes)} exceeds the {format_bytes(limit_bytes)} "
            f"limit of the {self.tier.display_name} plan"
        )


class MonthlyLimitReachedError(UploadDriverError):
    category = ErrorCategory.MONTHLY_LIMIT_REACHED

    def __init__(self, limit: int, used: int, tier: Tier):
        self.limit = limit
        self.used = used
        self.tier = Tier.parse(tier)
        super().__init__(f"{used} of {limit} monthly uploads used on the {self.tier.display_name} plan")


class TierNotEligibleError(UploadDriverError):
    category = ErrorCategory.TIER_NOT_ELIGIBLE


class NetworkError(UploadDriverError):
    category = ErrorCategory.NETWORK


class ServerError(UploadDriverError):
    category = ErrorCategory.SERVER

    def __init__(self, message: str = "", status: Optional[int] = None, code: Optional[str] = None):
        self.status = status
        self.code = code
        super().__init__(message)


class FileUnreadableError(UploadDriverError):
    category = ErrorCategory.FILE_UNREADABLE


class UploadCancelledError(UploadDriverError):
    category = ErrorCategory.CANCELLED


@dataclass(frozen=True)
class Alert:
    title: str
    message: str
    offer_upgrade: bool = False


def describe_error(error: BaseException) -> Alert:
    """Map any upload failure to the alert the user sees."""
    if isinstance(error, FileTooLargeError):
        return Alert(
            title="File Too Large",
            message=(
                f"Your {error.tier.display_name} plan allows files up to "
                f"{format_bytes(error.limit_bytes)}. The selected file is "
                f"{format_bytes(error.actual_bytes)}. Upgrade to send larger files."
            ),
            offer_upgrade=True,
        )
    if isinstance(error, MonthlyLimitReachedError):
        return Alert(
            title="Upload Limit Reached",
            message=(
                f"You have used all {error.limit} uploads included in your "
                f"{error.tier.display_name} plan this month. Upgrade to keep sending."
            ),
            offer_upgrade=True,
        )
    if isinstance(error, TierNotEligibleError):
        return Alert(
            title="Upgrade Required",
            message="Large file uploads are available on the Pro and Business plans.",
            offer_upgrade=True,
        )
    if isinstance(error, (NetworkError, aiohttp.ClientError)):
        return Alert(
            title="Network Error",
            message="The upload was interrupted. Check your connection and try again.",
        )
    if isinstance(error, (FileUnreadableError, OSError)):
        return Alert(
            title="Cannot Read File",
            message="The selected file could not be read. Choose it again and retry.",
        )
    if isinstance(error, UploadCancelledError):
        return Alert(title="Upload Cancelled", message="The upload was cancelled.")
    return Alert(
        title="Upload Failed",
        message="Something went wrong on our side. Please try again in a moment.",
    )
