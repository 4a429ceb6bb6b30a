"""Device-side upload driver."""
from quicksend.client.api import BackendClient
from quicksend.client.counter import MonthlyUploadCounter
from quicksend.client.driver import UploadDriver, UploadOutcome, UploadSession
from quicksend.client.errors import Alert, ErrorCategory, UploadDriverError, describe_error
from quicksend.client.subscription import SubscriptionState

__all__ = [
    "Alert",
    "BackendClient",
    "ErrorCategory",
    "MonthlyUploadCounter",
    "SubscriptionState",
    "UploadDriver",
    "UploadDriverError",
    "UploadOutcome",
    "UploadSession",
    "describe_error",
]
