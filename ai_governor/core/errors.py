"""
Error kinds raised by the governance layer.

Only VendorUnavailable triggers an automatic fallback; every other kind
propagates to the caller on first occurrence.
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(Enum):
    """Machine-readable error classification kept for logs and telemetry."""
    VENDOR_UNAVAILABLE = "vendor_unavailable"
    UNEXPECTED_RESPONSE_SHAPE = "unexpected_response_shape"
    INVALID_REQUEST = "invalid_request"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONFIGURATION_ERROR = "configuration_error"
    STORE_UNAVAILABLE = "store_unavailable"
    CACHE_UNAVAILABLE = "cache_unavailable"
    CANCELLED = "cancelled"


_FRIENDLY_MESSAGES = {
    ErrorKind.VENDOR_UNAVAILABLE: (
        "Our AI service is temporarily unavailable. Please try again in a few minutes."
    ),
    ErrorKind.UNEXPECTED_RESPONSE_SHAPE: (
        "There was an issue processing your request. Please try again or contact support."
    ),
    ErrorKind.INVALID_REQUEST: "Please check your input and try again.",
    ErrorKind.QUOTA_EXCEEDED: (
        "You have reached your daily usage limit. Please upgrade your plan or try again tomorrow."
    ),
    ErrorKind.CONFIGURATION_ERROR: (
        "The AI service is not configured correctly. Please contact support."
    ),
    ErrorKind.STORE_UNAVAILABLE: (
        "Temporary service issue. Please try again in a few moments."
    ),
    ErrorKind.CACHE_UNAVAILABLE: (
        "Temporary service issue. Your request will still be processed, but it may take longer."
    ),
    ErrorKind.CANCELLED: "The request was cancelled.",
}

_DEFAULT_MESSAGE = (
    "An unexpected error occurred. Please try again or contact support if the issue persists."
)


class GovernorError(Exception):
    """Base class for every error the governance layer raises."""
    kind: Optional[ErrorKind] = None

    @property
    def user_message(self) -> str:
        return _FRIENDLY_MESSAGES.get(self.kind, _DEFAULT_MESSAGE)


class VendorUnavailable(GovernorError):
    """Transport failure, timeout, non-2xx status, or a response with no content."""
    kind = ErrorKind.VENDOR_UNAVAILABLE

    def __init__(self, message: str, provider: Optional[str] = None, model: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model


class AllVendorsFailed(VendorUnavailable):
    """Raised when the primary vendor and its single fallback both failed."""

    def __init__(self, message: str, attempts: List[VendorUnavailable]):
        super().__init__(message)
        self.attempts = attempts


class UnexpectedResponseShape(GovernorError):
    """The vendor answered with a payload that cannot be normalized."""
    kind = ErrorKind.UNEXPECTED_RESPONSE_SHAPE

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class InvalidRequest(GovernorError):
    """Caller error: bad prompt, unknown model, unsupported operation."""
    kind = ErrorKind.INVALID_REQUEST


class QuotaExceeded(GovernorError):
    """The user's daily allowance cannot cover the request."""
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, reason: str, remaining_cost: float, remaining_tokens: int,
                 user_id: Optional[str] = None):
        super().__init__(f"AI request denied: {reason}")
        self.reason = reason
        self.remaining_cost = remaining_cost
        self.remaining_tokens = remaining_tokens
        self.user_id = user_id


class ConfigurationError(GovernorError, ValueError):
    """Missing credential or invalid configuration value. Fatal at startup."""
    kind = ErrorKind.CONFIGURATION_ERROR


class StoreUnavailable(GovernorError):
    """The backing key-value store failed."""
    kind = ErrorKind.STORE_UNAVAILABLE


class CacheUnavailable(StoreUnavailable):
    """The response cache could not be read or written. Treated as a miss."""
    kind = ErrorKind.CACHE_UNAVAILABLE


class RequestCancelled(GovernorError):
    """The caller abandoned the request; `partial` holds work already produced."""
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str, partial=None):
        super().__init__(message)
        self.partial = partial


def user_message(error: BaseException) -> str:
    """Return a friendly, non-technical message for any error."""
    if isinstance(error, GovernorError):
        return error.user_message
    return _DEFAULT_MESSAGE
