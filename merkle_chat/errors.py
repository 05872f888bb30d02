"""
Error taxonomy for the dispatch pipeline.
"""
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    TIMEOUT = "Timeout"
    RATE_LIMITED = "RateLimited"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    AUTH_ERROR = "AuthError"
    REQUEST_ERROR = "RequestError"
    MALFORMED_RESPONSE = "MalformedResponse"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = {
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.SERVICE_UNAVAILABLE,
}

DEFAULT_MESSAGES = {
    ErrorCategory.TIMEOUT: "Request timeout - the completion service took too long to respond.",
    ErrorCategory.RATE_LIMITED: "Rate limit exceeded. Please wait a moment before sending another message.",
    ErrorCategory.SERVICE_UNAVAILABLE: "The completion service is temporarily unavailable. Please try again later.",
    ErrorCategory.AUTH_ERROR: "Invalid API key. Please check your API configuration.",
    ErrorCategory.REQUEST_ERROR: "The completion service rejected the request.",
    ErrorCategory.MALFORMED_RESPONSE: "Invalid response format from the completion service.",
}


class CompletionError(Exception):
    """A categorised failure carrying a message fit for display."""

    def __init__(
        self,
        category: ErrorCategory,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.category = category
        self.message = message or DEFAULT_MESSAGES[category]
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.category.retryable


class EmptyQueue(Exception):
    """Raised by dequeue_front() when there is nothing to send."""
