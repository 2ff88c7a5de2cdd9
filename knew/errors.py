"""
Exceptions and error classification for KNEW.
"""
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """
    Disambiguated failure signal handed to callers.

    The presentation layer maps these to notifications or redirects without
    inspecting message strings.
    """
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_ERROR = "AUTH_ERROR"
    QUOTA_EXHAUSTED = "QUOTA_EXHAUSTED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CANCELLED = "CANCELLED"


# Codes that may succeed if the same call is replayed later
TRANSIENT_CODES = frozenset({
    ErrorCode.RATE_LIMITED,
    ErrorCode.SERVER_ERROR,
    ErrorCode.NETWORK_ERROR,
})


def classify_status(status: Optional[int]) -> ErrorCode:
    """
    Map an upstream HTTP status to an error code.

    Args:
        status: HTTP status code, or None when no response was received

    Returns:
        The matching ErrorCode
    """
    if status is None:
        return ErrorCode.NETWORK_ERROR
    if status == 429:
        return ErrorCode.RATE_LIMITED
    if status in (401, 403):
        return ErrorCode.AUTH_ERROR
    if status == 402:
        return ErrorCode.QUOTA_EXHAUSTED
    if status >= 500:
        return ErrorCode.SERVER_ERROR
    return ErrorCode.VALIDATION_ERROR


class KnewError(Exception):
    """Base class for all KNEW errors."""


class ConfigError(KnewError):
    """A required setting or secret is missing."""


class UpstreamError(KnewError):
    """
    A third-party call (news search, AI gateway) failed.

    Args:
        message: Human readable description
        status: HTTP status of the failed response, None for network failures
        payload: Decoded error body, if any
    """
    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload

    @property
    def code(self) -> ErrorCode:
        return classify_status(self.status)

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_CODES


class RequestCancelled(KnewError):
    """An operation observed its cancel token and stopped."""


class DuplicateFollowError(KnewError):
    """The follow store rejected a duplicate (user, type, value) row."""
    code = "23505"
