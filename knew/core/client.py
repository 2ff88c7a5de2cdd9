"""
Unified call wrapper for upstream operations.

Every upstream call made by the core goes through invoke(), which turns
exceptions into a classified ApiResponse so that callers branch on
``status``/``error.code`` instead of message strings.
"""
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from knew.core.dedupe import CancelToken
from knew.errors import ErrorCode, RequestCancelled, UpstreamError

# Configure logging
logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_AUTH_ERROR = "auth_error"

ERROR_MESSAGES = {
    ErrorCode.AUTH_ERROR: "Authentication required. Please sign in to continue.",
    ErrorCode.RATE_LIMITED: "Too many requests. Please try again in a few moments.",
    ErrorCode.NETWORK_ERROR: "Network error. Please check your connection and try again.",
    ErrorCode.SERVER_ERROR: "Server error. Please try again later.",
    ErrorCode.CANCELLED: "Request aborted",
}


@dataclass(frozen=True)
class ApiError:
    message: str
    code: Optional[ErrorCode] = None
    details: Any = None


@dataclass(frozen=True)
class ApiResponse:
    """
    Envelope returned by invoke() and the services built on it.

    ``degraded`` marks data served from the fallback cache instead of the
    live upstream.
    """
    data: Any = None
    error: Optional[ApiError] = None
    status: str = STATUS_SUCCESS
    degraded: bool = False
    cache_hit: bool = False

    def is_success(self) -> bool:
        """
        True only for a well-formed success: success status, no error and a
        payload that is present and does not itself carry an ``error`` field.
        """
        if self.status != STATUS_SUCCESS or self.error is not None or self.data is None:
            return False
        if isinstance(self.data, dict) and self.data.get("error"):
            return False
        return True

    @classmethod
    def failure(cls, message: str, code: Optional[ErrorCode], details: Any = None) -> "ApiResponse":
        if code == ErrorCode.RATE_LIMITED:
            status = STATUS_RATE_LIMITED
        elif code == ErrorCode.AUTH_ERROR:
            status = STATUS_AUTH_ERROR
        else:
            status = STATUS_ERROR
        return cls(data=None, error=ApiError(message=message, code=code, details=details), status=status)


async def invoke(
    name: str,
    call: Callable[[], Awaitable[Any]],
    observer=None,
    cancel_token: Optional[CancelToken] = None,
    suppress_errors: bool = False,
    on_rate_limited: Optional[Callable[[], Any]] = None,
    on_auth_error: Optional[Callable[[], Any]] = None,
) -> ApiResponse:
    """
    Run an upstream call and classify its outcome.

    Args:
        name: Logical operation name, used for telemetry
        call: Zero-argument callable returning the awaitable to run
        observer: Optional Observer notified with the call duration
        cancel_token: Checked before the call starts
        suppress_errors: Replace upstream messages with generic ones
        on_rate_limited: Called when the upstream answered 429
        on_auth_error: Called when the upstream answered 401/403

    Returns:
        ApiResponse; upstream failures never raise
    """
    if cancel_token is not None and cancel_token.cancelled:
        return ApiResponse.failure(ERROR_MESSAGES[ErrorCode.CANCELLED], ErrorCode.CANCELLED)

    start = time.monotonic()
    try:
        data = await call()
        response = ApiResponse(data=data)
    except RequestCancelled:
        response = ApiResponse.failure(ERROR_MESSAGES[ErrorCode.CANCELLED], ErrorCode.CANCELLED)
    except UpstreamError as e:
        code = e.code
        if code == ErrorCode.RATE_LIMITED:
            if on_rate_limited is not None:
                on_rate_limited()
            message = ERROR_MESSAGES[code]
        elif code == ErrorCode.AUTH_ERROR:
            if on_auth_error is not None:
                on_auth_error()
            message = ERROR_MESSAGES[code]
        else:
            message = ERROR_MESSAGES.get(code, e.message) if suppress_errors else e.message
        response = ApiResponse.failure(message, code, details={"status": e.status, "payload": e.payload})
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"{name} failed: {e}")
        message = ERROR_MESSAGES[ErrorCode.NETWORK_ERROR] if suppress_errors else str(e) or type(e).__name__
        response = ApiResponse.failure(message, ErrorCode.NETWORK_ERROR, details={"exception": type(e).__name__})

    duration = time.monotonic() - start
    logger.debug(f"[API] {name} completed in {duration * 1000:.0f}ms")
    if observer is not None:
        observer.on_api_call(name, duration, response.status)
    return response
