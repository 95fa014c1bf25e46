"""Error classification and backoff for embedding provider calls.

The pipeline decides per failed batch whether to retry (with a smaller
batch) or to give up, based on the category returned here.
"""
from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Classification of provider errors for retry behavior."""

    TRANSIENT = "transient"  # Retry with a smaller batch
    RATE_LIMITED = "rate_limited"  # Retry after backoff or Retry-After
    PERMANENT = "permanent"  # Fail the chunks, no retry
    AUTH_FAILURE = "auth_failure"  # Fail the chunks, no retry

    @property
    def retryable(self) -> bool:
        return self in (ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMITED)


def _extract_status_code(error: Exception) -> int | None:
    """Extract HTTP status code from various exception types."""
    for attr in ("code", "status_code", "status"):
        code = getattr(error, attr, None)
        if isinstance(code, int) and not isinstance(code, bool):
            return code

    response = getattr(error, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code

    # Try parsing from error message as last resort
    error_str = str(error)
    for code in (400, 401, 403, 404, 422, 429, 500, 502, 503, 504):
        if str(code) in error_str:
            return code

    return None


def _extract_retry_after(error: Exception) -> float | None:
    """Extract Retry-After header value from error if present."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if headers is None:
        headers = getattr(error, "headers", None)
    if headers is not None and hasattr(headers, "get"):
        retry_after = headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except (TypeError, ValueError):
                pass

    delay = getattr(error, "retry_delay", None)
    if isinstance(delay, (int, float)) and not isinstance(delay, bool):
        return float(delay)

    return None


def classify_error(error: Exception) -> ErrorCategory:
    """Classify a provider exception into a retry category."""
    status = _extract_status_code(error)

    if status:
        if status == 429:
            return ErrorCategory.RATE_LIMITED
        if status in (401, 403):
            return ErrorCategory.AUTH_FAILURE
        if status in (400, 404, 422):
            return ErrorCategory.PERMANENT
        if 500 <= status < 600:
            return ErrorCategory.TRANSIENT

    error_type = type(error).__name__
    error_msg = str(error).lower()

    connection_types = ("Connection", "Timeout", "Socket", "Transport", "Network", "URLError")
    if any(x in error_type for x in connection_types):
        return ErrorCategory.TRANSIENT

    if "rate limit" in error_msg or "too many requests" in error_msg:
        return ErrorCategory.RATE_LIMITED

    connection_msgs = ("connection", "timeout", "timed out", "reset", "refused", "unreachable")
    if any(x in error_msg for x in connection_msgs):
        return ErrorCategory.TRANSIENT

    # Malformed responses will not improve on retry
    if "json" in error_type.lower() or "decode" in error_msg:
        return ErrorCategory.PERMANENT

    # Unknown errors → TRANSIENT (safer to retry)
    return ErrorCategory.TRANSIENT


def backoff_seconds(error: Exception, category: ErrorCategory, attempt: int, base_ms: int) -> float:
    """Exponential backoff, honoring Retry-After for rate limits."""
    if category == ErrorCategory.RATE_LIMITED:
        retry_after = _extract_retry_after(error)
        if retry_after:
            logger.info(f"Using Retry-After header: {retry_after}s")
            return retry_after
    return (base_ms / 1000.0) * (2 ** attempt)
