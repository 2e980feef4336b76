"""
Custom exceptions for govscore.

Every error carries an HTTP-like code and a retryable flag so the sync
orchestrator and the read API can decide how to react without inspecting
exception types one by one.
"""
from typing import Optional, Any


class GovScoreError(Exception):
    """Base exception for all govscore errors."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses and sync log metrics."""
        result = {
            "error_code": self.code,
            "error_message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


class ConfigurationError(GovScoreError):
    """Required configuration is missing or malformed."""

    def __init__(self, message: str):
        super().__init__(message, code=500, retryable=False)


class StorageError(GovScoreError):
    """A read or write against the persisted store failed."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message, code=503, retryable=retryable)


# ============================================
# Upstream API errors
# ============================================

class UpstreamError(GovScoreError):
    """Non-2xx or transport failure from the upstream governance API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, code=502, retryable=retryable, retry_after=retry_after)
        self.status_code = status_code
        self.response = response


class UpstreamRateLimitError(UpstreamError):
    """429 responses that outlasted the retry policy."""

    def __init__(self, message: str = "Upstream rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429, retryable=True, retry_after=retry_after)


class UpstreamTimeoutError(UpstreamError):
    """Requests that kept timing out after the retry policy was exhausted."""

    def __init__(self, message: str = "Upstream request timed out"):
        super().__init__(message, status_code=None, retryable=True)


class UpstreamUnavailableError(UpstreamError):
    """Liveness check failed; the whole sync must abort before writing."""

    def __init__(self, message: str = "Upstream API failed health check"):
        super().__init__(message, status_code=503, retryable=False)


class LiveScoringError(GovScoreError):
    """The read path's live fallback could not score delegates."""

    def __init__(self, message: str):
        super().__init__(message, code=503, retryable=True)


class RationaleFetchError(GovScoreError):
    """A rationale document could not be resolved (broken URL, oversized, malformed)."""

    def __init__(self, message: str, url: Optional[str] = None, retryable: bool = False):
        super().__init__(message, code=422, retryable=retryable)
        self.url = url
