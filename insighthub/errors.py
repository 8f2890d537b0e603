"""
Typed failures shared by the connection lifecycle, platform adapters,
aggregation and chat.

"No data" is deliberately absent: an adapter that finds zero accounts returns
an empty NormalizedResult instead of raising.
"""

from typing import Optional


class InsightHubError(Exception):
    """Base class. ``message`` is safe to show to the end user."""

    status_code = 500
    error_type = "internal"

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.platform = platform

    def to_dict(self) -> dict:
        data = {"success": False, "error": self.message, "error_type": self.error_type}
        if self.platform:
            data["platform"] = self.platform
        return data


class AuthFailure(InsightHubError):
    """Credential invalid, expired or revoked; the user has to reconnect."""

    status_code = 409
    error_type = "auth"


class TransientNetworkFailure(InsightHubError):
    """Upstream call failed for reasons unrelated to the credential."""

    status_code = 502
    error_type = "transient"

    def __init__(self, message: str, platform: Optional[str] = None, rate_limited: bool = False):
        super().__init__(message, platform)
        self.rate_limited = rate_limited


class RateLimited(InsightHubError):
    status_code = 429
    error_type = "rate_limited"

    def __init__(self, message: str, retry_after_ms: int):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after_ms"] = self.retry_after_ms
        return data


class ValidationFailure(InsightHubError):
    """Malformed caller input, rejected before any network call."""

    status_code = 400
    error_type = "validation"


class NotFoundError(ValidationFailure):
    status_code = 404
    error_type = "not_found"
