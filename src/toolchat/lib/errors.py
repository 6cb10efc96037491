"""
Error taxonomy for the chat service.

Every failure that is reported to a caller before a stream opens is a
ChatError carrying one of a small fixed set of codes and an HTTP status.
"""

from typing import Any, Dict, List, Optional


class ChatError(Exception):
    """Base class for caller-visible chat failures."""

    code = "internal"
    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(
        self,
        message: Optional[str] = None,
        issues: Optional[Dict[str, List[Dict[str, Any]]]] = None
    ):
        self.message = message or self.default_message
        self.issues = issues
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        """Render the error as a JSON-serialisable response body."""
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.issues:
            body["issues"] = self.issues
        return body


class ValidationFailedError(ChatError):
    code = "validation_failed"
    status_code = 400
    default_message = "The request could not be validated."


class UnauthorizedError(ChatError):
    code = "unauthorized"
    status_code = 401
    default_message = "You need to sign in before continuing."


class ForbiddenError(ChatError):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have access to this resource."


class NotFoundError(ChatError):
    code = "not_found"
    status_code = 404
    default_message = "The requested resource was not found."


class RateLimitedError(ChatError):
    code = "rate_limited"
    status_code = 429
    default_message = "You have exceeded your maximum number of messages for the day."


class UpstreamUnavailableError(ChatError):
    code = "upstream_unavailable"
    status_code = 503
    default_message = "A required upstream service is unavailable."


class InternalError(ChatError):
    code = "internal"
    status_code = 500


ERROR_CODES = {
    cls.code: cls
    for cls in (
        ValidationFailedError,
        UnauthorizedError,
        ForbiddenError,
        NotFoundError,
        RateLimitedError,
        UpstreamUnavailableError,
        InternalError,
    )
}
