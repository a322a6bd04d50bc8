"""
Error types and error response utilities.

Error responses use the flat body the browser client expects:
{
    "error": "Error description"
}

Exception Hierarchy:
    - ConfigurationError: Settings could not be loaded (startup-fatal)
    - UpstreamError: Any completion provider failure
        - UpstreamTimeoutError: Provider call or stream exceeded its time budget
        - UpstreamResponseError: Provider answered with a malformed payload

Where an UpstreamError surfaces decides how it is reported:
    - Before streaming starts: HTTP 500 with an error body
    - After streaming started: the stream is terminated early (see forwarder)

Last Grunted: 10/19/2026 09:10:00 AM UTC
"""
from typing import Optional

from fastapi.responses import JSONResponse


# Message shown to clients for any provider failure. Details stay in the logs.
GENERIC_UPSTREAM_MESSAGE: str = "Failed to get AI response"


# ============================================================================
# Exceptions
# ============================================================================

class ConfigurationError(RuntimeError):
    """Service settings are missing or invalid; the process must not serve."""


class UpstreamError(Exception):
    """
    Completion provider request failed.

    Attributes:
        status_code: Provider HTTP status, when the provider answered

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    """Provider call or stream exceeded its time budget."""


class UpstreamResponseError(UpstreamError):
    """Provider answered with a payload we could not interpret."""


# ============================================================================
# Error Response Factory
# ============================================================================

def create_error_response(message: str, status_code: int = 400) -> JSONResponse:
    """
    Create a JSON error response.

    Args:
        message: Human-readable error description
        status_code: HTTP status code

    Returns:
        JSONResponse with body ``{"error": message}``

    Example:
        >>> create_error_response("messages: Field required", status_code=400)

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    return JSONResponse(status_code=status_code, content={"error": message})


def upstream_failure_error() -> JSONResponse:
    """500 response for a provider failure detected before streaming."""
    return create_error_response(GENERIC_UPSTREAM_MESSAGE, status_code=500)


def invalid_request_error(message: str) -> JSONResponse:
    """400 response for a request body that failed validation."""
    return create_error_response(message, status_code=400)


def internal_error() -> JSONResponse:
    """
    Create error response for an unexpected server error.

    The message is generic; the exception is logged by the caller.

    Returns:
        JSONResponse with 500 status

    Last Grunted: 10/19/2026 09:10:00 AM UTC
    """
    return create_error_response(GENERIC_UPSTREAM_MESSAGE, status_code=500)
