"""
Error types raised inside endpoint helpers.

Handlers catch APIError at the boundary and return ``e.to_response(origin)``.
"""

from typing import Optional

from .response_utils import error_response


class APIError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self, origin: Optional[str] = None) -> dict:
        """Convert to API Gateway response format."""
        return error_response(
            self.status_code,
            self.code,
            self.message,
            details=self.details,
            origin=origin,
        )


class InvalidRequestError(APIError):
    """Malformed body or parameter."""

    code = "invalid_request"


class UnauthorizedError(APIError):
    """No valid session or admin token."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class CustomerNotFoundError(APIError):
    """No billing customer is linked to the caller."""

    status_code = 404
    code = "customer_not_found"

    def __init__(self, message: str = "No billing customer found"):
        super().__init__(message)


class InternalError(APIError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(message)
