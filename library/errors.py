"""
Error hierarchy for library operations.

Each error carries the kind reported to clients and the HTTP status the API
maps it to, so service code never imports the web framework.
"""

from typing import Any, Dict, List, Optional, Union


class LibraryError(Exception):
    """Base class for all expected failures of a library operation."""

    kind: str = "Unexpected"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Union[Dict[str, Any], List[Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "error": self.kind,
            "status_code": self.status_code,
            "detail": self.details,
        }


class InputValidationError(LibraryError):
    """A required field is missing or malformed, or an id has the wrong shape."""
    kind = "ValidationError"
    status_code = 400


class NotFoundError(LibraryError):
    kind = "NotFound"
    status_code = 404


class UnauthenticatedError(LibraryError):
    kind = "Unauthenticated"
    status_code = 401


class InvalidCredentialsError(LibraryError):
    kind = "InvalidCredentials"
    status_code = 401


class ForbiddenError(LibraryError):
    kind = "Forbidden"
    status_code = 403


class DuplicateEmailError(LibraryError):
    kind = "DuplicateEmail"
    status_code = 400


class DuplicateReviewError(LibraryError):
    kind = "DuplicateReview"
    status_code = 403


class AlreadyFollowingError(LibraryError):
    kind = "AlreadyFollowing"
    status_code = 400


class NotFollowingError(LibraryError):
    kind = "NotFollowing"
    status_code = 400


class AlreadyPresentError(LibraryError):
    kind = "AlreadyPresent"
    status_code = 400


class NotPresentError(LibraryError):
    kind = "NotPresent"
    status_code = 400


class LimitExceededError(LibraryError):
    kind = "LimitExceeded"
    status_code = 400


class InvalidOperationError(LibraryError):
    kind = "InvalidOperation"
    status_code = 400


class UnexpectedError(LibraryError):
    """A persistence write failed part way through an operation."""
    kind = "Unexpected"
    status_code = 500
