"""
Error taxonomy of the booking engine.

Every service raises a subclass of ``BookingError``; the HTTP layer maps
``status_code`` and ``code`` onto the response body unchanged.
"""

from typing import Dict, List, Optional


class BookingError(Exception):
    code = "BookingError"
    status_code = 400

    def __init__(self, message: str, details: Optional[List[Dict]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> Dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BookingError):
    """Malformed or out-of-range input. ``details`` lists the offending fields."""
    code = "ValidationError"
    status_code = 422

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, details=[{"field": field, "message": message}])


class NotFoundError(BookingError):
    """Entity absent, or not owned by the calling merchant."""
    code = "NotFound"
    status_code = 404


class InvalidReferenceError(BookingError):
    code = "InvalidReference"
    status_code = 400


class PolicyViolationError(BookingError):
    code = "PolicyViolation"
    status_code = 400


class InvalidPartySizeError(BookingError):
    code = "InvalidPartySize"
    status_code = 400


class CapacityExceededError(BookingError):
    code = "CapacityExceeded"
    status_code = 409


class ResourceInUseError(BookingError):
    code = "ResourceInUse"
    status_code = 409


class StateConflictError(BookingError):
    code = "StateConflict"
    status_code = 409


class ForbiddenError(BookingError):
    code = "Forbidden"
    status_code = 403


class FatalError(BookingError):
    """Server-side failure. Not retried by the engine."""
    code = "Fatal"
    status_code = 500
