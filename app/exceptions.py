"""Custom exceptions and error handling for the time-off request engine.

Every error carries a user-facing message, a machine-readable code and an
HTTP status so the API layer can translate it without inspecting types.
"""
from typing import Optional, Dict, Any, List
from datetime import date


class AppError(Exception):
    """Base class for domain errors with user-friendly messages."""

    status_code = 400

    def __init__(self, message: str, error_code: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize application error.

        Args:
            message: User-friendly error message
            error_code: Machine-readable error code
            details: Optional additional error details
        """
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary format for API responses.

        Returns:
            Dictionary with error information
        """
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationError(AppError):
    """Input failed validation; nothing was written."""

    status_code = 400

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, details)


class MissingFieldError(ValidationError):
    """Error raised when a required field is missing."""

    def __init__(self, field_name: str):
        """
        Initialize missing field error.

        Args:
            field_name: Name of the missing field
        """
        super().__init__(
            message=f"{field_name} is required.",
            error_code="MISSING_FIELD",
            details={"field_name": field_name}
        )


class InvalidStatusError(ValidationError):
    """Error raised for a status value outside PENDING/APPROVED/DENIED."""

    def __init__(self, value: Any):
        super().__init__(
            message="Status must be APPROVED, DENIED, or PENDING.",
            error_code="INVALID_STATUS",
            details={"value": str(value)}
        )


class InvalidDateRangeError(ValidationError):
    """Error raised when the end date precedes the start date."""

    def __init__(self, start_date: date, end_date: date):
        super().__init__(
            message="End date must be on or after start date.",
            error_code="INVALID_DATE_RANGE",
            details={
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat()
            }
        )


class InvalidFlightNumberError(ValidationError):
    """Error raised when a flight request has a missing or malformed flight number."""

    def __init__(self, flight_number: Optional[str]):
        if flight_number:
            message = f"Invalid flight number: {flight_number}"
        else:
            message = "Flight number is required for flight requests."
        super().__init__(
            message=message,
            error_code="INVALID_FLIGHT_NUMBER",
            details={"flight_number": flight_number}
        )


class AdvanceNoticeError(ValidationError):
    """Error raised when a date falls outside the advance-notice window."""

    def __init__(self, request_date: date, earliest: date, latest: date):
        """
        Initialize advance notice error.

        Args:
            request_date: The offending date
            earliest: First selectable date
            latest: Last selectable date
        """
        super().__init__(
            message=(
                f"{request_date.isoformat()} is outside the request window "
                f"({earliest.isoformat()} to {latest.isoformat()})."
            ),
            error_code="OUTSIDE_ADVANCE_WINDOW",
            details={
                "request_date": request_date.isoformat(),
                "earliest": earliest.isoformat(),
                "latest": latest.isoformat()
            }
        )


class NonConsecutiveDatesError(ValidationError):
    """Error raised when group dates are not consecutive calendar days."""

    def __init__(self, previous: date, current: date):
        gap = (current - previous).days
        super().__init__(
            message=f"Dates must be consecutive: {gap} days between {previous.isoformat()} and {current.isoformat()}.",
            error_code="NON_CONSECUTIVE_DATES",
            details={"previous": previous.isoformat(), "current": current.isoformat(), "gap": gap}
        )


class GroupSizeError(ValidationError):
    """Error raised when a group has no dates or too many dates."""

    def __init__(self, count: int, maximum: int):
        super().__init__(
            message=f"A request must contain between 1 and {maximum} dates.",
            error_code="INVALID_GROUP_SIZE",
            details={"count": count, "maximum": maximum}
        )


class DuplicateRequestError(ValidationError):
    """Error raised when a new request overlaps an existing one."""

    def __init__(self, conflicting_dates: List[date]):
        """
        Initialize duplicate request error.

        Args:
            conflicting_dates: Dates already covered by another request
        """
        listed = ", ".join(d.isoformat() for d in conflicting_dates)
        super().__init__(
            message=f"A request already exists for: {listed}",
            error_code="DUPLICATE_REQUEST",
            details={"conflicting_dates": [d.isoformat() for d in conflicting_dates]}
        )


class PreconditionError(AppError):
    """Operation is not allowed in the request's current state."""

    status_code = 409

    def __init__(self, message: str, error_code: str = "PRECONDITION_FAILED", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code, details)


class EmailNotDispatchedError(PreconditionError):
    """Error raised when a status change is attempted before the email left draft state."""

    def __init__(self, request_id: str):
        super().__init__(
            message="Cannot update status before email is sent. Please send the email first.",
            error_code="EMAIL_NOT_DISPATCHED",
            details={"request_id": request_id}
        )


class RequestNotEditableError(PreconditionError):
    """Error raised when editing or deleting a request that has left draft state."""

    def __init__(self, request_ids: List[str], action: str = "edit"):
        super().__init__(
            message=f"Cannot {action} request: email already sent or status already decided.",
            error_code="REQUEST_NOT_EDITABLE",
            details={"request_ids": request_ids, "action": action}
        )


class InvalidModeError(AppError):
    """Error raised when an operation does not match the request's email mode."""

    status_code = 400

    def __init__(self, expected_mode: str, actual_mode: str, action: str):
        """
        Initialize invalid mode error.

        Args:
            expected_mode: Mode the operation requires
            actual_mode: Mode of the request
            action: Attempted action
        """
        super().__init__(
            message=f"{action} is only available in {expected_mode} email mode.",
            error_code="INVALID_EMAIL_MODE",
            details={
                "expected_mode": expected_mode,
                "actual_mode": actual_mode,
                "action": action
            }
        )


class AlreadyConfirmedError(AppError):
    """Error raised when a manual email is confirmed twice."""

    status_code = 409

    def __init__(self, request_id: str):
        super().__init__(
            message="Email already marked as sent.",
            error_code="ALREADY_CONFIRMED",
            details={"request_id": request_id}
        )


class ResourceNotFoundError(AppError):
    """Error raised when a requested resource is not found."""

    status_code = 404

    def __init__(self, resource_type: str, resource_id: str):
        """
        Initialize resource not found error.

        Args:
            resource_type: Type of resource (e.g., "request", "group", "reply")
            resource_id: ID of the resource
        """
        super().__init__(
            message=f"{resource_type.capitalize()} not found.",
            error_code="RESOURCE_NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id
            }
        )


class OwnershipError(ResourceNotFoundError):
    """Resource exists but belongs to another user; reported as not found."""


class ExternalServiceError(AppError):
    """Error raised when the mail transport fails or times out."""

    status_code = 502

    def __init__(self, message: str, service: str = "gmail", details: Optional[Dict[str, Any]] = None):
        merged = {"service": service}
        merged.update(details or {})
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", merged)


class ConcurrencyError(AppError):
    """Error raised when another writer changed the same rows first."""

    status_code = 409

    def __init__(self):
        super().__init__(
            message="The request was modified by someone else. Reload and try again.",
            error_code="CONCURRENT_MODIFICATION"
        )


def format_error_for_api(error: AppError) -> Dict[str, Any]:
    """
    Format application error for API response.

    Args:
        error: Application error to format

    Returns:
        Dictionary suitable for JSON API response
    """
    return error.to_dict()
