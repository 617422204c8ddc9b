"""Request store: validation and persistence of time-off request rows."""
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Union, Tuple
from datetime import date, timedelta
from dateutil.relativedelta import relativedelta
import logging
import re
import uuid

from app.config import settings
from app.database import atomic
from app.models.request import Request, RequestStatus, RequestType
from app.models.request_group import RequestGroup, summarize_statuses
from app.models.user import User
from app.exceptions import (
    AdvanceNoticeError,
    DuplicateRequestError,
    InvalidDateRangeError,
    InvalidFlightNumberError,
    InvalidStatusError,
    MissingFieldError,
    OwnershipError,
    RequestNotEditableError,
    ResourceNotFoundError,
    ValidationError
)
from app.services.user_service import UserService


logger = logging.getLogger(__name__)

_UNSET = object()


def parse_request_type(value: Union[str, RequestType, None]) -> RequestType:
    """
    Parse a request type from its stored value or enum name.

    Raises:
        MissingFieldError: If value is empty
        ValidationError: If value is not a known type
    """
    if not value:
        raise MissingFieldError("type")
    if isinstance(value, RequestType):
        return value
    text = str(value).strip().upper()
    for request_type in RequestType:
        if text in (request_type.value, request_type.name):
            return request_type
    raise ValidationError(
        f"Unknown request type: {value}",
        error_code="INVALID_REQUEST_TYPE",
        details={"value": str(value), "allowed": [t.value for t in RequestType]}
    )


def parse_status(value: Union[str, RequestStatus, None]) -> RequestStatus:
    """Parse a status value, case-insensitively."""
    if isinstance(value, RequestStatus):
        return value
    if not value:
        raise InvalidStatusError(value)
    try:
        return RequestStatus(str(value).strip().upper())
    except ValueError:
        raise InvalidStatusError(value)


def normalize_flight_number(request_type: RequestType, flight_number: Optional[str]) -> Optional[str]:
    """
    Validate the flight number for flight requests; other types drop it.

    Raises:
        InvalidFlightNumberError: If a flight request has a missing or malformed number
    """
    if request_type != RequestType.FLIGHT:
        return None
    if not flight_number or not flight_number.strip():
        raise InvalidFlightNumberError(None)
    normalized = flight_number.strip().upper()
    if not re.match(settings.flight_number_pattern, normalized):
        raise InvalidFlightNumberError(flight_number)
    return normalized


def advance_window(current_date: date) -> Tuple[date, date]:
    """First and last date a request may start on."""
    earliest = current_date + relativedelta(days=settings.min_advance_days)
    latest = current_date + relativedelta(days=settings.max_advance_days)
    return earliest, latest


def check_advance_window(request_date: date, current_date: date) -> None:
    earliest, latest = advance_window(current_date)
    if request_date < earliest or request_date > latest:
        raise AdvanceNoticeError(request_date, earliest, latest)


def validate_custom_message(custom_message: Optional[str]) -> Optional[str]:
    if custom_message is None:
        return None
    message = custom_message.strip()
    if len(message) > settings.custom_message_max_length:
        raise ValidationError(
            f"Custom message must be at most {settings.custom_message_max_length} characters.",
            error_code="CUSTOM_MESSAGE_TOO_LONG",
            details={"length": len(message)}
        )
    return message or None


def iter_days(start_date: date, end_date: date) -> List[date]:
    return [start_date + timedelta(days=i) for i in range((end_date - start_date).days + 1)]


class RequestService:
    """Service for individual request rows, scoped to their owner."""

    def __init__(self, db: Session, user_service: Optional[UserService] = None):
        """
        Initialize request service.

        Args:
            db: Database session
            user_service: Preference provider; built from db when omitted
        """
        self.db = db
        self.user_service = user_service or UserService(db)

    def build_request(
        self,
        user: User,
        start_date: date,
        end_date: date,
        request_type: RequestType,
        flight_number: Optional[str],
        custom_message: Optional[str],
        group: Optional[RequestGroup] = None
    ) -> Request:
        """
        Build an unsaved request row with the owner's current email mode.

        The caller has already validated the fields.
        """
        request = Request(
            id=str(uuid.uuid4()),
            user_id=user.id,
            start_date=start_date,
            end_date=end_date,
            type=request_type,
            flight_number=flight_number,
            custom_message=custom_message,
            status=RequestStatus.PENDING,
            email_mode=group.email_mode if group is not None else user.email_preference,
            email_sent=False,
            email_failed=False,
            email_failure_count=0,
            manual_email_confirmed=False,
            needs_review=False,
            reply_count=0
        )
        if group is not None:
            request.group = group
        request.validate()
        return request

    def create_request(
        self,
        user_id: str,
        start_date: date,
        end_date: Optional[date],
        request_type: Union[str, RequestType],
        flight_number: Optional[str] = None,
        custom_message: Optional[str] = None,
        current_date: Optional[date] = None
    ) -> Request:
        """
        Create a single (non-grouped) request.

        The row is committed before any email is dispatched.

        Args:
            user_id: ID of the owner
            start_date: First day
            end_date: Last day; defaults to start_date
            request_type: Kind of time off
            flight_number: Required for flight requests
            custom_message: Free text appended to the email
            current_date: Current date (defaults to today if not provided)

        Returns:
            Newly created Request object

        Raises:
            MissingFieldError: If start_date or type is missing
            InvalidDateRangeError: If end_date precedes start_date
            AdvanceNoticeError: If start_date is outside the request window
            InvalidFlightNumberError: If the flight number is missing or malformed
            DuplicateRequestError: If the dates overlap an existing request
        """
        if current_date is None:
            current_date = date.today()
        if not start_date:
            raise MissingFieldError("start_date")
        end_date = end_date or start_date
        if end_date < start_date:
            raise InvalidDateRangeError(start_date, end_date)

        parsed_type = parse_request_type(request_type)
        flight = normalize_flight_number(parsed_type, flight_number)
        message = validate_custom_message(custom_message)
        check_advance_window(start_date, current_date)

        user = self.user_service.get_user(user_id)

        conflicts = self.check_date_conflicts(user_id, start_date, end_date)
        if conflicts:
            logger.error(f"Duplicate request for user {user_id}: {conflicts}")
            raise DuplicateRequestError(conflicts)

        with atomic(self.db):
            request = self.build_request(user, start_date, end_date, parsed_type, flight, message)
            self.db.add(request)

        logger.info(
            f"Created request {request.id} for user {user_id}: {parsed_type.value} "
            f"{start_date} to {end_date}, email mode {request.email_mode.value}"
        )
        return request

    def get_request(self, request_id: str, user_id: str) -> Request:
        """
        Get a request owned by the user.

        Raises:
            ResourceNotFoundError: If the request does not exist
            OwnershipError: If it belongs to someone else (same public message)
        """
        request = self.db.query(Request).filter(Request.id == request_id).first()
        if not request:
            raise ResourceNotFoundError("request", request_id)
        if request.user_id != user_id:
            logger.warning(f"User {user_id} tried to access request {request_id} of another user")
            raise OwnershipError("request", request_id)
        return request

    def list_requests(self, user_id: str, status: Union[str, RequestStatus, None] = None) -> List[Request]:
        """
        Get all requests for a user, optionally filtered by status.

        Returns:
            List of Request objects sorted by start_date
        """
        query = self.db.query(Request).filter(Request.user_id == user_id)
        if status:
            query = query.filter(Request.status == parse_status(status))
        return query.order_by(Request.start_date, Request.created_at).all()

    def get_statistics(self, user_id: str) -> Dict[str, int]:
        requests = self.db.query(Request).filter(Request.user_id == user_id).all()
        stats = summarize_statuses(requests)
        stats["total"] = len(requests)
        return stats

    def find_conflicting_requests(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        exclude_group_id: Optional[str] = None,
        exclude_request_id: Optional[str] = None
    ) -> List[Request]:
        query = self.db.query(Request).filter(
            Request.user_id == user_id,
            Request.start_date <= end_date,
            Request.end_date >= start_date
        )
        if exclude_group_id:
            query = query.filter((Request.group_id.is_(None)) | (Request.group_id != exclude_group_id))
        if exclude_request_id:
            query = query.filter(Request.id != exclude_request_id)
        return query.order_by(Request.start_date).all()

    def check_date_conflicts(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        exclude_group_id: Optional[str] = None,
        exclude_request_id: Optional[str] = None
    ) -> List[date]:
        """
        Days in [start_date, end_date] already covered by the user's requests.

        Args:
            user_id: ID of the owner
            start_date: First day to check
            end_date: Last day to check
            exclude_group_id: Group whose members are ignored
            exclude_request_id: Request that is ignored

        Returns:
            Sorted list of conflicting days
        """
        if not start_date or not end_date:
            raise MissingFieldError("start_date" if not start_date else "end_date")
        if end_date < start_date:
            raise InvalidDateRangeError(start_date, end_date)

        existing = self.find_conflicting_requests(
            user_id, start_date, end_date, exclude_group_id, exclude_request_id
        )
        return [
            day for day in iter_days(start_date, end_date)
            if any(request.overlaps(day, day) for request in existing)
        ]

    def update_request(
        self,
        request_id: str,
        user_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        request_type: Union[str, RequestType, None] = None,
        flight_number=_UNSET,
        custom_message=_UNSET,
        current_date: Optional[date] = None
    ) -> Request:
        """
        Update content or dates of an editable request.

        Grouped requests keep their dates; a changed custom message is
        applied to every member so the group stays uniform. Stored manual
        email content is dropped; EmailDispatcher.update_request renders it
        again.

        Raises:
            RequestNotEditableError: If the email left draft state or status is decided
            ValidationError: On invalid fields, or date changes on a grouped request
        """
        if current_date is None:
            current_date = date.today()

        request = self.get_request(request_id, user_id)
        if not request.is_editable():
            raise RequestNotEditableError([request.id], "edit")

        if request.group_id and (start_date or end_date):
            raise ValidationError(
                "Dates of a grouped request cannot be changed; delete the group and create it again.",
                error_code="GROUP_DATES_IMMUTABLE",
                details={"group_id": request.group_id}
            )

        new_start = start_date or request.start_date
        if end_date:
            new_end = end_date
        elif start_date:
            # Moving the start keeps the original span
            new_end = new_start + (request.end_date - request.start_date)
        else:
            new_end = request.end_date
        if new_end < new_start:
            raise InvalidDateRangeError(new_start, new_end)
        if start_date and start_date != request.start_date:
            check_advance_window(new_start, current_date)
        if (new_start, new_end) != (request.start_date, request.end_date):
            conflicts = self.check_date_conflicts(user_id, new_start, new_end, exclude_request_id=request.id)
            if conflicts:
                raise DuplicateRequestError(conflicts)

        new_type = parse_request_type(request_type) if request_type else request.type
        new_flight = flight_number if flight_number is not _UNSET else request.flight_number
        new_flight = normalize_flight_number(new_type, new_flight)

        with atomic(self.db):
            request.start_date = new_start
            request.end_date = new_end
            request.type = new_type
            request.flight_number = new_flight
            if custom_message is not _UNSET:
                message = validate_custom_message(custom_message)
                if request.group is not None:
                    request.group.custom_message = message
                    request.group.touch()
                    for member in request.group.members:
                        member.custom_message = message
                else:
                    request.custom_message = message
            # A prepared manual email no longer matches the edited rows
            rows = list(request.group.members) if request.group is not None else [request]
            for row in rows:
                if row.manual_email_content is not None:
                    row.manual_email_content = None

        logger.info(f"Updated request {request.id} for user {user_id}")
        return request

    def remove_group(self, group: RequestGroup) -> List[str]:
        """
        Delete a group and all its members in one transaction.

        Returns:
            IDs of the deleted requests

        Raises:
            RequestNotEditableError: If any member is no longer deletable
        """
        blocked = group.blocked_members()
        if blocked:
            raise RequestNotEditableError([member.id for member in blocked], "delete")

        group_id = group.id
        deleted_ids = group.member_ids
        with atomic(self.db):
            self.db.delete(group)
        logger.info(f"Deleted group {group_id} with {len(deleted_ids)} requests")
        return deleted_ids

    def delete_request(self, request_id: str, user_id: str) -> List[str]:
        """
        Delete a request; a group member takes its whole group with it.

        Returns:
            IDs of the deleted requests

        Raises:
            RequestNotEditableError: If the request (or any group member) cannot be deleted
        """
        request = self.get_request(request_id, user_id)
        if request.group is not None:
            return self.remove_group(request.group)

        if not request.can_be_deleted():
            raise RequestNotEditableError([request.id], "delete")
        with atomic(self.db):
            self.db.delete(request)
        logger.info(f"Deleted request {request_id} for user {user_id}")
        return [request_id]

    def thread_requests(self, user_id: str, thread_id: str) -> List[Request]:
        """All of the user's requests on one correspondence thread."""
        return self.db.query(Request).filter(
            Request.user_id == user_id,
            Request.thread_id == thread_id
        ).order_by(Request.start_date).all()
