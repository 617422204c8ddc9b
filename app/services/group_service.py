"""Group coordinator for multi-day requests."""
from sqlalchemy.orm import Session
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Union, Sequence
from datetime import date, timedelta
import logging
import uuid

from app.config import settings
from app.database import atomic
from app.models.request import Request, RequestType
from app.models.request_group import RequestGroup, summarize_statuses
from app.exceptions import (
    DuplicateRequestError,
    GroupSizeError,
    NonConsecutiveDatesError,
    OwnershipError,
    ResourceNotFoundError
)
from app.services.request_service import (
    RequestService,
    check_advance_window,
    normalize_flight_number,
    parse_request_type,
    validate_custom_message
)


logger = logging.getLogger(__name__)


@dataclass
class GroupDay:
    """One day of a group request with its own type."""
    day: date
    request_type: Union[str, RequestType] = RequestType.DAY_OFF
    flight_number: Optional[str] = None


def check_consecutive(days: Sequence[date]) -> None:
    """
    Raise unless the sorted days follow each other with no gaps or repeats.

    Raises:
        NonConsecutiveDatesError: On the first gap or repeated day
    """
    for previous, current in zip(days, days[1:]):
        if current - previous != timedelta(days=1):
            raise NonConsecutiveDatesError(previous, current)


class GroupService:
    """Service for creating, reading and deleting request groups as a unit."""

    def __init__(self, db: Session, request_service: Optional[RequestService] = None):
        """
        Initialize group service.

        Args:
            db: Database session
            request_service: Request store; built from db when omitted
        """
        self.db = db
        self.request_service = request_service or RequestService(db)

    def create_group(
        self,
        user_id: str,
        days: List[GroupDay],
        custom_message: Optional[str] = None,
        current_date: Optional[date] = None
    ) -> RequestGroup:
        """
        Create one request row per day, all sharing a new group.

        Args:
            user_id: ID of the owner
            days: Days with their request types; order does not matter
            custom_message: Message shared by every member
            current_date: Current date (defaults to today if not provided)

        Returns:
            The committed RequestGroup with members ordered by date

        Raises:
            GroupSizeError: If there are no days or more than the configured maximum
            NonConsecutiveDatesError: If the days are not consecutive
            AdvanceNoticeError: If any day is outside the request window
            InvalidFlightNumberError: If a flight day has a missing or malformed number
            DuplicateRequestError: If any day overlaps an existing request
        """
        if current_date is None:
            current_date = date.today()

        if not days or len(days) > settings.max_days_per_request:
            raise GroupSizeError(len(days or []), settings.max_days_per_request)

        ordered = sorted(days, key=lambda d: d.day)
        check_consecutive([d.day for d in ordered])
        for day in ordered:
            check_advance_window(day.day, current_date)

        validated = []
        for day in ordered:
            request_type = parse_request_type(day.request_type)
            validated.append((day.day, request_type, normalize_flight_number(request_type, day.flight_number)))
        message = validate_custom_message(custom_message)

        user = self.request_service.user_service.get_user(user_id)

        conflicts = self.request_service.check_date_conflicts(user_id, ordered[0].day, ordered[-1].day)
        if conflicts:
            logger.error(f"Duplicate group request for user {user_id}: {conflicts}")
            raise DuplicateRequestError(conflicts)

        with atomic(self.db):
            group = RequestGroup(
                id=str(uuid.uuid4()),
                user_id=user.id,
                email_mode=user.email_preference,
                custom_message=message
            )
            self.db.add(group)
            for day, request_type, flight in validated:
                self.request_service.build_request(
                    user, day, day, request_type, flight, message, group=group
                )

        logger.info(
            f"Created group {group.id} for user {user_id}: {len(validated)} days "
            f"from {ordered[0].day} to {ordered[-1].day}, email mode {group.email_mode.value}"
        )
        return group

    def get_group(self, group_id: str, user_id: str) -> RequestGroup:
        """
        Get a group owned by the user.

        Raises:
            ResourceNotFoundError: If the group does not exist
            OwnershipError: If it belongs to someone else (same public message)
        """
        group = self.db.query(RequestGroup).filter(RequestGroup.id == group_id).first()
        if not group:
            raise ResourceNotFoundError("group", group_id)
        if group.user_id != user_id:
            logger.warning(f"User {user_id} tried to access group {group_id} of another user")
            raise OwnershipError("group", group_id)
        return group

    def fetch_group(self, group_id: str, user_id: str) -> List[Request]:
        return list(self.get_group(group_id, user_id).members)

    def delete_group(self, group_id: str, user_id: str) -> List[str]:
        """
        Delete every member of the group, or none.

        Returns:
            IDs of the deleted requests

        Raises:
            RequestNotEditableError: If any member's email left draft state or status is decided
        """
        group = self.get_group(group_id, user_id)
        return self.request_service.remove_group(group)

    @staticmethod
    def members_of(request: Request) -> List[Request]:
        """The request's group members, or the request alone."""
        if request.group is not None:
            return list(request.group.members)
        return [request]

    def get_group_details(self, request_id: str, user_id: str) -> Dict[str, Any]:
        """
        Group view of a request: ordered members and status counts.

        A non-grouped request is reported as a group of one.
        """
        request = self.request_service.get_request(request_id, user_id)
        members = self.members_of(request)
        return {
            "group_id": request.group_id,
            "is_group": request.group_id is not None,
            "requests": members,
            "total_days": len(members),
            "start_date": members[0].start_date,
            "end_date": members[-1].end_date,
            "status_summary": summarize_statuses(members),
            "email_status": self.email_status_summary(request.group) if request.group else None
        }

    @staticmethod
    def email_status_summary(group: RequestGroup) -> Dict[str, Any]:
        return group.email_status_summary()
