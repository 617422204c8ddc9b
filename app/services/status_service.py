"""Status reconciler: applies approval decisions to requests and groups."""
from sqlalchemy.orm import Session
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
import logging

from app.database import atomic
from app.models.request import Request, RequestStatus, StatusUpdateMethod
from app.exceptions import EmailNotDispatchedError, PreconditionError, ValidationError
from app.services.group_service import GroupService
from app.services.request_service import parse_status
from app.utils import utcnow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    """Field values a row takes when its status is set."""
    status: RequestStatus
    status_updated_at: datetime
    approval_date: Optional[datetime]
    denial_reason: Optional[str]
    keep_denial_reason: bool = False

    def apply(self, request: Request, method: StatusUpdateMethod) -> None:
        request.status = self.status
        request.status_update_method = method.value
        request.status_updated_at = self.status_updated_at
        request.approval_date = self.approval_date
        if not self.keep_denial_reason:
            request.denial_reason = self.denial_reason


def resolve_status_change(
    guard_ok: bool,
    target: RequestStatus,
    now: datetime,
    denial_reason: Optional[str] = None
) -> StatusChange:
    """
    Compute the new status fields.

    Any status may follow any other, including itself, once the email has
    left draft state.

    Raises:
        PreconditionError: If the dispatch guard does not hold
    """
    if not guard_ok:
        raise PreconditionError(
            "Cannot update status before email is sent. Please send the email first.",
            error_code="EMAIL_NOT_DISPATCHED"
        )
    if target == RequestStatus.APPROVED:
        return StatusChange(target, now, approval_date=now, denial_reason=None)
    if target == RequestStatus.DENIED:
        return StatusChange(
            target, now,
            approval_date=None,
            denial_reason=denial_reason,
            keep_denial_reason=denial_reason is None
        )
    return StatusChange(target, now, approval_date=None, denial_reason=None)


def parse_method(value: Union[str, StatusUpdateMethod, None]) -> StatusUpdateMethod:
    if value is None:
        return StatusUpdateMethod.MANUAL_USER_UPDATE
    if isinstance(value, StatusUpdateMethod):
        return value
    try:
        return StatusUpdateMethod(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown status update method: {value}",
            error_code="INVALID_UPDATE_METHOD",
            details={"value": str(value), "allowed": [m.value for m in StatusUpdateMethod]}
        )


class StatusService:
    """Service for status changes on single requests and whole groups."""

    def __init__(self, db: Session, group_service: Optional[GroupService] = None):
        """
        Initialize status service.

        Args:
            db: Database session
            group_service: Group coordinator; built from db when omitted
        """
        self.db = db
        self.group_service = group_service or GroupService(db)
        self.request_service = self.group_service.request_service

    def stage_status(
        self,
        requests: List[Request],
        status: Union[str, RequestStatus],
        method: Union[str, StatusUpdateMethod],
        now: Optional[datetime] = None,
        denial_reason: Optional[str] = None
    ) -> StatusChange:
        """
        Apply one status to the given rows without committing.

        The guard is checked on every row before any row changes, so a
        failure leaves all of them untouched.

        Raises:
            InvalidStatusError: If status is not a known value
            EmailNotDispatchedError: If any row's email is still in draft state
        """
        target = parse_status(status)
        update_method = parse_method(method)
        if now is None:
            now = utcnow()

        for request in requests:
            if not request.is_email_dispatched():
                raise EmailNotDispatchedError(request.id)

        change = resolve_status_change(True, target, now, denial_reason)
        for request in requests:
            change.apply(request, update_method)
        return change

    def set_status(
        self,
        request_id: str,
        user_id: str,
        status: Union[str, RequestStatus],
        method: Union[str, StatusUpdateMethod] = StatusUpdateMethod.MANUAL_USER_UPDATE,
        apply_to_group: bool = False,
        denial_reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Set the status of a request, or of its whole group.

        Args:
            request_id: ID of the request
            user_id: ID of the owner
            status: APPROVED, DENIED or PENDING
            method: Provenance of the change
            apply_to_group: Update every member of the request's group
            denial_reason: Stored when moving to DENIED
            now: Timestamp override

        Returns:
            Dictionary with updated_count, status, status_updated_at, is_group, group_id and method

        Raises:
            InvalidStatusError: If status is not a known value
            EmailNotDispatchedError: If the email has not left draft state
            ConcurrencyError: If another writer changed the rows first
        """
        target = parse_status(status)
        update_method = parse_method(method)
        request = self.request_service.get_request(request_id, user_id)

        if apply_to_group and request.group is not None:
            rows = list(request.group.members)
        else:
            rows = [request]

        with atomic(self.db):
            change = self.stage_status(rows, target, update_method, now, denial_reason)
            if apply_to_group and request.group is not None:
                request.group.touch()

        logger.info(
            f"Status of {len(rows)} request(s) set to {target.value} by {update_method.value}, "
            f"anchor {request_id}, user {user_id}"
        )
        return {
            "updated_count": len(rows),
            "status": target.value,
            "status_updated_at": change.status_updated_at,
            "is_group": request.group_id is not None,
            "group_id": request.group_id,
            "method": update_method.value,
            "apply_to_group": apply_to_group
        }

    def set_group_status(
        self,
        group_id: str,
        user_id: str,
        status: Union[str, RequestStatus],
        method: Union[str, StatusUpdateMethod] = StatusUpdateMethod.MANUAL_USER_UPDATE,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Set one status on every member of a group; every member must pass the guard."""
        target = parse_status(status)
        update_method = parse_method(method)
        group = self.group_service.get_group(group_id, user_id)
        members = list(group.members)

        with atomic(self.db):
            change = self.stage_status(members, target, update_method, now)
            group.touch()

        logger.info(f"Status of group {group_id} ({len(members)} requests) set to {target.value}")
        return {
            "updated_count": len(members),
            "status": target.value,
            "status_updated_at": change.status_updated_at,
            "is_group": True,
            "group_id": group_id,
            "method": update_method.value
        }
