"""Time-off request routes: lifecycle, email delivery and status."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date
import logging

from app.database import get_db
from app.models.user import User
from app.schemas import (
    ConflictResponse,
    EmailStatusResponse,
    GroupCreate,
    GroupDetailsResponse,
    RequestCreate,
    RequestResponse,
    RequestUpdate,
    StatisticsResponse,
    StatusUpdate
)
from app.services.email_dispatcher import EmailDispatcher
from app.services.group_service import GroupService, GroupDay
from app.services.mail_transport import TransportFactory
from app.services.request_service import RequestService
from app.services.status_service import StatusService
from app.api.deps import get_current_user, get_transport_factory


logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/requests", tags=["requests"])


def serialize(request) -> RequestResponse:
    return RequestResponse.model_validate(request)


@router.get("")
def list_requests(
    status: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the current user's requests, optionally filtered by status."""
    requests = RequestService(db).list_requests(user.id, status)
    return {"requests": [serialize(r) for r in requests], "count": len(requests)}


@router.post("", status_code=201)
def create_request(
    body: RequestCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    transport_factory: TransportFactory = Depends(get_transport_factory)
):
    """
    Create a single request and send or prepare its email.

    The request is committed before dispatch, so a mail failure still
    returns the created request with a failed delivery state.
    """
    request_service = RequestService(db)
    request = request_service.create_request(
        user.id,
        body.start_date,
        body.end_date,
        body.type,
        flight_number=body.flight_number,
        custom_message=body.custom_message
    )
    dispatcher = EmailDispatcher(db, GroupService(db, request_service), transport_factory=transport_factory)
    outcome = dispatcher.dispatch([request], user)
    db.refresh(request)
    return {"request": serialize(request), "email": outcome.to_dict()}


@router.get("/stats", response_model=StatisticsResponse)
def get_statistics(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return RequestService(db).get_statistics(user.id)


@router.get("/conflicts", response_model=ConflictResponse)
def check_conflicts(
    start_date: date = Query(...),
    end_date: date = Query(...),
    exclude_group_id: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Days in the range already covered by the current user's requests."""
    conflicts = RequestService(db).check_date_conflicts(user.id, start_date, end_date, exclude_group_id)
    return {"conflicts": conflicts, "has_conflicts": bool(conflicts)}


@router.post("/group", status_code=201)
def create_group(
    body: GroupCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    transport_factory: TransportFactory = Depends(get_transport_factory)
):
    """Create a multi-day request and send or prepare one email for all days."""
    group_service = GroupService(db)
    days = [GroupDay(d.day, d.type, d.flight_number) for d in body.dates]
    group = group_service.create_group(user.id, days, custom_message=body.custom_message)
    members = list(group.members)

    dispatcher = EmailDispatcher(db, group_service, transport_factory=transport_factory)
    outcome = dispatcher.dispatch(members, user)
    for member in members:
        db.refresh(member)
    return {
        "group_id": group.id,
        "requests": [serialize(m) for m in members],
        "email": outcome.to_dict()
    }


@router.get("/group/{group_id}")
def get_group(
    group_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    group_service = GroupService(db)
    group = group_service.get_group(group_id, user.id)
    return {
        "group_id": group.id,
        "requests": [serialize(m) for m in group.members],
        "status_summary": group.status_summary(),
        "email_status": group_service.email_status_summary(group)
    }


@router.delete("/group/{group_id}")
def delete_group(
    group_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    deleted = GroupService(db).delete_group(group_id, user.id)
    return {"deleted_ids": deleted, "deleted_count": len(deleted)}


@router.get("/{request_id}")
def get_request(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    request = RequestService(db).get_request(request_id, user.id)
    return serialize(request)


@router.put("/{request_id}")
def update_request(
    request_id: str,
    body: RequestUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update content or dates of a request still in draft state."""
    fields = body.model_dump(exclude_unset=True)
    kwargs = {}
    if "flight_number" in fields:
        kwargs["flight_number"] = fields["flight_number"]
    if "custom_message" in fields:
        kwargs["custom_message"] = fields["custom_message"]
    request = EmailDispatcher(db).update_request(
        request_id,
        user.id,
        start_date=body.start_date,
        end_date=body.end_date,
        request_type=body.type,
        **kwargs
    )
    return serialize(request)


@router.delete("/{request_id}")
def delete_request(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a request; a group member deletes its whole group."""
    deleted = RequestService(db).delete_request(request_id, user.id)
    return {"deleted_ids": deleted, "deleted_count": len(deleted)}


@router.get("/{request_id}/group-details", response_model=GroupDetailsResponse)
def get_group_details(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    details = GroupService(db).get_group_details(request_id, user.id)
    details["requests"] = [serialize(r) for r in details["requests"]]
    return details


@router.put("/{request_id}/status")
def update_status(
    request_id: str,
    body: StatusUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Set the status of a request, or of its whole group."""
    return StatusService(db).set_status(
        request_id,
        user.id,
        body.status,
        method=body.method,
        apply_to_group=body.apply_to_group,
        denial_reason=body.denial_reason
    )


@router.post("/{request_id}/resend-email")
def resend_email(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    transport_factory: TransportFactory = Depends(get_transport_factory)
):
    outcome = EmailDispatcher(db, transport_factory=transport_factory).resend(request_id, user.id)
    return outcome.to_dict()


@router.get("/{request_id}/email-content")
def get_email_content(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return EmailDispatcher(db).get_email_content(request_id, user.id)


@router.post("/{request_id}/confirm-sent")
def confirm_sent(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Record that the user sent the manual email."""
    return EmailDispatcher(db).confirm_sent(request_id, user.id)


@router.get("/{request_id}/email-status", response_model=EmailStatusResponse)
def get_email_status(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return EmailDispatcher(db).get_email_status(request_id, user.id)


@router.post("/{request_id}/reset-delivery-state")
def reset_delivery_state(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return EmailDispatcher(db).reset_delivery_state(request_id, user.id)
