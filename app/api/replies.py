"""Reply routes: checking threads, reviewing replies and answering them."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.database import get_db
from app.models.user import User
from app.schemas import CountResponse, ReplyProcess, ReplyProcessIndividual, ReplyRespond, ReplyResponse
from app.services.mail_transport import TransportFactory
from app.services.reply_service import ReplyService, SingleApprovalView
from app.api.deps import get_current_user, get_transport_factory


logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/replies", tags=["replies"])


@router.post("/check")
def check_replies(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    transport_factory: TransportFactory = Depends(get_transport_factory)
):
    """Fetch new messages on the current user's request threads."""
    result = ReplyService(db, transport_factory=transport_factory).check_for_new_replies(user)
    return {
        "checked": result.checked,
        "threads_checked": result.threads_checked,
        "new_replies": [ReplyResponse.model_validate(r) for r in result.new_replies],
        "new_replies_count": len(result.new_replies),
        "updated_request_ids": result.updated_request_ids,
        "failed_threads": result.failed_threads
    }


@router.get("")
def list_replies(
    processed: Optional[bool] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    replies = ReplyService(db).list_replies(user.id, processed)
    return {"replies": [ReplyResponse.model_validate(r) for r in replies], "count": len(replies)}


@router.get("/count", response_model=CountResponse)
def count_unprocessed(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return {"count": ReplyService(db).count_unprocessed(user.id)}


@router.get("/{reply_id}/approval-view")
def get_approval_view(
    reply_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Single or per-day decision surface for a reply."""
    view = ReplyService(db).get_approval_view(reply_id, user.id)
    if isinstance(view, SingleApprovalView):
        return {
            "kind": "single",
            "reply_id": view.reply_id,
            "request_id": view.request_id,
            "current_status": view.current_status.value,
            "actions": [a.value for a in view.actions]
        }
    return {
        "kind": "group",
        "reply_id": view.reply_id,
        "group_id": view.group_id,
        "days": [
            {
                "request_id": d.request_id,
                "date": d.day,
                "current_status": d.current_status.value,
                "staged_status": d.staged_status.value
            }
            for d in view.days
        ]
    }


@router.get("/{reply_id}/conversation")
def get_conversation(
    reply_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    entries = ReplyService(db).get_conversation(reply_id, user.id)
    return {"messages": [e.to_dict() for e in entries]}


@router.put("/{reply_id}/process")
def process_reply(
    reply_id: str,
    body: ReplyProcess,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Apply one status from a reply to its request, or every day of its group."""
    return ReplyService(db).process_reply(reply_id, user.id, body.status)


@router.put("/{reply_id}/process-individual")
def process_reply_individual(
    reply_id: str,
    body: ReplyProcessIndividual,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Apply a status per request from a group reply."""
    decisions = [(d.request_id, d.status) for d in body.request_statuses]
    return ReplyService(db).process_reply_individual(reply_id, user.id, decisions)


@router.post("/{reply_id}/respond")
def respond(
    reply_id: str,
    body: ReplyRespond,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    transport_factory: TransportFactory = Depends(get_transport_factory)
):
    """Answer a reply on the same thread."""
    return ReplyService(db, transport_factory=transport_factory).respond(reply_id, user, body.message)
