"""Email dispatcher: automatic sending or manual content preparation for requests."""
from sqlalchemy.orm import Session
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from datetime import datetime
import calendar
import logging
import re

from app.config import settings
from app.database import atomic
from app.models.request import Request, RequestType
from app.models.user import User, EmailMode
from app.exceptions import (
    AlreadyConfirmedError,
    ExternalServiceError,
    InvalidModeError,
    ValidationError
)
from app.services.group_service import GroupService
from app.services.mail_transport import TransportFactory, build_mail_transport
from app.services.template_renderer import TemplateRenderer, EmailTemplate
from app.services.user_service import UserService
from app.utils import utcnow


logger = logging.getLogger(__name__)

FALLBACK_EMPLOYEE_CODE = "XXX"
GMAIL_AUTH_REQUIRED = "Gmail authorization required"


@dataclass
class DispatchOutcome:
    """Result of sending or preparing a request email."""
    mode: str
    sent: bool = False
    failed: bool = False
    error: Optional[str] = None
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    subject: Optional[str] = None
    email_content: Optional[Dict[str, str]] = None
    updated_count: int = 0
    is_group: bool = False
    group_id: Optional[str] = None
    request_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def request_line(request: Request) -> str:
    """One body line, e.g. "REQ DO - 05/03/2025"."""
    formatted = request.start_date.strftime("%d/%m/%Y")
    if request.type == RequestType.FLIGHT:
        return f"{settings.email_flight_label} {request.flight_number} - {formatted}"
    labels = {
        RequestType.DAY_OFF: settings.email_day_off_label,
        RequestType.AFTERNOON_OFF: settings.email_pm_off_label,
        RequestType.MORNING_OFF: settings.email_am_off_label,
    }
    return f"{labels.get(request.type, request.type.value)} - {formatted}"


def request_email_template() -> EmailTemplate:
    return EmailTemplate(subject=settings.email_subject_template, body=settings.email_body_template)


class EmailDispatcher:
    """Service that delivers request emails according to each request's email mode."""

    def __init__(
        self,
        db: Session,
        group_service: Optional[GroupService] = None,
        renderer: Optional[TemplateRenderer] = None,
        transport_factory: Optional[TransportFactory] = None
    ):
        """
        Initialize email dispatcher.

        Args:
            db: Database session
            group_service: Group coordinator; built from db when omitted
            renderer: Template renderer
            transport_factory: Builds a mail transport for a user
        """
        self.db = db
        self.group_service = group_service or GroupService(db)
        self.request_service = self.group_service.request_service
        self.user_service: UserService = self.request_service.user_service
        self.renderer = renderer or TemplateRenderer()
        self.transport_factory = transport_factory or build_mail_transport

    def build_email_content(self, user: User, requests: List[Request]) -> Dict[str, str]:
        """
        Render the request email for a set of requests.

        Args:
            user: Owner of the requests
            requests: Requests listed in the email

        Returns:
            Dictionary with to, subject and body
        """
        ordered = sorted(requests, key=lambda r: r.start_date)
        first = ordered[0].start_date
        signature = self.user_service.get_signature_fields(user.id)

        variables = {
            "CODE": signature.code or FALLBACK_EMPLOYEE_CODE,
            "NAME": signature.name,
            "MONTH_NAME": calendar.month_name[first.month],
            "YEAR": first.year,
            "REQUEST_LINES": "\n".join(request_line(r) for r in ordered),
            "CUSTOM_MESSAGE": ordered[0].custom_message or "",
            "SIGNATURE": signature.signature,
        }
        rendered = self.renderer.render(request_email_template(), variables)
        body = re.sub(r"\n{3,}", "\n\n", rendered.body).strip()
        return {"to": settings.scheduling_email, "subject": rendered.subject.strip(), "body": body}

    def dispatch(self, requests: List[Request], user: User, now: Optional[datetime] = None) -> DispatchOutcome:
        """
        Send or prepare the email for already-committed requests.

        Automatic requests are sent through the mail transport; a transport
        failure is recorded on every row and not raised. Manual requests get
        the rendered content stored verbatim.

        Args:
            requests: One request, or every member of a group
            user: Owner of the requests
            now: Timestamp override

        Returns:
            DispatchOutcome describing what happened

        Raises:
            ValidationError: If the requests do not share one email mode
        """
        if not requests:
            raise ValidationError("No requests to dispatch.", error_code="NOTHING_TO_DISPATCH")
        modes = {r.email_mode for r in requests}
        if len(modes) != 1:
            raise ValidationError(
                "Requests with different email modes cannot share one email.",
                error_code="MIXED_EMAIL_MODES",
                details={"request_ids": [r.id for r in requests]}
            )
        mode = modes.pop()
        if now is None:
            now = utcnow()

        group = requests[0].group
        outcome = DispatchOutcome(
            mode=mode.value,
            updated_count=len(requests),
            is_group=group is not None,
            group_id=group.id if group is not None else None,
            request_ids=[r.id for r in requests]
        )
        content = self.build_email_content(user, requests)

        if mode == EmailMode.MANUAL:
            with atomic(self.db):
                for request in requests:
                    request.store_manual_email_content(content)
                if group is not None:
                    group.touch()
            outcome.email_content = content
            logger.info(f"Stored manual email content for {len(requests)} request(s) of user {user.id}")
            return outcome

        outcome.subject = content["subject"]
        thread_id = next((r.thread_id for r in requests if r.thread_id), None)
        try:
            if not self.user_service.can_send_emails(user):
                raise ExternalServiceError(GMAIL_AUTH_REQUIRED, details={"user_id": user.id})
            with self.transport_factory(user) as transport:
                sent = transport.send(content["to"], content["subject"], content["body"], thread_id=thread_id)
        except ExternalServiceError as e:
            logger.error(
                f"Email send failed for user {user.id}, requests {outcome.request_ids}: {e.message}"
            )
            self._record_failure(requests, e.message, now)
            outcome.failed = True
            outcome.error = e.message
            return outcome
        except Exception as e:
            logger.exception(f"Unexpected mail transport error for user {user.id}, requests {outcome.request_ids}")
            self._record_failure(requests, str(e) or e.__class__.__name__, now)
            outcome.failed = True
            outcome.error = str(e) or e.__class__.__name__
            return outcome

        with atomic(self.db):
            for request in requests:
                request.mark_email_sent(sent.message_id, sent.thread_id, content["subject"], now)
            if group is not None:
                group.touch()
        outcome.sent = True
        outcome.message_id = sent.message_id
        outcome.thread_id = sent.thread_id
        logger.info(f"Sent email for {len(requests)} request(s) of user {user.id}, thread {sent.thread_id}")
        return outcome

    def _record_failure(self, requests: List[Request], error: str, now: datetime) -> None:
        with atomic(self.db):
            for request in requests:
                request.mark_email_failed(error, now)
            group = requests[0].group
            if group is not None:
                group.touch()

    def resend(self, request_id: str, user_id: str, now: Optional[datetime] = None) -> DispatchOutcome:
        """
        Re-run automatic sending for a request and its whole group.

        Raises:
            InvalidModeError: If the request is in manual mode
        """
        request = self.request_service.get_request(request_id, user_id)
        if request.email_mode != EmailMode.AUTOMATIC:
            raise InvalidModeError(EmailMode.AUTOMATIC.value, request.email_mode.value, "Resend")
        user = self.user_service.get_user(user_id)
        members = self.group_service.members_of(request)
        logger.info(f"Resending email for request {request_id} ({len(members)} row(s))")
        return self.dispatch(members, user, now=now)

    def update_request(self, request_id: str, user_id: str, **changes) -> Request:
        """
        Edit a draft request and re-render the manual email of its group.

        Keyword arguments are passed to RequestService.update_request.
        """
        request = self.request_service.update_request(request_id, user_id, **changes)
        if request.email_mode == EmailMode.MANUAL:
            user = self.user_service.get_user(user_id)
            self.dispatch(self.group_service.members_of(request), user)
        return request

    def confirm_sent(self, request_id: str, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Record that the user sent the manual email, for the whole group.

        Raises:
            InvalidModeError: If the request is in automatic mode
            AlreadyConfirmedError: If the email was already confirmed
        """
        request = self.request_service.get_request(request_id, user_id)
        if request.email_mode != EmailMode.MANUAL:
            raise InvalidModeError(EmailMode.MANUAL.value, request.email_mode.value, "Confirming email")
        if request.manual_email_confirmed:
            raise AlreadyConfirmedError(request_id)
        if now is None:
            now = utcnow()

        members = self.group_service.members_of(request)
        updated = [m for m in members if not m.manual_email_confirmed]
        with atomic(self.db):
            for member in updated:
                member.confirm_manual_email(now)
            if request.group is not None:
                request.group.touch()

        logger.info(f"Manual email confirmed for {len(updated)} request(s), anchor {request_id}")
        return {
            "updated_count": len(updated),
            "is_group": request.group_id is not None,
            "group_id": request.group_id,
            "email_status": "confirmed"
        }

    def reset_delivery_state(self, request_id: str, user_id: str) -> Dict[str, Any]:
        """Clear every delivery field on the request and its group."""
        request = self.request_service.get_request(request_id, user_id)
        members = self.group_service.members_of(request)
        with atomic(self.db):
            for member in members:
                member.reset_delivery_state()
            if request.group is not None:
                request.group.touch()

        logger.info(f"Reset delivery state for {len(members)} request(s), anchor {request_id}")
        return {
            "updated_count": len(members),
            "is_group": request.group_id is not None,
            "group_id": request.group_id
        }

    def get_email_content(self, request_id: str, user_id: str) -> Dict[str, Any]:
        """
        Frozen manual email content for a request.

        Raises:
            InvalidModeError: If the request is in automatic mode
        """
        request = self.request_service.get_request(request_id, user_id)
        if request.email_mode != EmailMode.MANUAL:
            raise InvalidModeError(EmailMode.MANUAL.value, request.email_mode.value, "Viewing email content")
        return {
            "email_content": request.manual_email_content,
            "confirmed": bool(request.manual_email_confirmed),
            "is_group": request.group_id is not None,
            "group_id": request.group_id
        }

    def get_email_status(self, request_id: str, user_id: str) -> Dict[str, Any]:
        request = self.request_service.get_request(request_id, user_id)
        delivery = request.delivery
        automatic = request.email_mode == EmailMode.AUTOMATIC
        return {
            "mode": request.email_mode.value,
            "status": delivery.state,
            "sent": bool(request.email_sent),
            "failed": bool(request.email_failed),
            "confirmed": bool(request.manual_email_confirmed),
            "can_resend": automatic,
            "failure_count": request.email_failure_count or 0,
            "sent_at": request.email_sent_at,
            "error": request.email_error
        }
