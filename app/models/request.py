"""Request model for time-off applications."""
from sqlalchemy import Column, String, Date, Enum, DateTime, Boolean, Integer, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship
from dataclasses import dataclass
from datetime import datetime, date
from typing import Optional, Dict, Union
import enum

from app.database import Base
from app.exceptions import InvalidModeError
from app.models.user import EmailMode
from app.utils import utcnow


class RequestStatus(str, enum.Enum):
    """Request status enumeration."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class RequestType(str, enum.Enum):
    """Kind of time off being requested."""
    DAY_OFF = "REQ_DO"
    AFTERNOON_OFF = "PM_OFF"
    MORNING_OFF = "AM_OFF"
    FLIGHT = "FLIGHT"


class StatusUpdateMethod(str, enum.Enum):
    """Provenance of a status change."""
    MANUAL_USER_UPDATE = "manual_user_update"
    REPLY_EMAIL_PARSING = "reply_email_parsing"
    ADMIN_UPDATE = "admin_update"


@dataclass(frozen=True)
class AutomaticDelivery:
    """Delivery state of a request whose email is sent by the system."""
    sent: bool
    sent_at: Optional[datetime]
    failed: bool
    failed_at: Optional[datetime]
    error: Optional[str]
    failure_count: int
    thread_id: Optional[str]
    message_id: Optional[str]

    @property
    def state(self) -> str:
        if self.sent:
            return "sent"
        if self.failed:
            return "failed"
        return "pending"


@dataclass(frozen=True)
class ManualDelivery:
    """Delivery state of a request whose email the user copies and sends."""
    content: Optional[Dict[str, str]]
    confirmed: bool
    confirmed_at: Optional[datetime]

    @property
    def state(self) -> str:
        return "confirmed" if self.confirmed else "pending"


Delivery = Union[AutomaticDelivery, ManualDelivery]


class Request(Base):
    """Request model; one row per requested period, usually a single day."""

    __tablename__ = "requests"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    group_id = Column(String(36), ForeignKey("request_groups.id", ondelete="CASCADE"), nullable=True, index=True)
    start_date = Column(Date, nullable=False, index=True)
    end_date = Column(Date, nullable=False)
    type = Column(Enum(RequestType), nullable=False)
    flight_number = Column(String(16), nullable=True)
    custom_message = Column(Text, nullable=True)

    status = Column(Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING, index=True)
    status_update_method = Column(String(32), nullable=True)
    status_updated_at = Column(DateTime, nullable=True)
    approval_date = Column(DateTime, nullable=True)
    denial_reason = Column(Text, nullable=True)

    # Captured once at creation from the owner's preference
    email_mode = Column(Enum(EmailMode), nullable=False)

    # Automatic mode
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(DateTime, nullable=True)
    email_failed = Column(Boolean, nullable=False, default=False)
    email_failed_at = Column(DateTime, nullable=True)
    email_error = Column(Text, nullable=True)
    email_failure_count = Column(Integer, nullable=False, default=0)
    thread_id = Column(String(255), nullable=True, index=True)
    message_id = Column(String(255), nullable=True)
    email_subject = Column(String(255), nullable=True)

    # Manual mode
    manual_email_content = Column(JSON, nullable=True)
    manual_email_confirmed = Column(Boolean, nullable=False, default=False)
    manual_email_confirmed_at = Column(DateTime, nullable=True)

    # Reply tracking
    needs_review = Column(Boolean, nullable=False, default=False)
    reply_count = Column(Integer, nullable=False, default=0)
    last_reply_at = Column(DateTime, nullable=True)
    last_reply_check_at = Column(DateTime, nullable=True)
    last_seen_message_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    user = relationship("User", back_populates="requests")
    group = relationship("RequestGroup", back_populates="members")
    replies = relationship("EmailReply", back_populates="request", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Request(id={self.id}, user_id={self.user_id}, date={self.start_date}, status={self.status})>"

    @property
    def delivery(self) -> Delivery:
        """Delivery state for this request's email mode."""
        if self.email_mode == EmailMode.AUTOMATIC:
            return AutomaticDelivery(
                sent=bool(self.email_sent),
                sent_at=self.email_sent_at,
                failed=bool(self.email_failed),
                failed_at=self.email_failed_at,
                error=self.email_error,
                failure_count=self.email_failure_count or 0,
                thread_id=self.thread_id,
                message_id=self.message_id
            )
        return ManualDelivery(
            content=self.manual_email_content,
            confirmed=bool(self.manual_email_confirmed),
            confirmed_at=self.manual_email_confirmed_at
        )

    def is_email_dispatched(self) -> bool:
        """True once the email has left draft state; required before any status change."""
        if self.email_mode == EmailMode.AUTOMATIC:
            return bool(self.email_sent)
        return bool(self.manual_email_confirmed)

    def is_editable(self) -> bool:
        """Content and dates may change only while pending and undispatched."""
        if self.status not in (None, RequestStatus.PENDING):
            return False
        return not (self.email_sent or self.manual_email_confirmed)

    def can_be_deleted(self) -> bool:
        return self.is_editable()

    def overlaps(self, start_date: date, end_date: date) -> bool:
        return self.start_date <= end_date and start_date <= self.end_date

    def _require_mode(self, mode: EmailMode, action: str) -> None:
        if self.email_mode != mode:
            raise InvalidModeError(mode.value, self.email_mode.value, action)

    def mark_email_sent(self, message_id: Optional[str], thread_id: Optional[str], subject: Optional[str], now: datetime) -> None:
        """Record a successful automatic send; an earlier sent timestamp is kept."""
        self._require_mode(EmailMode.AUTOMATIC, "Sending email")
        self.email_sent = True
        if not self.email_sent_at:
            self.email_sent_at = now
        self.email_failed = False
        self.email_failed_at = None
        self.email_error = None
        self.message_id = message_id
        self.thread_id = thread_id
        self.email_subject = subject

    def mark_email_failed(self, error: str, now: datetime) -> None:
        """Record a failed automatic send; an email that already went out stays sent."""
        self._require_mode(EmailMode.AUTOMATIC, "Sending email")
        self.email_failed = True
        self.email_failed_at = now
        self.email_error = error
        self.email_failure_count = (self.email_failure_count or 0) + 1

    def store_manual_email_content(self, content: Dict[str, str]) -> None:
        """Freeze the email the user is expected to send by hand."""
        self._require_mode(EmailMode.MANUAL, "Preparing manual email")
        self.manual_email_content = dict(content)

    def confirm_manual_email(self, now: datetime) -> None:
        self._require_mode(EmailMode.MANUAL, "Confirming email")
        self.manual_email_confirmed = True
        self.manual_email_confirmed_at = now

    def reset_delivery_state(self) -> None:
        """Return every delivery field to its initial value."""
        self.email_sent = False
        self.email_sent_at = None
        self.email_failed = False
        self.email_failed_at = None
        self.email_error = None
        self.email_failure_count = 0
        self.thread_id = None
        self.message_id = None
        self.last_seen_message_id = None
        self.email_subject = None
        self.manual_email_confirmed = False
        self.manual_email_confirmed_at = None

    def validate(self) -> None:
        """Validate request data."""
        if not self.id:
            raise ValueError("Request ID is required")
        if not self.user_id:
            raise ValueError("User ID is required")
        if not self.start_date or not self.end_date:
            raise ValueError("Start and end dates are required")
        if self.end_date < self.start_date:
            raise ValueError("End date must be on or after start date")
        if self.type == RequestType.FLIGHT and not self.flight_number:
            raise ValueError("Flight number is required for flight requests")
        if self.email_mode is None:
            raise ValueError("Email mode is required")
