"""Request and response bodies for the HTTP API."""
from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Optional, List, Dict

from app.models.request import RequestStatus, RequestType
from app.models.user import EmailMode, UserRole


class RequestCreate(BaseModel):
    start_date: date
    end_date: Optional[date] = None
    type: str
    flight_number: Optional[str] = None
    custom_message: Optional[str] = None


class RequestUpdate(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    type: Optional[str] = None
    flight_number: Optional[str] = None
    custom_message: Optional[str] = None


class GroupDayCreate(BaseModel):
    day: date
    type: str = "REQ_DO"
    flight_number: Optional[str] = None


class GroupCreate(BaseModel):
    dates: List[GroupDayCreate] = Field(..., min_length=1)
    custom_message: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str
    method: str = "manual_user_update"
    apply_to_group: bool = False
    denial_reason: Optional[str] = None


class ReplyProcess(BaseModel):
    status: str


class RequestDecision(BaseModel):
    request_id: str
    status: str


class ReplyProcessIndividual(BaseModel):
    request_statuses: List[RequestDecision] = Field(..., min_length=1)


class ReplyRespond(BaseModel):
    message: str


class EmailPreferenceUpdate(BaseModel):
    email_preference: str


class RequestResponse(BaseModel):
    id: str
    user_id: str
    group_id: Optional[str] = None
    start_date: date
    end_date: date
    type: RequestType
    flight_number: Optional[str] = None
    custom_message: Optional[str] = None
    status: RequestStatus
    status_update_method: Optional[str] = None
    status_updated_at: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    denial_reason: Optional[str] = None
    email_mode: EmailMode
    email_sent: bool
    email_sent_at: Optional[datetime] = None
    email_failed: bool
    email_error: Optional[str] = None
    email_failure_count: int
    thread_id: Optional[str] = None
    manual_email_confirmed: bool
    needs_review: bool
    reply_count: int
    last_reply_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReplyResponse(BaseModel):
    id: str
    request_id: str
    thread_id: str
    from_email: str
    from_name: Optional[str] = None
    subject: Optional[str] = None
    content: str
    snippet: Optional[str] = None
    received_at: datetime
    is_processed: bool
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    user_reply_sent: bool
    user_reply_content: Optional[str] = None
    user_reply_sent_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    code: Optional[str] = None
    signature: Optional[str] = None
    email_preference: EmailMode
    role: UserRole
    can_send_emails: bool = False

    model_config = ConfigDict(from_attributes=True)


class StatisticsResponse(BaseModel):
    pending: int
    approved: int
    denied: int
    total: int


class ConflictResponse(BaseModel):
    conflicts: List[date]
    has_conflicts: bool


class EmailStatusResponse(BaseModel):
    mode: str
    status: str
    sent: bool
    failed: bool
    confirmed: bool
    can_resend: bool
    failure_count: int
    sent_at: Optional[datetime] = None
    error: Optional[str] = None


class CountResponse(BaseModel):
    count: int


class StatusSummary(BaseModel):
    pending: int
    approved: int
    denied: int


class GroupDetailsResponse(BaseModel):
    group_id: Optional[str] = None
    is_group: bool
    requests: List[RequestResponse]
    total_days: int
    start_date: date
    end_date: date
    status_summary: StatusSummary
    email_status: Optional[Dict[str, object]] = None
