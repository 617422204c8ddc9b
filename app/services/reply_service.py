"""Reply ingester: reads request threads, stores replies and turns them into status decisions."""
from sqlalchemy.orm import Session
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Union, Sequence, Tuple
from datetime import date, datetime
from dateutil.relativedelta import relativedelta
import logging
import re
import uuid

from app.config import settings
from app.database import atomic
from app.models.email_reply import EmailReply
from app.models.request import Request, RequestStatus, StatusUpdateMethod
from app.models.user import User, EmailMode
from app.exceptions import (
    ExternalServiceError,
    InvalidModeError,
    MissingFieldError,
    OwnershipError,
    ResourceNotFoundError,
    ValidationError
)
from app.services.mail_transport import TransportFactory, build_mail_transport
from app.services.request_service import parse_status
from app.services.status_service import StatusService
from app.utils import utcnow


logger = logging.getLogger(__name__)

QUOTE_HEADER_PATTERN = re.compile(r"^On .* wrote:")
STATUS_ACTIONS = (RequestStatus.DENIED, RequestStatus.PENDING, RequestStatus.APPROVED)


def clean_quoted_content(raw: Optional[str]) -> str:
    """
    Remove quoted earlier messages from an email body.

    A line starting with ">" or an "On ... wrote:" preamble starts a quoted
    block; lines stay suppressed until the next blank line. At most one
    empty line is kept between paragraphs and the result is trimmed.
    """
    if not raw:
        return ""

    kept = []
    skipping = False
    for line in re.split(r"\r?\n", raw):
        stripped = line.strip()
        if QUOTE_HEADER_PATTERN.match(stripped) or stripped.startswith(">"):
            skipping = True
            continue
        if not skipping:
            kept.append(line)
        elif not stripped:
            skipping = False

    text = "\n".join(kept)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


@dataclass(frozen=True)
class ConversationEntry:
    role: str
    sender: str
    content: str
    timestamp: datetime
    reply_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp,
            "reply_id": self.reply_id
        }


def build_conversation(replies: Sequence[EmailReply]) -> List[ConversationEntry]:
    """
    Interleave inbound replies with the user's answers, newest first.

    Each reply contributes a "manager" entry, plus a "user" entry when the
    user answered it.
    """
    entries = []
    for reply in replies:
        entries.append(ConversationEntry(
            role="manager",
            sender=reply.from_name or reply.from_email,
            content=clean_quoted_content(reply.content),
            timestamp=reply.received_at,
            reply_id=reply.id
        ))
        if reply.user_reply_sent and reply.user_reply_sent_at:
            entries.append(ConversationEntry(
                role="user",
                sender="You",
                content=clean_quoted_content(reply.user_reply_content),
                timestamp=reply.user_reply_sent_at,
                reply_id=reply.id
            ))
    entries.sort(key=lambda entry: entry.timestamp, reverse=True)
    return entries


@dataclass
class ReplyCheckResult:
    """Outcome of one reply check."""
    checked: int = 0
    threads_checked: int = 0
    new_replies: List[EmailReply] = field(default_factory=list)
    updated_request_ids: List[str] = field(default_factory=list)
    failed_threads: List[str] = field(default_factory=list)


@dataclass
class SingleApprovalView:
    """Decision surface for a reply on a non-grouped request."""
    reply_id: str
    request_id: str
    current_status: RequestStatus
    actions: Tuple[RequestStatus, ...] = STATUS_ACTIONS


@dataclass
class DayApproval:
    request_id: str
    day: date
    current_status: RequestStatus
    staged_status: RequestStatus


@dataclass
class GroupApprovalView:
    """Per-day decision surface for a reply on a group request."""
    reply_id: str
    group_id: str
    days: List[DayApproval]

    def _find(self, request_id: str) -> DayApproval:
        for day in self.days:
            if day.request_id == request_id:
                return day
        raise ValidationError(
            "Request is not part of this group.",
            error_code="REQUEST_NOT_IN_GROUP",
            details={"request_id": request_id, "group_id": self.group_id}
        )

    def stage(self, request_id: str, status: Union[str, RequestStatus]) -> None:
        self._find(request_id).staged_status = parse_status(status)

    def stage_all(self, status: Union[str, RequestStatus]) -> None:
        target = parse_status(status)
        for day in self.days:
            day.staged_status = target

    def staged_decisions(self) -> List[Tuple[str, RequestStatus]]:
        return [(day.request_id, day.staged_status) for day in self.days]


class ReplyService:
    """Service for reply ingestion, review and answers."""

    def __init__(
        self,
        db: Session,
        status_service: Optional[StatusService] = None,
        transport_factory: Optional[TransportFactory] = None
    ):
        """
        Initialize reply service.

        Args:
            db: Database session
            status_service: Status reconciler; built from db when omitted
            transport_factory: Builds a mail transport for a user
        """
        self.db = db
        self.status_service = status_service or StatusService(db)
        self.request_service = self.status_service.request_service
        self.user_service = self.request_service.user_service
        self.transport_factory = transport_factory or build_mail_transport

    clean_quoted_content = staticmethod(clean_quoted_content)
    build_conversation = staticmethod(build_conversation)

    def _requests_to_check(self, user_id: str, current_date: date) -> Dict[str, List[Request]]:
        since = current_date - relativedelta(days=settings.reply_lookback_days)
        requests = self.db.query(Request).filter(
            Request.user_id == user_id,
            Request.thread_id.isnot(None),
            Request.start_date >= since
        ).order_by(Request.start_date).all()

        threads: Dict[str, List[Request]] = {}
        for request in requests:
            threads.setdefault(request.thread_id, []).append(request)
        return threads

    def check_for_new_replies(
        self,
        user: User,
        now: Optional[datetime] = None,
        current_date: Optional[date] = None
    ) -> ReplyCheckResult:
        """
        Fetch new messages on every thread of the user's recent requests.

        One reply is stored per new message not sent by the user, anchored
        to the earliest request on the thread. A failing thread is logged
        and skipped; the others are still processed.

        Args:
            user: Owner of the requests
            now: Timestamp override
            current_date: Current date (defaults to today if not provided)

        Returns:
            ReplyCheckResult

        Raises:
            ExternalServiceError: If the user has threads but no Gmail authorization
        """
        if now is None:
            now = utcnow()
        if current_date is None:
            current_date = now.date()

        threads = self._requests_to_check(user.id, current_date)
        result = ReplyCheckResult(checked=sum(len(r) for r in threads.values()))
        if not threads:
            return result

        if not self.user_service.can_send_emails(user):
            raise ExternalServiceError("Gmail authorization required", details={"user_id": user.id})
        logger.info(f"Checking {len(threads)} thread(s) for user {user.id}")
        with self.transport_factory(user) as transport:
            for thread_id, requests in threads.items():
                try:
                    created = self._check_thread(transport, thread_id, requests, now)
                except ExternalServiceError as e:
                    logger.error(f"Reply check failed for thread {thread_id} of user {user.id}: {e.message}")
                    result.failed_threads.append(thread_id)
                    continue
                except Exception:
                    logger.exception(f"Unexpected error checking thread {thread_id} of user {user.id}")
                    result.failed_threads.append(thread_id)
                    continue
                result.threads_checked += 1
                result.new_replies.extend(created)
                result.updated_request_ids.extend(r.id for r in requests)

        logger.info(
            f"Reply check for user {user.id}: {len(result.new_replies)} new replies, "
            f"{len(result.failed_threads)} failed thread(s)"
        )
        return result

    def _check_thread(self, transport, thread_id: str, requests: List[Request], now: datetime) -> List[EmailReply]:
        # High-water mark covers the user's own messages too, which are never stored
        since_message_id = next((r.last_seen_message_id for r in requests if r.last_seen_message_id), None)

        messages = transport.fetch_thread_messages(thread_id, since_message_id)
        anchor = requests[0]
        created = []

        with atomic(self.db):
            if not messages:
                for request in requests:
                    request.last_reply_check_at = now
                return created

            seen = set()
            for message in messages:
                if message.is_from_user:
                    continue
                if message.message_id in seen:
                    continue
                seen.add(message.message_id)
                exists = self.db.query(EmailReply).filter(
                    EmailReply.thread_id == thread_id,
                    EmailReply.message_id == message.message_id
                ).first()
                if exists:
                    continue

                reply = EmailReply(
                    id=str(uuid.uuid4()),
                    request_id=anchor.id,
                    thread_id=thread_id,
                    message_id=message.message_id,
                    from_email=message.from_email,
                    from_name=message.from_name,
                    subject=message.subject or anchor.email_subject,
                    content=message.body,
                    snippet=clean_quoted_content(message.body)[:settings.reply_snippet_length],
                    received_at=message.received_at,
                    is_processed=False,
                    user_reply_sent=False
                )
                self.db.add(reply)
                created.append(reply)

            latest = messages[-1]
            for request in requests:
                request.needs_review = not latest.is_from_user
                request.reply_count = (request.reply_count or 0) + len(messages)
                request.last_reply_at = latest.received_at
                request.last_reply_check_at = now
                request.last_seen_message_id = latest.message_id

        logger.info(f"Thread {thread_id}: {len(messages)} new message(s), {len(created)} reply record(s)")
        return created

    def get_reply(self, reply_id: str, user_id: str) -> EmailReply:
        """
        Get a reply on one of the user's requests.

        Raises:
            ResourceNotFoundError: If the reply does not exist
            OwnershipError: If it belongs to someone else (same public message)
        """
        reply = self.db.query(EmailReply).filter(EmailReply.id == reply_id).first()
        if not reply:
            raise ResourceNotFoundError("reply", reply_id)
        if reply.request.user_id != user_id:
            logger.warning(f"User {user_id} tried to access reply {reply_id} of another user")
            raise OwnershipError("reply", reply_id)
        return reply

    def list_replies(self, user_id: str, processed: Optional[bool] = None) -> List[EmailReply]:
        query = self.db.query(EmailReply).join(Request, EmailReply.request_id == Request.id).filter(
            Request.user_id == user_id
        )
        if processed is not None:
            query = query.filter(EmailReply.is_processed == processed)
        return query.order_by(EmailReply.received_at.desc()).all()

    def count_unprocessed(self, user_id: str) -> int:
        return self.db.query(EmailReply).join(Request, EmailReply.request_id == Request.id).filter(
            Request.user_id == user_id,
            EmailReply.is_processed.is_(False)
        ).count()

    def get_conversation(self, reply_id: str, user_id: str) -> List[ConversationEntry]:
        """Whole conversation on the reply's thread, newest first."""
        reply = self.get_reply(reply_id, user_id)
        thread_replies = self.db.query(EmailReply).filter(
            EmailReply.thread_id == reply.thread_id
        ).all()
        return build_conversation(thread_replies)

    def _scope(self, reply: EmailReply, user_id: str) -> List[Request]:
        """Requests a decision on this reply may touch."""
        rows = {r.id: r for r in self.request_service.thread_requests(user_id, reply.thread_id)}
        anchor = reply.request
        for member in ([anchor] if anchor.group is None else anchor.group.members):
            rows.setdefault(member.id, member)
        return sorted(rows.values(), key=lambda r: r.start_date)

    def get_approval_view(self, reply_id: str, user_id: str) -> Union[SingleApprovalView, GroupApprovalView]:
        """
        Decision surface for a reply.

        A reply anchored to a group request gets per-day controls, each
        starting from the day's current status.
        """
        reply = self.get_reply(reply_id, user_id)
        anchor = reply.request
        if anchor.group is None:
            return SingleApprovalView(reply_id=reply.id, request_id=anchor.id, current_status=anchor.status)
        days = [
            DayApproval(
                request_id=member.id,
                day=member.start_date,
                current_status=member.status,
                staged_status=member.status
            )
            for member in anchor.group.members
        ]
        return GroupApprovalView(reply_id=reply.id, group_id=anchor.group_id, days=days)

    def _clear_review_if_done(self, thread_id: str, requests: List[Request]) -> bool:
        self.db.flush()
        remaining = self.db.query(EmailReply).filter(
            EmailReply.thread_id == thread_id,
            EmailReply.is_processed.is_(False)
        ).count()
        if remaining == 0:
            for request in requests:
                request.needs_review = False
            return True
        return False

    def process_reply(
        self,
        reply_id: str,
        user_id: str,
        status: Union[str, RequestStatus],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Apply one decision from a reply.

        A non-grouped request gets the status alone; a group request gets it
        on every day. The reply is marked processed in the same transaction.
        """
        target = parse_status(status)
        view = self.get_approval_view(reply_id, user_id)
        if isinstance(view, SingleApprovalView):
            decisions = [(view.request_id, target)]
        else:
            view.stage_all(target)
            decisions = view.staged_decisions()
        return self.process_reply_individual(reply_id, user_id, decisions, now=now)

    def process_reply_individual(
        self,
        reply_id: str,
        user_id: str,
        decisions: Sequence[Tuple[str, Union[str, RequestStatus]]],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Apply a possibly different status to each request, then mark the reply processed.

        Args:
            reply_id: ID of the reply
            user_id: ID of the owner
            decisions: (request_id, status) pairs
            now: Timestamp override

        Returns:
            Dictionary with reply_id, updated requests and whether review was cleared

        Raises:
            ValidationError: If decisions is empty or names a request outside the reply's thread or group
            EmailNotDispatchedError: If a named request's email is still in draft state
        """
        if not decisions:
            raise ValidationError("At least one request status is required.", error_code="NO_DECISIONS")
        if now is None:
            now = utcnow()

        reply = self.get_reply(reply_id, user_id)
        scope = self._scope(reply, user_id)
        rows = {r.id: r for r in scope}

        parsed = []
        for request_id, status in decisions:
            if request_id not in rows:
                raise ValidationError(
                    "Request does not belong to this reply's thread.",
                    error_code="REQUEST_NOT_IN_THREAD",
                    details={"request_id": request_id, "reply_id": reply_id}
                )
            parsed.append((rows[request_id], parse_status(status)))

        with atomic(self.db):
            for request, status in parsed:
                self.status_service.stage_status(
                    [request], status, StatusUpdateMethod.REPLY_EMAIL_PARSING, now
                )
            reply.mark_processed(user_id, now)
            groups = {r.group for r, _ in parsed if r.group is not None}
            for group in groups:
                group.touch()
            review_cleared = self._clear_review_if_done(reply.thread_id, scope)

        logger.info(
            f"Reply {reply_id} processed by {user_id}: "
            + ", ".join(f"{r.id}={s.value}" for r, s in parsed)
        )
        return {
            "reply_id": reply_id,
            "updated_requests": [{"id": r.id, "status": s.value} for r, s in parsed],
            "updated_count": len(parsed),
            "review_cleared": review_cleared
        }

    def submit_group_approval(self, view: GroupApprovalView, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.process_reply_individual(view.reply_id, user_id, view.staged_decisions(), now=now)

    def respond(self, reply_id: str, user: User, message: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Answer a reply on the same thread.

        Nothing is recorded unless the message was sent.

        Raises:
            InvalidModeError: If the request is not in automatic mode
            MissingFieldError: If the message is empty
            ExternalServiceError: If sending fails
        """
        reply = self.get_reply(reply_id, user.id)
        anchor = reply.request
        if anchor.email_mode != EmailMode.AUTOMATIC:
            raise InvalidModeError(EmailMode.AUTOMATIC.value, anchor.email_mode.value, "Replying")
        if not message or not message.strip():
            raise MissingFieldError("message")
        text = message.strip()
        if now is None:
            now = utcnow()

        original_subject = reply.subject or anchor.email_subject or "Time-off Request"
        subject = original_subject if original_subject.lower().startswith("re:") else f"Re: {original_subject}"

        if not self.user_service.can_send_emails(user):
            raise ExternalServiceError("Gmail authorization required", details={"user_id": user.id})
        try:
            with self.transport_factory(user) as transport:
                sent = transport.send(reply.from_email, subject, text, thread_id=reply.thread_id)
        except ExternalServiceError:
            logger.error(f"Reply {reply_id} answer failed for user {user.id}")
            raise
        except Exception as e:
            logger.exception(f"Unexpected mail transport error answering reply {reply_id}")
            raise ExternalServiceError(f"Failed to send reply: {e}")

        thread_requests = self.request_service.thread_requests(user.id, reply.thread_id)
        with atomic(self.db):
            reply.record_user_reply(text, now)
            reply.mark_processed(user.id, now)
            for request in thread_requests:
                request.needs_review = False

        logger.info(f"Answer sent for reply {reply_id} on thread {reply.thread_id}")
        return {
            "reply_id": reply_id,
            "message_id": sent.message_id,
            "thread_id": sent.thread_id,
            "subject": subject
        }
