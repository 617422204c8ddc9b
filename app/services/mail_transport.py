"""Mail transport: sending request emails and reading their threads through Gmail."""
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.utils import parseaddr
from typing import Optional, List, Dict, Any, Callable, Protocol
import base64
import logging

import httpx

from app.config import settings
from app.exceptions import ExternalServiceError
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentMessage:
    """Identifiers assigned to a message by the mail provider."""
    message_id: Optional[str]
    thread_id: Optional[str]


@dataclass(frozen=True)
class InboundMessage:
    """A message read back from a correspondence thread."""
    message_id: str
    thread_id: str
    from_header: str
    body: str
    received_at: datetime
    is_from_user: bool = False
    subject: Optional[str] = None

    @property
    def from_email(self) -> str:
        return parseaddr(self.from_header)[1] or self.from_header

    @property
    def from_name(self) -> Optional[str]:
        return parseaddr(self.from_header)[0] or None


class MailTransport(Protocol):
    """What the dispatcher and the reply ingester need from a mail provider."""

    def send(self, to: str, subject: str, body: str, thread_id: Optional[str] = None) -> SentMessage:
        ...

    def fetch_thread_messages(self, thread_id: str, since_message_id: Optional[str] = None) -> List[InboundMessage]:
        ...

    def __enter__(self) -> "MailTransport":
        ...

    def __exit__(self, exc_type, exc, tb) -> None:
        ...


TransportFactory = Callable[[User], MailTransport]


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


def extract_message_body(payload: Dict[str, Any]) -> str:
    """
    Plain-text body of a Gmail message payload.

    Uses the payload body when present, otherwise concatenates the
    text/plain parts, descending into nested multiparts.
    """
    body = payload.get("body") or {}
    if body.get("data"):
        return _decode_part(body["data"]).strip()

    text = ""
    for part in payload.get("parts") or []:
        mime_type = part.get("mimeType", "")
        if mime_type == "text/plain" and (part.get("body") or {}).get("data"):
            text += _decode_part(part["body"]["data"])
        elif mime_type.startswith("multipart/"):
            text += extract_message_body(part)
    return text.strip()


def _header(payload: Dict[str, Any], name: str) -> Optional[str]:
    for header in payload.get("headers") or []:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


class GmailTransport:
    """
    Gmail REST API client for one user.

    Every call uses a bounded timeout; transport failures surface as
    ExternalServiceError.
    """

    def __init__(
        self,
        access_token: str,
        sender_address: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None
    ):
        """
        Initialize Gmail transport.

        Args:
            access_token: OAuth bearer token
            sender_address: The user's own address; used to recognise their messages
            base_url: Gmail API base URL for the user
            timeout: Seconds before a call is abandoned
            client: Preconfigured httpx client, mainly for tests; the caller closes it
        """
        self.sender_address = sender_address
        self.base_url = (base_url or settings.gmail_api_base_url).rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=timeout if timeout is not None else settings.mail_timeout_seconds
        )
        self.client.headers.update({"Authorization": f"Bearer {access_token}"})

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.client.request(method, url, **kwargs)
            if response.status_code == 401:
                raise ExternalServiceError(
                    "Gmail authorization expired. Please reconnect.",
                    details={"status_code": 401}
                )
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            logger.error(f"Gmail API timeout on {method} {path}: {e}")
            raise ExternalServiceError("Mail service timed out.", details={"path": path})
        except httpx.HTTPStatusError as e:
            logger.error(f"Gmail API error on {method} {path}: {e.response.text}")
            raise ExternalServiceError(
                f"Gmail API error: {e.response.status_code}",
                details={"status_code": e.response.status_code}
            )
        except httpx.HTTPError as e:
            logger.error(f"Gmail API transport error on {method} {path}: {e}")
            raise ExternalServiceError(f"Mail service unavailable: {e}", details={"path": path})

    def send(self, to: str, subject: str, body: str, thread_id: Optional[str] = None) -> SentMessage:
        """
        Send a plain-text message, optionally on an existing thread.

        Returns:
            SentMessage with the provider's message and thread IDs
        """
        message = MIMEText(body, "plain", "utf-8")
        message["To"] = to
        message["From"] = self.sender_address
        message["Subject"] = subject
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()

        payload = {"raw": raw}
        if thread_id:
            payload["threadId"] = thread_id

        data = self._request("POST", "/messages/send", json=payload)
        logger.info(f"Gmail message {data.get('id')} sent to {to} on thread {data.get('threadId')}")
        return SentMessage(message_id=data.get("id"), thread_id=data.get("threadId"))

    def fetch_thread_messages(self, thread_id: str, since_message_id: Optional[str] = None) -> List[InboundMessage]:
        """
        Messages on a thread after since_message_id.

        The thread's first message is the original request; it is skipped
        when it came from the user. When since_message_id is not on the
        thread, every message is returned.
        """
        data = self._request("GET", f"/threads/{thread_id}", params={"format": "full"})
        messages = data.get("messages") or []

        start_index = 0
        if since_message_id:
            for index, message in enumerate(messages):
                if message.get("id") == since_message_id:
                    start_index = index + 1
                    break
            else:
                logger.info(f"Message {since_message_id} not found on thread {thread_id}, reading all messages")

        user_address = self.sender_address.lower()
        inbound = []
        for index in range(start_index, len(messages)):
            message = messages[index]
            payload = message.get("payload") or {}
            from_header = _header(payload, "From") or "unknown"
            is_from_user = bool(user_address) and user_address in from_header.lower()
            if is_from_user and index == 0:
                continue

            received_ms = int(message.get("internalDate") or 0)
            inbound.append(InboundMessage(
                message_id=message.get("id"),
                thread_id=thread_id,
                from_header=from_header,
                body=extract_message_body(payload),
                received_at=datetime.fromtimestamp(received_ms / 1000, tz=timezone.utc).replace(tzinfo=None),
                is_from_user=is_from_user,
                subject=_header(payload, "Subject")
            ))
        return inbound

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "GmailTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_mail_transport(user: User) -> MailTransport:
    """
    Default transport factory.

    Raises:
        ExternalServiceError: If the user has not authorized Gmail
    """
    if not user.gmail_access_token:
        raise ExternalServiceError("Gmail authorization required", details={"user_id": user.id})
    return GmailTransport(access_token=user.gmail_access_token, sender_address=user.email)
