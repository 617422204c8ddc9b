"""Business logic services package."""
from app.services.template_renderer import TemplateRenderer, EmailTemplate, RenderedEmail
from app.services.user_service import UserService, SignatureFields
from app.services.request_service import RequestService
from app.services.group_service import GroupService, GroupDay
from app.services.mail_transport import GmailTransport, MailTransport, build_mail_transport
from app.services.email_dispatcher import EmailDispatcher, DispatchOutcome
from app.services.status_service import StatusService, resolve_status_change
from app.services.reply_service import ReplyService, clean_quoted_content, build_conversation

__all__ = [
    "TemplateRenderer",
    "EmailTemplate",
    "RenderedEmail",
    "UserService",
    "SignatureFields",
    "RequestService",
    "GroupService",
    "GroupDay",
    "GmailTransport",
    "MailTransport",
    "build_mail_transport",
    "EmailDispatcher",
    "DispatchOutcome",
    "StatusService",
    "resolve_status_change",
    "ReplyService",
    "clean_quoted_content",
    "build_conversation",
]
