"""Database models package."""
from app.models.user import User, UserRole, EmailMode
from app.models.request import (
    Request,
    RequestStatus,
    RequestType,
    StatusUpdateMethod,
    AutomaticDelivery,
    ManualDelivery,
)
from app.models.request_group import RequestGroup
from app.models.email_reply import EmailReply

__all__ = [
    "User",
    "UserRole",
    "EmailMode",
    "Request",
    "RequestStatus",
    "RequestType",
    "StatusUpdateMethod",
    "AutomaticDelivery",
    "ManualDelivery",
    "RequestGroup",
    "EmailReply",
]
