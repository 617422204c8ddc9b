"""Group aggregate tying the single-day rows of one multi-day request."""
from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, ForeignKey
from sqlalchemy.orm import relationship
from typing import Dict, List

from app.database import Base
from app.models.user import EmailMode
from app.models.request import Request, RequestStatus
from app.utils import utcnow


class RequestGroup(Base):
    """A multi-day request; members share owner, email mode and custom message."""

    __tablename__ = "request_groups"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    email_mode = Column(Enum(EmailMode), nullable=False)
    custom_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    members = relationship(
        "Request",
        back_populates="group",
        order_by=Request.start_date,
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<RequestGroup(id={self.id}, user_id={self.user_id}, members={len(self.members)})>"

    @property
    def member_ids(self) -> List[str]:
        return [member.id for member in self.members]

    def touch(self) -> None:
        """Mark the aggregate as changed so its version is checked and bumped."""
        self.updated_at = utcnow()

    def blocked_members(self) -> List[Request]:
        """Members that prevent the group from being deleted."""
        return [member for member in self.members if not member.can_be_deleted()]

    def can_be_deleted(self) -> bool:
        return not self.blocked_members()

    def status_summary(self) -> Dict[str, int]:
        return summarize_statuses(self.members)

    def email_status_summary(self) -> Dict[str, object]:
        """Delivery progress across members."""
        total = len(self.members)
        sent = sum(1 for member in self.members if member.is_email_dispatched())
        return {
            "all_sent": total > 0 and sent == total,
            "none_sent": sent == 0,
            "partial_sent": 0 < sent < total,
            "sent_count": sent,
            "total_count": total
        }


def summarize_statuses(requests: List[Request]) -> Dict[str, int]:
    """Count requests per status."""
    return {
        "pending": sum(1 for r in requests if r.status == RequestStatus.PENDING),
        "approved": sum(1 for r in requests if r.status == RequestStatus.APPROVED),
        "denied": sum(1 for r in requests if r.status == RequestStatus.DENIED),
    }
