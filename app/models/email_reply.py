"""Inbound reply from the scheduling department."""
from sqlalchemy import Column, String, DateTime, Boolean, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base
from app.utils import utcnow


class EmailReply(Base):
    """One inbound message on a request's thread, plus the user's answer to it."""

    __tablename__ = "email_replies"
    __table_args__ = (
        UniqueConstraint("thread_id", "message_id", name="uq_reply_thread_message"),
    )

    id = Column(String(36), primary_key=True)
    request_id = Column(String(36), ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String(255), nullable=False, index=True)
    message_id = Column(String(255), nullable=False)
    from_email = Column(String(255), nullable=False)
    from_name = Column(String(255), nullable=True)
    subject = Column(String(255), nullable=True)
    content = Column(Text, nullable=False)
    snippet = Column(String(500), nullable=True)
    received_at = Column(DateTime, nullable=False)

    is_processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String(36), nullable=True)

    # Outbound answer
    user_reply_sent = Column(Boolean, nullable=False, default=False)
    user_reply_content = Column(Text, nullable=True)
    user_reply_sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    request = relationship("Request", back_populates="replies")

    def __repr__(self) -> str:
        return f"<EmailReply(id={self.id}, thread_id={self.thread_id}, processed={self.is_processed})>"

    def mark_processed(self, user_id: str, now) -> None:
        self.is_processed = True
        self.processed_at = now
        self.processed_by = user_id

    def record_user_reply(self, content: str, now) -> None:
        """Store the answer the user sent on this thread."""
        self.user_reply_sent = True
        self.user_reply_content = content
        self.user_reply_sent_at = now
