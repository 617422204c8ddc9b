"""User model for employees and administrators."""
from sqlalchemy import Column, String, Enum, DateTime, Text
from sqlalchemy.orm import relationship
import enum

from app.database import Base
from app.utils import utcnow


class UserRole(str, enum.Enum):
    """User role enumeration."""
    EMPLOYEE = "employee"
    ADMIN = "admin"


class EmailMode(str, enum.Enum):
    """How request emails reach the scheduling department."""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class User(Base):
    """User model representing employees and administrators."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(3), nullable=True)
    signature = Column(Text, nullable=True)
    email_preference = Column(Enum(EmailMode), nullable=False, default=EmailMode.MANUAL)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.EMPLOYEE)
    gmail_access_token = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    requests = relationship("Request", back_populates="user")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

    @property
    def can_send_emails(self) -> bool:
        """True when the user has authorized automatic sending."""
        return bool(self.gmail_access_token)

    def validate(self) -> None:
        """Validate user data."""
        if not self.id:
            raise ValueError("User ID is required")
        if not self.email:
            raise ValueError("Email is required")
        if not self.name:
            raise ValueError("Name is required")
        if self.code and len(self.code) != 3:
            raise ValueError("Employee code must be three letters")
