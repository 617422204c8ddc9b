"""User lookup and email-preference service."""
from sqlalchemy.orm import Session
from dataclasses import dataclass
from typing import Optional, Union
import logging
import uuid

from app.database import atomic
from app.models.user import User, UserRole, EmailMode
from app.exceptions import ResourceNotFoundError, ValidationError, MissingFieldError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureFields:
    """Values that identify the sender in a request email."""
    code: str
    name: str
    signature: str


def default_signature(name: str) -> str:
    return f"Brgds,\n{name}"


def parse_email_mode(value: Union[str, EmailMode]) -> EmailMode:
    if isinstance(value, EmailMode):
        return value
    try:
        return EmailMode(str(value).lower())
    except ValueError:
        raise ValidationError(
            "Email preference must be 'manual' or 'automatic'.",
            error_code="INVALID_EMAIL_MODE_VALUE",
            details={"value": str(value)}
        )


class UserService:
    """Service for user registration and preference lookups."""

    def __init__(self, db: Session):
        """
        Initialize user service.

        Args:
            db: Database session
        """
        self.db = db

    def get_user(self, user_id: str) -> User:
        """
        Get a user by ID.

        Raises:
            ResourceNotFoundError: If no such user exists
        """
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise ResourceNotFoundError("user", user_id)
        return user

    def find_user(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def register_user(
        self,
        email: str,
        name: str,
        code: Optional[str] = None,
        signature: Optional[str] = None,
        email_preference: Union[str, EmailMode] = EmailMode.MANUAL,
        role: UserRole = UserRole.EMPLOYEE,
        gmail_access_token: Optional[str] = None
    ) -> User:
        """
        Register a new user.

        Args:
            email: Login address, also used as the sender address
            name: Display name
            code: Three-letter employee code used in email subjects
            signature: Email signature; defaults to "Brgds,<newline><name>"
            email_preference: Initial email mode
            role: User role
            gmail_access_token: OAuth access token for automatic sending

        Returns:
            Newly created User object

        Raises:
            MissingFieldError: If email or name is empty
            ValidationError: If the email is already registered or the code is malformed
        """
        if not email:
            raise MissingFieldError("email")
        if not name:
            raise MissingFieldError("name")

        existing = self.db.query(User).filter(User.email == email).first()
        if existing:
            raise ValidationError(
                f"{email} is already registered.",
                error_code="EMAIL_ALREADY_REGISTERED",
                details={"email": email}
            )

        user = User(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            code=code.upper() if code else None,
            signature=signature,
            email_preference=parse_email_mode(email_preference),
            role=role,
            gmail_access_token=gmail_access_token
        )
        try:
            user.validate()
        except ValueError as e:
            raise ValidationError(str(e))

        with atomic(self.db):
            self.db.add(user)
        self.db.refresh(user)

        logger.info(f"Registered user {user.id} ({user.email}), email mode {user.email_preference.value}")
        return user

    def get_email_mode(self, user_id: str) -> EmailMode:
        return self.get_user(user_id).email_preference

    def get_signature_fields(self, user_id: str) -> SignatureFields:
        """
        Get the fields used to sign request emails.

        Args:
            user_id: ID of the user

        Returns:
            SignatureFields with the stored signature or the default one
        """
        user = self.get_user(user_id)
        return SignatureFields(
            code=user.code or "",
            name=user.name,
            signature=user.signature or default_signature(user.name)
        )

    def set_email_preference(self, user_id: str, mode: Union[str, EmailMode]) -> User:
        """
        Change the user's email preference.

        Existing requests keep the mode captured when they were created.
        """
        user = self.get_user(user_id)
        new_mode = parse_email_mode(mode)
        with atomic(self.db):
            user.email_preference = new_mode
        logger.info(f"User {user_id} switched email preference to {new_mode.value}")
        return user

    def set_gmail_access_token(self, user_id: str, token: Optional[str]) -> User:
        user = self.get_user(user_id)
        with atomic(self.db):
            user.gmail_access_token = token
        return user

    @staticmethod
    def can_send_emails(user: User) -> bool:
        return user.can_send_emails
