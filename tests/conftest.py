"""Pytest configuration and fixtures for tests."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator, Dict, List, Optional
from contextlib import contextmanager
from datetime import date, datetime, timedelta
import uuid

import app.models  # noqa: F401
from app.database import Base
from app.models.user import User, UserRole, EmailMode
from app.services.mail_transport import SentMessage, InboundMessage


# Fixed "today" used by service tests; the request window is 60 to 120 days ahead.
TODAY = date(2025, 1, 10)
NOW = datetime(2025, 1, 10, 9, 30)


def in_window(offset: int = 0) -> date:
    """A day inside the request window relative to TODAY."""
    return TODAY + timedelta(days=70 + offset)


def _new_engine():
    return create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a test database session for each test.
    Uses an in-memory SQLite database for fast testing.
    """
    engine = _new_engine()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@contextmanager
def get_test_db_session():
    """
    Context manager for creating test database sessions.
    Used for property-based tests where fixtures don't work well.
    """
    engine = _new_engine()
    Base.metadata.create_all(bind=engine)
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def make_user(
    db: Session,
    email_preference: EmailMode = EmailMode.MANUAL,
    name: str = "Jane Pilot",
    code: Optional[str] = "JPL",
    signature: Optional[str] = None,
    token: Optional[str] = None
) -> User:
    """Add a committed user to the session."""
    user_id = str(uuid.uuid4())
    user = User(
        id=user_id,
        email=f"{user_id[:8]}@crew.example.com",
        name=name,
        code=code,
        signature=signature,
        email_preference=email_preference,
        role=UserRole.EMPLOYEE,
        gmail_access_token=token
    )
    db.add(user)
    db.commit()
    return user


def inbound(
    message_id: str,
    thread_id: str,
    body: str = "Approved.",
    from_header: str = "Crew Scheduling <scheduling@example.com>",
    received_at: Optional[datetime] = None,
    is_from_user: bool = False
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        thread_id=thread_id,
        from_header=from_header,
        body=body,
        received_at=received_at or NOW,
        is_from_user=is_from_user,
        subject="JPL CREW REQUEST - March 2025"
    )


class FakeMailTransport:
    """In-memory mail transport that records sends and serves scripted threads."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.sent: List[Dict] = []
        self.threads: Dict[str, List[InboundMessage]] = {}
        self.fetch_errors: Dict[str, Exception] = {}
        self.fetch_calls: List[tuple] = []
        self.closed = 0
        self._counter = 0

    def __enter__(self) -> "FakeMailTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.closed += 1

    def send(self, to: str, subject: str, body: str, thread_id: Optional[str] = None) -> SentMessage:
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        message_id = f"msg-{self._counter}"
        thread = thread_id or f"thread-{self._counter}"
        self.sent.append({
            "to": to,
            "subject": subject,
            "body": body,
            "thread_id": thread_id,
            "message_id": message_id
        })
        return SentMessage(message_id=message_id, thread_id=thread)

    def add_messages(self, thread_id: str, *messages: InboundMessage) -> None:
        self.threads.setdefault(thread_id, []).extend(messages)

    def fetch_thread_messages(self, thread_id: str, since_message_id: Optional[str] = None) -> List[InboundMessage]:
        self.fetch_calls.append((thread_id, since_message_id))
        if thread_id in self.fetch_errors:
            raise self.fetch_errors[thread_id]
        messages = self.threads.get(thread_id, [])
        if since_message_id:
            ids = [m.message_id for m in messages]
            if since_message_id in ids:
                return list(messages[ids.index(since_message_id) + 1:])
        return list(messages)


@pytest.fixture
def fake_transport() -> FakeMailTransport:
    return FakeMailTransport()


@pytest.fixture
def transport_factory(fake_transport):
    return lambda user: fake_transport


@pytest.fixture
def manual_user(test_db: Session) -> User:
    return make_user(test_db, EmailMode.MANUAL)


@pytest.fixture
def automatic_user(test_db: Session) -> User:
    return make_user(test_db, EmailMode.AUTOMATIC, token="token-123")
