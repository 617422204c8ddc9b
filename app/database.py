"""Database connection and session management."""
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from typing import Generator, Iterator
import logging

from app.config import settings
from app.exceptions import ConcurrencyError


logger = logging.getLogger(__name__)


def _engine_options() -> dict:
    """Pool options for the configured backend."""
    if settings.database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
    }


# Create database engine
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_recycle=settings.db_pool_recycle,
    echo=settings.debug,
    **_engine_options()
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Run a block of ORM changes as one transaction.

    Commits when the block finishes, rolls back on any error. A stale
    version detected during flush is reported as ConcurrencyError.

    Args:
        db: Database session

    Yields:
        The same session
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent modification detected: {e}")
        raise ConcurrencyError() from e
    except Exception:
        db.rollback()
        raise


def init_db() -> None:
    """Initialize database by creating all tables."""
    # Register models on the metadata
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")
