"""Periodic reply checking for users with automatic-mode threads."""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from typing import Callable, Optional
import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.exceptions import AppError
from app.models.request import Request
from app.models.user import User, EmailMode
from app.services.reply_service import ReplyService


# Configure logging
logger = logging.getLogger(__name__)


# Global scheduler instance
scheduler = AsyncIOScheduler()


def users_with_threads(db: Session):
    """Users owning at least one automatic-mode request with a thread."""
    return db.query(User).join(Request, Request.user_id == User.id).filter(
        Request.email_mode == EmailMode.AUTOMATIC,
        Request.thread_id.isnot(None)
    ).distinct().all()


def check_all_replies(session_factory: Optional[Callable[[], Session]] = None) -> int:
    """
    Run a reply check for every user with automatic-mode threads.

    A failure for one user is logged and the others are still checked.

    Returns:
        Number of new replies stored
    """
    logger.info("Starting periodic reply check...")

    db = (session_factory or SessionLocal)()
    total = 0
    try:
        reply_service = ReplyService(db)
        for user in users_with_threads(db):
            try:
                result = reply_service.check_for_new_replies(user)
                total += len(result.new_replies)
            except AppError as e:
                logger.error(f"Reply check failed for user {user.id}: {e.message}")
            except Exception as e:
                logger.error(f"Unexpected error checking replies for user {user.id}: {str(e)}", exc_info=True)
                db.rollback()
        logger.info(f"Periodic reply check completed. {total} new replies.")
    except Exception as e:
        logger.error(f"Error during periodic reply check: {str(e)}", exc_info=True)
    finally:
        db.close()
    return total


def start_scheduler(interval_minutes: Optional[int] = None) -> bool:
    """
    Start periodic reply checking.

    Does nothing when the interval is zero or negative.

    Returns:
        True if the scheduler was started
    """
    minutes = settings.reply_check_interval_minutes if interval_minutes is None else interval_minutes
    if minutes <= 0:
        logger.info("Periodic reply checking disabled")
        return False

    scheduler.add_job(
        check_all_replies,
        trigger=IntervalTrigger(minutes=minutes),
        id='periodic_reply_check',
        name='Periodic Reply Check',
        replace_existing=True
    )
    logger.info(f"Reply scheduler configured to run every {minutes} minutes")

    scheduler.start()
    logger.info("Reply scheduler started")
    return True


def stop_scheduler():
    """
    Stop the reply scheduler.

    Called during application shutdown.
    """
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Reply scheduler stopped")
    else:
        logger.info("Reply scheduler was not running")
