"""Scheduler and background tasks package."""
from app.scheduler.reply_scheduler import (
    start_scheduler,
    stop_scheduler,
    check_all_replies
)

__all__ = [
    'start_scheduler',
    'stop_scheduler',
    'check_all_replies'
]
