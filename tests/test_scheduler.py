"""Tests for the periodic reply checker."""
import pytest
from unittest.mock import patch, MagicMock

from app.exceptions import ExternalServiceError
from app.models.user import EmailMode
from app.scheduler.reply_scheduler import (
    check_all_replies,
    start_scheduler,
    stop_scheduler,
    users_with_threads
)
from app.services.request_service import RequestService
from app.services.reply_service import ReplyCheckResult
from tests.conftest import TODAY, in_window, make_user


class TestCheckAllReplies:
    """Test suite for the periodic reply check."""

    def test_check_all_replies_creates_and_closes_session(self):
        """The job opens its own session and always closes it."""
        with patch('app.scheduler.reply_scheduler.SessionLocal') as mock_session_local:
            mock_db = MagicMock()
            mock_session_local.return_value = mock_db

            with patch('app.scheduler.reply_scheduler.users_with_threads', return_value=[]):
                with patch('app.scheduler.reply_scheduler.ReplyService') as mock_service_class:
                    assert check_all_replies() == 0

                    mock_session_local.assert_called_once()
                    mock_service_class.assert_called_once_with(mock_db)
                    mock_db.close.assert_called_once()

    def test_check_all_replies_sums_new_replies(self):
        users = [MagicMock(id="u-1"), MagicMock(id="u-2")]
        with patch('app.scheduler.reply_scheduler.SessionLocal') as mock_session_local:
            mock_session_local.return_value = MagicMock()
            with patch('app.scheduler.reply_scheduler.users_with_threads', return_value=users):
                with patch('app.scheduler.reply_scheduler.ReplyService') as mock_service_class:
                    mock_service = MagicMock()
                    mock_service.check_for_new_replies.side_effect = [
                        ReplyCheckResult(new_replies=[MagicMock(), MagicMock()]),
                        ReplyCheckResult(new_replies=[MagicMock()]),
                    ]
                    mock_service_class.return_value = mock_service

                    assert check_all_replies() == 3
                    assert mock_service.check_for_new_replies.call_count == 2

    def test_one_user_failing_does_not_stop_others(self):
        users = [MagicMock(id="u-1"), MagicMock(id="u-2")]
        with patch('app.scheduler.reply_scheduler.SessionLocal') as mock_session_local:
            mock_session_local.return_value = MagicMock()
            with patch('app.scheduler.reply_scheduler.users_with_threads', return_value=users):
                with patch('app.scheduler.reply_scheduler.ReplyService') as mock_service_class:
                    mock_service = MagicMock()
                    mock_service.check_for_new_replies.side_effect = [
                        ExternalServiceError("Gmail authorization required"),
                        ReplyCheckResult(new_replies=[MagicMock()]),
                    ]
                    mock_service_class.return_value = mock_service

                    assert check_all_replies() == 1

    def test_unexpected_user_error_does_not_stop_others(self):
        users = [MagicMock(id="u-1"), MagicMock(id="u-2"), MagicMock(id="u-3")]
        with patch('app.scheduler.reply_scheduler.SessionLocal') as mock_session_local:
            mock_db = MagicMock()
            mock_session_local.return_value = mock_db
            with patch('app.scheduler.reply_scheduler.users_with_threads', return_value=users):
                with patch('app.scheduler.reply_scheduler.ReplyService') as mock_service_class:
                    mock_service = MagicMock()
                    mock_service.check_for_new_replies.side_effect = [
                        ReplyCheckResult(new_replies=[MagicMock()]),
                        KeyError("payload"),
                        ReplyCheckResult(new_replies=[MagicMock(), MagicMock()]),
                    ]
                    mock_service_class.return_value = mock_service

                    assert check_all_replies() == 3
                    assert mock_service.check_for_new_replies.call_count == 3
                    mock_db.rollback.assert_called_once()
                    mock_db.close.assert_called_once()

    def test_check_all_replies_handles_errors(self):
        """Unexpected errors are logged and the session is still closed."""
        with patch('app.scheduler.reply_scheduler.SessionLocal') as mock_session_local:
            mock_db = MagicMock()
            mock_session_local.return_value = mock_db

            with patch('app.scheduler.reply_scheduler.ReplyService') as mock_service_class:
                mock_service_class.side_effect = Exception("Database error")

                assert check_all_replies() == 0
                mock_db.close.assert_called_once()

    def test_users_with_threads(self, test_db):
        automatic = make_user(test_db, EmailMode.AUTOMATIC, token="tok")
        manual = make_user(test_db, EmailMode.MANUAL)
        idle = make_user(test_db, EmailMode.AUTOMATIC, token="tok")

        service = RequestService(test_db)
        for user in (automatic, manual, idle):
            request = service.create_request(user.id, in_window(0), None, "REQ_DO", current_date=TODAY)
            if user is not idle:
                request.thread_id = f"thread-{user.id}"
        test_db.commit()

        assert [u.id for u in users_with_threads(test_db)] == [automatic.id]


class TestSchedulerLifecycle:
    """Starting and stopping the scheduler."""

    def test_disabled_interval_does_not_start(self):
        with patch('app.scheduler.reply_scheduler.scheduler') as mock_scheduler:
            assert start_scheduler(interval_minutes=0) is False
            mock_scheduler.add_job.assert_not_called()
            mock_scheduler.start.assert_not_called()

    def test_start_registers_interval_job(self):
        with patch('app.scheduler.reply_scheduler.scheduler') as mock_scheduler:
            assert start_scheduler(interval_minutes=15) is True

            mock_scheduler.add_job.assert_called_once()
            kwargs = mock_scheduler.add_job.call_args.kwargs
            assert kwargs["id"] == 'periodic_reply_check'
            assert kwargs["replace_existing"] is True
            assert kwargs["trigger"].interval.total_seconds() == 15 * 60
            mock_scheduler.start.assert_called_once()

    @pytest.mark.parametrize("running", [True, False])
    def test_stop_scheduler(self, running):
        with patch('app.scheduler.reply_scheduler.scheduler') as mock_scheduler:
            mock_scheduler.running = running
            stop_scheduler()
            assert mock_scheduler.shutdown.called is running
