"""Tests for multi-day group requests."""
import pytest

from app.exceptions import (
    AdvanceNoticeError,
    DuplicateRequestError,
    GroupSizeError,
    InvalidFlightNumberError,
    NonConsecutiveDatesError,
    OwnershipError,
    RequestNotEditableError,
    ResourceNotFoundError
)
from app.models.request import Request, RequestStatus, RequestType
from app.models.request_group import RequestGroup
from app.models.user import EmailMode
from app.services.group_service import GroupService, GroupDay, check_consecutive
from app.services.request_service import RequestService
from tests.conftest import TODAY, in_window, make_user


def days(*offsets, request_type="REQ_DO"):
    return [GroupDay(in_window(o), request_type) for o in offsets]


class TestCreateGroup:
    """Creating group requests."""

    def test_create_group_one_row_per_day(self, test_db, manual_user):
        group = GroupService(test_db).create_group(
            manual_user.id, days(0, 1, 2), custom_message="Family event", current_date=TODAY
        )

        assert len(group.members) == 3
        assert [m.start_date for m in group.members] == [in_window(0), in_window(1), in_window(2)]
        for member in group.members:
            assert member.group_id == group.id
            assert member.start_date == member.end_date
            assert member.email_mode == EmailMode.MANUAL
            assert member.custom_message == "Family event"
            assert member.status == RequestStatus.PENDING
            assert not member.manual_email_confirmed

    def test_unordered_days_are_sorted(self, test_db, manual_user):
        group = GroupService(test_db).create_group(manual_user.id, days(2, 0, 1), current_date=TODAY)
        assert [m.start_date for m in group.members] == [in_window(0), in_window(1), in_window(2)]

    def test_group_of_one_allowed(self, test_db, manual_user):
        group = GroupService(test_db).create_group(manual_user.id, days(0), current_date=TODAY)
        assert len(group.members) == 1

    def test_per_day_types(self, test_db, manual_user):
        group = GroupService(test_db).create_group(
            manual_user.id,
            [
                GroupDay(in_window(0), "AM_OFF"),
                GroupDay(in_window(1), "FLIGHT", "tb9"),
                GroupDay(in_window(2), RequestType.DAY_OFF),
            ],
            current_date=TODAY
        )
        assert [m.type for m in group.members] == [RequestType.MORNING_OFF, RequestType.FLIGHT, RequestType.DAY_OFF]
        assert group.members[1].flight_number == "TB9"

    def test_empty_group_rejected(self, test_db, manual_user):
        with pytest.raises(GroupSizeError):
            GroupService(test_db).create_group(manual_user.id, [], current_date=TODAY)

    def test_too_many_days_rejected(self, test_db, manual_user):
        with pytest.raises(GroupSizeError):
            GroupService(test_db).create_group(manual_user.id, days(0, 1, 2, 3, 4), current_date=TODAY)

    def test_gap_rejected(self, test_db, manual_user):
        with pytest.raises(NonConsecutiveDatesError):
            GroupService(test_db).create_group(manual_user.id, days(0, 2), current_date=TODAY)
        assert test_db.query(Request).count() == 0

    def test_repeated_day_rejected(self, test_db, manual_user):
        with pytest.raises(NonConsecutiveDatesError):
            GroupService(test_db).create_group(manual_user.id, days(0, 0), current_date=TODAY)

    def test_any_day_outside_window_rejected(self, test_db, manual_user):
        with pytest.raises(AdvanceNoticeError):
            GroupService(test_db).create_group(manual_user.id, days(49, 50, 51), current_date=TODAY)

    def test_bad_flight_day_writes_nothing(self, test_db, manual_user):
        with pytest.raises(InvalidFlightNumberError):
            GroupService(test_db).create_group(
                manual_user.id,
                [GroupDay(in_window(0)), GroupDay(in_window(1), "FLIGHT", "XX1")],
                current_date=TODAY
            )
        assert test_db.query(Request).count() == 0
        assert test_db.query(RequestGroup).count() == 0

    def test_overlap_with_existing_request_writes_nothing(self, test_db, manual_user):
        RequestService(test_db).create_request(manual_user.id, in_window(2), None, "REQ_DO", current_date=TODAY)

        with pytest.raises(DuplicateRequestError) as exc_info:
            GroupService(test_db).create_group(manual_user.id, days(0, 1, 2), current_date=TODAY)
        assert exc_info.value.details["conflicting_dates"] == [in_window(2).isoformat()]
        assert test_db.query(Request).count() == 1

    def test_check_consecutive_accepts_single_day(self):
        check_consecutive([in_window(0)])


class TestGroupQueries:
    """Reading and deleting groups."""

    def test_fetch_group_ordered(self, test_db, manual_user):
        service = GroupService(test_db)
        group = service.create_group(manual_user.id, days(1, 0), current_date=TODAY)
        members = service.fetch_group(group.id, manual_user.id)
        assert [m.start_date for m in members] == [in_window(0), in_window(1)]

    def test_get_group_other_user(self, test_db, manual_user):
        service = GroupService(test_db)
        group = service.create_group(manual_user.id, days(0), current_date=TODAY)
        other = make_user(test_db)

        with pytest.raises(OwnershipError):
            service.get_group(group.id, other.id)
        with pytest.raises(ResourceNotFoundError):
            service.get_group("missing", manual_user.id)

    def test_group_details(self, test_db, manual_user):
        service = GroupService(test_db)
        group = service.create_group(manual_user.id, days(0, 1, 2), current_date=TODAY)
        group.members[0].manual_email_confirmed = True
        group.members[0].status = RequestStatus.APPROVED
        test_db.commit()

        details = service.get_group_details(group.members[2].id, manual_user.id)
        assert details["is_group"]
        assert details["group_id"] == group.id
        assert details["total_days"] == 3
        assert details["start_date"] == in_window(0)
        assert details["end_date"] == in_window(2)
        assert details["status_summary"] == {"pending": 2, "approved": 1, "denied": 0}
        assert details["email_status"] == {
            "all_sent": False,
            "none_sent": False,
            "partial_sent": True,
            "sent_count": 1,
            "total_count": 3
        }

    def test_group_details_of_single_request(self, test_db, manual_user):
        request = RequestService(test_db).create_request(
            manual_user.id, in_window(0), None, "REQ_DO", current_date=TODAY
        )
        details = GroupService(test_db).get_group_details(request.id, manual_user.id)
        assert not details["is_group"]
        assert details["total_days"] == 1
        assert details["email_status"] is None

    def test_delete_group(self, test_db, manual_user):
        service = GroupService(test_db)
        group = service.create_group(manual_user.id, days(0, 1), current_date=TODAY)
        member_ids = group.member_ids

        assert sorted(service.delete_group(group.id, manual_user.id)) == sorted(member_ids)
        assert test_db.query(Request).count() == 0
        assert test_db.query(RequestGroup).count() == 0

    def test_delete_group_blocked_by_one_member(self, test_db, manual_user):
        service = GroupService(test_db)
        group = service.create_group(manual_user.id, days(0, 1), current_date=TODAY)
        group.members[1].manual_email_confirmed = True
        test_db.commit()

        with pytest.raises(RequestNotEditableError) as exc_info:
            service.delete_group(group.id, manual_user.id)
        assert exc_info.value.details["request_ids"] == [group.members[1].id]
        assert test_db.query(Request).count() == 2
