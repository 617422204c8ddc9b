"""Integration tests for the HTTP API."""
import pytest
from datetime import date, timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.database import Base, get_db
from app.api.deps import get_transport_factory
from app.models.user import EmailMode
from tests.conftest import FakeMailTransport, inbound, make_user


def day(offset: int = 0) -> date:
    return date.today() + timedelta(days=70 + offset)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def mail():
    return FakeMailTransport()


@pytest.fixture
def client(session_factory, mail):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_transport_factory] = lambda: (lambda user: mail)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def manual_headers(session_factory):
    db = session_factory()
    try:
        return {"X-User-Id": make_user(db, EmailMode.MANUAL).id}
    finally:
        db.close()


@pytest.fixture
def automatic_headers(session_factory):
    db = session_factory()
    try:
        return {"X-User-Id": make_user(db, EmailMode.AUTOMATIC, token="token-1").id}
    finally:
        db.close()


class TestAuthentication:
    def test_missing_user_header(self, client):
        assert client.get("/api/requests").status_code == 401

    def test_unknown_user(self, client):
        assert client.get("/api/requests", headers={"X-User-Id": "nobody"}).status_code == 401

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestRequestRoutes:
    """Request lifecycle over HTTP."""

    def test_create_manual_request(self, client, manual_headers):
        response = client.post(
            "/api/requests",
            json={"start_date": day().isoformat(), "type": "REQ_DO"},
            headers=manual_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["request"]["status"] == "PENDING"
        assert data["request"]["email_mode"] == "manual"
        assert data["email"]["mode"] == "manual"
        assert data["email"]["email_content"]["to"] == "scheduling@example.com"

    def test_create_automatic_request_sends(self, client, automatic_headers, mail):
        response = client.post(
            "/api/requests",
            json={"start_date": day().isoformat(), "type": "FLIGHT", "flight_number": "tb12"},
            headers=automatic_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["email"]["sent"]
        assert data["request"]["email_sent"]
        assert data["request"]["thread_id"] == "thread-1"
        assert "REQ FLIGHT TB12" in mail.sent[0]["body"]

    def test_send_failure_still_creates_request(self, client, automatic_headers, mail):
        mail.fail_with = RuntimeError("smtp down")
        response = client.post(
            "/api/requests",
            json={"start_date": day().isoformat(), "type": "REQ_DO"},
            headers=automatic_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["email"]["failed"]
        assert data["request"]["email_failed"]
        assert data["request"]["email_failure_count"] == 1

    def test_validation_error_envelope(self, client, manual_headers):
        response = client.post(
            "/api/requests",
            json={"start_date": date.today().isoformat(), "type": "REQ_DO"},
            headers=manual_headers
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "OUTSIDE_ADVANCE_WINDOW"

    def test_malformed_body(self, client, manual_headers):
        response = client.post("/api/requests", json={"type": "REQ_DO"}, headers=manual_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_list_get_and_stats(self, client, manual_headers):
        created = client.post(
            "/api/requests", json={"start_date": day().isoformat(), "type": "REQ_DO"}, headers=manual_headers
        ).json()["request"]

        listing = client.get("/api/requests", headers=manual_headers).json()
        assert listing["count"] == 1
        assert client.get(f"/api/requests/{created['id']}", headers=manual_headers).json()["id"] == created["id"]
        assert client.get("/api/requests/stats", headers=manual_headers).json() == {
            "pending": 1, "approved": 0, "denied": 0, "total": 1
        }

    def test_other_users_request_not_found(self, client, manual_headers, automatic_headers):
        created = client.post(
            "/api/requests", json={"start_date": day().isoformat(), "type": "REQ_DO"}, headers=manual_headers
        ).json()["request"]

        response = client.get(f"/api/requests/{created['id']}", headers=automatic_headers)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Request not found."

    def test_conflicts(self, client, manual_headers):
        client.post("/api/requests", json={"start_date": day(1).isoformat(), "type": "REQ_DO"}, headers=manual_headers)

        response = client.get(
            "/api/requests/conflicts",
            params={"start_date": day(0).isoformat(), "end_date": day(2).isoformat()},
            headers=manual_headers
        )
        assert response.json() == {"conflicts": [day(1).isoformat()], "has_conflicts": True}

    def test_update_and_delete(self, client, manual_headers):
        created = client.post(
            "/api/requests", json={"start_date": day().isoformat(), "type": "REQ_DO"}, headers=manual_headers
        ).json()["request"]

        updated = client.put(
            f"/api/requests/{created['id']}", json={"custom_message": "Wedding"}, headers=manual_headers
        )
        assert updated.status_code == 200
        assert updated.json()["custom_message"] == "Wedding"
        content = client.get(f"/api/requests/{created['id']}/email-content", headers=manual_headers).json()
        assert "Wedding" in content["email_content"]["body"]

        deleted = client.delete(f"/api/requests/{created['id']}", headers=manual_headers)
        assert deleted.json() == {"deleted_ids": [created["id"]], "deleted_count": 1}


class TestGroupAndStatusRoutes:
    """Group creation, confirmation and status over HTTP."""

    def create_group(self, client, headers, count=3):
        return client.post(
            "/api/requests/group",
            json={"dates": [{"day": day(i).isoformat()} for i in range(count)], "custom_message": "Family"},
            headers=headers
        )

    def test_group_confirm_and_approve(self, client, manual_headers):
        response = self.create_group(client, manual_headers)
        assert response.status_code == 201
        data = response.json()
        ids = [r["id"] for r in data["requests"]]
        assert len(ids) == 3

        blocked = client.put(f"/api/requests/{ids[0]}/status", json={"status": "APPROVED"}, headers=manual_headers)
        assert blocked.status_code == 409
        assert blocked.json()["error"]["code"] == "EMAIL_NOT_DISPATCHED"

        confirmed = client.post(f"/api/requests/{ids[1]}/confirm-sent", headers=manual_headers).json()
        assert confirmed["updated_count"] == 3

        again = client.post(f"/api/requests/{ids[1]}/confirm-sent", headers=manual_headers)
        assert again.status_code == 409

        approved = client.put(
            f"/api/requests/{ids[0]}/status",
            json={"status": "APPROVED", "apply_to_group": True},
            headers=manual_headers
        ).json()
        assert approved["updated_count"] == 3

        details = client.get(f"/api/requests/{ids[2]}/group-details", headers=manual_headers).json()
        assert details["total_days"] == 3
        assert details["status_summary"] == {"pending": 0, "approved": 3, "denied": 0}

    def test_group_view_and_delete(self, client, manual_headers):
        group_id = self.create_group(client, manual_headers, count=2).json()["group_id"]

        group = client.get(f"/api/requests/group/{group_id}", headers=manual_headers).json()
        assert len(group["requests"]) == 2
        assert group["email_status"]["none_sent"]

        deleted = client.delete(f"/api/requests/group/{group_id}", headers=manual_headers).json()
        assert deleted["deleted_count"] == 2

    def test_non_consecutive_group_rejected(self, client, manual_headers):
        response = client.post(
            "/api/requests/group",
            json={"dates": [{"day": day(0).isoformat()}, {"day": day(2).isoformat()}]},
            headers=manual_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NON_CONSECUTIVE_DATES"

    def test_email_routes_respect_mode(self, client, manual_headers):
        request_id = client.post(
            "/api/requests", json={"start_date": day().isoformat(), "type": "REQ_DO"}, headers=manual_headers
        ).json()["request"]["id"]

        assert client.post(f"/api/requests/{request_id}/resend-email", headers=manual_headers).status_code == 400
        content = client.get(f"/api/requests/{request_id}/email-content", headers=manual_headers).json()
        assert content["email_content"]["body"].startswith("Dear,")
        status = client.get(f"/api/requests/{request_id}/email-status", headers=manual_headers).json()
        assert status["status"] == "pending"

    def test_reset_delivery_state(self, client, automatic_headers):
        request_id = client.post(
            "/api/requests", json={"start_date": day().isoformat(), "type": "REQ_DO"}, headers=automatic_headers
        ).json()["request"]["id"]

        client.post(f"/api/requests/{request_id}/reset-delivery-state", headers=automatic_headers)
        status = client.get(f"/api/requests/{request_id}/email-status", headers=automatic_headers).json()
        assert status["status"] == "pending"
        assert not status["sent"]


class TestReplyRoutes:
    """Reply checking and processing over HTTP."""

    def test_check_process_and_respond(self, client, automatic_headers, mail):
        request_id = client.post(
            "/api/requests", json={"start_date": day().isoformat(), "type": "REQ_DO"}, headers=automatic_headers
        ).json()["request"]["id"]
        mail.add_messages("thread-1", inbound("m-1", "thread-1", body="Approved.\n> quoted"))

        checked = client.post("/api/replies/check", headers=automatic_headers).json()
        assert checked["new_replies_count"] == 1
        reply_id = checked["new_replies"][0]["id"]
        assert client.get("/api/replies/count", headers=automatic_headers).json() == {"count": 1}

        view = client.get(f"/api/replies/{reply_id}/approval-view", headers=automatic_headers).json()
        assert view["kind"] == "single"
        assert view["actions"] == ["DENIED", "PENDING", "APPROVED"]

        processed = client.put(
            f"/api/replies/{reply_id}/process", json={"status": "APPROVED"}, headers=automatic_headers
        ).json()
        assert processed["updated_requests"] == [{"id": request_id, "status": "APPROVED"}]

        answered = client.post(
            f"/api/replies/{reply_id}/respond", json={"message": "Thank you"}, headers=automatic_headers
        )
        assert answered.status_code == 200
        assert mail.sent[-1]["thread_id"] == "thread-1"

        conversation = client.get(f"/api/replies/{reply_id}/conversation", headers=automatic_headers).json()
        assert [m["role"] for m in conversation["messages"]] == ["user", "manager"]
        assert conversation["messages"][1]["content"] == "Approved."

    def test_group_reply_individual_decisions(self, client, automatic_headers, mail):
        created = client.post(
            "/api/requests/group",
            json={"dates": [{"day": day(0).isoformat()}, {"day": day(1).isoformat()}]},
            headers=automatic_headers
        ).json()
        first, second = [r["id"] for r in created["requests"]]
        mail.add_messages("thread-1", inbound("m-1", "thread-1"))
        reply_id = client.post("/api/replies/check", headers=automatic_headers).json()["new_replies"][0]["id"]

        view = client.get(f"/api/replies/{reply_id}/approval-view", headers=automatic_headers).json()
        assert view["kind"] == "group"
        assert [d["request_id"] for d in view["days"]] == [first, second]

        result = client.put(
            f"/api/replies/{reply_id}/process-individual",
            json={"request_statuses": [
                {"request_id": first, "status": "APPROVED"},
                {"request_id": second, "status": "DENIED"}
            ]},
            headers=automatic_headers
        ).json()
        assert result["updated_count"] == 2

        statuses = {
            r["id"]: r["status"]
            for r in client.get("/api/requests", headers=automatic_headers).json()["requests"]
        }
        assert statuses == {first: "APPROVED", second: "DENIED"}
        assert client.get("/api/replies", params={"processed": "true"}, headers=automatic_headers).json()["count"] == 1


class TestUserRoutes:
    def test_me_and_preference(self, client, manual_headers):
        me = client.get("/api/users/me", headers=manual_headers).json()
        assert me["email_preference"] == "manual"
        assert not me["can_send_emails"]

        updated = client.put(
            "/api/users/me/email-preference", json={"email_preference": "automatic"}, headers=manual_headers
        ).json()
        assert updated["email_preference"] == "automatic"

    def test_invalid_preference(self, client, manual_headers):
        response = client.put(
            "/api/users/me/email-preference", json={"email_preference": "fax"}, headers=manual_headers
        )
        assert response.status_code == 400


class TestStartupChecks:
    def test_default_templates_have_required_placeholders(self):
        from main import check_email_templates
        assert check_email_templates() is True

    def test_missing_placeholder_reported(self):
        from unittest.mock import patch
        from main import check_email_templates
        from app.services.template_renderer import EmailTemplate

        broken = EmailTemplate(subject="{CODE} request", body="{REQUEST_LINES}")
        with patch('main.request_email_template', return_value=broken):
            assert check_email_templates() is False
