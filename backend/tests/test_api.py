"""
Tests for the compliance and scheduler API routes (via TestClient).

Lifespan is not entered, so the Postgres init_db never runs; every
session comes from the in-memory SQLite fixtures.
"""
import inspect
import pytest
from datetime import timedelta
from uuid import uuid4

from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from compliance_engine import config as engine_config
from compliance_engine.database import get_db
from compliance_engine.main import app
from compliance_engine.routers import compliance, scheduler
from compliance_engine.services.compliance import ComplianceService, ComplianceSweep
from compliance_engine.services.compliance.clock import utcnow
from compliance_engine.services.compliance.dispatcher import Dispatcher


@pytest.fixture
def client(session_factory, config, annual_report_rules):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def override_service(db: Session = Depends(get_db)):
        return ComplianceService(db, annual_report_rules, config, session_factory)

    def override_sweep():
        return ComplianceSweep(
            session_factory=session_factory,
            rules_provider=annual_report_rules,
            config=config,
            dispatcher_factory=lambda db: Dispatcher(db, config=config),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[compliance.get_compliance_service] = override_service
    app.dependency_overrides[scheduler.get_sweep] = override_sweep
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def entity(make_entity):
    """Annual report (formation + 365 days) falls due in ten days."""
    today = utcnow().date()
    return make_entity(formation_date=today - timedelta(days=355))


# =============================================================================
# TEST: QUERIES
# =============================================================================

class TestQueries:

    def test_upcoming(self, client, entity):
        response = client.get(f"/compliance/entities/{entity.id}/upcoming")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        event = data["events"][0]
        assert event["event_type"] == "annual_report"
        assert event["status"] == "due_soon"
        assert event["days_until_due"] == 10
        assert event["recurrence"] == {"interval_unit": "year", "interval_count": 1}

    def test_upcoming_window_excludes_later_events(self, client, entity):
        response = client.get(f"/compliance/entities/{entity.id}/upcoming", params={"within_days": 5})

        assert response.json()["count"] == 0

    def test_overdue_empty(self, client, entity):
        response = client.get(f"/compliance/entities/{entity.id}/overdue")

        assert response.status_code == 200
        assert response.json()["count"] == 0

    def test_dashboard(self, client, entity):
        response = client.get(f"/compliance/entities/{entity.id}/dashboard")

        assert response.status_code == 200
        data = response.json()
        assert data["entity_name"] == "Acme LLC"
        assert data["counts"]["due_soon"] == 1
        assert data["total_events"] == 1
        # HIGH weight 1.2 x 60, plus 20 days inside the 30-day window
        assert data["upcoming"][0]["priority_score"] == 92
        assert data["upcoming"][0]["urgency"] == "within_hour"
        assert data["overdue"] == []

    def test_unknown_entity(self, client):
        missing = str(uuid4())

        assert client.get(f"/compliance/entities/{missing}/upcoming").status_code == 404
        assert client.get(f"/compliance/entities/{missing}/dashboard").status_code == 404


# =============================================================================
# TEST: COMMANDS
# =============================================================================

class TestCommands:

    def test_materialize(self, client, entity):
        response = client.post(f"/compliance/entities/{entity.id}/materialize", json={"look_ahead_days": 30})

        assert response.status_code == 200
        assert response.json()["created"] == 1

        repeat = client.post(f"/compliance/entities/{entity.id}/materialize", json={})
        assert repeat.json()["created"] == 0

    def test_complete_then_conflict(self, client, entity):
        event_id = client.get(f"/compliance/entities/{entity.id}/upcoming").json()["events"][0]["id"]

        response = client.post(f"/compliance/events/{event_id}/complete", json={"by": "user-1"})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["completed_by"] == "user-1"

        again = client.post(f"/compliance/events/{event_id}/complete", json={"by": "user-1"})
        assert again.status_code == 409

    def test_waive_requires_reason(self, client, entity):
        event_id = client.get(f"/compliance/entities/{entity.id}/upcoming").json()["events"][0]["id"]

        response = client.post(f"/compliance/events/{event_id}/waive", json={"by": "admin-1", "reason": ""})

        assert response.status_code == 422

    def test_waive(self, client, entity):
        event_id = client.get(f"/compliance/entities/{entity.id}/upcoming").json()["events"][0]["id"]

        response = client.post(f"/compliance/events/{event_id}/waive",
                               json={"by": "admin-1", "reason": "Dissolution in progress"})

        assert response.status_code == 200
        assert response.json()["status"] == "waived"
        assert response.json()["waived_reason"] == "Dissolution in progress"

    def test_unknown_event(self, client):
        response = client.post(f"/compliance/events/{uuid4()}/complete", json={"by": "user-1"})

        assert response.status_code == 404

    def test_unknown_notification_record(self, client):
        response = client.post(f"/compliance/notifications/{uuid4()}/interactions",
                               json={"interaction": "opened"})

        assert response.status_code == 404


# =============================================================================
# TEST: IN-APP INBOX
# =============================================================================

class TestInboxRoutes:

    @pytest.fixture
    def delivered(self, client, entity):
        """One sweep: the due-soon annual report lands in user-1's inbox."""
        response = client.post("/internal/sweep", headers={"X-Internal-Key": engine_config.INTERNAL_API_KEY})
        assert response.json()["notifications_sent"] == 1
        return client.get("/compliance/users/user-1/notifications").json()["notifications"][0]

    def test_list(self, client, delivered):
        response = client.get("/compliance/users/user-1/notifications", params={"unread_only": True})

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert delivered["priority_level"] == "critical"
        assert delivered["is_read"] is False
        assert client.get("/compliance/users/user-2/notifications").json()["count"] == 0

    def test_limit_is_bounded(self, client):
        response = client.get("/compliance/users/user-1/notifications", params={"limit": 500})

        assert response.status_code == 422

    def test_mark_read(self, client, delivered):
        response = client.post(f"/compliance/users/user-1/notifications/{delivered['id']}/read")

        assert response.status_code == 200
        assert response.json()["is_read"] is True
        unread = client.get("/compliance/users/user-1/notifications", params={"unread_only": True})
        assert unread.json()["count"] == 0

    def test_mark_read_other_user(self, client, delivered):
        response = client.post(f"/compliance/users/user-2/notifications/{delivered['id']}/read")

        assert response.status_code == 404

    def test_mark_all_read(self, client, delivered):
        response = client.post("/compliance/users/user-1/notifications/read-all")

        assert response.json() == {"user_id": "user-1", "marked_read": 1}
        again = client.post("/compliance/users/user-1/notifications/read-all")
        assert again.json()["marked_read"] == 0

    def test_stats(self, client, delivered):
        client.post(f"/compliance/users/user-1/notifications/{delivered['id']}/read")

        response = client.get("/compliance/users/user-1/notifications/stats")

        assert response.status_code == 200
        stats = response.json()
        assert stats["deliveries"]["by_channel"]["in_app"] == 1
        # Email is on by default but no sender is configured in tests
        assert stats["deliveries"]["by_outcome"]["failed"] == 1
        assert stats["inbox"]["total"] == 1
        assert stats["inbox"]["read_rate"] == 1.0
        assert stats["inbox"]["category_breakdown"] == {"state_filing": 1}
        assert stats["interactions"]["opened"] == 1
        assert stats["rate_limit"]["limit"] == 10


# =============================================================================
# TEST: INTERNAL SCHEDULER ENDPOINTS
# =============================================================================

class TestSchedulerRoutes:

    def test_sweep_route_runs_in_threadpool(self):
        assert not inspect.iscoroutinefunction(scheduler.run_sweep)

    def test_missing_key(self, client):
        assert client.post("/internal/sweep").status_code == 422

    def test_wrong_key(self, client):
        response = client.post("/internal/sweep", headers={"X-Internal-Key": "nope"})

        assert response.status_code == 403

    def test_sweep_and_run_lookup(self, client, entity):
        headers = {"X-Internal-Key": engine_config.INTERNAL_API_KEY}

        response = client.post("/internal/sweep", headers=headers)

        assert response.status_code == 200
        summary = response.json()
        assert summary["status"] == "completed"
        assert summary["events_created"] == 1
        assert summary["events_transitioned"] == 1
        assert summary["notifications_sent"] == 1

        run = client.get(f"/internal/sweep-runs/{summary['run_id']}", headers=headers)
        assert run.status_code == 200
        assert run.json()["status"] == "completed"

        deadlines = client.get("/internal/deadlines", params={"days_ahead": 14}, headers=headers)
        assert deadlines.json()["count"] == 1

    def test_resume_unknown_run(self, client):
        headers = {"X-Internal-Key": engine_config.INTERNAL_API_KEY}

        response = client.post("/internal/sweep", json={"resume_run_id": str(uuid4())}, headers=headers)

        assert response.status_code == 404
