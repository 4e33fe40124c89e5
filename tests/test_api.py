"""
API test suite for the Salesflow backend.
Covers contacts, sequence enrollment and processing, tasks, the error log,
call analysis, feedback, weights and one-click actions, plus HTTP error mapping.
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from starlette.testclient import TestClient

from salesflow.api import deps
from salesflow.api import app as app_module
from salesflow.api.app import app
from salesflow.agents.throughput_governor import ThroughputGovernor
from tests.helpers import FakeClock


@pytest.fixture
def api_clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def services(api_clock):
    """Fresh in-memory services per test, sending enabled."""
    configured = deps.configure(deps.build_services(
        in_memory=True, sending_enabled=True, clock=api_clock,
        governor=ThroughputGovernor(cap=5, clock=api_clock),
    ))
    yield configured
    deps.reset()


@pytest.fixture
def client():
    return TestClient(app)


def _create(client, **fields):
    payload = {"email": f"{fields.get('first_name', 'jane').lower()}@acme.test",
               "first_name": "Jane", "last_name": "Doe", "company": "Acme",
               "phone": "+15550100"}
    payload.update(fields)
    response = client.post("/api/contacts", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:

    def test_health_check(self, client):
        """GET /api/health reports sending state and throughput."""
        data = client.get("/api/health").json()
        assert data["status"] == "healthy"
        assert data["sending_enabled"] is True
        assert data["scheduler_running"] is False
        assert data["throughput"]["cap"] == 5

    def test_scheduler_runs_for_app_lifetime(self, monkeypatch):
        """With SALESFLOW_RUN_SCHEDULER the scheduler starts on startup and stops on shutdown."""
        monkeypatch.setattr(app_module, "RUN_SCHEDULER", True)
        with TestClient(app) as client:
            scheduler = app_module._scheduler
            assert client.get("/api/health").json()["scheduler_running"] is True
        assert scheduler.running is False
        assert app_module._scheduler is None

    def test_scheduler_off_by_default(self):
        with TestClient(app) as client:
            assert client.get("/api/health").json()["scheduler_running"] is False
        assert app_module._scheduler is None


# =============================================================================
# CONTACTS
# =============================================================================

class TestContacts:

    def test_create_and_get(self, client):
        created = _create(client, first_name="Ana", stage="prospect")
        assert created["stage"] == "prospect"
        assert created["enrollment"] is None
        fetched = client.get(f"/api/contacts/{created['id']}").json()
        assert fetched["email"] == "ana@acme.test"

    def test_create_with_sequence_enrolls(self, client):
        created = _create(client, sequence_id="cold_outreach")
        assert created["enrollment"]["sequence_id"] == "cold_outreach"
        assert created["active_enrollment_id"] == created["enrollment"]["id"]

    def test_create_rejects_unknown_stage(self, client):
        response = client.post("/api/contacts", json={"email": "x@acme.test", "stage": "hot"})
        assert response.status_code == 400

    def test_list_filters(self, client):
        _create(client, first_name="Ana", stage="lead")
        _create(client, first_name="Bob", stage="customer", phone="")
        assert len(client.get("/api/contacts").json()) == 2
        leads = client.get("/api/contacts", params={"stage": "lead"}).json()
        assert [c["first_name"] for c in leads] == ["Ana"]
        no_phone = client.get("/api/contacts", params={"has_phone": "false"}).json()
        assert [c["first_name"] for c in no_phone] == ["Bob"]

    def test_unknown_contact(self, client):
        assert client.get("/api/contacts/con_missing").status_code == 404

    def test_stage_update(self, client):
        contact = _create(client)
        response = client.patch(f"/api/contacts/{contact['id']}/stage",
                                json={"stage": "meeting_scheduled", "note": "booked"})
        assert response.status_code == 200
        assert response.json()["stage"] == "meeting_scheduled"
        log = client.get(f"/api/contacts/{contact['id']}/interactions").json()
        assert log[0]["type"] == "stage_changed"

    def test_opt_out_stops_enrollments(self, client):
        contact = _create(client, sequence_id="cold_outreach")
        data = client.post(f"/api/contacts/{contact['id']}/opt-out",
                           json={"reason": "asked by phone"}).json()
        assert data["opted_out"] is True
        assert data["opted_out_reason"] == "asked by phone"
        assert data["stopped_enrollments"] == [contact["enrollment"]["id"]]
        enrollments = client.get(f"/api/contacts/{contact['id']}/enrollments").json()
        assert enrollments[0]["status"] == "stopped"
        assert enrollments[0]["stopped_reason"] == "opted_out"

    def test_add_interaction(self, client):
        contact = _create(client)
        response = client.post(f"/api/contacts/{contact['id']}/interactions",
                               json={"type": "email_clicked", "channel": "email",
                                     "direction": "inbound"})
        assert response.status_code == 200
        assert client.get(f"/api/contacts/{contact['id']}").json()["emails_clicked"] == 1

    def test_interaction_for_unknown_contact(self, client):
        response = client.post("/api/contacts/con_missing/interactions", json={"type": "note"})
        assert response.status_code == 404


# =============================================================================
# SEQUENCES
# =============================================================================

class TestSequences:

    def test_catalogue(self, client):
        ids = [s["id"] for s in client.get("/api/sequences").json()]
        assert "cold_outreach" in ids
        assert client.get("/api/sequences/cold_outreach").json()["id"] == "cold_outreach"
        assert client.get("/api/sequences/nope").status_code == 404

    def test_enroll_idempotent_and_conflict(self, client):
        contact = _create(client)
        first = client.post("/api/sequences/enroll",
                            json={"contact_id": contact["id"], "sequence_id": "cold_outreach"})
        assert first.status_code == 200
        assert first.json()["already_enrolled"] is False

        again = client.post("/api/sequences/enroll",
                            json={"contact_id": contact["id"], "sequence_id": "cold_outreach"})
        assert again.json()["already_enrolled"] is True

        conflict = client.post("/api/sequences/enroll",
                               json={"contact_id": contact["id"],
                                     "sequence_id": "enterprise_outreach"})
        assert conflict.status_code == 409
        assert conflict.json()["enrollment_id"] == first.json()["enrollment"]["id"]

    def test_enroll_unknown_sequence(self, client):
        contact = _create(client)
        response = client.post("/api/sequences/enroll",
                               json={"contact_id": contact["id"], "sequence_id": "nope"})
        assert response.status_code == 404

    def test_bulk_enroll(self, client):
        a = _create(client, first_name="Ana")
        b = _create(client, first_name="Bob")
        data = client.post("/api/sequences/enroll/bulk",
                           json={"sequence_id": "cold_outreach",
                                 "contact_ids": [a["id"], b["id"], "con_missing"]}).json()
        assert data["added"] == 2
        assert data["failed"] == 1

    def test_process_dry_run(self, client, services):
        contact = _create(client, sequence_id="cold_outreach")
        dry = client.post("/api/sequences/process", json={"dry_run": True}).json()
        assert dry["mode"] == "dry_run"
        assert dry["emails_dry_run"] == 1
        assert len(services.dispatcher.outbox) == 0
        enrollment = client.get(
            f"/api/sequences/enrollments/{contact['enrollment']['id']}").json()
        assert enrollment["current_step_index"] == 1

    def test_process_send(self, client, services):
        _create(client, sequence_id="cold_outreach")
        sent = client.post("/api/sequences/process", json={"mode": "send"}).json()
        assert sent["emails_sent"] == 1
        assert services.dispatcher.outbox[0]["template_id"] == "seq_cold_1_intro"
        again = client.post("/api/sequences/process", json={"mode": "send"}).json()
        assert again["processed"] == 0

    def test_process_rejects_unknown_mode(self, client):
        response = client.post("/api/sequences/process", json={"mode": "blast"})
        assert response.status_code == 400

    def test_send_refused_when_disabled(self, client, services):
        services.engine.sending_enabled = False
        response = client.post("/api/sequences/process", json={"mode": "send"})
        assert response.status_code == 400
        held = client.post("/api/sequences/process", json={}).json()
        assert held["mode"] == "hold"

    def test_task_flow(self, client, services, api_clock):
        contact = _create(client, sequence_id="cold_outreach")
        client.post("/api/sequences/process", json={"mode": "send"})
        api_clock.advance(days=3)
        client.post("/api/sequences/process", json={"mode": "send"})
        api_clock.advance(days=4)
        result = client.post("/api/sequences/process", json={"mode": "send"}).json()
        assert result["tasks_created"] == 1

        tasks = client.get("/api/sequences/tasks", params={"status": "open"}).json()
        assert tasks[0]["contact_id"] == contact["id"]
        done = client.post(f"/api/sequences/tasks/{tasks[0]['id']}/complete").json()
        assert done["task"]["status"] == "done"
        assert done["resumed"] == 1
        assert done["completed"] == 0

        enrollment = client.get(
            f"/api/sequences/enrollments/{contact['enrollment']['id']}").json()
        assert enrollment["status"] == "active"

        stats = client.get("/api/sequences/stats").json()
        assert stats["tasks"]["done"] == 1

    def test_unknown_task(self, client):
        assert client.post("/api/sequences/tasks/task_missing/complete").status_code == 404

    def test_invalid_task_status(self, client):
        assert client.get("/api/sequences/tasks", params={"status": "later"}).status_code == 400

    def test_stop_enrollment(self, client):
        contact = _create(client, sequence_id="cold_outreach")
        enrollment_id = contact["enrollment"]["id"]
        stopped = client.post(f"/api/sequences/enrollments/{enrollment_id}/stop",
                              json={"reason": "replied"}).json()
        assert stopped["status"] == "stopped"
        assert stopped["stopped_reason"] == "replied"
        assert client.post("/api/sequences/enrollments/enr_missing/stop").status_code == 404

    def test_error_log(self, client, services):
        services.store.record_error({"phase": "sequence", "error_type": "DeliveryError",
                                     "error_message": "relay down", "severity": "warning"})
        errors = client.get("/api/sequences/errors", params={"phase": "sequence"}).json()
        assert errors[0]["error_message"] == "relay down"
        assert client.post(f"/api/sequences/errors/{errors[0]['id']}/resolve").status_code == 200
        assert client.get("/api/sequences/errors").json() == []
        assert client.post("/api/sequences/errors/999/resolve").status_code == 404


# =============================================================================
# CALLS
# =============================================================================

class TestCalls:

    def test_analyze(self, client):
        contact = _create(client, stage="proposal_sent")
        data = client.get(f"/api/calls/analyze/{contact['id']}").json()
        assert data["priority"] == "high"
        assert data["reasons"][0]["code"] == "proposal_sent"
        assert client.get("/api/calls/analyze/con_missing").status_code == 404

    def test_call_list(self, client):
        hot = _create(client, first_name="Hot", stage="proposal_sent")
        _create(client, first_name="Cold", stage="lead")
        data = client.get("/api/calls/list", params={"min_priority": "medium"}).json()
        assert data["total_analyzed"] == 2
        assert [c["contact_id"] for c in data["calls"]] == [hot["id"]]
        bad = client.get("/api/calls/list", params={"min_priority": "whenever"})
        assert bad.status_code == 400

    def test_recommendation(self, client):
        quiet = _create(client, first_name="Quiet")
        none = client.get(f"/api/calls/recommendation/{quiet['id']}").json()
        assert none["priority"] == "none"
        hot = _create(client, first_name="Hot", stage="proposal_sent")
        rec = client.get(f"/api/calls/recommendation/{hot['id']}").json()
        assert "call" in rec["actions"]
        top = client.get("/api/calls/top").json()
        assert top["recommendations"][0]["contact_id"] == hot["id"]

    def test_feedback_moves_weight(self, client):
        contact = _create(client)
        before = client.get("/api/calls/weights").json()["hot_lead"]
        response = client.post("/api/calls/feedback", json={
            "contact_id": contact["id"], "reason_code": "hot_lead", "outcome": "successful"})
        assert response.status_code == 200
        assert client.get("/api/calls/weights").json()["hot_lead"] == min(before + 2, 100)
        stats = client.get("/api/calls/learning-stats").json()
        assert stats["stats"]["total"] == 1

    def test_feedback_rejects_unknown_outcome(self, client):
        contact = _create(client)
        response = client.post("/api/calls/feedback", json={
            "contact_id": contact["id"], "reason_code": "hot_lead", "outcome": "maybe"})
        assert response.status_code == 400

    def test_set_and_reset_weights(self, client):
        data = client.put("/api/calls/weights", json={"weights": {"reactivation": 500}}).json()
        assert data["reactivation"] == 100
        assert client.put("/api/calls/weights", json={"weights": {}}).status_code == 400
        assert client.put("/api/calls/weights",
                          json={"weights": {"gut_feeling": 50}}).status_code == 400
        assert client.post("/api/calls/weights/reset").json()["reactivation"] == 30

    def test_outcome(self, client):
        contact = _create(client, stage="proposal_sent", sequence_id="cold_outreach")
        data = client.post(f"/api/calls/outcome/{contact['id']}",
                           json={"result": "not_interested", "duration": 40}).json()
        assert data["stage"] == "lost"
        enrollments = client.get(f"/api/contacts/{contact['id']}/enrollments").json()
        assert enrollments[0]["status"] == "stopped"
        bad = client.post(f"/api/calls/outcome/{contact['id']}", json={"result": "shrug"})
        assert bad.status_code == 400

    def test_one_click_actions(self, client, services):
        contact = _create(client, first_name="Lena")
        call = client.post(f"/api/calls/actions/call/{contact['id']}",
                           json={"agent_phone": "+15550000"}).json()
        assert call["success"] is True
        sms = client.post(f"/api/calls/actions/sms/{contact['id']}",
                          json={"message": "Running late"}).json()
        assert sms["sent"] is True
        both = client.post(f"/api/calls/actions/sms-then-call/{contact['id']}").json()
        assert both["call"]["success"] is True
        task = client.post(f"/api/calls/actions/task/{contact['id']}", json={}).json()
        assert task["title"] == "Call: Acme"
        kinds = [entry["kind"] for entry in services.dispatcher.outbox]
        assert kinds.count("sms") == 2

    def test_call_without_phone(self, client):
        contact = _create(client, phone="")
        response = client.post(f"/api/calls/actions/call/{contact['id']}")
        assert response.status_code == 400

    def test_call_tasks(self, client):
        _create(client, first_name="Hot", stage="proposal_sent", company="Initech")
        _create(client, first_name="Cold", stage="lead")
        data = client.post("/api/calls/call-tasks", json={}).json()
        assert data["created"] == 1
        titles = [t["title"] for t in client.get("/api/sequences/tasks").json()]
        assert titles == ["Call: Initech"]
