"""
Unit tests for one-click call actions and call outcome handling.
"""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from salesflow.agents.call_actions import action_endpoints
from salesflow.db.entities import DEFAULT_WEIGHTS
from salesflow.errors import NotFound


def _types(services, contact_id):
    return [i.type for i in services.store.get_interactions(contact_id)]


class TestRecommendations:

    def test_no_recommendation_without_signals(self, services, new_contact):
        contact = new_contact(services.store)
        assert services.actions.get_recommendation_with_actions(contact.id) is None

    def test_recommendation_carries_actions(self, services, new_contact):
        contact = new_contact(services.store, stage="contacted", emails_clicked=1)
        rec = services.actions.get_recommendation_with_actions(contact.id)
        assert rec["priority"] == "urgent"
        assert rec["reason_codes"] == ["hot_lead"]
        assert rec["actions"] == action_endpoints(contact.id)
        assert rec["actions"]["call"]["endpoint"] == f"/api/calls/actions/call/{contact.id}"

    def test_top_recommendations_are_medium_or_better(self, services, new_contact, clock):
        hot = new_contact(services.store, stage="contacted", emails_clicked=1)
        new_contact(services.store, stage="lost",
                    last_contact_at=clock.now - timedelta(days=90))
        top = services.actions.get_top_recommendations(limit=5)
        assert top["count"] == 2
        assert top["recommendations"][0]["contact_id"] == hot.id


class TestOneClickActions:

    def test_initiate_call(self, services, new_contact):
        contact = new_contact(services.store, mobile="+15550177")
        result = services.actions.initiate_call(contact.id, agent_phone="+15550000")
        assert result["success"] is True
        assert "call_initiated" in _types(services, contact.id)
        call = [o for o in services.dispatcher.outbox if o["kind"] == "call"][0]
        assert call["to"] == "+15550177"

    def test_call_needs_phone(self, services, new_contact):
        contact = new_contact(services.store, phone="")
        with pytest.raises(ValueError):
            services.actions.initiate_call(contact.id)
        with pytest.raises(NotFound):
            services.actions.initiate_call("con_missing")

    def test_send_sms(self, services, new_contact):
        contact = new_contact(services.store)
        assert services.actions.send_sms(contact.id, "See you at 3")["sent"] is True
        assert "sms_sent" in _types(services, contact.id)
        with pytest.raises(ValueError):
            services.actions.send_sms(contact.id, "   ")

    def test_sms_then_call(self, services, new_contact):
        contact = new_contact(services.store, first_name="Lena")
        result = services.actions.sms_then_call(contact.id)
        assert result["sms"]["sent"] is True
        assert result["call"]["success"] is True
        sms = [o for o in services.dispatcher.outbox if o["kind"] == "sms"][0]
        assert sms["message"].startswith("Hi Lena")

    def test_create_call_task(self, services, new_contact):
        contact = new_contact(services.store, company="Globex")
        task = services.actions.create_call_task(contact.id)
        assert task.title == "Call: Globex"
        assert task.enrollment_id is None
        assert services.store.get_task(task.id).status == "open"

    def test_create_call_tasks_for_urgent_and_high(self, services, new_contact):
        urgent = new_contact(services.store, stage="contacted", emails_clicked=1, company="Initech")
        high = new_contact(services.store, stage="proposal_sent")
        new_contact(services.store, stage="lead")
        call_list = services.scorer.generate_call_list()
        result = services.actions.create_call_tasks(call_list)
        assert result["created"] == 2
        assert result["contact_ids"] == [urgent.id, high.id]
        titles = [t["title"] for t in services.engine.list_tasks(status="open")]
        assert "URGENT: Call: Initech" in titles


class TestOutcomes:

    def test_update_stage(self, services, new_contact):
        contact = new_contact(services.store)
        updated = services.actions.update_stage(contact.id, "prospect", "qualified on call")
        assert updated.stage == "prospect"
        log = services.store.get_interactions(contact.id)
        assert log[0].type == "stage_changed"
        assert log[0].data == {"from": "lead", "to": "prospect", "note": "qualified on call"}

    def test_update_stage_rejects_unknown(self, services, new_contact):
        contact = new_contact(services.store)
        with pytest.raises(ValueError):
            services.actions.update_stage(contact.id, "hot")

    def test_lost_stops_sequences(self, services, new_contact):
        contact = new_contact(services.store)
        enrollment = services.engine.enroll(contact.id, "cold_outreach").enrollment
        services.actions.update_stage(contact.id, "lost")
        stopped = services.store.get_enrollment(enrollment.id)
        assert stopped.status == "stopped"
        assert stopped.stopped_reason == "lost"

    def test_successful_call_feeds_top_reason(self, services, new_contact):
        contact = new_contact(services.store, stage="proposal_sent")
        result = services.actions.record_call_outcome(contact.id, "successful", duration=120)
        assert result["feedback"]["reason_code"] == "proposal_sent"
        assert result["stage"] is None
        assert services.weights.get("proposal_sent") == DEFAULT_WEIGHTS["proposal_sent"] + 2

    def test_not_interested_marks_lost(self, services, new_contact):
        contact = new_contact(services.store, stage="proposal_sent")
        services.engine.enroll(contact.id, "cold_outreach")
        result = services.actions.record_call_outcome(contact.id, "not_interested")
        assert result["stage"] == "lost"
        assert services.store.get_contact(contact.id).stage == "lost"
        assert services.weights.get("proposal_sent") == DEFAULT_WEIGHTS["proposal_sent"] - 3
        assert services.store.list_enrollments(contact_id=contact.id)[0].status == "stopped"

    def test_meeting_scheduled_moves_stage_without_feedback(self, services, new_contact):
        contact = new_contact(services.store, stage="proposal_sent")
        result = services.actions.record_call_outcome(contact.id, "meeting_scheduled")
        assert result["feedback"] is None
        assert services.store.get_contact(contact.id).stage == "meeting_scheduled"
        assert services.store.list_feedback() == []

    def test_outcome_without_reason_skips_feedback(self, services, new_contact):
        contact = new_contact(services.store, stage="lead")
        result = services.actions.record_call_outcome(contact.id, "successful")
        assert result["success"] is True
        assert result["feedback"] is None

    def test_unknown_result(self, services, new_contact):
        contact = new_contact(services.store)
        with pytest.raises(ValueError):
            services.actions.record_call_outcome(contact.id, "voicemail_full")
        with pytest.raises(NotFound):
            services.actions.record_call_outcome("con_missing", "successful")
