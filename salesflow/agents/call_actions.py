"""
Salesflow - One-Click Call Actions
Turns a call recommendation into work: place the call, text first, open a
call task, and record how it went so the weights learn from it.
"""

from datetime import datetime
from typing import Callable, Optional

from salesflow.agents.call_scorer import CallScorer, describe_reason
from salesflow.agents.error_handler import log_pipeline_error
from salesflow.agents.feedback_tracker import FeedbackTracker
from salesflow.config import SEQUENCE_SENDER_NAME
from salesflow.db.entities import (
    Interaction, Outcome, Priority, Stage, Task, TaskStatus, to_iso, utcnow,
    validate_choice,
)
from salesflow.errors import NotFound
from salesflow.logging_config import get_agent_logger

logger = get_agent_logger("call_actions")

# Call results that move the pipeline; anything else leaves the stage alone
STAGE_FOR_RESULT = {
    "meeting_scheduled": Stage.MEETING_SCHEDULED.value,
    "interested": Stage.CONTACTED.value,
    "callback": Stage.CONTACTED.value,
    Outcome.NOT_INTERESTED.value: Stage.LOST.value,
}
CALL_RESULTS = set(STAGE_FOR_RESULT) | {o.value for o in Outcome}
TASK_PRIORITIES = {Priority.URGENT.value, Priority.HIGH.value}


def action_endpoints(contact_id: str) -> dict:
    return {
        "call": {"label": "Call now",
                 "endpoint": f"/api/calls/actions/call/{contact_id}"},
        "sms_then_call": {"label": "Text, then call",
                          "endpoint": f"/api/calls/actions/sms-then-call/{contact_id}"},
        "create_task": {"label": "Create call task",
                        "endpoint": f"/api/calls/actions/task/{contact_id}"},
        "feedback": {"label": "Record outcome",
                     "endpoint": f"/api/calls/outcome/{contact_id}"},
    }


class CallActions:

    def __init__(self, store, scorer: CallScorer, tracker: FeedbackTracker, dispatcher,
                 sequence_engine=None, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.scorer = scorer
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.sequence_engine = sequence_engine
        self.clock = clock

    def _reachable_contact(self, contact_id: str):
        contact = self.store.get_contact(contact_id)
        if not contact:
            raise NotFound(f"Contact {contact_id} not found")
        if not contact.has_phone:
            raise ValueError(f"Contact {contact_id} has no phone number")
        return contact

    def _log(self, contact_id: str, type_: str, channel: str, data: dict):
        self.store.append_interaction(contact_id, Interaction(
            contact_id=contact_id, type=type_, channel=channel,
            direction="outbound", timestamp=self.clock(), data=data,
        ))

    # ─── RECOMMENDATIONS ─────────────────────────────────────

    def get_recommendation_with_actions(self, contact_id: str) -> Optional[dict]:
        """Analysis plus one-click endpoints; None when no call is recommended."""
        analysis = self.scorer.analyze(contact_id)
        if analysis.priority == Priority.NONE.value:
            return None
        contact = self.store.get_contact(contact_id)
        return {
            "contact_id": contact_id,
            "name": contact.full_name,
            "company": contact.company,
            "phone": analysis.phone,
            "email": contact.email,
            "priority": analysis.priority,
            "score": analysis.score,
            "recommendation": analysis.recommendation,
            "reasons": [describe_reason(r) for r in analysis.reasons],
            "reason_codes": [r.code for r in analysis.reasons],
            "best_time": analysis.best_time_to_call,
            "last_contact": to_iso(analysis.last_contact),
            "actions": action_endpoints(contact_id),
        }

    def get_top_recommendations(self, limit: int = 5) -> dict:
        ranked = self.scorer.rank(min_priority=Priority.MEDIUM.value, limit=limit)
        recommendations = []
        for analysis in ranked:
            rec = self.get_recommendation_with_actions(analysis.contact_id)
            if rec:
                recommendations.append(rec)
        return {
            "date": to_iso(self.clock()),
            "count": len(recommendations),
            "recommendations": recommendations,
        }

    # ─── ONE-CLICK ACTIONS ───────────────────────────────────

    def initiate_call(self, contact_id: str, agent_phone: str = None) -> dict:
        contact = self._reachable_contact(contact_id)
        result = self.dispatcher.place_call(contact, agent_phone)
        if result.get("success"):
            self._log(contact_id, "call_initiated", "phone",
                      {"call_id": result.get("call_id"), "to": contact.call_number})
            logger.info("Call started to %s", contact.call_number,
                        extra={"contact_id": contact_id})
        return result

    def send_sms(self, contact_id: str, message: str) -> dict:
        contact = self._reachable_contact(contact_id)
        if not message or not message.strip():
            raise ValueError("SMS message is empty")
        result = self.dispatcher.send_sms(contact, message)
        if result.get("sent"):
            self._log(contact_id, "sms_sent", "sms",
                      {"message": message, "to": contact.call_number,
                       "provider_id": result.get("provider_id")})
        return result

    def sms_then_call(self, contact_id: str, agent_phone: str = None) -> dict:
        contact = self._reachable_contact(contact_id)
        greeting = f"Hi {contact.first_name}" if contact.first_name else "Hi"
        text = (f"{greeting}, this is {SEQUENCE_SENDER_NAME}. "
                "I'll give you a quick call in a moment. Is now a good time?")
        sms = self.send_sms(contact_id, text)
        call = self.initiate_call(contact_id, agent_phone)
        return {"sms": sms, "call": call}

    def create_call_task(self, contact_id: str, title: str = None,
                         description: str = "") -> Task:
        """Open a standalone call task (no enrollment waits on it)."""
        contact = self._reachable_contact(contact_id)
        title = title or f"Call: {contact.company or contact.full_name}"
        task_id = self.dispatcher.create_task(contact, title, description)
        task = Task(id=task_id, contact_id=contact_id, title=title,
                    description=description, status=TaskStatus.OPEN.value,
                    created_at=self.clock())
        return self.store.save_task(task)

    def create_call_tasks(self, call_list: dict) -> dict:
        """Open a task for every urgent or high call in a generated call list."""
        created = []
        for call in call_list.get("calls", []):
            if call.get("priority") not in TASK_PRIORITIES:
                continue
            prefix = "URGENT: " if call["priority"] == Priority.URGENT.value else ""
            description = "\n".join(
                [f"Phone: {call.get('phone')}", f"Email: {call.get('email')}",
                 f"Stage: {call.get('stage')}",
                 f"Priority: {call['priority']} (score {call.get('score')})",
                 "Reasons:"]
                + [f"- {r}" for r in call.get("reasons", [])]
                + [f"Best time: {call.get('best_time')}"]
            )
            try:
                self.create_call_task(
                    call["contact_id"],
                    title=f"{prefix}Call: {call.get('company') or call.get('name')}",
                    description=description,
                )
            except Exception as e:
                log_pipeline_error(phase="call_tasks", error=e,
                                   contact_id=call.get("contact_id"), store=self.store)
                continue
            created.append(call["contact_id"])
        return {"created": len(created), "contact_ids": created}

    # ─── OUTCOMES ────────────────────────────────────────────

    def update_stage(self, contact_id: str, stage: str, note: str = ""):
        stage = validate_choice(stage, Stage, "stage")
        contact = self.store.get_contact(contact_id)
        if not contact:
            raise NotFound(f"Contact {contact_id} not found")
        previous = contact.stage
        self.store.update_contact(contact_id, stage=stage, updated_at=self.clock())
        self.store.append_interaction(contact_id, Interaction(
            contact_id=contact_id, type="stage_changed", channel="system",
            direction="internal", timestamp=self.clock(),
            data={"from": previous, "to": stage, "note": note},
        ))
        if stage == Stage.LOST.value and self.sequence_engine is not None:
            self.sequence_engine.stop_for_contact(contact_id, "lost")
        return self.store.get_contact(contact_id)

    def record_call_outcome(self, contact_id: str, result: str, notes: str = "",
                            duration: Optional[int] = None, called_by: str = "") -> dict:
        """Feed the top reason into the learning loop and move the pipeline stage.

        Args:
            result: A feedback outcome (successful, no_answer, ...) or one of
                meeting_scheduled / interested / callback.
        """
        if result not in CALL_RESULTS:
            raise ValueError(f"Unknown call result '{result}', expected one of {sorted(CALL_RESULTS)}")
        if not self.store.get_contact(contact_id):
            raise NotFound(f"Contact {contact_id} not found")

        feedback = None
        analysis = self.scorer.analyze(contact_id)
        if analysis.top_reason is not None and result in {o.value for o in Outcome}:
            feedback = self.tracker.record_feedback(
                contact_id, analysis.top_reason.code, result,
                notes=notes, called_by=called_by, call_duration=duration,
            )

        new_stage = STAGE_FOR_RESULT.get(result)
        if new_stage:
            self.update_stage(contact_id, new_stage, f"Call outcome: {result}")

        return {
            "success": True,
            "result": result,
            "feedback": feedback.to_dict() if feedback else None,
            "stage": new_stage,
        }
