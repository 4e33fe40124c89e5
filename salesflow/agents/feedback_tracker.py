"""
Salesflow - Call Feedback & Learning Loop
Records how recommended calls went and nudges the reason-code weights.

    successful                      -> weight + success_step (capped at max)
    not_interested / wrong_contact  -> weight - failure_step (floored at min)
    no_answer / wrong_timing        -> no change

The rule is deliberately simple and deterministic. get_weights() dumps the
full table for audits.
"""

from datetime import datetime
from typing import Callable, Optional

from salesflow.config import LEARNING_FAILURE_STEP, LEARNING_SUCCESS_STEP
from salesflow.db.connection import gen_id
from salesflow.db.entities import (
    FeedbackRecord, Interaction, Outcome, ReasonCode, utcnow, validate_choice,
)
from salesflow.errors import NotFound
from salesflow.logging_config import get_agent_logger

logger = get_agent_logger("feedback_tracker")

NEGATIVE_OUTCOMES = {Outcome.NOT_INTERESTED.value, Outcome.WRONG_CONTACT.value}
RECENT_FEEDBACK = 20


class FeedbackTracker:

    def __init__(self, store, weight_store, success_step: int = LEARNING_SUCCESS_STEP,
                 failure_step: int = LEARNING_FAILURE_STEP,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.weight_store = weight_store
        self.success_step = success_step
        self.failure_step = failure_step
        self.clock = clock

    def record_feedback(self, contact_id: str, reason_code: str, outcome: str,
                        notes: str = "", called_by: str = "",
                        call_duration: Optional[int] = None,
                        recommendation_id: Optional[str] = None) -> FeedbackRecord:
        """Append a feedback record and apply the learning rule.

        Args:
            contact_id: The contact who was called.
            reason_code: The reason that justified the recommendation.
            outcome: successful / no_answer / not_interested / wrong_contact / wrong_timing.
            notes: Free text from the caller.
            called_by: Who made the call.
            call_duration: Seconds on the phone.
            recommendation_id: Optional link to the recommendation shown.

        Returns:
            The stored FeedbackRecord.

        Raises:
            ValueError: unknown reason code or outcome.
            NotFound: unknown contact.
        """
        reason_code = validate_choice(reason_code, ReasonCode, "reason code")
        outcome = validate_choice(outcome, Outcome, "outcome")
        if not self.store.get_contact(contact_id):
            raise NotFound(f"Contact {contact_id} not found")

        record = FeedbackRecord(
            id=gen_id("fb"),
            contact_id=contact_id,
            reason_code=reason_code,
            outcome=outcome,
            created_at=self.clock(),
            notes=notes or "",
            called_by=called_by or "",
            call_duration=call_duration,
            recommendation_id=recommendation_id,
        )
        self.store.append_feedback(record)

        weight = None
        if outcome == Outcome.SUCCESSFUL.value:
            weight = self.weight_store.adjust(reason_code, self.success_step)
        elif outcome in NEGATIVE_OUTCOMES:
            weight = self.weight_store.adjust(reason_code, -self.failure_step)

        self.store.append_interaction(contact_id, Interaction(
            contact_id=contact_id,
            type="call_feedback",
            channel="phone",
            direction="outbound",
            timestamp=record.created_at,
            data={"outcome": outcome, "reason": reason_code,
                  "duration": call_duration, "notes": notes},
        ))

        logger.info("Feedback %s on %s for %s%s", outcome, reason_code, contact_id,
                    f" (weight now {weight})" if weight is not None else "",
                    extra={"contact_id": contact_id, "reason_code": reason_code})
        return record

    def get_weights(self) -> dict:
        return self.weight_store.dump()

    def set_weight(self, reason_code: str, value: int) -> int:
        """Manual override, clamped like every other mutation."""
        reason_code = validate_choice(reason_code, ReasonCode, "reason code")
        weight = self.weight_store.set(reason_code, value)
        logger.info("Weight for %s set to %d", reason_code, weight,
                    extra={"reason_code": reason_code})
        return weight

    def reset_weights(self) -> dict:
        self.weight_store.reset()
        return self.weight_store.dump()

    def get_learning_stats(self) -> dict:
        feedback = self.store.list_feedback()
        total = len(feedback)
        successful = sum(1 for f in feedback if f.outcome == Outcome.SUCCESSFUL.value)
        unsuccessful = sum(1 for f in feedback if f.outcome in NEGATIVE_OUTCOMES)
        return {
            "weights": self.weight_store.dump(),
            "stats": {
                "total": total,
                "successful": successful,
                "unsuccessful": unsuccessful,
                "success_rate": round(successful / total * 100, 1) if total else 0.0,
            },
            "recent_feedback": [f.to_dict() for f in feedback[-RECENT_FEEDBACK:]],
        }
