"""
Salesflow - Sequence Template Registry
Static email templates and multi-step outreach sequences.

A sequence is an ordered list of steps. Each step is either an email (points at
a template id) or a task (a human action with a title and description). Every
step carries delay_days relative to the completion of the previous step.

Enrollments hold only the sequence id, so editing or removing a sequence here
is immediately visible to contacts already in flight.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from salesflow.config import SEQUENCE_BOOKING_URL, SEQUENCE_SENDER_NAME
from salesflow.errors import NotFound

logger = logging.getLogger("salesflow.agents.sequence_templates")

STEP_TYPES = ("email", "task")

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class StepDef:
    type: str
    delay_days: int = 0
    template_id: Optional[str] = None
    title: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        if self.type not in STEP_TYPES:
            raise ValueError(f"Unknown step type '{self.type}', expected one of {STEP_TYPES}")
        if self.type == "email" and not self.template_id:
            raise ValueError("Email steps need a template_id")
        if self.type == "task" and not self.title:
            raise ValueError("Task steps need a title")
        if self.delay_days < 0:
            raise ValueError(f"delay_days must be >= 0, got {self.delay_days}")

    def to_dict(self, index: int = None) -> dict:
        data = {
            "type": self.type,
            "template_id": self.template_id,
            "title": self.title,
            "delay_days": self.delay_days,
        }
        if index is not None:
            data["index"] = index
        return data


@dataclass(frozen=True)
class SequenceTemplate:
    id: str
    name: str
    steps: tuple = field(default_factory=tuple)

    def step_at(self, index: int) -> Optional[StepDef]:
        return self.steps[index] if 0 <= index < len(self.steps) else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "steps": [s.to_dict(i) for i, s in enumerate(self.steps)],
        }


# ─── EMAIL TEMPLATES ──────────────────────────────────────────

EMAIL_TEMPLATES = {
    "seq_cold_1_intro": {
        "name": "Cold: Intro",
        "subject": "Quick question, {{first_name}}",
        "body": (
            "{{salutation}},\n\n"
            "Quick question: how much of your week goes to admin work instead of clients?\n"
            "Most teams we talk to win back several hours a week with clear processes "
            "and a bit of automation.\n\n"
            "Do you have 15 minutes for a short call?\n"
            "Book a slot: {{booking_url}}\n\n"
            "Best regards,\n{{sender_name}}"
        ),
    },
    "seq_cold_2_value": {
        "name": "Cold: Value",
        "subject": "In {{city}}: less admin, more selling",
        "body": (
            "{{salutation}},\n\n"
            "Teams in {{city}} keep telling us the same things: coordinating meetings, "
            "chasing follow-ups, keeping track of it all.\n"
            "We have a setup that saves time from day one.\n\n"
            "Happy to show you in 15 minutes: {{booking_url}}\n\n"
            "Best regards,\n{{sender_name}}"
        ),
    },
    "seq_cold_3_followup": {
        "name": "Cold: Follow-up",
        "subject": "Following up",
        "body": (
            "{{salutation}},\n\n"
            "Just following up on my last note.\n"
            "If now is not a good time, no problem. Pick any slot that suits you: "
            "{{booking_url}}\n\n"
            "Best,\n{{sender_name}}"
        ),
    },
    "seq_cold_4_last_chance": {
        "name": "Cold: Last Chance",
        "subject": "Should I check back later?",
        "body": (
            "{{salutation}},\n\n"
            "I don't want to be a bother. Should I get back to you in a few months?\n"
            "You can always book a time here: {{booking_url}}\n\n"
            "All the best,\n{{sender_name}}"
        ),
    },
    "seq_enterprise_1_intro": {
        "name": "Enterprise: Intro",
        "subject": "A quick chat about processes at {{company}}?",
        "body": (
            "{{salutation}},\n\n"
            "I took a look at {{company}}. Larger teams tend to hit the same bottlenecks: "
            "scheduling, follow-ups, reporting, visibility across the team.\n\n"
            "Would you have 15 minutes for a short demo? {{booking_url}}\n\n"
            "Best regards,\n{{sender_name}}"
        ),
    },
    "seq_enterprise_2_roi": {
        "name": "Enterprise: ROI",
        "subject": "ROI: two hours a week adds up",
        "body": (
            "{{salutation}},\n\n"
            "A quick ROI thought: if your team saves just two hours of admin per week, "
            "that turns into a lot of productive time over a year.\n\n"
            "Happy to run the numbers for {{company}}: {{booking_url}}\n\n"
            "Best,\n{{sender_name}}"
        ),
    },
    "seq_enterprise_3_case_study": {
        "name": "Enterprise: Case Study",
        "subject": "Short case study (similar team)",
        "body": (
            "{{salutation}},\n\n"
            "A team of similar size standardized meetings, reminders and follow-ups "
            "and freed up capacity right away.\n\n"
            "I can walk you through the key levers: {{booking_url}}\n\n"
            "Best regards,\n{{sender_name}}"
        ),
    },
    "seq_solo_1_intro": {
        "name": "Solo: Intro",
        "subject": "Working solo: save time without the stress",
        "body": (
            "{{salutation}},\n\n"
            "When you work on your own, every hour counts. Invitations, reminders and "
            "follow-ups can all run on a simple setup.\n\n"
            "Do you have 15 minutes for a short call? {{booking_url}}\n\n"
            "Best regards,\n{{sender_name}}"
        ),
    },
    "seq_solo_2_tools": {
        "name": "Solo: Tools",
        "subject": "5 things that save solo time right away",
        "body": (
            "{{salutation}},\n\n"
            "Five things that save real time when you work solo:\n"
            "- Fixed templates\n"
            "- Automated scheduling\n"
            "- Clear follow-up rules\n"
            "- A prioritized pipeline\n"
            "- Simple reporting\n\n"
            "I can show you a setup that works in practice: {{booking_url}}\n\n"
            "Best,\n{{sender_name}}"
        ),
    },
    "seq_regional_1_intro": {
        "name": "Regional: Intro",
        "subject": "Teams across {{state}} are tightening their processes",
        "body": (
            "{{salutation}},\n\n"
            "We already help teams in {{state}} work more efficiently "
            "(meetings, follow-ups, team visibility).\n\n"
            "Interested in a quick chat? {{booking_url}}\n\n"
            "Best regards,\n{{sender_name}}"
        ),
    },
    "seq_regional_2_stats": {
        "name": "Regional: Stats",
        "subject": "In {{city}}: more time for clients, less admin",
        "body": (
            "{{salutation}},\n\n"
            "Teams with their processes under control win back capacity for "
            "prospecting and client care.\n\n"
            "I can show you a concrete setup: {{booking_url}}\n\n"
            "Best,\n{{sender_name}}"
        ),
    },
}


# ─── SEQUENCES ────────────────────────────────────────────────

SEQUENCES = [
    SequenceTemplate("cold_outreach", "Cold Outreach", (
        StepDef("email", 0, template_id="seq_cold_1_intro"),
        StepDef("email", 3, template_id="seq_cold_2_value"),
        StepDef("task", 4, title="Follow-up check",
                description="Check for a reply and follow up manually if needed."),
        StepDef("email", 2, template_id="seq_cold_3_followup"),
        StepDef("email", 5, template_id="seq_cold_4_last_chance"),
    )),
    SequenceTemplate("enterprise_outreach", "Enterprise Outreach", (
        StepDef("email", 0, template_id="seq_enterprise_1_intro"),
        StepDef("email", 4, template_id="seq_enterprise_2_roi"),
        StepDef("email", 5, template_id="seq_enterprise_3_case_study"),
    )),
    SequenceTemplate("solo_outreach", "Solo Outreach", (
        StepDef("email", 0, template_id="seq_solo_1_intro"),
        StepDef("email", 4, template_id="seq_solo_2_tools"),
    )),
    SequenceTemplate("regional_outreach", "Regional Outreach", (
        StepDef("email", 0, template_id="seq_regional_1_intro"),
        StepDef("email", 4, template_id="seq_regional_2_stats"),
    )),
]


# ─── REGISTRY ─────────────────────────────────────────────────

class TemplateRegistry:
    """Lookup of email templates and sequences. Misses raise NotFound."""

    def __init__(self, templates: Dict[str, dict] = None,
                 sequences: List[SequenceTemplate] = None):
        self._lock = threading.Lock()
        self._templates = {k: dict(v) for k, v in (templates or EMAIL_TEMPLATES).items()}
        self._sequences = {s.id: s for s in (sequences if sequences is not None else SEQUENCES)}

    def resolve_template(self, template_id: str) -> dict:
        with self._lock:
            template = self._templates.get(template_id)
        if not template:
            raise NotFound(f"Template {template_id} not found")
        return {"subject": template["subject"], "body": template["body"]}

    def get_sequence(self, sequence_id: str) -> SequenceTemplate:
        sequence = self.find_sequence(sequence_id)
        if sequence is None:
            raise NotFound(f"Sequence {sequence_id} not found")
        return sequence

    def find_sequence(self, sequence_id: str) -> Optional[SequenceTemplate]:
        with self._lock:
            return self._sequences.get(sequence_id)

    def list_sequences(self) -> List[dict]:
        with self._lock:
            return [s.to_dict() for s in self._sequences.values()]

    def register_template(self, template_id: str, subject: str, body: str, name: str = ""):
        with self._lock:
            self._templates[template_id] = {"name": name or template_id,
                                            "subject": subject, "body": body}

    def register_sequence(self, sequence: SequenceTemplate):
        """Add or replace a sequence. Every email step must reference a known template."""
        with self._lock:
            for step in sequence.steps:
                if step.type == "email" and step.template_id not in self._templates:
                    raise NotFound(f"Template {step.template_id} not found")
            self._sequences[sequence.id] = sequence
        logger.info("Registered sequence %s (%d steps)", sequence.id, len(sequence.steps),
                    extra={"sequence_id": sequence.id})

    def remove_sequence(self, sequence_id: str) -> bool:
        with self._lock:
            removed = self._sequences.pop(sequence_id, None) is not None
        if removed:
            logger.warning("Removed sequence %s; in-flight enrollments will be stopped",
                           sequence_id, extra={"sequence_id": sequence_id})
        return removed

    def render(self, template_id: str, variables: dict) -> dict:
        """Resolve a template and fill its {{placeholders}}. Unknown placeholders render empty."""
        template = self.resolve_template(template_id)
        return {
            "subject": render_text(template["subject"], variables),
            "body": render_text(template["body"], variables),
        }


def render_text(text: str, variables: dict) -> str:
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), "") or ""), text)


def build_template_variables(contact, overrides: dict = None) -> dict:
    """Placeholder values for a contact.

    Args:
        contact: Contact record.
        overrides: Values that win over the derived ones.

    Returns:
        {salutation, first_name, company, city, state, booking_url, sender_name}
    """
    if contact.first_name:
        salutation = f"Hi {contact.first_name}"
    else:
        salutation = f"Hello {contact.last_name or contact.company}".strip()

    variables = {
        "salutation": salutation,
        "first_name": contact.first_name or contact.last_name or contact.company or "",
        "company": contact.company or "",
        "city": contact.city or "",
        "state": contact.state or "",
        "booking_url": SEQUENCE_BOOKING_URL,
        "sender_name": SEQUENCE_SENDER_NAME,
    }
    variables.update(overrides or {})
    return variables
