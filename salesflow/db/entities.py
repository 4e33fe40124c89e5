"""
Salesflow - Core Records
Contacts, interactions, enrollments, tasks and call feedback as plain dataclasses,
plus the fixed vocabularies (pipeline stages, reason codes, outcomes, priorities).

Stores hand out copies: changing a record never changes stored state until the
record is saved back.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


# ─── TIME HELPERS ─────────────────────────────────────────────

def utcnow() -> datetime:
    """Naive UTC timestamp, the only kind stored anywhere in salesflow."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_iso(value) -> Optional[datetime]:
    """Parse an ISO timestamp (with or without offset) into naive UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _serialize(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


# ─── VOCABULARIES ─────────────────────────────────────────────

class Stage(str, Enum):
    """Ordered sales pipeline."""
    LEAD = "lead"
    PROSPECT = "prospect"
    CONTACTED = "contacted"
    MEETING_SCHEDULED = "meeting_scheduled"
    MEETING_DONE = "meeting_done"
    PROPOSAL_SENT = "proposal_sent"
    NEGOTIATION = "negotiation"
    CUSTOMER = "customer"
    ACTIVE = "active"
    CHURNED = "churned"
    LOST = "lost"


STAGE_ORDER = [s.value for s in Stage]


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    WAITING_TASK = "waiting_task"
    COMPLETED = "completed"
    STOPPED = "stopped"


TERMINAL_STATUSES = {EnrollmentStatus.COMPLETED.value, EnrollmentStatus.STOPPED.value}


class TaskStatus(str, Enum):
    OPEN = "open"
    DONE = "done"


class ReasonCode(str, Enum):
    """Why a contact earned call-priority points."""
    HOT_LEAD = "hot_lead"
    TICKET_URGENT = "ticket_urgent"
    TICKET_WAITING = "ticket_waiting"
    NO_SHOW = "no_show"
    PROPOSAL_SENT = "proposal_sent"
    EMAIL_REPLIED = "email_replied"
    MEETING_FOLLOWUP = "meeting_followup"
    INACTIVE_CUSTOMER = "inactive_customer"
    REACTIVATION = "reactivation"


DEFAULT_WEIGHTS = {
    ReasonCode.HOT_LEAD.value: 90,
    ReasonCode.TICKET_URGENT.value: 100,
    ReasonCode.TICKET_WAITING.value: 80,
    ReasonCode.NO_SHOW.value: 85,
    ReasonCode.PROPOSAL_SENT.value: 75,
    ReasonCode.EMAIL_REPLIED.value: 70,
    ReasonCode.MEETING_FOLLOWUP.value: 60,
    ReasonCode.INACTIVE_CUSTOMER.value: 40,
    ReasonCode.REACTIVATION.value: 30,
}


class Outcome(str, Enum):
    """Result of a recommended call, fed back into the weight table."""
    SUCCESSFUL = "successful"
    NO_ANSWER = "no_answer"
    NOT_INTERESTED = "not_interested"
    WRONG_CONTACT = "wrong_contact"
    WRONG_TIMING = "wrong_timing"


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


# Highest first; index 0 is the most urgent bucket
PRIORITY_ORDER = [p.value for p in Priority]


def priority_rank(priority: str) -> int:
    """Rank a bucket so that a larger number means more urgent."""
    value = priority.value if isinstance(priority, Priority) else priority
    if value not in PRIORITY_ORDER:
        raise ValueError(f"Unknown priority '{value}', expected one of {PRIORITY_ORDER}")
    return len(PRIORITY_ORDER) - 1 - PRIORITY_ORDER.index(value)


def validate_choice(value: str, enum_cls, label: str) -> str:
    """Return the plain string value, raising ValueError for anything outside enum_cls."""
    raw = value.value if isinstance(value, Enum) else value
    allowed = [m.value for m in enum_cls]
    if raw not in allowed:
        raise ValueError(f"Unknown {label} '{raw}', expected one of {allowed}")
    return raw


# ─── CONTACTS ─────────────────────────────────────────────────

@dataclass
class Contact:
    email: str
    id: str = ""
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    phone: str = ""
    mobile: str = ""
    stage: str = Stage.LEAD.value
    source: str = "manual"
    city: str = ""
    state: str = ""
    timezone: str = ""
    opted_out: bool = False
    opted_out_reason: Optional[str] = None
    emails_sent: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    last_email_at: Optional[datetime] = None
    last_contact_at: Optional[datetime] = None
    last_meeting_at: Optional[datetime] = None
    last_interaction_at: Optional[datetime] = None
    active_enrollment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_phone(self) -> bool:
        return bool(self.phone or self.mobile)

    @property
    def call_number(self) -> str:
        return self.mobile or self.phone

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.company

    def to_dict(self) -> dict:
        data = _serialize(asdict(self))
        data["has_phone"] = self.has_phone
        data["full_name"] = self.full_name
        return data


CONTACT_FIELDS = tuple(f.name for f in fields(Contact))


@dataclass
class Interaction:
    contact_id: str
    type: str
    channel: str = "system"
    direction: str = "outbound"
    data: dict = field(default_factory=dict)
    id: str = ""
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


def apply_interaction(contact: Contact, interaction: Interaction):
    """Roll an interaction into the contact's counters and last-touch timestamps."""
    at = interaction.timestamp
    contact.last_interaction_at = at
    contact.updated_at = at

    if interaction.type == "email_sent":
        contact.emails_sent += 1
        contact.last_email_at = at
    elif interaction.type == "email_opened":
        contact.emails_opened += 1
    elif interaction.type == "email_clicked":
        contact.emails_clicked += 1
    elif interaction.type == "meeting":
        contact.last_meeting_at = at
    elif interaction.type == "phone_call":
        contact.last_contact_at = at


# ─── ENROLLMENTS & TASKS ──────────────────────────────────────

@dataclass
class EnrollmentEvent:
    """One executed step. Append-only."""
    at: datetime
    type: str  # "email" or "task"
    template_id: Optional[str] = None
    task_id: Optional[str] = None
    title: Optional[str] = None
    dry_run: bool = False

    def to_dict(self) -> dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "EnrollmentEvent":
        return cls(
            at=parse_iso(data.get("at")),
            type=data.get("type", ""),
            template_id=data.get("template_id"),
            task_id=data.get("task_id"),
            title=data.get("title"),
            dry_run=bool(data.get("dry_run", False)),
        )


@dataclass
class Enrollment:
    contact_id: str
    sequence_id: str
    id: str = ""
    status: str = EnrollmentStatus.ACTIVE.value
    current_step_index: int = 0
    next_action_at: Optional[datetime] = None
    waiting_task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_action_at: Optional[datetime] = None
    stopped_reason: Optional[str] = None
    events: List[EnrollmentEvent] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        data = _serialize(asdict(self))
        data["is_terminal"] = self.is_terminal
        return data


@dataclass
class Task:
    """Human-in-the-loop step artifact. Completing it resumes its enrollment."""
    id: str
    contact_id: str
    title: str
    description: str = ""
    enrollment_id: Optional[str] = None
    sequence_id: Optional[str] = None
    step_index: Optional[int] = None
    status: str = TaskStatus.OPEN.value
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


# ─── FEEDBACK ─────────────────────────────────────────────────

@dataclass(frozen=True)
class FeedbackRecord:
    id: str
    contact_id: str
    reason_code: str
    outcome: str
    created_at: datetime
    notes: str = ""
    called_by: str = ""
    call_duration: Optional[int] = None
    recommendation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return _serialize(asdict(self))
