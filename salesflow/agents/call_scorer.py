"""
Salesflow - Call-Priority Analyzer
Answers: who should be called, when, and why.

Signals come from three places:
1. External activity (support tickets, inbound email) via an ActivitySource
2. Pipeline stage plus engagement counters on the contact
3. Meeting history in the contact's interaction log

Each signal that fires contributes the current weight of its reason code.
The sum picks a priority bucket:
    >= 90 urgent | >= 60 high | >= 30 medium | > 0 low | else none

Weights live in a WeightStore and move with call feedback, so analysis is
always computed fresh and never stored.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from salesflow.agents.error_handler import log_pipeline_error
from salesflow.config import PRIORITY_THRESHOLDS
from salesflow.db.entities import (
    Contact, Priority, ReasonCode, Stage, priority_rank, to_iso, utcnow,
)
from salesflow.errors import NotFound
from salesflow.logging_config import get_agent_logger

logger = get_agent_logger("call_scorer")

ACTIVITY_WINDOW_DAYS = 30
TICKET_WAITING_DAYS = 2
EMAIL_REPLIED_DAYS = 1
INACTIVE_CUSTOMER_DAYS = 30
MEETING_FOLLOWUP_RANGE = (2, 7)
REACTIVATION_RANGE = (60, 180)  # exclusive on both ends
NO_SHOW_DAYS = 3
NO_SHOW_LOOKBACK = 10
URGENT_MARKERS = ("URGENT", "DRINGEND")

RECOMMENDATIONS = {
    Priority.URGENT.value: "Call now",
    Priority.HIGH.value: "Call today",
    Priority.MEDIUM.value: "Call this week",
    Priority.LOW.value: "Call when time allows",
    Priority.NONE.value: "No call needed",
}
NO_PHONE = "No phone number"


@dataclass
class ScoreReason:
    code: str
    weight: int
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"code": self.code, "weight": self.weight, "context": dict(self.context),
                "text": describe_reason(self)}


@dataclass
class ScoreAnalysis:
    contact_id: str
    score: int = 0
    priority: str = Priority.NONE.value
    reasons: List[ScoreReason] = field(default_factory=list)
    recommendation: str = RECOMMENDATIONS[Priority.NONE.value]
    phone: str = ""
    best_time_to_call: Optional[str] = None
    last_contact: Optional[datetime] = None

    @property
    def top_reason(self) -> Optional[ScoreReason]:
        return self.reasons[0] if self.reasons else None

    def to_dict(self) -> dict:
        return {
            "contact_id": self.contact_id,
            "score": self.score,
            "priority": self.priority,
            "reasons": [r.to_dict() for r in self.reasons],
            "recommendation": self.recommendation,
            "phone": self.phone,
            "best_time_to_call": self.best_time_to_call,
            "last_contact": to_iso(self.last_contact),
        }


# ─── ACTIVITY SOURCES ─────────────────────────────────────────

class ActivitySource(ABC):
    """External activity feed (help desk, mailbox).

    get_activity returns:
        {"activities": [{"date", "type", "is_from_customer", "subject", "urgent"}],
         "last_contact": datetime | None,
         "days_since_last_contact": int | None}
    """

    @abstractmethod
    def get_activity(self, contact: Contact, days: int) -> dict:
        pass


class InteractionActivitySource(ActivitySource):
    """Default feed: the contact's own inbound interactions."""

    def __init__(self, store, clock: Callable[[], datetime] = utcnow, lookback: int = 50):
        self.store = store
        self.clock = clock
        self.lookback = lookback

    def get_activity(self, contact: Contact, days: int) -> dict:
        now = self.clock()
        since = now - timedelta(days=days)
        inbound = [i for i in self.store.get_interactions(contact.id, limit=self.lookback)
                   if i.direction == "inbound" and i.timestamp]

        activities = [
            {
                "date": i.timestamp,
                "type": i.channel,
                "is_from_customer": True,
                "subject": str(i.data.get("subject", "")),
                "urgent": bool(i.data.get("urgent", False)),
            }
            for i in inbound if i.timestamp >= since
        ]

        candidates = [t for t in [contact.last_contact_at] + [i.timestamp for i in inbound] if t]
        last_contact = max(candidates) if candidates else None
        return {
            "activities": activities,
            "last_contact": last_contact,
            "days_since_last_contact": (now - last_contact).days if last_contact else None,
        }


# ─── HELPERS ──────────────────────────────────────────────────

def is_recent(value: Optional[datetime], days: int, now: datetime) -> bool:
    if not value:
        return False
    return (now - value).total_seconds() / 86400 <= days


def days_since(value: Optional[datetime], now: datetime) -> Optional[int]:
    return (now - value).days if value else None


def priority_for_score(score: int, thresholds: dict = None) -> str:
    thresholds = thresholds or PRIORITY_THRESHOLDS
    if score >= thresholds["urgent"]:
        return Priority.URGENT.value
    if score >= thresholds["high"]:
        return Priority.HIGH.value
    if score >= thresholds["medium"]:
        return Priority.MEDIUM.value
    if score > 0:
        return Priority.LOW.value
    return Priority.NONE.value


def describe_reason(reason: ScoreReason) -> str:
    """One-line explanation for a reason, for call lists and task descriptions."""
    ctx = reason.context or {}
    texts = {
        ReasonCode.HOT_LEAD.value: "Hot lead: clicked a link in our emails",
        ReasonCode.TICKET_URGENT.value: "Urgent ticket open",
        ReasonCode.TICKET_WAITING.value: "Ticket waiting for our reply",
        ReasonCode.NO_SHOW.value: "Missed a meeting: reschedule",
        ReasonCode.MEETING_FOLLOWUP.value:
            f"Follow up after meeting ({ctx.get('days_since', '?')} days ago)",
        ReasonCode.PROPOSAL_SENT.value: "Proposal sent: follow up",
        ReasonCode.INACTIVE_CUSTOMER.value:
            f"Customer inactive for {ctx.get('days', '?')} days",
        ReasonCode.REACTIVATION.value:
            f"Win-back candidate ({ctx.get('days_since', '?')} days inactive)",
        ReasonCode.EMAIL_REPLIED.value: "Replied to an email",
    }
    return texts.get(reason.code, reason.code)


def best_time_to_call(contact: Contact, now: datetime = None) -> str:
    """Suggest a slot from business-hour bands in the contact's timezone."""
    now = now or utcnow()
    local = now
    if contact.timezone:
        try:
            local = now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(contact.timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone %s for %s, using UTC", contact.timezone, contact.id)

    hour = local.hour
    if hour < 9:
        return "09:00 - 10:00"
    if hour < 12:
        return "Now (morning)"
    if hour < 14:
        return "14:00 - 15:00 (after lunch)"
    if hour < 17:
        return "Now (afternoon)"
    return "Tomorrow 09:00 - 10:00"


# ─── SCORER ───────────────────────────────────────────────────

class CallScorer:
    """Weighted, explainable call priority per contact.

    Args:
        store: Repository for contacts and interactions.
        weight_store: Current reason-code weights.
        activity_source: External activity feed; defaults to inbound interactions.
        thresholds: {"urgent", "high", "medium"} score cut-offs.
        clock: Returns the current naive-UTC time.
    """

    def __init__(self, store, weight_store, activity_source: ActivitySource = None,
                 thresholds: dict = None, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.weight_store = weight_store
        self.clock = clock
        self.activity_source = activity_source or InteractionActivitySource(store, clock=clock)
        self.thresholds = dict(thresholds or PRIORITY_THRESHOLDS)

    def analyze(self, contact_id: str) -> ScoreAnalysis:
        contact = self.store.get_contact(contact_id)
        if not contact:
            raise NotFound(f"Contact {contact_id} not found")
        return self.analyze_contact(contact)

    def analyze_contact(self, contact: Contact) -> ScoreAnalysis:
        if not contact.has_phone:
            return ScoreAnalysis(contact_id=contact.id, recommendation=NO_PHONE)

        now = self.clock()
        analysis = ScoreAnalysis(contact_id=contact.id, phone=contact.call_number)
        fired = []

        # 1. External activity
        try:
            activity = self.activity_source.get_activity(contact, ACTIVITY_WINDOW_DAYS)
        except Exception as e:
            log_pipeline_error(phase="scoring", error=e, contact_id=contact.id,
                               context={"source": type(self.activity_source).__name__})
            activity = None

        if activity:
            analysis.last_contact = activity.get("last_contact")
            items = activity.get("activities") or []
            if any(self._is_urgent(a) for a in items):
                fired.append((ReasonCode.TICKET_URGENT, {}))
            if any(a.get("is_from_customer") and is_recent(a.get("date"), TICKET_WAITING_DAYS, now)
                   for a in items):
                fired.append((ReasonCode.TICKET_WAITING, {}))
            if any(a.get("type") == "email" and a.get("is_from_customer")
                   and is_recent(a.get("date"), EMAIL_REPLIED_DAYS, now) for a in items):
                fired.append((ReasonCode.EMAIL_REPLIED, {}))
            if contact.stage in (Stage.ACTIVE.value, Stage.CUSTOMER.value):
                idle = activity.get("days_since_last_contact")
                if idle is not None and idle > INACTIVE_CUSTOMER_DAYS:
                    fired.append((ReasonCode.INACTIVE_CUSTOMER, {"days": idle}))

        # 2. Pipeline stage
        if contact.stage == Stage.CONTACTED.value and contact.emails_clicked > 0:
            fired.append((ReasonCode.HOT_LEAD, {"emails_clicked": contact.emails_clicked}))
        elif contact.stage == Stage.MEETING_DONE.value:
            since = days_since(contact.last_meeting_at, now)
            low, high = MEETING_FOLLOWUP_RANGE
            if since is not None and low <= since <= high:
                fired.append((ReasonCode.MEETING_FOLLOWUP, {"days_since": since}))
        elif contact.stage == Stage.PROPOSAL_SENT.value:
            fired.append((ReasonCode.PROPOSAL_SENT, {}))
        elif contact.stage in (Stage.CHURNED.value, Stage.LOST.value):
            since = days_since(contact.last_contact_at, now)
            low, high = REACTIVATION_RANGE
            if since is not None and low < since < high:
                fired.append((ReasonCode.REACTIVATION, {"days_since": since}))

        # 3. Meeting outcome
        no_show = self._find_no_show(contact.id, now)
        if no_show is not None:
            fired.append((ReasonCode.NO_SHOW, no_show))

        for code, context in fired:
            weight = self.weight_store.get(code.value)
            analysis.reasons.append(ScoreReason(code=code.value, weight=weight, context=context))
            analysis.score += weight

        analysis.reasons.sort(key=lambda r: (-r.weight, r.code))
        analysis.priority = priority_for_score(analysis.score, self.thresholds)
        analysis.recommendation = RECOMMENDATIONS[analysis.priority]
        analysis.best_time_to_call = best_time_to_call(contact, now)
        return analysis

    def _is_urgent(self, activity: dict) -> bool:
        if activity.get("urgent"):
            return True
        subject = (activity.get("subject") or "").upper()
        return any(marker in subject for marker in URGENT_MARKERS)

    def _find_no_show(self, contact_id: str, now: datetime) -> Optional[dict]:
        """A recently scheduled meeting with no matching completion among the latest interactions."""
        recent = self.store.get_interactions(contact_id, limit=NO_SHOW_LOOKBACK)
        completed = {i.data.get("meeting_id") for i in recent if i.type == "meeting_completed"}
        for item in recent:
            if item.type != "meeting_scheduled":
                continue
            if item.data.get("meeting_id") in completed:
                continue
            if is_recent(item.timestamp, NO_SHOW_DAYS, now):
                return {"meeting_id": item.data.get("meeting_id")}
        return None

    # ─── RANKING ─────────────────────────────────────────────

    def rank(self, contacts: Iterable = None, min_priority: str = Priority.LOW.value,
             limit: int = 20) -> List[ScoreAnalysis]:
        """Analyze candidates and return those at or above min_priority, best first.

        Args:
            contacts: Contacts or contact ids. Defaults to every reachable,
                not-opted-out contact.
            min_priority: Lowest bucket to keep. "none" is never returned.
            limit: Maximum number of results.
        """
        floor = priority_rank(min_priority)
        none_rank = priority_rank(Priority.NONE.value)
        if contacts is None:
            contacts = self.store.find_contacts(has_phone=True, opted_out=False)

        analyses = []
        for item in contacts:
            contact_id = item if isinstance(item, str) else item.id
            try:
                analysis = self.analyze(contact_id) if isinstance(item, str) else self.analyze_contact(item)
            except NotFound as e:
                log_pipeline_error(phase="scoring", error=e, contact_id=contact_id)
                continue
            rank = priority_rank(analysis.priority)
            if rank == none_rank or rank < floor:
                continue
            analyses.append(analysis)

        analyses.sort(key=lambda a: (-a.score, a.contact_id))
        return analyses[:limit]

    def generate_call_list(self, min_priority: str = Priority.LOW.value,
                           limit: int = 20) -> dict:
        """Daily call list with display fields per call."""
        contacts = self.store.find_contacts(has_phone=True, opted_out=False)
        by_id = {c.id: c for c in contacts}
        ranked = self.rank(contacts, min_priority=min_priority, limit=len(contacts) or 1)

        calls = []
        for analysis in ranked[:limit]:
            contact = by_id[analysis.contact_id]
            calls.append({
                "contact_id": contact.id,
                "name": contact.full_name,
                "company": contact.company,
                "phone": analysis.phone,
                "email": contact.email,
                "stage": contact.stage,
                "priority": analysis.priority,
                "score": analysis.score,
                "reason_codes": [r.code for r in analysis.reasons],
                "reasons": [describe_reason(r) for r in analysis.reasons],
                "recommendation": analysis.recommendation,
                "best_time": analysis.best_time_to_call,
                "last_contact": to_iso(analysis.last_contact),
            })

        logger.info("Call list: %d analyzed, %d recommended", len(contacts), len(ranked))
        return {
            "date": self.clock().date().isoformat(),
            "total_analyzed": len(contacts),
            "calls_recommended": len(ranked),
            "calls": calls,
        }
