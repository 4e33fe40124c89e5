"""
Salesflow - Store Interfaces
The sequence engine, scorer and feedback loop talk to these interfaces only,
never to a particular storage medium. Two implementations ship:

- InMemoryRepository / InMemoryWeightStore (this module): tests and demos
- SqliteRepository / SqliteWeightStore (salesflow.db.models): production
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from salesflow.config import WEIGHT_MAX, WEIGHT_MIN
from salesflow.db.connection import gen_id
from salesflow.db.entities import (
    CONTACT_FIELDS, DEFAULT_WEIGHTS, Contact, Enrollment, FeedbackRecord, Interaction, Task,
    apply_interaction, utcnow,
)
from salesflow.errors import NotFound


class Repository(ABC):
    """Contact store plus sequence state (enrollments, tasks), feedback and error log."""

    # ─── CONTACTS ────────────────────────────────────────────

    @abstractmethod
    def create_contact(self, contact: Contact) -> Contact:
        """Insert a new contact, assigning id and timestamps when missing."""

    @abstractmethod
    def get_contact(self, contact_id: str) -> Optional[Contact]:
        pass

    @abstractmethod
    def find_contacts(self, stage: str = None, has_phone: bool = None,
                      opted_out: bool = None, limit: int = None,
                      offset: int = 0) -> List[Contact]:
        """Contacts in creation order, filtered."""

    @abstractmethod
    def save_contact(self, contact: Contact) -> Contact:
        pass

    @abstractmethod
    def update_contact(self, contact_id: str, **fields) -> Contact:
        """Write only the named fields; the rest of the row is left as stored.

        Raises:
            NotFound: unknown contact.
            ValueError: a field the contact does not have (or "id").
        """

    @abstractmethod
    def append_interaction(self, contact_id: str, interaction: Interaction) -> Interaction:
        """Append to the contact's log and roll counters into the contact. NotFound if unknown."""

    @abstractmethod
    def get_interactions(self, contact_id: str, limit: int = 50) -> List[Interaction]:
        """Newest first."""

    # ─── ENROLLMENTS & TASKS ─────────────────────────────────

    @abstractmethod
    def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        pass

    @abstractmethod
    def list_enrollments(self, contact_id: str = None,
                         statuses: Iterable[str] = None) -> List[Enrollment]:
        """Ordered by contact creation order, then enrollment creation order."""

    @abstractmethod
    def save_enrollment(self, enrollment: Enrollment, task: Task = None,
                        activate: bool = False) -> Enrollment:
        """Persist an enrollment, plus its task, in one atomic write.

        activate=True points the contact's active_enrollment_id at it. A
        terminal enrollment clears that pointer if it still points at it.
        No other contact column is written.
        """

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    def save_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    def list_tasks(self, status: str = None) -> List[Task]:
        """Newest first."""

    # ─── FEEDBACK ────────────────────────────────────────────

    @abstractmethod
    def append_feedback(self, record: FeedbackRecord) -> FeedbackRecord:
        pass

    @abstractmethod
    def list_feedback(self, contact_id: str = None) -> List[FeedbackRecord]:
        """Oldest first."""

    # ─── ERROR LOG ───────────────────────────────────────────

    @abstractmethod
    def record_error(self, error: dict) -> dict:
        pass

    @abstractmethod
    def list_errors(self, phase: str = None, severity: str = None,
                    unresolved_only: bool = True) -> List[dict]:
        """Newest first."""

    @abstractmethod
    def resolve_error(self, error_id: int) -> bool:
        pass


class WeightStore(ABC):
    """Per-reason-code weights. Every mutation is one atomic read-modify-write."""

    def __init__(self, min_weight: int = WEIGHT_MIN, max_weight: int = WEIGHT_MAX):
        self.min_weight = min_weight
        self.max_weight = max_weight

    def clamp(self, value: int) -> int:
        return max(self.min_weight, min(self.max_weight, int(value)))

    @abstractmethod
    def get(self, reason_code: str) -> int:
        pass

    @abstractmethod
    def dump(self) -> dict:
        """Full table, for tests and audits."""

    @abstractmethod
    def adjust(self, reason_code: str, delta: int) -> int:
        """Add delta, clamp to [min_weight, max_weight], return the new weight."""

    @abstractmethod
    def set(self, reason_code: str, value: int) -> int:
        pass

    @abstractmethod
    def reset(self):
        """Restore the default weights."""


# ─── IN-MEMORY IMPLEMENTATIONS ────────────────────────────────

class InMemoryRepository(Repository):
    """Dict-backed store. Hands out deep copies so callers never alias stored state."""

    def __init__(self):
        self._lock = threading.RLock()
        self._contacts = {}       # insertion order = creation order
        self._interactions = {}   # contact_id -> list, oldest first
        self._enrollments = {}
        self._tasks = {}
        self._feedback = []
        self._errors = []
        self._next_error_id = 1

    def create_contact(self, contact: Contact) -> Contact:
        with self._lock:
            contact = copy.deepcopy(contact)
            contact.id = contact.id or gen_id("con")
            now = utcnow()
            contact.created_at = contact.created_at or now
            contact.updated_at = contact.updated_at or now
            self._contacts[contact.id] = contact
            self._interactions.setdefault(contact.id, [])
            return copy.deepcopy(contact)

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self._lock:
            contact = self._contacts.get(contact_id)
            return copy.deepcopy(contact) if contact else None

    def find_contacts(self, stage: str = None, has_phone: bool = None,
                      opted_out: bool = None, limit: int = None,
                      offset: int = 0) -> List[Contact]:
        with self._lock:
            results = list(self._contacts.values())
            if stage:
                results = [c for c in results if c.stage == stage]
            if has_phone is not None:
                results = [c for c in results if c.has_phone == has_phone]
            if opted_out is not None:
                results = [c for c in results if c.opted_out == opted_out]
            end = offset + limit if limit is not None else None
            return [copy.deepcopy(c) for c in results[offset:end]]

    def save_contact(self, contact: Contact) -> Contact:
        with self._lock:
            if contact.id not in self._contacts:
                raise NotFound(f"Contact {contact.id} not found")
            self._contacts[contact.id] = copy.deepcopy(contact)
            return copy.deepcopy(contact)

    def update_contact(self, contact_id: str, **fields) -> Contact:
        unknown = [f for f in fields if f == "id" or f not in CONTACT_FIELDS]
        if unknown:
            raise ValueError(f"Unknown contact field(s): {', '.join(unknown)}")
        with self._lock:
            contact = self._contacts.get(contact_id)
            if not contact:
                raise NotFound(f"Contact {contact_id} not found")
            for name, value in fields.items():
                setattr(contact, name, value)
            return copy.deepcopy(contact)

    def append_interaction(self, contact_id: str, interaction: Interaction) -> Interaction:
        with self._lock:
            contact = self._contacts.get(contact_id)
            if not contact:
                raise NotFound(f"Contact {contact_id} not found")
            record = copy.deepcopy(interaction)
            record.id = record.id or gen_id("int")
            record.contact_id = contact_id
            record.timestamp = record.timestamp or utcnow()
            self._interactions[contact_id].append(record)
            apply_interaction(contact, record)
            return copy.deepcopy(record)

    def get_interactions(self, contact_id: str, limit: int = 50) -> List[Interaction]:
        with self._lock:
            log = sorted(self._interactions.get(contact_id, []),
                         key=lambda i: i.timestamp, reverse=True)
            return [copy.deepcopy(i) for i in log[:limit]]

    def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            return copy.deepcopy(enrollment) if enrollment else None

    def list_enrollments(self, contact_id: str = None,
                         statuses: Iterable[str] = None) -> List[Enrollment]:
        with self._lock:
            wanted = set(statuses) if statuses else None
            contact_order = {cid: i for i, cid in enumerate(self._contacts)}
            results = []
            for position, enrollment in enumerate(self._enrollments.values()):
                if contact_id and enrollment.contact_id != contact_id:
                    continue
                if wanted is not None and enrollment.status not in wanted:
                    continue
                results.append((contact_order.get(enrollment.contact_id, len(contact_order)),
                                position, enrollment))
            results.sort(key=lambda r: (r[0], r[1]))
            return [copy.deepcopy(r[2]) for r in results]

    def save_enrollment(self, enrollment: Enrollment, task: Task = None,
                        activate: bool = False) -> Enrollment:
        with self._lock:
            contact = self._contacts.get(enrollment.contact_id)
            if contact is None:
                raise NotFound(f"Contact {enrollment.contact_id} not found")
            enrollment = copy.deepcopy(enrollment)
            enrollment.id = enrollment.id or gen_id("enr")
            self._enrollments[enrollment.id] = enrollment
            if activate:
                contact.active_enrollment_id = enrollment.id
                contact.updated_at = enrollment.updated_at or utcnow()
            elif enrollment.is_terminal and contact.active_enrollment_id == enrollment.id:
                contact.active_enrollment_id = None
                contact.updated_at = enrollment.updated_at or utcnow()
            if task is not None:
                self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(enrollment)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def save_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)

    def list_tasks(self, status: str = None) -> List[Task]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if not status or t.status == status]
            tasks = list(reversed(tasks))
            tasks.sort(key=lambda t: t.created_at or utcnow(), reverse=True)
            return [copy.deepcopy(t) for t in tasks]

    def append_feedback(self, record: FeedbackRecord) -> FeedbackRecord:
        with self._lock:
            self._feedback.append(record)
            return record

    def list_feedback(self, contact_id: str = None) -> List[FeedbackRecord]:
        with self._lock:
            return [f for f in self._feedback if not contact_id or f.contact_id == contact_id]

    def record_error(self, error: dict) -> dict:
        with self._lock:
            row = {
                "id": self._next_error_id,
                "resolved": 0,
                "created_at": utcnow().isoformat(),
                **error,
            }
            self._next_error_id += 1
            self._errors.append(row)
            return dict(row)

    def list_errors(self, phase: str = None, severity: str = None,
                    unresolved_only: bool = True) -> List[dict]:
        with self._lock:
            rows = [
                dict(e) for e in reversed(self._errors)
                if (not phase or e.get("phase") == phase)
                and (not severity or e.get("severity") == severity)
                and (not unresolved_only or not e.get("resolved"))
            ]
            return rows

    def resolve_error(self, error_id: int) -> bool:
        with self._lock:
            for e in self._errors:
                if e["id"] == error_id:
                    e["resolved"] = 1
                    return True
            return False


class InMemoryWeightStore(WeightStore):
    """Process-local weight table guarded by a lock."""

    def __init__(self, defaults: dict = None, min_weight: int = WEIGHT_MIN,
                 max_weight: int = WEIGHT_MAX):
        super().__init__(min_weight, max_weight)
        self._defaults = dict(defaults or DEFAULT_WEIGHTS)
        self._lock = threading.Lock()
        self._weights = {code: self.clamp(w) for code, w in self._defaults.items()}

    def _require(self, reason_code: str):
        if reason_code not in self._weights:
            raise ValueError(f"Unknown reason code '{reason_code}'")

    def get(self, reason_code: str) -> int:
        with self._lock:
            self._require(reason_code)
            return self._weights[reason_code]

    def dump(self) -> dict:
        with self._lock:
            return dict(self._weights)

    def adjust(self, reason_code: str, delta: int) -> int:
        with self._lock:
            self._require(reason_code)
            self._weights[reason_code] = self.clamp(self._weights[reason_code] + delta)
            return self._weights[reason_code]

    def set(self, reason_code: str, value: int) -> int:
        with self._lock:
            self._require(reason_code)
            self._weights[reason_code] = self.clamp(value)
            return self._weights[reason_code]

    def reset(self):
        with self._lock:
            self._weights = {code: self.clamp(w) for code, w in self._defaults.items()}
