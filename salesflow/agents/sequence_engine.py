"""
Salesflow - Sequence Engine
Owns the enrollment lifecycle and the due-step scan.

Lifecycle:
    enroll -> active -> (email steps advance, task steps pause)
           -> waiting_task -> complete_task / scan sees task done -> active
           -> completed (steps exhausted) | stopped (manual, opt-out, sequence gone)

Modes for process_due_steps:
    hold     email steps stay pending; task steps still run
    dry_run  email steps are simulated (no dispatcher, no governor) but advance
    send     email steps go through the governor and the dispatcher

Runs never overlap (run lock). Each enrollment is re-read and processed under
the state lock, which enroll/stop/complete_task also take, so a stop issued
mid-run is honoured at the next enrollment boundary.
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from salesflow.agents.error_handler import log_pipeline_error
from salesflow.agents.sequence_templates import (
    SequenceTemplate, TemplateRegistry, build_template_variables,
)
from salesflow.config import SEQUENCE_PROCESS_LIMIT, SEQUENCE_SENDING_ENABLED
from salesflow.db.connection import gen_id
from salesflow.db.entities import (
    Enrollment, EnrollmentEvent, EnrollmentStatus, Interaction, Task,
    TaskStatus, utcnow,
)
from salesflow.errors import (
    ConfigurationError, DeliveryError, EnrollmentConflict, InvariantViolation,
    NotFound,
)
from salesflow.logging_config import get_agent_logger

logger = get_agent_logger("sequence_engine")

ACTIVE = EnrollmentStatus.ACTIVE.value
WAITING_TASK = EnrollmentStatus.WAITING_TASK.value
COMPLETED = EnrollmentStatus.COMPLETED.value
STOPPED = EnrollmentStatus.STOPPED.value


class Mode(str, Enum):
    HOLD = "hold"
    DRY_RUN = "dry_run"
    SEND = "send"


@dataclass
class EnrollResult:
    enrollment: Enrollment
    already_enrolled: bool = False

    def to_dict(self) -> dict:
        return {"enrollment": self.enrollment.to_dict(),
                "already_enrolled": self.already_enrolled}


@dataclass
class ProcessResult:
    mode: str
    processed: int = 0
    emails_sent: int = 0
    emails_dry_run: int = 0
    emails_held: int = 0
    emails_throttled: int = 0
    tasks_created: int = 0
    completed: int = 0
    stopped: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class SequenceEngine:
    """Enrollment state machine plus the scan-and-dispatch loop.

    Args:
        store: Repository holding contacts, enrollments and tasks.
        registry: TemplateRegistry for sequences and email templates.
        dispatcher: ActionDispatcher used for sends and task creation.
        governor: ThroughputGovernor consulted before every real send.
        sending_enabled: Global switch; send mode fails without it.
        clock: Returns the current naive-UTC time.
    """

    def __init__(self, store, registry: TemplateRegistry, dispatcher, governor=None,
                 sending_enabled: bool = SEQUENCE_SENDING_ENABLED,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.governor = governor
        self.sending_enabled = sending_enabled
        self.clock = clock
        self._run_lock = threading.Lock()
        self._state_lock = threading.RLock()

    # ─── MODE RESOLUTION ─────────────────────────────────────

    def resolve_mode(self, mode: str = None, dry_run: Optional[bool] = None,
                     ignore_delays: bool = False) -> str:
        """Pick the run mode.

        An explicit mode wins. Otherwise dry_run=True means dry_run,
        dry_run=False means send, and leaving both unset means send when
        sending is enabled and hold when it is not.
        """
        if mode is not None:
            raw = mode.value if isinstance(mode, Mode) else mode
            if raw not in [m.value for m in Mode]:
                raise ValueError(f"Unknown mode '{raw}', expected one of {[m.value for m in Mode]}")
            resolved = raw
        elif dry_run is True:
            resolved = Mode.DRY_RUN.value
        elif dry_run is False:
            resolved = Mode.SEND.value
        else:
            resolved = Mode.SEND.value if self.sending_enabled else Mode.HOLD.value

        if resolved == Mode.SEND.value and not self.sending_enabled:
            raise ConfigurationError(
                "Sequence sending disabled (set SEQUENCE_SENDING_ENABLED=true)"
            )
        if ignore_delays and resolved != Mode.DRY_RUN.value:
            raise ConfigurationError("ignore_delays is only allowed in dry_run mode")
        return resolved

    # ─── ENROLLMENT ──────────────────────────────────────────

    def enroll(self, contact_id: str, sequence_id: str,
               started_at: datetime = None) -> EnrollResult:
        """Put a contact into a sequence.

        Returns the existing enrollment (already_enrolled=True) when the
        contact is still running the same sequence.

        Raises:
            NotFound: unknown contact or sequence.
            EnrollmentConflict: contact is running a different sequence.
            ValueError: contact has opted out.
        """
        with self._state_lock:
            contact = self.store.get_contact(contact_id)
            if not contact:
                raise NotFound(f"Contact {contact_id} not found")
            sequence = self.registry.get_sequence(sequence_id)

            for existing in self.store.list_enrollments(contact_id=contact_id):
                if existing.is_terminal:
                    continue
                if existing.sequence_id == sequence_id:
                    return EnrollResult(existing, already_enrolled=True)
                raise EnrollmentConflict(
                    f"Contact {contact_id} is already in sequence {existing.sequence_id}",
                    enrollment_id=existing.id,
                )

            if contact.opted_out:
                raise ValueError(f"Contact {contact_id} has opted out")

            now = self.clock()
            start = started_at or now
            first = sequence.step_at(0)
            enrollment = Enrollment(
                contact_id=contact_id,
                sequence_id=sequence_id,
                id=gen_id("enr"),
                status=ACTIVE,
                current_step_index=0,
                next_action_at=start + timedelta(days=first.delay_days if first else 0),
                started_at=start,
                updated_at=now,
            )
            saved = self.store.save_enrollment(enrollment, activate=True)

        logger.info("Enrolled %s in %s", contact_id, sequence_id,
                    extra={"contact_id": contact_id, "enrollment_id": saved.id,
                           "sequence_id": sequence_id})
        return EnrollResult(saved, already_enrolled=False)

    def bulk_enroll(self, sequence_id: str, contact_ids: List[str]) -> dict:
        """Enroll many contacts; one failure never blocks the rest."""
        self.registry.get_sequence(sequence_id)
        results = {"added": 0, "already_enrolled": 0, "failed": 0, "errors": []}
        for contact_id in contact_ids:
            try:
                outcome = self.enroll(contact_id, sequence_id)
            except (NotFound, EnrollmentConflict, ValueError) as e:
                results["failed"] += 1
                results["errors"].append({"contact_id": contact_id, "error": str(e)})
                log_pipeline_error(phase="enroll", error=e, contact_id=contact_id,
                                   sequence_id=sequence_id, store=self.store)
                continue
            if outcome.already_enrolled:
                results["already_enrolled"] += 1
            else:
                results["added"] += 1
        return results

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self.store.get_enrollment(enrollment_id)
        if not enrollment:
            raise NotFound(f"Enrollment {enrollment_id} not found")
        return enrollment

    def stop(self, enrollment_id: str, reason: str = "manual") -> Enrollment:
        """Stop an enrollment for good. Stopping a finished enrollment is a no-op."""
        with self._state_lock:
            enrollment = self.get_enrollment(enrollment_id)
            if enrollment.is_terminal:
                return enrollment
            self._mark_stopped(enrollment, reason)
            saved = self._persist(enrollment)

        logger.info("Stopped enrollment %s (%s)", enrollment_id, reason,
                    extra={"enrollment_id": enrollment_id, "contact_id": saved.contact_id,
                           "sequence_id": saved.sequence_id})
        return saved

    def stop_for_contact(self, contact_id: str, reason: str) -> List[Enrollment]:
        """Stop every running enrollment of a contact (opt-out, lost deal)."""
        with self._state_lock:
            running = [e for e in self.store.list_enrollments(contact_id=contact_id)
                       if not e.is_terminal]
            return [self.stop(e.id, reason) for e in running]

    # ─── TASKS ───────────────────────────────────────────────

    def complete_task(self, task_id: str) -> dict:
        """Mark a task done and resume every enrollment waiting on it.

        Returns:
            {task, resumed, completed}. resumed counts every enrollment moved
            off the task, including those that finish because no step is left.
        """
        with self._state_lock:
            task = self.store.get_task(task_id)
            if not task:
                raise NotFound(f"Task {task_id} not found")
            if task.status == TaskStatus.DONE.value:
                return {"task": task, "resumed": 0, "completed": 0}

            now = self.clock()
            task.status = TaskStatus.DONE.value
            task.completed_at = now
            task = self.store.save_task(task)

            resumed = 0
            completed = 0
            waiting = [e for e in self.store.list_enrollments(statuses=[WAITING_TASK])
                       if e.waiting_task_id == task_id]
            for enrollment in waiting:
                sequence = self.registry.find_sequence(enrollment.sequence_id)
                if sequence is None:
                    self._force_stop_missing(enrollment)
                    continue
                if self._resume_after_task(enrollment, sequence, now):
                    completed += 1
                self._persist(enrollment)
                resumed += 1

        logger.info("Task %s completed, %d enrollment(s) resumed", task_id, resumed,
                    extra={"task_id": task_id})
        return {"task": task, "resumed": resumed, "completed": completed}

    def list_tasks(self, status: str = None) -> List[dict]:
        """Tasks newest first, with the contact's name and email attached."""
        if status is not None and status not in [s.value for s in TaskStatus]:
            raise ValueError(f"Unknown task status '{status}'")
        results = []
        for task in self.store.list_tasks(status=status):
            contact = self.store.get_contact(task.contact_id)
            item = task.to_dict()
            item["contact_name"] = contact.full_name if contact else ""
            item["contact_email"] = contact.email if contact else ""
            results.append(item)
        return results

    def get_stats(self) -> dict:
        """Status counts per known sequence plus open/done task counts."""
        by_sequence = {
            s["id"]: {ACTIVE: 0, WAITING_TASK: 0, COMPLETED: 0, STOPPED: 0, "total": 0}
            for s in self.registry.list_sequences()
        }
        for enrollment in self.store.list_enrollments():
            bucket = by_sequence.get(enrollment.sequence_id)
            if bucket is None:
                continue
            bucket["total"] += 1
            bucket[enrollment.status] = bucket.get(enrollment.status, 0) + 1

        tasks = self.store.list_tasks()
        open_count = sum(1 for t in tasks if t.status == TaskStatus.OPEN.value)
        done_count = sum(1 for t in tasks if t.status == TaskStatus.DONE.value)
        stats = {
            "sequences": by_sequence,
            "tasks": {"open": open_count, "done": done_count, "total": open_count + done_count},
            "sending_enabled": self.sending_enabled,
        }
        if self.governor is not None:
            stats["throughput"] = self.governor.snapshot()
        return stats

    # ─── DUE-STEP SCAN ───────────────────────────────────────

    def process_due_steps(self, limit: int = SEQUENCE_PROCESS_LIMIT, mode: str = None,
                          dry_run: Optional[bool] = None,
                          ignore_delays: bool = False) -> ProcessResult:
        """Execute every due step, at most `limit` of them.

        Args:
            limit: Cap on executed steps across all contacts. Held and
                throttled emails do not count.
            mode: "hold", "dry_run" or "send". Wins over dry_run.
            dry_run: Legacy switch, see resolve_mode().
            ignore_delays: Treat every active enrollment as due (dry_run only).

        Returns:
            ProcessResult with per-kind counts and the per-enrollment errors.

        Raises:
            ConfigurationError: send requested while sending is disabled, or
                ignore_delays outside dry_run. Per-enrollment failures never raise.
        """
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        resolved = self.resolve_mode(mode, dry_run, ignore_delays)
        result = ProcessResult(mode=resolved)

        with self._run_lock:
            started = time.monotonic()
            candidates = self.store.list_enrollments(statuses=[ACTIVE, WAITING_TASK])
            for candidate in candidates:
                if result.processed >= limit:
                    break
                with self._state_lock:
                    self._process_enrollment(candidate.id, resolved, ignore_delays, result)

            duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "Sequence run (%s): %d processed, %d sent, %d dry-run, %d held, %d throttled, "
            "%d tasks, %d completed, %d stopped, %d errors",
            resolved, result.processed, result.emails_sent, result.emails_dry_run,
            result.emails_held, result.emails_throttled, result.tasks_created,
            result.completed, result.stopped, len(result.errors),
            extra={"mode": resolved, "duration_ms": duration_ms},
        )
        return result

    def _process_enrollment(self, enrollment_id: str, mode: str, ignore_delays: bool,
                            result: ProcessResult):
        enrollment = None
        try:
            # Fresh read so a stop issued since the scan started wins
            enrollment = self.store.get_enrollment(enrollment_id)
            if enrollment is None or enrollment.is_terminal:
                return

            sequence = self.registry.find_sequence(enrollment.sequence_id)
            if sequence is None:
                self._force_stop_missing(enrollment)
                result.stopped += 1
                return

            contact = self.store.get_contact(enrollment.contact_id)
            if contact is None:
                raise NotFound(f"Contact {enrollment.contact_id} not found")
            if contact.opted_out:
                self._mark_stopped(enrollment, "opted_out")
                self._persist(enrollment)
                result.stopped += 1
                return

            now = self.clock()
            dirty = False

            if enrollment.status == WAITING_TASK:
                task = self.store.get_task(enrollment.waiting_task_id) if enrollment.waiting_task_id else None
                if not task or task.status != TaskStatus.DONE.value:
                    return
                if self._resume_after_task(enrollment, sequence, now):
                    result.completed += 1
                    self._persist(enrollment)
                    return
                dirty = True

            due = (ignore_delays or enrollment.next_action_at is None
                   or enrollment.next_action_at <= now)
            if not due:
                if dirty:
                    self._persist(enrollment)
                return

            step = sequence.step_at(enrollment.current_step_index)
            if step is None:
                self._mark_completed(enrollment, now)
                self._persist(enrollment)
                result.completed += 1
                return

            if step.type == "task":
                self._execute_task_step(enrollment, sequence, contact, step, now)
                result.tasks_created += 1
                result.processed += 1
                return

            if mode == Mode.HOLD.value:
                result.emails_held += 1
                if dirty:
                    self._persist(enrollment)
                return

            if mode == Mode.SEND.value and self.governor is not None and not self.governor.try_reserve():
                result.emails_throttled += 1
                if dirty:
                    self._persist(enrollment)
                return

            if self._execute_email_step(enrollment, sequence, contact, step, mode, now):
                result.completed += 1
            if mode == Mode.SEND.value:
                result.emails_sent += 1
            else:
                result.emails_dry_run += 1
            result.processed += 1

        except Exception as e:
            contact_id = enrollment.contact_id if enrollment else None
            sequence_id = enrollment.sequence_id if enrollment else None
            result.errors.append({
                "contact_id": contact_id,
                "enrollment_id": enrollment_id,
                "sequence_id": sequence_id,
                "error": str(e),
            })
            log_pipeline_error(
                phase="sequence", error=e,
                contact_id=contact_id,
                enrollment_id=enrollment_id,
                sequence_id=sequence_id,
                context={"mode": mode,
                         "step_index": enrollment.current_step_index if enrollment else None},
                severity="error" if not isinstance(e, DeliveryError) else "warning",
                store=self.store,
            )

    def _execute_email_step(self, enrollment: Enrollment, sequence: SequenceTemplate,
                            contact, step, mode: str, now: datetime) -> bool:
        """Send (or simulate) one email step and persist the advance. Returns True on completion."""
        provider_id = None
        if mode == Mode.SEND.value:
            try:
                variables = build_template_variables(contact)
                outcome = self.dispatcher.send_templated_message(contact, step.template_id, variables)
                if not outcome.get("sent"):
                    raise DeliveryError(f"Dispatcher did not send {step.template_id}")
            except Exception:
                if self.governor is not None:
                    self.governor.release()
                raise
            provider_id = outcome.get("provider_id")
        else:
            # Template must still resolve so a dry run catches broken sequences
            self.registry.resolve_template(step.template_id)

        enrollment.events.append(EnrollmentEvent(
            at=now, type="email", template_id=step.template_id,
            dry_run=mode == Mode.DRY_RUN.value,
        ))
        completed = self._advance(enrollment, sequence, now)
        self._persist(enrollment)

        if mode == Mode.SEND.value:
            try:
                self.store.append_interaction(contact.id, Interaction(
                    contact_id=contact.id, type="email_sent", channel="email",
                    direction="outbound", timestamp=now,
                    data={"template_id": step.template_id, "enrollment_id": enrollment.id,
                          "provider_id": provider_id},
                ))
            except Exception as e:
                # Step is already recorded as sent; only the contact log is missing
                log_pipeline_error(phase="interaction", error=e, contact_id=contact.id,
                                   enrollment_id=enrollment.id, store=self.store)

        logger.debug("Email step %s %s for %s", step.template_id,
                     "sent" if mode == Mode.SEND.value else "simulated", contact.id,
                     extra={"contact_id": contact.id, "enrollment_id": enrollment.id,
                            "mode": mode})
        return completed

    def _execute_task_step(self, enrollment: Enrollment, sequence: SequenceTemplate,
                           contact, step, now: datetime):
        task_id = self.dispatcher.create_task(contact, step.title, step.description)
        task = Task(
            id=task_id,
            contact_id=contact.id,
            title=step.title,
            description=step.description,
            enrollment_id=enrollment.id,
            sequence_id=sequence.id,
            step_index=enrollment.current_step_index,
            status=TaskStatus.OPEN.value,
            created_at=now,
        )
        enrollment.events.append(EnrollmentEvent(at=now, type="task", task_id=task_id,
                                                 title=step.title))
        enrollment.current_step_index += 1
        enrollment.status = WAITING_TASK
        enrollment.waiting_task_id = task_id
        enrollment.next_action_at = None
        enrollment.last_action_at = now
        enrollment.updated_at = now
        self._persist(enrollment, task=task)
        logger.info("Task step '%s' opened for %s", step.title, contact.id,
                    extra={"contact_id": contact.id, "enrollment_id": enrollment.id,
                           "task_id": task_id})

    # ─── STATE TRANSITIONS ───────────────────────────────────

    def _advance(self, enrollment: Enrollment, sequence: SequenceTemplate,
                 now: datetime) -> bool:
        """Move past the executed step; schedule the next one or complete."""
        enrollment.current_step_index += 1
        enrollment.last_action_at = now
        enrollment.updated_at = now
        next_step = sequence.step_at(enrollment.current_step_index)
        if next_step is None:
            self._mark_completed(enrollment, now)
            return True
        enrollment.next_action_at = now + timedelta(days=next_step.delay_days)
        return False

    def _resume_after_task(self, enrollment: Enrollment, sequence: SequenceTemplate,
                           now: datetime) -> bool:
        """Shared by complete_task and the scan. Returns True when the enrollment completes."""
        enrollment.waiting_task_id = None
        enrollment.updated_at = now
        next_step = sequence.step_at(enrollment.current_step_index)
        if next_step is None:
            self._mark_completed(enrollment, now)
            return True
        enrollment.status = ACTIVE
        enrollment.next_action_at = now + timedelta(days=next_step.delay_days)
        return False

    def _mark_completed(self, enrollment: Enrollment, now: datetime):
        enrollment.status = COMPLETED
        enrollment.next_action_at = None
        enrollment.waiting_task_id = None
        enrollment.updated_at = now

    def _mark_stopped(self, enrollment: Enrollment, reason: str):
        enrollment.status = STOPPED
        enrollment.stopped_reason = reason
        enrollment.next_action_at = None
        enrollment.waiting_task_id = None
        enrollment.updated_at = self.clock()

    def _force_stop_missing(self, enrollment: Enrollment):
        self._mark_stopped(enrollment, "sequence_missing")
        self._persist(enrollment)
        log_pipeline_error(
            phase="sequence",
            error=InvariantViolation(
                f"Sequence {enrollment.sequence_id} no longer exists; enrollment force-stopped"
            ),
            contact_id=enrollment.contact_id,
            enrollment_id=enrollment.id,
            sequence_id=enrollment.sequence_id,
            severity="error",
            store=self.store,
        )

    def _persist(self, enrollment: Enrollment, task: Task = None) -> Enrollment:
        """Save the enrollment; the store releases the contact's pointer once it is finished."""
        return self.store.save_enrollment(enrollment, task=task)
