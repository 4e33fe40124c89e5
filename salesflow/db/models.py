"""
Salesflow - Data Access Layer
SQLite-backed Repository and WeightStore. Every public method opens its own
connection; multi-row writes go through transaction() so they land together.
"""

import json
import logging
from typing import Iterable, List, Optional

from salesflow.config import DB_PATH, WEIGHT_MAX, WEIGHT_MIN
from salesflow.db.connection import gen_id, get_db_conn, transaction
from salesflow.db.entities import (
    DEFAULT_WEIGHTS, Contact, Enrollment, EnrollmentEvent, FeedbackRecord,
    Interaction, Task, apply_interaction, parse_iso, to_iso, utcnow,
)
from salesflow.db.init_db import init_db
from salesflow.db.repository import Repository, WeightStore
from salesflow.errors import NotFound

logger = logging.getLogger("salesflow.db")

CONTACT_COLUMNS = [
    "id", "email", "first_name", "last_name", "company", "phone", "mobile",
    "stage", "source", "city", "state", "timezone", "opted_out",
    "opted_out_reason", "emails_sent", "emails_opened", "emails_clicked",
    "last_email_at", "last_contact_at", "last_meeting_at",
    "last_interaction_at", "active_enrollment_id", "created_at", "updated_at",
]
CONTACT_DATES = {"last_email_at", "last_contact_at", "last_meeting_at",
                 "last_interaction_at", "created_at", "updated_at"}
# Written by apply_interaction()
ROLLUP_COLUMNS = ("emails_sent", "emails_opened", "emails_clicked", "last_email_at",
                  "last_contact_at", "last_meeting_at", "last_interaction_at", "updated_at")

ENROLLMENT_COLUMNS = [
    "id", "contact_id", "sequence_id", "status", "current_step_index",
    "next_action_at", "waiting_task_id", "started_at", "updated_at",
    "last_action_at", "stopped_reason", "events",
]

TASK_COLUMNS = [
    "id", "contact_id", "enrollment_id", "sequence_id", "step_index", "title",
    "description", "status", "created_at", "completed_at",
]


# ─── ROW MAPPING ────────────────────────────────────────────────

def _contact_to_row(contact: Contact) -> list:
    values = []
    for col in CONTACT_COLUMNS:
        value = getattr(contact, col)
        if col in CONTACT_DATES:
            value = to_iso(value)
        elif col == "opted_out":
            value = 1 if value else 0
        values.append(value)
    return values


def _row_to_contact(row) -> Contact:
    data = dict(row)
    for col in CONTACT_DATES:
        data[col] = parse_iso(data.get(col))
    data["opted_out"] = bool(data.get("opted_out"))
    for col in ("first_name", "last_name", "company", "phone", "mobile",
                "city", "state", "timezone"):
        data[col] = data.get(col) or ""
    return Contact(**{col: data[col] for col in CONTACT_COLUMNS})


def _row_to_interaction(row) -> Interaction:
    return Interaction(
        id=row["id"],
        contact_id=row["contact_id"],
        type=row["type"],
        channel=row["channel"],
        direction=row["direction"],
        data=json.loads(row["data"] or "{}"),
        timestamp=parse_iso(row["timestamp"]),
    )


def _enrollment_to_row(enrollment: Enrollment) -> list:
    return [
        enrollment.id, enrollment.contact_id, enrollment.sequence_id,
        enrollment.status, enrollment.current_step_index,
        to_iso(enrollment.next_action_at), enrollment.waiting_task_id,
        to_iso(enrollment.started_at), to_iso(enrollment.updated_at),
        to_iso(enrollment.last_action_at), enrollment.stopped_reason,
        json.dumps([e.to_dict() for e in enrollment.events]),
    ]


def _row_to_enrollment(row) -> Enrollment:
    return Enrollment(
        id=row["id"],
        contact_id=row["contact_id"],
        sequence_id=row["sequence_id"],
        status=row["status"],
        current_step_index=row["current_step_index"],
        next_action_at=parse_iso(row["next_action_at"]),
        waiting_task_id=row["waiting_task_id"],
        started_at=parse_iso(row["started_at"]),
        updated_at=parse_iso(row["updated_at"]),
        last_action_at=parse_iso(row["last_action_at"]),
        stopped_reason=row["stopped_reason"],
        events=[EnrollmentEvent.from_dict(e) for e in json.loads(row["events"] or "[]")],
    )


def _task_to_row(task: Task) -> list:
    return [
        task.id, task.contact_id, task.enrollment_id, task.sequence_id,
        task.step_index, task.title, task.description, task.status,
        to_iso(task.created_at), to_iso(task.completed_at),
    ]


def _row_to_task(row) -> Task:
    return Task(
        id=row["id"],
        contact_id=row["contact_id"],
        enrollment_id=row["enrollment_id"],
        sequence_id=row["sequence_id"],
        step_index=row["step_index"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        created_at=parse_iso(row["created_at"]),
        completed_at=parse_iso(row["completed_at"]),
    )


def _row_to_feedback(row) -> FeedbackRecord:
    return FeedbackRecord(
        id=row["id"],
        contact_id=row["contact_id"],
        reason_code=row["reason_code"],
        outcome=row["outcome"],
        notes=row["notes"] or "",
        called_by=row["called_by"] or "",
        call_duration=row["call_duration"],
        recommendation_id=row["recommendation_id"],
        created_at=parse_iso(row["created_at"]),
    )


def _upsert(conn, table: str, columns: list, values: list):
    placeholders = ",".join("?" for _ in columns)
    conn.execute(
        f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        values,
    )


# ─── REPOSITORY ─────────────────────────────────────────────────

class SqliteRepository(Repository):
    """Repository over the schema in salesflow.db.init_db."""

    def __init__(self, db_path: str = None, initialize: bool = True):
        self.db_path = db_path or DB_PATH
        if initialize:
            init_db(self.db_path)

    # ─── CONTACTS ───────────────────────────────────────────

    def create_contact(self, contact: Contact) -> Contact:
        contact.id = contact.id or gen_id("con")
        now = utcnow()
        contact.created_at = contact.created_at or now
        contact.updated_at = contact.updated_at or now
        with transaction(self.db_path) as conn:
            placeholders = ",".join("?" for _ in CONTACT_COLUMNS)
            conn.execute(
                f"INSERT INTO contacts ({', '.join(CONTACT_COLUMNS)}) VALUES ({placeholders})",
                _contact_to_row(contact),
            )
        return self.get_contact(contact.id)

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with get_db_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM contacts WHERE id=?", (contact_id,)).fetchone()
        return _row_to_contact(row) if row else None

    def find_contacts(self, stage: str = None, has_phone: bool = None,
                      opted_out: bool = None, limit: int = None,
                      offset: int = 0) -> List[Contact]:
        query = "SELECT * FROM contacts WHERE 1=1"
        params = []
        if stage:
            query += " AND stage=?"
            params.append(stage)
        if has_phone is True:
            query += " AND (COALESCE(phone, '') != '' OR COALESCE(mobile, '') != '')"
        elif has_phone is False:
            query += " AND COALESCE(phone, '') = '' AND COALESCE(mobile, '') = ''"
        if opted_out is not None:
            query += " AND opted_out=?"
            params.append(1 if opted_out else 0)
        query += " ORDER BY rowid LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, offset])
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_contact(r) for r in rows]

    def save_contact(self, contact: Contact) -> Contact:
        with transaction(self.db_path) as conn:
            self._write_contact(conn, contact)
        return self.get_contact(contact.id)

    def update_contact(self, contact_id: str, **fields) -> Contact:
        unknown = [f for f in fields if f == "id" or f not in CONTACT_COLUMNS]
        if unknown:
            raise ValueError(f"Unknown contact field(s): {', '.join(unknown)}")
        if fields:
            with transaction(self.db_path) as conn:
                cursor = self._update_contact_columns(conn, contact_id, fields)
                if cursor.rowcount == 0:
                    raise NotFound(f"Contact {contact_id} not found")
        contact = self.get_contact(contact_id)
        if contact is None:
            raise NotFound(f"Contact {contact_id} not found")
        return contact

    def _update_contact_columns(self, conn, contact_id: str, fields: dict, where: str = "",
                                params: tuple = ()):
        values = []
        for col, value in fields.items():
            if col in CONTACT_DATES:
                value = to_iso(value)
            elif col == "opted_out":
                value = 1 if value else 0
            values.append(value)
        assignments = ", ".join(f"{c}=?" for c in fields)
        return conn.execute(
            f"UPDATE contacts SET {assignments} WHERE id=?{where}",
            values + [contact_id] + list(params),
        )

    def _write_contact(self, conn, contact: Contact):
        columns = [c for c in CONTACT_COLUMNS if c != "id"]
        values = [v for c, v in zip(CONTACT_COLUMNS, _contact_to_row(contact)) if c != "id"]
        fields = ", ".join(f"{c}=?" for c in columns)
        cursor = conn.execute(f"UPDATE contacts SET {fields} WHERE id=?", values + [contact.id])
        if cursor.rowcount == 0:
            raise NotFound(f"Contact {contact.id} not found")

    def append_interaction(self, contact_id: str, interaction: Interaction) -> Interaction:
        interaction.id = interaction.id or gen_id("int")
        interaction.contact_id = contact_id
        interaction.timestamp = interaction.timestamp or utcnow()
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM contacts WHERE id=?", (contact_id,)).fetchone()
            if not row:
                raise NotFound(f"Contact {contact_id} not found")
            conn.execute("""
                INSERT INTO interactions (id, contact_id, type, channel, direction, data, timestamp)
                VALUES (?,?,?,?,?,?,?)
            """, (
                interaction.id, contact_id, interaction.type, interaction.channel,
                interaction.direction, json.dumps(interaction.data or {}, default=str),
                to_iso(interaction.timestamp),
            ))
            # Re-read under the write lock the INSERT took
            row = conn.execute("SELECT * FROM contacts WHERE id=?", (contact_id,)).fetchone()
            contact = _row_to_contact(row)
            apply_interaction(contact, interaction)
            self._update_contact_columns(
                conn, contact_id, {col: getattr(contact, col) for col in ROLLUP_COLUMNS}
            )
        return interaction

    def get_interactions(self, contact_id: str, limit: int = 50) -> List[Interaction]:
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM interactions WHERE contact_id=? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (contact_id, limit),
            ).fetchall()
        return [_row_to_interaction(r) for r in rows]

    # ─── ENROLLMENTS & TASKS ────────────────────────────────

    def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        with get_db_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM enrollments WHERE id=?", (enrollment_id,)).fetchone()
        return _row_to_enrollment(row) if row else None

    def list_enrollments(self, contact_id: str = None,
                         statuses: Iterable[str] = None) -> List[Enrollment]:
        query = """
            SELECT e.* FROM enrollments e
            JOIN contacts c ON c.id = e.contact_id
            WHERE 1=1
        """
        params = []
        if contact_id:
            query += " AND e.contact_id=?"
            params.append(contact_id)
        statuses = list(statuses or [])
        if statuses:
            query += f" AND e.status IN ({','.join('?' for _ in statuses)})"
            params.extend(statuses)
        query += " ORDER BY c.rowid, e.rowid"
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_enrollment(r) for r in rows]

    def save_enrollment(self, enrollment: Enrollment, task: Task = None,
                        activate: bool = False) -> Enrollment:
        enrollment.id = enrollment.id or gen_id("enr")
        with transaction(self.db_path) as conn:
            exists = conn.execute(
                "SELECT 1 FROM contacts WHERE id=?", (enrollment.contact_id,)
            ).fetchone()
            if not exists:
                raise NotFound(f"Contact {enrollment.contact_id} not found")
            # UPDATE-then-INSERT keeps the original rowid, which fixes scan order
            values = _enrollment_to_row(enrollment)
            fields = ", ".join(f"{c}=?" for c in ENROLLMENT_COLUMNS[1:])
            cursor = conn.execute(
                f"UPDATE enrollments SET {fields} WHERE id=?", values[1:] + [enrollment.id]
            )
            if cursor.rowcount == 0:
                placeholders = ",".join("?" for _ in ENROLLMENT_COLUMNS)
                conn.execute(
                    f"INSERT INTO enrollments ({', '.join(ENROLLMENT_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
            if task is not None:
                self._write_task(conn, task)
            touched = {"updated_at": enrollment.updated_at or utcnow()}
            if activate:
                self._update_contact_columns(
                    conn, enrollment.contact_id,
                    {"active_enrollment_id": enrollment.id, **touched},
                )
            elif enrollment.is_terminal:
                self._update_contact_columns(
                    conn, enrollment.contact_id, {"active_enrollment_id": None, **touched},
                    where=" AND active_enrollment_id=?", params=(enrollment.id,),
                )
        return self.get_enrollment(enrollment.id)

    def get_task(self, task_id: str) -> Optional[Task]:
        with get_db_conn(self.db_path) as conn:
            row = conn.execute("SELECT * FROM sequence_tasks WHERE id=?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def save_task(self, task: Task) -> Task:
        with transaction(self.db_path) as conn:
            self._write_task(conn, task)
        return self.get_task(task.id)

    def _write_task(self, conn, task: Task):
        values = _task_to_row(task)
        fields = ", ".join(f"{c}=?" for c in TASK_COLUMNS[1:])
        cursor = conn.execute(
            f"UPDATE sequence_tasks SET {fields} WHERE id=?", values[1:] + [task.id]
        )
        if cursor.rowcount == 0:
            placeholders = ",".join("?" for _ in TASK_COLUMNS)
            conn.execute(
                f"INSERT INTO sequence_tasks ({', '.join(TASK_COLUMNS)}) VALUES ({placeholders})",
                values,
            )

    def list_tasks(self, status: str = None) -> List[Task]:
        query = "SELECT * FROM sequence_tasks"
        params = []
        if status:
            query += " WHERE status=?"
            params.append(status)
        query += " ORDER BY created_at DESC, rowid DESC"
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_task(r) for r in rows]

    # ─── FEEDBACK ───────────────────────────────────────────

    def append_feedback(self, record: FeedbackRecord) -> FeedbackRecord:
        with transaction(self.db_path) as conn:
            conn.execute("""
                INSERT INTO call_feedback (id, contact_id, reason_code, outcome, notes,
                    called_by, call_duration, recommendation_id, created_at)
                VALUES (?,?,?,?,?,?,?,?,?)
            """, (
                record.id, record.contact_id, record.reason_code, record.outcome,
                record.notes, record.called_by, record.call_duration,
                record.recommendation_id, to_iso(record.created_at),
            ))
        return record

    def list_feedback(self, contact_id: str = None) -> List[FeedbackRecord]:
        query = "SELECT * FROM call_feedback"
        params = []
        if contact_id:
            query += " WHERE contact_id=?"
            params.append(contact_id)
        query += " ORDER BY rowid"
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_feedback(r) for r in rows]

    # ─── ERROR LOG ──────────────────────────────────────────

    def record_error(self, error: dict) -> dict:
        with transaction(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT INTO pipeline_errors (phase, contact_id, enrollment_id, sequence_id,
                    error_type, error_message, context, severity)
                VALUES (?,?,?,?,?,?,?,?)
            """, (
                error.get("phase"), error.get("contact_id"), error.get("enrollment_id"),
                error.get("sequence_id"), error.get("error_type"),
                error.get("error_message"), json.dumps(error.get("context") or {}, default=str),
                error.get("severity", "warning"),
            ))
            row = conn.execute(
                "SELECT * FROM pipeline_errors WHERE id=?", (cursor.lastrowid,)
            ).fetchone()
        return dict(row)

    def list_errors(self, phase: str = None, severity: str = None,
                    unresolved_only: bool = True) -> List[dict]:
        query = "SELECT * FROM pipeline_errors WHERE 1=1"
        params = []
        if phase:
            query += " AND phase=?"
            params.append(phase)
        if severity:
            query += " AND severity=?"
            params.append(severity)
        if unresolved_only:
            query += " AND resolved=0"
        query += " ORDER BY id DESC"
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        results = []
        for r in rows:
            item = dict(r)
            item["context"] = json.loads(item.get("context") or "{}")
            results.append(item)
        return results

    def resolve_error(self, error_id: int) -> bool:
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE pipeline_errors SET resolved=1 WHERE id=?", (error_id,)
            )
        return cursor.rowcount > 0


# ─── WEIGHTS ────────────────────────────────────────────────────

class SqliteWeightStore(WeightStore):
    """reason_weights table. adjust() is a single UPDATE so concurrent writers never lose a step."""

    def __init__(self, db_path: str = None, defaults: dict = None,
                 min_weight: int = WEIGHT_MIN, max_weight: int = WEIGHT_MAX):
        super().__init__(min_weight, max_weight)
        self.db_path = db_path or DB_PATH
        self._defaults = dict(defaults or DEFAULT_WEIGHTS)
        init_db(self.db_path, weights=self._defaults)

    def get(self, reason_code: str) -> int:
        with get_db_conn(self.db_path) as conn:
            row = conn.execute(
                "SELECT weight FROM reason_weights WHERE reason_code=?", (reason_code,)
            ).fetchone()
        if not row:
            raise ValueError(f"Unknown reason code '{reason_code}'")
        return row["weight"]

    def dump(self) -> dict:
        with get_db_conn(self.db_path) as conn:
            rows = conn.execute("SELECT reason_code, weight FROM reason_weights").fetchall()
        return {r["reason_code"]: r["weight"] for r in rows}

    def adjust(self, reason_code: str, delta: int) -> int:
        with transaction(self.db_path) as conn:
            cursor = conn.execute("""
                UPDATE reason_weights
                SET weight = MAX(?, MIN(?, weight + ?)), updated_at = ?
                WHERE reason_code=?
            """, (self.min_weight, self.max_weight, int(delta), to_iso(utcnow()), reason_code))
            if cursor.rowcount == 0:
                raise ValueError(f"Unknown reason code '{reason_code}'")
            row = conn.execute(
                "SELECT weight FROM reason_weights WHERE reason_code=?", (reason_code,)
            ).fetchone()
        return row["weight"]

    def set(self, reason_code: str, value: int) -> int:
        clamped = self.clamp(value)
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE reason_weights SET weight=?, updated_at=? WHERE reason_code=?",
                (clamped, to_iso(utcnow()), reason_code),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Unknown reason code '{reason_code}'")
        return clamped

    def reset(self):
        with transaction(self.db_path) as conn:
            for code, weight in self._defaults.items():
                _upsert(conn, "reason_weights", ["reason_code", "weight", "updated_at"],
                        [code, self.clamp(weight), to_iso(utcnow())])
        logger.info("Reason weights reset to defaults")
