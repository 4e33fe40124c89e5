"""
Salesflow - Engine Error Log

Batch work (the due-step scan, bulk enrollment, call-task creation, scoring
of a broken activity feed) must not stop at the first bad contact. The failing
item is reported through log_pipeline_error() and the batch moves on.

Each report is written to the "salesflow.error_handler" logger with the
structured extras, and, when a store is passed, appended to the store's error
log where operators can list and resolve it (GET /api/sequences/errors).

    try:
        advance(enrollment)
    except DeliveryError as e:
        log_pipeline_error(phase="sequence", error=e, enrollment_id=enrollment.id,
                           store=store)

    tasks = safe_execute(open_tasks, args=(call,), phase="call_tasks",
                         contact_id=call["contact_id"], fallback=[], store=store)
"""

import logging
import traceback
from typing import Any, Callable

logger = logging.getLogger("salesflow.error_handler")

LOG_LEVELS = {
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}
SEVERITIES = tuple(LOG_LEVELS)


def log_pipeline_error(
    phase: str,
    error: Exception = None,
    error_message: str = None,
    contact_id: str = None,
    enrollment_id: str = None,
    sequence_id: str = None,
    context: dict = None,
    severity: str = "warning",
    store=None,
) -> dict:
    """Report one failed item. Returns the error row (with its id when stored).

    `phase` names where it happened: sequence, enroll, scoring, call_tasks,
    scheduler. Severities outside warning/error/critical are recorded as
    warning. A store that cannot take the row only costs the stored copy;
    the log line has already been written.
    """
    if severity not in LOG_LEVELS:
        severity = "warning"
    error_type = type(error).__name__ if error is not None else "UnknownError"
    message = error_message or (str(error) if error is not None else "Unknown error")

    logger.log(
        LOG_LEVELS[severity], "Engine error in %s (%s): %s", phase, error_type, message,
        extra={"phase": phase, "contact_id": contact_id or "",
               "enrollment_id": enrollment_id or "", "sequence_id": sequence_id or ""},
    )

    row = {
        "phase": phase,
        "contact_id": contact_id,
        "enrollment_id": enrollment_id,
        "sequence_id": sequence_id,
        "error_type": error_type,
        "error_message": message,
        "context": context or {},
        "severity": severity,
    }
    if store is None:
        return row
    try:
        return store.record_error(row)
    except Exception as store_error:
        logger.error("Failed to record engine error in store: %s", store_error)
        return row


def safe_execute(
    fn: Callable,
    args: tuple = (),
    kwargs: dict = None,
    phase: str = "unknown",
    contact_id: str = None,
    fallback: Any = None,
    severity: str = "warning",
    store=None,
) -> Any:
    """Call fn(*args, **kwargs); on any exception report it and return fallback."""
    try:
        return fn(*args, **(kwargs or {}))
    except Exception as e:
        log_pipeline_error(
            phase=phase,
            error=e,
            contact_id=contact_id,
            context={"function": getattr(fn, "__name__", repr(fn)),
                     "traceback": traceback.format_exc()[-500:]},
            severity=severity,
            store=store,
        )
        return fallback


def get_errors(store, phase: str = None, severity: str = None,
               unresolved_only: bool = True) -> list:
    """Newest first."""
    return store.list_errors(phase=phase, severity=severity, unresolved_only=unresolved_only)


def resolve_error(store, error_id: int) -> bool:
    resolved = store.resolve_error(error_id)
    if not resolved:
        logger.warning("Cannot resolve unknown engine error %s", error_id)
    return resolved
