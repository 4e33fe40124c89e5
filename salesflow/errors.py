"""
Error taxonomy shared by the sequence engine, the scorer and the API layer.

Engine-level operations (enroll, complete_task, stop, analyze, record_feedback)
raise these synchronously. The batch operation (process_due_steps) only raises
ConfigurationError; per-enrollment failures are collected in its result.
"""


class SalesflowError(Exception):
    """Base class for all engine errors."""
    pass


class NotFound(SalesflowError):
    """Unknown contact, sequence, template, task or enrollment."""
    pass


class ConfigurationError(SalesflowError):
    """Caller asked for something the current configuration forbids."""
    pass


class DeliveryError(SalesflowError):
    """Transient failure of the action dispatcher (email, task, call, SMS)."""
    pass


class InvariantViolation(SalesflowError):
    """Stored state broke an invariant (e.g. sequence deleted mid-flight)."""
    pass


class EnrollmentConflict(SalesflowError):
    """Contact already has a non-terminal enrollment in another sequence."""

    def __init__(self, message: str, enrollment_id: str = None):
        super().__init__(message)
        self.enrollment_id = enrollment_id
