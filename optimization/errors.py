"""
Error taxonomy for the optimization workflow.

Every failure raised by the client, adapters or store carries an ErrorKind so
the engine can classify it without inspecting messages.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """How a failure should be treated by callers."""
    CONNECTIVITY = "connectivity"      # optimizer unreachable; retry after backoff
    VALIDATION = "validation"          # bad input; do not retry
    REMOTE_FAILURE = "remote_failure"  # optimizer said no; start a new job
    LOCAL_TIMEOUT = "local_timeout"    # gave up waiting; remote job may still run
    IMPORT_FAILURE = "import_failure"  # import rolled back; store unchanged
    CONFLICT = "conflict"              # another run owns this schedule


class OptimizationError(Exception):
    """Base class for all workflow errors."""

    kind: ErrorKind = ErrorKind.REMOTE_FAILURE

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.CONNECTIVITY


class OptimizerUnavailable(OptimizationError):
    """The optimizer could not be reached or timed out."""
    kind = ErrorKind.CONNECTIVITY


class ValidationError(OptimizationError):
    """Input was rejected before or by the optimizer."""
    kind = ErrorKind.VALIDATION


class OptimizerRejected(ValidationError):
    """The optimizer refused a payload or parameters as invalid."""


class UnknownJob(ValidationError):
    """The job ID was never issued or has expired on the optimizer."""

    def __init__(self, job_id: str):
        super().__init__(f"Unknown optimizer job: {job_id}", status_code=404)
        self.job_id = job_id


class ScheduleNotFound(ValidationError):
    """The schedule ID does not resolve to a persisted schedule."""

    def __init__(self, schedule_id):
        super().__init__(f"Schedule not found: {schedule_id}", status_code=404)
        self.schedule_id = schedule_id


class EmptySchedule(ValidationError):
    """The schedule has nothing to optimize (no students, courses or teachers)."""


class MalformedResponse(OptimizationError):
    """The optimizer answered with a payload that breaks the wire contract."""
    kind = ErrorKind.REMOTE_FAILURE


class ImportFailed(OptimizationError):
    """Applying an optimizer result failed and was rolled back."""
    kind = ErrorKind.IMPORT_FAILURE


class ConflictingOperation(OptimizationError):
    """An optimization run for the same schedule is already in flight."""
    kind = ErrorKind.CONFLICT

    def __init__(self, schedule_id):
        super().__init__(
            f"An optimization run for schedule {schedule_id} is already in progress",
            status_code=409,
        )
        self.schedule_id = schedule_id
