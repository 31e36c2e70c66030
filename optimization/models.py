"""
Data models for the optimization workflow.

Requests and results are immutable once built. Wire payloads use the
optimizer's camelCase keys; attributes use snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any

from .errors import ErrorKind, ValidationError, MalformedResponse


class GenerationMode(str, Enum):
    """How a schedule is produced."""
    MANUAL = "MANUAL"
    AI_ASSISTED = "AI_ASSISTED"
    FULLY_AUTOMATED = "FULLY_AUTOMATED"

    @property
    def requires_optimizer(self) -> bool:
        return self is not GenerationMode.MANUAL


@dataclass(frozen=True)
class ModeInfo:
    display_name: str
    description: str


# Presentation data lives here, not on the enum
MODE_INFO: dict[GenerationMode, ModeInfo] = {
    GenerationMode.MANUAL: ModeInfo(
        display_name="Manual",
        description="Build the timetable by hand; no optimizer involved.",
    ),
    GenerationMode.AI_ASSISTED: ModeInfo(
        display_name="AI-Assisted",
        description="Optimizer proposes a timetable that staff review before use.",
    ),
    GenerationMode.FULLY_AUTOMATED: ModeInfo(
        display_name="Fully Automated",
        description="Optimizer generates and imports the timetable end to end.",
    ),
}


class OptimizationMode(str, Enum):
    """Search effort requested from the optimizer."""
    FAST = "FAST"
    BALANCED = "BALANCED"
    THOROUGH = "THOROUGH"


DEFAULT_OPTIMIZATION_TIME_SECONDS = 120


def _parse_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field_name} '{value}' (expected one of: {allowed})")


@dataclass(frozen=True)
class ModeAvailability:
    """Whether a generation mode can be used right now."""
    mode: GenerationMode
    available: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        info = MODE_INFO[self.mode]
        return {
            "mode": self.mode.value,
            "displayName": info.display_name,
            "description": info.description,
            "available": self.available,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ScheduleGenerationRequest:
    """
    A request to optimize one schedule.

    Validated on construction; use create() to build one from loose input
    such as JSON bodies.
    """
    schedule_id: str
    mode: GenerationMode
    optimization_time_seconds: int = DEFAULT_OPTIMIZATION_TIME_SECONDS
    optimization_mode: OptimizationMode = OptimizationMode.BALANCED

    def __post_init__(self):
        if not isinstance(self.mode, GenerationMode):
            raise ValidationError(f"Invalid generation mode: {self.mode!r}")
        if not isinstance(self.optimization_mode, OptimizationMode):
            raise ValidationError(f"Invalid optimization mode: {self.optimization_mode!r}")
        seconds = self.optimization_time_seconds
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise ValidationError(
                f"optimizationTimeSeconds must be a positive integer, got {seconds!r}"
            )
        if self.schedule_id is None or str(self.schedule_id).strip() == "":
            raise ValidationError("scheduleId is required")

    @classmethod
    def create(
        cls,
        schedule_id,
        mode,
        optimization_time_seconds: Optional[Any] = None,
        optimization_mode: Optional[Any] = None,
    ) -> "ScheduleGenerationRequest":
        """Build a request from loose values, coercing strings to enums."""
        if schedule_id is None or str(schedule_id).strip() == "":
            raise ValidationError("scheduleId is required")
        if optimization_time_seconds is None:
            seconds = DEFAULT_OPTIMIZATION_TIME_SECONDS
        elif isinstance(optimization_time_seconds, bool):
            raise ValidationError("optimizationTimeSeconds must be a positive integer")
        else:
            try:
                seconds = int(optimization_time_seconds)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"optimizationTimeSeconds must be a positive integer, "
                    f"got {optimization_time_seconds!r}"
                )
            if seconds != optimization_time_seconds and not isinstance(optimization_time_seconds, str):
                raise ValidationError("optimizationTimeSeconds must be a whole number")

        return cls(
            schedule_id=str(schedule_id),
            mode=_parse_enum(GenerationMode, mode, "generation mode"),
            optimization_time_seconds=seconds,
            optimization_mode=_parse_enum(
                OptimizationMode,
                optimization_mode or OptimizationMode.BALANCED,
                "optimization mode",
            ),
        )

    def to_wire(self) -> dict:
        """Body for the optimizer's generate endpoint."""
        return {
            "optimizationTimeSeconds": self.optimization_time_seconds,
            "optimizationMode": self.optimization_mode.value,
            "generationMode": self.mode.value,
        }

    def to_dict(self) -> dict:
        return {"scheduleId": self.schedule_id, **self.to_wire()}


@dataclass(frozen=True)
class ExportResult:
    """Outcome of pushing a schedule snapshot to the optimizer."""
    success: bool
    schedule_id: str
    export_id: Optional[str] = None
    import_id: Optional[str] = None
    students_exported: int = 0
    courses_exported: int = 0
    teachers_exported: int = 0
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "scheduleId": self.schedule_id,
            "exportId": self.export_id,
            "importId": self.import_id,
            "studentsExported": self.students_exported,
            "coursesExported": self.courses_exported,
            "teachersExported": self.teachers_exported,
            "message": self.message,
        }


class JobState(str, Enum):
    """Optimizer job status. TIMEOUT is only ever produced locally."""
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.PROCESSING


@dataclass(frozen=True)
class JobStatus:
    """
    Latest known status of an optimizer job.

    Scores are present exactly when status is COMPLETED.
    """
    job_id: str
    status: JobState
    progress: int = 0
    message: str = ""
    elapsed_seconds: float = 0.0
    hard_score: Optional[int] = None
    soft_score: Optional[int] = None

    def __post_init__(self):
        if self.status is JobState.COMPLETED:
            if self.hard_score is None or self.soft_score is None:
                raise MalformedResponse(
                    f"Job {self.job_id} reported COMPLETED without hard/soft scores"
                )
        elif self.hard_score is not None or self.soft_score is not None:
            raise MalformedResponse(
                f"Job {self.job_id} carries scores while {self.status.value}"
            )
        if not 0 <= self.progress <= 100:
            raise MalformedResponse(f"Job {self.job_id} progress out of range: {self.progress}")

    @classmethod
    def from_wire(cls, job_id: str, data: dict) -> "JobStatus":
        """Parse the optimizer's status payload."""
        raw_status = str(data.get("status", "")).upper()
        # TIMEOUT is a local verdict; the optimizer never sends it
        if raw_status not in ("PROCESSING", "COMPLETED", "FAILED", "ERROR"):
            raise MalformedResponse(f"Job {job_id} has unrecognized status '{data.get('status')}'")
        status = JobState(raw_status)

        hard_score = soft_score = None
        if status is JobState.COMPLETED:
            hard_score = _optional_int(data.get("hardScore"))
            soft_score = _optional_int(data.get("softScore"))

        try:
            progress = int(data.get("progress") or 0)
            elapsed = float(data.get("elapsedSeconds") or 0.0)
        except (TypeError, ValueError):
            raise MalformedResponse(f"Job {job_id} status has non-numeric progress fields")

        return cls(
            job_id=str(data.get("jobId") or job_id),
            status=status,
            progress=max(0, min(100, progress)),
            message=data.get("message") or "",
            elapsed_seconds=elapsed,
            hard_score=hard_score,
            soft_score=soft_score,
        )

    @classmethod
    def timed_out(cls, job_id: str, message: str, elapsed_seconds: float,
                  progress: int = 0) -> "JobStatus":
        """Synthetic status for a poll budget that ran out locally."""
        return cls(
            job_id=job_id,
            status=JobState.TIMEOUT,
            progress=progress,
            message=message,
            elapsed_seconds=elapsed_seconds,
        )

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "elapsedSeconds": self.elapsed_seconds,
            "hardScore": self.hard_score,
            "softScore": self.soft_score,
        }


def _optional_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedResponse(f"Expected an integer score, got {value!r}")


@dataclass(frozen=True)
class ImportResult:
    """The optimized schedule is live. Produced once, by the import adapter."""
    success: bool
    schedule_id: str
    job_id: str
    sections_created: int
    slots_assigned: int
    students_scheduled: int
    hard_score: Optional[int]
    soft_score: Optional[int]
    sections_unscheduled: int = 0
    import_timestamp: datetime = field(default_factory=datetime.now)
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "scheduleId": self.schedule_id,
            "jobId": self.job_id,
            "sectionsCreated": self.sections_created,
            "slotsAssigned": self.slots_assigned,
            "studentsScheduled": self.students_scheduled,
            "sectionsUnscheduled": self.sections_unscheduled,
            "hardScore": self.hard_score,
            "softScore": self.soft_score,
            "importTimestamp": self.import_timestamp.isoformat(),
            "message": self.message,
        }


@dataclass(frozen=True)
class ScheduleSummary:
    """Quality figures of one stored schedule, as used by comparisons."""
    schedule_id: str
    name: str
    hard_score: int
    soft_score: int
    conflicts: int
    method: str


@dataclass(frozen=True)
class ScheduleComparison:
    """Read-only comparison of two stored schedules."""
    schedule1: ScheduleSummary
    schedule2: ScheduleSummary
    recommended_schedule_id: Optional[str]
    recommendation: str
    reasons: tuple[str, ...] = ()

    @property
    def equivalent(self) -> bool:
        return self.recommended_schedule_id is None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        for prefix, summary in (("schedule1", self.schedule1), ("schedule2", self.schedule2)):
            data[f"{prefix}Id"] = summary.schedule_id
            data[f"{prefix}Name"] = summary.name
            data[f"{prefix}HardScore"] = summary.hard_score
            data[f"{prefix}SoftScore"] = summary.soft_score
            data[f"{prefix}Conflicts"] = summary.conflicts
            data[f"{prefix}Method"] = summary.method
        data["recommendedScheduleId"] = self.recommended_schedule_id
        data["recommendation"] = self.recommendation
        data["reasons"] = list(self.reasons)
        return data


class Stage(str, Enum):
    """Workflow stage a failure is attributed to."""
    EXPORT = "EXPORT"
    GENERATE = "GENERATE"
    POLL = "POLL"
    IMPORT = "IMPORT"


class RunState(str, Enum):
    """States of one orchestration run."""
    INIT = "INIT"
    EXPORTING = "EXPORTING"
    EXPORT_FAILED = "EXPORT_FAILED"
    EXPORTED = "EXPORTED"
    GENERATING = "GENERATING"
    GENERATE_REQUEST_FAILED = "GENERATE_REQUEST_FAILED"
    GENERATED_ACCEPTED = "GENERATED_ACCEPTED"
    POLLING = "POLLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"
    IMPORTING = "IMPORTING"
    IMPORT_FAILED = "IMPORT_FAILED"
    DONE = "DONE"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATES


TERMINAL_RUN_STATES = frozenset({
    RunState.EXPORT_FAILED,
    RunState.GENERATE_REQUEST_FAILED,
    RunState.GENERATED_ACCEPTED,
    RunState.FAILED,
    RunState.ERROR,
    RunState.TIMEOUT,
    RunState.IMPORT_FAILED,
    RunState.DONE,
})

# Allowed transitions; anything else is a programming error in the engine
RUN_TRANSITIONS: dict[RunState, frozenset] = {
    RunState.INIT: frozenset({RunState.EXPORTING}),
    RunState.EXPORTING: frozenset({RunState.EXPORT_FAILED, RunState.EXPORTED}),
    RunState.EXPORTED: frozenset({RunState.GENERATING}),
    RunState.GENERATING: frozenset({
        RunState.GENERATE_REQUEST_FAILED,
        RunState.GENERATED_ACCEPTED,
        RunState.POLLING,
    }),
    RunState.POLLING: frozenset({
        RunState.COMPLETED,
        RunState.FAILED,
        RunState.ERROR,
        RunState.TIMEOUT,
    }),
    RunState.COMPLETED: frozenset({RunState.IMPORTING}),
    RunState.IMPORTING: frozenset({RunState.IMPORT_FAILED, RunState.DONE}),
}


@dataclass(frozen=True)
class WorkflowResult:
    """Structured outcome of one orchestration run."""
    success: bool
    schedule_id: str
    state: RunState
    stage: Optional[Stage] = None
    message: str = ""
    error_kind: Optional[ErrorKind] = None
    job_id: Optional[str] = None
    export_result: Optional[ExportResult] = None
    job_status: Optional[JobStatus] = None
    import_result: Optional[ImportResult] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "scheduleId": self.schedule_id,
            "state": self.state.value,
            "stage": self.stage.value if self.stage else None,
            "message": self.message,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "jobId": self.job_id,
            "export": self.export_result.to_dict() if self.export_result else None,
            "jobStatus": self.job_status.to_dict() if self.job_status else None,
            "import": self.import_result.to_dict() if self.import_result else None,
        }


@dataclass(frozen=True)
class ValidationReport:
    """Double-booking check of an imported schedule."""
    schedule_id: str
    total_slots: int
    conflicts: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.conflicts

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def to_dict(self) -> dict:
        return {
            "scheduleId": self.schedule_id,
            "valid": self.valid,
            "totalSlots": self.total_slots,
            "conflictCount": self.conflict_count,
            "conflicts": list(self.conflicts),
        }
