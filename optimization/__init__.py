"""
Schedule optimization workflow - hands a draft timetable to the external
optimizer and brings the optimized result back as the system of record.

This package implements:
- Protocol client for the optimizer's HTTP API
- Export of the authoritative schedule into the optimizer's input format
- Atomic import of optimizer results into the schedule store
- Generation mode availability gated on optimizer health
- The export -> generate -> poll -> import orchestration engine
- Quality comparison of two stored schedules
"""

from .errors import (
    ErrorKind,
    OptimizationError,
    OptimizerUnavailable,
    ValidationError,
    OptimizerRejected,
    UnknownJob,
    ScheduleNotFound,
    EmptySchedule,
    MalformedResponse,
    ImportFailed,
    ConflictingOperation,
)
from .models import (
    GenerationMode,
    OptimizationMode,
    ModeAvailability,
    ScheduleGenerationRequest,
    ExportResult,
    JobState,
    JobStatus,
    ImportResult,
    ScheduleSummary,
    ScheduleComparison,
    ValidationReport,
    Stage,
    RunState,
    WorkflowResult,
)
from .store import ScheduleStore, InMemoryScheduleStore
from .client import OptimizerClient
from .export import ExportAdapter
from .importer import ImportAdapter
from .modes import ModeSelector
from .engine import OrchestrationEngine
from .service import OptimizationService

__all__ = [
    # Errors
    "ErrorKind",
    "OptimizationError",
    "OptimizerUnavailable",
    "ValidationError",
    "OptimizerRejected",
    "UnknownJob",
    "ScheduleNotFound",
    "EmptySchedule",
    "MalformedResponse",
    "ImportFailed",
    "ConflictingOperation",
    # Models
    "GenerationMode",
    "OptimizationMode",
    "ModeAvailability",
    "ScheduleGenerationRequest",
    "ExportResult",
    "JobState",
    "JobStatus",
    "ImportResult",
    "ScheduleSummary",
    "ScheduleComparison",
    "ValidationReport",
    "Stage",
    "RunState",
    "WorkflowResult",
    # Store
    "ScheduleStore",
    "InMemoryScheduleStore",
    # Components
    "OptimizerClient",
    "ExportAdapter",
    "ImportAdapter",
    "ModeSelector",
    "OrchestrationEngine",
    # Runtime
    "OptimizationService",
]
