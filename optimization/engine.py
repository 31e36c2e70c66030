"""
Orchestration Engine - export -> generate -> poll -> import.

Drives one optimization run per schedule through the RunState machine:

    INIT -> EXPORTING -> EXPORT_FAILED
                      -> EXPORTED -> GENERATING -> GENERATE_REQUEST_FAILED
                                                -> GENERATED_ACCEPTED (fire-and-forget)
                                                -> POLLING -> FAILED | ERROR | TIMEOUT
                                                           -> COMPLETED -> IMPORTING -> IMPORT_FAILED
                                                                                     -> DONE

At most one run per schedule is in flight; a second request fails fast with
ConflictingOperation. Runs for different schedules are independent.
Client and adapter failures are classified into a WorkflowResult and never
reported as success.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from shared.logging import get_logger, correlation_context, set_job_id

from .client import OptimizerClient
from .errors import (
    ErrorKind,
    OptimizationError,
    OptimizerUnavailable,
    ValidationError,
    ConflictingOperation,
    ScheduleNotFound,
)
from .export import ExportAdapter
from .importer import ImportAdapter
from .modes import ModeSelector
from .models import (
    JobState,
    JobStatus,
    RunState,
    RUN_TRANSITIONS,
    ScheduleComparison,
    ScheduleGenerationRequest,
    ScheduleSummary,
    Stage,
    WorkflowResult,
)
from .store import ScheduleStore

log = get_logger("optimization", "engine")

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 60

# Remote terminal status -> run state
_POLL_OUTCOMES = {
    JobState.COMPLETED: RunState.COMPLETED,
    JobState.FAILED: RunState.FAILED,
    JobState.ERROR: RunState.ERROR,
    JobState.TIMEOUT: RunState.TIMEOUT,
}


@dataclass
class ActiveRun:
    """Bookkeeping for one in-flight run."""
    schedule_id: str
    correlation_id: str
    wait_for_completion: bool
    state: RunState = RunState.INIT
    job_id: Optional[str] = None
    progress: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def advance(self, new_state: RunState):
        allowed = RUN_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise RuntimeError(
                f"Illegal run transition {self.state.value} -> {new_state.value} "
                f"for schedule {self.schedule_id}"
            )
        log.debug("optimization.engine.transition",
                  from_state=self.state.value, to_state=new_state.value)
        self.state = new_state

    def to_dict(self) -> dict:
        return {
            "scheduleId": self.schedule_id,
            "correlationId": self.correlation_id,
            "state": self.state.value,
            "jobId": self.job_id,
            "progress": self.progress,
            "waitForCompletion": self.wait_for_completion,
            "startedAt": self.started_at.isoformat(),
            "cancelRequested": self.cancel_event.is_set(),
        }


class OrchestrationEngine:
    """
    Workflow core for optimizer-backed schedule generation.

    Usage:
        engine = OrchestrationEngine(store, client, exporter, importer, modes)
        result = await engine.run(request, wait_for_completion=True)
        if result.success:
            print(result.import_result.slots_assigned)
    """

    def __init__(
        self,
        store: ScheduleStore,
        client: OptimizerClient,
        export_adapter: ExportAdapter,
        import_adapter: ImportAdapter,
        mode_selector: ModeSelector,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
    ):
        if poll_interval < 0:
            raise ValueError("poll_interval must not be negative")
        if max_poll_attempts < 1:
            raise ValueError("max_poll_attempts must be at least 1")

        self.store = store
        self.client = client
        self.export_adapter = export_adapter
        self.import_adapter = import_adapter
        self.mode_selector = mode_selector
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts

        # Single-flight guard, keyed by schedule ID
        self._runs: dict[str, ActiveRun] = {}

    @property
    def poll_budget_seconds(self) -> float:
        """How long a waited run polls before giving up locally."""
        return self.poll_interval * self.max_poll_attempts

    @property
    def poll_deadline_seconds(self) -> float:
        """Hard limit on the poll stage: the budget plus one slow status call."""
        return self.poll_budget_seconds + self.client.request_timeout

    # --- Public operations ---

    async def run(
        self,
        request: ScheduleGenerationRequest,
        wait_for_completion: bool = False,
    ) -> WorkflowResult:
        """
        Run the optimization workflow for one schedule.

        Fire-and-forget (default) returns once the optimizer has accepted the
        generation request, in state GENERATED_ACCEPTED with the job ID.
        wait_for_completion polls until a terminal status and imports on
        COMPLETED.

        Raises:
            ValidationError: MANUAL mode or unknown schedule
            OptimizerUnavailable: the requested mode is currently unavailable
            ConflictingOperation: a run for this schedule is already in flight
        """
        schedule_id = request.schedule_id
        if not request.mode.requires_optimizer:
            raise ValidationError(
                f"{request.mode.value} generation does not use the optimizer"
            )
        if self.store.get_schedule(schedule_id) is None:
            raise ScheduleNotFound(schedule_id)

        if schedule_id in self._runs:
            log.warning("optimization.engine.conflicting_run",
                        schedule_id=schedule_id,
                        active_state=self._runs[schedule_id].state.value)
            raise ConflictingOperation(schedule_id)

        run = ActiveRun(
            schedule_id=schedule_id,
            correlation_id=str(uuid.uuid4()),
            wait_for_completion=wait_for_completion,
        )
        self._runs[schedule_id] = run

        try:
            with correlation_context(run.correlation_id, schedule_id=schedule_id):
                availability = await self.mode_selector.check(request.mode)
                if not availability.available:
                    log.warning("optimization.engine.mode_unavailable",
                                mode=request.mode.value, reason=availability.reason)
                    raise OptimizerUnavailable(
                        f"{request.mode.value} is unavailable: {availability.reason}"
                    )

                log.info("optimization.engine.run_started",
                         mode=request.mode.value,
                         optimization_mode=request.optimization_mode.value,
                         time_budget=request.optimization_time_seconds,
                         wait_for_completion=wait_for_completion)

                result = await self._execute(run, request)

                log.info("optimization.engine.run_finished",
                         success=result.success,
                         state=result.state.value,
                         stage=result.stage.value if result.stage else None,
                         job_id=result.job_id)
                return result
        except asyncio.CancelledError:
            log.warning("optimization.engine.run_cancelled",
                        schedule_id=schedule_id,
                        state=run.state.value,
                        job_id=run.job_id)
            raise
        finally:
            self._runs.pop(schedule_id, None)

    async def job_status(self, job_id: str) -> JobStatus:
        """Latest status of a job; for fire-and-forget callers."""
        return await self.client.job_status(job_id)

    async def cancel(self, schedule_id: str) -> bool:
        """
        Stop waiting on an in-flight run.

        The run ends as TIMEOUT; the remote job is left running and can
        still be observed through job_status().
        """
        run = self._runs.get(str(schedule_id))
        if run is None:
            return False
        run.cancel_event.set()
        log.info("optimization.engine.cancel_requested",
                 schedule_id=run.schedule_id, state=run.state.value, job_id=run.job_id)
        return True

    def active_runs(self) -> list[dict]:
        return [run.to_dict() for run in self._runs.values()]

    def compare(self, schedule_id1: str, schedule_id2: str) -> ScheduleComparison:
        """
        Recommend the better of two stored schedules.

        Lower hard score wins; on a tie, lower soft score wins; otherwise the
        two are reported as equivalent. Neither schedule is modified.
        """
        first = self._summarize(schedule_id1)
        second = self._summarize(schedule_id2)

        reasons = []
        if first.hard_score == 0 and second.hard_score != 0:
            reasons.append(f"{first.name} is feasible (no hard violations) while "
                           f"{second.name} has a hard score of {second.hard_score}")
        elif second.hard_score == 0 and first.hard_score != 0:
            reasons.append(f"{second.name} is feasible (no hard violations) while "
                           f"{first.name} has a hard score of {first.hard_score}")
        elif first.hard_score != second.hard_score:
            better = first if first.hard_score < second.hard_score else second
            reasons.append(f"{better.name} has fewer hard violations "
                           f"({first.hard_score} vs {second.hard_score})")
        else:
            reasons.append(f"Both schedules have a hard score of {first.hard_score}, "
                           f"so soft scores decide")
            if first.soft_score != second.soft_score:
                better = first if first.soft_score < second.soft_score else second
                reasons.append(f"{better.name} has the lower soft score "
                               f"({first.soft_score} vs {second.soft_score})")

        if first.conflicts != second.conflicts:
            fewer = first if first.conflicts < second.conflicts else second
            reasons.append(f"{fewer.name} has fewer recorded conflicts "
                           f"({first.conflicts} vs {second.conflicts})")

        key1 = (first.hard_score, first.soft_score)
        key2 = (second.hard_score, second.soft_score)
        if key1 < key2:
            winner = first
        elif key2 < key1:
            winner = second
        else:
            winner = None

        if winner is None:
            recommendation = (f"{first.name} and {second.name} are equivalent; "
                              f"neither is recommended over the other")
        else:
            recommendation = f"Recommend {winner.name}"

        comparison = ScheduleComparison(
            schedule1=first,
            schedule2=second,
            recommended_schedule_id=winner.schedule_id if winner else None,
            recommendation=recommendation,
            reasons=tuple(reasons),
        )
        log.info("optimization.engine.compared",
                 schedule1=first.schedule_id,
                 schedule2=second.schedule_id,
                 recommended=comparison.recommended_schedule_id)
        return comparison

    # --- Workflow ---

    async def _execute(self, run: ActiveRun, request: ScheduleGenerationRequest) -> WorkflowResult:
        schedule_id = run.schedule_id

        # Export
        run.advance(RunState.EXPORTING)
        start = log.stage_start("export")
        try:
            export_result = await self.export_adapter.export(schedule_id)
        except OptimizationError as e:
            log.stage_complete("export", start, success=False, error=e.message)
            return self._failure(run, RunState.EXPORT_FAILED, Stage.EXPORT, e)

        if not export_result.success:
            log.stage_complete("export", start, success=False, error=export_result.message)
            run.advance(RunState.EXPORT_FAILED)
            return WorkflowResult(
                success=False,
                schedule_id=schedule_id,
                state=run.state,
                stage=Stage.EXPORT,
                message=export_result.message or "Optimizer refused the export",
                error_kind=ErrorKind.REMOTE_FAILURE,
                export_result=export_result,
            )
        log.stage_complete("export", start,
                           export_id=export_result.export_id,
                           students=export_result.students_exported,
                           courses=export_result.courses_exported,
                           teachers=export_result.teachers_exported)
        run.advance(RunState.EXPORTED)

        # Generate
        run.advance(RunState.GENERATING)
        start = log.stage_start("generate")
        try:
            job_id = await self.client.request_generation(request)
        except OptimizationError as e:
            log.stage_complete("generate", start, success=False, error=e.message)
            return self._failure(run, RunState.GENERATE_REQUEST_FAILED, Stage.GENERATE, e,
                                 export_result=export_result)
        log.stage_complete("generate", start, job_id=job_id)
        run.job_id = job_id
        set_job_id(job_id)

        if not run.wait_for_completion:
            run.advance(RunState.GENERATED_ACCEPTED)
            return WorkflowResult(
                success=True,
                schedule_id=schedule_id,
                state=run.state,
                message=f"Generation accepted as job {job_id}",
                job_id=job_id,
                export_result=export_result,
            )

        # Poll
        run.advance(RunState.POLLING)
        start = log.stage_start("poll", job_id=job_id)
        try:
            status = await asyncio.wait_for(self._poll(run), timeout=self.poll_deadline_seconds)
        except asyncio.TimeoutError:
            # A hanging optimizer can stretch each attempt to the request timeout
            log.warning("optimization.engine.poll_deadline_exceeded",
                        job_id=job_id, deadline_seconds=self.poll_deadline_seconds)
            status = JobStatus.timed_out(
                job_id,
                f"No terminal status within {self.poll_deadline_seconds:g}s; "
                f"optimizer job {job_id} may still be running",
                elapsed_seconds=round(time.time() - start, 3),
                progress=run.progress,
            )
        except OptimizationError as e:
            log.stage_complete("poll", start, success=False, error=e.message)
            return self._failure(run, RunState.ERROR, Stage.POLL, e,
                                 export_result=export_result)
        run.advance(_POLL_OUTCOMES[status.status])
        log.stage_complete("poll", start,
                           success=status.status is JobState.COMPLETED,
                           status=status.status.value,
                           progress=status.progress)

        if status.status is not JobState.COMPLETED:
            return WorkflowResult(
                success=False,
                schedule_id=schedule_id,
                state=run.state,
                stage=Stage.POLL,
                message=status.message or f"Job {job_id} ended as {status.status.value}",
                error_kind=(ErrorKind.LOCAL_TIMEOUT if status.status is JobState.TIMEOUT
                            else ErrorKind.REMOTE_FAILURE),
                job_id=job_id,
                export_result=export_result,
                job_status=status,
            )

        # Import (never retried: re-importing a job is not known to be safe)
        run.advance(RunState.IMPORTING)
        start = log.stage_start("import", job_id=job_id)
        try:
            import_result = await self.import_adapter.import_result(schedule_id, job_id, status)
        except OptimizationError as e:
            log.stage_complete("import", start, success=False, error=e.message)
            return self._failure(run, RunState.IMPORT_FAILED, Stage.IMPORT, e,
                                 export_result=export_result, job_status=status)
        log.stage_complete("import", start,
                           sections_created=import_result.sections_created,
                           slots_assigned=import_result.slots_assigned,
                           students_scheduled=import_result.students_scheduled)
        run.advance(RunState.DONE)

        return WorkflowResult(
            success=True,
            schedule_id=schedule_id,
            state=run.state,
            message=(f"Schedule optimized (hard={status.hard_score}, "
                     f"soft={status.soft_score})"),
            job_id=job_id,
            export_result=export_result,
            job_status=status,
            import_result=import_result,
        )

    async def _poll(self, run: ActiveRun) -> JobStatus:
        """
        Poll until a terminal status, the attempt budget runs out, or the
        run is cancelled. Suspends between polls; holds no store transaction.

        Connectivity failures count as attempts: the job may still be
        running remotely, so only the budget ends the wait.
        """
        started = time.monotonic()
        last: Optional[JobStatus] = None

        for attempt in range(1, self.max_poll_attempts + 1):
            if await self._wait_for_cancel(run):
                log.warning("optimization.engine.poll_aborted",
                            job_id=run.job_id, attempt=attempt)
                return JobStatus.timed_out(
                    run.job_id,
                    f"Polling aborted; optimizer job {run.job_id} may still be running",
                    elapsed_seconds=round(time.monotonic() - started, 3),
                    progress=last.progress if last else 0,
                )

            try:
                status = await self.client.job_status(run.job_id)
            except OptimizerUnavailable as e:
                log.warning("optimization.engine.poll_unreachable",
                            job_id=run.job_id, attempt=attempt, error=e.message)
                continue

            last = status
            run.progress = status.progress
            log.debug("optimization.engine.poll_attempt",
                      job_id=run.job_id,
                      attempt=attempt,
                      status=status.status.value,
                      progress=status.progress)
            if status.status.is_terminal:
                return status

        elapsed = round(time.monotonic() - started, 3)
        log.warning("optimization.engine.poll_timeout",
                    job_id=run.job_id,
                    attempts=self.max_poll_attempts,
                    elapsed_seconds=elapsed)
        return JobStatus.timed_out(
            run.job_id,
            f"No terminal status after {self.max_poll_attempts} polls; "
            f"optimizer job {run.job_id} may still be running",
            elapsed_seconds=elapsed,
            progress=last.progress if last else 0,
        )

    async def _wait_for_cancel(self, run: ActiveRun) -> bool:
        """Sleep one poll interval; True if the run was cancelled meanwhile."""
        try:
            await asyncio.wait_for(run.cancel_event.wait(), timeout=self.poll_interval)
            return True
        except asyncio.TimeoutError:
            return False

    def _failure(
        self,
        run: ActiveRun,
        state: RunState,
        stage: Stage,
        error: OptimizationError,
        **results,
    ) -> WorkflowResult:
        run.advance(state)
        log.warning("optimization.engine.stage_failed",
                    stage=stage.value,
                    state=state.value,
                    error_kind=error.kind.value,
                    error=error.message)
        return WorkflowResult(
            success=False,
            schedule_id=run.schedule_id,
            state=run.state,
            stage=stage,
            message=error.message,
            error_kind=error.kind,
            job_id=run.job_id,
            **results,
        )

    def _summarize(self, schedule_id: str) -> ScheduleSummary:
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)
        # Unscored schedules compare as zero
        return ScheduleSummary(
            schedule_id=schedule.id,
            name=schedule.name,
            hard_score=schedule.hard_score or 0,
            soft_score=schedule.soft_score or 0,
            conflicts=schedule.total_conflicts or 0,
            method=schedule.generation_method,
        )
