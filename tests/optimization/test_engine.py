"""
Tests for optimization/engine.py

Runs go end to end through the real client, adapters and in-memory store;
only the optimizer is fake.
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from optimization.client import OptimizerClient
from optimization.errors import (
    ErrorKind,
    ValidationError,
    ScheduleNotFound,
    ConflictingOperation,
    OptimizerUnavailable,
    UnknownJob,
)
from optimization.models import (
    JobState,
    RunState,
    Stage,
    ScheduleGenerationRequest,
)


def gen_request(schedule_id="sched-1", mode="AI_ASSISTED", **kwargs):
    return ScheduleGenerationRequest.create(schedule_id, mode, **kwargs)


async def wait_for_state(engine, schedule_id, state, timeout=2.0):
    """Yield to the loop until a run reaches the given state."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for run in engine.active_runs():
            if run["scheduleId"] == schedule_id and run["state"] == state.value:
                return
        await asyncio.sleep(0.001)
    raise AssertionError(f"{schedule_id} never reached {state.value}")


def set_scores(store, schedule_id, hard, soft, conflicts=0):
    with store.transaction() as tx:
        schedule = tx.get_schedule(schedule_id)
        schedule.hard_score = hard
        schedule.soft_score = soft
        schedule.total_conflicts = conflicts
        tx.save_schedule(schedule)


class TestFireAndForget:

    @pytest.mark.asyncio
    async def test_returns_job_id_without_polling(self, engine, fake_optimizer, store):
        result = await engine.run(gen_request())

        assert result.success
        assert result.state is RunState.GENERATED_ACCEPTED
        assert result.job_id == "job-1"
        assert result.export_result.students_exported == 3
        assert fake_optimizer.calls("/status") == 0
        assert fake_optimizer.calls("/result") == 0
        assert store.counts("sched-1").slots == 0
        assert engine.active_runs() == []

    @pytest.mark.asyncio
    async def test_job_observable_afterwards(self, engine):
        result = await engine.run(gen_request())
        status = await engine.job_status(result.job_id)
        assert status.status is JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_each_submission_is_a_new_job(self, engine):
        first = await engine.run(gen_request())
        second = await engine.run(gen_request())
        assert first.job_id != second.job_id


class TestWaitForCompletion:

    @pytest.mark.asyncio
    async def test_done(self, engine, fake_optimizer, store):
        fake_optimizer.status_scripts["job-1"] = [
            fake_optimizer.processing("job-1", 10),
            fake_optimizer.processing("job-1", 60),
            fake_optimizer.completed("job-1", hard=0, soft=42),
        ]
        result = await engine.run(gen_request(), wait_for_completion=True)

        assert result.success
        assert result.state is RunState.DONE
        assert result.stage is None
        assert result.job_status.hard_score == 0
        assert result.import_result.slots_assigned == 2
        assert result.import_result.students_scheduled == 4
        assert fake_optimizer.calls("/status") == 3
        assert store.counts("sched-1").slots == 2
        assert store.get_schedule("sched-1").soft_score == 42

    @pytest.mark.asyncio
    async def test_remote_failure_is_terminal(self, engine, fake_optimizer, store):
        fake_optimizer.status_scripts["job-1"] = [{
            "jobId": "job-1", "status": "FAILED", "progress": 100,
            "message": "Infeasible: not enough rooms",
        }]
        result = await engine.run(gen_request(), wait_for_completion=True)

        assert not result.success
        assert result.state is RunState.FAILED
        assert result.stage is Stage.POLL
        assert result.error_kind is ErrorKind.REMOTE_FAILURE
        assert result.message == "Infeasible: not enough rooms"
        assert result.job_status.hard_score is None
        assert fake_optimizer.calls("/result") == 0
        assert store.counts("sched-1").slots == 0

    @pytest.mark.asyncio
    async def test_remote_error_state(self, engine, fake_optimizer):
        fake_optimizer.status_scripts["job-1"] = [{"jobId": "job-1", "status": "ERROR"}]
        result = await engine.run(gen_request(), wait_for_completion=True)
        assert result.state is RunState.ERROR
        assert result.error_kind is ErrorKind.REMOTE_FAILURE

    @pytest.mark.asyncio
    async def test_transient_outage_while_polling(self, engine, fake_optimizer):
        fake_optimizer.status_scripts["job-1"] = [
            503,
            fake_optimizer.processing("job-1"),
            503,
            fake_optimizer.completed("job-1"),
        ]
        result = await engine.run(gen_request(), wait_for_completion=True)
        assert result.state is RunState.DONE
        assert fake_optimizer.calls("/status") == 4

    @pytest.mark.asyncio
    async def test_unknown_job_while_polling(self, engine):
        with patch.object(engine.client, "job_status",
                          AsyncMock(side_effect=UnknownJob("job-1"))):
            result = await engine.run(gen_request(), wait_for_completion=True)

        assert result.state is RunState.ERROR
        assert result.stage is Stage.POLL
        assert result.error_kind is ErrorKind.VALIDATION


class TestTimeout:

    def test_default_budget_is_five_minutes(self, make_engine, store, client):
        engine = make_engine(store, client, poll_interval=5, max_poll_attempts=60)
        assert engine.poll_budget_seconds == 300

    @pytest.mark.asyncio
    async def test_budget_exhausted_without_import(self, engine, fake_optimizer, store):
        fake_optimizer.default_script = "processing"
        before = store.counts("sched-1")

        result = await engine.run(gen_request(), wait_for_completion=True)

        assert not result.success
        assert result.state is RunState.TIMEOUT
        assert result.stage is Stage.POLL
        assert result.error_kind is ErrorKind.LOCAL_TIMEOUT
        assert result.job_status.status is JobState.TIMEOUT
        assert result.job_status.progress == 50
        assert fake_optimizer.calls("/status") == 60
        assert fake_optimizer.calls("/result") == 0
        assert store.counts("sched-1") == before

    @pytest.mark.asyncio
    async def test_remote_job_still_observable(self, engine, fake_optimizer):
        fake_optimizer.default_script = "processing"
        result = await engine.run(gen_request(), wait_for_completion=True)

        status = await engine.job_status(result.job_id)
        assert status.status is JobState.PROCESSING

    @pytest.mark.asyncio
    async def test_unreachable_for_whole_budget(self, make_engine, store, client, fake_optimizer):
        engine = make_engine(store, client, max_poll_attempts=5)
        fake_optimizer.status_scripts["job-1"] = [fake_optimizer.processing("job-1"), 503]

        result = await engine.run(gen_request(), wait_for_completion=True)
        assert result.state is RunState.TIMEOUT
        assert fake_optimizer.calls("/status") == 5

    @pytest.mark.asyncio
    async def test_hanging_status_calls_bounded_by_deadline(self, make_engine, store,
                                                            fake_optimizer):
        client = OptimizerClient(base_url="http://optimizer.test", request_timeout=0.05,
                                 transport=fake_optimizer.transport)
        engine = make_engine(store, client, poll_interval=0.01, max_poll_attempts=3)
        assert engine.poll_deadline_seconds == pytest.approx(0.08)

        async def hang(job_id):
            await asyncio.sleep(10)

        started = time.monotonic()
        with patch.object(client, "job_status", AsyncMock(side_effect=hang)):
            result = await engine.run(gen_request(), wait_for_completion=True)

        assert time.monotonic() - started < 2
        assert result.state is RunState.TIMEOUT
        assert result.error_kind is ErrorKind.LOCAL_TIMEOUT
        assert result.job_status.status is JobState.TIMEOUT
        assert "within" in result.message
        assert fake_optimizer.calls("/result") == 0
        assert engine.active_runs() == []
        await client.close()


class TestStageFailures:

    @pytest.mark.asyncio
    async def test_empty_schedule_fails_export(self, empty_store, client, fake_optimizer,
                                               make_engine):
        engine = make_engine(empty_store, client)
        result = await engine.run(gen_request(), wait_for_completion=True)

        assert result.state is RunState.EXPORT_FAILED
        assert result.stage is Stage.EXPORT
        assert result.error_kind is ErrorKind.VALIDATION
        assert fake_optimizer.calls("/api/schedules/import") == 0
        assert fake_optimizer.calls("/generate") == 0

    @pytest.mark.asyncio
    async def test_export_refused_stops_before_generation(self, engine, fake_optimizer):
        fake_optimizer.export_body = {"success": False, "message": "Term is locked"}
        result = await engine.run(gen_request())

        assert result.state is RunState.EXPORT_FAILED
        assert result.error_kind is ErrorKind.REMOTE_FAILURE
        assert result.message == "Term is locked"
        assert result.export_result is not None
        assert fake_optimizer.calls("/generate") == 0

    @pytest.mark.asyncio
    async def test_garbled_export_counts_are_classified(self, engine, fake_optimizer):
        fake_optimizer.export_body = {"success": True, "coursesImported": "lots"}
        result = await engine.run(gen_request())

        assert result.state is RunState.EXPORT_FAILED
        assert result.stage is Stage.EXPORT
        assert result.error_kind is ErrorKind.REMOTE_FAILURE
        assert fake_optimizer.calls("/generate") == 0

    @pytest.mark.asyncio
    async def test_optimizer_down_during_export(self, engine, fake_optimizer):
        with patch.object(engine.export_adapter.client, "export",
                          AsyncMock(side_effect=OptimizerUnavailable("refused"))):
            result = await engine.run(gen_request())

        assert result.state is RunState.EXPORT_FAILED
        assert result.error_kind is ErrorKind.CONNECTIVITY

    @pytest.mark.asyncio
    async def test_generation_rejected(self, engine, fake_optimizer):
        fake_optimizer.generate_status = 400
        result = await engine.run(gen_request())

        assert result.state is RunState.GENERATE_REQUEST_FAILED
        assert result.stage is Stage.GENERATE
        assert result.error_kind is ErrorKind.VALIDATION
        assert result.job_id is None
        assert result.export_result.success

    @pytest.mark.asyncio
    async def test_import_failure_is_not_retried(self, engine, fake_optimizer, store):
        fake_optimizer.results["job-1"] = {
            "scheduleSlots": [{"courseId": "c-alg", "teacherId": "t-math", "roomId": "r-999",
                               "timeSlotId": "ts-1"}],
            "hardScore": 0, "softScore": 42,
        }
        before = store.counts("sched-1")
        result = await engine.run(gen_request(), wait_for_completion=True)

        assert not result.success
        assert result.state is RunState.IMPORT_FAILED
        assert result.stage is Stage.IMPORT
        assert result.error_kind is ErrorKind.IMPORT_FAILURE
        assert result.job_status.status is JobState.COMPLETED
        assert fake_optimizer.calls("/result") == 1
        assert store.counts("sched-1") == before


class TestGuards:

    @pytest.mark.asyncio
    async def test_manual_mode_rejected(self, engine, fake_optimizer):
        with pytest.raises(ValidationError):
            await engine.run(gen_request(mode="MANUAL"))
        assert fake_optimizer.requests == []

    @pytest.mark.asyncio
    async def test_unknown_schedule(self, engine, fake_optimizer):
        with pytest.raises(ScheduleNotFound):
            await engine.run(gen_request(schedule_id="nope"))
        assert fake_optimizer.requests == []

    @pytest.mark.asyncio
    async def test_unavailable_mode_releases_guard(self, engine, fake_optimizer):
        fake_optimizer.healthy = False
        with pytest.raises(OptimizerUnavailable):
            await engine.run(gen_request())
        assert engine.active_runs() == []
        assert fake_optimizer.calls("/generate") == 0

        fake_optimizer.healthy = True
        assert (await engine.run(gen_request())).success

    @pytest.mark.asyncio
    async def test_disabled_integration(self, make_engine, store, client, fake_optimizer):
        engine = make_engine(store, client, enabled=False)
        with pytest.raises(OptimizerUnavailable, match="disabled"):
            await engine.run(gen_request())
        assert fake_optimizer.requests == []

    @pytest.mark.parametrize("seconds", [0, -30])
    def test_non_positive_budget_never_reaches_optimizer(self, seconds, fake_optimizer):
        with pytest.raises(ValidationError):
            gen_request(optimization_time_seconds=seconds)
        assert fake_optimizer.requests == []


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_second_run_conflicts_and_first_is_unaffected(
        self, make_engine, store, client, fake_optimizer,
    ):
        engine = make_engine(store, client, poll_interval=0.005, max_poll_attempts=2000)
        fake_optimizer.status_scripts["job-1"] = [fake_optimizer.processing("job-1")]

        first = asyncio.create_task(engine.run(gen_request(), wait_for_completion=True))
        await wait_for_state(engine, "sched-1", RunState.POLLING)

        with pytest.raises(ConflictingOperation) as exc_info:
            await engine.run(gen_request(), wait_for_completion=True)
        assert exc_info.value.kind is ErrorKind.CONFLICT

        # Finish the remote job; the first run should import normally
        fake_optimizer.status_scripts["job-1"] = [fake_optimizer.completed("job-1")]
        result = await asyncio.wait_for(first, timeout=5)

        assert result.state is RunState.DONE
        assert result.job_id == "job-1"
        assert fake_optimizer.calls("/generate") == 1
        assert fake_optimizer.calls("/result") == 1

    @pytest.mark.asyncio
    async def test_distinct_schedules_run_in_parallel(self, make_engine, store, client,
                                                      fake_optimizer):
        engine = make_engine(store, client, poll_interval=0.005, max_poll_attempts=2000)
        fake_optimizer.status_scripts["job-1"] = [fake_optimizer.processing("job-1")]

        first = asyncio.create_task(engine.run(gen_request(), wait_for_completion=True))
        await wait_for_state(engine, "sched-1", RunState.POLLING)

        other = await engine.run(gen_request(schedule_id="sched-2"))
        assert other.success
        assert other.job_id == "job-2"

        fake_optimizer.status_scripts["job-1"] = [fake_optimizer.completed("job-1")]
        assert (await asyncio.wait_for(first, timeout=5)).success


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_stops_polling_promptly(self, make_engine, store, client,
                                                 fake_optimizer):
        engine = make_engine(store, client, poll_interval=0.05, max_poll_attempts=2000)
        fake_optimizer.default_script = "processing"

        task = asyncio.create_task(engine.run(gen_request(), wait_for_completion=True))
        await wait_for_state(engine, "sched-1", RunState.POLLING)
        assert engine.active_runs()[0]["jobId"] == "job-1"

        assert await engine.cancel("sched-1") is True
        result = await asyncio.wait_for(task, timeout=1)

        assert result.state is RunState.TIMEOUT
        assert result.error_kind is ErrorKind.LOCAL_TIMEOUT
        assert "aborted" in result.message
        assert fake_optimizer.calls("/result") == 0
        assert engine.active_runs() == []

        # The remote job was left alone
        assert (await engine.job_status("job-1")).status is JobState.PROCESSING

    @pytest.mark.asyncio
    async def test_cancel_without_run(self, engine):
        assert await engine.cancel("sched-1") is False

    @pytest.mark.asyncio
    async def test_task_cancellation_releases_guard(self, make_engine, store, client,
                                                    fake_optimizer):
        engine = make_engine(store, client, poll_interval=0.05, max_poll_attempts=2000)
        fake_optimizer.default_script = "processing"

        task = asyncio.create_task(engine.run(gen_request(), wait_for_completion=True))
        await wait_for_state(engine, "sched-1", RunState.POLLING)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert engine.active_runs() == []
        assert (await engine.run(gen_request())).success


class TestCompare:

    def test_lower_hard_score_wins(self, engine, store):
        set_scores(store, "sched-1", hard=0, soft=50)
        set_scores(store, "sched-2", hard=2, soft=10)

        comparison = engine.compare("sched-1", "sched-2")
        assert comparison.recommended_schedule_id == "sched-1"
        assert "feasible" in comparison.reasons[0]

        # Order of arguments does not change the verdict
        assert engine.compare("sched-2", "sched-1").recommended_schedule_id == "sched-1"

    def test_soft_score_breaks_hard_tie(self, engine, store):
        set_scores(store, "sched-1", hard=0, soft=30)
        set_scores(store, "sched-2", hard=0, soft=40)
        assert engine.compare("sched-1", "sched-2").recommended_schedule_id == "sched-1"

    def test_equal_scores_are_equivalent(self, engine, store):
        set_scores(store, "sched-1", hard=1, soft=30, conflicts=2)
        set_scores(store, "sched-2", hard=1, soft=30, conflicts=5)

        comparison = engine.compare("sched-1", "sched-2")
        assert comparison.equivalent
        assert comparison.recommended_schedule_id is None
        assert "equivalent" in comparison.recommendation
        assert any("fewer recorded conflicts" in r for r in comparison.reasons)

    def test_does_not_modify_schedules(self, engine, store):
        set_scores(store, "sched-1", hard=0, soft=50)
        stamp = store.get_schedule("sched-1").last_modified_at
        engine.compare("sched-1", "sched-2")
        assert store.get_schedule("sched-1").last_modified_at == stamp

    def test_unknown_schedule(self, engine):
        with pytest.raises(ScheduleNotFound):
            engine.compare("sched-1", "nope")
