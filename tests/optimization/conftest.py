"""
Shared fixtures for optimization tests.

FakeOptimizer stands in for the external optimizer at the HTTP level via
httpx.MockTransport, so the real client code runs in every test.
"""

import itertools
import json

import httpx
import pytest

from optimization.client import OptimizerClient
from optimization.engine import OrchestrationEngine
from optimization.export import ExportAdapter
from optimization.importer import ImportAdapter
from optimization.modes import ModeSelector
from optimization.store import (
    InMemoryScheduleStore,
    Student,
    Teacher,
    Course,
    Room,
    TimeSlot,
    EnrollmentRequest,
    Schedule,
)

BASE_URL = "http://optimizer.test"


def completed_status(job_id: str, hard: int = 0, soft: int = 42) -> dict:
    return {
        "jobId": job_id,
        "status": "COMPLETED",
        "progress": 100,
        "message": "Optimization complete",
        "elapsedSeconds": 12.5,
        "hardScore": hard,
        "softScore": soft,
    }


def processing_status(job_id: str, progress: int = 50) -> dict:
    return {
        "jobId": job_id,
        "status": "PROCESSING",
        "progress": progress,
        "message": "Solving",
        "elapsedSeconds": 3.0,
    }


def default_result() -> dict:
    return {
        "scheduleSlots": [
            {
                "courseId": "c-alg",
                "teacherId": "t-math",
                "roomId": "r-101",
                "timeSlotId": "ts-1",
                "sectionNumber": 1,
                "enrolledStudentIds": ["s-1", "s-2"],
            },
            {
                "courseId": "c-eng",
                "teacherId": "t-eng",
                "roomId": "r-102",
                "timeSlotId": "ts-2",
                "sectionNumber": 1,
                "enrolledStudentIds": ["s-1", "s-3"],
            },
        ],
        "hardScore": 0,
        "softScore": 42,
    }


class FakeOptimizer:
    """
    Scriptable optimizer.

    Status scripts are consumed one entry per poll; the last entry repeats.
    """

    def __init__(self):
        self.reachable = True
        self.healthy = True
        self.export_status = 200
        self.export_body = {
            "success": True,
            "exportId": "exp-1",
            "importId": "imp-1",
            "studentsImported": 999,
            "message": "Schedule data received",
        }
        self.generate_status = 200
        self.generate_error = {"message": "Invalid optimization parameters"}
        self.status_scripts: dict[str, list] = {}
        self.default_script = "completed"
        self.results: dict[str, dict] = {}
        self.result_status = 200
        self.requests: list[httpx.Request] = []
        self._job_ids = itertools.count(1)

    completed = staticmethod(completed_status)
    processing = staticmethod(processing_status)
    result = staticmethod(default_result)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))

    def body_of(self, suffix: str) -> dict:
        for r in self.requests:
            if r.url.path.endswith(suffix):
                return json.loads(r.content)
        raise AssertionError(f"No request to {suffix}")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/api/health":
            return httpx.Response(200, json={"status": "UP" if self.healthy else "DOWN"})

        if path == "/api/schedules/import":
            return httpx.Response(self.export_status, json=self.export_body)

        if path.endswith("/generate"):
            if self.generate_status != 200:
                return httpx.Response(self.generate_status, json=self.generate_error)
            job_id = f"job-{next(self._job_ids)}"
            if job_id not in self.status_scripts:
                if self.default_script == "completed":
                    self.status_scripts[job_id] = [completed_status(job_id)]
                else:
                    self.status_scripts[job_id] = [processing_status(job_id)]
            return httpx.Response(200, json={"jobId": job_id})

        if path.startswith("/api/jobs/"):
            job_id = path.split("/")[3]
            if path.endswith("/status"):
                script = self.status_scripts.get(job_id)
                if script is None:
                    return httpx.Response(404, json={"message": "Job not found"})
                entry = script.pop(0) if len(script) > 1 else script[0]
                if isinstance(entry, int):
                    return httpx.Response(entry, json={"message": "Server error"})
                return httpx.Response(200, json=entry)
            if path.endswith("/result"):
                if self.result_status != 200:
                    return httpx.Response(self.result_status, json={"message": "No result"})
                if job_id not in self.status_scripts:
                    return httpx.Response(404, json={"message": "Job not found"})
                return httpx.Response(200, json=self.results.get(job_id, default_result()))

        return httpx.Response(404, json={"message": f"No route for {path}"})


@pytest.fixture
def fake_optimizer() -> FakeOptimizer:
    return FakeOptimizer()


@pytest.fixture
def client(fake_optimizer: FakeOptimizer) -> OptimizerClient:
    return OptimizerClient(base_url=BASE_URL, transport=fake_optimizer.transport)


def populate(store: InMemoryScheduleStore) -> InMemoryScheduleStore:
    """Small but complete school: 3 students, 2 teachers, 2 courses, 2 rooms."""
    store.put_student(Student(id="s-1", first_name="Ada", last_name="Lovelace", grade_level=9))
    store.put_student(Student(id="s-2", first_name="Alan", last_name="Turing", grade_level=9))
    store.put_student(Student(id="s-3", first_name="Grace", last_name="Hopper", grade_level=10,
                              has_iep=True))
    store.put_teacher(Teacher(id="t-math", first_name="Emmy", last_name="Noether",
                              department="Math", certifications=["MATHEMATICS"],
                              max_periods_per_day=5))
    store.put_teacher(Teacher(id="t-eng", first_name="Toni", last_name="Morrison",
                              department="English", certifications=["ENGLISH"]))
    store.put_course(Course(id="c-alg", code="MATH101", name="Algebra I", subject="Math",
                            max_students=25, core_required=True,
                            min_grade_level=9, max_grade_level=10))
    store.put_course(Course(id="c-eng", code="ENG9", name="English 9", subject="English"))
    store.put_room(Room(id="r-101", number="101", capacity=30, building="Main"))
    store.put_room(Room(id="r-102", number="SCI-LAB", capacity=24, room_type="SCIENCE_LAB",
                        equipment="sinks, fume hood"))
    store.put_time_slot(TimeSlot(id="ts-1", period_number=1, start_time="08:00",
                                 end_time="08:50", name="Period 1", duration_minutes=50))
    store.put_time_slot(TimeSlot(id="ts-2", period_number=2, start_time="09:00",
                                 end_time="09:50", name="Period 2", duration_minutes=50))
    for student_id in ("s-1", "s-2", "s-3"):
        store.add_enrollment_request(EnrollmentRequest(student_id=student_id, course_id="c-alg",
                                                       preference_rank=1))
    store.add_enrollment_request(EnrollmentRequest(student_id="s-1", course_id="c-eng"))
    store.create_schedule(Schedule(id="sched-1", name="Fall Draft"))
    store.create_schedule(Schedule(id="sched-2", name="Fall Alternative"))
    return store


@pytest.fixture
def store() -> InMemoryScheduleStore:
    return populate(InMemoryScheduleStore())


@pytest.fixture
def empty_store() -> InMemoryScheduleStore:
    """Has schedules but no students, courses or teachers."""
    store = InMemoryScheduleStore()
    store.create_schedule(Schedule(id="sched-1", name="Empty"))
    return store


def build_engine(
    store,
    client: OptimizerClient,
    poll_interval: float = 0.001,
    max_poll_attempts: int = 60,
    enabled: bool = True,
) -> OrchestrationEngine:
    return OrchestrationEngine(
        store=store,
        client=client,
        export_adapter=ExportAdapter(store, client),
        import_adapter=ImportAdapter(store, client),
        mode_selector=ModeSelector(client, enabled=enabled),
        poll_interval=poll_interval,
        max_poll_attempts=max_poll_attempts,
    )


@pytest.fixture
def engine(store, client) -> OrchestrationEngine:
    return build_engine(store, client)


@pytest.fixture
def make_engine():
    """Factory for engines with custom polling settings."""
    return build_engine
