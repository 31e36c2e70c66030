"""
Authoritative schedule store.

The store is the system of record for timetables. Reference data (students,
teachers, courses, rooms, time slots, enrollment requests) is maintained by
the CRUD side of the application; this module only needs to read it.
Schedule-owned data (schedule metadata, sections, slots, enrollments) is
written exclusively inside transaction(), which either commits every write
or restores the prior state.

InMemoryScheduleStore optionally checkpoints to disk after each commit
using atomic writes: .tmp -> fsync -> replace.
"""

import copy
import json
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Iterator

from shared.logging import get_logger

log = get_logger("optimization", "store")

# Seconds a transaction waits for another thread's transaction to finish
DEFAULT_LOCK_TIMEOUT = 5.0


# --- Reference records (read-only here) ---

@dataclass
class Student:
    id: str
    first_name: str
    last_name: str
    grade_level: int = 9
    student_number: Optional[str] = None
    has_iep: bool = False
    has_504_plan: bool = False
    active: bool = True


@dataclass
class Teacher:
    id: str
    first_name: str
    last_name: str
    department: Optional[str] = None
    certifications: list[str] = field(default_factory=list)
    employee_id: Optional[str] = None
    max_periods_per_day: Optional[int] = None
    max_courses_per_day: Optional[int] = None
    contract_type: Optional[str] = None
    home_room_id: Optional[str] = None
    active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass
class Course:
    id: str
    code: str
    name: str
    subject: Optional[str] = None
    max_students: Optional[int] = None
    min_students: Optional[int] = None
    credits: Optional[float] = None
    sessions_per_week: Optional[int] = None
    min_grade_level: Optional[int] = None
    max_grade_level: Optional[int] = None
    core_required: bool = False
    required_room_type: Optional[str] = None
    active: bool = True


@dataclass
class Room:
    id: str
    number: str
    capacity: int = 30
    room_type: Optional[str] = None
    building: Optional[str] = None
    equipment: str = ""
    wheelchair_accessible: bool = False
    available: bool = True
    active: bool = True


@dataclass
class TimeSlot:
    id: str
    period_number: int
    start_time: str
    end_time: str
    name: Optional[str] = None
    days_of_week: Optional[str] = None
    duration_minutes: Optional[int] = None
    active: bool = True


@dataclass
class EnrollmentRequest:
    student_id: str
    course_id: str
    preference_rank: Optional[int] = None
    priority_score: Optional[int] = None


# --- Schedule-owned records (written only under transaction) ---

@dataclass
class Schedule:
    id: str
    name: str
    hard_score: Optional[int] = None
    soft_score: Optional[int] = None
    total_conflicts: int = 0
    generation_method: str = "MANUAL"
    quality_score: Optional[float] = None
    last_modified_by: Optional[str] = None
    last_modified_at: Optional[str] = None


@dataclass
class CourseSection:
    id: str
    schedule_id: str
    course_id: str
    section_number: str
    teacher_id: Optional[str] = None
    room_id: Optional[str] = None
    period_number: Optional[int] = None
    max_enrollment: int = 30
    current_enrollment: int = 0
    status: str = "SCHEDULED"


@dataclass
class ScheduleSlot:
    id: str
    schedule_id: str
    section_id: str
    course_id: str
    teacher_id: str
    room_id: str
    time_slot_id: str
    period_number: int


@dataclass
class Enrollment:
    schedule_id: str
    section_id: str
    student_id: str


@dataclass(frozen=True)
class StoreCounts:
    """Row counts of one schedule's owned data."""
    sections: int
    slots: int
    enrollments: int


@dataclass
class StoreState:
    """Everything the in-memory store holds, keyed by ID."""
    students: dict[str, Student] = field(default_factory=dict)
    teachers: dict[str, Teacher] = field(default_factory=dict)
    courses: dict[str, Course] = field(default_factory=dict)
    rooms: dict[str, Room] = field(default_factory=dict)
    time_slots: dict[str, TimeSlot] = field(default_factory=dict)
    enrollment_requests: list[EnrollmentRequest] = field(default_factory=list)
    schedules: dict[str, Schedule] = field(default_factory=dict)
    sections: dict[str, CourseSection] = field(default_factory=dict)
    slots: dict[str, ScheduleSlot] = field(default_factory=dict)
    enrollments: list[Enrollment] = field(default_factory=list)
    id_counter: int = 0

    _KEYED = {
        "students": Student,
        "teachers": Teacher,
        "courses": Course,
        "rooms": Room,
        "time_slots": TimeSlot,
        "schedules": Schedule,
        "sections": CourseSection,
        "slots": ScheduleSlot,
    }

    def to_dict(self) -> dict:
        data = {
            name: {k: asdict(v) for k, v in getattr(self, name).items()}
            for name in self._KEYED
        }
        data["enrollment_requests"] = [asdict(r) for r in self.enrollment_requests]
        data["enrollments"] = [asdict(e) for e in self.enrollments]
        data["id_counter"] = self.id_counter
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StoreState":
        state = cls()
        for name, record_cls in cls._KEYED.items():
            setattr(state, name, {
                k: record_cls(**v) for k, v in data.get(name, {}).items()
            })
        state.enrollment_requests = [
            EnrollmentRequest(**r) for r in data.get("enrollment_requests", [])
        ]
        state.enrollments = [Enrollment(**e) for e in data.get("enrollments", [])]
        state.id_counter = data.get("id_counter", 0)
        return state


class ScheduleStore(ABC):
    """Interface to the authoritative schedule store."""

    # Reference data

    @abstractmethod
    def list_students(self) -> list[Student]: ...

    @abstractmethod
    def list_teachers(self) -> list[Teacher]: ...

    @abstractmethod
    def list_courses(self) -> list[Course]: ...

    @abstractmethod
    def list_rooms(self) -> list[Room]: ...

    @abstractmethod
    def list_time_slots(self) -> list[TimeSlot]: ...

    @abstractmethod
    def list_enrollment_requests(self) -> list[EnrollmentRequest]: ...

    @abstractmethod
    def get_course(self, course_id: str) -> Optional[Course]: ...

    @abstractmethod
    def get_teacher(self, teacher_id: str) -> Optional[Teacher]: ...

    @abstractmethod
    def get_room(self, room_id: str) -> Optional[Room]: ...

    @abstractmethod
    def get_time_slot(self, time_slot_id: str) -> Optional[TimeSlot]: ...

    @abstractmethod
    def get_student(self, student_id: str) -> Optional[Student]: ...

    # Schedule-owned data

    @abstractmethod
    def get_schedule(self, schedule_id: str) -> Optional[Schedule]: ...

    @abstractmethod
    def sections_for(self, schedule_id: str) -> list[CourseSection]: ...

    @abstractmethod
    def slots_for(self, schedule_id: str) -> list[ScheduleSlot]: ...

    @abstractmethod
    def enrollments_for(self, schedule_id: str) -> list[Enrollment]: ...

    def counts(self, schedule_id: str) -> StoreCounts:
        return StoreCounts(
            sections=len(self.sections_for(schedule_id)),
            slots=len(self.slots_for(schedule_id)),
            enrollments=len(self.enrollments_for(schedule_id)),
        )

    # Writes (only valid inside transaction())

    @abstractmethod
    def transaction(self) -> Iterator["ScheduleStore"]: ...

    @abstractmethod
    def next_id(self, prefix: str) -> str: ...

    @abstractmethod
    def save_schedule(self, schedule: Schedule) -> None: ...

    @abstractmethod
    def save_section(self, section: CourseSection) -> None: ...

    @abstractmethod
    def delete_slots(self, schedule_id: str) -> int: ...

    @abstractmethod
    def add_slot(self, slot: ScheduleSlot) -> None: ...

    @abstractmethod
    def delete_enrollments(self, section_id: str) -> int: ...

    @abstractmethod
    def add_enrollment(self, enrollment: Enrollment) -> None: ...


class InMemoryScheduleStore(ScheduleStore):
    """
    Dict-backed store with snapshot/restore transactions.

    One writer at a time; readers see committed state only because writes
    happen on a working copy that replaces the live state on commit.
    """

    def __init__(self, data_dir: Optional[str] = None,
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout
        self._state = StoreState()
        self._working: Optional[StoreState] = None
        self._writer_thread: Optional[int] = None
        self._write_lock = threading.Lock()

        self.data_dir = Path(data_dir) if data_dir else None
        self.checkpoint_path: Optional[Path] = None
        if self.data_dir:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.checkpoint_path = self.data_dir / "schedule_store.json"
            self._load_checkpoint()

    # --- persistence ---

    def _load_checkpoint(self):
        if not self.checkpoint_path.exists():
            return
        with open(self.checkpoint_path, "r", encoding="utf-8") as f:
            self._state = StoreState.from_dict(json.load(f))
        log.info("optimization.store.checkpoint_loaded",
                 schedules=len(self._state.schedules),
                 sections=len(self._state.sections))

    def _save_checkpoint(self):
        """Atomically save full state to the checkpoint file."""
        temp_path = self.checkpoint_path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(self._state.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self.checkpoint_path)
        log.debug("optimization.store.checkpoint_saved",
                  schedules=len(self._state.schedules))

    # --- reference data maintenance (CRUD side / fixtures) ---

    def put_student(self, student: Student) -> None:
        self._state.students[student.id] = student

    def put_teacher(self, teacher: Teacher) -> None:
        self._state.teachers[teacher.id] = teacher

    def put_course(self, course: Course) -> None:
        self._state.courses[course.id] = course

    def put_room(self, room: Room) -> None:
        self._state.rooms[room.id] = room

    def put_time_slot(self, time_slot: TimeSlot) -> None:
        self._state.time_slots[time_slot.id] = time_slot

    def add_enrollment_request(self, request: EnrollmentRequest) -> None:
        self._state.enrollment_requests.append(request)

    def create_schedule(self, schedule: Schedule) -> Schedule:
        """Register a new (draft) schedule."""
        with self.transaction() as tx:
            tx.save_schedule(schedule)
        return schedule

    # --- reads ---

    def _read(self) -> StoreState:
        # Inside a transaction the writer reads its own uncommitted changes
        if self._working is not None and self._writer_thread == threading.get_ident():
            return self._working
        return self._state

    def list_students(self) -> list[Student]:
        return list(self._read().students.values())

    def list_teachers(self) -> list[Teacher]:
        return list(self._read().teachers.values())

    def list_courses(self) -> list[Course]:
        return list(self._read().courses.values())

    def list_rooms(self) -> list[Room]:
        return list(self._read().rooms.values())

    def list_time_slots(self) -> list[TimeSlot]:
        return list(self._read().time_slots.values())

    def list_enrollment_requests(self) -> list[EnrollmentRequest]:
        return list(self._read().enrollment_requests)

    def get_course(self, course_id: str) -> Optional[Course]:
        return self._read().courses.get(str(course_id))

    def get_teacher(self, teacher_id: str) -> Optional[Teacher]:
        return self._read().teachers.get(str(teacher_id))

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._read().rooms.get(str(room_id))

    def get_time_slot(self, time_slot_id: str) -> Optional[TimeSlot]:
        return self._read().time_slots.get(str(time_slot_id))

    def get_student(self, student_id: str) -> Optional[Student]:
        return self._read().students.get(str(student_id))

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        return self._read().schedules.get(str(schedule_id))

    def list_schedules(self) -> list[Schedule]:
        return list(self._read().schedules.values())

    def sections_for(self, schedule_id: str) -> list[CourseSection]:
        sid = str(schedule_id)
        return [s for s in self._read().sections.values() if s.schedule_id == sid]

    def slots_for(self, schedule_id: str) -> list[ScheduleSlot]:
        sid = str(schedule_id)
        return [s for s in self._read().slots.values() if s.schedule_id == sid]

    def enrollments_for(self, schedule_id: str) -> list[Enrollment]:
        sid = str(schedule_id)
        return [e for e in self._read().enrollments if e.schedule_id == sid]

    # --- writes ---

    @contextmanager
    def transaction(self) -> Iterator["InMemoryScheduleStore"]:
        """
        Run a unit of work atomically.

        Writes go to a deep copy of the live state. On normal exit the copy
        becomes the live state (and is checkpointed); on any exception it is
        discarded and the exception propagates.
        """
        if self._writer_thread == threading.get_ident():
            raise RuntimeError("Schedule store transaction already open in this thread")
        if not self._write_lock.acquire(timeout=self.lock_timeout):
            raise RuntimeError(
                f"Schedule store busy: no transaction slot within {self.lock_timeout:g}s"
            )
        try:
            self._working = copy.deepcopy(self._state)
            self._writer_thread = threading.get_ident()
            try:
                yield self
            except BaseException:
                log.warning("optimization.store.transaction_rolled_back")
                raise
            previous = self._state
            self._state = self._working
            if self.checkpoint_path:
                try:
                    self._save_checkpoint()
                except OSError:
                    self._state = previous
                    raise
        finally:
            self._working = None
            self._writer_thread = None
            self._write_lock.release()

    def _require_tx(self) -> StoreState:
        if self._working is None:
            raise RuntimeError("Schedule store writes require an open transaction")
        return self._working

    def next_id(self, prefix: str) -> str:
        state = self._require_tx()
        state.id_counter += 1
        return f"{prefix}-{state.id_counter}"

    def save_schedule(self, schedule: Schedule) -> None:
        state = self._require_tx()
        schedule.last_modified_at = datetime.now().isoformat()
        state.schedules[schedule.id] = schedule

    def save_section(self, section: CourseSection) -> None:
        self._require_tx().sections[section.id] = section

    def delete_slots(self, schedule_id: str) -> int:
        state = self._require_tx()
        doomed = [k for k, s in state.slots.items() if s.schedule_id == str(schedule_id)]
        for key in doomed:
            del state.slots[key]
        return len(doomed)

    def add_slot(self, slot: ScheduleSlot) -> None:
        self._require_tx().slots[slot.id] = slot

    def delete_enrollments(self, section_id: str) -> int:
        state = self._require_tx()
        before = len(state.enrollments)
        state.enrollments = [e for e in state.enrollments if e.section_id != section_id]
        return before - len(state.enrollments)

    def add_enrollment(self, enrollment: Enrollment) -> None:
        self._require_tx().enrollments.append(enrollment)
