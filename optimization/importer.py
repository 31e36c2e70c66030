"""
Import Adapter - the only writer of optimizer results into the store.

An import is all-or-nothing: the result is fetched first, then every
section, slot and enrollment is written inside one store transaction.
Any failure rolls the transaction back and surfaces as ImportFailed.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger

from .client import OptimizerClient
from .errors import OptimizationError, ImportFailed, ScheduleNotFound
from .models import ImportResult, JobStatus, ValidationReport
from .store import ScheduleStore, CourseSection, ScheduleSlot, Enrollment

log = get_logger("optimization", "importer")

GENERATION_METHOD = "AI_OPTIMIZED"
MODIFIED_BY = "optimizer"
UNSCHEDULED = "UNSCHEDULED"


@dataclass
class ImportStats:
    sections_created: int = 0
    slots_assigned: int = 0
    students_scheduled: int = 0
    sections_unscheduled: int = 0


def quality_score(hard_score: Optional[int], soft_score: Optional[int]) -> float:
    """0-100; any hard violation makes the schedule worthless."""
    if hard_score is None or soft_score is None or hard_score != 0:
        return 0.0
    return float(min(100, soft_score))


class ImportAdapter:
    """Applies a completed job's result to the authoritative schedule."""

    def __init__(self, store: ScheduleStore, client: OptimizerClient):
        self.store = store
        self.client = client

    async def import_result(
        self,
        schedule_id: str,
        job_id: str,
        job_status: Optional[JobStatus] = None,
    ) -> ImportResult:
        """
        Fetch the result of a completed job and make it the live schedule.

        Scores are taken from job_status when given (the status the engine
        saw as COMPLETED), otherwise from the result payload.

        Raises:
            ScheduleNotFound: destination schedule does not exist
            ImportFailed: result could not be fetched or applied; store unchanged
        """
        if self.store.get_schedule(schedule_id) is None:
            raise ScheduleNotFound(schedule_id)

        # No network I/O while the transaction is open
        try:
            data = await self.client.job_result(job_id)
        except OptimizationError as e:
            raise ImportFailed(f"Could not fetch result of job {job_id}: {e.message}") from e

        if job_status is not None:
            hard_score, soft_score = job_status.hard_score, job_status.soft_score
        else:
            hard_score, soft_score = _score(data, "hardScore"), _score(data, "softScore")

        try:
            with self.store.transaction() as tx:
                stats = self._apply(tx, schedule_id, data.get("scheduleSlots") or [])
                schedule = tx.get_schedule(schedule_id)
                schedule.hard_score = hard_score
                schedule.soft_score = soft_score
                schedule.quality_score = quality_score(hard_score, soft_score)
                schedule.generation_method = GENERATION_METHOD
                schedule.last_modified_by = MODIFIED_BY
                tx.save_schedule(schedule)
        except ImportFailed as e:
            log.error("optimization.import.failed",
                      schedule_id=schedule_id, job_id=job_id, error=e.message)
            raise
        except Exception as e:
            log.exception(e, "optimization.import.failed",
                          {"schedule_id": schedule_id, "job_id": job_id})
            raise ImportFailed(f"Import of job {job_id} rolled back: {e}") from e

        log.info("optimization.import.complete",
                 schedule_id=schedule_id,
                 job_id=job_id,
                 sections_created=stats.sections_created,
                 slots_assigned=stats.slots_assigned,
                 students_scheduled=stats.students_scheduled,
                 sections_unscheduled=stats.sections_unscheduled)

        return ImportResult(
            success=True,
            schedule_id=schedule_id,
            job_id=job_id,
            sections_created=stats.sections_created,
            slots_assigned=stats.slots_assigned,
            students_scheduled=stats.students_scheduled,
            sections_unscheduled=stats.sections_unscheduled,
            hard_score=hard_score,
            soft_score=soft_score,
            message=f"Imported {stats.slots_assigned} slots from job {job_id}",
        )

    def _apply(self, tx: ScheduleStore, schedule_id: str, slots: list) -> ImportStats:
        stats = ImportStats()
        removed = tx.delete_slots(schedule_id)
        if removed:
            log.debug("optimization.import.slots_cleared",
                      schedule_id=schedule_id, count=removed)

        sections = {
            (s.course_id, s.section_number): s for s in tx.sections_for(schedule_id)
        }
        placed: set[str] = set()
        # Students enrolled per section by this import; a section meeting
        # several times lists the same students on each of its slots
        enrolled: dict[str, set[str]] = {}

        for index, entry in enumerate(slots):
            if not isinstance(entry, dict):
                raise ImportFailed(f"Slot #{index} is not an object")

            course = tx.get_course(_ref(entry, "courseId", index))
            teacher = tx.get_teacher(_ref(entry, "teacherId", index))
            room = tx.get_room(_ref(entry, "roomId", index))
            time_slot = tx.get_time_slot(_ref(entry, "timeSlotId", index))
            for name, found in (("course", course), ("teacher", teacher),
                                ("room", room), ("time slot", time_slot)):
                if found is None:
                    raise ImportFailed(f"Slot #{index} references an unknown {name}")

            section_number = str(entry.get("sectionNumber") or 1)
            section = sections.get((course.id, section_number))
            if section is None:
                section = CourseSection(
                    id=tx.next_id("section"),
                    schedule_id=schedule_id,
                    course_id=course.id,
                    section_number=section_number,
                    max_enrollment=course.max_students or 30,
                )
                sections[(course.id, section_number)] = section
                stats.sections_created += 1

            section.teacher_id = teacher.id
            section.room_id = room.id
            section.period_number = time_slot.period_number
            section.status = "SCHEDULED"
            tx.save_section(section)
            placed.add(section.id)

            tx.add_slot(ScheduleSlot(
                id=tx.next_id("slot"),
                schedule_id=schedule_id,
                section_id=section.id,
                course_id=course.id,
                teacher_id=teacher.id,
                room_id=room.id,
                time_slot_id=time_slot.id,
                period_number=time_slot.period_number,
            ))
            stats.slots_assigned += 1

            student_ids = entry.get("enrolledStudentIds") or []
            if not isinstance(student_ids, list):
                raise ImportFailed(f"Slot #{index} has a malformed enrolledStudentIds")
            if student_ids and section.id not in enrolled:
                tx.delete_enrollments(section.id)
                section.current_enrollment = 0
                enrolled[section.id] = set()
            for student_id in dict.fromkeys(str(s) for s in student_ids):
                if tx.get_student(student_id) is None:
                    raise ImportFailed(f"Slot #{index} enrolls unknown student {student_id}")
                if student_id in enrolled[section.id]:
                    continue
                tx.add_enrollment(Enrollment(
                    schedule_id=schedule_id, section_id=section.id, student_id=student_id,
                ))
                enrolled[section.id].add(student_id)
                section.current_enrollment += 1
                stats.students_scheduled += 1

            if student_ids:
                tx.save_section(section)

        stats.sections_unscheduled = self._unschedule_stale(
            tx, [s for s in sections.values() if s.id not in placed]
        )
        return stats

    @staticmethod
    def _unschedule_stale(tx: ScheduleStore, stale: list[CourseSection]) -> int:
        """Sections the new result no longer places lose their placement and students."""
        count = 0
        for section in stale:
            if section.status == UNSCHEDULED and section.current_enrollment == 0:
                continue
            tx.delete_enrollments(section.id)
            section.teacher_id = None
            section.room_id = None
            section.period_number = None
            section.current_enrollment = 0
            section.status = UNSCHEDULED
            tx.save_section(section)
            count += 1
        if count:
            log.debug("optimization.import.sections_unscheduled", count=count)
        return count

    def validate_imported_schedule(self, schedule_id: str) -> ValidationReport:
        """
        Check an imported schedule for teacher and room double-bookings.

        The conflict count is recorded on the schedule.
        """
        if self.store.get_schedule(schedule_id) is None:
            raise ScheduleNotFound(schedule_id)

        slots = self.store.slots_for(schedule_id)
        by_teacher = defaultdict(list)
        by_room = defaultdict(list)
        for slot in slots:
            by_teacher[(slot.teacher_id, slot.period_number)].append(slot)
            by_room[(slot.room_id, slot.period_number)].append(slot)

        conflicts = []
        for (teacher_id, period), booked in by_teacher.items():
            if len(booked) > 1:
                teacher = self.store.get_teacher(teacher_id)
                name = teacher.full_name if teacher else teacher_id
                conflicts.append(
                    f"Teacher conflict: {name} has {len(booked)} classes at period {period}"
                )
        for (room_id, period), booked in by_room.items():
            if len(booked) > 1:
                room = self.store.get_room(room_id)
                number = room.number if room else room_id
                conflicts.append(
                    f"Room conflict: {number} has {len(booked)} classes at period {period}"
                )

        with self.store.transaction() as tx:
            schedule = tx.get_schedule(schedule_id)
            schedule.total_conflicts = len(conflicts)
            tx.save_schedule(schedule)

        report = ValidationReport(
            schedule_id=schedule_id,
            total_slots=len(slots),
            conflicts=tuple(conflicts),
        )
        log.info("optimization.import.validated",
                 schedule_id=schedule_id,
                 total_slots=report.total_slots,
                 conflicts=report.conflict_count)
        return report


def _ref(entry: dict, key: str, index: int) -> str:
    value = entry.get(key)
    if value is None or str(value).strip() == "":
        raise ImportFailed(f"Slot #{index} is missing {key}")
    return str(value)


def _score(data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ImportFailed(f"Result has a non-integer {key}: {value!r}")
