"""
Export Adapter - turns the authoritative schedule into the optimizer's input.

The payload mirrors what the optimizer needs to build its planning problem:
student course requests, the course catalog with demand, teacher
qualifications, rooms, time slots, constraint weights and export metadata.
"""

import math
import re
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Optional

from shared.logging import get_logger

from .client import OptimizerClient
from .errors import EmptySchedule, ScheduleNotFound
from .models import ExportResult
from .store import ScheduleStore, Schedule, Course, Teacher, Room, TimeSlot

log = get_logger("optimization", "export")

EXPORTER_NAME = "timetable-optimization-service"

DEFAULT_MAX_PER_SECTION = 30
DEFAULT_MIN_PER_SECTION = 15
DEFAULT_TEACHER_SECTIONS = 6
AVERAGE_CLASS_SIZE = 28

# Certification code -> subject name it qualifies for
CERTIFICATION_SUBJECTS = {
    "MATH": "Math",
    "MATHEMATICS": "Math",
    "ENGLISH": "English",
    "ELA": "English",
    "SCIENCE": "Science",
    "HISTORY": "History",
    "SOCIAL_STUDIES": "Social Studies",
    "PE": "Physical Education",
    "PHYSICAL_EDUCATION": "Physical Education",
    "ART": "Art",
    "MUSIC": "Music",
    "FOREIGN_LANGUAGE": "Foreign Language",
    "SPANISH": "Spanish",
    "FRENCH": "French",
    "COMPUTER_SCIENCE": "Computer Science",
    "SPECIAL_ED": "Special Education",
    "SPED": "Special Education",
}

# Subject keyword -> certification a teacher needs
SUBJECT_CERTIFICATIONS = [
    (("MATH",), "MATHEMATICS"),
    (("ENGLISH", "ELA"), "ENGLISH"),
    (("SCIENCE",), "SCIENCE"),
    (("HISTORY", "SOCIAL"), "SOCIAL_STUDIES"),
    (("PE", "PHYSICAL"), "PHYSICAL_EDUCATION"),
    (("ART",), "ART"),
    (("MUSIC",), "MUSIC"),
    (("SPANISH",), "SPANISH"),
    (("FRENCH",), "FRENCH"),
    (("COMPUTER",), "COMPUTER_SCIENCE"),
]

ROOM_TYPE_DEPARTMENTS = {
    "SCIENCE_LAB": ["SCIENCE"],
    "CHEMISTRY_LAB": ["SCIENCE"],
    "BIOLOGY_LAB": ["SCIENCE"],
    "PHYSICS_LAB": ["SCIENCE"],
    "COMPUTER_LAB": ["COMPUTER_SCIENCE", "TECHNOLOGY"],
    "ART_ROOM": ["ART"],
    "ART_STUDIO": ["ART"],
    "MUSIC_ROOM": ["MUSIC"],
    "BAND_ROOM": ["MUSIC"],
    "CHORUS_ROOM": ["MUSIC"],
    "GYM": ["PHYSICAL_EDUCATION", "ATHLETICS"],
    "GYMNASIUM": ["PHYSICAL_EDUCATION", "ATHLETICS"],
    "LIBRARY": ["LIBRARY", "MEDIA"],
    "MEDIA_CENTER": ["LIBRARY", "MEDIA"],
    "WORKSHOP": ["CAREER_TECH", "INDUSTRIAL_ARTS"],
    "KITCHEN": ["CULINARY", "FAMILY_CONSUMER_SCIENCE"],
    "CULINARY_LAB": ["CULINARY", "FAMILY_CONSUMER_SCIENCE"],
}

DEFAULT_CONSTRAINTS = {
    "enforceNoStudentConflicts": True,
    "enforceNoTeacherConflicts": True,
    "enforceNoRoomConflicts": True,
    "enforceTeacherQualifications": True,
    "enforceRoomRequirements": True,
    "studentPreferenceWeight": 100,
    "teacherTravelWeight": 50,
    "scheduleCompactnessWeight": 30,
    "sectionBalanceWeight": 70,
    "teacherPreferenceWeight": 60,
}

DAY_NUMBERS = {"MON": 1, "TUE": 2, "WED": 3, "THU": 4, "FRI": 5, "SAT": 6, "SUN": 7}


def sections_needed(demand: int, max_per_section: int) -> int:
    """At least one section per active course, more as demand requires."""
    if demand <= 0:
        return 1
    return math.ceil(demand / max_per_section)


def is_advanced_course(course: Course) -> bool:
    name = (course.name or "").upper()
    code = (course.code or "").upper()
    return (
        any(tag in name for tag in ("AP ", "HONORS", "IB ", "ADVANCED PLACEMENT", "ACCELERATED"))
        or code.startswith("AP")
        or "HON" in code
        or "ADV" in code
    )


def is_special_education_course(course: Course) -> bool:
    name = (course.name or "").upper()
    code = (course.code or "").upper()
    subject = (course.subject or "").upper()
    return (
        any(tag in name for tag in ("SPECIAL ED", "SPED", "RESOURCE", "INCLUSION", "LIFE SKILLS"))
        or "SPED" in code
        or "SPECIAL" in subject
    )


def _subject_matches(words: list[str], keyword: str) -> bool:
    # Short keywords such as PE must match a whole word
    if len(keyword) <= 3:
        return keyword in words
    return any(word.startswith(keyword) for word in words)


def required_certifications(course: Course) -> list[str]:
    words = re.split(r"[^A-Z0-9]+", (course.subject or "").upper())
    certs = [
        cert for keywords, cert in SUBJECT_CERTIFICATIONS
        if any(_subject_matches(words, keyword) for keyword in keywords)
    ]
    if is_special_education_course(course):
        certs.append("SPECIAL_ED")
    return certs


def course_priority(course: Course, advanced: bool, demand: int) -> int:
    """1 is most urgent to place."""
    if course.core_required:
        return 1
    if advanced:
        return 2
    if demand > 100:
        return 3
    if is_special_education_course(course):
        return 4
    return 5


def room_departments(room: Room) -> list[str]:
    departments = list(ROOM_TYPE_DEPARTMENTS.get((room.room_type or "").upper(), []))
    number = (room.number or "").upper()
    if "MATH" in number:
        departments.append("MATH")
    if "ENG" in number or "LANG" in number:
        departments.append("ENGLISH")
    if "HIST" in number or "SOC" in number:
        departments.append("SOCIAL_STUDIES")
    if ("SCI" in number or "LAB" in number) and "SCIENCE" not in departments:
        departments.append("SCIENCE")
    return departments


def day_of_week(days: Optional[str]) -> int:
    """0 means every instructional day."""
    if not days:
        return 0
    parts = [d.strip().upper() for d in days.split(",") if d.strip()]
    if len(parts) == 1:
        return DAY_NUMBERS.get(parts[0], 0)
    return 0


class ExportAdapter:
    """
    Builds the optimizer payload from the store and submits it.

    Rejects empty problems before any network call is made.
    """

    def __init__(self, store: ScheduleStore, client: OptimizerClient):
        self.store = store
        self.client = client

    async def export(self, schedule_id: str) -> ExportResult:
        """
        Export the schedule as of now.

        Raises:
            ScheduleNotFound: schedule_id is not persisted
            EmptySchedule: no active students, courses or teachers
            OptimizerUnavailable / OptimizerRejected: from the client
        """
        payload = self.build_payload(schedule_id)
        counts = payload["metadata"]

        log.info("optimization.export.submitting",
                 schedule_id=schedule_id,
                 students=counts["totalStudents"],
                 courses=counts["totalCourses"],
                 teachers=counts["totalTeachers"])

        result = await self.client.export(schedule_id, payload)

        if not result.success:
            log.warning("optimization.export.rejected",
                        schedule_id=schedule_id, message=result.message)
            return result

        # Report what we actually sent, not what the optimizer echoed
        return replace(
            result,
            students_exported=counts["totalStudents"],
            courses_exported=counts["totalCourses"],
            teachers_exported=counts["totalTeachers"],
            message=result.message or "Schedule exported to optimizer",
        )

    def build_payload(self, schedule_id: str) -> dict:
        """Snapshot the store into the optimizer's input format."""
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None:
            raise ScheduleNotFound(schedule_id)

        students = [s for s in self.store.list_students() if s.active]
        courses = [c for c in self.store.list_courses() if c.active]
        teachers = [t for t in self.store.list_teachers() if t.active]

        missing = [
            name for name, items in
            (("students", students), ("courses", courses), ("teachers", teachers))
            if not items
        ]
        if missing:
            log.warning("optimization.export.empty_schedule",
                        schedule_id=schedule_id, missing=missing)
            raise EmptySchedule(
                f"Schedule {schedule_id} has no {', '.join(missing)} to optimize"
            )

        requests = self.store.list_enrollment_requests()
        course_ids = {c.id for c in courses}
        demand: dict[str, int] = {}
        requests_by_student: dict[str, list] = {}
        for req in requests:
            if req.course_id not in course_ids:
                continue
            demand[req.course_id] = demand.get(req.course_id, 0) + 1
            requests_by_student.setdefault(req.student_id, []).append(req)

        course_by_id = {c.id: c for c in courses}
        rooms = [r for r in self.store.list_rooms() if r.active]
        time_slots = [t for t in self.store.list_time_slots() if t.active]

        return {
            "scheduleId": schedule.id,
            "scheduleName": schedule.name,
            "studentRequests": [
                {
                    "studentId": s.id,
                    "studentNumber": s.student_number,
                    "firstName": s.first_name,
                    "lastName": s.last_name,
                    "gradeLevel": s.grade_level,
                    "hasIEP": s.has_iep,
                    "has504Plan": s.has_504_plan,
                    "courseRequests": [
                        self._course_request(req, course_by_id[req.course_id])
                        for req in requests_by_student.get(s.id, [])
                    ],
                }
                for s in students
            ],
            "courses": [self._course_entry(c, demand.get(c.id, 0)) for c in courses],
            "teachers": [self._teacher_entry(t, courses) for t in teachers],
            "rooms": [self._room_entry(r) for r in rooms],
            "timeSlots": [self._time_slot_entry(t) for t in time_slots],
            "constraints": dict(DEFAULT_CONSTRAINTS),
            "existingAssignments": [
                {
                    "courseId": slot.course_id,
                    "teacherId": slot.teacher_id,
                    "roomId": slot.room_id,
                    "timeSlotId": slot.time_slot_id,
                }
                for slot in self.store.slots_for(schedule.id)
            ],
            "metadata": self._metadata(schedule, students, courses, teachers, rooms,
                                       time_slots, len(requests)),
        }

    @staticmethod
    def _course_request(req, course: Course) -> dict:
        return {
            "courseId": course.id,
            "courseCode": course.code,
            "courseName": course.name,
            "preferenceRank": req.preference_rank if req.preference_rank is not None else 5,
            "priorityScore": req.priority_score if req.priority_score is not None else 500,
            "isRequired": course.core_required,
            "isAlternate": req.preference_rank == 4,
        }

    @staticmethod
    def _course_entry(course: Course, demand: int) -> dict:
        max_per_section = course.max_students or DEFAULT_MAX_PER_SECTION
        advanced = is_advanced_course(course)
        if course.min_grade_level is not None and course.max_grade_level is not None:
            grade_level = (course.min_grade_level + course.max_grade_level) // 2
        else:
            grade_level = course.min_grade_level if course.min_grade_level is not None else 10
        return {
            "courseId": course.id,
            "courseCode": course.code,
            "courseName": course.name,
            "department": course.subject or "GENERAL",
            "gradeLevel": grade_level,
            "credits": float(course.credits) if course.credits is not None else 1.0,
            "sectionsNeeded": sections_needed(demand, max_per_section),
            "maxStudentsPerSection": max_per_section,
            "minStudentsPerSection": course.min_students or DEFAULT_MIN_PER_SECTION,
            "totalDemand": demand,
            "requiredCertifications": required_certifications(course),
            "requiredRoomTypes": [course.required_room_type] if course.required_room_type else [],
            "periodsRequired": course.sessions_per_week or 5,
            "isAdvanced": advanced,
            "isSpecialEducation": is_special_education_course(course),
            "priority": course_priority(course, advanced, demand),
        }

    @staticmethod
    def _teacher_entry(teacher: Teacher, courses: list[Course]) -> dict:
        qualified: set[str] = set()
        keys = [c.upper().replace(" ", "_") for c in teacher.certifications]
        if teacher.department:
            keys.append(teacher.department.upper().replace(" ", "_"))
        for key in keys:
            subject = CERTIFICATION_SUBJECTS.get(key)
            if not subject:
                continue
            qualified.update(
                c.id for c in courses
                if c.subject and subject.lower() in c.subject.lower()
            )

        max_sections = teacher.max_periods_per_day or DEFAULT_TEACHER_SECTIONS
        return {
            "teacherId": teacher.id,
            "employeeNumber": teacher.employee_id,
            "fullName": teacher.full_name,
            "department": teacher.department,
            "certifications": list(teacher.certifications),
            "qualifiedCourseIds": sorted(qualified),
            "maxSections": max_sections,
            "maxPreps": teacher.max_courses_per_day or 4,
            "maxTotalStudents": max_sections * AVERAGE_CLASS_SIZE,
            "isPartTime": (teacher.contract_type or "").lower() == "part-time",
            "preferredRoomId": teacher.home_room_id,
        }

    @staticmethod
    def _room_entry(room: Room) -> dict:
        return {
            "roomId": room.id,
            "roomNumber": room.number,
            "buildingName": room.building,
            "roomType": room.room_type or "STANDARD_CLASSROOM",
            "capacity": room.capacity,
            "equipment": [e.strip() for e in room.equipment.split(",") if e.strip()],
            "assignedDepartments": room_departments(room),
            "isAccessible": room.wheelchair_accessible,
            "isAvailable": room.available,
        }

    @staticmethod
    def _time_slot_entry(slot: TimeSlot) -> dict:
        return {
            "timeSlotId": slot.id,
            "periodName": slot.name,
            "periodNumber": slot.period_number,
            "startTime": slot.start_time,
            "endTime": slot.end_time,
            "durationMinutes": slot.duration_minutes,
            "dayOfWeek": day_of_week(slot.days_of_week),
            "isLunchPeriod": slot.period_number == -1,
            "isInstructionalPeriod": slot.period_number >= 1,
        }

    @staticmethod
    def _metadata(schedule: Schedule, students, courses, teachers, rooms,
                  time_slots, total_requests: int) -> dict:
        return {
            "exportId": str(uuid.uuid4()),
            "scheduleId": schedule.id,
            "exportTimestamp": datetime.now().isoformat(),
            "exportedBy": EXPORTER_NAME,
            "totalStudents": len(students),
            "totalCourses": len(courses),
            "totalTeachers": len(teachers),
            "totalRooms": len(rooms),
            "totalTimeSlots": len(time_slots),
            "totalCourseRequests": total_requests,
        }
