"""Read-only access to student, attendance and performance records.

Both services read these records, neither owns them. ``RecordSource``
is the seam; the in-memory source backs development and tests, the
PostgreSQL source reads the registry's tables directly.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional

from eduguard.shared.models import (
    AttendanceRecord,
    AttendanceStatus,
    GuardianContact,
    PerformanceRecord,
    SocioEconomicProfile,
    StudentRecord,
)
from .connection import ConnectionManager
from .repository import BaseRepository

logger = logging.getLogger(__name__)


class RecordSource(ABC):
    """Read model boundary."""

    @abstractmethod
    def get_student(self, student_id: str) -> Optional[StudentRecord]:
        pass

    @abstractmethod
    def list_active_students(self, school_id: str) -> List[StudentRecord]:
        pass

    @abstractmethod
    def attendance_between(self, student_id: str, start: date, end: date) -> List[AttendanceRecord]:
        """Attendance records with start <= date <= end."""
        pass

    @abstractmethod
    def attendance_recorded_days(self, student_id: str, end: date, days: int) -> List[AttendanceRecord]:
        """Records on the most recent ``days`` distinct dates up to ``end``."""
        pass

    @abstractmethod
    def performance_records(self, student_id: str) -> List[PerformanceRecord]:
        pass


class InMemoryRecordSource(RecordSource):
    """Record source held in process memory."""

    def __init__(self):
        self._students: Dict[str, StudentRecord] = {}
        self._attendance: Dict[str, List[AttendanceRecord]] = defaultdict(list)
        self._performance: Dict[str, List[PerformanceRecord]] = defaultdict(list)
        self._lock = threading.Lock()

    def add_student(self, student: StudentRecord) -> None:
        with self._lock:
            self._students[student.student_id] = student

    def add_attendance(self, records: Iterable[AttendanceRecord]) -> None:
        with self._lock:
            for record in records:
                self._attendance[record.student_id].append(record)

    def add_performance(self, records: Iterable[PerformanceRecord]) -> None:
        with self._lock:
            for record in records:
                self._performance[record.student_id].append(record)

    def clear_attendance(self, student_id: str) -> None:
        with self._lock:
            self._attendance.pop(student_id, None)

    def get_student(self, student_id: str) -> Optional[StudentRecord]:
        return self._students.get(student_id)

    def list_active_students(self, school_id: str) -> List[StudentRecord]:
        with self._lock:
            return [
                s for s in self._students.values()
                if s.school_id == school_id and s.is_active
            ]

    def attendance_between(self, student_id: str, start: date, end: date) -> List[AttendanceRecord]:
        with self._lock:
            return [r for r in self._attendance.get(student_id, []) if start <= r.date <= end]

    def attendance_recorded_days(self, student_id: str, end: date, days: int) -> List[AttendanceRecord]:
        with self._lock:
            records = [r for r in self._attendance.get(student_id, []) if r.date <= end]
        recent_dates = sorted({r.date for r in records}, reverse=True)[:days]
        keep = set(recent_dates)
        return [r for r in records if r.date in keep]

    def performance_records(self, student_id: str) -> List[PerformanceRecord]:
        with self._lock:
            return list(self._performance.get(student_id, []))


class PostgresRecordSource(BaseRepository[StudentRecord], RecordSource):
    """Reads the registry tables.

    Expected tables:
        students(student_id, school_id, full_name, school_name, is_active,
                 socioeconomic JSONB, guardians JSONB, school_contact_phone)
        attendance(student_id, date, status)
        performance(student_id, subject, term, score, max_score, recorded_at)
    """

    id_column = "student_id"

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "students")

    def _row_to_entity(self, row: tuple) -> StudentRecord:
        socio = row[5] or {}
        guardians = row[6] or []
        if isinstance(socio, str):
            socio = json.loads(socio)
        if isinstance(guardians, str):
            guardians = json.loads(guardians)

        return StudentRecord(
            student_id=row[0],
            school_id=row[1],
            full_name=row[2],
            school_name=row[3] or "",
            is_active=bool(row[4]),
            socioeconomic=SocioEconomicProfile(
                ubudehe_level=socio.get("ubudehe_level"),
                has_parents=socio.get("has_parents"),
                family_stability=socio.get("family_stability"),
                number_of_siblings=socio.get("number_of_siblings"),
                distance_to_school_km=socio.get("distance_to_school_km"),
            ),
            guardians=tuple(
                GuardianContact(
                    name=g.get("name", "Guardian"),
                    relation=g.get("relation", "Guardian"),
                    phone=g.get("phone"),
                    email=g.get("email"),
                    is_primary=bool(g.get("is_primary", False)),
                )
                for g in guardians
            ),
            school_contact_phone=row[7] or "",
        )

    def get_student(self, student_id: str) -> Optional[StudentRecord]:
        return self.find_by_id(student_id)

    def list_active_students(self, school_id: str) -> List[StudentRecord]:
        return self.find_where("school_id = %s AND is_active", (school_id,))

    def attendance_between(self, student_id: str, start: date, end: date) -> List[AttendanceRecord]:
        rows = self._execute(
            "SELECT student_id, date, status FROM attendance "
            "WHERE student_id = %s AND date BETWEEN %s AND %s",
            (student_id, start, end),
            fetch="all",
        )
        return [self._attendance_row(row) for row in rows or []]

    def attendance_recorded_days(self, student_id: str, end: date, days: int) -> List[AttendanceRecord]:
        rows = self._execute(
            """
            SELECT student_id, date, status FROM attendance
            WHERE student_id = %s AND date IN (
                SELECT DISTINCT date FROM attendance
                WHERE student_id = %s AND date <= %s
                ORDER BY date DESC LIMIT %s
            )
            """,
            (student_id, student_id, end, days),
            fetch="all",
        )
        return [self._attendance_row(row) for row in rows or []]

    def performance_records(self, student_id: str) -> List[PerformanceRecord]:
        rows = self._execute(
            "SELECT student_id, subject, term, score, max_score, recorded_at "
            "FROM performance WHERE student_id = %s",
            (student_id,),
            fetch="all",
        )
        return [
            PerformanceRecord(
                student_id=row[0],
                subject=row[1],
                term=row[2],
                score=float(row[3]),
                max_score=float(row[4]),
                recorded_at=row[5],
            )
            for row in rows or []
        ]

    @staticmethod
    def _attendance_row(row: tuple) -> AttendanceRecord:
        return AttendanceRecord(
            student_id=row[0],
            date=row[1],
            status=AttendanceStatus(str(row[2]).lower()),
        )
