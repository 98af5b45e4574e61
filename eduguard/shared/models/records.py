"""Read models consumed by the risk engine and the dispatcher.

These records are owned by other collaborators (student registry,
attendance and gradebook). This core only ever reads them.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional, Tuple


class AttendanceStatus(Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


@dataclass(frozen=True)
class GuardianContact:
    """A guardian reachable by SMS and/or email."""
    name: str
    relation: str = "Guardian"
    phone: Optional[str] = None
    email: Optional[str] = None
    is_primary: bool = False

    @property
    def has_contact(self) -> bool:
        return bool(self.phone or self.email)


@dataclass(frozen=True)
class SocioEconomicProfile:
    """Socioeconomic block of a student record.

    ``None`` means the value was never captured; unknown values are
    never treated as risk factors.
    """
    ubudehe_level: Optional[int] = None       # Rwanda welfare category, 1 = poorest
    has_parents: Optional[bool] = None
    family_stability: Optional[bool] = None
    number_of_siblings: Optional[int] = None
    distance_to_school_km: Optional[float] = None


@dataclass(frozen=True)
class StudentRecord:
    student_id: str
    school_id: str
    full_name: str
    school_name: str = ""
    is_active: bool = True
    socioeconomic: SocioEconomicProfile = field(default_factory=SocioEconomicProfile)
    guardians: Tuple[GuardianContact, ...] = ()
    school_contact_phone: str = ""

    def primary_guardian(self) -> Optional[GuardianContact]:
        """Guardian flagged primary, else the first one listed."""
        for guardian in self.guardians:
            if guardian.is_primary:
                return guardian
        return self.guardians[0] if self.guardians else None


@dataclass(frozen=True)
class AttendanceRecord:
    student_id: str
    date: date
    status: AttendanceStatus


@dataclass(frozen=True)
class PerformanceRecord:
    student_id: str
    subject: str
    score: float
    max_score: float
    term: Optional[str] = None
    recorded_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def percentage(self) -> float:
        return self.score / self.max_score * 100.0
