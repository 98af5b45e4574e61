"""Metric aggregation for risk evaluation.

Turns raw attendance, performance and socioeconomic records into the
small numeric summaries the evaluators work on. Aggregation is the
only part of evaluation that touches the record source.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional, Sequence, Tuple

from eduguard.shared.database import RecordSource
from eduguard.shared.models import AttendanceStatus, PerformanceRecord, SocioEconomicProfile
from .config import AttendanceRules, DistanceRules, SocioeconomicRules, WindowMode


@dataclass(frozen=True)
class AttendanceMetric:
    absences: int
    records: int
    window_start: date
    window_end: date


@dataclass(frozen=True)
class PerformanceMetric:
    average_pct: float
    records: int
    term: Optional[str] = None


def aggregate_attendance(
    source: RecordSource,
    student_id: str,
    rules: AttendanceRules,
    today: date,
) -> AttendanceMetric:
    """Count absences inside the configured window ending ``today``."""
    if rules.window_mode is WindowMode.RECORDED_DAYS:
        records = source.attendance_recorded_days(student_id, today, rules.window_days)
        start = min((r.date for r in records), default=today)
    else:
        start = today - timedelta(days=rules.window_days - 1)
        records = source.attendance_between(student_id, start, today)

    absences = sum(1 for r in records if r.status is AttendanceStatus.ABSENT)
    return AttendanceMetric(
        absences=absences,
        records=len(records),
        window_start=start,
        window_end=today,
    )


def aggregate_performance(records: Sequence[PerformanceRecord]) -> Optional[PerformanceMetric]:
    """Average percentage over the current term.

    The current term is the term of the most recently recorded score.
    Records with a non-positive max score are ignored. Returns None
    when nothing usable is left.
    """
    usable = [r for r in records if r.max_score > 0]
    if not usable:
        return None

    latest = max(usable, key=lambda r: r.recorded_at)
    term = latest.term
    if term is not None:
        usable = [r for r in usable if r.term == term]

    average = sum(r.percentage for r in usable) / len(usable)
    return PerformanceMetric(average_pct=average, records=len(usable), term=term)


def socioeconomic_factors(
    profile: SocioEconomicProfile,
    rules: SocioeconomicRules,
    distance: DistanceRules,
) -> Tuple[str, ...]:
    """Name every socioeconomic factor present in the profile.

    Unknown (None) values never count as a factor.
    """
    factors: List[str] = []

    if profile.ubudehe_level is not None and profile.ubudehe_level <= rules.extreme_poverty_level:
        factors.append(f"Extreme poverty (Ubudehe category {profile.ubudehe_level})")

    if profile.has_parents is False:
        factors.append("No living parents")

    if profile.family_stability is False:
        factors.append("Unstable family situation")

    if profile.number_of_siblings is not None and profile.number_of_siblings > rules.sibling_cap:
        factors.append(f"Large family ({profile.number_of_siblings} siblings)")

    km = profile.distance_to_school_km
    if km is not None and km > distance.threshold_km:
        factors.append(f"Long distance to school ({km:g} km)")

    return tuple(factors)
