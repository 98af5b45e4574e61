"""Per-domain risk evaluators.

Pure functions of (metric, rules): no I/O, no clock, no shared state.
Each returns a RiskResult, or None when the domain shows no risk or
there is not enough data to say.
"""
from typing import Optional, Sequence

from eduguard.shared.models import RiskDomain, RiskResult, Severity
from .config import AttendanceRules, DistanceRules, PerformanceRules, SocioeconomicRules
from .metrics import AttendanceMetric, PerformanceMetric


def evaluate_attendance(metric: AttendanceMetric, rules: AttendanceRules) -> Optional[RiskResult]:
    """Severity bands on absences in the window.

    CRITICAL at ``critical_absences`` or more, HIGH above
    ``high_absences``, MEDIUM at ``medium_absences`` or more.
    Windows with fewer than ``min_records`` records yield None.
    """
    if metric.records < rules.min_records:
        return None

    absences = metric.absences
    if absences >= rules.critical_absences:
        severity = Severity.CRITICAL
    elif absences > rules.high_absences:
        severity = Severity.HIGH
    elif absences >= rules.medium_absences:
        severity = Severity.MEDIUM
    else:
        return None

    return RiskResult(
        domain=RiskDomain.ATTENDANCE,
        severity=severity,
        reasons=(
            f"{absences} absences out of {metric.records} attendance records "
            f"since {metric.window_start.isoformat()}",
        ),
        metrics={"absences": float(absences), "records": float(metric.records)},
    )


def evaluate_performance(
    metric: Optional[PerformanceMetric],
    rules: PerformanceRules,
) -> Optional[RiskResult]:
    """Severity bands on average score, all inclusive (average <= threshold)."""
    if metric is None:
        return None

    average = metric.average_pct
    if average <= rules.critical_pct:
        severity = Severity.CRITICAL
    elif average <= rules.high_pct:
        severity = Severity.HIGH
    elif average <= rules.medium_pct:
        severity = Severity.MEDIUM
    else:
        return None

    scope = f"term {metric.term}" if metric.term else "all recorded terms"
    return RiskResult(
        domain=RiskDomain.PERFORMANCE,
        severity=severity,
        reasons=(f"Average score {average:.1f}% over {metric.records} results in {scope}",),
        metrics={"average_pct": round(average, 2), "records": float(metric.records)},
    )


def evaluate_socioeconomic(
    factors: Sequence[str],
    rules: SocioeconomicRules,
) -> Optional[RiskResult]:
    """Severity by number of factors present."""
    count = len(factors)
    if count == 0:
        return None

    if count >= rules.high_factor_count:
        severity = Severity.HIGH
    elif count >= rules.medium_factor_count:
        severity = Severity.MEDIUM
    else:
        return None

    return RiskResult(
        domain=RiskDomain.SOCIOECONOMIC,
        severity=severity,
        reasons=tuple(factors),
        metrics={"factor_count": float(count)},
    )


def evaluate_distance(distance_km: Optional[float], rules: DistanceRules) -> Optional[RiskResult]:
    """Severity bands on travel distance, exclusive (distance > threshold)."""
    if distance_km is None or distance_km <= 0:
        return None

    if distance_km > rules.high_threshold_km:
        severity = Severity.HIGH
    elif distance_km > rules.threshold_km:
        severity = Severity.MEDIUM
    else:
        return None

    return RiskResult(
        domain=RiskDomain.DISTANCE,
        severity=severity,
        reasons=(f"Lives {distance_km:g} km from school",),
        metrics={"distance_km": float(distance_km)},
    )
