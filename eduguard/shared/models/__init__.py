"""Shared domain models for EduGuard services."""
from .risk import (
    Severity,
    RiskDomain,
    FlagStatus,
    ACTIVE_FLAG_STATUSES,
    RiskResult,
    RiskFlag,
)
from .records import (
    AttendanceStatus,
    AttendanceRecord,
    PerformanceRecord,
    GuardianContact,
    SocioEconomicProfile,
    StudentRecord,
)

__all__ = [
    "Severity",
    "RiskDomain",
    "FlagStatus",
    "ACTIVE_FLAG_STATUSES",
    "RiskResult",
    "RiskFlag",
    "AttendanceStatus",
    "AttendanceRecord",
    "PerformanceRecord",
    "GuardianContact",
    "SocioEconomicProfile",
    "StudentRecord",
]
