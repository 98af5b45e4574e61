"""Risk engine: threshold-based student risk detection.

Evaluates attendance, performance, socioeconomic and distance risk
against per-school rules and keeps one active flag per student and
domain.
"""
from .config import (
    AttendanceRules,
    DetectionConfig,
    DistanceRules,
    PerformanceRules,
    RiskRuleConfig,
    SocioeconomicRules,
    WindowMode,
    apply_update,
)
from .detector import DetectionRun, RiskDetectionService, SweepSummary, enabled_domains
from .exceptions import InvalidConfigError, RiskEngineError, StudentNotFoundError
from .flag_repository import RiskFlagRepository, WriteOutcome, WriteResult
from .reconciler import FlagChange, ReconciliationReport, RiskFlagReconciler
from .rule_store import RuleConfigStore

__all__ = [
    "AttendanceRules",
    "DetectionConfig",
    "DistanceRules",
    "PerformanceRules",
    "RiskRuleConfig",
    "SocioeconomicRules",
    "WindowMode",
    "apply_update",
    "DetectionRun",
    "RiskDetectionService",
    "SweepSummary",
    "enabled_domains",
    "InvalidConfigError",
    "RiskEngineError",
    "StudentNotFoundError",
    "RiskFlagRepository",
    "WriteOutcome",
    "WriteResult",
    "FlagChange",
    "ReconciliationReport",
    "RiskFlagReconciler",
    "RuleConfigStore",
]
