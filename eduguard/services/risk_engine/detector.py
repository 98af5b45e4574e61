"""Risk detection service.

Entry point of the risk engine. For a student it:
1. Loads the school's rule config once for the run
2. Evaluates every enabled domain independently
3. Reconciles the results against persisted flags
4. Alerts the guardian on escalations to HIGH or CRITICAL

School sweeps run the same pipeline for every active student on a
bounded worker pool. One student's failure never stops the sweep.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Optional

from eduguard.shared.database import RecordSource
from eduguard.shared.models import RiskDomain, RiskFlag, RiskResult, Severity, StudentRecord
from eduguard.shared.utils import BoundedExecutor
from .config import DetectionConfig, RiskRuleConfig
from .evaluators import (
    evaluate_attendance,
    evaluate_distance,
    evaluate_performance,
    evaluate_socioeconomic,
)
from .exceptions import StudentNotFoundError
from .flag_repository import RiskFlagRepository, WriteOutcome
from .metrics import aggregate_attendance, aggregate_performance, socioeconomic_factors
from .reconciler import ReconciliationReport, RiskFlagReconciler
from .rule_store import RuleConfigStore

logger = logging.getLogger(__name__)

_ALERT_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass
class DetectionRun:
    """Results and flag changes for one student."""
    student_id: str
    results: List[RiskResult] = field(default_factory=list)
    report: Optional[ReconciliationReport] = None


@dataclass
class SweepSummary:
    school_id: str
    students_processed: int = 0
    students_failed: int = 0
    flags_created: int = 0
    flags_updated: int = 0
    flags_resolved: int = 0

    def add(self, report: ReconciliationReport) -> None:
        self.students_processed += 1
        self.flags_created += report.count(WriteOutcome.CREATED)
        self.flags_updated += report.count(WriteOutcome.UPDATED)
        self.flags_resolved += report.count(WriteOutcome.RESOLVED)


def enabled_domains(rules: RiskRuleConfig) -> List[RiskDomain]:
    """Domains the school has not switched off, in evaluation order."""
    blocks = (
        (RiskDomain.ATTENDANCE, rules.attendance),
        (RiskDomain.PERFORMANCE, rules.performance),
        (RiskDomain.SOCIOECONOMIC, rules.socioeconomic),
        (RiskDomain.DISTANCE, rules.distance),
    )
    return [domain for domain, block in blocks if block.enabled]


class RiskDetectionService:
    """Detects, persists and alerts on student risk.

    Args:
        record_source: Student, attendance and performance records
        rule_store: Per-school rule configs
        flag_repository: Flag storage (in-memory if omitted)
        reconciler: Flag reconciler (built on flag_repository if omitted)
        alert_notifier: Object with ``notify_escalation(student, flag, language)``
        clock: Returns "today" for attendance windows
        config: Sweep pool sizing
    """

    def __init__(
        self,
        record_source: RecordSource,
        rule_store: RuleConfigStore,
        flag_repository: Optional[RiskFlagRepository] = None,
        reconciler: Optional[RiskFlagReconciler] = None,
        alert_notifier=None,
        clock: Callable[[], date] = date.today,
        config: Optional[DetectionConfig] = None,
    ):
        self.record_source = record_source
        self.rule_store = rule_store
        self.flag_repository = flag_repository or RiskFlagRepository()
        self.reconciler = reconciler or RiskFlagReconciler(self.flag_repository)
        self.alert_notifier = alert_notifier
        self._clock = clock
        self.config = config or DetectionConfig()

    # Domain checks

    def check_attendance_risk(self, student_id: str, rules: RiskRuleConfig) -> Optional[RiskResult]:
        metric = aggregate_attendance(self.record_source, student_id, rules.attendance, self._clock())
        return evaluate_attendance(metric, rules.attendance)

    def check_performance_risk(self, student_id: str, rules: RiskRuleConfig) -> Optional[RiskResult]:
        metric = aggregate_performance(self.record_source.performance_records(student_id))
        return evaluate_performance(metric, rules.performance)

    def check_socioeconomic_risk(self, student: StudentRecord, rules: RiskRuleConfig) -> Optional[RiskResult]:
        factors = socioeconomic_factors(student.socioeconomic, rules.socioeconomic, rules.distance)
        return evaluate_socioeconomic(factors, rules.socioeconomic)

    def check_distance_risk(self, student: StudentRecord, rules: RiskRuleConfig) -> Optional[RiskResult]:
        return evaluate_distance(student.socioeconomic.distance_to_school_km, rules.distance)

    # Detection

    def detect_risks_for_student(
        self,
        student_id: str,
        rules: Optional[RiskRuleConfig] = None,
    ) -> List[RiskResult]:
        """Evaluate every enabled domain for one student.

        Args:
            student_id: Student to evaluate
            rules: Config to use for this run; loaded from the store if None

        Raises:
            StudentNotFoundError: If the record source has no such student
        """
        student = self._get_student(student_id)
        rules = rules or self.rule_store.get_or_create(student.school_id)
        return self._evaluate(student, rules)

    def run_for_student(
        self,
        student_id: str,
        rules: Optional[RiskRuleConfig] = None,
    ) -> DetectionRun:
        """Detect, reconcile flags and send escalation alerts for one student."""
        student = self._get_student(student_id)
        rules = rules or self.rule_store.get_or_create(student.school_id)
        return self._run(student, rules)

    def detect_risks_for_school(self, school_id: str) -> SweepSummary:
        """Run detection for every active student of a school.

        Raises:
            RepositoryError: If the school's config cannot be loaded
        """
        rules = self.rule_store.get_or_create(school_id)
        students = self.record_source.list_active_students(school_id)
        summary = SweepSummary(school_id=school_id)

        logger.info(
            "DETECTION_SWEEP_STARTED",
            extra={"school_id": school_id, "student_count": len(students)}
        )

        with BoundedExecutor(
            self.config.max_workers,
            self.config.queue_size,
            thread_name_prefix="risk-sweep",
        ) as executor:
            futures = [
                (student.student_id, executor.submit(self._run, student, rules))
                for student in students
            ]

        for student_id, future in futures:
            try:
                run = future.result()
            except Exception as e:
                summary.students_failed += 1
                logger.error(
                    "STUDENT_DETECTION_FAILED",
                    extra={
                        "school_id": school_id,
                        "student_id": student_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
                continue
            summary.add(run.report)

        logger.info(
            "DETECTION_SWEEP_COMPLETED",
            extra={
                "school_id": school_id,
                "students_processed": summary.students_processed,
                "students_failed": summary.students_failed,
                "flags_created": summary.flags_created,
                "flags_updated": summary.flags_updated,
                "flags_resolved": summary.flags_resolved,
            }
        )
        return summary

    def overall_risk_level(self, student_id: str) -> Severity:
        """Highest severity among active flags, LOW when there are none."""
        flags = self.flag_repository.list_active_for_student(student_id)
        return max((f.severity for f in flags), default=Severity.LOW)

    # Internals

    def _get_student(self, student_id: str) -> StudentRecord:
        student = self.record_source.get_student(student_id)
        if student is None:
            raise StudentNotFoundError(student_id)
        return student

    def _evaluate(self, student: StudentRecord, rules: RiskRuleConfig) -> List[RiskResult]:
        checks = {
            RiskDomain.ATTENDANCE: lambda: self.check_attendance_risk(student.student_id, rules),
            RiskDomain.PERFORMANCE: lambda: self.check_performance_risk(student.student_id, rules),
            RiskDomain.SOCIOECONOMIC: lambda: self.check_socioeconomic_risk(student, rules),
            RiskDomain.DISTANCE: lambda: self.check_distance_risk(student, rules),
        }

        results = []
        for domain in enabled_domains(rules):
            result = checks[domain]()
            if result is not None:
                results.append(result)

        logger.info(
            "STUDENT_RISKS_EVALUATED",
            extra={
                "student_id": student.student_id,
                "school_id": student.school_id,
                "domains": [r.domain.value for r in results],
            }
        )
        return results

    def _run(self, student: StudentRecord, rules: RiskRuleConfig) -> DetectionRun:
        results = self._evaluate(student, rules)
        report = self.reconciler.reconcile(
            student.student_id,
            student.school_id,
            results,
            domains=enabled_domains(rules),
        )
        for change in report.escalations:
            if change.flag.severity in _ALERT_SEVERITIES:
                self._alert(student, change.flag, rules.default_language)
        return DetectionRun(student_id=student.student_id, results=results, report=report)

    def _alert(self, student: StudentRecord, flag: RiskFlag, language: str) -> None:
        if self.alert_notifier is None:
            return
        try:
            self.alert_notifier.notify_escalation(student, flag, language)
        except Exception as e:
            logger.error(
                "RISK_ALERT_FAILED",
                extra={
                    "student_id": student.student_id,
                    "flag_id": flag.flag_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
