"""Tests for RiskDetectionService."""
import pytest
from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

from eduguard.services.risk_engine.detector import RiskDetectionService, enabled_domains
from eduguard.services.risk_engine.exceptions import StudentNotFoundError
from eduguard.services.risk_engine.flag_repository import RiskFlagRepository
from eduguard.services.risk_engine.config import AttendanceRules, DetectionConfig, RiskRuleConfig
from eduguard.services.risk_engine.rule_store import RuleConfigStore
from eduguard.shared.database import InMemoryRecordSource, RepositoryError
from eduguard.shared.models import (
    AttendanceRecord,
    AttendanceStatus,
    FlagStatus,
    GuardianContact,
    PerformanceRecord,
    RiskDomain,
    Severity,
    SocioEconomicProfile,
    StudentRecord,
)

TODAY = date(2026, 3, 20)


def add_attendance(source, student_id, absences, total=20):
    source.clear_attendance(student_id)
    source.add_attendance([
        AttendanceRecord(
            student_id,
            TODAY - timedelta(days=i),
            AttendanceStatus.ABSENT if i < absences else AttendanceStatus.PRESENT,
        )
        for i in range(total)
    ])


def make_student(student_id, school_id="sch_1", **socio):
    return StudentRecord(
        student_id=student_id,
        school_id=school_id,
        full_name=f"Student {student_id}",
        school_name="GS Kigali",
        socioeconomic=SocioEconomicProfile(**socio),
        guardians=(GuardianContact("Jean", phone="0788123456", is_primary=True),),
    )


@pytest.fixture
def source():
    return InMemoryRecordSource()


@pytest.fixture
def store():
    return RuleConfigStore()


@pytest.fixture
def repo():
    return RiskFlagRepository()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def service(source, store, repo, notifier):
    return RiskDetectionService(
        source,
        store,
        flag_repository=repo,
        alert_notifier=notifier,
        clock=lambda: TODAY,
        config=DetectionConfig(max_workers=2, queue_size=2),
    )


class TestDetectRisksForStudent:

    def test_unknown_student(self, service):
        with pytest.raises(StudentNotFoundError):
            service.detect_risks_for_student("ghost")

    def test_no_data_no_risk(self, service, source):
        source.add_student(make_student("stu_1"))

        assert service.detect_risks_for_student("stu_1") == []

    def test_domains_are_independent(self, service, source):
        source.add_student(make_student("stu_1", distance_to_school_km=7.0))
        add_attendance(source, "stu_1", absences=12)
        source.add_performance([
            PerformanceRecord("stu_1", "Math", 80, 100, "TERM_1", datetime(2026, 3, 1)),
        ])

        results = {r.domain: r.severity for r in service.detect_risks_for_student("stu_1")}

        assert results == {
            RiskDomain.ATTENDANCE: Severity.CRITICAL,
            RiskDomain.SOCIOECONOMIC: Severity.MEDIUM,
            RiskDomain.DISTANCE: Severity.HIGH,
        }

    def test_disabled_domain_is_skipped(self, service, source, store):
        source.add_student(make_student("stu_1", distance_to_school_km=7.0))
        store.update("sch_1", {"distance": {"enabled": False}})

        domains = [r.domain for r in service.detect_risks_for_student("stu_1")]

        assert RiskDomain.DISTANCE not in domains
        assert RiskDomain.SOCIOECONOMIC in domains

    def test_supplied_config_is_used(self, service, source, store):
        source.add_student(make_student("stu_1"))
        add_attendance(source, "stu_1", absences=3)
        store.get_or_create = MagicMock()
        rules = RiskRuleConfig(school_id="sch_1", attendance=AttendanceRules(medium_absences=3))

        results = service.detect_risks_for_student("stu_1", rules)

        store.get_or_create.assert_not_called()
        assert results[0].severity is Severity.MEDIUM


class TestRunForStudent:

    def test_idempotent_detection(self, service, source, repo):
        source.add_student(make_student("stu_1", ubudehe_level=1))
        add_attendance(source, "stu_1", absences=10)

        service.run_for_student("stu_1")
        service.run_for_student("stu_1")

        flags = repo.list_for_student("stu_1", include_resolved=True)
        assert sorted(f.domain.value for f in flags) == ["attendance", "socioeconomic"]
        assert all(f.status is FlagStatus.OPEN for f in flags)

    def test_improvement_resolves_flag(self, service, source, repo):
        source.add_student(make_student("stu_1"))
        add_attendance(source, "stu_1", absences=12)
        service.run_for_student("stu_1")

        add_attendance(source, "stu_1", absences=2)
        run = service.run_for_student("stu_1")

        assert run.results == []
        flags = repo.list_for_student("stu_1", include_resolved=True)
        assert len(flags) == 1
        assert flags[0].status is FlagStatus.RESOLVED
        assert flags[0].resolved_at is not None

    def test_alert_on_high_escalation_only(self, service, source, notifier):
        source.add_student(make_student("stu_1"))
        add_attendance(source, "stu_1", absences=8)
        service.run_for_student("stu_1")
        notifier.notify_escalation.assert_not_called()

        add_attendance(source, "stu_1", absences=12)
        service.run_for_student("stu_1")

        notifier.notify_escalation.assert_called_once()
        student, flag, language = notifier.notify_escalation.call_args.args
        assert student.student_id == "stu_1"
        assert flag.severity is Severity.CRITICAL
        assert language == "RW"

    def test_unchanged_flag_does_not_realert(self, service, source, notifier):
        source.add_student(make_student("stu_1"))
        add_attendance(source, "stu_1", absences=12)

        service.run_for_student("stu_1")
        service.run_for_student("stu_1")

        assert notifier.notify_escalation.call_count == 1

    def test_alert_failure_does_not_fail_detection(self, service, source, repo, notifier):
        notifier.notify_escalation.side_effect = RuntimeError("SNS down")
        source.add_student(make_student("stu_1"))
        add_attendance(source, "stu_1", absences=12)

        run = service.run_for_student("stu_1")

        assert run.results[0].severity is Severity.CRITICAL
        assert repo.find_active("stu_1", RiskDomain.ATTENDANCE) is not None


class TestSchoolSweep:

    def test_sweep_totals(self, service, source):
        for i in range(6):
            source.add_student(make_student(f"stu_{i}"))
            add_attendance(source, f"stu_{i}", absences=12 if i % 2 == 0 else 0)
        source.add_student(make_student("other", school_id="sch_2"))

        summary = service.detect_risks_for_school("sch_1")

        assert summary.students_processed == 6
        assert summary.students_failed == 0
        assert summary.flags_created == 3
        assert summary.flags_resolved == 0

    def test_student_failure_is_isolated(self, source, store, repo):
        for i in range(4):
            source.add_student(make_student(f"stu_{i}"))
            add_attendance(source, f"stu_{i}", absences=12)

        flaky = MagicMock(wraps=source)
        original = source.attendance_between

        def attendance_between(student_id, start, end):
            if student_id == "stu_2":
                raise RepositoryError("attendance table unavailable")
            return original(student_id, start, end)

        flaky.attendance_between.side_effect = attendance_between
        service = RiskDetectionService(flaky, store, flag_repository=repo, clock=lambda: TODAY)

        summary = service.detect_risks_for_school("sch_1")

        assert summary.students_processed == 3
        assert summary.students_failed == 1
        assert summary.flags_created == 3

    def test_config_store_fault_aborts(self, source, repo):
        store = MagicMock()
        store.get_or_create.side_effect = RepositoryError("config store down")
        service = RiskDetectionService(source, store, flag_repository=repo)

        with pytest.raises(RepositoryError):
            service.detect_risks_for_school("sch_1")


class TestOverallRiskLevel:

    def test_low_without_flags(self, service):
        assert service.overall_risk_level("stu_1") is Severity.LOW

    def test_max_of_active_flags(self, service, source):
        source.add_student(make_student("stu_1", distance_to_school_km=4.0))
        add_attendance(source, "stu_1", absences=12)
        service.run_for_student("stu_1")

        assert service.overall_risk_level("stu_1") is Severity.CRITICAL


def test_enabled_domains_order():
    assert enabled_domains(RiskRuleConfig(school_id="sch_1")) == [
        RiskDomain.ATTENDANCE,
        RiskDomain.PERFORMANCE,
        RiskDomain.SOCIOECONOMIC,
        RiskDomain.DISTANCE,
    ]
