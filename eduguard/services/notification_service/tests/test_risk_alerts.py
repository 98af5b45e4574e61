"""Tests for RiskAlertNotifier."""
import pytest
from datetime import datetime
from unittest.mock import MagicMock

from eduguard.services.notification_service.dispatcher import NotificationDispatcher
from eduguard.services.notification_service.exceptions import NoContactMethodError
from eduguard.services.notification_service.models import Channel, DeliveryStatus
from eduguard.services.notification_service.providers import ProviderReceipt
from eduguard.services.notification_service.risk_alerts import RISK_ALERT_TEMPLATE, RiskAlertNotifier
from eduguard.shared.models import (
    FlagStatus,
    GuardianContact,
    RiskDomain,
    RiskFlag,
    Severity,
    StudentRecord,
)
from eduguard.shared.utils import configure_pii_salt

NOW = datetime(2026, 3, 20, 9, 0)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


def make_flag(severity=Severity.HIGH, reasons=("11 absences out of 20 attendance records since 2026-03-01",)):
    return RiskFlag(
        flag_id="flag_1",
        student_id="stu_1",
        school_id="sch_1",
        domain=RiskDomain.ATTENDANCE,
        severity=severity,
        reasons=reasons,
        status=FlagStatus.OPEN,
        detected_at=NOW,
        updated_at=NOW,
    )


def make_student(guardians=None):
    if guardians is None:
        guardians = (GuardianContact("Jean", phone="0788123456", email="jean@example.com", is_primary=True),)
    return StudentRecord(
        student_id="stu_1",
        school_id="sch_1",
        full_name="Aline Uwase",
        school_name="GS Kigali",
        guardians=guardians,
    )


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.send.return_value = ProviderReceipt("prov-1")
    return provider


@pytest.fixture
def notifier(provider):
    return RiskAlertNotifier(NotificationDispatcher(provider, sleep=lambda _: None))


class TestRiskAlertNotifier:

    def test_sends_sms_and_email(self, notifier, provider):
        sent = notifier.notify_escalation(make_student(), make_flag(), "EN")

        assert sent.status is DeliveryStatus.SENT
        assert sent.template_id == RISK_ALERT_TEMPLATE
        assert sent.related_flag_id == "flag_1"
        assert set(sent.deliveries) == {Channel.SMS, Channel.EMAIL}
        sms = sent.deliveries[Channel.SMS].content
        assert "Aline Uwase has been flagged as HIGH risk (attendance)" in sms
        assert "11 absences" in sent.deliveries[Channel.EMAIL].content
        assert provider.send.call_count == 2

    def test_kinyarwanda(self, notifier):
        sent = notifier.notify_escalation(make_student(), make_flag(Severity.CRITICAL), "RW")

        assert sent.fallback_language_used is False
        assert "CRITICAL" in sent.deliveries[Channel.SMS].content

    def test_no_guardian_is_skipped(self, notifier, provider):
        assert notifier.notify_escalation(make_student(guardians=()), make_flag(), "EN") is None
        provider.send.assert_not_called()

    def test_guardian_without_contact_is_skipped(self, notifier, provider):
        student = make_student(guardians=(GuardianContact("Jean", is_primary=True),))

        assert notifier.notify_escalation(student, make_flag(), "EN") is None
        provider.send.assert_not_called()

    def test_no_contact_from_dispatcher_is_skipped(self):
        dispatcher = MagicMock()
        dispatcher.send.side_effect = NoContactMethodError("no address")
        notifier = RiskAlertNotifier(dispatcher, channel=Channel.SMS)

        assert notifier.notify_escalation(make_student(), make_flag(), "EN") is None
        message = dispatcher.send.call_args.args[0]
        assert message.channel is Channel.SMS
        assert message.variables["riskLevel"] == "HIGH"
