"""Tests for NotificationDispatcher."""
import threading
import pytest
from unittest.mock import patch

from eduguard.services.notification_service.config import DispatchConfig
from eduguard.services.notification_service.dispatcher import (
    SKIP_CANCELLED,
    SKIP_NO_CONTACT,
    SKIP_STUDENT_NOT_FOUND,
    NotificationDispatcher,
    build_guardian_message,
)
from eduguard.services.notification_service.exceptions import (
    NoContactMethodError,
    ProviderPermanentError,
    ProviderTimeoutError,
    ProviderTransientError,
    TemplateNotFoundError,
    TemplateRenderError,
)
from eduguard.services.notification_service.models import (
    Channel,
    DeliveryStatus,
    Message,
    Recipient,
)
from eduguard.services.notification_service.providers import ChannelProvider, ProviderReceipt
from eduguard.shared.database import InMemoryRecordSource
from eduguard.shared.models import GuardianContact, StudentRecord
from eduguard.shared.utils import CancellationToken, configure_pii_salt


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


class FakeProvider(ChannelProvider):
    """Plays back scripted outcomes; succeeds once the script runs out."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self._lock = threading.Lock()

    def send(self, channel, address, content, subject=None, timeout=None):
        with self._lock:
            self.calls.append((channel, address, content, subject))
            outcome = self.outcomes.pop(0) if self.outcomes else None
            call_number = len(self.calls)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, ProviderReceipt):
            return outcome
        return ProviderReceipt(f"prov-{call_number}")


def make_message(channel=Channel.SMS, phone="0788123456", email=None, content="Hello", **kwargs):
    return Message(
        message_id="msg_1",
        recipient=Recipient("Jean", phone=phone, email=email),
        channel=channel,
        content=content,
        **kwargs
    )


def make_student(student_id, phone="0788123456", email=None, guardians=True, school_contact_phone=""):
    contacts = (GuardianContact("Jean", phone=phone, email=email, is_primary=True),) if guardians else ()
    return StudentRecord(
        student_id=student_id,
        school_id="sch_1",
        full_name=f"Student {student_id}",
        school_name="GS Kigali",
        guardians=contacts,
        school_contact_phone=school_contact_phone,
    )


@pytest.fixture
def sleeps():
    return []


def make_dispatcher(provider, sleeps, record_source=None):
    return NotificationDispatcher(
        provider,
        record_source=record_source,
        config=DispatchConfig(max_workers=2, queue_size=2),
        sleep=sleeps.append,
    )


class TestSend:

    def test_success_on_first_attempt(self, sleeps):
        dispatcher = make_dispatcher(FakeProvider(), sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.SENT
        assert sent.attempt_count == 1
        assert sent.sent_at is not None
        assert sent.deliveries[Channel.SMS].provider_message_id == "prov-1"
        assert sleeps == []

    def test_transient_errors_retry_with_backoff(self, sleeps):
        provider = FakeProvider([
            ProviderTransientError("throttled", code="Throttling"),
            ProviderTimeoutError("read timeout", code="Timeout"),
        ])
        dispatcher = make_dispatcher(provider, sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.SENT
        assert sent.attempt_count == 3
        assert sleeps == [0.5, 1.0]
        assert [e.status for e in dispatcher.tracker.history("msg_1")] == [
            DeliveryStatus.PENDING,
            DeliveryStatus.SENT,
        ]

    def test_retries_exhausted(self, sleeps):
        provider = FakeProvider([ProviderTransientError("throttled")] * 3)
        dispatcher = make_dispatcher(provider, sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.FAILED
        assert sent.attempt_count == 3
        assert sent.failed_at is not None
        assert sent.last_error == "ProviderTransientError: throttled"
        assert len(provider.calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_builtin_timeout_is_transient(self, sleeps):
        provider = FakeProvider([TimeoutError("socket timed out")])
        dispatcher = make_dispatcher(provider, sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.SENT
        assert sent.attempt_count == 2

    def test_permanent_error_is_not_retried(self, sleeps):
        provider = FakeProvider([ProviderPermanentError("Invalid parameter: PhoneNumber")])
        dispatcher = make_dispatcher(provider, sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.FAILED
        assert sent.attempt_count == 1
        assert "PhoneNumber" in sent.last_error
        assert sleeps == []

    def test_unexpected_error_fails_delivery(self, sleeps):
        dispatcher = make_dispatcher(FakeProvider([RuntimeError("boom")]), sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.FAILED
        assert sent.last_error == "RuntimeError: boom"

    def test_error_outside_provider_call_fails_delivery(self, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps)

        with patch(
            "eduguard.services.notification_service.dispatcher.hash_contact",
            side_effect=RuntimeError("PII salt not configured"),
        ):
            sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.FAILED
        assert sent.last_error == "RuntimeError: PII salt not configured"
        assert sent.attempt_count == 0
        assert provider.calls == []

    def test_rejected_receipt_fails_delivery(self, sleeps):
        provider = FakeProvider([ProviderReceipt(None, accepted=False)])
        dispatcher = make_dispatcher(provider, sleeps)

        sent = dispatcher.send(make_message())

        assert sent.status is DeliveryStatus.FAILED
        assert sent.attempt_count == 1

    def test_no_address_for_channel(self, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps)

        with pytest.raises(NoContactMethodError):
            dispatcher.send(make_message(channel=Channel.EMAIL))

        assert provider.calls == []
        assert dispatcher.tracker.get("msg_1") is None

    def test_both_channels_are_independent(self, sleeps):
        provider = FakeProvider([None, ProviderPermanentError("Email address is not verified")])
        dispatcher = make_dispatcher(provider, sleeps)

        sent = dispatcher.send(make_message(channel=Channel.BOTH, email="jean@example.com"))

        assert set(sent.deliveries) == {Channel.SMS, Channel.EMAIL}
        assert sent.deliveries[Channel.SMS].status is DeliveryStatus.SENT
        assert sent.deliveries[Channel.EMAIL].status is DeliveryStatus.FAILED
        assert sent.status is DeliveryStatus.SENT

    def test_both_degrades_to_available_channel(self, sleeps):
        dispatcher = make_dispatcher(FakeProvider(), sleeps)

        sent = dispatcher.send(make_message(channel=Channel.BOTH))

        assert list(sent.deliveries) == [Channel.SMS]

    def test_email_gets_default_subject(self, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps)

        dispatcher.send(make_message(channel=Channel.EMAIL, phone=None, email="jean@example.com"))

        assert provider.calls[0][3] == "Message from EduGuard"

    def test_template_rendered_per_channel(self, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps)
        message = build_guardian_message(
            make_student("stu_1", email="jean@example.com"),
            channel=Channel.BOTH,
            language="EN",
            template_id="riskAlert",
            variables={"riskLevel": "HIGH", "riskDomain": "attendance", "riskDescription": "11 absences"},
        )

        dispatcher.send(message)

        sms, email = sorted(provider.calls, key=lambda c: c[0].value == "email")
        assert sms[2].startswith("EduGuard Alert: Student stu_1 has been flagged as HIGH risk")
        assert sms[3] is None
        assert email[3] == "Risk Alert for Student stu_1"
        assert "11 absences" in email[2]

    def test_language_fallback_is_recorded(self, sleeps):
        dispatcher = make_dispatcher(FakeProvider(), sleeps)
        message = build_guardian_message(
            make_student("stu_1"),
            channel=Channel.SMS,
            language="FR",
            template_id="riskAlert",
            variables={"riskLevel": "HIGH", "riskDomain": "distance", "riskDescription": "7 km"},
        )

        sent = dispatcher.send(message)

        assert sent.fallback_language_used is True

    def test_render_error_registers_nothing(self, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps)
        message = make_message(template_id="absenceAlert", variables={"guardianName": "Jean"})

        with pytest.raises(TemplateRenderError):
            dispatcher.send(message)

        assert provider.calls == []
        assert dispatcher.tracker.get("msg_1") is None


class CancelAfterSource(InMemoryRecordSource):
    """Cancels the token once a given student has been looked up."""

    def __init__(self, source, token, cancel_after):
        super().__init__()
        self._source = source
        self._token = token
        self._cancel_after = cancel_after

    def get_student(self, student_id):
        student = self._source.get_student(student_id)
        if student_id == self._cancel_after:
            self._token.cancel()
        return student


class TestSendBulk:

    @pytest.fixture
    def source(self):
        source = InMemoryRecordSource()
        for i in range(10):
            phone = None if i in (2, 5, 8) else f"078800000{i}"
            source.add_student(make_student(f"stu_{i}", phone=phone, email=f"g{i}@example.com"))
        return source

    def test_students_without_phone_are_skipped(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)
        student_ids = [f"stu_{i}" for i in range(10)]

        results = dispatcher.send_bulk(student_ids, content="School closes early on Friday")

        assert [r.student_id for r in results] == student_ids
        skipped = [r.student_id for r in results if r.skipped]
        assert skipped == ["stu_2", "stu_5", "stu_8"]
        assert all(r.reason == SKIP_NO_CONTACT for r in results if r.skipped)
        assert len(provider.calls) == 7
        assert all(r.status is DeliveryStatus.SENT for r in results if not r.skipped)

    def test_unknown_and_guardianless_students(self, source, sleeps):
        source.add_student(make_student("orphan", guardians=False))
        dispatcher = make_dispatcher(FakeProvider(), sleeps, record_source=source)

        results = dispatcher.send_bulk(["ghost", "orphan", "stu_0"], content="Hello")

        assert [r.reason for r in results] == [SKIP_STUDENT_NOT_FOUND, SKIP_NO_CONTACT, None]
        assert results[2].status is DeliveryStatus.SENT

    def test_failures_are_reported_not_raised(self, source, sleeps):
        provider = FakeProvider([ProviderPermanentError("Invalid parameter: PhoneNumber")])
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        results = dispatcher.send_bulk(["stu_0"], content="Hello")

        assert results[0].skipped is False
        assert results[0].status is DeliveryStatus.FAILED
        assert results[0].attempt_count == 1
        assert "PhoneNumber" in results[0].last_error

    def test_cancelled_before_start(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)
        token = CancellationToken()
        token.cancel()

        results = dispatcher.send_bulk(["stu_0", "stu_1"], content="Hello", cancel_token=token)

        assert [r.reason for r in results] == [SKIP_CANCELLED, SKIP_CANCELLED]
        assert provider.calls == []

    def test_cancelled_mid_batch(self, source, sleeps):
        token = CancellationToken()
        source = CancelAfterSource(source, token, cancel_after="stu_1")
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        results = dispatcher.send_bulk(
            ["stu_0", "stu_1", "stu_3", "stu_4"], content="Hello", cancel_token=token
        )

        assert [r.status for r in results[:2]] == [DeliveryStatus.SENT, DeliveryStatus.SENT]
        assert [r.reason for r in results[2:]] == [SKIP_CANCELLED, SKIP_CANCELLED]
        assert all(r.skipped for r in results[2:])
        assert len(provider.calls) == 2

    def test_duplicate_student_ids_are_sent_once(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        results = dispatcher.send_bulk(["stu_0", "stu_1", "stu_0"], content="Hello")

        assert [r.student_id for r in results] == ["stu_0", "stu_1"]
        assert len(provider.calls) == 2

    def test_error_outside_provider_call_is_reported(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        with patch(
            "eduguard.services.notification_service.dispatcher.hash_contact",
            side_effect=RuntimeError("PII salt not configured"),
        ):
            results = dispatcher.send_bulk(["stu_0"], content="Hello")

        assert results[0].status is DeliveryStatus.FAILED
        assert results[0].last_error == "RuntimeError: PII salt not configured"
        assert dispatcher.tracker.get(results[0].message_id).status is DeliveryStatus.FAILED
        assert provider.calls == []

    def test_tracker_failure_is_reported(self, source, sleeps):
        dispatcher = make_dispatcher(FakeProvider(), sleeps, record_source=source)
        tracker = dispatcher.tracker

        with patch.object(tracker, "record_attempt", side_effect=RuntimeError("tracker unavailable")), \
                patch.object(tracker, "mark_failed", side_effect=RuntimeError("tracker unavailable")):
            results = dispatcher.send_bulk(["stu_0"], content="Hello")

        assert results[0].skipped is False
        assert results[0].status is DeliveryStatus.FAILED
        assert results[0].last_error == "RuntimeError: tracker unavailable"

    def test_template_defaults_contact_info_to_school_phone(self, source, sleeps):
        source.add_student(make_student("stu_10", phone="0788000010", school_contact_phone="0788999000"))
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        results = dispatcher.send_bulk(
            ["stu_10", "stu_0"], template_id="absenceAlert", variables={"date": "2026-10-16"}
        )

        assert [r.status for r in results] == [DeliveryStatus.SENT, DeliveryStatus.SENT]
        contents = {call[1]: call[2] for call in provider.calls}
        assert contents["0788000010"].endswith("Please contact us if this continues. 0788999000")
        assert contents["0788000000"].endswith("Please contact us if this continues. ")

    def test_unknown_template_fails_fast(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        with pytest.raises(TemplateNotFoundError):
            dispatcher.send_bulk(["stu_0", "stu_1"], template_id="birthdayCard")

        assert provider.calls == []

    def test_render_error_is_per_student(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        results = dispatcher.send_bulk(["stu_0"], template_id="absenceAlert", language="EN")

        assert results[0].skipped is False
        assert results[0].message_id is None
        assert "date" in results[0].reason
        assert provider.calls == []

    def test_template_bulk_uses_student_variables(self, source, sleeps):
        provider = FakeProvider()
        dispatcher = make_dispatcher(provider, sleeps, record_source=source)

        dispatcher.send_bulk(
            ["stu_0", "stu_1"],
            template_id="absenceAlert",
            language="EN",
            variables={"date": "2026-03-20", "contactInfo": "0788000000"},
        )

        contents = sorted(call[2] for call in provider.calls)
        assert "Student stu_0" in contents[0]
        assert "Student stu_1" in contents[1]

    def test_requires_content_or_template(self, source, sleeps):
        dispatcher = make_dispatcher(FakeProvider(), sleeps, record_source=source)

        with pytest.raises(ValueError):
            dispatcher.send_bulk(["stu_0"])

    def test_requires_record_source(self, sleeps):
        dispatcher = make_dispatcher(FakeProvider(), sleeps)

        with pytest.raises(ValueError):
            dispatcher.send_bulk(["stu_0"], content="Hello")


class TestBuildGuardianMessage:

    def test_no_guardian(self):
        assert build_guardian_message(make_student("stu_1", guardians=False), Channel.SMS, "EN") is None

    def test_caller_variables_take_precedence(self):
        message = build_guardian_message(
            make_student("stu_1"),
            Channel.SMS,
            "RW",
            template_id="absenceAlert",
            variables={"schoolName": "GS Remera"},
            related_flag_id="flag_1",
        )

        assert message.variables["guardianName"] == "Jean"
        assert message.variables["studentName"] == "Student stu_1"
        assert message.variables["schoolName"] == "GS Remera"
        assert message.related_flag_id == "flag_1"
        assert message.recipient.phone == "0788123456"

    def test_contact_info_from_school(self):
        message = build_guardian_message(
            make_student("stu_1", school_contact_phone="0788999000"), Channel.SMS, "EN"
        )
        without_phone = build_guardian_message(make_student("stu_2"), Channel.SMS, "EN")

        assert message.variables["contactInfo"] == "0788999000"
        assert without_phone.variables["contactInfo"] == ""


class TestDispatchConfig:

    def test_backoff_is_capped(self):
        config = DispatchConfig(backoff_base_seconds=1.0, backoff_max_seconds=5.0)

        assert [config.backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 5.0, 5.0]
