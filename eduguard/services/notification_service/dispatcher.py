"""Notification dispatcher.

Sends guardian messages over SMS and/or email:
1. Resolve the requested channel against the recipient's addresses
2. Render templates per channel (before anything is recorded)
3. Register the message with the status tracker
4. Deliver each channel independently, retrying transient provider
   errors with exponential backoff

Bulk sends fan the per-channel deliveries out over a bounded worker
pool and report one result per student. A failure for one student
never raises out of a bulk send.
"""
import logging
import time
import uuid
from datetime import datetime, timedelta
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from eduguard.shared.database import RecordSource
from eduguard.shared.models import StudentRecord
from eduguard.shared.utils import BoundedExecutor, CancellationToken, hash_contact
from .config import DispatchConfig
from .exceptions import (
    NoContactMethodError,
    ProviderPermanentError,
    ProviderTransientError,
    TemplateNotFoundError,
    TemplateRenderError,
)
from .models import (
    BulkDispatchResult,
    Channel,
    DeliveryStatus,
    Message,
    Recipient,
    SubDelivery,
)
from .providers import ChannelProvider
from .status_tracker import DeliveryStatusTracker
from .templates import TemplateEngine

logger = logging.getLogger(__name__)

SKIP_STUDENT_NOT_FOUND = "student_not_found"
SKIP_NO_CONTACT = "no_contact_for_channel"
SKIP_CANCELLED = "cancelled"


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class NotificationDispatcher:
    """Sends messages through a channel provider and tracks their delivery.

    Args:
        provider: SMS/email provider
        templates: Template engine (built-in templates if omitted)
        tracker: Delivery status tracker (new one if omitted)
        record_source: Student records, needed for bulk sends
        config: Retry and pool settings
        sleep: Backoff sleep function
    """

    def __init__(
        self,
        provider: ChannelProvider,
        templates: Optional[TemplateEngine] = None,
        tracker: Optional[DeliveryStatusTracker] = None,
        record_source: Optional[RecordSource] = None,
        config: Optional[DispatchConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.templates = templates or TemplateEngine()
        self.tracker = tracker or DeliveryStatusTracker()
        self.record_source = record_source
        self.config = config or DispatchConfig()
        self._sleep = sleep

    def send(self, message: Message) -> Message:
        """Send one message on every resolvable channel.

        Returns:
            Snapshot of the message after all deliveries reached SENT or FAILED

        Raises:
            NoContactMethodError: Recipient has no address for the channel
            TemplateNotFoundError: Template unknown in every language
            TemplateRenderError: A template placeholder has no value
        """
        self._prepare(message)
        self.tracker.register(message)

        for delivery in list(message.deliveries.values()):
            self._deliver(message.message_id, delivery)

        return self.tracker.get(message.message_id)

    def send_bulk(
        self,
        student_ids: Sequence[str],
        content: Optional[str] = None,
        template_id: Optional[str] = None,
        channel: Channel = Channel.SMS,
        language: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        subject: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[BulkDispatchResult]:
        """Send the same content or template to each student's primary guardian.

        A student id listed more than once is sent to once.

        Returns:
            One result per distinct student id, in first-seen order

        Raises:
            TemplateNotFoundError: Template unknown in every language
                (raised before anything is sent)
        """
        if template_id is None and content is None:
            raise ValueError("send_bulk needs content or a template_id")
        if template_id is not None and not self.templates.has_template(template_id):
            raise TemplateNotFoundError(template_id)
        if self.record_source is None:
            raise ValueError("send_bulk needs a record source")

        self.tracker.purge_completed(datetime.utcnow() - timedelta(hours=self.config.retention_hours))

        student_ids = list(dict.fromkeys(student_ids))
        language = language or self.templates.default_language
        results: Dict[str, BulkDispatchResult] = {}
        submitted: List[Tuple[str, str, Future]] = []
        errors: Dict[str, str] = {}

        logger.info(
            "BULK_SEND_STARTED",
            extra={
                "student_count": len(student_ids),
                "channel": channel.value,
                "template_id": template_id,
            }
        )

        with BoundedExecutor(
            self.config.max_workers,
            self.config.queue_size,
            thread_name_prefix="notify",
        ) as executor:
            for student_id in student_ids:
                if cancel_token is not None and cancel_token.cancelled:
                    results[student_id] = BulkDispatchResult(
                        student_id, skipped=True, reason=SKIP_CANCELLED
                    )
                    continue

                message, skipped = self._bulk_message(
                    student_id, content, template_id, channel, language, variables, subject
                )
                if message is None:
                    results[student_id] = skipped
                    continue

                self.tracker.register(message)
                for delivery in list(message.deliveries.values()):
                    future = executor.submit(self._deliver, message.message_id, delivery)
                    submitted.append((student_id, message.message_id, future))

        for student_id, message_id, future in submitted:
            try:
                future.result()
            except Exception as e:
                errors[message_id] = _describe(e)
                logger.error(
                    "BULK_DELIVERY_FAILED",
                    extra={
                        "student_id": student_id,
                        "message_id": message_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )

        for student_id, message_id, _ in submitted:
            if student_id in results:
                continue
            snapshot = self.tracker.get(message_id)
            status = snapshot.status
            if message_id in errors and status is DeliveryStatus.PENDING:
                status = DeliveryStatus.FAILED
            results[student_id] = BulkDispatchResult(
                student_id,
                message_id=message_id,
                status=status,
                attempt_count=snapshot.attempt_count,
                last_error=snapshot.last_error or errors.get(message_id),
            )

        ordered = [results[sid] for sid in student_ids]
        logger.info(
            "BULK_SEND_COMPLETED",
            extra={
                "student_count": len(student_ids),
                "skipped": sum(1 for r in ordered if r.skipped),
                "failed": sum(1 for r in ordered if r.status is DeliveryStatus.FAILED),
                "cancelled": sum(1 for r in ordered if r.reason == SKIP_CANCELLED),
            }
        )
        return ordered

    def _bulk_message(
        self,
        student_id: str,
        content: Optional[str],
        template_id: Optional[str],
        channel: Channel,
        language: str,
        variables: Optional[Mapping[str, Any]],
        subject: Optional[str],
    ) -> Tuple[Optional[Message], Optional[BulkDispatchResult]]:
        """Build and prepare one student's message, or the reason it was skipped."""
        student = self.record_source.get_student(student_id)
        if student is None:
            return None, BulkDispatchResult(student_id, skipped=True, reason=SKIP_STUDENT_NOT_FOUND)

        message = build_guardian_message(
            student,
            channel=channel,
            language=language,
            template_id=template_id,
            content=content,
            subject=subject,
            variables=variables,
        )
        if message is None:
            return None, BulkDispatchResult(student_id, skipped=True, reason=SKIP_NO_CONTACT)

        try:
            self._prepare(message)
        except NoContactMethodError:
            return None, BulkDispatchResult(student_id, skipped=True, reason=SKIP_NO_CONTACT)
        except TemplateRenderError as e:
            logger.warning(
                "BULK_TEMPLATE_RENDER_FAILED",
                extra={"student_id": student_id, "template_id": template_id, "missing": e.missing}
            )
            return None, BulkDispatchResult(student_id, skipped=False, reason=str(e))

        return message, None

    def _prepare(self, message: Message) -> None:
        """Resolve addresses and render content for every channel.

        Nothing is recorded until this succeeds for every channel.
        """
        addresses = [
            (channel, message.recipient.address_for(channel))
            for channel in message.channel.expand()
        ]
        addresses = [(c, a) for c, a in addresses if a]
        if not addresses:
            raise NoContactMethodError(
                f"Recipient has no address for channel {message.channel.value}"
            )

        deliveries: Dict[Channel, SubDelivery] = {}
        for channel, address in addresses:
            if message.template_id is not None:
                rendered = self.templates.render(
                    message.template_id, message.language, message.variables, channel
                )
                message.fallback_language_used = message.fallback_language_used or rendered.fallback_used
                content, subject = rendered.content, rendered.subject
            elif message.content is not None:
                content = message.content
                subject = None
                if channel is Channel.EMAIL:
                    subject = message.subject or self.config.default_email_subject
            else:
                raise ValueError("Message needs content or a template_id")

            deliveries[channel] = SubDelivery(
                channel=channel, address=address, content=content, subject=subject
            )

        message.deliveries = deliveries

    def _deliver(self, message_id: str, delivery: SubDelivery) -> None:
        """Drive one sub-delivery to SENT or FAILED.

        An error outside the provider call (log fields, the tracker) still
        fails a sub-delivery that has not left PENDING.
        """
        try:
            self._attempt_delivery(message_id, delivery)
        except Exception as e:
            logger.error(
                "DELIVERY_ABORTED",
                extra={
                    "message_id": message_id,
                    "channel": delivery.channel.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            current = self.tracker.get(message_id)
            leg = current.deliveries.get(delivery.channel) if current else None
            if leg is None:
                raise
            if leg.status is DeliveryStatus.PENDING:
                self.tracker.mark_failed(message_id, delivery.channel, _describe(e))

    def _attempt_delivery(self, message_id: str, delivery: SubDelivery) -> None:
        channel = delivery.channel
        log_extra = {
            "message_id": message_id,
            "channel": channel.value,
            "address_hash": hash_contact(delivery.address),
        }

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                receipt = self.provider.send(
                    channel,
                    delivery.address,
                    delivery.content,
                    subject=delivery.subject,
                    timeout=self.config.provider_timeout_seconds,
                )
            except ProviderPermanentError as e:
                self.tracker.record_attempt(message_id, channel, _describe(e))
                self.tracker.mark_failed(message_id, channel, _describe(e))
                logger.error(
                    "DELIVERY_FAILED_PERMANENT",
                    extra={**log_extra, "attempt": attempt, "error": str(e), "error_type": type(e).__name__}
                )
                return
            except (ProviderTransientError, TimeoutError) as e:
                self.tracker.record_attempt(message_id, channel, _describe(e))
                if attempt >= self.config.max_attempts:
                    self.tracker.mark_failed(message_id, channel, _describe(e))
                    logger.error(
                        "DELIVERY_FAILED_RETRIES_EXHAUSTED",
                        extra={**log_extra, "attempt": attempt, "error": str(e), "error_type": type(e).__name__}
                    )
                    return

                delay = self.config.backoff_delay(attempt)
                logger.warning(
                    "DELIVERY_RETRY_SCHEDULED",
                    extra={**log_extra, "attempt": attempt, "delay_seconds": delay, "error_type": type(e).__name__}
                )
                self._sleep(delay)
                continue
            except Exception as e:
                self.tracker.record_attempt(message_id, channel, _describe(e))
                self.tracker.mark_failed(message_id, channel, _describe(e))
                logger.error(
                    "DELIVERY_FAILED_UNEXPECTED",
                    extra={**log_extra, "attempt": attempt, "error": str(e), "error_type": type(e).__name__}
                )
                return

            if not receipt.accepted:
                error = "ProviderRejected: message not accepted by provider"
                self.tracker.record_attempt(message_id, channel, error)
                self.tracker.mark_failed(message_id, channel, error)
                logger.error("DELIVERY_REJECTED", extra={**log_extra, "attempt": attempt})
                return

            self.tracker.record_attempt(message_id, channel)
            self.tracker.mark_sent(message_id, channel, receipt.provider_message_id)
            logger.info(
                "DELIVERY_SENT",
                extra={**log_extra, "attempt": attempt, "provider_message_id": receipt.provider_message_id}
            )
            return


def build_guardian_message(
    student: StudentRecord,
    channel: Channel,
    language: str,
    template_id: Optional[str] = None,
    content: Optional[str] = None,
    subject: Optional[str] = None,
    variables: Optional[Mapping[str, Any]] = None,
    related_flag_id: Optional[str] = None,
) -> Optional[Message]:
    """Message to a student's primary guardian, or None if there is no guardian.

    Template variables always include guardianName, studentName,
    schoolName and contactInfo (the school's contact phone, empty when
    unknown); caller variables take precedence.
    """
    guardian = student.primary_guardian()
    if guardian is None:
        return None

    merged: Dict[str, Any] = {
        "guardianName": guardian.name,
        "studentName": student.full_name,
        "schoolName": student.school_name,
        "contactInfo": student.school_contact_phone or "",
    }
    merged.update(variables or {})

    return Message(
        message_id=str(uuid.uuid4()),
        recipient=Recipient(name=guardian.name, phone=guardian.phone, email=guardian.email),
        channel=channel,
        language=language,
        template_id=template_id,
        content=content,
        subject=subject,
        variables=merged,
        student_id=student.student_id,
        school_id=student.school_id,
        related_flag_id=related_flag_id,
    )
