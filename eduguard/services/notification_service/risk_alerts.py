"""Guardian alerts for escalated risk flags.

Called by the risk engine when a flag is opened or its severity goes
up to HIGH or CRITICAL. Sends the ``riskAlert`` template to the
primary guardian by SMS and email.
"""
import logging
from typing import Optional

from eduguard.shared.models import RiskFlag, StudentRecord
from .dispatcher import NotificationDispatcher, build_guardian_message
from .exceptions import NoContactMethodError
from .models import Channel, Message

logger = logging.getLogger(__name__)

RISK_ALERT_TEMPLATE = "riskAlert"


class RiskAlertNotifier:
    """Adapter from risk flags to guardian messages."""

    def __init__(self, dispatcher: NotificationDispatcher, channel: Channel = Channel.BOTH):
        self.dispatcher = dispatcher
        self.channel = channel

    def notify_escalation(self, student: StudentRecord, flag: RiskFlag, language: str) -> Optional[Message]:
        """Send the risk alert; None if the student has no reachable guardian."""
        variables = {
            "riskLevel": flag.severity.value.upper(),
            "riskDomain": flag.domain.value,
            "riskDescription": "; ".join(flag.reasons) or flag.severity.value.upper(),
        }
        message = build_guardian_message(
            student,
            channel=self.channel,
            language=language,
            template_id=RISK_ALERT_TEMPLATE,
            variables=variables,
            related_flag_id=flag.flag_id,
        )
        if message is None:
            logger.warning(
                "RISK_ALERT_SKIPPED",
                extra={"student_id": student.student_id, "flag_id": flag.flag_id, "reason": "no_guardian"}
            )
            return None

        try:
            sent = self.dispatcher.send(message)
        except NoContactMethodError:
            logger.warning(
                "RISK_ALERT_SKIPPED",
                extra={"student_id": student.student_id, "flag_id": flag.flag_id, "reason": "no_contact"}
            )
            return None

        logger.info(
            "RISK_ALERT_SENT",
            extra={
                "student_id": student.student_id,
                "flag_id": flag.flag_id,
                "severity": flag.severity.value,
                "message_id": sent.message_id,
                "status": sent.status.value,
            }
        )
        return sent
