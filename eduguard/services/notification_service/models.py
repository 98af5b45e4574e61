"""Message and delivery models.

A Message addressed to channel BOTH is delivered as two independent
sub-deliveries (SMS and email), each reaching its own terminal status.
The message status is derived from its sub-deliveries.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Channel(Enum):
    SMS = "sms"
    EMAIL = "email"
    BOTH = "both"

    def expand(self) -> List["Channel"]:
        """Concrete channels a request resolves to."""
        if self is Channel.BOTH:
            return [Channel.SMS, Channel.EMAIL]
        return [self]


class DeliveryStatus(Enum):
    """Delivery lifecycle; only moves forward."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED})

_ALLOWED_TRANSITIONS = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.SENT, DeliveryStatus.FAILED}),
    DeliveryStatus.SENT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True)
class Recipient:
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None

    def address_for(self, channel: Channel) -> Optional[str]:
        if channel is Channel.SMS:
            return self.phone or None
        if channel is Channel.EMAIL:
            return self.email or None
        return None


@dataclass
class SubDelivery:
    """One channel's leg of a message."""
    channel: Channel
    address: str
    content: str = ""
    subject: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass
class Message:
    """A guardian message and its delivery state.

    Either ``template_id`` or ``content`` is set. Template messages are
    rendered per channel when sent.
    """
    message_id: str
    recipient: Recipient
    channel: Channel
    language: str = "EN"
    template_id: Optional[str] = None
    content: Optional[str] = None
    subject: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    student_id: Optional[str] = None
    school_id: Optional[str] = None
    related_flag_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    deliveries: Dict[Channel, SubDelivery] = field(default_factory=dict)
    fallback_language_used: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def attempt_count(self) -> int:
        return sum(d.attempt_count for d in self.deliveries.values())

    @property
    def last_error(self) -> Optional[str]:
        errors = [d.last_error for d in self.deliveries.values() if d.last_error]
        return errors[-1] if errors else None

    def derive_status(self) -> DeliveryStatus:
        statuses = [d.status for d in self.deliveries.values()]
        if not statuses or any(s is DeliveryStatus.PENDING for s in statuses):
            return DeliveryStatus.PENDING
        if all(s is DeliveryStatus.FAILED for s in statuses):
            return DeliveryStatus.FAILED
        if all(s in TERMINAL_STATUSES for s in statuses):
            return DeliveryStatus.DELIVERED
        return DeliveryStatus.SENT


@dataclass(frozen=True)
class StatusEvent:
    """One status change in a message's history."""
    message_id: str
    status: DeliveryStatus
    channel: Optional[Channel] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class BulkDispatchResult:
    """Per-student outcome of a bulk send.

    ``skipped`` results never reached a provider; ``reason`` says why.
    """
    student_id: str
    skipped: bool = False
    reason: Optional[str] = None
    message_id: Optional[str] = None
    status: Optional[DeliveryStatus] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
