"""Delivery status tracking.

Single owner of message delivery state. Retry outcomes from the
dispatcher and delivery receipts from providers both land here, from
many threads at once.

Sub-delivery transitions only move forward:

    PENDING -> SENT -> DELIVERED
    PENDING -> FAILED
    SENT    -> FAILED

DELIVERED and FAILED are terminal. Anything else (a late or duplicated
provider callback, for instance) is ignored and logged.
"""
import copy
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .exceptions import MessageNotFoundError
from .models import TERMINAL_STATUSES, Channel, DeliveryStatus, Message, StatusEvent, can_transition

logger = logging.getLogger(__name__)


class DeliveryStatusTracker:
    """Thread-safe, in-process record of messages and their history.

    Finished messages stay until ``purge_completed()`` drops them.
    """

    def __init__(self, clock=datetime.utcnow):
        self._messages: Dict[str, Message] = {}
        self._history: Dict[str, List[StatusEvent]] = {}
        self._by_provider_id: Dict[str, Tuple[str, Channel]] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def register(self, message: Message) -> None:
        with self._lock:
            message.status = DeliveryStatus.PENDING
            self._messages[message.message_id] = message
            self._history[message.message_id] = [
                StatusEvent(message.message_id, DeliveryStatus.PENDING, timestamp=self._clock())
            ]

        logger.info(
            "MESSAGE_REGISTERED",
            extra={
                "message_id": message.message_id,
                "channels": [c.value for c in message.deliveries],
                "template_id": message.template_id,
            }
        )

    def record_attempt(self, message_id: str, channel: Channel, error: Optional[str] = None) -> None:
        """Count one provider attempt, with its error if it failed."""
        with self._lock:
            delivery = self._delivery(message_id, channel)
            delivery.attempt_count += 1
            if error:
                delivery.last_error = error

    def mark_sent(self, message_id: str, channel: Channel, provider_message_id: Optional[str] = None) -> bool:
        with self._lock:
            applied = self._transition(message_id, channel, DeliveryStatus.SENT)
            if applied and provider_message_id:
                self._delivery(message_id, channel).provider_message_id = provider_message_id
                self._by_provider_id[provider_message_id] = (message_id, channel)
            return applied

    def mark_failed(self, message_id: str, channel: Channel, error: str) -> bool:
        with self._lock:
            return self._transition(message_id, channel, DeliveryStatus.FAILED, error)

    def mark_delivered(self, message_id: str, channel: Channel) -> bool:
        with self._lock:
            return self._transition(message_id, channel, DeliveryStatus.DELIVERED)

    def apply_provider_callback(
        self,
        provider_message_id: str,
        status: DeliveryStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Apply a provider delivery receipt.

        Returns:
            False if the provider message id is unknown, True otherwise
            (including receipts ignored as out of order)
        """
        with self._lock:
            owner = self._by_provider_id.get(provider_message_id)
            if owner is None:
                logger.warning(
                    "DELIVERY_CALLBACK_UNKNOWN_ID",
                    extra={"provider_message_id": provider_message_id}
                )
                return False
            message_id, channel = owner
            self._transition(message_id, channel, status, error)
            return True

    def get(self, message_id: str) -> Optional[Message]:
        """Snapshot of a message, or None."""
        with self._lock:
            message = self._messages.get(message_id)
            return copy.deepcopy(message) if message else None

    def history(self, message_id: str) -> List[StatusEvent]:
        with self._lock:
            return list(self._history.get(message_id, []))

    def find_by_status(self, status: DeliveryStatus) -> List[Message]:
        with self._lock:
            return [copy.deepcopy(m) for m in self._messages.values() if m.status is status]

    def purge_completed(self, before: datetime) -> int:
        """Forget DELIVERED and FAILED messages that finished before ``before``.

        Messages still waiting on a provider receipt are kept.

        Returns:
            Number of messages removed
        """
        with self._lock:
            expired = [
                m.message_id for m in self._messages.values()
                if m.status in TERMINAL_STATUSES
                and (m.delivered_at or m.failed_at or m.created_at) < before
            ]
            for message_id in expired:
                message = self._messages.pop(message_id)
                self._history.pop(message_id, None)
                for delivery in message.deliveries.values():
                    if delivery.provider_message_id:
                        self._by_provider_id.pop(delivery.provider_message_id, None)

        if expired:
            logger.info("MESSAGES_PURGED", extra={"count": len(expired), "before": before.isoformat()})
        return len(expired)

    def health_check(self, timeout: float = 1.0) -> Dict[str, Any]:
        """Readiness probe: the tracker lock must be obtainable within ``timeout``."""
        if not self._lock.acquire(timeout=timeout):
            logger.error("DELIVERY_TRACKER_UNRESPONSIVE", extra={"timeout_seconds": timeout})
            return {"status": "unresponsive", "healthy": False}
        try:
            return {
                "status": "ok",
                "healthy": True,
                "tracked_messages": len(self._messages),
                "provider_ids": len(self._by_provider_id),
            }
        finally:
            self._lock.release()

    def _message(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    def _delivery(self, message_id: str, channel: Channel):
        message = self._message(message_id)
        delivery = message.deliveries.get(channel)
        if delivery is None:
            raise MessageNotFoundError(f"{message_id}/{channel.value}")
        return delivery

    def _transition(
        self,
        message_id: str,
        channel: Channel,
        target: DeliveryStatus,
        error: Optional[str] = None,
    ) -> bool:
        message = self._message(message_id)
        delivery = self._delivery(message_id, channel)

        if not can_transition(delivery.status, target):
            logger.warning(
                "DELIVERY_TRANSITION_IGNORED",
                extra={
                    "message_id": message_id,
                    "channel": channel.value,
                    "current_status": delivery.status.value,
                    "requested_status": target.value,
                }
            )
            return False

        now = self._clock()
        delivery.status = target
        if error:
            delivery.last_error = error
        self._history[message_id].append(StatusEvent(message_id, target, channel, error, now))

        derived = message.derive_status()
        if derived is not message.status:
            message.status = derived
            if derived is DeliveryStatus.SENT:
                message.sent_at = now
            elif derived is DeliveryStatus.DELIVERED:
                message.sent_at = message.sent_at or now
                message.delivered_at = now
            elif derived is DeliveryStatus.FAILED:
                message.failed_at = now

            log = logger.error if derived is DeliveryStatus.FAILED else logger.info
            log(
                "MESSAGE_STATUS_CHANGED",
                extra={
                    "message_id": message_id,
                    "status": derived.value,
                    "attempt_count": message.attempt_count,
                    "last_error": message.last_error,
                }
            )
        return True
