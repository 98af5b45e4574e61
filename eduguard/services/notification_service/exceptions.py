"""Notification service exceptions.

Provider errors split into transient and permanent; the dispatcher's
retry policy depends on nothing else.
"""
from typing import Iterable, Optional


class NotificationError(Exception):
    """Base exception for the notification service."""
    pass


class TemplateNotFoundError(NotificationError):
    """No entry for the template id in any language."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} not found")


class TemplateRenderError(NotificationError):
    """A placeholder had no value."""

    def __init__(self, template_id: str, missing: Iterable[str]):
        self.template_id = template_id
        self.missing = sorted(set(missing))
        super().__init__(
            f"Template {template_id} has unresolved placeholders: {', '.join(self.missing)}"
        )


class NoContactMethodError(NotificationError):
    """Recipient has no address for the requested channel."""
    pass


class MessageNotFoundError(NotificationError):
    """No tracked message with this id."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


class ProviderError(NotificationError):
    """Base for errors raised by channel providers."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class ProviderTransientError(ProviderError):
    """Retryable: throttling, provider outage, network trouble."""
    pass


class ProviderTimeoutError(ProviderTransientError):
    """The provider call exceeded its timeout."""
    pass


class ProviderPermanentError(ProviderError):
    """Not retryable: malformed or rejected address, invalid request."""
    pass
