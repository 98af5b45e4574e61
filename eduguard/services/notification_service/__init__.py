"""Notification Service - guardian messages over SMS and email.

Renders per-language templates, sends through AWS SNS/SES with bounded
retries, and tracks every message to a terminal delivery status.
"""
from .config import DispatchConfig, ProviderConfig
from .dispatcher import NotificationDispatcher, build_guardian_message
from .exceptions import (
    MessageNotFoundError,
    NoContactMethodError,
    NotificationError,
    ProviderError,
    ProviderPermanentError,
    ProviderTimeoutError,
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
    StatusEvent,
    SubDelivery,
)
from .providers import AwsChannelProvider, ChannelProvider, ProviderReceipt, format_phone_number
from .risk_alerts import RiskAlertNotifier
from .status_tracker import DeliveryStatusTracker
from .templates import RenderedTemplate, TemplateEngine, TemplateEntry

__all__ = [
    "DispatchConfig",
    "ProviderConfig",
    "NotificationDispatcher",
    "build_guardian_message",
    "MessageNotFoundError",
    "NoContactMethodError",
    "NotificationError",
    "ProviderError",
    "ProviderPermanentError",
    "ProviderTimeoutError",
    "ProviderTransientError",
    "TemplateNotFoundError",
    "TemplateRenderError",
    "BulkDispatchResult",
    "Channel",
    "DeliveryStatus",
    "Message",
    "Recipient",
    "StatusEvent",
    "SubDelivery",
    "AwsChannelProvider",
    "ChannelProvider",
    "ProviderReceipt",
    "format_phone_number",
    "RiskAlertNotifier",
    "DeliveryStatusTracker",
    "RenderedTemplate",
    "TemplateEngine",
    "TemplateEntry",
]
