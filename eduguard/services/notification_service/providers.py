"""Channel providers: the boundary to external SMS and email services.

Providers make exactly one attempt per call. Retrying belongs to the
dispatcher, which relies only on the transient/permanent split of the
errors raised here.
"""
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from eduguard.shared.utils import hash_contact
from .config import ProviderConfig
from .exceptions import ProviderPermanentError, ProviderTimeoutError, ProviderTransientError
from .models import Channel

logger = logging.getLogger(__name__)

# AWS error codes worth retrying; anything else from AWS is permanent
_TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalErrorException",
    "KMSThrottlingException",
})


@dataclass(frozen=True)
class ProviderReceipt:
    provider_message_id: Optional[str]
    accepted: bool = True


class ChannelProvider(ABC):
    """Sends one message over one concrete channel."""

    @abstractmethod
    def send(
        self,
        channel: Channel,
        address: str,
        content: str,
        subject: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProviderReceipt:
        """Send a single message.

        Raises:
            ProviderTransientError: Safe to retry (includes timeouts)
            ProviderPermanentError: Retrying cannot succeed
        """
        pass


def format_phone_number(phone: str) -> str:
    """Normalise a Rwandan phone number to E.164 (+250...)."""
    digits = re.sub(r"\D", "", phone)
    if not digits:
        raise ProviderPermanentError("Phone number has no digits", code="InvalidPhoneNumber")

    if digits.startswith("250"):
        return f"+{digits}"
    if digits.startswith("0") and len(digits) == 10:
        return f"+250{digits[1:]}"
    if len(digits) == 9:
        return f"+250{digits}"
    return f"+{digits}"


def classify_client_error(error: ClientError):
    """Map a botocore ClientError onto the provider error hierarchy."""
    details = error.response.get("Error", {})
    code = details.get("Code", "Unknown")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    message = details.get("Message") or str(error)

    if code in _TRANSIENT_CODES or status >= 500 or status == 429:
        return ProviderTransientError(message, code=code)
    return ProviderPermanentError(message, code=code)


class AwsChannelProvider(ChannelProvider):
    """SMS through Amazon SNS, email through Amazon SES.

    botocore's own retries are disabled so a single send() is a single
    provider attempt. Timeouts come from the client Config built from
    ProviderConfig; the per-call ``timeout`` argument is not used here.
    """

    def __init__(self, config: Optional[ProviderConfig] = None, sns_client=None, ses_client=None):
        self.config = config or ProviderConfig.from_env()
        self._sns_client = sns_client
        self._ses_client = ses_client
        self._client_lock = threading.Lock()

        logger.info(
            "CHANNEL_PROVIDER_INITIALIZED",
            extra={"provider": "aws", "region": self.config.region}
        )

    def _client(self, service: str):
        # boto3's default session is not thread-safe; callers hold _client_lock
        import boto3

        return boto3.client(
            service,
            region_name=self.config.region,
            config=Config(
                connect_timeout=self.config.connect_timeout_seconds,
                read_timeout=self.config.read_timeout_seconds,
                retries={"max_attempts": 0},
            ),
        )

    @property
    def sns_client(self):
        """Lazy initialization of SNS client."""
        with self._client_lock:
            if self._sns_client is None:
                self._sns_client = self._client("sns")
        return self._sns_client

    @property
    def ses_client(self):
        """Lazy initialization of SES client."""
        with self._client_lock:
            if self._ses_client is None:
                self._ses_client = self._client("ses")
        return self._ses_client

    def send(
        self,
        channel: Channel,
        address: str,
        content: str,
        subject: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProviderReceipt:
        try:
            if channel is Channel.SMS:
                response = self._send_sms(address, content)
            elif channel is Channel.EMAIL:
                response = self._send_email(address, content, subject)
            else:
                raise ProviderPermanentError(f"Unsupported channel {channel.value}")
        except ClientError as e:
            raise classify_client_error(e) from e
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            raise ProviderTimeoutError(str(e), code="Timeout") from e
        except EndpointConnectionError as e:
            raise ProviderTransientError(str(e), code="EndpointConnectionError") from e

        provider_message_id = response.get("MessageId")
        logger.info(
            "PROVIDER_MESSAGE_ACCEPTED",
            extra={
                "channel": channel.value,
                "address_hash": hash_contact(address),
                "provider_message_id": provider_message_id,
            }
        )
        return ProviderReceipt(provider_message_id=provider_message_id, accepted=bool(provider_message_id))

    def _send_sms(self, phone: str, content: str) -> dict:
        attributes = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        }
        if self.config.sns_sender_id:
            attributes["AWS.SNS.SMS.SenderID"] = {
                "DataType": "String",
                "StringValue": self.config.sns_sender_id,
            }
        return self.sns_client.publish(
            PhoneNumber=format_phone_number(phone),
            Message=content,
            MessageAttributes=attributes,
        )

    def _send_email(self, email: str, content: str, subject: Optional[str]) -> dict:
        return self.ses_client.send_email(
            Source=self.config.ses_from_address,
            Destination={"ToAddresses": [email]},
            Message={
                "Subject": {"Data": subject or "", "Charset": "UTF-8"},
                "Body": {"Text": {"Data": content, "Charset": "UTF-8"}},
            },
        )
