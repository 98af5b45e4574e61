"""Notification service configuration.

Retry and pool settings bound how hard the dispatcher leans on the
SMS and email providers; provider settings carry the AWS side.
"""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DispatchConfig:
    """Retry, timeout and fan-out settings for the dispatcher."""
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    provider_timeout_seconds: float = 10.0
    max_workers: int = 8
    queue_size: int = 16
    default_email_subject: str = "Message from EduGuard"
    retention_hours: float = 168.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        """Environment variables:
            NOTIFY_MAX_ATTEMPTS: Provider attempts per sub-delivery (default 3)
            NOTIFY_BACKOFF_BASE_SECONDS: First retry delay (default 0.5)
            NOTIFY_BACKOFF_MAX_SECONDS: Retry delay cap (default 8)
            NOTIFY_PROVIDER_TIMEOUT_SECONDS: Per-call provider timeout (default 10)
            NOTIFY_MAX_WORKERS: Bulk send worker threads (default 8)
            NOTIFY_QUEUE_SIZE: Sub-deliveries queued beyond the workers (default 16)
            NOTIFY_RETENTION_HOURS: How long finished messages stay tracked (default 168)
        """
        return cls(
            max_attempts=int(os.getenv("NOTIFY_MAX_ATTEMPTS", "3")),
            backoff_base_seconds=float(os.getenv("NOTIFY_BACKOFF_BASE_SECONDS", "0.5")),
            backoff_max_seconds=float(os.getenv("NOTIFY_BACKOFF_MAX_SECONDS", "8")),
            provider_timeout_seconds=float(os.getenv("NOTIFY_PROVIDER_TIMEOUT_SECONDS", "10")),
            max_workers=int(os.getenv("NOTIFY_MAX_WORKERS", "8")),
            queue_size=int(os.getenv("NOTIFY_QUEUE_SIZE", "16")),
            retention_hours=float(os.getenv("NOTIFY_RETENTION_HOURS", "168")),
        )


@dataclass(frozen=True)
class ProviderConfig:
    """AWS SNS (SMS) and SES (email) settings."""
    region: str = "us-east-1"
    ses_from_address: str = "no-reply@eduguard.rw"
    sns_sender_id: Optional[str] = "EduGuard"
    connect_timeout_seconds: float = 5.0
    read_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        """Environment variables:
            AWS_REGION: Region for SNS and SES (default us-east-1)
            SES_FROM_ADDRESS: Verified SES sender address
            SNS_SENDER_ID: Alphanumeric SMS sender id (empty to disable)
            PROVIDER_CONNECT_TIMEOUT_SECONDS: Connect timeout (default 5)
            PROVIDER_READ_TIMEOUT_SECONDS: Read timeout (default 10)
        """
        return cls(
            region=os.getenv("AWS_REGION", "us-east-1"),
            ses_from_address=os.getenv("SES_FROM_ADDRESS", "no-reply@eduguard.rw"),
            sns_sender_id=os.getenv("SNS_SENDER_ID", "EduGuard") or None,
            connect_timeout_seconds=float(os.getenv("PROVIDER_CONNECT_TIMEOUT_SECONDS", "5")),
            read_timeout_seconds=float(os.getenv("PROVIDER_READ_TIMEOUT_SECONDS", "10")),
        )
