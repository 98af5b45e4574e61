"""Notification Service HTTP handler - provider delivery callbacks.

SMS and email providers report final delivery asynchronously. Their
receipts are posted here and applied to the delivery status tracker.
Sending itself is not exposed over HTTP.
"""
import logging
import os
from typing import Optional

from flask import Flask, jsonify, request

from eduguard.shared.database import RecordSource
from eduguard.shared.utils import configure_pii_salt
from .config import DispatchConfig, ProviderConfig
from .dispatcher import NotificationDispatcher
from .models import DeliveryStatus
from .providers import AwsChannelProvider, ChannelProvider
from .status_tracker import DeliveryStatusTracker

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

# Receipts are applied to the same tracker the dispatchers write to
delivery_tracker = DeliveryStatusTracker()

CALLBACK_STATUSES = {
    "delivered": DeliveryStatus.DELIVERED,
    "failed": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.FAILED,
    "bounced": DeliveryStatus.FAILED,
}


def create_dispatcher(
    provider: Optional[ChannelProvider] = None,
    record_source: Optional[RecordSource] = None,
    config: Optional[DispatchConfig] = None,
) -> NotificationDispatcher:
    """Dispatcher whose deliveries this app can receive callbacks for.

    Defaults to the AWS provider and settings from the environment.
    """
    return NotificationDispatcher(
        provider or AwsChannelProvider(ProviderConfig.from_env()),
        tracker=delivery_tracker,
        record_source=record_source,
        config=config or DispatchConfig.from_env(),
    )


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "notification-service",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    tracker_health = delivery_tracker.health_check()
    if not tracker_health["healthy"]:
        return jsonify({"status": "not_ready", "tracker": tracker_health}), 503
    return jsonify({"status": "ready", "tracker": tracker_health}), 200


@app.route("/callbacks/delivery", methods=["POST"])
def delivery_callback():
    """Apply a provider delivery receipt.

    Request Body:
        {
            "provider_message_id": "sns-msg-123",
            "status": "delivered",
            "error": "optional provider error text"
        }
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    provider_message_id = data.get("provider_message_id")
    status = CALLBACK_STATUSES.get(str(data.get("status", "")).lower())

    if not provider_message_id or status is None:
        return jsonify({"error": "Missing provider_message_id or unsupported status"}), 400

    error = data.get("error")
    if status is DeliveryStatus.FAILED and not error:
        error = f"Provider reported {data.get('status')}"

    try:
        applied = delivery_tracker.apply_provider_callback(provider_message_id, status, error)
    except Exception as e:
        logger.error(
            "DELIVERY_CALLBACK_ERROR",
            extra={"provider_message_id": provider_message_id, "error": str(e), "error_type": type(e).__name__}
        )
        return jsonify({"error": "Failed to apply delivery callback"}), 500

    if not applied:
        return jsonify({"error": "Unknown provider_message_id"}), 404

    logger.info(
        "DELIVERY_CALLBACK_APPLIED",
        extra={"provider_message_id": provider_message_id, "status": status.value}
    )
    return jsonify({
        "provider_message_id": provider_message_id,
        "status": status.value,
    }), 200
