"""Webhook delivery to agent endpoints."""

from maestro.webhooks.delivery_log import DeliveryLog, DeliveryStats
from maestro.webhooks.dispatcher import InvalidTransitionError, WebhookDispatcher
from maestro.webhooks.registry import WebhookConfigRegistry
from maestro.webhooks.signing import sign_payload, verify_signature

__all__ = [
    "DeliveryLog",
    "DeliveryStats",
    "InvalidTransitionError",
    "WebhookConfigRegistry",
    "WebhookDispatcher",
    "sign_payload",
    "verify_signature",
]
