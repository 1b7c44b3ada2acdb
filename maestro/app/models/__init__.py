"""Domain models shared by the orchestration components."""

from maestro.app.models.agent import Agent, AgentStatus, AgentType, AgentWorkload, CapabilitySet
from maestro.app.models.alert import Alert, AlertSeverity, AlertSummary
from maestro.app.models.task import Task, TaskStatus, utcnow
from maestro.app.models.webhook import (
    AgentWebhookConfig,
    DeliveryAttempt,
    DeliveryResponse,
    DeliveryStatus,
    RetryPolicy,
    TaskExecutionRequest,
    WebhookDelivery,
    WebhookEvent,
    WebhookPayload,
)

__all__ = [
    "Agent",
    "AgentStatus",
    "AgentType",
    "AgentWorkload",
    "CapabilitySet",
    "Alert",
    "AlertSeverity",
    "AlertSummary",
    "Task",
    "TaskStatus",
    "utcnow",
    "AgentWebhookConfig",
    "DeliveryAttempt",
    "DeliveryResponse",
    "DeliveryStatus",
    "RetryPolicy",
    "TaskExecutionRequest",
    "WebhookDelivery",
    "WebhookEvent",
    "WebhookPayload",
]
