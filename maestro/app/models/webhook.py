"""Webhook models for agent notification."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .task import as_utc, utcnow


class WebhookEvent(str, Enum):
    """Events agents can subscribe to."""
    TASK_ASSIGNED = "task.assigned"
    TASK_UPDATED = "task.updated"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    AGENT_WAKE = "agent.wake"
    AGENT_STATUS = "agent.status"


class DeliveryStatus(str, Enum):
    """Delivery state machine: pending -> retrying -> delivered | failed."""
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookPayload(BaseModel):
    """JSON body POSTed to an agent endpoint."""
    event: WebhookEvent
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = {}
    metadata: dict[str, Any] = {}

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class RetryPolicy(BaseModel):
    """Exponential backoff settings."""
    max_attempts: int = Field(default=3, ge=1)
    backoff_multiplier: float = 2.0
    initial_delay_ms: int = 1000

    def delay_seconds(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based)."""
        return self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1) / 1000.0


class AgentWebhookConfig(BaseModel):
    """Where and how to reach an agent."""
    agent_id: str
    agent_name: str = ""
    webhook_url: str
    secret: str
    enabled: bool = True
    events: list[WebhookEvent] = [WebhookEvent.TASK_ASSIGNED]
    retry: Optional[RetryPolicy] = None
    headers: dict[str, str] = {}
    timeout_seconds: Optional[float] = None

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str]) -> dict[str, str]:
        for name, value in v.items():
            if not name.isascii() or not value.isascii():
                raise ValueError(f"Header {name!r} must be ASCII")
            if any(c in name + value for c in "\r\n"):
                raise ValueError(f"Header {name!r} contains a line break")
        return v


class DeliveryResponse(BaseModel):
    """Last response observed for a delivery."""
    status_code: int = 0  # 0 when no HTTP response was received
    body: Optional[Any] = None
    error: Optional[str] = None


class DeliveryAttempt(BaseModel):
    """One POST attempt."""
    attempt: int
    at: datetime
    status_code: int = 0
    error: Optional[str] = None
    retry_delay_seconds: Optional[float] = None

    @field_validator("at")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class WebhookDelivery(BaseModel):
    """Tracked attempt sequence for one payload to one agent."""
    id: str = Field(default_factory=lambda: f"whd-{uuid.uuid4().hex[:16]}")
    agent_id: str
    event: WebhookEvent
    payload: WebhookPayload
    target_url: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    response: Optional[DeliveryResponse] = None
    history: list[DeliveryAttempt] = []

    @field_validator("created_at", "last_attempt_at", "next_retry_at", "delivered_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


class TaskExecutionRequest(BaseModel):
    """`data` section of a task.assigned payload."""
    task_id: str
    task_title: str
    task_description: str
    prompt: str
    system_prompt: str
    priority: int
    project_id: str
    agent_type: str
