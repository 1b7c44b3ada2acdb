"""Domain models for alerts."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .task import as_utc, utcnow


class AlertSeverity(str, Enum):
    """Alert severity, most severe first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Alert(BaseModel):
    """Operator-facing alert. Write-once."""
    id: str = Field(default_factory=lambda: f"alert-{uuid.uuid4().hex[:12]}")
    severity: AlertSeverity
    type: str  # stable key used for rate limiting
    message: str
    task_ids: list[str] = []
    agent_ids: list[str] = []
    action: str = ""
    details: dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class AlertSummary(BaseModel):
    """Counts derived from alert history."""
    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    last_24h: int = 0
