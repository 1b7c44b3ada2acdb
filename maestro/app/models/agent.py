"""Domain models for agents."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .task import as_utc, utcnow


class AgentType(str, Enum):
    """Known agent capability classes."""
    FRONTEND = "Frontend"
    BACKEND = "Backend"
    TESTING = "Testing"
    INTEGRATION = "Integration"


class AgentStatus(str, Enum):
    """Agent availability status."""
    ACTIVE = "active"
    IDLE = "idle"
    OFFLINE = "offline"


# Free-form capability tags declared by an agent (e.g. "react", "postgres")
CapabilitySet = frozenset[str]


class Agent(BaseModel):
    """Registered task-executing agent."""
    id: str
    project_id: str
    name: str = ""
    agent_type: AgentType
    status: AgentStatus = AgentStatus.IDLE
    capabilities: CapabilitySet = frozenset()
    success_rate: float = 1.0
    average_task_duration_ms: Optional[int] = None
    health_score: int = 100
    current_task_id: Optional[str] = None
    last_poll_at: Optional[datetime] = None
    tasks_completed: int = 0
    tasks_failed: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("last_poll_at", "created_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class AgentWorkload(BaseModel):
    """Tasks currently assigned to an agent."""
    agent_id: str
    total: int = 0
    in_progress: int = 0
    todo: int = 0
