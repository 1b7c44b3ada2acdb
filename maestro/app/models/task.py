"""Domain models for tasks."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    BLOCKED = "blocked"


class Task(BaseModel):
    """Unit of work executed by an agent."""
    id: str
    project_id: str
    title: str
    description: str = ""
    prompt: str = ""  # execution prompt handed to the agent
    assigned_to_agent: Optional[str] = None
    priority: int = Field(default=3, ge=1, le=5)  # 1 = highest
    status: TaskStatus = TaskStatus.TODO
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None

    @field_validator("created_at", "started_at", "completed_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def text(self) -> str:
        """Lowercased title, description and prompt used by keyword heuristics."""
        return f"{self.title} {self.description} {self.prompt}".lower()

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE
