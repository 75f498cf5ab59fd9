"""Pydantic models for creating documents."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from src.domain.task import as_utc


MAX_RATING = 5


class TaskCreate(BaseModel):
    """Pydantic model for creating a task."""

    name: str = Field(..., description="Task title")
    description: str = Field(default="", description="Detailed task description")
    difficulty: int | None = Field(default=None, ge=1, le=MAX_RATING, description="Difficulty rating (1-5)")
    workload: int | None = Field(default=None, ge=1, le=MAX_RATING, description="Workload rating (1-5)")
    risk: int | None = Field(default=None, ge=1, le=MAX_RATING, description="Risk rating (1-5)")
    subtasks: list[str] = Field(default_factory=list, description="Subtask texts in order")
    due_date: datetime | None = Field(default=None, description="Deadline; naive values are read as UTC")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the task name is not blank."""
        v = v.strip()
        if not v:
            msg = "Task name cannot be empty"
            raise ValueError(msg)
        return v

    @field_validator("subtasks")
    @classmethod
    def strip_subtasks(cls, v: list[str]) -> list[str]:
        return [text.strip() for text in v if text.strip()]

    @field_validator("due_date")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)
