"""Update models for document writes."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from src.domain.create_models import MAX_RATING
from src.domain.task import as_utc


class TaskUpdate(BaseModel):
    """Owner edits to a task; unset fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    difficulty: int | None = Field(default=None, ge=1, le=MAX_RATING)
    workload: int | None = Field(default=None, ge=1, le=MAX_RATING)
    risk: int | None = Field(default=None, ge=1, le=MAX_RATING)
    subtasks: list[str] | None = None
    due_date: datetime | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            msg = "Task name cannot be empty"
            raise ValueError(msg)
        return v.strip() if v is not None else v

    @field_validator("due_date")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)
