"""Task domain models and enums."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from src.core.document_store import DELETE_FIELD


if TYPE_CHECKING:
    from src.core.document_store import DocumentSnapshot


class Visibility(StrEnum):
    """Whether a task is visible to collaborators."""

    PRIVATE = "private"
    SHARED = "shared"


class AwardState(StrEnum):
    """Progress of a single recipient's point award after finalization."""

    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"  # recipient no longer exists


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def legacy_comment_id(uid: str, created_at: Any) -> str:
    """Deterministic id for comments stored before comments carried ids."""
    stamp = created_at.isoformat() if isinstance(created_at, datetime) else str(created_at)
    return f"{uid}:{stamp}"


class Subtask(BaseModel):
    text: str
    completed: bool = False


class Comment(BaseModel):
    """Comment on a task, addressed by its stable id."""

    id: str = Field(..., description="Stable comment id")
    uid: str = Field(..., description="Author user ID")
    text: str
    created_at: datetime
    edited_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def assign_legacy_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            return {**data, "id": legacy_comment_id(data.get("uid", ""), data.get("created_at"))}
        return data

    @field_validator("created_at", "edited_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class PointsAwarded(BaseModel):
    """Points computed at finalization."""

    owner: int = 0
    collaborators: dict[str, int] = Field(default_factory=dict)


class Task(BaseModel):
    """Task data transfer object.

    ``finalized=True`` is only valid together with ``finalized_at``; any other
    combination is read back as ``finalized=False``.
    """

    id: str = Field(..., description="Task ID, unique within the owner's collection")
    owner: str = Field(..., description="Owner user ID (immutable)")
    name: str = Field(..., description="Task title")
    description: str = Field(default="", description="Detailed task description")
    difficulty: int | None = Field(default=None, description="Difficulty rating used for the story point")
    workload: int | None = Field(default=None, description="Workload rating used for the story point")
    risk: int | None = Field(default=None, description="Risk rating used for the story point")
    story_point: int = Field(default=0, description="Fibonacci story point")
    due_date: datetime | None = Field(default=None, description="Deadline (UTC)")
    visibility: Visibility = Field(default=Visibility.PRIVATE)
    shared_with: list[str] = Field(default_factory=list, description="Collaborator user IDs")
    subtasks: list[Subtask] = Field(default_factory=list)
    completed: bool = False
    finalized: bool = False
    finalized_at: datetime | None = None
    finalized_by: str | None = None
    finished_early: bool = Field(default=False, description="Finalized strictly before the due date")
    points_awarded: PointsAwarded | None = None
    award_status: dict[str, AwardState] = Field(default_factory=dict, description="Per-recipient award progress")
    comments: list[Comment] = Field(default_factory=list)
    created_at: datetime | None = None
    last_modified_by: str | None = None
    last_modified_at: datetime | None = None

    @field_validator("finalized", mode="before")
    @classmethod
    def coerce_finalized(cls, v: Any) -> bool:
        """Anything but a real boolean is treated as not finalized."""
        return v if isinstance(v, bool) else False

    @field_validator("due_date", "finalized_at", "created_at", "last_modified_at")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)

    @model_validator(mode="after")
    def heal_finalized(self) -> "Task":
        if self.finalized and self.finalized_at is None:
            self.finalized = False
            self.finalized_by = None
        return self

    @classmethod
    def from_snapshot(cls, snapshot: "DocumentSnapshot") -> "Task":
        return cls.model_validate(snapshot.to_dict())

    @property
    def is_locked(self) -> bool:
        """Finalized tasks cannot be modified, only deleted."""
        return self.finalized and self.finalized_at is not None

    def all_subtasks_completed(self) -> bool:
        return all(subtask.completed for subtask in self.subtasks)

    def is_owner(self, user_id: str) -> bool:
        return self.owner == user_id

    def is_collaborator(self, user_id: str) -> bool:
        return user_id in self.shared_with

    def can_edit(self, user_id: str) -> bool:
        return self.is_owner(user_id) or self.is_collaborator(user_id)

    def find_comment(self, comment_id: str) -> int | None:
        for index, comment in enumerate(self.comments):
            if comment.id == comment_id:
                return index
        return None


def award_key(owner_id: str, task_id: str) -> str:
    """Idempotency key recorded on a recipient once a task's award is applied."""
    return f"{owner_id}/{task_id}"

def needs_finalized_repair(data: dict[str, Any]) -> bool:
    """Return True if a stored task carries a corrupt finalized flag."""
    finalized = data.get("finalized", False)
    if not isinstance(finalized, bool):
        return True
    return finalized and data.get("finalized_at") is None


def finalized_repair_update() -> dict[str, Any]:
    return {"finalized": False, "finalized_at": DELETE_FIELD, "finalized_by": DELETE_FIELD}


def sanitize_task_document(data: dict[str, Any]) -> dict[str, Any]:
    """Never persist ``finalized=True`` without ``finalized_at``."""
    if "finalized" not in data:
        return data
    if needs_finalized_repair(data):
        cleaned = {key: value for key, value in data.items() if key not in {"finalized_at", "finalized_by"}}
        cleaned["finalized"] = False
        return cleaned
    return data
