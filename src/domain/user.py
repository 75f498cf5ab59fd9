"""User domain models and enums."""

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator


if TYPE_CHECKING:
    from src.core.document_store import DocumentSnapshot


# Constants for validation
MAX_NAME_LENGTH = 50


class StatName(StrEnum):
    """Counters kept in ``User.stats``."""

    TASKS_COMPLETED = "tasks_completed"
    TASKS_BEFORE_DEADLINE = "tasks_before_deadline"
    HELPED_FRIENDS = "helped_friends"


class UserStats(BaseModel):
    tasks_completed: int = 0
    tasks_before_deadline: int = 0
    helped_friends: int = 0


class AchievementNotification(BaseModel):
    """Unlock record; ``notified`` flips once the celebration has been shown."""

    unlocked: bool = True
    unlocked_at: datetime | None = None
    notified: bool = False
    notified_at: datetime | None = None


class User(BaseModel):
    """User profile document."""

    uid: str = Field(..., description="Unique user ID from the auth service")
    email: str = Field(default="", description="Lower-cased email address")
    display_name: str = Field(default="", description="Display name of the user")
    friends: list[str] = Field(default_factory=list, description="Friend user IDs (symmetric)")
    points: int = Field(default=0, ge=0, description="Accumulated points")
    level: int = Field(default=0, ge=0, description="floor(sqrt(points / 100))")
    achievements: list[str] = Field(default_factory=list, description="Unlocked achievement IDs")
    achievement_notifications: dict[str, AchievementNotification] = Field(default_factory=dict)
    stats: UserStats = Field(default_factory=UserStats)
    awarded_keys: list[str] = Field(default_factory=list, description="Task awards already applied")
    created_at: datetime | None = None

    @field_validator("display_name")
    @classmethod
    def validate_name_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"Name too long (max {MAX_NAME_LENGTH} characters)")
        return v

    @classmethod
    def from_snapshot(cls, snapshot: "DocumentSnapshot") -> "User":
        return cls.model_validate({**(snapshot.data or {}), "uid": snapshot.id})

    @property
    def name(self) -> str:
        return self.display_name or self.email or self.uid

    def stat(self, name: str) -> int:
        """Value of a stat counter, or of ``points``."""
        if name == "points":
            return self.points
        return getattr(self.stats, name, 0)


def new_user_document(*, uid: str, email: str = "", display_name: str = "", created_at: Any = None) -> dict[str, Any]:
    """Initial profile written on first sign-in."""
    user = User(uid=uid, email=email.strip().lower(), display_name=display_name)
    return {**user.model_dump(exclude={"uid", "created_at"}), "created_at": created_at}
