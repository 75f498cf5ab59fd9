"""Notification domain models."""

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field


if TYPE_CHECKING:
    from src.core.document_store import DocumentSnapshot


class NotificationType(StrEnum):
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPTED = "friend_accepted"
    TASK_SHARED = "task_shared"
    TASK_UNSHARED = "task_unshared"
    TASK_FINALIZED = "task_finalized"
    ACHIEVEMENT = "achievement"


class NotificationCreate(BaseModel):
    """Payload for a new notification."""

    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    from_user_id: str | None = Field(default=None, description="User whose action produced the notification")


class Notification(NotificationCreate):
    id: str
    read: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: "DocumentSnapshot") -> "Notification":
        return cls.model_validate(snapshot.to_dict())
