"""Friend request domain model."""

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field


if TYPE_CHECKING:
    from src.core.document_store import DocumentSnapshot


class FriendRequestStatus(StrEnum):
    """Requests are deleted once resolved, so only pending ones are stored."""

    PENDING = "pending"


class FriendRequest(BaseModel):
    id: str = Field(..., description="Request document ID")
    from_uid: str = Field(..., description="Sender user ID")
    to_uid: str = Field(..., description="Recipient user ID")
    status: FriendRequestStatus = FriendRequestStatus.PENDING
    created_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: "DocumentSnapshot") -> "FriendRequest":
        return cls.model_validate(snapshot.to_dict())
