"""Pydantic models for service layer return types.

These models provide type safety at service boundaries, converting store
documents into typed objects with validation.
"""

from enum import StrEnum

from pydantic import BaseModel, Field

from src.domain.achievement import Achievement
from src.domain.task import Visibility


class StoryPointBreakdown(BaseModel):
    """How a story point was derived from its inputs."""

    base_score: int
    raw_score: int
    story_point: int


class PointsResult(BaseModel):
    """Outcome of adding points to a user."""

    user_id: str
    points_added: int
    points: int
    previous_level: int
    level: int

    @property
    def leveled_up(self) -> bool:
        return self.level > self.previous_level


class ShareResult(BaseModel):
    """Collaborator set after a share or unshare."""

    task_id: str
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    shared_with: list[str]
    visibility: Visibility


class AwardOutcome(StrEnum):
    DONE = "done"
    ALREADY_APPLIED = "already_applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class RecipientAward(BaseModel):
    """Result of awarding one recipient after finalization."""

    user_id: str
    role: str  # "owner" or "collaborator"
    points: int
    outcome: AwardOutcome
    unlocked_achievements: list[str] = Field(default_factory=list)
    error: str | None = None


class FinalizationResult(BaseModel):
    task_id: str
    story_point: int
    finished_early: bool
    owner_points: int
    collaborator_points: dict[str, int] = Field(default_factory=dict)
    awards: list[RecipientAward] = Field(default_factory=list)

    @property
    def failed_recipients(self) -> list[str]:
        return [award.user_id for award in self.awards if award.outcome == AwardOutcome.FAILED]


class AchievementStatus(BaseModel):
    """Achievement definition plus whether the user has unlocked it."""

    achievement: Achievement
    unlocked: bool


class LeaderboardEntry(BaseModel):
    """User entry in the friends leaderboard."""

    rank: int
    user_id: str
    user_name: str
    points: int
    level: int
    is_self: bool = False


class FriendRequestOutcome(StrEnum):
    SENT = "sent"
    MUTUAL_ACCEPTED = "mutual_accepted"


class FriendRequestResult(BaseModel):
    outcome: FriendRequestOutcome
    friend_id: str
    request_id: str | None = None


class CleanupReport(BaseModel):
    """Counts of dangling references removed by a cleanup sweep.

    Each category runs independently; a failing category is recorded in
    ``errors`` and does not stop the others.
    """

    user_id: str
    invalid_friends_removed: int = 0
    invalid_collaborators_removed: int = 0
    orphaned_requests_removed: int = 0
    stale_notifications_removed: int = 0
    finalized_flags_repaired: int = 0
    tasks_updated: int = 0
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def total_changes(self) -> int:
        return (
            self.invalid_friends_removed
            + self.invalid_collaborators_removed
            + self.orphaned_requests_removed
            + self.stale_notifications_removed
            + self.finalized_flags_repaired
        )


class SignInSummary(BaseModel):
    """What happened while bringing a session up."""

    user_id: str
    created_profile: bool
    cleanup: CleanupReport
    resumed_awards: int = 0
    unlocked_achievements: list[str] = Field(default_factory=list)
    announced_achievements: list[str] = Field(default_factory=list)
