"""Domain models and DTOs."""

from src.domain.achievement import ACHIEVEMENTS, Achievement, RequirementType
from src.domain.create_models import TaskCreate
from src.domain.friend_request import FriendRequest, FriendRequestStatus
from src.domain.notification import Notification, NotificationCreate, NotificationType
from src.domain.task import AwardState, Comment, PointsAwarded, Subtask, Task, Visibility
from src.domain.update_models import TaskUpdate
from src.domain.user import AchievementNotification, StatName, User, UserStats


__all__ = [
    "ACHIEVEMENTS",
    "Achievement",
    "AchievementNotification",
    "AwardState",
    "Comment",
    "FriendRequest",
    "FriendRequestStatus",
    "Notification",
    "NotificationCreate",
    "NotificationType",
    "PointsAwarded",
    "RequirementType",
    "StatName",
    "Subtask",
    "Task",
    "TaskCreate",
    "TaskUpdate",
    "User",
    "UserStats",
    "Visibility",
]
