from src.services import (
    achievement_service,
    cleanup_service,
    collaboration_service,
    finalization_service,
    friend_service,
    notification_service,
    scoring,
    task_repository,
)


__all__ = [
    "achievement_service",
    "cleanup_service",
    "collaboration_service",
    "finalization_service",
    "friend_service",
    "notification_service",
    "scoring",
    "task_repository",
]
