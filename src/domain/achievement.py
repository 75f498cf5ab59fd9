"""Achievement definitions."""

from enum import StrEnum

from pydantic import BaseModel


class RequirementType(StrEnum):
    """Stat an achievement threshold is measured against."""

    TASKS_COMPLETED = "tasks_completed"
    HELPED_FRIENDS = "helped_friends"
    TASKS_BEFORE_DEADLINE = "tasks_before_deadline"
    POINTS = "points"


class Achievement(BaseModel):
    id: str
    name: str
    description: str
    icon: str
    requirement_type: RequirementType
    threshold: int


ACHIEVEMENTS: dict[str, Achievement] = {
    achievement.id: achievement
    for achievement in (
        Achievement(
            id="first-task",
            name="First Steps",
            description="Complete your first task",
            icon="🎯",
            requirement_type=RequirementType.TASKS_COMPLETED,
            threshold=1,
        ),
        Achievement(
            id="team-player",
            name="Team Player",
            description="Help friends complete 10 tasks",
            icon="🤝",
            requirement_type=RequirementType.HELPED_FRIENDS,
            threshold=10,
        ),
        Achievement(
            id="speed-demon",
            name="Speed Demon",
            description="Complete 5 tasks before their deadline",
            icon="⚡",
            requirement_type=RequirementType.TASKS_BEFORE_DEADLINE,
            threshold=5,
        ),
        Achievement(
            id="story-master",
            name="Story Master",
            description="Earn 100 story points",
            icon="📚",
            requirement_type=RequirementType.POINTS,
            threshold=100,
        ),
    )
}
