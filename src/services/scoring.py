"""Story point, level and point-award arithmetic.

All award math is done on integers: the owner's early bonus is
``floor(story_point * 0.1)`` and a collaborator's share is
``max(ceil(story_point * 0.2), 1)``.
"""

import math
from datetime import datetime

from src.core.config import Constants
from src.domain.task import as_utc
from src.models.service_models import StoryPointBreakdown


def nearest_fibonacci(value: int) -> int:
    """Snap to the nearest value on the Fibonacci scale; ties go to the smaller value."""
    best = Constants.FIBONACCI_SCALE[0]
    for candidate in Constants.FIBONACCI_SCALE[1:]:
        if abs(value - candidate) < abs(value - best):
            best = candidate
    return best


def explain_story_point(
    difficulty: int | None,
    workload: int | None,
    risk: int | None,
    subtask_count: int,
) -> StoryPointBreakdown:
    if not difficulty or not workload or not risk or subtask_count <= 0:
        return StoryPointBreakdown(base_score=0, raw_score=0, story_point=0)
    base_score = difficulty + workload + risk
    raw_score = base_score * subtask_count
    return StoryPointBreakdown(base_score=base_score, raw_score=raw_score, story_point=nearest_fibonacci(raw_score))


def calculate_story_point(
    difficulty: int | None,
    workload: int | None,
    risk: int | None,
    subtask_count: int,
) -> int:
    """Story point for a task.

    Returns 0 when any rating is missing or the task has no subtasks.
    """
    return explain_story_point(difficulty, workload, risk, subtask_count).story_point


def calculate_level(points: int) -> int:
    """floor(sqrt(points / 100)); negative input is level 0."""
    if points <= 0:
        return 0
    return math.isqrt(points // Constants.LEVEL_POINTS_DIVISOR)


def points_for_next_level(level: int) -> int:
    """Total points at which ``level + 1`` is reached."""
    return (level + 1) ** 2 * Constants.LEVEL_POINTS_DIVISOR


def is_finished_early(due_date: datetime | None, finished_at: datetime) -> bool:
    """True if finished strictly before the due date."""
    if due_date is None:
        return False
    return as_utc(finished_at) < as_utc(due_date)


def early_bonus(story_point: int) -> int:
    return story_point // Constants.EARLY_BONUS_DIVISOR


def owner_points(story_point: int, *, finished_early: bool) -> int:
    return story_point + (early_bonus(story_point) if finished_early else 0)


def collaborator_points(story_point: int, *, finished_early: bool = False, early_bonus_enabled: bool = False) -> int:
    share = max(-(-story_point // Constants.COLLABORATOR_SHARE_DIVISOR), Constants.MIN_COLLABORATOR_POINTS)
    if finished_early and early_bonus_enabled:
        share += early_bonus(story_point)
    return share
