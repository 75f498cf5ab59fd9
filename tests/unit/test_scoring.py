"""Unit tests for story point, level and point-award arithmetic."""

from datetime import UTC, datetime, timedelta

import pytest

from src.domain.task import Task
from src.services.finalization_service import calculate_final_points
from src.services.scoring import (
    calculate_level,
    calculate_story_point,
    collaborator_points,
    explain_story_point,
    is_finished_early,
    nearest_fibonacci,
    owner_points,
    points_for_next_level,
)


@pytest.mark.unit
class TestStoryPoint:
    """Tests for story point calculation."""

    def test_snaps_raw_score_to_fibonacci(self):
        # (3 + 3 + 3) * 2 = 18, nearest is 21
        assert calculate_story_point(3, 3, 3, 2) == 21

    def test_breakdown(self):
        breakdown = explain_story_point(1, 2, 3, 3)
        assert breakdown.base_score == 6
        assert breakdown.raw_score == 18
        assert breakdown.story_point == 21

    @pytest.mark.parametrize(
        ("difficulty", "workload", "risk", "subtasks"),
        [(None, 3, 3, 2), (3, None, 3, 2), (3, 3, None, 2), (3, 3, 3, 0)],
    )
    def test_missing_inputs_give_zero(self, difficulty, workload, risk, subtasks):
        assert calculate_story_point(difficulty, workload, risk, subtasks) == 0

    @pytest.mark.parametrize(("value", "expected"), [(4, 3), (6, 5), (7, 8), (10, 8), (100, 89), (17, 13)])
    def test_nearest_fibonacci(self, value, expected):
        assert nearest_fibonacci(value) == expected


@pytest.mark.unit
class TestLevels:
    @pytest.mark.parametrize(
        ("points", "level"),
        [(0, 0), (99, 0), (100, 1), (399, 1), (400, 2), (10000, 10), (-5, 0)],
    )
    def test_calculate_level(self, points, level):
        assert calculate_level(points) == level

    def test_points_for_next_level(self):
        assert points_for_next_level(0) == 100
        assert points_for_next_level(1) == 400


@pytest.mark.unit
class TestAwards:
    def test_owner_early_bonus(self):
        assert owner_points(21, finished_early=True) == 23
        assert owner_points(21, finished_early=False) == 21
        assert owner_points(5, finished_early=True) == 5

    def test_collaborator_share_rounds_up_with_minimum(self):
        assert collaborator_points(10) == 2
        assert collaborator_points(21) == 5
        assert collaborator_points(1) == 1
        assert collaborator_points(0) == 1

    def test_collaborator_bonus_only_when_enabled(self):
        assert collaborator_points(21, finished_early=True) == 5
        assert collaborator_points(21, finished_early=True, early_bonus_enabled=True) == 7

    def test_finished_early_is_strict(self):
        due = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        assert is_finished_early(due, due - timedelta(seconds=1))
        assert not is_finished_early(due, due)
        assert not is_finished_early(None, due)

    def test_naive_due_date_is_utc(self):
        assert is_finished_early(datetime(2024, 5, 1, 12, 0), datetime(2024, 5, 1, 11, 0, tzinfo=UTC))

    def test_final_points_exclude_owner_from_collaborators(self):
        task = Task(id="t1", owner="alice", name="Ship", story_point=8, shared_with=["bob", "alice", "carol"])

        points = calculate_final_points(task, finished_early=True)

        assert points.owner == 8
        assert points.collaborators == {"bob": 2, "carol": 2}
