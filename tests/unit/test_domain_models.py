"""Unit tests for domain models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from src.core.document_store import DocumentSnapshot
from src.domain.create_models import TaskCreate
from src.domain.task import Comment, Task, needs_finalized_repair, sanitize_task_document
from src.domain.update_models import TaskUpdate
from src.domain.user import User, new_user_document


@pytest.mark.unit
class TestTaskFinalizedFlag:
    """Tests for reading corrupt finalized flags."""

    def test_finalized_without_timestamp_reads_as_open(self):
        task = Task(id="t1", owner="alice", name="Ship", finalized=True, finalized_by="alice")

        assert task.finalized is False
        assert task.finalized_by is None
        assert not task.is_locked

    @pytest.mark.parametrize("value", ["true", 1, None])
    def test_non_boolean_flag_reads_as_open(self, value):
        task = Task(id="t1", owner="alice", name="Ship", finalized=value, finalized_at=datetime.now(UTC))
        assert not task.is_locked

    def test_locked_task(self):
        task = Task(id="t1", owner="alice", name="Ship", finalized=True, finalized_at=datetime.now(UTC))
        assert task.is_locked

    def test_needs_repair(self):
        assert needs_finalized_repair({"finalized": True})
        assert needs_finalized_repair({"finalized": "yes"})
        assert not needs_finalized_repair({"finalized": False})
        assert not needs_finalized_repair({"finalized": True, "finalized_at": datetime.now(UTC)})

    def test_sanitize_strips_partial_finalization(self):
        cleaned = sanitize_task_document({"name": "Ship", "finalized": True, "finalized_by": "alice"})
        assert cleaned == {"name": "Ship", "finalized": False}


@pytest.mark.unit
class TestTaskModel:
    def test_from_snapshot_includes_id(self):
        snapshot = DocumentSnapshot("users/alice/tasks", "t1", {"owner": "alice", "name": "Ship"}, 3)
        task = Task.from_snapshot(snapshot)
        assert task.id == "t1"
        assert task.visibility == "private"

    def test_permissions(self):
        task = Task(id="t1", owner="alice", name="Ship", shared_with=["bob"])
        assert task.can_edit("alice")
        assert task.can_edit("bob")
        assert not task.can_edit("carol")
        assert not task.is_owner("bob")

    def test_legacy_comment_gets_stable_id(self):
        created = datetime(2024, 5, 1, tzinfo=UTC)
        comment = Comment.model_validate({"uid": "bob", "text": "hi", "created_at": created})
        assert comment.id == f"bob:{created.isoformat()}"

    def test_naive_timestamps_are_utc(self):
        task = Task(id="t1", owner="alice", name="Ship", due_date=datetime(2024, 5, 1))
        assert task.due_date.tzinfo == UTC


@pytest.mark.unit
class TestTaskInputModels:
    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError, match="Task name cannot be empty"):
            TaskCreate(name="   ")

    def test_ratings_bounded(self):
        with pytest.raises(ValidationError):
            TaskCreate(name="Ship", difficulty=6)

    def test_blank_subtasks_dropped(self):
        assert TaskCreate(name="Ship", subtasks=[" Draft ", "", "  "]).subtasks == ["Draft"]

    def test_update_reports_only_set_fields(self):
        assert TaskUpdate(name=" Renamed ").changes() == {"name": "Renamed"}


@pytest.mark.unit
class TestUser:
    def test_new_user_document_defaults(self):
        document = new_user_document(uid="alice", email=" Alice@Example.COM ", display_name="Alice")
        assert document["email"] == "alice@example.com"
        assert document["points"] == 0
        assert document["friends"] == []
        assert "uid" not in document

    def test_display_name_length(self):
        with pytest.raises(ValidationError, match="Name too long"):
            User(uid="alice", display_name="x" * 51)

    def test_name_falls_back_to_email_then_uid(self):
        assert User(uid="alice", email="a@example.com").name == "a@example.com"
        assert User(uid="alice").name == "alice"
