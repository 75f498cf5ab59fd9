"""Unit tests for the consistency sweep."""

from datetime import UTC, datetime

import pytest

from src.core.document_store import FRIEND_REQUESTS, USERS, notifications_path, tasks_path
from src.domain.notification import NotificationCreate, NotificationType


async def _seed_dangling_references(board, store) -> None:
    """Alice's data referencing a deleted user ``ghost`` and the non-friend ``dave``."""
    await store.update(USERS, "alice", {"friends": ["bob", "carol", "ghost"]})
    await store.set(
        tasks_path("alice"),
        "mixed",
        {"owner": "alice", "name": "Mixed", "shared_with": ["bob", "dave"], "visibility": "shared"},
    )
    await store.set(
        tasks_path("alice"),
        "stranger",
        {"owner": "alice", "name": "Stranger", "shared_with": ["ghost"], "visibility": "shared"},
    )
    await store.set(
        tasks_path("alice"),
        "locked",
        {
            "owner": "alice",
            "name": "Locked",
            "shared_with": ["dave"],
            "visibility": "shared",
            "completed": True,
            "finalized": True,
            "finalized_at": datetime(2024, 1, 1, tzinfo=UTC),
        },
    )
    await store.set(tasks_path("alice"), "corrupt", {"owner": "alice", "name": "Corrupt", "finalized": True})
    await store.set(FRIEND_REQUESTS, "orphan", {"from_uid": "ghost", "to_uid": "alice", "status": "pending"})
    await store.set(FRIEND_REQUESTS, "valid", {"from_uid": "alice", "to_uid": "dave", "status": "pending"})
    for sender, kind in (("dave", NotificationType.TASK_SHARED), ("dave", NotificationType.FRIEND_REQUEST)):
        await board.notifications.notify(
            "alice", NotificationCreate(type=kind, title=str(kind), message="m", from_user_id=sender)
        )
    await board.notifications.notify(
        "alice",
        NotificationCreate(type=NotificationType.TASK_SHARED, title="from bob", message="m", from_user_id="bob"),
    )


@pytest.mark.unit
class TestCleanupUserData:
    """Tests for removing dangling references."""

    @pytest.mark.asyncio
    async def test_sweep_repairs_every_category(self, board, alice, store):
        await _seed_dangling_references(board, store)

        report = await board.cleanup.cleanup_user_data("alice")

        assert report.errors == {}
        assert report.invalid_friends_removed == 1
        assert report.invalid_collaborators_removed == 2
        assert report.tasks_updated == 2
        assert report.orphaned_requests_removed == 1
        assert report.stale_notifications_removed == 1
        assert report.finalized_flags_repaired == 1

        assert (await store.get(USERS, "alice")).get("friends") == ["bob", "carol"]
        mixed = await store.get(tasks_path("alice"), "mixed")
        assert mixed.get("shared_with") == ["bob"]
        assert mixed.get("visibility") == "shared"
        stranger = await store.get(tasks_path("alice"), "stranger")
        assert stranger.get("shared_with") == []
        assert stranger.get("visibility") == "private"
        assert (await store.get(tasks_path("alice"), "locked")).get("shared_with") == ["dave"]
        assert (await store.get(tasks_path("alice"), "corrupt")).get("finalized") is False
        assert [doc.id for doc in await store.query(FRIEND_REQUESTS)] == ["valid"]

        remaining = await store.query(notifications_path("alice"))
        assert sorted((doc.get("from_user_id"), doc.get("type")) for doc in remaining) == [
            ("bob", "task_shared"),
            ("dave", "friend_request"),
        ]

    @pytest.mark.asyncio
    async def test_second_sweep_changes_nothing(self, board, alice, store):
        await _seed_dangling_references(board, store)
        await board.cleanup.cleanup_user_data("alice")

        report = await board.cleanup.cleanup_user_data("alice")

        assert report.total_changes == 0
        assert report.errors == {}

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, board, alice, store, monkeypatch):
        await _seed_dangling_references(board, store)

        async def broken(_report):
            raise RuntimeError("query failed")

        monkeypatch.setattr(board.cleanup, "_cleanup_friend_requests", broken)

        report = await board.cleanup.cleanup_user_data("alice")

        assert report.errors == {"friend_requests": "query failed"}
        assert report.invalid_friends_removed == 1
        assert report.stale_notifications_removed == 1
        assert report.finalized_flags_repaired == 1

    @pytest.mark.asyncio
    async def test_missing_profile_is_a_no_op(self, board, store):
        report = await board.cleanup.cleanup_user_data("ghost")

        assert report.total_changes == 0
        assert report.errors == {}


@pytest.mark.unit
class TestPruneSharedTasks:
    @pytest.mark.asyncio
    async def test_user_exists(self, board, alice):
        assert await board.cleanup.user_exists("bob")
        assert not await board.cleanup.user_exists("ghost")
        assert not await board.cleanup.user_exists("")

    @pytest.mark.asyncio
    async def test_prune_against_explicit_friend_list(self, board, alice, store):
        await store.set(
            tasks_path("alice"),
            "t1",
            {"owner": "alice", "name": "Shared", "shared_with": ["bob", "carol"], "visibility": "shared"},
        )

        removed, updated = await board.cleanup.prune_shared_tasks("alice", ["carol"])

        assert (removed, updated) == (1, 1)
        assert (await store.get(tasks_path("alice"), "t1")).get("shared_with") == ["carol"]

    @pytest.mark.asyncio
    async def test_private_task_loses_former_friends(self, board, alice, store):
        await store.set(
            tasks_path("alice"),
            "t1",
            {"owner": "alice", "name": "Made private", "shared_with": ["bob", "carol"], "visibility": "shared"},
        )
        await board.collaboration.update_task_visibility("t1", "private")
        await board.friends.remove_friend("bob")

        report = await board.cleanup.cleanup_user_data("alice")

        assert report.invalid_collaborators_removed == 1
        stored = await store.get(tasks_path("alice"), "t1")
        assert stored.get("shared_with") == ["carol"]
        assert stored.get("visibility") == "private"
