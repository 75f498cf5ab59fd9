"""Cleanup service: removes references to users that no longer exist or are no longer friends.

Every category is idempotent and runs in isolation, so one failing category
never prevents the others from running.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable

from src.core.document_store import (
    FRIEND_REQUESTS,
    SERVER_TIMESTAMP,
    USERS,
    ArrayRemove,
    DocumentStore,
    Filter,
    FilterOp,
    Transaction,
    notifications_path,
    tasks_path,
)
from src.core.logging import timed_span
from src.core.retry import RetryConfig, run_transaction_with_retry
from src.domain.notification import NotificationType
from src.domain.task import Task, Visibility
from src.domain.user import User
from src.models.service_models import CleanupReport
from src.services.task_repository import TaskRepository


logger = logging.getLogger(__name__)


class CleanupService:
    """Repairs dangling friend, collaborator, request and notification references."""

    def __init__(
        self,
        store: DocumentStore,
        tasks: TaskRepository,
        *,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._tasks = tasks
        self._transaction_config = transaction_config

    async def user_exists(self, uid: str) -> bool:
        if not uid:
            return False
        return (await self._store.get(USERS, uid)).exists

    async def _friends(self, user_id: str) -> list[str] | None:
        snapshot = await self._store.get(USERS, user_id)
        if not snapshot.exists:
            return None
        return User.from_snapshot(snapshot).friends

    async def cleanup_user_data(self, user_id: str) -> CleanupReport:
        """Run every cleanup category for ``user_id`` and report what changed."""
        report = CleanupReport(user_id=user_id)
        steps: dict[str, Callable[[], Awaitable[None]]] = {
            "friends": lambda: self._cleanup_friends(report),
            "collaborators": lambda: self._cleanup_collaborators(report),
            "friend_requests": lambda: self._cleanup_friend_requests(report),
            "notifications": lambda: self._cleanup_notifications(report),
            "finalized_flags": lambda: self._repair_finalized_flags(report),
        }

        with timed_span("cleanup_service.cleanup_user_data", user_id=user_id):
            for name, step in steps.items():
                try:
                    await step()
                except Exception as e:
                    logger.exception("cleanup_step_failed", extra={"user_id": user_id, "step": name})
                    report.errors[name] = str(e)

        logger.info(
            "cleanup_completed",
            extra={
                "user_id": user_id,
                "total_changes": report.total_changes,
                "invalid_friends_removed": report.invalid_friends_removed,
                "invalid_collaborators_removed": report.invalid_collaborators_removed,
                "orphaned_requests_removed": report.orphaned_requests_removed,
                "stale_notifications_removed": report.stale_notifications_removed,
                "finalized_flags_repaired": report.finalized_flags_repaired,
                "failed_steps": sorted(report.errors),
            },
        )
        return report

    async def _cleanup_friends(self, report: CleanupReport) -> None:
        friends = await self._friends(report.user_id)
        if not friends:
            return
        invalid = [friend_id for friend_id in friends if not await self.user_exists(friend_id)]
        if invalid:
            await self._store.update(USERS, report.user_id, {"friends": ArrayRemove(*invalid)})
            logger.info("invalid_friends_removed", extra={"user_id": report.user_id, "removed": invalid})
        report.invalid_friends_removed = len(invalid)

    async def _cleanup_collaborators(self, report: CleanupReport) -> None:
        friends = await self._friends(report.user_id)
        if friends is None:
            return
        removed, updated = await self.prune_shared_tasks(report.user_id, friends)
        report.invalid_collaborators_removed = removed
        report.tasks_updated = updated

    async def prune_shared_tasks(self, user_id: str, friends: Iterable[str]) -> tuple[int, int]:
        """Drop collaborators that no longer exist or are no longer friends.

        Every task with collaborators is checked, private ones included. Tasks
        left without collaborators become private. Finalized tasks keep their
        collaborator list.

        Returns:
            (collaborators removed, tasks updated)
        """
        allowed = set(friends)
        removed_total = 0
        tasks_updated = 0
        for snapshot in await self._store.query(tasks_path(user_id)):
            task = Task.from_snapshot(snapshot)
            if not task.shared_with or task.is_locked:
                continue
            existing = {uid: await self.user_exists(uid) for uid in task.shared_with}
            invalid = [uid for uid, exists in existing.items() if not exists or uid not in allowed]
            if not invalid:
                continue

            removed = await self._prune_task(user_id, task.id, set(invalid))
            if removed:
                removed_total += removed
                tasks_updated += 1
        return removed_total, tasks_updated

    async def _prune_task(self, user_id: str, task_id: str, invalid: set[str]) -> int:
        async def apply(txn: Transaction) -> int:
            snapshot = await txn.get(tasks_path(user_id), task_id)
            if not snapshot.exists:
                return 0
            task = Task.from_snapshot(snapshot)
            remaining = [uid for uid in task.shared_with if uid not in invalid]
            removed = len(task.shared_with) - len(remaining)
            if not removed or task.is_locked:
                return 0
            txn.update(
                tasks_path(user_id),
                task_id,
                {
                    "shared_with": remaining,
                    "visibility": (task.visibility if remaining else Visibility.PRIVATE).value,
                    "last_modified_at": SERVER_TIMESTAMP,
                },
            )
            return removed

        removed = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
        if removed:
            logger.info(
                "invalid_collaborators_removed",
                extra={"user_id": user_id, "task_id": task_id, "removed": removed},
            )
        return removed

    async def _cleanup_friend_requests(self, report: CleanupReport) -> None:
        removed = 0
        for field_name, counterpart in (("from_uid", "to_uid"), ("to_uid", "from_uid")):
            snapshots = await self._store.query(
                FRIEND_REQUESTS, filters=[Filter(field_name, FilterOp.EQ, report.user_id)]
            )
            for snapshot in snapshots:
                if not await self.user_exists(snapshot.get(counterpart, "")):
                    await self._store.delete(FRIEND_REQUESTS, snapshot.id)
                    removed += 1
        if removed:
            logger.info("orphaned_requests_removed", extra={"user_id": report.user_id, "removed": removed})
        report.orphaned_requests_removed = removed

    async def _cleanup_notifications(self, report: CleanupReport) -> None:
        friends = await self._friends(report.user_id)
        if friends is None:
            return
        allowed = set(friends)
        removed = 0
        for snapshot in await self._store.query(notifications_path(report.user_id)):
            if snapshot.get("type") == NotificationType.FRIEND_REQUEST.value:
                continue
            from_user_id = snapshot.get("from_user_id")
            if from_user_id and from_user_id != report.user_id and from_user_id not in allowed:
                await self._store.delete(snapshot.collection, snapshot.id)
                removed += 1
        report.stale_notifications_removed = removed

    async def _repair_finalized_flags(self, report: CleanupReport) -> None:
        report.finalized_flags_repaired = await self._tasks.repair_finalized_flags(report.user_id)
