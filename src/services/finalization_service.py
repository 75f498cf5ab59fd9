"""Finalization service: lock a completed task and distribute its points.

Finalization happens in two phases. The task-level commit is a single
transaction that locks the task and records the computed points together with
an ``award_status`` entry per recipient. Each recipient is then awarded in its
own user-document transaction keyed by ``{owner}/{task_id}``, so an award is
applied at most once even when ``resume_pending_awards`` replays it after an
interrupted run.
"""

import logging

from src.core.config import Settings, settings
from src.core.document_store import SERVER_TIMESTAMP, DocumentStore, Transaction, tasks_path
from src.core.errors import (
    AlreadyFinalizedError,
    NotTaskOwnerError,
    TaskNotCompletedError,
    TaskNotFoundError,
    UserNotFoundError,
)
from src.core.logging import span, timed_span
from src.core.retry import RetryConfig, run_transaction_with_retry
from src.core.session import BoardSession
from src.domain.notification import NotificationCreate, NotificationType
from src.domain.task import AwardState, PointsAwarded, Task, award_key
from src.models.service_models import AwardOutcome, FinalizationResult, RecipientAward
from src.services.achievement_service import AchievementService
from src.services.notification_service import Notifier, safe_notify
from src.services.scoring import collaborator_points, is_finished_early, owner_points


logger = logging.getLogger(__name__)

FINALIZE_ACTION = "finalize_task"


def calculate_final_points(
    task: Task,
    *,
    finished_early: bool,
    collaborator_early_bonus: bool = False,
) -> PointsAwarded:
    """Points for the owner and each collaborator of a task being finalized."""
    return PointsAwarded(
        owner=owner_points(task.story_point, finished_early=finished_early),
        collaborators={
            uid: collaborator_points(
                task.story_point,
                finished_early=finished_early,
                early_bonus_enabled=collaborator_early_bonus,
            )
            for uid in task.shared_with
            if uid != task.owner
        },
    )


class FinalizationService:
    """Moves a completed task to its terminal finalized state."""

    def __init__(
        self,
        store: DocumentStore,
        session: BoardSession,
        achievements: AchievementService,
        notifier: Notifier,
        *,
        config: Settings | None = None,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._achievements = achievements
        self._notifier = notifier
        self._settings = config or settings
        self._transaction_config = transaction_config

    async def finalize_task(self, task_id: str) -> FinalizationResult:
        """Finalize a completed task owned by the signed-in user and award points.

        A failure while awarding a recipient is logged and reported in the
        result; it does not undo the finalization.

        Raises:
            OperationInProgressError: If a finalize is already running in this session
            NotTaskOwnerError: If the caller does not own the task
            AlreadyFinalizedError: If the task was finalized before
            TaskNotCompletedError: If the task is not completed
            ConcurrencyError: If the task keeps changing underneath the commit
        """
        user = self._session.require_user()
        async with self._session.in_flight(FINALIZE_ACTION):
            with timed_span("finalization_service.finalize_task", task_id=task_id, user_id=user.uid):
                optimistic = self._session.tasks.optimistic(task_id, finalized=True)
                task = await optimistic.run(lambda: self._commit(user.uid, task_id))
                self._session.tasks.put(task)

                result = FinalizationResult(
                    task_id=task_id,
                    story_point=task.story_point,
                    finished_early=task.finished_early,
                    owner_points=task.points_awarded.owner if task.points_awarded else 0,
                    collaborator_points=task.points_awarded.collaborators if task.points_awarded else {},
                )
                result.awards = await self._distribute(task, list(task.award_status))
                logger.info(
                    "task_finalized",
                    extra={
                        "task_id": task_id,
                        "owner_id": user.uid,
                        "story_point": task.story_point,
                        "finished_early": task.finished_early,
                        "failed_recipients": result.failed_recipients,
                    },
                )
                return result

    async def _commit(self, owner_id: str, task_id: str) -> Task:
        async def apply(txn: Transaction) -> Task:
            snapshot = await txn.get(tasks_path(owner_id), task_id)
            if not snapshot.exists:
                msg = f"Task not found: {task_id}"
                raise TaskNotFoundError(msg, task_id=task_id)
            task = Task.from_snapshot(snapshot)
            if not task.is_owner(owner_id):
                msg = "Only the task owner can finalize this task"
                raise NotTaskOwnerError(msg, task_id=task_id)
            if task.is_locked:
                msg = "This task has already been finalized"
                raise AlreadyFinalizedError(msg, task_id=task_id)
            if not task.completed:
                msg = "Complete the task before finalizing it"
                raise TaskNotCompletedError(msg, task_id=task_id)

            finished_at = self._store.now()
            finished_early = is_finished_early(task.due_date, finished_at)
            points = calculate_final_points(
                task,
                finished_early=finished_early,
                collaborator_early_bonus=self._settings.collaborator_early_bonus,
            )
            award_status = {uid: AwardState.PENDING for uid in [task.owner, *points.collaborators]}
            txn.update(
                tasks_path(owner_id),
                task_id,
                {
                    "finalized": True,
                    "finalized_at": finished_at,
                    "finalized_by": owner_id,
                    "finished_early": finished_early,
                    "points_awarded": points.model_dump(),
                    "award_status": {uid: str(state) for uid, state in award_status.items()},
                    "last_modified_by": owner_id,
                    "last_modified_at": SERVER_TIMESTAMP,
                },
            )
            return task.model_copy(
                update={
                    "finalized": True,
                    "finalized_at": finished_at,
                    "finalized_by": owner_id,
                    "finished_early": finished_early,
                    "points_awarded": points,
                    "award_status": award_status,
                }
            )

        return await run_transaction_with_retry(self._store, apply, config=self._transaction_config)

    async def _distribute(self, task: Task, recipients: list[str]) -> list[RecipientAward]:
        awards = []
        for uid in recipients:
            award = await self._award_recipient(task, uid)
            awards.append(award)
        return awards

    async def _award_recipient(self, task: Task, uid: str) -> RecipientAward:
        is_owner = uid == task.owner
        points_awarded = task.points_awarded or PointsAwarded()
        points = points_awarded.owner if is_owner else points_awarded.collaborators.get(uid, 0)
        role = "owner" if is_owner else "collaborator"
        award = RecipientAward(user_id=uid, role=role, points=points, outcome=AwardOutcome.DONE)

        try:
            try:
                applied = await self._achievements.record_task_completion(
                    uid,
                    award_key=award_key(task.owner, task.id),
                    points=points,
                    finished_early=task.finished_early,
                    helped_friend=not is_owner,
                )
            except UserNotFoundError:
                logger.warning("award_recipient_missing", extra={"task_id": task.id, "user_id": uid})
                await self._mark_award(task, uid, AwardState.SKIPPED)
                award.outcome = AwardOutcome.SKIPPED
                return award

            if applied is None:
                award.outcome = AwardOutcome.ALREADY_APPLIED
            await self._mark_award(task, uid, AwardState.DONE)
            award.unlocked_achievements = await self._achievements.check_and_unlock_achievements(uid)

            if not is_owner:
                await safe_notify(
                    self._notifier,
                    uid,
                    NotificationCreate(
                        type=NotificationType.TASK_FINALIZED,
                        title="Task finalized",
                        message=f'"{task.name}" was finalized. You earned {points} points!',
                        data={"task_id": task.id, "owner_id": task.owner, "points": points},
                        from_user_id=task.owner,
                    ),
                )
        except Exception as e:
            logger.exception("award_recipient_failed", extra={"task_id": task.id, "user_id": uid})
            award.outcome = AwardOutcome.FAILED
            award.error = str(e)
        return award

    async def _mark_award(self, task: Task, uid: str, state: AwardState) -> None:
        await self._store.update(tasks_path(task.owner), task.id, {f"award_status.{uid}": str(state)})
        task.award_status[uid] = state

    async def resume_pending_awards(self, owner_id: str | None = None) -> int:
        """Award recipients still pending on finalized tasks of ``owner_id``.

        Returns:
            Number of recipients awarded or skipped
        """
        owner = owner_id or self._session.require_user().uid
        with span("finalization_service.resume_pending_awards"):
            resumed = 0
            for snapshot in await self._store.query(tasks_path(owner)):
                task = Task.from_snapshot(snapshot)
                if not task.is_locked:
                    continue
                pending = [uid for uid, state in task.award_status.items() if state == AwardState.PENDING]
                if not pending:
                    continue
                logger.info("resuming_pending_awards", extra={"task_id": task.id, "recipients": pending})
                awards = await self._distribute(task, pending)
                resumed += sum(1 for award in awards if award.outcome != AwardOutcome.FAILED)
            return resumed

