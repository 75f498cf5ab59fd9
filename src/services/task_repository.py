"""Task repository: CRUD, subtask and completion toggles, and the own-task listener."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.core.document_store import (
    SERVER_TIMESTAMP,
    USERS,
    ArrayRemove,
    DocumentSnapshot,
    DocumentStore,
    QuerySnapshot,
    Transaction,
    Unsubscribe,
    tasks_path,
)
from src.core.errors import (
    DocumentNotFoundError,
    InvalidIndexError,
    InvalidInputError,
    NotCollaboratorError,
    NotTaskOwnerError,
    SubtasksIncompleteError,
    TaskFinalizedError,
    TaskNotFoundError,
)
from src.core.logging import span, timed_span
from src.core.retry import RetryConfig, run_transaction_with_retry
from src.core.session import BoardSession
from src.domain.create_models import TaskCreate
from src.domain.task import (
    Subtask,
    Task,
    Visibility,
    award_key,
    finalized_repair_update,
    needs_finalized_repair,
    sanitize_task_document,
)
from src.domain.update_models import TaskUpdate
from src.services.scoring import calculate_story_point


logger = logging.getLogger(__name__)

LISTENER_SUBSYSTEM = "tasks"

TaskListCallback = Callable[[list[Task]], Awaitable[None]]


def _ensure_editable(task: Task, user_id: str) -> None:
    if task.is_locked:
        msg = "This task has been finalized and can no longer be changed"
        raise TaskFinalizedError(msg, task_id=task.id)
    if not task.can_edit(user_id):
        msg = "You are not a collaborator on this task"
        raise NotCollaboratorError(msg, task_id=task.id, user_id=user_id)


class TaskRepository:
    """Reads and writes task documents for the signed-in user."""

    def __init__(
        self,
        store: DocumentStore,
        session: BoardSession,
        *,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._transaction_config = transaction_config

    def _owner(self, owner_id: str | None) -> str:
        return owner_id or self._session.require_user().uid

    async def _heal(self, snapshot: DocumentSnapshot) -> Task:
        """Parse a task, persisting the repair of a corrupt finalized flag."""
        if needs_finalized_repair(snapshot.data or {}):
            logger.warning(
                "finalized_flag_repaired",
                extra={"task_id": snapshot.id, "collection": snapshot.collection},
            )
            await self._store.update(snapshot.collection, snapshot.id, finalized_repair_update())
        return Task.from_snapshot(snapshot)

    async def _load(self, txn: Transaction, owner_id: str, task_id: str) -> Task:
        snapshot = await txn.get(tasks_path(owner_id), task_id)
        if not snapshot.exists:
            msg = f"Task not found: {task_id}"
            raise TaskNotFoundError(msg, task_id=task_id, owner_id=owner_id)
        return Task.from_snapshot(snapshot)

    async def create_task(self, payload: TaskCreate) -> Task:
        """Create a private task owned by the signed-in user."""
        user = self._session.require_user()
        with timed_span("task_repository.create_task", user_id=user.uid):
            data = sanitize_task_document(
                {
                    "owner": user.uid,
                    "name": payload.name,
                    "description": payload.description,
                    "difficulty": payload.difficulty,
                    "workload": payload.workload,
                    "risk": payload.risk,
                    "story_point": calculate_story_point(
                        payload.difficulty, payload.workload, payload.risk, len(payload.subtasks)
                    ),
                    "due_date": payload.due_date,
                    "visibility": Visibility.PRIVATE,
                    "shared_with": [],
                    "subtasks": [{"text": text, "completed": False} for text in payload.subtasks],
                    "completed": False,
                    "finalized": False,
                    "comments": [],
                    "award_status": {},
                    "created_at": SERVER_TIMESTAMP,
                    "last_modified_by": user.uid,
                    "last_modified_at": SERVER_TIMESTAMP,
                }
            )
            task_id = await self._session.network.execute(self._store.add, tasks_path(user.uid), data)
            task = await self.get_task(task_id)
            self._session.tasks.put(task)
            logger.info(
                "task_created", extra={"user_id": user.uid, "task_id": task_id, "story_point": task.story_point}
            )
            return task

    async def get_task(self, task_id: str, *, owner_id: str | None = None) -> Task:
        """Fetch a task; a corrupt finalized flag is repaired on read.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        owner = self._owner(owner_id)
        snapshot = await self._store.get(tasks_path(owner), task_id)
        if not snapshot.exists:
            msg = f"Task not found: {task_id}"
            raise TaskNotFoundError(msg, task_id=task_id, owner_id=owner)
        return await self._heal(snapshot)

    async def list_own_tasks(self) -> list[Task]:
        """Own tasks, oldest first; served from the local cache while the store is unreachable."""
        owner = self._owner(None)

        async def load() -> list[Task]:
            snapshots = await self._store.query(tasks_path(owner), order_by="created_at")
            tasks = [await self._heal(snapshot) for snapshot in snapshots]
            self._session.tasks.replace_own(tasks)
            return tasks

        with span("task_repository.list_own_tasks"):
            return await self._session.read_or_cached(load, lambda: list(self._session.tasks.own.values()))

    async def update_task(self, task_id: str, update: TaskUpdate) -> Task | None:
        """Apply owner edits. Returns None if the write was queued while offline.

        Raises:
            InvalidInputError: If the update is empty
            NotTaskOwnerError: If the caller does not own the task
            TaskFinalizedError: If the task has been finalized
        """
        user = self._session.require_user()
        changes = update.changes()
        if not changes:
            msg = "Nothing to update"
            raise InvalidInputError(msg, task_id=task_id)

        async def apply(txn: Transaction) -> None:
            task = await self._load(txn, user.uid, task_id)
            if not task.is_owner(user.uid):
                msg = "Only the task owner can edit this task"
                raise NotTaskOwnerError(msg, task_id=task_id)
            if task.is_locked:
                msg = "This task has been finalized and can no longer be changed"
                raise TaskFinalizedError(msg, task_id=task_id)

            data: dict[str, Any] = {key: value for key, value in changes.items() if key != "subtasks"}
            subtasks = task.subtasks
            if "subtasks" in changes and changes["subtasks"] is not None:
                previous = {subtask.text: subtask.completed for subtask in task.subtasks}
                subtasks = [Subtask(text=text, completed=previous.get(text, False)) for text in changes["subtasks"]]
                data["subtasks"] = [subtask.model_dump() for subtask in subtasks]
                if task.completed and not all(subtask.completed for subtask in subtasks):
                    data["completed"] = False

            data["story_point"] = calculate_story_point(
                changes.get("difficulty", task.difficulty),
                changes.get("workload", task.workload),
                changes.get("risk", task.risk),
                len(subtasks),
            )
            data["last_modified_by"] = user.uid
            data["last_modified_at"] = SERVER_TIMESTAMP
            txn.update(tasks_path(user.uid), task_id, sanitize_task_document(data))

        async def write() -> Task:
            await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            return await self.get_task(task_id)

        with timed_span("task_repository.update_task", task_id=task_id):
            task = await self._session.write_or_queue(f"update_task:{task_id}", write)
            if task is not None:
                self._session.tasks.put(task)
            return task

    async def delete_task(self, task_id: str, *, owner_id: str | None = None) -> bool:
        """Delete a task; allowed for the owner only, even once finalized.

        Returns:
            True if deleted now, False if queued while offline
        """
        user = self._session.require_user()
        if owner_id is not None and owner_id != user.uid:
            msg = "Only the task owner can delete this task"
            raise NotTaskOwnerError(msg, task_id=task_id)

        with timed_span("task_repository.delete_task", task_id=task_id):
            task = await self.get_task(task_id)
            if not task.is_owner(user.uid):
                msg = "Only the task owner can delete this task"
                raise NotTaskOwnerError(msg, task_id=task_id)

            async def write() -> bool:
                await self._store.delete(tasks_path(user.uid), task_id)
                if task.award_status:
                    await self._release_award_keys(task)
                return True

            self._session.tasks.drop(task_id)
            deleted = await self._session.write_or_queue(f"delete_task:{task_id}", write)
            logger.info("task_deleted", extra={"task_id": task_id, "queued": deleted is None})
            return bool(deleted)

    async def _release_award_keys(self, task: Task) -> None:
        """Forget the award keys of a deleted task; its awards can no longer be replayed."""
        key = award_key(task.owner, task.id)
        for uid in task.award_status:
            try:
                await self._store.update(USERS, uid, {"awarded_keys": ArrayRemove(key)})
            except DocumentNotFoundError:
                continue
            except Exception:
                logger.exception("award_key_release_failed", extra={"task_id": task.id, "user_id": uid})

    async def set_subtask_completed(
        self,
        task_id: str,
        index: int,
        completed: bool,
        *,
        owner_id: str | None = None,
    ) -> Task:
        """Set one subtask's state inside a transaction, retried on concurrent writes.

        Marking a subtask incomplete also clears the task's ``completed`` flag.

        Raises:
            TaskFinalizedError: If the task has been finalized
            NotCollaboratorError: If the caller is neither owner nor collaborator
            InvalidIndexError: If ``index`` is out of range
            ConcurrencyError: If the transaction keeps aborting
        """
        user = self._session.require_user()
        owner = self._owner(owner_id)

        async def apply(txn: Transaction) -> Task:
            task = await self._load(txn, owner, task_id)
            _ensure_editable(task, user.uid)
            if not 0 <= index < len(task.subtasks):
                msg = f"Subtask index {index} is out of range"
                raise InvalidIndexError(msg, task_id=task_id, index=index)

            subtasks = [subtask.model_copy() for subtask in task.subtasks]
            subtasks[index] = Subtask(text=subtasks[index].text, completed=completed)
            data: dict[str, Any] = {
                "subtasks": [subtask.model_dump() for subtask in subtasks],
                "last_modified_by": user.uid,
                "last_modified_at": SERVER_TIMESTAMP,
            }
            task_completed = task.completed and completed
            if task.completed and not completed:
                data["completed"] = False
            txn.update(tasks_path(owner), task_id, data)
            return task.model_copy(
                update={"subtasks": subtasks, "completed": task_completed, "last_modified_by": user.uid}
            )

        with timed_span("task_repository.set_subtask_completed", task_id=task_id, index=index):
            updated = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            self._session.tasks.put(updated)
            return updated

    async def _current(self, task_id: str, owner_id: str) -> Task:
        cached = self._session.tasks.get(task_id)
        if cached is not None and cached.owner == owner_id:
            return cached
        return await self.get_task(task_id, owner_id=owner_id)

    async def toggle_subtask(self, task_id: str, index: int, *, owner_id: str | None = None) -> Task:
        """Flip a subtask, showing the change locally before the write lands."""
        owner = self._owner(owner_id)
        current = await self._current(task_id, owner)
        if current.is_locked:
            msg = "This task has been finalized and can no longer be changed"
            raise TaskFinalizedError(msg, task_id=task_id)
        if not 0 <= index < len(current.subtasks):
            msg = f"Subtask index {index} is out of range"
            raise InvalidIndexError(msg, task_id=task_id, index=index)

        target = not current.subtasks[index].completed
        subtasks = [subtask.model_copy() for subtask in current.subtasks]
        subtasks[index] = Subtask(text=subtasks[index].text, completed=target)
        optimistic = self._session.tasks.optimistic(task_id, subtasks=subtasks)
        return await optimistic.run(lambda: self.set_subtask_completed(task_id, index, target, owner_id=owner))

    async def set_task_completed(self, task_id: str, completed: bool, *, owner_id: str | None = None) -> Task:
        """Set the task's completed flag inside a transaction.

        Raises:
            TaskFinalizedError: If the task has been finalized
            NotCollaboratorError: If the caller is neither owner nor collaborator
            SubtasksIncompleteError: If completing while a subtask is still open
        """
        user = self._session.require_user()
        owner = self._owner(owner_id)

        async def apply(txn: Transaction) -> Task:
            task = await self._load(txn, owner, task_id)
            _ensure_editable(task, user.uid)
            if completed and not task.all_subtasks_completed():
                msg = "All subtasks must be completed first"
                raise SubtasksIncompleteError(msg, task_id=task_id)
            txn.update(
                tasks_path(owner),
                task_id,
                {"completed": completed, "last_modified_by": user.uid, "last_modified_at": SERVER_TIMESTAMP},
            )
            return task.model_copy(update={"completed": completed, "last_modified_by": user.uid})

        with timed_span("task_repository.set_task_completed", task_id=task_id):
            updated = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            self._session.tasks.put(updated)
            return updated

    async def toggle_task_complete(self, task_id: str, *, owner_id: str | None = None) -> Task:
        """Flip the completed flag; completing requires every subtask to be done."""
        owner = self._owner(owner_id)
        current = await self._current(task_id, owner)
        if current.is_locked:
            msg = "This task has been finalized and can no longer be changed"
            raise TaskFinalizedError(msg, task_id=task_id)

        target = not current.completed
        if target and not current.all_subtasks_completed():
            msg = "All subtasks must be completed first"
            raise SubtasksIncompleteError(msg, task_id=task_id)

        optimistic = self._session.tasks.optimistic(task_id, completed=target)
        return await optimistic.run(lambda: self.set_task_completed(task_id, target, owner_id=owner))

    async def listen_own_tasks(self, callback: TaskListCallback) -> Unsubscribe:
        """Keep the local cache of own tasks current and forward every change."""
        user = self._session.require_user()

        async def on_snapshot(snapshot: QuerySnapshot) -> None:
            tasks = [await self._heal(document) for document in snapshot.documents]
            self._session.tasks.replace_own(tasks)
            await callback(tasks)

        async def on_error(error: Exception) -> None:
            logger.warning("own_tasks_listener_failed", extra={"user_id": user.uid, "error": str(error)})

        unsubscribe = await self._store.listen(
            tasks_path(user.uid),
            on_snapshot,
            order_by="created_at",
            on_error=on_error,
        )
        return self._session.listeners.add(LISTENER_SUBSYSTEM, "own", unsubscribe)

    async def repair_finalized_flags(self, owner_id: str) -> int:
        """Repair every task of ``owner_id`` carrying a corrupt finalized flag.

        Returns:
            Number of tasks repaired
        """
        with span("task_repository.repair_finalized_flags"):
            repaired = 0
            for snapshot in await self._store.query(tasks_path(owner_id)):
                if needs_finalized_repair(snapshot.data or {}):
                    await self._store.update(snapshot.collection, snapshot.id, finalized_repair_update())
                    repaired += 1
            if repaired:
                logger.warning("finalized_flags_repaired", extra={"owner_id": owner_id, "count": repaired})
            return repaired
