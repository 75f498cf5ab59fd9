"""Collaboration service: sharing tasks with friends, shared subtasks and comments."""

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime

from src.core.document_store import (
    SERVER_TIMESTAMP,
    TASKS_GROUP,
    USERS,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Filter,
    FilterOp,
    QuerySnapshot,
    Transaction,
    Unsubscribe,
    tasks_path,
)
from src.core.errors import (
    AlreadySharedError,
    CommentNotFoundError,
    EmptySelectionError,
    InvalidInputError,
    NotCollaboratorError,
    NotFriendError,
    NotTaskOwnerError,
    PermissionDeniedError,
    TaskFinalizedError,
    TaskNotFoundError,
    UserNotFoundError,
)
from src.core.logging import span, timed_span
from src.core.retry import RetryConfig, run_transaction_with_retry
from src.core.session import BoardSession
from src.domain.notification import NotificationCreate, NotificationType
from src.domain.task import Comment, Task, Visibility
from src.domain.user import User
from src.models.service_models import ShareResult
from src.services.notification_service import Notifier, safe_notify
from src.services.task_repository import TaskRepository


logger = logging.getLogger(__name__)

SHARED_TASKS_SUBSYSTEM = "shared_tasks"
SHARED_TASKS_PROFILE_SUBSYSTEM = "shared_tasks.friends"

SharedTasksCallback = Callable[[list[Task]], Awaitable[None]]

_EPOCH = datetime.min.replace(tzinfo=UTC)


def can_user_edit_task(task: Task, user_id: str) -> bool:
    """Owner and collaborators may toggle subtasks, completion and comment."""
    return task.can_edit(user_id)


def can_delete_task(task: Task, user_id: str) -> bool:
    return task.is_owner(user_id)


def is_task_owner(task: Task, user_id: str) -> bool:
    return task.is_owner(user_id)


def _ensure_unlocked(task: Task) -> None:
    if task.is_locked:
        msg = "This task has been finalized and can no longer be changed"
        raise TaskFinalizedError(msg, task_id=task.id)


def _serialize_comments(comments: Iterable[Comment]) -> list[dict[str, object]]:
    return [comment.model_dump(exclude_none=True) for comment in comments]


class SharedTaskFanIn:
    """Merges the tasks every friend shares with the user into one list.

    One listener watches the user's profile; for each friend it keeps a
    listener on ``users/{friend}/tasks`` filtered to tasks shared with the
    user, attaching and detaching them as the friend list changes.
    """

    def __init__(self, store: DocumentStore, session: BoardSession, callback: SharedTasksCallback) -> None:
        self._store = store
        self._session = session
        self._callback = callback
        self._uid = session.require_user().uid
        self._by_friend: dict[str, dict[str, Task]] = {}
        self._batching = False

    @property
    def friends(self) -> set[str]:
        return self._session.listeners.keys(SHARED_TASKS_SUBSYSTEM)

    async def start(self) -> Unsubscribe:
        unsubscribe = await self._store.listen_document(
            USERS, self._uid, self._on_profile, on_error=self._on_profile_error
        )
        self._session.listeners.add(SHARED_TASKS_PROFILE_SUBSYSTEM, self._uid, unsubscribe)
        return self.stop

    def stop(self) -> None:
        self._session.listeners.close_subsystem(SHARED_TASKS_PROFILE_SUBSYSTEM)
        self._session.listeners.close_subsystem(SHARED_TASKS_SUBSYSTEM)
        self._by_friend.clear()

    async def _on_profile(self, snapshot: DocumentSnapshot) -> None:
        friends = set(User.from_snapshot(snapshot).friends) if snapshot.exists else set()
        friends.discard(self._uid)
        attached = self.friends

        self._batching = True
        try:
            for friend_id in attached - friends:
                self._session.listeners.remove(SHARED_TASKS_SUBSYSTEM, friend_id)
                self._by_friend.pop(friend_id, None)
            for friend_id in sorted(friends - attached):
                await self._attach(friend_id)
        finally:
            self._batching = False
        await self._emit()

    async def _on_profile_error(self, error: Exception) -> None:
        logger.warning("shared_tasks_profile_listener_failed", extra={"user_id": self._uid, "error": str(error)})

    async def _attach(self, friend_id: str) -> None:
        async def on_snapshot(snapshot: QuerySnapshot) -> None:
            tasks = (Task.from_snapshot(document) for document in snapshot.documents)
            self._by_friend[friend_id] = {task.id: task for task in tasks if task.owner != self._uid}
            await self._emit()

        async def on_error(error: Exception) -> None:
            logger.warning(
                "shared_tasks_friend_listener_failed",
                extra={"user_id": self._uid, "friend_id": friend_id, "error": str(error)},
            )
            self._session.listeners.remove(SHARED_TASKS_SUBSYSTEM, friend_id)
            self._by_friend.pop(friend_id, None)
            await self._emit()

        try:
            unsubscribe = await self._store.listen(
                tasks_path(friend_id),
                on_snapshot,
                filters=[Filter("shared_with", FilterOp.ARRAY_CONTAINS, self._uid)],
                on_error=on_error,
            )
        except Exception:
            logger.exception("shared_tasks_attach_failed", extra={"user_id": self._uid, "friend_id": friend_id})
            return
        self._session.listeners.add(SHARED_TASKS_SUBSYSTEM, friend_id, unsubscribe)

    async def _emit(self) -> None:
        if self._batching:
            return
        merged = [task for tasks in self._by_friend.values() for task in tasks.values()]
        merged.sort(key=lambda task: (task.created_at or _EPOCH, task.id))
        self._session.tasks.replace_shared(merged)
        await self._callback(merged)


class CollaborationService:
    """Sharing, collaborator subtask edits and comments on tasks."""

    def __init__(
        self,
        store: DocumentStore,
        session: BoardSession,
        tasks: TaskRepository,
        notifier: Notifier,
        *,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._tasks = tasks
        self._notifier = notifier
        self._transaction_config = transaction_config

    async def _fresh_friends(self, txn: Transaction, user_id: str) -> set[str]:
        snapshot = await txn.get(USERS, user_id)
        if not snapshot.exists:
            msg = f"User not found: {user_id}"
            raise UserNotFoundError(msg, user_id=user_id)
        return set(User.from_snapshot(snapshot).friends)

    async def _load(self, txn: Transaction, owner_id: str, task_id: str) -> Task:
        snapshot = await txn.get(tasks_path(owner_id), task_id)
        if not snapshot.exists:
            msg = f"Task not found: {task_id}"
            raise TaskNotFoundError(msg, task_id=task_id, owner_id=owner_id)
        return Task.from_snapshot(snapshot)

    # Sharing

    async def share_task(self, task_id: str, friend_ids: Iterable[str]) -> ShareResult:
        """Share one of the caller's tasks with friends not yet collaborating on it.

        The friend list is read fresh; if any new collaborator is not a friend
        nothing is written.

        Raises:
            AuthenticationRequiredError: If nobody is signed in
            EmptySelectionError: If no friend ids are given
            AlreadySharedError: If every friend already collaborates on the task
            NotFriendError: If a new collaborator is not a friend
            TaskFinalizedError: If the task has been finalized
        """
        user = self._session.require_user()
        selected = list(dict.fromkeys(friend_id for friend_id in friend_ids if friend_id))
        if not selected:
            msg = "Select at least one friend to share with"
            raise EmptySelectionError(msg, task_id=task_id)

        with timed_span("collaboration_service.share_task", task_id=task_id, user_id=user.uid):

            async def apply(txn: Transaction) -> tuple[Task, list[str]]:
                task = await self._load(txn, user.uid, task_id)
                _ensure_unlocked(task)

                delta = [friend_id for friend_id in selected if friend_id not in task.shared_with]
                if not delta:
                    msg = "Task is already shared with the selected friends"
                    raise AlreadySharedError(msg, task_id=task_id)

                friends = await self._fresh_friends(txn, user.uid)
                strangers = [friend_id for friend_id in delta if friend_id not in friends]
                if strangers:
                    msg = "You can only share tasks with friends"
                    raise NotFriendError(msg, task_id=task_id, user_ids=strangers)

                txn.update(
                    tasks_path(user.uid),
                    task_id,
                    {
                        "shared_with": ArrayUnion(*delta),
                        "visibility": Visibility.SHARED.value,
                        "last_modified_by": user.uid,
                        "last_modified_at": SERVER_TIMESTAMP,
                    },
                )
                return task, delta

            task, delta = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            shared_with = [*task.shared_with, *delta]
            self._session.tasks.put(
                task.model_copy(update={"shared_with": shared_with, "visibility": Visibility.SHARED})
            )
            logger.info("task_shared", extra={"task_id": task_id, "owner_id": user.uid, "added": delta})

            for friend_id in delta:
                await safe_notify(
                    self._notifier,
                    friend_id,
                    NotificationCreate(
                        type=NotificationType.TASK_SHARED,
                        title="New shared task",
                        message=f'{user.display_name or user.email or "A friend"} shared "{task.name}" with you',
                        data={"task_id": task_id, "owner_id": user.uid},
                        from_user_id=user.uid,
                    ),
                )

            return ShareResult(task_id=task_id, added=delta, shared_with=shared_with, visibility=Visibility.SHARED)

    async def unshare_task(self, task_id: str, friend_id: str, *, owner_id: str | None = None) -> ShareResult:
        """Remove a collaborator; the task becomes private once nobody is left.

        Removing someone who is not a collaborator changes nothing.

        Raises:
            NotTaskOwnerError: If the caller does not own the task
            TaskFinalizedError: If the task has been finalized
        """
        user = self._session.require_user()
        if owner_id is not None and owner_id != user.uid:
            msg = "Only the task owner can stop sharing this task"
            raise NotTaskOwnerError(msg, task_id=task_id)

        async def apply(txn: Transaction) -> ShareResult:
            task = await self._load(txn, user.uid, task_id)
            if not task.is_owner(user.uid):
                msg = "Only the task owner can stop sharing this task"
                raise NotTaskOwnerError(msg, task_id=task_id)
            _ensure_unlocked(task)
            if friend_id not in task.shared_with:
                return ShareResult(task_id=task_id, shared_with=task.shared_with, visibility=task.visibility)

            remaining = [uid for uid in task.shared_with if uid != friend_id]
            visibility = Visibility.SHARED if remaining else Visibility.PRIVATE
            txn.update(
                tasks_path(user.uid),
                task_id,
                {
                    "shared_with": remaining,
                    "visibility": visibility.value,
                    "last_modified_by": user.uid,
                    "last_modified_at": SERVER_TIMESTAMP,
                },
            )
            return ShareResult(task_id=task_id, removed=[friend_id], shared_with=remaining, visibility=visibility)

        with timed_span("collaboration_service.unshare_task", task_id=task_id, user_id=user.uid):
            result = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            if not result.removed:
                return result

            cached = self._session.tasks.get(task_id)
            if cached is not None:
                self._session.tasks.put(
                    cached.model_copy(update={"shared_with": result.shared_with, "visibility": result.visibility})
                )
            logger.info("task_unshared", extra={"task_id": task_id, "owner_id": user.uid, "removed": friend_id})
            await safe_notify(
                self._notifier,
                friend_id,
                NotificationCreate(
                    type=NotificationType.TASK_UNSHARED,
                    title="Task no longer shared",
                    message="A task is no longer shared with you",
                    data={"task_id": task_id, "owner_id": user.uid},
                    from_user_id=user.uid,
                ),
            )
            return result

    async def update_task_visibility(self, task_id: str, visibility: str) -> Task:
        """Switch a task between private and shared directly.

        Raises:
            InvalidInputError: If ``visibility`` is not a known value
            NotTaskOwnerError: If the caller does not own the task
            TaskFinalizedError: If the task has been finalized
        """
        user = self._session.require_user()
        try:
            target = Visibility(visibility)
        except ValueError as e:
            msg = f"Invalid visibility: {visibility}"
            raise InvalidInputError(msg, task_id=task_id) from e

        async def apply(txn: Transaction) -> Task:
            task = await self._load(txn, user.uid, task_id)
            if not task.is_owner(user.uid):
                msg = "Only the task owner can change visibility"
                raise NotTaskOwnerError(msg, task_id=task_id)
            _ensure_unlocked(task)
            txn.update(
                tasks_path(user.uid),
                task_id,
                {"visibility": target.value, "last_modified_by": user.uid, "last_modified_at": SERVER_TIMESTAMP},
            )
            return task.model_copy(update={"visibility": target})

        with span("collaboration_service.update_task_visibility"):
            updated = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
        self._session.tasks.put(updated)
        return updated

    async def update_shared_subtask(self, task_id: str, index: int, completed: bool, owner_id: str) -> Task:
        """Set a subtask on a task owned by ``owner_id`` as owner or collaborator.

        Raises:
            TaskFinalizedError: If the task has been finalized
            InvalidIndexError: If ``index`` is out of range
            NotCollaboratorError: If the caller is neither owner nor collaborator
            ConcurrencyError: If the transaction still aborts after its retries
        """
        return await self._tasks.set_subtask_completed(task_id, index, completed, owner_id=owner_id)

    # Comments

    async def add_comment(self, task_id: str, text: str, *, owner_id: str | None = None) -> Comment:
        """Append a comment authored by the caller.

        Raises:
            InvalidInputError: If the text is blank
            NotCollaboratorError: If the caller is neither owner nor collaborator
            TaskFinalizedError: If the task has been finalized
        """
        user = self._session.require_user()
        text = text.strip()
        if not text:
            msg = "Comment cannot be empty"
            raise InvalidInputError(msg, task_id=task_id)
        owner = owner_id or user.uid

        async def apply(txn: Transaction) -> Comment:
            task = await self._load(txn, owner, task_id)
            _ensure_unlocked(task)
            if not can_user_edit_task(task, user.uid):
                msg = "Only the owner and collaborators can comment on this task"
                raise NotCollaboratorError(msg, task_id=task_id, user_id=user.uid)

            comment = Comment(id=uuid.uuid4().hex, uid=user.uid, text=text, created_at=self._store.now())
            txn.update(
                tasks_path(owner),
                task_id,
                {
                    "comments": ArrayUnion(comment.model_dump(exclude_none=True)),
                    "last_modified_by": user.uid,
                    "last_modified_at": SERVER_TIMESTAMP,
                },
            )
            return comment

        with timed_span("collaboration_service.add_comment", task_id=task_id):
            comment = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            logger.info("comment_added", extra={"task_id": task_id, "comment_id": comment.id, "user_id": user.uid})
            return comment

    async def get_comments(self, task_id: str, *, owner_id: str | None = None) -> list[Comment]:
        """Comments in chronological order."""
        user = self._session.require_user()
        task = await self._tasks.get_task(task_id, owner_id=owner_id or user.uid)
        if not can_user_edit_task(task, user.uid):
            msg = "Only the owner and collaborators can read comments on this task"
            raise NotCollaboratorError(msg, task_id=task_id, user_id=user.uid)
        return sorted(task.comments, key=lambda comment: comment.created_at)

    async def edit_comment(
        self,
        task_id: str,
        comment_id: str,
        text: str,
        *,
        owner_id: str | None = None,
    ) -> Comment:
        """Replace a comment's text; only its author may edit it.

        Raises:
            InvalidInputError: If the text is blank
            CommentNotFoundError: If no comment has ``comment_id``
            PermissionDeniedError: If the caller did not write the comment
        """
        user = self._session.require_user()
        text = text.strip()
        if not text:
            msg = "Comment cannot be empty"
            raise InvalidInputError(msg, task_id=task_id)
        owner = owner_id or user.uid

        async def apply(txn: Transaction) -> Comment:
            task = await self._load(txn, owner, task_id)
            _ensure_unlocked(task)
            index = task.find_comment(comment_id)
            if index is None:
                msg = f"Comment not found: {comment_id}"
                raise CommentNotFoundError(msg, task_id=task_id, comment_id=comment_id)
            if task.comments[index].uid != user.uid:
                msg = "Only the author can edit this comment"
                raise PermissionDeniedError(msg, task_id=task_id, comment_id=comment_id)

            comments = list(task.comments)
            comments[index] = comments[index].model_copy(update={"text": text, "edited_at": self._store.now()})
            txn.update(
                tasks_path(owner),
                task_id,
                {
                    "comments": _serialize_comments(comments),
                    "last_modified_by": user.uid,
                    "last_modified_at": SERVER_TIMESTAMP,
                },
            )
            return comments[index]

        with span("collaboration_service.edit_comment"):
            return await run_transaction_with_retry(self._store, apply, config=self._transaction_config)

    async def delete_comment(self, task_id: str, comment_id: str, *, owner_id: str | None = None) -> None:
        """Delete a comment; allowed for its author and the task owner.

        Raises:
            CommentNotFoundError: If no comment has ``comment_id``
            PermissionDeniedError: If the caller is neither author nor owner
        """
        user = self._session.require_user()
        owner = owner_id or user.uid

        async def apply(txn: Transaction) -> None:
            task = await self._load(txn, owner, task_id)
            _ensure_unlocked(task)
            index = task.find_comment(comment_id)
            if index is None:
                msg = f"Comment not found: {comment_id}"
                raise CommentNotFoundError(msg, task_id=task_id, comment_id=comment_id)
            if task.comments[index].uid != user.uid and not task.is_owner(user.uid):
                msg = "Only the author or the task owner can delete this comment"
                raise PermissionDeniedError(msg, task_id=task_id, comment_id=comment_id)

            comments = [comment for position, comment in enumerate(task.comments) if position != index]
            txn.update(
                tasks_path(owner),
                task_id,
                {
                    "comments": _serialize_comments(comments),
                    "last_modified_by": user.uid,
                    "last_modified_at": SERVER_TIMESTAMP,
                },
            )

        with span("collaboration_service.delete_comment"):
            await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            logger.info("comment_deleted", extra={"task_id": task_id, "comment_id": comment_id, "user_id": user.uid})

    # Queries and listeners

    async def get_shared_with_me_tasks(self) -> list[Task]:
        """Tasks other users share with the caller, across every owner's collection."""
        user = self._session.require_user()

        async def load() -> list[Task]:
            snapshots = await self._store.query_group(
                TASKS_GROUP,
                filters=[Filter("shared_with", FilterOp.ARRAY_CONTAINS, user.uid)],
                order_by="created_at",
            )
            tasks = [Task.from_snapshot(snapshot) for snapshot in snapshots]
            return [task for task in tasks if task.owner != user.uid]

        with span("collaboration_service.get_shared_with_me_tasks"):
            return await self._session.read_or_cached(load, lambda: list(self._session.tasks.shared.values()))

    async def get_my_shared_tasks(self) -> list[Task]:
        """The caller's own tasks that currently have collaborators."""
        user = self._session.require_user()
        snapshots = await self._store.query(
            tasks_path(user.uid),
            filters=[Filter("visibility", FilterOp.EQ, Visibility.SHARED.value)],
            order_by="created_at",
        )
        return [Task.from_snapshot(snapshot) for snapshot in snapshots]

    async def listen_shared_tasks(self, callback: SharedTasksCallback) -> Unsubscribe:
        """Deliver the merged list of tasks friends share with the caller on every change."""
        fan_in = SharedTaskFanIn(self._store, self._session, callback)
        return await fan_in.start()
