"""Per-user session context held by every engine.

The session owns everything that lives only as long as a signed-in user:
the authenticated identity, in-flight guards for non-idempotent actions,
listener handles grouped by subsystem, the local task cache that listeners
keep current, and the offline write queue.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

from src.core.document_store import Unsubscribe
from src.core.errors import AuthenticationRequiredError, OperationInProgressError, StoreUnavailableError
from src.core.retry import OfflineQueue, RetryPolicy
from src.domain.task import Task


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AuthUser:
    """Identity provided by the authentication service."""

    uid: str
    email: str = ""
    display_name: str = ""


class ListenerRegistry:
    """Listener unsubscribe handles keyed by (subsystem, key)."""

    def __init__(self) -> None:
        self._handles: dict[str, dict[str, Unsubscribe]] = {}

    def add(self, subsystem: str, key: str, unsubscribe: Unsubscribe) -> Unsubscribe:
        """Register a handle, closing any handle already registered under the same key.

        Returns:
            A callable that closes the handle and drops it from the registry
        """
        self.remove(subsystem, key)
        self._handles.setdefault(subsystem, {})[key] = unsubscribe

        def close() -> None:
            if self._handles.get(subsystem, {}).get(key) is unsubscribe:
                self.remove(subsystem, key)

        return close

    def remove(self, subsystem: str, key: str) -> bool:
        handle = self._handles.get(subsystem, {}).pop(key, None)
        if handle is None:
            return False
        self._close(subsystem, key, handle)
        return True

    def keys(self, subsystem: str) -> set[str]:
        return set(self._handles.get(subsystem, {}))

    def has(self, subsystem: str, key: str) -> bool:
        return key in self._handles.get(subsystem, {})

    def close_subsystem(self, subsystem: str) -> int:
        handles = self._handles.pop(subsystem, {})
        for key, handle in handles.items():
            self._close(subsystem, key, handle)
        return len(handles)

    def close_all(self) -> int:
        closed = 0
        for subsystem in list(self._handles):
            closed += self.close_subsystem(subsystem)
        if closed:
            logger.info("listeners_closed", extra={"count": closed})
        return closed

    def __len__(self) -> int:
        return sum(len(handles) for handles in self._handles.values())

    @staticmethod
    def _close(subsystem: str, key: str, handle: Unsubscribe) -> None:
        try:
            handle()
        except Exception:
            logger.exception("listener_unsubscribe_failed", extra={"subsystem": subsystem, "key": key})


class OptimisticUpdate:
    """Apply a local change immediately and revert it if the remote write fails."""

    def __init__(self, apply: Callable[[], None], revert: Callable[[], None]) -> None:
        self._apply = apply
        self._revert = revert

    async def run(self, remote: Callable[[], Awaitable[T]]) -> T:
        self._apply()
        try:
            return await remote()
        except Exception:
            self._revert()
            raise


class TaskCache:
    """Local view of the user's own tasks and the tasks friends shared with them."""

    def __init__(self) -> None:
        self.own: dict[str, Task] = {}
        self.shared: dict[str, Task] = {}

    def get(self, task_id: str) -> Task | None:
        return self.own.get(task_id) or self.shared.get(task_id)

    def put(self, task: Task) -> None:
        if task.id in self.shared:
            self.shared[task.id] = task
        else:
            self.own[task.id] = task

    def replace_own(self, tasks: Iterable[Task]) -> None:
        self.own = {task.id: task for task in tasks}

    def replace_shared(self, tasks: Iterable[Task]) -> None:
        self.shared = {task.id: task for task in tasks}

    def drop(self, task_id: str) -> None:
        self.own.pop(task_id, None)
        self.shared.pop(task_id, None)

    def all(self) -> list[Task]:
        return [*self.own.values(), *self.shared.values()]

    def clear(self) -> None:
        self.own.clear()
        self.shared.clear()

    def optimistic(self, task_id: str, **changes: Any) -> OptimisticUpdate:
        """Build an optimistic update for a cached task; a no-op when the task is not cached."""
        previous = self.get(task_id)

        def apply() -> None:
            if previous is not None:
                self.put(previous.model_copy(update=changes))

        def revert() -> None:
            if previous is not None:
                self.put(previous)
                logger.info("optimistic_update_reverted", extra={"task_id": task_id, "fields": sorted(changes)})

        return OptimisticUpdate(apply, revert)


class BoardSession:
    """Application session context."""

    def __init__(self, *, network_policy: RetryPolicy | None = None, offline_queue: OfflineQueue | None = None) -> None:
        self.user: AuthUser | None = None
        self.listeners = ListenerRegistry()
        self.tasks = TaskCache()
        self.network = network_policy or RetryPolicy()
        self.offline_queue = offline_queue or OfflineQueue()
        self.online = True
        self.announced_achievements: set[str] = set()
        self._in_flight: set[str] = set()

    def require_user(self) -> AuthUser:
        """Return the signed-in user.

        Raises:
            AuthenticationRequiredError: If nobody is signed in
        """
        if self.user is None:
            msg = "You must be signed in to perform this action"
            raise AuthenticationRequiredError(msg)
        return self.user

    def is_in_flight(self, action: str) -> bool:
        return action in self._in_flight

    @asynccontextmanager
    async def in_flight(self, action: str) -> AsyncIterator[None]:
        """Guard a non-idempotent action against duplicate submission.

        Raises:
            OperationInProgressError: If the same action is already running
        """
        if action in self._in_flight:
            msg = f"{action} is already in progress"
            raise OperationInProgressError(msg, action=action)
        self._in_flight.add(action)
        try:
            yield
        finally:
            self._in_flight.discard(action)

    def go_offline(self) -> None:
        if self.online:
            self.online = False
            logger.warning("session_offline", extra={"user_id": self.user.uid if self.user else None})

    async def go_online(self) -> int:
        """Mark the store reachable again and replay queued writes."""
        self.online = True
        logger.info("session_online", extra={"queued": len(self.offline_queue)})
        completed = await self.offline_queue.process()
        if len(self.offline_queue):
            # replay stopped because the store is still unreachable
            self.go_offline()
        return completed

    async def write_or_queue(self, name: str, operation: Callable[[], Awaitable[T]]) -> T | None:
        """Run a write with network retries; queue it when the store is unreachable.

        Returns:
            The operation result, or None if the write was queued
        """
        if not self.online:
            self.offline_queue.enqueue(name, operation)
            return None
        try:
            return await self.network.execute(operation)
        except StoreUnavailableError:
            self.go_offline()
            self.offline_queue.enqueue(name, operation)
            return None

    async def read_or_cached(self, operation: Callable[[], Awaitable[T]], fallback: Callable[[], T]) -> T:
        """Run a read with network retries; fall back to local state when unreachable."""
        try:
            result = await self.network.execute(operation)
        except StoreUnavailableError:
            self.go_offline()
            logger.warning("read_served_from_cache")
            return fallback()
        return result

    def clear(self) -> None:
        """Tear down everything tied to the signed-in user."""
        self.listeners.close_all()
        self.tasks.clear()
        self.announced_achievements.clear()
        self.user = None
