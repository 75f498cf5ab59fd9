"""agile-board - collaborative task board core."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.core.config import Settings, settings
from src.core.document_store import SERVER_TIMESTAMP, USERS, DocumentStore
from src.core.logging import configure_logfire, timed_span
from src.core.memory_store import InMemoryDocumentStore
from src.core.retry import OfflineQueue, RetryConfig, RetryPolicy
from src.core.scheduler import cancel_periodic_cleanup, schedule_periodic_cleanup, scheduler, start_scheduler
from src.core.session import AuthUser, BoardSession
from src.core.sqlite_store import SQLiteDocumentStore
from src.domain.user import new_user_document
from src.models.service_models import CleanupReport, SignInSummary
from src.services.achievement_service import AchievementCallback, AchievementService
from src.services.cleanup_service import CleanupService
from src.services.collaboration_service import CollaborationService, SharedTasksCallback
from src.services.finalization_service import FinalizationService
from src.services.friend_service import FriendRequestsCallback, FriendService
from src.services.notification_service import NotificationService
from src.services.task_repository import TaskListCallback, TaskRepository


logger = logging.getLogger(__name__)

SIGN_IN_ACTION = "sign_in"


async def create_store(config: Settings | None = None) -> DocumentStore:
    """Build the document store selected by ``store_backend``."""
    config = config or settings
    if config.store_backend == "sqlite":
        store = SQLiteDocumentStore(config.sqlite_db_path)
        await store.open()
        return store
    return InMemoryDocumentStore()


class Board:
    """Wires the engines around one document store and one user session."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        config: Settings | None = None,
        job_scheduler: AsyncIOScheduler | None = None,
        network_policy: RetryPolicy | None = None,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self.store = store
        self.settings = config or settings
        self.scheduler = job_scheduler or scheduler
        self.session = BoardSession(
            network_policy=network_policy,
            offline_queue=OfflineQueue(self.settings.offline_queue_max_size),
        )
        self.notifications = NotificationService(store, retention=self.settings.notification_retention)
        self.tasks = TaskRepository(store, self.session, transaction_config=transaction_config)
        self.achievements = AchievementService(
            store, self.session, self.notifications, transaction_config=transaction_config
        )
        self.collaboration = CollaborationService(
            store, self.session, self.tasks, self.notifications, transaction_config=transaction_config
        )
        self.finalization = FinalizationService(
            store,
            self.session,
            self.achievements,
            self.notifications,
            config=self.settings,
            transaction_config=transaction_config,
        )
        self.friends = FriendService(store, self.session, self.notifications, transaction_config=transaction_config)
        self.cleanup = CleanupService(store, self.tasks, transaction_config=transaction_config)

    async def _ensure_profile(self, user: AuthUser) -> bool:
        """Create the user document on first sign-in. Returns True if it was created."""
        snapshot = await self.session.network.execute(self.store.get, USERS, user.uid)
        if snapshot.exists:
            return False
        await self.store.set(
            USERS,
            user.uid,
            new_user_document(
                uid=user.uid, email=user.email, display_name=user.display_name, created_at=SERVER_TIMESTAMP
            ),
        )
        logger.info("user_profile_created", extra={"user_id": user.uid})
        return True

    async def sign_in(
        self,
        user: AuthUser,
        *,
        on_own_tasks: TaskListCallback | None = None,
        on_shared_tasks: SharedTasksCallback | None = None,
        on_achievement: AchievementCallback | None = None,
        on_friend_requests: FriendRequestsCallback | None = None,
        schedule_cleanup: bool = True,
    ) -> SignInSummary:
        """Bring a session up for ``user``.

        Ensures the profile exists, runs the consistency sweep, resumes
        interrupted point awards, catches up on achievements, opens the
        requested listeners and schedules the periodic cleanup.

        Raises:
            OperationInProgressError: If a sign-in is already running
        """
        async with self.session.in_flight(SIGN_IN_ACTION):
            if self.session.user is not None:
                await self.sign_out()
            self.session.user = user

            try:
                with timed_span("board.sign_in", user_id=user.uid):
                    created = await self._ensure_profile(user)
                    cleanup = await self.cleanup.cleanup_user_data(user.uid)
                    resumed = await self.finalization.resume_pending_awards(user.uid)
                    unlocked = await self.achievements.check_and_unlock_achievements(user.uid)

                    if on_own_tasks is not None:
                        await self.tasks.listen_own_tasks(on_own_tasks)
                    if on_shared_tasks is not None:
                        await self.collaboration.listen_shared_tasks(on_shared_tasks)
                    if on_friend_requests is not None:
                        await self.friends.listen_friend_requests(on_friend_requests)
                    announced: list[str] = []
                    if on_achievement is not None:
                        announced = await self.achievements.announce_pending_achievements(on_achievement)
                        await self.achievements.listen_achievements(on_achievement)

                    if schedule_cleanup:
                        schedule_periodic_cleanup(
                            user_id=user.uid,
                            job=lambda: self._scheduled_cleanup(user.uid),
                            interval_hours=self.settings.cleanup_interval_hours,
                            target=self.scheduler,
                        )
            except Exception:
                logger.exception("sign_in_failed", extra={"user_id": user.uid})
                self.session.clear()
                raise

        logger.info(
            "signed_in",
            extra={"user_id": user.uid, "created_profile": created, "listeners": len(self.session.listeners)},
        )
        return SignInSummary(
            user_id=user.uid,
            created_profile=created,
            cleanup=cleanup,
            resumed_awards=resumed,
            unlocked_achievements=unlocked,
            announced_achievements=announced,
        )

    async def _scheduled_cleanup(self, user_id: str) -> CleanupReport:
        return await self.cleanup.cleanup_user_data(user_id)

    async def sign_out(self) -> None:
        """Close every listener, cancel the periodic cleanup and forget the user."""
        user = self.session.user
        if user is None:
            return
        cancel_periodic_cleanup(user_id=user.uid, target=self.scheduler)
        self.session.clear()
        logger.info("signed_out", extra={"user_id": user.uid})

    async def go_online(self) -> int:
        """Replay writes queued while the store was unreachable."""
        return await self.session.go_online()

    async def close(self) -> None:
        await self.sign_out()
        await self.store.close()


async def create_board(config: Settings | None = None, *, job_scheduler: AsyncIOScheduler | None = None) -> Board:
    """Configure observability, open the configured store and start the scheduler."""
    config = config or settings
    configure_logfire()
    store = await create_store(config)
    board = Board(store, config=config, job_scheduler=job_scheduler)
    start_scheduler(board.scheduler)
    logger.info("board_ready", extra={"store_backend": config.store_backend})
    return board
