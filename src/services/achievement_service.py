"""Achievement service: points, levels, stats, unlocks and the friends leaderboard."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.core.document_store import (
    SERVER_TIMESTAMP,
    USERS,
    ArrayUnion,
    DocumentSnapshot,
    DocumentStore,
    Increment,
    Transaction,
    Unsubscribe,
)
from src.core.errors import InvalidInputError, UserNotFoundError
from src.core.logging import log_with_user_context, span, timed_span
from src.core.retry import RetryConfig, run_transaction_with_retry
from src.core.session import BoardSession
from src.domain.achievement import ACHIEVEMENTS, Achievement
from src.domain.notification import NotificationCreate, NotificationType
from src.domain.user import StatName, User, UserStats
from src.models.service_models import AchievementStatus, LeaderboardEntry, PointsResult
from src.services.notification_service import Notifier, safe_notify
from src.services.scoring import calculate_level


logger = logging.getLogger(__name__)

LISTENER_SUBSYSTEM = "achievements"

AchievementCallback = Callable[[Achievement], Awaitable[None]]


def check_achievement_requirement(user: User, achievement: Achievement) -> bool:
    """Return True if the user's stats meet the achievement threshold."""
    return user.stat(achievement.requirement_type) >= achievement.threshold


def _load_user(snapshot: DocumentSnapshot, user_id: str) -> User:
    if not snapshot.exists:
        msg = f"User not found: {user_id}"
        raise UserNotFoundError(msg, user_id=user_id)
    return User.from_snapshot(snapshot)


class AchievementService:
    """Owns every write to a user's points, level, stats and achievements."""

    def __init__(
        self,
        store: DocumentStore,
        session: BoardSession,
        notifier: Notifier,
        *,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._notifier = notifier
        self._transaction_config = transaction_config

    async def _get_user(self, user_id: str) -> User:
        return _load_user(await self._store.get(USERS, user_id), user_id)

    async def add_points(self, user_id: str, points: int, reason: str = "") -> PointsResult:
        """Add points and recompute the level in the same transaction.

        Raises:
            InvalidInputError: If ``points`` is negative
            UserNotFoundError: If the user document does not exist
        """
        if points < 0:
            msg = "Points cannot be negative"
            raise InvalidInputError(msg, user_id=user_id, points=points)

        async def apply(txn: Transaction) -> PointsResult:
            user = _load_user(await txn.get(USERS, user_id), user_id)
            total = user.points + points
            level = calculate_level(total)
            txn.update(USERS, user_id, {"points": total, "level": level})
            return PointsResult(
                user_id=user_id, points_added=points, points=total, previous_level=user.level, level=level
            )

        with timed_span("achievement_service.add_points", user_id=user_id):
            result = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            log_with_user_context(
                logger, "info", "points_added", user_id=user_id, points=points, total=result.points, reason=reason
            )
            if result.leveled_up:
                log_with_user_context(logger, "info", "level_up", user_id=user_id, new_level=result.level)
            return result

    async def record_task_completion(
        self,
        user_id: str,
        *,
        award_key: str,
        points: int,
        finished_early: bool,
        helped_friend: bool,
    ) -> PointsResult | None:
        """Apply one task award exactly once: points, level and stat counters together.

        Returns:
            The new totals, or None if ``award_key`` was already applied
        """
        if points < 0:
            msg = "Points cannot be negative"
            raise InvalidInputError(msg, user_id=user_id, points=points)

        async def apply(txn: Transaction) -> PointsResult | None:
            user = _load_user(await txn.get(USERS, user_id), user_id)
            if award_key in user.awarded_keys:
                return None
            total = user.points + points
            level = calculate_level(total)
            data: dict[str, Any] = {
                "points": total,
                "level": level,
                "awarded_keys": ArrayUnion(award_key),
                f"stats.{StatName.TASKS_COMPLETED}": Increment(1),
            }
            if finished_early:
                data[f"stats.{StatName.TASKS_BEFORE_DEADLINE}"] = Increment(1)
            if helped_friend:
                data[f"stats.{StatName.HELPED_FRIENDS}"] = Increment(1)
            txn.update(USERS, user_id, data)
            return PointsResult(
                user_id=user_id, points_added=points, points=total, previous_level=user.level, level=level
            )

        with timed_span("achievement_service.record_task_completion", user_id=user_id, award_key=award_key):
            result = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            if result is None:
                logger.info("task_award_already_applied", extra={"user_id": user_id, "award_key": award_key})
            else:
                logger.info(
                    "task_award_applied",
                    extra={"user_id": user_id, "award_key": award_key, "points": points, "total": result.points},
                )
            return result

    async def get_user_stats(self, user_id: str) -> UserStats:
        return (await self._get_user(user_id)).stats

    async def update_stats(self, user_id: str, stat: StatName, value: int, *, increment: bool = True) -> None:
        """Increment a stat counter, or overwrite it when ``increment`` is False."""
        field_path = f"stats.{stat}"
        await self._store.update(USERS, user_id, {field_path: Increment(value) if increment else value})

    async def unlock_achievement(self, user_id: str, achievement_id: str) -> bool:
        """Unlock an achievement once.

        Returns:
            True if it was unlocked by this call, False if the user already had it

        Raises:
            InvalidInputError: If the achievement id is unknown
        """
        achievement = ACHIEVEMENTS.get(achievement_id)
        if achievement is None:
            msg = f"Unknown achievement: {achievement_id}"
            raise InvalidInputError(msg, achievement_id=achievement_id)

        async def apply(txn: Transaction) -> bool:
            user = _load_user(await txn.get(USERS, user_id), user_id)
            if achievement_id in user.achievements:
                return False
            txn.update(
                USERS,
                user_id,
                {
                    "achievements": ArrayUnion(achievement_id),
                    f"achievement_notifications.{achievement_id}": {
                        "unlocked": True,
                        "unlocked_at": SERVER_TIMESTAMP,
                        "notified": False,
                    },
                },
            )
            return True

        with span("achievement_service.unlock_achievement"):
            unlocked = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            if not unlocked:
                return False

            log_with_user_context(
                logger, "info", "achievement_unlocked", user_id=user_id, achievement_id=achievement_id
            )
            await safe_notify(
                self._notifier,
                user_id,
                NotificationCreate(
                    type=NotificationType.ACHIEVEMENT,
                    title="Achievement unlocked!",
                    message=f"{achievement.icon} {achievement.name}: {achievement.description}",
                    data={"achievement_id": achievement_id},
                ),
            )
            return True

    async def check_and_unlock_achievements(self, user_id: str) -> list[str]:
        """Unlock every achievement whose threshold the user now meets.

        Returns:
            Ids unlocked by this call
        """
        user = await self._get_user(user_id)
        unlocked = []
        for achievement in ACHIEVEMENTS.values():
            if achievement.id in user.achievements or not check_achievement_requirement(user, achievement):
                continue
            if await self.unlock_achievement(user_id, achievement.id):
                unlocked.append(achievement.id)
        return unlocked

    async def get_all_achievements(self, user_id: str) -> list[AchievementStatus]:
        user = await self._get_user(user_id)
        return [
            AchievementStatus(achievement=achievement, unlocked=achievement.id in user.achievements)
            for achievement in ACHIEVEMENTS.values()
        ]

    async def get_unnotified_achievements(self, user_id: str) -> list[Achievement]:
        user = await self._get_user(user_id)
        return [
            ACHIEVEMENTS[achievement_id]
            for achievement_id in user.achievements
            if achievement_id in ACHIEVEMENTS
            and not (
                achievement_id in user.achievement_notifications
                and user.achievement_notifications[achievement_id].notified
            )
        ]

    async def mark_achievement_as_notified(self, user_id: str, achievement_id: str) -> None:
        await self._store.update(
            USERS,
            user_id,
            {
                f"achievement_notifications.{achievement_id}.notified": True,
                f"achievement_notifications.{achievement_id}.notified_at": SERVER_TIMESTAMP,
            },
        )

    async def _announce(self, user_id: str, achievement: Achievement, callback: AchievementCallback) -> None:
        self._session.announced_achievements.add(achievement.id)
        await callback(achievement)
        await self.mark_achievement_as_notified(user_id, achievement.id)

    async def announce_pending_achievements(self, callback: AchievementCallback) -> list[str]:
        """Announce every unlocked achievement the user has not been shown yet."""
        user = self._session.require_user()
        announced = []
        for achievement in await self.get_unnotified_achievements(user.uid):
            if achievement.id in self._session.announced_achievements:
                continue
            await self._announce(user.uid, achievement, callback)
            announced.append(achievement.id)
        return announced

    async def listen_achievements(self, callback: AchievementCallback) -> Unsubscribe:
        """Announce achievements as they are unlocked, each at most once."""
        user = self._session.require_user()

        async def on_snapshot(snapshot: DocumentSnapshot) -> None:
            if not snapshot.exists:
                return
            profile = User.from_snapshot(snapshot)
            for achievement_id in profile.achievements:
                record = profile.achievement_notifications.get(achievement_id)
                if achievement_id in self._session.announced_achievements or (record is not None and record.notified):
                    continue
                achievement = ACHIEVEMENTS.get(achievement_id)
                if achievement is not None:
                    await self._announce(user.uid, achievement, callback)

        async def on_error(error: Exception) -> None:
            logger.warning("achievement_listener_failed", extra={"user_id": user.uid, "error": str(error)})

        unsubscribe = await self._store.listen_document(USERS, user.uid, on_snapshot, on_error=on_error)
        return self._session.listeners.add(LISTENER_SUBSYSTEM, user.uid, unsubscribe)

    async def get_leaderboard(self, user_id: str) -> list[LeaderboardEntry]:
        """Rank the user and their friends by points (ties broken by name)."""
        with span("achievement_service.get_leaderboard"):
            user = await self._get_user(user_id)
            members = [user]
            for friend_id in user.friends:
                snapshot = await self._store.get(USERS, friend_id)
                if snapshot.exists:
                    members.append(User.from_snapshot(snapshot))

            members.sort(key=lambda member: (-member.points, member.name.lower()))
            return [
                LeaderboardEntry(
                    rank=rank,
                    user_id=member.uid,
                    user_name=member.name,
                    points=member.points,
                    level=member.level,
                    is_self=member.uid == user_id,
                )
                for rank, member in enumerate(members, start=1)
            ]
