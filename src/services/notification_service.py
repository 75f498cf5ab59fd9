"""Notification service: per-user notification documents with bounded retention."""

import logging
from typing import Protocol

from src.core.config import settings
from src.core.document_store import SERVER_TIMESTAMP, DocumentStore, Filter, FilterOp, notifications_path
from src.core.logging import span
from src.domain.notification import Notification, NotificationCreate


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Capability the engines use to tell a user that something happened."""

    async def notify(self, user_id: str, notification: NotificationCreate) -> str: ...


class NotificationService:
    """Stores notifications under ``users/{uid}/notifications``, keeping only the latest ones."""

    def __init__(self, store: DocumentStore, *, retention: int | None = None) -> None:
        self._store = store
        self.retention = retention or settings.notification_retention

    async def notify(self, user_id: str, notification: NotificationCreate) -> str:
        """Add a notification and trim older ones beyond the retention limit.

        Returns:
            The new notification's id
        """
        with span("notification_service.notify"):
            data = {**notification.model_dump(), "read": False, "created_at": SERVER_TIMESTAMP}
            notification_id = await self._store.add(notifications_path(user_id), data)
            logger.info(
                "notification_created",
                extra={"user_id": user_id, "notification_id": notification_id, "type": str(notification.type)},
            )
            await self.cleanup_old_notifications(user_id)
            return notification_id

    async def get_notifications(
        self,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int | None = None,
    ) -> list[Notification]:
        """Return a user's notifications, newest first."""
        filters = [Filter("read", FilterOp.EQ, False)] if unread_only else []
        snapshots = await self._store.query(
            notifications_path(user_id),
            filters=filters,
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [Notification.from_snapshot(snapshot) for snapshot in snapshots]

    async def mark_as_read(self, user_id: str, notification_id: str) -> None:
        await self._store.update(notifications_path(user_id), notification_id, {"read": True})

    async def cleanup_old_notifications(self, user_id: str, *, keep: int | None = None) -> int:
        """Delete everything but the ``keep`` most recent notifications.

        Returns:
            Number of notifications deleted
        """
        keep = self.retention if keep is None else keep
        snapshots = await self._store.query(notifications_path(user_id), order_by="created_at", descending=True)
        stale = snapshots[keep:]
        for snapshot in stale:
            await self._store.delete(snapshot.collection, snapshot.id)
        if stale:
            logger.debug("notifications_trimmed", extra={"user_id": user_id, "deleted": len(stale)})
        return len(stale)

    async def delete_notifications_from(self, user_id: str, from_user_id: str) -> int:
        """Delete every notification ``user_id`` received because of ``from_user_id``."""
        snapshots = await self._store.query(
            notifications_path(user_id),
            filters=[Filter("from_user_id", FilterOp.EQ, from_user_id)],
        )
        for snapshot in snapshots:
            await self._store.delete(snapshot.collection, snapshot.id)
        return len(snapshots)


async def safe_notify(notifier: Notifier, user_id: str, notification: NotificationCreate) -> bool:
    """Send a notification without letting a failure reach the caller.

    Returns:
        True if the notification was stored
    """
    try:
        await notifier.notify(user_id, notification)
        return True
    except Exception:
        logger.exception(
            "notification_failed",
            extra={"user_id": user_id, "type": str(notification.type)},
        )
        # Don't raise - the primary operation already succeeded
        return False
