"""Friend service: friend requests and the symmetric friend list."""

import logging
import re
from collections.abc import Awaitable, Callable

from src.core.config import constants
from src.core.document_store import (
    FRIEND_REQUESTS,
    SERVER_TIMESTAMP,
    USERS,
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    Filter,
    FilterOp,
    QuerySnapshot,
    Transaction,
    Unsubscribe,
)
from src.core.errors import (
    AlreadyFriendsError,
    DuplicateRequestError,
    FriendRequestNotFoundError,
    InvalidEmailError,
    PermissionDeniedError,
    SelfFriendRequestError,
    UserNotFoundError,
)
from src.core.logging import span, timed_span
from src.core.retry import RetryConfig, run_transaction_with_retry
from src.core.session import AuthUser, BoardSession
from src.domain.friend_request import FriendRequest, FriendRequestStatus
from src.domain.notification import NotificationCreate, NotificationType
from src.domain.user import User
from src.models.service_models import FriendRequestOutcome, FriendRequestResult
from src.services.notification_service import NotificationService, safe_notify


logger = logging.getLogger(__name__)

LISTENER_SUBSYSTEM = "friend_requests"

FriendRequestsCallback = Callable[[list[FriendRequest]], Awaitable[None]]


def _display(user: AuthUser | User) -> str:
    return user.display_name or user.email or user.uid


class FriendService:
    """Friend requests, acceptance and removal for the signed-in user."""

    def __init__(
        self,
        store: DocumentStore,
        session: BoardSession,
        notifications: NotificationService,
        *,
        transaction_config: RetryConfig | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._notifications = notifications
        self._transaction_config = transaction_config

    async def _get_user(self, user_id: str) -> User:
        snapshot = await self._store.get(USERS, user_id)
        if not snapshot.exists:
            msg = f"User not found: {user_id}"
            raise UserNotFoundError(msg, user_id=user_id)
        return User.from_snapshot(snapshot)

    async def _requests_between(self, from_uid: str, to_uid: str) -> list[FriendRequest]:
        snapshots = await self._store.query(
            FRIEND_REQUESTS,
            filters=[
                Filter("from_uid", FilterOp.EQ, from_uid),
                Filter("to_uid", FilterOp.EQ, to_uid),
                Filter("status", FilterOp.EQ, FriendRequestStatus.PENDING.value),
            ],
        )
        return [FriendRequest.from_snapshot(snapshot) for snapshot in snapshots]

    async def find_user_by_email(self, email: str) -> User | None:
        """Look a user up by email (case-insensitive)."""
        snapshots = await self._store.query(
            USERS, filters=[Filter("email", FilterOp.EQ, email.strip().lower())], limit=1
        )
        return User.from_snapshot(snapshots[0]) if snapshots else None

    async def send_friend_request_by_email(self, email: str) -> FriendRequestResult:
        """Send a friend request to the user registered with ``email``.

        Raises:
            InvalidEmailError: If the address is malformed
            UserNotFoundError: If nobody uses that address
        """
        normalized = email.strip().lower()
        if not re.match(constants.EMAIL_PATTERN, normalized):
            msg = f"Invalid email address: {email}"
            raise InvalidEmailError(msg)

        target = await self.find_user_by_email(normalized)
        if target is None:
            msg = "No user found with that email"
            raise UserNotFoundError(msg, email=normalized)
        return await self.send_friend_request(target.uid)

    async def send_friend_request(self, target_uid: str) -> FriendRequestResult:
        """Send a friend request, or accept the target's pending request to us.

        Raises:
            SelfFriendRequestError: If the target is the caller
            UserNotFoundError: If the target does not exist
            AlreadyFriendsError: If the users are already friends
            DuplicateRequestError: If a request to the target is already pending
        """
        user = self._session.require_user()
        if target_uid == user.uid:
            msg = "Cannot send a friend request to yourself"
            raise SelfFriendRequestError(msg)

        with timed_span("friend_service.send_friend_request", user_id=user.uid, target_uid=target_uid):
            target = await self._get_user(target_uid)
            me = await self._get_user(user.uid)
            if target_uid in me.friends:
                msg = "Already friends with this user"
                raise AlreadyFriendsError(msg, target_uid=target_uid)

            mutual = await self._requests_between(target_uid, user.uid)
            if mutual:
                await self.accept_friend_request(mutual[0].id)
                logger.info("friend_request_mutual_accepted", extra={"user_id": user.uid, "friend_id": target_uid})
                await safe_notify(
                    self._notifications,
                    user.uid,
                    NotificationCreate(
                        type=NotificationType.FRIEND_ACCEPTED,
                        title="Friend request accepted",
                        message=f"{_display(target)} is now your friend",
                        data={"friend_id": target_uid},
                        from_user_id=target_uid,
                    ),
                )
                return FriendRequestResult(
                    outcome=FriendRequestOutcome.MUTUAL_ACCEPTED, friend_id=target_uid, request_id=mutual[0].id
                )

            if await self._requests_between(user.uid, target_uid):
                msg = "Friend request already sent"
                raise DuplicateRequestError(msg, target_uid=target_uid)

            request_id = await self._store.add(
                FRIEND_REQUESTS,
                {
                    "from_uid": user.uid,
                    "to_uid": target_uid,
                    "status": FriendRequestStatus.PENDING.value,
                    "created_at": SERVER_TIMESTAMP,
                },
            )
            logger.info("friend_request_sent", extra={"user_id": user.uid, "target_uid": target_uid})
            await safe_notify(
                self._notifications,
                target_uid,
                NotificationCreate(
                    type=NotificationType.FRIEND_REQUEST,
                    title="New friend request",
                    message=f"{_display(user)} sent you a friend request",
                    data={"request_id": request_id},
                    from_user_id=user.uid,
                ),
            )
            return FriendRequestResult(outcome=FriendRequestOutcome.SENT, friend_id=target_uid, request_id=request_id)

    async def _resolve_request(self, txn: Transaction, request_id: str, user_id: str) -> FriendRequest:
        snapshot = await txn.get(FRIEND_REQUESTS, request_id)
        if not snapshot.exists:
            msg = "Friend request not found"
            raise FriendRequestNotFoundError(msg, request_id=request_id)
        request = FriendRequest.from_snapshot(snapshot)
        if request.to_uid != user_id:
            msg = "Only the recipient can answer this friend request"
            raise PermissionDeniedError(msg, request_id=request_id)
        return request

    async def accept_friend_request(self, request_id: str) -> str:
        """Make both users friends and delete the request.

        Returns:
            The new friend's user id

        Raises:
            FriendRequestNotFoundError: If the request no longer exists
            PermissionDeniedError: If the caller is not the recipient
            UserNotFoundError: If the sender no longer exists
        """
        user = self._session.require_user()

        async def apply(txn: Transaction) -> str:
            request = await self._resolve_request(txn, request_id, user.uid)
            sender = await txn.get(USERS, request.from_uid)
            if not sender.exists:
                txn.delete(FRIEND_REQUESTS, request_id)
                return ""
            txn.update(USERS, user.uid, {"friends": ArrayUnion(request.from_uid)})
            txn.update(USERS, request.from_uid, {"friends": ArrayUnion(user.uid)})
            txn.delete(FRIEND_REQUESTS, request_id)
            return request.from_uid

        with timed_span("friend_service.accept_friend_request", request_id=request_id):
            friend_id = await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            if not friend_id:
                logger.warning("friend_request_sender_missing", extra={"request_id": request_id})
                msg = "The user who sent this request no longer exists"
                raise UserNotFoundError(msg, request_id=request_id)

            logger.info("friend_request_accepted", extra={"user_id": user.uid, "friend_id": friend_id})
            await safe_notify(
                self._notifications,
                friend_id,
                NotificationCreate(
                    type=NotificationType.FRIEND_ACCEPTED,
                    title="Friend request accepted",
                    message=f"{_display(user)} accepted your friend request",
                    data={"friend_id": user.uid},
                    from_user_id=user.uid,
                ),
            )
            return friend_id

    async def reject_friend_request(self, request_id: str) -> None:
        """Delete a friend request without creating a friendship."""
        user = self._session.require_user()

        async def apply(txn: Transaction) -> None:
            await self._resolve_request(txn, request_id, user.uid)
            txn.delete(FRIEND_REQUESTS, request_id)

        with span("friend_service.reject_friend_request"):
            await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            logger.info("friend_request_rejected", extra={"user_id": user.uid, "request_id": request_id})

    async def remove_friend(self, friend_id: str) -> None:
        """Remove the friendship on both sides and drop notifications exchanged between the two users."""
        user = self._session.require_user()

        async def apply(txn: Transaction) -> None:
            friend = await txn.get(USERS, friend_id)
            txn.update(USERS, user.uid, {"friends": ArrayRemove(friend_id)})
            if friend.exists:
                txn.update(USERS, friend_id, {"friends": ArrayRemove(user.uid)})

        with timed_span("friend_service.remove_friend", user_id=user.uid, friend_id=friend_id):
            await run_transaction_with_retry(self._store, apply, config=self._transaction_config)
            logger.info("friend_removed", extra={"user_id": user.uid, "friend_id": friend_id})

            try:
                await self._notifications.delete_notifications_from(user.uid, friend_id)
                await self._notifications.delete_notifications_from(friend_id, user.uid)
            except Exception:
                logger.exception(
                    "friend_notification_cleanup_failed", extra={"user_id": user.uid, "friend_id": friend_id}
                )

    async def get_friends(self, user_id: str | None = None) -> list[User]:
        """Profiles of the user's friends; ids without a profile are skipped."""
        uid = user_id or self._session.require_user().uid
        snapshot = await self._store.get(USERS, uid)
        if not snapshot.exists:
            return []
        friends = []
        for friend_id in User.from_snapshot(snapshot).friends:
            friend = await self._store.get(USERS, friend_id)
            if friend.exists:
                friends.append(User.from_snapshot(friend))
        return friends

    async def get_pending_requests(self) -> list[FriendRequest]:
        """Requests waiting for the caller's answer, oldest first."""
        user = self._session.require_user()
        snapshots = await self._store.query(
            FRIEND_REQUESTS,
            filters=[
                Filter("to_uid", FilterOp.EQ, user.uid),
                Filter("status", FilterOp.EQ, FriendRequestStatus.PENDING.value),
            ],
            order_by="created_at",
        )
        return [FriendRequest.from_snapshot(snapshot) for snapshot in snapshots]

    async def listen_friend_requests(self, callback: FriendRequestsCallback) -> Unsubscribe:
        user = self._session.require_user()

        async def on_snapshot(snapshot: QuerySnapshot) -> None:
            await callback([FriendRequest.from_snapshot(document) for document in snapshot.documents])

        async def on_error(error: Exception) -> None:
            logger.warning("friend_request_listener_failed", extra={"user_id": user.uid, "error": str(error)})

        unsubscribe = await self._store.listen(
            FRIEND_REQUESTS,
            on_snapshot,
            filters=[
                Filter("to_uid", FilterOp.EQ, user.uid),
                Filter("status", FilterOp.EQ, FriendRequestStatus.PENDING.value),
            ],
            order_by="created_at",
            on_error=on_error,
        )
        return self._session.listeners.add(LISTENER_SUBSYSTEM, user.uid, unsubscribe)
