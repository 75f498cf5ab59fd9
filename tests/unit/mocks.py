"""Test doubles for the document store and the notifier."""

from collections.abc import Awaitable, Callable

from src.core.document_store import DocumentSnapshot, Write
from src.core.errors import TransactionAbortedError
from src.core.memory_store import InMemoryDocumentStore
from src.domain.notification import NotificationCreate


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose next ``abort_next`` transactional commits abort.

    Plain writes (no recorded reads) are never aborted.
    """

    def __init__(self, abort_next: int = 0) -> None:
        super().__init__()
        self.abort_next = abort_next
        self.aborted = 0

    async def _apply(self, writes: list[Write], expected: dict[tuple[str, str], int]) -> list[tuple[str, str]]:
        if expected and self.abort_next > 0:
            self.abort_next -= 1
            self.aborted += 1
            msg = "Simulated concurrent modification"
            raise TransactionAbortedError(msg)
        return await super()._apply(writes, expected)


class InterleavingStore(InMemoryDocumentStore):
    """In-memory store that lets another client write right after a chosen document is read.

    Each registered write runs once, on the first read of its document.
    """

    def __init__(self) -> None:
        super().__init__()
        self._after_read: dict[tuple[str, str], Callable[[], Awaitable[None]]] = {}

    def after_read(self, collection: str, doc_id: str, write: Callable[[], Awaitable[None]]) -> None:
        self._after_read[(collection, doc_id)] = write

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        snapshot = await super().get(collection, doc_id)
        write = self._after_read.pop((collection, doc_id), None)
        if write is not None:
            await write()
        return snapshot


class FailingNotifier:
    """Notifier that records every call and always fails."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, NotificationCreate]] = []

    async def notify(self, user_id: str, notification: NotificationCreate) -> str:
        self.calls.append((user_id, notification))
        msg = "notification backend down"
        raise RuntimeError(msg)


class RecordingNotifier:
    """Notifier that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, NotificationCreate]] = []

    async def notify(self, user_id: str, notification: NotificationCreate) -> str:
        self.calls.append((user_id, notification))
        return f"n{len(self.calls)}"
