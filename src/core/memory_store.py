"""In-process document store adapter."""

import copy
import logging
from typing import Any

from src.core.document_store import BaseDocumentStore, DocumentSnapshot, Query, Write, resolve_write
from src.core.errors import StoreUnavailableError


logger = logging.getLogger(__name__)


class InMemoryDocumentStore(BaseDocumentStore):
    """Document store kept in a dict; every read returns a deep copy.

    ``set_available(False)`` makes every call fail with StoreUnavailableError,
    which is how outages are reproduced locally.
    """

    def __init__(self) -> None:
        super().__init__()
        self._documents: dict[tuple[str, str], tuple[dict[str, Any], int]] = {}
        self._sequence = 0
        self._available = True

    def set_available(self, available: bool) -> None:
        self._available = available
        logger.info("memory_store_availability_changed", extra={"available": available})

    def _ensure_available(self) -> None:
        if not self._available:
            msg = "Document store is unreachable"
            raise StoreUnavailableError(msg)

    async def _fetch(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, int]:
        entry = self._documents.get((collection, doc_id))
        if entry is None:
            return None, 0
        data, version = entry
        return copy.deepcopy(data), version

    async def _fetch_all(self, query: Query) -> list[DocumentSnapshot]:
        self._ensure_available()
        return [
            DocumentSnapshot(collection, doc_id, copy.deepcopy(data), version)
            for (collection, doc_id), (data, version) in self._documents.items()
            if query.covers(collection)
        ]

    async def _apply(self, writes: list[Write], expected: dict[tuple[str, str], int]) -> list[tuple[str, str]]:
        current_versions = {key: self._documents[key][1] for key in expected if key in self._documents}
        self._check_versions(expected, current_versions)

        now = self.now()
        staged: dict[tuple[str, str], dict[str, Any] | None] = {}
        for write in writes:
            if write.key in staged:
                current = staged[write.key]
            else:
                entry = self._documents.get(write.key)
                current = entry[0] if entry else None
            staged[write.key] = resolve_write(current, write, now)

        changed = []
        for key, data in staged.items():
            if data is None:
                if self._documents.pop(key, None) is not None:
                    changed.append(key)
                continue
            self._sequence += 1
            self._documents[key] = (data, self._sequence)
            changed.append(key)
        return changed

    async def break_listeners(self, collection: str, error: Exception) -> int:
        """Fail every listener on ``collection`` with ``error``, as a dropped connection would."""
        failed = [
            listener
            for listener in list(self._listeners.values())
            if listener.query.covers(collection) and listener.document_id is None
        ]
        for listener in failed:
            await self._fail_listener(listener, error)
        return len(failed)
