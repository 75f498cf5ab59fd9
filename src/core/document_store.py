"""Document store capability consumed by the board engines.

The engines only talk to a ``DocumentStore``: per-user document collections,
single-document transactions with optimistic version checks, array-union and
array-remove field transforms, server timestamps and change listeners over
queries. ``BaseDocumentStore`` implements those semantics once on top of three
storage primitives (fetch one, fetch a collection, apply a batch of writes
atomically) so that adapters only decide where documents live.

Collection paths:
    users                         user profiles
    users/{uid}/tasks             tasks owned by ``uid``
    users/{uid}/notifications     notifications addressed to ``uid``
    friend_requests               pending friend requests

A group query matches every collection whose last path segment equals the
group name, e.g. ``tasks`` covers all users' task collections.
"""

import copy
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol, TypeVar

from src.core.errors import DocumentNotFoundError, InvalidInputError, TransactionAbortedError


logger = logging.getLogger(__name__)

T = TypeVar("T")

USERS = "users"
FRIEND_REQUESTS = "friend_requests"
TASKS_GROUP = "tasks"
NOTIFICATIONS_GROUP = "notifications"


def tasks_path(uid: str) -> str:
    return f"{USERS}/{uid}/{TASKS_GROUP}"


def notifications_path(uid: str) -> str:
    return f"{USERS}/{uid}/{NOTIFICATIONS_GROUP}"


def group_of(collection: str) -> str:
    """Return the last segment of a collection path."""
    return collection.rsplit("/", 1)[-1]


# Field transforms


class ArrayUnion:
    """Append values to an array field, skipping values already present."""

    def __init__(self, *values: Any) -> None:
        self.values = values

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Remove every occurrence of the given values from an array field."""

    def __init__(self, *values: Any) -> None:
        self.values = values

    def __repr__(self) -> str:
        return f"ArrayRemove{self.values!r}"


class Increment:
    """Add ``amount`` to a numeric field (missing fields count as 0)."""

    def __init__(self, amount: int | float) -> None:
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount!r})"


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")


# Queries


class FilterOp(StrEnum):
    """Supported query filter operators."""

    EQ = "=="
    NE = "!="
    ARRAY_CONTAINS = "array_contains"
    IN = "in"


@dataclass(frozen=True)
class Filter:
    """A single field predicate; ``field`` may be a dotted path."""

    field: str
    op: FilterOp
    value: Any


@dataclass(frozen=True)
class Query:
    collection: str
    filters: tuple[Filter, ...] = ()
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None
    group: bool = False

    def covers(self, collection: str) -> bool:
        if self.group:
            return group_of(collection) == self.collection
        return collection == self.collection


@dataclass
class DocumentSnapshot:
    """Point-in-time copy of a document. ``version`` is 0 for missing documents."""

    collection: str
    id: str
    data: dict[str, Any] | None
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection, self.id)

    def get(self, path: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return get_path(self.data, path, default)

    def to_dict(self) -> dict[str, Any]:
        """Return the document fields with ``id`` included."""
        return {**(self.data or {}), "id": self.id}


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class DocumentChange:
    type: ChangeType
    document: DocumentSnapshot


@dataclass
class QuerySnapshot:
    """Full query result plus the changes since the listener's previous snapshot."""

    documents: list[DocumentSnapshot]
    changes: list[DocumentChange] = field(default_factory=list)

    def __iter__(self):
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)


Unsubscribe = Callable[[], None]
QueryCallback = Callable[[QuerySnapshot], Awaitable[None]]
DocumentCallback = Callable[[DocumentSnapshot], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


# Writes


class WriteKind(StrEnum):
    SET = "set"
    MERGE = "merge"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Write:
    collection: str
    doc_id: str
    kind: WriteKind
    data: dict[str, Any] | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection, self.doc_id)


def get_path(data: dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted field path from a document."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def _delete_path(data: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _resolve_value(value: Any, existing: Any, now: datetime) -> Any:
    """Resolve field transforms and sentinels against the stored value."""
    if isinstance(value, ArrayUnion):
        result = list(existing) if isinstance(existing, list) else []
        for item in value.values:
            if item not in result:
                result.append(copy.deepcopy(item))
        return result
    if isinstance(value, ArrayRemove):
        if not isinstance(existing, list):
            return []
        return [item for item in existing if item not in value.values]
    if isinstance(value, Increment):
        base = existing if isinstance(existing, int | float) and not isinstance(existing, bool) else 0
        return base + value.amount
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        previous = existing if isinstance(existing, dict) else {}
        return {
            key: _resolve_value(item, previous.get(key), now)
            for key, item in value.items()
            if item is not DELETE_FIELD
        }
    if isinstance(value, list | tuple):
        return [_resolve_value(item, None, now) for item in value]
    return copy.deepcopy(value)


def _merge_into(target: dict[str, Any], data: dict[str, Any], now: datetime) -> None:
    for key, value in data.items():
        if value is DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_into(target[key], value, now)
        else:
            target[key] = _resolve_value(value, target.get(key), now)


def resolve_write(current: dict[str, Any] | None, write: Write, now: datetime) -> dict[str, Any] | None:
    """Compute the document produced by applying ``write`` to ``current``.

    Returns None when the write deletes the document.

    Raises:
        DocumentNotFoundError: If an update targets a missing document
    """
    if write.kind == WriteKind.DELETE:
        return None

    data = write.data or {}
    if write.kind == WriteKind.SET:
        return _resolve_value(data, None, now)

    if write.kind == WriteKind.MERGE:
        merged = copy.deepcopy(current) if current is not None else {}
        _merge_into(merged, data, now)
        return merged

    if current is None:
        msg = f"Document not found: {write.collection}/{write.doc_id}"
        raise DocumentNotFoundError(msg, collection=write.collection, doc_id=write.doc_id)

    updated = copy.deepcopy(current)
    for path, value in data.items():
        if value is DELETE_FIELD:
            _delete_path(updated, path)
        else:
            _set_path(updated, path, _resolve_value(value, get_path(updated, path), now))
    return updated


def matches_filters(data: dict[str, Any], filters: Iterable[Filter]) -> bool:
    """Return True if a document satisfies every filter."""
    for item in filters:
        value = get_path(data, item.field)
        if item.op == FilterOp.EQ:
            matched = value == item.value
        elif item.op == FilterOp.NE:
            matched = value is not None and value != item.value
        elif item.op == FilterOp.ARRAY_CONTAINS:
            matched = isinstance(value, list) and item.value in value
        elif item.op == FilterOp.IN:
            matched = value in item.value
        else:
            msg = f"Unsupported operator: {item.op}"
            raise InvalidInputError(msg)
        if not matched:
            return False
    return True


def _sort_key(snapshot: DocumentSnapshot, field_path: str) -> tuple[bool, Any]:
    value = snapshot.get(field_path)
    return (value is None, value)


class DocumentStore(Protocol):
    """Capability interface the engines depend on."""

    def now(self) -> datetime: ...

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot: ...

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None: ...

    async def add(self, collection: str, data: dict[str, Any]) -> str: ...

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]: ...

    async def query_group(
        self,
        group: str,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]: ...

    async def run_transaction(self, fn: "Callable[[Transaction], Awaitable[T]]") -> T: ...

    async def listen(
        self,
        collection: str,
        callback: QueryCallback,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        group: bool = False,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe: ...

    async def listen_document(
        self,
        collection: str,
        doc_id: str,
        callback: DocumentCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe: ...

    async def close(self) -> None: ...


class Transaction:
    """Read-then-write unit of work committed atomically by the store.

    Every document read through the transaction has its version recorded;
    the commit aborts with TransactionAbortedError if any of them changed.
    """

    def __init__(self, store: "BaseDocumentStore") -> None:
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: list[Write] = []

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        if self._writes:
            msg = "Transaction reads must happen before writes"
            raise InvalidInputError(msg)
        snapshot = await self._store.get(collection, doc_id)
        self._reads.setdefault(snapshot.key, snapshot.version)
        return snapshot

    def set(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        kind = WriteKind.MERGE if merge else WriteKind.SET
        self._writes.append(Write(collection, doc_id, kind, data))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._writes.append(Write(collection, doc_id, WriteKind.UPDATE, data))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(Write(collection, doc_id, WriteKind.DELETE))


@dataclass
class _Listener:
    id: int
    query: Query
    callback: Callable[..., Awaitable[None]]
    on_error: ErrorCallback | None
    document_id: str | None = None
    versions: dict[tuple[str, str], int] = field(default_factory=dict)

    def affected_by(self, keys: Iterable[tuple[str, str]]) -> bool:
        for collection, doc_id in keys:
            if self.document_id is not None:
                if collection == self.query.collection and doc_id == self.document_id:
                    return True
            elif self.query.covers(collection):
                return True
        return False


class BaseDocumentStore:
    """Document store semantics shared by the storage adapters.

    Subclasses provide ``_fetch``, ``_fetch_all`` and ``_apply``. ``_apply``
    must check the expected versions and apply all writes atomically.
    """

    def __init__(self) -> None:
        self._listeners: dict[int, _Listener] = {}
        self._next_listener_id = 0
        self._last_timestamp: datetime | None = None

    # Storage primitives

    async def _fetch(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, int]:
        raise NotImplementedError

    async def _fetch_all(self, query: Query) -> list[DocumentSnapshot]:
        """Return every document in the collections covered by ``query`` (unfiltered)."""
        raise NotImplementedError

    async def _apply(self, writes: list[Write], expected: dict[tuple[str, str], int]) -> list[tuple[str, str]]:
        """Apply writes atomically and return the keys that changed."""
        raise NotImplementedError

    def _ensure_available(self) -> None:
        """Raise StoreUnavailableError when the backend cannot be reached."""

    async def close(self) -> None:
        self._listeners.clear()

    # Clock

    def now(self) -> datetime:
        """Server time; strictly increasing across calls."""
        current = datetime.now(UTC)
        if self._last_timestamp is not None and current <= self._last_timestamp:
            current = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = current
        return current

    # Reads

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        self._ensure_available()
        data, version = await self._fetch(collection, doc_id)
        return DocumentSnapshot(collection=collection, id=doc_id, data=data, version=version)

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        self._ensure_available()
        query = Query(collection, tuple(filters), order_by, descending, limit)
        return await self._execute(query)

    async def query_group(
        self,
        group: str,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        self._ensure_available()
        query = Query(group, tuple(filters), order_by, descending, limit, group=True)
        return await self._execute(query)

    async def _execute(self, query: Query) -> list[DocumentSnapshot]:
        documents = [doc for doc in await self._fetch_all(query) if matches_filters(doc.data or {}, query.filters)]
        if query.order_by:
            documents.sort(key=lambda doc: _sort_key(doc, query.order_by), reverse=query.descending)
        else:
            documents.sort(key=lambda doc: doc.key)
        if query.limit is not None:
            documents = documents[: query.limit]
        return documents

    # Writes

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        kind = WriteKind.MERGE if merge else WriteKind.SET
        await self._commit([Write(collection, doc_id, kind, data)], {})

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        await self._commit([Write(collection, doc_id, WriteKind.SET, data)], {})
        return doc_id

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        if not data:
            msg = "Empty update payload"
            raise InvalidInputError(msg)
        await self._commit([Write(collection, doc_id, WriteKind.UPDATE, data)], {})

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._commit([Write(collection, doc_id, WriteKind.DELETE)], {})

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``fn`` once inside a transaction.

        Raises:
            TransactionAbortedError: If a document read by ``fn`` changed before commit
        """
        transaction = Transaction(self)
        result = await fn(transaction)
        if transaction._writes:
            await self._commit(transaction._writes, transaction._reads)
        return result

    async def _commit(self, writes: list[Write], expected: dict[tuple[str, str], int]) -> None:
        self._ensure_available()
        changed = await self._apply(writes, expected)
        if changed:
            await self._notify(changed)

    def _check_versions(self, expected: dict[tuple[str, str], int], current: dict[tuple[str, str], int]) -> None:
        for key, version in expected.items():
            if current.get(key, 0) != version:
                logger.info(
                    "transaction_aborted",
                    extra={"collection": key[0], "doc_id": key[1], "expected": version, "actual": current.get(key, 0)},
                )
                msg = f"Document {key[0]}/{key[1]} changed during transaction"
                raise TransactionAbortedError(msg, collection=key[0], doc_id=key[1])

    # Listeners

    async def listen(
        self,
        collection: str,
        callback: QueryCallback,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        group: bool = False,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Subscribe to a query. The initial snapshot is delivered before this returns."""
        self._ensure_available()
        query = Query(collection, tuple(filters), order_by, group=group)
        return await self._register(_Listener(self._claim_listener_id(), query, callback, on_error))

    async def listen_document(
        self,
        collection: str,
        doc_id: str,
        callback: DocumentCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Subscribe to one document. The current state is delivered before this returns."""
        self._ensure_available()
        query = Query(collection)
        listener = _Listener(self._claim_listener_id(), query, callback, on_error, document_id=doc_id)
        return await self._register(listener)

    def _claim_listener_id(self) -> int:
        self._next_listener_id += 1
        return self._next_listener_id

    async def _register(self, listener: _Listener) -> Unsubscribe:
        self._listeners[listener.id] = listener

        def unsubscribe() -> None:
            self._listeners.pop(listener.id, None)

        try:
            await self._deliver(listener, initial=True)
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def _notify(self, changed: list[tuple[str, str]]) -> None:
        for listener in list(self._listeners.values()):
            if listener.id not in self._listeners or not listener.affected_by(changed):
                continue
            try:
                await self._deliver(listener)
            except Exception as e:
                await self._fail_listener(listener, e)

    async def _deliver(self, listener: _Listener, *, initial: bool = False) -> None:
        if listener.document_id is not None:
            data, version = await self._fetch(listener.query.collection, listener.document_id)
            key = (listener.query.collection, listener.document_id)
            if not initial and listener.versions.get(key, 0) == version:
                return
            listener.versions = {key: version}
            snapshot = DocumentSnapshot(listener.query.collection, listener.document_id, data, version)
            await self._invoke(listener, snapshot)
            return

        documents = await self._execute(listener.query)
        current = {doc.key: doc.version for doc in documents}
        changes = [
            DocumentChange(ChangeType.ADDED if doc.key not in listener.versions else ChangeType.MODIFIED, doc)
            for doc in documents
            if listener.versions.get(doc.key) != doc.version
        ]
        changes.extend(
            DocumentChange(ChangeType.REMOVED, DocumentSnapshot(key[0], key[1], None, 0))
            for key in listener.versions
            if key not in current
        )
        if not changes and not initial:
            return
        listener.versions = current
        await self._invoke(listener, QuerySnapshot(documents=documents, changes=changes))

    async def _invoke(self, listener: _Listener, payload: QuerySnapshot | DocumentSnapshot) -> None:
        try:
            await listener.callback(payload)
        except Exception:
            logger.exception(
                "listener_callback_failed",
                extra={"listener_id": listener.id, "collection": listener.query.collection},
            )

    async def _fail_listener(self, listener: _Listener, error: Exception) -> None:
        """Detach a listener whose query can no longer be served and report the error."""
        self._listeners.pop(listener.id, None)
        logger.warning(
            "listener_failed",
            extra={"listener_id": listener.id, "collection": listener.query.collection, "error": str(error)},
        )
        if listener.on_error is None:
            return
        try:
            await listener.on_error(error)
        except Exception:
            logger.exception("listener_error_handler_failed", extra={"listener_id": listener.id})
