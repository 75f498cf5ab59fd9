"""SQLite-backed document store adapter using aiosqlite.

Documents are stored as JSON in a single ``documents`` table keyed by
(collection, id). ``version`` is a store-wide sequence so that a document
deleted and recreated never reuses the version a transaction observed.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from src.core.config import settings
from src.core.document_store import BaseDocumentStore, DocumentSnapshot, Query, Write, group_of, resolve_write
from src.core.errors import StoreUnavailableError


logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    collection_group TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL,
    PRIMARY KEY (collection, id)
)
"""
_GROUP_INDEX = "CREATE INDEX IF NOT EXISTS idx_documents_group ON documents (collection_group)"
_META = "CREATE TABLE IF NOT EXISTS store_meta (key TEXT PRIMARY KEY, value INTEGER NOT NULL)"

_DATETIME_KEY = "$datetime"


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_DATETIME_KEY: value.isoformat()}
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _DATETIME_KEY in obj:
        return datetime.fromisoformat(obj[_DATETIME_KEY])
    return obj


def encode_document(data: dict[str, Any]) -> str:
    return json.dumps(data, default=_encode_default)


def decode_document(raw: str) -> dict[str, Any]:
    return json.loads(raw, object_hook=_decode_hook)


class SQLiteDocumentStore(BaseDocumentStore):
    """Durable single-file document store."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        super().__init__()
        self._path = Path(db_path or settings.sqlite_db_path).resolve()
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._conn is not None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self._path), isolation_level=None)
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.execute(_SCHEMA)
            await conn.execute(_GROUP_INDEX)
            await conn.execute(_META)
        except (aiosqlite.Error, OSError) as e:
            logger.error("sqlite_open_failed", extra={"db_path": str(self._path), "error": str(e)})
            msg = f"Failed to open document store at {self._path}: {e}"
            raise StoreUnavailableError(msg) from e
        self._conn = conn
        logger.info("Opened SQLite document store", extra={"db_path": str(self._path)})

    async def close(self) -> None:
        await super().close()
        if self._conn is None:
            return
        try:
            await self._conn.close()
        except aiosqlite.Error as e:
            logger.warning("Error closing SQLite connection", extra={"error": str(e), "db_path": str(self._path)})
        finally:
            self._conn = None
        logger.info("Closed SQLite document store", extra={"db_path": str(self._path)})

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            await self.open()
        assert self._conn is not None
        return self._conn

    async def _fetch(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, int]:
        conn = await self._connection()
        async with self._lock:
            try:
                cursor = await conn.execute(
                    "SELECT data, version FROM documents WHERE collection = ? AND id = ?",
                    (collection, doc_id),
                )
                row = await cursor.fetchone()
            except aiosqlite.Error as e:
                logger.error("get_document_failed", extra={"collection": collection, "doc_id": doc_id, "error": str(e)})
                msg = f"Failed to read {collection}/{doc_id}: {e}"
                raise StoreUnavailableError(msg) from e
        if row is None:
            return None, 0
        return decode_document(row[0]), row[1]

    async def _fetch_all(self, query: Query) -> list[DocumentSnapshot]:
        conn = await self._connection()
        column = "collection_group" if query.group else "collection"
        sql = f"SELECT collection, id, data, version FROM documents WHERE {column} = ?"  # noqa: S608
        async with self._lock:
            try:
                cursor = await conn.execute(sql, (query.collection,))
                rows = await cursor.fetchall()
            except aiosqlite.Error as e:
                logger.error("query_documents_failed", extra={"collection": query.collection, "error": str(e)})
                msg = f"Failed to query {query.collection}: {e}"
                raise StoreUnavailableError(msg) from e
        return [DocumentSnapshot(row[0], row[1], decode_document(row[2]), row[3]) for row in rows]

    async def _apply(self, writes: list[Write], expected: dict[tuple[str, str], int]) -> list[tuple[str, str]]:
        conn = await self._connection()
        async with self._lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                msg = f"Failed to start write: {e}"
                raise StoreUnavailableError(msg) from e
            try:
                changed = await self._apply_locked(conn, writes, expected)
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.rollback()
                logger.error("apply_writes_failed", extra={"write_count": len(writes), "error": str(e)})
                msg = f"Failed to write documents: {e}"
                raise StoreUnavailableError(msg) from e
            except Exception:
                await conn.rollback()
                raise
        return changed

    async def _apply_locked(
        self,
        conn: aiosqlite.Connection,
        writes: list[Write],
        expected: dict[tuple[str, str], int],
    ) -> list[tuple[str, str]]:
        keys = {write.key for write in writes} | set(expected)
        current: dict[tuple[str, str], tuple[dict[str, Any], int]] = {}
        for collection, doc_id in keys:
            cursor = await conn.execute(
                "SELECT data, version FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            row = await cursor.fetchone()
            if row is not None:
                current[(collection, doc_id)] = (decode_document(row[0]), row[1])

        self._check_versions(expected, {key: entry[1] for key, entry in current.items()})

        now = self.now()
        staged: dict[tuple[str, str], dict[str, Any] | None] = {}
        for write in writes:
            existing = staged[write.key] if write.key in staged else current.get(write.key, (None, 0))[0]
            staged[write.key] = resolve_write(existing, write, now)

        cursor = await conn.execute("SELECT value FROM store_meta WHERE key = 'sequence'")
        row = await cursor.fetchone()
        sequence = row[0] if row else 0

        changed = []
        for (collection, doc_id), data in staged.items():
            if data is None:
                cursor = await conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND id = ?",
                    (collection, doc_id),
                )
                if cursor.rowcount:
                    changed.append((collection, doc_id))
                continue
            sequence += 1
            await conn.execute(
                "INSERT INTO documents (collection, collection_group, id, data, version) VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT (collection, id) DO UPDATE SET data = excluded.data, version = excluded.version",
                (collection, group_of(collection), doc_id, encode_document(data), sequence),
            )
            changed.append((collection, doc_id))

        await conn.execute(
            "INSERT INTO store_meta (key, value) VALUES ('sequence', ?) "
            "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            (sequence,),
        )
        return changed
