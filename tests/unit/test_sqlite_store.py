"""Unit tests for the SQLite document store adapter."""

from datetime import UTC, datetime

import pytest

from src.core.document_store import SERVER_TIMESTAMP, ArrayUnion, Filter, FilterOp
from src.core.errors import TransactionAbortedError
from src.core.sqlite_store import SQLiteDocumentStore, decode_document, encode_document


@pytest.fixture
async def sqlite_store(tmp_path):
    store = SQLiteDocumentStore(tmp_path / "board.db")
    await store.open()
    yield store
    await store.close()


@pytest.mark.unit
class TestEncoding:
    def test_datetimes_round_trip(self):
        moment = datetime(2024, 5, 1, 12, 30, tzinfo=UTC)
        document = {"created_at": moment, "comments": [{"created_at": moment}]}

        assert decode_document(encode_document(document)) == document


@pytest.mark.unit
class TestSQLiteDocumentStore:
    @pytest.mark.asyncio
    async def test_set_and_get(self, sqlite_store):
        await sqlite_store.set("users", "alice", {"points": 10, "created_at": SERVER_TIMESTAMP})

        snapshot = await sqlite_store.get("users", "alice")

        assert snapshot.get("points") == 10
        assert isinstance(snapshot.get("created_at"), datetime)
        assert snapshot.version > 0

    @pytest.mark.asyncio
    async def test_documents_survive_reopen(self, tmp_path):
        path = tmp_path / "board.db"
        first = SQLiteDocumentStore(path)
        await first.open()
        await first.set("users", "alice", {"points": 3})
        await first.close()

        second = SQLiteDocumentStore(path)
        await second.open()
        try:
            assert (await second.get("users", "alice")).data == {"points": 3}
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_group_query(self, sqlite_store):
        await sqlite_store.set("users/alice/tasks", "t1", {"shared_with": ["carol"]})
        await sqlite_store.set("users/bob/tasks", "t2", {"shared_with": []})

        results = await sqlite_store.query_group(
            "tasks", filters=[Filter("shared_with", FilterOp.ARRAY_CONTAINS, "carol")]
        )

        assert [doc.id for doc in results] == ["t1"]

    @pytest.mark.asyncio
    async def test_recreated_document_gets_new_version(self, sqlite_store):
        await sqlite_store.set("items", "a", {"n": 1})
        original = (await sqlite_store.get("items", "a")).version
        await sqlite_store.delete("items", "a")
        await sqlite_store.set("items", "a", {"n": 1})

        assert (await sqlite_store.get("items", "a")).version > original

    @pytest.mark.asyncio
    async def test_transaction_aborts_on_concurrent_write(self, sqlite_store):
        await sqlite_store.set("counters", "c", {"n": 1})

        async def increment(txn):
            snapshot = await txn.get("counters", "c")
            await sqlite_store.update("counters", "c", {"n": 5})
            txn.update("counters", "c", {"n": snapshot.get("n") + 1})

        with pytest.raises(TransactionAbortedError):
            await sqlite_store.run_transaction(increment)

        assert (await sqlite_store.get("counters", "c")).data == {"n": 5}

    @pytest.mark.asyncio
    async def test_array_union_update(self, sqlite_store):
        await sqlite_store.set("users", "alice", {"friends": ["bob"]})

        await sqlite_store.update("users", "alice", {"friends": ArrayUnion("bob", "carol")})

        assert (await sqlite_store.get("users", "alice")).get("friends") == ["bob", "carol"]
