"""Unit tests for the document store semantics shared by the adapters."""

import logging
from datetime import UTC, datetime

import pytest

from src.core.document_store import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    ChangeType,
    Filter,
    FilterOp,
    Increment,
    Write,
    WriteKind,
    matches_filters,
    resolve_write,
)
from src.core.errors import (
    DocumentNotFoundError,
    InvalidInputError,
    StoreUnavailableError,
    TransactionAbortedError,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.mark.unit
class TestResolveWrite:
    """Tests for applying a single write to a stored document."""

    def test_set_replaces_document_and_resolves_server_timestamp(self):
        result = resolve_write({"old": 1}, Write("c", "d", WriteKind.SET, {"at": SERVER_TIMESTAMP}), NOW)
        assert result == {"at": NOW}

    def test_update_dotted_path_creates_nested_fields(self):
        result = resolve_write({"stats": {}}, Write("c", "d", WriteKind.UPDATE, {"stats.count": 2}), NOW)
        assert result == {"stats": {"count": 2}}

    def test_array_union_skips_existing_values(self):
        write = Write("c", "d", WriteKind.UPDATE, {"friends": ArrayUnion("b", "c")})
        assert resolve_write({"friends": ["a", "b"]}, write, NOW) == {"friends": ["a", "b", "c"]}

    def test_array_remove_removes_every_occurrence(self):
        write = Write("c", "d", WriteKind.UPDATE, {"friends": ArrayRemove("b")})
        assert resolve_write({"friends": ["b", "a", "b"]}, write, NOW) == {"friends": ["a"]}

    def test_increment_missing_field_starts_at_zero(self):
        write = Write("c", "d", WriteKind.UPDATE, {"stats.tasks_completed": Increment(1)})
        assert resolve_write({}, write, NOW) == {"stats": {"tasks_completed": 1}}

    def test_delete_field_removes_key(self):
        write = Write("c", "d", WriteKind.UPDATE, {"finalized_at": DELETE_FIELD})
        assert resolve_write({"finalized_at": NOW, "name": "x"}, write, NOW) == {"name": "x"}

    def test_update_missing_document_raises(self):
        with pytest.raises(DocumentNotFoundError):
            resolve_write(None, Write("c", "d", WriteKind.UPDATE, {"a": 1}), NOW)

    def test_merge_keeps_unrelated_nested_fields(self):
        write = Write("c", "d", WriteKind.MERGE, {"stats": {"b": 2}})
        assert resolve_write({"stats": {"a": 1}}, write, NOW) == {"stats": {"a": 1, "b": 2}}

    def test_delete_returns_none(self):
        assert resolve_write({"a": 1}, Write("c", "d", WriteKind.DELETE), NOW) is None


@pytest.mark.unit
class TestMatchesFilters:
    def test_operators(self):
        data = {"owner": "alice", "shared_with": ["bob"], "visibility": "shared"}
        assert matches_filters(data, [Filter("owner", FilterOp.EQ, "alice")])
        assert matches_filters(data, [Filter("owner", FilterOp.NE, "bob")])
        assert matches_filters(data, [Filter("shared_with", FilterOp.ARRAY_CONTAINS, "bob")])
        assert matches_filters(data, [Filter("visibility", FilterOp.IN, ["shared", "private"])])
        assert not matches_filters(data, [Filter("shared_with", FilterOp.ARRAY_CONTAINS, "carol")])

    def test_not_equal_excludes_missing_fields(self):
        assert not matches_filters({}, [Filter("owner", FilterOp.NE, "bob")])


@pytest.mark.unit
class TestStoreReadsAndWrites:
    @pytest.mark.asyncio
    async def test_missing_document_has_no_data(self, store):
        snapshot = await store.get("users", "nobody")
        assert not snapshot.exists
        assert snapshot.version == 0

    @pytest.mark.asyncio
    async def test_query_orders_with_missing_values_last(self, store):
        await store.set("items", "a", {"rank": 2})
        await store.set("items", "b", {"rank": 1})
        await store.set("items", "c", {})

        ordered = await store.query("items", order_by="rank")
        assert [doc.id for doc in ordered] == ["b", "a", "c"]

        limited = await store.query("items", order_by="rank", limit=1)
        assert [doc.id for doc in limited] == ["b"]

    @pytest.mark.asyncio
    async def test_query_group_spans_every_owner(self, store):
        await store.set("users/alice/tasks", "t1", {"shared_with": ["carol"]})
        await store.set("users/bob/tasks", "t2", {"shared_with": ["carol"]})
        await store.set("users/bob/notifications", "n1", {"shared_with": ["carol"]})

        results = await store.query_group("tasks", filters=[Filter("shared_with", FilterOp.ARRAY_CONTAINS, "carol")])

        assert sorted(doc.id for doc in results) == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_add_generates_ids(self, store):
        first = await store.add("items", {"n": 1})
        second = await store.add("items", {"n": 2})
        assert first != second
        assert (await store.get("items", first)).data == {"n": 1}

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, store):
        await store.set("items", "a", {"n": 1})
        with pytest.raises(InvalidInputError):
            await store.update("items", "a", {})

    @pytest.mark.asyncio
    async def test_unavailable_store_raises(self, store):
        store.set_available(False)
        with pytest.raises(StoreUnavailableError):
            await store.get("items", "a")

    def test_server_clock_is_strictly_increasing(self, store):
        stamps = [store.now() for _ in range(50)]
        assert all(earlier < later for earlier, later in zip(stamps, stamps[1:], strict=False))


@pytest.mark.unit
class TestTransactions:
    @pytest.mark.asyncio
    async def test_commit_applies_writes(self, store):
        await store.set("counters", "c", {"n": 1})

        async def increment(txn):
            snapshot = await txn.get("counters", "c")
            txn.update("counters", "c", {"n": snapshot.get("n") + 1})
            return snapshot.get("n") + 1

        assert await store.run_transaction(increment) == 2
        assert (await store.get("counters", "c")).data == {"n": 2}

    @pytest.mark.asyncio
    async def test_concurrent_write_aborts_commit(self, store):
        await store.set("counters", "c", {"n": 1})

        async def increment(txn):
            snapshot = await txn.get("counters", "c")
            await store.update("counters", "c", {"n": 10})
            txn.update("counters", "c", {"n": snapshot.get("n") + 1})

        with pytest.raises(TransactionAbortedError):
            await store.run_transaction(increment)

        assert (await store.get("counters", "c")).data == {"n": 10}

    @pytest.mark.asyncio
    async def test_created_document_aborts_transaction_that_saw_it_missing(self, store):
        async def create(txn):
            snapshot = await txn.get("counters", "c")
            await store.set("counters", "c", {"n": 5})
            if not snapshot.exists:
                txn.set("counters", "c", {"n": 0})

        with pytest.raises(TransactionAbortedError):
            await store.run_transaction(create)

    @pytest.mark.asyncio
    async def test_read_after_write_rejected(self, store):
        async def misordered(txn):
            txn.set("counters", "c", {"n": 1})
            await txn.get("counters", "c")

        with pytest.raises(InvalidInputError):
            await store.run_transaction(misordered)


@pytest.mark.unit
class TestListeners:
    @pytest.mark.asyncio
    async def test_query_listener_reports_changes(self, store):
        snapshots = []

        async def on_snapshot(snapshot):
            snapshots.append(snapshot)

        await store.set("users/alice/tasks", "t1", {"n": 1})
        unsubscribe = await store.listen("users/alice/tasks", on_snapshot)

        assert len(snapshots) == 1
        assert [change.type for change in snapshots[0].changes] == [ChangeType.ADDED]

        await store.update("users/alice/tasks", "t1", {"n": 2})
        assert [change.type for change in snapshots[-1].changes] == [ChangeType.MODIFIED]

        await store.delete("users/alice/tasks", "t1")
        assert [change.type for change in snapshots[-1].changes] == [ChangeType.REMOVED]
        assert snapshots[-1].documents == []

        unsubscribe()
        await store.set("users/alice/tasks", "t2", {"n": 3})
        assert len(snapshots) == 3
        assert store.listener_count == 0

    @pytest.mark.asyncio
    async def test_document_leaving_filter_is_removed(self, store):
        snapshots = []

        async def on_snapshot(snapshot):
            snapshots.append(snapshot)

        await store.set("users/bob/tasks", "t1", {"shared_with": ["alice"]})
        await store.listen(
            "users/bob/tasks",
            on_snapshot,
            filters=[Filter("shared_with", FilterOp.ARRAY_CONTAINS, "alice")],
        )

        await store.update("users/bob/tasks", "t1", {"shared_with": []})

        assert snapshots[-1].documents == []
        assert snapshots[-1].changes[0].type == ChangeType.REMOVED

    @pytest.mark.asyncio
    async def test_unrelated_writes_do_not_redeliver(self, store):
        snapshots = []

        async def on_snapshot(snapshot):
            snapshots.append(snapshot)

        await store.listen("users/alice/tasks", on_snapshot)
        await store.set("users/bob/tasks", "t1", {"n": 1})

        assert len(snapshots) == 1

    @pytest.mark.asyncio
    async def test_document_listener(self, store):
        seen = []

        async def on_document(snapshot):
            seen.append(snapshot.data)

        await store.listen_document("users", "alice", on_document)
        await store.set("users", "alice", {"points": 1})
        await store.set("users", "bob", {"points": 2})

        assert seen == [None, {"points": 1}]

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_fail_writer(self, store, caplog):
        async def broken(_snapshot):
            raise RuntimeError("boom")

        await store.listen("items", broken)

        with caplog.at_level(logging.ERROR):
            await store.set("items", "a", {"n": 1})

        assert (await store.get("items", "a")).exists
        assert "listener_callback_failed" in caplog.text

    @pytest.mark.asyncio
    async def test_broken_listener_reports_error_and_detaches(self, store):
        errors = []

        async def on_snapshot(_snapshot):
            return None

        async def on_error(error):
            errors.append(error)

        await store.listen("users/bob/tasks", on_snapshot, on_error=on_error)

        failed = await store.break_listeners("users/bob/tasks", StoreUnavailableError("connection lost"))

        assert failed == 1
        assert isinstance(errors[0], StoreUnavailableError)
        assert store.listener_count == 0
