"""Tests for the MongoDB adapter against an in-memory motor client."""

from unittest.mock import AsyncMock

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from polystore.db.connection import ConnectionEvent, ConnectionState
from polystore.db.errors import DatabaseError, ErrorKind
from polystore.db.models import (
    DatabaseKey,
    DeleteOptions,
    FilterCondition,
    KeyCondition,
    PutOptions,
    QueryInput,
    QueryOptions,
    ScanInput,
    TransactionOperation,
    UpdateInput,
    UpdateOptions,
)
from polystore.db.mongodb_adapter import (
    build_condition_query,
    build_key_condition_query,
    build_update_document,
    combine,
)

from conftest import FakeMotorClient, build_mongo_adapter

USER = DatabaseKey("user#1", "profile")


class TestQueryBuilding:
    """FilterCondition / KeyCondition / UpdateInput to MongoDB documents."""

    def test_conditions(self):
        assert build_condition_query(FilterCondition("age", ">=", 18)) == {"age": {"$gte": 18}}
        assert build_condition_query(FilterCondition("email", "not_exists")) == {"email": {"$exists": False}}
        assert build_condition_query(FilterCondition("status", "in", values=["a"])) == {"status": {"$in": ["a"]}}
        assert build_condition_query(FilterCondition("name", "contains", "a.b")) == {
            "name": {"$regex": r"a\.b", "$options": "i"}
        }

    def test_key_conditions(self):
        assert build_key_condition_query(KeyCondition("sk", "begins_with", "order#")) == {
            "sk": {"$regex": "^order\\#"}
        }
        assert build_key_condition_query(KeyCondition("sk", "between", "a", "m")) == {
            "sk": {"$gte": "a", "$lte": "m"}
        }

    def test_combine(self):
        assert combine(None, {}) == {}
        assert combine({"a": 1}, None) == {"a": 1}
        assert combine({"a": 1}, {"b": 2}) == {"$and": [{"a": 1}, {"b": 2}]}

    def test_update_document(self):
        update = build_update_document(
            UpdateInput(
                USER,
                updates={"name": "Jane"},
                increment_fields={"visits": 1},
                append_to_list={"tags": ["x"]},
                remove_from_list={"roles": ["admin"]},
            ),
            now="NOW",
        )
        assert update == {
            "$set": {"name": "Jane", "updatedAt": "NOW"},
            "$inc": {"visits": 1},
            "$push": {"tags": {"$each": ["x"]}},
            "$pullAll": {"roles": ["admin"]},
        }


class TestConnection:
    """Lifecycle, capability detection and health."""

    @pytest.mark.asyncio
    async def test_connect_detects_replica_set(self, mongo, fake_mongo):
        assert mongo.is_connected()
        assert mongo.supports_transactions is True
        assert fake_mongo.commands == ["ping", "hello"]

    @pytest.mark.asyncio
    async def test_standalone_has_no_transactions(self, standalone_mongo):
        assert standalone_mongo.supports_transactions is False

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        fake = FakeMotorClient()
        fake.ping_error = ServerSelectionTimeoutError("no servers available")
        adapter = build_mongo_adapter(fake)
        listener = AsyncMock()
        adapter.subscribe(ConnectionEvent.ERROR, listener)

        with pytest.raises(DatabaseError) as exc_info:
            await adapter.connect()
        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert adapter.connection.state is ConnectionState.ERROR
        assert fake.commands == ["ping", "ping", "ping"]
        listener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, mongo, fake_mongo):
        events = []
        mongo.subscribe("disconnected", lambda event: events.append(event.value))
        await mongo.disconnect()
        assert fake_mongo.closed is True
        assert not mongo.is_connected()
        assert events == ["disconnected"]

    @pytest.mark.asyncio
    async def test_reconnect_is_bounded(self, mongo):
        mongo.connection.max_reconnect_attempts = 1
        await mongo.connection.reconnect()
        assert mongo.is_connected()
        assert mongo.connection.reconnect_attempts == 0

        mongo.connection.reconnect_attempts = 1
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.connection.reconnect()
        assert exc_info.value.kind is ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_reconnect_keeps_one_active_connection(self, mongo):
        await mongo.connection.reconnect()
        connections = mongo.metrics.snapshot().connections
        assert connections.active_connections == 1
        assert connections.events["reconnect"] == 1

    @pytest.mark.asyncio
    async def test_operations_before_connect_are_recorded(self):
        adapter = build_mongo_adapter(FakeMotorClient())
        with pytest.raises(DatabaseError) as exc_info:
            await adapter.get(USER)
        assert exc_info.value.kind is ErrorKind.CONNECTION
        snapshot = adapter.metrics.snapshot()
        assert snapshot.total_operations == 1
        assert snapshot.failed_operations == 1

    @pytest.mark.asyncio
    async def test_health_check(self, mongo):
        status = await mongo.health_check()
        assert status.healthy is True
        assert status.provider == "mongodb"
        assert status.last_successful_operation is not None

    @pytest.mark.asyncio
    async def test_ensure_indexes(self, mongo, primary_docs):
        await mongo.ensure_indexes()
        assert primary_docs.calls.count("create_index") == 2

    @pytest.mark.asyncio
    async def test_unique_index_rejects_raw_duplicates(self, mongo, primary_docs):
        await primary_docs.insert_one({"pk": "doc", "sk": "doc"})
        await primary_docs.insert_one({"pk": "doc", "sk": "doc"})
        assert len(primary_docs.docs) == 2

        primary_docs.docs.pop()
        await mongo.ensure_indexes()
        with pytest.raises(DuplicateKeyError):
            await primary_docs.insert_one({"pk": "doc", "sk": "doc"})


class TestItemOperations:
    """get / put / update / delete on the primary collection."""

    @pytest.mark.asyncio
    async def test_put_then_get(self, mongo, primary_docs):
        await mongo.put({"pk": "user#1", "sk": "profile", "name": "John"})

        item = await mongo.get(USER)
        assert item["name"] == "John"
        assert item["pksk"] == "user#1#profile"
        assert "createdAt" in item and "updatedAt" in item
        assert "_id" not in item
        assert len(primary_docs.docs) == 1

    @pytest.mark.asyncio
    async def test_put_replaces(self, mongo, primary_docs):
        await mongo.put({"pk": "doc", "v": 1})
        await mongo.put({"pk": "doc", "v": 2})
        assert len(primary_docs.docs) == 1
        assert (await mongo.get(DatabaseKey("doc")))["v"] == 2

    @pytest.mark.asyncio
    async def test_get_projection(self, mongo):
        await mongo.put({"pk": "doc", "name": "x", "secret": "y"})
        item = await mongo.get(DatabaseKey("doc"), QueryOptions(projection=["name"]))
        assert item == {"name": "x"}

    @pytest.mark.asyncio
    async def test_get_missing(self, mongo):
        assert await mongo.get(DatabaseKey("nobody")) is None

    @pytest.mark.asyncio
    async def test_ensure_not_exists(self, mongo):
        await mongo.put({"pk": "doc"}, PutOptions(ensure_not_exists=True))
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.put({"pk": "doc"}, PutOptions(ensure_not_exists=True))
        assert exc_info.value.kind is ErrorKind.DUPLICATE_KEY

    @pytest.mark.asyncio
    async def test_ensure_not_exists_without_unique_index(self, mongo, primary_docs):
        await mongo.put({"pk": "doc", "version": 1}, PutOptions(ensure_not_exists=True))
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.put({"pk": "doc", "version": 2}, PutOptions(ensure_not_exists=True))
        assert exc_info.value.kind is ErrorKind.DUPLICATE_KEY
        assert "create_index" not in primary_docs.calls
        assert len(primary_docs.docs) == 1
        assert (await mongo.get(DatabaseKey("doc")))["version"] == 1

    @pytest.mark.asyncio
    async def test_invalid_put_is_recorded(self, mongo, primary_docs):
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.put({"name": "no key"})
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert primary_docs.calls == []
        assert mongo.metrics.snapshot().operation_timings["put"].failure_count == 1

    @pytest.mark.asyncio
    async def test_conditional_put(self, mongo):
        await mongo.put({"pk": "doc", "version": 1})
        await mongo.put({"pk": "doc", "version": 2}, PutOptions(condition=FilterCondition("version", "=", 1)))

        with pytest.raises(DatabaseError) as exc_info:
            await mongo.put({"pk": "doc", "version": 3}, PutOptions(condition=FilterCondition("version", "=", 1)))
        assert exc_info.value.kind is ErrorKind.CONDITIONAL_CHECK_FAILED
        assert (await mongo.get(DatabaseKey("doc")))["version"] == 2

    @pytest.mark.asyncio
    async def test_conditional_put_on_missing_item(self, mongo):
        await mongo.put({"pk": "new"}, PutOptions(condition=FilterCondition("pk", "not_exists")))
        assert await mongo.get(DatabaseKey("new")) is not None

        with pytest.raises(DatabaseError) as exc_info:
            await mongo.put({"pk": "other"}, PutOptions(condition=FilterCondition("status", "=", "x")))
        assert exc_info.value.kind is ErrorKind.CONDITIONAL_CHECK_FAILED

    @pytest.mark.asyncio
    async def test_update_creates_missing_item(self, mongo):
        result = await mongo.update(UpdateInput(DatabaseKey("counter"), increment_fields={"visits": 1}))
        assert result["visits"] == 1
        assert result["pksk"] == "counter#counter"
        result = await mongo.update(UpdateInput(DatabaseKey("counter"), increment_fields={"visits": 1}))
        assert result["visits"] == 2

    @pytest.mark.asyncio
    async def test_update_lists(self, mongo):
        await mongo.put({"pk": "post", "tags": ["a", "b"]})
        await mongo.update(UpdateInput(DatabaseKey("post"), append_to_list={"tags": ["c"]}))
        result = await mongo.update(UpdateInput(DatabaseKey("post"), remove_from_list={"tags": ["b"]}))
        assert result["tags"] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_update_condition_failure(self, mongo, primary_docs):
        await mongo.put({"pk": "doc", "status": "draft"})
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.update(
                UpdateInput(DatabaseKey("doc"), updates={"status": "published"}),
                UpdateOptions(condition=FilterCondition("status", "=", "review")),
            )
        assert exc_info.value.kind is ErrorKind.CONDITIONAL_CHECK_FAILED
        assert primary_docs.docs[0]["status"] == "draft"

    @pytest.mark.asyncio
    async def test_update_return_values(self, mongo):
        await mongo.put({"pk": "doc", "n": 1})
        before = await mongo.update(
            UpdateInput(DatabaseKey("doc"), updates={"n": 2}), UpdateOptions(return_values="ALL_OLD")
        )
        assert before["n"] == 1
        assert await mongo.update(
            UpdateInput(DatabaseKey("doc"), updates={"n": 3}), UpdateOptions(return_values="NONE")
        ) is None

    @pytest.mark.asyncio
    async def test_delete(self, mongo):
        await mongo.put({"pk": "doc", "body": "hi"})
        old = await mongo.delete(DatabaseKey("doc"), DeleteOptions(return_values="ALL_OLD"))
        assert old["body"] == "hi"
        assert await mongo.get(DatabaseKey("doc")) is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, mongo):
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.delete(DatabaseKey("nobody"))
        assert exc_info.value.kind is ErrorKind.ITEM_NOT_FOUND


class TestMultiItemOperations:
    """query / scan / batch_get."""

    @pytest.fixture
    async def orders(self, mongo):
        for i in range(1, 6):
            await mongo.put({"pk": "customer#1", "sk": f"order#{i}", "total": i * 10})
        await mongo.put({"pk": "customer#1", "sk": "profile"})
        await mongo.put({"pk": "customer#2", "sk": "order#1", "total": 99})
        return mongo

    @pytest.mark.asyncio
    async def test_query_begins_with_descending(self, orders):
        items = await orders.query(
            QueryInput(key_condition=KeyCondition("sk", "begins_with", "order#"), sort_order="DESC", limit=3)
        )
        assert [i["sk"] for i in items] == ["order#5", "order#4", "order#3"]

    @pytest.mark.asyncio
    async def test_query_with_filter(self, orders):
        items = await orders.query(
            QueryInput(
                key_condition=KeyCondition("pk", "=", "customer#1"),
                filter_condition=FilterCondition("total", ">", 20),
            )
        )
        assert sorted(i["total"] for i in items) == [30, 40, 50]

    @pytest.mark.asyncio
    async def test_query_start_key_skips(self, orders):
        items = await orders.query(
            QueryInput(key_condition=KeyCondition("sk", "begins_with", "order#"), start_key={"skip": 4})
        )
        assert [i["sk"] for i in items] == ["order#4", "order#5"]

    @pytest.mark.asyncio
    async def test_invalid_cursor(self, orders):
        with pytest.raises(DatabaseError) as exc_info:
            await orders.scan(ScanInput(start_key={"skip": "later"}))
        assert exc_info.value.kind is ErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_scan_pages(self, orders):
        first = await orders.scan(ScanInput(limit=4))
        assert len(first.items) == 4
        assert first.cursor == {"skip": 4}

        second = await orders.scan(ScanInput(limit=4, start_key=first.cursor))
        assert len(second.items) == 3
        assert second.cursor is None

    @pytest.mark.asyncio
    async def test_scan_filter_contains(self, mongo):
        await mongo.put({"pk": "a", "name": "John Smith"})
        await mongo.put({"pk": "b", "name": "Jane Doe"})
        result = await mongo.scan(ScanInput(filter_condition=FilterCondition("name", "contains", "SMITH")))
        assert [i["pk"] for i in result.items] == ["a"]

    @pytest.mark.asyncio
    async def test_batch_get(self, orders):
        items = await orders.batch_get(
            [DatabaseKey("customer#1", "order#1"), DatabaseKey("customer#2", "order#1"), DatabaseKey("none")]
        )
        assert sorted((i["pk"], i["total"]) for i in items) == [("customer#1", 10), ("customer#2", 99)]

    @pytest.mark.asyncio
    async def test_query_metrics(self, orders):
        await orders.query(QueryInput(key_condition=KeyCondition("pk", "=", "customer#1")))
        snapshot = orders.metrics.snapshot()
        assert snapshot.query_types["query"].total_results == 6


class TestTransactions:
    """Native multi-document transactions through session.with_transaction."""

    @pytest.mark.asyncio
    async def test_commit(self, mongo, fake_mongo):
        await mongo.put({"pk": "account#1", "balance": 100})

        transaction = await mongo.begin_transaction()
        await transaction.condition_check(DatabaseKey("account#1"), FilterCondition("balance", ">=", 50))
        await transaction.update(UpdateInput(DatabaseKey("account#1"), increment_fields={"balance": -50}))
        await transaction.put({"pk": "ledger#1", "amount": 50})
        await transaction.commit()

        assert not transaction.is_active()
        assert fake_mongo.sessions[-1].ended is True
        assert (await mongo.get(DatabaseKey("account#1")))["balance"] == 50
        assert (await mongo.get(DatabaseKey("ledger#1")))["amount"] == 50

    @pytest.mark.asyncio
    async def test_failed_condition_aborts_everything(self, mongo):
        await mongo.put({"pk": "account#1", "balance": 10})
        operations = [
            TransactionOperation.put({"pk": "ledger#1", "amount": 50}),
            TransactionOperation.condition_check(DatabaseKey("account#1"), FilterCondition("balance", ">=", 50)),
        ]
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.execute_transaction(operations)
        assert exc_info.value.kind is ErrorKind.CONDITIONAL_CHECK_FAILED
        assert await mongo.get(DatabaseKey("ledger#1")) is None

    @pytest.mark.asyncio
    async def test_delete_of_missing_item_aborts(self, mongo):
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.execute_transaction(
                [TransactionOperation.put({"pk": "a"}), TransactionOperation.delete(DatabaseKey("missing"))]
            )
        assert exc_info.value.kind is ErrorKind.ITEM_NOT_FOUND
        assert await mongo.get(DatabaseKey("a")) is None

    @pytest.mark.asyncio
    async def test_transactional_get_uses_session(self, mongo, fake_mongo):
        await mongo.put({"pk": "x", "value": 1})
        transaction = await mongo.begin_transaction()
        assert (await transaction.get(DatabaseKey("x")))["value"] == 1
        await transaction.rollback()
        assert fake_mongo.sessions[-1].ended is True
        assert not transaction.is_active()


class TestExecuteNative:
    """Raw database access."""

    @pytest.mark.asyncio
    async def test_callable_receives_database(self, mongo):
        await mongo.put({"pk": "x"})

        async def count(database):
            return len(await database["primary_data"].find({}).to_list(length=None))

        assert await mongo.execute_native(count) == 1

    @pytest.mark.asyncio
    async def test_rejects_non_callable(self, mongo):
        with pytest.raises(DatabaseError) as exc_info:
            await mongo.execute_native({"find": "primary_data"})
        assert exc_info.value.kind is ErrorKind.VALIDATION
