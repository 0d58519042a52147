"""
MongoDB Data Access Adapter

motor-based implementation of DataAccessLayer. Documents keep the pk/sk
layout of the key-value backend plus a pksk composite field and
createdAt/updatedAt timestamps, so items migrate between the two
unchanged.

Active when DB_PROVIDER=document (or mongodb) + MONGODB_CONNECTION_STRING is set.
"""

from __future__ import annotations

import inspect
import re
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from ..config.database_config import MongoDBConfig
from ..config.logfire_config import get_logger
from ..services.metrics import MetricsCollector
from ..services.resilience import ResilienceManager
from .base import BaseDatabaseClient
from .connection import ConnectionManager, ConnectionState
from .errors import DatabaseError, ErrorKind, Translator, translate_mongodb_error, validation_error
from .models import (
    BatchOptions,
    DatabaseKey,
    DeleteOptions,
    FilterCondition,
    KeyCondition,
    OperationType,
    ProviderType,
    PutOptions,
    QueryInput,
    QueryOptions,
    ScanInput,
    ScanResult,
    TransactionOperation,
    UpdateInput,
    UpdateOptions,
    evaluate_condition,
    storage_key,
    with_storage_key,
)

logger = get_logger(__name__)

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


_COMPARATORS = {"!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte"}


def key_filter(key: DatabaseKey) -> dict[str, str]:
    return storage_key(key)


def build_condition_query(condition: FilterCondition) -> dict[str, Any]:
    field = condition.field
    op = condition.operator
    if op == "=":
        return {field: condition.value}
    if op in _COMPARATORS:
        return {field: {_COMPARATORS[op]: condition.value}}
    if op == "contains":
        return {field: {"$regex": re.escape(str(condition.value)), "$options": "i"}}
    if op == "exists":
        return {field: {"$exists": True}}
    if op == "not_exists":
        return {field: {"$exists": False}}
    if op == "in":
        return {field: {"$in": list(condition.values or [])}}
    raise validation_error(f"Unsupported condition operator: {op}", "mongodb")


def build_key_condition_query(condition: KeyCondition) -> dict[str, Any]:
    field = condition.field
    if condition.operator == "=":
        return {field: condition.value}
    if condition.operator == "begins_with":
        return {field: {"$regex": "^" + re.escape(str(condition.value))}}
    if condition.operator == "between":
        return {field: {"$gte": condition.value, "$lte": condition.value2}}
    raise validation_error(f"Unsupported key condition operator: {condition.operator}", "mongodb")


def combine(*queries: dict[str, Any] | None) -> dict[str, Any]:
    present = [q for q in queries if q]
    if not present:
        return {}
    if len(present) == 1:
        return present[0]
    return {"$and": present}


def build_update_document(update_input: UpdateInput, now: datetime) -> dict[str, Any]:
    update: dict[str, Any] = {"$set": {**update_input.updates, "updatedAt": now}}
    if update_input.increment_fields:
        update["$inc"] = dict(update_input.increment_fields)
    if update_input.append_to_list:
        update["$push"] = {f: {"$each": list(v)} for f, v in update_input.append_to_list.items()}
    if update_input.remove_from_list:
        update["$pullAll"] = {f: list(v) for f, v in update_input.remove_from_list.items()}
    return update


def to_document(data: dict[str, Any], now: datetime) -> dict[str, Any]:
    document = with_storage_key(data)
    document["pksk"] = f"{document['pk']}#{document['sk']}"
    document["createdAt"] = now
    document["updatedAt"] = now
    return document


def from_document(document: dict[str, Any] | None) -> dict[str, Any] | None:
    if document is None:
        return None
    result = dict(document)
    result.pop("_id", None)
    return result


def _projection(fields: list[str] | None) -> dict[str, int] | None:
    if not fields:
        return None
    return {f: 1 for f in fields}


def _skip_from_cursor(start_key: Any) -> int:
    if not start_key:
        return 0
    if isinstance(start_key, dict) and "skip" in start_key:
        skip = start_key["skip"]
    else:
        skip = start_key
    try:
        skip = int(skip)
    except (TypeError, ValueError):
        raise validation_error(f"Invalid pagination cursor: {start_key!r}", "mongodb") from None
    if skip < 0:
        raise validation_error(f"Invalid pagination cursor: {start_key!r}", "mongodb")
    return skip


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _conditional_failed(message: str) -> DatabaseError:
    return DatabaseError(ErrorKind.CONDITIONAL_CHECK_FAILED, message, provider="mongodb")


async def _insert_if_absent(
    collection: Any, keys: dict[str, str], document: dict[str, Any], session: Any = None
) -> bool:
    """Insert document unless an item with the same pk/sk exists. Returns True when inserted."""
    fields = {k: v for k, v in document.items() if k not in keys}
    result = await collection.update_one(keys, {"$setOnInsert": fields}, upsert=True, session=session)
    return result.upserted_id is not None


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class MongoDBConnectionManager(ConnectionManager):
    provider = ProviderType.MONGODB.value

    def __init__(
        self,
        config: MongoDBConfig,
        metrics: MetricsCollector,
        resilience: ResilienceManager,
        translator: Translator = translate_mongodb_error,
        client_factory: Callable[[MongoDBConfig], Any] | None = None,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        super().__init__(metrics, resilience, translator)
        self.config = config
        self._client_factory = client_factory or self._build_client
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_attempts = 0
        self.supports_transactions = False
        self._client: Any = None
        self._database: Any = None

    @staticmethod
    def _build_client(config: MongoDBConfig) -> AsyncIOMotorClient:
        opts = config.options
        return AsyncIOMotorClient(
            config.connection_string,
            maxPoolSize=opts.max_pool_size,
            minPoolSize=opts.min_pool_size,
            maxIdleTimeMS=opts.max_idle_time_ms,
            serverSelectionTimeoutMS=opts.server_selection_timeout_ms,
            retryWrites=True,
            retryReads=True,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            raise DatabaseError(ErrorKind.CONNECTION, "MongoDB client not connected", provider=self.provider)
        return self._client

    @property
    def database(self) -> Any:
        if self._database is None:
            raise DatabaseError(ErrorKind.CONNECTION, "MongoDB database not connected", provider=self.provider)
        return self._database

    async def _open(self) -> None:
        if self._client is None:
            self._client = self._client_factory(self.config)
            self._database = self._client[self.config.database]

    async def _close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._database = None

    async def _ping(self) -> None:
        await self.client.admin.command("ping")

    async def _after_connect(self) -> None:
        self.reconnect_attempts = 0
        hello = await self.client.admin.command("hello")
        # Multi-document transactions need a replica set or a mongos router.
        self.supports_transactions = bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"
        logger.debug(f"MongoDB deployment supports transactions: {self.supports_transactions}")

    async def reconnect(self) -> None:
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            raise DatabaseError(
                ErrorKind.CONNECTION,
                "Maximum reconnection attempts exceeded",
                provider=self.provider,
            )
        self.reconnect_attempts += 1
        await super().reconnect()

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self._database is not None

    def collection(self, name: str | None = None) -> Any:
        return self.database[name or self.config.primary_collection]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class MongoDBTransaction:
    """Buffers write operations and applies them inside session.with_transaction."""

    def __init__(self, client: "MongoDBDataAccessClient") -> None:
        self.id = f"mongodb_txn_{uuid.uuid4().hex[:12]}"
        self._client = client
        self._operations: list[TransactionOperation] = []
        self._session: Any = None
        self._active = True

    @property
    def operations(self) -> list[TransactionOperation]:
        return list(self._operations)

    def is_active(self) -> bool:
        return self._active

    def _ensure_active(self) -> None:
        if not self._active:
            raise DatabaseError(
                ErrorKind.TRANSACTION, f"Transaction {self.id} is no longer active", provider="mongodb"
            )

    async def _get_session(self) -> Any:
        if self._session is None:
            self._session = await self._client.connection.client.start_session()
        return self._session

    async def _end_session(self) -> None:
        if self._session is not None:
            await self._session.end_session()
            self._session = None

    async def get(self, key: DatabaseKey) -> dict[str, Any] | None:
        self._ensure_active()
        session = await self._get_session()
        document = await self._client.connection.collection().find_one(key_filter(key), session=session)
        return from_document(document)

    async def put(self, data: dict[str, Any]) -> None:
        self._ensure_active()
        self._operations.append(TransactionOperation.put(data))

    async def update(self, update_input: UpdateInput) -> None:
        self._ensure_active()
        self._operations.append(TransactionOperation.update(update_input))

    async def delete(self, key: DatabaseKey) -> None:
        self._ensure_active()
        self._operations.append(TransactionOperation.delete(key))

    async def condition_check(self, key: DatabaseKey, condition: FilterCondition) -> None:
        self._ensure_active()
        self._operations.append(TransactionOperation.condition_check(key, condition))

    async def commit(self) -> None:
        # Stays active on failure so the caller can retry or roll back.
        self._ensure_active()
        if self._operations:
            session = await self._get_session()
            await self._client.run_in_session(self._operations, session)
        self._active = False
        await self._end_session()

    async def rollback(self) -> None:
        self._operations.clear()
        self._active = False
        await self._end_session()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class MongoDBDataAccessClient(BaseDatabaseClient):
    """DataAccessLayer over the configured primary collection."""

    _provider_type = ProviderType.MONGODB

    def __init__(self, connection: MongoDBConnectionManager) -> None:
        super().__init__(connection)
        self.config = connection.config

    @property
    def supports_transactions(self) -> bool:
        return self.connection.supports_transactions

    def _collection(self) -> Any:
        return self.connection.collection()

    async def ensure_indexes(self) -> None:
        """Create the unique pk/sk index and the pksk lookup index."""
        self._validate_connection()
        collection = self._collection()
        await self._call(
            "ensure_indexes",
            lambda: collection.create_index([("pk", ASCENDING), ("sk", ASCENDING)], unique=True),
        )
        await self._call("ensure_indexes", lambda: collection.create_index("pksk"))

    # -- Single item -------------------------------------------------------

    async def get(self, key: DatabaseKey, options: QueryOptions | None = None) -> dict[str, Any] | None:
        async with self._operation("get"):
            self._validate_key(key)
            self._validate_connection()
            collection = self._collection()
            projection = _projection(options.projection if options else None)
            document = await self._call(
                "get", lambda: collection.find_one(key_filter(key), projection)
            )
            return from_document(document)

    async def put(self, data: dict[str, Any], options: PutOptions | None = None) -> None:
        async with self._operation("put"):
            self._validate_data(data)
            if options is not None:
                self._validate_condition(options.condition)
            self._validate_connection()

            collection = self._collection()
            document = to_document(data, _now())
            keys = {"pk": document["pk"], "sk": document["sk"]}

            if options is not None and options.ensure_not_exists:
                inserted = await self._call("put", lambda: _insert_if_absent(collection, keys, document))
                if not inserted:
                    raise DatabaseError(
                        ErrorKind.DUPLICATE_KEY,
                        f"Item already exists: {keys['pk']}#{keys['sk']}",
                        provider=self.provider,
                    )
                return

            if options is not None and options.condition is not None:
                await self._conditional_put(collection, keys, document, options.condition)
                return

            await self._call("put", lambda: collection.replace_one(keys, document, upsert=True))

    async def _conditional_put(
        self,
        collection: Any,
        keys: dict[str, str],
        document: dict[str, Any],
        condition: FilterCondition,
        session: Any = None,
    ) -> None:
        current = await collection.find_one(keys, session=session)
        if current is None:
            if not evaluate_condition(None, condition):
                raise _conditional_failed("Condition check failed: item does not exist")
            if not await _insert_if_absent(collection, keys, document, session):
                raise _conditional_failed("Condition check failed: item was created concurrently")
            return

        result = await collection.replace_one(
            combine(keys, build_condition_query(condition)), document, session=session
        )
        if result.matched_count == 0:
            raise _conditional_failed("Condition check failed")

    async def update(
        self, update_input: UpdateInput, options: UpdateOptions | None = None
    ) -> dict[str, Any] | None:
        return_values = options.return_values if options else "ALL_NEW"
        async with self._operation("update"):
            self._validate_update(update_input)
            condition = (options.condition if options else None) or update_input.condition
            self._validate_condition(condition)
            self._validate_connection()

            collection = self._collection()
            now = _now()
            keys = key_filter(update_input.key)
            query = combine(keys, build_condition_query(condition) if condition else None)
            update = build_update_document(update_input, now)
            if condition is None:
                # Mirror the key-value backend: updating a missing item creates it.
                update["$setOnInsert"] = {"pksk": f"{keys['pk']}#{keys['sk']}", "createdAt": now}

            document = await self._call(
                "update",
                lambda: collection.find_one_and_update(
                    query,
                    update,
                    return_document=(
                        ReturnDocument.BEFORE
                        if return_values in ("ALL_OLD", "UPDATED_OLD")
                        else ReturnDocument.AFTER
                    ),
                    upsert=condition is None,
                ),
            )
            if document is None and condition is not None:
                raise _conditional_failed("Update condition not met or item not found")
            if return_values == "NONE":
                return None
            return from_document(document)

    async def delete(self, key: DatabaseKey, options: DeleteOptions | None = None) -> dict[str, Any] | None:
        condition = options.condition if options else None
        async with self._operation("delete"):
            self._validate_key(key)
            self._validate_condition(condition)
            self._validate_connection()

            collection = self._collection()
            query = combine(key_filter(key), build_condition_query(condition) if condition else None)

            if options is not None and options.return_values == "ALL_OLD":
                document = await self._call("delete", lambda: collection.find_one_and_delete(query))
                if document is None:
                    raise DatabaseError(
                        ErrorKind.ITEM_NOT_FOUND, "Item not found or condition not met", provider=self.provider
                    )
                return from_document(document)

            result = await self._call("delete", lambda: collection.delete_one(query))
            if result.deleted_count == 0:
                raise DatabaseError(
                    ErrorKind.ITEM_NOT_FOUND, "Item not found or condition not met", provider=self.provider
                )
            return None

    # -- Multi item --------------------------------------------------------

    async def _find(
        self,
        name: str,
        query: dict[str, Any],
        projection: list[str] | None,
        sort: list[tuple[str, int]] | None,
        skip: int,
        limit: int | None,
    ) -> list[dict[str, Any]]:
        collection = self._collection()

        async def run() -> list[dict[str, Any]]:
            cursor = collection.find(query, _projection(projection))
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=None)

        documents = await self._call(name, run)
        return [from_document(d) for d in documents]

    async def query(self, query_input: QueryInput) -> list[dict[str, Any]]:
        async with self._operation("query"):
            self._validate_key_condition(query_input.key_condition)
            self._validate_condition(query_input.filter_condition)
            self._validate_connection()

            start = time.perf_counter()
            query = combine(
                build_key_condition_query(query_input.key_condition) if query_input.key_condition else None,
                build_condition_query(query_input.filter_condition) if query_input.filter_condition else None,
            )
            sort = None
            if query_input.key_condition is not None and query_input.key_condition.field == "sk":
                direction = DESCENDING if query_input.sort_order.upper() == "DESC" else ASCENDING
                sort = [("sk", direction)]

            items = await self._find(
                "query",
                query,
                query_input.projection,
                sort,
                _skip_from_cursor(query_input.start_key),
                query_input.limit,
            )
            self.metrics.record_query_performance("query", (time.perf_counter() - start) * 1000, len(items))
            return items

    async def scan(self, scan_input: ScanInput) -> ScanResult:
        async with self._operation("scan"):
            self._validate_condition(scan_input.filter_condition)
            self._validate_connection()

            start = time.perf_counter()
            query = build_condition_query(scan_input.filter_condition) if scan_input.filter_condition else {}
            skip = _skip_from_cursor(scan_input.start_key)
            items = await self._find("scan", query, scan_input.projection, None, skip, scan_input.limit)

            cursor = None
            if scan_input.limit and len(items) == scan_input.limit:
                cursor = {"skip": skip + len(items)}
            self.metrics.record_query_performance("scan", (time.perf_counter() - start) * 1000, len(items))
            return ScanResult(items=items, cursor=cursor)

    async def batch_get(
        self, keys: list[DatabaseKey], options: BatchOptions | None = None
    ) -> list[dict[str, Any]]:
        async with self._operation("batch_get"):
            for key in keys:
                self._validate_key(key)
            self._validate_connection()
            if not keys:
                return []

            # Every key maps to the primary collection: one $or covers the batch.
            query = {"$or": [key_filter(k) for k in keys]}
            projection = options.projection if options else None
            return await self._find("batch_get", query, projection, None, 0, None)

    # -- Transactions ------------------------------------------------------

    async def begin_transaction(self, options: Any = None) -> MongoDBTransaction:
        self._validate_connection()
        return MongoDBTransaction(self)

    async def _apply(self, operation: TransactionOperation, session: Any) -> None:
        collection = self._collection()
        now = _now()

        if operation.type is OperationType.PUT:
            document = to_document(operation.data or {}, now)
            keys = {"pk": document["pk"], "sk": document["sk"]}
            if operation.condition is not None:
                await self._conditional_put(collection, keys, document, operation.condition, session)
            else:
                await collection.replace_one(keys, document, upsert=True, session=session)
            return

        if operation.type is OperationType.UPDATE:
            update_input = operation.update_input
            condition = operation.condition or update_input.condition
            keys = key_filter(update_input.key)
            update = build_update_document(update_input, now)
            if condition is None:
                update["$setOnInsert"] = {"pksk": f"{keys['pk']}#{keys['sk']}", "createdAt": now}
            result = await collection.update_one(
                combine(keys, build_condition_query(condition) if condition else None),
                update,
                upsert=condition is None,
                session=session,
            )
            if condition is not None and result.matched_count == 0:
                raise _conditional_failed("Update condition not met or item not found")
            return

        if operation.type is OperationType.DELETE:
            query = combine(
                key_filter(operation.target_key()),
                build_condition_query(operation.condition) if operation.condition else None,
            )
            result = await collection.delete_one(query, session=session)
            if result.deleted_count == 0:
                if operation.condition is not None:
                    raise _conditional_failed("Delete condition not met")
                raise DatabaseError(ErrorKind.ITEM_NOT_FOUND, "Item not found", provider=self.provider)
            return

        if operation.type is OperationType.CONDITION_CHECK:
            query = combine(key_filter(operation.target_key()), build_condition_query(operation.condition))
            if await collection.find_one(query, session=session) is None:
                raise _conditional_failed("Condition check failed")
            return

        raise validation_error(f"Unsupported transaction operation type: {operation.type}", self.provider)

    async def _with_transaction(self, operations: list[TransactionOperation], session: Any) -> None:
        async def callback(s: Any) -> None:
            for operation in operations:
                await self._apply(operation, s)

        await session.with_transaction(callback)

    async def run_in_session(self, operations: list[TransactionOperation], session: Any) -> None:
        """Apply operations atomically inside session.with_transaction."""
        async with self._operation("transaction", operation_count=len(operations)):
            await self._with_transaction(operations, session)

    async def execute_transaction(self, operations: list[TransactionOperation]) -> None:
        async with self._operation("transaction", operation_count=len(operations)):
            self._validate_operations(operations)
            self._validate_connection()
            if not operations:
                return

            session = await self.connection.client.start_session()
            try:
                await self._with_transaction(operations, session)
            finally:
                await session.end_session()

    # -- Escape hatch ------------------------------------------------------

    async def execute_native(self, command: Callable[[Any], Any]) -> Any:
        """Call command(database) and await the result when it is awaitable."""
        async with self._operation("native"):
            if not callable(command):
                raise validation_error("execute_native expects a callable taking the database", self.provider)
            self._validate_connection()
            result = command(self.connection.database)
            if inspect.isawaitable(result):
                result = await result
            return result
