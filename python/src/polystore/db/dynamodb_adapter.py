"""
DynamoDB Data Access Adapter

boto3-based implementation of DataAccessLayer. Uses the resource-level
client (boto3.resource("dynamodb").meta.client) so items travel as plain
Python values; floats are converted to Decimal on the way in and Decimals
back to int/float on the way out. Blocking boto3 calls run in a worker
thread through asyncio.to_thread.

Active when DB_PROVIDER=keyvalue (or dynamodb) + DYNAMODB_PRIMARY_TABLE is set.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

import boto3

from ..config.database_config import DynamoDBConfig
from ..config.logfire_config import get_logger
from ..services.metrics import MetricsCollector
from ..services.resilience import ResilienceManager
from .base import BaseDatabaseClient
from .connection import ConnectionManager
from .errors import DatabaseError, ErrorKind, Translator, translate_dynamodb_error, validation_error
from .models import (
    MAX_BATCH_GET_KEYS,
    MAX_TRANSACTION_OPERATIONS,
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
    storage_key,
    with_storage_key,
)

logger = get_logger(__name__)

CONNECTION_TEST_KEY = "__connection_test__"
HEALTH_CHECK_KEY = "__health_check__"
MAX_UNPROCESSED_RETRIES = 5


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def to_dynamo(value: Any) -> Any:
    """Python value -> value the resource-level client can serialize."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {to_dynamo(v) for v in value}
    return value


def from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {from_dynamo(v) for v in value}
    return value


# ---------------------------------------------------------------------------
# Expression building
# ---------------------------------------------------------------------------


_COMPARATORS = {"=": "=", "!=": "<>", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


@dataclass
class Expression:
    names: dict[str, str] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    _name_counter: int = 0
    _value_counter: int = 0

    def name(self, attribute: str, prefix: str = "#n") -> str:
        for placeholder, existing in self.names.items():
            if existing == attribute and placeholder.startswith(prefix):
                return placeholder
        placeholder = f"{prefix}{self._name_counter}"
        self._name_counter += 1
        self.names[placeholder] = attribute
        return placeholder

    def value(self, raw: Any) -> str:
        placeholder = f":v{self._value_counter}"
        self._value_counter += 1
        self.values[placeholder] = to_dynamo(raw)
        return placeholder

    def apply(self, params: dict[str, Any]) -> dict[str, Any]:
        if self.names:
            params["ExpressionAttributeNames"] = dict(self.names)
        if self.values:
            params["ExpressionAttributeValues"] = dict(self.values)
        return params


def build_condition(condition: FilterCondition, expr: Expression) -> str:
    """Compile a FilterCondition into a condition/filter expression."""
    n = expr.name(condition.field)
    op = condition.operator
    if op in _COMPARATORS:
        return f"{n} {_COMPARATORS[op]} {expr.value(condition.value)}"
    if op == "contains":
        return f"contains({n}, {expr.value(condition.value)})"
    if op == "exists":
        return f"attribute_exists({n})"
    if op == "not_exists":
        return f"attribute_not_exists({n})"
    if op == "in":
        placeholders = ", ".join(expr.value(v) for v in condition.values or [])
        return f"{n} IN ({placeholders})"
    raise validation_error(f"Unsupported condition operator: {op}", "dynamodb")


def build_key_condition(condition: KeyCondition, expr: Expression) -> str:
    n = expr.name(condition.field, prefix="#k")
    if condition.operator == "=":
        return f"{n} = {expr.value(condition.value)}"
    if condition.operator == "begins_with":
        return f"begins_with({n}, {expr.value(condition.value)})"
    if condition.operator == "between":
        low = expr.value(condition.value)
        high = expr.value(condition.value2)
        return f"{n} BETWEEN {low} AND {high}"
    raise validation_error(f"Unsupported key condition operator: {condition.operator}", "dynamodb")


def build_projection(fields: list[str], expr: Expression) -> str:
    return ", ".join(expr.name(f, prefix="#p") for f in fields)


def build_update_expression(
    update_input: UpdateInput,
    expr: Expression,
    current: dict[str, Any] | None = None,
) -> str:
    """
    Compile an UpdateInput into SET / ADD / DELETE clauses.

    remove_from_list needs the current item: list attributes are filtered
    and written back with SET, set attributes use DELETE.
    """
    set_parts: list[str] = []
    add_parts: list[str] = []
    delete_parts: list[str] = []

    for attribute, value in update_input.updates.items():
        set_parts.append(f"{expr.name(attribute)} = {expr.value(value)}")

    for attribute, delta in (update_input.increment_fields or {}).items():
        add_parts.append(f"{expr.name(attribute)} {expr.value(delta)}")

    for attribute, values in (update_input.append_to_list or {}).items():
        n = expr.name(attribute)
        expr.values[":empty_list"] = []
        set_parts.append(f"{n} = list_append(if_not_exists({n}, :empty_list), {expr.value(list(values))})")

    for attribute, values in (update_input.remove_from_list or {}).items():
        existing = (current or {}).get(attribute)
        if isinstance(existing, (set, frozenset)):
            delete_parts.append(f"{expr.name(attribute)} {expr.value(set(values))}")
        elif isinstance(existing, list):
            remaining = [v for v in existing if v not in values]
            set_parts.append(f"{expr.name(attribute)} = {expr.value(remaining)}")

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if add_parts:
        clauses.append("ADD " + ", ".join(add_parts))
    if delete_parts:
        clauses.append("DELETE " + ", ".join(delete_parts))
    return " ".join(clauses)


def _and(*parts: str | None) -> str | None:
    present = [p for p in parts if p]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return " AND ".join(f"({p})" for p in present)


# ---------------------------------------------------------------------------
# Connection manager
# ---------------------------------------------------------------------------


class DynamoDBConnectionManager(ConnectionManager):
    provider = ProviderType.DYNAMODB.value

    def __init__(
        self,
        config: DynamoDBConfig,
        metrics: MetricsCollector,
        resilience: ResilienceManager,
        translator: Translator = translate_dynamodb_error,
        client_factory: Callable[[DynamoDBConfig], Any] | None = None,
    ) -> None:
        super().__init__(metrics, resilience, translator)
        self.config = config
        self._client_factory = client_factory or self._build_client
        self._client: Any = None

    @staticmethod
    def _build_client(config: DynamoDBConfig) -> Any:
        kwargs: dict[str, Any] = {"region_name": config.region}
        if config.endpoint:
            kwargs["endpoint_url"] = config.endpoint
        return boto3.resource("dynamodb", **kwargs).meta.client

    @property
    def client(self) -> Any:
        if self._client is None:
            raise DatabaseError(
                ErrorKind.CONNECTION,
                "DynamoDB client is not initialised. Call connect() first.",
                provider=self.provider,
            )
        return self._client

    async def _open(self) -> None:
        if self._client is None:
            self._client = self._client_factory(self.config)

    async def _close(self) -> None:
        self._client = None

    async def _get_sentinel(self, sentinel: str) -> None:
        await asyncio.to_thread(
            self.client.get_item,
            TableName=self.config.primary_table,
            Key={"pk": sentinel, "sk": sentinel},
        )

    async def _ping(self) -> None:
        await self._get_sentinel(CONNECTION_TEST_KEY)

    async def _health_ping(self) -> None:
        await self._get_sentinel(HEALTH_CHECK_KEY)


# ---------------------------------------------------------------------------
# Native requests and transactions
# ---------------------------------------------------------------------------


@dataclass
class NativeRequest:
    """A raw client call: operation is the boto3 method name, e.g. "describe_table"."""

    operation: str
    params: dict[str, Any] = field(default_factory=dict)


class DynamoDBTransaction:
    """Buffers write operations and commits them in one transact_write_items."""

    def __init__(self, client: "DynamoDBDataAccessClient") -> None:
        self.id = f"dynamodb_txn_{uuid.uuid4().hex[:12]}"
        self._client = client
        self._operations: list[TransactionOperation] = []
        self._active = True

    @property
    def operations(self) -> list[TransactionOperation]:
        return list(self._operations)

    def is_active(self) -> bool:
        return self._active

    def _ensure_active(self) -> None:
        if not self._active:
            raise DatabaseError(
                ErrorKind.TRANSACTION,
                f"Transaction {self.id} is no longer active",
                provider=self._client.provider,
            )

    def _add(self, operation: TransactionOperation) -> None:
        self._ensure_active()
        if len(self._operations) >= MAX_TRANSACTION_OPERATIONS:
            raise validation_error(
                f"DynamoDB transactions support maximum {MAX_TRANSACTION_OPERATIONS} operations",
                self._client.provider,
            )
        self._operations.append(operation)

    async def get(self, key: DatabaseKey) -> dict[str, Any] | None:
        self._ensure_active()
        return await self._client.transact_get(key)

    async def put(self, data: dict[str, Any]) -> None:
        self._add(TransactionOperation.put(data))

    async def update(self, update_input: UpdateInput) -> None:
        self._add(TransactionOperation.update(update_input))

    async def delete(self, key: DatabaseKey) -> None:
        self._add(TransactionOperation.delete(key))

    async def condition_check(self, key: DatabaseKey, condition: FilterCondition) -> None:
        self._add(TransactionOperation.condition_check(key, condition))

    async def commit(self) -> None:
        # Stays active on failure so the caller can retry or roll back.
        self._ensure_active()
        if self._operations:
            await self._client.execute_transaction(self._operations)
        self._active = False

    async def rollback(self) -> None:
        # Nothing reached the table yet; dropping the buffer is the rollback.
        self._operations.clear()
        self._active = False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class DynamoDBDataAccessClient(BaseDatabaseClient):
    """
    DataAccessLayer over a pk/sk DynamoDB table.

    Reads and writes go to config.primary_table.
    """

    _provider_type = ProviderType.DYNAMODB

    def __init__(self, connection: DynamoDBConnectionManager) -> None:
        super().__init__(connection)
        self.config = connection.config

    @property
    def table(self) -> str:
        return self.config.primary_table

    def _native(self) -> Any:
        return self.connection.client

    async def _run(self, name: str, method: str, **params: Any) -> dict[str, Any]:
        client = self._native()
        fn = getattr(client, method)
        return await self._call(name, lambda: asyncio.to_thread(fn, **params))

    def _consistent(self, options: QueryOptions | BatchOptions | None) -> bool:
        if options is not None and options.consistent_read is not None:
            return options.consistent_read
        return self.config.consistent_read

    # -- Single item -------------------------------------------------------

    async def get(self, key: DatabaseKey, options: QueryOptions | None = None) -> dict[str, Any] | None:
        async with self._operation("get"):
            self._validate_key(key)
            self._validate_connection()
            params: dict[str, Any] = {
                "TableName": self.table,
                "Key": storage_key(key),
                "ConsistentRead": self._consistent(options),
            }
            if options is not None and options.projection:
                expr = Expression()
                params["ProjectionExpression"] = build_projection(options.projection, expr)
                expr.apply(params)
            response = await self._run("get", "get_item", **params)
            item = response.get("Item")
            return from_dynamo(item) if item is not None else None

    async def put(self, data: dict[str, Any], options: PutOptions | None = None) -> None:
        async with self._operation("put"):
            self._validate_data(data)
            if options is not None:
                self._validate_condition(options.condition)
            self._validate_connection()

            params: dict[str, Any] = {"TableName": self.table, "Item": to_dynamo(with_storage_key(data))}
            if options is not None:
                expr = Expression()
                guard = "attribute_not_exists(pk)" if options.ensure_not_exists else None
                compiled = build_condition(options.condition, expr) if options.condition else None
                condition = _and(guard, compiled)
                if condition:
                    params["ConditionExpression"] = condition
                    expr.apply(params)
            await self._run("put", "put_item", **params)

    async def update(
        self, update_input: UpdateInput, options: UpdateOptions | None = None
    ) -> dict[str, Any] | None:
        async with self._operation("update"):
            self._validate_update(update_input)
            condition = (options.condition if options else None) or update_input.condition
            self._validate_condition(condition)
            self._validate_connection()

            current = None
            if update_input.remove_from_list:
                current = await self._current_item(update_input.key)

            expr = Expression()
            update_expression = build_update_expression(update_input, expr, current)
            if not update_expression:
                # Only removals from attributes that are absent: nothing to write.
                return from_dynamo(current) if current is not None else None

            params: dict[str, Any] = {
                "TableName": self.table,
                "Key": storage_key(update_input.key),
                "UpdateExpression": update_expression,
                "ReturnValues": options.return_values if options else "ALL_NEW",
            }
            if condition is not None:
                params["ConditionExpression"] = build_condition(condition, expr)
            expr.apply(params)

            response = await self._run("update", "update_item", **params)
            attributes = response.get("Attributes")
            return from_dynamo(attributes) if attributes is not None else None

    async def _current_item(self, key: DatabaseKey) -> dict[str, Any] | None:
        response = await self._run(
            "get", "get_item", TableName=self.table, Key=storage_key(key), ConsistentRead=True
        )
        return response.get("Item")

    async def delete(self, key: DatabaseKey, options: DeleteOptions | None = None) -> dict[str, Any] | None:
        async with self._operation("delete"):
            self._validate_key(key)
            if options is not None:
                self._validate_condition(options.condition)
            self._validate_connection()

            params: dict[str, Any] = {"TableName": self.table, "Key": storage_key(key)}
            if options is not None:
                if options.condition is not None:
                    expr = Expression()
                    params["ConditionExpression"] = build_condition(options.condition, expr)
                    expr.apply(params)
                if options.return_values in ("ALL_OLD",):
                    params["ReturnValues"] = "ALL_OLD"
            response = await self._run("delete", "delete_item", **params)
            attributes = response.get("Attributes")
            return from_dynamo(attributes) if attributes is not None else None

    # -- Multi item --------------------------------------------------------

    async def query(self, query_input: QueryInput) -> list[dict[str, Any]]:
        async with self._operation("query"):
            if query_input.key_condition is None:
                raise validation_error("DynamoDB query requires a key condition", self.provider)
            self._validate_key_condition(query_input.key_condition)
            self._validate_condition(query_input.filter_condition)
            self._validate_connection()

            start = time.perf_counter()
            expr = Expression()
            params: dict[str, Any] = {
                "TableName": self.table,
                "KeyConditionExpression": build_key_condition(query_input.key_condition, expr),
                "ScanIndexForward": query_input.sort_order.upper() != "DESC",
            }
            if query_input.filter_condition is not None:
                params["FilterExpression"] = build_condition(query_input.filter_condition, expr)
            if query_input.projection:
                params["ProjectionExpression"] = build_projection(query_input.projection, expr)
            if query_input.index_name:
                params["IndexName"] = query_input.index_name
            if query_input.limit:
                params["Limit"] = query_input.limit
            if query_input.start_key:
                params["ExclusiveStartKey"] = query_input.start_key
            expr.apply(params)

            items: list[dict[str, Any]] = []
            while True:
                response = await self._run("query", "query", **params)
                items.extend(from_dynamo(i) for i in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                # A caller-supplied limit means one page only.
                if query_input.limit or not last_key:
                    break
                params["ExclusiveStartKey"] = last_key

            self.metrics.record_query_performance(
                "query", (time.perf_counter() - start) * 1000, len(items)
            )
            return items

    async def scan(self, scan_input: ScanInput) -> ScanResult:
        async with self._operation("scan"):
            self._validate_condition(scan_input.filter_condition)
            self._validate_connection()

            start = time.perf_counter()
            expr = Expression()
            params: dict[str, Any] = {"TableName": self.table}
            if scan_input.filter_condition is not None:
                params["FilterExpression"] = build_condition(scan_input.filter_condition, expr)
            if scan_input.projection:
                params["ProjectionExpression"] = build_projection(scan_input.projection, expr)
            if scan_input.index_name:
                params["IndexName"] = scan_input.index_name
            if scan_input.limit:
                params["Limit"] = scan_input.limit
            if scan_input.start_key:
                params["ExclusiveStartKey"] = scan_input.start_key
            expr.apply(params)

            response = await self._run("scan", "scan", **params)
            items = [from_dynamo(i) for i in response.get("Items", [])]
            self.metrics.record_query_performance(
                "scan", (time.perf_counter() - start) * 1000, len(items)
            )
            return ScanResult(items=items, cursor=response.get("LastEvaluatedKey"))

    async def batch_get(
        self, keys: list[DatabaseKey], options: BatchOptions | None = None
    ) -> list[dict[str, Any]]:
        async with self._operation("batch_get"):
            for key in keys:
                self._validate_key(key)
            self._validate_connection()
            if not keys:
                return []

            # BatchGetItem rejects duplicate keys within one request.
            native_keys: list[dict[str, str]] = []
            seen: set[tuple[str, str]] = set()
            for key in keys:
                native = storage_key(key)
                marker = (native["pk"], native["sk"])
                if marker not in seen:
                    seen.add(marker)
                    native_keys.append(native)

            results: list[dict[str, Any]] = []
            for offset in range(0, len(native_keys), MAX_BATCH_GET_KEYS):
                chunk = native_keys[offset : offset + MAX_BATCH_GET_KEYS]
                results.extend(await self._batch_get_chunk(chunk, options))
            return results

    async def _batch_get_chunk(
        self, chunk: list[dict[str, str]], options: BatchOptions | None
    ) -> list[dict[str, Any]]:
        request: dict[str, Any] = {"Keys": chunk, "ConsistentRead": self._consistent(options)}
        if options is not None and options.projection:
            expr = Expression()
            request["ProjectionExpression"] = build_projection(options.projection, expr)
            request["ExpressionAttributeNames"] = dict(expr.names)

        items: list[dict[str, Any]] = []
        pending: dict[str, Any] = {self.table: request}
        for attempt in range(1, MAX_UNPROCESSED_RETRIES + 2):
            response = await self._run("batch_get", "batch_get_item", RequestItems=pending)
            items.extend(from_dynamo(i) for i in response.get("Responses", {}).get(self.table, []))
            pending = response.get("UnprocessedKeys") or {}
            if not pending:
                return items
            if attempt > MAX_UNPROCESSED_RETRIES:
                break
            delay = self.resilience.retry.calculate_delay(attempt)
            logger.warning(
                f"batch_get left {len(pending.get(self.table, {}).get('Keys', []))} keys unprocessed; "
                f"retrying in {delay * 1000:.0f}ms"
            )
            await asyncio.sleep(delay)

        raise DatabaseError(
            ErrorKind.THROUGHPUT_EXCEEDED,
            "batch_get could not read every key: unprocessed keys remain after retries",
            provider=self.provider,
        )

    # -- Transactions ------------------------------------------------------

    async def begin_transaction(self, options: Any = None) -> DynamoDBTransaction:
        self._validate_connection()
        return DynamoDBTransaction(self)

    def _transact_item(self, operation: TransactionOperation) -> dict[str, Any]:
        if operation.type is OperationType.PUT:
            put: dict[str, Any] = {
                "TableName": self.table,
                "Item": to_dynamo(with_storage_key(operation.data or {})),
            }
            if operation.condition is not None:
                expr = Expression()
                put["ConditionExpression"] = build_condition(operation.condition, expr)
                expr.apply(put)
            return {"Put": put}

        if operation.type is OperationType.UPDATE:
            update_input = operation.update_input
            if update_input is None:
                raise validation_error("Update operation requires an UpdateInput", self.provider)
            if update_input.remove_from_list:
                raise validation_error(
                    "remove_from_list is not supported inside a DynamoDB transaction", self.provider
                )
            expr = Expression()
            update: dict[str, Any] = {
                "TableName": self.table,
                "Key": storage_key(update_input.key),
                "UpdateExpression": build_update_expression(update_input, expr),
            }
            condition = operation.condition or update_input.condition
            if condition is not None:
                update["ConditionExpression"] = build_condition(condition, expr)
            expr.apply(update)
            return {"Update": update}

        if operation.type is OperationType.DELETE:
            delete: dict[str, Any] = {"TableName": self.table, "Key": storage_key(operation.target_key())}
            if operation.condition is not None:
                expr = Expression()
                delete["ConditionExpression"] = build_condition(operation.condition, expr)
                expr.apply(delete)
            return {"Delete": delete}

        if operation.type is OperationType.CONDITION_CHECK:
            expr = Expression()
            check: dict[str, Any] = {
                "TableName": self.table,
                "Key": storage_key(operation.target_key()),
                "ConditionExpression": build_condition(operation.condition, expr),
            }
            expr.apply(check)
            return {"ConditionCheck": check}

        raise validation_error(f"Unsupported transaction operation type: {operation.type}", self.provider)

    async def execute_transaction(self, operations: list[TransactionOperation]) -> None:
        async with self._operation("transaction", operation_count=len(operations)):
            if len(operations) > MAX_TRANSACTION_OPERATIONS:
                raise validation_error(
                    f"DynamoDB transactions support maximum {MAX_TRANSACTION_OPERATIONS} operations",
                    self.provider,
                )
            self._validate_operations(operations)
            self._validate_connection()
            if not operations:
                return
            items = [self._transact_item(op) for op in operations]
            await self._run("transaction", "transact_write_items", TransactItems=items)
            logger.debug(f"Committed DynamoDB transaction with {len(items)} operations")

    async def transact_get(self, key: DatabaseKey) -> dict[str, Any] | None:
        async with self._operation("get"):
            self._validate_key(key)
            self._validate_connection()
            response = await self._run(
                "get",
                "transact_get_items",
                TransactItems=[{"Get": {"TableName": self.table, "Key": storage_key(key)}}],
            )
            responses = response.get("Responses") or [{}]
            item = responses[0].get("Item")
            return from_dynamo(item) if item is not None else None

    # -- Escape hatch ------------------------------------------------------

    async def execute_native(self, command: NativeRequest | Callable[[Any], Any]) -> Any:
        """
        Run a raw boto3 call.

        Accepts a NativeRequest naming a client method, or a callable that
        receives the low-level client and runs in a worker thread.
        """
        async with self._operation("native"):
            self._validate_connection()
            client = self._native()
            if isinstance(command, NativeRequest):
                fn = getattr(client, command.operation, None)
                if fn is None:
                    raise validation_error(f"Unknown DynamoDB operation: {command.operation}", self.provider)
                return await self._call("native", lambda: asyncio.to_thread(fn, **command.params))
            if callable(command):
                result = await asyncio.to_thread(command, client)
                if asyncio.iscoroutine(result):
                    result = await result
                return result
            raise validation_error("execute_native expects a NativeRequest or a callable", self.provider)
