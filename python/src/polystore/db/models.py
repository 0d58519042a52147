"""
Unified data model shared by every provider adapter.

Keys, conditions, query/scan/update inputs, per-call options and
transaction operations. All values are plain dataclasses built per call;
validate_* helpers raise a VALIDATION DatabaseError before anything
touches the network.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .errors import validation_error

MAX_TRANSACTION_OPERATIONS = 25
MAX_BATCH_GET_KEYS = 100

KEY_OPERATORS = frozenset({"=", "begins_with", "between"})
FILTER_OPERATORS = frozenset(
    {"=", "!=", "<", "<=", ">", ">=", "contains", "exists", "not_exists", "in"}
)
VALUELESS_OPERATORS = frozenset({"exists", "not_exists", "in"})
RETURN_VALUES = frozenset({"NONE", "ALL_OLD", "UPDATED_OLD", "ALL_NEW", "UPDATED_NEW"})


class ProviderType(str, Enum):
    DYNAMODB = "dynamodb"
    MONGODB = "mongodb"

    @classmethod
    def parse(cls, value: str) -> "ProviderType":
        normalized = (value or "").lower().strip()
        aliases = {
            "dynamodb": cls.DYNAMODB,
            "keyvalue": cls.DYNAMODB,
            "mongodb": cls.MONGODB,
            "document": cls.MONGODB,
        }
        if normalized not in aliases:
            raise ValueError(value)
        return aliases[normalized]


# ---------------------------------------------------------------------------
# Keys and conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseKey:
    primary: str | int | float
    sort: str | int | float | None = None

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "DatabaseKey":
        """Derive the key of a stored or to-be-stored item."""
        if item.get("pk") is not None:
            return cls(primary=item["pk"], sort=item.get("sk"))
        if item.get("primary") is not None:
            return cls(primary=item["primary"], sort=item.get("sort"))
        raise validation_error("Item must carry pk/sk or primary/sort key attributes")


@dataclass
class KeyCondition:
    field: str
    operator: str
    value: Any = None
    value2: Any = None


@dataclass
class FilterCondition:
    field: str
    operator: str
    value: Any = None
    values: list[Any] | None = None


@dataclass
class QueryInput:
    key_condition: KeyCondition | None = None
    filter_condition: FilterCondition | None = None
    projection: list[str] | None = None
    index_name: str | None = None
    limit: int | None = None
    sort_order: str = "ASC"
    start_key: Any = None


@dataclass
class ScanInput:
    filter_condition: FilterCondition | None = None
    projection: list[str] | None = None
    index_name: str | None = None
    limit: int | None = None
    start_key: Any = None


@dataclass
class ScanResult:
    items: list[dict[str, Any]]
    cursor: Any = None


@dataclass
class UpdateInput:
    key: DatabaseKey
    updates: dict[str, Any] = field(default_factory=dict)
    condition: FilterCondition | None = None
    increment_fields: dict[str, int | float] | None = None
    append_to_list: dict[str, list[Any]] | None = None
    remove_from_list: dict[str, list[Any]] | None = None


# ---------------------------------------------------------------------------
# Per-call options
# ---------------------------------------------------------------------------


@dataclass
class QueryOptions:
    consistent_read: bool | None = None
    projection: list[str] | None = None


@dataclass
class PutOptions:
    ensure_not_exists: bool = False
    condition: FilterCondition | None = None


@dataclass
class UpdateOptions:
    condition: FilterCondition | None = None
    return_values: str = "ALL_NEW"


@dataclass
class DeleteOptions:
    condition: FilterCondition | None = None
    return_values: str = "NONE"


@dataclass
class BatchOptions:
    consistent_read: bool | None = None
    projection: list[str] | None = None


# ---------------------------------------------------------------------------
# Transaction operations
# ---------------------------------------------------------------------------


class OperationType(str, Enum):
    PUT = "put"
    UPDATE = "update"
    DELETE = "delete"
    CONDITION_CHECK = "condition_check"


@dataclass
class TransactionOperation:
    type: OperationType
    data: dict[str, Any] | None = None
    update_input: UpdateInput | None = None
    key: DatabaseKey | None = None
    condition: FilterCondition | None = None

    @classmethod
    def put(cls, data: dict[str, Any], condition: FilterCondition | None = None) -> "TransactionOperation":
        return cls(OperationType.PUT, data=data, condition=condition)

    @classmethod
    def update(cls, update_input: UpdateInput) -> "TransactionOperation":
        return cls(OperationType.UPDATE, update_input=update_input, key=update_input.key)

    @classmethod
    def delete(cls, key: DatabaseKey, condition: FilterCondition | None = None) -> "TransactionOperation":
        return cls(OperationType.DELETE, key=key, condition=condition)

    @classmethod
    def condition_check(cls, key: DatabaseKey, condition: FilterCondition) -> "TransactionOperation":
        return cls(OperationType.CONDITION_CHECK, key=key, condition=condition)

    def target_key(self) -> DatabaseKey:
        if self.type is OperationType.PUT:
            return DatabaseKey.from_item(self.data or {})
        if self.type is OperationType.UPDATE and self.update_input is not None:
            return self.update_input.key
        if self.key is None:
            raise validation_error(f"{self.type.value} operation requires a key")
        return self.key


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@dataclass
class HealthMetrics:
    average_response_time: float = 0.0
    error_rate: float = 0.0
    connection_count: int = 0


@dataclass
class HealthStatus:
    healthy: bool
    provider: str
    connection_status: str
    last_successful_operation: datetime | None = None
    metrics: HealthMetrics = field(default_factory=HealthMetrics)
    warnings: list[Any] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_key(key: Any, provider: str | None = None) -> DatabaseKey:
    if not isinstance(key, DatabaseKey):
        raise validation_error("Key must be a DatabaseKey", provider)
    primary = key.primary
    if primary is None or isinstance(primary, bool) or not isinstance(primary, (str, int, float, Decimal)):
        raise validation_error("Key primary must be a string or number", provider)
    if isinstance(primary, str) and not primary:
        raise validation_error("Key primary must not be empty", provider)
    if key.sort is not None and (
        isinstance(key.sort, bool) or not isinstance(key.sort, (str, int, float, Decimal))
    ):
        raise validation_error("Key sort must be a string or number", provider)
    return key


def validate_key_condition(condition: KeyCondition, provider: str | None = None) -> None:
    if not condition.field:
        raise validation_error("Key condition requires a field", provider)
    if condition.operator not in KEY_OPERATORS:
        raise validation_error(f"Unsupported key condition operator: {condition.operator}", provider)
    if condition.value is None:
        raise validation_error(f"Key condition on {condition.field} requires a value", provider)
    if condition.operator == "between" and condition.value2 is None:
        raise validation_error("between key condition requires value2", provider)


def validate_filter_condition(condition: FilterCondition, provider: str | None = None) -> None:
    if not condition.field:
        raise validation_error("Filter condition requires a field", provider)
    if condition.operator not in FILTER_OPERATORS:
        raise validation_error(f"Unsupported condition operator: {condition.operator}", provider)
    if condition.operator == "in":
        if not condition.values:
            raise validation_error(f"'in' condition on {condition.field} requires a non-empty values list", provider)
    elif condition.operator not in VALUELESS_OPERATORS and condition.value is None:
        raise validation_error(
            f"'{condition.operator}' condition on {condition.field} requires a value", provider
        )


def validate_update_input(update_input: Any, provider: str | None = None) -> UpdateInput:
    if not isinstance(update_input, UpdateInput):
        raise validation_error("Update requires an UpdateInput", provider)
    validate_key(update_input.key, provider)
    if not (
        update_input.updates
        or update_input.increment_fields
        or update_input.append_to_list
        or update_input.remove_from_list
    ):
        raise validation_error("Update must change at least one field", provider)
    for name, delta in (update_input.increment_fields or {}).items():
        if isinstance(delta, bool) or not isinstance(delta, (int, float, Decimal)):
            raise validation_error(f"Increment for {name} must be numeric", provider)
    if update_input.condition is not None:
        validate_filter_condition(update_input.condition, provider)
    return update_input


def validate_data(data: Any, provider: str | None = None) -> dict[str, Any]:
    if not isinstance(data, dict) or not data:
        raise validation_error("Item data must be a non-empty mapping", provider)
    key = DatabaseKey.from_item(data)
    validate_key(key, provider)
    return data


def validate_operations(operations: list[TransactionOperation], provider: str | None = None) -> None:
    for operation in operations:
        if operation.type is OperationType.PUT:
            validate_data(operation.data, provider)
        elif operation.type is OperationType.UPDATE:
            validate_update_input(operation.update_input, provider)
        elif operation.type is OperationType.DELETE:
            validate_key(operation.key, provider)
        elif operation.type is OperationType.CONDITION_CHECK:
            validate_key(operation.key, provider)
            if operation.condition is None:
                raise validation_error("condition_check requires a condition", provider)
        else:
            raise validation_error(f"Unsupported transaction operation type: {operation.type}", provider)
        if operation.condition is not None:
            validate_filter_condition(operation.condition, provider)


# ---------------------------------------------------------------------------
# Item helpers
# ---------------------------------------------------------------------------


def storage_key(key: DatabaseKey) -> dict[str, str]:
    """
    Native key attributes for a DatabaseKey.

    A key without a sort value reuses primary as sort; stored items written
    by earlier versions rely on this layout.
    """
    primary = str(key.primary)
    sort = str(key.sort) if key.sort is not None else primary
    return {"pk": primary, "sk": sort}


def with_storage_key(data: dict[str, Any]) -> dict[str, Any]:
    """Copy of data with pk/sk filled in from primary/sort when missing."""
    item = dict(data)
    item.update(storage_key(DatabaseKey.from_item(data)))
    return item


def _compare(left: Any, right: Any, op: str) -> bool:
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right
    except TypeError:
        return False


def evaluate_condition(item: dict[str, Any] | None, condition: FilterCondition) -> bool:
    """Evaluate a FilterCondition against an in-memory item."""
    if item is None:
        return condition.operator == "not_exists"

    present = condition.field in item
    current = item.get(condition.field)
    op = condition.operator

    if op == "exists":
        return present
    if op == "not_exists":
        return not present
    if not present:
        return op == "!="
    if op == "=":
        return current == condition.value
    if op == "!=":
        return current != condition.value
    if op in ("<", "<=", ">", ">="):
        return _compare(current, condition.value, op)
    if op == "contains":
        if isinstance(current, str):
            return re.search(re.escape(str(condition.value)), current, re.IGNORECASE) is not None
        if isinstance(current, (list, set, tuple)):
            return condition.value in current
        return False
    if op == "in":
        return current in (condition.values or [])
    return False
