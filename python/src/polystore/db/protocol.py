"""
Data Access Protocol

Defines the structural interface that every provider adapter implements.
Uses Python Protocols for structural subtyping: callers such as the
transaction manager, the migrator and the factory depend on these shapes,
not on a concrete adapter class.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from .models import (
    BatchOptions,
    DatabaseKey,
    DeleteOptions,
    HealthStatus,
    ProviderType,
    PutOptions,
    QueryInput,
    QueryOptions,
    ScanInput,
    ScanResult,
    TransactionOperation,
    UpdateInput,
    UpdateOptions,
)


@runtime_checkable
class Transaction(Protocol):
    """Native transaction handle returned by DataAccessLayer.begin_transaction()."""

    id: str

    async def get(self, key: DatabaseKey) -> dict[str, Any] | None: ...
    async def put(self, data: dict[str, Any]) -> None: ...
    async def update(self, update_input: UpdateInput) -> None: ...
    async def delete(self, key: DatabaseKey) -> None: ...
    async def condition_check(self, key: DatabaseKey, condition: Any) -> None: ...

    async def commit(self) -> None: ...
    async def rollback(self) -> None: ...
    def is_active(self) -> bool: ...


@runtime_checkable
class DataAccessLayer(Protocol):
    """
    Unified data-access interface.

    Implemented by DynamoDBDataAccessClient (boto3) and
    MongoDBDataAccessClient (motor).
    """

    # Connection
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    def is_connected(self) -> bool: ...
    async def health_check(self) -> HealthStatus: ...
    def subscribe(self, event: Any, listener: Callable[..., Any]) -> Callable[[], None]: ...

    # Single item
    async def get(self, key: DatabaseKey, options: QueryOptions | None = None) -> dict[str, Any] | None: ...
    async def put(self, data: dict[str, Any], options: PutOptions | None = None) -> None: ...
    async def update(
        self, update_input: UpdateInput, options: UpdateOptions | None = None
    ) -> dict[str, Any] | None: ...
    async def delete(self, key: DatabaseKey, options: DeleteOptions | None = None) -> None: ...

    # Multi item
    async def query(self, query_input: QueryInput) -> list[dict[str, Any]]: ...
    async def scan(self, scan_input: ScanInput) -> ScanResult: ...
    async def batch_get(
        self, keys: list[DatabaseKey], options: BatchOptions | None = None
    ) -> list[dict[str, Any]]: ...

    # Transactions
    async def begin_transaction(self, options: Any = None) -> Transaction: ...
    async def execute_transaction(self, operations: list[TransactionOperation]) -> None: ...

    # Escape hatch
    async def execute_native(self, command: Any) -> Any: ...

    # Capabilities
    @property
    def provider_type(self) -> ProviderType: ...

    @property
    def supports_transactions(self) -> bool: ...
