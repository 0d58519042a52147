"""
Client Manager Service

Process-wide access to the configured data access client and transaction
manager. Backing implementation is controlled by DB_PROVIDER.
"""

from __future__ import annotations

from ..db.factory import current_db_client, get_db_client, reset_db_client
from ..db.protocol import DataAccessLayer
from .transaction_manager import TransactionManager

_transaction_manager: TransactionManager | None = None


async def get_connected_client() -> DataAccessLayer:
    """get_db_client(), connected on first use."""
    client = get_db_client()
    if not client.is_connected():
        await client.connect()
    return client


def get_transaction_manager() -> TransactionManager:
    global _transaction_manager
    if _transaction_manager is None:
        _transaction_manager = TransactionManager()
    return _transaction_manager


async def shutdown() -> None:
    """Disconnect the singleton client and stop the transaction sweep."""
    global _transaction_manager
    if _transaction_manager is not None:
        await _transaction_manager.close()
        _transaction_manager = None
    client = current_db_client()
    if client is not None and client.is_connected():
        await client.disconnect()
    reset_db_client()


__all__ = [
    "get_db_client",
    "get_connected_client",
    "get_transaction_manager",
    "reset_db_client",
    "shutdown",
    "DataAccessLayer",
]
