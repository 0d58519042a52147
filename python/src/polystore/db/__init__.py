"""
Database abstraction layer.

Provides a unified async interface over DynamoDB and MongoDB backends.
Controlled by DB_PROVIDER environment variable (keyvalue/dynamodb or document/mongodb).
"""

from .errors import DatabaseError, ErrorKind, ErrorTranslatorRegistry, default_translators
from .models import (
    DatabaseKey,
    FilterCondition,
    KeyCondition,
    ProviderType,
    QueryInput,
    ScanInput,
    ScanResult,
    TransactionOperation,
    UpdateInput,
)
from .protocol import DataAccessLayer, Transaction
from .factory import get_db_client, reset_db_client

__all__ = [
    "get_db_client",
    "reset_db_client",
    "DataAccessLayer",
    "Transaction",
    "DatabaseError",
    "ErrorKind",
    "ErrorTranslatorRegistry",
    "default_translators",
    "DatabaseKey",
    "FilterCondition",
    "KeyCondition",
    "ProviderType",
    "QueryInput",
    "ScanInput",
    "ScanResult",
    "TransactionOperation",
    "UpdateInput",
]
