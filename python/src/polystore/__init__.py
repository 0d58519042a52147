"""
polystore: provider-agnostic async data access over DynamoDB and MongoDB.
"""

from .db import (
    DatabaseError,
    DatabaseKey,
    DataAccessLayer,
    ErrorKind,
    get_db_client,
    reset_db_client,
)
from .db.factory import DatabaseProviderFactory
from .services.transaction_manager import TransactionManager, TransactionOptions

__version__ = "0.1.0"

__all__ = [
    "DatabaseError",
    "DatabaseKey",
    "DataAccessLayer",
    "DatabaseProviderFactory",
    "ErrorKind",
    "TransactionManager",
    "TransactionOptions",
    "get_db_client",
    "reset_db_client",
]
