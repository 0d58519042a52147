"""Configuration: logging/tracing setup and database configuration loading."""

from .database_config import (
    DatabaseConfig,
    DynamoDBConfig,
    MigrationConfig,
    MongoDBConfig,
    MongoDBOptions,
    load_from_environment,
    load_from_file,
    load_from_mapping,
    validate_config,
)
from .logfire_config import configure_logging, get_logger

__all__ = [
    "DatabaseConfig",
    "DynamoDBConfig",
    "MigrationConfig",
    "MongoDBConfig",
    "MongoDBOptions",
    "configure_logging",
    "get_logger",
    "load_from_environment",
    "load_from_file",
    "load_from_mapping",
    "validate_config",
]
