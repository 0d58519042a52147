"""
Database Configuration

Assembles a DatabaseConfig from environment variables, a mapping or a JSON
file, and validates it. Loading problems raise a CONFIGURATION error;
validate_config() raises a VALIDATION error for an assembled config that
breaks a rule.

DB_PROVIDER=keyvalue|dynamodb: requires DYNAMODB_PRIMARY_TABLE + DYNAMODB_DATA_TABLE
DB_PROVIDER=document|mongodb:  requires MONGODB_CONNECTION_STRING + MONGODB_DATABASE
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from ..db.errors import DatabaseError, ErrorKind, validation_error
from ..db.models import ProviderType
from .logfire_config import get_logger

logger = get_logger(__name__)

DEFAULT_REGION = "us-east-1"
DEFAULT_PRIMARY_COLLECTION = "primary_data"
DEFAULT_DATA_COLLECTION = "application_data"

_REGION_RE = re.compile(r"^[a-z0-9-]+$")
_TABLE_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")
_DATABASE_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass
class DynamoDBConfig:
    primary_table: str
    data_table: str
    region: str = DEFAULT_REGION
    consistent_read: bool = False
    endpoint: str | None = None


@dataclass
class MongoDBOptions:
    max_pool_size: int = 10
    min_pool_size: int = 2
    max_idle_time_ms: int = 30000
    server_selection_timeout_ms: int = 5000


@dataclass
class MongoDBConfig:
    connection_string: str
    database: str
    primary_collection: str = DEFAULT_PRIMARY_COLLECTION
    data_collection: str = DEFAULT_DATA_COLLECTION
    options: MongoDBOptions = field(default_factory=MongoDBOptions)


@dataclass
class MigrationConfig:
    enabled: bool = False
    batch_size: int = 100
    validate_after_migration: bool = True


@dataclass
class DatabaseConfig:
    provider: ProviderType
    dynamodb: DynamoDBConfig | None = None
    mongodb: MongoDBConfig | None = None
    migration: MigrationConfig = field(default_factory=MigrationConfig)


def _config_error(message: str) -> DatabaseError:
    return DatabaseError(ErrorKind.CONFIGURATION, message)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _pick(data: Mapping[str, Any] | None, *names: str) -> Any:
    """First present value among snake_case / camelCase spellings."""
    if not data:
        return None
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def _or_env(value: Any, env_name: str) -> Any:
    """Explicit value if given (0 and False included), else the environment variable."""
    return value if value is not None else os.getenv(env_name)


def _parse_provider(value: Any) -> ProviderType:
    if isinstance(value, ProviderType):
        return value
    if not value:
        raise _config_error(
            "Database provider not specified. Set DB_PROVIDER to 'keyvalue' (dynamodb) or 'document' (mongodb)."
        )
    try:
        return ProviderType.parse(str(value))
    except ValueError:
        raise _config_error(
            f"DB_PROVIDER='{value}' is not supported. "
            "Valid values: 'keyvalue'/'dynamodb', 'document'/'mongodb'."
        ) from None


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower().strip() == "true"


def _parse_int(value: Any, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise _config_error(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise _config_error(f"{name} must be an integer, got {value!r}") from None


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def _load_dynamodb(data: Mapping[str, Any] | None = None) -> DynamoDBConfig:
    primary_table = _pick(data, "primary_table", "primaryTable") or os.getenv("DYNAMODB_PRIMARY_TABLE")
    data_table = _pick(data, "data_table", "dataTable") or os.getenv("DYNAMODB_DATA_TABLE")
    if not primary_table:
        raise _config_error("DynamoDB primary table not specified. Set DYNAMODB_PRIMARY_TABLE.")
    if not data_table:
        raise _config_error("DynamoDB data table not specified. Set DYNAMODB_DATA_TABLE.")

    consistent = _pick(data, "consistent_read", "consistentRead")
    if consistent is None:
        consistent = os.getenv("DYNAMODB_CONSISTENT_READ")

    return DynamoDBConfig(
        primary_table=primary_table,
        data_table=data_table,
        region=_pick(data, "region") or os.getenv("DYNAMODB_REGION") or DEFAULT_REGION,
        consistent_read=_parse_bool(consistent, False),
        endpoint=_pick(data, "endpoint") or os.getenv("DYNAMODB_ENDPOINT") or None,
    )


def _load_mongodb(data: Mapping[str, Any] | None = None) -> MongoDBConfig:
    connection_string = _pick(data, "connection_string", "connectionString") or os.getenv(
        "MONGODB_CONNECTION_STRING"
    )
    database = _pick(data, "database") or os.getenv("MONGODB_DATABASE")
    if not connection_string:
        raise _config_error("MongoDB connection string not specified. Set MONGODB_CONNECTION_STRING.")
    if not database:
        raise _config_error("MongoDB database not specified. Set MONGODB_DATABASE.")

    collections = _pick(data, "collections") or {}
    primary = (
        _pick(data, "primary_collection", "primaryCollection")
        or _pick(collections, "primary")
        or os.getenv("MONGODB_PRIMARY_COLLECTION")
        or DEFAULT_PRIMARY_COLLECTION
    )
    data_collection = (
        _pick(data, "data_collection", "dataCollection")
        or _pick(collections, "data")
        or os.getenv("MONGODB_DATA_COLLECTION")
        or DEFAULT_DATA_COLLECTION
    )

    opts = _pick(data, "options") or {}
    defaults = MongoDBOptions()
    options = MongoDBOptions(
        max_pool_size=_parse_int(
            _or_env(_pick(opts, "max_pool_size", "maxPoolSize"), "MONGODB_MAX_POOL_SIZE"),
            defaults.max_pool_size,
            "MONGODB_MAX_POOL_SIZE",
        ),
        min_pool_size=_parse_int(
            _or_env(_pick(opts, "min_pool_size", "minPoolSize"), "MONGODB_MIN_POOL_SIZE"),
            defaults.min_pool_size,
            "MONGODB_MIN_POOL_SIZE",
        ),
        max_idle_time_ms=_parse_int(
            _or_env(_pick(opts, "max_idle_time_ms", "maxIdleTimeMS"), "MONGODB_MAX_IDLE_TIME_MS"),
            defaults.max_idle_time_ms,
            "MONGODB_MAX_IDLE_TIME_MS",
        ),
        server_selection_timeout_ms=_parse_int(
            _or_env(
                _pick(opts, "server_selection_timeout_ms", "serverSelectionTimeoutMS"),
                "MONGODB_SERVER_SELECTION_TIMEOUT_MS",
            ),
            defaults.server_selection_timeout_ms,
            "MONGODB_SERVER_SELECTION_TIMEOUT_MS",
        ),
    )

    return MongoDBConfig(
        connection_string=connection_string,
        database=database,
        primary_collection=primary,
        data_collection=data_collection,
        options=options,
    )


def _load_migration(data: Mapping[str, Any] | None = None) -> MigrationConfig:
    enabled = _pick(data, "enabled")
    batch_size = _pick(data, "batch_size", "batchSize")
    validate_after = _pick(data, "validate_after_migration", "validateAfterMigration")
    return MigrationConfig(
        enabled=_parse_bool(enabled if enabled is not None else os.getenv("MIGRATION_ENABLED"), False),
        batch_size=_parse_int(
            batch_size if batch_size is not None else os.getenv("MIGRATION_BATCH_SIZE"),
            100,
            "MIGRATION_BATCH_SIZE",
        ),
        validate_after_migration=_parse_bool(
            validate_after if validate_after is not None else os.getenv("MIGRATION_VALIDATE_AFTER"),
            True,
        ),
    )


def load_from_environment() -> DatabaseConfig:
    """
    Build a DatabaseConfig from environment variables.

    Raises:
        DatabaseError: CONFIGURATION on a missing or malformed variable.
    """
    provider = _parse_provider(os.getenv("DB_PROVIDER"))
    config = DatabaseConfig(provider=provider, migration=_load_migration())
    if provider is ProviderType.DYNAMODB:
        config.dynamodb = _load_dynamodb()
    else:
        config.mongodb = _load_mongodb()
    logger.debug(f"Database configuration loaded from environment (provider={provider.value})")
    return config


def load_from_mapping(data: Mapping[str, Any]) -> DatabaseConfig:
    """Build a DatabaseConfig from a mapping; missing fields fall back to the environment."""
    if not isinstance(data, Mapping):
        raise _config_error("Configuration data must be a mapping")

    provider = _parse_provider(data.get("provider") or os.getenv("DB_PROVIDER"))
    config = DatabaseConfig(provider=provider, migration=_load_migration(data.get("migration")))
    if provider is ProviderType.DYNAMODB:
        config.dynamodb = _load_dynamodb(data.get("dynamodb"))
    else:
        config.mongodb = _load_mongodb(data.get("mongodb"))
    return config


def load_from_file(path: str | Path) -> DatabaseConfig:
    """Build a DatabaseConfig from a JSON file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise DatabaseError(
            ErrorKind.CONFIGURATION,
            f"Failed to load configuration from file {path}: {exc}",
            original=exc,
        ) from exc
    return load_from_mapping(data)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_dynamodb(config: DynamoDBConfig | None) -> None:
    if config is None:
        raise validation_error("DynamoDB configuration is required when provider is dynamodb")
    if not config.region:
        raise validation_error("DynamoDB region is required")
    if not config.primary_table:
        raise validation_error("DynamoDB primary table name is required")
    if not config.data_table:
        raise validation_error("DynamoDB data table name is required")
    if not _REGION_RE.match(config.region):
        raise validation_error(f"Invalid DynamoDB region format: {config.region}")
    if not _TABLE_RE.match(config.primary_table):
        raise validation_error(f"Invalid DynamoDB primary table name: {config.primary_table}")
    if not _TABLE_RE.match(config.data_table):
        raise validation_error(f"Invalid DynamoDB data table name: {config.data_table}")
    if config.endpoint:
        parsed = urlparse(config.endpoint)
        if not parsed.scheme or not parsed.netloc:
            raise validation_error(f"Invalid DynamoDB endpoint URL: {config.endpoint}")


def _validate_mongodb(config: MongoDBConfig | None) -> None:
    if config is None:
        raise validation_error("MongoDB configuration is required when provider is mongodb")
    if not config.connection_string:
        raise validation_error("MongoDB connection string is required")
    if not config.database:
        raise validation_error("MongoDB database name is required")
    if not config.primary_collection:
        raise validation_error("MongoDB primary collection name is required")
    if not config.data_collection:
        raise validation_error("MongoDB data collection name is required")
    if not config.connection_string.startswith(("mongodb://", "mongodb+srv://")):
        raise validation_error("MongoDB connection string must start with mongodb:// or mongodb+srv://")
    if not _DATABASE_RE.match(config.database):
        raise validation_error(f"Invalid MongoDB database name: {config.database}")
    if not _TABLE_RE.match(config.primary_collection):
        raise validation_error(f"Invalid MongoDB primary collection name: {config.primary_collection}")
    if not _TABLE_RE.match(config.data_collection):
        raise validation_error(f"Invalid MongoDB data collection name: {config.data_collection}")

    opts = config.options
    if opts.max_pool_size <= 0:
        raise validation_error("MongoDB max_pool_size must be a positive integer")
    if opts.min_pool_size < 0:
        raise validation_error("MongoDB min_pool_size must be a non-negative integer")
    if opts.min_pool_size > opts.max_pool_size:
        raise validation_error("MongoDB min_pool_size cannot be greater than max_pool_size")
    if opts.max_idle_time_ms <= 0:
        raise validation_error("MongoDB max_idle_time_ms must be a positive integer")
    if opts.server_selection_timeout_ms <= 0:
        raise validation_error("MongoDB server_selection_timeout_ms must be a positive integer")


def _validate_migration(config: MigrationConfig) -> None:
    if not isinstance(config.enabled, bool):
        raise validation_error("Migration enabled flag must be a boolean")
    if isinstance(config.batch_size, bool) or not isinstance(config.batch_size, int) or config.batch_size <= 0:
        raise validation_error("Migration batch size must be a positive integer")
    if not isinstance(config.validate_after_migration, bool):
        raise validation_error("Migration validate_after_migration flag must be a boolean")


def validate_config(config: DatabaseConfig) -> DatabaseConfig:
    """
    Check an assembled DatabaseConfig.

    Raises:
        DatabaseError: VALIDATION naming the first rule that fails.
    """
    if config is None:
        raise validation_error("Database configuration is required")
    if not isinstance(config.provider, ProviderType):
        raise validation_error(f"Unsupported database provider: {config.provider}")
    if config.provider is ProviderType.DYNAMODB:
        _validate_dynamodb(config.dynamodb)
    else:
        _validate_mongodb(config.mongodb)
    _validate_migration(config.migration)
    return config
