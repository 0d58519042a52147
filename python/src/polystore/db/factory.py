"""
Database Provider Factory

Builds the DataAccessLayer implementation matching a DatabaseConfig and
caches built adapters by a configuration fingerprint.

DB_PROVIDER=keyvalue|dynamodb: DynamoDBDataAccessClient (boto3)
DB_PROVIDER=document|mongodb:  MongoDBDataAccessClient (motor)

get_db_client() keeps the env-driven singleton entry point: it loads the
configuration from the environment on first call and returns the same
adapter afterwards.
"""

from __future__ import annotations

import threading
from typing import Any

from ..config import database_config
from ..config.logfire_config import get_logger
from ..services.metrics import MetricsRegistry
from ..services.resilience import ResilienceManager
from .dynamodb_adapter import DynamoDBConnectionManager, DynamoDBDataAccessClient
from .errors import DatabaseError, ErrorKind, ErrorTranslatorRegistry, default_translators
from .models import ProviderType
from .mongodb_adapter import MongoDBConnectionManager, MongoDBDataAccessClient
from .protocol import DataAccessLayer

logger = get_logger(__name__)


class DatabaseProviderFactory:
    """
    Creates adapters from DatabaseConfig values.

    The metrics registry and translator registry are shared by every
    adapter the factory builds.
    """

    def __init__(
        self,
        metrics_registry: MetricsRegistry | None = None,
        translators: ErrorTranslatorRegistry | None = None,
    ) -> None:
        self.metrics_registry = metrics_registry or MetricsRegistry()
        self.translators = translators or default_translators()
        self._cache: dict[str, DataAccessLayer] = {}
        self._lock = threading.Lock()

    # -- Fingerprints ------------------------------------------------------

    @staticmethod
    def fingerprint(config: database_config.DatabaseConfig) -> str:
        provider = config.provider.value
        if config.provider is ProviderType.DYNAMODB and config.dynamodb is not None:
            d = config.dynamodb
            parts = [provider, d.region, d.primary_table, d.data_table, str(d.consistent_read), d.endpoint or ""]
        elif config.provider is ProviderType.MONGODB and config.mongodb is not None:
            m = config.mongodb
            parts = [provider, m.connection_string, m.database, m.primary_collection, m.data_collection]
        else:
            parts = [provider]
        return "|".join(parts)

    @staticmethod
    def supported_providers() -> list[str]:
        return [p.value for p in ProviderType]

    # -- Construction ------------------------------------------------------

    def create_uncached(self, config: database_config.DatabaseConfig) -> DataAccessLayer:
        """Build a new, not yet connected adapter."""
        database_config.validate_config(config)
        provider = config.provider.value
        translator = self.translators.get(provider)
        metrics = self.metrics_registry.get(provider)
        resilience = ResilienceManager(provider)

        if config.provider is ProviderType.DYNAMODB:
            connection = DynamoDBConnectionManager(config.dynamodb, metrics, resilience, translator)
            adapter: DataAccessLayer = DynamoDBDataAccessClient(connection)
        elif config.provider is ProviderType.MONGODB:
            connection = MongoDBConnectionManager(config.mongodb, metrics, resilience, translator)
            adapter = MongoDBDataAccessClient(connection)
        else:
            raise DatabaseError(
                ErrorKind.CONFIGURATION,
                f"Unsupported database provider: {config.provider}",
            )

        logger.info(f"Created {provider} data access client")
        return adapter

    def create(self, config: database_config.DatabaseConfig) -> DataAccessLayer:
        """Return the cached adapter for config, rebuilding it when it has disconnected."""
        key = self.fingerprint(config)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and cached.is_connected():
                return cached
            if cached is not None:
                logger.debug(f"Evicting disconnected adapter for {config.provider.value}")
            adapter = self.create_uncached(config)
            self._cache[key] = adapter
            return adapter

    def get_cached(self, config: database_config.DatabaseConfig) -> DataAccessLayer | None:
        key = self.fingerprint(config)
        with self._lock:
            cached = self._cache.get(key)
            if cached is None:
                return None
            if not cached.is_connected():
                del self._cache[key]
                return None
            return cached

    async def clear_cache(self) -> None:
        with self._lock:
            adapters = list(self._cache.values())
            self._cache.clear()
        for adapter in adapters:
            try:
                await adapter.disconnect()
            except Exception as exc:
                logger.warning(f"Error disconnecting {adapter.provider_type.value} adapter: {exc}")

    def cache_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._cache),
                "keys": list(self._cache),
                "connected": sum(1 for a in self._cache.values() if a.is_connected()),
            }


# ---------------------------------------------------------------------------
# Env-driven singleton
# ---------------------------------------------------------------------------

_factory: DatabaseProviderFactory | None = None
_client: DataAccessLayer | None = None


def get_factory() -> DatabaseProviderFactory:
    global _factory
    if _factory is None:
        _factory = DatabaseProviderFactory()
    return _factory


def get_db_client() -> DataAccessLayer:
    """
    Returns the active DataAccessLayer singleton.

    Reads DB_PROVIDER on first call and builds the matching adapter. The
    adapter is returned unconnected; callers await connect() once.

    Raises:
        DatabaseError: CONFIGURATION or VALIDATION on missing or invalid
            configuration (fail-fast on startup).
    """
    global _client
    if _client is not None:
        return _client

    config = database_config.load_from_environment()
    _client = get_factory().create(config)
    logger.info(f"DataAccessLayer initialised (provider={config.provider.value})")
    return _client


def current_db_client() -> DataAccessLayer | None:
    """The singleton if get_db_client() has built it, without building one."""
    return _client


def reset_db_client() -> None:
    """
    Reset the cached client and factory (used in tests to re-initialise with different env).
    Does not disconnect the old client.
    """
    global _client, _factory
    _client = None
    _factory = None
