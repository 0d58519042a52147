"""
Base Database Client

Behaviour shared by the provider adapters: validation, connection checks,
and the _operation() wrapper that times a call, opens a span, records a
metric and translates native errors exactly once.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from ..config.logfire_config import get_logger, safe_span
from ..services.metrics import MetricsCollector
from ..services.metrics_reporter import (
    HealthReport,
    MetricsReport,
    MetricsReporter,
    PerformanceSummary,
    is_operation_healthy,
)
from ..services.resilience import ResilienceManager
from .connection import ConnectionEvent, ConnectionManager
from .errors import DatabaseError, ErrorKind
from .models import (
    HealthStatus,
    ProviderType,
    validate_data,
    validate_filter_condition,
    validate_key,
    validate_key_condition,
    validate_operations,
    validate_update_input,
)

logger = get_logger(__name__)

T = TypeVar("T")


class BaseDatabaseClient:
    """Common surface of DynamoDBDataAccessClient and MongoDBDataAccessClient."""

    _provider_type: ProviderType

    def __init__(self, connection: ConnectionManager) -> None:
        self.connection = connection
        self.reporter = MetricsReporter()

    # -- Capabilities ------------------------------------------------------

    @property
    def provider_type(self) -> ProviderType:
        return self._provider_type

    @property
    def provider(self) -> str:
        return self._provider_type.value

    @property
    def metrics(self) -> MetricsCollector:
        return self.connection.metrics

    @property
    def resilience(self) -> ResilienceManager:
        return self.connection.resilience

    @property
    def supports_transactions(self) -> bool:
        return True

    # -- Connection --------------------------------------------------------

    async def connect(self) -> None:
        await self.connection.connect()

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    async def health_check(self) -> HealthStatus:
        return await self.connection.health_check()

    def subscribe(self, event: ConnectionEvent | str, listener: Callable[..., Any]) -> Callable[[], None]:
        return self.connection.subscribe(event, listener)

    # -- Metrics reporting -------------------------------------------------

    def metrics_report(self) -> MetricsReport:
        return self.reporter.generate_report(self.metrics.snapshot())

    def performance_summary(self) -> PerformanceSummary:
        return self.reporter.generate_performance_summary(self.metrics.snapshot())

    def performance_recommendations(self) -> list[str]:
        return self.reporter.recommendations(self.metrics.snapshot())

    def is_operation_healthy(self, operation: str) -> bool:
        return is_operation_healthy(self.metrics.snapshot(), operation)

    def export_metrics(self, fmt: str = "json") -> str:
        """Export this provider's metrics as "json", "csv" or "prometheus" text."""
        return self.reporter.export(self.metrics.snapshot(), fmt)

    async def health_report(self) -> HealthReport:
        return self.reporter.generate_health_report(await self.health_check())

    # -- Validation --------------------------------------------------------

    def _validate_connection(self) -> None:
        if not self.connection.is_connected():
            raise DatabaseError(
                ErrorKind.CONNECTION,
                f"Not connected to {self.provider}. Call connect() first.",
                provider=self.provider,
            )

    def _validate_key(self, key: Any) -> None:
        validate_key(key, self.provider)

    def _validate_data(self, data: Any) -> None:
        validate_data(data, self.provider)

    def _validate_update(self, update_input: Any) -> None:
        validate_update_input(update_input, self.provider)

    def _validate_condition(self, condition: Any) -> None:
        if condition is not None:
            validate_filter_condition(condition, self.provider)

    def _validate_key_condition(self, condition: Any) -> None:
        if condition is not None:
            validate_key_condition(condition, self.provider)

    def _validate_operations(self, operations: list[Any]) -> None:
        validate_operations(operations, self.provider)

    # -- Operation wrapper -------------------------------------------------

    def translate(self, error: BaseException) -> DatabaseError:
        return self.connection.translate(error)

    @asynccontextmanager
    async def _operation(self, name: str, **attributes: Any) -> AsyncIterator[None]:
        """
        Time and trace one public operation.

        A metric sample is recorded whether the body succeeds or fails, and
        any non-DatabaseError escaping the body is translated.
        """
        start = time.perf_counter()
        success = False
        with safe_span(f"{self.provider}.{name}", provider=self.provider, **attributes):
            try:
                yield
                success = True
            except DatabaseError:
                raise
            except Exception as exc:
                raise self.translate(exc) from exc
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                self.metrics.record_operation(name, duration_ms, success)
                if success:
                    self.connection.mark_success()
                logger.debug(f"{self.provider}.{name} took {duration_ms:.1f}ms (success={success})")

    async def _call(self, name: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one native call under the resilience layer."""
        return await self.resilience.execute(fn, name, self.translate)
