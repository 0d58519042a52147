"""
Metrics Collector

Per-backend operation, query and connection metrics. All counters are
guarded by a threading.Lock so a collector can be shared by the event loop
and the worker threads that run blocking driver calls.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..config.logfire_config import get_logger

logger = get_logger(__name__)

DEFAULT_WARNING_THRESHOLDS_MS: dict[str, float] = {
    "get": 100,
    "put": 200,
    "update": 200,
    "delete": 150,
    "query": 500,
    "scan": 1000,
    "batch_get": 300,
    "transaction": 1000,
}
DEFAULT_THRESHOLD_MS = 1000.0

CONNECTION_EVENTS = ("connect", "disconnect", "error", "reconnect")


@dataclass
class MetricsConfig:
    enabled: bool = True
    warning_thresholds: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_WARNING_THRESHOLDS_MS)
    )
    slow_query_threshold: float = 1000.0
    max_slow_queries: int = 100
    max_warnings: int = 50


@dataclass
class OperationTiming:
    count: int = 0
    total_time: float = 0.0
    average_time: float = 0.0
    min_time: float = float("inf")
    max_time: float = 0.0
    success_count: int = 0
    failure_count: int = 0


@dataclass
class QueryTiming:
    count: int = 0
    total_time: float = 0.0
    average_time: float = 0.0
    total_results: int = 0
    average_results: float = 0.0


@dataclass
class PerformanceWarning:
    operation_type: str
    duration: float
    threshold: float
    timestamp: datetime
    metadata: dict[str, Any] | None = None


@dataclass
class SlowQuery:
    query_type: str
    duration: float
    result_count: int
    timestamp: datetime
    metadata: dict[str, Any] | None = None


@dataclass
class SlowOperation:
    operation_name: str
    duration: float
    success: bool
    timestamp: datetime
    metadata: dict[str, Any] | None = None


@dataclass
class ConnectionMetrics:
    total_connections: int = 0
    active_connections: int = 0
    failed_connections: int = 0
    events: dict[str, int] = field(default_factory=lambda: {e: 0 for e in CONNECTION_EVENTS})
    last_connection_time: datetime | None = None
    last_disconnection_time: datetime | None = None
    last_error_time: datetime | None = None


@dataclass
class MetricsSnapshot:
    timestamp: datetime
    provider: str
    total_operations: int
    successful_operations: int
    failed_operations: int
    average_response_time: float
    error_rate: float
    operation_timings: dict[str, OperationTiming]
    connections: ConnectionMetrics
    total_queries: int
    average_query_time: float
    average_result_count: float
    query_types: dict[str, QueryTiming]
    slow_queries: list[SlowQuery]
    warnings: list[PerformanceWarning]
    slow_operations: list[SlowOperation]
    started_at: datetime | None = None
    warning_thresholds: dict[str, float] = field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _copy_connections(source: ConnectionMetrics) -> ConnectionMetrics:
    return ConnectionMetrics(
        total_connections=source.total_connections,
        active_connections=source.active_connections,
        failed_connections=source.failed_connections,
        events=dict(source.events),
        last_connection_time=source.last_connection_time,
        last_disconnection_time=source.last_disconnection_time,
        last_error_time=source.last_error_time,
    )


class MetricsCollector:
    """Collects metrics for one provider. Durations are in milliseconds."""

    def __init__(self, provider: str, config: MetricsConfig | None = None) -> None:
        self.provider = provider
        self.config = config or MetricsConfig()
        self._lock = threading.Lock()
        self._init_state()

    def _init_state(self) -> None:
        self._operations: dict[str, OperationTiming] = {}
        self._queries: dict[str, QueryTiming] = {}
        self._connections = ConnectionMetrics()
        self._slow_queries: deque[SlowQuery] = deque(maxlen=self.config.max_slow_queries)
        self._slow_operations: deque[SlowOperation] = deque(maxlen=self.config.max_slow_queries)
        self._warnings: deque[PerformanceWarning] = deque(maxlen=self.config.max_warnings)
        self.started_at = _now()

    def threshold_for(self, operation: str) -> float:
        return self.config.warning_thresholds.get(operation, DEFAULT_THRESHOLD_MS)

    def record_operation(
        self,
        operation: str,
        duration: float,
        success: bool,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.config.enabled:
            return

        with self._lock:
            timing = self._operations.setdefault(operation, OperationTiming())
            timing.count += 1
            timing.total_time += duration
            timing.average_time = timing.total_time / timing.count
            timing.min_time = min(timing.min_time, duration)
            timing.max_time = max(timing.max_time, duration)
            if success:
                timing.success_count += 1
            else:
                timing.failure_count += 1

            threshold = self.threshold_for(operation)
            if duration > threshold:
                now = _now()
                self._slow_operations.append(
                    SlowOperation(operation, duration, success, now, metadata)
                )
                self._warnings.append(
                    PerformanceWarning(operation, duration, threshold, now, metadata)
                )
                logger.debug(
                    f"Slow {self.provider} operation {operation}: {duration:.1f}ms > {threshold:.0f}ms"
                )

    def record_connection_event(self, event: str) -> None:
        if not self.config.enabled:
            return
        if event not in CONNECTION_EVENTS:
            raise ValueError(f"Unknown connection event: {event}")

        with self._lock:
            conn = self._connections
            conn.events[event] += 1
            if event == "connect":
                conn.total_connections += 1
                conn.active_connections += 1
                conn.last_connection_time = _now()
            elif event == "disconnect":
                conn.active_connections = max(0, conn.active_connections - 1)
                conn.last_disconnection_time = _now()
            elif event == "error":
                conn.failed_connections += 1
                conn.last_error_time = _now()

    def record_query_performance(
        self,
        query_type: str,
        duration: float,
        result_count: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.config.enabled:
            return

        with self._lock:
            timing = self._queries.setdefault(query_type, QueryTiming())
            timing.count += 1
            timing.total_time += duration
            timing.average_time = timing.total_time / timing.count
            timing.total_results += result_count
            timing.average_results = timing.total_results / timing.count

            if duration > self.config.slow_query_threshold:
                self._slow_queries.append(
                    SlowQuery(query_type, duration, result_count, _now(), metadata)
                )

    # -- Reads -------------------------------------------------------------

    def get_warnings(self) -> list[PerformanceWarning]:
        with self._lock:
            return list(self._warnings)

    def average_response_time(self) -> float:
        with self._lock:
            total = sum(t.count for t in self._operations.values())
            elapsed = sum(t.total_time for t in self._operations.values())
        return elapsed / total if total else 0.0

    def error_rate(self) -> float:
        with self._lock:
            total = sum(t.count for t in self._operations.values())
            failed = sum(t.failure_count for t in self._operations.values())
        return failed / total if total else 0.0

    def active_connections(self) -> int:
        with self._lock:
            return self._connections.active_connections

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            timings = {
                name: OperationTiming(**vars(t)) for name, t in self._operations.items()
            }
            queries = {name: QueryTiming(**vars(t)) for name, t in self._queries.items()}
            connections = _copy_connections(self._connections)
            slow_queries = list(self._slow_queries)
            warnings = list(self._warnings)
            slow_operations = list(self._slow_operations)
            started_at = self.started_at

        total = sum(t.count for t in timings.values())
        successful = sum(t.success_count for t in timings.values())
        failed = sum(t.failure_count for t in timings.values())
        elapsed = sum(t.total_time for t in timings.values())
        total_queries = sum(q.count for q in queries.values())
        query_time = sum(q.total_time for q in queries.values())
        query_results = sum(q.total_results for q in queries.values())

        return MetricsSnapshot(
            timestamp=_now(),
            provider=self.provider,
            total_operations=total,
            successful_operations=successful,
            failed_operations=failed,
            average_response_time=elapsed / total if total else 0.0,
            error_rate=failed / total if total else 0.0,
            operation_timings=timings,
            connections=connections,
            total_queries=total_queries,
            average_query_time=query_time / total_queries if total_queries else 0.0,
            average_result_count=query_results / total_queries if total_queries else 0.0,
            query_types=queries,
            slow_queries=slow_queries,
            warnings=warnings,
            slow_operations=slow_operations,
            started_at=started_at,
            warning_thresholds=dict(self.config.warning_thresholds),
        )

    def reset(self) -> None:
        with self._lock:
            self._init_state()


class MetricsRegistry:
    """
    Provider tag -> MetricsCollector, created on first use.

    An explicit value handed to the factory instead of a module global.
    """

    def __init__(self, config: MetricsConfig | None = None) -> None:
        self._config = config
        self._collectors: dict[str, MetricsCollector] = {}
        self._lock = threading.Lock()

    def get(self, provider: str) -> MetricsCollector:
        with self._lock:
            collector = self._collectors.get(provider)
            if collector is None:
                collector = MetricsCollector(provider, self._config)
                self._collectors[provider] = collector
            return collector

    def snapshots(self) -> dict[str, MetricsSnapshot]:
        with self._lock:
            collectors = dict(self._collectors)
        return {provider: c.snapshot() for provider, c in collectors.items()}

    def reset_all(self) -> None:
        with self._lock:
            collectors = list(self._collectors.values())
        for collector in collectors:
            collector.reset()
