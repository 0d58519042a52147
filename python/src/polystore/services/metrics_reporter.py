"""
Metrics Reporter

Turns MetricsSnapshot and HealthStatus values into reports: a structured
report, a health report with recommendations, a performance summary, and
JSON, CSV or Prometheus text exports.
"""

from __future__ import annotations

import csv
import io
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from ..db.models import HealthStatus
from .metrics import (
    DEFAULT_THRESHOLD_MS,
    MetricsRegistry,
    MetricsSnapshot,
    OperationTiming,
    PerformanceWarning,
    QueryTiming,
    SlowOperation,
    SlowQuery,
)

EXPORT_FORMATS = ("json", "csv", "prometheus")

HEALTHY_SUCCESS_RATE = 0.95
SLOW_AVERAGE_MS = 1000.0
CRITICAL_QUERY_AVERAGE_MS = 2000.0
CSV_HEADER = ["timestamp", "provider", "operation", "count", "success_rate", "avg_ms", "min_ms", "max_ms", "status"]


# ---------------------------------------------------------------------------
# Report types
# ---------------------------------------------------------------------------


@dataclass
class MetricsSummary:
    total_operations: int
    success_rate: float
    average_response_time: float
    active_connections: int
    error_rate: float
    uptime: str


@dataclass
class OperationReport:
    operation: str
    count: int
    success_rate: float
    average_time: float
    min_time: float
    max_time: float
    status: str


@dataclass
class ConnectionReport:
    status: str
    total_connections: int
    active_connections: int
    failed_connections: int
    last_connection_time: str | None = None
    last_error_time: str | None = None


@dataclass
class QueryReport:
    query_type: str
    count: int
    average_time: float
    average_results: float
    status: str


@dataclass
class WarningReport:
    type: str
    duration: float
    threshold: float
    timestamp: str
    severity: str


@dataclass
class SlowOperationReport:
    operation: str
    duration: float
    timestamp: str
    success: bool
    severity: str


@dataclass
class SlowQueryReport:
    query_type: str
    duration: float
    result_count: int
    timestamp: str
    severity: str


@dataclass
class PerformanceReport:
    warnings: list[WarningReport] = field(default_factory=list)
    slow_operations: list[SlowOperationReport] = field(default_factory=list)
    slow_queries: list[SlowQueryReport] = field(default_factory=list)
    thresholds: dict[str, float] = field(default_factory=dict)


@dataclass
class MetricsReport:
    timestamp: str
    provider: str
    summary: MetricsSummary
    operations: list[OperationReport]
    connections: ConnectionReport
    queries: list[QueryReport]
    performance: PerformanceReport

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HealthReport:
    status: str
    provider: str
    connection_status: str
    last_successful_operation: str | None
    average_response_time: float
    error_rate: float
    connection_count: int
    recommendations: list[str] = field(default_factory=list)


@dataclass
class PerformanceSummary:
    overall_status: str
    average_response_time: float
    success_rate: float
    error_rate: float
    throughput: int
    top_slow_operations: list[SlowOperationReport] = field(default_factory=list)
    critical_warnings: list[WarningReport] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def format_uptime(seconds: float) -> str:
    """Format a duration as '2d 3h 4m', '3h 4m', '4m 5s' or '5s'."""
    seconds = int(max(seconds, 0))
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _success_rate(timing: OperationTiming) -> float:
    return timing.success_count / timing.count if timing.count else 0.0


def _operation_status(timing: OperationTiming) -> str:
    if _success_rate(timing) < HEALTHY_SUCCESS_RATE:
        return "critical"
    if timing.average_time > SLOW_AVERAGE_MS:
        return "warning"
    return "healthy"


def _query_status(timing: QueryTiming) -> str:
    if timing.average_time > CRITICAL_QUERY_AVERAGE_MS:
        return "critical"
    if timing.average_time > SLOW_AVERAGE_MS:
        return "warning"
    return "healthy"


def _warning_severity(duration: float, threshold: float) -> str:
    if duration > threshold * 3:
        return "high"
    if duration > threshold * 2:
        return "medium"
    return "low"


def _severity(duration: float, medium: float, high: float) -> str:
    if duration > high:
        return "high"
    if duration > medium:
        return "medium"
    return "low"


def _warning_report(warning: PerformanceWarning) -> WarningReport:
    return WarningReport(
        type=warning.operation_type,
        duration=warning.duration,
        threshold=warning.threshold,
        timestamp=warning.timestamp.isoformat(),
        severity=_warning_severity(warning.duration, warning.threshold),
    )


def _slow_operation_report(operation: SlowOperation) -> SlowOperationReport:
    return SlowOperationReport(
        operation=operation.operation_name,
        duration=operation.duration,
        timestamp=operation.timestamp.isoformat(),
        success=operation.success,
        severity=_severity(operation.duration, 2000, 5000),
    )


def _slow_query_report(query: SlowQuery) -> SlowQueryReport:
    return SlowQueryReport(
        query_type=query.query_type,
        duration=query.duration,
        result_count=query.result_count,
        timestamp=query.timestamp.isoformat(),
        severity=_severity(query.duration, 5000, 10000),
    )


def is_operation_healthy(snapshot: MetricsSnapshot, operation: str) -> bool:
    """
    True when an operation succeeds at least 95% of the time and its average
    stays within its warning threshold. An operation with no samples is healthy.
    """
    timing = snapshot.operation_timings.get(operation)
    if timing is None or timing.count == 0:
        return True
    threshold = snapshot.warning_thresholds.get(operation, DEFAULT_THRESHOLD_MS)
    return _success_rate(timing) >= HEALTHY_SUCCESS_RATE and timing.average_time <= threshold


# ---------------------------------------------------------------------------
# Reporter
# ---------------------------------------------------------------------------


class MetricsReporter:
    """Stateless: every method works from the snapshot it is given."""

    def generate_report(self, snapshot: MetricsSnapshot) -> MetricsReport:
        uptime = 0.0
        if snapshot.started_at is not None:
            uptime = (snapshot.timestamp - snapshot.started_at).total_seconds()

        operations = [
            OperationReport(
                operation=name,
                count=timing.count,
                success_rate=_success_rate(timing) * 100,
                average_time=timing.average_time,
                min_time=0.0 if timing.min_time == float("inf") else timing.min_time,
                max_time=timing.max_time,
                status=_operation_status(timing),
            )
            for name, timing in snapshot.operation_timings.items()
        ]
        queries = [
            QueryReport(
                query_type=name,
                count=timing.count,
                average_time=timing.average_time,
                average_results=timing.average_results,
                status=_query_status(timing),
            )
            for name, timing in snapshot.query_types.items()
        ]
        conn = snapshot.connections
        success_rate = (
            snapshot.successful_operations / snapshot.total_operations if snapshot.total_operations else 0.0
        )

        return MetricsReport(
            timestamp=snapshot.timestamp.isoformat(),
            provider=snapshot.provider,
            summary=MetricsSummary(
                total_operations=snapshot.total_operations,
                success_rate=success_rate * 100,
                average_response_time=snapshot.average_response_time,
                active_connections=conn.active_connections,
                error_rate=snapshot.error_rate * 100,
                uptime=format_uptime(uptime),
            ),
            operations=operations,
            connections=ConnectionReport(
                status="connected" if conn.active_connections > 0 else "disconnected",
                total_connections=conn.total_connections,
                active_connections=conn.active_connections,
                failed_connections=conn.failed_connections,
                last_connection_time=_iso(conn.last_connection_time),
                last_error_time=_iso(conn.last_error_time),
            ),
            queries=queries,
            performance=PerformanceReport(
                warnings=[_warning_report(w) for w in snapshot.warnings],
                slow_operations=[_slow_operation_report(o) for o in snapshot.slow_operations],
                slow_queries=[_slow_query_report(q) for q in snapshot.slow_queries],
                thresholds=dict(snapshot.warning_thresholds),
            ),
        )

    def generate_health_report(self, health: HealthStatus) -> HealthReport:
        metrics = health.metrics
        if not health.healthy:
            status = "unhealthy"
        elif metrics.error_rate > 0.05 or metrics.average_response_time > SLOW_AVERAGE_MS:
            status = "degraded"
        else:
            status = "healthy"

        recommendations: list[str] = []
        if metrics.error_rate > 0.05:
            recommendations.append("High error rate detected. Review error logs and connection stability.")
        if metrics.average_response_time > SLOW_AVERAGE_MS:
            recommendations.append(
                "High response times detected. Consider optimizing queries or scaling resources."
            )
        if health.connection_status == "error":
            recommendations.append(
                "Connection issues detected. Check network connectivity and database availability."
            )
        if metrics.connection_count == 0:
            recommendations.append("No active connections. Verify database configuration and connectivity.")

        return HealthReport(
            status=status,
            provider=health.provider,
            connection_status=health.connection_status,
            last_successful_operation=_iso(health.last_successful_operation),
            average_response_time=metrics.average_response_time,
            error_rate=metrics.error_rate * 100,
            connection_count=metrics.connection_count,
            recommendations=recommendations,
        )

    def recommendations(self, snapshot: MetricsSnapshot) -> list[str]:
        recommendations: list[str] = []
        if len(snapshot.warnings) > 10:
            recommendations.append(
                "High number of performance warnings. Review operation thresholds and optimize slow operations."
            )
        if len(snapshot.slow_queries) > 5:
            recommendations.append(
                "Multiple slow queries detected. Consider adding indexes or optimizing query patterns."
            )
        if snapshot.average_response_time > 500:
            recommendations.append(
                "Average response time is high. Consider connection pooling or caching strategies."
            )
        return recommendations

    def generate_performance_summary(self, snapshot: MetricsSnapshot) -> PerformanceSummary:
        error_pct = snapshot.error_rate * 100
        average = snapshot.average_response_time
        if error_pct > 10 or average > 2000:
            overall = "poor"
        elif error_pct > 5 or average > 1000:
            overall = "fair"
        elif error_pct > 1 or average > 500:
            overall = "good"
        else:
            overall = "excellent"

        slowest = sorted(snapshot.slow_operations, key=lambda o: o.duration, reverse=True)[:5]
        critical = [w for w in snapshot.warnings if w.duration > w.threshold * 2]
        success_pct = (
            snapshot.successful_operations / snapshot.total_operations * 100 if snapshot.total_operations else 0.0
        )

        return PerformanceSummary(
            overall_status=overall,
            average_response_time=average,
            success_rate=success_pct,
            error_rate=error_pct,
            throughput=snapshot.total_operations,
            top_slow_operations=[_slow_operation_report(o) for o in slowest],
            critical_warnings=[_warning_report(w) for w in critical],
            recommendations=self.recommendations(snapshot),
        )

    # -- Exports -----------------------------------------------------------

    def export(self, snapshot: MetricsSnapshot, fmt: str = "json") -> str:
        if fmt == "json":
            return self.export_json(snapshot)
        if fmt == "csv":
            return self.export_csv(snapshot)
        if fmt == "prometheus":
            return self.export_prometheus([snapshot])
        raise ValueError(f"Unsupported export format: {fmt}. Expected one of {', '.join(EXPORT_FORMATS)}")

    def export_json(self, snapshot: MetricsSnapshot) -> str:
        return json.dumps(self.generate_report(snapshot).to_dict(), indent=2)

    def export_csv(self, snapshot: MetricsSnapshot) -> str:
        report = self.generate_report(snapshot)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for op in report.operations:
            writer.writerow(
                [
                    report.timestamp,
                    report.provider,
                    op.operation,
                    op.count,
                    f"{op.success_rate:.2f}",
                    f"{op.average_time:.2f}",
                    f"{op.min_time:.2f}",
                    f"{op.max_time:.2f}",
                    op.status,
                ]
            )
        return buffer.getvalue()

    def export_prometheus(self, snapshots: list[MetricsSnapshot]) -> str:
        """Render snapshots in the Prometheus text exposition format, one label set per provider."""
        registry = CollectorRegistry()
        registry.register(_SnapshotCollector(snapshots))
        return generate_latest(registry).decode("utf-8")

    def export_registry(self, registry: MetricsRegistry) -> str:
        """Prometheus text for every provider the registry has a collector for."""
        return self.export_prometheus(list(registry.snapshots().values()))


class _SnapshotCollector:
    """Custom prometheus_client collector yielding point-in-time metric families."""

    def __init__(self, snapshots: list[MetricsSnapshot]) -> None:
        self._snapshots = snapshots

    def collect(self):
        operations = CounterMetricFamily(
            "polystore_operations", "Operations by outcome", labels=["provider", "operation", "outcome"]
        )
        durations = GaugeMetricFamily(
            "polystore_operation_duration_milliseconds",
            "Operation duration statistics",
            labels=["provider", "operation", "stat"],
        )
        queries = CounterMetricFamily("polystore_queries", "Queries and scans", labels=["provider", "query_type"])
        query_results = GaugeMetricFamily(
            "polystore_query_average_results", "Average items returned", labels=["provider", "query_type"]
        )
        events = CounterMetricFamily(
            "polystore_connection_events", "Connection lifecycle events", labels=["provider", "event"]
        )
        active = GaugeMetricFamily("polystore_active_connections", "Open connections", labels=["provider"])
        error_rate = GaugeMetricFamily("polystore_error_rate", "Failed / total operations", labels=["provider"])
        warnings = GaugeMetricFamily(
            "polystore_performance_warnings", "Performance warnings currently held", labels=["provider"]
        )

        for snapshot in self._snapshots:
            provider = snapshot.provider
            for name, timing in snapshot.operation_timings.items():
                operations.add_metric([provider, name, "success"], timing.success_count)
                operations.add_metric([provider, name, "failure"], timing.failure_count)
                min_time = 0.0 if timing.min_time == float("inf") else timing.min_time
                durations.add_metric([provider, name, "avg"], timing.average_time)
                durations.add_metric([provider, name, "min"], min_time)
                durations.add_metric([provider, name, "max"], timing.max_time)
            for name, timing in snapshot.query_types.items():
                queries.add_metric([provider, name], timing.count)
                query_results.add_metric([provider, name], timing.average_results)
            for event, count in snapshot.connections.events.items():
                events.add_metric([provider, event], count)
            active.add_metric([provider], snapshot.connections.active_connections)
            error_rate.add_metric([provider], snapshot.error_rate)
            warnings.add_metric([provider], len(snapshot.warnings))

        yield operations
        yield durations
        yield queries
        yield query_results
        yield events
        yield active
        yield error_rate
        yield warnings
