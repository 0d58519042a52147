"""
Connection Manager base

State machine and observer plumbing shared by the DynamoDB and MongoDB
connection managers. Subclasses supply the native client lifecycle
(_open, _close) and the liveness check (_ping).
"""

from __future__ import annotations

import inspect
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..config.logfire_config import get_logger, safe_logfire_error, safe_logfire_info
from ..services.metrics import MetricsCollector
from ..services.resilience import ResilienceManager
from .errors import DatabaseError, ErrorKind, Translator
from .models import HealthMetrics, HealthStatus

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class ConnectionEvent(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


Listener = Callable[..., Any]


class ConnectionManager:
    """
    Owns one native client and its connection state.

    Listeners registered through subscribe() are called with the event and,
    for ERROR, the translated DatabaseError. A failing listener is logged and
    skipped.
    """

    provider: str = "unknown"

    def __init__(
        self,
        metrics: MetricsCollector,
        resilience: ResilienceManager,
        translator: Translator,
    ) -> None:
        self.metrics = metrics
        self.resilience = resilience
        self._translator = translator
        self.state = ConnectionState.DISCONNECTED
        self.last_error: DatabaseError | None = None
        self.last_successful_operation: datetime | None = None
        self._listeners: dict[ConnectionEvent, list[Listener]] = {e: [] for e in ConnectionEvent}

    # -- Subclass hooks ----------------------------------------------------

    async def _open(self) -> None:
        raise NotImplementedError

    async def _close(self) -> None:
        raise NotImplementedError

    async def _ping(self) -> None:
        raise NotImplementedError

    async def _health_ping(self) -> None:
        await self._ping()

    async def _after_connect(self) -> None:
        """Runs once the liveness check has succeeded."""

    # -- Observers ---------------------------------------------------------

    def subscribe(self, event: ConnectionEvent | str, listener: Listener) -> Callable[[], None]:
        event = ConnectionEvent(event)
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    async def _emit(self, event: ConnectionEvent, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(event, *args)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"{self.provider} connection listener for {event.value} failed: {exc}")

    # -- Lifecycle ---------------------------------------------------------

    def translate(self, error: BaseException) -> DatabaseError:
        return self._translator(error, self.provider)

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def mark_success(self) -> None:
        self.last_successful_operation = datetime.now(timezone.utc)

    async def connect(self) -> None:
        if self.state is ConnectionState.CONNECTED:
            return

        self.state = ConnectionState.CONNECTING
        await self._emit(ConnectionEvent.CONNECTING)
        try:
            await self._open()
            await self.resilience.execute(self._ping, "connect", self.translate)
            await self._after_connect()
        except Exception as exc:
            error = self.translate(exc)
            self.state = ConnectionState.ERROR
            self.last_error = error
            self.metrics.record_connection_event("error")
            logger.error(f"Failed to connect to {self.provider}: {error.message}")
            safe_logfire_error(f"{self.provider} connection failed", code=error.code)
            await self._emit(ConnectionEvent.ERROR, error)
            raise DatabaseError(
                ErrorKind.CONNECTION,
                f"Failed to connect to {self.provider}: {error.message}",
                provider=self.provider,
                original=error,
            ) from error

        self.state = ConnectionState.CONNECTED
        self.last_error = None
        self.mark_success()
        self.metrics.record_connection_event("connect")
        logger.info(f"Connected to {self.provider}")
        safe_logfire_info(f"{self.provider} connected")
        await self._emit(ConnectionEvent.CONNECTED)

    async def disconnect(self) -> None:
        if self.state is ConnectionState.DISCONNECTED:
            return
        try:
            await self._close()
        finally:
            self.state = ConnectionState.DISCONNECTED
            self.metrics.record_connection_event("disconnect")
            logger.info(f"Disconnected from {self.provider}")
            await self._emit(ConnectionEvent.DISCONNECTED)

    async def reconnect(self) -> None:
        was_connected = self.state is ConnectionState.CONNECTED
        self.state = ConnectionState.RECONNECTING
        self.metrics.record_connection_event("reconnect")
        await self._emit(ConnectionEvent.RECONNECTING)
        await self._close()
        if was_connected:
            self.metrics.record_connection_event("disconnect")
        self.state = ConnectionState.DISCONNECTED
        await self.connect()

    async def health_check(self) -> HealthStatus:
        """Check the backend without changing connection state."""
        start = time.perf_counter()
        healthy = False
        if self.is_connected():
            try:
                await self._health_ping()
                healthy = True
                self.mark_success()
            except Exception as exc:
                logger.warning(f"{self.provider} health check failed: {self.translate(exc).message}")
        elapsed_ms = (time.perf_counter() - start) * 1000

        if healthy:
            status = "connected"
        elif self.state is ConnectionState.ERROR or self.is_connected():
            status = "error"
        else:
            status = "disconnected"

        return HealthStatus(
            healthy=healthy,
            provider=self.provider,
            connection_status=status,
            last_successful_operation=self.last_successful_operation,
            metrics=HealthMetrics(
                average_response_time=elapsed_ms,
                error_rate=self.metrics.error_rate(),
                connection_count=1 if self.is_connected() else 0,
            ),
            warnings=self.metrics.get_warnings(),
        )
