"""
Resilience Utilities

Retry with exponential backoff and jitter, a circuit breaker, and the
ResilienceManager that chains them. Adapters and connection managers run
every native call through a ResilienceManager.
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..config.logfire_config import get_logger
from ..db.errors import DatabaseError, ErrorKind, RETRYABLE_CODES

logger = get_logger(__name__)

T = TypeVar("T")

Translate = Callable[[BaseException], DatabaseError]


def _as_database_error(error: BaseException, provider: str, translate: Translate | None) -> DatabaseError:
    if isinstance(error, DatabaseError):
        return error
    if translate is not None:
        return translate(error)
    return DatabaseError(
        ErrorKind.INTERNAL_SERVER_ERROR,
        str(error) or "Unknown error",
        provider=provider,
        original=error,
    )


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_codes: frozenset[str] = field(default_factory=lambda: RETRYABLE_CODES)


class RetryManager:
    """Re-runs a coroutine factory while it fails with a retryable DatabaseError."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep

    def should_retry(self, error: DatabaseError, attempt: int) -> bool:
        if attempt >= self.config.max_attempts:
            return False
        if not error.retryable:
            return False
        return error.code in self.config.retryable_codes

    def calculate_delay(self, attempt: int) -> float:
        delay = self.config.base_delay * (self.config.backoff_multiplier ** (attempt - 1))
        delay = min(delay, self.config.max_delay)
        if self.config.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: str,
        provider: str,
        translate: Translate | None = None,
    ) -> T:
        """
        Run fn, retrying retryable failures.

        Args:
            fn: Zero-argument coroutine factory; called once per attempt
            operation: Operation name for logs
            provider: Provider tag for logs and untranslated errors
            translate: Converts native errors to DatabaseError

        Returns:
            Whatever fn returns.

        Raises:
            DatabaseError: the last translated failure.
        """
        total_delay = 0.0
        attempt = 1
        while True:
            try:
                result = await fn()
            except Exception as exc:
                error = _as_database_error(exc, provider, translate)
                if not self.should_retry(error, attempt):
                    if attempt > 1 or error.retryable:
                        logger.error(
                            f"{operation} on {provider} failed after {attempt} attempt(s): {error.code} {error.message}"
                        )
                    if error is exc:
                        raise
                    raise error from exc

                delay = self.calculate_delay(attempt)
                total_delay += delay
                logger.warning(
                    f"{operation} on {provider} failed on attempt {attempt} ({error.code}); "
                    f"retrying in {delay * 1000:.0f}ms"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if attempt > 1:
                logger.info(
                    f"{operation} on {provider} succeeded after {attempt} attempts "
                    f"(waited {total_delay * 1000:.0f}ms)"
                )
            return result


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    half_open_max_calls: int = 3


class CircuitBreaker:
    """
    Fails fast after repeated retryable failures.

    Only retryable errors (connection, timeout, throttling, server) count as
    failures; a conditional-check or validation error means the backend
    answered.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        self.half_open_successes = 0
        self.last_failure_time: float | None = None

    def can_execute(self) -> bool:
        with self._lock:
            if self.state is CircuitState.CLOSED:
                return True
            if self.state is CircuitState.OPEN:
                elapsed = (
                    self._clock() - self.last_failure_time
                    if self.last_failure_time is not None
                    else self.config.recovery_timeout
                )
                if elapsed >= self.config.recovery_timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_calls = 1
                    self.half_open_successes = 0
                    logger.info(f"Circuit breaker {self.name} entering half-open state")
                    return True
                return False
            # Half-open: admit at most half_open_max_calls trial calls.
            if self.half_open_calls >= self.config.half_open_max_calls:
                return False
            self.half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self.state is CircuitState.HALF_OPEN:
                self.half_open_successes += 1
                if self.half_open_successes >= self.config.half_open_max_calls:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    logger.info(f"Circuit breaker {self.name} closed")
            else:
                self.failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state is CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit breaker {self.name} re-opened from half-open")
            elif self.failure_count >= self.config.failure_threshold and self.state is CircuitState.CLOSED:
                self.state = CircuitState.OPEN
                logger.error(
                    f"Circuit breaker {self.name} opened after {self.failure_count} failures"
                )

    def reset(self) -> None:
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.half_open_calls = 0
            self.half_open_successes = 0
            self.last_failure_time = None

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: str,
        provider: str,
    ) -> T:
        if not self.can_execute():
            logger.warning(f"Circuit breaker {self.name} rejecting {operation}")
            raise DatabaseError(
                ErrorKind.INTERNAL_SERVER_ERROR,
                f"Circuit breaker is open for {provider}",
                provider=provider,
            )
        try:
            result = await fn()
        except DatabaseError as exc:
            if exc.retryable:
                self.record_failure()
            else:
                self.record_success()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


# ---------------------------------------------------------------------------
# Combined
# ---------------------------------------------------------------------------


class ResilienceManager:
    """Circuit breaker around a retry loop, one per backend instance."""

    def __init__(
        self,
        provider: str,
        retry_config: RetryConfig | None = None,
        circuit_config: CircuitBreakerConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.retry = RetryManager(retry_config, sleep=sleep)
        self.circuit = CircuitBreaker(provider, circuit_config)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: str,
        translate: Translate | None = None,
    ) -> T:
        return await self.circuit.execute(
            lambda: self.retry.execute(fn, operation, self.provider, translate),
            operation,
            self.provider,
        )

    @property
    def circuit_state(self) -> CircuitState:
        return self.circuit.state

    def reset_circuit(self) -> None:
        self.circuit.reset()
